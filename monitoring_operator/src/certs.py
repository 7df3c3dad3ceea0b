from __future__ import annotations

import base64
import logging
import os
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from kubernetes import client
from kubernetes.client import AdmissionregistrationV1Api, ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from monitoring_operator.src.metrics import METRICS
from monitoring_operator.src.resources import GROUP, VERSION, ResourceKind

LOGGER = logging.getLogger(__name__)

RSA_KEY_SIZE = 2048
SELF_SIGNED_VALIDITY = timedelta(days=365)
CSR_SIGNER_NAME = "kubernetes.io/kubelet-serving"
CSR_ORGANIZATION = "system:nodes"
CSR_USAGES = ("digital signature", "key encipherment", "server auth")
CSR_API_VERSIONS = ("certificates.k8s.io/v1", "certificates.k8s.io/v1beta1")

CERT_FILE = "tls.crt"
KEY_FILE = "tls.key"
CA_FILE = "ca.crt"


class CertificateError(RuntimeError):
    """Raised when webhook key material cannot be produced or decoded."""


@dataclass(frozen=True)
class KeyPair:
    """PEM encoded serving certificate, private key and the CA that signed it."""

    cert_pem: bytes
    key_pem: bytes
    ca_pem: bytes


def _private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def validate_key_pair(pair: KeyPair) -> KeyPair:
    """Check that *pair* decodes and that the key belongs to the certificate."""
    try:
        cert = x509.load_pem_x509_certificate(pair.cert_pem)
        key = serialization.load_pem_private_key(pair.key_pem, password=None)
        if pair.ca_pem:
            x509.load_pem_x509_certificates(pair.ca_pem)
    except ValueError as exc:
        raise CertificateError(f"invalid key material: {exc}") from exc
    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_public = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if cert_public != key_public:
        raise CertificateError("private key does not match certificate")
    return pair


# ---------------------------------------------------------------------------
# Certificate sources
# ---------------------------------------------------------------------------


def generate_self_signed(fqdn: str, *, now: datetime | None = None) -> KeyPair:
    """Create a self-signed CA-style serving certificate for *fqdn*.

    The certificate is its own CA, so it is also returned as the CA bundle.
    """
    key = _private_key()
    issued = now or datetime.now(UTC)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, fqdn)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(issued - timedelta(minutes=5))
        .not_valid_after(issued + SELF_SIGNED_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(fqdn)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return KeyPair(cert_pem=cert_pem, key_pem=_key_pem(key), ca_pem=cert_pem)


def load_from_base64(cert_b64: str, key_b64: str, ca_b64: str = "") -> KeyPair:
    try:
        cert_pem = base64.b64decode(cert_b64, validate=True)
        key_pem = base64.b64decode(key_b64, validate=True)
        ca_pem = base64.b64decode(ca_b64, validate=True) if ca_b64 else b""
    except ValueError as exc:
        raise CertificateError(f"decoding base64 key material: {exc}") from exc
    return validate_key_pair(KeyPair(cert_pem=cert_pem, key_pem=key_pem, ca_pem=ca_pem or cert_pem))


def load_from_dir(directory: str | os.PathLike[str]) -> KeyPair:
    """Read ``tls.crt``, ``tls.key`` and the optional ``ca.crt`` from *directory*."""
    base = Path(directory)
    try:
        cert_pem = (base / CERT_FILE).read_bytes()
        key_pem = (base / KEY_FILE).read_bytes()
    except OSError as exc:
        raise CertificateError(f"reading key material from {base}: {exc}") from exc
    ca_path = base / CA_FILE
    ca_pem = ca_path.read_bytes() if ca_path.exists() else cert_pem
    return validate_key_pair(KeyPair(cert_pem=cert_pem, key_pem=key_pem, ca_pem=ca_pem))


def write_key_pair(pair: KeyPair, directory: str | os.PathLike[str]) -> tuple[str, str]:
    """Write the serving certificate and key; returns ``(cert_path, key_path)``."""
    base = Path(directory)
    base.mkdir(parents=True, exist_ok=True)
    cert_path = base / CERT_FILE
    key_path = base / KEY_FILE
    cert_path.write_bytes(pair.cert_pem)
    key_path.write_bytes(pair.key_pem)
    key_path.chmod(0o600)
    return str(cert_path), str(key_path)


# ---------------------------------------------------------------------------
# Cluster-issued certificates
# ---------------------------------------------------------------------------


def build_csr(fqdn: str) -> tuple[bytes, bytes]:
    """Return ``(csr_pem, key_pem)`` for a kubelet-serving style request."""
    key = _private_key()
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name(
                [
                    x509.NameAttribute(NameOID.COMMON_NAME, fqdn),
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, CSR_ORGANIZATION),
                ]
            )
        )
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(fqdn)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM), _key_pem(key)


@dataclass(frozen=True)
class CSRApi:
    """The certificate signing request API the cluster serves."""

    api_version: str
    resource: Any


def select_csr_api(dynamic_client: Any, versions: Sequence[str] = CSR_API_VERSIONS) -> CSRApi:
    """Return the first supported CSR API, probing *versions* in order."""
    for api_version in versions:
        try:
            resource = dynamic_client.resources.get(api_version=api_version, kind="CertificateSigningRequest")
        except ResourceNotFoundError:
            LOGGER.info("CertificateSigningRequest %s not served, trying next version", api_version)
            continue
        return CSRApi(api_version=api_version, resource=resource)
    raise CertificateError(f"no supported CertificateSigningRequest API among {', '.join(versions)}")


def _to_dict(obj: Any) -> dict[str, Any]:
    return obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)


def request_cluster_certificate(
    dynamic_client: Any,
    fqdn: str,
    ca_pem: bytes,
    *,
    timeout: float = 120.0,
    poll_interval: float = 1.0,
    stop: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> KeyPair:
    """Obtain a serving certificate for *fqdn* from the cluster signer.

    Any previous request with the same name is deleted first.  The request is
    approved by the operator itself and then polled until the signer attaches
    the certificate or *timeout* elapses.
    """
    api = select_csr_api(dynamic_client)
    csr_pem, key_pem = build_csr(fqdn)

    try:
        api.resource.delete(name=fqdn)
        LOGGER.info("Deleted previous CertificateSigningRequest %s", fqdn)
    except NotFoundError:
        pass

    body = {
        "apiVersion": api.api_version,
        "kind": "CertificateSigningRequest",
        "metadata": {"name": fqdn},
        "spec": {
            "request": base64.b64encode(csr_pem).decode(),
            "signerName": CSR_SIGNER_NAME,
            "usages": list(CSR_USAGES),
        },
    }
    created = _to_dict(api.resource.create(body=body))

    now = datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    created.setdefault("status", {})["conditions"] = [
        {
            "type": "Approved",
            "status": "True",
            "reason": "AutoApproved",
            "message": "approved by the monitoring operator",
            "lastUpdateTime": now,
        }
    ]
    api.resource.subresources["approval"].replace(body=created, name=fqdn)
    LOGGER.info("Approved CertificateSigningRequest %s via %s", fqdn, api.api_version)

    waiter = stop or threading.Event()
    deadline = clock() + timeout
    while True:
        current = _to_dict(api.resource.get(name=fqdn))
        certificate = (current.get("status") or {}).get("certificate")
        if certificate:
            pair = KeyPair(cert_pem=base64.b64decode(certificate), key_pem=key_pem, ca_pem=ca_pem)
            return validate_key_pair(pair)
        if clock() >= deadline:
            raise CertificateError(f"timed out waiting for CertificateSigningRequest {fqdn} to be signed")
        if waiter.wait(timeout=poll_interval):
            raise CertificateError(f"stopped while waiting for CertificateSigningRequest {fqdn}")


# ---------------------------------------------------------------------------
# CA bundle publication
# ---------------------------------------------------------------------------


class CABundle:
    """Thread-safe holder of the CA bytes advertised to the API server."""

    def __init__(self, ca_pem: bytes) -> None:
        self._lock = threading.Lock()
        self._ca_pem = ca_pem

    def get(self) -> bytes:
        with self._lock:
            return self._ca_pem

    def set(self, ca_pem: bytes) -> None:
        with self._lock:
            self._ca_pem = ca_pem


class CABundlePublisher:
    """Keeps ``caBundle`` current on the operator's webhook configurations.

    A configuration that does not exist yet is skipped; the next pass picks it
    up once it appears.
    """

    def __init__(
        self,
        admission_api: AdmissionregistrationV1Api,
        config_name: str,
        bundle: CABundle,
        *,
        interval_seconds: float = 60.0,
        request_timeout: float = 60.0,
    ) -> None:
        self.admission_api = admission_api
        self.config_name = config_name
        self.bundle = bundle
        self.interval_seconds = interval_seconds
        self.request_timeout = request_timeout

    def _publish(self, kind: str, read: Callable[..., Any], replace: Callable[..., Any]) -> bool:
        try:
            config = read(name=self.config_name, _request_timeout=self.request_timeout)
        except ApiException as exc:
            if exc.status != 404:
                raise
            LOGGER.debug("%s %s not found, skipping CA bundle update", kind, self.config_name)
            METRICS.ca_bundle_publish_total.labels(kind=kind, result="missing").inc()
            return False
        encoded = base64.b64encode(self.bundle.get()).decode()
        for webhook in config.webhooks or []:
            webhook.client_config.ca_bundle = encoded
        replace(name=self.config_name, body=config, _request_timeout=self.request_timeout)
        METRICS.ca_bundle_publish_total.labels(kind=kind, result="updated").inc()
        return True

    def publish_once(self) -> None:
        """Update both configurations; a failure on one does not skip the other.

        The first error is re-raised once both have been attempted.
        """
        first_error: Exception | None = None
        for kind, read, replace in (
            (
                "ValidatingWebhookConfiguration",
                self.admission_api.read_validating_webhook_configuration,
                self.admission_api.replace_validating_webhook_configuration,
            ),
            (
                "MutatingWebhookConfiguration",
                self.admission_api.read_mutating_webhook_configuration,
                self.admission_api.replace_mutating_webhook_configuration,
            ),
        ):
            try:
                self._publish(kind, read, replace)
            except Exception as exc:
                LOGGER.warning("Publishing CA bundle to %s %s failed: %s", kind, self.config_name, exc)
                METRICS.ca_bundle_publish_total.labels(kind=kind, result="error").inc()
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def run(self, stop: threading.Event) -> None:
        """Publish every ``interval_seconds`` until *stop* is set."""
        while not stop.is_set():
            try:
                self.publish_once()
            except ApiException as exc:
                LOGGER.warning("Publishing CA bundle failed (status=%s)", exc.status)
            except Exception:
                LOGGER.exception("Unexpected error publishing CA bundle")
            stop.wait(timeout=self.interval_seconds)


class CertDirReloader:
    """Polls a certificate directory and reports changed key material."""

    def __init__(
        self,
        directory: str,
        current: KeyPair,
        on_change: Callable[[KeyPair], None],
        *,
        interval_seconds: float = 60.0,
    ) -> None:
        self.directory = directory
        self.current = current
        self.on_change = on_change
        self.interval_seconds = interval_seconds

    def poll_once(self) -> bool:
        try:
            pair = load_from_dir(self.directory)
        except CertificateError as exc:
            LOGGER.warning("Ignoring unreadable key material in %s: %s", self.directory, exc)
            return False
        if pair == self.current:
            return False
        self.current = pair
        LOGGER.info("Key material in %s changed", self.directory)
        self.on_change(pair)
        return True

    def run(self, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.interval_seconds):
            self.poll_once()


# ---------------------------------------------------------------------------
# Webhook configurations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WebhookEndpoint:
    resource: ResourceKind
    path: str


def _webhooks(
    endpoints: Sequence[WebhookEndpoint],
    *,
    service_name: str,
    service_namespace: str,
    port: int,
    ca_bundle: bytes,
    webhook_cls: Any,
) -> list[Any]:
    encoded = base64.b64encode(ca_bundle).decode()
    out = []
    for ep in endpoints:
        out.append(
            webhook_cls(
                name=f"{ep.resource.plural}.{service_name}.{service_namespace}.svc",
                client_config=client.AdmissionregistrationV1WebhookClientConfig(
                    service=client.AdmissionregistrationV1ServiceReference(
                        name=service_name,
                        namespace=service_namespace,
                        path=ep.path,
                        port=port,
                    ),
                    ca_bundle=encoded,
                ),
                rules=[
                    client.V1RuleWithOperations(
                        api_groups=[GROUP],
                        api_versions=[VERSION],
                        resources=[ep.resource.plural],
                        operations=["CREATE", "UPDATE"],
                    )
                ],
                failure_policy="Ignore",
                side_effects="None",
                admission_review_versions=["v1"],
            )
        )
    return out


def validating_webhook_configuration(
    name: str,
    endpoints: Sequence[WebhookEndpoint],
    *,
    service_name: str,
    service_namespace: str,
    port: int,
    ca_bundle: bytes,
) -> client.V1ValidatingWebhookConfiguration:
    return client.V1ValidatingWebhookConfiguration(
        metadata=client.V1ObjectMeta(name=name),
        webhooks=_webhooks(
            endpoints,
            service_name=service_name,
            service_namespace=service_namespace,
            port=port,
            ca_bundle=ca_bundle,
            webhook_cls=client.V1ValidatingWebhook,
        ),
    )


def mutating_webhook_configuration(
    name: str,
    endpoints: Sequence[WebhookEndpoint],
    *,
    service_name: str,
    service_namespace: str,
    port: int,
    ca_bundle: bytes,
) -> client.V1MutatingWebhookConfiguration:
    return client.V1MutatingWebhookConfiguration(
        metadata=client.V1ObjectMeta(name=name),
        webhooks=_webhooks(
            endpoints,
            service_name=service_name,
            service_namespace=service_namespace,
            port=port,
            ca_bundle=ca_bundle,
            webhook_cls=client.V1MutatingWebhook,
        ),
    )


def upsert_webhook_configurations(
    admission_api: AdmissionregistrationV1Api,
    validating: client.V1ValidatingWebhookConfiguration,
    mutating: client.V1MutatingWebhookConfiguration,
    *,
    request_timeout: float = 60.0,
) -> None:
    """Create both configurations; on conflict, update the existing ones."""
    for body, create, read, replace in (
        (
            validating,
            admission_api.create_validating_webhook_configuration,
            admission_api.read_validating_webhook_configuration,
            admission_api.replace_validating_webhook_configuration,
        ),
        (
            mutating,
            admission_api.create_mutating_webhook_configuration,
            admission_api.read_mutating_webhook_configuration,
            admission_api.replace_mutating_webhook_configuration,
        ),
    ):
        name = body.metadata.name
        try:
            create(body=body, _request_timeout=request_timeout)
            LOGGER.info("Created webhook configuration %s", name)
            continue
        except ApiException as exc:
            if exc.status != 409:
                raise
        existing = read(name=name, _request_timeout=request_timeout)
        body.metadata.resource_version = existing.metadata.resource_version
        replace(name=name, body=body, _request_timeout=request_timeout)
        LOGGER.info("Updated webhook configuration %s", name)
