from __future__ import annotations

import base64
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from monitoring_operator.src.certs import (
    CA_FILE,
    CSR_SIGNER_NAME,
    CABundle,
    CABundlePublisher,
    CertDirReloader,
    CertificateError,
    KeyPair,
    WebhookEndpoint,
    generate_self_signed,
    load_from_base64,
    load_from_dir,
    mutating_webhook_configuration,
    request_cluster_certificate,
    select_csr_api,
    upsert_webhook_configurations,
    validating_webhook_configuration,
    write_key_pair,
)
from monitoring_operator.src.resources import POD_MONITORING, RULES

FQDN = "gmp-operator.gmp-system.svc"


@pytest.fixture(scope="module")
def pair() -> KeyPair:
    return generate_self_signed(FQDN)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


# ---------------------------------------------------------------------------
# Certificate sources
# ---------------------------------------------------------------------------


def test_self_signed_certificate_covers_fqdn(pair: KeyPair) -> None:
    cert = x509.load_pem_x509_certificate(pair.cert_pem)

    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == [FQDN]
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == FQDN
    assert cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca is True
    assert pair.ca_pem == pair.cert_pem
    assert b"PRIVATE KEY" in pair.key_pem


def test_load_from_base64_round_trips_and_defaults_ca(pair: KeyPair) -> None:
    loaded = load_from_base64(_b64(pair.cert_pem), _b64(pair.key_pem))

    assert loaded == pair


def test_load_from_base64_rejects_garbage() -> None:
    with pytest.raises(CertificateError, match="decoding base64"):
        load_from_base64("not base64!", "x")


def test_mismatched_key_is_rejected(pair: KeyPair) -> None:
    other = generate_self_signed(FQDN)

    with pytest.raises(CertificateError, match="does not match"):
        load_from_base64(_b64(pair.cert_pem), _b64(other.key_pem))


def test_load_from_dir_reads_written_pair(pair: KeyPair, tmp_path: Path) -> None:
    cert_path, key_path = write_key_pair(pair, tmp_path)

    assert Path(cert_path).read_bytes() == pair.cert_pem
    assert Path(key_path).stat().st_mode & 0o777 == 0o600
    assert load_from_dir(tmp_path) == pair


def test_load_from_dir_prefers_ca_file(pair: KeyPair, tmp_path: Path) -> None:
    other = generate_self_signed("other.svc")
    write_key_pair(pair, tmp_path)
    (tmp_path / CA_FILE).write_bytes(other.cert_pem)

    assert load_from_dir(tmp_path).ca_pem == other.cert_pem


def test_load_from_dir_missing_files(tmp_path: Path) -> None:
    with pytest.raises(CertificateError, match="reading key material"):
        load_from_dir(tmp_path)


# ---------------------------------------------------------------------------
# Cluster-issued certificates
# ---------------------------------------------------------------------------


class FakeSigner:
    """Signs submitted CSRs with a throwaway CA key on the second poll."""

    def __init__(self) -> None:
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.request: dict[str, object] | None = None
        self.approval: dict[str, object] | None = None
        self.deleted: list[str] = []
        self.polls = 0
        self.subresources = {"approval": SimpleNamespace(replace=self._approve)}

    def delete(self, name: str) -> None:
        self.deleted.append(name)
        raise NotFoundError(ApiException(status=404, reason="Not Found"))

    def create(self, body: dict[str, object]) -> dict[str, object]:
        self.request = body
        return dict(body)

    def _approve(self, body: dict[str, object], name: str) -> None:
        self.approval = body

    def _sign(self) -> bytes:
        spec = self.request["spec"]  # type: ignore[index]
        csr = x509.load_pem_x509_csr(base64.b64decode(spec["request"]))
        now = datetime.now(UTC)
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "cluster-ca")])
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(issuer)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=1))
            .sign(self.key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM)

    def get(self, name: str) -> dict[str, object]:
        self.polls += 1
        if self.polls < 2:
            return {"status": {}}
        return {"status": {"certificate": _b64(self._sign())}}


class FakeDynamicClient:
    def __init__(self, resource: object, served: tuple[str, ...]) -> None:
        self.resource = resource
        self.served = served
        self.resources = self
        self.queried: list[str] = []

    def get(self, api_version: str, kind: str) -> object:
        self.queried.append(api_version)
        if api_version not in self.served:
            raise ResourceNotFoundError(f"{kind} {api_version} not found")
        return self.resource


def test_select_csr_api_falls_back_to_v1beta1() -> None:
    dynamic = FakeDynamicClient(object(), served=("certificates.k8s.io/v1beta1",))

    api = select_csr_api(dynamic)

    assert api.api_version == "certificates.k8s.io/v1beta1"
    assert dynamic.queried == ["certificates.k8s.io/v1", "certificates.k8s.io/v1beta1"]


def test_select_csr_api_without_support_raises() -> None:
    with pytest.raises(CertificateError, match="no supported CertificateSigningRequest API"):
        select_csr_api(FakeDynamicClient(object(), served=()))


def test_request_cluster_certificate_approves_and_polls(pair: KeyPair) -> None:
    signer = FakeSigner()
    dynamic = FakeDynamicClient(signer, served=("certificates.k8s.io/v1",))

    result = request_cluster_certificate(dynamic, FQDN, pair.cert_pem, poll_interval=0)

    assert signer.deleted == [FQDN]
    assert signer.request is not None
    assert signer.request["spec"]["signerName"] == CSR_SIGNER_NAME  # type: ignore[index]
    assert signer.request["spec"]["usages"] == ["digital signature", "key encipherment", "server auth"]  # type: ignore[index]
    assert signer.approval is not None
    assert signer.approval["status"]["conditions"][0]["type"] == "Approved"  # type: ignore[index]
    assert signer.polls == 2
    assert result.ca_pem == pair.cert_pem
    cert = x509.load_pem_x509_certificate(result.cert_pem)
    assert cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "system:nodes"


def test_request_cluster_certificate_times_out() -> None:
    signer = FakeSigner()
    signer.get = lambda name: {"status": {}}  # type: ignore[method-assign]
    ticks = iter([0.0, 5.0])

    with pytest.raises(CertificateError, match="timed out"):
        request_cluster_certificate(
            FakeDynamicClient(signer, served=("certificates.k8s.io/v1",)),
            FQDN,
            b"CA",
            timeout=1.0,
            poll_interval=0,
            clock=lambda: next(ticks),
        )


def test_request_cluster_certificate_stops_on_shutdown() -> None:
    signer = FakeSigner()
    signer.get = lambda name: {"status": {}}  # type: ignore[method-assign]
    stop = threading.Event()
    stop.set()

    with pytest.raises(CertificateError, match="stopped while waiting"):
        request_cluster_certificate(
            FakeDynamicClient(signer, served=("certificates.k8s.io/v1",)), FQDN, b"CA", stop=stop
        )


# ---------------------------------------------------------------------------
# CA bundle publication
# ---------------------------------------------------------------------------


def _existing_config() -> SimpleNamespace:
    webhook = SimpleNamespace(client_config=SimpleNamespace(ca_bundle="old"))
    return SimpleNamespace(webhooks=[webhook, SimpleNamespace(client_config=SimpleNamespace(ca_bundle=None))])


def test_publisher_writes_bundle_into_every_webhook() -> None:
    api = MagicMock()
    validating = _existing_config()
    api.read_validating_webhook_configuration.return_value = validating
    api.read_mutating_webhook_configuration.side_effect = ApiException(status=404, reason="Not Found")

    CABundlePublisher(api, "gmp-operator.gmp-system.monitoring.googleapis.com", CABundle(b"PEM")).publish_once()

    assert [w.client_config.ca_bundle for w in validating.webhooks] == [_b64(b"PEM")] * 2
    api.replace_validating_webhook_configuration.assert_called_once()
    api.replace_mutating_webhook_configuration.assert_not_called()


def test_publisher_propagates_unexpected_errors() -> None:
    api = MagicMock()
    api.read_validating_webhook_configuration.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        CABundlePublisher(api, "cfg", CABundle(b"PEM")).publish_once()


def test_publisher_failure_on_validating_still_updates_mutating() -> None:
    api = MagicMock()
    api.read_validating_webhook_configuration.side_effect = ApiException(status=500, reason="boom")
    mutating = _existing_config()
    api.read_mutating_webhook_configuration.return_value = mutating

    with pytest.raises(ApiException, match="boom"):
        CABundlePublisher(api, "cfg", CABundle(b"PEM")).publish_once()

    api.replace_mutating_webhook_configuration.assert_called_once()
    assert mutating.webhooks[0].client_config.ca_bundle == _b64(b"PEM")


def test_publisher_reraises_the_first_of_two_failures() -> None:
    api = MagicMock()
    api.read_validating_webhook_configuration.side_effect = ApiException(status=500, reason="first")
    api.read_mutating_webhook_configuration.side_effect = ApiException(status=403, reason="second")

    with pytest.raises(ApiException) as excinfo:
        CABundlePublisher(api, "cfg", CABundle(b"PEM")).publish_once()

    assert excinfo.value.status == 500
    api.read_mutating_webhook_configuration.assert_called_once()


def test_publisher_run_survives_errors_until_stopped() -> None:
    api = MagicMock()
    stop = threading.Event()

    def fail(**_kwargs):
        stop.set()
        raise ApiException(status=500, reason="boom")

    api.read_validating_webhook_configuration.side_effect = fail

    CABundlePublisher(api, "cfg", CABundle(b"PEM"), interval_seconds=0).run(stop)

    assert api.read_validating_webhook_configuration.call_count == 1


def test_bundle_updates_are_seen_by_next_publish() -> None:
    api = MagicMock()
    config = _existing_config()
    api.read_validating_webhook_configuration.return_value = config
    api.read_mutating_webhook_configuration.return_value = _existing_config()
    bundle = CABundle(b"one")
    publisher = CABundlePublisher(api, "cfg", bundle)

    bundle.set(b"two")
    publisher.publish_once()

    assert config.webhooks[0].client_config.ca_bundle == _b64(b"two")


def test_cert_dir_reloader_reports_changes_only(pair: KeyPair, tmp_path: Path) -> None:
    write_key_pair(pair, tmp_path)
    seen: list[KeyPair] = []
    reloader = CertDirReloader(str(tmp_path), pair, seen.append)

    assert reloader.poll_once() is False

    rotated = generate_self_signed(FQDN)
    write_key_pair(rotated, tmp_path)
    assert reloader.poll_once() is True
    assert seen == [rotated]


def test_cert_dir_reloader_ignores_unreadable_material(pair: KeyPair, tmp_path: Path) -> None:
    seen: list[KeyPair] = []
    reloader = CertDirReloader(str(tmp_path), pair, seen.append)

    assert reloader.poll_once() is False
    assert seen == []


# ---------------------------------------------------------------------------
# Webhook configurations
# ---------------------------------------------------------------------------


ENDPOINTS = [
    WebhookEndpoint(POD_MONITORING, "/validate/monitoring.googleapis.com/v1/podmonitorings"),
    WebhookEndpoint(RULES, "/validate/monitoring.googleapis.com/v1/rules"),
]


def test_validating_configuration_targets_operator_service() -> None:
    cfg = validating_webhook_configuration(
        "gmp-operator.gmp-system.monitoring.googleapis.com",
        ENDPOINTS,
        service_name="gmp-operator",
        service_namespace="gmp-system",
        port=443,
        ca_bundle=b"PEM",
    )

    assert cfg.metadata.name == "gmp-operator.gmp-system.monitoring.googleapis.com"
    first = cfg.webhooks[0]
    assert first.name == "podmonitorings.gmp-operator.gmp-system.svc"
    assert first.client_config.service.path == ENDPOINTS[0].path
    assert first.client_config.service.port == 443
    assert first.client_config.ca_bundle == _b64(b"PEM")
    assert first.rules[0].resources == ["podmonitorings"]
    assert first.rules[0].api_groups == ["monitoring.googleapis.com"]
    assert first.failure_policy == "Ignore"
    assert [w.name for w in cfg.webhooks][1] == "rules.gmp-operator.gmp-system.svc"


def test_upsert_creates_then_replaces_on_conflict() -> None:
    api = MagicMock()
    api.create_mutating_webhook_configuration.side_effect = ApiException(status=409, reason="Conflict")
    api.read_mutating_webhook_configuration.return_value = SimpleNamespace(
        metadata=SimpleNamespace(resource_version="42")
    )
    kwargs = {"service_name": "op", "service_namespace": "ns", "port": 443, "ca_bundle": b"PEM"}
    validating = validating_webhook_configuration("cfg", ENDPOINTS, **kwargs)
    mutating = mutating_webhook_configuration("cfg", ENDPOINTS[:1], **kwargs)

    upsert_webhook_configurations(api, validating, mutating)

    api.create_validating_webhook_configuration.assert_called_once()
    api.replace_validating_webhook_configuration.assert_not_called()
    api.replace_mutating_webhook_configuration.assert_called_once()
    assert mutating.metadata.resource_version == "42"


def test_upsert_propagates_other_errors() -> None:
    api = MagicMock()
    api.create_validating_webhook_configuration.side_effect = ApiException(status=403, reason="Forbidden")
    kwargs = {"service_name": "op", "service_namespace": "ns", "port": 443, "ca_bundle": b"PEM"}

    with pytest.raises(ApiException):
        upsert_webhook_configurations(
            api,
            validating_webhook_configuration("cfg", ENDPOINTS, **kwargs),
            mutating_webhook_configuration("cfg", ENDPOINTS, **kwargs),
        )
