from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from monitoring_operator.src.resources import ConfigMapKeySelector, SecretKeySelector, SecretOrConfigMap
from monitoring_operator.src.secretwatch import SecretManager, SecretNotFoundError

LOGGER = logging.getLogger(__name__)

SECRETS_DIR = "/etc/secrets"


class SecretResolveError(RuntimeError):
    """Raised when a referenced secret or config map key cannot be read."""


def path_for_selector(namespace: str, selector: SecretOrConfigMap) -> str:
    """Return the collision-free file name for a referenced key.

    The format is ``{kind}_{namespace}_{name}_{key}``.  Kubernetes object names
    cannot contain ``_`` so the separator is unambiguous.
    """
    if selector.config_map is not None:
        ref = selector.config_map
        return f"configmap_{namespace}_{ref.name}_{ref.key}"
    if selector.secret is not None:
        ref = selector.secret
        return f"secret_{namespace}_{ref.name}_{ref.key}"
    return ""


def secret_file_path(path_key: str) -> str:
    return f"{SECRETS_DIR}/{path_key}"


def _decode(value: str) -> bytes:
    return base64.b64decode(value)


@dataclass
class SecretResolver:
    """Reads referenced secret and config map keys and records their bytes.

    Every successful :meth:`resolve` stores the payload in :attr:`collected`
    keyed by its path key.  The caller mirrors exactly that map into the
    operator's secret artifact, so only referenced bytes are ever copied.
    Secrets already watched through *cache* are served from the watch cache.
    """

    core_api: CoreV1Api
    namespace: str
    request_timeout: float = 60.0
    collected: dict[str, bytes] = field(default_factory=dict)
    cache: SecretManager | None = None

    def secret_key_bytes(self, selector: SecretKeySelector, namespace: str = "") -> bytes:
        namespace = namespace or self.namespace
        if self.cache is not None:
            try:
                return self.cache.fetch(path_for_selector(namespace, SecretOrConfigMap(secret=selector)))
            except SecretNotFoundError:
                LOGGER.debug("Secret %s not cached, reading from the API", selector.name)
        try:
            secret = self.core_api.read_namespaced_secret(
                name=selector.name,
                namespace=namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            raise SecretResolveError(
                f"unable to get secret {selector.name!r}: {exc.status} {exc.reason}"
            ) from exc

        data = secret.data or {}
        if selector.key in data:
            return _decode(data[selector.key])
        string_data = getattr(secret, "string_data", None) or {}
        if selector.key in string_data:
            return string_data[selector.key].encode()
        raise SecretResolveError(f'key "{selector.key}" in secret "{selector.name}" not found')

    def config_map_key_bytes(self, selector: ConfigMapKeySelector) -> bytes:
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=selector.name,
                namespace=self.namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            raise SecretResolveError(
                f"unable to get configmap {selector.name!r}: {exc.status} {exc.reason}"
            ) from exc

        data = config_map.data or {}
        if selector.key in data:
            return data[selector.key].encode()
        binary_data = config_map.binary_data or {}
        if selector.key in binary_data:
            return _decode(binary_data[selector.key])
        raise SecretResolveError(f'key "{selector.key}" in configmap "{selector.name}" not found')

    def resolve(self, selector: SecretOrConfigMap, namespace: str = "") -> str:
        """Fetch the referenced key, record it and return its mounted file path.

        *namespace* overrides the resolver default for this one reference.
        """
        namespace = namespace or self.namespace
        if selector.secret is not None and selector.config_map is not None:
            raise SecretResolveError("SecretOrConfigMap fields are mutually exclusive")
        if selector.secret is not None:
            payload = self.secret_key_bytes(selector.secret, namespace)
        elif selector.config_map is not None:
            payload = self.config_map_key_bytes(selector.config_map)
        else:
            raise SecretResolveError("SecretOrConfigMap references neither a secret nor a configmap")

        key = path_for_selector(namespace, selector)
        self.collected[key] = payload
        return secret_file_path(key)

    def resolve_secret(self, selector: SecretKeySelector, namespace: str = "") -> str:
        return self.resolve(SecretOrConfigMap(secret=selector), namespace)

    def encoded(self) -> dict[str, str]:
        """Return the collected payloads base64-encoded for a ``V1Secret.data`` body."""
        return {k: base64.b64encode(v).decode() for k, v in sorted(self.collected.items())}
