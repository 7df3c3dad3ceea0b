from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_OPERATOR_NAME = "gmp-operator"
DEFAULT_OPERATOR_NAMESPACE = "gmp-system"
DEFAULT_PUBLIC_NAMESPACE = "gmp-public"


class ConfigError(RuntimeError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class OperatorOptions:
    """Immutable operator configuration loaded at startup.

    Attributes:
        operator_name: Name of the operator Service; also used to derive the
            webhook FQDN and webhook configuration names.
        operator_namespace: Namespace holding the managed collector,
            rule-evaluator and Alertmanager workloads.
        public_namespace: Namespace where users place the ``OperatorConfig``
            singleton and the secrets it references.
        project_id / location / cluster: Controller-wide label defaults.
            External labels declared in ``OperatorConfig`` take precedence,
            see :func:`monitoring_operator.src.relabel.resolve_labels`.
        ca_self_sign: Generate a self-signed webhook certificate instead of
            requesting one from the cluster signer.
        tls_cert / tls_key / tls_ca: Base64 key material; when set, it wins
            over ``tls_cert_dir`` and generation.
    """

    operator_name: str = DEFAULT_OPERATOR_NAME
    operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE
    public_namespace: str = DEFAULT_PUBLIC_NAMESPACE
    project_id: str = ""
    location: str = ""
    cluster: str = ""
    ca_self_sign: bool = True
    tls_cert: str = ""
    tls_key: str = ""
    tls_ca: str = ""
    tls_cert_dir: str = ""
    webhook_port: int = 10250
    health_port: int = 8080
    reconcile_timeout_seconds: int = 60
    ca_bundle_refresh_seconds: int = 60
    cert_poll_seconds: int = 0
    manage_webhook_configs: bool = False

    @property
    def webhook_fqdn(self) -> str:
        return f"{self.operator_name}.{self.operator_namespace}.svc"

    @property
    def webhook_config_name(self) -> str:
        return f"{self.operator_name}.{self.operator_namespace}.monitoring.googleapis.com"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _non_empty(values: Mapping[str, str], name: str, default: str) -> str:
    value = values.get(name, default)
    if not value.strip():
        raise ConfigError(f"{name} must be a non-empty string")
    return value.strip()


def load_options(env: Mapping[str, str] | None = None) -> OperatorOptions:
    """Load operator options from the environment.

    Environment variables (with defaults):
        ``OPERATOR_NAME``       - operator Service name (``gmp-operator``).
        ``OPERATOR_NAMESPACE``  - namespace of managed workloads (``gmp-system``).
        ``PUBLIC_NAMESPACE``    - namespace of user configuration (``gmp-public``).
        ``PROJECT_ID`` / ``LOCATION`` / ``CLUSTER`` - label defaults (empty).
        ``CA_SELF_SIGN``        - self-sign the webhook certificate (``true``).
        ``TLS_CERT`` / ``TLS_KEY`` / ``TLS_CA`` - base64 key material.
        ``TLS_CERT_DIR``        - directory with ``tls.crt``/``tls.key``/``ca.crt``.
        ``WEBHOOK_PORT``        - admission webhook HTTPS port (``10250``).
        ``HEALTH_PORT``         - health and metrics port (``8080``).

    Raises :class:`ConfigError` on invalid values so the process fails at
    startup instead of running with a half-applied configuration.
    """
    values = env if env is not None else os.environ

    tls_cert = values.get("TLS_CERT", "")
    tls_key = values.get("TLS_KEY", "")
    if bool(tls_cert) != bool(tls_key):
        raise ConfigError("TLS_CERT and TLS_KEY must be set together")

    return OperatorOptions(
        operator_name=_non_empty(values, "OPERATOR_NAME", DEFAULT_OPERATOR_NAME),
        operator_namespace=_non_empty(values, "OPERATOR_NAMESPACE", DEFAULT_OPERATOR_NAMESPACE),
        public_namespace=_non_empty(values, "PUBLIC_NAMESPACE", DEFAULT_PUBLIC_NAMESPACE),
        project_id=values.get("PROJECT_ID", ""),
        location=values.get("LOCATION", ""),
        cluster=values.get("CLUSTER", ""),
        ca_self_sign=parse_bool(values.get("CA_SELF_SIGN"), default=True),
        tls_cert=tls_cert,
        tls_key=tls_key,
        tls_ca=values.get("TLS_CA", ""),
        tls_cert_dir=values.get("TLS_CERT_DIR", ""),
        webhook_port=env_int("WEBHOOK_PORT", 10250, minimum=1, maximum=65535, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        reconcile_timeout_seconds=env_int("RECONCILE_TIMEOUT_SECONDS", 60, minimum=1, env=values),
        ca_bundle_refresh_seconds=env_int("CA_BUNDLE_REFRESH_SECONDS", 60, minimum=1, env=values),
        cert_poll_seconds=env_int("CERT_POLL_SECONDS", 0, minimum=0, env=values),
        manage_webhook_configs=parse_bool(values.get("MANAGE_WEBHOOK_CONFIGS")),
    )
