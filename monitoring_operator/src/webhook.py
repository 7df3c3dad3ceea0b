from __future__ import annotations

import base64
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from monitoring_operator.src.certs import WebhookEndpoint
from monitoring_operator.src.compiler import ConfigCompiler, check_unique_job_names, kubelet_scrape_configs
from monitoring_operator.src.metrics import METRICS
from monitoring_operator.src.relabel import CompileError, check_series_matcher
from monitoring_operator.src.resources import (
    ALL_KINDS,
    CLUSTER_POD_MONITORING,
    COMPRESSION_TYPES,
    DEFAULT_KUBELET_SCRAPE_INTERVAL,
    GROUP,
    OPERATOR_CONFIG,
    POD_MONITORING,
    VERSION,
    OperatorConfig,
    PodMonitoring,
    ResourceKind,
    RulesResource,
    SecretKeySelector,
    SecretOrConfigMap,
)
from monitoring_operator.src.rules import rule_file

LOGGER = logging.getLogger(__name__)

ADMISSION_API_VERSION = "admission.k8s.io/v1"
OPERATOR_CONFIG_NAME = "config"

POD_MONITORING_DEFAULT_METADATA = ["pod", "container"]
CLUSTER_POD_MONITORING_DEFAULT_METADATA = ["namespace", "pod", "container"]

Validator = Callable[[Mapping[str, Any]], None]
Defaulter = Callable[[Mapping[str, Any]], list[dict[str, Any]]]


class AdmissionError(ValueError):
    """Raised by validators to reject an object with a user-facing message."""


def validate_path(kind: ResourceKind) -> str:
    return f"/validate/{GROUP}/{VERSION}/{kind.plural}"


def default_path(kind: ResourceKind) -> str:
    return f"/default/{GROUP}/{VERSION}/{kind.plural}"


def webhook_endpoints() -> tuple[list[WebhookEndpoint], list[WebhookEndpoint]]:
    """Return the ``(validating, mutating)`` endpoints the server serves."""
    validating = [WebhookEndpoint(resource=kind, path=validate_path(kind)) for kind in ALL_KINDS]
    mutating = [
        WebhookEndpoint(resource=kind, path=default_path(kind))
        for kind in (POD_MONITORING, CLUSTER_POD_MONITORING)
    ]
    return validating, mutating


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def pod_monitoring_validator(kind: ResourceKind, compiler: ConfigCompiler) -> Validator:
    def validate(obj: Mapping[str, Any]) -> None:
        pm = PodMonitoring.from_dict(obj, kind)
        labels = compiler.labels()
        jobs = []
        for index in range(len(pm.endpoints)):
            try:
                jobs.append(compiler.endpoint_scrape_config(pm, index, labels))
            except CompileError as exc:
                raise AdmissionError(f"invalid definition for endpoint with index {index}: {exc}") from exc
        try:
            check_unique_job_names(jobs)
        except CompileError as exc:
            raise AdmissionError(str(exc)) from exc

    return validate


def rules_validator(kind: ResourceKind, compiler: ConfigCompiler) -> Validator:
    def validate(obj: Mapping[str, Any]) -> None:
        try:
            rule_file(RulesResource.from_dict(obj, kind), compiler.labels())
        except CompileError as exc:
            raise AdmissionError(f"generate rule file: {exc}") from exc

    return validate


def _check_secret_key_selector(field: str, selector: SecretKeySelector | None) -> None:
    if selector is not None and (not selector.name or not selector.key):
        raise AdmissionError(f"{field}: secret name and key must be set")


def _check_secret_or_config_map(field: str, selector: SecretOrConfigMap | None) -> None:
    if selector is None:
        return
    if selector.secret is not None and selector.config_map is not None:
        raise AdmissionError(f"{field}: SecretOrConfigMap fields are mutually exclusive")
    _check_secret_key_selector(field, selector.secret)
    if selector.config_map is not None and (not selector.config_map.name or not selector.config_map.key):
        raise AdmissionError(f"{field}: configmap name and key must be set")


def operator_config_validator(public_namespace: str) -> Validator:
    def validate(obj: Mapping[str, Any]) -> None:
        config = OperatorConfig.from_dict(obj)
        meta = config.metadata
        if meta.namespace != public_namespace or meta.name != OPERATOR_CONFIG_NAME:
            raise AdmissionError(
                f'OperatorConfig must be in namespace "{public_namespace}" with name "{OPERATOR_CONFIG_NAME}"'
            )
        if config.collection.kubelet_scraping_interval is not None:
            try:
                kubelet_scrape_configs(config.collection.kubelet_scraping_interval or DEFAULT_KUBELET_SCRAPE_INTERVAL)
            except CompileError as exc:
                raise AdmissionError(f"failed to create kubelet scrape config: {exc}") from exc

        if config.collection.compression not in COMPRESSION_TYPES:
            raise AdmissionError(f"collection.compression: unsupported value {config.collection.compression!r}")
        for index, matcher in enumerate(config.collection.match_one_of):
            try:
                check_series_matcher(matcher)
            except CompileError as exc:
                raise AdmissionError(f"collection.filter.matchOneOf[{index}]: {exc}") from exc

        _check_secret_key_selector("collection.credentials", config.collection.credentials)
        _check_secret_key_selector("rules.credentials", config.rules.credentials)
        if config.managed_alertmanager is not None:
            _check_secret_key_selector("managedAlertmanager.configSecret", config.managed_alertmanager.config_secret)
        for index, am in enumerate(config.rules.alertmanagers):
            field = f"rules.alerting.alertmanagers[{index}]"
            if am.authorization is not None:
                _check_secret_key_selector(f"{field}.authorization.credentials", am.authorization.credentials)
            if am.tls is not None:
                _check_secret_or_config_map(f"{field}.tls.ca", am.tls.ca)
                _check_secret_or_config_map(f"{field}.tls.cert", am.tls.cert)
                _check_secret_key_selector(f"{field}.tls.keySecret", am.tls.key_secret)

        if config.rules.generator_url:
            try:
                _ = urlsplit(config.rules.generator_url).port
            except ValueError as exc:
                raise AdmissionError(f"failed to parse generator URL: {exc}") from exc

    return validate


# ---------------------------------------------------------------------------
# Defaulting
# ---------------------------------------------------------------------------


def metadata_defaulter(default_labels: list[str]) -> Defaulter:
    """Return a defaulter that sets ``spec.targetLabels.metadata`` when unset."""

    def default(obj: Mapping[str, Any]) -> list[dict[str, Any]]:
        spec = obj.get("spec")
        if not isinstance(spec, Mapping):
            return []
        target_labels = spec.get("targetLabels")
        if not isinstance(target_labels, Mapping):
            return [{"op": "add", "path": "/spec/targetLabels", "value": {"metadata": list(default_labels)}}]
        if target_labels.get("metadata") is None:
            return [{"op": "add", "path": "/spec/targetLabels/metadata", "value": list(default_labels)}]
        return []

    return default


# ---------------------------------------------------------------------------
# AdmissionReview plumbing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdmissionHandlers:
    validators: Mapping[str, Validator]
    defaulters: Mapping[str, Defaulter]


def build_handlers(compiler: ConfigCompiler, public_namespace: str) -> AdmissionHandlers:
    """Bind one validator per resource and one defaulter per monitoring kind."""
    validators: dict[str, Validator] = {
        POD_MONITORING.plural: pod_monitoring_validator(POD_MONITORING, compiler),
        CLUSTER_POD_MONITORING.plural: pod_monitoring_validator(CLUSTER_POD_MONITORING, compiler),
        OPERATOR_CONFIG.plural: operator_config_validator(public_namespace),
    }
    for kind in ALL_KINDS:
        if kind.plural not in validators:
            validators[kind.plural] = rules_validator(kind, compiler)
    defaulters = {
        POD_MONITORING.plural: metadata_defaulter(POD_MONITORING_DEFAULT_METADATA),
        CLUSTER_POD_MONITORING.plural: metadata_defaulter(CLUSTER_POD_MONITORING_DEFAULT_METADATA),
    }
    return AdmissionHandlers(validators=validators, defaulters=defaulters)


def admission_response(uid: str, *, allowed: bool, message: str = "", patch: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"uid": uid, "allowed": allowed}
    if not allowed:
        response["status"] = {"status": "Failure", "message": message}
    if patch:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(patch).encode()).decode()
    return {"apiVersion": ADMISSION_API_VERSION, "kind": "AdmissionReview", "response": response}


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Records per-request latency and in-flight counts for the webhook server.

    Skips the ``/metrics`` endpoint itself to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        METRICS.webhook_requests_in_flight.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            METRICS.webhook_request_duration_seconds.labels(
                route=self._route_kind(request.url.path), status=str(status_code)
            ).observe(time.monotonic() - start)
            METRICS.webhook_requests_in_flight.dec()
        return response

    @staticmethod
    def _route_kind(path: str) -> str:
        if path.startswith("/validate/"):
            return "validate"
        if path.startswith("/default/"):
            return "default"
        if path == "/healthz":
            return "healthz"
        return "other"


def create_app(handlers: AdmissionHandlers) -> FastAPI:
    """Create the admission webhook application.

    Endpoints:
        ``POST /validate/{group}/{version}/{resource}`` - validation review.
        ``POST /default/{group}/{version}/{resource}``  - defaulting review
                                                          returning a JSONPatch.
        ``GET /healthz`` - Liveness check (always ``200 ok``).
        ``GET /metrics`` - Prometheus metrics in text exposition format.
    """
    app = FastAPI(title="monitoring-operator-webhook")
    app.add_middleware(RequestMetricsMiddleware)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        LOGGER.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    def _review(body: Any) -> tuple[str, Mapping[str, Any] | None]:
        request = body.get("request") if isinstance(body, Mapping) else None
        if not isinstance(request, Mapping):
            raise AdmissionError("AdmissionReview has no request")
        obj = request.get("object")
        return str(request.get("uid", "")), obj if isinstance(obj, Mapping) else None

    @app.post("/validate/{group}/{version}/{resource}")
    async def validate(group: str, version: str, resource: str, request: Request) -> JSONResponse:
        validator = handlers.validators.get(resource)
        if validator is None or group != GROUP or version != VERSION:
            return JSONResponse(status_code=404, content={"error": "not_found"})
        uid = ""
        try:
            uid, obj = _review(await request.json())
            if obj is not None:
                validator(obj)
        except (AdmissionError, ValueError) as exc:
            METRICS.admission_requests_total.labels(operation="validate", resource=resource, allowed="false").inc()
            return JSONResponse(admission_response(uid, allowed=False, message=str(exc)))
        METRICS.admission_requests_total.labels(operation="validate", resource=resource, allowed="true").inc()
        return JSONResponse(admission_response(uid, allowed=True))

    @app.post("/default/{group}/{version}/{resource}")
    async def default(group: str, version: str, resource: str, request: Request) -> JSONResponse:
        defaulter = handlers.defaulters.get(resource)
        if defaulter is None or group != GROUP or version != VERSION:
            return JSONResponse(status_code=404, content={"error": "not_found"})
        uid = ""
        try:
            uid, obj = _review(await request.json())
            patch = defaulter(obj) if obj is not None else []
        except (AdmissionError, ValueError) as exc:
            METRICS.admission_requests_total.labels(operation="default", resource=resource, allowed="false").inc()
            return JSONResponse(admission_response(uid, allowed=False, message=str(exc)))
        METRICS.admission_requests_total.labels(operation="default", resource=resource, allowed="true").inc()
        return JSONResponse(admission_response(uid, allowed=True, patch=patch))

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    return app


class WebhookServer:
    """Serves the admission app over TLS with uvicorn in a background thread."""

    def __init__(self, app: FastAPI, port: int, cert_file: str, key_file: str) -> None:
        self.config = uvicorn.Config(
            app=app,
            host="0.0.0.0",  # noqa: S104
            port=port,
            ssl_certfile=cert_file,
            ssl_keyfile=key_file,
            log_config=None,
            access_log=False,
        )
        self.server = uvicorn.Server(self.config)
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self.server.run, name="webhook-server", daemon=True)
        self._thread.start()
        LOGGER.info("Webhook server listening on :%d", self.config.port)

    def reload_certificate(self, cert_file: str, key_file: str) -> None:
        """Load new key material into the live TLS context for future handshakes."""
        if self.config.ssl is None:
            LOGGER.warning("Webhook TLS context not initialized yet, certificate reload skipped")
            return
        self.config.ssl.load_cert_chain(certfile=cert_file, keyfile=key_file)
        LOGGER.info("Reloaded webhook serving certificate")

    def stop(self, timeout: float | None = 10.0) -> None:
        self.server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
