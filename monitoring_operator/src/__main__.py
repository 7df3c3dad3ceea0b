from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import ApiException

from monitoring_operator.src.certs import CertificateError
from monitoring_operator.src.compiler import ConfigCompiler
from monitoring_operator.src.config import ConfigError, load_options
from monitoring_operator.src.health import start_health_server
from monitoring_operator.src.kube import build_clients, load_kube_configuration
from monitoring_operator.src.leader import LeaseLeaderElector, load_leader_election_config
from monitoring_operator.src.manager import (
    ControllerRunner,
    build_controllers,
    build_secret_manager,
    provision_certificates,
    start_webhook,
)
from monitoring_operator.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|credentials)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----"),
        "[REDACTED PRIVATE KEY]",
    ),
)

LOGGER = logging.getLogger("monitoring_operator")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> int:
    """Operator entrypoint.

    Serves admission webhooks on every replica and runs the reconcile
    controllers only while holding the leader lease. Returns a non-zero exit
    code when configuration or key material is unusable.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        options = load_options()
        leader_config = load_leader_election_config()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    load_kube_configuration()
    clients = build_clients()
    compiler = ConfigCompiler(options.project_id, options.location, options.cluster)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        pair = provision_certificates(options, clients, stop=shutdown_event)
        webhook_server = start_webhook(options, clients, compiler, pair, shutdown_event)
    except CertificateError as exc:
        LOGGER.error("Webhook certificate setup failed: %s", exc)
        return 1
    except ApiException as exc:
        LOGGER.error("Webhook configuration setup failed (status=%s): %s", exc.status, exc.reason)
        return 1

    runner = ControllerRunner(
        lambda: build_controllers(options, clients, compiler, secret_manager),
        shutdown_event,
        stop_timeout_seconds=leader_config.controller_stop_timeout_seconds,
    )
    secret_manager = build_secret_manager(clients, options, runner.enqueue_all)

    leader_ready = threading.Event() if leader_config.enabled else None
    checks = {
        "webhook": lambda: bool(webhook_server.server.started),
        "controller:sync": runner.ready,
    }
    health_server = start_health_server(checks, options.health_port, leader=leader_ready)

    if leader_config.enabled:
        elector = LeaseLeaderElector(clients.coordination, options.operator_namespace, leader_config)

        def on_started_leading() -> None:
            if leader_ready is not None:
                leader_ready.set()
            runner.start()

        def on_stopped_leading() -> None:
            if leader_ready is not None:
                leader_ready.clear()
            runner.stop()

        elector.run(
            on_started_leading=on_started_leading,
            on_stopped_leading=on_stopped_leading,
            stop_event=shutdown_event,
        )
        runner.stop()
    else:
        runner.start()
        shutdown_event.wait()
        runner.stop()

    secret_manager.close()
    webhook_server.stop()
    health_server.shutdown()
    LOGGER.info("Operator stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
