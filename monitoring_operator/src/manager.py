from __future__ import annotations

import logging
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from kubernetes.dynamic import DynamicClient

from monitoring_operator.src.certs import (
    CA_FILE,
    CERT_FILE,
    KEY_FILE,
    CABundle,
    CABundlePublisher,
    CertDirReloader,
    CertificateError,
    KeyPair,
    generate_self_signed,
    load_from_base64,
    load_from_dir,
    mutating_webhook_configuration,
    request_cluster_certificate,
    upsert_webhook_configurations,
    validating_webhook_configuration,
    write_key_pair,
)
from monitoring_operator.src.compiler import SERVICE_ACCOUNT_CA_FILE, ConfigCompiler
from monitoring_operator.src.config import OperatorOptions
from monitoring_operator.src.kube import KubeClients
from monitoring_operator.src.reconciler import (
    NAME_ALERTMANAGER,
    NAME_COLLECTOR,
    NAME_RULE_EVALUATOR,
    NAME_RULES_SECRET,
    OPERATOR_CONFIG_NAME,
    CollectionReconciler,
    OperatorConfigReconciler,
    RulesReconciler,
    reconcile_key,
)
from monitoring_operator.src.resources import (
    CLUSTER_POD_MONITORING,
    CLUSTER_RULES,
    GLOBAL_RULES,
    GROUP,
    OPERATOR_CONFIG,
    POD_MONITORING,
    RULES,
    VERSION,
    ResourceKind,
)
from monitoring_operator.src.rules import RULES_CONFIGMAP_NAME
from monitoring_operator.src.secretwatch import SecretManager, SecretWatchProvider
from monitoring_operator.src.watcher import (
    WatchController,
    WatchSource,
    any_of,
    namespaced_name,
    secret_filter,
)
from monitoring_operator.src.webhook import WebhookServer, build_handlers, create_app, webhook_endpoints

LOGGER = logging.getLogger(__name__)

WEBHOOK_SERVICE_PORT = 443


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


def provision_certificates(
    options: OperatorOptions,
    clients: KubeClients,
    *,
    stop: threading.Event | None = None,
) -> KeyPair:
    """Return the webhook serving key pair.

    Base64 material wins over a certificate directory, which wins over
    generation. Generated certificates are self-signed unless
    ``ca_self_sign`` is off, in which case the cluster signer issues them.
    Raises :class:`CertificateError` on unusable material.
    """
    if options.tls_cert:
        LOGGER.info("Using webhook key material from TLS_CERT/TLS_KEY")
        return load_from_base64(options.tls_cert, options.tls_key, options.tls_ca)
    if options.tls_cert_dir:
        LOGGER.info("Using webhook key material from %s", options.tls_cert_dir)
        return load_from_dir(options.tls_cert_dir)
    if options.ca_self_sign:
        LOGGER.info("Generating self-signed webhook certificate for %s", options.webhook_fqdn)
        return generate_self_signed(options.webhook_fqdn)

    try:
        ca_pem = Path(SERVICE_ACCOUNT_CA_FILE).read_bytes()
    except OSError as exc:
        raise CertificateError(f"reading cluster CA: {exc}") from exc
    LOGGER.info("Requesting webhook certificate for %s from the cluster signer", options.webhook_fqdn)
    return request_cluster_certificate(
        DynamicClient(clients.api_client),
        options.webhook_fqdn,
        ca_pem,
        stop=stop,
    )


def serving_files(options: OperatorOptions, pair: KeyPair) -> tuple[str, str]:
    """Return ``(cert_file, key_file)`` for the TLS server, writing them when needed."""
    if options.tls_cert_dir and not options.tls_cert:
        base = Path(options.tls_cert_dir)
        return str(base / CERT_FILE), str(base / KEY_FILE)
    return write_key_pair(pair, tempfile.mkdtemp(prefix="webhook-certs-"))


# ---------------------------------------------------------------------------
# Controllers
# ---------------------------------------------------------------------------


def _cluster_source(clients: KubeClients, kind: ResourceKind) -> WatchSource:
    return WatchSource(
        name=kind.plural,
        list_fn=clients.custom.list_cluster_custom_object,
        list_kwargs={"group": GROUP, "version": VERSION, "plural": kind.plural},
        generation_changed=True,
    )


def _operator_config_source(clients: KubeClients, options: OperatorOptions) -> WatchSource:
    return WatchSource(
        name=OPERATOR_CONFIG.plural,
        list_fn=clients.custom.list_namespaced_custom_object,
        list_kwargs={
            "group": GROUP,
            "version": VERSION,
            "namespace": options.public_namespace,
            "plural": OPERATOR_CONFIG.plural,
        },
        filters=(namespaced_name(options.public_namespace, OPERATOR_CONFIG_NAME),),
    )


def build_controllers(
    options: OperatorOptions,
    clients: KubeClients,
    compiler: ConfigCompiler,
    secret_manager: SecretManager,
) -> list[WatchController]:
    """Return the collection, operator-config and rules controllers with their sources."""
    key = reconcile_key(options)
    ns = options.operator_namespace

    collection = WatchController(
        CollectionReconciler(clients, options, compiler, secret_manager=secret_manager),
        key,
        [
            _operator_config_source(clients, options),
            _cluster_source(clients, POD_MONITORING),
            _cluster_source(clients, CLUSTER_POD_MONITORING),
            WatchSource(
                name="configmaps",
                list_fn=clients.core.list_namespaced_config_map,
                list_kwargs={"namespace": ns},
                filters=(namespaced_name(ns, NAME_COLLECTOR),),
            ),
            WatchSource(
                name="daemonsets",
                list_fn=clients.apps.list_namespaced_daemon_set,
                list_kwargs={"namespace": ns},
                filters=(namespaced_name(ns, NAME_COLLECTOR),),
                generation_changed=True,
            ),
        ],
    )

    operator_config = WatchController(
        OperatorConfigReconciler(clients, options, secret_manager=secret_manager),
        key,
        [
            _operator_config_source(clients, options),
            WatchSource(
                name="deployments",
                list_fn=clients.apps.list_namespaced_deployment,
                list_kwargs={"namespace": ns},
                filters=(namespaced_name(ns, NAME_RULE_EVALUATOR),),
                generation_changed=True,
            ),
            WatchSource(
                name="statefulsets",
                list_fn=clients.apps.list_namespaced_stateful_set,
                list_kwargs={"namespace": ns},
                filters=(namespaced_name(ns, NAME_ALERTMANAGER),),
                generation_changed=True,
            ),
            WatchSource(
                name="configmaps",
                list_fn=clients.core.list_namespaced_config_map,
                list_kwargs={"namespace": ns},
                filters=(namespaced_name(ns, NAME_RULE_EVALUATOR),),
            ),
            WatchSource(
                name="public-secrets",
                list_fn=clients.core.list_namespaced_secret,
                list_kwargs={"namespace": options.public_namespace},
                filters=(secret_filter(options.public_namespace),),
            ),
            WatchSource(
                name="managed-secrets",
                list_fn=clients.core.list_namespaced_secret,
                list_kwargs={"namespace": ns},
                filters=(any_of(namespaced_name(ns, NAME_RULES_SECRET), namespaced_name(ns, NAME_ALERTMANAGER)),),
            ),
        ],
    )

    rules = WatchController(
        RulesReconciler(clients, options, secret_manager=secret_manager),
        key,
        [
            _operator_config_source(clients, options),
            _cluster_source(clients, RULES),
            _cluster_source(clients, CLUSTER_RULES),
            _cluster_source(clients, GLOBAL_RULES),
            WatchSource(
                name="configmaps",
                list_fn=clients.core.list_namespaced_config_map,
                list_kwargs={"namespace": ns},
                filters=(namespaced_name(ns, RULES_CONFIGMAP_NAME),),
            ),
        ],
    )
    return [collection, operator_config, rules]


class ControllerRunner:
    """Starts and stops the controllers as leadership is gained and lost.

    Controllers are rebuilt on every start because a stopped queue cannot be
    reused.
    """

    def __init__(
        self,
        factory: Callable[[], list[WatchController]],
        shutdown_event: threading.Event,
        *,
        stop_timeout_seconds: float = 45.0,
    ) -> None:
        self.factory = factory
        self.shutdown_event = shutdown_event
        self.stop_timeout_seconds = stop_timeout_seconds
        self.controllers: list[WatchController] = []
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def ready(self) -> bool:
        controllers = self.controllers
        return bool(controllers) and all(c.ready.is_set() for c in controllers)

    def enqueue_all(self, *_: object) -> None:
        for controller in list(self.controllers):
            controller.enqueue()

    def _run_controller(self, controller: WatchController, stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            controller.run(stop)
            unexpected_exit = not stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Controller %s exited without a stop signal; terminating process", controller.name)
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Controller %s crashed", controller.name)
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def start(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if any(t.is_alive() for t in self._threads):
                LOGGER.error("Refusing to start controllers while previous controller threads are still running")
                self.shutdown_event.set()
                return
            self._stop = threading.Event()
            self.controllers = self.factory()
            self._threads = [
                threading.Thread(
                    target=self._run_controller,
                    args=(controller, self._stop),
                    name=f"controller-{controller.name}",
                    daemon=True,
                )
                for controller in self.controllers
            ]
            for thread in self._threads:
                thread.start()
            LOGGER.info("Started %d controllers", len(self._threads))

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            for controller in self.controllers:
                controller.request_stop()
            for thread in self._threads:
                thread.join(timeout=self.stop_timeout_seconds)
            if any(t.is_alive() for t in self._threads):
                LOGGER.error(
                    "Controllers did not stop within %ss during leadership handoff; forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._threads = []
            self.controllers = []


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


def start_webhook(
    options: OperatorOptions,
    clients: KubeClients,
    compiler: ConfigCompiler,
    pair: KeyPair,
    stop: threading.Event,
) -> WebhookServer:
    """Serve admission requests and keep the API server's CA bundle current."""
    cert_file, key_file = serving_files(options, pair)
    server = WebhookServer(
        create_app(build_handlers(compiler, options.public_namespace)),
        options.webhook_port,
        cert_file,
        key_file,
    )
    server.start()

    bundle = CABundle(pair.ca_pem)
    timeout = float(options.reconcile_timeout_seconds)
    if options.manage_webhook_configs:
        validating, mutating = webhook_endpoints()
        upsert_webhook_configurations(
            clients.admission,
            validating_webhook_configuration(
                options.webhook_config_name,
                validating,
                service_name=options.operator_name,
                service_namespace=options.operator_namespace,
                port=WEBHOOK_SERVICE_PORT,
                ca_bundle=pair.ca_pem,
            ),
            mutating_webhook_configuration(
                options.webhook_config_name,
                mutating,
                service_name=options.operator_name,
                service_namespace=options.operator_namespace,
                port=WEBHOOK_SERVICE_PORT,
                ca_bundle=pair.ca_pem,
            ),
            request_timeout=timeout,
        )

    publisher = CABundlePublisher(
        clients.admission,
        options.webhook_config_name,
        bundle,
        interval_seconds=options.ca_bundle_refresh_seconds,
        request_timeout=timeout,
    )
    threading.Thread(target=publisher.run, args=(stop,), name="ca-bundle-publisher", daemon=True).start()

    if options.tls_cert_dir and not options.tls_cert and options.cert_poll_seconds > 0:

        def _reload(new_pair: KeyPair) -> None:
            server.reload_certificate(cert_file, key_file)
            bundle.set(new_pair.ca_pem)
            publisher.publish_once()

        reloader = CertDirReloader(
            options.tls_cert_dir, pair, _reload, interval_seconds=options.cert_poll_seconds
        )
        threading.Thread(target=reloader.run, args=(stop,), name="cert-reloader", daemon=True).start()
        LOGGER.info("Watching %s for rotated key material (%s optional)", options.tls_cert_dir, CA_FILE)

    return server


def build_secret_manager(
    clients: KubeClients, options: OperatorOptions, on_change: Callable[[str, str], None]
) -> SecretManager:
    provider = SecretWatchProvider(
        clients.core,
        on_change=on_change,
        request_timeout=float(options.reconcile_timeout_seconds),
    )
    return SecretManager(provider)
