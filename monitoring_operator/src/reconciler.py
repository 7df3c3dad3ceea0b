from __future__ import annotations

import base64
import copy
import logging
from collections.abc import Hashable, Iterable
from typing import Any, Protocol
from urllib.parse import urlsplit

from kubernetes.client import ApiException

from monitoring_operator.src.compiler import (
    ConfigCompiler,
    StatusAccumulator,
    dump_yaml,
    make_alertmanager_configs,
    rule_evaluator_config,
)
from monitoring_operator.src.config import OperatorOptions
from monitoring_operator.src.kube import (
    KubeClients,
    format_flags,
    set_container_extra_args,
    upsert_config_map,
    upsert_secret,
)
from monitoring_operator.src.relabel import CompileError, check_series_matcher, resolve_labels
from monitoring_operator.src.resources import (
    CLUSTER_POD_MONITORING,
    CLUSTER_RULES,
    COMPRESSION_GZIP,
    COMPRESSION_TYPES,
    GLOBAL_RULES,
    GROUP,
    OPERATOR_CONFIG,
    POD_MONITORING,
    RULES,
    VERSION,
    ObjectMeta,
    OperatorConfig,
    PodMonitoring,
    ResourceKind,
    RulesResource,
    SecretKeySelector,
    SecretOrConfigMap,
    default_operator_config,
)
from monitoring_operator.src.rules import RULES_CONFIGMAP_NAME, generate_rule_files
from monitoring_operator.src.secrets import SecretResolver, path_for_selector
from monitoring_operator.src.secretwatch import SecretConfig, SecretManager, SecretRef

LOGGER = logging.getLogger(__name__)

OPERATOR_CONFIG_NAME = "config"
CONFIG_FILENAME = "config.yaml"

NAME_COLLECTOR = "collector"
NAME_COLLECTION_SECRET = "collection"
NAME_RULE_EVALUATOR = "rule-evaluator"
NAME_RULES_SECRET = "rules"
NAME_ALERTMANAGER = "alertmanager"
ALERTMANAGER_PUBLIC_SECRET_KEY = "alertmanager.yaml"

CONTAINER_COLLECTOR = "prometheus"
CONTAINER_RULE_EVALUATOR = "evaluator"
CONTAINER_ALERTMANAGER = "alertmanager"

ALERTMANAGER_NOOP_CONFIG = 'receivers:\n  - name: "noop"\nroute:\n  receiver: "noop"\n'


class Reconciler(Protocol):
    name: str

    def reconcile(self, key: Hashable) -> None: ...


def reconcile_key(options: OperatorOptions) -> str:
    """The single work queue key every event maps to."""
    return f"{options.public_namespace}/{OPERATOR_CONFIG_NAME}"


def _b64(value: bytes | str) -> str:
    raw = value.encode() if isinstance(value, str) else value
    return base64.b64encode(raw).decode()


# ---------------------------------------------------------------------------
# Shared reads and writes
# ---------------------------------------------------------------------------


class _Base:
    name = ""

    def __init__(
        self,
        clients: KubeClients,
        options: OperatorOptions,
        *,
        secret_manager: SecretManager | None = None,
    ) -> None:
        self.clients = clients
        self.options = options
        self.secret_manager = secret_manager
        self.request_timeout = float(options.reconcile_timeout_seconds)

    def get_operator_config_raw(self) -> dict[str, Any] | None:
        try:
            return self.clients.custom.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=self.options.public_namespace,
                plural=OPERATOR_CONFIG.plural,
                name=OPERATOR_CONFIG_NAME,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            return None

    def operator_config(self) -> OperatorConfig:
        """Return the OperatorConfig singleton, or an in-memory default when absent."""
        raw = self.get_operator_config_raw()
        if raw is None:
            return OperatorConfig(
                metadata=ObjectMeta(name=OPERATOR_CONFIG_NAME, namespace=self.options.public_namespace)
            )
        return OperatorConfig.from_dict(raw)

    def list_resources(self, kind: ResourceKind) -> list[dict[str, Any]]:
        result = self.clients.custom.list_cluster_custom_object(
            group=GROUP,
            version=VERSION,
            plural=kind.plural,
            _request_timeout=self.request_timeout,
        )
        items = result.get("items", []) if isinstance(result, dict) else []
        return sorted(
            items,
            key=lambda item: (
                item.get("metadata", {}).get("namespace", ""),
                item.get("metadata", {}).get("name", ""),
            ),
        )

    def monitorings(self) -> tuple[list[PodMonitoring], list[PodMonitoring]]:
        """Return the current PodMonitorings and ClusterPodMonitorings."""
        return (
            [PodMonitoring.from_dict(item, POD_MONITORING) for item in self.list_resources(POD_MONITORING)],
            [
                PodMonitoring.from_dict(item, CLUSTER_POD_MONITORING)
                for item in self.list_resources(CLUSTER_POD_MONITORING)
            ],
        )

    def resolver(self) -> SecretResolver:
        return SecretResolver(
            core_api=self.clients.core,
            namespace=self.options.public_namespace,
            request_timeout=self.request_timeout,
            cache=self.secret_manager,
        )

    def flush_status(self, status: StatusAccumulator) -> None:
        """Write every status change recorded during this pass."""
        for resource, new_status in status.updates():
            body = copy.deepcopy(dict(resource.raw))
            body["status"] = new_status.to_dict()
            meta = resource.metadata
            kind = resource.kind
            try:
                if kind.namespaced:
                    self.clients.custom.replace_namespaced_custom_object_status(
                        group=GROUP,
                        version=VERSION,
                        namespace=meta.namespace,
                        plural=kind.plural,
                        name=meta.name,
                        body=body,
                        _request_timeout=self.request_timeout,
                    )
                else:
                    self.clients.custom.replace_cluster_custom_object_status(
                        group=GROUP,
                        version=VERSION,
                        plural=kind.plural,
                        name=meta.name,
                        body=body,
                        _request_timeout=self.request_timeout,
                    )
            except ApiException as exc:
                if exc.status != 404:
                    raise
                LOGGER.info("Skipping status update for deleted %s", resource.key)

    def _patch_workload_args(
        self,
        read: Any,
        replace: Any,
        kind: str,
        name: str,
        container: str,
        extra_args: str,
    ) -> None:
        """Set ``EXTRA_ARGS`` on a managed workload; a missing workload is a no-op."""
        namespace = self.options.operator_namespace
        try:
            workload = read(name=name, namespace=namespace, _request_timeout=self.request_timeout)
        except ApiException as exc:
            if exc.status != 404:
                raise
            LOGGER.info("%s %s/%s not found, skipping flag update", kind, namespace, name)
            return
        if not set_container_extra_args(workload, container, extra_args):
            LOGGER.warning("%s %s/%s has no container %r, skipping flag update", kind, namespace, name, container)
            return
        replace(name=name, namespace=namespace, body=workload, _request_timeout=self.request_timeout)


def referenced_secret_configs(
    config: OperatorConfig,
    namespace: str,
    monitorings: Iterable[PodMonitoring] = (),
) -> list[SecretConfig]:
    """Return one :class:`SecretConfig` per secret key referenced by *config* or *monitorings*.

    OperatorConfig references live in *namespace*; scrape endpoint references
    live wherever their resource resolves them.
    """
    refs: list[tuple[str, SecretKeySelector]] = []
    if config.collection.credentials is not None:
        refs.append((namespace, config.collection.credentials))
    if config.rules.credentials is not None:
        refs.append((namespace, config.rules.credentials))
    if config.managed_alertmanager is not None and config.managed_alertmanager.config_secret is not None:
        refs.append((namespace, config.managed_alertmanager.config_secret))
    for am in config.rules.alertmanagers:
        if am.authorization is not None and am.authorization.credentials is not None:
            refs.append((namespace, am.authorization.credentials))
        if am.tls is not None:
            for ref in (am.tls.ca, am.tls.cert):
                if ref is not None and ref.secret is not None:
                    refs.append((namespace, ref.secret))
            if am.tls.key_secret is not None:
                refs.append((namespace, am.tls.key_secret))
    for pm in monitorings:
        for ep in pm.endpoints:
            for sel in ep.secrets():
                refs.append((pm.secret_namespace(sel), sel))

    out: dict[str, SecretConfig] = {}
    for ref_namespace, sel in refs:
        if not ref_namespace or not sel.name or not sel.key:
            continue
        name = path_for_selector(ref_namespace, SecretOrConfigMap(secret=sel))
        out[name] = SecretConfig(name=name, ref=SecretRef(namespace=ref_namespace, name=sel.name, key=sel.key))
    return [out[name] for name in sorted(out)]


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


class CollectionReconciler(_Base):
    """Generates the collector configuration and export flags."""

    name = "collection"

    def __init__(
        self,
        clients: KubeClients,
        options: OperatorOptions,
        compiler: ConfigCompiler,
        *,
        secret_manager: SecretManager | None = None,
    ) -> None:
        super().__init__(clients, options, secret_manager=secret_manager)
        self.compiler = compiler

    def reconcile(self, key: Hashable) -> None:
        LOGGER.debug("Reconciling collection for %s", key)
        config = self.operator_config()
        namespace = self.options.operator_namespace

        if config.collection.compression not in COMPRESSION_TYPES:
            raise RuntimeError(f"unsupported collection compression {config.collection.compression!r}")
        for matcher in config.collection.match_one_of:
            try:
                check_series_matcher(matcher)
            except CompileError as exc:
                raise RuntimeError(f"invalid collection filter: {exc}") from exc

        resolver = self.resolver()
        credentials_file = ""
        if config.collection.credentials is not None:
            credentials_file = resolver.resolve_secret(config.collection.credentials)

        status = StatusAccumulator()
        pod_monitorings, cluster_pod_monitorings = self.monitorings()
        result = self.compiler.compile(
            pod_monitorings,
            cluster_pod_monitorings,
            status,
            external_labels=config.collection.external_labels,
            kubelet_interval=config.collection.kubelet_scraping_interval,
            resolver=resolver,
        )
        # Mounted files must exist before the configuration referencing them.
        upsert_secret(
            self.clients.core,
            namespace,
            NAME_COLLECTION_SECRET,
            resolver.encoded(),
            request_timeout=self.request_timeout,
        )
        upsert_config_map(
            self.clients.core,
            namespace,
            NAME_COLLECTOR,
            {CONFIG_FILENAME: result.text},
            request_timeout=self.request_timeout,
        )

        project_id, location, cluster = self.compiler.labels(config.collection.external_labels)
        flags = [
            ("export.label.project-id", project_id),
            ("export.label.location", location),
            ("export.label.cluster", cluster),
        ]
        if credentials_file:
            flags.append(("export.credentials-file", credentials_file))
        for matcher in config.collection.match_one_of:
            flags.append(("export.match", matcher))
        if config.collection.compression == COMPRESSION_GZIP:
            flags.append(("export.compression", COMPRESSION_GZIP))
        self._patch_workload_args(
            self.clients.apps.read_namespaced_daemon_set,
            self.clients.apps.replace_namespaced_daemon_set,
            "DaemonSet",
            NAME_COLLECTOR,
            CONTAINER_COLLECTOR,
            format_flags(flags),
        )

        self.flush_status(status)
        LOGGER.info(
            "Collection reconciled: %d scrape jobs, %d diagnostics",
            len(result.config["scrape_configs"]),
            len(result.diagnostics),
        )


# ---------------------------------------------------------------------------
# OperatorConfig
# ---------------------------------------------------------------------------


class OperatorConfigReconciler(_Base):
    """Applies the OperatorConfig singleton to the rule-evaluator and Alertmanager."""

    name = "operator-config"

    def reconcile(self, key: Hashable) -> None:
        LOGGER.debug("Reconciling operator config for %s", key)
        raw = self.get_operator_config_raw()
        if raw is not None:
            defaulted = default_operator_config(raw)
            if defaulted != raw:
                self.clients.custom.replace_namespaced_custom_object(
                    group=GROUP,
                    version=VERSION,
                    namespace=self.options.public_namespace,
                    plural=OPERATOR_CONFIG.plural,
                    name=OPERATOR_CONFIG_NAME,
                    body=defaulted,
                    _request_timeout=self.request_timeout,
                )
                LOGGER.info("Persisted defaulted OperatorConfig %s", reconcile_key(self.options))
            config = OperatorConfig.from_dict(defaulted)
        else:
            config = OperatorConfig(
                metadata=ObjectMeta(name=OPERATOR_CONFIG_NAME, namespace=self.options.public_namespace)
            )

        if self.secret_manager is not None:
            pod_monitorings, cluster_pod_monitorings = self.monitorings()
            self.secret_manager.apply_config(
                referenced_secret_configs(
                    config,
                    self.options.public_namespace,
                    [*pod_monitorings, *cluster_pod_monitorings],
                )
            )

        resolver = self.resolver()
        try:
            alertmanagers = make_alertmanager_configs(
                config.rules.alertmanagers,
                resolver,
                operator_namespace=self.options.operator_namespace,
                managed_port=self.managed_alertmanager_port(),
            )
        except CompileError as exc:
            raise RuntimeError(f"generate alertmanager configs: {exc}") from exc
        credentials_file = ""
        if config.rules.credentials is not None:
            credentials_file = resolver.resolve_secret(config.rules.credentials)

        upsert_config_map(
            self.clients.core,
            self.options.operator_namespace,
            NAME_RULE_EVALUATOR,
            {CONFIG_FILENAME: dump_yaml(rule_evaluator_config(config.rules.external_labels, alertmanagers))},
            request_timeout=self.request_timeout,
        )

        self.ensure_alertmanager_config_secret(config)
        self.ensure_alertmanager_statefulset(config)

        upsert_secret(
            self.clients.core,
            self.options.operator_namespace,
            NAME_RULES_SECRET,
            resolver.encoded(),
            request_timeout=self.request_timeout,
        )
        self.ensure_rule_evaluator_deployment(config, credentials_file)

    def managed_alertmanager_port(self) -> int | None:
        try:
            service = self.clients.core.read_namespaced_service(
                name=NAME_ALERTMANAGER,
                namespace=self.options.operator_namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            return None
        ports = getattr(getattr(service, "spec", None), "ports", None) or []
        if not ports:
            return None
        return int(ports[0].port)

    def ensure_alertmanager_config_secret(self, config: OperatorConfig) -> None:
        """Copy the user's Alertmanager config into the managed secret.

        Without a user config the managed Alertmanager gets a no-op config so
        that it always starts.
        """
        selector = SecretKeySelector(name=NAME_ALERTMANAGER, key=ALERTMANAGER_PUBLIC_SECRET_KEY)
        managed = config.managed_alertmanager
        if managed is not None and managed.config_secret is not None:
            selector = managed.config_secret

        payload: bytes = ALERTMANAGER_NOOP_CONFIG.encode()
        try:
            secret = self.clients.core.read_namespaced_secret(
                name=selector.name,
                namespace=self.options.public_namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            secret = None
        if secret is not None:
            data = secret.data or {}
            string_data = getattr(secret, "string_data", None) or {}
            if selector.key in data:
                payload = base64.b64decode(data[selector.key])
            elif selector.key in string_data:
                payload = string_data[selector.key].encode()

        upsert_secret(
            self.clients.core,
            self.options.operator_namespace,
            NAME_ALERTMANAGER,
            {CONFIG_FILENAME: _b64(payload)},
            request_timeout=self.request_timeout,
        )

    def ensure_alertmanager_statefulset(self, config: OperatorConfig) -> None:
        managed = config.managed_alertmanager
        if managed is None or not managed.external_url:
            return
        self._patch_workload_args(
            self.clients.apps.read_namespaced_stateful_set,
            self.clients.apps.replace_namespaced_stateful_set,
            "StatefulSet",
            NAME_ALERTMANAGER,
            CONTAINER_ALERTMANAGER,
            format_flags([("web.external-url", managed.external_url)]),
        )

    def ensure_rule_evaluator_deployment(self, config: OperatorConfig, credentials_file: str) -> None:
        project_id, location, cluster = resolve_labels(
            self.options.project_id,
            self.options.location,
            self.options.cluster,
            config.rules.external_labels,
        )
        flags = [
            ("export.label.project-id", project_id),
            ("export.label.location", location),
            ("export.label.cluster", cluster),
            ("query.project-id", config.rules.query_project_id or project_id),
        ]
        if credentials_file:
            flags.append(("export.credentials-file", credentials_file))
            flags.append(("query.credentials-file", credentials_file))
        if config.rules.generator_url:
            try:
                parts = urlsplit(config.rules.generator_url)
                _ = parts.port
            except ValueError as exc:
                raise RuntimeError(f"invalid generatorUrl {config.rules.generator_url!r}: {exc}") from exc
            flags.append(("query.generator-url", config.rules.generator_url))

        self._patch_workload_args(
            self.clients.apps.read_namespaced_deployment,
            self.clients.apps.replace_namespaced_deployment,
            "Deployment",
            NAME_RULE_EVALUATOR,
            CONTAINER_RULE_EVALUATOR,
            format_flags(flags),
        )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RulesReconciler(_Base):
    """Renders Rules, ClusterRules and GlobalRules into the rule-evaluator's rule files."""

    name = "rules"

    def reconcile(self, key: Hashable) -> None:
        LOGGER.debug("Reconciling rules for %s", key)
        config = self.operator_config()
        labels = resolve_labels(
            self.options.project_id,
            self.options.location,
            self.options.cluster,
            config.rules.external_labels,
        )

        resources = [
            RulesResource.from_dict(item, kind)
            for kind in (RULES, CLUSTER_RULES, GLOBAL_RULES)
            for item in self.list_resources(kind)
        ]
        status = StatusAccumulator()
        files = generate_rule_files(resources, labels, status)
        upsert_config_map(
            self.clients.core,
            self.options.operator_namespace,
            RULES_CONFIGMAP_NAME,
            files.files,
            request_timeout=self.request_timeout,
        )
        self.flush_status(status)
        LOGGER.info("Rules reconciled: %d files, %d diagnostics", len(files.files), len(files.diagnostics))

