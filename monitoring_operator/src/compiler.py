from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import yaml

from monitoring_operator.src.relabel import (
    KEY_CLUSTER,
    KEY_LOCATION,
    KEY_PROJECT_ID,
    CompileError,
    check_regex,
    convert_relabeling_rule,
    format_duration,
    parse_duration,
    relabel_config,
    resolve_labels,
    sanitize_label_name,
    selector_relabel_configs,
)
from monitoring_operator.src.resources import (
    CONDITION_CONFIGURATION_CREATE_SUCCESS,
    CONDITION_FALSE,
    CONDITION_TRUE,
    AlertmanagerEndpoint,
    EndpointTLS,
    MonitoringCondition,
    MonitoringStatus,
    PodMonitoring,
    RelabelingRule,
    RulesResource,
    ScrapeEndpoint,
    SecretKeySelector,
    SecretOrConfigMap,
    utc_now_rfc3339,
)
from monitoring_operator.src.secrets import SecretResolveError, SecretResolver, path_for_selector, secret_file_path

LOGGER = logging.getLogger(__name__)

NODE_NAME_ENV = "NODE_NAME"
DEFAULT_SCRAPE_INTERVAL = "1m"
DEFAULT_METRICS_PATH = "/metrics"
TLS_VERSIONS = ("TLS10", "TLS11", "TLS12", "TLS13")
RULE_FILES_GLOB = "/etc/rules/*.yaml"
REASON_SCRAPE_CONFIG_ERROR = "ScrapeConfigError"

SERVICE_ACCOUNT_TOKEN_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SERVICE_ACCOUNT_CA_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"

# Deprecated metrics dropped from the kubelet endpoints, as kube-prometheus does.
KUBELET_METRICS_DROP_PATTERNS = (
    r"kubelet_(pod_worker_latency_microseconds|pod_start_latency_microseconds|cgroup_manager_latency_microseconds|pod_worker_start_latency_microseconds|pleg_relist_latency_microseconds|pleg_relist_interval_microseconds|runtime_operations|runtime_operations_latency_microseconds|runtime_operations_errors|eviction_stats_age_microseconds|device_plugin_registration_count|device_plugin_alloc_latency_microseconds|network_plugin_operations_latency_microseconds)",
    r"scheduler_(e2e_scheduling_latency_microseconds|scheduling_algorithm_predicate_evaluation|scheduling_algorithm_priority_evaluation|scheduling_algorithm_preemption_evaluation|scheduling_algorithm_latency_microseconds|binding_latency_microseconds|scheduling_latency_seconds)",
    r"apiserver_(request_count|request_latencies|request_latencies_summary|dropped_requests|storage_data_key_generation_latencies_microseconds|storage_transformation_failures_total|storage_transformation_latencies_microseconds|proxy_tunnel_sync_latency_secs|longrunning_gauge|registered_watchers)",
    r"kubelet_docker_(operations|operations_latency_microseconds|operations_errors|operations_timeout)",
    r"reflector_(items_per_list|items_per_watch|list_duration_seconds|lists_total|short_watches_total|watch_duration_seconds|watches_total)",
    r"etcd_(helper_cache_hit_count|helper_cache_miss_count|helper_cache_entry_count|object_counts|request_cache_get_latencies_summary|request_cache_add_latencies_summary|request_latencies_summary)",
    r"transformation_(transformation_latencies_microseconds|failures_total)",
    r"(admission_quota_controller_adds|admission_quota_controller_depth|admission_quota_controller_longest_running_processor_microseconds|admission_quota_controller_queue_latency|admission_quota_controller_unfinished_work_seconds|admission_quota_controller_work_duration|APIServiceOpenAPIAggregationControllerQueue1_adds|APIServiceOpenAPIAggregationControllerQueue1_depth|APIServiceOpenAPIAggregationControllerQueue1_longest_running_processor_microseconds|APIServiceOpenAPIAggregationControllerQueue1_queue_latency|APIServiceOpenAPIAggregationControllerQueue1_retries|APIServiceOpenAPIAggregationControllerQueue1_unfinished_work_seconds|APIServiceOpenAPIAggregationControllerQueue1_work_duration|APIServiceRegistrationController_adds|APIServiceRegistrationController_depth|APIServiceRegistrationController_longest_running_processor_microseconds|APIServiceRegistrationController_queue_latency|APIServiceRegistrationController_retries|APIServiceRegistrationController_unfinished_work_seconds|APIServiceRegistrationController_work_duration|autoregister_adds|autoregister_depth|autoregister_longest_running_processor_microseconds|autoregister_queue_latency|autoregister_retries|autoregister_unfinished_work_seconds|autoregister_work_duration|AvailableConditionController_adds|AvailableConditionController_depth|AvailableConditionController_longest_running_processor_microseconds|AvailableConditionController_queue_latency|AvailableConditionController_retries|AvailableConditionController_unfinished_work_seconds|AvailableConditionController_work_duration|crd_autoregistration_controller_adds|crd_autoregistration_controller_depth|crd_autoregistration_controller_longest_running_processor_microseconds|crd_autoregistration_controller_queue_latency|crd_autoregistration_controller_retries|crd_autoregistration_controller_unfinished_work_seconds|crd_autoregistration_controller_work_duration|crdEstablishing_adds|crdEstablishing_depth|crdEstablishing_longest_running_processor_microseconds|crdEstablishing_queue_latency|crdEstablishing_retries|crdEstablishing_unfinished_work_seconds|crdEstablishing_work_duration|crd_finalizer_adds|crd_finalizer_depth|crd_finalizer_longest_running_processor_microseconds|crd_finalizer_queue_latency|crd_finalizer_retries|crd_finalizer_unfinished_work_seconds|crd_finalizer_work_duration|crd_naming_condition_controller_adds|crd_naming_condition_controller_depth|crd_naming_condition_controller_longest_running_processor_microseconds|crd_naming_condition_controller_queue_latency|crd_naming_condition_controller_retries|crd_naming_condition_controller_unfinished_work_seconds|crd_naming_condition_controller_work_duration|crd_openapi_controller_adds|crd_openapi_controller_depth|crd_openapi_controller_longest_running_processor_microseconds|crd_openapi_controller_queue_latency|crd_openapi_controller_retries|crd_openapi_controller_unfinished_work_seconds|crd_openapi_controller_work_duration|DiscoveryController_adds|DiscoveryController_depth|DiscoveryController_longest_running_processor_microseconds|DiscoveryController_queue_latency|DiscoveryController_retries|DiscoveryController_unfinished_work_seconds|DiscoveryController_work_duration|kubeproxy_sync_proxy_rules_latency_microseconds|non_structural_schema_condition_controller_adds|non_structural_schema_condition_controller_depth|non_structural_schema_condition_controller_longest_running_processor_microseconds|non_structural_schema_condition_controller_queue_latency|non_structural_schema_condition_controller_retries|non_structural_schema_condition_controller_unfinished_work_seconds|non_structural_schema_condition_controller_work_duration|rest_client_request_latency_seconds|storage_operation_errors_total|storage_operation_status_count)",
)
CADVISOR_METRICS_DROP_PATTERNS = (
    r"container_(network_tcp_usage_total|network_udp_usage_total|tasks_state|cpu_load_average_10s)",
)

# Metadata target labels and the discovery meta label each is copied from.
_METADATA_SOURCES = {
    "namespace": "__meta_kubernetes_namespace",
    "pod": "__meta_kubernetes_pod_name",
    "container": "__meta_kubernetes_pod_container_name",
    "node": "__meta_kubernetes_pod_node_name",
}
_POD_METADATA_LABELS = ("pod", "container", "node")
_CLUSTER_METADATA_LABELS = ("namespace", "pod", "container", "node")

MonitoredResource = PodMonitoring | RulesResource


def dump_yaml(doc: Any) -> str:
    """Serialize *doc* deterministically, keeping dict insertion order."""
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


# ---------------------------------------------------------------------------
# Status accumulation
# ---------------------------------------------------------------------------


@dataclass
class StatusAccumulator:
    """Collects per-resource condition outcomes for one reconcile pass.

    The compiler records successes and failures here; the caller decides when
    to flush the resulting status writes.  A resource marked failed stays
    failed for the pass even if a later step succeeds.
    """

    now: Callable[[], str] = utc_now_rfc3339
    _outcomes: dict[str, tuple[MonitoredResource, MonitoringCondition]] = field(default_factory=dict)

    def succeeded(self, resource: MonitoredResource) -> None:
        current = self._outcomes.get(resource.key)
        if current is not None and current[1].status == CONDITION_FALSE:
            return
        self._outcomes[resource.key] = (
            resource,
            MonitoringCondition(type=CONDITION_CONFIGURATION_CREATE_SUCCESS, status=CONDITION_TRUE),
        )

    def failed(self, resource: MonitoredResource, message: str, reason: str = REASON_SCRAPE_CONFIG_ERROR) -> None:
        self._outcomes[resource.key] = (
            resource,
            MonitoringCondition(
                type=CONDITION_CONFIGURATION_CREATE_SUCCESS,
                status=CONDITION_FALSE,
                reason=reason,
                message=message,
            ),
        )

    def condition_for(self, key: str) -> MonitoringCondition | None:
        entry = self._outcomes.get(key)
        return entry[1] if entry else None

    def updates(self) -> list[tuple[MonitoredResource, MonitoringStatus]]:
        """Return the status writes that are needed, ordered by resource key."""
        now = self.now()
        out = []
        for key in sorted(self._outcomes):
            resource, condition = self._outcomes[key]
            status, changed = resource.status.with_condition(resource.metadata.generation, now, condition)
            if changed:
                out.append((resource, status))
        return out


# ---------------------------------------------------------------------------
# Scrape configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompileResult:
    config: dict[str, Any]
    diagnostics: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return dump_yaml(self.config)


def _metadata_labels(pm: PodMonitoring) -> tuple[str, ...]:
    namespaced = pm.kind.namespaced
    labels = pm.target_labels.metadata
    if labels is None:
        labels = () if namespaced else ("namespace",)
    allowed = _POD_METADATA_LABELS if namespaced else _CLUSTER_METADATA_LABELS
    for label in labels:
        if label not in allowed:
            raise CompileError(f"unknown target label {label!r}")
    return tuple(label for label in allowed if label in labels)


def _label_mapping_relabel_configs(pm: PodMonitoring) -> list[dict[str, Any]]:
    out = []
    for mapping in pm.target_labels.from_pod:
        rule = RelabelingRule(
            action="replace",
            source_labels=(f"__meta_kubernetes_pod_label_{sanitize_label_name(mapping.source)}",),
            target_label=mapping.target or mapping.source,
        )
        try:
            out.append(convert_relabeling_rule(rule))
        except CompileError as exc:
            raise CompileError(f"invalid pod label mapping: {exc}") from exc
    return out


def _validate_proxy_url(raw: str) -> str:
    try:
        parts = urlsplit(raw)
        _ = parts.port
    except ValueError as exc:
        raise CompileError(f"invalid proxy URL {raw!r}: {exc}") from exc
    if not parts.scheme or not parts.hostname:
        raise CompileError(f"invalid proxy URL {raw!r}")
    if parts.password:
        raise CompileError("passwords encoded in URLs are not supported")
    return raw


def _tls_version(value: str) -> str:
    if value not in TLS_VERSIONS:
        raise CompileError(f"unknown TLS version {value!r}")
    return value


def _endpoint_secret_file(
    pm: PodMonitoring,
    selector: SecretKeySelector,
    resolver: SecretResolver | None,
) -> str:
    """Return the mounted file path for a secret referenced by a scrape endpoint.

    Without a resolver only the reference is checked and the path computed;
    with one, the key is also read and recorded for the collector secret.
    """
    if not selector.name or not selector.key:
        raise CompileError("secret name and key must be set")
    if pm.kind.namespaced:
        if selector.namespace and selector.namespace != pm.metadata.namespace:
            raise CompileError(
                f"secret {selector.name!r} must be in the namespace of the {pm.kind.kind} "
                f"({pm.metadata.namespace!r}), not {selector.namespace!r}"
            )
    elif not selector.namespace:
        raise CompileError(f"secret {selector.name!r} must set a namespace")
    namespace = pm.secret_namespace(selector)
    if resolver is None:
        return secret_file_path(path_for_selector(namespace, SecretOrConfigMap(secret=selector)))
    try:
        return resolver.resolve_secret(selector, namespace)
    except SecretResolveError as exc:
        raise CompileError(str(exc)) from exc


def _endpoint_tls_config(pm: PodMonitoring, tls: EndpointTLS, resolver: SecretResolver | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if tls.ca is not None:
        out["ca_file"] = _endpoint_secret_file(pm, tls.ca, resolver)
    if tls.cert is not None:
        out["cert_file"] = _endpoint_secret_file(pm, tls.cert, resolver)
    if tls.key_secret is not None:
        out["key_file"] = _endpoint_secret_file(pm, tls.key_secret, resolver)
    if ("cert_file" in out) != ("key_file" in out):
        raise CompileError("client cert and keySecret must be set together")
    if tls.server_name:
        out["server_name"] = tls.server_name
    out["insecure_skip_verify"] = tls.insecure_skip_verify
    if tls.min_version:
        out["min_version"] = _tls_version(tls.min_version)
    if tls.max_version:
        out["max_version"] = _tls_version(tls.max_version)
    return out


def _http_client_config(pm: PodMonitoring, ep: ScrapeEndpoint, resolver: SecretResolver | None) -> dict[str, Any]:
    """Authentication, TLS and proxy settings of one scrape job, keyed as Prometheus expects."""
    schemes = [
        name
        for name, value in (("authorization", ep.authorization), ("basicAuth", ep.basic_auth), ("oauth2", ep.oauth2))
        if value is not None
    ]
    if len(schemes) > 1:
        raise CompileError(f"at most one of {', '.join(schemes)} may be set")

    out: dict[str, Any] = {}
    if ep.authorization is not None:
        if ep.authorization.type.lower() == "basic":
            raise CompileError('authorization type cannot be "Basic", use basicAuth instead')
        auth: dict[str, Any] = {}
        if ep.authorization.type:
            auth["type"] = ep.authorization.type
        if ep.authorization.credentials is not None:
            auth["credentials_file"] = _endpoint_secret_file(pm, ep.authorization.credentials, resolver)
        out["authorization"] = auth
    if ep.basic_auth is not None:
        basic: dict[str, Any] = {"username": ep.basic_auth.username}
        if ep.basic_auth.password is not None:
            basic["password_file"] = _endpoint_secret_file(pm, ep.basic_auth.password, resolver)
        out["basic_auth"] = basic
    if ep.oauth2 is not None:
        oauth2 = ep.oauth2
        if not oauth2.token_url:
            raise CompileError("OAuth2 tokenURL must be set")
        cfg: dict[str, Any] = {"client_id": oauth2.client_id}
        if oauth2.client_secret is not None:
            cfg["client_secret_file"] = _endpoint_secret_file(pm, oauth2.client_secret, resolver)
        if oauth2.scopes:
            cfg["scopes"] = list(oauth2.scopes)
        cfg["token_url"] = oauth2.token_url
        if oauth2.endpoint_params:
            cfg["endpoint_params"] = dict(sorted(oauth2.endpoint_params.items()))
        if oauth2.tls is not None:
            try:
                cfg["tls_config"] = _endpoint_tls_config(pm, oauth2.tls, resolver)
            except CompileError as exc:
                raise CompileError(f"OAuth2 TLS: {exc}") from exc
        if oauth2.proxy_url:
            try:
                cfg["proxy_url"] = _validate_proxy_url(oauth2.proxy_url)
            except CompileError as exc:
                raise CompileError(f"OAuth2 proxy config: {exc}") from exc
        out["oauth2"] = cfg
    if ep.proxy_url:
        out["proxy_url"] = _validate_proxy_url(ep.proxy_url)
    if ep.tls is not None:
        out["tls_config"] = _endpoint_tls_config(pm, ep.tls, resolver)
    return out


def check_unique_job_names(jobs: Iterable[Mapping[str, Any]]) -> None:
    """Raise :class:`CompileError` naming every job name produced more than once."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for job in jobs:
        name = job["job_name"]
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise CompileError(f"duplicate scrape job name {', '.join(repr(d) for d in duplicates)}")


def _restore(resolver: SecretResolver | None, collected: Mapping[str, bytes]) -> None:
    if resolver is not None:
        resolver.collected.clear()
        resolver.collected.update(collected)


@dataclass(frozen=True)
class ConfigCompiler:
    """Translates monitoring resources into Prometheus scrape configuration.

    ``project_id``/``location``/``cluster`` are controller-wide defaults; the
    ``external_labels`` passed to :meth:`compile` override them through
    :func:`resolve_labels`.
    """

    project_id: str = ""
    location: str = ""
    cluster: str = ""

    def labels(self, external_labels: Mapping[str, str] | None = None) -> tuple[str, str, str]:
        return resolve_labels(self.project_id, self.location, self.cluster, external_labels)

    def endpoint_scrape_config(
        self,
        pm: PodMonitoring,
        index: int,
        labels: tuple[str, str, str],
        resolver: SecretResolver | None = None,
    ) -> dict[str, Any]:
        """Build the scrape job for endpoint *index* of *pm*.

        Secrets referenced by the endpoint are read through *resolver* when one
        is given; otherwise only their references are validated.
        """
        ep: ScrapeEndpoint = pm.endpoints[index]
        meta = pm.metadata
        namespaced = pm.kind.namespaced

        relabels: list[dict[str, Any]] = []
        if namespaced:
            relabels.append(
                relabel_config(
                    action="keep",
                    source_labels=["__meta_kubernetes_namespace"],
                    regex=meta.namespace,
                )
            )
        relabels.extend(selector_relabel_configs(pm.selector))
        for label in _metadata_labels(pm):
            relabels.append(
                relabel_config(
                    action="replace",
                    source_labels=[_METADATA_SOURCES[label]],
                    target_label=label,
                )
            )
        if namespaced:
            relabels.append(
                relabel_config(
                    action="replace",
                    source_labels=["__meta_kubernetes_namespace"],
                    target_label="namespace",
                )
            )
        relabels.append(relabel_config(action="replace", target_label="job", replacement=meta.name))
        if pm.filter_running:
            relabels.append(
                relabel_config(
                    action="drop",
                    source_labels=["__meta_kubernetes_pod_phase"],
                    regex="(Failed|Succeeded)",
                )
            )

        project_id, location, cluster = labels
        for target, value in ((KEY_PROJECT_ID, project_id), (KEY_LOCATION, location), (KEY_CLUSTER, cluster)):
            relabels.append(relabel_config(action="replace", target_label=target, replacement=value))

        relabels.append(
            relabel_config(
                action="replace",
                source_labels=["__meta_kubernetes_pod_name"],
                target_label="__tmp_instance",
            )
        )
        relabels.append(
            relabel_config(
                action="replace",
                source_labels=["__meta_kubernetes_pod_controller_kind", "__meta_kubernetes_pod_node_name"],
                regex="DaemonSet;(.*)",
                target_label="__tmp_instance",
                replacement="$1",
            )
        )

        if ep.port.name:
            relabels.append(
                relabel_config(
                    action="keep",
                    source_labels=["__meta_kubernetes_pod_container_port_name"],
                    regex=check_regex(ep.port.name, "port name"),
                )
            )
            relabels.append(
                relabel_config(
                    action="replace",
                    source_labels=["__tmp_instance", "__meta_kubernetes_pod_container_port_name"],
                    regex="(.+);(.+)",
                    target_label="instance",
                    replacement="$1:$2",
                )
            )
        elif ep.port.number:
            # Numeric ports may be undeclared in the pod; every container candidate
            # must collapse into one identical target.
            relabels.append(relabel_config(action="labeldrop", regex="container"))
            relabels.append(
                relabel_config(
                    action="replace",
                    source_labels=["__tmp_instance"],
                    target_label="instance",
                    replacement=f"$1:{ep.port.number}",
                )
            )
            relabels.append(
                relabel_config(
                    action="replace",
                    source_labels=["__meta_kubernetes_pod_ip"],
                    target_label="__address__",
                    replacement=f"$1:{ep.port.number}",
                )
            )
        else:
            raise CompileError("port must be set")

        relabels.extend(_label_mapping_relabel_configs(pm))

        interval_ms = parse_duration(ep.interval or DEFAULT_SCRAPE_INTERVAL)
        timeout_ms = parse_duration(ep.timeout) if ep.timeout else interval_ms
        if timeout_ms > interval_ms:
            raise CompileError(
                f"scrape timeout {format_duration(timeout_ms)} must not be greater than "
                f"scrape interval {format_duration(interval_ms)}"
            )

        if namespaced:
            job_name = f"{pm.kind.kind}/{meta.namespace}/{meta.name}/{ep.port}"
        else:
            job_name = f"{pm.kind.kind}/{meta.name}/{ep.port}"

        job: dict[str, Any] = {
            "job_name": job_name,
            "honor_timestamps": False,
            "scrape_interval": format_duration(interval_ms),
            "scrape_timeout": format_duration(timeout_ms),
            "metrics_path": ep.path or DEFAULT_METRICS_PATH,
        }
        if ep.scheme:
            job["scheme"] = ep.scheme
        if ep.params:
            job["params"] = {k: list(v) for k, v in sorted(ep.params.items())}
        job.update(_http_client_config(pm, ep, resolver))
        job["kubernetes_sd_configs"] = [
            {
                "role": "pod",
                "selectors": [{"role": "pod", "field": f"spec.nodeName=$({NODE_NAME_ENV})"}],
            }
        ]
        job["relabel_configs"] = relabels

        if ep.metric_relabeling:
            metric_relabels = []
            for rule in ep.metric_relabeling:
                try:
                    metric_relabels.append(convert_relabeling_rule(rule))
                except CompileError as exc:
                    raise CompileError(f"invalid metric relabeling: {exc}") from exc
            job["metric_relabel_configs"] = metric_relabels

        if pm.limits is not None:
            for key, value in (
                ("sample_limit", pm.limits.samples),
                ("label_limit", pm.limits.labels),
                ("label_name_length_limit", pm.limits.label_name_length),
                ("label_value_length_limit", pm.limits.label_value_length),
            ):
                if value:
                    job[key] = value
        return job

    def scrape_configs(
        self,
        pm: PodMonitoring,
        external_labels: Mapping[str, str] | None = None,
        resolver: SecretResolver | None = None,
    ) -> tuple[list[dict[str, Any]], list[str]]:
        """Compile every endpoint of *pm*, returning jobs and per-endpoint errors.

        Endpoints that collide on job name invalidate the whole resource, so
        no job is returned for it.  Secrets recorded on *resolver* for a
        rejected job are discarded again.
        """
        labels = self.labels(external_labels)
        initial = dict(resolver.collected) if resolver is not None else {}
        jobs = []
        errors = []
        for index in range(len(pm.endpoints)):
            before = dict(resolver.collected) if resolver is not None else {}
            try:
                jobs.append(self.endpoint_scrape_config(pm, index, labels, resolver))
            except CompileError as exc:
                errors.append(f"endpoint {index}: {exc}")
                _restore(resolver, before)
        try:
            check_unique_job_names(jobs)
        except CompileError as exc:
            errors.append(str(exc))
            _restore(resolver, initial)
            jobs = []
        return jobs, errors

    def compile(
        self,
        pod_monitorings: Iterable[PodMonitoring],
        cluster_pod_monitorings: Iterable[PodMonitoring] = (),
        status: StatusAccumulator | None = None,
        *,
        external_labels: Mapping[str, str] | None = None,
        kubelet_interval: str | None = None,
        resolver: SecretResolver | None = None,
    ) -> CompileResult:
        """Compile all resources into one collector configuration document.

        A failing endpoint is skipped and its resource is marked failed on
        *status*; every other job is still emitted.  Jobs are sorted by name so
        identical input always yields identical output.  Endpoint secrets are
        read through *resolver*; without one no API call is made.
        """
        jobs: list[dict[str, Any]] = []
        diagnostics: list[str] = []

        for pm in [*pod_monitorings, *cluster_pod_monitorings]:
            pm_jobs, errors = self.scrape_configs(pm, external_labels, resolver)
            jobs.extend(pm_jobs)
            if errors:
                message = "; ".join(errors)
                diagnostics.append(f"{pm.key}: {message}")
                LOGGER.warning("Generating scrape config failed for %s: %s", pm.key, message)
                if status is not None:
                    status.failed(pm, message)
            elif status is not None:
                status.succeeded(pm)

        if kubelet_interval is not None:
            try:
                jobs.extend(kubelet_scrape_configs(kubelet_interval))
            except CompileError as exc:
                diagnostics.append(f"kubelet: {exc}")
                LOGGER.warning("Generating kubelet scrape config failed: %s", exc)

        jobs.sort(key=lambda job: job["job_name"])
        config: dict[str, Any] = {}
        if external_labels:
            config["global"] = {"external_labels": dict(sorted(external_labels.items()))}
        config["scrape_configs"] = jobs
        return CompileResult(config=config, diagnostics=tuple(diagnostics))


def kubelet_scrape_configs(interval: str) -> list[dict[str, Any]]:
    """Return the ``kubelet/metrics`` and ``kubelet/cadvisor`` scrape jobs."""
    interval_text = format_duration(parse_duration(interval))

    def job(name: str, path: str, instance_suffix: str, drops: Sequence[str]) -> dict[str, Any]:
        return {
            "job_name": name,
            "honor_timestamps": False,
            "scrape_interval": interval_text,
            "metrics_path": path,
            "scheme": "https",
            "authorization": {"credentials_file": SERVICE_ACCOUNT_TOKEN_FILE},
            "tls_config": {"ca_file": SERVICE_ACCOUNT_CA_FILE, "insecure_skip_verify": False},
            "kubernetes_sd_configs": [
                {
                    "role": "node",
                    "selectors": [{"role": "node", "field": f"metadata.name=$({NODE_NAME_ENV})"}],
                }
            ],
            "relabel_configs": [
                relabel_config(action="replace", target_label="job", replacement="kubelet"),
                relabel_config(
                    action="replace",
                    source_labels=["__meta_kubernetes_node_name"],
                    target_label="node",
                ),
                relabel_config(
                    action="replace",
                    source_labels=["__meta_kubernetes_node_name"],
                    target_label="instance",
                    replacement=f"$1:{instance_suffix}",
                ),
            ],
            "metric_relabel_configs": [
                relabel_config(action="drop", source_labels=["__name__"], regex=pattern) for pattern in drops
            ],
        }

    return [
        job("kubelet/metrics", "/metrics", "metrics", KUBELET_METRICS_DROP_PATTERNS),
        job("kubelet/cadvisor", "/metrics/cadvisor", "cadvisor", CADVISOR_METRICS_DROP_PATTERNS),
    ]


# ---------------------------------------------------------------------------
# Alerting configuration
# ---------------------------------------------------------------------------


def managed_alertmanager_config(operator_namespace: str, port: int) -> dict[str, Any]:
    return {
        "scheme": "http",
        "api_version": "v2",
        "static_configs": [{"targets": [f"alertmanager.{operator_namespace}:{port}"]}],
    }


def alertmanager_endpoint_config(am: AlertmanagerEndpoint, resolver: SecretResolver) -> dict[str, Any]:
    """Build one ``alertmanager_config`` entry.

    Referenced secret and config map keys are fetched through *resolver* and
    referenced by file path; their bytes never appear in the document.
    """
    cfg: dict[str, Any] = {
        "scheme": am.scheme or "http",
        "api_version": am.api_version or "v2",
    }
    if am.path_prefix:
        cfg["path_prefix"] = am.path_prefix
    if am.timeout:
        cfg["timeout"] = format_duration(parse_duration(am.timeout))

    if am.authorization is not None:
        auth: dict[str, Any] = {}
        if am.authorization.type:
            auth["type"] = am.authorization.type
        if am.authorization.credentials is not None:
            auth["credentials_file"] = resolver.resolve_secret(am.authorization.credentials)
        cfg["authorization"] = auth

    if am.tls is not None:
        tls: dict[str, Any] = {}
        if am.tls.ca is not None:
            tls["ca_file"] = resolver.resolve(am.tls.ca)
        if am.tls.cert is not None:
            tls["cert_file"] = resolver.resolve(am.tls.cert)
        if am.tls.key_secret is not None:
            tls["key_file"] = resolver.resolve_secret(am.tls.key_secret)
        if am.tls.server_name:
            tls["server_name"] = am.tls.server_name
        tls["insecure_skip_verify"] = am.tls.insecure_skip_verify
        if am.tls.min_version:
            tls["min_version"] = _tls_version(am.tls.min_version)
        if am.tls.max_version:
            tls["max_version"] = _tls_version(am.tls.max_version)
        cfg["tls_config"] = tls

    cfg["kubernetes_sd_configs"] = [{"role": "endpoints", "namespaces": {"names": [am.namespace]}}]

    relabels = [
        relabel_config(
            action="keep",
            source_labels=["__meta_kubernetes_endpoints_name"],
            regex=am.name,
        )
    ]
    if am.port.name:
        relabels.append(
            relabel_config(
                action="keep",
                source_labels=["__meta_kubernetes_endpoint_port_name"],
                regex=am.port.name,
            )
        )
    elif am.port.number:
        relabels.append(
            relabel_config(
                action="replace",
                source_labels=["__address__"],
                regex=r"(.+):\d+",
                target_label="__address__",
                replacement=f"$1:{am.port.number}",
            )
        )
    cfg["relabel_configs"] = relabels
    return cfg


def make_alertmanager_configs(
    endpoints: Sequence[AlertmanagerEndpoint],
    resolver: SecretResolver,
    *,
    operator_namespace: str,
    managed_port: int | None = None,
) -> list[dict[str, Any]]:
    """Return alerting configs, with the managed Alertmanager prepended when present.

    Raises :class:`CompileError` when any declared endpoint cannot be built;
    secret dereference failures surface the same way.
    """
    configs = []
    if managed_port is not None:
        configs.append(managed_alertmanager_config(operator_namespace, managed_port))
    for am in endpoints:
        try:
            configs.append(alertmanager_endpoint_config(am, resolver))
        except SecretResolveError as exc:
            raise CompileError(f"alertmanager {am.namespace}/{am.name}: {exc}") from exc
    return configs


def rule_evaluator_config(
    external_labels: Mapping[str, str],
    alertmanager_configs: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    return {
        "global": {"external_labels": dict(sorted(external_labels.items()))},
        "alerting": {"alertmanagers": [dict(c) for c in alertmanager_configs]},
        "rule_files": [RULE_FILES_GLOB],
    }
