from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

GROUP = "monitoring.googleapis.com"
VERSION = "v1"

CONDITION_CONFIGURATION_CREATE_SUCCESS = "ConfigurationCreateSuccess"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class ResourceKind:
    """Identity of one custom resource kind served under ``monitoring.googleapis.com/v1``."""

    kind: str
    plural: str
    namespaced: bool

    @property
    def group(self) -> str:
        return GROUP

    @property
    def version(self) -> str:
        return VERSION


POD_MONITORING = ResourceKind("PodMonitoring", "podmonitorings", namespaced=True)
CLUSTER_POD_MONITORING = ResourceKind("ClusterPodMonitoring", "clusterpodmonitorings", namespaced=False)
RULES = ResourceKind("Rules", "rules", namespaced=True)
CLUSTER_RULES = ResourceKind("ClusterRules", "clusterrules", namespaced=False)
GLOBAL_RULES = ResourceKind("GlobalRules", "globalrules", namespaced=False)
OPERATOR_CONFIG = ResourceKind("OperatorConfig", "operatorconfigs", namespaced=True)

ALL_KINDS = (
    POD_MONITORING,
    CLUSTER_POD_MONITORING,
    RULES,
    CLUSTER_RULES,
    GLOBAL_RULES,
    OPERATOR_CONFIG,
)


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list | tuple) else []


def _str_map(value: Any) -> dict[str, str]:
    return {str(k): str(v) for k, v in _mapping(value).items()}


@dataclass(frozen=True)
class ObjectMeta:
    name: str
    namespace: str = ""
    generation: int = 0
    resource_version: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ObjectMeta:
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace") or ""),
            generation=int(data.get("generation") or 0),
            resource_version=str(data.get("resourceVersion") or ""),
        )


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonitoringCondition:
    type: str
    status: str
    last_update_time: str = ""
    last_transition_time: str = ""
    reason: str = ""
    message: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MonitoringCondition:
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", "")),
            last_update_time=str(data.get("lastUpdateTime") or ""),
            last_transition_time=str(data.get("lastTransitionTime") or ""),
            reason=str(data.get("reason") or ""),
            message=str(data.get("message") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        out = {
            "type": self.type,
            "status": self.status,
            "lastUpdateTime": self.last_update_time,
            "lastTransitionTime": self.last_transition_time,
        }
        if self.reason:
            out["reason"] = self.reason
        if self.message:
            out["message"] = self.message
        return out


@dataclass(frozen=True)
class MonitoringStatus:
    observed_generation: int = 0
    conditions: tuple[MonitoringCondition, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MonitoringStatus:
        return cls(
            observed_generation=int(data.get("observedGeneration") or 0),
            conditions=tuple(
                MonitoringCondition.from_dict(_mapping(c)) for c in _list(data.get("conditions"))
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    def with_condition(
        self, generation: int, now: str, condition: MonitoringCondition
    ) -> tuple[MonitoringStatus, bool]:
        """Return the status with *condition* applied and whether it must be written.

        The status changes only when the resource generation moved or the
        condition status transitioned.  ``lastTransitionTime`` is carried over
        from the previous condition of the same type when the status is
        unchanged.
        """
        if not condition.type or not condition.status:
            raise ValueError("condition needs both 'type' and 'status' fields set")

        conditions: dict[str, MonitoringCondition] = {
            CONDITION_CONFIGURATION_CREATE_SUCCESS: MonitoringCondition(
                type=CONDITION_CONFIGURATION_CREATE_SUCCESS,
                status=CONDITION_UNKNOWN,
                last_update_time=now,
                last_transition_time=now,
            )
        }
        for existing in self.conditions:
            conditions[existing.type] = existing

        previous = conditions.get(condition.type)
        if previous is not None and previous.status == condition.status:
            applied = replace(
                condition,
                last_update_time=now,
                last_transition_time=previous.last_transition_time,
            )
            transition = False
        else:
            applied = replace(condition, last_update_time=now, last_transition_time=now)
            transition = True
        conditions[condition.type] = applied

        if self.observed_generation != generation or transition:
            return MonitoringStatus(
                observed_generation=generation,
                conditions=tuple(conditions.values()),
            ), True
        return self, False


# ---------------------------------------------------------------------------
# Selectors and references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LabelSelectorRequirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()


@dataclass(frozen=True)
class LabelSelector:
    match_labels: Mapping[str, str] = field(default_factory=dict)
    match_expressions: tuple[LabelSelectorRequirement, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LabelSelector:
        return cls(
            match_labels=_str_map(data.get("matchLabels")),
            match_expressions=tuple(
                LabelSelectorRequirement(
                    key=str(_mapping(e).get("key", "")),
                    operator=str(_mapping(e).get("operator", "")),
                    values=tuple(str(v) for v in _list(_mapping(e).get("values"))),
                )
                for e in _list(data.get("matchExpressions"))
            ),
        )


@dataclass(frozen=True)
class Port:
    """An int-or-string port reference.  A string always names a port."""

    name: str = ""
    number: int = 0

    @classmethod
    def parse(cls, value: Any) -> Port:
        if isinstance(value, bool) or value is None:
            return cls()
        if isinstance(value, int):
            return cls(number=value)
        return cls(name=str(value))

    def __str__(self) -> str:
        return self.name if self.name else str(self.number)


@dataclass(frozen=True)
class SecretKeySelector:
    """A secret key reference.

    ``namespace`` is only meaningful on ClusterPodMonitoring endpoints; every
    other reference resolves in the namespace of the referencing object.
    """

    name: str
    key: str
    namespace: str = ""

    @classmethod
    def parse(cls, value: Any) -> SecretKeySelector | None:
        if not isinstance(value, Mapping):
            return None
        return cls(
            name=str(value.get("name", "")),
            key=str(value.get("key", "")),
            namespace=str(value.get("namespace") or ""),
        )

    @classmethod
    def parse_wrapped(cls, value: Any) -> SecretKeySelector | None:
        """Parse the ``{secret: {...}}`` form used by scrape endpoint auth fields."""
        if not isinstance(value, Mapping):
            return None
        return cls.parse(value.get("secret"))

    def to_dict(self) -> dict[str, str]:
        out = {"name": self.name, "key": self.key}
        if self.namespace:
            out["namespace"] = self.namespace
        return out


@dataclass(frozen=True)
class ConfigMapKeySelector:
    name: str
    key: str


@dataclass(frozen=True)
class SecretOrConfigMap:
    secret: SecretKeySelector | None = None
    config_map: ConfigMapKeySelector | None = None

    @classmethod
    def parse(cls, value: Any) -> SecretOrConfigMap | None:
        if not isinstance(value, Mapping):
            return None
        cm = value.get("configMap")
        return cls(
            secret=SecretKeySelector.parse(value.get("secret")),
            config_map=(
                ConfigMapKeySelector(name=str(cm.get("name", "")), key=str(cm.get("key", "")))
                if isinstance(cm, Mapping)
                else None
            ),
        )


# ---------------------------------------------------------------------------
# PodMonitoring / ClusterPodMonitoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RelabelingRule:
    source_labels: tuple[str, ...] = ()
    separator: str = ""
    target_label: str = ""
    regex: str = ""
    modulus: int = 0
    replacement: str = ""
    action: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RelabelingRule:
        return cls(
            source_labels=tuple(str(s) for s in _list(data.get("sourceLabels"))),
            separator=str(data.get("separator") or ""),
            target_label=str(data.get("targetLabel") or ""),
            regex=str(data.get("regex") or ""),
            modulus=int(data.get("modulus") or 0),
            replacement=str(data.get("replacement") or ""),
            action=str(data.get("action") or ""),
        )


@dataclass(frozen=True)
class EndpointTLS:
    ca: SecretKeySelector | None = None
    cert: SecretKeySelector | None = None
    key_secret: SecretKeySelector | None = None
    server_name: str = ""
    insecure_skip_verify: bool = False
    min_version: str = ""
    max_version: str = ""

    @classmethod
    def parse(cls, value: Any) -> EndpointTLS | None:
        if not isinstance(value, Mapping):
            return None
        return cls(
            ca=SecretKeySelector.parse_wrapped(value.get("ca")),
            cert=SecretKeySelector.parse_wrapped(value.get("cert")),
            key_secret=SecretKeySelector.parse_wrapped(value.get("keySecret")),
            server_name=str(value.get("serverName") or ""),
            insecure_skip_verify=bool(value.get("insecureSkipVerify", False)),
            min_version=str(value.get("minVersion") or ""),
            max_version=str(value.get("maxVersion") or ""),
        )

    def secrets(self) -> list[SecretKeySelector]:
        return [s for s in (self.ca, self.cert, self.key_secret) if s is not None]


@dataclass(frozen=True)
class Authorization:
    type: str = ""
    credentials: SecretKeySelector | None = None


@dataclass(frozen=True)
class BasicAuth:
    username: str = ""
    password: SecretKeySelector | None = None


@dataclass(frozen=True)
class OAuth2:
    client_id: str = ""
    client_secret: SecretKeySelector | None = None
    scopes: tuple[str, ...] = ()
    token_url: str = ""
    endpoint_params: Mapping[str, str] = field(default_factory=dict)
    tls: EndpointTLS | None = None
    proxy_url: str = ""

    @classmethod
    def parse(cls, value: Any) -> OAuth2 | None:
        if not isinstance(value, Mapping):
            return None
        return cls(
            client_id=str(value.get("clientID") or ""),
            client_secret=SecretKeySelector.parse_wrapped(value.get("clientSecret")),
            scopes=tuple(str(s) for s in _list(value.get("scopes"))),
            token_url=str(value.get("tokenURL") or ""),
            endpoint_params=_str_map(value.get("endpointParams")),
            tls=EndpointTLS.parse(value.get("tlsConfig")),
            proxy_url=str(value.get("proxyUrl") or ""),
        )


@dataclass(frozen=True)
class ScrapeEndpoint:
    port: Port = field(default_factory=Port)
    scheme: str = ""
    params: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    path: str = ""
    interval: str = ""
    timeout: str = ""
    metric_relabeling: tuple[RelabelingRule, ...] = ()
    proxy_url: str = ""
    tls: EndpointTLS | None = None
    authorization: Authorization | None = None
    basic_auth: BasicAuth | None = None
    oauth2: OAuth2 | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ScrapeEndpoint:
        auth = data.get("authorization")
        basic = data.get("basicAuth")
        return cls(
            port=Port.parse(data.get("port")),
            scheme=str(data.get("scheme") or ""),
            params={
                str(k): tuple(str(v) for v in _list(vs))
                for k, vs in _mapping(data.get("params")).items()
            },
            path=str(data.get("path") or ""),
            interval=str(data.get("interval") or ""),
            timeout=str(data.get("timeout") or ""),
            metric_relabeling=tuple(
                RelabelingRule.from_dict(_mapping(r)) for r in _list(data.get("metricRelabeling"))
            ),
            proxy_url=str(data.get("proxyUrl") or ""),
            tls=EndpointTLS.parse(data.get("tls")),
            authorization=(
                Authorization(
                    type=str(auth.get("type") or ""),
                    credentials=SecretKeySelector.parse_wrapped(auth.get("credentials")),
                )
                if isinstance(auth, Mapping)
                else None
            ),
            basic_auth=(
                BasicAuth(
                    username=str(basic.get("username") or ""),
                    password=SecretKeySelector.parse_wrapped(basic.get("password")),
                )
                if isinstance(basic, Mapping)
                else None
            ),
            oauth2=OAuth2.parse(data.get("oauth2")),
        )

    def secrets(self) -> list[SecretKeySelector]:
        """Every secret key this endpoint's HTTP client references."""
        out: list[SecretKeySelector] = []
        if self.authorization is not None and self.authorization.credentials is not None:
            out.append(self.authorization.credentials)
        if self.basic_auth is not None and self.basic_auth.password is not None:
            out.append(self.basic_auth.password)
        if self.tls is not None:
            out.extend(self.tls.secrets())
        if self.oauth2 is not None:
            if self.oauth2.client_secret is not None:
                out.append(self.oauth2.client_secret)
            if self.oauth2.tls is not None:
                out.extend(self.oauth2.tls.secrets())
        return out


@dataclass(frozen=True)
class LabelMapping:
    source: str
    target: str = ""


@dataclass(frozen=True)
class TargetLabels:
    metadata: tuple[str, ...] | None = None
    from_pod: tuple[LabelMapping, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TargetLabels:
        metadata = data.get("metadata")
        return cls(
            metadata=tuple(str(m) for m in metadata) if isinstance(metadata, list) else None,
            from_pod=tuple(
                LabelMapping(
                    source=str(_mapping(m).get("from", "")),
                    target=str(_mapping(m).get("to") or ""),
                )
                for m in _list(data.get("fromPod"))
            ),
        )


@dataclass(frozen=True)
class ScrapeLimits:
    samples: int = 0
    labels: int = 0
    label_name_length: int = 0
    label_value_length: int = 0

    @classmethod
    def parse(cls, value: Any) -> ScrapeLimits | None:
        if not isinstance(value, Mapping):
            return None
        return cls(
            samples=int(value.get("samples") or 0),
            labels=int(value.get("labels") or 0),
            label_name_length=int(value.get("labelNameLength") or 0),
            label_value_length=int(value.get("labelValueLength") or 0),
        )


@dataclass(frozen=True)
class PodMonitoring:
    """Snapshot of a PodMonitoring or ClusterPodMonitoring resource.

    ``kind`` distinguishes the two; a ClusterPodMonitoring has an empty
    ``metadata.namespace`` and is not restricted to one namespace.
    """

    kind: ResourceKind
    metadata: ObjectMeta
    selector: LabelSelector = field(default_factory=LabelSelector)
    endpoints: tuple[ScrapeEndpoint, ...] = ()
    target_labels: TargetLabels = field(default_factory=TargetLabels)
    limits: ScrapeLimits | None = None
    filter_running: bool = True
    status: MonitoringStatus = field(default_factory=MonitoringStatus)
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], kind: ResourceKind = POD_MONITORING) -> PodMonitoring:
        spec = _mapping(data.get("spec"))
        filter_running = spec.get("filterRunning")
        return cls(
            kind=kind,
            metadata=ObjectMeta.from_dict(_mapping(data.get("metadata"))),
            selector=LabelSelector.from_dict(_mapping(spec.get("selector"))),
            endpoints=tuple(ScrapeEndpoint.from_dict(_mapping(e)) for e in _list(spec.get("endpoints"))),
            target_labels=TargetLabels.from_dict(_mapping(spec.get("targetLabels"))),
            limits=ScrapeLimits.parse(spec.get("limits")),
            filter_running=filter_running is None or bool(filter_running),
            status=MonitoringStatus.from_dict(_mapping(data.get("status"))),
            raw=data,
        )

    def secret_namespace(self, selector: SecretKeySelector) -> str:
        """The namespace *selector* resolves in for this resource."""
        if self.kind.namespaced:
            return self.metadata.namespace
        return selector.namespace

    @property
    def key(self) -> str:
        if self.kind.namespaced:
            return f"{self.kind.kind}/{self.metadata.namespace}/{self.metadata.name}"
        return f"{self.kind.kind}/{self.metadata.name}"


def parse_cluster_pod_monitoring(data: Mapping[str, Any]) -> PodMonitoring:
    return PodMonitoring.from_dict(data, kind=CLUSTER_POD_MONITORING)


# ---------------------------------------------------------------------------
# OperatorConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertmanagerTLS:
    ca: SecretOrConfigMap | None = None
    cert: SecretOrConfigMap | None = None
    key_secret: SecretKeySelector | None = None
    server_name: str = ""
    insecure_skip_verify: bool = False
    min_version: str = ""
    max_version: str = ""


@dataclass(frozen=True)
class AlertmanagerEndpoint:
    namespace: str
    name: str
    port: Port = field(default_factory=Port)
    scheme: str = ""
    path_prefix: str = ""
    api_version: str = ""
    timeout: str = ""
    authorization: Authorization | None = None
    tls: AlertmanagerTLS | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AlertmanagerEndpoint:
        auth = data.get("authorization")
        tls = data.get("tls")
        return cls(
            namespace=str(data.get("namespace", "")),
            name=str(data.get("name", "")),
            port=Port.parse(data.get("port")),
            scheme=str(data.get("scheme") or ""),
            path_prefix=str(data.get("pathPrefix") or ""),
            api_version=str(data.get("apiVersion") or ""),
            timeout=str(data.get("timeout") or ""),
            authorization=(
                Authorization(
                    type=str(auth.get("type") or ""),
                    credentials=SecretKeySelector.parse(auth.get("credentials")),
                )
                if isinstance(auth, Mapping)
                else None
            ),
            tls=(
                AlertmanagerTLS(
                    ca=SecretOrConfigMap.parse(tls.get("ca")),
                    cert=SecretOrConfigMap.parse(tls.get("cert")),
                    key_secret=SecretKeySelector.parse(tls.get("keySecret")),
                    server_name=str(tls.get("serverName") or ""),
                    insecure_skip_verify=bool(tls.get("insecureSkipVerify", False)),
                    min_version=str(tls.get("minVersion") or ""),
                    max_version=str(tls.get("maxVersion") or ""),
                )
                if isinstance(tls, Mapping)
                else None
            ),
        )


@dataclass(frozen=True)
class RuleEvaluatorSpec:
    external_labels: Mapping[str, str] = field(default_factory=dict)
    query_project_id: str = ""
    generator_url: str = ""
    credentials: SecretKeySelector | None = None
    alertmanagers: tuple[AlertmanagerEndpoint, ...] = ()


COMPRESSION_NONE = "none"
COMPRESSION_GZIP = "gzip"
COMPRESSION_TYPES = ("", COMPRESSION_NONE, COMPRESSION_GZIP)


@dataclass(frozen=True)
class CollectionSpec:
    external_labels: Mapping[str, str] = field(default_factory=dict)
    credentials: SecretKeySelector | None = None
    kubelet_scraping_interval: str | None = None
    match_one_of: tuple[str, ...] = ()
    compression: str = ""


@dataclass(frozen=True)
class ManagedAlertmanagerSpec:
    config_secret: SecretKeySelector | None = None
    external_url: str = ""


@dataclass(frozen=True)
class OperatorConfig:
    metadata: ObjectMeta
    collection: CollectionSpec = field(default_factory=CollectionSpec)
    rules: RuleEvaluatorSpec = field(default_factory=RuleEvaluatorSpec)
    managed_alertmanager: ManagedAlertmanagerSpec | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OperatorConfig:
        collection = _mapping(data.get("collection"))
        rules = _mapping(data.get("rules"))
        alerting = _mapping(rules.get("alerting"))
        kubelet = collection.get("kubeletScraping")
        managed_am = data.get("managedAlertmanager")
        return cls(
            metadata=ObjectMeta.from_dict(_mapping(data.get("metadata"))),
            collection=CollectionSpec(
                external_labels=_str_map(collection.get("externalLabels")),
                credentials=SecretKeySelector.parse(collection.get("credentials")),
                kubelet_scraping_interval=(
                    str(kubelet.get("interval") or "") if isinstance(kubelet, Mapping) else None
                ),
                match_one_of=tuple(
                    str(m) for m in _list(_mapping(collection.get("filter")).get("matchOneOf"))
                ),
                compression=str(collection.get("compression") or ""),
            ),
            rules=RuleEvaluatorSpec(
                external_labels=_str_map(rules.get("externalLabels")),
                query_project_id=str(rules.get("queryProjectID") or ""),
                generator_url=str(rules.get("generatorUrl") or ""),
                credentials=SecretKeySelector.parse(rules.get("credentials")),
                alertmanagers=tuple(
                    AlertmanagerEndpoint.from_dict(_mapping(am))
                    for am in _list(alerting.get("alertmanagers"))
                ),
            ),
            managed_alertmanager=(
                ManagedAlertmanagerSpec(
                    config_secret=SecretKeySelector.parse(managed_am.get("configSecret")),
                    external_url=str(managed_am.get("externalURL") or ""),
                )
                if isinstance(managed_am, Mapping)
                else None
            ),
            raw=data,
        )


DEFAULT_KUBELET_SCRAPE_INTERVAL = "30s"


def default_operator_config(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of an OperatorConfig body with optional fields defaulted.

    Alertmanager endpoints get ``scheme: http`` and ``apiVersion: v2``, and
    an enabled kubelet scraping block gets a ``30s`` interval.  The input is
    never mutated so callers can compare before and after to decide whether
    the defaulted object must be written back.
    """
    out = copy.deepcopy(dict(data))
    collection = out.get("collection")
    if isinstance(collection, dict):
        kubelet = collection.get("kubeletScraping")
        if isinstance(kubelet, dict) and not kubelet.get("interval"):
            kubelet["interval"] = DEFAULT_KUBELET_SCRAPE_INTERVAL
    rules = out.get("rules")
    if isinstance(rules, dict):
        alerting = rules.get("alerting")
        if isinstance(alerting, dict):
            for am in _list(alerting.get("alertmanagers")):
                if isinstance(am, dict):
                    am.setdefault("scheme", "http")
                    am.setdefault("apiVersion", "v2")
    return out


# ---------------------------------------------------------------------------
# Rules / ClusterRules / GlobalRules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    expr: str
    record: str = ""
    alert: str = ""
    for_: str = ""
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleGroup:
    name: str
    interval: str = ""
    rules: tuple[Rule, ...] = ()


@dataclass(frozen=True)
class RulesResource:
    """Snapshot of a Rules, ClusterRules or GlobalRules resource."""

    kind: ResourceKind
    metadata: ObjectMeta
    groups: tuple[RuleGroup, ...] = ()
    status: MonitoringStatus = field(default_factory=MonitoringStatus)
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], kind: ResourceKind = RULES) -> RulesResource:
        spec = _mapping(data.get("spec"))
        groups = []
        for g in _list(spec.get("groups")):
            g = _mapping(g)
            groups.append(
                RuleGroup(
                    name=str(g.get("name", "")),
                    interval=str(g.get("interval") or ""),
                    rules=tuple(
                        Rule(
                            expr=str(_mapping(r).get("expr", "")),
                            record=str(_mapping(r).get("record") or ""),
                            alert=str(_mapping(r).get("alert") or ""),
                            for_=str(_mapping(r).get("for") or ""),
                            labels=_str_map(_mapping(r).get("labels")),
                            annotations=_str_map(_mapping(r).get("annotations")),
                        )
                        for r in _list(g.get("rules"))
                    ),
                )
            )
        return cls(
            kind=kind,
            metadata=ObjectMeta.from_dict(_mapping(data.get("metadata"))),
            groups=tuple(groups),
            status=MonitoringStatus.from_dict(_mapping(data.get("status"))),
            raw=data,
        )

    @property
    def key(self) -> str:
        if self.kind.namespaced:
            return f"{self.kind.kind}/{self.metadata.namespace}/{self.metadata.name}"
        return f"{self.kind.kind}/{self.metadata.name}"
