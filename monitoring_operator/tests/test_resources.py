from __future__ import annotations

import pytest

from monitoring_operator.src.resources import (
    CLUSTER_POD_MONITORING,
    CONDITION_CONFIGURATION_CREATE_SUCCESS,
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    MonitoringCondition,
    MonitoringStatus,
    OperatorConfig,
    PodMonitoring,
    Port,
    RulesResource,
    SecretOrConfigMap,
    default_operator_config,
)


def _success(status: str = CONDITION_TRUE) -> MonitoringCondition:
    return MonitoringCondition(type=CONDITION_CONFIGURATION_CREATE_SUCCESS, status=status)


# ---------------------------------------------------------------------------
# Status conditions
# ---------------------------------------------------------------------------


def test_first_condition_is_written_with_transition_time() -> None:
    status, changed = MonitoringStatus().with_condition(1, "t1", _success())

    assert changed is True
    assert status.observed_generation == 1
    (condition,) = status.conditions
    assert condition.status == CONDITION_TRUE
    assert condition.last_transition_time == "t1"
    assert condition.last_update_time == "t1"


def test_unchanged_condition_at_same_generation_is_not_written() -> None:
    status, _ = MonitoringStatus().with_condition(1, "t1", _success())

    again, changed = status.with_condition(1, "t2", _success())

    assert changed is False
    assert again is status


def test_generation_bump_writes_but_keeps_transition_time() -> None:
    status, _ = MonitoringStatus().with_condition(1, "t1", _success())

    updated, changed = status.with_condition(2, "t2", _success())

    assert changed is True
    assert updated.observed_generation == 2
    assert updated.conditions[0].last_transition_time == "t1"
    assert updated.conditions[0].last_update_time == "t2"


def test_status_transition_moves_transition_time() -> None:
    status, _ = MonitoringStatus().with_condition(1, "t1", _success())

    updated, changed = status.with_condition(1, "t2", _success(CONDITION_FALSE))

    assert changed is True
    assert updated.conditions[0].status == CONDITION_FALSE
    assert updated.conditions[0].last_transition_time == "t2"


def test_missing_success_condition_defaults_to_unknown() -> None:
    status, _ = MonitoringStatus().with_condition(1, "t1", MonitoringCondition(type="Other", status=CONDITION_TRUE))

    by_type = {c.type: c for c in status.conditions}
    assert by_type[CONDITION_CONFIGURATION_CREATE_SUCCESS].status == CONDITION_UNKNOWN
    assert by_type["Other"].status == CONDITION_TRUE


def test_condition_requires_type_and_status() -> None:
    with pytest.raises(ValueError, match="type"):
        MonitoringStatus().with_condition(1, "t1", MonitoringCondition(type="", status=CONDITION_TRUE))


def test_status_round_trips_through_dict() -> None:
    status, _ = MonitoringStatus().with_condition(3, "t1", _success(CONDITION_FALSE))
    data = status.to_dict()

    assert data["observedGeneration"] == 3
    assert MonitoringStatus.from_dict(data) == status


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_port_parse_distinguishes_names_from_numbers() -> None:
    assert Port.parse(8080) == Port(number=8080)
    assert Port.parse("metrics") == Port(name="metrics")
    assert Port.parse("8080") == Port(name="8080")
    assert str(Port.parse(9090)) == "9090"


def test_pod_monitoring_from_dict() -> None:
    pm = PodMonitoring.from_dict(
        {
            "metadata": {"name": "app", "namespace": "ns1", "generation": 4},
            "spec": {
                "selector": {"matchLabels": {"app": "foo"}},
                "endpoints": [{"port": "metrics", "interval": "15s", "params": {"a": ["1", "2"]}}],
                "targetLabels": {"metadata": ["pod"], "fromPod": [{"from": "team", "to": "owner"}]},
                "limits": {"samples": 100},
            },
        }
    )

    assert pm.key == "PodMonitoring/ns1/app"
    assert pm.metadata.generation == 4
    assert pm.selector.match_labels == {"app": "foo"}
    assert pm.endpoints[0].port.name == "metrics"
    assert pm.endpoints[0].params == {"a": ("1", "2")}
    assert pm.target_labels.metadata == ("pod",)
    assert pm.target_labels.from_pod[0].target == "owner"
    assert pm.limits is not None and pm.limits.samples == 100


def test_cluster_pod_monitoring_key_has_no_namespace() -> None:
    pm = PodMonitoring.from_dict({"metadata": {"name": "all"}}, CLUSTER_POD_MONITORING)

    assert pm.key == "ClusterPodMonitoring/all"
    assert pm.target_labels.metadata is None


def test_secret_or_config_map_parse() -> None:
    ref = SecretOrConfigMap.parse({"configMap": {"name": "ca", "key": "ca.crt"}})

    assert ref is not None
    assert ref.secret is None
    assert ref.config_map is not None and ref.config_map.key == "ca.crt"
    assert SecretOrConfigMap.parse("nope") is None


def test_operator_config_from_dict() -> None:
    config = OperatorConfig.from_dict(
        {
            "metadata": {"name": "config", "namespace": "gmp-public"},
            "collection": {
                "externalLabels": {"cluster": "c2"},
                "credentials": {"name": "gcp", "key": "key.json"},
                "kubeletScraping": {"interval": "10s"},
            },
            "rules": {
                "queryProjectID": "q",
                "alerting": {"alertmanagers": [{"namespace": "mon", "name": "am", "port": "web"}]},
            },
            "managedAlertmanager": {"externalURL": "https://am.example.com"},
        }
    )

    assert config.collection.external_labels == {"cluster": "c2"}
    assert config.collection.credentials is not None
    assert config.collection.kubelet_scraping_interval == "10s"
    assert config.rules.query_project_id == "q"
    assert config.rules.alertmanagers[0].port.name == "web"
    assert config.managed_alertmanager is not None
    assert config.managed_alertmanager.external_url == "https://am.example.com"


def test_default_operator_config_fills_optional_fields_without_mutating() -> None:
    raw = {
        "collection": {"kubeletScraping": {}},
        "rules": {"alerting": {"alertmanagers": [{"name": "am", "namespace": "mon", "scheme": "https"}]}},
    }

    defaulted = default_operator_config(raw)

    assert defaulted["collection"]["kubeletScraping"]["interval"] == "30s"
    am = defaulted["rules"]["alerting"]["alertmanagers"][0]
    assert am["scheme"] == "https"
    assert am["apiVersion"] == "v2"
    assert raw["collection"]["kubeletScraping"] == {}


def test_rules_resource_from_dict() -> None:
    resource = RulesResource.from_dict(
        {
            "metadata": {"name": "r", "namespace": "ns"},
            "spec": {
                "groups": [
                    {
                        "name": "g",
                        "interval": "30s",
                        "rules": [{"alert": "Down", "expr": "up == 0", "for": "5m"}],
                    }
                ]
            },
        }
    )

    assert resource.key == "Rules/ns/r"
    assert resource.groups[0].rules[0].for_ == "5m"
