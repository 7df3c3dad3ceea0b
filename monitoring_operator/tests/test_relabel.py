from __future__ import annotations

import pytest

from monitoring_operator.src.relabel import (
    CompileError,
    check_series_matcher,
    convert_relabeling_rule,
    format_duration,
    parse_duration,
    resolve_labels,
    sanitize_label_name,
    selector_relabel_configs,
)
from monitoring_operator.src.resources import LabelSelector, RelabelingRule


@pytest.mark.parametrize(
    ("text", "ms"),
    [("0", 0), ("15s", 15_000), ("1m30s", 90_000), ("1h", 3_600_000), ("500ms", 500), ("1d", 86_400_000)],
)
def test_parse_duration(text: str, ms: int) -> None:
    assert parse_duration(text) == ms


@pytest.mark.parametrize("text", ["", "abc", "1x", "-5s", "1.5s"])
def test_parse_duration_rejects_invalid(text: str) -> None:
    with pytest.raises(CompileError, match="not a valid duration"):
        parse_duration(text)


def test_format_duration_prints_prometheus_style() -> None:
    assert format_duration(0) == "0s"
    assert format_duration(90_000) == "1m30s"
    assert format_duration(parse_duration("60s")) == "1m"
    assert format_duration(1_500) == "1s500ms"


def test_sanitize_label_name() -> None:
    assert sanitize_label_name("app.kubernetes.io/name") == "app_kubernetes_io_name"


def test_resolve_labels_external_labels_win() -> None:
    assert resolve_labels("p", "l", "c", None) == ("p", "l", "c")
    assert resolve_labels("p", "l", "c", {"cluster": "override", "other": "x"}) == ("p", "l", "override")


def test_selector_relabel_configs_translates_all_operators() -> None:
    selector = LabelSelector.from_dict(
        {
            "matchLabels": {"app": "foo"},
            "matchExpressions": [
                {"key": "tier", "operator": "In", "values": ["a", "b"]},
                {"key": "env", "operator": "NotIn", "values": ["dev"]},
                {"key": "canary", "operator": "Exists"},
                {"key": "legacy", "operator": "DoesNotExist"},
            ],
        }
    )

    assert selector_relabel_configs(selector) == [
        {"source_labels": ["__meta_kubernetes_pod_label_app"], "regex": "foo", "action": "keep"},
        {"source_labels": ["__meta_kubernetes_pod_label_tier"], "regex": "a|b", "action": "keep"},
        {"source_labels": ["__meta_kubernetes_pod_label_env"], "regex": "dev", "action": "drop"},
        {"source_labels": ["__meta_kubernetes_pod_labelpresent_canary"], "regex": "true", "action": "keep"},
        {"source_labels": ["__meta_kubernetes_pod_labelpresent_legacy"], "regex": "true", "action": "drop"},
    ]


def test_selector_relabel_configs_rejects_unknown_operator() -> None:
    selector = LabelSelector.from_dict({"matchExpressions": [{"key": "a", "operator": "Gt"}]})

    with pytest.raises(CompileError, match="unknown label selector operator"):
        selector_relabel_configs(selector)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"matchLabels": {"app": "foo("}}, "invalid matchLabels value for 'app'"),
        ({"matchExpressions": [{"key": "tier", "operator": "In", "values": ["web", "db["]}]}, "invalid In value"),
        ({"matchExpressions": [{"key": "tier", "operator": "NotIn", "values": ["*"]}]}, "invalid NotIn value"),
    ],
)
def test_selector_values_must_compile_as_regex(data: dict[str, object], message: str) -> None:
    with pytest.raises(CompileError, match=message):
        selector_relabel_configs(LabelSelector.from_dict(data))


def test_check_series_matcher() -> None:
    assert check_series_matcher("{job!='foo'}") == "{job!='foo'}"
    assert check_series_matcher("up{job=\"a\"}") == "up{job=\"a\"}"
    for bad in ("", "{}", "1up", "up{"):
        with pytest.raises(CompileError, match="invalid series matcher"):
            check_series_matcher(bad)


# ---------------------------------------------------------------------------
# Protected labels
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("target", ["project_id", "location", "cluster", "namespace", "job", "instance"])
def test_replace_onto_protected_label_is_rejected(target: str) -> None:
    with pytest.raises(CompileError, match="protected label"):
        convert_relabeling_rule(RelabelingRule(action="replace", source_labels=("a",), target_label=target))


def test_labeldrop_matching_protected_label_is_rejected() -> None:
    with pytest.raises(CompileError, match="cannot drop protected label 'job'"):
        convert_relabeling_rule(RelabelingRule(action="labeldrop", regex="jo.*"))


def test_labelkeep_must_keep_protected_labels() -> None:
    with pytest.raises(CompileError, match="must keep protected label"):
        convert_relabeling_rule(RelabelingRule(action="labelkeep", regex="foo"))


def test_labelmap_is_rejected() -> None:
    with pytest.raises(CompileError, match="labelmap"):
        convert_relabeling_rule(RelabelingRule(action="labelmap", regex="(.*)"))


def test_convert_keep_rule_defaults_regex() -> None:
    assert convert_relabeling_rule(RelabelingRule(action="Keep", source_labels=("__name__",))) == {
        "source_labels": ["__name__"],
        "regex": "(.*)",
        "action": "keep",
    }


def test_convert_hashmod_rule_keeps_all_fields() -> None:
    rule = RelabelingRule(
        action="hashmod",
        source_labels=("a", "b"),
        separator=";",
        modulus=4,
        target_label="shard",
    )

    assert convert_relabeling_rule(rule) == {
        "source_labels": ["a", "b"],
        "separator": ";",
        "regex": "(.*)",
        "modulus": 4,
        "target_label": "shard",
        "action": "hashmod",
    }


def test_invalid_regex_is_rejected() -> None:
    with pytest.raises(CompileError, match="invalid regex"):
        convert_relabeling_rule(RelabelingRule(action="drop", regex="("))
