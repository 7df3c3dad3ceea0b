from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from monitoring_operator.src.compiler import StatusAccumulator, dump_yaml
from monitoring_operator.src.promql import PromQLError, inject_matchers
from monitoring_operator.src.relabel import (
    KEY_CLUSTER,
    KEY_LOCATION,
    KEY_PROJECT_ID,
    CompileError,
    format_duration,
    parse_duration,
)
from monitoring_operator.src.resources import (
    CLUSTER_RULES,
    GLOBAL_RULES,
    RULES,
    Rule,
    RuleGroup,
    RulesResource,
)

LOGGER = logging.getLogger(__name__)

RULES_CONFIGMAP_NAME = "rules-generated"
EMPTY_RULES_FILE = "empty.yaml"
REASON_RULE_GENERATION_ERROR = "RuleGenerationError"

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def rules_file_name(resource: RulesResource) -> str:
    meta = resource.metadata
    if resource.kind == RULES:
        return f"rules__{meta.namespace}__{meta.name}.yaml"
    if resource.kind == CLUSTER_RULES:
        return f"clusterrules__{meta.name}.yaml"
    return f"globalrules__{meta.name}.yaml"


def scope_labels(resource: RulesResource, labels: tuple[str, str, str]) -> dict[str, str]:
    """Return the labels every rule of *resource* is restricted to.

    Rules are scoped to their namespace and cluster, ClusterRules to the
    cluster, GlobalRules are left unscoped.
    """
    if resource.kind == GLOBAL_RULES:
        return {}
    project_id, location, cluster = labels
    scope = {
        KEY_PROJECT_ID: project_id,
        KEY_LOCATION: location,
        KEY_CLUSTER: cluster,
    }
    if resource.kind == RULES:
        scope["namespace"] = resource.metadata.namespace
    return scope


def _validate_rule(rule: Rule) -> None:
    if bool(rule.record) == bool(rule.alert):
        raise CompileError("exactly one of 'record' and 'alert' must be set")
    if rule.record and not _METRIC_NAME_RE.match(rule.record):
        raise CompileError(f"invalid recording rule name {rule.record!r}")
    if not rule.expr.strip():
        raise CompileError("field 'expr' must be set")
    if rule.record and (rule.for_ or rule.annotations):
        raise CompileError(f"recording rule {rule.record!r} cannot set 'for' or 'annotations'")
    if rule.for_:
        parse_duration(rule.for_)
    for name in rule.labels:
        if not _LABEL_NAME_RE.match(name):
            raise CompileError(f"invalid label name {name!r}")


def _rule_document(rule: Rule, scope: dict[str, str]) -> dict[str, Any]:
    try:
        expr = inject_matchers(rule.expr, scope)
    except PromQLError as exc:
        raise CompileError(f"invalid expression {rule.expr!r}: {exc}") from exc

    labels = dict(rule.labels)
    for name, value in scope.items():
        if not value:
            continue
        if name in labels:
            raise CompileError(f"label {name!r} must not be set on the rule")
        labels[name] = value

    doc: dict[str, Any] = {}
    if rule.record:
        doc["record"] = rule.record
    else:
        doc["alert"] = rule.alert
    doc["expr"] = expr
    if rule.for_:
        doc["for"] = format_duration(parse_duration(rule.for_))
    if labels:
        doc["labels"] = dict(sorted(labels.items()))
    if rule.annotations:
        doc["annotations"] = dict(sorted(rule.annotations.items()))
    return doc


def _group_document(group: RuleGroup, scope: dict[str, str]) -> dict[str, Any]:
    if not group.name:
        raise CompileError("rule group name must be set")
    doc: dict[str, Any] = {"name": group.name}
    if group.interval:
        doc["interval"] = format_duration(parse_duration(group.interval))
    rules = []
    for index, rule in enumerate(group.rules):
        try:
            _validate_rule(rule)
            rules.append(_rule_document(rule, scope))
        except CompileError as exc:
            raise CompileError(f"group {group.name!r}, rule {index}: {exc}") from exc
    doc["rules"] = rules
    return doc


def rule_file(resource: RulesResource, labels: tuple[str, str, str]) -> dict[str, Any]:
    """Render *resource* as a Prometheus rule file document.

    Raises :class:`CompileError` for invalid groups, rules or expressions.
    """
    scope = scope_labels(resource, labels)
    seen: set[str] = set()
    groups = []
    for group in resource.groups:
        if group.name in seen:
            raise CompileError(f"duplicate rule group name {group.name!r}")
        seen.add(group.name)
        groups.append(_group_document(group, scope))
    return {"groups": groups}


@dataclass
class RuleFileSet:
    files: dict[str, str] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)


def generate_rule_files(
    resources: Iterable[RulesResource],
    labels: tuple[str, str, str],
    status: StatusAccumulator | None = None,
) -> RuleFileSet:
    """Render every rules resource into its own file.

    A resource that fails is marked on *status* and left out; the others are
    still generated.  ``empty.yaml`` is always present so the evaluator's
    rule file glob never matches nothing.
    """
    result = RuleFileSet(files={EMPTY_RULES_FILE: ""})
    for resource in resources:
        try:
            result.files[rules_file_name(resource)] = dump_yaml(rule_file(resource, labels))
        except CompileError as exc:
            message = str(exc)
            result.diagnostics.append(f"{resource.key}: {message}")
            LOGGER.warning("Generating rules failed for %s: %s", resource.key, message)
            if status is not None:
                status.failed(resource, message, reason=REASON_RULE_GENERATION_ERROR)
            continue
        if status is not None:
            status.succeeded(resource)
    result.files = dict(sorted(result.files.items()))
    return result
