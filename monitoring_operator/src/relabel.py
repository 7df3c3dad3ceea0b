from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from monitoring_operator.src.resources import LabelSelector, RelabelingRule

KEY_PROJECT_ID = "project_id"
KEY_LOCATION = "location"
KEY_CLUSTER = "cluster"

# Target labels owned by the controller; user rules must not rewrite them.
PROTECTED_LABELS = (
    KEY_PROJECT_ID,
    KEY_LOCATION,
    KEY_CLUSTER,
    "namespace",
    "job",
    "instance",
    "__address__",
)

DEFAULT_REGEX = "(.*)"

_INVALID_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9_]")

_DURATION_RE = re.compile(
    r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$"
)
_DURATION_UNITS_MS = (
    ("y", 365 * 24 * 60 * 60 * 1000),
    ("w", 7 * 24 * 60 * 60 * 1000),
    ("d", 24 * 60 * 60 * 1000),
    ("h", 60 * 60 * 1000),
    ("m", 60 * 1000),
    ("s", 1000),
    ("ms", 1),
)


_SERIES_MATCHER_RE = re.compile(r"^(?:[a-zA-Z_:][a-zA-Z0-9_:]*(?:\{.*\})?|\{.+\})$")


class CompileError(ValueError):
    """Raised when a monitoring resource cannot be turned into configuration."""


def check_regex(value: str, what: str = "regex") -> str:
    """Return *value* unchanged if it compiles as a regular expression."""
    try:
        re.compile(value)
    except re.error as exc:
        raise CompileError(f"invalid {what} {value!r}: {exc}") from exc
    return value


def check_series_matcher(value: str) -> str:
    """Reject text that cannot be a Prometheus series selector."""
    if not _SERIES_MATCHER_RE.match(value.strip()):
        raise CompileError(f"invalid series matcher {value!r}")
    return value


def sanitize_label_name(name: str) -> str:
    """Replace every character that is invalid in a Prometheus label name with ``_``."""
    return _INVALID_LABEL_CHARS.sub("_", name)


def parse_duration(value: str) -> int:
    """Parse a Prometheus duration such as ``1h30m`` into milliseconds."""
    if value == "0":
        return 0
    match = _DURATION_RE.match(value) if value else None
    if match is None:
        raise CompileError(f"not a valid duration string: {value!r}")
    total = 0
    for group, (_, unit_ms) in zip(match.groups(), _DURATION_UNITS_MS, strict=True):
        if group:
            total += int(group) * unit_ms
    return total


def format_duration(ms: int) -> str:
    """Render milliseconds the way Prometheus prints durations (``90000`` -> ``1m30s``)."""
    if ms == 0:
        return "0s"
    out = []
    remaining = ms
    for unit, unit_ms in _DURATION_UNITS_MS:
        count, remaining = divmod(remaining, unit_ms)
        if count:
            out.append(f"{count}{unit}")
    return "".join(out)


def resolve_labels(
    project_id: str,
    location: str,
    cluster: str,
    external_labels: Mapping[str, str] | None,
) -> tuple[str, str, str]:
    """Return the effective ``(project_id, location, cluster)``.

    Values in *external_labels* override the controller defaults.  This is the
    only place that decides label precedence.
    """
    labels = external_labels or {}
    return (
        labels.get(KEY_PROJECT_ID, project_id),
        labels.get(KEY_LOCATION, location),
        labels.get(KEY_CLUSTER, cluster),
    )


def relabel_config(
    *,
    action: str = "",
    source_labels: list[str] | None = None,
    regex: str | None = None,
    target_label: str = "",
    replacement: str | None = None,
    separator: str | None = None,
    modulus: int = 0,
) -> dict[str, Any]:
    """Build one ``relabel_configs`` entry with keys in a fixed order."""
    out: dict[str, Any] = {}
    if source_labels:
        out["source_labels"] = list(source_labels)
    if separator is not None:
        out["separator"] = separator
    if regex is not None:
        out["regex"] = regex
    if modulus:
        out["modulus"] = modulus
    if target_label:
        out["target_label"] = target_label
    if replacement is not None:
        out["replacement"] = replacement
    if action:
        out["action"] = action
    return out


def selector_relabel_configs(selector: LabelSelector) -> list[dict[str, Any]]:
    """Translate a label selector into keep/drop relabel rules on pod meta labels.

    Label values end up as relabel regexes, so each one must compile.
    """
    out = []
    for key in sorted(selector.match_labels):
        out.append(
            relabel_config(
                action="keep",
                source_labels=[f"__meta_kubernetes_pod_label_{sanitize_label_name(key)}"],
                regex=check_regex(selector.match_labels[key], f"matchLabels value for {key!r}"),
            )
        )

    for expr in selector.match_expressions:
        label = sanitize_label_name(expr.key)
        if expr.operator in ("In", "NotIn"):
            for value in expr.values:
                check_regex(value, f"{expr.operator} value for {expr.key!r}")
        if expr.operator == "In":
            out.append(
                relabel_config(
                    action="keep",
                    source_labels=[f"__meta_kubernetes_pod_label_{label}"],
                    regex=check_regex("|".join(expr.values)),
                )
            )
        elif expr.operator == "NotIn":
            out.append(
                relabel_config(
                    action="drop",
                    source_labels=[f"__meta_kubernetes_pod_label_{label}"],
                    regex=check_regex("|".join(expr.values)),
                )
            )
        elif expr.operator == "Exists":
            out.append(
                relabel_config(
                    action="keep",
                    source_labels=[f"__meta_kubernetes_pod_labelpresent_{label}"],
                    regex="true",
                )
            )
        elif expr.operator == "DoesNotExist":
            out.append(
                relabel_config(
                    action="drop",
                    source_labels=[f"__meta_kubernetes_pod_labelpresent_{label}"],
                    regex="true",
                )
            )
        else:
            raise CompileError(f"unknown label selector operator {expr.operator!r}")
    return out


def _full_match(pattern: re.Pattern[str], value: str) -> bool:
    return pattern.fullmatch(value) is not None


def convert_relabeling_rule(rule: RelabelingRule) -> dict[str, Any]:
    """Convert a user relabeling rule, rejecting rules that touch protected labels."""
    action = rule.action.lower()
    regex_text = check_regex(rule.regex or DEFAULT_REGEX)
    pattern = re.compile(regex_text)

    if action in ("", "replace", "hashmod"):
        if rule.target_label in PROTECTED_LABELS:
            raise CompileError(f"cannot relabel with action {action!r} onto protected label {rule.target_label!r}")
    elif action == "labeldrop":
        for label in PROTECTED_LABELS:
            if _full_match(pattern, label):
                raise CompileError(f"regex {regex_text!r} cannot drop protected label {label!r}")
    elif action == "labelkeep":
        for label in PROTECTED_LABELS:
            if not _full_match(pattern, label):
                raise CompileError(f"regex {regex_text!r} must keep protected label {label!r}")
    elif action == "labelmap":
        raise CompileError("relabeling with action 'labelmap' not allowed")
    elif action not in ("keep", "drop"):
        raise CompileError(f"unknown relabeling action {rule.action!r}")

    return relabel_config(
        action=action,
        source_labels=list(rule.source_labels),
        separator=rule.separator or None,
        regex=regex_text,
        modulus=rule.modulus,
        target_label=rule.target_label,
        replacement=rule.replacement or None,
    )
