"""Minimal PromQL scanner used to scope rule expressions.

Only what is needed to find vector selectors is understood: string and
number literals, range and subquery brackets, function calls, grouping
label lists and binary operator keywords.  Everything else is copied
through unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass


class PromQLError(ValueError):
    """Raised when an expression cannot be scanned or scoped."""


# Keywords that are never metric names.
_KEYWORDS = frozenset(
    {
        "and",
        "or",
        "unless",
        "bool",
        "offset",
        "inf",
        "nan",
        "by",
        "without",
        "on",
        "ignoring",
        "group_left",
        "group_right",
        # Aggregation operators may be followed by a grouping clause instead of "(".
        "sum",
        "min",
        "max",
        "avg",
        "group",
        "stddev",
        "stdvar",
        "count",
        "count_values",
        "bottomk",
        "topk",
        "quantile",
        "limitk",
        "limit_ratio",
    }
)
# Keywords followed by a parenthesized label list.
_GROUPING_KEYWORDS = frozenset({"by", "without", "on", "ignoring", "group_left", "group_right"})
_MATCH_OPS = ("=~", "!~", "!=", "=")
_QUOTES = "\"'`"


@dataclass(frozen=True)
class LabelMatcher:
    name: str
    op: str
    value: str


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_:"


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_:"


def _skip_string(expr: str, start: int) -> int:
    """Return the index just past the string literal starting at *start*."""
    quote = expr[start]
    i = start + 1
    while i < len(expr):
        ch = expr[i]
        if ch == "\\" and quote != "`":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    raise PromQLError(f"unterminated string literal at position {start}")


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    if literal[0] == "`":
        return body
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append({"n": "\n", "t": "\t", "r": "\r"}.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _skip_balanced(expr: str, start: int, open_ch: str, close_ch: str) -> int:
    """Return the index just past the bracket group opened at *start*."""
    depth = 0
    i = start
    while i < len(expr):
        ch = expr[i]
        if ch in _QUOTES:
            i = _skip_string(expr, i)
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise PromQLError(f"unclosed {open_ch!r} at position {start}")


def _skip_space(expr: str, i: int) -> int:
    while i < len(expr) and expr[i].isspace():
        i += 1
    return i


def parse_matchers(body: str) -> list[LabelMatcher]:
    """Parse the inside of a ``{...}`` selector."""
    matchers = []
    i = 0
    while True:
        i = _skip_space(body, i)
        if i >= len(body):
            return matchers
        if body[i] in _QUOTES:
            end = _skip_string(body, i)
            name = _unquote(body[i:end])
            i = end
        elif _is_ident_start(body[i]):
            end = i
            while end < len(body) and _is_ident_char(body[end]):
                end += 1
            name = body[i:end]
            i = end
        else:
            raise PromQLError(f"unexpected character {body[i]!r} in label matchers")

        i = _skip_space(body, i)
        op = next((o for o in _MATCH_OPS if body.startswith(o, i)), None)
        if op is None:
            # A quoted metric name without an operator: {"metric_name"}.
            matchers.append(LabelMatcher("__name__", "=", name))
        else:
            i = _skip_space(body, i + len(op))
            if i >= len(body) or body[i] not in _QUOTES:
                raise PromQLError(f"expected string value for label {name!r}")
            end = _skip_string(body, i)
            matchers.append(LabelMatcher(name, op, _unquote(body[i:end])))
            i = end

        i = _skip_space(body, i)
        if i < len(body):
            if body[i] != ",":
                raise PromQLError(f"unexpected character {body[i]!r} in label matchers")
            i += 1


def _scoped_body(body: str, matchers: Mapping[str, str]) -> str:
    existing = parse_matchers(body)
    additions = []
    for name, value in matchers.items():
        if not value:
            continue
        found = [m for m in existing if m.name == name]
        if not found:
            additions.append(f"{name}={_quote(value)}")
            continue
        for m in found:
            if m.op != "=" or m.value != value:
                raise PromQLError(f"conflicting label matcher {name}{m.op}{_quote(m.value)} for {name}={_quote(value)}")
    stripped = body.strip().rstrip(",").strip()
    parts = [stripped] if stripped else []
    parts.extend(additions)
    return ",".join(parts)


def _selector(metric: str, body: str) -> str:
    return f"{metric}{{{body}}}" if body else metric


def inject_matchers(expr: str, matchers: Mapping[str, str]) -> str:
    """Add equality *matchers* to every vector selector of *expr*.

    A selector that already matches one of the labels is left alone if the
    matcher is an equality on the same value, otherwise :class:`PromQLError`
    is raised.  Empty values are skipped.
    """
    out: list[str] = []
    i = 0
    expect_label_list = False
    n = len(expr)
    while i < n:
        ch = expr[i]
        if ch.isspace():
            out.append(ch)
            i += 1
            continue
        if ch == "#":
            end = expr.find("\n", i)
            end = n if end == -1 else end
            out.append(expr[i:end])
            i = end
            continue
        if ch != "(":
            expect_label_list = False
        if ch in _QUOTES:
            end = _skip_string(expr, i)
            out.append(expr[i:end])
            i = end
            continue
        if ch.isdigit() or (ch == "." and i + 1 < n and expr[i + 1].isdigit()):
            end = i
            while end < n and (expr[end].isalnum() or expr[end] in "._"):
                end += 1
            out.append(expr[i:end])
            i = end
            continue
        if ch == "[":
            end = _skip_balanced(expr, i, "[", "]")
            out.append(expr[i:end])
            i = end
            continue
        if ch == "(" and expect_label_list:
            end = _skip_balanced(expr, i, "(", ")")
            out.append(expr[i:end])
            i = end
            expect_label_list = False
            continue
        if ch == "{":
            end = _skip_balanced(expr, i, "{", "}")
            out.append("{" + _scoped_body(expr[i + 1 : end - 1], matchers) + "}")
            i = end
            continue
        if _is_ident_start(ch):
            end = i
            while end < n and _is_ident_char(expr[end]):
                end += 1
            word = expr[i:end]
            nxt = _skip_space(expr, end)
            lowered = word.lower()
            if lowered in _GROUPING_KEYWORDS:
                expect_label_list = True
                out.append(word)
            elif lowered in _KEYWORDS or (nxt < n and expr[nxt] == "("):
                out.append(word)
            elif nxt < n and expr[nxt] == "{":
                close = _skip_balanced(expr, nxt, "{", "}")
                out.append(_selector(word, _scoped_body(expr[nxt + 1 : close - 1], matchers)))
                end = close
            else:
                out.append(_selector(word, _scoped_body("", matchers)))
            i = end
            continue
        out.append(ch)
        i += 1
    return "".join(out)
