"""Changefeed option table, statement rendering and definition parsing.

The cluster only exposes a changefeed's configuration as the rendered
``CREATE CHANGEFEED`` text, so reading a changefeed back means parsing that
text. All of that format dependency lives here, behind
:func:`parse_observed_definition`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Mapping, Sequence

from crdbextra.errors import ConflictError, StatementParseError
from crdbextra.sqlutil import quote_literal, unquote

LOG = logging.getLogger(__name__)

OptionValue = str | bool


class OptionKind(str, Enum):
    """How an option is spelled in a WITH clause."""

    FLAG = "flag"
    STRING = "string"


@dataclass(frozen=True, slots=True)
class OptionSpec:
    """One recognized changefeed option."""

    name: str
    kind: OptionKind
    immutable: bool = False
    choices: tuple[str, ...] = ()
    sensitive: bool = False


F = OptionKind.FLAG
S = OptionKind.STRING

CHANGEFEED_OPTIONS: tuple[OptionSpec, ...] = (
    OptionSpec("avro_schema_prefix", S),
    OptionSpec("compression", S, choices=("gzip", "zstd")),
    OptionSpec("confluent_schema_registry", S, sensitive=True),
    OptionSpec("cursor", S),
    OptionSpec("diff", F),
    OptionSpec("end_time", S, immutable=True),
    OptionSpec("envelope", S, choices=("wrapped", "bare", "key_only", "row")),
    OptionSpec("execution_locality", S),
    OptionSpec("format", S, choices=("json", "avro", "csv", "parquet")),
    OptionSpec("full_table_name", F, immutable=True),
    OptionSpec("gc_protect_expires_after", S),
    OptionSpec("initial_scan", S, immutable=True, choices=("yes", "no", "only")),
    OptionSpec("kafka_sink_config", S),
    OptionSpec("key_column", S),
    OptionSpec("key_in_value", F),
    OptionSpec("lagging_ranges_threshold", S),
    OptionSpec("lagging_ranges_polling_interval", S),
    OptionSpec("metrics_label", S),
    OptionSpec("min_checkpoint_frequency", S),
    OptionSpec("mvcc_timestamp", F),
    OptionSpec("on_error", S, choices=("pause", "fail")),
    OptionSpec("protect_data_from_gc_on_pause", F),
    OptionSpec("resolved", S),
    OptionSpec("schema_change_events", S, choices=("default", "column_changes")),
    OptionSpec("schema_change_policy", S, choices=("backfill", "no_backfill", "stop")),
    OptionSpec("split_column_families", F),
    OptionSpec("topic_in_value", F),
    OptionSpec("unordered", F),
    OptionSpec("updated", F),
    OptionSpec("virtual_columns", S, choices=("null", "omitted")),
    OptionSpec("webhook_auth_header", S, sensitive=True),
    OptionSpec("webhook_sink_config", S),
)

OPTIONS_BY_NAME: Mapping[str, OptionSpec] = {spec.name: spec for spec in CHANGEFEED_OPTIONS}
IMMUTABLE_OPTIONS = frozenset(spec.name for spec in CHANGEFEED_OPTIONS if spec.immutable)
# Resume point: always carried over from the tracked state on update.
CURSOR_OPTION = "cursor"

_FALSE_WORDS = {"false", "f", "no", "off", "0"}


def normalize_options(values: Mapping[str, object], *, strict: bool = True) -> dict[str, OptionValue]:
    """Validate an option mapping against the table and return it in table order.

    ``None`` and ``False`` mean "not set". With ``strict`` enum-valued options
    must use one of their documented values.
    """

    normalized: dict[str, OptionValue] = {}
    for name, value in values.items():
        spec = OPTIONS_BY_NAME.get(name)
        if spec is None:
            raise ValueError(f"Unknown changefeed option {name!r}")
        if value is None:
            continue
        if spec.kind is OptionKind.FLAG:
            if not isinstance(value, bool):
                raise ValueError(f"Option {name!r} is a flag and takes true/false, got {value!r}")
            if value:
                normalized[name] = True
            continue
        if not isinstance(value, str):
            raise ValueError(f"Option {name!r} takes a string value, got {value!r}")
        if strict and spec.choices and value not in spec.choices:
            raise ValueError(f"Option {name!r} must be one of {', '.join(spec.choices)}; got {value!r}")
        normalized[name] = value
    return {spec.name: normalized[spec.name] for spec in CHANGEFEED_OPTIONS if spec.name in normalized}


class ChangefeedOptions(Mapping[str, OptionValue]):
    """Immutable option set: option name to string value, or ``True`` for flags."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, object] | None = None, *, strict: bool = True) -> None:
        self._values = normalize_options(values or {}, strict=strict)

    def __getitem__(self, name: str) -> OptionValue:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ChangefeedOptions({self._values!r})"

    def with_value(self, name: str, value: OptionValue | None) -> ChangefeedOptions:
        values = dict(self._values)
        values[name] = value  # type: ignore[assignment]
        return ChangefeedOptions(values, strict=False)

    def without(self, name: str) -> ChangefeedOptions:
        return ChangefeedOptions({key: value for key, value in self._values.items() if key != name}, strict=False)

    def to_dict(self) -> dict[str, OptionValue]:
        return dict(self._values)

    def render(self, *, redact: bool = False) -> str:
        """Render as the body of a WITH clause, e.g. ``format='json', diff``."""

        return ", ".join(render_option(name, value, redact=redact) for name, value in self._values.items())


def render_option(name: str, value: OptionValue, *, redact: bool = False) -> str:
    spec = OPTIONS_BY_NAME[name]
    if spec.kind is OptionKind.FLAG or value == "":
        return name
    if redact and spec.sensitive:
        return f"{name}='redacted'"
    return f"{name}={quote_literal(str(value))}"


def render_create_statement(
    sink_uri: str,
    options: ChangefeedOptions,
    *,
    targets: Sequence[str] | None = None,
    select: str | None = None,
    redact: bool = False,
) -> str:
    """Build ``CREATE CHANGEFEED`` in its FOR-targets or AS-select form."""

    if (targets is None) == (select is None):
        raise ValueError("Exactly one of targets or select must be provided")
    with_clause = f" WITH {options.render(redact=redact)}" if options else ""
    sink = "'redacted'" if redact else quote_literal(sink_uri)
    if targets is not None:
        if not targets:
            raise ValueError("A changefeed needs at least one target table")
        return f"CREATE CHANGEFEED FOR {', '.join(targets)} INTO {sink}{with_clause}"
    return f"CREATE CHANGEFEED INTO {sink}{with_clause} AS {select}"


@dataclass(frozen=True, slots=True)
class OptionDiff:
    """SET/UNSET fragments for an ALTER CHANGEFEED statement."""

    set: tuple[str, ...] = ()
    unset: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.set or self.unset)


def diff_options(current: Mapping[str, OptionValue], desired: Mapping[str, OptionValue]) -> OptionDiff:
    """Diff two option sets field by field, rejecting changes to immutable options."""

    to_set: list[str] = []
    to_unset: list[str] = []
    for spec in CHANGEFEED_OPTIONS:
        old = current.get(spec.name)
        new = desired.get(spec.name)
        if spec.name == CURSOR_OPTION:
            continue
        if old == new:
            continue
        if spec.immutable:
            raise ConflictError(
                "Unable to update changefeed",
                f"Cannot update {spec.name} option. old: {_show(old)} new: {_show(new)}",
            )
        if new is None:
            to_unset.append(spec.name)
        else:
            to_set.append(render_option(spec.name, new))
    return OptionDiff(set=tuple(to_set), unset=tuple(to_unset))


def target_delta(current: Iterable[str], desired: Iterable[str]) -> tuple[list[str], list[str]]:
    """Return (added, removed) targets, preserving input order."""

    current_list = list(current)
    desired_list = list(desired)
    current_set = set(current_list)
    desired_set = set(desired_list)
    added = [target for target in desired_list if target not in current_set]
    removed = [target for target in current_list if target not in desired_set]
    return added, removed


def render_alter_statement(
    job_id: int,
    *,
    added: Sequence[str] = (),
    removed: Sequence[str] = (),
    options: OptionDiff = OptionDiff(),
    sink_uri: str | None = None,
    initial_scan_on_add: bool = False,
) -> str | None:
    """Build ``ALTER CHANGEFEED``; ``None`` when there is nothing to change."""

    clauses: list[str] = []
    if added:
        scan = "initial_scan" if initial_scan_on_add else "no_initial_scan"
        clauses.append(f"ADD {', '.join(added)} WITH {scan}")
    if removed:
        clauses.append(f"DROP {', '.join(removed)}")
    set_items = list(options.set)
    if sink_uri is not None:
        set_items.append(f"sink={quote_literal(sink_uri)}")
    if set_items:
        clauses.append(f"SET {', '.join(set_items)}")
    if options.unset:
        clauses.append(f"UNSET {', '.join(options.unset)}")
    if not clauses:
        return None
    return f"ALTER CHANGEFEED {int(job_id)} {' '.join(clauses)}"


@dataclass(frozen=True, slots=True)
class ObservedDefinition:
    """Structured view of a live changefeed's ``CREATE CHANGEFEED`` text."""

    sink_uri: str
    options: ChangefeedOptions = field(default_factory=ChangefeedOptions)
    targets: tuple[str, ...] | None = None
    select: str | None = None


_QUOTED = r"(?:[eE])?'(?:[^']|'')*'"
_OPTIONS = rf"(?:{_QUOTED}|[^'])+?"

_FOR_PATTERN = re.compile(
    rf"^\s*CREATE\s+CHANGEFEED\s+FOR\s+(?P<targets>.+?)\s+INTO\s+(?P<sink>{_QUOTED})"
    rf"(?:\s+WITH\s+(?P<options>{_OPTIONS}))?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_SELECT_PATTERN = re.compile(
    rf"^\s*CREATE\s+CHANGEFEED\s+INTO\s+(?P<sink>{_QUOTED})"
    rf"(?:\s+WITH\s+(?P<options>{_OPTIONS}))?\s+AS\s+(?P<select>SELECT\b.+?)\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_TABLE_PREFIX = re.compile(r"^TABLE\s+", re.IGNORECASE)
_OPTIONS_PREFIX = re.compile(r"^OPTIONS\s*", re.IGNORECASE)


def parse_observed_definition(text: str) -> ObservedDefinition:
    """Parse engine-rendered ``CREATE CHANGEFEED`` text.

    Handles both ``CREATE CHANGEFEED FOR <targets> INTO '<sink>' [WITH ...]``
    and ``CREATE CHANGEFEED INTO '<sink>' [WITH ...] AS SELECT ...``. The WITH
    body may be bare (``a = 'b', c``) or parenthesized (``OPTIONS (a = 'b')``).
    Unknown option keys are skipped; anything that does not match either
    form raises :class:`StatementParseError`.
    """

    match = _FOR_PATTERN.match(text)
    if match:
        targets = tuple(_TABLE_PREFIX.sub("", part.strip()) for part in _split_top_level(match["targets"]))
        if not all(targets):
            raise StatementParseError("Empty target in changefeed statement", text)
        return ObservedDefinition(
            sink_uri=unquote(match["sink"]),
            options=parse_option_string(match["options"] or ""),
            targets=targets,
        )
    match = _SELECT_PATTERN.match(text)
    if match:
        return ObservedDefinition(
            sink_uri=unquote(match["sink"]),
            options=parse_option_string(match["options"] or ""),
            select=match["select"].strip(),
        )
    raise StatementParseError("Unable to parse changefeed statement", text)


def parse_option_string(raw: str) -> ChangefeedOptions:
    """Decompose the body of a WITH clause into a :class:`ChangefeedOptions`."""

    body = _OPTIONS_PREFIX.sub("", raw.strip())
    if body.startswith("(") and body.endswith(")"):
        body = body[1:-1]
    values: dict[str, OptionValue] = {}
    for item in _split_top_level(body):
        if not item.strip():
            continue
        key, has_value, value = _partition_outside_quotes(item, "=")
        key = key.strip().lower()
        spec = OPTIONS_BY_NAME.get(key)
        if spec is None:
            LOG.debug("Ignoring unrecognized changefeed option %r", key)
            continue
        if spec.kind is OptionKind.FLAG:
            values[key] = not has_value or unquote(value).lower() not in _FALSE_WORDS
        else:
            values[key] = unquote(value) if has_value else ""
    return ChangefeedOptions(values, strict=False)


def _split_top_level(text: str, separator: str = ",") -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    quote: str | None = None
    depth = 0
    for char in text:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif char == separator and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    tail = "".join(current).strip()
    if tail or parts:
        parts.append(tail)
    return parts


def _partition_outside_quotes(text: str, separator: str) -> tuple[str, bool, str]:
    quote: str | None = None
    for index, char in enumerate(text):
        if quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == separator:
            return text[:index], True, text[index + 1 :]
    return text, False, ""


def _show(value: OptionValue | None) -> str:
    return "<unset>" if value is None else str(value)


__all__ = [
    "CHANGEFEED_OPTIONS",
    "CURSOR_OPTION",
    "ChangefeedOptions",
    "IMMUTABLE_OPTIONS",
    "OPTIONS_BY_NAME",
    "ObservedDefinition",
    "OptionDiff",
    "OptionKind",
    "OptionSpec",
    "OptionValue",
    "diff_options",
    "normalize_options",
    "parse_observed_definition",
    "parse_option_string",
    "render_alter_statement",
    "render_create_statement",
    "render_option",
    "target_delta",
]
