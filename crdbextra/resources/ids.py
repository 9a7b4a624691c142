"""Composite ``<kind>|<clusterId>|<discriminator...>`` resource identifiers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from crdbextra.errors import InvalidResourceIdError

SEPARATOR = "|"


class ResourceKind(str, Enum):
    """Leading tag of a resource id."""

    CHANGEFEED = "changefeed"
    BACKUP_SCHEDULE = "backup_schedule"
    CURSOR = "cursor"
    EXTERNAL_CONNECTION = "external_connection"
    CLUSTER_SETTING = "cluster_setting"
    MIGRATION = "migration"


@dataclass(frozen=True, slots=True)
class ResourceId:
    """Parsed resource id."""

    kind: ResourceKind
    cluster_id: str
    parts: tuple[str, ...]

    @property
    def discriminator(self) -> str:
        return self.parts[0]

    def __str__(self) -> str:
        return SEPARATOR.join((self.kind.value, self.cluster_id, *self.parts))


def format_id(kind: ResourceKind, cluster_id: str, *parts: object) -> str:
    """Render an id for ``kind``."""

    return str(ResourceId(kind=kind, cluster_id=cluster_id, parts=tuple(str(part) for part in parts)))


def parse_id(value: str, expected: ResourceKind | None = None, *, segments: int = 3) -> ResourceId:
    """Parse ``value``, validating its segment count and (optionally) its kind."""

    pieces = value.split(SEPARATOR)
    if len(pieces) != segments:
        raise InvalidResourceIdError(
            f"Expected id with {segments} '|'-separated segments, got: {value!r}"
        )
    try:
        kind = ResourceKind(pieces[0])
    except ValueError:
        raise InvalidResourceIdError(f"Unknown resource kind {pieces[0]!r} in id {value!r}") from None
    if expected is not None and kind is not expected:
        raise InvalidResourceIdError(f"Expected a {expected.value} id, got: {value!r}")
    if not all(pieces[1:]):
        raise InvalidResourceIdError(f"Empty segment in id {value!r}")
    return ResourceId(kind=kind, cluster_id=pieces[1], parts=tuple(pieces[2:]))


__all__ = ["ResourceId", "ResourceKind", "format_id", "parse_id"]
