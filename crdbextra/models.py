"""Shared dataclasses used across the broker, pool registry and session modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True)
class ClusterPrincipal:
    """Short-lived SQL login used to run scoped operations against one cluster."""

    cluster_id: str
    username: str
    password: str = field(repr=False)
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ConnectionParams:
    """Connection details returned by the cloud API for a cluster."""

    connection_string: str
    host: str | None = None
    port: int | None = None
    database: str | None = None


__all__ = ["ClusterPrincipal", "ConnectionParams"]
