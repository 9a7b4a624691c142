"""Persistent cursor ledger and the cursor resource built on it.

A cursor is a named row in a ledger table on the target cluster. Each row
records a resume offset and the changefeed job that last claimed it; its
value is that job's high-water mark shifted by the offset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, field_validator

from crdbextra.errors import ConflictError, ResourceError
from crdbextra.jobs import is_terminal
from crdbextra.session import ClusterSessionManager
from crdbextra.sqlutil import quote_ident

from .ids import ResourceKind, format_id, parse_id

LOG = logging.getLogger(__name__)

CURSOR_TABLE = "persistent_cursors"
NANOS_PER_SECOND = 1_000_000_000


@dataclass(frozen=True, slots=True)
class CursorValue:
    """A ledger row joined with the status of the job that last claimed it."""

    key: str
    resume_offset: int = 0
    last_used_job_id: int | None = None
    last_job_status: str | None = None
    value: str | None = None

    @property
    def in_use(self) -> bool:
        """True while the claiming job still exists and has not reached a terminal status."""

        return (
            self.last_used_job_id is not None
            and self.last_job_status is not None
            and not is_terminal(self.last_job_status)
        )


class PersistentCursorLedger:
    """CRUD and claim/release over the ledger table.

    The table is created lazily, once per (cluster, database) per process.
    """

    def __init__(
        self,
        session: ClusterSessionManager,
        *,
        database: str | None = None,
        table: str = CURSOR_TABLE,
    ) -> None:
        self._session = session
        self._database = database
        self._table = quote_ident(table)
        self._table_name = table
        self._ready: set[tuple[str, str]] = set()

    @property
    def database(self) -> str:
        return self._database or self._session.default_database

    async def ensure_table(self, conn: Any, cluster_id: str) -> None:
        marker = (cluster_id, self.database)
        if marker in self._ready:
            return
        exists = await conn.fetchval(
            "SELECT count(*) FROM information_schema.tables "
            "WHERE table_name = $1 AND table_schema = current_schema()",
            self._table_name,
        )
        if not exists:
            LOG.info("Creating cursor ledger table %s on cluster %s", self._table_name, cluster_id)
            await conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self._table} ("
                "key STRING PRIMARY KEY, resume_offset INT NOT NULL DEFAULT 0, last_used_job_id INT)"
            )
        self._ready.add(marker)

    async def create(self, cluster_id: str, key: str, resume_offset: int = 0) -> None:
        async with self._session.connection(cluster_id, self.database) as conn:
            await self.ensure_table(conn, cluster_id)
            existing = await conn.fetchval(f"SELECT count(*) FROM {self._table} WHERE key = $1", key)
            if existing:
                raise ConflictError("Unable to create persistent cursor", f"cursor {key} already exists")
            await conn.execute(
                f"INSERT INTO {self._table} (key, resume_offset) VALUES ($1, $2)", key, resume_offset
            )

    async def read(self, cluster_id: str, key: str) -> CursorValue | None:
        """Return the row for ``key`` or ``None`` when it does not exist."""

        async with self._session.connection(cluster_id, self.database) as conn:
            await self.ensure_table(conn, cluster_id)
            row = await conn.fetchrow(
                f"""
                SELECT c.key, c.resume_offset, c.last_used_job_id,
                       j.status AS last_job_status,
                       (j.high_water_timestamp::DECIMAL
                        + c.resume_offset::DECIMAL * {NANOS_PER_SECOND})::STRING AS value
                FROM {self._table} AS c
                LEFT JOIN [SHOW CHANGEFEED JOBS] AS j ON j.job_id = c.last_used_job_id
                WHERE c.key = $1
                """,
                key,
            )
        if row is None:
            return None
        job_id = row["last_used_job_id"]
        return CursorValue(
            key=row["key"],
            resume_offset=int(row["resume_offset"] or 0),
            last_used_job_id=int(job_id) if job_id is not None else None,
            last_job_status=row["last_job_status"],
            value=row["value"],
        )

    async def claim(self, cluster_id: str, key: str, job_id: int) -> None:
        """Point ``key`` at ``job_id`` inside one transaction.

        Fails when another live job holds the cursor, or when ``job_id``
        already holds a different cursor.
        """

        async with self._session.connection(cluster_id, self.database) as conn:
            await self.ensure_table(conn, cluster_id)
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    SELECT c.last_used_job_id,
                           (SELECT status FROM [SHOW CHANGEFEED JOBS] WHERE job_id = c.last_used_job_id)
                               AS last_job_status
                    FROM {self._table} AS c
                    WHERE c.key = $1
                    FOR UPDATE
                    """,
                    key,
                )
                if row is None:
                    raise ResourceError("Unable to update cursor job ID", f"cursor {key} does not exist")
                current = row["last_used_job_id"]
                status = row["last_job_status"]
                if current is not None and int(current) != job_id and status is not None and not is_terminal(status):
                    raise ConflictError("Persistent cursor is in use", f"cursor is still in use by job {current}")
                others = await conn.fetchval(
                    f"SELECT count(*) FROM {self._table} WHERE last_used_job_id = $1 AND key != $2",
                    job_id,
                    key,
                )
                if others:
                    raise ConflictError(
                        "Job cannot use multiple cursors", f"job {job_id} already holds another cursor"
                    )
                await conn.execute(
                    f"UPDATE {self._table} SET last_used_job_id = $1 WHERE key = $2", job_id, key
                )
        LOG.info("Cursor %s claimed by job %s", key, job_id)

    async def release(self, cluster_id: str, key: str) -> None:
        async with self._session.connection(cluster_id, self.database) as conn:
            await self.ensure_table(conn, cluster_id)
            await conn.execute(f"UPDATE {self._table} SET last_used_job_id = NULL WHERE key = $1", key)
        LOG.info("Cursor %s released", key)

    async def set_resume_offset(self, cluster_id: str, key: str, resume_offset: int) -> None:
        async with self._session.connection(cluster_id, self.database) as conn:
            await self.ensure_table(conn, cluster_id)
            await conn.execute(
                f"UPDATE {self._table} SET resume_offset = $1 WHERE key = $2", resume_offset, key
            )

    async def delete(self, cluster_id: str, key: str) -> None:
        async with self._session.connection(cluster_id, self.database) as conn:
            await self.ensure_table(conn, cluster_id)
            await conn.execute(f"DELETE FROM {self._table} WHERE key = $1", key)


class PersistentCursorSpec(BaseModel):
    """Declared cursor."""

    cluster_id: str
    key: str = Field(min_length=1)
    resume_offset: int = 0

    @field_validator("key")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        if "|" in value:
            raise ValueError("cursor key must not contain '|'")
        return value


class PersistentCursorState(PersistentCursorSpec):
    """Tracked cursor, including the values computed on the cluster."""

    id: str
    last_used_job_id: int | None = None
    value: str | None = None

    @property
    def ref(self) -> str:
        return self.id


class PersistentCursorResource:
    kind = ResourceKind.CURSOR

    def __init__(self, session: ClusterSessionManager, ledger: PersistentCursorLedger | None = None) -> None:
        self._session = session
        self.ledger = ledger or PersistentCursorLedger(session)

    async def create(self, spec: PersistentCursorSpec) -> PersistentCursorState:
        await self.ledger.create(spec.cluster_id, spec.key, spec.resume_offset)
        state = await self._load(spec.cluster_id, spec.key)
        if state is None:
            raise ResourceError("Unable to read persistent cursor", f"cursor {spec.key} vanished after create")
        return state

    async def read(self, state: PersistentCursorState) -> PersistentCursorState | None:
        return await self._load(state.cluster_id, state.key)

    async def update(self, plan: PersistentCursorSpec, state: PersistentCursorState) -> PersistentCursorState:
        if (plan.cluster_id, plan.key) != (state.cluster_id, state.key):
            raise ConflictError("Unable to update persistent cursor", "cluster_id and key cannot change in place")
        if plan.resume_offset != state.resume_offset:
            await self.ledger.set_resume_offset(plan.cluster_id, plan.key, plan.resume_offset)
        updated = await self._load(plan.cluster_id, plan.key)
        if updated is None:
            raise ResourceError("Unable to read persistent cursor", f"cursor {plan.key} does not exist")
        return updated

    async def delete(self, state: PersistentCursorState) -> None:
        await self.ledger.delete(state.cluster_id, state.key)

    async def import_state(self, resource_id: str) -> PersistentCursorState | None:
        parsed = parse_id(resource_id, ResourceKind.CURSOR)
        return await self._load(parsed.cluster_id, parsed.discriminator)

    async def _load(self, cluster_id: str, key: str) -> PersistentCursorState | None:
        value = await self.ledger.read(cluster_id, key)
        if value is None:
            return None
        return PersistentCursorState(
            id=format_id(ResourceKind.CURSOR, cluster_id, key),
            cluster_id=cluster_id,
            key=value.key,
            resume_offset=value.resume_offset,
            last_used_job_id=value.last_used_job_id,
            value=value.value,
        )


__all__ = [
    "CURSOR_TABLE",
    "CursorValue",
    "PersistentCursorLedger",
    "PersistentCursorResource",
    "PersistentCursorSpec",
    "PersistentCursorState",
]
