"""Schema migration resource: keeps a database at an alembic revision.

Revision scripts live in a local directory (``migrations_url`` is a path or a
``file://`` URL). Alembic runs over the scoped session connection through a
SQLAlchemy async engine whose only connection is the one the session hands
out, so the short-lived principal and the ``REASSIGN OWNED`` cleanup apply to
migrations exactly as they do to every other resource.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Literal, Protocol
from urllib.parse import urlsplit

from alembic.config import Config
from alembic.runtime.environment import EnvironmentContext
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from crdbextra.cloud import ClusterStateError
from crdbextra.errors import ConflictError, ResourceError
from crdbextra.session import ClusterSessionManager

from .ids import ResourceKind, format_id, parse_id

LOG = logging.getLogger(__name__)

BASE = "base"
ENGINE_URL = "cockroachdb+asyncpg://"

DestroyMode = Literal["noop", "down"]


def migrations_path(url: str) -> str:
    """Directory holding the revision scripts named by ``url``."""

    parts = urlsplit(url)
    if parts.scheme not in ("", "file"):
        raise ValueError(f"migrations_url must be a local path or file:// url, got: {url!r}")
    path = parts.netloc + parts.path
    if not path:
        raise ValueError(f"migrations_url has no path: {url!r}")
    return path


def current_version(connection: Connection) -> str:
    """Revision recorded in the ``alembic_version`` table, ``base`` when none is."""

    return MigrationContext.configure(connection).get_current_revision() or BASE


def migrate_to(connection: Connection, path: str, target: str) -> str:
    """Upgrade or downgrade ``connection`` to ``target`` and return the new revision.

    The direction is picked from the revision graph: a target that is ``base``
    or an ancestor of the current revision is a downgrade, anything else an
    upgrade.
    """

    config = Config()
    config.set_main_option("script_location", path)
    config.set_main_option("version_locations", path)
    script = ScriptDirectory.from_config(config)

    current = current_version(connection)
    if current == target:
        LOG.debug("Already at revision %s", target)
        return current

    if target == BASE or target in _applied_revisions(script, current):
        LOG.info("Downgrading from %s to %s", current, target)

        def steps(revision: Any, context: MigrationContext) -> Any:
            return script._downgrade_revs(target, revision)

    else:
        LOG.info("Upgrading from %s to %s", current, target)

        def steps(revision: Any, context: MigrationContext) -> Any:
            return script._upgrade_revs(target, revision)

    with EnvironmentContext(config, script, fn=steps, destination_rev=target) as environment:
        environment.configure(connection=connection)
        with environment.begin_transaction():
            environment.run_migrations()
    return current_version(connection)


def _applied_revisions(script: ScriptDirectory, current: str) -> set[str]:
    if current == BASE:
        return set()
    return {revision.revision for revision in script.walk_revisions(BASE, current)}


class _BorrowedConnection:
    """Session connection lent to SQLAlchemy; closing it is left to the session."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    async def close(self, *, timeout: float | None = None) -> None:
        return None

    def terminate(self) -> None:
        return None


class Migrator(Protocol):
    async def migrate(self, conn: Any, path: str, target: str) -> str: ...

    async def version(self, conn: Any) -> str: ...


class AlembicMigrator:
    """Runs alembic against an asyncpg connection."""

    def __init__(self, url: str = ENGINE_URL) -> None:
        self._url = url

    async def migrate(self, conn: Any, path: str, target: str) -> str:
        return await self._run(conn, migrate_to, path, target)

    async def version(self, conn: Any) -> str:
        return await self._run(conn, current_version)

    async def _run(self, conn: Any, fn: Callable[..., str], *args: Any) -> str:
        async def borrow() -> _BorrowedConnection:
            return _BorrowedConnection(conn)

        engine = create_async_engine(self._url, async_creator=borrow, poolclass=NullPool)
        try:
            async with engine.begin() as connection:
                return await connection.run_sync(fn, *args)
        finally:
            await engine.dispose()


class MigrationSpec(BaseModel):
    """Declared schema version of one database."""

    cluster_id: str = Field(min_length=1)
    database: str = Field(min_length=1)
    migrations_url: str = Field(min_length=1)
    destroy_mode: DestroyMode
    version: str = Field(min_length=1)

    @field_validator("migrations_url")
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        if value is not None:
            migrations_path(value)
        return value


class MigrationState(MigrationSpec):
    """Tracked migration. Imported states carry no scripts and never migrate down."""

    id: str
    migrations_url: str | None = None
    destroy_mode: DestroyMode = "noop"


class MigrationResource:
    kind = ResourceKind.MIGRATION

    def __init__(self, session: ClusterSessionManager, migrator: Migrator | None = None) -> None:
        self._session = session
        self._migrator = migrator or AlembicMigrator()

    async def create(self, spec: MigrationSpec) -> MigrationState:
        version = await self._migrate(spec.cluster_id, spec.database, spec.migrations_url, spec.version)
        return MigrationState(
            **spec.model_dump(exclude={"version"}),
            version=version,
            id=format_id(ResourceKind.MIGRATION, spec.cluster_id, spec.database),
        )

    async def read(self, state: MigrationState) -> MigrationState | None:
        version = await self._version(state.cluster_id, state.database)
        if version is None:
            return None
        if version == state.version:
            return state
        return state.model_copy(update={"version": version})

    async def update(self, plan: MigrationSpec, state: MigrationState) -> MigrationState:
        if (plan.cluster_id, plan.database) != (state.cluster_id, state.database):
            raise ConflictError("Unable to run migrations", "cluster_id and database cannot change in place")
        version = state.version
        if plan.version != state.version:
            version = await self._migrate(plan.cluster_id, plan.database, plan.migrations_url, plan.version)
        return MigrationState(**plan.model_dump(exclude={"version"}), version=version, id=state.id)

    async def delete(self, state: MigrationState) -> None:
        """Run every down migration in ``down`` mode; leave the schema alone in ``noop`` mode."""

        if state.destroy_mode == "noop":
            LOG.info("Leaving schema of %s on cluster %s at %s", state.database, state.cluster_id, state.version)
            return
        if state.migrations_url is None:
            raise ResourceError("Unable to run migrations", "migrations_url is required to migrate down")
        await self._migrate(state.cluster_id, state.database, state.migrations_url, BASE)

    async def import_state(self, resource_id: str) -> MigrationState | None:
        parsed = parse_id(resource_id, ResourceKind.MIGRATION)
        version = await self._version(parsed.cluster_id, parsed.discriminator)
        if version is None:
            return None
        return MigrationState(
            id=str(parsed),
            cluster_id=parsed.cluster_id,
            database=parsed.discriminator,
            version=version,
        )

    async def _migrate(self, cluster_id: str, database: str, url: str, target: str) -> str:
        path = migrations_path(url)
        LOG.info("Migrating %s on cluster %s to %s using %s", database, cluster_id, target, path)
        async with self._session.connection(cluster_id, database) as conn:
            try:
                version = await self._migrator.migrate(conn, path, target)
            except Exception as exc:
                raise ResourceError("Unable to run migrations", str(exc)) from exc
        LOG.info("Database %s on cluster %s is at revision %s", database, cluster_id, version)
        return version

    async def _version(self, cluster_id: str, database: str) -> str | None:
        try:
            async with self._session.connection(cluster_id, database) as conn:
                return await self._migrator.version(conn)
        except ClusterStateError as exc:
            LOG.warning("Cluster %s unavailable, treating migrations of %s as absent: %s", cluster_id, database, exc)
            return None
        except Exception as exc:
            raise ResourceError("Unable to read migration version", str(exc)) from exc


__all__ = [
    "AlembicMigrator",
    "MigrationResource",
    "MigrationSpec",
    "MigrationState",
    "current_version",
    "migrate_to",
    "migrations_path",
]
