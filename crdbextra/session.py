"""Cluster session manager: the single entry point resources use to run SQL."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from .cloud import CockroachCloudClient
from .config import AppConfig
from .connections import ConnectionPoolRegistry, PoolFactory
from .credentials import CredentialBroker
from .errors import ConfigurationError, ResourceError
from .jobs import JobWatcher
from .models import ClusterPrincipal
from .sqlutil import quote_ident

LOG = logging.getLogger(__name__)

T = TypeVar("T")
ConnectionCallback = Callable[[Any], Awaitable[T]]


class ClusterSessionManager:
    """Owns the credential broker, pool registry and job watcher for one process.

    ``connection()`` composes them in a fixed order: acquire (and renew) the
    principal, fetch the pool, hand the caller a connection, and finally
    reassign anything the principal created to the administrative role. The
    reassignment runs whether the caller's block succeeds or raises.
    """

    def __init__(
        self,
        cloud: CockroachCloudClient,
        *,
        config: AppConfig | None = None,
        pool_factory: PoolFactory | None = None,
        password_factory: Callable[[], str] | None = None,
        watcher: JobWatcher | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._cloud = cloud
        self._pools = ConnectionPoolRegistry(
            cloud,
            admin_role=self._config.broker.admin_role,
            max_size=self._config.pool.max_size,
            min_size=self._config.pool.min_size,
            connect_timeout=self._config.pool.connect_timeout,
            pool_factory=pool_factory,
        )
        self._broker = CredentialBroker(
            cloud,
            self._pools,
            principal_name=self._config.broker.principal_name,
            ttl=timedelta(seconds=self._config.broker.principal_ttl_seconds),
            bootstrap_database=self._config.default_database,
            password_factory=password_factory,
        )
        self._watcher = watcher or JobWatcher(
            attempts=self._config.jobs.poll_attempts,
            interval=self._config.jobs.poll_interval_seconds,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> ClusterSessionManager:
        """Build a manager talking to the real cloud API."""

        if not config.cloud.api_key:
            raise ConfigurationError(
                "Please set the Cockroach Cloud api key in the config file or COCKROACH_API_KEY."
            )
        cloud = CockroachCloudClient(
            config.cloud.api_key,
            host=config.cloud.host,
            timeout=config.cloud.timeout,
        )
        return cls(cloud, config=config)

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def default_database(self) -> str:
        return self._config.default_database

    @property
    def broker(self) -> CredentialBroker:
        return self._broker

    @property
    def pools(self) -> ConnectionPoolRegistry:
        return self._pools

    @property
    def watcher(self) -> JobWatcher:
        return self._watcher

    @asynccontextmanager
    async def connection(self, cluster_id: str, database: str | None = None) -> AsyncIterator[Any]:
        """Yield a connection scoped to ``cluster_id``/``database``."""

        database = database or self.default_database
        principal = await self._broker.acquire(cluster_id)
        pool = await self._pools.get_pool(cluster_id, database, principal)
        async with pool.acquire() as conn:
            failed = False
            try:
                yield conn
            except BaseException:
                failed = True
                raise
            finally:
                await self._reassign_owned(conn, principal, body_failed=failed)

    async def run(self, cluster_id: str, callback: ConnectionCallback[T], *, database: str | None = None) -> T:
        """Run ``callback`` with a scoped connection and return its result."""

        async with self.connection(cluster_id, database) as conn:
            return await callback(conn)

    async def close(self) -> None:
        """Close pools and the cloud client at process shutdown."""

        await self._pools.close()
        await self._cloud.aclose()

    async def _reassign_owned(self, conn: Any, principal: ClusterPrincipal, *, body_failed: bool) -> None:
        statement = (
            f"REASSIGN OWNED BY {quote_ident(principal.username)} TO {quote_ident(self._pools.admin_role)}"
        )
        try:
            await conn.execute(statement)
        except Exception as exc:
            if body_failed:
                # The caller's own error is the one worth surfacing.
                LOG.warning("Ownership reassignment for %s failed: %s", principal.username, exc)
                return
            raise ResourceError("Unable to reassign ownership", str(exc)) from exc


__all__ = ["ClusterSessionManager", "ConnectionCallback"]
