"""Connection pool registry keyed by (cluster, database)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import asyncpg

from .cloud import CockroachCloudClient
from .models import ClusterPrincipal
from .sqlutil import quote_ident

LOG = logging.getLogger(__name__)

PoolFactory = Callable[..., Awaitable[Any]]
PoolKey = tuple[str, str]


class ConnectionPoolRegistry:
    """Lazily creates and caches one bounded asyncpg pool per (cluster, database).

    Pools live for the lifetime of the registry and are owned exclusively by
    it; callers borrow connections but never close pools themselves. Every new
    physical connection switches its session role to ``admin_role`` so objects
    created through it are not owned by the ephemeral principal.
    """

    def __init__(
        self,
        cloud: CockroachCloudClient,
        *,
        admin_role: str = "admin",
        max_size: int = 5,
        min_size: int = 0,
        connect_timeout: float = 10.0,
        pool_factory: PoolFactory | None = None,
    ) -> None:
        self._cloud = cloud
        self._admin_role = admin_role
        self._max_size = max_size
        self._min_size = min(min_size, max_size)
        self._connect_timeout = connect_timeout
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._pools: dict[PoolKey, Any] = {}
        self._init_locks: dict[PoolKey, asyncio.Lock] = {}

    @property
    def admin_role(self) -> str:
        return self._admin_role

    def cached_keys(self) -> tuple[PoolKey, ...]:
        """Keys of the pools created so far."""

        return tuple(self._pools)

    async def get_pool(self, cluster_id: str, database: str, principal: ClusterPrincipal) -> Any:
        """Return the pool for ``(cluster_id, database)``, creating it on first use."""

        key = (cluster_id, database)
        pool = self._pools.get(key)
        if pool is not None:
            LOG.debug("Using existing connection pool for cluster %s database %s", cluster_id, database)
            return pool
        lock = self._init_locks.setdefault(key, asyncio.Lock())
        async with lock:
            pool = self._pools.get(key)
            if pool is None:
                LOG.debug("Creating connection pool for cluster %s database %s", cluster_id, database)
                pool = await self._create_pool(cluster_id, database, principal)
                self._pools[key] = pool
        return pool

    async def close(self) -> None:
        """Close every pool (process shutdown only)."""

        pools = list(self._pools.values())
        self._pools.clear()
        for pool in pools:
            await pool.close()

    async def _create_pool(self, cluster_id: str, database: str, principal: ClusterPrincipal) -> Any:
        params = await self._cloud.connection_params(cluster_id, principal.username)
        kwargs: dict[str, object] = {
            "dsn": params.connection_string,
            "user": principal.username,
            "password": principal.password,
            "database": database,
            "min_size": self._min_size,
            "max_size": self._max_size,
            "timeout": self._connect_timeout,
            "init": self._elevate_role,
        }
        if params.host:
            kwargs["host"] = params.host
        if params.port is not None:
            kwargs["port"] = params.port
        return await self._pool_factory(**kwargs)

    async def _elevate_role(self, conn: Any) -> None:
        await conn.execute(f"SET ROLE {quote_ident(self._admin_role)}")


__all__ = ["ConnectionPoolRegistry", "PoolFactory"]
