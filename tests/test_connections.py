"""Tests for the connection pool registry."""

from __future__ import annotations

import asyncio

import pytest

from crdbextra.connections import ConnectionPoolRegistry
from crdbextra.models import ClusterPrincipal


def _principal() -> ClusterPrincipal:
    return ClusterPrincipal(cluster_id="c1", username="bot", password="pw")


@pytest.mark.anyio
async def test_pool_is_created_once_per_cluster_and_database(
    cloud_client, cloud_api, pool_factory, created_pools
) -> None:  # type: ignore[no-untyped-def]
    registry = ConnectionPoolRegistry(cloud_client, pool_factory=pool_factory)

    first = await registry.get_pool("c1", "defaultdb", _principal())
    second = await registry.get_pool("c1", "defaultdb", _principal())
    other = await registry.get_pool("c1", "movr", _principal())

    assert first is second
    assert other is not first
    assert len(created_pools) == 2
    assert registry.cached_keys() == (("c1", "defaultdb"), ("c1", "movr"))
    assert len(cloud_api.calls("GET", "connection-string")) == 2


@pytest.mark.anyio
async def test_concurrent_first_access_creates_a_single_pool(
    cloud_client, pool_factory, created_pools
) -> None:  # type: ignore[no-untyped-def]
    registry = ConnectionPoolRegistry(cloud_client, pool_factory=pool_factory)

    pools = await asyncio.gather(*(registry.get_pool("c1", "defaultdb", _principal()) for _ in range(5)))

    assert len({id(pool) for pool in pools}) == 1
    assert len(created_pools) == 1


@pytest.mark.anyio
async def test_pool_uses_principal_and_cloud_params(cloud_client, pool_factory, created_pools) -> None:  # type: ignore[no-untyped-def]
    registry = ConnectionPoolRegistry(cloud_client, max_size=4, pool_factory=pool_factory)

    await registry.get_pool("c1", "movr", _principal())

    kwargs = created_pools[0].kwargs
    assert kwargs["user"] == "bot"
    assert kwargs["password"] == "pw"
    assert kwargs["database"] == "movr"
    assert kwargs["host"] == "free-tier.example.com"
    assert kwargs["port"] == 26257
    assert kwargs["max_size"] == 4


@pytest.mark.anyio
async def test_new_connections_elevate_to_admin_role(cloud_client, pool_factory, cluster) -> None:  # type: ignore[no-untyped-def]
    registry = ConnectionPoolRegistry(cloud_client, admin_role="ops", pool_factory=pool_factory)

    pool = await registry.get_pool("c1", "defaultdb", _principal())
    async with pool.acquire() as conn:
        await conn.execute("SELECT 1")

    assert cluster.queries[:2] == ['SET ROLE "ops"', "SELECT 1"]


@pytest.mark.anyio
async def test_close_closes_every_pool(cloud_client, pool_factory, created_pools) -> None:  # type: ignore[no-untyped-def]
    registry = ConnectionPoolRegistry(cloud_client, pool_factory=pool_factory)
    await registry.get_pool("c1", "a", _principal())
    await registry.get_pool("c1", "b", _principal())

    await registry.close()

    assert all(pool.closed for pool in created_pools)
    assert registry.cached_keys() == ()
