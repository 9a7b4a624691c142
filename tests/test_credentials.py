"""Tests for the credential broker."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crdbextra.cloud import ClusterNotReadyError
from crdbextra.connections import ConnectionPoolRegistry
from crdbextra.credentials import CredentialBroker

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _broker(cloud_client, pool_factory) -> CredentialBroker:  # type: ignore[no-untyped-def]
    pools = ConnectionPoolRegistry(cloud_client, pool_factory=pool_factory)
    return CredentialBroker(
        cloud_client,
        pools,
        principal_name="bot",
        ttl=timedelta(minutes=4),
        password_factory=lambda: "pw",
        clock=lambda: FIXED_NOW,
    )


@pytest.mark.anyio
async def test_first_acquire_recreates_principal_and_sets_expiry(
    cloud_client, cloud_api, pool_factory, cluster
) -> None:  # type: ignore[no-untyped-def]
    broker = _broker(cloud_client, pool_factory)

    principal = await broker.acquire("c1")

    assert principal.username == "bot"
    assert principal.password == "pw"
    assert principal.expires_at == FIXED_NOW + timedelta(minutes=4)
    methods = [request.method for request in cloud_api.requests if "sql-users" in request.url.path]
    assert methods == ["DELETE", "POST"]
    assert cluster.queries_matching("ALTER USER") == [
        "ALTER USER \"bot\" WITH VALID UNTIL '2026-01-01T12:04:00+00:00'"
    ]


@pytest.mark.anyio
async def test_cached_acquire_skips_rest_but_always_renews(
    cloud_client, cloud_api, pool_factory, cluster
) -> None:  # type: ignore[no-untyped-def]
    broker = _broker(cloud_client, pool_factory)

    first = await broker.acquire("c1")
    second = await broker.acquire("c1")
    third = await broker.acquire("c1")

    assert first is second is third
    assert len(cloud_api.calls("POST", "sql-users")) == 1
    assert len(cluster.queries_matching("ALTER USER")) == 3


@pytest.mark.anyio
async def test_concurrent_acquires_create_one_principal(
    cloud_client, cloud_api, pool_factory
) -> None:  # type: ignore[no-untyped-def]
    broker = _broker(cloud_client, pool_factory)

    principals = await asyncio.gather(*(broker.acquire("c1") for _ in range(5)))

    assert len({id(principal) for principal in principals}) == 1
    assert len(cloud_api.calls("POST", "sql-users")) == 1


@pytest.mark.anyio
async def test_separate_clusters_get_separate_principals(
    cloud_client, cloud_api, pool_factory
) -> None:  # type: ignore[no-untyped-def]
    broker = _broker(cloud_client, pool_factory)

    await broker.acquire("c1")
    await broker.acquire("c2")

    assert broker.cached("c1") is not broker.cached("c2")
    assert len(cloud_api.calls("POST", "sql-users")) == 2


@pytest.mark.anyio
async def test_not_ready_cluster_surfaces_typed_error(
    cloud_client, cloud_api, pool_factory
) -> None:  # type: ignore[no-untyped-def]
    cloud_api.fail("POST", "sql-users", 400, {"code": 9, "message": "not ready"})
    broker = _broker(cloud_client, pool_factory)

    with pytest.raises(ClusterNotReadyError):
        await broker.acquire("c1")

    assert broker.cached("c1") is None
