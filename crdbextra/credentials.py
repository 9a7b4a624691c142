"""Credential broker provisioning one ephemeral SQL principal per cluster."""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from .cloud import CockroachCloudClient
from .connections import ConnectionPoolRegistry
from .models import ClusterPrincipal
from .sqlutil import quote_ident, quote_literal

LOG = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=4)


def _default_password() -> str:
    return secrets.token_urlsafe(24)


class CredentialBroker:
    """Hands out a live principal per cluster and renews its expiry on every use.

    All acquisitions, for every cluster, serialize through a single lock so a
    principal can never be created twice concurrently. There is no background
    refresh: the expiry is pushed forward each time ``acquire`` is called.
    """

    def __init__(
        self,
        cloud: CockroachCloudClient,
        pools: ConnectionPoolRegistry,
        *,
        principal_name: str,
        ttl: timedelta = DEFAULT_TTL,
        bootstrap_database: str = "defaultdb",
        password_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cloud = cloud
        self._pools = pools
        self._principal_name = principal_name
        self._ttl = ttl
        self._bootstrap_database = bootstrap_database
        self._password_factory = password_factory or _default_password
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._principals: dict[str, ClusterPrincipal] = {}
        self._lock = asyncio.Lock()

    def cached(self, cluster_id: str) -> ClusterPrincipal | None:
        """Return the cached principal for a cluster without touching the cluster."""

        return self._principals.get(cluster_id)

    async def acquire(self, cluster_id: str) -> ClusterPrincipal:
        """Return a principal for ``cluster_id`` whose expiry has just been extended."""

        async with self._lock:
            principal = self._principals.get(cluster_id)
            if principal is None:
                LOG.debug("Creating principal for cluster %s", cluster_id)
                principal = await self._create(cluster_id)
                self._principals[cluster_id] = principal
            else:
                LOG.debug("Using existing principal for cluster %s", cluster_id)
            await self._renew(principal)
            return principal

    async def _create(self, cluster_id: str) -> ClusterPrincipal:
        # A principal left behind by an earlier process has an unknown password.
        await self._cloud.delete_sql_user(cluster_id, self._principal_name, missing_ok=True)
        principal = ClusterPrincipal(
            cluster_id=cluster_id,
            username=self._principal_name,
            password=self._password_factory(),
        )
        await self._cloud.create_sql_user(cluster_id, principal.username, principal.password)
        LOG.info("Provisioned principal %s on cluster %s", principal.username, cluster_id)
        return principal

    async def _renew(self, principal: ClusterPrincipal) -> None:
        expires_at = self._clock() + self._ttl
        pool = await self._pools.get_pool(principal.cluster_id, self._bootstrap_database, principal)
        await pool.execute(
            f"ALTER USER {quote_ident(principal.username)} WITH VALID UNTIL {quote_literal(expires_at.isoformat())}"
        )
        principal.expires_at = expires_at


__all__ = ["CredentialBroker", "DEFAULT_TTL"]
