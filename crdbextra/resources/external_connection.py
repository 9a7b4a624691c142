"""External connection resource."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from crdbextra.cloud import ClusterStateError
from crdbextra.errors import ConflictError, ResourceError
from crdbextra.saga import Saga
from crdbextra.session import ClusterSessionManager
from crdbextra.sqlutil import compare_urls, quote_ident

from .ids import ResourceKind, format_id, parse_id

LOG = logging.getLogger(__name__)


class ExternalConnectionSpec(BaseModel):
    cluster_id: str = Field(min_length=1)
    connection_name: str = Field(min_length=1)
    connection_uri: str = Field(min_length=1)


class ExternalConnectionState(ExternalConnectionSpec):
    id: str


class ExternalConnectionResource:
    kind = ResourceKind.EXTERNAL_CONNECTION

    READ_QUERY = (
        "SELECT connection_name, connection_uri FROM [SHOW EXTERNAL CONNECTIONS] WHERE connection_name = $1"
    )

    def __init__(self, session: ClusterSessionManager) -> None:
        self._session = session

    async def create(self, spec: ExternalConnectionSpec) -> ExternalConnectionState:
        async with self._session.connection(spec.cluster_id) as conn:
            try:
                await self._create(conn, spec.connection_name, spec.connection_uri)
            except Exception as exc:
                raise ResourceError("Unable to create external connection", str(exc)) from exc
        return ExternalConnectionState(
            **spec.model_dump(),
            id=format_id(ResourceKind.EXTERNAL_CONNECTION, spec.cluster_id, spec.connection_name),
        )

    async def read(self, state: ExternalConnectionState) -> ExternalConnectionState | None:
        uri = await self._fetch_uri(state.cluster_id, state.connection_name)
        if uri is None:
            return None
        if compare_urls(uri, state.connection_uri):
            return state
        return state.model_copy(update={"connection_uri": uri})

    async def update(
        self, plan: ExternalConnectionSpec, state: ExternalConnectionState
    ) -> ExternalConnectionState:
        """Replace the connection in place; only the URI may change."""

        if (plan.cluster_id, plan.connection_name) != (state.cluster_id, state.connection_name):
            raise ConflictError(
                "Unable to update external connection", "cluster_id and connection_name cannot change in place"
            )
        if plan.connection_uri == state.connection_uri:
            return state
        name = state.connection_name
        async with self._session.connection(state.cluster_id) as conn:
            saga = Saga("replace external connection")
            saga.step(
                "drop connection",
                lambda: conn.execute(f"DROP EXTERNAL CONNECTION {quote_ident(name)}"),
                lambda: self._create(conn, name, state.connection_uri),
            )
            saga.step("create connection", lambda: self._create(conn, name, plan.connection_uri))
            try:
                await saga.run()
            except Exception as exc:
                raise ResourceError("Unable to update external connection", str(exc)) from exc
        return state.model_copy(update={"connection_uri": plan.connection_uri})

    async def delete(self, state: ExternalConnectionState) -> None:
        async with self._session.connection(state.cluster_id) as conn:
            try:
                await conn.execute(f"DROP EXTERNAL CONNECTION {quote_ident(state.connection_name)}")
            except Exception as exc:
                raise ResourceError("Unable to delete external connection", str(exc)) from exc

    async def import_state(self, resource_id: str) -> ExternalConnectionState | None:
        parsed = parse_id(resource_id, ResourceKind.EXTERNAL_CONNECTION)
        uri = await self._fetch_uri(parsed.cluster_id, parsed.discriminator)
        if uri is None:
            return None
        return ExternalConnectionState(
            id=str(parsed),
            cluster_id=parsed.cluster_id,
            connection_name=parsed.discriminator,
            connection_uri=uri,
        )

    async def _create(self, conn, name: str, uri: str) -> None:
        await conn.execute(f"CREATE EXTERNAL CONNECTION {quote_ident(name)} AS $1", uri)

    async def _fetch_uri(self, cluster_id: str, name: str) -> str | None:
        try:
            async with self._session.connection(cluster_id) as conn:
                row = await conn.fetchrow(self.READ_QUERY, name)
        except ClusterStateError as exc:
            LOG.warning("Cluster %s unavailable, treating external connection %r as absent: %s", cluster_id, name, exc)
            return None
        except Exception as exc:
            raise ResourceError("Unable to read external connection", str(exc)) from exc
        return None if row is None else row["connection_uri"]


__all__ = ["ExternalConnectionResource", "ExternalConnectionSpec", "ExternalConnectionState"]
