"""Cluster setting resource."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from crdbextra.cloud import ClusterStateError
from crdbextra.errors import ConflictError, ResourceError
from crdbextra.session import ClusterSessionManager
from crdbextra.sqlutil import quote_ident

from .ids import ResourceKind, format_id, parse_id

LOG = logging.getLogger(__name__)


class ClusterSettingSpec(BaseModel):
    cluster_id: str = Field(min_length=1)
    setting_name: str = Field(min_length=1)
    setting_value: str


class ClusterSettingState(ClusterSettingSpec):
    id: str


class ClusterSettingResource:
    kind = ResourceKind.CLUSTER_SETTING

    def __init__(self, session: ClusterSessionManager) -> None:
        self._session = session

    async def create(self, spec: ClusterSettingSpec) -> ClusterSettingState:
        await self._set(spec.cluster_id, spec.setting_name, spec.setting_value)
        return ClusterSettingState(
            **spec.model_dump(),
            id=format_id(ResourceKind.CLUSTER_SETTING, spec.cluster_id, spec.setting_name),
        )

    async def read(self, state: ClusterSettingState) -> ClusterSettingState | None:
        value = await self._get(state.cluster_id, state.setting_name)
        if value is None:
            return None
        return state.model_copy(update={"setting_value": value})

    async def update(self, plan: ClusterSettingSpec, state: ClusterSettingState) -> ClusterSettingState:
        if (plan.cluster_id, plan.setting_name) != (state.cluster_id, state.setting_name):
            raise ConflictError("Unable to set cluster setting", "cluster_id and setting_name cannot change in place")
        await self._set(plan.cluster_id, plan.setting_name, plan.setting_value)
        return state.model_copy(update={"setting_value": plan.setting_value})

    async def delete(self, state: ClusterSettingState) -> None:
        async with self._session.connection(state.cluster_id) as conn:
            try:
                await conn.execute(f"RESET CLUSTER SETTING {quote_ident(state.setting_name)}")
            except Exception as exc:
                raise ResourceError("Unable to reset cluster setting", str(exc)) from exc

    async def import_state(self, resource_id: str) -> ClusterSettingState | None:
        parsed = parse_id(resource_id, ResourceKind.CLUSTER_SETTING)
        value = await self._get(parsed.cluster_id, parsed.discriminator)
        if value is None:
            return None
        return ClusterSettingState(
            id=str(parsed),
            cluster_id=parsed.cluster_id,
            setting_name=parsed.discriminator,
            setting_value=value,
        )

    async def _set(self, cluster_id: str, name: str, value: str) -> None:
        LOG.debug("Setting cluster setting %s on cluster %s", name, cluster_id)
        async with self._session.connection(cluster_id) as conn:
            try:
                await conn.execute(f"SET CLUSTER SETTING {quote_ident(name)} = $1", value)
            except Exception as exc:
                raise ResourceError("Unable to set cluster setting", str(exc)) from exc

    async def _get(self, cluster_id: str, name: str) -> str | None:
        try:
            async with self._session.connection(cluster_id) as conn:
                return await conn.fetchval(
                    f"WITH x AS (SHOW CLUSTER SETTING {quote_ident(name)}) SELECT value::TEXT FROM x AS t(value)"
                )
        except ClusterStateError as exc:
            LOG.warning("Cluster %s unavailable, treating setting %s as absent: %s", cluster_id, name, exc)
            return None
        except Exception as exc:
            raise ResourceError("Unable to get cluster setting", str(exc)) from exc


__all__ = ["ClusterSettingResource", "ClusterSettingSpec", "ClusterSettingState"]
