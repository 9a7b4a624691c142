"""Registry wiring resource handlers to the kind tag of their ids."""

from __future__ import annotations

from typing import Any, Iterable, Protocol

from pydantic import BaseModel

from crdbextra.errors import InvalidResourceIdError
from crdbextra.session import ClusterSessionManager

from .backup_schedule import BackupScheduleResource
from .changefeed import ChangefeedResource
from .cluster_setting import ClusterSettingResource
from .cursor import PersistentCursorLedger, PersistentCursorResource
from .external_connection import ExternalConnectionResource
from .ids import SEPARATOR, ResourceKind
from .migration import MigrationResource


class ResourceHandler(Protocol):
    kind: ResourceKind

    async def create(self, spec: Any) -> BaseModel: ...

    async def read(self, state: Any) -> BaseModel | None: ...

    async def update(self, plan: Any, state: Any) -> BaseModel: ...

    async def delete(self, state: Any) -> None: ...

    async def import_state(self, resource_id: str) -> BaseModel | None: ...


class ResourceRegistry:
    """Collects resource handlers keyed by kind."""

    def __init__(self) -> None:
        self._handlers: dict[ResourceKind, ResourceHandler] = {}

    @classmethod
    def for_session(cls, session: ClusterSessionManager) -> ResourceRegistry:
        """Registry with every built-in resource bound to ``session``."""

        ledger = PersistentCursorLedger(session)
        registry = cls()
        registry.register_many(
            [
                ChangefeedResource(session, ledger),
                BackupScheduleResource(session),
                PersistentCursorResource(session, ledger),
                ExternalConnectionResource(session),
                ClusterSettingResource(session),
                MigrationResource(session),
            ]
        )
        return registry

    def register(self, handler: ResourceHandler) -> None:
        if handler.kind in self._handlers:
            raise ValueError(f"A handler for '{handler.kind.value}' is already registered")
        self._handlers[handler.kind] = handler

    def register_many(self, handlers: Iterable[ResourceHandler]) -> None:
        for handler in handlers:
            self.register(handler)

    def kinds(self) -> list[ResourceKind]:
        return list(self._handlers)

    def get(self, kind: ResourceKind | str) -> ResourceHandler:
        try:
            return self._handlers[ResourceKind(kind)]
        except (KeyError, ValueError):
            raise InvalidResourceIdError(f"No resource handler registered for kind {kind!r}") from None

    async def import_state(self, resource_id: str) -> BaseModel | None:
        """Import any resource by id, dispatching on its leading kind tag."""

        kind, _, _ = resource_id.partition(SEPARATOR)
        return await self.get(kind).import_state(resource_id)


__all__ = ["ResourceHandler", "ResourceRegistry"]
