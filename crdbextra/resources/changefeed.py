"""Changefeed resource: create, read, update and delete changefeed jobs."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from crdbextra.cloud import ClusterStateError
from crdbextra.errors import ConflictError, InvalidResourceIdError, ResourceError
from crdbextra.jobs import ACTIVE_STATUSES, JobStatus, cancel_job, is_terminal, pause_job, resume_job
from crdbextra.saga import Saga
from crdbextra.session import ClusterSessionManager
from crdbextra.sqlutil import REDACTED, compare_urls

from .changefeed_options import (
    CURSOR_OPTION,
    ChangefeedOptions,
    ObservedDefinition,
    OptionValue,
    diff_options,
    normalize_options,
    parse_observed_definition,
    render_alter_statement,
    render_create_statement,
    target_delta,
)
from .cursor import PersistentCursorLedger
from .ids import ResourceKind, format_id, parse_id

LOG = logging.getLogger(__name__)

TABLE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+?\.[a-zA-Z0-9_]+?\.[a-zA-Z0-9_]+?$")
EXPIRED_CURSOR_MARKER = "after replica GC threshold"
FAILED_STATUSES = frozenset({JobStatus.FAILED.value, JobStatus.CANCELED.value, JobStatus.CANCELING.value})
PAUSE_REASON = "Altering changefeed"


class ChangefeedSpec(BaseModel):
    """Declared changefeed: what to stream, where, and how."""

    cluster_id: str = Field(min_length=1)
    sink_uri: str = Field(min_length=1)
    target: list[str] | None = None
    select: str | None = None
    options: dict[str, str | bool] = Field(default_factory=dict)
    persistent_cursor: str | None = None
    initial_scan_on_update: bool = False

    @field_validator("target")
    @classmethod
    def _check_targets(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return value
        if not value:
            raise ValueError("target must list at least one table")
        if len(set(value)) != len(value):
            raise ValueError("target entries must be unique")
        for name in value:
            if not TABLE_NAME_PATTERN.match(name):
                raise ValueError(f"{name!r} is not a fully qualified table name (database.schema.table)")
        return value

    @field_validator("options")
    @classmethod
    def _check_options(cls, value: dict[str, str | bool]) -> dict[str, str | bool]:
        return normalize_options(value)

    @model_validator(mode="after")
    def _check_shape(self) -> ChangefeedSpec:
        if (self.target is None) == (self.select is None):
            raise ValueError("exactly one of target or select must be set")
        if self.persistent_cursor is not None:
            parse_id(self.persistent_cursor, ResourceKind.CURSOR)
            if CURSOR_OPTION in self.options:
                raise ValueError("the cursor option cannot be combined with persistent_cursor")
        return self

    def option_set(self) -> ChangefeedOptions:
        return ChangefeedOptions(self.options, strict=False)

    @property
    def cursor_key(self) -> str | None:
        if self.persistent_cursor is None:
            return None
        return parse_id(self.persistent_cursor, ResourceKind.CURSOR).discriminator


class ChangefeedState(ChangefeedSpec):
    """Tracked changefeed."""

    id: str
    job_id: int
    status: str = JobStatus.RUNNING.value

    # Observed options may carry values newer engines added, and the cursor
    # option is filled in from the persistent cursor at create time.
    @field_validator("options")
    @classmethod
    def _check_options(cls, value: dict[str, str | bool]) -> dict[str, str | bool]:
        return normalize_options(value, strict=False)

    @model_validator(mode="after")
    def _check_shape(self) -> ChangefeedState:
        if (self.target is None) == (self.select is None):
            raise ValueError("exactly one of target or select must be set")
        return self


@dataclass(frozen=True, slots=True)
class ObservedChangefeed:
    """Live job row plus its parsed definition."""

    job_id: int
    status: str
    sink_uri: str
    full_table_names: tuple[str, ...]
    definition: ObservedDefinition


class ChangefeedResource:
    """Reconciles a :class:`ChangefeedSpec` with a changefeed job on the cluster."""

    kind = ResourceKind.CHANGEFEED

    def __init__(self, session: ClusterSessionManager, cursors: PersistentCursorLedger | None = None) -> None:
        self._session = session
        self.cursors = cursors or PersistentCursorLedger(session)

    async def create(self, spec: ChangefeedSpec) -> ChangefeedState:
        cluster_id = spec.cluster_id
        options = spec.option_set()
        cursor_key = spec.cursor_key
        if cursor_key is not None:
            cursor = await self.cursors.read(cluster_id, cursor_key)
            if cursor is None:
                raise ResourceError("Unable to get persistent cursor", f"cursor {cursor_key} does not exist")
            if cursor.in_use:
                raise ConflictError(
                    "Persistent cursor is in use",
                    f"The persistent cursor is currently in use by job {cursor.last_used_job_id}",
                )
            if cursor.value:
                options = options.with_value(CURSOR_OPTION, cursor.value)

        statement = render_create_statement(spec.sink_uri, options, targets=spec.target, select=spec.select)
        LOG.info(
            "Creating changefeed on cluster %s: %s",
            cluster_id,
            render_create_statement(spec.sink_uri, options, targets=spec.target, select=spec.select, redact=True),
        )

        watcher = self._session.watcher
        created: dict[str, int] = {}

        async with self._session.connection(cluster_id) as conn:

            async def create_job() -> int:
                try:
                    job_id = await conn.fetchval(statement)
                except Exception as exc:
                    if EXPIRED_CURSOR_MARKER in str(exc):
                        raise ResourceError("Unable to create changefeed job with expired cursor", str(exc)) from exc
                    raise ResourceError("Unable to create changefeed job", str(exc)) from exc
                created["job_id"] = int(job_id)
                return created["job_id"]

            async def cancel_created() -> None:
                await cancel_job(conn, created["job_id"])
                await watcher.await_status(conn, created["job_id"], JobStatus.CANCELED)

            async def await_running() -> None:
                await watcher.await_status(conn, created["job_id"], JobStatus.RUNNING)

            async def claim_cursor() -> None:
                try:
                    await self.cursors.claim(cluster_id, cursor_key, created["job_id"])
                except ConflictError:
                    raise
                except Exception as exc:
                    raise ResourceError("Unable to update cursor job ID", str(exc)) from exc

            saga = Saga("create changefeed")
            saga.step("create job", create_job, cancel_created).step("await running", await_running)
            if cursor_key is not None:
                saga.step("claim cursor", claim_cursor)
            try:
                await saga.run()
            except ResourceError:
                raise
            except Exception as exc:
                raise ResourceError("Unable to create changefeed job", str(exc)) from exc

        job_id = created["job_id"]
        LOG.info("Changefeed job %s running on cluster %s", job_id, cluster_id)
        return ChangefeedState(
            **spec.model_dump(exclude={"options"}),
            options=options.to_dict(),
            id=format_id(ResourceKind.CHANGEFEED, cluster_id, job_id),
            job_id=job_id,
            status=JobStatus.RUNNING.value,
        )

    async def read(self, state: ChangefeedState) -> ChangefeedState | None:
        """Refresh ``state`` from the cluster; ``None`` when the job is gone."""

        observed = await self._observe(state.cluster_id, state.job_id)
        if observed is None:
            return None
        definition = observed.definition

        sink_uri = state.sink_uri
        if not compare_urls(state.sink_uri, observed.sink_uri):
            sink_uri = observed.sink_uri

        target = state.target
        select = state.select
        if definition.targets is not None:
            target = list(observed.full_table_names or definition.targets)
            select = None
        elif select is None:
            select = definition.select

        options = _merge_redacted(state.options, definition.options)
        return _observed_state(
            **state.model_dump(exclude={"sink_uri", "target", "select", "options", "status"}),
            sink_uri=sink_uri,
            target=target,
            select=select,
            options=options,
            status=observed.status,
        )

    async def update(self, plan: ChangefeedSpec, state: ChangefeedState) -> ChangefeedState:
        if plan.cluster_id != state.cluster_id:
            raise ConflictError("Unable to update changefeed", "cluster_id cannot change in place")
        if state.select is not None or plan.select is not None:
            raise ResourceError("Unable to update changefeed", "Cannot update changefeed with select statement")
        if is_terminal(state.status):
            raise ResourceError("Unable to update changefeed", f"Changefeed job is in state: {state.status}")

        current = state.option_set()
        desired = plan.option_set()
        tracked_cursor = current.get(CURSOR_OPTION)
        if tracked_cursor is not None:
            desired = desired.with_value(CURSOR_OPTION, tracked_cursor)
        else:
            desired = desired.without(CURSOR_OPTION)
        option_diff = diff_options(current, desired)

        added, removed = target_delta(state.target or [], plan.target or [])
        sink_uri = None if compare_urls(state.sink_uri, plan.sink_uri) else plan.sink_uri
        alter = render_alter_statement(
            state.job_id,
            added=added,
            removed=removed,
            options=option_diff,
            sink_uri=sink_uri,
            initial_scan_on_add=plan.initial_scan_on_update,
        )

        cluster_id = state.cluster_id
        job_id = state.job_id
        old_key = state.cursor_key
        new_key = plan.cursor_key
        watcher = self._session.watcher
        saga = Saga("update changefeed")

        if old_key != new_key:
            if old_key is not None:
                saga.step(
                    "release previous cursor",
                    lambda: self.cursors.release(cluster_id, old_key),
                    lambda: self.cursors.claim(cluster_id, old_key, job_id),
                )
            if new_key is not None:
                saga.step(
                    "claim cursor",
                    lambda: self.cursors.claim(cluster_id, new_key, job_id),
                    lambda: self.cursors.release(cluster_id, new_key),
                )

        status = state.status
        if alter is None:
            await saga.run()
        else:
            LOG.info("Altering changefeed %s on cluster %s", job_id, cluster_id)
            async with self._session.connection(cluster_id) as conn:

                async def pause() -> None:
                    await pause_job(conn, job_id, PAUSE_REASON)

                async def undo_pause() -> None:
                    await resume_job(conn, job_id)
                    await watcher.await_status(conn, job_id, JobStatus.RUNNING)

                async def await_paused() -> None:
                    await watcher.await_status(conn, job_id, JobStatus.PAUSED)

                async def apply() -> None:
                    await conn.execute(alter)

                async def resume() -> None:
                    await resume_job(conn, job_id)
                    await watcher.await_status(conn, job_id, JobStatus.RUNNING)

                saga.step("pause job", pause, undo_pause)
                saga.step("await paused", await_paused)
                saga.step("alter changefeed", apply)
                saga.step("resume job", resume)
                try:
                    await saga.run()
                except ResourceError:
                    raise
                except Exception as exc:
                    raise ResourceError("Unable to update changefeed", str(exc)) from exc
            status = JobStatus.RUNNING.value

        return ChangefeedState(
            **plan.model_dump(exclude={"options"}),
            options=desired.to_dict(),
            id=state.id,
            job_id=job_id,
            status=status,
        )

    async def delete(self, state: ChangefeedState) -> None:
        """Cancel the job if it is still active; terminal jobs are left alone."""

        if state.status not in {status.value for status in ACTIVE_STATUSES}:
            LOG.info("Changefeed %s already %s, nothing to cancel", state.job_id, state.status)
            return
        async with self._session.connection(state.cluster_id) as conn:
            try:
                await cancel_job(conn, state.job_id)
                await self._session.watcher.await_status(conn, state.job_id, JobStatus.CANCELED)
            except ResourceError:
                raise
            except Exception as exc:
                raise ResourceError("Unable to cancel job", str(exc)) from exc

    async def import_state(self, resource_id: str) -> ChangefeedState | None:
        parsed = parse_id(resource_id, ResourceKind.CHANGEFEED)
        try:
            job_id = int(parsed.discriminator)
        except ValueError:
            raise InvalidResourceIdError(f"Changefeed job id must be an integer, got: {resource_id!r}") from None
        observed = await self._observe(parsed.cluster_id, job_id)
        if observed is None:
            return None
        definition = observed.definition
        target = None
        if definition.targets is not None:
            target = list(observed.full_table_names or definition.targets)
        return _observed_state(
            id=format_id(ResourceKind.CHANGEFEED, parsed.cluster_id, job_id),
            cluster_id=parsed.cluster_id,
            job_id=job_id,
            status=observed.status,
            sink_uri=observed.sink_uri or definition.sink_uri,
            target=target,
            select=definition.select,
            options=definition.options.to_dict(),
        )

    async def _observe(self, cluster_id: str, job_id: int) -> ObservedChangefeed | None:
        try:
            async with self._session.connection(cluster_id) as conn:
                row = await conn.fetchrow(
                    "SELECT description, status, sink_uri, full_table_names "
                    f"FROM [SHOW CHANGEFEED JOB {int(job_id)}]"
                )
        except ClusterStateError as exc:
            LOG.warning("Cluster %s unavailable, treating changefeed %s as absent: %s", cluster_id, job_id, exc)
            return None
        if row is None:
            return None
        status = row["status"]
        if status in FAILED_STATUSES:
            raise ResourceError("Changefeed job in unexpected state", f"Changefeed job is in state: {status}")
        return ObservedChangefeed(
            job_id=job_id,
            status=status,
            sink_uri=row["sink_uri"],
            full_table_names=tuple(row["full_table_names"] or ()),
            definition=parse_observed_definition(row["description"]),
        )


def _observed_state(**fields: Any) -> ChangefeedState:
    # Table names and options come from the cluster and may not fit the declared shape.
    try:
        return ChangefeedState(**fields)
    except ValidationError as exc:
        raise ResourceError("Unable to read changefeed", str(exc)) from exc


def _merge_redacted(declared: dict[str, OptionValue], observed: ChangefeedOptions) -> dict[str, OptionValue]:
    merged: dict[str, Any] = {}
    for name, value in observed.items():
        if isinstance(value, str) and value.lower() == REDACTED and name in declared:
            merged[name] = declared[name]
        else:
            merged[name] = value
    return normalize_options(merged, strict=False)


__all__ = ["ChangefeedResource", "ChangefeedSpec", "ChangefeedState", "ObservedChangefeed"]
