"""Backup schedule resource.

One declared schedule maps to up to two cluster schedules: the full backup
and, when full backups are less frequent than the recurrence, an
incremental one. Both ids are tracked.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal

from croniter import croniter
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from crdbextra.cloud import ClusterStateError
from crdbextra.errors import ConflictError, ResourceError, StatementParseError
from crdbextra.session import ClusterSessionManager
from crdbextra.sqlutil import compare_urls, quote_ident, quote_literal

from .backup_command import BackupCommand, parse_backup_command
from .changefeed import TABLE_NAME_PATTERN
from .ids import ResourceKind, format_id, parse_id

LOG = logging.getLogger(__name__)

RECURRENCE_SHORTHANDS = frozenset({"@daily", "@hourly", "@weekly"})
ALWAYS = "always"

# SHOW SCHEDULES spells schedule options with engine enum names.
EXECUTION_FAILURE_NAMES = {
    "PAUSE_SCHED": "pause",
    "RETRY_SOON": "retry",
    "RETRY_SCHED": "reschedule",
}
PREVIOUS_RUNNING_NAMES = {
    "NO_WAIT": "start",
}

SCHEDULE_IDS_WRAPPER = (
    "WITH x AS ({statement}) "
    "SELECT schedule_id, strpos(backup_stmt, 'BACKUP INTO LATEST') = 1 AS is_incremental FROM x"
)
_DROP_COUNT = re.compile(r"(\d+)\s*$")


def validate_recurrence(value: str) -> str:
    if value in RECURRENCE_SHORTHANDS or croniter.is_valid(value):
        return value
    raise ValueError(f"{value!r} is not a cron expression or one of {', '.join(sorted(RECURRENCE_SHORTHANDS))}")


class BackupTarget(BaseModel):
    """Exactly one of tables, databases or the whole cluster."""

    tables: list[str] | None = None
    databases: list[str] | None = None
    full_cluster_backup: bool | None = None

    @field_validator("tables")
    @classmethod
    def _check_tables(cls, value: list[str] | None) -> list[str] | None:
        for name in value or ():
            if not TABLE_NAME_PATTERN.match(name):
                raise ValueError(f"{name!r} is not a fully qualified table name (database.schema.table)")
        return value

    @model_validator(mode="after")
    def _exactly_one(self) -> BackupTarget:
        chosen = [bool(self.tables), bool(self.databases), bool(self.full_cluster_backup)]
        if sum(chosen) != 1:
            raise ValueError("exactly one of tables, databases or full_cluster_backup must be set")
        return self

    def clause(self) -> str:
        """``TABLE a,b``, ``DATABASE a,b`` or empty for the full cluster."""

        if self.full_cluster_backup:
            return ""
        if self.tables:
            return f"TABLE {','.join(self.tables)}"
        return f"DATABASE {','.join(self.databases or [])}"


class BackupOptions(BaseModel):
    revision_history: bool = True
    full_backup_frequency: str = ALWAYS
    encryption_passphrase: str | None = Field(default=None, repr=False)
    kms: str | None = None
    incremental_backup_location: str | None = None

    @field_validator("full_backup_frequency")
    @classmethod
    def _check_frequency(cls, value: str) -> str:
        if value == ALWAYS:
            return value
        return validate_recurrence(value)


class ScheduleOptions(BaseModel):
    first_run: str | None = None
    on_execution_failure: Literal["retry", "reschedule", "pause"] = "reschedule"
    on_previous_running: Literal["start", "skip", "wait"] = "wait"
    ignore_existing_backups: bool = False


class BackupScheduleSpec(BaseModel):
    """Declared backup schedule."""

    cluster_id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    location: str = Field(min_length=1)
    recurring: str
    target: BackupTarget
    backup_options: BackupOptions = Field(default_factory=BackupOptions)
    schedule_options: ScheduleOptions = Field(default_factory=ScheduleOptions)

    @field_validator("recurring")
    @classmethod
    def _check_recurring(cls, value: str) -> str:
        return validate_recurrence(value)


class BackupScheduleState(BackupScheduleSpec):
    id: str
    full_backup_schedule_id: int
    incremental_backup_schedule_id: int | None = None


def render_create_statement(spec: BackupScheduleSpec, *, redact: bool = False) -> str:
    """Build ``CREATE SCHEDULE ... FOR BACKUP`` from a declared schedule."""

    backup = spec.backup_options
    backup_items: list[str] = []
    if backup.revision_history:
        backup_items.append("revision_history")
    if backup.encryption_passphrase is not None:
        secret = "'redacted'" if redact else quote_literal(backup.encryption_passphrase)
        backup_items.append(f"encryption_passphrase={secret}")
    if backup.kms is not None:
        backup_items.append(f"kms={quote_literal(backup.kms)}")
    if backup.incremental_backup_location is not None:
        backup_items.append(f"incremental_location={quote_literal(backup.incremental_backup_location)}")

    schedule = spec.schedule_options
    schedule_items: list[str] = []
    if schedule.first_run is not None:
        schedule_items.append(f"first_run={quote_literal(schedule.first_run)}")
    schedule_items.append(f"on_execution_failure={quote_literal(schedule.on_execution_failure)}")
    schedule_items.append(f"on_previous_running={quote_literal(schedule.on_previous_running)}")
    if schedule.ignore_existing_backups:
        schedule_items.append("ignore_existing_backups")

    if backup.full_backup_frequency == ALWAYS:
        full = "FULL BACKUP ALWAYS"
    else:
        full = f"FULL BACKUP {quote_literal(backup.full_backup_frequency)}"

    parts = [
        f"CREATE SCHEDULE IF NOT EXISTS {quote_ident(spec.label)} FOR BACKUP",
        spec.target.clause(),
        f"INTO {quote_literal(spec.location)}",
        f"WITH {', '.join(backup_items)}" if backup_items else "",
        f"RECURRING {quote_literal(spec.recurring)}",
        full,
        f"WITH SCHEDULE OPTIONS {', '.join(schedule_items)}",
    ]
    return " ".join(part for part in parts if part)


def render_alter_statement(
    plan: BackupScheduleSpec, state: BackupScheduleState, *, redact: bool = False
) -> str:
    """Build ``ALTER BACKUP SCHEDULE`` with clauses for the fields that changed.

    ``revision_history`` is always re-asserted.
    """

    clauses: list[str] = []
    if plan.label != state.label:
        clauses.append(f"SET LABEL {quote_literal(plan.label)}")
    if plan.location != state.location:
        clauses.append(f"SET INTO {quote_literal(plan.location)}")
    if plan.recurring != state.recurring:
        clauses.append(f"SET RECURRING {quote_literal(plan.recurring)}")

    new, old = plan.backup_options, state.backup_options
    if new.full_backup_frequency != old.full_backup_frequency:
        if new.full_backup_frequency == ALWAYS:
            clauses.append("SET FULL BACKUP ALWAYS")
        else:
            clauses.append(f"SET FULL BACKUP {quote_literal(new.full_backup_frequency)}")
    clauses.append(f"SET WITH revision_history={'true' if new.revision_history else 'false'}")
    if new.encryption_passphrase != old.encryption_passphrase:
        if new.encryption_passphrase is None:
            clauses.append("UNSET WITH encryption_passphrase")
        else:
            secret = "'redacted'" if redact else quote_literal(new.encryption_passphrase)
            clauses.append(f"SET WITH encryption_passphrase={secret}")
    if new.kms != old.kms:
        if new.kms is None:
            clauses.append("UNSET WITH kms")
        else:
            clauses.append(f"SET WITH kms={quote_literal(new.kms)}")
    if new.incremental_backup_location != old.incremental_backup_location:
        if new.incremental_backup_location is None:
            clauses.append("UNSET WITH incremental_location")
        else:
            clauses.append(f"SET WITH incremental_location={quote_literal(new.incremental_backup_location)}")

    if plan.schedule_options.on_execution_failure != state.schedule_options.on_execution_failure:
        clauses.append(
            f"SET SCHEDULE OPTION on_execution_failure={quote_literal(plan.schedule_options.on_execution_failure)}"
        )
    if plan.schedule_options.on_previous_running != state.schedule_options.on_previous_running:
        clauses.append(
            f"SET SCHEDULE OPTION on_previous_running={quote_literal(plan.schedule_options.on_previous_running)}"
        )
    return f"ALTER BACKUP SCHEDULE {int(state.full_backup_schedule_id)} {', '.join(clauses)}"


class BackupScheduleResource:
    """Reconciles a :class:`BackupScheduleSpec` with the cluster's backup schedules."""

    kind = ResourceKind.BACKUP_SCHEDULE

    LIST_QUERY = (
        "SELECT id, label, recurrence, on_previous_running, on_execution_failure, command, backup_type "
        "FROM [SHOW SCHEDULES FOR BACKUP] WHERE label = $1"
    )
    EXISTS_QUERY = "SELECT EXISTS(SELECT * FROM [SHOW SCHEDULES FOR BACKUP] WHERE label = $1)"
    DROP_QUERY = "DROP SCHEDULES WITH x AS (SHOW SCHEDULES FOR BACKUP) SELECT id FROM x WHERE label = $1"

    def __init__(self, session: ClusterSessionManager) -> None:
        self._session = session

    async def create(self, spec: BackupScheduleSpec) -> BackupScheduleState:
        statement = SCHEDULE_IDS_WRAPPER.format(statement=render_create_statement(spec))
        LOG.debug(
            "Creating backup schedule: %s",
            SCHEDULE_IDS_WRAPPER.format(statement=render_create_statement(spec, redact=True)),
        )
        async with self._session.connection(spec.cluster_id) as conn:
            try:
                exists = await conn.fetchval(self.EXISTS_QUERY, spec.label)
            except Exception as exc:
                raise ResourceError("Unable to check if backup schedule exists", str(exc)) from exc
            if exists:
                raise ConflictError("Backup schedule with the given label already exists", spec.label)
            try:
                rows = await conn.fetch(statement)
            except Exception as exc:
                raise ResourceError("Unable to create backup schedule", str(exc)) from exc
        full_id, incremental_id = _schedule_ids(rows)
        LOG.info("Created backup schedule %r (full=%s, incremental=%s)", spec.label, full_id, incremental_id)
        return BackupScheduleState(
            **spec.model_dump(),
            id=format_id(ResourceKind.BACKUP_SCHEDULE, spec.cluster_id, spec.label),
            full_backup_schedule_id=full_id,
            incremental_backup_schedule_id=incremental_id,
        )

    async def read(self, state: BackupScheduleState) -> BackupScheduleState | None:
        return await self._load(state.cluster_id, state.label, state)

    async def update(self, plan: BackupScheduleSpec, state: BackupScheduleState) -> BackupScheduleState:
        if plan.cluster_id != state.cluster_id:
            raise ConflictError("Unable to update backup schedule", "cluster_id cannot change in place")
        if plan.target != state.target:
            raise ConflictError("Unable to update backup schedule", "target cannot change in place")
        if (plan.schedule_options.first_run, plan.schedule_options.ignore_existing_backups) != (
            state.schedule_options.first_run,
            state.schedule_options.ignore_existing_backups,
        ):
            raise ConflictError(
                "Unable to update backup schedule",
                "first_run and ignore_existing_backups cannot change in place",
            )
        statement = SCHEDULE_IDS_WRAPPER.format(statement=render_alter_statement(plan, state))
        LOG.debug(
            "Updating backup schedule: %s",
            SCHEDULE_IDS_WRAPPER.format(statement=render_alter_statement(plan, state, redact=True)),
        )
        async with self._session.connection(plan.cluster_id) as conn:
            try:
                rows = await conn.fetch(statement)
            except Exception as exc:
                raise ResourceError("Unable to update backup schedule", str(exc)) from exc
        full_id, incremental_id = _schedule_ids(rows)
        return BackupScheduleState(
            **plan.model_dump(),
            id=format_id(ResourceKind.BACKUP_SCHEDULE, plan.cluster_id, plan.label),
            full_backup_schedule_id=full_id,
            incremental_backup_schedule_id=incremental_id,
        )

    async def delete(self, state: BackupScheduleState) -> None:
        """Drop every schedule carrying the label; a label with no schedules is a no-op."""

        async with self._session.connection(state.cluster_id) as conn:
            try:
                result = await conn.execute(self.DROP_QUERY, state.label)
            except Exception as exc:
                raise ResourceError("Unable to delete backup schedule", str(exc)) from exc
        match = _DROP_COUNT.search(result or "")
        dropped = int(match.group(1)) if match else None
        if dropped == 0:
            LOG.info("No backup schedules labelled %r to drop", state.label)
        else:
            LOG.info("Dropped backup schedules labelled %r (%s)", state.label, result)

    async def import_state(self, resource_id: str) -> BackupScheduleState | None:
        parsed = parse_id(resource_id, ResourceKind.BACKUP_SCHEDULE)
        return await self._load(parsed.cluster_id, parsed.discriminator, None)

    async def _load(
        self, cluster_id: str, label: str, declared: BackupScheduleState | None
    ) -> BackupScheduleState | None:
        try:
            async with self._session.connection(cluster_id) as conn:
                rows = await conn.fetch(self.LIST_QUERY, label)
        except ClusterStateError as exc:
            LOG.warning("Cluster %s unavailable, treating backup schedule %r as absent: %s", cluster_id, label, exc)
            return None
        except Exception as exc:
            raise ResourceError("Unable to read backup schedule", str(exc)) from exc

        full: dict[str, Any] | None = None
        incremental: dict[str, Any] | None = None
        for row in rows:
            entry = dict(row)
            entry["parsed"] = parse_backup_command(_command_text(entry["command"]))
            if str(entry["backup_type"]).upper() == "FULL":
                full = entry
            else:
                incremental = entry
        if full is None:
            return None
        try:
            return _state_from_schedules(cluster_id, label, full, incremental, declared)
        except ValidationError as exc:
            raise StatementParseError(
                f"backup schedule {label!r} does not fit the declared shape: {exc}", _command_text(full["command"])
            ) from exc


def _state_from_schedules(
    cluster_id: str,
    label: str,
    full: dict[str, Any],
    incremental: dict[str, Any] | None,
    declared: BackupScheduleState | None,
) -> BackupScheduleState:
    command: BackupCommand = full["parsed"]

    location = command.location
    if declared is not None and compare_urls(location, declared.location):
        location = declared.location

    targets = command.targets
    if targets.tables:
        target = BackupTarget(tables=list(targets.tables))
    elif targets.databases:
        target = BackupTarget(databases=list(targets.databases))
    else:
        target = BackupTarget(full_cluster_backup=True)

    observed_passphrase = command.string_option("encryption_passphrase")
    passphrase = declared.backup_options.encryption_passphrase if declared is not None else None
    if (observed_passphrase is None) != (passphrase is None):
        passphrase = observed_passphrase

    revision_history = command.flag("revision_history") if "revision_history" in command.options else True
    incremental_location = None
    if incremental is not None:
        incremental_location = incremental["parsed"].string_option("incremental_location")

    backup_options = BackupOptions(
        revision_history=revision_history,
        full_backup_frequency=ALWAYS if incremental is None else full["recurrence"],
        encryption_passphrase=passphrase,
        kms=command.string_option("kms"),
        incremental_backup_location=incremental_location,
    )

    failure = EXECUTION_FAILURE_NAMES.get(str(full["on_execution_failure"]).upper(), "retry")
    previous = str(full["on_previous_running"])
    previous = PREVIOUS_RUNNING_NAMES.get(previous.upper(), previous.lower())
    declared_schedule = declared.schedule_options if declared is not None else ScheduleOptions()
    schedule_options = ScheduleOptions(
        first_run=declared_schedule.first_run,
        on_execution_failure=failure,
        on_previous_running=previous,
        ignore_existing_backups=declared_schedule.ignore_existing_backups,
    )

    recurring = incremental["recurrence"] if incremental is not None else full["recurrence"]
    return BackupScheduleState(
        id=format_id(ResourceKind.BACKUP_SCHEDULE, cluster_id, label),
        cluster_id=cluster_id,
        label=full["label"],
        location=location,
        recurring=recurring,
        target=target,
        backup_options=backup_options,
        schedule_options=schedule_options,
        full_backup_schedule_id=int(full["id"]),
        incremental_backup_schedule_id=int(incremental["id"]) if incremental is not None else None,
    )


def _command_text(command: Any) -> str:
    """``command`` is plain BACKUP text, or JSON carrying it under ``backup_statement``."""

    if isinstance(command, dict):
        return str(command.get("backup_statement", ""))
    text = str(command).strip()
    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        return str(payload.get("backup_statement", text))
    return text


def _schedule_ids(rows: list[Any]) -> tuple[int, int | None]:
    full_id: int | None = None
    incremental_id: int | None = None
    for row in rows:
        if row["is_incremental"]:
            incremental_id = int(row["schedule_id"])
        else:
            full_id = int(row["schedule_id"])
    if full_id is None:
        raise ResourceError("Unable to read backup schedule ids", "statement returned no full backup schedule")
    return full_id, incremental_id


__all__ = [
    "BackupOptions",
    "BackupScheduleResource",
    "BackupScheduleSpec",
    "BackupScheduleState",
    "BackupTarget",
    "ScheduleOptions",
    "render_alter_statement",
    "render_create_statement",
    "validate_recurrence",
]
