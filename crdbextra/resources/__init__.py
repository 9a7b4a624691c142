"""Cluster object resources and their reconcilers."""

from .backup_command import BackupCommand, BackupTargets, parse_backup_command
from .backup_schedule import (
    BackupOptions,
    BackupScheduleResource,
    BackupScheduleSpec,
    BackupScheduleState,
    BackupTarget,
    ScheduleOptions,
)
from .changefeed import ChangefeedResource, ChangefeedSpec, ChangefeedState
from .changefeed_options import ChangefeedOptions, parse_observed_definition
from .cluster_setting import ClusterSettingResource, ClusterSettingSpec, ClusterSettingState
from .cursor import (
    CursorValue,
    PersistentCursorLedger,
    PersistentCursorResource,
    PersistentCursorSpec,
    PersistentCursorState,
)
from .external_connection import ExternalConnectionResource, ExternalConnectionSpec, ExternalConnectionState
from .ids import ResourceId, ResourceKind, format_id, parse_id
from .migration import MigrationResource, MigrationSpec, MigrationState
from .registry import ResourceHandler, ResourceRegistry

__all__ = [
    "BackupCommand",
    "BackupOptions",
    "BackupScheduleResource",
    "BackupScheduleSpec",
    "BackupScheduleState",
    "BackupTarget",
    "BackupTargets",
    "ChangefeedOptions",
    "ChangefeedResource",
    "ChangefeedSpec",
    "ChangefeedState",
    "ClusterSettingResource",
    "ClusterSettingSpec",
    "ClusterSettingState",
    "CursorValue",
    "ExternalConnectionResource",
    "ExternalConnectionSpec",
    "ExternalConnectionState",
    "MigrationResource",
    "MigrationSpec",
    "MigrationState",
    "PersistentCursorLedger",
    "PersistentCursorResource",
    "PersistentCursorSpec",
    "PersistentCursorState",
    "ResourceHandler",
    "ResourceId",
    "ResourceKind",
    "ResourceRegistry",
    "ScheduleOptions",
    "format_id",
    "parse_backup_command",
    "parse_id",
    "parse_observed_definition",
]
