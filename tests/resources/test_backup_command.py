from __future__ import annotations

import pytest

from crdbextra.errors import StatementParseError
from crdbextra.resources.backup_command import parse_backup_command


def test_full_cluster_backup() -> None:
    command = parse_backup_command("BACKUP INTO 's3://bucket/path?AUTH=implicit'")

    assert command.targets.full_cluster
    assert command.location == "s3://bucket/path?AUTH=implicit"
    assert not command.incremental
    assert command.options == {}


def test_table_backup_with_options() -> None:
    command = parse_backup_command(
        "BACKUP TABLE db.public.t1, db.public.t2 INTO 's3://bucket/path' "
        "WITH OPTIONS (revision_history = true, encryption_passphrase = '*****', detached)"
    )

    assert command.targets.tables == ("db.public.t1", "db.public.t2")
    assert command.targets.databases == ()
    assert command.flag("revision_history")
    assert command.string_option("encryption_passphrase") == "*****"
    assert command.flag("detached")


def test_database_backup_into_latest() -> None:
    command = parse_backup_command(
        "BACKUP DATABASE movr, bank INTO LATEST IN 'gs://bucket/full' "
        "WITH revision_history = false, incremental_location = 'gs://bucket/inc'"
    )

    assert command.targets.databases == ("movr", "bank")
    assert command.incremental
    assert not command.flag("revision_history")
    assert command.string_option("incremental_location") == "gs://bucket/inc"


def test_list_values_and_multiple_locations() -> None:
    command = parse_backup_command(
        "BACKUP INTO ('s3://a?COCKROACH_LOCALITY=default', 's3://b?COCKROACH_LOCALITY=region%3Deast') "
        "AS OF SYSTEM TIME '-10s' "
        "WITH OPTIONS (kms = ('aws:///key1?REGION=us-east-1', 'aws:///key2?REGION=us-west-1'))"
    )

    assert len(command.locations) == 2
    assert command.location == "s3://a?COCKROACH_LOCALITY=default"
    assert command.option("kms") == ("aws:///key1?REGION=us-east-1", "aws:///key2?REGION=us-west-1")
    assert command.string_option("kms") == "aws:///key1?REGION=us-east-1"


def test_missing_option_is_none() -> None:
    command = parse_backup_command("BACKUP INTO 'nodelocal://1/x'")

    assert command.option("kms") is None
    assert command.string_option("kms") is None
    assert not command.flag("revision_history")


@pytest.mark.parametrize(
    "statement",
    [
        "RESTORE FROM 's3://x'",
        "BACKUP TABLE INTO 's3://x'",
        "BACKUP INTO s3",
        "BACKUP INTO 's3://x' WITH OPTIONS (revision_history = true",
        "BACKUP INTO 's3://x' garbage",
    ],
)
def test_unparseable_statements_raise(statement: str) -> None:
    with pytest.raises(StatementParseError) as info:
        parse_backup_command(statement)

    assert info.value.summary == "Unable to parse statement"
