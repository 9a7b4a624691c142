from __future__ import annotations

import pytest

from crdbextra.errors import ConflictError, ResourceError
from crdbextra.resources.external_connection import (
    ExternalConnectionResource,
    ExternalConnectionSpec,
    ExternalConnectionState,
)


def _state(uri: str = "s3://bucket/a?AWS_SECRET_ACCESS_KEY=abc") -> ExternalConnectionState:
    return ExternalConnectionState(
        id="external_connection|c1|backups", cluster_id="c1", connection_name="backups", connection_uri=uri
    )


@pytest.mark.anyio
async def test_create_binds_uri(session, cluster) -> None:  # type: ignore[no-untyped-def]
    spec = ExternalConnectionSpec(cluster_id="c1", connection_name="backups", connection_uri="s3://bucket/a")

    state = await ExternalConnectionResource(session).create(spec)

    assert state.id == "external_connection|c1|backups"
    assert ('CREATE EXTERNAL CONNECTION "backups" AS $1', ("s3://bucket/a",)) in cluster.statements


@pytest.mark.anyio
async def test_read_keeps_declared_uri_when_only_secrets_differ(session, cluster) -> None:  # type: ignore[no-untyped-def]
    cluster.respond(
        "[SHOW EXTERNAL CONNECTIONS]",
        {"connection_name": "backups", "connection_uri": "s3://bucket/a?AWS_SECRET_ACCESS_KEY=redacted"},
    )

    state = await ExternalConnectionResource(session).read(_state())

    assert state == _state()


@pytest.mark.anyio
async def test_read_reports_drift_and_absence(session, cluster) -> None:  # type: ignore[no-untyped-def]
    resource = ExternalConnectionResource(session)
    assert await resource.read(_state()) is None

    cluster.respond("[SHOW EXTERNAL CONNECTIONS]", {"connection_name": "backups", "connection_uri": "s3://other"})

    state = await resource.read(_state())
    assert state is not None
    assert state.connection_uri == "s3://other"


@pytest.mark.anyio
async def test_update_drops_and_recreates(session, cluster) -> None:  # type: ignore[no-untyped-def]
    plan = ExternalConnectionSpec(cluster_id="c1", connection_name="backups", connection_uri="s3://bucket/b")

    state = await ExternalConnectionResource(session).update(plan, _state())

    assert state.connection_uri == "s3://bucket/b"
    assert cluster.without_session_noise() == [
        'DROP EXTERNAL CONNECTION "backups"',
        'CREATE EXTERNAL CONNECTION "backups" AS $1',
    ]


@pytest.mark.anyio
async def test_failed_update_restores_previous_connection(session, cluster) -> None:  # type: ignore[no-untyped-def]
    def create(uri: str) -> str:
        if uri == "s3://bucket/b":
            raise RuntimeError("bad uri")
        return "CREATE EXTERNAL CONNECTION"

    cluster.respond("CREATE EXTERNAL CONNECTION", create)
    plan = ExternalConnectionSpec(cluster_id="c1", connection_name="backups", connection_uri="s3://bucket/b")

    with pytest.raises(ResourceError, match="Unable to update external connection: bad uri"):
        await ExternalConnectionResource(session).update(plan, _state())

    creates = [args for query, args in cluster.statements if query.startswith("CREATE EXTERNAL CONNECTION")]
    assert creates == [("s3://bucket/b",), ("s3://bucket/a?AWS_SECRET_ACCESS_KEY=abc",)]


@pytest.mark.anyio
async def test_update_rejects_rename(session, cluster) -> None:  # type: ignore[no-untyped-def]
    plan = ExternalConnectionSpec(cluster_id="c1", connection_name="renamed", connection_uri="s3://bucket/a")

    with pytest.raises(ConflictError):
        await ExternalConnectionResource(session).update(plan, _state())


@pytest.mark.anyio
async def test_delete_and_import(session, cluster) -> None:  # type: ignore[no-untyped-def]
    cluster.respond("[SHOW EXTERNAL CONNECTIONS]", {"connection_name": "backups", "connection_uri": "s3://bucket/a"})
    resource = ExternalConnectionResource(session)

    imported = await resource.import_state("external_connection|c1|backups")
    await resource.delete(_state())

    assert imported is not None
    assert imported.connection_uri == "s3://bucket/a"
    assert 'DROP EXTERNAL CONNECTION "backups"' in cluster.queries
