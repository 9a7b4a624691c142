"""Tests for the job status watcher."""

from __future__ import annotations

import pytest

from crdbextra.jobs import (
    JobStatus,
    JobStatusTimeoutError,
    JobWatcher,
    cancel_job,
    is_terminal,
    pause_job,
    resume_job,
)


class _StatusConnection:
    def __init__(self, statuses: list[str | None]) -> None:
        self._statuses = list(statuses)
        self.queries: list[str] = []

    async def fetchval(self, query: str):  # type: ignore[no-untyped-def]
        self.queries.append(query)
        return self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]

    async def execute(self, query: str) -> str:
        self.queries.append(query)
        return "OK"


def _watcher(attempts: int = 20, sleeps: list[float] | None = None) -> JobWatcher:
    async def _sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return JobWatcher(attempts=attempts, interval=2.0, sleep=_sleep)


@pytest.mark.anyio
async def test_returns_on_first_matching_status() -> None:
    sleeps: list[float] = []
    conn = _StatusConnection(["paused", "paused", "running"])

    await _watcher(sleeps=sleeps).await_status(conn, 7, JobStatus.RUNNING)

    assert conn.queries == ["SELECT status FROM [SHOW JOB 7]"] * 3
    assert sleeps == [2.0, 2.0]


@pytest.mark.anyio
async def test_times_out_after_attempt_budget() -> None:
    conn = _StatusConnection(["paused"])

    with pytest.raises(JobStatusTimeoutError) as info:
        await _watcher(attempts=20).await_status(conn, 7, JobStatus.RUNNING)

    assert len(conn.queries) == 20
    assert info.value.last_status == "paused"
    assert str(info.value) == "job 7 status never reached running current status: paused"


@pytest.mark.anyio
async def test_query_errors_are_not_retried() -> None:
    class _Broken:
        calls = 0

        async def fetchval(self, query: str):  # type: ignore[no-untyped-def]
            self.calls += 1
            raise RuntimeError("connection reset")

    conn = _Broken()

    with pytest.raises(RuntimeError, match="connection reset"):
        await _watcher().await_status(conn, 7, JobStatus.RUNNING)

    assert conn.calls == 1


@pytest.mark.parametrize(
    ("status", "terminal"),
    [
        ("running", False),
        ("paused", False),
        ("canceled", True),
        ("failed", True),
        ("succeeded", True),
        ("canceling", True),
        (None, False),
    ],
)
def test_is_terminal(status: str | None, terminal: bool) -> None:
    assert is_terminal(status) is terminal


@pytest.mark.anyio
async def test_job_control_statements() -> None:
    conn = _StatusConnection(["running"])

    await pause_job(conn, 7, "Altering changefeed")
    await resume_job(conn, 7)
    await cancel_job(conn, 7)

    assert conn.queries == [
        "PAUSE JOB 7 WITH REASON = 'Altering changefeed'",
        "RESUME JOB 7",
        "CANCEL JOB 7",
    ]
