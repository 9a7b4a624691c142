"""Job status polling and job control statements."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .errors import CrdbExtraError
from .sqlutil import quote_literal

LOG = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Cluster-defined job states."""

    RUNNING = "running"
    PAUSED = "paused"
    CANCELING = "canceling"
    CANCELED = "canceled"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


TERMINAL_STATUSES = frozenset(
    {JobStatus.CANCELED, JobStatus.FAILED, JobStatus.SUCCEEDED, JobStatus.CANCELING}
)
ACTIVE_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.PAUSED})


def is_terminal(status: str | None) -> bool:
    """True when ``status`` names a job that can no longer make progress."""

    return status in {item.value for item in TERMINAL_STATUSES}


class JobStatusTimeoutError(CrdbExtraError):
    """Raised when a job does not reach the expected status within the attempt budget."""

    def __init__(self, job_id: int, expected: JobStatus, last_status: str | None) -> None:
        self.job_id = job_id
        self.expected = expected
        self.last_status = last_status
        super().__init__(
            f"job {job_id} status never reached {expected.value} current status: {last_status}"
        )


class _StatusMismatch(Exception):
    def __init__(self, status: str | None) -> None:
        super().__init__(status)
        self.status = status


@dataclass(frozen=True, slots=True)
class JobHandle:
    """A job being watched and the status it is expected to reach."""

    job_id: int
    expected: JobStatus


class JobWatcher:
    """Polls a job until it reaches an expected status, with bounded retries.

    The watcher never waits indefinitely: after ``attempts`` polls spaced
    ``interval`` seconds apart it raises :class:`JobStatusTimeoutError`, which
    callers treat as a hard failure.
    """

    STATUS_QUERY = "SELECT status FROM [SHOW JOB {job_id}]"

    def __init__(
        self,
        *,
        attempts: int = 20,
        interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._attempts = attempts
        self._interval = interval
        self._sleep = sleep or asyncio.sleep

    async def fetch_status(self, conn: Any, job_id: int) -> str | None:
        """Return the job's current status, or ``None`` if the job is unknown."""

        status = await conn.fetchval(self.STATUS_QUERY.format(job_id=int(job_id)))
        return str(status) if status is not None else None

    async def await_status(self, conn: Any, job_id: int, expected: JobStatus) -> None:
        """Block until the job reports ``expected``."""

        handle = JobHandle(job_id=int(job_id), expected=expected)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_fixed(self._interval),
            retry=retry_if_exception_type(_StatusMismatch),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    status = await self.fetch_status(conn, handle.job_id)
                    if status != handle.expected.value:
                        LOG.debug(
                            "Job %s is %s, waiting for %s", handle.job_id, status, handle.expected.value
                        )
                        raise _StatusMismatch(status)
        except _StatusMismatch as exc:
            raise JobStatusTimeoutError(handle.job_id, handle.expected, exc.status) from None
        LOG.debug("Job %s reached %s", handle.job_id, handle.expected.value)


async def pause_job(conn: Any, job_id: int, reason: str) -> None:
    await conn.execute(f"PAUSE JOB {int(job_id)} WITH REASON = {quote_literal(reason)}")


async def resume_job(conn: Any, job_id: int) -> None:
    await conn.execute(f"RESUME JOB {int(job_id)}")


async def cancel_job(conn: Any, job_id: int) -> None:
    await conn.execute(f"CANCEL JOB {int(job_id)}")


__all__ = [
    "ACTIVE_STATUSES",
    "JobHandle",
    "JobStatus",
    "JobStatusTimeoutError",
    "JobWatcher",
    "TERMINAL_STATUSES",
    "cancel_job",
    "is_terminal",
    "pause_job",
    "resume_job",
]
