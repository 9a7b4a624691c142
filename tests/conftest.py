"""Shared fakes: a recording asyncpg stand-in and a mocked cloud API."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Callable

import httpx
import pytest

from crdbextra.cloud import CockroachCloudClient
from crdbextra.config import AppConfig, JobWatchConfig
from crdbextra.session import ClusterSessionManager


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeCluster:
    """Records every statement and answers from programmed responses.

    ``respond(fragment, *results)`` answers statements containing
    ``fragment``; with several results they are returned in turn and the last
    one repeats. Exceptions are raised instead of returned; callables are
    called with the bind arguments.
    """

    def __init__(self) -> None:
        self.statements: list[tuple[str, tuple[Any, ...]]] = []
        self._responses: list[tuple[str, list[Any]]] = []

    def respond(self, fragment: str, *results: Any) -> None:
        self._responses.insert(0, (fragment, list(results)))

    def answer(self, query: str, args: tuple[Any, ...], default: Any) -> Any:
        self.statements.append((" ".join(query.split()), args))
        for fragment, results in self._responses:
            if fragment in query:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, BaseException):
                    raise result
                if callable(result):
                    return result(*args)
                return result
        return default

    @property
    def queries(self) -> list[str]:
        return [query for query, _ in self.statements]

    def queries_matching(self, fragment: str) -> list[str]:
        return [query for query in self.queries if fragment in query]

    def without_session_noise(self) -> list[str]:
        """Statements other than role elevation, expiry renewal and ownership reassignment."""

        prefixes = ("SET ROLE", "ALTER USER", "REASSIGN OWNED")
        return [
            query
            for query in self.queries
            if not query.startswith(prefixes) and "information_schema.tables" not in query
        ]


class FakeTransaction:
    def __init__(self, cluster: FakeCluster) -> None:
        self._cluster = cluster

    async def __aenter__(self) -> FakeTransaction:
        self._cluster.statements.append(("BEGIN", ()))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self._cluster.statements.append(("ROLLBACK" if exc_type else "COMMIT", ()))


class FakeConnection:
    def __init__(self, cluster: FakeCluster) -> None:
        self._cluster = cluster

    async def execute(self, query: str, *args: Any) -> str:
        return self._cluster.answer(query, args, "OK")

    async def fetchval(self, query: str, *args: Any) -> Any:
        return self._cluster.answer(query, args, None)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return self._cluster.answer(query, args, None)

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return self._cluster.answer(query, args, [])

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self._cluster)


class FakePool:
    def __init__(self, cluster: FakeCluster, init: Callable[[Any], Any] | None = None, **kwargs: Any) -> None:
        self.cluster = cluster
        self.kwargs = kwargs
        self._init = init
        self._initialized = False
        self.closed = False

    async def _connection(self) -> FakeConnection:
        conn = FakeConnection(self.cluster)
        if self._init is not None and not self._initialized:
            self._initialized = True
            await self._init(conn)
        return conn

    @asynccontextmanager
    async def acquire(self):  # type: ignore[no-untyped-def]
        yield await self._connection()

    async def execute(self, query: str, *args: Any) -> str:
        conn = await self._connection()
        return await conn.execute(query, *args)

    async def close(self) -> None:
        self.closed = True


class FakeCloudApi:
    """Handler for ``httpx.MockTransport`` emulating the three cloud endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.failures: dict[tuple[str, str], httpx.Response] = {}

    def fail(self, method: str, path_fragment: str, status: int, body: dict[str, Any]) -> None:
        self.failures[(method, path_fragment)] = httpx.Response(status, json=body)

    def calls(self, method: str, fragment: str = "") -> list[httpx.Request]:
        return [req for req in self.requests if req.method == method and fragment in req.url.path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, fragment), response in self.failures.items():
            if request.method == method and fragment in request.url.path:
                return response
        if request.url.path.endswith("/connection-string"):
            body = {
                "connection_string": "postgresql://crdb-extra-principal@free-tier.example.com:26257/defaultdb",
                "params": {"Host": "free-tier.example.com", "Port": "26257", "Database": "defaultdb"},
            }
            return httpx.Response(200, json=body)
        if request.method == "POST":
            return httpx.Response(200, content=json.dumps({"name": "crdb-extra-principal"}))
        return httpx.Response(200, content=b"")


@pytest.fixture
def cloud_api() -> FakeCloudApi:
    return FakeCloudApi()


@pytest.fixture
def cloud_client(cloud_api: FakeCloudApi) -> CockroachCloudClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(cloud_api))
    return CockroachCloudClient("secret-key", host="https://cloud.test", client=client)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def created_pools() -> list[FakePool]:
    return []


@pytest.fixture
def pool_factory(cluster: FakeCluster, created_pools: list[FakePool]):  # type: ignore[no-untyped-def]
    async def _factory(**kwargs: Any) -> FakePool:
        pool = FakePool(cluster, **kwargs)
        created_pools.append(pool)
        return pool

    return _factory


@pytest.fixture
def session(cloud_client: CockroachCloudClient, pool_factory) -> ClusterSessionManager:  # type: ignore[no-untyped-def]
    config = AppConfig(jobs=JobWatchConfig(poll_attempts=3, poll_interval_seconds=0))
    return ClusterSessionManager(
        cloud_client,
        config=config,
        pool_factory=pool_factory,
        password_factory=lambda: "pw",
    )
