"""
Shared fixtures and fakes for the monitor test suite.

FakePool stands in for a real connection pool: every query advances a fake
clock by a configurable latency, so timing behaviour is deterministic and
no test touches a database or waits on the wall clock.
"""

import asyncio
from typing import Any, List, Optional, Tuple

import pytest

from src.db_monitor.models import QueryEvent, Severity
from src.db_monitor.pool import QueryResult
from src.shared.config import load_settings


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class FakeConnection:
    def __init__(self, pool: 'FakePool'):
        self.pool = pool

    async def query(self, sql: str, params=None) -> QueryResult:
        self.pool.queries.append((sql, params))

        for fragment, rows, error, latency_ms in self.pool.handlers:
            if fragment in sql:
                self.pool.clock.advance_ms(self.pool.latency_ms if latency_ms is None else latency_ms)
                if error is not None:
                    raise error
                rows = rows(sql, params) if callable(rows) else list(rows or [])
                return QueryResult(rows=rows, row_count=len(rows))

        self.pool.clock.advance_ms(self.pool.latency_ms)
        return QueryResult(rows=[], row_count=0)


class FakePool:
    """ConnectionPool fake with scripted responses keyed by SQL fragment."""

    def __init__(self, clock: Optional[FakeClock] = None, latency_ms: float = 0.0):
        self.clock = clock or FakeClock()
        self.latency_ms = latency_ms
        self.handlers: List[Tuple[str, Any, Optional[BaseException], Optional[float]]] = []
        self.queries: List[Tuple[str, Any]] = []
        self.acquired = 0
        self.released = 0
        self.acquire_error: Optional[BaseException] = None

    def on(self, fragment: str, rows=None, error: Optional[BaseException] = None,
           latency_ms: Optional[float] = None) -> None:
        """Script the response for statements containing ``fragment``; first match wins."""
        self.handlers.append((fragment, rows, error, latency_ms))

    async def acquire(self) -> FakeConnection:
        if self.acquire_error is not None:
            raise self.acquire_error
        self.acquired += 1
        return FakeConnection(self)

    async def release(self, connection: FakeConnection) -> None:
        self.released += 1

    @property
    def outstanding(self) -> int:
        return self.acquired - self.released

    def sql_containing(self, fragment: str) -> List[Tuple[str, Any]]:
        return [(sql, params) for sql, params in self.queries if fragment in sql]


class ManualTicker:
    """Ticker that blocks until the test advances it."""

    def __init__(self):
        self.waits: List[float] = []
        self._gate: Optional[asyncio.Event] = None

    async def wait(self, seconds: float) -> None:
        self.waits.append(seconds)
        self._gate = asyncio.Event()
        await self._gate.wait()

    def advance(self) -> None:
        if self._gate is not None:
            self._gate.set()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


def make_event(execution_time_ms: float, query: str = "SELECT * FROM tenants WHERE id = 1",
               severity: Severity = Severity.WARNING, tenant_id: Optional[str] = None,
               error: Optional[BaseException] = None) -> QueryEvent:
    from src.db_monitor.models import QueryContext
    return QueryEvent.create(
        query,
        execution_time_ms,
        severity,
        context=QueryContext(tenant_id=tenant_id),
        error=error,
    )


INDEX_ROWS = [
    {
        'table_name': 'tenant_users',
        'index_name': 'idx_tenant_users_tenant_id',
        'index_size_bytes': 16384,
        'index_scans': 500,
        'tuples_read': 1000,
        'tuples_returned': 950,
        'seq_scans': 20,
    },
    {
        'table_name': 'tenant_users',
        'index_name': 'idx_tenant_users_legacy',
        'index_size_bytes': 8192,
        'index_scans': 0,
        'tuples_read': 0,
        'tuples_returned': 0,
        'seq_scans': 20,
    },
    {
        'table_name': 'user_roles',
        'index_name': 'idx_user_roles_name',
        'index_size_bytes': 4096,
        'index_scans': 100,
        'tuples_read': 1000,
        'tuples_returned': 400,
        'seq_scans': 10,
    },
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool(clock):
    return FakePool(clock)


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def settings(tmp_path):
    return load_settings(logging={'log_file': str(tmp_path / 'logs' / 'slow-queries.log')})
