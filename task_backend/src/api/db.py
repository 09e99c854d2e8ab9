"""
PostgreSQL connection pool manager.

psycopg2 is a blocking driver, so every round trip runs in a worker thread via
asyncio.to_thread while the calling request task suspends. An asyncio
semaphore sized to DB_POOL_MAX bounds how many connections are checked out at
once; callers wait on it (up to the connection timeout) instead of hitting
psycopg2's "pool exhausted" error.

Connectivity is tracked as a small state machine owned by PoolManager and only
changed by the health check and by idle-connection error reporting.
"""

import asyncio
import logging
import math
import os
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.pool import PoolError, ThreadedConnectionPool

from src.api.errors import ConfigurationError, PoolExhaustedOrTimeoutError, QueryTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 10000
PROBE_QUERY = "SELECT 1"

Statement = Tuple[str, Optional[Sequence[Any]]]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{name}' must be an integer, got '{raw}'")


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DatabaseSettings:
    host: str = "localhost"
    port: int = 5432
    database: str = "taskdb"
    user: str = "taskuser"
    password: str = field(default="changeme", repr=False)
    pool_min: int = 2
    pool_max: int = 10
    idle_timeout_ms: int = 30000
    connection_timeout_ms: int = 15000
    ssl: bool = True
    ssl_reject_unauthorized: bool = False
    url: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.pool_max < 1:
            raise ConfigurationError("DB_POOL_MAX must be at least 1")
        if not 0 <= self.pool_min <= self.pool_max:
            raise ConfigurationError("DB_POOL_MIN must be between 0 and DB_POOL_MAX")
        if self.connection_timeout_ms <= 0:
            raise ConfigurationError("DB_CONNECTION_TIMEOUT_MS must be positive")

    @property
    def sslmode(self) -> str:
        if not self.ssl:
            return "disable"
        return "verify-full" if self.ssl_reject_unauthorized else "require"

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2.connect. POSTGRES_URL, when set, wins."""
        kwargs: Dict[str, Any] = {
            "connect_timeout": max(1, math.ceil(self.connection_timeout_ms / 1000)),
            "sslmode": self.sslmode,
        }
        if self.url:
            kwargs["dsn"] = self.url
        else:
            kwargs.update(
                host=self.host,
                port=self.port,
                dbname=self.database,
                user=self.user,
                password=self.password,
            )
        return kwargs


# PUBLIC_INTERFACE
def load_database_settings() -> DatabaseSettings:
    """Read database settings from the environment."""
    return DatabaseSettings(
        host=os.getenv("DB_HOST", "localhost"),
        port=_int_env("DB_PORT", 5432),
        database=os.getenv("DB_NAME", "taskdb"),
        user=os.getenv("DB_USER", "taskuser"),
        password=os.getenv("DB_PASSWORD", "changeme"),
        pool_min=_int_env("DB_POOL_MIN", 2),
        pool_max=_int_env("DB_POOL_MAX", 10),
        idle_timeout_ms=_int_env("DB_IDLE_TIMEOUT_MS", 30000),
        connection_timeout_ms=_int_env("DB_CONNECTION_TIMEOUT_MS", 15000),
        ssl=_bool_env("DB_SSL", True),
        ssl_reject_unauthorized=_bool_env("DB_SSL_REJECT_UNAUTHORIZED", False),
        url=os.getenv("POSTGRES_URL") or None,
    )


class ConnectionState(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"


@dataclass
class QueryResult:
    """Rows (as dicts) and rowcount of the last statement run on a connection."""

    rows: List[Dict[str, Any]]
    rowcount: int

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


def _dict_cursor(conn):
    return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)


# PUBLIC_INTERFACE
def run_statements(conn, statements: Sequence[Statement]) -> QueryResult:
    """
    Execute statements in order on one connection and commit once.

    Blocking; call it from a worker thread. Returns the result of the last
    statement. Any failure rolls the connection back before re-raising, so it
    goes back to the pool idle.
    """
    try:
        with _dict_cursor(conn) as cur:
            result = QueryResult(rows=[], rowcount=0)
            for sql, params in statements:
                if params is None:
                    cur.execute(sql)
                else:
                    cur.execute(sql, list(params))
                rows = [dict(r) for r in cur.fetchall()] if cur.description is not None else []
                result = QueryResult(rows=rows, rowcount=cur.rowcount)
        conn.commit()
        return result
    except Exception:
        if not conn.closed:
            conn.rollback()
        raise


def _create_pool(settings: DatabaseSettings) -> ThreadedConnectionPool:
    return ThreadedConnectionPool(
        minconn=settings.pool_min,
        maxconn=settings.pool_max,
        **settings.connect_kwargs(),
    )


class PoolManager:
    """Owns the connection pool and the process-wide connectivity state."""

    def __init__(
        self,
        settings: DatabaseSettings,
        pool_factory: Optional[Callable[[DatabaseSettings], Any]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        retry_base_delay_ms: int = RETRY_BASE_DELAY_MS,
        retry_max_delay_ms: int = RETRY_MAX_DELAY_MS,
    ):
        self.settings = settings
        self._pool_factory = pool_factory or _create_pool
        self._sleep = sleep or asyncio.sleep
        self._retry_base_delay_ms = retry_base_delay_ms
        self._retry_max_delay_ms = retry_max_delay_ms

        self._pool = None
        self._pool_lock = threading.Lock()
        self._slots = asyncio.Semaphore(settings.pool_max)
        self._leased: Set[int] = set()
        # Keyed by connection object, not id(): ids of discarded connections get reused.
        self._idle_since: Dict[Any, float] = {}

        self._state = ConnectionState.disconnected
        self._retry_count = 0

    # -------------------------
    # State
    # -------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.connected

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def in_use(self) -> int:
        return len(self._leased)

    @property
    def available(self) -> int:
        return self.settings.pool_max - len(self._leased)

    def mark_idle_error(self, error: BaseException) -> None:
        """Record an error raised by a connection outside any query. Never raises."""
        logger.error("Unexpected error on idle database connection: %s", error)
        self._state = ConnectionState.disconnected

    # -------------------------
    # Acquire / release
    # -------------------------

    def _get_pool(self):
        with self._pool_lock:
            if self._pool is None:
                self._pool = self._pool_factory(self.settings)
            return self._pool

    def _checkout(self) -> Tuple[Any, int]:
        """Blocking checkout that skips broken and stale connections."""
        pool = self._get_pool()
        idle_timeout = self.settings.idle_timeout_ms / 1000
        broken = 0
        while True:
            conn = pool.getconn()
            idle_since = self._idle_since.pop(conn, None)
            if conn.closed:
                broken += 1
                pool.putconn(conn, close=True)
                continue
            if idle_since is not None and time.monotonic() - idle_since >= idle_timeout:
                logger.debug("Recycling connection idle for more than %dms", self.settings.idle_timeout_ms)
                pool.putconn(conn, close=True)
                continue
            return conn, broken

    async def acquire(self):
        """
        Check a connection out of the pool.

        Waits (suspending only the calling task) until a connection is in hand
        or the connection timeout elapses, in which case
        PoolExhaustedOrTimeoutError is raised. The timeout covers both waiting
        for a free slot and opening a new connection. Every successful
        acquire() must be paired with one release().
        """
        timeout_ms = self.settings.connection_timeout_ms
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise PoolExhaustedOrTimeoutError(timeout_ms) from None

        checkout = asyncio.ensure_future(asyncio.to_thread(self._checkout))
        try:
            conn, broken = await asyncio.wait_for(asyncio.shield(checkout), max(deadline - loop.time(), 0))
        except asyncio.TimeoutError:
            logger.warning("Opening a database connection exceeded %dms", timeout_ms)
            checkout.add_done_callback(self._return_abandoned)
            raise PoolExhaustedOrTimeoutError(timeout_ms) from None
        except asyncio.CancelledError:
            checkout.add_done_callback(self._return_abandoned)
            raise
        except BaseException:
            self._slots.release()
            raise

        self._leased.add(id(conn))
        if broken:
            self.mark_idle_error(psycopg2.InterfaceError(f"{broken} pooled connection(s) found closed"))
        return conn

    def _return_abandoned(self, checkout: "asyncio.Future") -> None:
        # The acquiring task was cancelled or timed out while the worker thread was checking out.
        if checkout.cancelled() or checkout.exception() is not None:
            self._slots.release()
            return
        conn, _ = checkout.result()
        self._leased.add(id(conn))
        self.release(conn)

    def release(self, conn) -> None:
        """Return a connection obtained from acquire(). Releasing twice is an error."""
        key = id(conn)
        if key not in self._leased:
            raise PoolError("trying to release a connection that is not checked out")
        self._leased.discard(key)
        try:
            if self._pool is not None and not self._pool.closed:
                self._pool.putconn(conn)
                if not conn.closed:
                    self._idle_since[conn] = time.monotonic()
        finally:
            self._slots.release()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Scoped acquisition for callers that drive the connection themselves."""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    # -------------------------
    # Running work on a connection
    # -------------------------

    def _cancel_statement(self, conn) -> None:
        try:
            conn.cancel()
        except psycopg2.Error as exc:
            logger.warning("Could not cancel timed-out statement: %s", exc)

    def _release_when_settled(self, conn, outstanding: List["asyncio.Future"]) -> None:
        def _settled(_: "asyncio.Future") -> None:
            logger.debug("Releasing connection after late settlement")
            self.release(conn)

        # gather(return_exceptions=True) also marks late exceptions as retrieved.
        asyncio.gather(*outstanding, return_exceptions=True).add_done_callback(_settled)

    async def run(self, fn: Callable[..., Any], *args: Any, timeout_ms: Optional[int] = None) -> Any:
        """
        Acquire a connection, run fn(conn, *args) in a worker thread, release.

        With timeout_ms, the call is raced against a deadline and
        QueryTimeoutError is raised when the deadline wins. The statement is then
        cancelled server-side on a best-effort basis. In every case the
        connection goes back to the pool only once the worker thread (and any
        cancel request) has finished with it.
        """
        conn = await self.acquire()
        work = asyncio.ensure_future(asyncio.to_thread(fn, conn, *args))
        cancel_request: Optional[asyncio.Future] = None
        try:
            if timeout_ms is None:
                return await asyncio.shield(work)
            try:
                return await asyncio.wait_for(asyncio.shield(work), timeout_ms / 1000)
            except asyncio.TimeoutError:
                if work.done():
                    raise
                logger.warning("Database query exceeded %dms, cancelling", timeout_ms)
                loop = asyncio.get_running_loop()
                cancel_request = loop.run_in_executor(None, self._cancel_statement, conn)
                raise QueryTimeoutError(timeout_ms) from None
        finally:
            outstanding = [f for f in (work, cancel_request) if f is not None and not f.done()]
            if outstanding:
                self._release_when_settled(conn, outstanding)
            else:
                self.release(conn)

    async def execute(self, statements: Sequence[Statement], timeout_ms: Optional[int] = None) -> QueryResult:
        return await self.run(run_statements, list(statements), timeout_ms=timeout_ms)

    async def query_with_timeout(
        self, query: str, params: Optional[Sequence[Any]] = None, timeout_ms: int = 3000
    ) -> QueryResult:
        """Run one query bounded by timeout_ms; raises QueryTimeoutError."""
        return await self.execute([(query, params)], timeout_ms=timeout_ms)

    # -------------------------
    # Health
    # -------------------------

    async def check_health(self) -> bool:
        """Probe with SELECT 1 and update connectivity state."""
        if self._state is ConnectionState.disconnected:
            self._state = ConnectionState.connecting
        try:
            await self.execute([(PROBE_QUERY, None)])
        except asyncio.CancelledError:
            if self._state is ConnectionState.connecting:
                self._state = ConnectionState.disconnected
            raise
        except Exception as exc:
            self._state = ConnectionState.disconnected
            logger.error("Pool health check failed: %s", exc)
            return False

        if self._state is not ConnectionState.connected:
            logger.info("Database connection established")
        self._state = ConnectionState.connected
        self._retry_count = 0
        return True

    def backoff_delay_ms(self, attempt: int) -> int:
        return min(self._retry_base_delay_ms * 2 ** (attempt - 1), self._retry_max_delay_ms)

    async def connect_with_retry(self, max_attempts: int = DEFAULT_MAX_RETRIES) -> bool:
        """Health-check up to max_attempts times with exponential backoff in between."""
        for attempt in range(1, max_attempts + 1):
            if await self.check_health():
                return True
            self._retry_count += 1
            logger.error("Connection attempt %d/%d failed", attempt, max_attempts)
            if attempt < max_attempts:
                delay_ms = self.backoff_delay_ms(attempt)
                logger.info("Retrying connection in %dms...", delay_ms)
                await self._sleep(delay_ms / 1000)
        return False

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None and not self._pool.closed:
                self._pool.closeall()
            self._pool = None
        self._idle_since.clear()
        self._state = ConnectionState.disconnected


_MANAGER: Optional[PoolManager] = None


# PUBLIC_INTERFACE
def init_db_pool() -> PoolManager:
    """Create the process-wide pool manager. Connections are opened lazily."""
    global _MANAGER
    if _MANAGER is None:
        _MANAGER = PoolManager(load_database_settings())
    return _MANAGER


# PUBLIC_INTERFACE
def get_pool_manager() -> PoolManager:
    """Return the process-wide pool manager, creating it on first use."""
    return _MANAGER if _MANAGER is not None else init_db_pool()


# PUBLIC_INTERFACE
def close_db_pool() -> None:
    """Close all pooled connections and drop the process-wide manager."""
    global _MANAGER
    if _MANAGER is not None:
        _MANAGER.close()
        _MANAGER = None


# PUBLIC_INTERFACE
async def check_pool_health() -> bool:
    """Probe the database once; see PoolManager.check_health."""
    return await get_pool_manager().check_health()


# PUBLIC_INTERFACE
async def connect_with_retry(max_attempts: int = DEFAULT_MAX_RETRIES) -> bool:
    """Reconnect with exponential backoff; see PoolManager.connect_with_retry."""
    return await get_pool_manager().connect_with_retry(max_attempts)


# PUBLIC_INTERFACE
async def query_with_timeout(query: str, params: Optional[Sequence[Any]] = None, timeout_ms: int = 3000) -> QueryResult:
    """Run a probe-style query bounded by timeout_ms."""
    return await get_pool_manager().query_with_timeout(query, params, timeout_ms)


# PUBLIC_INTERFACE
def is_connected() -> bool:
    """Read-only view of the process-wide connectivity flag."""
    return get_pool_manager().is_connected
