import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

import psycopg
import pymssql
import pymysql
import pymysql.cursors
from psycopg.rows import dict_row

from dbisolation.adapter import get_adapter
from dbisolation.config import Settings
from dbisolation.errors import InvalidStateError, LockTimeoutError, SerializationFailureError, SessionKilledError
from dbisolation.levels import Backend

logger = logging.getLogger(__name__)


class Session(ABC):
    """One autocommit connection to a backend.

    Transactions are opened explicitly with `begin transaction` style statements, so the
    driver never starts one behind our back.
    """

    backend: Backend
    session_id: int | None = None
    rowcount: int = -1
    # a cancelled statement may still be running on the connection
    interrupted: bool = False

    _session_id_query: str

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> List[Dict]:
        logger.debug("[%s:%s] %s %s", self.backend.value, self.session_id, query, params or "")
        try:
            return await self._execute(query, params or None)
        except Exception as exc:
            translated = self.translate_error(exc)
            if translated is None:
                raise
            raise translated from exc

    async def commit(self) -> bool:
        """Issue `commit`; False when the backend ended the transaction with a rollback instead."""
        await self.execute("commit")
        return True

    async def load_session_id(self) -> int:
        rows = await self.execute(self._session_id_query)
        self.session_id = int(rows[0]["id"])
        return self.session_id

    @abstractmethod
    async def _execute(self, query: str, params: Sequence[Any] | None) -> List[Dict]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def translate_error(self, exc: Exception) -> Exception | None:
        """Map a driver error onto the isolation error taxonomy, or None to re-raise as is."""

    @abstractmethod
    def quote(self, identifier: str) -> str:
        ...


class PostgresSession(Session):

    backend = Backend.POSTGRES
    _session_id_query = "select pg_backend_pid() as id;"

    statusmessage: str | None = None

    def __init__(self, conn: psycopg.AsyncConnection):
        self.conn = conn

    @classmethod
    async def connect(cls, settings: Settings) -> "PostgresSession":
        conn = await psycopg.AsyncConnection.connect(
            settings.connection_string,
            row_factory=dict_row,
            autocommit=True,
        )
        return cls(conn)

    async def _execute(self, query: str, params: Sequence[Any] | None) -> List[Dict]:
        async with self.conn.cursor() as cursor:
            await cursor.execute(query, params)
            self.rowcount = cursor.rowcount
            self.statusmessage = cursor.statusmessage
            if cursor.description is None:
                return []
            return await cursor.fetchall()

    async def commit(self) -> bool:
        # committing a transaction that already failed ends it with ROLLBACK and no error
        await self.execute("commit")
        return self.statusmessage != "ROLLBACK"

    async def close(self) -> None:
        await self.conn.close()

    def translate_error(self, exc: Exception) -> Exception | None:
        match exc:
            case psycopg.errors.SerializationFailure() | psycopg.errors.DeadlockDetected():
                return SerializationFailureError(str(exc))
            case psycopg.errors.LockNotAvailable():
                return LockTimeoutError(str(exc))
            case psycopg.errors.AdminShutdown():
                return SessionKilledError(str(exc))
            case _:
                return None

    def quote(self, identifier: str) -> str:
        return f'"{identifier}"'


class _ThreadedSession(Session):
    """Base for blocking DB-API drivers: every call runs in a worker thread.

    A statement blocked on an engine lock only suspends the coroutine awaiting it, so the
    other transaction and the deadlock breaker keep running on the event loop. Statements
    on one connection never overlap. Once an awaiting coroutine is cancelled the session
    is `interrupted` and only closing it is allowed.
    """

    _serialization_codes: frozenset = frozenset()
    _lock_timeout_codes: frozenset = frozenset()
    _killed_codes: frozenset = frozenset()

    def __init__(self, conn):
        self.conn = conn
        self._lock = asyncio.Lock()

    async def _execute(self, query: str, params: Sequence[Any] | None) -> List[Dict]:
        async with self._lock:
            if self.interrupted:
                raise InvalidStateError(f"Session {self.session_id} was interrupted mid statement.")
            try:
                rows, self.rowcount = await asyncio.to_thread(self._execute_blocking, query, params)
            except asyncio.CancelledError:
                # the worker thread keeps the connection until the statement returns
                self.interrupted = True
                raise
            return rows

    def _execute_blocking(self, query: str, params: Sequence[Any] | None):
        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            rows = list(cursor.fetchall()) if cursor.description else []
            return rows, cursor.rowcount
        finally:
            cursor.close()

    async def close(self) -> None:
        await asyncio.to_thread(self.conn.close)

    def translate_error(self, exc: Exception) -> Exception | None:
        code, message = self._error_code(exc)
        if code is None:
            return None
        if code in self._serialization_codes:
            return SerializationFailureError(message)
        if code in self._lock_timeout_codes:
            return LockTimeoutError(message)
        if code in self._killed_codes:
            return SessionKilledError(message)
        return None

    @staticmethod
    @abstractmethod
    def _error_code(exc: Exception):
        """Return `(driver error number or None, message)`."""


class MySQLSession(_ThreadedSession):

    backend = Backend.MYSQL
    _session_id_query = "select connection_id() as id;"

    # ER_LOCK_DEADLOCK
    _serialization_codes = frozenset({1213})
    # ER_LOCK_WAIT_TIMEOUT
    _lock_timeout_codes = frozenset({1205})
    # ER_QUERY_INTERRUPTED, ER_CONNECTION_KILLED, CR_SERVER_GONE_ERROR, CR_SERVER_LOST
    _killed_codes = frozenset({1317, 1927, 2006, 2013})

    @classmethod
    async def connect(cls, settings: Settings) -> "MySQLSession":
        conn = await asyncio.to_thread(
            pymysql.connect,
            **settings.connect_kwargs(),
            cursorclass=pymysql.cursors.DictCursor,
            autocommit=True,
        )
        return cls(conn)

    @staticmethod
    def _error_code(exc: Exception):
        if isinstance(exc, pymysql.err.MySQLError) and exc.args and isinstance(exc.args[0], int):
            return exc.args[0], str(exc.args[1]) if len(exc.args) > 1 else str(exc)
        return None, str(exc)

    def quote(self, identifier: str) -> str:
        return f"`{identifier}`"


class MSSQLSession(_ThreadedSession):

    backend = Backend.MSSQL
    _session_id_query = "select @@spid as id;"

    # deadlock victim, snapshot update conflict
    _serialization_codes = frozenset({1205, 3960})
    _lock_timeout_codes = frozenset({1222})
    # "Cannot continue the execution because the session is in the kill state."
    _killed_codes = frozenset({596})

    @classmethod
    async def connect(cls, settings: Settings) -> "MSSQLSession":
        kwargs = settings.connect_kwargs()
        conn = await asyncio.to_thread(
            pymssql.connect,
            server=kwargs.pop("host"),
            port=str(kwargs.pop("port")),
            autocommit=True,
            as_dict=True,
            **kwargs,
        )
        return cls(conn)

    @staticmethod
    def _error_code(exc: Exception):
        if not isinstance(exc, pymssql.Error) or not exc.args:
            return None, str(exc)
        # pymssql raises with args = (number, b"message")
        first = exc.args[0]
        if isinstance(first, int):
            message = exc.args[1] if len(exc.args) > 1 else b""
            if isinstance(message, bytes):
                message = message.decode(errors="replace")
            return first, message
        if "kill state" in str(first):
            return 596, str(first)
        return None, str(exc)

    def quote(self, identifier: str) -> str:
        return f"[{identifier}]"


_SESSIONS = {
    Backend.POSTGRES: PostgresSession,
    Backend.MYSQL: MySQLSession,
    Backend.MSSQL: MSSQLSession,
}


class Database:
    """Connection factory for one backend: every call to `connect` opens a new session."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.backend = settings.backend
        self.adapter = get_adapter(settings.backend, lock_timeout_ms=settings.lock_timeout_ms)

    @classmethod
    def from_env(cls, backend: Backend) -> "Database":
        return cls(Settings.from_env(backend))

    @property
    def breaker_delay(self) -> float:
        return self.settings.breaker_delay

    async def connect(self) -> Session:
        session = await _SESSIONS[self.backend].connect(self.settings)
        try:
            await session.load_session_id()
        except BaseException:
            await session.close()
            raise
        logger.debug("[%s] opened session %s", self.backend.value, session.session_id)
        return session
