from abc import ABC, abstractmethod
from typing import FrozenSet, List

from dbisolation.errors import UnsupportedIsolationError
from dbisolation.levels import Backend, IsolationLevel, Phase


class IsolationAdapter(ABC):
    """Translates an isolation level into the statements a backend needs around `begin`.

    Adapters hold no per-transaction state: the same `(level, phase)` always yields the same
    statements, and issuing them twice leaves the session as issuing them once.
    """

    backend: Backend
    supported_levels: FrozenSet[IsolationLevel]
    blocking_levels: FrozenSet[IsolationLevel] = frozenset()

    # polled by the deadlock breaker: must select the blocked session ids as `id`
    blocked_sessions_query: str
    rollback_statement: str = "rollback"

    def configure(self, level: IsolationLevel, phase: Phase) -> List[str]:
        if level not in self.supported_levels:
            raise UnsupportedIsolationError(self.backend, level)

        match phase:
            case Phase.PRE_TRANSACTION:
                return self._pre_transaction(level)
            case Phase.BEGIN:
                return self._begin(level)
            case Phase.IN_TRANSACTION:
                return self._in_transaction(level)
            case _:
                raise ValueError(f"Unknown phase {phase}.")

    def may_block(self, level: IsolationLevel) -> bool:
        return level in self.blocking_levels

    def restore_statements(self) -> List[str]:
        """Statements undoing server wide settings a run left behind."""
        return []

    @abstractmethod
    def kill_statement(self, session_id: int) -> str:
        ...

    def _pre_transaction(self, level: IsolationLevel) -> List[str]:
        return []

    def _begin(self, level: IsolationLevel) -> List[str]:
        return ["begin transaction"]

    def _in_transaction(self, level: IsolationLevel) -> List[str]:
        return []


class PostgresAdapter(IsolationAdapter):
    """Isolation is set inside the transaction, before its first statement."""

    backend = Backend.POSTGRES
    # postgres accepts read uncommitted but runs it as read committed
    supported_levels = frozenset({
        IsolationLevel.DEFAULT,
        IsolationLevel.READ_COMMITTED,
        IsolationLevel.REPEATABLE_READ,
        IsolationLevel.SERIALIZABLE,
    })
    blocked_sessions_query = "select pid as id from pg_stat_activity where wait_event_type = 'Lock';"

    def _in_transaction(self, level: IsolationLevel) -> List[str]:
        match level:
            case IsolationLevel.DEFAULT:
                return []
            case _:
                return [f"set transaction isolation level {level.sql}"]

    def kill_statement(self, session_id: int) -> str:
        return f"select pg_terminate_backend({int(session_id)});"


class MySQLAdapter(IsolationAdapter):
    """Isolation is set globally before the transaction; there is no per-transaction override.

    The global level only applies to sessions opened after it is set, so sessions that are
    already connected keep the level they started with. Runs put the server default back
    afterwards, or every later session would inherit the last level used.
    """

    backend = Backend.MYSQL
    supported_levels = frozenset(IsolationLevel)
    blocking_levels = frozenset({IsolationLevel.SERIALIZABLE})
    blocked_sessions_query = (
        "select trx_mysql_thread_id as id from information_schema.innodb_trx "
        "where trx_state = 'LOCK WAIT';"
    )

    def _pre_transaction(self, level: IsolationLevel) -> List[str]:
        match level:
            case IsolationLevel.DEFAULT:
                return ["set global transaction isolation level repeatable read"]
            case _:
                return [f"set global transaction isolation level {level.sql}"]

    def _begin(self, level: IsolationLevel) -> List[str]:
        return ["start transaction"]

    def restore_statements(self) -> List[str]:
        return self._pre_transaction(IsolationLevel.DEFAULT)

    def kill_statement(self, session_id: int) -> str:
        return f"kill {int(session_id)};"


class MSSQLAdapter(IsolationAdapter):
    """Session scoped isolation plus a lock timeout, and a dedicated begin for snapshot isolation.

    `repeatable_read` runs as SNAPSHOT; the database needs ALLOW_SNAPSHOT_ISOLATION ON.
    """

    backend = Backend.MSSQL
    supported_levels = frozenset(IsolationLevel)
    blocking_levels = frozenset({IsolationLevel.SERIALIZABLE})
    blocked_sessions_query = "select session_id as id from sys.dm_exec_requests where blocking_session_id <> 0;"
    # conflicts and deadlocks already end the transaction server side
    rollback_statement = "if @@trancount > 0 rollback transaction"

    def __init__(self, lock_timeout_ms: int = 10_000):
        self.lock_timeout_ms = int(lock_timeout_ms)

    def _pre_transaction(self, level: IsolationLevel) -> List[str]:
        statements = [f"set lock_timeout {self.lock_timeout_ms}"]
        match level:
            case IsolationLevel.DEFAULT:
                statements.append("set transaction isolation level read committed")
            case IsolationLevel.REPEATABLE_READ:
                # set by the snapshot begin below
                pass
            case _:
                statements.append(f"set transaction isolation level {level.sql}")
        return statements

    def _begin(self, level: IsolationLevel) -> List[str]:
        match level:
            case IsolationLevel.REPEATABLE_READ:
                return ["set transaction isolation level snapshot; begin transaction"]
            case _:
                return ["begin transaction"]

    def kill_statement(self, session_id: int) -> str:
        return f"kill {int(session_id)};"


def get_adapter(backend: Backend, lock_timeout_ms: int = 10_000) -> IsolationAdapter:
    match backend:
        case Backend.POSTGRES:
            return PostgresAdapter()
        case Backend.MYSQL:
            return MySQLAdapter()
        case Backend.MSSQL:
            return MSSQLAdapter(lock_timeout_ms)
        case _:
            raise ValueError(f"Unknown backend {backend}.")


def configure(
    backend: Backend,
    level: IsolationLevel,
    phase: Phase,
    lock_timeout_ms: int = 10_000,
) -> List[str]:
    return get_adapter(backend, lock_timeout_ms=lock_timeout_ms).configure(level, phase)
