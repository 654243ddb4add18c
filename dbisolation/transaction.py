import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Dict, List, Sequence, TypeVar

from dbisolation.adapter import IsolationAdapter
from dbisolation.errors import InvalidStateError, SerializationFailureError, SessionKilledError
from dbisolation.levels import IsolationLevel, Phase
from dbisolation.records import KEY_VALUE_TABLE, Record, Selector, to_records
from dbisolation.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionState(Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    KILLED = "killed"


@dataclass(frozen=True)
class CommitOutcome:
    success: bool
    aborted_for_serialization: bool = False
    error: Exception | None = None


class TransactionHandle:
    """A single transaction on its own session.

    Reads, writes and commits go through `session`; once the handle reaches a terminal state
    its session is closed and the handle cannot be used again.
    """

    name: str
    session: Session
    state: TransactionState
    outcome: CommitOutcome | None

    def __init__(self, session: Session, adapter: IsolationAdapter, level: IsolationLevel, name: str):
        self.session = session
        self.name = name
        self._adapter = adapter
        self._level = level
        self._begun = False
        self._configured = False
        self._closed = False
        self.state = TransactionState.OPEN
        self.outcome = None

    @property
    def session_id(self) -> int | None:
        return self.session.session_id

    @property
    def is_terminal(self) -> bool:
        return self.state is not TransactionState.OPEN

    async def begin(self) -> None:
        if self._configured:
            return
        self._check_open()

        try:
            for phase in (Phase.PRE_TRANSACTION, Phase.BEGIN, Phase.IN_TRANSACTION):
                for statement in self._adapter.configure(self._level, phase):
                    await self._execute(statement)
                if phase is Phase.BEGIN:
                    self._begun = True
        except BaseException:
            await self.rollback()
            raise
        self._configured = True
        logger.debug("[%s] begin %s on session %s", self.name, self._level.value, self.session_id)

    async def read(self, selector: Selector) -> List[Record]:
        self._check_open()
        column = self.session.quote(selector.column)
        placeholders = ", ".join(["%s"] * len(selector.values))
        query = (
            f"select {self.session.quote('key')}, {self.session.quote('value')} from {KEY_VALUE_TABLE} "
            f"where {column} in ({placeholders})"
        )
        return to_records(await self._execute(query, selector.values))

    async def write(self, key: str, value: str) -> int:
        self._check_open()
        query = (
            f"update {KEY_VALUE_TABLE} set {self.session.quote('value')} = %s "
            f"where {self.session.quote('key')} = %s"
        )
        await self._execute(query, (value, key))
        return self.session.rowcount

    async def try_commit(self) -> CommitOutcome:
        self._check_open()
        try:
            committed = await self._guard(self.session.commit())
        except SerializationFailureError as exc:
            logger.info("[%s] commit aborted: %s", self.name, exc)
            await self.rollback()
            self.outcome = CommitOutcome(False, aborted_for_serialization=True, error=exc)
            return self.outcome

        if not committed:
            logger.info("[%s] commit ended in rollback", self.name)
            # the backend refused the commit, reported the same way as a raised conflict
            self.outcome = CommitOutcome(False, aborted_for_serialization=True)
            await self._finish(TransactionState.ROLLED_BACK)
            return self.outcome

        self.outcome = CommitOutcome(True)
        await self._finish(TransactionState.COMMITTED)
        return self.outcome

    async def commit(self) -> bool:
        """Commit, returning False instead of raising when the backend aborted the transaction."""
        return (await self.try_commit()).success

    async def rollback(self) -> None:
        if self.is_terminal:
            await self._release()
            return

        try:
            # closing an interrupted session makes the server roll back
            if self._begun and not self.session.interrupted:
                await self.session.execute(self._adapter.rollback_statement)
        finally:
            await self._finish(TransactionState.ROLLED_BACK)

    def mark_killed(self) -> None:
        if not self.is_terminal:
            logger.warning("[%s] session %s killed", self.name, self.session_id)
            self.state = TransactionState.KILLED

    async def _execute(self, query: str, params: Sequence[Any] | None = None) -> List[Dict]:
        return await self._guard(self.session.execute(query, params))

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except SessionKilledError:
            self.mark_killed()
            raise
        except Exception as exc:
            if self.state is TransactionState.KILLED:
                raise SessionKilledError(f"Session {self.session_id} of {self.name} was killed: {exc}") from exc
            raise

    def _check_open(self) -> None:
        match self.state:
            case TransactionState.OPEN:
                return
            case TransactionState.KILLED:
                raise SessionKilledError(f"Session {self.session_id} of {self.name} was killed.")
            case _:
                raise InvalidStateError(f"Transaction {self.name} is already {self.state.value}.")

    async def _finish(self, state: TransactionState) -> None:
        if self.state is TransactionState.OPEN:
            self.state = state
        await self._release()

    async def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.session.close()
        except Exception as exc:
            # killed sessions commonly fail to close cleanly
            logger.debug("[%s] closing session %s: %s", self.name, self.session_id, exc)
