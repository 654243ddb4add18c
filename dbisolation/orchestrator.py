import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from dbisolation.breaker import DeadlockBreaker, race
from dbisolation.errors import SerializationFailureError
from dbisolation.levels import IsolationLevel
from dbisolation.records import Record, ScenarioResult, Selector
from dbisolation.session import Database
from dbisolation.store import Store
from dbisolation.transaction import TransactionHandle

logger = logging.getLogger(__name__)

Observations = Mapping[str, Any]
Trace = Callable[[str, str, List[Record] | None], None]


class Party(Enum):
    A = "A"
    B = "B"


class Action(Enum):
    READ = "read"
    WRITE = "write"
    COMMIT = "commit"


@dataclass(frozen=True)
class Step:
    party: Party
    action: Action
    selector: Selector | None = None
    key: str | None = None
    value: str | Callable[[Observations], str] | None = None
    # name the rows of a read are stored under
    capture: str | None = None
    # the step is skipped unless this returns True
    when: Callable[[Observations], bool] | None = None

    def __post_init__(self):
        match self.action:
            case Action.READ if self.selector is None:
                raise ValueError("A read step needs a selector.")
            case Action.WRITE if self.key is None or self.value is None:
                raise ValueError("A write step needs a key and a value.")

    def describe(self, observations: Observations) -> str:
        match self.action:
            case Action.READ:
                return f"select where {self.selector}"
            case Action.WRITE:
                return f"update set value = '{self.resolve_value(observations)}' where key = '{self.key}'"
            case _:
                return "COMMIT"

    def resolve_value(self, observations: Observations) -> str:
        if callable(self.value):
            return self.value(observations)
        return self.value


class Concurrently:
    """Steps issued back to back without waiting for any of them to complete first."""

    steps: Tuple[Step, ...]

    def __init__(self, *steps: Step):
        parties = [step.party for step in steps]
        if len(set(parties)) != len(parties):
            raise ValueError("Concurrent steps must belong to different transactions.")
        self.steps = steps

    def __repr__(self) -> str:
        return f"Concurrently{self.steps!r}"


Program = Sequence[Step | Concurrently]


def read(party: Party, selector: Selector, capture: str | None = None) -> Step:
    return Step(party, Action.READ, selector=selector, capture=capture)


def write(
    party: Party,
    key: str,
    value: str | Callable[[Observations], str],
    when: Callable[[Observations], bool] | None = None,
) -> Step:
    return Step(party, Action.WRITE, key=key, value=value, when=when)


def commit(party: Party) -> Step:
    return Step(party, Action.COMMIT)


class Orchestrator:
    """Runs a two transaction program against one backend.

    Baseline records are inserted, transactions A and B are opened on their own sessions and
    the program is executed in order. Any failure rolls back both transactions and is raised
    as is.
    """

    database: Database
    level: IsolationLevel

    def __init__(
        self,
        database: Database,
        level: IsolationLevel,
        deadlock_breaker: bool | None = None,
        trace: Trace | None = None,
    ):
        self.database = database
        self.level = level
        self._deadlock_breaker = deadlock_breaker
        self._trace = trace

    @property
    def uses_deadlock_breaker(self) -> bool:
        if self._deadlock_breaker is not None:
            return self._deadlock_breaker
        return self.database.adapter.may_block(self.level)

    async def run(self, baseline: Iterable[Record], program: Program) -> ScenarioResult:
        async with Store(self.database) as store:
            await store.insert(baseline)

            restore = self.database.adapter.restore_statements()
            try:
                handles = await self._open_pair()
                try:
                    observations = await self._execute(handles, program)
                except BaseException:
                    await _rollback_all(handles.values())
                    raise
                snapshot = await store.snapshot()
            except BaseException:
                try:
                    await store.execute_all(restore)
                except Exception as exc:
                    logger.warning("Restoring server settings failed: %s", exc)
                raise
            await store.execute_all(restore)

        return ScenarioResult(observations, snapshot)

    async def _open_pair(self) -> Dict[Party, TransactionHandle]:
        sessions = await asyncio.gather(
            *(self.database.connect() for _ in Party),
            return_exceptions=True,
        )
        failed = [s for s in sessions if isinstance(s, BaseException)]
        if failed:
            await asyncio.gather(
                *(s.close() for s in sessions if not isinstance(s, BaseException)),
                return_exceptions=True,
            )
            raise failed[0]

        handles = {
            party: TransactionHandle(session, self.database.adapter, self.level, name=party.value)
            for party, session in zip(Party, sessions)
        }
        try:
            await _gather_all(handle.begin() for handle in handles.values())
        except BaseException:
            await _rollback_all(handles.values())
            raise
        return handles

    async def _execute(self, handles: Dict[Party, TransactionHandle], program: Program) -> Dict[str, Any]:
        observations: Dict[str, Any] = {}
        scenario = self._run_program(handles, program, observations)

        if self.uses_deadlock_breaker:
            breaker = DeadlockBreaker(
                self.database,
                list(handles.values()),
                delay=self.database.breaker_delay,
            )
            await race(scenario, breaker)
        else:
            await scenario

        return observations

    async def _run_program(
        self,
        handles: Dict[Party, TransactionHandle],
        program: Program,
        observations: Dict[str, Any],
    ) -> None:
        for item in program:
            if isinstance(item, Concurrently):
                await _gather_all(self._run_step(handles[step.party], step, observations) for step in item.steps)
            else:
                await self._run_step(handles[item.party], item, observations)

    async def _run_step(self, handle: TransactionHandle, step: Step, observations: Dict[str, Any]) -> None:
        if step.when is not None and not step.when(observations):
            self._emit(step.party, f"skip {step.describe(observations)}")
            return

        match step.action:
            case Action.READ:
                records = await handle.read(step.selector)
                if step.capture:
                    observations[step.capture] = records
                self._emit(step.party, step.describe(observations), records)
            case Action.WRITE:
                value = step.resolve_value(observations)
                modified = await handle.write(step.key, value)
                self._emit(step.party, f"{step.describe(observations)} MODIFIED: {modified}")
            case Action.COMMIT:
                if not await handle.commit():
                    error = handle.outcome.error if handle.outcome else None
                    self._emit(step.party, "COMMIT FAILED")
                    raise SerializationFailureError("Failed transaction") from error
                self._emit(step.party, "COMMIT")

    def _emit(self, party: Party, text: str, records: List[Record] | None = None) -> None:
        logger.debug("[%s] %s", party.value, text)
        if self._trace is not None:
            self._trace(party.value, text, records)


async def _gather_all(awaitables: Iterable) -> None:
    """Start every awaitable, wait for all of them, then raise the first failure in order."""
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result


async def _rollback_all(handles: Iterable[TransactionHandle]) -> None:
    handles = list(handles)
    results = await asyncio.gather(*(handle.rollback() for handle in handles), return_exceptions=True)
    for handle, result in zip(handles, results):
        if isinstance(result, BaseException):
            logger.warning("[%s] rollback failed: %s", handle.name, result)
