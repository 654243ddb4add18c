import asyncio
import logging
from typing import Awaitable, List, TypeVar

from dbisolation.session import Database, Session
from dbisolation.transaction import TransactionHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeadlockBreaker:
    """Kills the sessions of watched transactions that the backend reports as blocked.

    Lock based engines can leave two transactions waiting on each other with no error at all.
    Every `delay` seconds the breaker asks the backend which sessions are waiting on a lock
    and kills the ones belonging to `handles`, so the blocked transaction fails with
    `SessionKilledError` instead of hanging.
    """

    def __init__(self, database: Database, handles: List[TransactionHandle], delay: float = 1.0):
        self.database = database
        self.handles = handles
        self.delay = delay
        self.killed: List[int] = []
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        monitor = await self.database.connect()
        try:
            while not await self._sleep():
                self.killed.extend(await self.break_blocked(monitor))
        finally:
            await monitor.close()

    async def break_blocked(self, monitor: Session) -> List[int]:
        adapter = self.database.adapter
        rows = await monitor.execute(adapter.blocked_sessions_query)
        blocked = {int(row["id"]) for row in rows}

        killed = []
        for handle in self.handles:
            if handle.is_terminal or handle.session_id not in blocked:
                continue
            # mark first: the blocked statement fails as soon as the kill lands
            handle.mark_killed()
            logger.warning("Killing blocked session %s of transaction %s", handle.session_id, handle.name)
            await monitor.execute(adapter.kill_statement(handle.session_id))
            killed.append(handle.session_id)
        return killed

    async def _sleep(self) -> bool:
        """Wait one period; True when the breaker was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.delay)
        except TimeoutError:
            return False
        return True


async def race(scenario: Awaitable[T], breaker: DeadlockBreaker) -> T:
    """Run `scenario` with `breaker` watching it; whichever finishes first decides the outcome.

    The breaker stops after its current iteration once the scenario is done, and its failure
    is raised only when the scenario itself succeeded. When the breaker fails first nothing
    could unblock the scenario any more, so the scenario is cancelled and the breaker error
    raised.
    """
    scenario_task = asyncio.ensure_future(scenario)
    breaker_task = asyncio.create_task(breaker.run(), name="deadlock-breaker")
    try:
        await asyncio.wait({scenario_task, breaker_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not scenario_task.done():
            scenario_task.cancel()
        breaker.stop()
        await asyncio.wait({scenario_task, breaker_task})

    breaker_error = None if breaker_task.cancelled() else breaker_task.exception()
    if breaker_error is not None:
        if scenario_task.cancelled() or scenario_task.exception() is None:
            raise breaker_error
        logger.error("Deadlock breaker failed: %s", breaker_error)
    return scenario_task.result()
