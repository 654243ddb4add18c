from typing import Iterable

from dbisolation.levels import Backend, IsolationLevel
from dbisolation.orchestrator import Orchestrator, Program, Trace
from dbisolation.records import Record, ScenarioResult
from dbisolation.session import Database


async def run_scenario(
    backend: Backend,
    level: IsolationLevel,
    baseline: Iterable[Record],
    program: Program,
    database: Database | None = None,
    deadlock_breaker: bool | None = None,
    trace: Trace | None = None,
) -> ScenarioResult:
    if database is None:
        database = Database.from_env(backend)
    elif database.backend is not backend:
        raise ValueError(f"Database is {database.backend.value}, expected {backend.value}.")

    orchestrator = Orchestrator(database, level, deadlock_breaker=deadlock_breaker, trace=trace)
    return await orchestrator.run(baseline, program)
