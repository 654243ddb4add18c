from typing import Dict

from dbisolation.anomaly import registry
from dbisolation.anomaly.base import run_scenario
from dbisolation.levels import Backend, IsolationLevel
from dbisolation.orchestrator import Party, Program, Trace, commit, read, write
from dbisolation.records import Record, Selector
from dbisolation.session import Database

KEY = "my-key"

BASELINE = (Record(KEY, "0"),)


def _incremented(capture: str):
    return lambda observations: str(int(observations[capture][0].value) + 1)


def program() -> Program:
    return (
        read(Party.A, Selector.key(KEY), capture="a_value"),
        read(Party.B, Selector.key(KEY), capture="b_value"),
        write(Party.A, KEY, _incremented("a_value")),
        commit(Party.A),
        write(Party.B, KEY, _incremented("b_value")),
        commit(Party.B),
    )


async def run_increment(
    backend: Backend,
    level: IsolationLevel = IsolationLevel.REPEATABLE_READ,
    *,
    database: Database | None = None,
    deadlock_breaker: bool | None = None,
    trace: Trace | None = None,
) -> Dict[str, int]:
    result = await run_scenario(backend, level, BASELINE, program(), database, deadlock_breaker, trace)
    (record,) = [r for r in result.snapshot if r.key == KEY]
    return {"result": int(record.value)}


registry.register("increment", run_increment, description="""
T1 and T2 read the same counter and each writes back its own read plus one. Without conflict detection the
second write silently replaces the first and the counter ends at 1 (lost update), as in MySQL's repeatable read.
PostgreSQL's repeatable read and SQL Server's snapshot isolation fail T2's update instead.

┌────┐              ┌────┐                ┌────┐
│ T1 │              │ T2 │                │ DB │
└──┬─┘              └──┬─┘                └──┬─┘
   │                   │                     │
   ├───────select value──────────────────────►│  0
   │                   │                     │
   │                   ├──select value──────►│  0
   │                   │                     │
   ├───────update value = 1─────────────────►│
   │                   │                     │
   ├───────commit──────┼────────────────────►│
   │                   │                     │
   │                   ├──update value = 1──►│  lost update, or a serialization failure
   │                   │                     │
   │                   ├────commit──────────►│
   │                   │                     │
""")
