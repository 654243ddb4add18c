from typing import Dict, List

from dbisolation.anomaly import registry
from dbisolation.anomaly.base import run_scenario
from dbisolation.levels import Backend, IsolationLevel
from dbisolation.orchestrator import Concurrently, Party, Program, Trace, commit, read, write
from dbisolation.records import Record, Selector
from dbisolation.session import Database

ON_CALL = "oncall"
OFF_CALL = "offcall"

BASELINE = (Record("alice", ON_CALL), Record("bob", ON_CALL))


def _others_on_call(capture: str):
    return lambda observations: len(observations[capture]) > 1


def program() -> Program:
    return (
        # both reads are in flight before either transaction writes
        Concurrently(
            read(Party.A, Selector.value(ON_CALL), capture="a_on_call"),
            read(Party.B, Selector.value(ON_CALL), capture="b_on_call"),
        ),
        write(Party.A, "alice", OFF_CALL, when=_others_on_call("a_on_call")),
        commit(Party.A),
        write(Party.B, "bob", OFF_CALL, when=_others_on_call("b_on_call")),
        commit(Party.B),
    )


async def run_write_skew(
    backend: Backend,
    level: IsolationLevel = IsolationLevel.REPEATABLE_READ,
    *,
    database: Database | None = None,
    deadlock_breaker: bool | None = None,
    trace: Trace | None = None,
) -> Dict[str, List[Record]]:
    """Alice and Bob both go off call after each checked someone else is still on call."""
    result = await run_scenario(backend, level, BASELINE, program(), database, deadlock_breaker, trace)
    return {"result": list(result.snapshot)}


registry.register("write-skew", run_write_skew, description="""
Alice (T1) and Bob (T2) are both on call and each wants to go off call, which is fine as long as someone stays.
Both check how many are on call, see two, and update only their own row. No row is written by both, so
snapshot isolation lets both commit and nobody is left on call. Serializable must fail one of them:
PostgreSQL aborts T2, SQL Server blocks T1 until the deadlock breaker kills it, and MySQL (observed) lets both commit.

┌────┐              ┌────┐                   ┌────┐
│ T1 │              │ T2 │                   │ DB │
└──┬─┘              └──┬─┘                   └──┬─┘
   │                   │                        │
   ├───select on call──┼───────────────────────►│  both see alice and bob
   │                   ├──select on call───────►│
   │                   │                        │
   ├────────update alice offcall───────────────►│
   │                   │                        │
   ├───────commit──────┼───────────────────────►│
   │                   │                        │
   │                   ├──update bob offcall───►│
   │                   │                        │
   │                   ├────commit─────────────►│  fails only under serializable
   │                   │                        │
""")
