from typing import Dict

from dbisolation.anomaly import registry
from dbisolation.anomaly.base import run_scenario
from dbisolation.levels import Backend, IsolationLevel
from dbisolation.orchestrator import Party, Program, Trace, commit, read, write
from dbisolation.records import Record, Selector
from dbisolation.session import Database

KEY1 = "my-key1"
KEY2 = "my-key2"
VALUE1 = "my-value1"
VALUE2 = "my-value2"

BASELINE = (Record(KEY1, VALUE1), Record(KEY2, VALUE1))


def program(backend: Backend) -> Program:
    updates = (write(Party.A, KEY1, VALUE2), write(Party.A, KEY2, VALUE2))
    first_read = read(Party.B, Selector.key(KEY1), capture="first_read")
    second_read = read(Party.B, Selector.key(KEY2), capture="second_read")

    match backend:
        case Backend.MSSQL:
            # locking reads would wait on A's uncommitted rows, so B reads before A writes
            return (first_read, *updates, commit(Party.A), second_read, commit(Party.B))
        case _:
            return (*updates, first_read, commit(Party.A), second_read, commit(Party.B))


async def run_read_skew(
    backend: Backend,
    level: IsolationLevel = IsolationLevel.DEFAULT,
    *,
    database: Database | None = None,
    deadlock_breaker: bool | None = None,
    trace: Trace | None = None,
) -> Dict[str, str]:
    """B reads two related keys on either side of A's commit."""
    result = await run_scenario(backend, level, BASELINE, program(backend), database, deadlock_breaker, trace)
    return {
        "first_read": result["first_read"][0].value,
        "second_read": result["second_read"][0].value,
    }


registry.register("read-skew", run_read_skew, description="""
T2 reads `my-key1` while T1 has updated both keys but not committed, then reads `my-key2` after T1 commits.
With read committed T2 sees the old value for the first key and the new one for the second: two values that
never existed together. With repeatable read (snapshot isolation) both reads come from the same snapshot.
For SQL Server T2 reads `my-key1` before T1 updates, as its locking reads would wait for T1's commit.

┌────┐              ┌────┐              ┌────┐
│ T1 │              │ T2 │              │ DB │
└──┬─┘              └──┬─┘              └──┬─┘
   │                   │                   │
   ├──────update my-key1, my-key2─────────►│
   │                   │                   │
   │                   ├───select my-key1─►│  T2 sees my-value1
   │                   │                   │
   ├───────commit──────┼──────────────────►│
   │                   │                   │
   │                   ├───select my-key2─►│  T2 sees my-value2 unless it reads from a snapshot
   │                   │                   │
   │                   ├─────commit───────►│
   │                   │                   │
""")
