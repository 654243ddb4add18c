from dbisolation.adapter import IsolationAdapter, configure, get_adapter
from dbisolation.anomaly import run_increment, run_read_skew, run_write_skew
from dbisolation.errors import (
    ConfigurationError,
    InvalidStateError,
    IsolationError,
    LockTimeoutError,
    SerializationFailureError,
    SessionKilledError,
    UnsupportedIsolationError,
)
from dbisolation.levels import Backend, IsolationLevel, Phase
from dbisolation.records import Record, ScenarioResult, Selector
from dbisolation.session import Database
from dbisolation.transaction import CommitOutcome, TransactionHandle, TransactionState

__all__ = [
    "Backend",
    "CommitOutcome",
    "ConfigurationError",
    "Database",
    "InvalidStateError",
    "IsolationAdapter",
    "IsolationError",
    "IsolationLevel",
    "LockTimeoutError",
    "Phase",
    "Record",
    "ScenarioResult",
    "Selector",
    "SerializationFailureError",
    "SessionKilledError",
    "TransactionHandle",
    "TransactionState",
    "UnsupportedIsolationError",
    "configure",
    "get_adapter",
    "run_increment",
    "run_read_skew",
    "run_write_skew",
]
