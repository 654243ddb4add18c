from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

KEY_VALUE_TABLE = "key_value"


@dataclass(frozen=True)
class Record:
    key: str
    value: str

    def as_dict(self) -> Dict[str, str]:
        return {"key": self.key, "value": self.value}


@dataclass(frozen=True)
class Selector:
    """Rows whose `column` equals `values[0]`, or is any of `values` when there are several."""

    column: str
    values: Tuple[str, ...]

    def __post_init__(self):
        if self.column not in ("key", "value"):
            raise ValueError(f"Unknown column {self.column}.")
        if not self.values:
            raise ValueError("Selector needs at least one value.")

    @classmethod
    def key(cls, *keys: str) -> "Selector":
        return cls("key", tuple(keys))

    @classmethod
    def value(cls, *values: str) -> "Selector":
        return cls("value", tuple(values))

    def matches(self, record: Record) -> bool:
        return getattr(record, self.column) in self.values

    def __str__(self) -> str:
        if len(self.values) == 1:
            return f"{self.column} = '{self.values[0]}'"
        return f"{self.column} in ({', '.join(repr(v) for v in self.values)})"


@dataclass(frozen=True)
class ScenarioResult:
    observations: Mapping[str, Any]
    snapshot: Tuple[Record, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "observations", MappingProxyType(dict(self.observations)))
        object.__setattr__(self, "snapshot", tuple(self.snapshot))

    def __getitem__(self, name: str) -> Any:
        return self.observations[name]


def to_records(rows: List[Dict]) -> List[Record]:
    return [Record(key=row["key"], value=row["value"]) for row in rows]


def format_table(records: List[Dict]) -> str:
    if not records:
        return "EMPTY"

    records = [r.as_dict() if isinstance(r, Record) else r for r in records]

    # results in |{:>12}|{:>12}|...| to format as many fields as in the first record
    fmt = ("|{:>12}" * len(records[0])) + "|"
    formatted = fmt.format(*list(records[0].keys()))
    for record in records:
        values = map(lambda x: x if x is not None else "NULL", record.values())
        formatted += "\n" + fmt.format(*list(values))

    return formatted
