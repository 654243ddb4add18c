from typing import Iterable, List

from dbisolation.records import KEY_VALUE_TABLE, Record, Selector, to_records
from dbisolation.session import Database, Session


class Store:
    """Autocommit access to the key_value table, outside of the transactions under test."""

    database: Database
    session: Session | None

    def __init__(self, database: Database):
        self.database = database
        self.session = None

    async def __aenter__(self) -> "Store":
        self.session = await self.database.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def insert(self, records: Iterable[Record]) -> None:
        records = list(records)
        if not records:
            return
        q = self.session.quote
        placeholders = ", ".join(["(%s, %s)"] * len(records))
        params = [field for record in records for field in (record.key, record.value)]
        await self.session.execute(
            f"insert into {KEY_VALUE_TABLE} ({q('key')}, {q('value')}) values {placeholders}",
            params,
        )

    async def select(self, selector: Selector) -> List[Record]:
        q = self.session.quote
        placeholders = ", ".join(["%s"] * len(selector.values))
        rows = await self.session.execute(
            f"select {q('key')}, {q('value')} from {KEY_VALUE_TABLE} "
            f"where {q(selector.column)} in ({placeholders})",
            selector.values,
        )
        return to_records(rows)

    async def snapshot(self) -> List[Record]:
        q = self.session.quote
        rows = await self.session.execute(
            f"select {q('key')}, {q('value')} from {KEY_VALUE_TABLE} order by {q('key')}"
        )
        return to_records(rows)

    async def execute_all(self, statements: Iterable[str]) -> None:
        for statement in statements:
            await self.session.execute(statement)

    async def truncate(self) -> None:
        await self.session.execute(f"truncate table {KEY_VALUE_TABLE}")
