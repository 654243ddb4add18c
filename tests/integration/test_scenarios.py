import pytest

from dbisolation.anomaly import run_increment, run_read_skew, run_write_skew
from dbisolation.errors import SerializationFailureError, SessionKilledError
from dbisolation.levels import Backend, IsolationLevel
from dbisolation.provision import truncate
from dbisolation.records import Record

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]

OFF_CALL = [Record("alice", "offcall"), Record("bob", "offcall")]

READ_SKEW_DEFAULT = {
    Backend.POSTGRES: ("my-value1", "my-value2"),
    Backend.MYSQL: ("my-value1", "my-value1"),
    Backend.MSSQL: ("my-value1", "my-value2"),
}


async def test_read_skew_default(live_backend, live_database):
    result = await run_read_skew(live_backend, database=live_database)

    assert (result["first_read"], result["second_read"]) == READ_SKEW_DEFAULT[live_backend]


async def test_read_skew_repeatable_read(live_backend, live_database):
    result = await run_read_skew(live_backend, IsolationLevel.REPEATABLE_READ, database=live_database)

    assert result == {"first_read": "my-value1", "second_read": "my-value1"}


async def test_write_skew_repeatable_read(live_backend, live_database):
    result = await run_write_skew(live_backend, IsolationLevel.REPEATABLE_READ, database=live_database)

    assert result == {"result": OFF_CALL}


async def test_write_skew_serializable(live_backend, live_database):
    match live_backend:
        case Backend.POSTGRES:
            with pytest.raises(SerializationFailureError):
                await run_write_skew(live_backend, IsolationLevel.SERIALIZABLE, database=live_database)
        case Backend.MYSQL:
            result = await run_write_skew(live_backend, IsolationLevel.SERIALIZABLE, database=live_database)
            assert result == {"result": OFF_CALL}
        case Backend.MSSQL:
            with pytest.raises(SessionKilledError):
                await run_write_skew(live_backend, IsolationLevel.SERIALIZABLE, database=live_database)


async def test_increment(live_backend, live_database):
    if live_backend is Backend.MYSQL:
        assert await run_increment(live_backend, database=live_database) == {"result": 1}
    else:
        with pytest.raises(SerializationFailureError):
            await run_increment(live_backend, database=live_database)


async def test_scenarios_are_repeatable_after_truncate(live_backend, live_database):
    first = await run_read_skew(live_backend, IsolationLevel.REPEATABLE_READ, database=live_database)

    await truncate(live_database)

    assert await run_read_skew(live_backend, IsolationLevel.REPEATABLE_READ, database=live_database) == first


async def test_serializable_run_does_not_leak_into_the_next(live_backend, live_database):
    if live_backend is not Backend.MYSQL:
        pytest.skip("only mysql keeps the isolation level server wide")

    await run_write_skew(live_backend, IsolationLevel.SERIALIZABLE, database=live_database)
    await truncate(live_database)

    assert await run_write_skew(live_backend, IsolationLevel.SERIALIZABLE, database=live_database) == {"result": OFF_CALL}
    await truncate(live_database)
    assert await run_increment(live_backend, database=live_database) == {"result": 1}
