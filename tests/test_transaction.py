import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from dbisolation.adapter import get_adapter
from dbisolation.errors import InvalidStateError, SerializationFailureError, SessionKilledError
from dbisolation.levels import Backend, IsolationLevel
from dbisolation.records import Record, Selector
from dbisolation.session import MySQLSession
from dbisolation.transaction import TransactionHandle, TransactionState
from tests.fakes import FakeEngine, FakeSerializationFailure, FakeSession, on_statement


async def _handle(engine: FakeEngine, level=IsolationLevel.REPEATABLE_READ, backend=Backend.POSTGRES):
    engine.committed.update({"k": "v", "other": "x"})
    session = FakeSession(engine, backend)
    handle = TransactionHandle(session, get_adapter(backend), level, name="A")
    await handle.begin()
    return handle


@pytest.mark.asyncio
async def test_begin_applies_every_phase_once(engine):
    handle = await _handle(engine, backend=Backend.MSSQL, level=IsolationLevel.SERIALIZABLE)
    await handle.begin()

    assert engine.statements(handle.session_id) == [
        "set lock_timeout 10000",
        "set transaction isolation level serializable",
        "begin transaction",
    ]


@pytest.mark.asyncio
async def test_read_returns_inserted_record(engine):
    handle = await _handle(engine)

    assert await handle.read(Selector.key("k")) == [Record("k", "v")]


@pytest.mark.asyncio
async def test_write_then_commit(engine):
    handle = await _handle(engine)

    assert await handle.write("k", "w") == 1
    assert await handle.commit() is True

    assert handle.state is TransactionState.COMMITTED
    assert handle.outcome.success
    assert engine.committed["k"] == "w"
    assert handle.session.closed


@pytest.mark.asyncio
async def test_operations_after_commit_are_invalid(engine):
    handle = await _handle(engine)
    await handle.commit()

    with pytest.raises(InvalidStateError):
        await handle.read(Selector.key("k"))
    with pytest.raises(InvalidStateError):
        await handle.write("k", "w")
    with pytest.raises(InvalidStateError):
        await handle.commit()


@pytest.mark.asyncio
async def test_rollback_is_idempotent(engine):
    handle = await _handle(engine)
    await handle.write("k", "w")

    await handle.rollback()
    await handle.rollback()

    assert handle.state is TransactionState.ROLLED_BACK
    assert engine.committed["k"] == "v"
    assert engine.statements(handle.session_id).count("rollback") == 1


@pytest.mark.asyncio
async def test_rollback_after_commit_keeps_committed_state(engine):
    handle = await _handle(engine)
    await handle.commit()

    await handle.rollback()

    assert handle.state is TransactionState.COMMITTED


@pytest.mark.asyncio
async def test_serialization_failure_on_commit_is_a_falsy_outcome(engine):
    engine.hooks.append(on_statement(
        lambda session, query, params: query == "commit",
        _raise(FakeSerializationFailure("could not serialize access")),
    ))
    handle = await _handle(engine)

    outcome = await handle.try_commit()

    assert not outcome.success
    assert outcome.aborted_for_serialization
    assert isinstance(outcome.error, SerializationFailureError)
    assert handle.state is TransactionState.ROLLED_BACK


@pytest.mark.asyncio
async def test_commit_that_ends_in_rollback_returns_false(engine):
    handle = await _handle(engine)
    engine.silent_abort.add(handle.session_id)

    assert await handle.commit() is False
    assert handle.outcome.aborted_for_serialization
    assert handle.outcome.error is None
    assert handle.state is TransactionState.ROLLED_BACK


@pytest.mark.asyncio
async def test_killed_handle_raises_session_killed(engine):
    handle = await _handle(engine)
    handle.mark_killed()

    with pytest.raises(SessionKilledError):
        await handle.read(Selector.key("k"))
    with pytest.raises(SessionKilledError):
        await handle.commit()

    await handle.rollback()
    assert handle.state is TransactionState.KILLED


@pytest.mark.asyncio
async def test_driver_error_after_kill_becomes_session_killed(engine):
    handle = await _handle(engine)

    async def kill_mid_statement(session):
        handle.mark_killed()
        engine.kill(session.session_id)
        raise ConnectionError("server closed the connection unexpectedly")

    engine.hooks.append(on_statement(lambda session, query, params: query.startswith("update"), kill_mid_statement))

    with pytest.raises(SessionKilledError) as exc_info:
        await handle.write("k", "w")
    assert isinstance(exc_info.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_failed_begin_rolls_back(engine):
    engine.hooks.append(on_statement(
        lambda session, query, params: query.startswith("set transaction"),
        _raise(RuntimeError("boom")),
    ))
    session = FakeSession(engine, Backend.POSTGRES)
    handle = TransactionHandle(session, get_adapter(Backend.POSTGRES), IsolationLevel.SERIALIZABLE, name="A")

    with pytest.raises(RuntimeError, match="boom"):
        await handle.begin()

    assert handle.state is TransactionState.ROLLED_BACK
    assert session.closed


def _raise(exc: Exception):
    async def action(session):
        raise exc

    return action


@pytest.mark.asyncio
async def test_rollback_after_a_cancelled_statement_closes_the_connection():
    release = threading.Event()
    conn = MagicMock()
    cursor = conn.cursor.return_value
    cursor.description = None
    cursor.execute.side_effect = lambda query, params=None: release.wait(5) if query.startswith("update") else None
    handle = TransactionHandle(MySQLSession(conn), get_adapter(Backend.MYSQL), IsolationLevel.DEFAULT, name="A")
    await handle.begin()

    try:
        write = asyncio.create_task(handle.write("k", "v"))
        await asyncio.sleep(0.05)
        write.cancel()
        with pytest.raises(asyncio.CancelledError):
            await write

        await handle.rollback()
    finally:
        release.set()

    executed = [c.args[0] for c in cursor.execute.call_args_list]
    assert "rollback" not in executed
    conn.close.assert_called_once()
    assert handle.state is TransactionState.ROLLED_BACK
