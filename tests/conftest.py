import pytest

from dbisolation.levels import Backend
from tests.fakes import FakeDatabase, FakeEngine


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def conflict_engine() -> FakeEngine:
    return FakeEngine(detect_conflicts=True)


@pytest.fixture(params=list(Backend), ids=lambda backend: backend.value)
def backend(request) -> Backend:
    return request.param


@pytest.fixture
def database(backend, engine) -> FakeDatabase:
    return FakeDatabase(backend, engine)
