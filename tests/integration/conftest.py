import os

import pytest
import pytest_asyncio

from dbisolation.config import connection_env
from dbisolation.levels import Backend
from dbisolation.provision import truncate
from dbisolation.session import Database


@pytest.fixture(params=list(Backend), ids=lambda backend: backend.value)
def live_backend(request) -> Backend:
    if not os.environ.get(connection_env(request.param)):
        pytest.skip(f"{connection_env(request.param)} is not set")
    return request.param


@pytest_asyncio.fixture
async def live_database(live_backend) -> Database:
    database = Database.from_env(live_backend)
    await truncate(database)
    yield database
    await truncate(database)
