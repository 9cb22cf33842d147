from unittest.mock import AsyncMock

import pytest


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)


@pytest.fixture
def connection():
    return AsyncMock()


@pytest.fixture
def pool(connection):
    return DummyPool(connection)
