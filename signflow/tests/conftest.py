import pytest


@pytest.fixture
def anyio_backend():
    # The service code is built on asyncio (asyncio, redis.asyncio, aiohttp).
    return "asyncio"
