from datetime import datetime

import fakeredis
import pytest

from face_to_phone.database import StorageConnection
from face_to_phone.models import TransactionData
from face_to_phone.randomness import SequenceRandomSource

# A Wednesday at noon: outside the suspicious-hours window
NOON = datetime(2024, 3, 6, 12, 0, 0)


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def connection(fake_server):
    conn = StorageConnection(
        redis_client=fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True),
        key_prefix="test",
        timeout=0,
    )
    await conn.initialize()
    yield conn
    await conn.close()


@pytest.fixture
def store(connection):
    return connection.store


@pytest.fixture
def quiet_random():
    """Never fires the simulated SIM swap rule."""
    return SequenceRandomSource([0.99])


def make_transaction(**overrides) -> TransactionData:
    data = {
        "amount": 50.0,
        "recipient": "Jane",
        "timestamp": NOON,
        "user_verified": True,
    }
    data.update(overrides)
    return TransactionData(**data)
