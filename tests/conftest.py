import fakeredis
import pytest

from backend import FallbackStore, RedisStore
from services.room_directory import RoomDirectory


class RecordingSink:
    """Collects emitted room events for assertions."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]

    def clear(self):
        self.events.clear()


def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture(params=["memory", "fallback"])
def store(request):
    if request.param == "memory":
        return RedisStore.in_memory()
    return FallbackStore(RedisStore(fake_redis()))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def torn_down():
    return []


@pytest.fixture
async def directory(store, sink, torn_down):
    directory = RoomDirectory(
        store,
        grace_period=0.05,
        on_teardown=torn_down.append,
        event_sink=sink,
    )
    yield directory
    await directory.shutdown()
