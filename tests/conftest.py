import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

# Disable telemetry for tests
os.environ["DISABLE_CLOUD_TELEMETRY"] = "true"
os.environ.setdefault("ENVIRONMENT", "test")

# Add the project root to Python path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from callrelay.broadcast.dispatcher import BroadcastDispatcher  # noqa: E402
from callrelay.engine.registry import ActiveSessionRegistry  # noqa: E402
from callrelay.engine.transport import CLEAN_CLOSE_CODE  # noqa: E402
from callrelay.errors import EngineConnectionError  # noqa: E402
from callrelay.state.backends import InMemoryStateBackend  # noqa: E402
from callrelay.state.store import ConversationStateStore  # noqa: E402

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manual clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = START_TIME):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


class FakeEngineSocket:
    """Engine socket double: frames pushed to ``inbox`` come back from ``recv``."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed_with: tuple[int, str] | None = None

    async def send(self, message: str) -> None:
        if self.closed_with is not None:
            raise EngineConnectionError("socket closed")
        self.sent.append(json.loads(message))

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, code: int = CLEAN_CLOSE_CODE, reason: str = "") -> None:
        self.closed_with = (code, reason)

    def push(self, frame) -> None:
        self.inbox.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


class FakeConnector:
    """Hands out a new :class:`FakeEngineSocket` per connect; can be told to fail."""

    def __init__(self):
        self.sockets: dict[str, list[FakeEngineSocket]] = {}
        self.calls = 0
        self.fail_next = 0
        self.fail_always = False

    async def __call__(self, session_id: str) -> FakeEngineSocket:
        self.calls += 1
        if self.fail_always or self.fail_next > 0:
            self.fail_next = max(self.fail_next - 1, 0)
            raise EngineConnectionError("engine unavailable")
        socket = FakeEngineSocket(session_id)
        self.sockets.setdefault(session_id, []).append(socket)
        return socket

    def latest(self, session_id: str) -> FakeEngineSocket:
        return self.sockets[session_id][-1]


class RecordingGateway:
    def __init__(self):
        self.messages: list[tuple[str, str, str]] = []

    async def deliver(self, session, text, speaker) -> None:
        self.messages.append((session.id, text, speaker.value))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return InMemoryStateBackend(clock)


@pytest.fixture
def store(backend, clock):
    return ConversationStateStore(backend, clock=clock)


@pytest.fixture
def dispatcher():
    return BroadcastDispatcher(send_timeout_seconds=0.5)


@pytest.fixture
def registry():
    return ActiveSessionRegistry()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until it holds; background tasks get to run meanwhile."""

    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
