"""Shared test fixtures: a fake master on a local port and fake collaborators."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from pm_node.agent import PMNodeAgent
from pm_node.config import AgentConfig
from pm_node.exceptions import StreamClosedError
from pm_node.processes import ProcessRegistry, ProcessSupervisor
from pm_node.session import TransportSession


async def wait_for(predicate, timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeStream:
    """Sub-stream stand-in that records what was written."""

    def __init__(self, label: str, fail_writes: bool = False):
        self.label = label
        self.fail_writes = fail_writes
        self.chunks: list[bytes] = []
        self.closed = False

    async def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise StreamClosedError(f"stream {self.label!r} is closed")
        self.chunks.append(data)

    async def close(self) -> None:
        self.closed = True

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


class FakeLink:
    """Master link for the supervisor without a real connection."""

    def __init__(self, connected: bool = True, fail_writes: bool = False, stream_error: Exception = None):
        self.connected = connected
        self.fail_writes = fail_writes
        self.stream_error = stream_error
        self.notifications: list[tuple[str, dict]] = []
        self.streams: dict[str, FakeStream] = {}

    async def create_stream(self, label: str) -> FakeStream:
        if self.stream_error is not None:
            raise self.stream_error
        stream = FakeStream(label, fail_writes=self.fail_writes)
        self.streams[label] = stream
        return stream

    def notify_master(self, method: str, params) -> None:
        self.notifications.append((method, params))


class FakeTimer:
    """Interval timer that only ticks when the test says so."""

    instances: list["FakeTimer"] = []

    def __init__(self, interval: float, callback):
        self.interval = interval
        self.callback = callback
        self.start_count = 0
        self.stopped = False
        FakeTimer.instances.append(self)

    def start(self) -> None:
        self.start_count += 1

    async def stop(self) -> None:
        self.stopped = True

    async def fire(self) -> None:
        await self.callback()


class FakeMaster:
    """Master side of the protocol, listening on a local port."""

    def __init__(self):
        self.process_ends: list[dict] = []
        self.heartbeats: list[dict] = []
        self.output: dict[str, bytes] = {}
        self.finished_streams: set[str] = set()
        self.sessions: list[TransportSession] = []
        self.heartbeat_reply = None
        self.extra_methods: dict = {}
        self.server = None
        self.port = None

    @property
    def session(self) -> TransportSession:
        return self.sessions[-1]

    async def start(self) -> "FakeMaster":
        self.server = await asyncio.start_server(self._on_client, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        await self.drop()
        self.server.close()
        await self.server.wait_closed()

    async def drop(self) -> None:
        """Close every agent connection."""
        for session in self.sessions:
            await session.close()

    async def call(self, method: str, params=None, on_progress=None):
        return await self.session.call(method, params, on_progress=on_progress)

    def methods(self) -> dict:
        return {"loop": self._loop, "onProcessEnd": self._on_process_end, **self.extra_methods}

    async def _on_client(self, reader, writer) -> None:
        session = TransportSession(reader, writer, self.methods(), initiator=False)
        session.mux.on_stream = self._on_stream
        self.sessions.append(session)
        session.start()

    async def _loop(self, params, notify):
        self.heartbeats.append(params)
        if self.heartbeat_reply is not None:
            return self.heartbeat_reply
        return params

    async def _on_process_end(self, params, notify):
        self.process_ends.append(params)
        return True

    def _on_stream(self, stream) -> None:
        self.output.setdefault(stream.label, b"")
        asyncio.ensure_future(self._collect(stream))

    async def _collect(self, stream) -> None:
        while True:
            chunk = await stream.read()
            if not chunk:
                break
            self.output[stream.label] += chunk
        self.finished_streams.add(stream.label)


async def fake_usage(pid: int) -> dict:
    return {"cpu": 1.5, "memory": 4096}


def fake_host_info() -> dict:
    return {
        "hostname": "node-1",
        "type": "Linux",
        "platform": "linux",
        "arch": "x86_64",
        "release": "6.1.0",
        "uptime": 100,
        "totalmem": 8 * 1024 * 1024 * 1024,
        "cpus": [{"model": "Test CPU", "speed": 2400}],
    }


@pytest.fixture
def registry():
    return ProcessRegistry.for_current_process()


@pytest.fixture
def link():
    return FakeLink()


@pytest_asyncio.fixture
async def supervisor(registry, link):
    supervisor = ProcessSupervisor(registry, link)
    yield supervisor
    await supervisor.join()


@pytest_asyncio.fixture
async def master():
    master = await FakeMaster().start()
    yield master
    await master.stop()


@pytest.fixture
def fake_timers():
    FakeTimer.instances.clear()
    yield FakeTimer.instances
    FakeTimer.instances.clear()


@pytest_asyncio.fixture
async def agent(master, fake_timers):
    config = AgentConfig(server_host="127.0.0.1", server_port=master.port, ping_interval=5)
    agent = PMNodeAgent(
        config,
        usage_lookup=fake_usage,
        host_info=fake_host_info,
        timer_factory=FakeTimer,
    )
    yield agent
    await agent.supervisor.join()
    await agent.close()
