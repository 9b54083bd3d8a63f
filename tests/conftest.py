"""Pytest configuration and fixtures."""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest
import pytest_asyncio

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from convert_engine.core.events import EventBus  # noqa: E402
from convert_engine.core.jobs import ConversionOrchestrator  # noqa: E402
from convert_engine.services.supervisor import ProcessSupervisor  # noqa: E402


class FakeProcess:
    """Stand-in for an asyncio subprocess with a scriptable stderr."""

    def __init__(self, argv: List[str]):
        self.argv = argv
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = False
        self._exited = asyncio.Event()

    @property
    def output_path(self) -> str:
        return self.argv[-1]

    def emit(self, text: str) -> None:
        self.stderr.feed_data(text.encode())

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeEncoder:
    """Spawn function handing out FakeProcess objects."""

    def __init__(self):
        self.processes: List[FakeProcess] = []
        self.fail_with: Optional[Exception] = None

    async def __call__(self, argv: List[str]) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(argv)
        self.processes.append(process)
        return process

    def find(self, output_path) -> Optional[FakeProcess]:
        for process in self.processes:
            if process.output_path == str(output_path):
                return process
        return None


async def _wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if loop.time() > deadline:
            raise AssertionError("Condition not met within %.1fs" % timeout)
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it is truthy."""
    return _wait_until


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def supervisor(encoder):
    return ProcessSupervisor(ffmpeg_path="ffmpeg", spawn=encoder, kill_timeout=0.2)


@pytest_asyncio.fixture
async def orchestrator(supervisor, events):
    orch = ConversionOrchestrator(supervisor, events, max_concurrent_jobs=2)
    yield orch
    await orch.stop()


@pytest.fixture
def recorder(events):
    """Every (kind, payload) published on the bus, in order."""
    received = []
    events.subscribe_all(lambda kind, payload: received.append((kind, payload)))
    return received


@pytest.fixture
def make_input(tmp_path):
    """Create a small input file and return its path as a string."""
    def _make(name: str = "input.mp4") -> str:
        path = tmp_path / name
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        return str(path)
    return _make


@pytest.fixture
def out_dir(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    return path
