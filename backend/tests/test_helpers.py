"""
Test doubles shared by the analysis tests.

FakeProcess mimics the parts of asyncio.subprocess.Process that EngineSession
uses, and answers the UCI handshake like a real engine would.
"""

import asyncio
from typing import Callable, List, Optional

from engine_session import EngineState
from errors import CacheUnavailable, EngineUnavailable, ExplanationServiceError

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
AFTER_E4_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


class FakeStdout:
    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed(self, text: str) -> None:
        for line in text.splitlines():
            self._queue.put_nowait((line + "\n").encode())

    def eof(self) -> None:
        self._queue.put_nowait(b"")

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    async def readline(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeStdin:
    def __init__(self, on_command: Callable[[str], None]):
        self.commands: List[str] = []
        self.broken = False
        self._on_command = on_command

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("pipe closed")
        for line in data.decode().splitlines():
            self.commands.append(line)
            self._on_command(line)

    async def drain(self) -> None:
        if self.broken:
            raise BrokenPipeError("pipe closed")


class FakeProcess:
    """Scripted engine: answers uci/isready, exits on quit."""

    def __init__(self, *, answer_handshake: bool = True):
        self.answer_handshake = answer_handshake
        self.stdout = FakeStdout()
        self.stdin = FakeStdin(self._on_command)
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    @property
    def commands(self) -> List[str]:
        return self.stdin.commands

    def _on_command(self, line: str) -> None:
        if not self.answer_handshake:
            return
        if line == "uci":
            self.stdout.feed("id name FakeFish\nid author tests\nuciok")
        elif line == "isready":
            self.stdout.feed("readyok")
        elif line == "quit":
            self.exit(0)

    def exit(self, code: int = 0) -> None:
        self.returncode = code
        self.stdout.eof()
        self._exited.set()

    def crash(self) -> None:
        self.stdin.broken = True
        self.exit(1)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def kill(self) -> None:
        if self.returncode is None:
            self.exit(-9)


def spawn_returning(process: FakeProcess):
    calls = []

    async def spawn(*args, **kwargs):
        calls.append(args)
        return process

    spawn.calls = calls
    return spawn


class FakeEngine:
    """Stands in for EngineSession when only the command sequence matters."""

    def __init__(self, *, unavailable: bool = False):
        self.calls = []
        self.state = EngineState.READY
        self.unavailable = unavailable
        self._on_line = None
        self._on_failure = None

    def set_observer(self, on_line) -> None:
        self._on_line = on_line

    def set_failure_observer(self, on_failure) -> None:
        self._on_failure = on_failure

    async def initialize(self, multipv: int = 1) -> None:
        if self.unavailable:
            self.state = EngineState.FAILED
            raise EngineUnavailable("fake engine missing")

    async def stop(self) -> None:
        if self.unavailable:
            raise EngineUnavailable("fake engine missing")
        self.calls.append(("stop",))

    async def analyze(self, fen: str, depth: int, generation: int) -> None:
        if self.unavailable:
            raise EngineUnavailable("fake engine missing")
        self.calls.append(("analyze", fen, depth, generation))
        self.state = EngineState.ANALYZING

    async def close(self) -> None:
        self.state = EngineState.UNINITIALIZED

    @property
    def analyze_calls(self):
        return [c for c in self.calls if c[0] == "analyze"]


class StubExplanationService:
    def __init__(self, reply: str = "", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.requests = []

    async def explain(self, request) -> str:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.reply


class FailingStore:
    """Every call fails; used to check failures stay contained."""

    def __init__(self, fail_get: bool = True, fail_upsert: bool = True):
        self.fail_get = fail_get
        self.fail_upsert = fail_upsert
        self.upserts = []

    async def get(self, key):
        if self.fail_get:
            raise CacheUnavailable("store offline")
        return None

    async def upsert(self, entry):
        self.upserts.append(entry)
        if self.fail_upsert:
            raise CacheUnavailable("store offline")


def service_error(message: str = "rate limited") -> ExplanationServiceError:
    return ExplanationServiceError(message)
