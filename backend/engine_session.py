"""
Engine Session - owns the external UCI engine process.

Speaks the line protocol directly over asyncio subprocess pipes so that the
streamed `info` output can be aggregated as it arrives. Every line handed to
the observer is tagged with the generation of the search that produced it.

Usage:
    session = EngineSession("./stockfish", on_line=aggregator.feed)
    await session.initialize(multipv=4)
    await session.analyze(fen, depth=18, generation=1)
    ...
    await session.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, List, Optional, Sequence, Union

import uci_protocol
from errors import EngineNotReady, EngineUnavailable

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    ANALYZING = "analyzing"
    FAILED = "failed"


@dataclass(frozen=True)
class EngineLine:
    """One raw output line; generation is None when no search was outstanding."""

    generation: Optional[int]
    text: str


LineObserver = Callable[[EngineLine], None]
FailureObserver = Callable[[EngineUnavailable], None]


class EngineSession:
    """
    Lifecycle and protocol conversation with one engine process.

    Commands issued before the handshake completes are rejected with
    EngineNotReady. Once FAILED the session stays failed and every command
    raises EngineUnavailable.
    """

    QUIT_TIMEOUT_S = 2.0

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        *,
        on_line: Optional[LineObserver] = None,
        on_failure: Optional[FailureObserver] = None,
        handshake_timeout: float = 10.0,
        spawn: Optional[Callable[..., Any]] = None,
    ):
        self.command: List[str] = [command] if isinstance(command, str) else list(command)
        self.handshake_timeout = handshake_timeout
        self._on_line = on_line
        self._on_failure = on_failure
        self._spawn = spawn or asyncio.create_subprocess_exec

        self.state = EngineState.UNINITIALIZED
        self.failure: Optional[EngineUnavailable] = None
        self._process = None
        self._reader_task: Optional[asyncio.Task] = None
        self._command_lock = asyncio.Lock()
        self._uciok = asyncio.Event()
        self._readyok = asyncio.Event()
        # Generations of issued `go` commands, oldest first. The head is the
        # search whose output is currently streaming.
        self._searches: Deque[int] = deque()
        self._closing = False

    def set_observer(self, on_line: Optional[LineObserver]) -> None:
        self._on_line = on_line

    def set_failure_observer(self, on_failure: Optional[FailureObserver]) -> None:
        self._on_failure = on_failure

    @property
    def is_available(self) -> bool:
        return self.state in (EngineState.READY, EngineState.ANALYZING)

    @property
    def current_search(self) -> Optional[int]:
        return self._searches[0] if self._searches else None

    async def initialize(self, multipv: int = 1) -> None:
        """Start the process and complete uci / MultiPV / isready handshake."""
        if self.state != EngineState.UNINITIALIZED:
            if self.state == EngineState.FAILED:
                raise self.failure or EngineUnavailable()
            return

        try:
            self._process = await self._spawn(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            raise self._fail(f"could not start {self.command[0]}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())

        try:
            await self._write(uci_protocol.uci())
            await asyncio.wait_for(self._uciok.wait(), timeout=self.handshake_timeout)
            await self._write(uci_protocol.setoption("MultiPV", multipv))
            await self._write(uci_protocol.isready())
            await asyncio.wait_for(self._readyok.wait(), timeout=self.handshake_timeout)
            if self.state == EngineState.FAILED:
                raise self.failure or EngineUnavailable()
        except asyncio.TimeoutError as e:
            await self.close()
            raise self._fail(f"handshake timed out after {self.handshake_timeout}s") from e
        except EngineUnavailable:
            await self.close()
            raise

        self.state = EngineState.READY
        logger.info(f"[ENGINE_SESSION] {self.command[0]} ready (MultiPV={multipv})")

    async def analyze(self, fen: str, depth: int, generation: int) -> None:
        """Send stop, position and go-depth for a new search tagged `generation`."""
        self._check_accepting()
        async with self._command_lock:
            self._check_accepting()
            if self.state == EngineState.ANALYZING:
                await self._write(uci_protocol.stop())
            await self._write(uci_protocol.position_fen(fen))
            await self._write(uci_protocol.go_depth(depth))
            self._searches.append(generation)
            self.state = EngineState.ANALYZING
        logger.debug(f"[ENGINE_SESSION] go depth {depth} (generation {generation})")

    async def stop(self) -> None:
        """Ask the engine to stop; the session returns to READY on its bestmove."""
        if self.state != EngineState.ANALYZING:
            if self.state in (EngineState.UNINITIALIZED, EngineState.FAILED):
                self._check_accepting()
            return
        async with self._command_lock:
            if self.state == EngineState.ANALYZING:
                await self._write(uci_protocol.stop())

    async def close(self) -> None:
        """Quit the engine and release the process."""
        self._closing = True
        process = self._process
        if process is not None and process.returncode is None:
            try:
                await self._write(uci_protocol.quit_())
                await asyncio.wait_for(process.wait(), timeout=self.QUIT_TIMEOUT_S)
            except (EngineUnavailable, asyncio.TimeoutError):
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        self._searches.clear()
        if self.state != EngineState.FAILED:
            self.state = EngineState.UNINITIALIZED

    def _check_accepting(self) -> None:
        if self.state == EngineState.FAILED:
            raise self.failure or EngineUnavailable()
        if self.state == EngineState.UNINITIALIZED:
            raise EngineNotReady("analysis requested before the engine handshake completed")

    async def _write(self, command: str) -> None:
        if self.state == EngineState.FAILED:
            raise self.failure or EngineUnavailable()
        stdin = self._process.stdin if self._process is not None else None
        if stdin is None:
            raise self._fail("engine stdin is closed")
        try:
            stdin.write((command + "\n").encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise self._fail(f"write failed: {e}") from e

    async def _read_loop(self) -> None:
        stdout = self._process.stdout
        while True:
            try:
                raw = await stdout.readline()
            except Exception as e:
                if not self._closing:
                    self._fail(f"read failed: {e}")
                return
            if not raw:
                if not self._closing:
                    self._fail("engine process exited")
                return
            self._dispatch(raw.decode(errors="replace").strip())

    def _dispatch(self, text: str) -> None:
        if not text:
            return
        if text == uci_protocol.UCI_OK:
            self._uciok.set()
            return
        if text == uci_protocol.READY_OK:
            self._readyok.set()
            return

        generation = self.current_search
        if uci_protocol.is_terminal(text) and self._searches:
            self._searches.popleft()
            if not self._searches and self.state == EngineState.ANALYZING:
                self.state = EngineState.READY

        if self._on_line is not None:
            try:
                self._on_line(EngineLine(generation, text))
            except Exception:
                logger.exception("[ENGINE_SESSION] line observer raised")

    def _fail(self, reason: str) -> EngineUnavailable:
        if self.state == EngineState.FAILED and self.failure is not None:
            return self.failure
        self.state = EngineState.FAILED
        self.failure = EngineUnavailable(reason)
        self._searches.clear()
        # Unblock a handshake that is still waiting.
        self._uciok.set()
        self._readyok.set()
        logger.error(f"[ENGINE_SESSION] engine unavailable: {reason}")
        if self._on_failure is not None:
            try:
                self._on_failure(self.failure)
            except Exception:
                logger.exception("[ENGINE_SESSION] failure observer raised")
        return self.failure
