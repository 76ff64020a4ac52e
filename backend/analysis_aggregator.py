"""
Analysis Aggregator - turns streamed engine output into a ranked move list.

Keeps the best-known line per MultiPV rank for the current position and
generation. Depth never goes backwards within a generation: a line is only
accepted when its depth is at least the deepest depth seen so far.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import chess

import uci_protocol
from engine_session import EngineLine
from errors import ProtocolParseError, StaleResult
from eval_converter import Score, format_eval, relative_score, sort_key

logger = logging.getLogger(__name__)

PUBLISH_MIN_DEPTH = 10
PV_SAN_LIMIT = 6


@dataclass(frozen=True)
class CandidateLine:
    rank: int
    san: str
    uci: str
    depth: int
    score: Score
    pv: Tuple[str, ...]
    pv_san: Tuple[str, ...] = ()

    @property
    def eval_text(self) -> str:
        return format_eval(self.score)


@dataclass(frozen=True)
class RankedResult:
    fen: str
    generation: int
    depth: int
    lines: Tuple[CandidateLine, ...]
    final: bool = False

    @property
    def best(self) -> Optional[CandidateLine]:
        return self.lines[0] if self.lines else None

    def top(self, k: int) -> Tuple[CandidateLine, ...]:
        return self.lines[:k]

    @property
    def side_to_move(self) -> chess.Color:
        return chess.Board(self.fen).turn


def rank_lines(lines) -> Tuple[CandidateLine, ...]:
    """Best line first for the side to move; equal scores keep rank order."""
    return tuple(sorted(lines, key=lambda line: (-sort_key(line.score), line.rank)))


class AnalysisAggregator:
    """
    Consumes EngineLine objects for one position at a time.

    Observers registered with `subscribe` receive each published RankedResult.
    """

    def __init__(self, max_lines: int = 4, score_perspective: str = "white"):
        self.max_lines = max_lines
        self.score_perspective = score_perspective
        self.generation = 0
        self.fen: Optional[str] = None
        self.current_depth = 0
        self.lines_by_rank: Dict[int, CandidateLine] = {}
        self.finished = False
        self.last_published: Optional[RankedResult] = None
        self._board: Optional[chess.Board] = None
        self._observers: List[Callable[[RankedResult], None]] = []
        self.discarded = {"stale": 0, "parse": 0, "illegal": 0, "shallow": 0}

    def subscribe(self, observer: Callable[[RankedResult], None]) -> None:
        self._observers.append(observer)

    def reset(self, fen: str, generation: int) -> None:
        """Forget everything about the previous position and adopt `generation`."""
        self._board = chess.Board(fen)
        self.fen = fen
        self.generation = generation
        self.current_depth = 0
        self.lines_by_rank = {}
        self.finished = False
        self.last_published = None

    def feed(self, line: EngineLine) -> None:
        """Apply one engine line. Stale, malformed or illegal lines are dropped."""
        try:
            self._apply(line)
        except StaleResult:
            self.discarded["stale"] += 1
            logger.debug(f"[AGGREGATOR] stale line (gen {line.generation} != {self.generation}): {line.text}")
        except ProtocolParseError as e:
            self.discarded["parse"] += 1
            logger.debug(f"[AGGREGATOR] discarded unparseable line: {e}")

    def snapshot(self, final: bool = False) -> RankedResult:
        return RankedResult(
            fen=self.fen or "",
            generation=self.generation,
            depth=self.current_depth,
            lines=rank_lines(self.lines_by_rank.values()),
            final=final,
        )

    def _apply(self, line: EngineLine) -> None:
        if self._board is None or line.generation != self.generation:
            raise StaleResult()

        parsed = uci_protocol.parse_line(line.text)
        if parsed is None:
            return
        if isinstance(parsed, uci_protocol.BestMoveLine):
            self.finished = True
            self._publish(final=True)
            return

        if not 1 <= parsed.multipv <= self.max_lines:
            raise ProtocolParseError(f"rank {parsed.multipv} outside 1..{self.max_lines}")
        if parsed.depth < self.current_depth:
            self.discarded["shallow"] += 1
            return

        candidate = self._build_candidate(parsed)
        if candidate is None:
            self.discarded["illegal"] += 1
            logger.debug(f"[AGGREGATOR] pv does not fit {self.fen}: {line.text}")
            return

        self.current_depth = parsed.depth
        self.lines_by_rank[candidate.rank] = candidate

        if self.current_depth >= PUBLISH_MIN_DEPTH and self.current_depth % 2 == 0:
            self._publish(final=False)

    def _build_candidate(self, parsed: uci_protocol.ProgressLine) -> Optional[CandidateLine]:
        board = self._board
        try:
            move = chess.Move.from_uci(parsed.pv[0])
        except ValueError:
            return None
        if move not in board.legal_moves:
            return None

        san = board.san(move)
        score = relative_score(parsed.score_kind, parsed.score_value, board.turn, self.score_perspective)

        # SAN of the line, stopping at the first move that does not replay.
        replay = board.copy(stack=False)
        pv_san = []
        for uci in parsed.pv[:PV_SAN_LIMIT]:
            try:
                pv_move = chess.Move.from_uci(uci)
            except ValueError:
                break
            if pv_move not in replay.legal_moves:
                break
            pv_san.append(replay.san(pv_move))
            replay.push(pv_move)

        return CandidateLine(
            rank=parsed.multipv,
            san=san,
            uci=parsed.pv[0],
            depth=parsed.depth,
            score=score,
            pv=parsed.pv,
            pv_san=tuple(pv_san),
        )

    def _publish(self, final: bool) -> None:
        result = self.snapshot(final=final)
        self.last_published = result
        for observer in list(self._observers):
            try:
                observer(result)
            except Exception:
                logger.exception("[AGGREGATOR] observer raised")
