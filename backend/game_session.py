"""
Game Session - the single context object for one analysis board.

Owns the live python-chess board and the analysis components. Every change
of position goes through here so the scheduler, the stored ranked result and
the stored explanations always refer to the same position.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import chess

from analysis_aggregator import AnalysisAggregator, RankedResult
from engine_session import EngineSession, EngineState
from errors import IllegalMoveError, InvalidFenError
from eval_converter import eval_class, format_eval, win_probability
from explanation_pipeline import ExplanationOutcome, ExplanationPipeline
from request_scheduler import RequestScheduler

logger = logging.getLogger(__name__)


class GameSession:
    def __init__(
        self,
        *,
        engine: EngineSession,
        aggregator: AnalysisAggregator,
        scheduler: RequestScheduler,
        pipeline: ExplanationPipeline,
        auto_explain: bool = False,
    ):
        self.board = chess.Board()
        self.engine = engine
        self.aggregator = aggregator
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.auto_explain = auto_explain

        self.latest: Optional[RankedResult] = None
        self.explanations: Dict[str, ExplanationOutcome] = {}
        self._explain_task: Optional[asyncio.Task] = None

        self.engine.set_observer(self.aggregator.feed)
        self.aggregator.subscribe(self._on_published)

    # ------------------------------------------------------------------
    # Position changes
    # ------------------------------------------------------------------

    def apply_move(self, uci: str) -> chess.Move:
        """Play a move given in UCI notation. Raises IllegalMoveError."""
        if self.board.is_game_over():
            raise IllegalMoveError("game is over")
        try:
            move = chess.Move.from_uci(uci)
        except ValueError as e:
            raise IllegalMoveError(f"not a UCI move: {uci!r}") from e
        if move.promotion is None and self._is_promotion_square(move):
            move = chess.Move(move.from_square, move.to_square, promotion=chess.QUEEN)
        if move not in self.board.legal_moves:
            raise IllegalMoveError(f"{uci} is illegal in {self.board.fen()}")
        self.board.push(move)
        self._position_changed()
        return move

    def apply_squares(self, from_square: str, to_square: str, promotion: Optional[str] = None) -> chess.Move:
        """Board-view style drop; auto-promotes to a queen."""
        return self.apply_move(f"{from_square}{to_square}{(promotion or '').lower()}")

    def play_candidate(self, uci: str) -> chess.Move:
        if self.latest is None or all(line.uci != uci for line in self.latest.lines):
            raise IllegalMoveError(f"{uci} is not one of the current candidate moves")
        return self.apply_move(uci)

    def undo(self) -> Optional[chess.Move]:
        if not self.board.move_stack:
            return None
        move = self.board.pop()
        self._position_changed()
        return move

    def new_game(self) -> None:
        self.board.reset()
        self._position_changed()

    def load_fen(self, fen: str) -> None:
        fen = (fen or "").strip()
        try:
            board = chess.Board(fen)
        except ValueError as e:
            raise InvalidFenError(str(e)) from e
        if not board.is_valid():
            raise InvalidFenError(f"position is not legal: {fen}")
        self.board = board
        self._position_changed()

    def start(self) -> None:
        """Kick off analysis of the current position."""
        self._position_changed()

    def preview(self, uci: str) -> str:
        """FEN after `uci` without touching the game."""
        board = self.board.copy(stack=False)
        try:
            move = chess.Move.from_uci(uci)
        except ValueError as e:
            raise IllegalMoveError(f"not a UCI move: {uci!r}") from e
        if move not in board.legal_moves:
            raise IllegalMoveError(f"{uci} is illegal in {board.fen()}")
        board.push(move)
        return board.fen()

    def _is_promotion_square(self, move: chess.Move) -> bool:
        piece = self.board.piece_at(move.from_square)
        if piece is None or piece.piece_type != chess.PAWN:
            return False
        return chess.square_rank(move.to_square) in (0, 7)

    def _position_changed(self) -> None:
        self.latest = None
        self.explanations = {}
        if self._explain_task is not None and not self._explain_task.done():
            self._explain_task.cancel()
        self._explain_task = None
        if self.board.is_game_over():
            self.scheduler.halt()
            return
        self.scheduler.position_changed(self.board.fen())

    # ------------------------------------------------------------------
    # Analysis / explanations
    # ------------------------------------------------------------------

    def _on_published(self, result: RankedResult) -> None:
        if result.final:
            self.scheduler.mark_complete(result.generation)
        if result.fen != self.board.fen():
            return
        self.latest = result
        if not result.final:
            return
        logger.info(f"[SESSION] analysis complete at depth {result.depth} ({len(result.lines)} lines)")
        if self.auto_explain and result.lines and self.pipeline.service is not None:
            self._explain_task = asyncio.create_task(self.explain())

    async def explain(self) -> Dict[str, ExplanationOutcome]:
        result = self.latest
        if result is None:
            return {}
        outcomes = await self.pipeline.explain(result)
        # The position may have moved on while we were waiting.
        if self.latest is not None and self.latest.fen == result.fen:
            self.explanations = outcomes
        return outcomes

    @property
    def engine_status(self) -> str:
        if self.engine.state == EngineState.FAILED or not self.scheduler.analysis_available:
            return "unavailable"
        if self.engine.state == EngineState.UNINITIALIZED:
            return "starting"
        return "analyzing" if self.scheduler.in_flight is not None else "idle"

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def history_pairs(self) -> List[Dict[str, Any]]:
        root = self.board.root()
        replay = root.copy()
        sans = []
        for move in self.board.move_stack:
            sans.append(replay.san(move))
            replay.push(move)
        if not sans:
            return []
        pairs = []
        first_number = root.fullmove_number
        # A game set up with Black to move starts with an empty White slot.
        padded = ([None] if root.turn == chess.BLACK else []) + sans
        for i in range(0, len(padded), 2):
            pairs.append({
                "number": first_number + i // 2,
                "white": padded[i],
                "black": padded[i + 1] if i + 1 < len(padded) else None,
            })
        return pairs

    def state(self) -> Dict[str, Any]:
        board = self.board
        return {
            "fen": board.fen(),
            "turn": "white" if board.turn == chess.WHITE else "black",
            "move_number": board.fullmove_number,
            "history": self.history_pairs(),
            "is_game_over": board.is_game_over(),
            "result": board.result() if board.is_game_over() else None,
            "engine_status": self.engine_status,
        }

    def analysis(self) -> Dict[str, Any]:
        result = self.latest
        payload: Dict[str, Any] = {
            "fen": self.board.fen(),
            "engine_status": self.engine_status,
            "depth": 0,
            "final": False,
            "eval": None,
            "win_probability": None,
            "lines": [],
        }
        if result is None:
            return payload
        payload["depth"] = result.depth
        payload["final"] = result.final
        best = result.best
        if best is not None:
            payload["eval"] = format_eval(best.score)
            payload["win_probability"] = round(win_probability(best.score), 1)
        for line in result.lines:
            explanation = self.explanations.get(line.san)
            payload["lines"].append({
                "rank": line.rank,
                "move": line.san,
                "uci": line.uci,
                "eval": line.eval_text,
                "eval_class": eval_class(line.score),
                "depth": line.depth,
                "pv": list(line.pv),
                "pv_san": list(line.pv_san),
                "explanation": explanation.text if explanation else None,
            })
        return payload
