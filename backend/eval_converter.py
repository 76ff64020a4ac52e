"""
Eval conversion helpers.

Engine scores arrive either from White's point of view or from the side to
move's point of view (see EngineConfig.score_perspective). Everything shown to
the user is relative to the side to move in the analysed position.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import chess

MATE_SCORE = 10000
NEUTRAL_BAND_CP = 30


@dataclass(frozen=True)
class Score:
    """Search score relative to the side to move."""

    kind: str  # "cp" or "mate"
    value: int

    @property
    def is_mate(self) -> bool:
        return self.kind == "mate"


def relative_score(kind: str, value: int, turn: chess.Color, perspective: str = "white") -> Score:
    """Flip an engine score so that positive values favour the side to move."""
    if kind not in ("cp", "mate"):
        raise ValueError(f"unknown score kind: {kind!r}")
    if perspective == "white" and turn == chess.BLACK:
        value = -value
    return Score(kind, value)


def format_eval(score: Score) -> str:
    """+0.20 / -0.35 / 0.00 for centipawns, M3 / M-2 for mates."""
    if score.is_mate:
        return f"M{score.value}"
    text = f"{score.value / 100:.2f}"
    if score.value > 0:
        text = "+" + text
    return text


def sort_key(score: Score) -> int:
    """Larger is better for the side to move; mates bracket every cp score."""
    if score.is_mate:
        if score.value > 0:
            return MATE_SCORE - score.value
        # mate 0 means the side to move is already mated
        return -MATE_SCORE - score.value
    return max(-MATE_SCORE + 1000, min(MATE_SCORE - 1000, score.value))


def win_probability(score: Score) -> float:
    """Win percentage (0-100) for the side to move, Lichess logistic curve."""
    if score.is_mate:
        return 100.0 if score.value > 0 else 0.0
    return 50 + 50 * (2 / (1 + math.exp(-0.00368208 * score.value)) - 1)


def eval_class(score: Score) -> str:
    if score.is_mate:
        return "positive" if score.value > 0 else "negative"
    if score.value > NEUTRAL_BAND_CP:
        return "positive"
    if score.value < -NEUTRAL_BAND_CP:
        return "negative"
    return "neutral"
