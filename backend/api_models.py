from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class MoveRequest(BaseModel):
    """Either `uci` or a from/to square pair (board drag-and-drop)."""

    uci: Optional[str] = None
    from_square: Optional[str] = Field(None, min_length=2, max_length=2)
    to_square: Optional[str] = Field(None, min_length=2, max_length=2)
    promotion: Optional[str] = Field(None, max_length=1)
    from_analysis: bool = False


class FenRequest(BaseModel):
    fen: str


class HistoryPair(BaseModel):
    number: int
    white: Optional[str] = None
    black: Optional[str] = None


class GameState(BaseModel):
    fen: str
    turn: str
    move_number: int
    history: List[HistoryPair] = Field(default_factory=list)
    is_game_over: bool
    result: Optional[str] = None
    engine_status: str


class AnalysisLine(BaseModel):
    rank: int
    move: str
    uci: str
    eval: str
    eval_class: str
    depth: int
    pv: List[str] = Field(default_factory=list)
    pv_san: List[str] = Field(default_factory=list)
    explanation: Optional[str] = None


class AnalysisSnapshot(BaseModel):
    fen: str
    engine_status: str
    depth: int
    final: bool
    eval: Optional[str] = None
    win_probability: Optional[float] = None
    lines: List[AnalysisLine] = Field(default_factory=list)


class MoveExplanation(BaseModel):
    move: str
    text: str
    status: str


class ExplainResponse(BaseModel):
    fen: str
    explanations: List[MoveExplanation] = Field(default_factory=list)


class PreviewResponse(BaseModel):
    fen: str
    uci: str
