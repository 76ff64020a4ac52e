"""
UCI command builders and output-line parsing.

Only two output shapes matter to the analysis backend:

    info depth 12 seldepth 18 multipv 1 score cp 20 nodes 1234 pv e2e4 e7e5
    bestmove e2e4 ponder e7e5

Everything else (id/option lines, info string, currmove updates) is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from errors import ProtocolParseError

UCI_OK = "uciok"
READY_OK = "readyok"
BESTMOVE = "bestmove"


def uci() -> str:
    return "uci"


def setoption(name: str, value) -> str:
    return f"setoption name {name} value {value}"


def isready() -> str:
    return "isready"


def stop() -> str:
    return "stop"


def position_fen(fen: str) -> str:
    return f"position fen {fen}"


def go_depth(depth: int) -> str:
    return f"go depth {int(depth)}"


def quit_() -> str:
    return "quit"


@dataclass(frozen=True)
class ProgressLine:
    depth: int
    multipv: int
    score_kind: str
    score_value: int
    pv: Tuple[str, ...]


@dataclass(frozen=True)
class BestMoveLine:
    best_move: Optional[str]
    ponder: Optional[str] = None


def is_terminal(line: str) -> bool:
    return line.startswith(BESTMOVE)


def is_progress(line: str) -> bool:
    tokens = line.split()
    return bool(tokens) and tokens[0] == "info" and "depth" in tokens and "string" not in tokens[:2]


def _int_after(tokens, key: str, line: str) -> int:
    try:
        idx = tokens.index(key)
        return int(tokens[idx + 1])
    except (ValueError, IndexError) as e:
        raise ProtocolParseError(f"missing or bad '{key}' in: {line}") from e


def parse_progress(line: str) -> ProgressLine:
    """Parse an `info` line; raises ProtocolParseError if a field is missing."""
    tokens = line.split()
    depth = _int_after(tokens, "depth", line)
    multipv = _int_after(tokens, "multipv", line)

    try:
        idx = tokens.index("score")
        kind = tokens[idx + 1]
        value = int(tokens[idx + 2])
    except (ValueError, IndexError) as e:
        raise ProtocolParseError(f"missing or bad score in: {line}") from e
    if kind not in ("cp", "mate"):
        raise ProtocolParseError(f"unknown score kind {kind!r} in: {line}")

    try:
        pv_idx = tokens.index("pv")
    except ValueError as e:
        raise ProtocolParseError(f"missing pv in: {line}") from e
    pv = tuple(tokens[pv_idx + 1:])
    if not pv:
        raise ProtocolParseError(f"empty pv in: {line}")

    return ProgressLine(depth=depth, multipv=multipv, score_kind=kind, score_value=value, pv=pv)


def parse_bestmove(line: str) -> BestMoveLine:
    tokens = line.split()
    best = tokens[1] if len(tokens) > 1 and tokens[1] != "(none)" else None
    ponder = None
    if "ponder" in tokens:
        idx = tokens.index("ponder")
        if idx + 1 < len(tokens):
            ponder = tokens[idx + 1]
    return BestMoveLine(best_move=best, ponder=ponder)


def parse_line(line: str) -> Union[ProgressLine, BestMoveLine, None]:
    """Classify and parse one output line. None for lines that do not matter."""
    line = line.strip()
    if is_terminal(line):
        return parse_bestmove(line)
    if is_progress(line):
        return parse_progress(line)
    return None
