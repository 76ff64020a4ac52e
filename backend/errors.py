from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ErrorCode:
    code: str
    message: str


ENGINE_UNAVAILABLE = ErrorCode("engine_unavailable", "Analysis engine is not available.")
ENGINE_NOT_READY = ErrorCode("engine_not_ready", "Analysis engine has not completed its handshake.")
PROTOCOL_PARSE = ErrorCode("protocol_parse", "Engine output line could not be parsed.")
STALE_RESULT = ErrorCode("stale_result", "Engine output belongs to a superseded request.")
CACHE_UNAVAILABLE = ErrorCode("cache_unavailable", "Explanation cache is unavailable.")
EXPLANATION_SERVICE = ErrorCode("explanation_service", "Explanation service request failed.")
CONFIG_INVALID = ErrorCode("config_invalid", "Configuration is invalid.")
ILLEGAL_MOVE = ErrorCode("illegal_move", "Move is illegal for the given position.")
INVALID_FEN = ErrorCode("invalid_fen", "FEN string is invalid.")


def format_error(code: ErrorCode, *, detail: Optional[str] = None) -> dict:
    return {"code": code.code, "message": code.message, "detail": detail}


class AnalysisError(Exception):
    """Base class for errors raised by the analysis backend."""

    error_code: ErrorCode = ENGINE_UNAVAILABLE

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.error_code.message)
        self.detail = detail

    def to_dict(self) -> dict:
        return format_error(self.error_code, detail=self.detail)


class EngineUnavailable(AnalysisError):
    error_code = ENGINE_UNAVAILABLE


class EngineNotReady(AnalysisError):
    error_code = ENGINE_NOT_READY


class ProtocolParseError(AnalysisError):
    error_code = PROTOCOL_PARSE


class StaleResult(AnalysisError):
    error_code = STALE_RESULT


class CacheUnavailable(AnalysisError):
    error_code = CACHE_UNAVAILABLE


class ExplanationServiceError(AnalysisError):
    error_code = EXPLANATION_SERVICE


class ConfigError(AnalysisError):
    error_code = CONFIG_INVALID


class IllegalMoveError(AnalysisError):
    error_code = ILLEGAL_MOVE


class InvalidFenError(AnalysisError):
    error_code = INVALID_FEN
