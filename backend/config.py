"""
Configuration for the analysis backend.

All settings come from environment variables (optionally a .env file) and are
read once at startup into frozen dataclasses. `load_config()` validates the
values and raises ConfigError on the first problem it finds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from errors import ConfigError

SCORE_PERSPECTIVES = ("white", "side_to_move")


@dataclass(frozen=True)
class EngineConfig:
    path: str = "./stockfish"
    depth: int = 18
    multipv: int = 4
    handshake_timeout_s: float = 10.0
    # "white": engine reports every score from White's point of view.
    # "side_to_move": standard UCI behaviour.
    score_perspective: str = "white"


@dataclass(frozen=True)
class ExplanationConfig:
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    top_k: int = 4
    timeout_s: float = 30.0
    auto_explain: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class CacheConfig:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    table: str = "move_explanations"
    memory_ttl_seconds: int = 24 * 60 * 60

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    explanation: ExplanationConfig = field(default_factory=ExplanationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    debounce_ms: int = 100
    log_level: str = "INFO"

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000.0


def _get(env: Mapping[str, str], key: str) -> Optional[str]:
    val = env.get(key)
    if val is None:
        return None
    val = val.strip()
    return val or None


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def validate_config(config: AppConfig) -> AppConfig:
    """Check value ranges; returns the config unchanged when valid."""
    engine = config.engine
    if engine.depth < 1:
        raise ConfigError(f"ENGINE_DEPTH must be >= 1, got {engine.depth}")
    if not 1 <= engine.multipv <= 500:
        raise ConfigError(f"ENGINE_MULTIPV must be between 1 and 500, got {engine.multipv}")
    if engine.handshake_timeout_s <= 0:
        raise ConfigError("ENGINE_HANDSHAKE_TIMEOUT_S must be positive")
    if engine.score_perspective not in SCORE_PERSPECTIVES:
        raise ConfigError(
            f"ENGINE_SCORE_PERSPECTIVE must be one of {SCORE_PERSPECTIVES}, "
            f"got {engine.score_perspective!r}"
        )
    if config.debounce_ms < 0:
        raise ConfigError("ANALYSIS_DEBOUNCE_MS must be >= 0")
    explanation = config.explanation
    if explanation.top_k < 1:
        raise ConfigError("EXPLAINER_TOP_K must be >= 1")
    if explanation.max_tokens < 1:
        raise ConfigError("EXPLAINER_MAX_TOKENS must be >= 1")
    if explanation.timeout_s <= 0:
        raise ConfigError("EXPLAINER_TIMEOUT_S must be positive")
    if bool(config.cache.supabase_url) != bool(config.cache.supabase_key):
        raise ConfigError("SUPABASE_URL and SUPABASE_ANON_KEY must be set together")
    return config


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Build and validate the application config.

    Args:
        env: Mapping to read from. Defaults to os.environ after loading .env.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    engine = EngineConfig(
        path=_get(env, "STOCKFISH_PATH") or EngineConfig.path,
        depth=_int(env, "ENGINE_DEPTH", EngineConfig.depth),
        multipv=_int(env, "ENGINE_MULTIPV", EngineConfig.multipv),
        handshake_timeout_s=_float(env, "ENGINE_HANDSHAKE_TIMEOUT_S", EngineConfig.handshake_timeout_s),
        score_perspective=(_get(env, "ENGINE_SCORE_PERSPECTIVE") or EngineConfig.score_perspective).lower(),
    )
    explanation = ExplanationConfig(
        api_key=_get(env, "OPENAI_API_KEY"),
        base_url=_get(env, "OPENAI_BASE_URL"),
        model=_get(env, "EXPLAINER_MODEL") or ExplanationConfig.model,
        max_tokens=_int(env, "EXPLAINER_MAX_TOKENS", ExplanationConfig.max_tokens),
        top_k=_int(env, "EXPLAINER_TOP_K", ExplanationConfig.top_k),
        timeout_s=_float(env, "EXPLAINER_TIMEOUT_S", ExplanationConfig.timeout_s),
        auto_explain=_bool(env, "AUTO_EXPLAIN", ExplanationConfig.auto_explain),
    )
    cache = CacheConfig(
        supabase_url=_get(env, "SUPABASE_URL"),
        supabase_key=_get(env, "SUPABASE_ANON_KEY"),
        table=_get(env, "EXPLANATION_CACHE_TABLE") or CacheConfig.table,
        memory_ttl_seconds=_int(env, "EXPLANATION_CACHE_TTL_SECONDS", CacheConfig.memory_ttl_seconds),
    )
    config = AppConfig(
        engine=engine,
        explanation=explanation,
        cache=cache,
        debounce_ms=_int(env, "ANALYSIS_DEBOUNCE_MS", AppConfig.debounce_ms),
        log_level=(_get(env, "LOG_LEVEL") or AppConfig.log_level).upper(),
    )
    return validate_config(config)
