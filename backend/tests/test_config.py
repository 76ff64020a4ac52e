import pytest

from config import AppConfig, load_config
from errors import ConfigError


def test_defaults_from_empty_environment():
    config = load_config({})
    assert config == AppConfig()
    assert config.engine.path == "./stockfish"
    assert config.engine.multipv == 4
    assert config.debounce_s == pytest.approx(0.1)
    assert not config.explanation.enabled
    assert not config.cache.supabase_enabled


def test_values_are_read_and_normalised():
    config = load_config({
        "STOCKFISH_PATH": "/usr/games/stockfish",
        "ENGINE_DEPTH": "22",
        "ENGINE_MULTIPV": "3",
        "ENGINE_SCORE_PERSPECTIVE": "Side_To_Move",
        "OPENAI_API_KEY": "sk-test",
        "EXPLAINER_TOP_K": "2",
        "AUTO_EXPLAIN": "yes",
        "SUPABASE_URL": "https://example.supabase.co",
        "SUPABASE_ANON_KEY": "anon",
        "ANALYSIS_DEBOUNCE_MS": "250",
        "LOG_LEVEL": "debug",
    })
    assert config.engine.path == "/usr/games/stockfish"
    assert config.engine.depth == 22
    assert config.engine.multipv == 3
    assert config.engine.score_perspective == "side_to_move"
    assert config.explanation.enabled
    assert config.explanation.top_k == 2
    assert config.explanation.auto_explain
    assert config.cache.supabase_enabled
    assert config.debounce_s == pytest.approx(0.25)
    assert config.log_level == "DEBUG"


def test_blank_values_fall_back_to_defaults():
    config = load_config({"STOCKFISH_PATH": "  ", "OPENAI_API_KEY": ""})
    assert config.engine.path == "./stockfish"
    assert config.explanation.api_key is None


@pytest.mark.parametrize(
    "env",
    [
        {"ENGINE_DEPTH": "deep"},
        {"ENGINE_DEPTH": "0"},
        {"ENGINE_MULTIPV": "0"},
        {"ENGINE_SCORE_PERSPECTIVE": "black"},
        {"ANALYSIS_DEBOUNCE_MS": "-5"},
        {"EXPLAINER_TIMEOUT_S": "soon"},
        {"SUPABASE_URL": "https://example.supabase.co"},
    ],
)
def test_invalid_values_raise_config_error(env):
    with pytest.raises(ConfigError):
        load_config(env)
