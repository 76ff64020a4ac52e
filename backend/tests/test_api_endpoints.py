"""
Test suite for the analysis companion API endpoints.
Runs the app without an engine binary: play must keep working and the
analysis surface must report the engine as unavailable.
"""

import pytest
from fastapi.testclient import TestClient

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
AFTER_E4_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


@pytest.fixture
def client(monkeypatch):
    """Create test client for FastAPI app with lifespan."""
    monkeypatch.setenv("STOCKFISH_PATH", "/nonexistent/stockfish-for-tests")
    # Empty values win over anything a local .env file would provide.
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "")
    monkeypatch.setenv("AUTO_EXPLAIN", "false")
    from main import app

    with TestClient(app) as test_client:
        yield test_client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "running"


def test_meta_endpoint(client):
    """Test /meta reports a missing engine and disabled explanations."""
    response = client.get("/meta")
    assert response.status_code == 200

    data = response.json()
    assert data["name"] == "Chess Analysis Companion"
    assert data["engine_status"] == "unavailable"
    assert data["explanations_enabled"] is False
    assert data["multipv"] == 4


def test_initial_state(client):
    data = client.get("/state").json()
    assert data["fen"] == START_FEN
    assert data["turn"] == "white"
    assert data["history"] == []
    assert data["engine_status"] == "unavailable"


def test_moves_work_without_engine(client):
    response = client.post("/move", json={"uci": "e2e4"})
    assert response.status_code == 200
    data = response.json()
    assert data["fen"] == AFTER_E4_FEN
    assert data["history"] == [{"number": 1, "white": "e4", "black": None}]

    response = client.post("/move", json={"from_square": "e7", "to_square": "e5"})
    assert response.status_code == 200
    assert response.json()["history"][0]["black"] == "e5"

    response = client.post("/undo")
    assert response.json()["fen"] == AFTER_E4_FEN

    response = client.post("/new_game")
    assert response.json()["fen"] == START_FEN


def test_illegal_move_is_rejected(client):
    response = client.post("/move", json={"uci": "e2e5"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "illegal_move"

    response = client.post("/move", json={})
    assert response.status_code == 400


def test_candidate_move_requires_analysis(client):
    response = client.post("/move", json={"uci": "e2e4", "from_analysis": True})
    assert response.status_code == 400


def test_set_fen(client):
    response = client.post("/fen", json={"fen": AFTER_E4_FEN})
    assert response.status_code == 200
    assert response.json()["turn"] == "black"

    response = client.post("/fen", json={"fen": "invalid fen string"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_fen"


def test_analysis_is_empty_without_engine(client):
    data = client.get("/analysis").json()
    assert data["engine_status"] == "unavailable"
    assert data["lines"] == []
    assert data["eval"] is None
    assert data["depth"] == 0


def test_explain_without_analysis(client):
    response = client.post("/explain")
    assert response.status_code == 200
    assert response.json() == {"fen": START_FEN, "explanations": []}


def test_preview(client):
    response = client.get("/preview", params={"uci": "e2e4"})
    assert response.status_code == 200
    assert response.json() == {"fen": AFTER_E4_FEN, "uci": "e2e4"}

    response = client.get("/preview", params={"uci": "e2e5"})
    assert response.status_code == 400
