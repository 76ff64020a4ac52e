import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from analysis_aggregator import AnalysisAggregator
from api_models import (
    AnalysisSnapshot,
    ExplainResponse,
    FenRequest,
    GameState,
    MoveExplanation,
    MoveRequest,
    PreviewResponse,
)
from config import AppConfig, load_config
from engine_session import EngineSession
from errors import AnalysisError, EngineUnavailable, IllegalMoveError, InvalidFenError
from explanation_cache import build_explanation_store
from explanation_pipeline import ExplanationPipeline, OpenAIExplanationService
from game_session import GameSession
from request_scheduler import RequestScheduler

logger = logging.getLogger(__name__)

APP_NAME = "Chess Analysis Companion"
APP_VERSION = "1.0.0"


async def create_session(
    config: AppConfig,
    *,
    engine: Optional[EngineSession] = None,
    store=None,
    service=None,
) -> GameSession:
    """Wire engine, aggregator, scheduler and explanation pipeline together."""
    aggregator = AnalysisAggregator(
        max_lines=config.engine.multipv,
        score_perspective=config.engine.score_perspective,
    )
    if engine is None:
        engine = EngineSession(config.engine.path, handshake_timeout=config.engine.handshake_timeout_s)
    scheduler = RequestScheduler(
        engine,
        aggregator,
        depth=config.engine.depth,
        delay=config.debounce_s,
    )

    def on_engine_failure(error: EngineUnavailable) -> None:
        scheduler.analysis_available = False

    engine.set_failure_observer(on_engine_failure)

    if store is None:
        store = build_explanation_store(config.cache)
    if service is None:
        service = OpenAIExplanationService.from_config(config.explanation)
        if service is None:
            logger.info("OPENAI_API_KEY not set, explanations limited to cached entries")
    pipeline = ExplanationPipeline(store, service, top_k=config.explanation.top_k)

    session = GameSession(
        engine=engine,
        aggregator=aggregator,
        scheduler=scheduler,
        pipeline=pipeline,
        auto_explain=config.explanation.auto_explain,
    )

    try:
        await engine.initialize(multipv=config.engine.multipv)
    except EngineUnavailable as e:
        # Manual play keeps working without analysis.
        scheduler.analysis_available = False
        logger.error(f"Engine unavailable, continuing without analysis: {e}")

    session.start()
    return session


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the engine session and shut it down again."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    session = await create_session(config)
    app.state.session = session

    yield

    session.scheduler.cancel()
    await session.scheduler.wait_idle()
    await session.pipeline.drain_writes()
    await session.engine.close()


app = FastAPI(title="Chess Analysis Companion Backend", version=APP_VERSION, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_session(request: Request) -> GameSession:
    return request.app.state.session


def _bad_request(error: AnalysisError) -> HTTPException:
    return HTTPException(status_code=400, detail=error.to_dict())


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/")
async def root():
    return {"message": "Chess Analysis Companion API", "status": "running"}


@app.get("/meta")
async def get_meta(session: GameSession = Depends(get_session)):
    """Return metadata about the API."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "engine_status": session.engine_status,
        "multipv": session.aggregator.max_lines,
        "depth": session.scheduler.depth,
        "explanations_enabled": session.pipeline.service is not None,
    }


@app.get("/state", response_model=GameState)
async def get_state(session: GameSession = Depends(get_session)):
    return session.state()


@app.post("/move", response_model=GameState)
async def make_move(request: MoveRequest, session: GameSession = Depends(get_session)):
    try:
        if request.uci:
            if request.from_analysis:
                session.play_candidate(request.uci)
            else:
                session.apply_move(request.uci)
        elif request.from_square and request.to_square:
            session.apply_squares(request.from_square, request.to_square, request.promotion)
        else:
            raise IllegalMoveError("provide `uci` or `from_square` and `to_square`")
    except IllegalMoveError as e:
        raise _bad_request(e)
    return session.state()


@app.post("/undo", response_model=GameState)
async def undo_move(session: GameSession = Depends(get_session)):
    session.undo()
    return session.state()


@app.post("/new_game", response_model=GameState)
async def new_game(session: GameSession = Depends(get_session)):
    session.new_game()
    return session.state()


@app.post("/fen", response_model=GameState)
async def set_fen(request: FenRequest, session: GameSession = Depends(get_session)):
    try:
        session.load_fen(request.fen)
    except InvalidFenError as e:
        raise _bad_request(e)
    return session.state()


@app.get("/analysis", response_model=AnalysisSnapshot)
async def get_analysis(session: GameSession = Depends(get_session)):
    return session.analysis()


@app.post("/explain", response_model=ExplainResponse)
async def explain_moves(session: GameSession = Depends(get_session)):
    """Explain the current top candidate moves (cache first, then one LLM call)."""
    fen = session.board.fen()
    outcomes = await session.explain()
    return ExplainResponse(
        fen=fen,
        explanations=[MoveExplanation(move=o.move, text=o.text, status=o.status) for o in outcomes.values()],
    )


@app.get("/preview", response_model=PreviewResponse)
async def preview_move(
    uci: str = Query(..., description="Candidate move in UCI notation"),
    session: GameSession = Depends(get_session),
):
    try:
        fen = session.preview(uci)
    except IllegalMoveError as e:
        raise _bad_request(e)
    return PreviewResponse(fen=fen, uci=uci)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
