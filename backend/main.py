import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from chess_models import GameMode, PlayerConfig, SessionSnapshot, TurnResult, EvaluationResult
from errors import (
    BAD_REQUEST,
    GAME_OVER,
    ILLEGAL_MOVE,
    NO_LEGAL_MOVES,
    NOT_YOUR_TURN,
    GameOverError,
    NoLegalMovesError,
    NotYourTurnError,
    format_error,
)
from game_session import GameSession

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

GAME_MODES = ["ai-vs-ai-simple", "ai-vs-ai-complex", "human-vs-ai-simple", "human-vs-ai-complex"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the game session and shut its engine down on exit."""
    app.state.session = GameSession()
    yield
    await app.state.session.close()


app = FastAPI(title="LLM Chess Arena Backend", version="1.0.0", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Request models
# ============================================================================

class ConfigRequest(BaseModel):
    mode: GameMode
    white: Optional[PlayerConfig] = None
    black: Optional[PlayerConfig] = None


class HumanMoveRequest(BaseModel):
    from_square: str = Field(..., alias="from")
    to_square: str = Field(..., alias="to")
    promotion: Optional[str] = None


class AIMoveRequest(BaseModel):
    vision_analysis: Optional[str] = None
    board_image_base64: Optional[str] = None


class AIMoveResponse(BaseModel):
    turn: TurnResult
    game: SessionSnapshot


def _session(request: Request) -> GameSession:
    return request.app.state.session


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/meta")
async def meta():
    return {"name": "LLM Chess Arena", "version": app.version, "modes": GAME_MODES}


@app.get("/models")
async def models(request: Request):
    return {"models": await _session(request).router.list_chat_models()}


@app.get("/game", response_model=SessionSnapshot)
async def get_game(request: Request):
    return _session(request).snapshot()


@app.post("/game/config", response_model=SessionSnapshot)
async def configure_game(body: ConfigRequest, request: Request):
    session = _session(request)
    session.configure(body.mode, body.white, body.black)
    return session.snapshot()


@app.post("/game/reset", response_model=SessionSnapshot)
async def reset_game(request: Request):
    session = _session(request)
    await session.reset()
    return session.snapshot()


@app.post("/game/move", response_model=SessionSnapshot)
async def human_move(body: HumanMoveRequest, request: Request):
    session = _session(request)
    try:
        move = session.make_human_move(body.from_square, body.to_square, body.promotion)
    except NotYourTurnError as e:
        raise HTTPException(status_code=409, detail=format_error(NOT_YOUR_TURN, detail=str(e)))
    except GameOverError as e:
        raise HTTPException(status_code=409, detail=format_error(GAME_OVER, detail=str(e)))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=format_error(BAD_REQUEST, detail=str(e)))
    if move is None:
        raise HTTPException(
            status_code=400,
            detail=format_error(ILLEGAL_MOVE, detail=f"{body.from_square}->{body.to_square}"),
        )
    return session.snapshot()


@app.post("/game/ai_move", response_model=AIMoveResponse)
async def ai_move(request: Request, body: Optional[AIMoveRequest] = None):
    session = _session(request)
    body = body or AIMoveRequest()
    try:
        turn = await session.play_ai_turn(
            vision_analysis=body.vision_analysis,
            board_image_base64=body.board_image_base64,
        )
    except NotYourTurnError as e:
        raise HTTPException(status_code=409, detail=format_error(NOT_YOUR_TURN, detail=str(e)))
    except GameOverError as e:
        raise HTTPException(status_code=409, detail=format_error(GAME_OVER, detail=str(e)))
    except NoLegalMovesError as e:
        logger.error("[API] AI move requested in a terminal position: %s", e)
        raise HTTPException(status_code=409, detail=format_error(NO_LEGAL_MOVES, detail=str(e)))
    return AIMoveResponse(turn=turn, game=session.snapshot())


@app.post("/game/evaluate", response_model=EvaluationResult)
async def evaluate(request: Request):
    return await _session(request).evaluate_position()
