from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ErrorCode:
    code: str
    message: str


ORACLE_UNREACHABLE = ErrorCode("oracle_unreachable", "Language model request failed.")
ORACLE_MALFORMED = ErrorCode("oracle_malformed", "Language model response could not be parsed into a move.")
ILLEGAL_MOVE = ErrorCode("illegal_move", "Move is illegal for the given position.")
PLANNER_FAILED = ErrorCode("planner_failed", "Strategy planning failed; continuing with existing memory.")
ENGINE_UNAVAILABLE = ErrorCode("engine_unavailable", "Stockfish engine is not available.")
NO_LEGAL_MOVES = ErrorCode("no_legal_moves", "No legal moves are available in this position.")
NOT_YOUR_TURN = ErrorCode("not_your_turn", "It is not this player's turn.")
GAME_OVER = ErrorCode("game_over", "The game is already over.")
BAD_REQUEST = ErrorCode("bad_request", "Request payload is invalid.")


class NoLegalMovesError(RuntimeError):
    """Raised when a move is requested in a position with no legal moves."""


class NotYourTurnError(RuntimeError):
    """Raised when a human or AI move is requested for the side not to move."""


class GameOverError(RuntimeError):
    """Raised when a move is requested after checkmate or a draw."""


def format_error(code: ErrorCode, *, detail: Optional[str] = None) -> dict:
    return {"code": code.code, "message": code.message, "detail": detail}
