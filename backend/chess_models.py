from __future__ import annotations

import time
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


Side = Literal["white", "black"]
Turn = Literal["w", "b"]
Promotion = Literal["q", "r", "b", "n"]
GameMode = Literal[
    "ai-vs-ai-simple",
    "ai-vs-ai-complex",
    "human-vs-ai-simple",
    "human-vs-ai-complex",
]
PlayerType = Literal["ai", "human"]


def side_to_turn(side: Side) -> Turn:
    return "w" if side == "white" else "b"


def turn_to_side(turn: Turn) -> Side:
    return "white" if turn == "w" else "black"


def opposite(side: Side) -> Side:
    return "black" if side == "white" else "white"


class CandidateMove(BaseModel):
    """
    Unverified move proposal from the language model.
    Carries no piece/SAN/colour until matched against a legal move.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_square: str = Field(..., alias="from")
    to_square: str = Field(..., alias="to")
    promotion: Optional[str] = None


class Move(BaseModel):
    """A committed (or legal) half-move. Never mutated after creation."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_square: str = Field(..., alias="from")
    to_square: str = Field(..., alias="to")
    promotion: Optional[Promotion] = None
    piece: str  # lowercase piece letter, "p" for pawn
    color: Turn
    san: str
    timestamp: float = Field(default_factory=time.time)

    def as_candidate(self) -> CandidateMove:
        return CandidateMove(from_square=self.from_square, to_square=self.to_square, promotion=self.promotion)

    def label(self) -> str:
        promo = f"(promote to {self.promotion})" if self.promotion else ""
        return f"{self.from_square}->{self.to_square}{promo}"


class GameState(BaseModel):
    fen: str
    pgn: str
    turn: Turn
    history: List[Move] = Field(default_factory=list)
    game_over: bool = False
    checkmate: bool = False
    draw: bool = False
    in_check: bool = False
    # Set iff checkmate; names the side that delivered mate.
    winner: Optional[Side] = None

    @property
    def ply(self) -> int:
        return len(self.history)

    @property
    def last_move(self) -> Optional[Move]:
        return self.history[-1] if self.history else None


class MoveEvaluation(BaseModel):
    move: str
    score: float = Field(..., ge=-10.0, le=10.0)
    reasoning: str = ""


class EvaluationResult(BaseModel):
    centipawns: int = 0  # White POV
    mate: Optional[int] = None  # signed by the side delivering mate
    depth: int = 0
    source: Literal["stockfish", "fallback"] = "stockfish"

    @computed_field  # type: ignore[misc]
    @property
    def degraded(self) -> bool:
        # depth 0-1 never comes from a real search
        return self.depth <= 1


class MemorySnapshot(BaseModel):
    opening: Optional[str] = None
    short_term_goals: List[str] = Field(default_factory=list)
    long_term_goals: List[str] = Field(default_factory=list)
    last_updated_short_term: int = 0
    last_updated_long_term: int = 0
    reflections: List[str] = Field(default_factory=list)
    move_history: List[Move] = Field(default_factory=list)
    piece_activity: Dict[str, int] = Field(default_factory=dict)
    move_evaluations: List[MoveEvaluation] = Field(default_factory=list)


class PlayerConfig(BaseModel):
    color: Side
    type: PlayerType = "ai"
    model: Optional[str] = None


class TurnResult(BaseModel):
    move: Optional[Move] = None
    analysis: str = ""
    fallback_used: bool = False
    # True when a reset happened while the oracle was thinking; nothing was committed.
    stale: bool = False


class SessionSnapshot(BaseModel):
    """Everything the presentation layer renders after a committed move."""

    state: GameState
    mode: GameMode
    players: Dict[Side, PlayerConfig]
    memory: Dict[Side, MemorySnapshot]
    last_analysis: str = ""
    last_evaluation: Optional[EvaluationResult] = None
    generation: int = 0
