"""
Game Session

Explicit owner of one game's collaborators: rules authority, strategic memory,
evaluation oracle, LLM router and the random source used for fallbacks. Every
component receives what it needs from here; there are no module-level singletons,
so several sessions (or tests) can run side by side.

Turn flow (one AI half-move):
    complex modes: planner -> prompt composer -> one oracle call -> validator -> commit
    simple modes:  PGN-continuation oracle (local retries) -> validator -> commit

Turns run strictly one after another. `reset()` bumps `generation`; a turn whose
planner, vision or oracle call returns after a reset is discarded before it
touches memory or the board.
"""

from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass, field
from typing import Dict, Optional

from chess_models import (
    EvaluationResult,
    GameMode,
    Move,
    PlayerConfig,
    SessionSnapshot,
    Side,
    TurnResult,
    turn_to_side,
)
from errors import (
    GAME_OVER,
    NOT_YOUR_TURN,
    GameOverError,
    NoLegalMovesError,
    NotYourTurnError,
)
from evaluation_oracle import EvaluationOracle
from llm_router import LLMRouter
from memory_store import MemoryStore, parse_move_evaluations
from move_oracle import MoveContext, is_simple_mode, select_oracle
from move_validator import MoveValidator
from prompt_composer import compose_system_message
from rules_authority import RulesAuthority
from strategy_planner import apply_strategy_plan, plan_strategy
from vision_analysis import analyze_board_image


logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    mode: str = field(default_factory=lambda: os.getenv("DEFAULT_GAME_MODE", "ai-vs-ai-simple"))
    white_model: str = field(default_factory=lambda: os.getenv("WHITE_MODEL", "gpt-4o"))
    black_model: str = field(default_factory=lambda: os.getenv("BLACK_MODEL", "gpt-4o-mini"))
    pgn_attempts: int = field(default_factory=lambda: int(os.getenv("PGN_MAX_ATTEMPTS", "3")))


class GameSession:
    def __init__(
        self,
        *,
        router: Optional[LLMRouter] = None,
        evaluator: Optional[EvaluationOracle] = None,
        config: Optional[SessionConfig] = None,
        rng: Optional[random.Random] = None,
        rules: Optional[RulesAuthority] = None,
    ):
        self.config = config or SessionConfig()
        self.router = router or LLMRouter()
        self.evaluator = evaluator or EvaluationOracle()
        self.rules = rules or RulesAuthority()
        self.memory = MemoryStore()
        self.validator = MoveValidator(self.memory, rng)

        self.mode: GameMode = self.config.mode  # type: ignore[assignment]
        self.players: Dict[Side, PlayerConfig] = {
            "white": PlayerConfig(color="white", type="ai", model=self.config.white_model),
            "black": PlayerConfig(color="black", type="ai", model=self.config.black_model),
        }
        self.generation = 0
        self.last_analysis = ""
        self.last_evaluation: Optional[EvaluationResult] = None

    # ------------------------------------------------------------------
    # Configuration / queries
    # ------------------------------------------------------------------

    def configure(
        self,
        mode: GameMode,
        white: Optional[PlayerConfig] = None,
        black: Optional[PlayerConfig] = None,
    ) -> None:
        self.mode = mode
        if white is not None:
            self.players["white"] = white.model_copy(update={"color": "white"})
        if black is not None:
            self.players["black"] = black.model_copy(update={"color": "black"})

    def side_to_move(self) -> Side:
        return turn_to_side(self.rules.current_state().turn)

    def current_player(self) -> PlayerConfig:
        return self.players[self.side_to_move()]

    def is_human_turn(self) -> bool:
        return self.mode.startswith("human-vs-ai") and self.current_player().type == "human"

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.rules.current_state(),
            mode=self.mode,
            players=dict(self.players),
            memory={"white": self.memory.snapshot("white"), "black": self.memory.snapshot("black")},
            last_analysis=self.last_analysis,
            last_evaluation=self.last_evaluation,
            generation=self.generation,
        )

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    async def play_ai_turn(
        self,
        vision_analysis: Optional[str] = None,
        board_image_base64: Optional[str] = None,
    ) -> TurnResult:
        """
        Commit exactly one legal half-move for the side to move.

        Recoverable model failures end in a random legal move. Raises
        NoLegalMovesError in a terminal position, GameOverError after a draw,
        NotYourTurnError when the side to move is human.
        """
        state = self.rules.current_state()
        color = turn_to_side(state.turn)
        player = self.players[color]
        if player.type != "ai" or not player.model:
            raise NotYourTurnError(f"{NOT_YOUR_TURN.message} ({color} is not an AI player)")

        legal_moves = self.rules.legal_moves()
        if not legal_moves:
            raise NoLegalMovesError(f"No legal moves for {color} at {state.fen}")
        if state.game_over:
            raise GameOverError(GAME_OVER.message)

        generation = self.generation
        complex_mode = not is_simple_mode(self.mode)
        system_message: Optional[str] = None

        if complex_mode:
            plan = await plan_strategy(self.router, state, color, self.memory)
            if generation != self.generation:
                return self._discard(color)
            apply_strategy_plan(self.memory, color, plan, state.ply)
            if board_image_base64 and not vision_analysis:
                vision_analysis = await analyze_board_image(self.router, board_image_base64, color, state)
            if generation != self.generation:
                return self._discard(color)
            system_message = compose_system_message(
                state,
                color,
                legal_moves,
                self.rules.board_rows(),
                vision_analysis,
                self.memory.format_for_prompt(color),
            )

        oracle = select_oracle(player.model, self.mode, self.router, pgn_attempts=self.config.pgn_attempts)
        reply = await oracle.propose_move(
            MoveContext(
                state=state,
                player_color=color,
                model=player.model,
                legal_moves=legal_moves,
                system_message=system_message,
            )
        )
        if generation != self.generation:
            return self._discard(color)

        if complex_mode and reply.analysis:
            evaluations = parse_move_evaluations(reply.analysis)
            if evaluations:
                self.memory.store_move_evaluations(color, evaluations)

        resolution = self.validator.resolve(
            color,
            reply.candidate,
            legal_moves,
            analysis=reply.analysis,
            failure=reply.failure,
        )
        committed = self._commit(resolution.move)
        self.last_analysis = resolution.analysis
        return TurnResult(move=committed, analysis=resolution.analysis, fallback_used=resolution.fallback_used)

    def _commit(self, move: Move) -> Move:
        committed = self.rules.attempt_move(move.from_square, move.to_square, move.promotion)
        if committed is None:
            # The move came from the authority's own legal list a moment ago.
            raise RuntimeError(f"Rules authority rejected its own legal move {move.san}")
        return committed

    def _discard(self, color: Side) -> TurnResult:
        logger.info("[SESSION] discarding stale %s turn (reset during generation)", color)
        return TurnResult(stale=True, analysis="Game was reset while the AI was thinking.")

    def make_human_move(self, from_square: str, to_square: str, promotion: Optional[str] = None) -> Optional[Move]:
        """
        Returns the committed move or None if it was illegal.
        Raises NotYourTurnError outside human turns and ValueError for bad square names.
        """
        if not self.is_human_turn():
            raise NotYourTurnError(NOT_YOUR_TURN.message)
        if self.rules.current_state().game_over:
            raise GameOverError(GAME_OVER.message)
        move = self.rules.attempt_move(from_square, to_square, promotion)
        if move is not None:
            logger.info("[SESSION] human move accepted: %s", move.san)
        return move

    # ------------------------------------------------------------------
    # Evaluation / lifecycle
    # ------------------------------------------------------------------

    async def evaluate_position(self) -> EvaluationResult:
        generation = self.generation
        result = await self.evaluator.evaluate(self.rules.current_state().fen)
        if generation == self.generation:
            self.last_evaluation = result
        return result

    async def reset(self) -> None:
        """Back to the initial position with empty memory. Safe to call repeatedly."""
        self.generation += 1
        await self.evaluator.cancel()
        # No await between these two: rules and memory reset together.
        self.rules.reset()
        self.memory.reset()
        self.last_analysis = ""
        self.last_evaluation = None

    async def close(self) -> None:
        await self.evaluator.close()
