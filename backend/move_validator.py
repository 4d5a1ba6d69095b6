"""
Move Validator & Fallback Selector

Turns an oracle reply into exactly one legal move:
- a candidate that matches a legal move (origin, destination, exact promotion) is accepted
- anything else (None, illegal, malformed) falls back to a uniformly random legal move

The accepted move is always the RulesAuthority's own legal Move object, so memory
records carry the real piece and SAN.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional, Sequence

from chess_models import CandidateMove, Move, Side
from errors import ILLEGAL_MOVE, NO_LEGAL_MOVES, NoLegalMovesError
from memory_store import MemoryStore


logger = logging.getLogger(__name__)

FALLBACK_NOTE = "Random move selected (fallback)"


@dataclass
class Resolution:
    move: Move
    analysis: str
    fallback_used: bool


def promotion_matches(candidate: Optional[str], legal: Optional[str]) -> bool:
    # "no promotion" only matches "no promotion"; otherwise exact piece equality
    return (candidate or None) == (legal or None)


def match_legal_move(candidate: Optional[CandidateMove], legal_moves: Sequence[Move]) -> Optional[Move]:
    if candidate is None or not candidate.from_square or not candidate.to_square:
        return None
    for move in legal_moves:
        if (
            move.from_square == candidate.from_square
            and move.to_square == candidate.to_square
            and promotion_matches(candidate.promotion, move.promotion)
        ):
            return move
    return None


def choose_fallback_move(legal_moves: Sequence[Move], rng: Optional[random.Random] = None) -> Move:
    if not legal_moves:
        raise NoLegalMovesError(NO_LEGAL_MOVES.message)
    return (rng or random).choice(list(legal_moves))


class MoveValidator:
    def __init__(self, memory: MemoryStore, rng: Optional[random.Random] = None):
        self.memory = memory
        self.rng = rng or random.Random()

    def resolve(
        self,
        color: Side,
        candidate: Optional[CandidateMove],
        legal_moves: Sequence[Move],
        *,
        analysis: str = "",
        failure: Optional[str] = None,
    ) -> Resolution:
        """
        Pick the move to commit and record it into `color`'s memory.

        Raises NoLegalMovesError if `legal_moves` is empty; that only happens when
        a move is requested in a finished game.
        """
        if not legal_moves:
            raise NoLegalMovesError(NO_LEGAL_MOVES.message)

        matched = match_legal_move(candidate, legal_moves)
        if matched is not None:
            self.memory.record_move(color, matched)
            return Resolution(move=matched, analysis=analysis, fallback_used=False)

        if candidate is not None:
            promo = f"={candidate.promotion}" if candidate.promotion else ""
            failure = failure or f"{ILLEGAL_MOVE.message} ({candidate.from_square}->{candidate.to_square}{promo})"
            logger.warning(
                "[VALIDATOR] %s %s suggested %s->%s%s; legal: %s",
                ILLEGAL_MOVE.code, color, candidate.from_square, candidate.to_square, promo,
                ", ".join(m.san for m in legal_moves),
            )
        else:
            logger.warning("[VALIDATOR] no usable candidate for %s: %s", color, failure or "unknown")

        fallback = choose_fallback_move(legal_moves, self.rng)
        self.memory.record_move(color, fallback)
        reason = f" {failure}." if failure else ""
        note = f"{FALLBACK_NOTE}.{reason} Played {fallback.san}."
        logger.info("[VALIDATOR] fallback for %s: %s", color, fallback.san)
        return Resolution(move=fallback, analysis=note, fallback_used=True)
