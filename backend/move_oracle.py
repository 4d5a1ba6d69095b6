"""
Move Oracle Client

Gets one candidate move out of a language model. Three protocols, chosen once per
call from the player's model and the game mode:

- StructuredCallOracle: forced `make_chess_move` tool call (standard chat models)
- ConstrainedTextOracle: free text ending in a one-line JSON move (o-series models)
- PgnContinuationOracle: "repeat the game and add one move" over PGN (simple modes)

Oracles never raise. Transport errors, malformed tool calls and unparseable text
are logged and come back as `candidate=None`; the validator decides what happens next.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from chat_tools import PROMOTION_PIECES, TOOL_MAKE_CHESS_MOVE
from chess_models import CandidateMove, GameMode, GameState, Move, Side
from errors import ORACLE_MALFORMED, ORACLE_UNREACHABLE
from llm_router import LLMRouter, is_constrained_model
from prompt_composer import constrained_system_message


logger = logging.getLogger(__name__)

SQUARE_RE = re.compile(r"^[a-h][1-8]$")
_JSON_MOVE_RE = re.compile(r"\{[^{}]*\"from\"[^{}]*\}")
_FROM_RE = re.compile(r"\"from\"\s*:\s*\"([a-h][1-8])\"")
_TO_RE = re.compile(r"\"to\"\s*:\s*\"([a-h][1-8])\"")
_PROMOTION_RE = re.compile(r"\"promotion\"\s*:\s*\"([qrbn])\"", re.IGNORECASE)

_MOVE_NUMBER_RE = re.compile(r"\d+\.\s*")
_SAN_RE = re.compile(r"^[KQRNB]?[a-h]?[1-8]?x?[a-h][1-8](?:=[QRNB])?[+#]?$")
_CASTLE_RE = re.compile(r"^O-O(?:-O)?$")
_RESULT_TOKENS = {"1-0", "0-1", "1/2-1/2", "*"}

PGN_HEADER = """[Event "Shamkir Chess"]
[White "Anand, Viswanathan"]
[Black "Topalov, Veselin"]
[Result "1-0"]
[WhiteElo "2779"]
[BlackElo "2740"]

"""

SIMPLE_SYSTEM_PROMPT = """You are a chess grandmaster.
You will be given a partially completed game.
After seeing it, you should repeat the ENTIRE GAME and then give ONE new move.
Use standard algebraic notation, e.g. "e4" or "Rdf8" or "R1a3".
ALWAYS repeat the entire representation of the game so far.
NEVER explain your choice."""

STATIC_EXAMPLES: List[Dict[str, str]] = [
    {"role": "user", "content": "1."},
    {"role": "assistant", "content": "1. e4"},
    {"role": "user", "content": "1. d4"},
    {"role": "assistant", "content": "1. d4 d5"},
    {"role": "user", "content": "1. e4 e5 2. Nf3 Nc6 3."},
    {"role": "assistant", "content": "1. e4 e5 2. Nf3 Nc6 3. Bb5"},
]

SIMPLE_TEMPERATURE = 0.7
DEFAULT_PGN_ATTEMPTS = 3


@dataclass(frozen=True)
class MoveContext:
    state: GameState
    player_color: Side
    model: str
    legal_moves: Sequence[Move]
    # Composed prompt; only the structured and constrained protocols use it.
    system_message: Optional[str] = None


@dataclass
class OracleReply:
    candidate: Optional[CandidateMove]
    analysis: str = ""
    # Short reason when candidate is None, for the fallback annotation.
    failure: Optional[str] = None
    attempts: int = 1


# ---------------------------------------------------------------------------
# Pure parsers
# ---------------------------------------------------------------------------

def _build_candidate(from_sq: Any, to_sq: Any, promotion: Any) -> Optional[CandidateMove]:
    if not isinstance(from_sq, str) or not isinstance(to_sq, str):
        return None
    from_sq = from_sq.strip().lower()
    to_sq = to_sq.strip().lower()
    if not SQUARE_RE.match(from_sq) or not SQUARE_RE.match(to_sq):
        return None
    promo: Optional[str] = None
    if isinstance(promotion, str) and promotion.strip():
        promo = promotion.strip().lower()
        if promo not in PROMOTION_PIECES:
            return None
    return CandidateMove(from_square=from_sq, to_square=to_sq, promotion=promo)


def parse_tool_arguments(arguments: Optional[str]) -> Optional[CandidateMove]:
    """`{"from": "e2", "to": "e4", "promotion": "q"?}` as emitted by a tool call."""
    if not arguments:
        return None
    try:
        args = json.loads(arguments)
    except (TypeError, ValueError):
        return None
    if not isinstance(args, dict):
        return None
    return _build_candidate(args.get("from"), args.get("to"), args.get("promotion"))


def parse_constrained_move(content: str) -> Optional[CandidateMove]:
    """
    Find the move JSON in free text.

    The last `{... "from" ...}` fragment wins, not the first one: models often echo
    the format example earlier in their reasoning. If no fragment parses, fall back to independent
    `"from"`/`"to"`/`"promotion"` captures.
    """
    text = content or ""
    for fragment in reversed(_JSON_MOVE_RE.findall(text)):
        try:
            data = json.loads(fragment)
        except ValueError:
            continue
        if isinstance(data, dict):
            candidate = _build_candidate(data.get("from"), data.get("to"), data.get("promotion"))
            if candidate is not None:
                return candidate

    froms = _FROM_RE.findall(text)
    tos = _TO_RE.findall(text)
    if not froms or not tos:
        return None
    promos = _PROMOTION_RE.findall(text)
    return _build_candidate(froms[-1], tos[-1], promos[-1] if promos else None)


def format_game_for_prompt(state: GameState) -> str:
    """PGN-with-header transcript ending where the next move should go."""
    pgn = (state.pgn or "").strip()
    if not pgn:
        return PGN_HEADER + "1."
    if state.turn == "w":
        pgn += f" {state.ply // 2 + 1}."
    return PGN_HEADER + pgn


def _normalize_san(san: str) -> str:
    san = san.strip().replace("0-0-0", "O-O-O").replace("0-0", "O-O")
    return re.sub(r"[.+#!?]+$", "", san)


def extract_san_from_continuation(response: str) -> Optional[str]:
    """
    Last algebraic token of a "repeat the game + one move" reply.

    Header lines are dropped, move-number markers split the text, result tokens
    are ignored. Returns the token without check/annotation suffixes, or None.
    """
    lines = [ln.strip() for ln in (response or "").split("\n")]
    game_text = " ".join(ln for ln in lines if ln and not ln.startswith("["))
    if not game_text:
        return None

    parts = [p for p in _MOVE_NUMBER_RE.split(game_text) if p.strip()]
    if not parts:
        return None

    tokens = [t for t in parts[-1].split() if t.strip() and t not in _RESULT_TOKENS]
    if not tokens:
        return None

    last = _normalize_san(tokens[-1])
    if not (_SAN_RE.match(last) or _CASTLE_RE.match(last)):
        return None
    return last


def resolve_san(san: str, legal_moves: Sequence[Move]) -> Optional[Move]:
    wanted = _normalize_san(san)
    for move in legal_moves:
        if _normalize_san(move.san) == wanted:
            return move
    return None


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class MoveOracle(ABC):
    def __init__(self, router: LLMRouter):
        self.router = router

    @abstractmethod
    async def propose_move(self, ctx: MoveContext) -> OracleReply:
        ...


class StructuredCallOracle(MoveOracle):
    async def propose_move(self, ctx: MoveContext) -> OracleReply:
        try:
            reply = await self.router.complete_with_tool(
                stage="move_oracle",
                model=ctx.model,
                messages=[{"role": "system", "content": ctx.system_message or ""}],
                tool=TOOL_MAKE_CHESS_MOVE,
                max_tokens=self.router.config.move_max_tokens,
            )
        except Exception as e:
            logger.warning("[MOVE_ORACLE] %s model=%s: %s", ORACLE_UNREACHABLE.code, ctx.model, e)
            return OracleReply(candidate=None, failure=ORACLE_UNREACHABLE.message)

        expected = TOOL_MAKE_CHESS_MOVE["function"]["name"]
        candidate = parse_tool_arguments(reply.arguments) if reply.tool_name == expected else None
        if candidate is None:
            logger.warning(
                "[MOVE_ORACLE] %s model=%s tool=%s args=%r",
                ORACLE_MALFORMED.code, ctx.model, reply.tool_name, (reply.arguments or "")[:200],
            )
            return OracleReply(candidate=None, analysis=reply.content, failure=ORACLE_MALFORMED.message)
        return OracleReply(candidate=candidate, analysis=reply.content)


class ConstrainedTextOracle(MoveOracle):
    async def propose_move(self, ctx: MoveContext) -> OracleReply:
        try:
            content = await self.router.complete(
                stage="move_oracle",
                model=ctx.model,
                messages=[{"role": "system", "content": constrained_system_message(ctx.system_message or "")}],
                max_tokens=self.router.config.move_max_tokens,
            )
        except Exception as e:
            logger.warning("[MOVE_ORACLE] %s model=%s: %s", ORACLE_UNREACHABLE.code, ctx.model, e)
            return OracleReply(candidate=None, failure=ORACLE_UNREACHABLE.message)

        candidate = parse_constrained_move(content)
        if candidate is None:
            logger.warning("[MOVE_ORACLE] %s model=%s tail=%r", ORACLE_MALFORMED.code, ctx.model, content[-200:])
            return OracleReply(candidate=None, analysis=content, failure=ORACLE_MALFORMED.message)
        return OracleReply(candidate=candidate, analysis=content)


class PgnContinuationOracle(MoveOracle):
    """
    Basic mode. Extraction failures are common here, so the oracle retries locally;
    every attempt is a fresh model call.
    """

    def __init__(self, router: LLMRouter, max_attempts: int = DEFAULT_PGN_ATTEMPTS):
        super().__init__(router)
        self.max_attempts = max(1, int(max_attempts))

    def build_messages(self, state: GameState) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SIMPLE_SYSTEM_PROMPT},
            *STATIC_EXAMPLES,
            {"role": "user", "content": format_game_for_prompt(state)},
        ]

    async def propose_move(self, ctx: MoveContext) -> OracleReply:
        messages = self.build_messages(ctx.state)
        last_error = ""

        for attempt in range(1, self.max_attempts + 1):
            logger.info("[MOVE_ORACLE] pgn attempt %d/%d model=%s as %s", attempt, self.max_attempts, ctx.model, ctx.player_color)
            try:
                content = await self.router.complete(
                    stage="pgn_continuation",
                    model=ctx.model,
                    messages=messages,
                    max_tokens=self.router.config.simple_max_tokens,
                    temperature=SIMPLE_TEMPERATURE,
                )
            except Exception as e:
                last_error = f"{ORACLE_UNREACHABLE.message} {e}"
                logger.warning("[MOVE_ORACLE] pgn attempt %d failed: %s", attempt, e)
                continue

            san = extract_san_from_continuation(content)
            matched = resolve_san(san, ctx.legal_moves) if san else None
            if matched is None:
                last_error = (
                    f"Could not extract a legal move from AI response ({san})" if san
                    else "Could not extract valid move from AI response"
                )
                logger.warning("[MOVE_ORACLE] pgn attempt %d: %s raw=%r", attempt, last_error, content[-200:])
                continue

            side = ctx.player_color.capitalize()
            promo = f" (promotes to {matched.promotion.upper()})" if matched.promotion else ""
            return OracleReply(
                candidate=matched.as_candidate(),
                analysis=f"{side} plays {matched.san}{promo}",
                attempts=attempt,
            )

        return OracleReply(
            candidate=None,
            failure=f"AI failed after {self.max_attempts} attempts ({last_error})",
            attempts=self.max_attempts,
        )


def is_simple_mode(mode: GameMode) -> bool:
    return mode.endswith("-simple")


def select_oracle(
    model: str,
    mode: GameMode,
    router: LLMRouter,
    *,
    pgn_attempts: int = DEFAULT_PGN_ATTEMPTS,
) -> MoveOracle:
    if is_simple_mode(mode):
        return PgnContinuationOracle(router, max_attempts=pgn_attempts)
    if is_constrained_model(model):
        return ConstrainedTextOracle(router)
    return StructuredCallOracle(router)
