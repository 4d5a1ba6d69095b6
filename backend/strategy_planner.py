"""
Strategy Planner

Once per AI turn (complex modes), asks the language model for an opening label,
short/long-term goals and a reflection, then writes the useful parts back into
the MemoryStore. Planning failures never block move generation.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional

from chess_models import GameState, Side
from errors import PLANNER_FAILED
from llm_router import LLMRouter
from memory_store import MemoryStore


logger = logging.getLogger(__name__)

OPENING_PHASE_PLIES = 20
OPENING_LOCK_PLY = 10

PLANNER_SYSTEM_PROMPT = (
    "You are a chess Grandmaster providing strategic planning and self-reflection for a chess player."
)

PLANNER_REMINDERS = """

Remember:
1. Short-term goals should be concrete and actionable in the next few moves (e.g., "Develop knight to f3 to control e5").
2. Long-term goals should be strategic (e.g., "Create a pawn majority on the queenside").
3. If you've committed to an opening, stay consistent with it unless forced to deviate.
4. Prioritize piece development and king safety in the opening.
5. Don't move the same piece repeatedly unless tactically necessary."""

PLANNER_ERROR_REFLECTION = "Error in strategic planning. Proceeding with existing strategy."

_OPENING_RE = re.compile(r"^[ \t]*Opening Strategy:[ \t]*(.*)$", re.IGNORECASE | re.MULTILINE)
_SHORT_TERM_RE = re.compile(
    r"Short-term Goals\s*(?:\([^)]*\))?\s*:(.*?)(?=Long-term Goals|Reflection:|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_LONG_TERM_RE = re.compile(
    r"Long-term Goals\s*(?:\([^)]*\))?\s*:(.*?)(?=Reflection:|\Z)",
    re.IGNORECASE | re.DOTALL,
)
_REFLECTION_RE = re.compile(r"Reflection:(.*)\Z", re.IGNORECASE | re.DOTALL)
_BULLET_RE = re.compile(r"^-\s*")


@dataclass
class StrategyPlan:
    opening: Optional[str] = None
    short_term_goals: List[str] = field(default_factory=list)
    long_term_goals: List[str] = field(default_factory=list)
    reflection: str = ""


def player_move_count(ply: int) -> int:
    return math.ceil(ply / 2)


def is_first_move(ply: int, player_color: Side) -> bool:
    return ply == 0 or (ply == 1 and player_color == "black")


def _goal_lines(block: str) -> List[str]:
    goals = []
    for line in block.split("\n"):
        cleaned = _BULLET_RE.sub("", line.strip()).strip()
        if cleaned:
            goals.append(cleaned)
    return goals


def parse_strategy_response(response: str) -> StrategyPlan:
    """
    Split a free-text planning answer into its labelled sections.

    Tolerant by construction: missing sections stay empty, nothing raises.
    """
    text = response or ""
    plan = StrategyPlan()

    m = _OPENING_RE.search(text)
    if m and m.group(1).strip():
        plan.opening = m.group(1).strip()

    m = _SHORT_TERM_RE.search(text)
    if m:
        plan.short_term_goals = _goal_lines(m.group(1))

    m = _LONG_TERM_RE.search(text)
    if m:
        plan.long_term_goals = _goal_lines(m.group(1))

    m = _REFLECTION_RE.search(text)
    if m:
        plan.reflection = m.group(1).strip()

    return plan


def build_strategy_prompt(
    state: GameState,
    player_color: Side,
    memory: MemoryStore,
    *,
    is_opening_phase: bool,
    should_update_short_term: bool,
    should_update_long_term: bool,
) -> str:
    current = memory.get(player_color)
    ply = state.ply
    first_move = is_first_move(ply, player_color)

    parts = [f"You are a chess Grandmaster planning your strategy as {player_color}. "]
    if first_move:
        parts.append("This is your first move. Choose an opening strategy and initial development plan.")
    else:
        parts.append(f"The game has progressed to move {ply // 2 + 1}.")

    parts.append(f"\n\nCurrent board position (FEN): {state.fen}\n")

    if current.has_strategy():
        parts.append("\nYour current strategy:\n")
        if current.opening:
            parts.append(f"Opening Strategy: {current.opening}\n")
        if current.short_term_goals:
            parts.append("Short-term Goals (next 1-4 moves):\n")
            parts.extend(f"- {goal}\n" for goal in current.short_term_goals)
        if current.long_term_goals:
            parts.append("Long-term Goals (next 5-10 moves):\n")
            parts.extend(f"- {goal}\n" for goal in current.long_term_goals)

    parts.append("\n\nPlease provide the following:")

    if first_move or is_opening_phase:
        parts.append(
            "\n\nOpening Strategy: Name a specific recognized chess opening "
            "(like Sicilian Defense, Queen's Gambit, etc.) you'll follow."
        )
    if should_update_short_term or first_move:
        parts.append(
            "\n\nShort-term Goals (next 1-4 moves): List exactly 3 concrete tactical objectives "
            "with specific pieces and squares when possible."
        )
    if should_update_long_term or first_move:
        parts.append("\n\nLong-term Goals (next 5-10 moves): List exactly 3 strategic positional objectives.")

    parts.append(
        "\n\nReflection: Briefly analyze the current position, any immediate threats or opportunities, "
        "and how your plan addresses them."
    )
    parts.append(PLANNER_REMINDERS)
    return "".join(parts)


async def plan_strategy(
    router: LLMRouter,
    state: GameState,
    player_color: Side,
    memory: MemoryStore,
    *,
    model: Optional[str] = None,
) -> StrategyPlan:
    """Ask for a plan. Any call or parse failure returns an empty plan with an error reflection."""
    try:
        counter = player_move_count(state.ply)
        prompt = build_strategy_prompt(
            state,
            player_color,
            memory,
            is_opening_phase=state.ply < OPENING_PHASE_PLIES,
            should_update_short_term=memory.should_update_short_term_goals(player_color, counter),
            should_update_long_term=memory.should_update_long_term_goals(player_color, counter),
        )
        content = await router.complete(
            stage="strategy_planner",
            model=model or router.config.planner_model,
            messages=[
                {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=router.config.planner_max_tokens,
        )
        return parse_strategy_response(content)
    except Exception as e:
        logger.warning("[PLANNER] %s (%s): %s", PLANNER_FAILED.code, player_color, e)
        return StrategyPlan(reflection=PLANNER_ERROR_REFLECTION)


def apply_strategy_plan(memory: MemoryStore, player_color: Side, plan: StrategyPlan, ply: int) -> None:
    """
    Write a plan back into memory.

    Opening: only when none is stored yet or before ply 10, after which it is locked in.
    Goals: only non-empty lists replace the stored ones.
    """
    counter = player_move_count(ply)

    if plan.opening and (memory.get(player_color).opening is None or ply < OPENING_LOCK_PLY):
        memory.set_opening(player_color, plan.opening)
    if plan.short_term_goals:
        memory.update_short_term_goals(player_color, plan.short_term_goals, counter)
    if plan.long_term_goals:
        memory.update_long_term_goals(player_color, plan.long_term_goals, counter)
    if plan.reflection:
        memory.add_reflection(player_color, plan.reflection)


async def update_player_strategy(
    router: LLMRouter,
    state: GameState,
    player_color: Side,
    memory: MemoryStore,
    *,
    model: Optional[str] = None,
) -> StrategyPlan:
    plan = await plan_strategy(router, state, player_color, memory, model=model)
    apply_strategy_plan(memory, player_color, plan, state.ply)
    return plan
