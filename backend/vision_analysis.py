"""
Grandmaster-style position commentary from a board image.

The returned text is optional context for the move prompt. Failures come back as
an explanatory string, never as an exception.
"""

from __future__ import annotations

import logging
from typing import Optional

from chess_models import GameState, Move, Side, opposite
from llm_router import LLMRouter


logger = logging.getLogger(__name__)

VISION_SYSTEM_PROMPT = "You are a chess Grandmaster providing detailed and coordinate-specific analysis of board positions."
VISION_ERROR_TEXT = "Error analyzing the chess position. Please try again."
NO_ANALYSIS_TEXT = "No analysis available."

_PHASE_ADVICE = {
    "opening": """
As this is the opening phase, focus on:
- Specific pawn and piece coordination for center control (d4, d5, e4, e5)
- Development order for knights and bishops (name specific squares)
- King safety and castling opportunities (specify kingside or queenside)
- Identification of the opening pattern if recognizable
- Early pawn structure implications""",
    "middlegame": """
In this middlegame position, analyze:
- Tactical patterns (pins, forks, discovered attacks) with specific pieces and squares
- Pawn break opportunities with exact coordinates
- Space advantages and outposts for pieces
- King safety weaknesses with specific attack vectors
- Piece coordination and activity imbalances""",
    "endgame": """
In this endgame position, focus on:
- Passed pawn dynamics and promotion pathways
- King activity and specific squares it should target
- Piece vs. pawn trade evaluations
- Zugzwang and opposition opportunities
- Critical squares for piece domination""",
}


def vision_phase(ply: int) -> str:
    # Vision uses its own, earlier cut-off for the opening.
    if ply < 10:
        return "opening"
    if ply > 30:
        return "endgame"
    return "middlegame"


def build_vision_prompt(player_color: Side, last_move_san: Optional[str], phase: str) -> str:
    if last_move_san:
        move_text = f"The latest move made by your opponent ({opposite(player_color)}) is **{last_move_san}**."
    else:
        move_text = "You're analyzing the initial position."

    return f"""### **Advanced Chess Position Analysis**

You are analyzing a chess position for a player with **{player_color}** pieces. {move_text}

Provide a precise Grandmaster-level analysis with concrete observations and specific coordinates. Your analysis should identify exact tactical opportunities and strategic themes.

{_PHASE_ADVICE[phase]}

---

### **Analysis Structure:**

1. **Critical Position Elements:** key pieces with coordinates, pawn structures, material balance, weak squares and outposts.
2. **Opponent's Move Assessment:** purpose of the last move, weaknesses or opportunities it created.
3. **Tactical Elements:** immediate threats, checks or captures; pins, forks, skewers with the exact pieces; overloaded pieces.
4. **Strategic Considerations:** 3-4 concrete ideas with specific squares, pawn advances, piece maneuvers.
5. **Defensive Requirements:** weaknesses to defend, vulnerable pieces, king safety squares.

---

### **Guidelines:**
- Use algebraic chess coordinates extensively (e.g., "Knight on c3 controls e4 and d5")
- Be concrete and precise rather than general
- Provide balanced analysis but prioritize information useful to the {player_color} player
- Start with the most critical observations"""


async def analyze_board_image(
    router: LLMRouter,
    image_base64: str,
    player_color: Side,
    state: GameState,
    last_move: Optional[Move] = None,
) -> str:
    try:
        last = last_move or state.last_move
        prompt = build_vision_prompt(player_color, last.san if last else None, vision_phase(state.ply))
        image_url = image_base64 if image_base64.startswith("data:") else f"data:image/png;base64,{image_base64}"
        content = await router.complete(
            stage="vision_analysis",
            model=router.config.vision_model,
            messages=[
                {"role": "system", "content": VISION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                },
            ],
            max_tokens=router.config.planner_max_tokens,
        )
        return content or NO_ANALYSIS_TEXT
    except Exception as e:
        logger.warning("[VISION] analysis failed: %s", e)
        return VISION_ERROR_TEXT
