"""
Prompt Composer

Builds the single system message handed to the move oracle: side, game info,
opponent's last move, square-by-square board, memory, optional grandmaster
analysis, legal moves, guidelines and the candidate-scoring request.
Pure string building; no side effects.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from chess_models import GameState, Move, Side
from rules_authority import BoardCell


FILES = "abcdefgh"

CHESS_GUIDELINES = """CHESS GUIDELINES:
1. In the opening: develop your pieces, control the center, and castle early.
2. Don't bring your queen out too early without clear tactical advantage.
3. Knights before bishops is often a good development order.
4. Develop multiple pieces instead of moving the same piece repeatedly.
5. Look for tactical opportunities (forks, pins, skewers, discovered attacks).
6. Always consider your opponent's threats before executing your plan.
7. If you see a good move, look for a better one before deciding."""

CANDIDATE_SCORING = """Before making your move, analyze the top 3 candidate moves with numerical ratings:
1. Assign each candidate a score from -10.0 to +10.0 where:
   - -10.0 to -5.0: Terrible move (blunder)
   - -5.0 to -2.0: Bad move (mistake)
   - -2.0 to -0.5: Slight inaccuracy
   - -0.5 to +0.5: Equal/neutral move
   - +0.5 to +2.0: Good move
   - +2.0 to +5.0: Very good move
   - +5.0 to +10.0: Excellent/winning move
2. For each candidate, provide brief tactical and strategic reasoning, one per line, as
   <move>: <score> - <reasoning>

Choose your final move based on your analysis, generally preferring the highest-rated option."""

FUNCTION_CALL_INSTRUCTION = "Make your move using the make_chess_move function with from and to coordinates."

CONSTRAINED_MOVE_FORMAT = """

IMPORTANT: You must respond with your move in this exact JSON format at the end of your response:
{"from": "e2", "to": "e4", "promotion": null}

Replace the from/to squares with your chosen move. Include promotion only if it's a pawn promotion (use "q", "r", "b", or "n")."""


def game_phase(ply: int) -> str:
    if ply <= 10:
        return "opening"
    if ply <= 30:
        return "middlegame"
    return "endgame"


def move_number(ply: int) -> int:
    return ply // 2 + 1


def format_legal_moves(legal_moves: Sequence[Move]) -> str:
    return ", ".join(m.label() for m in legal_moves)


def format_last_move(last_move: Optional[Move]) -> str:
    if last_move is None:
        return "You are making the first move of the game."
    return (
        f"Your opponent's last move was {last_move.san} "
        f"({last_move.from_square} to {last_move.to_square})."
    )


def format_board(rows: Sequence[Sequence[BoardCell]]) -> str:
    """Occupied squares only, rank 8 down to rank 1: `Rank 1: a1:WhiteR b1:WhiteN ...`."""
    lines: List[str] = []
    for i, row in enumerate(rows):
        rank = 8 - i
        cells = []
        for j, cell in enumerate(row):
            if cell is None:
                continue
            colour, letter = cell
            cells.append(f"{FILES[j]}{rank}:{'White' if colour == 'w' else 'Black'}{letter}")
        lines.append(f"Rank {rank}: " + " ".join(cells))
    return "\n".join(lines)


def compose_system_message(
    state: GameState,
    player_color: Side,
    legal_moves: Sequence[Move],
    board_rows: Sequence[Sequence[BoardCell]],
    vision_analysis: Optional[str],
    player_memory: str,
) -> str:
    ply = state.ply
    analysis_section = (
        f"\n\nGRANDMASTER ANALYSIS OF THE POSITION:\n{vision_analysis}\n\n" if vision_analysis else ""
    )

    return f"""You are playing {player_color} in a chess game. Your goal is to win by checkmate.
Your pieces are {player_color}.

GAME INFORMATION:
Move number: {move_number(ply)}
Game phase: {game_phase(ply)}
Current position (FEN): {state.fen}

{format_last_move(state.last_move)}

BOARD STATE (with coordinates):
{format_board(board_rows)}

{player_memory}{analysis_section}

Your valid moves are: {format_legal_moves(legal_moves)}

{CHESS_GUIDELINES}

{CANDIDATE_SCORING}

{FUNCTION_CALL_INSTRUCTION}"""


def constrained_system_message(system_message: str) -> str:
    """Variant for models that answer in free text and must end with a JSON move."""
    return system_message + CONSTRAINED_MOVE_FORMAT
