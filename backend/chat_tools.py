"""
OpenAI Function/Tool Schemas for move generation
"""

from typing import Any, Dict


PROMOTION_PIECES = ["q", "r", "b", "n"]

TOOL_MAKE_CHESS_MOVE: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "make_chess_move",
        "description": "Make a chess move",
        "parameters": {
            "type": "object",
            "properties": {
                "from": {
                    "type": "string",
                    "description": "The starting square in algebraic notation (e.g., 'e2')"
                },
                "to": {
                    "type": "string",
                    "description": "The destination square in algebraic notation (e.g., 'e4')"
                },
                "promotion": {
                    "type": "string",
                    "enum": PROMOTION_PIECES,
                    "description": "The piece to promote to if this is a pawn promotion move. 'q' for queen, 'r' for rook, 'b' for bishop, 'n' for knight."
                }
            },
            "required": ["from", "to"]
        }
    }
}
