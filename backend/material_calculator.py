"""
Material count used as the degraded evaluation when Stockfish is unavailable
or times out. P=100, N/B=300, R=500, Q=900 centipawns; kings are not counted.
"""

import chess

from chess_models import EvaluationResult


PIECE_VALUES = {
    chess.PAWN: 100,
    chess.KNIGHT: 300,
    chess.BISHOP: 300,
    chess.ROOK: 500,
    chess.QUEEN: 900,
}


def calculate_material_balance(board: chess.Board) -> int:
    """Centipawns, positive when white is ahead."""
    return sum(
        value * (len(board.pieces(piece_type, chess.WHITE)) - len(board.pieces(piece_type, chess.BLACK)))
        for piece_type, value in PIECE_VALUES.items()
    )


def synthetic_evaluation(fen: str) -> EvaluationResult:
    """
    Material-count estimate marked as a fallback (depth 0).
    An unparseable FEN yields a neutral score.
    """
    try:
        board = chess.Board(fen)
    except ValueError:
        return EvaluationResult(centipawns=0, depth=0, source="fallback")
    return EvaluationResult(
        centipawns=calculate_material_balance(board),
        depth=0,
        source="fallback",
    )
