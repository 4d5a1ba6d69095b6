"""
Rules Authority

Thin adapter over python-chess. It is the single source of truth for legality,
board state, FEN/PGN and game status; nothing else in the backend decides
whether a move is legal.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Tuple

import chess
import chess.pgn

from chess_models import GameState, Move, Side


logger = logging.getLogger(__name__)

# (colour letter, uppercase piece letter), e.g. ("w", "N")
BoardCell = Optional[Tuple[str, str]]


def _to_move(board: chess.Board, move: chess.Move, timestamp: Optional[float] = None) -> Move:
    """Build a Move from a python-chess move that is legal on `board` (before pushing)."""
    piece = board.piece_at(move.from_square)
    return Move(
        from_square=chess.square_name(move.from_square),
        to_square=chess.square_name(move.to_square),
        promotion=chess.piece_symbol(move.promotion) if move.promotion else None,
        piece=piece.symbol().lower() if piece else "?",
        color="w" if board.turn == chess.WHITE else "b",
        san=board.san(move),
        timestamp=timestamp if timestamp is not None else time.time(),
    )


class RulesAuthority:
    def __init__(self, fen: Optional[str] = None):
        self._board = chess.Board(fen) if fen else chess.Board()
        self._history: List[Move] = []

    @property
    def board(self) -> chess.Board:
        """Copy of the current board; callers never mutate the authority's board."""
        return self._board.copy()

    def current_state(self) -> GameState:
        board = self._board
        checkmate = board.is_checkmate()
        draw = self._is_draw(board)
        winner: Optional[Side] = None
        if checkmate:
            # The side to move has been mated.
            winner = "black" if board.turn == chess.WHITE else "white"
        return GameState(
            fen=board.fen(),
            pgn=self.pgn(),
            turn="w" if board.turn == chess.WHITE else "b",
            history=list(self._history),
            game_over=checkmate or draw,
            checkmate=checkmate,
            draw=draw,
            in_check=board.is_check(),
            winner=winner,
        )

    @staticmethod
    def _is_draw(board: chess.Board) -> bool:
        return (
            board.is_stalemate()
            or board.is_insufficient_material()
            or board.is_seventyfive_moves()
            or board.is_fivefold_repetition()
            or board.can_claim_draw()
        )

    def legal_moves(self) -> List[Move]:
        now = time.time()
        return [_to_move(self._board, m, now) for m in self._board.legal_moves]

    def attempt_move(self, from_square: str, to_square: str, promotion: Optional[str] = None) -> Optional[Move]:
        """
        Commit a move if legal.

        Returns None for an illegal move or an unknown promotion piece.
        Raises ValueError only for malformed square names.
        """
        src = chess.parse_square(from_square)
        dst = chess.parse_square(to_square)
        promo_type = None
        if promotion:
            try:
                promo_type = chess.Piece.from_symbol(promotion.lower()).piece_type
            except ValueError:
                logger.warning("[RULES] unknown promotion piece %r", promotion)
                return None

        move = chess.Move(src, dst, promotion=promo_type)
        if move not in self._board.legal_moves:
            logger.warning(
                "[RULES] rejected %s->%s%s fen=%s",
                from_square, to_square, f"={promotion}" if promotion else "", self._board.fen(),
            )
            return None

        committed = _to_move(self._board, move)
        self._board.push(move)
        self._history.append(committed)
        logger.info("[RULES] committed %s (%s)", committed.san, committed.label())
        return committed

    def board_rows(self) -> List[List[BoardCell]]:
        """Rank 8 first, files a..h within each rank."""
        rows: List[List[BoardCell]] = []
        for rank in range(7, -1, -1):
            row: List[BoardCell] = []
            for file in range(8):
                piece = self._board.piece_at(chess.square(file, rank))
                if piece is None:
                    row.append(None)
                else:
                    row.append(("w" if piece.color == chess.WHITE else "b", piece.symbol().upper()))
            rows.append(row)
        return rows

    def pgn(self) -> str:
        """Movetext only, without headers or result marker."""
        if not self._board.move_stack:
            return ""
        game = chess.pgn.Game.from_board(self._board)
        exporter = chess.pgn.StringExporter(headers=False, variations=False, comments=False)
        text = game.accept(exporter).strip()
        for result in ("1-0", "0-1", "1/2-1/2", "*"):
            if text.endswith(result):
                text = text[: -len(result)].strip()
                break
        return text

    def reset(self) -> None:
        self._board.reset()
        self._history.clear()
