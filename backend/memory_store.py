"""
Strategic memory for AI players.

One slot per colour, session lifetime, no on-disk form. Holds:
- opening label (short, stable tag)
- short/long-term goals (max 3 each, stamped with the move counter of the update)
- reflections (FIFO, max 5)
- own move history and piece activity counters
- the latest top-3 candidate move evaluations

Goals and opening are advisory prompt context only; legality is decided by the
RulesAuthority.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional

from chess_models import MemorySnapshot, Move, MoveEvaluation, Side


MAX_GOALS = 3
MAX_REFLECTIONS = 5
MAX_MOVE_EVALUATIONS = 3
SHORT_TERM_REFRESH = 3
LONG_TERM_REFRESH = 6
OVERUSE_THRESHOLD = 3
PROMPT_REFLECTIONS = 3

_OPENING_DELIMITERS = re.compile(r"[.,:]")

_SAN_OR_SQUARES = r"[a-h][1-8][- ]?to[- ]?[a-h][1-8]|[KQRBN]?[a-h]?[1-8]?x?[a-h][1-8](?:=[QRBN])?[+#]?"
_EVAL_LINE_RE = re.compile(
    rf"({_SAN_OR_SQUARES})\s*:\s*([+\-]?\d+\.?\d*)\s*[-:]\s*(.+?)(?=\n\s*\d+\.|\n\s*(?:[a-h][1-8]|[KQRBN])|$)",
    re.IGNORECASE | re.MULTILINE,
)
_EVAL_LABELLED_RE = re.compile(
    rf"(?:Option|Move|Candidate)\s*(?:\d+)?\s*[.:]\s*({_SAN_OR_SQUARES})\s*(?:[-,]|with score)\s*([+\-]?\d+\.?\d*)\s*[-:]\s*(.+?)(?=\n|$)",
    re.IGNORECASE,
)


@dataclass
class PlayerMemory:
    opening: Optional[str] = None
    short_term_goals: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_GOALS))
    long_term_goals: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_GOALS))
    last_updated_short_term: int = 0
    last_updated_long_term: int = 0
    reflections: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_REFLECTIONS))
    move_history: List[Move] = field(default_factory=list)
    piece_activity: Dict[str, int] = field(default_factory=dict)
    move_evaluations: List[MoveEvaluation] = field(default_factory=list)

    def has_strategy(self) -> bool:
        return bool(self.opening or self.short_term_goals or self.long_term_goals)

    def snapshot(self) -> MemorySnapshot:
        return MemorySnapshot(
            opening=self.opening,
            short_term_goals=list(self.short_term_goals),
            long_term_goals=list(self.long_term_goals),
            last_updated_short_term=self.last_updated_short_term,
            last_updated_long_term=self.last_updated_long_term,
            reflections=list(self.reflections),
            move_history=list(self.move_history),
            piece_activity=dict(self.piece_activity),
            move_evaluations=list(self.move_evaluations),
        )


def _replace_goals(target: Deque[str], goals: Iterable[str]) -> None:
    # Keep the first MAX_GOALS; a plain extend on a bounded deque would keep the last ones.
    target.clear()
    for goal in goals:
        if len(target) >= MAX_GOALS:
            break
        target.append(goal)


def extract_opening_label(text: str) -> str:
    """'Sicilian Defense: Najdorf, aiming for...' -> 'Sicilian Defense'."""
    return _OPENING_DELIMITERS.split(text or "", maxsplit=1)[0].strip()


def parse_move_evaluations(content: str) -> List[MoveEvaluation]:
    """
    Pull candidate move ratings out of free text.

    Accepts `Nf3: +1.5 - develops a piece` lines, falling back to
    `Option 1: Nf3 - +1.5 - ...` style. Scores are clamped to [-10, 10].
    Never raises; returns [] when nothing matches. Sorted best first.
    """
    evaluations: List[MoveEvaluation] = []
    text = content or ""

    def _collect(pattern: re.Pattern) -> None:
        for m in pattern.finditer(text):
            try:
                score = float(m.group(2))
            except ValueError:
                continue
            evaluations.append(
                MoveEvaluation(
                    move=m.group(1).strip(),
                    score=max(-10.0, min(10.0, score)),
                    reasoning=m.group(3).strip(),
                )
            )

    _collect(_EVAL_LINE_RE)
    if not evaluations:
        _collect(_EVAL_LABELLED_RE)

    return sorted(evaluations, key=lambda e: e.score, reverse=True)


class MemoryStore:
    """
    In-memory store with a white and a black slot.
    Every operation is total; nothing here raises for well-typed input.
    """

    def __init__(self) -> None:
        self._slots: Dict[Side, PlayerMemory] = {}
        self.reset()

    def reset(self) -> None:
        # Both slots are replaced together.
        self._slots = {"white": PlayerMemory(), "black": PlayerMemory()}

    def get(self, color: Side) -> PlayerMemory:
        return self._slots[color]

    def snapshot(self, color: Side) -> MemorySnapshot:
        return self._slots[color].snapshot()

    def record_move(self, color: Side, move: Move) -> None:
        memory = self._slots[color]
        memory.move_history.append(move)
        piece_id = f"{move.piece}{move.from_square}"
        memory.piece_activity[piece_id] = memory.piece_activity.get(piece_id, 0) + 1

    def set_opening(self, color: Side, opening: str) -> None:
        label = extract_opening_label(opening)
        if label:
            self._slots[color].opening = label

    def update_short_term_goals(self, color: Side, goals: Iterable[str], move_number: int) -> None:
        memory = self._slots[color]
        _replace_goals(memory.short_term_goals, goals)
        memory.last_updated_short_term = move_number

    def update_long_term_goals(self, color: Side, goals: Iterable[str], move_number: int) -> None:
        memory = self._slots[color]
        _replace_goals(memory.long_term_goals, goals)
        memory.last_updated_long_term = move_number

    def add_reflection(self, color: Side, reflection: str) -> None:
        self._slots[color].reflections.append(reflection)

    def should_update_short_term_goals(self, color: Side, move_number: int) -> bool:
        return move_number - self._slots[color].last_updated_short_term >= SHORT_TERM_REFRESH

    def should_update_long_term_goals(self, color: Side, move_number: int) -> bool:
        return move_number - self._slots[color].last_updated_long_term >= LONG_TERM_REFRESH

    def store_move_evaluations(self, color: Side, evaluations: Iterable[MoveEvaluation]) -> None:
        ranked = sorted(evaluations, key=lambda e: e.score, reverse=True)
        self._slots[color].move_evaluations = ranked[:MAX_MOVE_EVALUATIONS]

    def get_move_evaluations(self, color: Side) -> List[MoveEvaluation]:
        return list(self._slots[color].move_evaluations)

    def format_for_prompt(self, color: Side) -> str:
        memory = self._slots[color]
        lines = ["MEMORY:"]

        if memory.opening:
            lines.append(f"Opening Strategy: {memory.opening}")

        if memory.short_term_goals:
            lines.append("Short-term Goals (next 1-4 moves):")
            lines.extend(f"- {goal}" for goal in memory.short_term_goals)

        if memory.long_term_goals:
            lines.append("Long-term Goals (next 5-10 moves):")
            lines.extend(f"- {goal}" for goal in memory.long_term_goals)

        if memory.reflections:
            lines.append("Previous Reflections:")
            lines.extend(f"- {r}" for r in list(memory.reflections)[-PROMPT_REFLECTIONS:])

        overused = [pid for pid, count in memory.piece_activity.items() if count > OVERUSE_THRESHOLD]
        if overused:
            pieces = ", ".join(f"{pid[0]} ({pid[1:]})" for pid in overused)
            lines.append(f"Piece Usage Note: You may be overusing {pieces}. Consider developing other pieces.")

        return "\n".join(lines) + "\n"
