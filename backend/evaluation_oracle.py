"""
Stockfish Evaluation Oracle

Scores positions for the evaluation bar. Properties:
- engine start-up is attempted once; success or failure is memoized
- at most one search in flight: a new request stops the previous one first
  (UCI `stop`, then `position`, then `go`)
- every request carries a wall-clock timeout; on timeout, engine failure or a
  missing engine the caller gets a material-count estimate with depth 0
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import chess
import chess.engine

from chess_models import EvaluationResult
from errors import ENGINE_UNAVAILABLE
from material_calculator import synthetic_evaluation


logger = logging.getLogger(__name__)

MATE_CENTIPAWNS = 1000

EvaluationCallback = Callable[[EvaluationResult], None]
EngineFactory = Callable[[str], Awaitable[Any]]


class EngineStatus(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class EngineConfig:
    stockfish_path: str = field(default_factory=lambda: os.getenv("STOCKFISH_PATH", "./stockfish"))
    depth: int = field(default_factory=lambda: int(os.getenv("EVAL_DEPTH", "8")))
    timeout_s: float = field(default_factory=lambda: float(os.getenv("EVAL_TIMEOUT_S", "3")))
    # Shallower info lines are not reported to the UI.
    min_report_depth: int = 3
    threads: int = 1
    hash_mb: int = 16


async def _popen_stockfish(path: str):
    _, engine = await chess.engine.popen_uci(path)
    return engine


def score_to_result(info: dict) -> Optional[EvaluationResult]:
    """Convert a python-chess info dict into a white-POV EvaluationResult."""
    pov = info.get("score")
    if pov is None:
        return None
    score = pov.white()
    depth = int(info.get("depth") or 0)
    mate = score.mate()
    if mate is not None:
        centipawns = MATE_CENTIPAWNS if score.score(mate_score=100000) > 0 else -MATE_CENTIPAWNS
        return EvaluationResult(centipawns=centipawns, mate=mate, depth=depth)
    return EvaluationResult(centipawns=int(score.score() or 0), depth=depth)


class EvaluationOracle:
    def __init__(self, config: Optional[EngineConfig] = None, engine_factory: Optional[EngineFactory] = None):
        self.config = config or EngineConfig()
        self._engine_factory = engine_factory or _popen_stockfish
        self._engine: Any = None
        self.status = EngineStatus.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._analysis: Any = None
        self._request_id = 0
        self.metrics = {
            "total_requests": 0,
            "fallback_requests": 0,
            "timeouts": 0,
        }

    @property
    def is_available(self) -> bool:
        return self.status is EngineStatus.READY and self._engine is not None

    def _binary_exists(self) -> bool:
        path = self.config.stockfish_path
        return os.path.exists(path) or shutil.which(path) is not None

    async def ensure_started(self) -> bool:
        """Start the engine on first use. A failed start is not retried."""
        if self.status in (EngineStatus.READY, EngineStatus.FAILED):
            return self.is_available
        async with self._init_lock:
            if self.status in (EngineStatus.READY, EngineStatus.FAILED):
                return self.is_available
            self.status = EngineStatus.INITIALIZING
            if self._engine_factory is _popen_stockfish and not self._binary_exists():
                logger.warning("[ENGINE] Stockfish not found at %s; using fallback evaluation", self.config.stockfish_path)
                self.status = EngineStatus.FAILED
                return False
            try:
                self._engine = await self._engine_factory(self.config.stockfish_path)
                await self._engine.configure({"Threads": self.config.threads, "Hash": self.config.hash_mb})
                self.status = EngineStatus.READY
                logger.info("[ENGINE] Stockfish initialized at %s", self.config.stockfish_path)
            except Exception as e:
                logger.warning("[ENGINE] %s: %s", ENGINE_UNAVAILABLE.code, e)
                self._engine = None
                self.status = EngineStatus.FAILED
        return self.is_available

    def _fallback(self, fen: str, on_result: Optional[EvaluationCallback]) -> EvaluationResult:
        self.metrics["fallback_requests"] += 1
        result = synthetic_evaluation(fen)
        if on_result is not None:
            on_result(result)
        return result

    async def evaluate(self, fen: str, on_result: Optional[EvaluationCallback] = None) -> EvaluationResult:
        """
        Evaluate `fen` to the configured depth.

        `on_result` receives each intermediate result at or above min_report_depth;
        the return value is the deepest result seen. Never raises.
        """
        self.metrics["total_requests"] += 1
        await self.cancel()

        self._request_id += 1
        request_id = self._request_id

        if not await self.ensure_started():
            return self._fallback(fen, on_result)

        try:
            board = chess.Board(fen)
        except ValueError:
            logger.warning("[ENGINE] invalid FEN %r", fen)
            return self._fallback(fen, on_result)

        analysis = None

        async def search() -> Optional[EvaluationResult]:
            nonlocal analysis
            analysis = await self._engine.analysis(board, chess.engine.Limit(depth=self.config.depth))
            self._analysis = analysis
            return await self._consume(analysis, request_id, on_result)

        try:
            # Starting the search counts against the timeout too.
            best = await asyncio.wait_for(search(), timeout=self.config.timeout_s)
        except asyncio.TimeoutError:
            self.metrics["timeouts"] += 1
            logger.warning("[ENGINE] analysis timed out after %ss", self.config.timeout_s)
            if analysis is not None:
                analysis.stop()
            return self._fallback(fen, on_result)
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError) as e:
            logger.warning("[ENGINE] analysis failed, engine marked unavailable: %s", e)
            self.status = EngineStatus.FAILED
            self._engine = None
            return self._fallback(fen, on_result)
        finally:
            if analysis is not None and self._analysis is analysis:
                self._analysis = None

        if request_id != self._request_id:
            logger.debug("[ENGINE] request %d superseded; result not reported", request_id)
            return synthetic_evaluation(fen)
        if best is None:
            return self._fallback(fen, on_result)
        return best

    async def _consume(self, analysis: Any, request_id: int, on_result: Optional[EvaluationCallback]) -> Optional[EvaluationResult]:
        best: Optional[EvaluationResult] = None
        async for info in analysis:
            if request_id != self._request_id:
                # Superseded by a newer request.
                break
            result = score_to_result(info)
            if result is None or result.depth < self.config.min_report_depth:
                continue
            best = result
            if on_result is not None:
                on_result(result)
        return best

    async def cancel(self) -> None:
        """Best-effort stop of the in-flight search; its late results are dropped."""
        self._request_id += 1
        analysis = self._analysis
        self._analysis = None
        if analysis is not None:
            try:
                analysis.stop()
            except Exception as e:
                logger.debug("[ENGINE] stop failed: %s", e)

    async def close(self) -> None:
        await self.cancel()
        if self._engine is not None:
            try:
                await self._engine.quit()
            except Exception as e:
                logger.debug("[ENGINE] quit failed: %s", e)
        self._engine = None
        self.status = EngineStatus.UNINITIALIZED
