"""
Tests for the Stockfish evaluation oracle.
Uses a scripted engine so no binary is needed; the real-binary path is only
checked for its missing-binary fallback.
"""

import asyncio

import chess
import chess.engine
import pytest

from engine_fakes import GatedAnalysis
from evaluation_oracle import EngineConfig, EngineStatus, EvaluationOracle, score_to_result
from material_calculator import synthetic_evaluation


START_FEN = chess.STARTING_FEN
# White is a queen up.
QUEEN_UP_FEN = "rnb1kbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"


def _info(depth, cp=None, mate=None):
    score = chess.engine.Mate(mate) if mate is not None else chess.engine.Cp(cp)
    return {"depth": depth, "score": chess.engine.PovScore(score, chess.WHITE)}


class FakeAnalysis:
    def __init__(self, infos, hang=False):
        self._infos = list(infos)
        self.hang = hang
        self.stopped = False

    def stop(self):
        self.stopped = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.hang:
            await asyncio.sleep(3600)
        if self.stopped or not self._infos:
            raise StopAsyncIteration
        return self._infos.pop(0)


class FakeEngine:
    def __init__(self, analyses):
        self.analyses = list(analyses)
        self.configured = None
        self.quit_called = False
        self.boards = []

    async def configure(self, options):
        self.configured = options

    async def analysis(self, board, limit):
        self.boards.append(board.fen())
        return self.analyses.pop(0)

    async def quit(self):
        self.quit_called = True


def _oracle(engine, **config):
    async def factory(path):
        return engine
    return EvaluationOracle(EngineConfig(stockfish_path="stockfish", **config), engine_factory=factory)


def test_score_to_result_white_pov():
    result = score_to_result({"depth": 10, "score": chess.engine.PovScore(chess.engine.Cp(-40), chess.BLACK)})
    assert result.centipawns == 40
    assert result.depth == 10
    assert result.source == "stockfish"
    assert not result.degraded


def test_score_to_result_mate():
    white_mates = score_to_result(_info(12, mate=2))
    assert white_mates.mate == 2
    assert white_mates.centipawns == 1000

    black_mates = score_to_result(_info(12, mate=-3))
    assert black_mates.mate == -3
    assert black_mates.centipawns == -1000

    assert score_to_result({"depth": 5}) is None


def test_synthetic_evaluation():
    assert synthetic_evaluation(START_FEN).centipawns == 0
    queen_up = synthetic_evaluation(QUEEN_UP_FEN)
    assert queen_up.centipawns == 900
    assert queen_up.depth == 0
    assert queen_up.degraded
    assert synthetic_evaluation("not a fen").centipawns == 0


@pytest.mark.asyncio
async def test_missing_binary_falls_back_and_is_memoized():
    oracle = EvaluationOracle(EngineConfig(stockfish_path="/nonexistent/stockfish"))

    result = await oracle.evaluate(QUEEN_UP_FEN)
    assert result.source == "fallback"
    assert result.depth == 0
    assert result.centipawns == 900
    assert oracle.status is EngineStatus.FAILED

    await oracle.evaluate(START_FEN)
    assert oracle.metrics["fallback_requests"] == 2


@pytest.mark.asyncio
async def test_failed_start_is_not_retried():
    calls = []

    async def broken_factory(path):
        calls.append(path)
        raise FileNotFoundError(path)

    oracle = EvaluationOracle(EngineConfig(stockfish_path="stockfish"), engine_factory=broken_factory)
    first = await oracle.evaluate(START_FEN)
    second = await oracle.evaluate(START_FEN)

    assert first.degraded and second.degraded
    assert calls == ["stockfish"]


@pytest.mark.asyncio
async def test_engine_result_and_progress_reports():
    engine = FakeEngine([FakeAnalysis([_info(1, cp=10), _info(3, cp=25), _info(8, cp=31)])])
    oracle = _oracle(engine)
    seen = []

    result = await oracle.evaluate(START_FEN, on_result=seen.append)

    assert oracle.status is EngineStatus.READY
    assert engine.configured == {"Threads": 1, "Hash": 16}
    assert result.centipawns == 31
    assert result.depth == 8
    assert not result.degraded
    # depth 1 is below the report threshold
    assert [r.depth for r in seen] == [3, 8]


@pytest.mark.asyncio
async def test_timeout_stops_search_and_falls_back():
    hanging = FakeAnalysis([], hang=True)
    oracle = _oracle(FakeEngine([hanging]), timeout_s=0.05)

    result = await oracle.evaluate(QUEEN_UP_FEN)

    assert hanging.stopped
    assert result.source == "fallback"
    assert result.centipawns == 900
    assert oracle.metrics["timeouts"] == 1
    # the engine itself stays usable
    assert oracle.status is EngineStatus.READY


@pytest.mark.asyncio
async def test_engine_crash_marks_unavailable():
    class CrashingEngine(FakeEngine):
        async def analysis(self, board, limit):
            raise chess.engine.EngineTerminatedError("engine died")

    oracle = _oracle(CrashingEngine([]))
    result = await oracle.evaluate(START_FEN)

    assert result.degraded
    assert oracle.status is EngineStatus.FAILED
    assert not oracle.is_available


@pytest.mark.asyncio
async def test_close_quits_engine():
    engine = FakeEngine([FakeAnalysis([_info(8, cp=0)])])
    oracle = _oracle(engine)
    await oracle.evaluate(START_FEN)
    await oracle.close()

    assert engine.quit_called
    assert oracle.status is EngineStatus.UNINITIALIZED


@pytest.mark.asyncio
async def test_new_request_stops_and_supersedes_in_flight_search():
    gate = asyncio.Event()
    first = GatedAnalysis(gate, [_info(8, cp=-200)])
    second = FakeAnalysis([_info(8, cp=880)])
    stopped_before_second_go = []

    class RecordingEngine(FakeEngine):
        async def analysis(self, board, limit):
            if self.boards:
                stopped_before_second_go.append(first.stopped)
            return await super().analysis(board, limit)

    engine = RecordingEngine([first, second])
    oracle = _oracle(engine, timeout_s=5)
    first_seen = []
    second_seen = []

    first_task = asyncio.create_task(oracle.evaluate(START_FEN, on_result=first_seen.append))
    while not first.waiting:
        await asyncio.sleep(0)

    latest = await oracle.evaluate(QUEEN_UP_FEN, on_result=second_seen.append)
    assert stopped_before_second_go == [True]
    assert latest.centipawns == 880
    assert [r.depth for r in second_seen] == [8]

    # the stale search delivers its info late; nobody hears about it
    gate.set()
    stale = await first_task
    assert first_seen == []
    assert stale.source == "fallback"
    assert engine.boards == [START_FEN, QUEEN_UP_FEN]


@pytest.mark.asyncio
async def test_engine_start_counts_against_timeout():
    class SlowEngine(FakeEngine):
        async def analysis(self, board, limit):
            await asyncio.sleep(3600)

    oracle = _oracle(SlowEngine([]), timeout_s=0.05)
    result = await oracle.evaluate(QUEEN_UP_FEN)

    assert result.source == "fallback"
    assert result.centipawns == 900
    assert oracle.metrics["timeouts"] == 1
