"""Tests for the tick controller: lifecycle, exclusion and halting."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradebot.engine.pair_job import CycleOutcome
from tradebot.engine.scheduler import JOB_ID, TickController

from factories import make_pair


def _controller(pairs=None, process=None, timeout=5):
    processor = MagicMock()
    processor.process = process or AsyncMock(return_value=CycleOutcome("success", "no_trade"))
    store = MagicMock()
    store.list_active_pairs.return_value = pairs if pairs is not None else [make_pair()]
    store.get_pair.side_effect = lambda pid: next((p for p in store.list_active_pairs() if p.id == pid), None)
    return TickController(processor, store, instrument_timeout=timeout)


# ---------------------------------------------------------------------------
# 1. Start / stop
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_and_stop_conflicts():
    ctl = _controller()
    try:
        assert ctl.start(interval_ms=60_000, run_immediately=False) is True
        assert ctl.is_running
        assert ctl.scheduler.get_job(JOB_ID) is not None
        assert ctl.start() is False

        assert ctl.stop() is True
        assert not ctl.is_running
        assert ctl.scheduler.get_job(JOB_ID) is None
        assert ctl.stop() is False
    finally:
        ctl.shutdown()


@pytest.mark.asyncio
async def test_status_shape():
    ctl = _controller()
    try:
        ctl.start(interval_ms=30_000, run_immediately=False)
        status = ctl.status()
        assert status["running"] is True
        assert status["interval_ms"] == 30_000
        assert status["last_tick_at"] is None
        assert status["pass_in_progress"] is False
    finally:
        ctl.shutdown()


def test_invalid_interval():
    with pytest.raises(ValueError):
        _controller().start(interval_ms=-5)


# ---------------------------------------------------------------------------
# 2. Passes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_run_once_processes_all_pairs():
    pairs = [make_pair(id=1, symbol="BTCUSDT"), make_pair(id=2, symbol="ETHUSDT")]
    ctl = _controller(pairs=pairs)

    summary = await ctl.run_once()

    assert summary.processed == 2
    assert summary.outcomes == {"BTCUSDT": "no_trade", "ETHUSDT": "no_trade"}
    assert ctl.last_tick_at is not None
    assert ctl.status()["last_summary"]["processed"] == 2


@pytest.mark.asyncio
async def test_overlapping_pass_is_skipped():
    release = asyncio.Event()

    async def slow_process(pair):
        await release.wait()
        return CycleOutcome("success", "no_trade")

    ctl = _controller(process=slow_process)
    first = asyncio.create_task(ctl.run_once())
    await asyncio.sleep(0)
    assert ctl.pass_in_progress

    assert await ctl.run_once() is None
    assert await ctl.process_instrument(1) is None

    release.set()
    summary = await first
    assert summary.processed == 1


@pytest.mark.asyncio
async def test_failure_does_not_stop_other_pairs():
    pairs = [make_pair(id=1, symbol="BTCUSDT"), make_pair(id=2, symbol="ETHUSDT")]
    process = AsyncMock(side_effect=[RuntimeError("boom"), CycleOutcome("success", "no_trade")])
    ctl = _controller(pairs=pairs, process=process)

    summary = await ctl.run_once()

    assert summary.processed == 2
    assert summary.errors == 1
    assert summary.outcomes["BTCUSDT"] == "cycle_error"
    ctl.store.log_cycle.assert_called_once()


@pytest.mark.asyncio
async def test_instrument_timeout():
    async def hang(pair):
        await asyncio.sleep(5)

    ctl = _controller(process=hang, timeout=0.05)
    summary = await ctl.run_once()

    assert summary.outcomes == {"BTCUSDT": "cycle_timeout"}
    assert ctl.store.log_cycle.call_args.kwargs["action"] == "cycle_timeout"


@pytest.mark.asyncio
async def test_stop_halts_between_instruments():
    pairs = [make_pair(id=i, symbol=f"P{i}USDT") for i in (1, 2, 3)]
    ctl = _controller(pairs=pairs)

    async def stop_after_first(pair):
        ctl.stop()
        return CycleOutcome("success", "no_trade")

    ctl.processor.process = stop_after_first
    try:
        ctl.start(interval_ms=60_000, run_immediately=False)
        summary = await ctl.run_once()
    finally:
        ctl.shutdown()

    assert summary.processed == 1
    assert summary.halted is True


@pytest.mark.asyncio
async def test_process_instrument():
    ctl = _controller()
    outcome = await ctl.process_instrument(1)
    assert outcome.action == "no_trade"
    assert await ctl.process_instrument(99) is None


@pytest.mark.asyncio
async def test_stop_halts_pass_requested_before_it():
    pairs = [make_pair(id=i, symbol=f"P{i}USDT") for i in (1, 2, 3)]
    ctl = _controller(pairs=pairs)
    try:
        ctl.start(interval_ms=60_000, run_immediately=False)
        task = asyncio.create_task(ctl.run_once())
        ctl.stop()
        summary = await task
    finally:
        ctl.shutdown()

    assert summary.processed == 0
    assert summary.halted is True
    ctl.processor.process.assert_not_awaited()


@pytest.mark.asyncio
async def test_manual_run_after_stop_still_processes():
    ctl = _controller()
    try:
        ctl.start(interval_ms=60_000, run_immediately=False)
        ctl.stop()
        summary = await ctl.run_once()
        outcome = await ctl.process_instrument(1)
    finally:
        ctl.shutdown()

    assert summary.processed == 1
    assert summary.halted is False
    assert outcome.action == "no_trade"


@pytest.mark.asyncio
async def test_scheduled_tick_skipped_when_stopped():
    ctl = _controller()
    assert await ctl._scheduled_tick() is None
    ctl.processor.process.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_skips_pending_single_instrument_run():
    ctl = _controller()
    try:
        ctl.start(interval_ms=60_000, run_immediately=False)
        task = asyncio.create_task(ctl.process_instrument(1))
        ctl.stop()
        assert await task is None
    finally:
        ctl.shutdown()
    ctl.processor.process.assert_not_awaited()
