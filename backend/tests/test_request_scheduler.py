"""
Debounce and generation tests for RequestScheduler.
"""

import asyncio

import pytest

from analysis_aggregator import AnalysisAggregator
from request_scheduler import RequestScheduler
from test_helpers import AFTER_E4_FEN, START_FEN, FakeEngine

DELAY = 0.02


def make_scheduler(engine=None):
    engine = engine or FakeEngine()
    aggregator = AnalysisAggregator()
    scheduler = RequestScheduler(engine, aggregator, depth=12, delay=DELAY)
    return scheduler, engine, aggregator


async def wait_for_fire(scheduler):
    await asyncio.sleep(DELAY * 3)
    await scheduler.wait_idle()


@pytest.mark.asyncio
async def test_rapid_changes_produce_one_request_for_latest_position():
    scheduler, engine, aggregator = make_scheduler()
    fens = [START_FEN, AFTER_E4_FEN, START_FEN, AFTER_E4_FEN, "8/8/8/8/8/8/8/K6k w - - 0 1"]
    for fen in fens:
        scheduler.position_changed(fen)

    await wait_for_fire(scheduler)

    assert engine.analyze_calls == [("analyze", fens[-1], 12, 1)]
    assert engine.calls[0] == ("stop",)
    assert scheduler.generation == 1
    assert aggregator.fen == fens[-1]
    assert aggregator.generation == 1


@pytest.mark.asyncio
async def test_each_fired_request_gets_a_new_generation():
    scheduler, engine, aggregator = make_scheduler()
    scheduler.position_changed(START_FEN)
    await wait_for_fire(scheduler)
    scheduler.position_changed(AFTER_E4_FEN)
    await wait_for_fire(scheduler)

    assert [call[3] for call in engine.analyze_calls] == [1, 2]
    assert scheduler.in_flight == 2
    assert aggregator.generation == 2


@pytest.mark.asyncio
async def test_cancel_is_pure():
    scheduler, engine, aggregator = make_scheduler()
    scheduler.position_changed(START_FEN)
    assert scheduler.has_pending
    scheduler.cancel()
    assert not scheduler.has_pending

    await wait_for_fire(scheduler)

    assert engine.calls == []
    assert scheduler.generation == 0
    assert aggregator.generation == 0


@pytest.mark.asyncio
async def test_mark_complete_only_clears_matching_generation():
    scheduler, engine, _ = make_scheduler()
    scheduler.position_changed(START_FEN)
    await wait_for_fire(scheduler)

    scheduler.mark_complete(7)
    assert scheduler.in_flight == 1
    scheduler.mark_complete(1)
    assert scheduler.in_flight is None


@pytest.mark.asyncio
async def test_unavailable_engine_disables_analysis():
    scheduler, engine, _ = make_scheduler(FakeEngine(unavailable=True))
    scheduler.position_changed(START_FEN)
    await wait_for_fire(scheduler)

    assert not scheduler.analysis_available
    assert scheduler.in_flight is None

    scheduler.position_changed(AFTER_E4_FEN)
    assert not scheduler.has_pending
    assert scheduler.generation == 1


@pytest.mark.asyncio
async def test_halt_stops_in_flight_search():
    scheduler, engine, _ = make_scheduler()
    scheduler.position_changed(START_FEN)
    await wait_for_fire(scheduler)
    assert scheduler.in_flight == 1

    scheduler.position_changed(AFTER_E4_FEN)
    scheduler.halt()
    await wait_for_fire(scheduler)

    assert scheduler.in_flight is None
    assert not scheduler.has_pending
    assert engine.calls[-1] == ("stop",)
    assert len(engine.analyze_calls) == 1


@pytest.mark.asyncio
async def test_halt_without_search_leaves_engine_alone():
    scheduler, engine, _ = make_scheduler()
    scheduler.halt()
    await wait_for_fire(scheduler)
    assert engine.calls == []
