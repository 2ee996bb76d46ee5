import dataclasses
import logging

import numpy as np
import pytest

from queue_engine import (
    CompensatedSum,
    CompletedPacket,
    Packet,
    RunningMoments,
    StatisticsAggregator,
)


def test_compensated_sum_keeps_small_terms():
    acc = CompensatedSum()
    for v in (1e16, 1.0, -1e16):
        acc.add(v)
    assert acc.value == 1.0
    assert sum([1e16, 1.0, -1e16]) == 0.0


def test_compensated_sum_many_small_terms():
    acc = CompensatedSum()
    for _ in range(100000):
        acc.add(0.1)
    assert acc.value == pytest.approx(10000.0, abs=1e-9)


def test_running_moments_match_numpy():
    data = np.random.default_rng(3).exponential(2.0, size=5000)
    rm = RunningMoments()
    for x in data:
        rm.push(float(x))
    assert rm.count == 5000
    assert rm.mean == pytest.approx(np.mean(data))
    assert rm.std == pytest.approx(np.std(data))
    assert rm.maximum == pytest.approx(np.max(data))


def test_running_moments_empty():
    rm = RunningMoments()
    assert rm.variance is None
    assert rm.std is None
    assert rm.maximum is None


def _done(pid, arrival, start, departure):
    return CompletedPacket(Packet(pid, arrival, 1.0), start, departure)


def test_time_weighted_areas_and_summary():
    agg = StatisticsAggregator()
    for _ in range(4):
        agg.record_arrival()
    agg.advance(1.0, 0, True)        # [0, 1): server busy, nobody waiting
    agg.advance(3.0, 2, True)        # [1, 3): two waiting
    agg.record_completion(_done(1, 0.0, 0.0, 1.0))
    agg.note_queue_length(2)
    agg.advance(4.0, 2, False)       # [3, 4)
    s = agg.finalize(4.0, in_flight=3)

    assert s.total_arrivals == 4
    assert s.completions == 1
    assert s.in_flight_at_cutoff == 3
    assert s.throughput == pytest.approx(0.25)
    assert s.average_sojourn_time == pytest.approx(1.0)
    assert s.average_waiting_time == pytest.approx(0.0)
    assert s.average_queue_length == pytest.approx((0 + 4 + 2) / 4.0)
    assert s.average_system_length == pytest.approx((1 + 6 + 2) / 4.0)
    assert s.total_busy_time == pytest.approx(3.0)
    assert s.server_utilization == pytest.approx(0.75)
    assert s.max_queue_length == 2
    assert s.drop_rate == 0.0


def test_drop_rate_counts_in_flight_in_denominator():
    agg = StatisticsAggregator()
    for _ in range(3):
        agg.record_arrival()
        agg.record_drop(Packet(10, 0.0, 1.0))
    agg.record_completion(_done(1, 0.0, 0.0, 0.5))
    s = agg.finalize(1.0, in_flight=1)
    assert s.drop_rate == pytest.approx(3 / (3 + 1 + 1))


def test_no_completions_reports_no_data():
    agg = StatisticsAggregator()
    s = agg.finalize(2.0, in_flight=0)
    assert s.average_sojourn_time is None
    assert s.average_waiting_time is None
    assert s.std_sojourn_time is None
    assert s.max_sojourn_time is None
    assert s.throughput == 0.0
    assert s.drop_rate == 0.0
    assert s.server_utilization == 0.0


def test_utilization_is_clamped():
    agg = StatisticsAggregator()
    agg.advance(5.0, 0, True)
    assert agg.finalize(4.0, in_flight=1).server_utilization == 1.0


def test_advance_ignores_non_increasing_time():
    agg = StatisticsAggregator(start_time=2.0)
    agg.advance(2.0, 5, True)
    agg.advance(1.0, 5, True)
    assert agg.busy_time.value == 0.0
    assert agg.area_under_queue.value == 0.0


def test_summary_is_immutable_and_ignores_wall_clock():
    agg = StatisticsAggregator()
    a = agg.finalize(1.0, 0, wall_clock_seconds=0.5)
    b = agg.finalize(1.0, 0, wall_clock_seconds=9.0)
    assert a == b
    assert 'wall_clock_seconds' not in a.to_dict()
    assert a.to_dict(include_wall_clock=True)['wall_clock_seconds'] == 0.5
    with pytest.raises(dataclasses.FrozenInstanceError):
        a.completions = 3


def test_drops_are_logged_at_debug(caplog):
    agg = StatisticsAggregator()
    with caplog.at_level(logging.DEBUG, logger="queue_engine"):
        agg.record_arrival()
        agg.record_drop(Packet(42, 1.5, 1.0))
    assert agg.drops == 1
    assert any("packet 42" in r.getMessage() for r in caplog.records)
