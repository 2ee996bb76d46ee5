import pytest

from compare_simpy import SimPyModel, run_head_to_head_validation
from queue_engine import ServiceModel, SimulationConfig


def test_simpy_loss_system_matches_engine():
    cfg = SimulationConfig(arrival_rate=1000.0, packet_size=1.0, processing_speed=10.0,
                           duration=5.0, queue_limit=0, random_seed=8)
    res = run_head_to_head_validation(cfg)
    assert res['has_theory']
    assert res['simpy_drop_rate'] == pytest.approx(res['theoretical_drop_rate'], abs=0.005)
    assert res['diff_drop_rate'] < 0.01


def test_simpy_unbounded_sojourn_matches_engine_and_theory():
    cfg = SimulationConfig(arrival_rate=5.0, packet_size=1.0, processing_speed=10.0,
                           duration=4000.0, random_seed=2)
    res = run_head_to_head_validation(cfg)
    assert res['theoretical_w'] == pytest.approx(0.15)
    assert res['engine_w'] == pytest.approx(0.15, rel=0.1)
    assert res['simpy_w'] == pytest.approx(0.15, rel=0.1)
    assert res['simpy_drop_rate'] == 0.0


def test_simpy_finite_buffer_agrees_on_loss():
    cfg = SimulationConfig(arrival_rate=15.0, packet_size=1.0, processing_speed=10.0,
                           duration=2000.0, queue_limit=3, random_seed=6)
    res = run_head_to_head_validation(cfg)
    assert not res['has_theory']
    assert res['diff_drop_rate'] < 0.03
    assert res['engine_throughput'] == pytest.approx(res['simpy_throughput'], rel=0.03)


def test_simpy_model_counts_every_arrival():
    cfg = SimulationConfig(arrival_rate=50.0, packet_size=1.0, processing_speed=40.0,
                           duration=50.0, queue_limit=2, random_seed=1,
                           service_model=ServiceModel.EXPONENTIAL)
    model = SimPyModel(cfg)
    stats = model.run()
    assert stats['drops'] > 0
    assert stats['completions'] + stats['drops'] <= stats['total_arrivals']
    assert stats['total_arrivals'] - stats['completions'] - stats['drops'] <= 4
