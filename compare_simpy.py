"""
Validation: Event-Scheduling Engine vs. SimPy
---------------------------------------------
Runs the same single-server queue twice:
1. queue_engine.Simulation (event scheduling, explicit clock)
2. SimPy (process interaction, simpy.Resource with capacity 1)

Both apply the same finite-buffer rule: an arrival that finds the server busy
and the waiting room full is dropped. The two engines use different random
streams, so agreement is statistical, not sample-for-sample.
"""

import logging
from typing import Dict, List, Optional

import numpy as np
import simpy

from queue_analysis import theoretical_reference
from queue_engine import ServiceModel, Simulation, SimulationConfig

logger = logging.getLogger(__name__)


class SimPyModel:
    def __init__(self, config: SimulationConfig, seed: Optional[int] = None):
        self.config = config.validate()
        self.env = simpy.Environment()
        self.server = simpy.Resource(self.env, capacity=1)
        self.rng = np.random.default_rng(seed if seed is not None else config.random_seed)
        self.arrivals = 0
        self.drops = 0
        self.sojourn_times: List[float] = []
        self.wait_times: List[float] = []

    def _service_time(self) -> float:
        mean = self.config.mean_service_time
        if self.config.service_model == ServiceModel.EXPONENTIAL:
            return self.rng.exponential(mean)
        return mean

    def _buffer_full(self) -> bool:
        limit = self.config.queue_limit
        return limit is not None and self.server.count >= 1 and len(self.server.queue) >= limit

    def packet_generator(self):
        while True:
            # Numpy exponential takes scale (1/lambda)
            yield self.env.timeout(self.rng.exponential(1.0 / self.config.arrival_rate))
            self.arrivals += 1
            if self._buffer_full():
                self.drops += 1
                continue
            self.env.process(self.packet_process())

    def packet_process(self):
        arrival_time = self.env.now
        with self.server.request() as request:
            yield request
            self.wait_times.append(self.env.now - arrival_time)
            yield self.env.timeout(self._service_time())
            self.sojourn_times.append(self.env.now - arrival_time)

    def run(self) -> Dict:
        self.env.process(self.packet_generator())
        self.env.run(until=self.config.duration)
        completions = len(self.sojourn_times)
        return {
            'total_arrivals': self.arrivals,
            'completions': completions,
            'drops': self.drops,
            'average_sojourn_time': float(np.mean(self.sojourn_times)) if completions else None,
            'average_waiting_time': float(np.mean(self.wait_times)) if self.wait_times else None,
            'drop_rate': self.drops / self.arrivals if self.arrivals else 0.0,
            'throughput': completions / self.config.duration,
        }


def run_head_to_head_validation(config: SimulationConfig) -> Dict:
    """Engine, SimPy and (when available) closed-form values for one configuration."""
    config.validate()
    theo = theoretical_reference(config)
    engine = Simulation(config).run()
    simpy_stats = SimPyModel(config).run()
    logger.info("Engine W=%s SimPy W=%s theory W=%s",
                engine.average_sojourn_time, simpy_stats['average_sojourn_time'], theo['W'])

    def _diff(a, b):
        return abs(a - b) if a is not None and b is not None else None

    return {
        'theoretical_w': theo['W'],
        'theoretical_drop_rate': theo['drop_rate'],
        'has_theory': theo['available'],
        'engine_w': engine.average_sojourn_time,
        'simpy_w': simpy_stats['average_sojourn_time'],
        'engine_drop_rate': engine.drop_rate,
        'simpy_drop_rate': simpy_stats['drop_rate'],
        'engine_throughput': engine.throughput,
        'simpy_throughput': simpy_stats['throughput'],
        'diff_w': _diff(engine.average_sojourn_time, simpy_stats['average_sojourn_time']),
        'diff_drop_rate': abs(engine.drop_rate - simpy_stats['drop_rate']),
    }


if __name__ == "__main__":
    cfg = SimulationConfig(arrival_rate=8.0, packet_size=1.0, processing_speed=10.0,
                           duration=20000.0, queue_limit=None, random_seed=42)

    print("--- SIMULATION CONFIGURATION ---")
    print(f"Arrival Rate (λ): {cfg.arrival_rate}")
    print(f"Service Time:     {cfg.mean_service_time} s ({cfg.service_model.value})")
    print(f"Time Horizon:     {cfg.duration} seconds")
    print("-" * 40)

    res = run_head_to_head_validation(cfg)
    print(f"Theoretical W:    {res['theoretical_w']:.5f} s")
    print(f"Custom Engine W:  {res['engine_w']:.5f} s")
    print(f"SimPy Library W:  {res['simpy_w']:.5f} s")
    print(f"\nDifference between Engines: {res['diff_w']:.6f} s")
