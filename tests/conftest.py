import sys
from pathlib import Path

# Ensure module import for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from queue_engine import SimulationConfig


@pytest.fixture
def make_config():
    """Build a validated config with small, fast defaults."""

    def _make(**overrides) -> SimulationConfig:
        params = dict(arrival_rate=50.0, packet_size=1.0, processing_speed=100.0,
                      duration=20.0, queue_limit=None, random_seed=11)
        params.update(overrides)
        return SimulationConfig(**params).validate()

    return _make
