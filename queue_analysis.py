"""
Analysis helpers built on the packet queue engine:
- Closed-form reference values (M/M/1, M/D/1, M/M/1/K, Erlang loss)
- Independent replications with Student-t confidence intervals
- Grid parameter sweeps, optionally spread over worker processes
- YAML sweep definitions
"""

import itertools
import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import yaml
from scipy import stats as scipy_stats

from queue_engine import (
    InvalidConfiguration,
    RunSummary,
    ServiceModel,
    Simulation,
    SimulationConfig,
)

logger = logging.getLogger(__name__)

REPLICATION_METRICS = (
    'throughput', 'drop_rate', 'server_utilization', 'average_sojourn_time',
    'average_waiting_time', 'average_queue_length', 'average_system_length',
)

# CLI flag names accepted as synonyms in sweep files
PARAMETER_ALIASES = {
    'rate': 'arrival_rate',
    'psize': 'packet_size',
    'pspeed': 'processing_speed',
    'qlimit': 'queue_limit',
    'seed': 'random_seed',
    'service': 'service_model',
}

CONFIG_FIELDS = tuple(f.name for f in fields(SimulationConfig))


def _unavailable(model: str, rho: float, stable: bool) -> Dict:
    return {'available': False, 'model': model, 'rho': rho, 'stable': stable,
            'L': None, 'Lq': None, 'W': None, 'Wq': None,
            'throughput': None, 'utilization': None, 'drop_rate': None}


def theoretical_reference(config: SimulationConfig) -> Dict:
    """Steady-state values for the configured queue, where a closed form exists."""
    c = config.validate()
    lam = c.arrival_rate
    svc = c.mean_service_time
    mu = 1.0 / svc
    rho = lam / mu
    exponential = c.service_model == ServiceModel.EXPONENTIAL

    if c.queue_limit == 0:
        # single-server loss system; insensitive to the service distribution
        p_block = rho / (1.0 + rho)
        thr = lam * (1.0 - p_block)
        return {'available': True, 'model': 'Erlang loss (c=1)', 'rho': rho, 'stable': True,
                'L': thr * svc, 'Lq': 0.0, 'W': svc, 'Wq': 0.0,
                'throughput': thr, 'utilization': thr * svc, 'drop_rate': p_block}

    if c.queue_limit is None:
        model = 'M/M/1' if exponential else 'M/D/1'
        if rho >= 1:
            return _unavailable(model, rho, False)
        # Pollaczek-Khinchine: Lq = rho^2 (1 + Cs^2) / (2 (1 - rho))
        cs2 = 1.0 if exponential else 0.0
        Lq = rho ** 2 * (1.0 + cs2) / (2.0 * (1.0 - rho))
        Wq = Lq / lam
        W = Wq + svc
        return {'available': True, 'model': model, 'rho': rho, 'stable': True,
                'L': lam * W, 'Lq': Lq, 'W': W, 'Wq': Wq,
                'throughput': lam, 'utilization': rho, 'drop_rate': 0.0}

    K = c.queue_limit + 1
    if not exponential:
        return _unavailable(f'M/D/1/{K}', rho, True)
    # M/M/1/K: p_n proportional to rho^n, computed in log space to avoid overflow
    n = np.arange(K + 1)
    log_w = n * np.log(rho)
    w = np.exp(log_w - log_w.max())
    p = w / w.sum()
    p_block = float(p[-1])
    L = float(np.dot(n, p))
    Lq = L - (1.0 - float(p[0]))
    lam_eff = lam * (1.0 - p_block)
    return {'available': True, 'model': f'M/M/1/{K}', 'rho': rho, 'stable': True,
            'L': L, 'Lq': Lq, 'W': L / lam_eff, 'Wq': Lq / lam_eff,
            'throughput': lam_eff, 'utilization': 1.0 - float(p[0]), 'drop_rate': p_block}


def compute_confidence_interval(data: Sequence[float], confidence: float = 0.95) -> Tuple[float, float, float]:
    if not 0 < confidence < 1:
        raise InvalidConfiguration("confidence", confidence, "must be between 0 and 1")
    values = [v for v in data if v is not None]
    if not values: return 0.0, 0.0, 0.0
    m = float(np.mean(values))
    if len(values) < 2: return m, m, m
    se = scipy_stats.sem(values)
    if not se > 0: return m, m, m
    h = float(se * scipy_stats.t.ppf((1 + confidence) / 2, len(values) - 1))
    return m, m - h, m + h


def simulate(config: SimulationConfig) -> RunSummary:
    """Module-level so it can be shipped to worker processes."""
    return Simulation(config).run()


def run_many(configs: Sequence[SimulationConfig], workers: int = 1) -> List[RunSummary]:
    """Run independent configurations, preserving input order."""
    if workers < 1:
        raise InvalidConfiguration("workers", workers, "must be >= 1")
    configs = [cfg.validate() for cfg in configs]
    if workers == 1 or len(configs) < 2:
        return [simulate(cfg) for cfg in configs]
    logger.info("Running %d simulations on %d worker processes", len(configs), workers)
    with ProcessPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(simulate, configs))


def run_replications(config: SimulationConfig, num_reps: int = 10, confidence: float = 0.95,
                     workers: int = 1) -> Dict[str, Dict[str, Any]]:
    if num_reps < 1:
        raise InvalidConfiguration("replications", num_reps, "must be >= 1")
    if not 0 < confidence < 1:
        raise InvalidConfiguration("confidence", confidence, "must be between 0 and 1")
    config.validate()
    base_seed = config.random_seed if config.random_seed is not None else 12345
    configs = [replace(config, random_seed=base_seed + i * 997, trace=False) for i in range(num_reps)]
    summaries = run_many(configs, workers)

    ci_results = {}
    for key in REPLICATION_METRICS:
        vals = [getattr(s, key) for s in summaries]
        present = [v for v in vals if v is not None]
        m, lo, hi = compute_confidence_interval(present, confidence)
        ci_results[key] = {'mean': m, 'lower': lo, 'upper': hi,
                           'std': float(np.std(present)) if present else 0.0, 'values': vals}
    return ci_results


def normalise_parameters(params: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in params.items():
        name = PARAMETER_ALIASES.get(key, key)
        if name not in CONFIG_FIELDS:
            raise InvalidConfiguration("sweep", key, "unknown simulation parameter")
        out[name] = value
    return out


def _iter_grid(grid: Dict[str, Iterable[Any]]):
    keys = list(grid)
    for values in itertools.product(*(grid[k] for k in keys)):
        yield dict(zip(keys, values))


def run_sweep(base: SimulationConfig, grid: Dict[str, Sequence[Any]], workers: int = 1,
              replications: int = 1) -> pd.DataFrame:
    """One row per grid point: the swept values plus the run summary.

    Every grid point reuses the base seed (common random numbers), so
    differences between rows come from the parameters rather than the noise.
    With ``replications > 1`` each point is averaged over that many seeds.
    """
    grid = normalise_parameters(grid)
    for key, values in grid.items():
        if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
            raise InvalidConfiguration("sweep", key, "grid values must be a list")
    if replications < 1:
        raise InvalidConfiguration("replications", replications, "must be >= 1")
    base.validate()
    base_seed = base.random_seed if base.random_seed is not None else 12345

    points = list(_iter_grid(grid))
    configs = []
    for combo in points:
        point_seed = combo.get('random_seed')
        if point_seed is None:
            point_seed = base_seed
        for i in range(replications):
            cfg = replace(base, **{**combo, 'trace': False})
            if isinstance(point_seed, int) and not isinstance(point_seed, bool):
                cfg.random_seed = point_seed + i * 997
            configs.append(cfg.validate())
    summaries = run_many(configs, workers)

    rows = []
    for idx, combo in enumerate(points):
        chunk = summaries[idx * replications:(idx + 1) * replications]
        row = {k: (v.value if isinstance(v, ServiceModel) else v) for k, v in combo.items()}
        if replications == 1:
            row.update(chunk[0].to_dict())
        else:
            for key in chunk[0].to_dict():
                vals = [getattr(s, key) for s in chunk if getattr(s, key) is not None]
                row[key] = float(np.mean(vals)) if vals else None
        rows.append(row)
    return pd.DataFrame(rows)


def load_sweep_file(path: Union[str, Path]) -> Tuple[SimulationConfig, Dict[str, List[Any]], Dict[str, Any]]:
    """Read a YAML sweep definition: ``base`` mapping, ``grid`` mapping, optional options."""
    try:
        with Path(path).open() as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise InvalidConfiguration("sweep", str(path), f"cannot read sweep file: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidConfiguration("sweep", str(path), "expected a mapping at the top level")
    unknown = set(data) - {'base', 'grid', 'workers', 'replications'}
    if unknown:
        raise InvalidConfiguration("sweep", ", ".join(sorted(unknown)), "unknown top-level keys")
    grid = data.get('grid') or {}
    if not isinstance(grid, dict) or not grid:
        raise InvalidConfiguration("sweep", str(path), "'grid' must map parameters to lists of values")
    base_data = data.get('base') or {}
    if not isinstance(base_data, dict):
        raise InvalidConfiguration("sweep", str(path), "'base' must be a mapping")
    base = SimulationConfig(**normalise_parameters(base_data)).validate()
    options = {}
    for key in ('workers', 'replications'):
        value = data.get(key, 1)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidConfiguration(key, value, "must be a positive integer")
        options[key] = value
    return base, normalise_parameters(grid), options


def run_comparative_analysis(configs: List[SimulationConfig], workers: int = 1) -> pd.DataFrame:
    """Side-by-side summaries for arbitrary configurations, with analytic values."""
    summaries = run_many(configs, workers)
    rows = []
    for cfg, summary in zip(configs, summaries):
        theo = theoretical_reference(cfg)
        row = cfg.to_dict()
        row.pop('trace', None)
        row.update(summary.to_dict())
        row['traffic_intensity'] = cfg.traffic_intensity()
        row['theoretical_model'] = theo['model']
        row['theoretical_W'] = theo['W']
        row['theoretical_drop_rate'] = theo['drop_rate']
        rows.append(row)
    return pd.DataFrame(rows)
