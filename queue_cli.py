"""Console entrypoint for the ``packet-queue-sim`` command."""

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional

from queue_analysis import (
    load_sweep_file,
    run_replications,
    run_sweep,
    theoretical_reference,
)
from queue_engine import (
    ConfigurationError,
    InvalidConfiguration,
    RunSummary,
    ServiceModel,
    Simulation,
    SimulationConfig,
)

logger = logging.getLogger(__name__)

FLAG_NAMES = {
    'arrival_rate': '--rate',
    'packet_size': '--psize',
    'processing_speed': '--pspeed',
    'duration': '--duration',
    'queue_limit': '--qlimit',
    'random_seed': '--seed',
    'service_model': '--service',
    'replications': '--replications',
    'confidence': '--confidence',
    'workers': '--workers',
    'sweep': '--sweep',
    'trace_csv': '--trace-csv',
}

# single-run flags that a sweep file overrides
SWEEP_IGNORED = ('rate', 'psize', 'pspeed', 'duration', 'qlimit', 'seed', 'service',
                 'compare_theory', 'trace_csv')

SWEEP_COLUMNS = ['total_arrivals', 'completions', 'drops', 'throughput', 'average_sojourn_time',
                 'drop_rate', 'server_utilization']


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="packet-queue-sim",
        description="Simulate a single-server packet queue with an optional finite buffer.")
    parser.add_argument("--rate", type=float, default=10000.0, metavar="NUM",
                        help="Average number of generated packets/s (default: %(default)s)")
    parser.add_argument("--psize", type=float, default=1.0, metavar="NUM",
                        help="Packet length in bits (default: %(default)s)")
    parser.add_argument("--pspeed", type=float, default=10000.0, metavar="NUM",
                        help="Processing speed in bits/s (default: %(default)s)")
    parser.add_argument("--duration", type=float, default=5.0, metavar="NUM",
                        help="Simulated seconds to run (default: %(default)s)")
    parser.add_argument("--qlimit", default="unbounded", metavar="NUM",
                        help="Maximum waiting-queue length or 'unbounded' (default: %(default)s)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for a reproducible run")
    parser.add_argument("--service", choices=[m.value for m in ServiceModel],
                        default=ServiceModel.DETERMINISTIC.value,
                        help="Service-time model; exponential uses psize/pspeed as the mean (default: %(default)s)")
    parser.add_argument("--replications", type=int, default=1, metavar="N",
                        help="Independent runs to aggregate into confidence intervals (default: %(default)s)")
    parser.add_argument("--confidence", type=float, default=0.95, metavar="P",
                        help="Confidence level for replications (default: %(default)s)")
    parser.add_argument("--workers", type=int, default=1, metavar="N",
                        help="Worker processes for replications and sweeps (default: %(default)s)")
    parser.add_argument("--sweep", metavar="FILE", help="YAML file describing a parameter grid")
    parser.add_argument("--compare-theory", action="store_true",
                        help="Show closed-form reference values next to the results")
    parser.add_argument("--trace-csv", metavar="PATH", help="Write the per-event trace to a CSV file")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-v info, -vv debug)")
    return parser


def configure_logging(verbosity: int = 0) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def config_from_args(args: argparse.Namespace) -> SimulationConfig:
    return SimulationConfig(
        arrival_rate=args.rate,
        packet_size=args.psize,
        processing_speed=args.pspeed,
        duration=args.duration,
        queue_limit=args.qlimit,
        random_seed=args.seed,
        service_model=args.service,
        trace=bool(args.trace_csv),
    ).validate()


def describe_error(exc: ConfigurationError) -> str:
    if isinstance(exc, InvalidConfiguration):
        flag = FLAG_NAMES.get(exc.parameter, exc.parameter)
        return f"invalid value for {flag}: {exc.value!r} ({exc.reason})"
    return str(exc)


def _fmt(value: Optional[float], unit: str = "", digits: int = 6) -> str:
    if value is None:
        return "no data"
    return f"{value:.{digits}g}{unit}"


def render_summary(config: SimulationConfig, summary: RunSummary, theory: Optional[Dict] = None) -> str:
    limit = "unbounded" if config.queue_limit is None else str(config.queue_limit)
    lines = [
        "Configuration",
        f"  arrival rate         {_fmt(config.arrival_rate, ' packets/s')}",
        f"  packet size          {_fmt(config.packet_size, ' bits')}",
        f"  processing speed     {_fmt(config.processing_speed, ' bits/s')}",
        f"  duration             {_fmt(config.duration, ' s')}",
        f"  queue limit          {limit}",
        f"  service model        {config.service_model.value}",
        f"  traffic intensity    {_fmt(config.traffic_intensity())}",
        "Results",
        f"  arrivals             {summary.total_arrivals}",
        f"  completions          {summary.completions}",
        f"  drops                {summary.drops}",
        f"  in flight at cutoff  {summary.in_flight_at_cutoff}",
        f"  throughput           {_fmt(summary.throughput, ' packets/s')}",
        f"  avg sojourn time     {_fmt(summary.average_sojourn_time, ' s')}",
        f"  avg waiting time     {_fmt(summary.average_waiting_time, ' s')}",
        f"  avg queue length     {_fmt(summary.average_queue_length)}",
        f"  max queue length     {summary.max_queue_length}",
        f"  drop rate            {summary.drop_rate:.4%}",
        f"  utilization          {summary.server_utilization:.4%}",
    ]
    if theory is not None:
        lines.append(f"Theory ({theory['model']})")
        if theory['available']:
            lines += [
                f"  throughput           {_fmt(theory['throughput'], ' packets/s')}",
                f"  avg sojourn time     {_fmt(theory['W'], ' s')}",
                f"  avg queue length     {_fmt(theory['Lq'])}",
                f"  drop rate            {theory['drop_rate']:.4%}",
                f"  utilization          {theory['utilization']:.4%}",
            ]
        else:
            lines.append("  no closed form for this configuration")
    return "\n".join(lines)


def render_replications(results: Dict, confidence: float, num_reps: int) -> str:
    lines = [f"{num_reps} replications, {confidence:.0%} confidence intervals"]
    for key, res in results.items():
        lines.append(f"  {key:<24} {res['mean']:.6g}  [{res['lower']:.6g}, {res['upper']:.6g}]")
    return "\n".join(lines)


def _run_sweep_command(args: argparse.Namespace) -> int:
    parser = build_parser()
    ignored = ['--' + dest.replace('_', '-') for dest in SWEEP_IGNORED
               if getattr(args, dest) != parser.get_default(dest)]
    if ignored:
        logger.warning("Ignoring %s with --sweep; set them under 'base' in %s", ", ".join(ignored), args.sweep)
    base, grid, options = load_sweep_file(args.sweep)
    workers = args.workers if args.workers != 1 else options['workers']
    replications = args.replications if args.replications != 1 else options['replications']
    df = run_sweep(base, grid, workers=workers, replications=replications)
    if args.json:
        print(df.to_json(orient="records", indent=2))
    else:
        cols = list(grid) + [c for c in SWEEP_COLUMNS if c in df.columns]
        print(df[cols].to_string(index=False))
    return 0


def _run_single(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    if args.replications < 1:
        raise InvalidConfiguration("replications", args.replications, "must be >= 1")
    if not 0 < args.confidence < 1:
        raise InvalidConfiguration("confidence", args.confidence, "must be between 0 and 1")
    if args.workers < 1:
        raise InvalidConfiguration("workers", args.workers, "must be >= 1")
    if config.queue_limit is None and config.traffic_intensity() >= 1:
        logger.warning("Traffic intensity %.3f >= 1 with an unbounded queue: the backlog grows without limit",
                       config.traffic_intensity())
    theory = theoretical_reference(config) if args.compare_theory else None

    if args.replications > 1:
        results = run_replications(config, args.replications, args.confidence, workers=args.workers)
        if args.json:
            print(json.dumps({'config': config.to_dict(), 'replications': results, 'theory': theory}, indent=2))
        else:
            print(render_replications(results, args.confidence, args.replications))
        return 0

    sim = Simulation(config)
    summary = sim.run()
    if args.trace_csv:
        try:
            sim.get_trace_dataframe().to_csv(args.trace_csv, index=False)
        except OSError as exc:
            raise InvalidConfiguration("trace_csv", args.trace_csv, f"cannot write trace: {exc}") from exc
        logger.info("Wrote %d trace rows to %s", len(sim.trace), args.trace_csv)
    if args.json:
        print(sim.export_to_json(extra={'theory': theory}))
    else:
        print(render_summary(config, summary, theory))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Parse CLI arguments, run the requested simulation and print the results."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        if args.sweep:
            return _run_sweep_command(args)
        return _run_single(args)
    except ConfigurationError as exc:
        print(f"error: {describe_error(exc)}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
