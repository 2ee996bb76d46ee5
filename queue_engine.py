"""
Packet Queue Simulation Engine
Features:
- Seeded NumPy RNG with inverse-transform exponential sampling
- Heap-based event clock with deterministic tie-breaking
- Single server with an optional finite waiting room (M/D/1/K, M/M/1/K)
- Bounded-memory running statistics (compensated sums, Welford moments)
- Optional per-event trace exported as a pandas DataFrame
"""

import heapq
import json
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

UNBOUNDED_TOKENS = ("unbounded", "none", "inf", "infinite")


# --- Errors ---
class ConfigurationError(ValueError):
    """Raised before a run starts when its parameters cannot be simulated."""


class InvalidConfiguration(ConfigurationError):
    def __init__(self, parameter: str, value: Any, reason: str):
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"invalid {parameter}={value!r}: {reason}")


class PastEventError(AssertionError):
    """An event was scheduled before the current simulated time."""


class QueueInvariantError(AssertionError):
    """The queue/server state or the packet accounting became inconsistent."""


class EventType(Enum):
    ARRIVAL = "ARRIVAL"
    SERVICE_COMPLETION = "SERVICE_COMPLETION"


class ServiceModel(Enum):
    DETERMINISTIC = "deterministic"
    EXPONENTIAL = "exponential"


def parse_queue_limit(value: Union[None, int, float, str]) -> Optional[int]:
    """Normalise a queue-limit setting; ``None`` means unbounded."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidConfiguration("queue_limit", value, "expected a non-negative integer or 'unbounded'")
    limit = value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in UNBOUNDED_TOKENS:
            return None
        try:
            limit = int(text)
        except ValueError:
            raise InvalidConfiguration("queue_limit", value, "expected a non-negative integer or 'unbounded'") from None
    elif isinstance(value, float):
        if value == math.inf:
            return None
        if not value.is_integer():
            raise InvalidConfiguration("queue_limit", value, "expected a non-negative integer or 'unbounded'")
        limit = int(value)
    elif not isinstance(value, (int, np.integer)):
        raise InvalidConfiguration("queue_limit", value, "expected a non-negative integer or 'unbounded'")
    if limit < 0:
        raise InvalidConfiguration("queue_limit", value, "must be >= 0")
    return int(limit)


@dataclass
class SimulationConfig:
    arrival_rate: float = 10000.0        # packets/s
    packet_size: float = 1.0             # bits
    processing_speed: float = 10000.0    # bits/s
    duration: float = 5.0                # simulated seconds
    queue_limit: Optional[int] = None    # waiting room; None = unbounded
    random_seed: Optional[int] = None
    service_model: ServiceModel = ServiceModel.DETERMINISTIC
    trace: bool = False

    def validate(self) -> "SimulationConfig":
        for name in ("arrival_rate", "packet_size", "processing_speed", "duration"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
                raise InvalidConfiguration(name, value, "must be a number")
            if not math.isfinite(value) or value <= 0:
                raise InvalidConfiguration(name, value, "must be a finite number > 0")
        if not 0 < self.packet_size / self.processing_speed < math.inf:
            raise InvalidConfiguration("packet_size", self.packet_size, "service time must be finite and > 0")
        self.queue_limit = parse_queue_limit(self.queue_limit)
        if not isinstance(self.service_model, ServiceModel):
            try:
                self.service_model = ServiceModel(str(self.service_model).strip().lower())
            except ValueError:
                choices = ", ".join(m.value for m in ServiceModel)
                raise InvalidConfiguration("service_model", self.service_model, f"expected one of {choices}") from None
        seed = self.random_seed
        if seed is not None:
            if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)) or seed < 0:
                raise InvalidConfiguration("random_seed", seed, "must be a non-negative integer")
        return self

    @property
    def mean_service_time(self) -> float:
        return self.packet_size / self.processing_speed

    def traffic_intensity(self) -> float:
        return self.arrival_rate * self.mean_service_time

    def to_dict(self) -> Dict:
        d = asdict(self)
        d['service_model'] = self.service_model.value if isinstance(self.service_model, ServiceModel) else self.service_model
        return d


@dataclass(frozen=True)
class Packet:
    packet_id: int
    arrival_time: float
    size_bits: float


@dataclass(frozen=True)
class CompletedPacket:
    packet: Packet
    service_start_time: float
    departure_time: float

    @property
    def waiting_time(self) -> float:
        return self.service_start_time - self.packet.arrival_time

    @property
    def sojourn_time(self) -> float:
        return self.departure_time - self.packet.arrival_time


@dataclass(frozen=True)
class Event:
    time: float
    event_type: EventType
    packet: Optional[Packet] = None

    def __repr__(self):
        pid = self.packet.packet_id if self.packet is not None else "-"
        return f"Event({self.time:.6f}, {self.event_type.value}, P{pid})"


# --- CORE COMPONENT: Random Process Source ---
class RandomSource:
    """Inter-arrival and service-time samples from one isolated generator."""

    def __init__(self, arrival_rate: float, seed: Optional[int] = None,
                 service_model: ServiceModel = ServiceModel.DETERMINISTIC):
        if not arrival_rate > 0:
            raise InvalidConfiguration("arrival_rate", arrival_rate, "must be > 0")
        self.arrival_rate = arrival_rate
        self.service_model = service_model
        self.np_rng = np.random.default_rng(seed)
        self.draws = 0

    def _get_u01(self) -> float:
        self.draws += 1
        return self.np_rng.random()

    def _exponential(self, rate: float) -> float:
        # U in [0, 1) so 1-U in (0, 1]; U == 0 yields 0.0 and is redrawn
        while True:
            u = self._get_u01()
            sample = -(math.log(1.0 - u)) / rate
            if sample > 0.0:
                return sample

    def next_interarrival_time(self) -> float:
        return self._exponential(self.arrival_rate)

    def service_time(self, packet_size_bits: float, processing_speed_bits_per_s: float) -> float:
        if not processing_speed_bits_per_s > 0:
            raise InvalidConfiguration("processing_speed", processing_speed_bits_per_s, "must be > 0")
        if not packet_size_bits > 0:
            raise InvalidConfiguration("packet_size", packet_size_bits, "must be > 0")
        mean = packet_size_bits / processing_speed_bits_per_s
        if self.service_model == ServiceModel.EXPONENTIAL:
            return self._exponential(1.0 / mean)
        return mean


# --- CORE COMPONENT: Event Clock ---
class EventClock:
    """Simulated time plus a min-heap of pending events keyed on (time, seq)."""

    def __init__(self, start_time: float = 0.0):
        self.now = start_time
        self._heap: List[Tuple[float, int, Event]] = []
        self._seq = 0
        self.processed = 0

    def schedule(self, event: Event):
        if event.time < self.now:
            raise PastEventError(f"{event!r} scheduled before current time {self.now!r}")
        heapq.heappush(self._heap, (event.time, self._seq, event))
        self._seq += 1

    def peek(self) -> Optional[Event]:
        return self._heap[0][2] if self._heap else None

    def pop_next(self) -> Optional[Event]:
        if not self._heap: return None
        t, _, event = heapq.heappop(self._heap)
        self.now = t
        self.processed += 1
        return event

    def __len__(self):
        return len(self._heap)


# --- CORE COMPONENT: Queue & Server Model ---
class QueueServer:
    """FIFO waiting room in front of a single server.

    A finite ``queue_limit`` bounds the waiting room only; the packet in
    service does not count against it.
    """

    def __init__(self, clock: EventClock, source: RandomSource, processing_speed: float,
                 queue_limit: Optional[int] = None):
        self.clock = clock
        self.source = source
        self.processing_speed = processing_speed
        self.queue_limit = queue_limit
        self.waiting: Deque[Packet] = deque()
        self.busy = False
        self.in_service: Optional[Packet] = None
        self.service_start_time = 0.0

    def queue_length(self) -> int: return len(self.waiting)
    def in_flight(self) -> int: return len(self.waiting) + (1 if self.busy else 0)

    def is_full(self) -> bool:
        return self.queue_limit is not None and len(self.waiting) >= self.queue_limit

    def on_arrival(self, packet: Packet) -> bool:
        """Admit or drop ``packet``; returns False when it was dropped."""
        if self.busy and self.is_full():
            return False
        if self.busy:
            self.waiting.append(packet)
        else:
            self._start_service(packet)
        return True

    def on_service_completion(self, packet: Packet) -> CompletedPacket:
        if not self.busy or packet is not self.in_service:
            raise QueueInvariantError(f"completion for P{packet.packet_id} which is not in service")
        record = CompletedPacket(packet, self.service_start_time, self.clock.now)
        if self.waiting:
            self._start_service(self.waiting.popleft())
        else:
            self.busy = False
            self.in_service = None
        return record

    def _start_service(self, packet: Packet):
        self.busy = True
        self.in_service = packet
        self.service_start_time = self.clock.now
        svc_time = self.source.service_time(packet.size_bits, self.processing_speed)
        self.clock.schedule(Event(self.clock.now + svc_time, EventType.SERVICE_COMPLETION, packet))


# --- CORE COMPONENT: Statistics Aggregator ---
class CompensatedSum:
    """Neumaier summation for running totals over millions of terms."""
    __slots__ = ("total", "_comp")

    def __init__(self):
        self.total = 0.0
        self._comp = 0.0

    def add(self, value: float):
        t = self.total + value
        if abs(self.total) >= abs(value):
            self._comp += (self.total - t) + value
        else:
            self._comp += (value - t) + self.total
        self.total = t

    @property
    def value(self) -> float:
        return self.total + self._comp


class RunningMoments:
    """Welford mean/variance with a running maximum."""
    __slots__ = ("count", "mean", "_m2", "maximum")

    def __init__(self):
        self.count = 0
        self.mean = 0.0
        self._m2 = 0.0
        self.maximum: Optional[float] = None

    def push(self, x: float):
        self.count += 1
        delta = x - self.mean
        self.mean += delta / self.count
        self._m2 += delta * (x - self.mean)
        if self.maximum is None or x > self.maximum:
            self.maximum = x

    @property
    def variance(self) -> Optional[float]:
        # population variance, matching np.std's default
        return self._m2 / self.count if self.count else None

    @property
    def std(self) -> Optional[float]:
        var = self.variance
        return math.sqrt(max(var, 0.0)) if var is not None else None


@dataclass(frozen=True)
class RunSummary:
    total_arrivals: int
    completions: int
    drops: int
    in_flight_at_cutoff: int
    elapsed_time: float
    throughput: float
    average_sojourn_time: Optional[float]
    std_sojourn_time: Optional[float]
    max_sojourn_time: Optional[float]
    average_waiting_time: Optional[float]
    average_queue_length: float
    average_system_length: float
    max_queue_length: int
    drop_rate: float
    server_utilization: float
    total_busy_time: float
    wall_clock_seconds: float = field(default=0.0, compare=False)

    def to_dict(self, include_wall_clock: bool = False) -> Dict:
        d = asdict(self)
        if not include_wall_clock:
            d.pop('wall_clock_seconds')
        return d

    def to_json(self, include_wall_clock: bool = False) -> str:
        return json.dumps(self.to_dict(include_wall_clock), indent=2)


class StatisticsAggregator:
    """Running sums over completed and dropped packets.

    ``advance`` must be called with the state that held since the previous
    call, before the state changes; the areas under the queue-length and
    busy curves are integrated piecewise from it.
    """

    def __init__(self, start_time: float = 0.0):
        self.last_event_time = start_time
        self.arrivals = 0
        self.completions = 0
        self.drops = 0
        self.max_queue_length = 0
        self.area_under_queue = CompensatedSum()
        self.area_under_system = CompensatedSum()
        self.busy_time = CompensatedSum()
        self.waiting_time = CompensatedSum()
        self.sojourn = RunningMoments()

    def advance(self, now: float, queue_length: int, busy: bool):
        dt = now - self.last_event_time
        if dt <= 0: return
        self.area_under_queue.add(queue_length * dt)
        self.area_under_system.add((queue_length + (1 if busy else 0)) * dt)
        if busy: self.busy_time.add(dt)
        self.last_event_time = now

    def note_queue_length(self, queue_length: int):
        if queue_length > self.max_queue_length:
            self.max_queue_length = queue_length

    def record_arrival(self):
        self.arrivals += 1

    def record_drop(self, packet: Packet):
        self.drops += 1
        logger.debug("Dropped packet %d (arrived at %.6f s)", packet.packet_id, packet.arrival_time)

    def record_completion(self, record: CompletedPacket):
        self.completions += 1
        self.sojourn.push(record.sojourn_time)
        self.waiting_time.add(record.waiting_time)

    def finalize(self, elapsed: float, in_flight: int, wall_clock_seconds: float = 0.0) -> RunSummary:
        if elapsed <= 0:
            raise InvalidConfiguration("duration", elapsed, "must be > 0")
        done = self.completions
        offered = self.drops + done + in_flight
        busy = self.busy_time.value
        return RunSummary(
            total_arrivals=self.arrivals,
            completions=done,
            drops=self.drops,
            in_flight_at_cutoff=in_flight,
            elapsed_time=elapsed,
            throughput=done / elapsed,
            average_sojourn_time=self.sojourn.mean if done else None,
            std_sojourn_time=self.sojourn.std,
            max_sojourn_time=self.sojourn.maximum,
            average_waiting_time=self.waiting_time.value / done if done else None,
            average_queue_length=self.area_under_queue.value / elapsed,
            average_system_length=self.area_under_system.value / elapsed,
            max_queue_length=self.max_queue_length,
            drop_rate=self.drops / offered if offered else 0.0,
            server_utilization=min(max(busy / elapsed, 0.0), 1.0),
            total_busy_time=busy,
            wall_clock_seconds=wall_clock_seconds,
        )


@dataclass
class TraceEntry:
    event_number: int
    clock_time: float
    action: str
    packet_id: int
    queue_length_before: int
    queue_length_after: int
    server_busy: bool
    cumulative_arrivals: int
    cumulative_completions: int
    cumulative_drops: int


@dataclass
class SimulationState:
    """Everything one run mutates; a fresh instance per run keeps runs independent."""
    clock: EventClock
    source: RandomSource
    server: QueueServer
    stats: StatisticsAggregator
    packet_counter: int = 0


# --- CORE COMPONENT: Simulation Driver ---
class Simulation:
    def __init__(self, config: SimulationConfig):
        self.config = config.validate()
        self.state: Optional[SimulationState] = None
        self.trace: List[TraceEntry] = []
        self.summary: Optional[RunSummary] = None

    def _new_state(self) -> SimulationState:
        c = self.config
        clock = EventClock()
        source = RandomSource(c.arrival_rate, seed=c.random_seed, service_model=c.service_model)
        server = QueueServer(clock, source, c.processing_speed, c.queue_limit)
        return SimulationState(clock, source, server, StatisticsAggregator(clock.now))

    def run(self) -> RunSummary:
        started = time.perf_counter()
        c = self.config
        self.state = state = self._new_state()
        self.trace = []
        logger.debug("Starting run: %s", c.to_dict())

        self.schedule_next_arrival()
        while True:
            upcoming = state.clock.peek()
            if upcoming is None or upcoming.time > c.duration: break
            event = state.clock.pop_next()
            state.stats.advance(event.time, state.server.queue_length(), state.server.busy)
            if event.event_type == EventType.ARRIVAL: self.handle_arrival(event)
            elif event.event_type == EventType.SERVICE_COMPLETION: self.handle_service_completion(event)

        state.stats.advance(c.duration, state.server.queue_length(), state.server.busy)
        in_flight = state.server.in_flight()
        stats = state.stats
        if stats.completions + stats.drops + in_flight != stats.arrivals:
            raise QueueInvariantError(
                f"{stats.completions} completed + {stats.drops} dropped + {in_flight} in flight "
                f"!= {stats.arrivals} arrivals")
        self.summary = stats.finalize(c.duration, in_flight, wall_clock_seconds=time.perf_counter() - started)
        logger.debug("Run finished after %d events: %d arrivals, %d completed, %d dropped, %d in flight at cutoff",
                     state.clock.processed, stats.arrivals, stats.completions, stats.drops, in_flight)
        return self.summary

    def schedule_next_arrival(self):
        clock = self.state.clock
        next_time = clock.now + self.state.source.next_interarrival_time()
        if next_time <= self.config.duration:
            clock.schedule(Event(next_time, EventType.ARRIVAL))

    def handle_arrival(self, event: Event):
        state = self.state
        state.packet_counter += 1
        packet = Packet(state.packet_counter, event.time, self.config.packet_size)
        state.stats.record_arrival()
        self.schedule_next_arrival()

        queue_before = state.server.queue_length()
        if state.server.on_arrival(packet):
            action = "ARRIVAL (SERVE)" if state.server.in_service is packet else "ARRIVAL (QUEUE)"
        else:
            state.stats.record_drop(packet)
            action = "DROP"
        state.stats.note_queue_length(state.server.queue_length())
        self.log_event(action, packet.packet_id, queue_before)

    def handle_service_completion(self, event: Event):
        state = self.state
        queue_before = state.server.queue_length()
        record = state.server.on_service_completion(event.packet)
        state.stats.record_completion(record)
        action = "DEPARTURE (NEXT)" if state.server.busy else "DEPARTURE (IDLE)"
        self.log_event(action, record.packet.packet_id, queue_before)

    def log_event(self, action: str, packet_id: int, q_before: int):
        if not self.config.trace: return
        state = self.state
        self.trace.append(TraceEntry(
            len(self.trace) + 1, state.clock.now, action, packet_id,
            q_before, state.server.queue_length(), state.server.busy,
            state.stats.arrivals, state.stats.completions, state.stats.drops))

    # --- Data Export Helpers ---
    def get_trace_dataframe(self) -> pd.DataFrame:
        if not self.trace: return pd.DataFrame()
        return pd.DataFrame([asdict(e) for e in self.trace])

    def export_to_json(self, extra: Optional[Dict] = None) -> str:
        summary = self.summary if self.summary is not None else self.run()
        export_data = {'config': self.config.to_dict(), 'summary': summary.to_dict()}
        if extra:
            export_data.update(extra)
        if self.trace:
            export_data['trace'] = [asdict(e) for e in self.trace]
        return json.dumps(export_data, indent=2)


def run(rate: float, packet_size: float, processing_speed: float, duration: float,
        queue_limit: Union[None, int, str] = None, seed: Optional[int] = None,
        service_model: Union[ServiceModel, str] = ServiceModel.DETERMINISTIC) -> RunSummary:
    """Run one simulation; raises InvalidConfiguration before any work if a parameter is bad."""
    config = SimulationConfig(
        arrival_rate=rate, packet_size=packet_size, processing_speed=processing_speed,
        duration=duration, queue_limit=queue_limit, random_seed=seed, service_model=service_model)
    return Simulation(config).run()
