import pytest

from queue_engine import (
    EventClock,
    EventType,
    Packet,
    QueueInvariantError,
    QueueServer,
    RandomSource,
)


def _server(queue_limit=None, speed=10.0):
    clock = EventClock()
    source = RandomSource(1.0, seed=0)
    return clock, QueueServer(clock, source, speed, queue_limit)


def test_idle_arrival_starts_service_immediately():
    clock, server = _server()
    pkt = Packet(1, 0.0, 1.0)
    assert server.on_arrival(pkt)
    assert server.busy
    assert server.in_service is pkt
    assert server.queue_length() == 0
    ev = clock.peek()
    assert ev.event_type == EventType.SERVICE_COMPLETION
    assert ev.packet is pkt
    assert ev.time == pytest.approx(0.1)


def test_busy_arrival_waits_then_full_buffer_drops():
    clock, server = _server(queue_limit=1)
    p1, p2, p3 = (Packet(i, 0.0, 1.0) for i in (1, 2, 3))
    assert server.on_arrival(p1)
    assert server.on_arrival(p2)
    assert not server.on_arrival(p3)
    assert list(server.waiting) == [p2]
    assert server.in_flight() == 2
    assert len(clock) == 1


def test_zero_limit_drops_whenever_busy():
    _, server = _server(queue_limit=0)
    assert server.on_arrival(Packet(1, 0.0, 1.0))
    assert not server.on_arrival(Packet(2, 0.0, 1.0))
    assert server.queue_length() == 0


def test_zero_limit_admits_when_idle():
    clock, server = _server(queue_limit=0)
    p1 = Packet(1, 0.0, 1.0)
    server.on_arrival(p1)
    ev = clock.pop_next()
    server.on_service_completion(ev.packet)
    assert not server.busy
    assert server.on_arrival(Packet(2, clock.now, 1.0))


def test_unbounded_never_drops():
    _, server = _server(queue_limit=None)
    assert all(server.on_arrival(Packet(i, 0.0, 1.0)) for i in range(1, 501))
    assert server.queue_length() == 499


def test_completion_serves_fifo_and_records_sojourn():
    clock, server = _server()
    packets = [Packet(i, 0.0, 1.0) for i in (1, 2, 3)]
    for p in packets:
        server.on_arrival(p)
    served = []
    while len(clock):
        ev = clock.pop_next()
        record = server.on_service_completion(ev.packet)
        served.append(record)
    assert [r.packet for r in served] == packets
    assert [r.sojourn_time for r in served] == pytest.approx([0.1, 0.2, 0.3])
    assert [r.waiting_time for r in served] == pytest.approx([0.0, 0.1, 0.2])
    assert not server.busy
    assert server.in_service is None


def test_completion_for_wrong_packet_is_an_invariant_error():
    _, server = _server()
    server.on_arrival(Packet(1, 0.0, 1.0))
    with pytest.raises(QueueInvariantError):
        server.on_service_completion(Packet(1, 0.0, 1.0))


def test_completion_while_idle_is_an_invariant_error():
    _, server = _server()
    with pytest.raises(QueueInvariantError):
        server.on_service_completion(Packet(7, 0.0, 1.0))
