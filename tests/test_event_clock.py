import pytest

from queue_engine import Event, EventClock, EventType, Packet, PastEventError


def test_pops_in_time_order_and_advances_clock():
    clock = EventClock()
    for t in (3.0, 1.0, 2.0):
        clock.schedule(Event(t, EventType.ARRIVAL))
    times = []
    while len(clock):
        ev = clock.pop_next()
        times.append(ev.time)
        assert clock.now == ev.time
    assert times == [1.0, 2.0, 3.0]
    assert clock.processed == 3


def test_ties_break_by_insertion_order():
    clock = EventClock()
    pkt = Packet(1, 0.0, 1.0)
    first = Event(1.0, EventType.SERVICE_COMPLETION, pkt)
    second = Event(1.0, EventType.ARRIVAL)
    third = Event(1.0, EventType.SERVICE_COMPLETION, Packet(2, 0.0, 1.0))
    for ev in (first, second, third):
        clock.schedule(ev)
    popped = [clock.pop_next() for _ in range(3)]
    assert popped[0] is first
    assert popped[1] is second
    assert popped[2] is third


def test_empty_clock_returns_none():
    clock = EventClock(start_time=4.0)
    assert clock.peek() is None
    assert clock.pop_next() is None
    assert clock.now == 4.0


def test_peek_does_not_consume():
    clock = EventClock()
    ev = Event(0.5, EventType.ARRIVAL)
    clock.schedule(ev)
    assert clock.peek() is ev
    assert len(clock) == 1
    assert clock.now == 0.0


def test_scheduling_in_the_past_is_an_assertion():
    clock = EventClock()
    clock.schedule(Event(2.0, EventType.ARRIVAL))
    clock.pop_next()
    with pytest.raises(PastEventError):
        clock.schedule(Event(1.999, EventType.ARRIVAL))
    with pytest.raises(AssertionError):
        clock.schedule(Event(0.0, EventType.ARRIVAL))
    # same instant is allowed
    clock.schedule(Event(2.0, EventType.ARRIVAL))
    assert len(clock) == 1
