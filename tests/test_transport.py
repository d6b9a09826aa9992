"""Tests for the transport clock and its sequence/loop helpers.

Most tests drive an unthreaded :class:`Transport` with a fake clock and call
``process`` directly, which makes event timing fully deterministic. A single
smoke test runs the real worker thread."""

import logging
import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock  # noqa: E402
from emotive_melody.transport import PAUSED, STARTED, STOPPED, Loop, Sequence, Transport  # noqa: E402


def _transport(bpm=60, clock=None):
    return Transport(bpm=bpm, clock=clock or FakeClock(), threaded=False)


def test_invalid_parameters_raise():
    with pytest.raises(ValueError):
        Transport(bpm=0, threaded=False)
    with pytest.raises(ValueError):
        Transport(interval=0, threaded=False)
    with pytest.raises(ValueError):
        Transport(lookahead=-1, threaded=False)
    transport = _transport()
    with pytest.raises(ValueError):
        transport.bpm = -10
    with pytest.raises(ValueError):
        transport.schedule_repeat(lambda t, i: None, 0)


def test_loop_fires_on_each_beat():
    clock = FakeClock()
    transport = _transport(bpm=60, clock=clock)
    hits = []
    Loop(transport, hits.append, 1.0).start(0)
    transport.start()

    assert transport.process(0.0) == 1
    assert transport.process(0.5) == 0
    assert transport.process(1.0) == 1
    assert hits == [0.0, 1.0]


def test_sequence_steps_through_events_and_loops():
    clock = FakeClock()
    transport = _transport(bpm=120, clock=clock)
    seen = []
    Sequence(transport, lambda when, event: seen.append((when, event)), ["C4", "E4", None], 0.5).start(0)
    transport.start()

    assert transport.process(1.0) == 5
    assert seen == [
        (0.0, "C4"),
        (0.25, "E4"),
        (0.5, None),
        (0.75, "C4"),
        (1.0, "E4"),
    ]


def test_sequence_and_loop_share_beat_zero():
    clock = FakeClock(5.0)
    transport = _transport(bpm=100, clock=clock)
    melody, pad = [], []
    Sequence(transport, lambda when, event: melody.append(when), ["C4"], 1.0).start(0)
    Loop(transport, pad.append, 4.0).start(0)
    transport.start()
    transport.process(5.0)
    assert melody == pad == [5.0]


def test_pause_freezes_position_and_resume_continues():
    clock = FakeClock()
    transport = _transport(bpm=120, clock=clock)
    hits = []
    Loop(transport, hits.append, 1.0).start(0)
    transport.start()
    transport.process(0.0)

    clock.advance(0.25)
    transport.pause()
    assert transport.state == PAUSED
    assert transport.position == pytest.approx(0.5)
    clock.advance(10.0)
    assert transport.process(clock()) == 0

    transport.start()
    assert transport.position == pytest.approx(0.5)
    # Beat 1 is a quarter of a second after resuming.
    assert transport.process(clock.now + 0.25) == 1
    assert hits[-1] == pytest.approx(10.5)


def test_stop_rewinds_to_beat_zero():
    clock = FakeClock()
    transport = _transport(bpm=60, clock=clock)
    iterations = []
    transport.schedule_repeat(lambda when, iteration: iterations.append(iteration), 1.0)
    transport.start()
    transport.process(2.0)
    assert iterations == [0, 1, 2]

    transport.stop()
    assert transport.state == STOPPED
    assert transport.position == 0.0
    clock.advance(100.0)
    transport.start()
    transport.process(clock())
    assert iterations == [0, 1, 2, 0]


def test_tempo_change_keeps_position_continuous():
    clock = FakeClock()
    transport = _transport(bpm=60, clock=clock)
    transport.start()
    clock.advance(2.0)
    assert transport.position == pytest.approx(2.0)
    transport.bpm = 120
    assert transport.position == pytest.approx(2.0)
    clock.advance(1.0)
    assert transport.position == pytest.approx(4.0)


def test_scheduling_while_started_starts_at_next_occurrence():
    clock = FakeClock()
    transport = _transport(bpm=60, clock=clock)
    seen = []
    transport.start()
    clock.advance(2.5)
    transport.schedule_repeat(lambda when, iteration: seen.append((when, iteration)), 1.0)
    assert transport.process(2.5) == 0
    assert transport.process(3.0) == 1
    assert seen == [(3.0, 3)]


def test_clear_and_cancel_remove_events():
    transport = _transport()
    first = transport.schedule_repeat(lambda t, i: None, 1.0)
    transport.schedule_repeat(lambda t, i: None, 1.0)
    assert transport.scheduled == 2
    transport.clear(first)
    transport.clear(12345)
    assert transport.scheduled == 1
    transport.cancel()
    assert transport.scheduled == 0


def test_failing_callback_does_not_stop_other_events(caplog):
    transport = _transport()
    hits = []

    def broken(_when, _iteration):
        raise RuntimeError("boom")

    transport.schedule_repeat(broken, 1.0)
    transport.schedule_repeat(lambda when, iteration: hits.append(when), 1.0)
    transport.start()
    with caplog.at_level(logging.ERROR):
        assert transport.process(0.0) == 2
    assert hits == [0.0]
    assert "failed" in caplog.text


def test_disposed_helpers_cannot_restart():
    transport = _transport()
    sequence = Sequence(transport, lambda when, event: None, ["C4"], 1.0)
    loop = Loop(transport, lambda when: None, 4.0)
    sequence.start()
    loop.start()
    assert sequence.started and loop.started
    sequence.dispose()
    loop.dispose()
    assert transport.scheduled == 0
    with pytest.raises(RuntimeError):
        sequence.start()
    with pytest.raises(RuntimeError):
        loop.start()


def test_sequence_requires_events():
    with pytest.raises(ValueError):
        Sequence(_transport(), lambda when, event: None, [], 1.0)


def test_closed_transport_cannot_start():
    transport = _transport()
    transport.close()
    transport.close()
    with pytest.raises(RuntimeError):
        transport.start()


def test_threaded_transport_fires_and_stops_cleanly():
    """The worker thread dispatches events and stays quiet after ``stop``."""
    transport = Transport(bpm=600, interval=0.005)
    fired = threading.Event()
    hits = []

    def on_tick(when):
        hits.append(when)
        if len(hits) >= 3:
            fired.set()

    Loop(transport, on_tick, 1.0).start(0)
    try:
        transport.start()
        assert transport.state == STARTED
        assert fired.wait(2.0)
        transport.stop()
        count = len(hits)
        time.sleep(0.1)
        assert len(hits) == count
    finally:
        transport.close()
