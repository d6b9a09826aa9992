"""Tests for the playback engine and its session lifecycle.

A :class:`~fakes.RecordingBackend` stands in for the sound card and the
transport runs unthreaded on a fake clock, so every scheduled callback fires
exactly when the test calls ``process``."""

import dataclasses
import random
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock, RecordingBackend  # noqa: E402
from emotive_melody.errors import AudioUnavailable, SessionCancelled  # noqa: E402
from emotive_melody.mapping import PAD, WARM, EmotionAnalysis  # noqa: E402
from emotive_melody.playback import (  # noqa: E402
    HARMONY_VOLUME_DB,
    IDLE,
    MELODY_VOLUME_DB,
    PAUSED,
    REVERB_DECAY,
    REVERB_WET,
    RUNNING,
    PlaybackEngine,
)
from emotive_melody.sequencer import build_session_plan  # noqa: E402
from emotive_melody.transport import Transport  # noqa: E402

CALM = EmotionAnalysis("joy", "hope", 2, "warm", "stable")
STORM = EmotionAnalysis("anger", "fear", 9, "cold", "chaotic")


def _engine(**backend_options):
    clock = FakeClock()
    backend = RecordingBackend(clock, **backend_options)
    transport = Transport(clock=clock, threaded=False)
    return PlaybackEngine(backend, transport=transport, rng=random.Random(0)), backend, clock


def test_start_builds_one_complete_session():
    engine, backend, _clock = _engine()
    handle = engine.start(CALM)

    assert engine.state == RUNNING
    assert engine.is_running
    assert backend.acquire_calls == 1
    [reverb] = backend.reverbs
    melody, harmony = backend.voices
    assert (reverb.decay, reverb.wet) == (REVERB_DECAY, REVERB_WET)
    assert melody.timbre is WARM
    assert melody.volume_db == MELODY_VOLUME_DB
    assert harmony.timbre is PAD
    assert harmony.volume_db == HARMONY_VOLUME_DB
    assert melody.send is reverb and harmony.send is reverb
    assert engine.transport.bpm == handle.bpm == 70.0
    assert engine.transport.scheduled == 2
    assert handle.active


def test_melody_and_harmony_fire_together_on_beat_zero():
    engine, backend, clock = _engine()
    handle = engine.start(CALM)
    melody, harmony = backend.voices
    beat = 60.0 / 70.0

    engine.transport.process(clock())
    [(notes, duration, when)] = melody.triggers
    assert notes == (handle.plan.melody[0],)
    assert duration == pytest.approx(beat)
    assert when == 0.0
    assert harmony.triggers == [(handle.plan.chord, pytest.approx(2 * beat), 0.0)]


def test_harmony_repeats_once_per_measure():
    engine, backend, clock = _engine()
    engine.start(CALM)
    _melody, harmony = backend.voices
    beat = 60.0 / 70.0

    engine.transport.process(clock.advance(8 * beat))
    assert [when for _notes, _duration, when in harmony.triggers] == pytest.approx([0.0, 4 * beat, 8 * beat])


def test_rests_are_skipped():
    engine, backend, clock = _engine()
    plan = build_session_plan(CALM, random.Random(1))
    silent = dataclasses.replace(plan, melody=(None, None, None, None))
    engine.start(silent)
    melody, harmony = backend.voices

    engine.transport.process(clock.advance(3.0))
    assert melody.triggers == []
    assert harmony.triggers


def test_start_with_plan_uses_its_tempo():
    engine, _backend, _clock = _engine()
    plan = build_session_plan(STORM, random.Random(5))
    handle = engine.start(plan)
    assert handle.plan is plan
    assert engine.transport.bpm == plan.bpm


def test_starting_twice_leaves_a_single_live_session():
    engine, backend, _clock = _engine()
    first = engine.start(CALM)
    second = engine.start(STORM)

    assert not first.active
    assert second.active
    assert len(backend.live_resources()) == 3
    assert all(resource.disposed for resource in backend.reverbs[:1] + backend.voices[:2])
    assert engine.transport.scheduled == 2


def test_stop_releases_everything_and_is_idempotent():
    engine, backend, clock = _engine()
    engine.stop()
    engine.start(CALM)
    engine.transport.process(clock.advance(1.0))

    engine.stop()
    engine.stop()
    assert engine.state == IDLE
    assert engine.session is None
    assert backend.live_resources() == []
    assert engine.transport.scheduled == 0
    assert engine.transport.position == 0.0
    assert all(voice.releases == 1 for voice in backend.voices)


def test_no_callbacks_fire_after_stop():
    engine, backend, clock = _engine()
    engine.start(CALM)
    engine.stop()
    assert engine.transport.process(clock.advance(5.0)) == 0
    assert all(voice.triggers == [] for voice in backend.voices)


def test_toggle_before_start_is_a_noop():
    engine, backend, _clock = _engine()
    assert engine.toggle() is False
    assert engine.state == IDLE
    assert backend.acquire_calls == 0


def test_toggle_pauses_and_resumes():
    engine, backend, clock = _engine()
    engine.start(CALM)
    assert engine.toggle() is False
    assert engine.state == PAUSED
    assert engine.transport.process(clock.advance(5.0)) == 0
    assert engine.toggle() is True
    assert engine.state == RUNNING
    assert backend.live_resources()


def test_acquire_failure_leaves_engine_idle():
    engine, backend, _clock = _engine(fail_acquire=True)
    with pytest.raises(AudioUnavailable):
        engine.start(CALM)
    assert engine.state == IDLE
    assert backend.reverbs == [] and backend.voices == []
    assert engine.transport.scheduled == 0


def test_failed_build_disposes_partial_resources():
    engine, backend, _clock = _engine()
    engine.start(CALM)
    backend.fail_on_voice = 3

    with pytest.raises(AudioUnavailable, match="voice allocation failed"):
        engine.start(STORM)
    assert engine.state == IDLE
    assert engine.session is None
    assert backend.live_resources() == []
    assert len(backend.reverbs) == 2
    assert engine.transport.scheduled == 0


def test_stop_during_device_initialisation_cancels_start():
    engine, backend, _clock = _engine()
    backend.on_acquire = engine.stop

    with pytest.raises(SessionCancelled):
        engine.start(CALM)
    assert engine.state == IDLE
    assert backend.reverbs == [] and backend.voices == []

    backend.on_acquire = None
    engine.start(CALM)
    assert engine.state == RUNNING


class _ObservedLock:
    """Lock that reports when a second caller starts waiting for it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callers = 0
        self.second_caller = threading.Event()

    def __enter__(self):
        self._callers += 1
        if self._callers == 2:
            self.second_caller.set()
        self._lock.acquire()
        return self

    def __exit__(self, *_exc):
        self._lock.release()


def test_stop_cancels_a_start_queued_behind_an_initialising_one():
    engine, backend, _clock = _engine()
    lock = _ObservedLock()
    engine._start_lock = lock
    acquiring = threading.Event()
    release = threading.Event()

    def slow_acquire():
        if not acquiring.is_set():
            acquiring.set()
            assert release.wait(2.0)

    backend.on_acquire = slow_acquire
    outcomes = []

    def run(analysis):
        try:
            engine.start(analysis)
            outcomes.append("started")
        except SessionCancelled:
            outcomes.append("cancelled")

    first = threading.Thread(target=run, args=(CALM,))
    first.start()
    assert acquiring.wait(2.0)
    second = threading.Thread(target=run, args=(STORM,))
    second.start()
    assert lock.second_caller.wait(2.0)

    engine.stop()
    release.set()
    first.join(2.0)
    second.join(2.0)

    assert outcomes == ["cancelled"] * 2
    assert engine.state == IDLE
    assert backend.live_resources() == []
    assert backend.acquire_calls == 1


def test_stale_handle_does_not_stop_newer_session():
    engine, _backend, _clock = _engine()
    first = engine.start(CALM)
    second = engine.start(STORM)

    first()
    assert second.active
    assert engine.state == RUNNING

    second.stop()
    assert engine.state == IDLE
    second.stop()


def test_triggering_a_disposed_voice_is_silent():
    engine, backend, _clock = _engine()
    engine.start(CALM)
    melody = backend.voices[0]
    engine.stop()
    melody.trigger_attack_release(["C4"], 0.5, 0.0)
    assert melody.triggers == []


def test_close_releases_the_backend():
    clock = FakeClock()
    backend = RecordingBackend(clock)
    with PlaybackEngine(backend, transport=Transport(clock=clock, threaded=False)) as engine:
        engine.start(CALM)
    assert backend.closed
    assert backend.live_resources() == []


def test_default_backend_comes_from_environment(monkeypatch):
    monkeypatch.setenv("EMOTIVE_AUDIO_BACKEND", "synth")
    monkeypatch.setenv("EMOTIVE_SAMPLE_RATE", "22050")
    engine = PlaybackEngine(transport=Transport(threaded=False))
    assert engine.backend.name == "synth"
    assert engine.backend.sample_rate == 22050
