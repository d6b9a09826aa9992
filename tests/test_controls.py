"""Tests for the button level controls and the display summary."""

import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock, RecordingBackend  # noqa: E402
from emotive_melody.controls import EXPORT_BODY, EXPORT_FILENAME, MelodyControls, summarize  # noqa: E402
from emotive_melody.errors import AudioUnavailable  # noqa: E402
from emotive_melody.mapping import EmotionAnalysis, gradient_for  # noqa: E402
from emotive_melody.playback import IDLE, PAUSED, RUNNING, PlaybackEngine  # noqa: E402
from emotive_melody.sequencer import build_session_plan  # noqa: E402
from emotive_melody.transport import Transport  # noqa: E402

CALM = EmotionAnalysis("joy", "hope", 2, "warm", "stable")
STORM = EmotionAnalysis("anger", "fear", 9, "cold", "chaotic")


def _controls(analysis=CALM, **backend_options):
    clock = FakeClock()
    backend = RecordingBackend(clock, **backend_options)
    engine = PlaybackEngine(backend, transport=Transport(clock=clock, threaded=False))
    return MelodyControls(analysis, engine, random.Random(3)), engine, backend


def test_summary_for_calm_session():
    summary = summarize(build_session_plan(CALM, random.Random(0)))
    assert summary.caption == "70 BPM • Acoustic • Steady"
    assert summary.gradient == gradient_for("joy")
    assert summary.fingerprint["joy"] == 20.0
    data = summary.to_dict()
    assert data["rounded_bpm"] == 70
    assert data["gradient"] == list(gradient_for("joy"))


def test_summary_for_chaotic_session_rounds_tempo():
    plan = build_session_plan(STORM, random.Random(0))
    summary = summarize(plan)
    assert summary.bpm == plan.bpm
    assert summary.rounded_bpm == round(plan.bpm)
    assert summary.caption.endswith("Synth • Syncopated")


def test_first_play_starts_then_toggles():
    controls, engine, backend = _controls()
    assert not controls.has_started

    assert controls.play() is True
    assert engine.state == RUNNING
    assert controls.has_started
    assert controls.play() is False
    assert engine.state == PAUSED
    assert controls.play() is True
    assert backend.acquire_calls == 1


def test_displayed_tempo_matches_audible_tempo():
    controls, engine, _backend = _controls(STORM)
    controls.play()
    assert engine.transport.bpm == controls.summary.bpm


def test_regenerate_replaces_the_session():
    controls, engine, backend = _controls(STORM)
    controls.play()
    first_plan = controls.plan

    summary = controls.regenerate()
    assert controls.plan is not first_plan
    assert summary.bpm == engine.transport.bpm == controls.plan.bpm
    assert controls.is_playing
    assert len(backend.live_resources()) == 3


def test_regenerate_before_play_starts_playback():
    controls, engine, _backend = _controls()
    controls.regenerate()
    assert engine.state == RUNNING
    assert controls.has_started


def test_failed_play_can_be_retried():
    controls, engine, backend = _controls(fail_acquire=True)
    with pytest.raises(AudioUnavailable):
        controls.play()
    assert not controls.has_started
    assert not controls.is_playing

    backend.fail_acquire = False
    assert controls.play() is True
    assert engine.state == RUNNING


def test_stop_resets_controls():
    controls, engine, backend = _controls()
    controls.play()
    controls.stop()
    assert engine.state == IDLE
    assert not controls.has_started
    assert backend.live_resources() == []
    controls.stop()


def test_controls_do_not_stop_a_newer_session():
    controls, engine, _backend = _controls()
    controls.play()
    other = MelodyControls(STORM, engine, random.Random(1))
    other.play()

    assert not controls.has_started
    controls.stop()
    assert engine.state == RUNNING
    assert other.has_started


def test_export_placeholder():
    controls, _engine, _backend = _controls()
    payload = controls.export()
    assert payload.filename == EXPORT_FILENAME == "emotive-melody.txt"
    assert payload.mimetype == "text/plain"
    assert payload.data == EXPORT_BODY
