"""Tests for melody generation and session planning.

The sequencer is the only place where melody content is randomised. These
tests pin down the note counts, the rest and octave probabilities and the
shape of the harmony triad, and walk through two complete sessions."""

import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from emotive_melody.mapping import COLD, WARM, EmotionAnalysis  # noqa: E402
from emotive_melody.sequencer import (  # noqa: E402
    EIGHTH,
    QUARTER,
    build_session_plan,
    generate_melody_events,
    harmony_chord,
    note_count,
    note_duration,
    subdivision_for,
)


class _ScriptedRandom(random.Random):
    """Random source returning a fixed sequence from ``random()``."""

    def __init__(self, values):
        super().__init__(0)
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


@pytest.mark.parametrize("intensity, count", [(1, 4), (3, 4), (4, 8), (7, 8), (8, 12), (10, 12)])
def test_note_count_tiers(intensity, count):
    assert note_count(intensity) == count


def test_subdivision_switches_above_seven():
    assert subdivision_for(7) == QUARTER
    assert subdivision_for(8) == EIGHTH


def test_stable_melodies_never_rest():
    rng = random.Random(11)
    scale = ["C", "D", "E", "F", "G", "A", "B"]
    for _ in range(1000):
        events = generate_melody_events(scale, 4, "stable", 4, rng)
        assert None not in events


def test_chaotic_rest_rate_is_about_thirty_percent():
    rng = random.Random(12)
    events = generate_melody_events(["C", "D", "E"], 4, "chaotic", 10000, rng)
    rate = events.count(None) / len(events)
    assert 0.27 < rate < 0.33


def test_notes_use_scale_and_base_or_next_octave():
    rng = random.Random(13)
    scale = ["E", "F", "G", "A", "Bb", "C", "D"]
    events = generate_melody_events(scale, 5, "stable", 2000, rng)
    raised = 0
    for event in events:
        pitch, octave = event[:-1], int(event[-1])
        assert pitch in scale
        assert octave in (5, 6)
        raised += octave == 6
    assert 0.25 < raised / len(events) < 0.35


def test_all_rest_sequence_is_valid():
    rng = _ScriptedRandom([0.0, 0.0, 0.0, 0.0])
    assert generate_melody_events(["C"], 4, "chaotic", 4, rng) == [None, None, None, None]


def test_harmony_chord_uses_degrees_one_three_five_an_octave_down():
    assert harmony_chord(["A", "B", "C", "D", "E", "F", "G"], 4) == ("A3", "C3", "E3")


def test_note_duration():
    assert note_duration("stable") == QUARTER
    assert note_duration("chaotic", _ScriptedRandom([0.2])) == EIGHTH
    assert note_duration("chaotic", _ScriptedRandom([0.7])) == QUARTER


def test_calm_joyful_session():
    """Low intensity stable joy: slow, low, four notes, no rests."""
    analysis = EmotionAnalysis("joy", "hope", 2, "warm", "stable")
    plan = build_session_plan(analysis, random.Random(21))

    assert plan.bpm == 70.0
    assert plan.octave == 3
    assert len(plan.melody) == 4
    assert plan.rest_count == 0
    assert plan.subdivision == QUARTER
    assert plan.timbre is WARM
    assert plan.chord == ("C2", "E2", "G2")
    for event in plan.melody:
        assert event[:-1] in plan.scale
        assert event[-1] in ("3", "4")
    assert plan.fingerprint["joy"] == 20.0
    assert plan.fingerprint["hope"] == 12.0


def test_intense_chaotic_anger_session():
    """High intensity chaotic anger: fast, high, twelve slots on eighths."""
    analysis = EmotionAnalysis("anger", "fear", 9, "cold", "chaotic")
    plan = build_session_plan(analysis, random.Random(22))

    assert 130.0 <= plan.bpm < 150.0
    assert plan.octave == 5
    assert len(plan.melody) == 12
    assert plan.subdivision == EIGHTH
    assert plan.loop_length == 6.0
    assert plan.timbre is COLD
    assert plan.scale == ("E", "F", "G", "A", "Bb", "C", "D")
    assert plan.chord == ("B4", "D4", "F4")
    for event in plan.melody:
        if event is not None:
            assert event[:-1] in plan.scale
            assert event[-1] in ("5", "6")


def test_unknown_secondary_uses_the_melody_scale_for_harmony():
    analysis = EmotionAnalysis("sadness", "nostalgia", 5, "warm", "stable")
    plan = build_session_plan(analysis, random.Random(23))
    assert plan.harmony_scale == plan.scale
    assert plan.chord == ("A3", "C3", "E3")


def test_plan_is_immutable():
    plan = build_session_plan(EmotionAnalysis("joy", "joy", 5, "warm", "stable"), random.Random(1))
    with pytest.raises(AttributeError):
        plan.bpm = 1.0
