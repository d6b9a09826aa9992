"""Melody and harmony content for one playback session.

The generator is intentionally simple. The melody is a short list of slots,
each either a note drawn uniformly from the emotion's scale or a rest, and the
harmony is a fixed triad built from the secondary emotion's scale. Everything
random about a session except the per-note duration is decided here, up
front, and captured in an immutable :class:`SessionPlan`.

Algorithm
---------
::

    count = 4 | 8 | 12 by intensity tier
    for each slot:
        if chaotic and random() < 0.3:
            rest
        else:
            note = choice(scale) at base octave, one octave up with p = 0.3
    chord = harmony_scale[0, 2, 4] one octave below the base octave

Events are spaced an eighth note apart above intensity 7 and a quarter note
apart otherwise. Durations are picked at trigger time by
:func:`note_duration`: chaotic melodies flip between eighth and quarter notes,
stable melodies always play quarter notes.

Example
-------
>>> import random
>>> from emotive_melody.mapping import EmotionAnalysis
>>> from emotive_melody.sequencer import build_session_plan
>>> plan = build_session_plan(
...     EmotionAnalysis("joy", "hope", 2, "warm", "stable"), random.Random(1)
... )
>>> plan.bpm, plan.octave, len(plan.melody)
(70.0, 3, 4)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from .fingerprint import fingerprint_for
from .mapping import (
    EmotionAnalysis,
    TimbreProfile,
    get_bpm,
    get_octave,
    harmony_scale_for,
    intensity_tier,
    scale_for,
    timbre_for,
)

__all__ = [
    "EIGHTH",
    "QUARTER",
    "HALF",
    "MEASURE",
    "MelodyEvent",
    "SessionPlan",
    "note_count",
    "subdivision_for",
    "generate_melody_events",
    "harmony_chord",
    "note_duration",
    "build_session_plan",
]

logger = logging.getLogger(__name__)

# Durations in beats (quarter notes). The engine always plays in 4/4.
EIGHTH = 0.5
QUARTER = 1.0
HALF = 2.0
MEASURE = 4.0

REST_PROBABILITY = 0.3
OCTAVE_UP_PROBABILITY = 0.3

_NOTE_COUNTS = (4, 8, 12)

# A note name such as ``"F#5"`` or ``None`` for a rest.
MelodyEvent = Optional[str]


def note_count(intensity: int) -> int:
    """Return the melody length (4, 8 or 12) for ``intensity``."""

    return _NOTE_COUNTS[intensity_tier(intensity)]


def subdivision_for(intensity: int) -> float:
    """Return the spacing between melody events in beats."""

    return EIGHTH if intensity > 7 else QUARTER


def generate_melody_events(
    scale: Sequence[str],
    octave: int,
    movement: str,
    count: int,
    rng: Optional[random.Random] = None,
) -> List[MelodyEvent]:
    """Return ``count`` melody slots drawn from ``scale``.

    Parameters
    ----------
    scale:
        Pitch classes eligible for the melody.
    octave:
        Base octave. Each note is raised one octave with probability 0.3.
    movement:
        ``"chaotic"`` turns each slot into a rest with probability 0.3.
        Any other value produces notes only.
    count:
        Number of slots to generate.
    rng:
        Optional random source, the ``random`` module by default.

    Returns
    -------
    list
        Note names, with ``None`` marking rests. A sequence made only of
        rests is valid and simply plays silence.
    """

    source = rng if rng is not None else random
    chaotic = movement == "chaotic"
    events: List[MelodyEvent] = []
    for _ in range(count):
        if chaotic and source.random() < REST_PROBABILITY:
            events.append(None)
            continue
        pitch = source.choice(scale)
        note_octave = octave + (1 if source.random() < OCTAVE_UP_PROBABILITY else 0)
        events.append(f"{pitch}{note_octave}")
    return events


def harmony_chord(harmony_scale: Sequence[str], octave: int) -> Tuple[str, str, str]:
    """Return the pad triad: degrees 1, 3 and 5 one octave below ``octave``."""

    pad_octave = octave - 1
    return (
        f"{harmony_scale[0]}{pad_octave}",
        f"{harmony_scale[2]}{pad_octave}",
        f"{harmony_scale[4]}{pad_octave}",
    )


def note_duration(movement: str, rng: Optional[random.Random] = None) -> float:
    """Return the length in beats of the next melody note."""

    if movement == "chaotic":
        source = rng if rng is not None else random
        return EIGHTH if source.random() < 0.5 else QUARTER
    return QUARTER


@dataclass(frozen=True)
class SessionPlan:
    """Every parameter of one playback session, resolved once.

    The tempo is jittered exactly once when the plan is built. Both the
    transport and any display read ``bpm`` from here so they cannot diverge.
    """

    analysis: EmotionAnalysis
    bpm: float
    octave: int
    scale: Tuple[str, ...]
    harmony_scale: Tuple[str, ...]
    timbre: TimbreProfile
    melody: Tuple[MelodyEvent, ...]
    chord: Tuple[str, str, str]
    subdivision: float
    fingerprint: Mapping[str, float]

    @property
    def rest_count(self) -> int:
        return sum(1 for event in self.melody if event is None)

    @property
    def loop_length(self) -> float:
        """Length in beats of one pass over the melody."""

        return len(self.melody) * self.subdivision


def build_session_plan(
    analysis: EmotionAnalysis, rng: Optional[random.Random] = None
) -> SessionPlan:
    """Resolve mapping parameters and generate content for ``analysis``."""

    scale = scale_for(analysis.primary_emotion)
    harmony_scale = harmony_scale_for(analysis.secondary_emotion, scale)
    octave = get_octave(analysis.intensity)
    bpm = get_bpm(analysis.intensity, analysis.movement, rng)
    melody = generate_melody_events(
        scale, octave, analysis.movement, note_count(analysis.intensity), rng
    )
    plan = SessionPlan(
        analysis=analysis,
        bpm=bpm,
        octave=octave,
        scale=tuple(scale),
        harmony_scale=tuple(harmony_scale),
        timbre=timbre_for(analysis.temperature),
        melody=tuple(melody),
        chord=harmony_chord(harmony_scale, octave),
        subdivision=subdivision_for(analysis.intensity),
        fingerprint=fingerprint_for(analysis, rng),
    )
    logger.debug(
        "Planned session: %.1f BPM, octave %d, %d events (%d rests), chord %s",
        plan.bpm,
        plan.octave,
        len(plan.melody),
        plan.rest_count,
        "/".join(plan.chord),
    )
    return plan
