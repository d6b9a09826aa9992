"""Emotion to music parameter mapping.

This module turns an :class:`EmotionAnalysis` into the handful of musical
parameters the playback engine needs: a tempo in beats per minute, a base
octave, a seven note scale and a voice timbre. Every lookup is total. Labels
outside the fixed emotion set fall back to the ``joy`` entries so the
classification service may return unexpected values without breaking
playback.

Example
-------
>>> from emotive_melody.mapping import get_octave, scale_for
>>> get_octave(9)
5
>>> scale_for("Anger")
['E', 'F', 'G', 'A', 'Bb', 'C', 'D']
>>> scale_for("euphoria") == scale_for("joy")
True

Tempo is the only randomised parameter. Chaotic movement adds up to twenty
beats per minute of jitter on top of the tier base, and because the jitter is
re-rolled on every call callers should resolve the tempo once per session
(see :func:`emotive_melody.sequencer.build_session_plan`) and reuse it.
"""

# Modification Summary
# ---------------------
# * Timbre selection now returns one of a closed set of :class:`TimbreProfile`
#   records instead of mutating voice options in place, so new profiles can be
#   added without touching the playback engine.
# * ``EmotionAnalysis.from_dict`` validates the record returned by the
#   classification service and raises ``ValueError`` with the offending field
#   in the message. Emotion labels are deliberately left unvalidated.
# * ``get_bpm`` accepts an optional random source so tests can supply a seeded
#   ``random.Random`` instance.

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

__all__ = [
    "EMOTIONS",
    "DEFAULT_EMOTION",
    "TEMPERATURES",
    "MOVEMENTS",
    "EMOTION_SCALES",
    "EMOTION_COLORS",
    "EMOTION_GRADIENT",
    "TimbreProfile",
    "WARM",
    "COLD",
    "PAD",
    "TIMBRES",
    "EmotionAnalysis",
    "canonical_emotion",
    "intensity_tier",
    "get_bpm",
    "get_octave",
    "scale_for",
    "harmony_scale_for",
    "timbre_for",
    "color_for",
    "gradient_for",
]

logger = logging.getLogger(__name__)

# The fixed emotion vocabulary. Order matters for the fingerprint and any
# radar chart drawn from it.
EMOTIONS: Tuple[str, ...] = ("joy", "sadness", "anger", "fear", "love", "hope")

# Entry used whenever a label is not part of ``EMOTIONS``.
DEFAULT_EMOTION = "joy"

TEMPERATURES: Tuple[str, ...] = ("warm", "cold")
MOVEMENTS: Tuple[str, ...] = ("stable", "chaotic")

MIN_INTENSITY = 1
MAX_INTENSITY = 10

# Seven pitch classes per emotion. The tables are fixed; nothing here is
# derived at runtime.
EMOTION_SCALES: Dict[str, List[str]] = {
    "joy": ["C", "D", "E", "F", "G", "A", "B"],  # major
    "sadness": ["A", "B", "C", "D", "E", "F", "G"],  # natural minor
    "anger": ["E", "F", "G", "A", "Bb", "C", "D"],  # phrygian
    "fear": ["B", "C", "D", "Eb", "F", "Gb", "Ab"],  # diminished
    "love": ["C", "D", "E", "F#", "G", "A", "B"],  # lydian
    "hope": ["C", "D", "E", "F", "G", "A", "B"],  # major 7
}

EMOTION_COLORS: Dict[str, str] = {
    "joy": "hsl(50, 90%, 55%)",
    "sadness": "hsl(220, 70%, 50%)",
    "anger": "hsl(0, 80%, 50%)",
    "fear": "hsl(270, 60%, 45%)",
    "love": "hsl(340, 80%, 60%)",
    "hope": "hsl(160, 70%, 50%)",
}

EMOTION_GRADIENT: Dict[str, Tuple[str, str]] = {
    "joy": ("hsl(45, 90%, 55%)", "hsl(30, 95%, 60%)"),
    "sadness": ("hsl(220, 70%, 45%)", "hsl(240, 60%, 40%)"),
    "anger": ("hsl(0, 80%, 50%)", "hsl(20, 90%, 45%)"),
    "fear": ("hsl(270, 60%, 45%)", "hsl(290, 50%, 35%)"),
    "love": ("hsl(340, 80%, 55%)", "hsl(320, 70%, 50%)"),
    "hope": ("hsl(160, 70%, 50%)", "hsl(185, 80%, 55%)"),
}


@dataclass(frozen=True)
class TimbreProfile:
    """Oscillator and envelope settings for one voice.

    ``attack``, ``decay`` and ``release`` are in seconds while ``sustain`` is a
    level between ``0`` and ``1``. ``program`` is the General MIDI program used
    by sample based backends which cannot shape an oscillator directly.
    """

    name: str
    oscillator: str
    attack: float
    decay: float
    sustain: float
    release: float
    program: int
    label: str


WARM = TimbreProfile("warm", "triangle", 0.1, 0.3, 0.4, 0.8, program=24, label="Acoustic")
COLD = TimbreProfile("cold", "sine", 0.3, 0.5, 0.6, 1.2, program=88, label="Synth")
# The harmony pad does not follow the temperature.
PAD = TimbreProfile("pad", "sine", 0.5, 0.8, 0.7, 2.0, program=89, label="Pad")

TIMBRES: Dict[str, TimbreProfile] = {"warm": WARM, "cold": COLD}


@dataclass(frozen=True)
class EmotionAnalysis:
    """Result of the external emotion classification.

    Instances are immutable once received. ``primary_emotion`` and
    ``secondary_emotion`` may be equal and may fall outside :data:`EMOTIONS`;
    consumers use the documented fallbacks in that case.
    """

    primary_emotion: str
    secondary_emotion: str
    intensity: int
    temperature: str
    movement: str
    fingerprint: Optional[Mapping[str, float]] = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "EmotionAnalysis":
        """Build an analysis from the classification service's record.

        Parameters
        ----------
        data:
            Mapping with ``primary_emotion``, ``secondary_emotion``,
            ``intensity``, ``temperature`` and ``movement`` keys plus an
            optional ``fingerprint`` mapping.

        Returns
        -------
        EmotionAnalysis
            Parsed and validated analysis.

        Raises
        ------
        ValueError
            If a required field is missing, ``intensity`` is not an integer in
            ``1-10``, ``temperature``/``movement`` hold unknown values or the
            fingerprint is malformed.
        """

        if not isinstance(data, Mapping):
            raise ValueError("analysis must be a mapping")

        missing = [
            key
            for key in ("primary_emotion", "secondary_emotion", "intensity", "temperature", "movement")
            if key not in data
        ]
        if missing:
            raise ValueError(f"analysis is missing required fields: {', '.join(missing)}")

        primary = data["primary_emotion"]
        secondary = data["secondary_emotion"]
        if not isinstance(primary, str) or not isinstance(secondary, str):
            raise ValueError("emotion labels must be strings")

        intensity = data["intensity"]
        # ``bool`` is a subclass of ``int`` but ``True`` is not an intensity.
        if isinstance(intensity, bool) or not isinstance(intensity, int):
            raise ValueError(f"intensity must be an integer, got {intensity!r}")
        if not MIN_INTENSITY <= intensity <= MAX_INTENSITY:
            raise ValueError(
                f"intensity must be between {MIN_INTENSITY} and {MAX_INTENSITY}, got {intensity}"
            )

        temperature = data["temperature"]
        if temperature not in TEMPERATURES:
            raise ValueError(f"temperature must be one of {', '.join(TEMPERATURES)}, got {temperature!r}")
        movement = data["movement"]
        if movement not in MOVEMENTS:
            raise ValueError(f"movement must be one of {', '.join(MOVEMENTS)}, got {movement!r}")

        fingerprint = data.get("fingerprint")
        if fingerprint is not None:
            fingerprint = _parse_fingerprint(fingerprint)

        return cls(
            primary_emotion=primary,
            secondary_emotion=secondary,
            intensity=intensity,
            temperature=temperature,
            movement=movement,
            fingerprint=fingerprint,
        )

    def to_dict(self) -> Dict[str, object]:
        """Return the record in the shape accepted by :meth:`from_dict`."""

        data: Dict[str, object] = {
            "primary_emotion": self.primary_emotion,
            "secondary_emotion": self.secondary_emotion,
            "intensity": self.intensity,
            "temperature": self.temperature,
            "movement": self.movement,
        }
        if self.fingerprint is not None:
            data["fingerprint"] = dict(self.fingerprint)
        return data

    @property
    def chaotic(self) -> bool:
        return self.movement == "chaotic"


def _parse_fingerprint(raw: object) -> Dict[str, float]:
    """Validate a fingerprint supplied alongside an analysis."""

    if not isinstance(raw, Mapping):
        raise ValueError("fingerprint must be a mapping of emotion to weight")
    missing = [e for e in EMOTIONS if e not in raw]
    if missing:
        raise ValueError(f"fingerprint is missing weights for: {', '.join(missing)}")
    parsed: Dict[str, float] = {}
    for emotion in EMOTIONS:
        value = raw[emotion]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"fingerprint weight for {emotion} must be a number")
        if not 0 <= value <= 100:
            raise ValueError(f"fingerprint weight for {emotion} must be between 0 and 100")
        parsed[emotion] = float(value)
    return parsed


def canonical_emotion(label: str) -> str:
    """Return ``label`` lower-cased with surrounding whitespace removed."""

    return label.strip().lower()


def intensity_tier(intensity: int) -> int:
    """Map ``intensity`` onto the three tiers used throughout the engine.

    ``0`` covers intensities up to 3, ``1`` up to 7 and ``2`` everything
    above. Values outside ``1-10`` are not rejected; they simply land in the
    lowest or highest tier.
    """

    if intensity <= 3:
        return 0
    if intensity <= 7:
        return 1
    return 2


_BASE_BPM = (70, 100, 130)
_OCTAVES = (3, 4, 5)

# Upper bound (exclusive) of the random tempo offset applied to chaotic input.
BPM_JITTER = 20.0


def get_bpm(intensity: int, movement: str, rng: Optional[random.Random] = None) -> float:
    """Return the tempo in beats per minute for ``intensity`` and ``movement``.

    Stable movement yields the tier base exactly (70, 100 or 130). Chaotic
    movement adds a jitter drawn from ``[0, 20)``. The jitter is drawn anew on
    each call.
    """

    base = _BASE_BPM[intensity_tier(intensity)]
    if movement == "chaotic":
        source = rng if rng is not None else random
        return base + source.random() * BPM_JITTER
    return float(base)


def get_octave(intensity: int) -> int:
    """Return the melody's base octave (3, 4 or 5) for ``intensity``."""

    return _OCTAVES[intensity_tier(intensity)]


def scale_for(label: str) -> List[str]:
    """Return the melody scale for ``label``, falling back to ``joy``."""

    key = canonical_emotion(label)
    scale = EMOTION_SCALES.get(key)
    if scale is None:
        logger.debug("Unknown emotion %r; using the %s scale", label, DEFAULT_EMOTION)
        scale = EMOTION_SCALES[DEFAULT_EMOTION]
    return list(scale)


def harmony_scale_for(label: str, melody_scale: List[str]) -> List[str]:
    """Return the harmony scale for ``label``.

    Unlike :func:`scale_for` an unknown label falls back to ``melody_scale``
    so the pad stays consonant with the melody.
    """

    scale = EMOTION_SCALES.get(canonical_emotion(label))
    if scale is None:
        logger.debug("Unknown secondary emotion %r; reusing the melody scale", label)
        return list(melody_scale)
    return list(scale)


def timbre_for(temperature: str) -> TimbreProfile:
    """Return the melody voice profile for ``temperature``.

    Anything other than ``"warm"`` is treated as cold.
    """

    return TIMBRES.get(temperature, COLD)


def color_for(label: str) -> str:
    """Return the display colour for ``label`` (``joy``'s when unknown)."""

    return EMOTION_COLORS.get(canonical_emotion(label), EMOTION_COLORS[DEFAULT_EMOTION])


def gradient_for(label: str) -> Tuple[str, str]:
    """Return the two colour gradient for ``label`` (``joy``'s when unknown)."""

    return EMOTION_GRADIENT.get(canonical_emotion(label), EMOTION_GRADIENT[DEFAULT_EMOTION])
