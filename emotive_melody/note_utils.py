"""Utility functions for translating note names to MIDI numbers and Hertz.

Both audio backends speak in note names such as ``"Bb4"``. FluidSynth needs
the MIDI number while the oscillator backend needs a frequency, so the
conversions live here where either can reuse them.

Example
-------
>>> from emotive_melody.note_utils import note_to_midi, note_to_frequency
>>> note_to_midi("C4")
60
>>> round(note_to_frequency("A4"), 1)
440.0
"""

# Modification Summary
# ---------------------
# * ``note_to_midi`` raises a descriptive ``ValueError`` for unknown note names
#   and for results outside the MIDI ``0-127`` range instead of clamping.
# * ``B#`` and ``Cb`` now carry their octave change instead of wrapping
#   within the written octave.
# * Added ``midi_to_frequency`` and ``note_to_frequency`` for the oscillator
#   backend. Frequencies use twelve tone equal temperament with ``A4 = 440``.

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Dict

__all__ = [
    "NOTE_TO_SEMITONE",
    "note_to_midi",
    "midi_to_frequency",
    "note_to_frequency",
]

logger = logging.getLogger(__name__)

# Both sharp and flat spellings map to their semitone offset from C of the
# written octave so scales written with flats (``Bb``, ``Eb``) convert
# directly. ``B#`` and ``Cb`` cross the octave boundary, so ``B#3`` is ``C4``
# and ``Cb4`` is ``B3``.
NOTE_TO_SEMITONE: Dict[str, int] = {
    "C": 0,
    "B#": 12,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "Fb": 4,
    "E#": 5,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
    "Cb": -1,
}

A4_MIDI = 69
A4_FREQUENCY = 440.0


@lru_cache(maxsize=None)
def note_to_midi(note: str) -> int:
    """Convert a note string such as ``C#4`` into a MIDI number.

    Parameters
    ----------
    note:
        Note name including octave. Octaves may be negative or contain
        multiple digits.

    Returns
    -------
    int
        MIDI note number in the range ``0-127``.

    Raises
    ------
    ValueError
        If ``note`` is not properly formatted or if the computed MIDI value
        falls outside the allowed ``0-127`` range.
    """

    # A letter A-G, an optional accidental and a signed integer octave.
    match = re.fullmatch(r"([A-Ga-g][#b]?)(-?\d+)", note)
    if not match:
        logger.error("Invalid note format: %s", note)
        raise ValueError(f"Invalid note format: {note}")

    note_name, octave_str = match.groups()
    # MIDI octave numbers are offset by one relative to scientific pitch
    # notation (``C-1`` is MIDI 0).
    octave = int(octave_str) + 1
    note_name = note_name[0].upper() + note_name[1:]

    try:
        note_idx = NOTE_TO_SEMITONE[note_name]
    except KeyError:
        logger.error("Unknown note name: %s", note_name)
        raise ValueError(f"Unknown note name: {note_name}") from None

    midi_val = note_idx + (octave * 12)
    if not 0 <= midi_val <= 127:
        logger.error("MIDI value out of range: %s -> %d", note, midi_val)
        raise ValueError(f"Computed MIDI value {midi_val} out of range 0-127 for note {note}")

    return midi_val


def midi_to_frequency(midi_note: int) -> float:
    """Return the equal tempered frequency in Hertz of ``midi_note``."""

    return A4_FREQUENCY * 2.0 ** ((midi_note - A4_MIDI) / 12.0)


@lru_cache(maxsize=None)
def note_to_frequency(note: str) -> float:
    """Return the frequency in Hertz of a note name such as ``Eb3``."""

    return midi_to_frequency(note_to_midi(note))
