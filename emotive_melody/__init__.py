"""Emotive Melody library.

This package turns a discrete emotion analysis into a short generative melody
with a harmonic pad and plays it in real time. A typical workflow is to parse
the classification service's record with :meth:`EmotionAnalysis.from_dict`,
hand it to :class:`MelodyControls` together with a :class:`PlaybackEngine`,
and bind the controls' ``play``/``regenerate``/``stop`` methods to buttons.

Mapping
-------
Intensity selects one of three tiers which fixes the tempo (70, 100 or 130
BPM), the base octave (3, 4 or 5), the melody length (4, 8 or 12 events) and
the subdivision. The primary emotion selects the melody scale, the secondary
emotion the harmony scale, temperature the voice timbre and movement whether
the melody may contain rests and tempo jitter. Unknown emotion labels fall
back to ``joy``.

Playback
--------
The engine owns a transport clock on which a melody sequencer and a harmony
loop are scheduled, both starting at beat zero. Only one session is live at a
time; starting a new one tears the previous one down first.

Features include:
- Total, deterministic parameter mapping with documented fallbacks.
- Controlled randomness for melody content, fixed once per session.
- Oscillator (NumPy + sounddevice) and SoundFont (FluidSynth) backends.
- Command line and Flask JSON interfaces.
"""

__version__ = "0.1.0"

from .errors import AudioUnavailable, SessionCancelled
from .mapping import (
    COLD,
    EMOTIONS,
    PAD,
    WARM,
    EmotionAnalysis,
    TimbreProfile,
    color_for,
    get_bpm,
    get_octave,
    gradient_for,
    harmony_scale_for,
    scale_for,
    timbre_for,
)
from .fingerprint import generate_fingerprint
from .sequencer import SessionPlan, build_session_plan, generate_melody_events, harmony_chord
from .playback import PlaybackEngine, SessionHandle
from .controls import DisplaySummary, MelodyControls, summarize

__all__ = [
    "__version__",
    "AudioUnavailable",
    "SessionCancelled",
    "EMOTIONS",
    "WARM",
    "COLD",
    "PAD",
    "EmotionAnalysis",
    "TimbreProfile",
    "get_bpm",
    "get_octave",
    "scale_for",
    "harmony_scale_for",
    "timbre_for",
    "color_for",
    "gradient_for",
    "generate_fingerprint",
    "SessionPlan",
    "build_session_plan",
    "generate_melody_events",
    "harmony_chord",
    "PlaybackEngine",
    "SessionHandle",
    "DisplaySummary",
    "MelodyControls",
    "summarize",
    "main",
]


def main() -> None:
    """Entry point for ``python -m emotive_melody`` and the console script."""

    from .cli import main as cli_main

    cli_main()
