"""Audio backends used by the playback engine.

A backend owns the audio device and hands out two kinds of resources: voices
(polyphonic note generators shaped by a :class:`~emotive_melody.mapping.TimbreProfile`)
and reverb sends shared by several voices. The engine only talks to the
small interface defined by :class:`AudioBackend`, :class:`Voice` and
:class:`Reverb`, which lets the test-suite swap in a recording backend.

Two implementations are provided:

``SynthBackend`` (``"synth"``)
    Renders triangle and sine oscillators with ADSR envelopes using NumPy
    inside a ``sounddevice`` output stream callback. The reverb is a bank of
    feedback comb filters whose feedback is derived from the decay time.

``FluidSynthBackend`` (``"fluidsynth"``)
    Plays the notes through pyFluidSynth with a General MIDI SoundFont. Each
    voice gets its own MIDI channel and program, and the shared reverb is
    FluidSynth's global reverb fed through the CC91 send. The SoundFont path
    is taken from the argument, the ``SOUND_FONT`` environment variable or a
    platform default.

Example
-------
>>> from emotive_melody.backends import load_backend
>>> backend = load_backend("synth")
>>> backend.acquire()  # doctest: +SKIP
"""

# Modification Summary
# ---------------------
# * ``resolve_soundfont`` checks the standard SoundFont locations on Windows
#   and macOS before falling back to the usual Linux path and expands ``~`` and
#   environment variables in user supplied paths.
# * Import failures of optional audio libraries and device errors are mapped
#   to ``AudioUnavailable`` with installation hints so callers can show a
#   single actionable message.
# * The comb reverb processes blocks in chunks no longer than its shortest
#   delay line so any stream block size is supported.

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import mido
import numpy as np

from .errors import AudioUnavailable
from .mapping import TimbreProfile
from .note_utils import note_to_frequency, note_to_midi

__all__ = [
    "AudioBackend",
    "Voice",
    "Reverb",
    "SynthBackend",
    "FluidSynthBackend",
    "BACKENDS",
    "load_backend",
    "resolve_soundfont",
    "db_to_gain",
    "adsr_envelope",
]

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 44_100
DEFAULT_BLOCK_SIZE = 512

# Peak amplitude of a single oscillator before the voice gain is applied.
NOTE_AMPLITUDE = 0.3
NOTE_VELOCITY = 100


def db_to_gain(db: float) -> float:
    """Convert a level in decibels into a linear gain factor."""

    return float(10.0 ** (db / 20.0))


class Reverb:
    """Shared reverb send owned by one playback session."""

    def __init__(self, decay: float, wet: float) -> None:
        if decay <= 0:
            raise ValueError("decay must be positive")
        if not 0.0 <= wet <= 1.0:
            raise ValueError("wet must be between 0 and 1")
        self.decay = decay
        self.wet = wet
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._dispose()

    def _dispose(self) -> None:
        """Backend specific cleanup."""


class Voice:
    """Polyphonic note generator with a fixed timbre.

    Triggering a disposed voice is a silent no-op because a scheduled
    callback may still be running while its session is torn down.
    """

    def __init__(self, timbre: TimbreProfile, volume_db: float, send: Optional[Reverb]) -> None:
        self.timbre = timbre
        self.volume_db = volume_db
        self.send = send
        self.disposed = False

    @property
    def gain(self) -> float:
        return db_to_gain(self.volume_db)

    def trigger_attack_release(self, notes: Iterable[str], duration: float, time: float) -> None:
        """Sound every note in ``notes`` at clock ``time`` for ``duration`` seconds."""

        if self.disposed:
            logger.debug("Ignoring trigger on disposed %s voice", self.timbre.name)
            return
        self._trigger(list(notes), duration, time)

    def release_all(self) -> None:
        """Move every sounding note into its release phase."""

        if not self.disposed:
            self._release_all()

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._dispose()

    def _trigger(self, notes: List[str], duration: float, time: float) -> None:
        raise NotImplementedError

    def _release_all(self) -> None:
        raise NotImplementedError

    def _dispose(self) -> None:
        raise NotImplementedError


class AudioBackend:
    """Interface implemented by every audio backend.

    ``clock`` is the time source that the transport must share with the
    backend so that event times mean the same thing on both sides.
    """

    name = "base"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock

    def acquire(self) -> None:
        """Initialise the output device; idempotent.

        Raises
        ------
        AudioUnavailable
            If the device or the required library is unavailable.
        """

        raise NotImplementedError

    def create_reverb(self, decay: float, wet: float) -> Reverb:
        raise NotImplementedError

    def create_voice(self, timbre: TimbreProfile, *, volume_db: float, send: Optional[Reverb] = None) -> Voice:
        raise NotImplementedError

    def close(self) -> None:
        """Release the output device."""


# ----------------------------------------------------------------------
# NumPy oscillator backend
# ----------------------------------------------------------------------


def oscillator(shape: str, frequency: float, t: np.ndarray) -> np.ndarray:
    """Return ``shape`` evaluated at times ``t`` with unit amplitude."""

    if shape == "triangle":
        phase = t * frequency
        return 2.0 * np.abs(2.0 * (phase - np.floor(phase + 0.5))) - 1.0
    if shape == "sine":
        return np.sin(2.0 * np.pi * frequency * t)
    raise ValueError(f"Unsupported oscillator: {shape}")


def _held_level(t: np.ndarray, attack: float, decay: float, sustain: float) -> np.ndarray:
    rising = t / attack
    falling = 1.0 - (1.0 - sustain) * (t - attack) / decay
    return np.where(t < attack, rising, np.where(t < attack + decay, falling, sustain))


def adsr_envelope(t: np.ndarray, gate: float, timbre: TimbreProfile) -> np.ndarray:
    """Evaluate the ADSR envelope of ``timbre`` at times ``t``.

    ``gate`` is the time at which the note is released. The release ramps
    linearly from whatever level the envelope had reached at ``gate`` down to
    silence over ``timbre.release`` seconds. Very short attack and release
    times are clamped to a few milliseconds to avoid clicks.
    """

    attack = max(timbre.attack, 0.005)
    decay = max(timbre.decay, 0.001)
    release = max(timbre.release, 0.01)
    held = _held_level(t, attack, decay, timbre.sustain)
    gate_level = float(_held_level(np.asarray(gate, dtype=float), attack, decay, timbre.sustain))
    released = gate_level * np.clip(1.0 - (t - gate) / release, 0.0, 1.0)
    envelope = np.where(t < gate, held, released)
    return np.where(t >= 0.0, envelope, 0.0)


class _Note:
    __slots__ = ("frequency", "start", "gate")

    def __init__(self, frequency: float, start: int, gate: float) -> None:
        self.frequency = frequency
        self.start = start
        self.gate = gate


class _CombReverb(Reverb):
    """Parallel feedback comb filters scaled to a target decay time."""

    # Freeverb comb lengths at 44.1 kHz, scaled for other sample rates.
    _TUNINGS = (1116, 1188, 1277, 1356, 1422, 1491, 1557, 1617)

    def __init__(self, backend: "SynthBackend", decay: float, wet: float) -> None:
        super().__init__(decay, wet)
        self._backend = backend
        scale = backend.sample_rate / DEFAULT_SAMPLE_RATE
        self._delays = [max(1, int(length * scale)) for length in self._TUNINGS]
        # Feedback for a 60 dB drop over ``decay`` seconds.
        self._feedback = [10.0 ** (-3.0 * d / (backend.sample_rate * decay)) for d in self._delays]
        self._history = [np.zeros(d) for d in self._delays]
        self._chunk = min(self._delays)

    def process(self, send: np.ndarray) -> np.ndarray:
        out = np.zeros(len(send))
        for offset in range(0, len(send), self._chunk):
            block = send[offset:offset + self._chunk]
            size = len(block)
            mixed = np.zeros(size)
            for idx, (gain, history) in enumerate(zip(self._feedback, self._history)):
                comb = block + gain * history[:size]
                self._history[idx] = np.concatenate((history[size:], comb))
                mixed += comb
            out[offset:offset + size] = mixed / len(self._delays)
        return out * self.wet

    def _dispose(self) -> None:
        self._backend._detach_reverb(self)


class _SynthVoice(Voice):
    def __init__(self, backend: "SynthBackend", timbre: TimbreProfile, volume_db: float, send: Optional[Reverb]) -> None:
        super().__init__(timbre, volume_db, send)
        self._backend = backend
        self._notes: List[_Note] = []

    def _trigger(self, notes: List[str], duration: float, time: float) -> None:
        backend = self._backend
        with backend.lock:
            start = backend.frame_for(time)
            for name in notes:
                self._notes.append(_Note(note_to_frequency(name), start, max(duration, 0.0)))

    def _release_all(self) -> None:
        backend = self._backend
        with backend.lock:
            now = backend.frame
            kept = []
            for note in self._notes:
                if note.start >= now:
                    # Not sounding yet; drop it instead of releasing.
                    continue
                note.gate = min(note.gate, (now - note.start) / backend.sample_rate)
                kept.append(note)
            self._notes = kept

    def _dispose(self) -> None:
        self._backend._detach_voice(self)

    @property
    def active_notes(self) -> int:
        return len(self._notes)

    def render(self, start_frame: int, frames: int) -> Optional[np.ndarray]:
        """Render ``frames`` samples starting at ``start_frame``; caller holds the lock."""

        if not self._notes:
            return None
        sample_rate = self._backend.sample_rate
        release = max(self.timbre.release, 0.01)
        positions = np.arange(start_frame, start_frame + frames)
        mix = np.zeros(frames)
        alive = []
        for note in self._notes:
            t = (positions - note.start) / sample_rate
            if t[-1] < 0.0:
                alive.append(note)
                continue
            if t[0] > note.gate + release:
                continue
            wave = oscillator(self.timbre.oscillator, note.frequency, t)
            mix += wave * adsr_envelope(t, note.gate, self.timbre)
            alive.append(note)
        self._notes = alive
        return mix * NOTE_AMPLITUDE * self.gain


def _import_sounddevice() -> Any:
    try:
        import sounddevice
    except (ImportError, OSError) as exc:
        # ``OSError`` is raised when the PortAudio library itself is missing.
        raise AudioUnavailable(
            "sounddevice is required for the synth backend. Install the "
            "sounddevice package and the PortAudio library."
        ) from exc
    return sounddevice


class SynthBackend(AudioBackend):
    """Oscillator backend rendering into a ``sounddevice`` output stream."""

    name = "synth"

    def __init__(
        self,
        *,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        block_size: int = DEFAULT_BLOCK_SIZE,
        device: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device = device
        self.lock = threading.RLock()
        self.frame = 0
        self._origin = 0.0
        self._stream: Any = None
        self._voices: List[_SynthVoice] = []
        self._reverbs: List[_CombReverb] = []

    def acquire(self) -> None:
        if self._stream is not None:
            return
        sd = _import_sounddevice()
        try:
            stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            with self.lock:
                self.frame = 0
                self._origin = self.clock()
            stream.start()
        except Exception as exc:
            raise AudioUnavailable(f"Could not open audio output: {exc}") from exc
        self._stream = stream
        logger.info("Opened audio output at %d Hz (block %d)", self.sample_rate, self.block_size)

    def frame_for(self, when: float) -> int:
        """Return the stream frame for clock time ``when``, never in the past."""

        frame = int(round((when - self._origin) * self.sample_rate))
        return max(frame, self.frame)

    def create_reverb(self, decay: float, wet: float) -> Reverb:
        reverb = _CombReverb(self, decay, wet)
        with self.lock:
            self._reverbs.append(reverb)
        return reverb

    def create_voice(self, timbre: TimbreProfile, *, volume_db: float, send: Optional[Reverb] = None) -> Voice:
        voice = _SynthVoice(self, timbre, volume_db, send)
        with self.lock:
            self._voices.append(voice)
        return voice

    def _detach_voice(self, voice: _SynthVoice) -> None:
        with self.lock:
            if voice in self._voices:
                self._voices.remove(voice)

    def _detach_reverb(self, reverb: _CombReverb) -> None:
        with self.lock:
            if reverb in self._reverbs:
                self._reverbs.remove(reverb)

    @property
    def voices(self) -> int:
        return len(self._voices)

    def render(self, frames: int) -> np.ndarray:
        """Mix the next ``frames`` samples of every live voice and reverb."""

        with self.lock:
            start = self.frame
            self.frame += frames
            out = np.zeros(frames)
            sends: Dict[int, np.ndarray] = {}
            for voice in self._voices:
                signal = voice.render(start, frames)
                if signal is None:
                    continue
                out += signal
                if voice.send is not None and not voice.send.disposed:
                    key = id(voice.send)
                    if key in sends:
                        sends[key] += signal
                    else:
                        sends[key] = signal.copy()
            for reverb in self._reverbs:
                # Reverbs keep ringing on silence until disposed.
                out += reverb.process(sends.get(id(reverb), np.zeros(frames)))
        return np.clip(out, -1.0, 1.0).astype(np.float32)

    def _callback(self, outdata: np.ndarray, frames: int, _time_info: Any, status: Any) -> None:
        if status:
            logger.debug("Audio stream status: %s", status)
        outdata[:, 0] = self.render(frames)

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            logger.warning("Failed to close audio output cleanly: %s", exc)
        logger.info("Closed audio output")


# ----------------------------------------------------------------------
# FluidSynth backend
# ----------------------------------------------------------------------

_FLUIDSYNTH_HINT = "fluidsynth not installed. Install the FluidSynth library and pyFluidSynth package."

# MIDI controller numbers.
CC_VOLUME = 7
CC_REVERB_SEND = 91
CC_ALL_SOUND_OFF = 120
CC_ALL_NOTES_OFF = 123

# Channel 10 (index 9) is reserved for percussion in General MIDI.
_MELODIC_CHANNELS = [ch for ch in range(16) if ch != 9]


def resolve_soundfont(sf: Optional[str]) -> str:
    """Return the path to the soundfont to use for synthesis.

    Parameters
    ----------
    sf:
        Optional path supplied directly by the caller. When ``None`` the
        ``SOUND_FONT`` environment variable is consulted followed by
        platform-specific defaults.

    Raises
    ------
    AudioUnavailable
        If no valid file can be located.
    """

    if sf:
        candidate = sf
    else:
        candidate = os.environ.get("SOUND_FONT")
        if not candidate:
            if sys.platform.startswith("win"):
                candidate = r"C:\\Windows\\System32\\drivers\\gm.dls"
            elif sys.platform == "darwin":
                candidate = "/Library/Audio/Sounds/Banks/FluidR3_GM.sf2"
            else:
                candidate = "/usr/share/sounds/sf2/TimGM6mb.sf2"

    candidate = os.path.expanduser(os.path.expandvars(candidate))
    if not os.path.isfile(candidate):
        raise AudioUnavailable(
            "SoundFont not found. Provide a valid path via the argument or "
            "SOUND_FONT environment variable, or install a General MIDI soundfont."
        )
    return candidate


def _import_fluidsynth() -> Any:
    try:
        import fluidsynth
    except (ImportError, OSError) as exc:
        raise AudioUnavailable(_FLUIDSYNTH_HINT) from exc
    return fluidsynth


class _FluidReverb(Reverb):
    def __init__(self, decay: float, wet: float) -> None:
        super().__init__(decay, wet)
        self.send_level = int(round(wet * 127))


class _FluidVoice(Voice):
    def __init__(
        self,
        backend: "FluidSynthBackend",
        channel: int,
        timbre: TimbreProfile,
        volume_db: float,
        send: Optional[Reverb],
    ) -> None:
        super().__init__(timbre, volume_db, send)
        self._backend = backend
        self.channel = channel

    def _trigger(self, notes: List[str], duration: float, time: float) -> None:
        backend = self._backend
        delay_ms = max(0, int((time - backend.clock()) * 1000))
        duration_ms = max(1, int(duration * 1000))
        for name in notes:
            # ``mido`` validates channel, note and velocity ranges for us.
            msg = mido.Message("note_on", channel=self.channel, note=note_to_midi(name), velocity=NOTE_VELOCITY)
            backend.sequencer.note(
                time=delay_ms,
                absolute=False,
                channel=msg.channel,
                key=msg.note,
                velocity=msg.velocity,
                duration=duration_ms,
                dest=backend.destination,
            )

    def _release_all(self) -> None:
        self._backend.synth.cc(self.channel, CC_ALL_NOTES_OFF, 0)

    def _dispose(self) -> None:
        backend = self._backend
        # Notes dispatched inside the transport lookahead may still be queued.
        remove_events = getattr(backend.sequencer, "remove_events", None)
        if callable(remove_events):
            remove_events(dest=backend.destination)
        backend.synth.cc(self.channel, CC_ALL_SOUND_OFF, 0)
        backend._release_channel(self.channel)


class FluidSynthBackend(AudioBackend):
    """SoundFont backend driven through pyFluidSynth."""

    name = "fluidsynth"

    def __init__(
        self,
        *,
        soundfont: Optional[str] = None,
        driver: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(clock)
        self.soundfont = soundfont
        self.driver = driver
        self.synth: Any = None
        self.sequencer: Any = None
        self.destination: Any = None
        self._sfid: Optional[int] = None
        self._free_channels = list(_MELODIC_CHANNELS)
        self._lock = threading.Lock()

    def acquire(self) -> None:
        if self.synth is not None:
            return
        fluidsynth = _import_fluidsynth()
        sf_path = resolve_soundfont(self.soundfont)
        try:
            synth = fluidsynth.Synth()
        except FileNotFoundError as exc:
            raise AudioUnavailable(_FLUIDSYNTH_HINT) from exc
        try:
            synth.start(driver=self.driver)
            sfid = synth.sfload(sf_path)
            if sfid < 0:
                raise AudioUnavailable(f"Could not load SoundFont {sf_path}")
            sequencer = fluidsynth.Sequencer(time_scale=1000, use_system_timer=False)
            destination = sequencer.register_fluidsynth(synth)
        except AudioUnavailable:
            synth.delete()
            raise
        except Exception as exc:
            synth.delete()
            raise AudioUnavailable(f"Could not start audio driver: {exc}") from exc
        self.synth = synth
        self.sequencer = sequencer
        self.destination = destination
        self._sfid = sfid
        logger.info("FluidSynth started with %s", sf_path)

    def create_reverb(self, decay: float, wet: float) -> Reverb:
        reverb = _FluidReverb(decay, wet)
        try:
            # FluidSynth's room size tops out at 1.0, roughly a four second tail.
            self.synth.set_reverb(roomsize=min(decay / 4.0, 1.0), damping=0.3, width=0.8, level=1.0)
        except (AttributeError, TypeError) as exc:
            logger.warning("FluidSynth build does not support reverb settings: %s", exc)
        return reverb

    def create_voice(self, timbre: TimbreProfile, *, volume_db: float, send: Optional[Reverb] = None) -> Voice:
        with self._lock:
            if not self._free_channels:
                raise AudioUnavailable("No free MIDI channels left")
            channel = self._free_channels.pop(0)
        self.synth.program_select(channel, self._sfid, 0, timbre.program)
        volume = max(0, min(127, int(round(127 * db_to_gain(volume_db)))))
        self.synth.cc(channel, CC_VOLUME, volume)
        send_level = send.send_level if isinstance(send, _FluidReverb) else 0
        self.synth.cc(channel, CC_REVERB_SEND, send_level)
        return _FluidVoice(self, channel, timbre, volume_db, send)

    def _release_channel(self, channel: int) -> None:
        with self._lock:
            if channel not in self._free_channels:
                self._free_channels.append(channel)
                self._free_channels.sort()

    def close(self) -> None:
        if self.synth is None:
            return
        try:
            if self.sequencer is not None:
                self.sequencer.delete()
        finally:
            self.synth.delete()
            self.synth = None
            self.sequencer = None
            self.destination = None
            self._free_channels = list(_MELODIC_CHANNELS)
        logger.info("FluidSynth stopped")


BACKENDS: Dict[str, Callable[..., AudioBackend]] = {
    SynthBackend.name: SynthBackend,
    FluidSynthBackend.name: FluidSynthBackend,
}


def load_backend(name: str, **options: Any) -> AudioBackend:
    """Instantiate the backend registered as ``name``.

    Raises
    ------
    ValueError
        If ``name`` is not a known backend.
    """

    try:
        factory = BACKENDS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown audio backend: {name}. Choose from {', '.join(sorted(BACKENDS))}"
        ) from None
    return factory(**options)
