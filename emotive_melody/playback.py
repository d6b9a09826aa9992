"""Real-time playback of a generated melody and harmony pad.

The :class:`PlaybackEngine` owns at most one :class:`PlaybackSession` at a
time. A session bundles every live audio resource created for one
"Generate" or "Regenerate" action: the melody voice, the harmony voice, the
shared reverb they both feed, the melody sequencer and the once-per-measure
harmony loop. The transport clock belongs to the engine and is rewound and
cleared whenever a session ends.

State machine
-------------
::

    Idle --start--> Running --toggle--> Paused --toggle--> Running
      ^                |                   |
      +------stop------+-------stop--------+

``start`` always tears the previous session down before building a new one,
so there is never more than one live session. Building is atomic from the
caller's point of view: either every resource of the new session is live or
:class:`~emotive_melody.errors.AudioUnavailable` is raised and the engine is
idle.

Concurrency
-----------
``start`` calls are serialised so device initialisation (the only point at
which ``start`` may block) never interleaves with another start. ``stop`` can
be called from any thread at any time; a ``start`` that was still
initialising, or still queued behind another start, when ``stop`` arrived
notices this before committing anything and raises
:class:`~emotive_melody.errors.SessionCancelled`, so stop always wins.

Example
-------
>>> from emotive_melody.mapping import EmotionAnalysis
>>> engine = PlaybackEngine()  # doctest: +SKIP
>>> handle = engine.start(EmotionAnalysis("joy", "hope", 5, "warm", "stable"))  # doctest: +SKIP
>>> engine.toggle()  # doctest: +SKIP
False
>>> engine.stop()  # doctest: +SKIP
"""

from __future__ import annotations

import logging
import random
import threading
from typing import List, Optional, Union

from .backends import AudioBackend, Reverb, Voice, load_backend
from .errors import AudioUnavailable, SessionCancelled
from .mapping import PAD, EmotionAnalysis
from .sequencer import HALF, MEASURE, MelodyEvent, SessionPlan, build_session_plan, note_duration
from .settings import default_backend_options
from .transport import STARTED, Loop, Sequence, Transport

__all__ = [
    "AudioUnavailable",
    "SessionCancelled",
    "PlaybackEngine",
    "PlaybackSession",
    "SessionHandle",
    "IDLE",
    "RUNNING",
    "PAUSED",
]

logger = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"
PAUSED = "paused"

MELODY_VOLUME_DB = -8.0
HARMONY_VOLUME_DB = -18.0
REVERB_DECAY = 3.0
REVERB_WET = 0.4


class PlaybackSession:
    """Live audio resources for one generated melody.

    Sessions are created by :meth:`open` and only ever referenced by the
    engine that created them.
    """

    def __init__(
        self,
        plan: SessionPlan,
        transport: Transport,
        reverb: Reverb,
        melody_voice: Voice,
        harmony_voice: Voice,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.plan = plan
        self.transport = transport
        self.reverb = reverb
        self.melody_voice = melody_voice
        self.harmony_voice = harmony_voice
        self.sequence: Optional[Sequence] = None
        self.loop: Optional[Loop] = None
        self.disposed = False
        self._rng = rng

    @classmethod
    def open(
        cls,
        plan: SessionPlan,
        backend: AudioBackend,
        transport: Transport,
        rng: Optional[random.Random] = None,
    ) -> "PlaybackSession":
        """Build every resource for ``plan`` and start the transport.

        Raises
        ------
        AudioUnavailable
            If any resource cannot be created. Everything built up to that
            point is disposed and the transport is left stopped and cleared.
        """

        built: List[Union[Reverb, Voice]] = []
        try:
            reverb = backend.create_reverb(REVERB_DECAY, REVERB_WET)
            built.append(reverb)
            melody_voice = backend.create_voice(plan.timbre, volume_db=MELODY_VOLUME_DB, send=reverb)
            built.append(melody_voice)
            harmony_voice = backend.create_voice(PAD, volume_db=HARMONY_VOLUME_DB, send=reverb)
            built.append(harmony_voice)

            session = cls(plan, transport, reverb, melody_voice, harmony_voice, rng)
            transport.bpm = plan.bpm
            session.sequence = Sequence(transport, session._play_melody, plan.melody, plan.subdivision)
            session.loop = Loop(transport, session._play_harmony, MEASURE)
            # Both start on beat zero so their phase is fixed.
            session.sequence.start(0)
            session.loop.start(0)
            transport.start()
        except Exception as exc:
            transport.stop()
            transport.cancel()
            for resource in reversed(built):
                try:
                    resource.dispose()
                except Exception:
                    logger.exception("Failed to dispose partially built session resource")
            if isinstance(exc, AudioUnavailable):
                raise
            raise AudioUnavailable(f"Could not build playback session: {exc}") from exc
        return session

    def _play_melody(self, when: float, note: MelodyEvent) -> None:
        if note is None:
            return
        beats = note_duration(self.plan.analysis.movement, self._rng)
        self.melody_voice.trigger_attack_release([note], self.transport.beats_to_seconds(beats), when)

    def _play_harmony(self, when: float) -> None:
        self.harmony_voice.trigger_attack_release(self.plan.chord, self.transport.beats_to_seconds(HALF), when)

    def dispose(self) -> None:
        """Stop scheduling and release every resource. Idempotent."""

        if self.disposed:
            return
        self.disposed = True
        for scheduled in (self.sequence, self.loop):
            if scheduled is not None:
                scheduled.dispose()
        for voice in (self.melody_voice, self.harmony_voice):
            voice.release_all()
            voice.dispose()
        self.reverb.dispose()


class SessionHandle:
    """Teardown handle returned by :meth:`PlaybackEngine.start`.

    Calling the handle stops its own session only; once a newer session has
    replaced it the call does nothing.
    """

    def __init__(self, engine: "PlaybackEngine", session: PlaybackSession) -> None:
        self._engine = engine
        self._session = session

    @property
    def plan(self) -> SessionPlan:
        return self._session.plan

    @property
    def bpm(self) -> float:
        return self._session.plan.bpm

    @property
    def active(self) -> bool:
        return self._engine.session is self._session

    def stop(self) -> None:
        self._engine._stop_session(self._session)

    __call__ = stop


class PlaybackEngine:
    """Owns the transport and the single live :class:`PlaybackSession`.

    Parameters
    ----------
    backend:
        Audio backend. Defaults to the one named by the ``EMOTIVE_AUDIO_BACKEND``
        environment variable (the oscillator synth when unset).
    transport:
        Transport clock. Defaults to a threaded :class:`Transport` sharing the
        backend's clock.
    rng:
        Random source used for planning and per-note durations.
    """

    def __init__(
        self,
        backend: Optional[AudioBackend] = None,
        *,
        transport: Optional[Transport] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if backend is None:
            name, options = default_backend_options()
            backend = load_backend(name, **options)
        self.backend = backend
        self.transport = transport if transport is not None else Transport(clock=backend.clock)
        self._rng = rng
        self._lock = threading.RLock()
        self._start_lock = threading.Lock()
        self._generation = 0
        self._session: Optional[PlaybackSession] = None

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def state(self) -> str:
        with self._lock:
            if self._session is None:
                return IDLE
            return RUNNING if self.transport.state == STARTED else PAUSED

    @property
    def is_running(self) -> bool:
        return self.state == RUNNING

    def start(self, source: Union[EmotionAnalysis, SessionPlan]) -> SessionHandle:
        """Tear down any session and start a new one.

        Parameters
        ----------
        source:
            Either an analysis, which is planned here, or a plan resolved by
            the caller so that a displayed tempo matches the audible one.

        Returns
        -------
        SessionHandle
            Handle whose call stops the new session.

        Raises
        ------
        AudioUnavailable
            If the device cannot be initialised or the session cannot be
            built. The engine is idle afterwards.
        SessionCancelled
            If :meth:`stop` was called while the device was initialising.
        """

        if isinstance(source, SessionPlan):
            plan = source
        else:
            plan = build_session_plan(source, self._rng)

        # Snapshot before queueing on the start lock so a stop issued while
        # another start is initialising also cancels this one.
        with self._lock:
            ticket = self._generation

        with self._start_lock:
            with self._lock:
                if self._generation != ticket:
                    logger.info("Start cancelled by a stop issued while it was queued")
                    raise SessionCancelled("playback was stopped while starting")
                self._teardown()

            # The only blocking step; nothing has been built yet.
            try:
                self.backend.acquire()
            except AudioUnavailable as exc:
                logger.error("Audio output unavailable: %s", exc)
                raise

            with self._lock:
                if self._generation != ticket:
                    logger.info("Start cancelled by a concurrent stop")
                    raise SessionCancelled("playback was stopped while starting")
                session = PlaybackSession.open(plan, self.backend, self.transport, self._rng)
                self._session = session

        logger.info(
            "Playing %s/%s at %.1f BPM (%d events, %s)",
            plan.analysis.primary_emotion,
            plan.analysis.secondary_emotion,
            plan.bpm,
            len(plan.melody),
            plan.timbre.name,
        )
        return SessionHandle(self, session)

    def stop(self) -> None:
        """Stop and release the current session. Safe to repeat or call idle."""

        with self._lock:
            self._generation += 1
            self._teardown()

    def _stop_session(self, session: PlaybackSession) -> None:
        with self._lock:
            if self._session is session:
                self.stop()

    def _teardown(self) -> None:
        session = self._session
        self._session = None
        # Stopping the transport first waits for any callback in flight, so
        # nothing triggers a voice while it is being disposed.
        self.transport.stop()
        self.transport.cancel()
        if session is not None:
            session.dispose()
            logger.info("Playback session stopped")

    def toggle(self) -> bool:
        """Pause or resume the current session.

        Returns ``True`` when playback is running afterwards. Without a
        session this is a no-op returning ``False``; the first play must go
        through :meth:`start`.
        """

        with self._lock:
            if self._session is None:
                logger.debug("toggle() ignored: no active session")
                return False
            if self.transport.state == STARTED:
                self.transport.pause()
                logger.info("Playback paused")
                return False
            self.transport.start()
            logger.info("Playback resumed")
            return True

    def close(self) -> None:
        """Stop playback and release the transport thread and audio device."""

        self.stop()
        self.transport.close()
        self.backend.close()

    def __enter__(self) -> "PlaybackEngine":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
