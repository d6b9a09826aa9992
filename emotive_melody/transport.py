"""Shared transport clock with repeating sequencer and loop helpers.

The :class:`Transport` converts musical time (beats) into clock time using
the current tempo and fires repeating callbacks slightly ahead of time. Each
callback receives the exact clock time at which its event should sound so
audio backends can schedule sample accurately even though the Python thread
wakes up with some jitter.

:class:`Sequence` steps through a list of events at a fixed subdivision and
:class:`Loop` fires a single action at a fixed interval. Both are registered
against the same transport, so starting them at beat zero keeps their phase
locked.

Example
-------
>>> clock = iter([0.0, 0.0, 1.0]).__next__
>>> transport = Transport(clock=clock, threaded=False, bpm=60)
>>> hits = []
>>> loop = Loop(transport, hits.append, 1.0)
>>> loop.start(0)
>>> transport.start()
>>> transport.process(0.0)
1
>>> hits
[0.0]

Threading model
---------------
When ``threaded`` is true a daemon worker thread calls :meth:`Transport.process`
every ``interval`` seconds while the transport is started and sleeps on a
condition variable otherwise. Callbacks run on that worker thread. ``stop`` and
``pause`` wait for any in-flight dispatch to finish so no callback fires after
they return.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence as SequenceType, Tuple, TypeVar

__all__ = ["Transport", "Sequence", "Loop", "STOPPED", "STARTED", "PAUSED"]

logger = logging.getLogger(__name__)

STOPPED = "stopped"
STARTED = "started"
PAUSED = "paused"

DEFAULT_BPM = 120.0

T = TypeVar("T")

RepeatCallback = Callable[[float, int], None]


class _RepeatEvent:
    """Bookkeeping for one repeating callback."""

    __slots__ = ("event_id", "callback", "interval", "start_beat", "next_beat")

    def __init__(self, event_id: int, callback: RepeatCallback, interval: float, start_beat: float) -> None:
        self.event_id = event_id
        self.callback = callback
        self.interval = interval
        self.start_beat = start_beat
        self.next_beat = start_beat

    def rewind(self) -> None:
        self.next_beat = self.start_beat

    def seek(self, beat: float) -> None:
        """Move ``next_beat`` to the first occurrence at or after ``beat``."""

        if self.next_beat >= beat:
            return
        skipped = int((beat - self.start_beat) // self.interval)
        self.next_beat = self.start_beat + skipped * self.interval
        if self.next_beat < beat:
            self.next_beat += self.interval

    @property
    def iteration(self) -> int:
        return int(round((self.next_beat - self.start_beat) / self.interval))


class Transport:
    """Tempo aware clock driving repeating callbacks.

    Parameters
    ----------
    bpm:
        Initial tempo in beats per minute.
    clock:
        Monotonic time source in seconds. Audio backends must share it so the
        times handed to callbacks mean the same thing on both sides.
    lookahead:
        How far ahead of ``clock()`` events are dispatched, in seconds.
    interval:
        Sleep between dispatch passes of the worker thread, in seconds.
    threaded:
        Run a worker thread. Tests pass ``False`` and call :meth:`process`
        directly with a fake clock.
    """

    def __init__(
        self,
        *,
        bpm: float = DEFAULT_BPM,
        clock: Callable[[], float] = time.monotonic,
        lookahead: float = 0.05,
        interval: float = 0.01,
        threaded: bool = True,
    ) -> None:
        if bpm <= 0:
            raise ValueError("bpm must be positive")
        if lookahead < 0:
            raise ValueError("lookahead must be non-negative")
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.clock = clock
        self.lookahead = lookahead
        self.interval = interval
        self.threaded = threaded

        self._lock = threading.RLock()
        # Held for the duration of every dispatch pass. ``stop``/``pause`` take
        # it first so they cannot return while callbacks are still running.
        self._dispatch_lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)

        self._bpm = float(bpm)
        self._state = STOPPED
        self._anchor_time = 0.0
        self._anchor_beat = 0.0
        self._events: Dict[int, _RepeatEvent] = {}
        self._ids = itertools.count(1)
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Tempo and position
    # ------------------------------------------------------------------
    @property
    def state(self) -> str:
        return self._state

    @property
    def bpm(self) -> float:
        return self._bpm

    @bpm.setter
    def bpm(self, value: float) -> None:
        if value <= 0:
            raise ValueError("bpm must be positive")
        with self._lock:
            if self._state == STARTED:
                # Re-anchor so the position stays continuous across the change.
                now = self.clock()
                self._anchor_beat = self._beat_at(now)
                self._anchor_time = now
            self._bpm = float(value)

    @property
    def seconds_per_beat(self) -> float:
        return 60.0 / self._bpm

    def beats_to_seconds(self, beats: float) -> float:
        return beats * self.seconds_per_beat

    @property
    def position(self) -> float:
        """Current position in beats."""

        with self._lock:
            if self._state == STARTED:
                return self._beat_at(self.clock())
            return self._anchor_beat

    def _beat_at(self, when: float) -> float:
        return self._anchor_beat + (when - self._anchor_time) / self.seconds_per_beat

    def _time_at(self, beat: float) -> float:
        return self._anchor_time + (beat - self._anchor_beat) * self.seconds_per_beat

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def schedule_repeat(self, callback: RepeatCallback, interval: float, start: float = 0.0) -> int:
        """Invoke ``callback(time, iteration)`` every ``interval`` beats.

        ``start`` is the beat of the first invocation. When the transport is
        already past it, the first invocation is the next occurrence after the
        current position.

        Returns
        -------
        int
            Identifier accepted by :meth:`clear`.
        """

        if interval <= 0:
            raise ValueError("interval must be positive")
        if start < 0:
            raise ValueError("start must be non-negative")
        with self._lock:
            event = _RepeatEvent(next(self._ids), callback, float(interval), float(start))
            if self._state != STOPPED:
                event.seek(self.position)
            self._events[event.event_id] = event
            return event.event_id

    def clear(self, event_id: int) -> None:
        """Remove one scheduled event; unknown ids are ignored."""

        with self._lock:
            self._events.pop(event_id, None)

    def cancel(self) -> None:
        """Drop every scheduled event."""

        with self._dispatch_lock, self._lock:
            count = len(self._events)
            self._events.clear()
        if count:
            logger.debug("Cancelled %d scheduled event(s)", count)

    @property
    def scheduled(self) -> int:
        """Number of registered repeating events."""

        return len(self._events)

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start from the current position (beat zero after :meth:`stop`)."""

        with self._lock:
            if self._closed:
                raise RuntimeError("transport is closed")
            if self._state == STARTED:
                return
            self._anchor_time = self.clock()
            self._state = STARTED
            self._ensure_worker()
            self._wakeup.notify_all()
        logger.debug("Transport started at beat %.2f (%.1f BPM)", self._anchor_beat, self._bpm)

    def pause(self) -> None:
        """Freeze the position; :meth:`start` resumes from it."""

        with self._dispatch_lock, self._lock:
            if self._state != STARTED:
                return
            self._anchor_beat = self._beat_at(self.clock())
            self._state = PAUSED
        logger.debug("Transport paused at beat %.2f", self._anchor_beat)

    def stop(self) -> None:
        """Stop and rewind to beat zero. Scheduled events are kept."""

        with self._dispatch_lock, self._lock:
            if self._state == STOPPED and self._anchor_beat == 0.0:
                return
            self._state = STOPPED
            self._anchor_beat = 0.0
            for event in self._events.values():
                event.rewind()
        logger.debug("Transport stopped")

    def close(self) -> None:
        """Stop, cancel and join the worker thread. Idempotent."""

        self.stop()
        self.cancel()
        with self._lock:
            self._closed = True
            self._wakeup.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def process(self, now: Optional[float] = None) -> int:
        """Fire every event due before ``now + lookahead``.

        Parameters
        ----------
        now:
            Current clock time. Defaults to ``clock()``.

        Returns
        -------
        int
            Number of callbacks invoked.
        """

        with self._dispatch_lock:
            with self._lock:
                if self._state != STARTED:
                    return 0
                if now is None:
                    now = self.clock()
                horizon = self._beat_at(now + self.lookahead)
                due: List[Tuple[float, int, RepeatCallback, int]] = []
                for event in self._events.values():
                    while event.next_beat < horizon:
                        due.append(
                            (
                                self._time_at(event.next_beat),
                                event.event_id,
                                event.callback,
                                event.iteration,
                            )
                        )
                        event.next_beat += event.interval
                due.sort(key=lambda item: (item[0], item[1]))

            for when, event_id, callback, iteration in due:
                try:
                    callback(when, iteration)
                except Exception:
                    # A failing callback must not stop the clock for the
                    # other scheduled events.
                    logger.exception("Scheduled callback %d failed", event_id)
            return len(due)

    def _ensure_worker(self) -> None:
        if not self.threaded or (self._thread is not None and self._thread.is_alive()):
            return
        self._thread = threading.Thread(target=self._run, name="emotive-transport", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            with self._wakeup:
                while not self._closed and self._state != STARTED:
                    self._wakeup.wait()
                if self._closed:
                    return
            self.process()
            with self._wakeup:
                if self._closed:
                    return
                self._wakeup.wait(self.interval)


class Sequence:
    """Step through ``events`` every ``subdivision`` beats, looping forever.

    ``callback(time, event)`` is invoked for every slot including ``None``
    rests, mirroring how a step sequencer hands each step to its handler.
    """

    def __init__(
        self,
        transport: Transport,
        callback: Callable[[float, T], None],
        events: SequenceType[T],
        subdivision: float,
    ) -> None:
        if not events:
            raise ValueError("events must not be empty")
        if subdivision <= 0:
            raise ValueError("subdivision must be positive")
        self.transport = transport
        self.events = list(events)
        self.subdivision = subdivision
        self._callback: Optional[Callable[[float, T], None]] = callback
        self._event_id: Optional[int] = None
        self.disposed = False

    @property
    def started(self) -> bool:
        return self._event_id is not None

    def start(self, at: float = 0.0) -> None:
        if self.disposed:
            raise RuntimeError("sequence has been disposed")
        self.stop()
        self._event_id = self.transport.schedule_repeat(self._tick, self.subdivision, at)

    def _tick(self, when: float, iteration: int) -> None:
        callback = self._callback
        if callback is None:
            return
        callback(when, self.events[iteration % len(self.events)])

    def stop(self) -> None:
        if self._event_id is not None:
            self.transport.clear(self._event_id)
            self._event_id = None

    def dispose(self) -> None:
        self.stop()
        self._callback = None
        self.disposed = True


class Loop:
    """Invoke ``callback(time)`` every ``interval`` beats."""

    def __init__(self, transport: Transport, callback: Callable[[float], None], interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.transport = transport
        self.interval = interval
        self._callback: Optional[Callable[[float], None]] = callback
        self._event_id: Optional[int] = None
        self.disposed = False

    @property
    def started(self) -> bool:
        return self._event_id is not None

    def start(self, at: float = 0.0) -> None:
        if self.disposed:
            raise RuntimeError("loop has been disposed")
        self.stop()
        self._event_id = self.transport.schedule_repeat(self._tick, self.interval, at)

    def _tick(self, when: float, _iteration: int) -> None:
        callback = self._callback
        if callback is not None:
            callback(when)

    def stop(self) -> None:
        if self._event_id is not None:
            self.transport.clear(self._event_id)
            self._event_id = None

    def dispose(self) -> None:
        self.stop()
        self._callback = None
        self.disposed = True
