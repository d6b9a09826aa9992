"""Exceptions raised by the playback engine and its audio backends."""

from __future__ import annotations


class AudioUnavailable(RuntimeError):
    """Raised when the audio device cannot be acquired or started.

    The engine stays idle and holds no partial session when this is raised,
    so the caller may simply retry (for example once the user has allowed
    audio output).
    """


class SessionCancelled(RuntimeError):
    """Raised by ``start`` when ``stop`` was requested while it initialised."""
