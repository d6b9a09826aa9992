"""Configuration helpers.

Settings come from two places. Environment variables select and tune the
audio backend, and a small JSON file in the user's home directory remembers
command line preferences between runs.

``EMOTIVE_SETTINGS_FILE``
    Location of the JSON settings file. Defaults to
    ``~/.emotive_melody_settings.json``.
``EMOTIVE_AUDIO_BACKEND``
    ``synth`` (default) or ``fluidsynth``.
``EMOTIVE_SAMPLE_RATE`` / ``EMOTIVE_BLOCK_SIZE``
    Stream parameters of the synth backend. Invalid values are ignored with a
    warning.
``SOUND_FONT``
    SoundFont used by the FluidSynth backend.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

__all__ = [
    "DEFAULT_SETTINGS_FILE",
    "DEFAULT_BACKEND",
    "load_settings",
    "save_settings",
    "default_backend_options",
]

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "synth"

# The file lives in the user's home directory so settings persist between
# runs of the application.
env_path = os.environ.get("EMOTIVE_SETTINGS_FILE")
if env_path:
    DEFAULT_SETTINGS_FILE = Path(env_path).expanduser()
else:
    DEFAULT_SETTINGS_FILE = Path.home() / ".emotive_melody_settings.json"


def load_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load saved user settings from ``path`` if it exists.

    Missing or unreadable files yield an empty dictionary so a broken settings
    file never prevents playback.
    """

    path = path or DEFAULT_SETTINGS_FILE
    if path.is_file():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.error("Could not load settings: %s", exc)
            return {}
        if isinstance(data, dict):
            return data
        logger.error("Ignoring settings file %s: expected a JSON object", path)
    return {}


def save_settings(settings: Dict[str, Any], path: Optional[Path] = None) -> None:
    """Save ``settings`` to ``path`` as JSON, logging rather than raising on failure."""

    path = path or DEFAULT_SETTINGS_FILE
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(settings, fh, indent=2)
    except OSError as exc:
        logger.error("Could not save settings: %s", exc)


def _positive_int_env(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value %r; using the default.", name, raw)
        return None
    if value <= 0:
        logger.warning("%s must be positive; using the default.", name)
        return None
    return value


def default_backend_options(name: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
    """Return the backend name and constructor options from the environment.

    Parameters
    ----------
    name:
        Backend name overriding ``EMOTIVE_AUDIO_BACKEND``.
    """

    backend = (name or os.environ.get("EMOTIVE_AUDIO_BACKEND") or DEFAULT_BACKEND).lower()
    options: Dict[str, Any] = {}
    if backend == "synth":
        sample_rate = _positive_int_env("EMOTIVE_SAMPLE_RATE")
        if sample_rate is not None:
            options["sample_rate"] = sample_rate
        block_size = _positive_int_env("EMOTIVE_BLOCK_SIZE")
        if block_size is not None:
            options["block_size"] = block_size
    return backend, options
