"""Flask JSON control surface for the playback engine.

A browser front end (or any HTTP client) posts the analysis returned by the
classification service and then drives playback with small JSON requests:

=======================  =====================================================
``GET  /api/csrf-token``  token to send back in the ``X-CSRFToken`` header
``POST /api/analysis``    load an analysis; returns the display summary
``POST /api/play``        first call starts playback, later calls pause/resume
``POST /api/regenerate``  replace the melody with a freshly generated one
``POST /api/stop``        stop and release the session
``GET  /api/summary``     display summary and playing state
``GET  /api/export``      export placeholder download
=======================  =====================================================

Design notes
------------
* **CSRF protection** – Flask-WTF's :class:`~flask_wtf.csrf.CSRFProtect`
  validates the ``X-CSRFToken`` header on every POST request.
* **WSGI-friendly entry point** – :func:`create_app` builds the application so
  servers like Gunicorn can serve it directly. Outside debug mode the factory
  refuses to run without ``FLASK_SECRET``.
* **Request size limiting** – ``MAX_CONTENT_LENGTH`` (``MAX_UPLOAD_MB``,
  default 1 MB) bounds the size of posted analyses.
* **Single engine** – the application owns one engine, created on first use,
  so only one session is ever audible no matter how many clients connect.
"""

from __future__ import annotations

import io
import logging
import os
import secrets
from threading import Lock
from typing import Callable, Optional, Tuple

from flask import Blueprint, Flask, Response, current_app, jsonify, request, send_file
from flask_wtf.csrf import CSRFProtect, generate_csrf

from .controls import MelodyControls
from .errors import AudioUnavailable, SessionCancelled
from .mapping import EmotionAnalysis
from .playback import PlaybackEngine

__all__ = ["create_app", "csrf"]

logger = logging.getLogger(__name__)

csrf = CSRFProtect()

api = Blueprint("emotive_melody_api", __name__, url_prefix="/api")

_EXTENSION = "emotive_melody"


class _ApiState:
    """Engine and current controls shared by every request."""

    def __init__(self, engine_factory: Callable[[], PlaybackEngine]) -> None:
        self._engine_factory = engine_factory
        self._engine: Optional[PlaybackEngine] = None
        self.controls: Optional[MelodyControls] = None
        self.lock = Lock()

    @property
    def engine(self) -> PlaybackEngine:
        if self._engine is None:
            self._engine = self._engine_factory()
        return self._engine

    def close(self) -> None:
        with self.lock:
            if self._engine is not None:
                self._engine.close()
                self._engine = None
            self.controls = None


def _state() -> _ApiState:
    return current_app.extensions[_EXTENSION]


def _error(message: str, status: int) -> Tuple[Response, int]:
    return jsonify({"error": message}), status


def _status_body(controls: MelodyControls) -> dict:
    return {
        "playing": controls.is_playing,
        "started": controls.has_started,
        "summary": controls.summary.to_dict(),
    }


@api.get("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@api.post("/analysis")
def load_analysis():
    """Replace the current analysis; any playing session is stopped."""

    payload = request.get_json(silent=True)
    if payload is None:
        return _error("Request body must be a JSON object.", 400)
    try:
        analysis = EmotionAnalysis.from_dict(payload)
    except ValueError as exc:
        return _error(str(exc), 400)

    state = _state()
    with state.lock:
        if state.controls is not None:
            state.controls.stop()
        state.controls = MelodyControls(analysis, state.engine)
        body = _status_body(state.controls)
    return jsonify(body), 201


def _drive(action: str):
    state = _state()
    with state.lock:
        controls = state.controls
        if controls is None:
            return _error("No analysis loaded.", 409)
        try:
            if action == "play":
                controls.play()
            else:
                controls.regenerate()
        except AudioUnavailable as exc:
            logger.error("Audio output unavailable: %s", exc)
            return _error(str(exc), 503)
        except SessionCancelled as exc:
            return _error(str(exc), 409)
        return jsonify(_status_body(controls))


@api.post("/play")
def play():
    return _drive("play")


@api.post("/regenerate")
def regenerate():
    return _drive("regenerate")


@api.post("/stop")
def stop():
    state = _state()
    with state.lock:
        if state.controls is not None:
            state.controls.stop()
        return jsonify({"playing": False, "started": False})


@api.get("/summary")
def summary():
    state = _state()
    with state.lock:
        if state.controls is None:
            return _error("No analysis loaded.", 409)
        return jsonify(_status_body(state.controls))


@api.get("/export")
def export():
    state = _state()
    with state.lock:
        if state.controls is None:
            return _error("No analysis loaded.", 409)
        payload = state.controls.export()
    return send_file(
        io.BytesIO(payload.data),
        mimetype=payload.mimetype,
        as_attachment=True,
        download_name=payload.filename,
    )


def create_app(engine_factory: Optional[Callable[[], PlaybackEngine]] = None) -> Flask:
    """Build and configure the Flask application instance.

    Parameters
    ----------
    engine_factory:
        Callable returning the :class:`PlaybackEngine` to drive. Defaults to an
        engine on the backend selected by ``EMOTIVE_AUDIO_BACKEND``.

    Raises
    ------
    RuntimeError
        If ``FLASK_SECRET`` is missing while debug mode is disabled.
    """

    app = Flask(__name__)

    secret = os.environ.get("FLASK_SECRET")
    try:
        max_mb = int(os.environ.get("MAX_UPLOAD_MB", "1"))
    except ValueError:
        max_mb = 1
        logger.warning("Invalid MAX_UPLOAD_MB value; defaulting to 1 MB.")

    if not app.debug and not secret:
        logger.critical("FLASK_SECRET environment variable must be set in production.")
        raise RuntimeError("Missing FLASK_SECRET")
    if not secret:
        secret = secrets.token_urlsafe(32)
        logger.warning(
            "FLASK_SECRET environment variable not set. "
            "Using a randomly generated key; sessions will not persist across restarts."
        )
    app.secret_key = secret
    app.config["MAX_CONTENT_LENGTH"] = max_mb * 1024 * 1024

    csrf.init_app(app)
    app.extensions[_EXTENSION] = _ApiState(engine_factory or PlaybackEngine)
    app.register_blueprint(api)

    @app.errorhandler(413)
    def handle_request_too_large(_err):
        """Return a concise message when the client uploads too much data."""
        return _error("Request exceeds configured size limit.", 413)

    return app
