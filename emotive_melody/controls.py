"""Play, pause and regenerate controls for one emotion analysis.

:class:`MelodyControls` is what a user interface binds its buttons to. The
first press of *play* starts a session through
:meth:`PlaybackEngine.start <emotive_melody.playback.PlaybackEngine.start>`
and later presses only pause or resume it. *Regenerate* throws the current
session away and plays a freshly generated one for the same analysis.

The controls plan each session before starting it and expose a
:class:`DisplaySummary` built from that same plan, so the tempo shown next to
the play button is always the tempo the transport runs at.

MIDI export is not implemented yet. :meth:`MelodyControls.export` returns a
small text placeholder that interfaces offer as a download.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from .mapping import EmotionAnalysis, color_for, gradient_for
from .playback import PlaybackEngine, SessionHandle
from .sequencer import SessionPlan, build_session_plan

__all__ = ["DisplaySummary", "ExportPayload", "MelodyControls", "summarize"]

logger = logging.getLogger(__name__)

EXPORT_FILENAME = "emotive-melody.txt"
EXPORT_MIMETYPE = "text/plain"
EXPORT_BODY = b"MIDI export coming soon"


@dataclass(frozen=True)
class DisplaySummary:
    """Values a visualisation needs to present one session."""

    primary_emotion: str
    secondary_emotion: str
    bpm: float
    gradient: Tuple[str, str]
    color: str
    fingerprint: Mapping[str, float]
    timbre_label: str
    movement_label: str

    @property
    def rounded_bpm(self) -> int:
        return int(round(self.bpm))

    @property
    def caption(self) -> str:
        """Status line such as ``"70 BPM • Acoustic • Steady"``."""

        return f"{self.rounded_bpm} BPM • {self.timbre_label} • {self.movement_label}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "primary_emotion": self.primary_emotion,
            "secondary_emotion": self.secondary_emotion,
            "bpm": self.bpm,
            "rounded_bpm": self.rounded_bpm,
            "gradient": list(self.gradient),
            "color": self.color,
            "fingerprint": dict(self.fingerprint),
            "timbre": self.timbre_label,
            "movement": self.movement_label,
            "caption": self.caption,
        }


@dataclass(frozen=True)
class ExportPayload:
    filename: str
    mimetype: str
    data: bytes


def summarize(plan: SessionPlan) -> DisplaySummary:
    """Return the display values for ``plan``."""

    analysis = plan.analysis
    return DisplaySummary(
        primary_emotion=analysis.primary_emotion,
        secondary_emotion=analysis.secondary_emotion,
        bpm=plan.bpm,
        gradient=gradient_for(analysis.primary_emotion),
        color=color_for(analysis.primary_emotion),
        fingerprint=dict(plan.fingerprint),
        timbre_label=plan.timbre.label,
        movement_label="Syncopated" if analysis.chaotic else "Steady",
    )


class MelodyControls:
    """Button level controller bound to one analysis and one engine."""

    def __init__(
        self,
        analysis: EmotionAnalysis,
        engine: PlaybackEngine,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.analysis = analysis
        self.engine = engine
        self._rng = rng
        self.plan = build_session_plan(analysis, rng)
        self.is_playing = False
        self._handle: Optional[SessionHandle] = None

    @property
    def has_started(self) -> bool:
        """``True`` while this controller's session is the engine's live one."""

        return self._handle is not None and self._handle.active

    @property
    def summary(self) -> DisplaySummary:
        return summarize(self.plan)

    def play(self) -> bool:
        """Start on first use, afterwards toggle pause. Returns the playing state.

        A failed start propagates its exception and leaves the controls
        untouched so the user can simply press play again.
        """

        if not self.has_started:
            self._handle = self.engine.start(self.plan)
            self.is_playing = True
        else:
            self.is_playing = self.engine.toggle()
        return self.is_playing

    def regenerate(self) -> DisplaySummary:
        """Replace the current session with a new one for the same analysis."""

        plan = build_session_plan(self.analysis, self._rng)
        self.engine.stop()
        self._handle = None
        self.is_playing = False
        self._handle = self.engine.start(plan)
        self.plan = plan
        self.is_playing = True
        logger.debug("Regenerated melody at %.1f BPM", plan.bpm)
        return self.summary

    def stop(self) -> None:
        """Stop this controller's session if it is still the live one."""

        if self._handle is not None:
            self._handle.stop()
            self._handle = None
        self.is_playing = False

    def export(self) -> ExportPayload:
        """Return the placeholder offered in place of a MIDI download."""

        return ExportPayload(EXPORT_FILENAME, EXPORT_MIMETYPE, EXPORT_BODY)
