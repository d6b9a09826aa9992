"""Six axis emotion fingerprint used by the visualisation layer.

The primary emotion receives ``intensity * 10``, the secondary emotion
``intensity * 6`` and every remaining axis an independent random weight in
``[5, 25)``. The weights are descriptive only and are not normalised, so they
do not sum to a constant.

Because the background axes are random, the intended ordering
``primary >= secondary >= others`` does not always hold. At intensities up to
four a background axis may outweigh the secondary emotion. Callers that rank
the axes must not assume the secondary emotion comes second.
"""

from __future__ import annotations

import random
from typing import Dict, Mapping, Optional

from .mapping import EMOTIONS, EmotionAnalysis, canonical_emotion

__all__ = ["generate_fingerprint", "fingerprint_for"]

BACKGROUND_MIN = 5.0
BACKGROUND_SPAN = 20.0


def generate_fingerprint(
    analysis: EmotionAnalysis, rng: Optional[random.Random] = None
) -> Dict[str, float]:
    """Return a fresh fingerprint for ``analysis``.

    When the primary and secondary emotion are equal the primary weight wins.
    Unknown labels simply match no axis, leaving all six axes random or
    partially random. Each call draws new background weights, so generate once
    per session and reuse the result.
    """

    source = rng if rng is not None else random
    primary = canonical_emotion(analysis.primary_emotion)
    secondary = canonical_emotion(analysis.secondary_emotion)

    weights: Dict[str, float] = {}
    for emotion in EMOTIONS:
        if emotion == primary:
            weights[emotion] = float(analysis.intensity * 10)
        elif emotion == secondary:
            weights[emotion] = float(analysis.intensity * 6)
        else:
            weights[emotion] = source.random() * BACKGROUND_SPAN + BACKGROUND_MIN
    return weights


def fingerprint_for(
    analysis: EmotionAnalysis, rng: Optional[random.Random] = None
) -> Mapping[str, float]:
    """Return the analysis' own fingerprint, deriving one when it is absent."""

    if analysis.fingerprint is not None:
        return dict(analysis.fingerprint)
    return generate_fingerprint(analysis, rng)
