# project/vision/scoring.py
# ------------------------------------------------------------
# Emotion -> signed points, and the per-event score delta:
#   delta = round_half_away(points[emotion] * confidence / 100)
# Rounding is half-away-from-zero everywhere (-1.5 -> -2, 1.5 -> 2).
# ------------------------------------------------------------

from __future__ import annotations
import math
from typing import Optional

EMOTION_POINTS = {
    "happy": 2,
    "neutral": 1,
    "surprised": 1,
    "sad": -2,
    "angry": -3,
    "fearful": -1,
    "disgusted": -2,
    "dull": 0,
}

EMOTIONS = tuple(EMOTION_POINTS)

# FER-2013 / other classifier names -> canonical label
LABEL_ALIASES = {
    "happiness": "happy",
    "joy": "happy",
    "surprise": "surprised",
    "sadness": "sad",
    "anger": "angry",
    "fear": "fearful",
    "disgust": "disgusted",
    "bored": "dull",
    "boredom": "dull",
}


def normalize_emotion(label: Optional[str]) -> Optional[str]:
    if not label:
        return None
    key = str(label).strip().lower()
    if key in EMOTION_POINTS:
        return key
    return LABEL_ALIASES.get(key, key)


def clamp_confidence(confidence) -> float:
    try:
        c = float(confidence)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(c):
        return 0.0
    return max(0.0, min(100.0, c))


def round_half_away(x: float) -> int:
    return int(math.copysign(math.floor(abs(x) + 0.5), x))


def compute_delta(emotion: Optional[str], confidence) -> int:
    """Score contribution of one sample; unknown emotions score 0."""
    points = EMOTION_POINTS.get(normalize_emotion(emotion) or "", 0)
    return round_half_away(points * clamp_confidence(confidence) / 100.0)
