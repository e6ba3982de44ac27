import time
from datetime import datetime, timezone

from vision.scoring import compute_delta, normalize_emotion, clamp_confidence

THROTTLE_MS = 800


def now_iso():
    return datetime.now(timezone.utc).isoformat()


class FaceAggregate:
    """Running totals for one identity label within one tracking session."""

    def __init__(self, label):
        self.label = label
        self.score = 0
        self.last_emotion = None
        self.last_confidence = 0.0
        self.detections = 0       # counted (non-duplicate) samples
        self.samples = 0          # every sample, duplicates included
        self.histogram = {}
        self.last_update_ms = None

    def should_count(self, emotion, now_ms, throttle_ms=THROTTLE_MS):
        """New emotion, first sample, or the throttle window has passed."""
        if self.last_update_ms is None:
            return True
        if emotion != self.last_emotion:
            return True
        return (now_ms - self.last_update_ms) >= throttle_ms

    def step(self, emotion, confidence, delta, now_ms, throttle_ms=THROTTLE_MS):
        """Return True when this sample was counted, False for a duplicate."""
        self.samples += 1
        self.last_confidence = confidence
        if not self.should_count(emotion, now_ms, throttle_ms):
            return False

        self.score += delta
        self.last_emotion = emotion
        self.detections += 1
        self.histogram[emotion] = self.histogram.get(emotion, 0) + 1
        self.last_update_ms = now_ms
        return True

    def as_dict(self):
        return {
            "label": self.label,
            "score": self.score,
            "last_emotion": self.last_emotion,
            "last_confidence": self.last_confidence,
            "detections": self.detections,
            "samples": self.samples,
            "histogram": dict(self.histogram),
        }


class TrackingSession:
    """
    Per-identity aggregates for one open tracking session.
    Created when tracking starts, dropped when it stops; two sessions never
    share state.
    """

    def __init__(self, session_id=None, throttle_ms=THROTTLE_MS):
        self.session_id = session_id
        self.throttle_ms = throttle_ms
        self.started_at = now_iso()
        self.faces = {}

    def observe(self, label, emotion, confidence, now_ms=None):
        """
        Fold one classification sample in.
        Returns the event payload to ship when the sample counts, else None.
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        label = label or "unknown"
        emotion = normalize_emotion(emotion) or "neutral"
        confidence = clamp_confidence(confidence)
        delta = compute_delta(emotion, confidence)

        agg = self.faces.get(label)
        if agg is None:
            agg = self.faces[label] = FaceAggregate(label)

        if not agg.step(emotion, confidence, delta, now_ms, self.throttle_ms):
            return None

        return {
            "face_label": label,
            "emotion": emotion,
            "confidence": confidence,
            "delta": delta,
            "session_id": self.session_id,
            "timestamp": datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).isoformat(),
        }

    def get(self, label):
        return self.faces.get(label)

    def total_score(self):
        return sum(a.score for a in self.faces.values())

    def snapshot(self):
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "total_score": self.total_score(),
            "faces": {label: a.as_dict() for label, a in self.faces.items()},
        }
