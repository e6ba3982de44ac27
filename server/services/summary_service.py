import math
from datetime import datetime, timezone
from collections import defaultdict


def _empty_row(label):
    return {
        "face_label": label,
        "events": 0,
        "score": 0,
        "histogram": {},
        "avg_confidence": 0.0,
        "last_emotion": None,
        "last_seen": None,
    }


def _num(x):
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    return v if math.isfinite(v) else 0.0


def _text(x):
    return x if isinstance(x, str) and x else None


def compute_summary_payload(events, session_id=None):
    """
    Roll stored events up per identity label.
    `events` is newest-first (as returned by Store.get_events), so the first
    event seen for a label is its latest one.
    """
    per = {}
    conf_sum = defaultdict(float)

    for ev in events:
        label = _text(ev.get("face_label")) or "unknown"
        row = per.get(label)
        if row is None:
            row = per[label] = _empty_row(label)
            row["last_emotion"] = _text(ev.get("emotion"))
            row["last_seen"] = _text(ev.get("timestamp"))

        row["events"] += 1
        row["score"] += int(_num(ev.get("delta")))
        emotion = _text(ev.get("emotion"))
        if emotion:
            row["histogram"][emotion] = row["histogram"].get(emotion, 0) + 1
        conf_sum[label] += _num(ev.get("confidence"))

    out = []
    for label, row in per.items():
        row["avg_confidence"] = round(conf_sum[label] / max(1, row["events"]), 1)
        out.append(row)
    out.sort(key=lambda r: (r["last_seen"] or ""), reverse=True)

    return {
        "session_id": session_id,
        "total_events": len(events),
        "identities": out,
        "last_synced": datetime.now(timezone.utc).isoformat(),
    }
