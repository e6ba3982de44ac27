# project/vision/matcher.py
# Enrolled descriptors -> identity label. Several samples per label are kept;
# a label's score is its best cosine similarity over its samples.

from __future__ import annotations
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

UNKNOWN = "unknown"
MATCH_THRESHOLD = 0.45


def l2_normalize(v: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    return (v / (np.linalg.norm(v) + eps)).astype(np.float32)


class FaceMatcher:
    def __init__(self, threshold: float = MATCH_THRESHOLD):
        self.threshold = threshold
        self._samples: Dict[str, List[np.ndarray]] = {}
        self._lock = Lock()

    @classmethod
    def from_records(cls, records: Iterable[Dict], threshold: float = MATCH_THRESHOLD) -> "FaceMatcher":
        """Build from face records as served by GET /faces."""
        m = cls(threshold)
        for r in records:
            label, desc = r.get("label"), r.get("descriptor")
            if label and desc:
                m.add(label, desc)
        return m

    def add(self, label: str, descriptor) -> None:
        v = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        if v.size == 0:
            return
        with self._lock:
            self._samples.setdefault(label, []).append(l2_normalize(v))

    @property
    def labels(self) -> List[str]:
        return sorted(self._samples)

    def __len__(self) -> int:
        return sum(len(v) for v in self._samples.values())

    def best_match(self, descriptor) -> Tuple[str, float]:
        """(label, similarity); label is UNKNOWN when nothing reaches the threshold."""
        if descriptor is None:
            return UNKNOWN, 0.0
        q = l2_normalize(np.asarray(descriptor, dtype=np.float32).reshape(-1))
        best_label: Optional[str] = None
        best_s = -1.0
        with self._lock:
            for label, samples in self._samples.items():
                for v in samples:
                    if v.shape != q.shape:
                        continue
                    s = float(np.dot(q, v))
                    if s > best_s:
                        best_s, best_label = s, label
        if best_label is not None and best_s >= self.threshold:
            return best_label, best_s
        return UNKNOWN, max(best_s, 0.0)
