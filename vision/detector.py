# project/vision/detector.py
# ------------------------------------------------------------
# Frame -> list of Detection(bbox, emotion, confidence, descriptor)
#   - Haar cascade for face boxes (lightweight CPU)
#   - FER-2013 style ONNX head for the emotion (7 classes, 48x48 gray)
#   - EmbedFactory descriptor per face for identity matching
# ------------------------------------------------------------

from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np
import onnxruntime as ort

from vision.auto_enrol import EmbedFactory
from vision.scoring import normalize_emotion

logger = logging.getLogger(__name__)

FER_LABELS = ["angry", "disgust", "fear", "happy", "sad", "surprise", "neutral"]

# sampling-loop scan: one pass, fast
FAST_SCAN = dict(scaleFactor=1.2, minNeighbors=5, minSize=(60, 60))
# enrollment fallback: progressively looser passes on an equalised, upscaled frame
BROAD_SCAN = [
    dict(scaleFactor=1.05, minNeighbors=3, minSize=(40, 40)),
    dict(scaleFactor=1.08, minNeighbors=3, minSize=(50, 50)),
    dict(scaleFactor=1.1, minNeighbors=4, minSize=(60, 60)),
    dict(scaleFactor=1.2, minNeighbors=4, minSize=(70, 70)),
]

Box = Tuple[int, int, int, int]  # x1, y1, x2, y2


@dataclass
class Detection:
    bbox: Box
    emotion: str
    confidence: float              # 0-100
    descriptor: Optional[np.ndarray] = None
    label: str = "unknown"

    @property
    def area(self) -> int:
        x1, y1, x2, y2 = self.bbox
        return max(0, x2 - x1) * max(0, y2 - y1)


def expand_crop_xyxy(img, x1, y1, x2, y2, margin=0.15):
    """Expand a crop by a % margin, keep inside image bounds."""
    h, w = img.shape[:2]
    dx, dy = int((x2 - x1) * margin), int((y2 - y1) * margin)
    return max(0, x1 - dx), max(0, y1 - dy), min(w, x2 + dx), min(h, y2 + dy)


def _softmax(x: np.ndarray) -> np.ndarray:
    e = np.exp(x - np.max(x))
    return e / (e.sum() + 1e-12)


class EmotionDetector:
    def __init__(self, weights=None, embedder: Optional[EmbedFactory] = None):
        if weights is None:
            weights = os.getenv(
                "FER_MODEL_PATH",
                str(Path(__file__).resolve().parent / "models" / "fer.onnx"),
            )
        self.weights = weights
        if not os.path.isfile(self.weights):
            raise FileNotFoundError(
                f"Emotion model NOT FOUND at: {self.weights}. "
                "Set FER_MODEL_PATH or put fer.onnx in vision/models/."
            )

        self.session = ort.InferenceSession(self.weights, providers=["CPUExecutionProvider"])
        inp = self.session.get_inputs()[0]
        self.input_name = inp.name
        shape = list(inp.shape)
        self.channels_first = len(shape) == 4 and shape[1] == 1

        out_shape = self.session.get_outputs()[0].shape
        num_classes = out_shape[-1] if out_shape and isinstance(out_shape[-1], int) else None
        if num_classes is not None and num_classes != len(FER_LABELS):
            raise RuntimeError(
                f"WRONG MODEL: {self.weights} outputs {num_classes} classes, "
                f"expected {len(FER_LABELS)} ({', '.join(FER_LABELS)})."
            )

        self.cascade = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
        if self.cascade.empty():
            raise RuntimeError("haarcascade_frontalface_default.xml not found")

        self.embedder = embedder or EmbedFactory()

    # -------------- face boxes --------------
    def detect_faces(self, frame) -> List[Box]:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        faces = self.cascade.detectMultiScale(gray, **FAST_SCAN)
        return [(int(x), int(y), int(x + w), int(y + h)) for (x, y, w, h) in faces]

    def detect_faces_broad(self, frame) -> List[Box]:
        """Looser multi-pass scan; boxes in input frame coordinates."""
        gray = cv2.equalizeHist(cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY))
        h, w = gray.shape[:2]
        scale = 1.0
        if max(h, w) < 640:
            scale = 640.0 / max(h, w)
            gray = cv2.resize(gray, (int(w * scale), int(h * scale)))

        for p in BROAD_SCAN:
            fs = self.cascade.detectMultiScale(gray, **p)
            if len(fs):
                return [
                    (int(x / scale), int(y / scale), int((x + ww) / scale), int((y + hh) / scale))
                    for (x, y, ww, hh) in fs
                ]
        return []

    # -------------- per-face heads --------------
    def _emotion(self, face_bgr) -> Tuple[str, float]:
        gray = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2GRAY)
        img = cv2.resize(gray, (48, 48)).astype(np.float32) / 255.0
        blob = img[None, None, :, :] if self.channels_first else img[None, :, :, None]
        out = np.asarray(self.session.run(None, {self.input_name: blob})[0]).reshape(-1)
        probs = out if abs(float(out.sum()) - 1.0) < 1e-3 and out.min() >= 0 else _softmax(out)
        idx = int(np.argmax(probs))
        return normalize_emotion(FER_LABELS[idx]), round(float(probs[idx]) * 100.0, 1)

    def _describe(self, frame, box: Box) -> Optional[Detection]:
        x1, y1, x2, y2 = box
        if x2 <= x1 or y2 <= y1:
            return None
        face = frame[y1:y2, x1:x2]
        emotion, confidence = self._emotion(face)

        ex1, ey1, ex2, ey2 = expand_crop_xyxy(frame, x1, y1, x2, y2, margin=0.15)
        res = self.embedder.embed(frame[ey1:ey2, ex1:ex2])
        return Detection(
            bbox=box,
            emotion=emotion,
            confidence=confidence,
            descriptor=res.emb if res.ok else None,
        )

    # -------------- public --------------
    def classify(self, frame) -> List[Detection]:
        """Every face in the frame with its dominant emotion and descriptor."""
        out = []
        for box in self.detect_faces(frame):
            det = self._describe(frame, box)
            if det is not None:
                out.append(det)
        return out

    def scan_largest(self, frame) -> Optional[Detection]:
        """Broad scan; the largest-area face that yields a descriptor, or None."""
        boxes = sorted(self.detect_faces_broad(frame),
                       key=lambda b: (b[2] - b[0]) * (b[3] - b[1]), reverse=True)
        for box in boxes:
            det = self._describe(frame, box)
            if det is not None and det.descriptor is not None:
                return det
        return None
