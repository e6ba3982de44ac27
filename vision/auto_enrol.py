# project/vision/auto_enrol.py
# ------------------------------------------------------------
# Face descriptor embedder used for identity matching and enrollment.
# ArcFace ONNX with automatic NHWC/NCHW handling; falls back to a
# 128-D grayscale "cheap" descriptor when the model is missing or broken.
# ------------------------------------------------------------

from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from typing import Optional, List

import cv2
import numpy as np
import onnxruntime as ort

logger = logging.getLogger(__name__)

MODELS_DIR = os.getenv("MODELS_DIR", os.path.join(os.path.dirname(__file__), "models"))


def l2_normalize(v: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    n = np.linalg.norm(v) + eps
    return (v / n).astype(np.float32)


# ---------- Embedders ----------

@dataclass
class EmbedResult:
    emb: np.ndarray
    ok: bool
    error: Optional[str] = None


class CheapEmbedder:
    """Fast CPU-only 128-D descriptor (16x8 normalised grayscale) as a last resort."""
    emb_dim: int = 128
    name: str = "CHEAP"

    def embed(self, face_bgr: np.ndarray) -> EmbedResult:
        try:
            g = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2GRAY)
            g = cv2.resize(g, (8, 16), interpolation=cv2.INTER_AREA).astype(np.float32)
            g = (g - g.mean()) / (g.std() + 1e-6)
            return EmbedResult(emb=l2_normalize(g.flatten()), ok=True)
        except cv2.error as e:
            return EmbedResult(emb=np.zeros((self.emb_dim,), np.float32), ok=False, error=str(e))


class ArcFaceONNX:
    """
    ArcFace ONNX embedder.
    Detects input layout from the model:
      - NCHW: (1, 3, 112, 112)
      - NHWC: (1, 112, 112, 3)
    """
    name: str = "ArcFace"
    emb_dim: int = 512

    def __init__(self, model_path: str, providers: Optional[List[str]] = None) -> None:
        if not os.path.isfile(model_path):
            raise FileNotFoundError(f"arcface.onnx not found at: {model_path}")

        self.model_path = model_path
        self.providers = providers or ["CPUExecutionProvider"]

        sess_opt = ort.SessionOptions()
        sess_opt.log_severity_level = 3  # reduce verbosity
        self.sess = ort.InferenceSession(self.model_path, sess_options=sess_opt, providers=self.providers)

        inp = self.sess.get_inputs()[0]
        self.inp_name = inp.name
        self.out_name = self.sess.get_outputs()[0].name

        shape = list(inp.shape)  # may contain None / symbolic dims
        self.expects_nhwc = len(shape) == 4 and shape[1] == 112 and shape[3] == 3
        logger.debug("ArcFace input shape=%s expects_nhwc=%s", shape, self.expects_nhwc)

        # validate with a dummy forward pass
        blob = self._pack_input(np.zeros((112, 112, 3), np.float32))
        out = self.sess.run([self.out_name], {self.inp_name: blob})[0]
        self.emb_dim = int(np.asarray(out).size)

    @staticmethod
    def _preprocess(face_bgr: np.ndarray) -> np.ndarray:
        face_rgb = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2RGB)
        img = cv2.resize(face_rgb, (112, 112), interpolation=cv2.INTER_LINEAR).astype(np.float32)
        return (img - 127.5) / 128.0

    def _pack_input(self, img_rgb_112: np.ndarray) -> np.ndarray:
        if self.expects_nhwc:
            return img_rgb_112[None, ...]
        return np.transpose(img_rgb_112, (2, 0, 1))[None, ...]

    def embed(self, face_bgr: np.ndarray) -> EmbedResult:
        try:
            blob = self._pack_input(self._preprocess(face_bgr))
            emb = self.sess.run([self.out_name], {self.inp_name: blob})[0]
            return EmbedResult(emb=l2_normalize(emb.reshape(-1).astype(np.float32)), ok=True)
        except Exception as e:
            return EmbedResult(emb=np.zeros((self.emb_dim,), np.float32), ok=False, error=str(e))


# ---------- Factory ----------

class EmbedFactory:
    """Try ArcFace ONNX; if anything fails, use CheapEmbedder."""

    def __init__(self, models_dir: Optional[str] = None):
        self.models_dir = models_dir or MODELS_DIR
        self.model_path = os.path.join(self.models_dir, "arcface.onnx")

        self.impl = self._try_make_arcface()
        if self.impl is None:
            logger.info("arcface.onnx not found or failed; using CHEAP embedding")
            self.impl = CheapEmbedder()
        self.impl_name = self.impl.name
        self.emb_dim = self.impl.emb_dim
        logger.info("Using %s emb_dim=%d", self.impl_name, self.emb_dim)

    def _try_make_arcface(self) -> Optional[ArcFaceONNX]:
        if not os.path.isfile(self.model_path):
            return None
        try:
            return ArcFaceONNX(self.model_path, providers=["CPUExecutionProvider"])
        except Exception as e:
            logger.warning("ArcFace ONNX init failed: %s", e)
            return None

    def embed(self, face_bgr: np.ndarray) -> EmbedResult:
        return self.impl.embed(face_bgr)
