# project/vision/run_loop.py
# ------------------------------------------------------------
# Emotion sampling loop:
#   - every SAMPLE_INTERVAL_MS: grab a frame, classify every face
#     (identity via FaceMatcher, emotion + confidence via EmotionDetector)
#   - fold each sample into the TrackingSession (800 ms / emotion-change throttle)
#   - ship counted samples to the collector, fire-and-forget
#   - enroll(label): bounded retries, then largest-face fallback
# ESC (preview window) or Ctrl+C to quit
# ------------------------------------------------------------

from __future__ import annotations
import os
import sys
import time
import logging
import argparse
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Dict, List, Optional

import cv2
import numpy as np
import requests

from vision.matcher import FaceMatcher, UNKNOWN
from vision.shipper import EventShipper
from vision.stabilizer import TrackingSession

logger = logging.getLogger(__name__)

# ======= knobs =======
CAM_INDEX = int(os.getenv("CAM_INDEX", "0"))
BACKEND_URL = os.getenv("BACKEND_URL", "http://127.0.0.1:4000")
SEND_TO_BACKEND = os.getenv("SEND_TO_BACKEND", "1") == "1"
SAMPLE_INTERVAL_MS = int(os.getenv("SAMPLE_INTERVAL_MS", "300"))

CAP_WIDTH = 640
CAP_HEIGHT = 480
TARGET_FPS = 30

ENROL_ATTEMPTS = 4
ENROL_BACKOFF_S = 0.25      # linear: 0.25, 0.5, 0.75 s between attempts
CLASSIFIER_WAIT_S = 1.0     # max wait for the classifier per enrollment attempt
# =====================


class EnrollmentError(RuntimeError):
    """Shown to the user: no usable face for enrollment."""


@dataclass
class EnrollResult:
    label: str
    descriptor: np.ndarray
    via: str            # "single" or "largest"
    persisted: bool     # accepted by the collector


class FrameSource:
    """Webcam reader; safe to call read() from the loop and the enrollment action."""

    def __init__(self, index: int = CAM_INDEX, mirror: bool = True):
        self.index = index
        self.mirror = mirror
        self._lock = Lock()
        self.cap = cv2.VideoCapture(index)
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self.cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))
        self.cap.set(cv2.CAP_PROP_FPS, TARGET_FPS)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, CAP_WIDTH)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, CAP_HEIGHT)
        if not self.cap.isOpened():
            raise RuntimeError(f"Cannot open camera index {index}")

    def read(self):
        with self._lock:
            if self.cap is None:
                return None
            ok, frame = self.cap.read()
        if not ok or frame is None:
            return None
        return cv2.flip(frame, 1) if self.mirror else frame

    def release(self) -> None:
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None


class SamplingLoop:
    def __init__(self, detector, source, shipper: Optional[EventShipper] = None,
                 matcher: Optional[FaceMatcher] = None, interval_ms: int = SAMPLE_INTERVAL_MS,
                 session_id=None):
        self.detector = detector
        self.source = source
        self.shipper = shipper
        self.matcher = matcher if matcher is not None else FaceMatcher()
        self.interval_s = interval_ms / 1000.0
        self.session_id = session_id
        self.session: Optional[TrackingSession] = None
        self.last_detections: List = []

        self._classify_lock = Lock()
        self._stop = Event()
        self._thread: Optional[Thread] = None
        self._released = False

    # -------------- lifecycle --------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> TrackingSession:
        """Begin ticking. One-shot: stop() releases the source, so a stopped loop cannot restart."""
        if self.running:
            return self.session
        if self._released:
            raise RuntimeError("sampling loop was stopped and its source released; build a new loop")
        self.session = TrackingSession(session_id=self.session_id)
        self._stop.clear()
        self._thread = Thread(target=self._run, name="sampling-loop", daemon=True)
        self._thread.start()
        logger.info("[run] sampling every %d ms", int(self.interval_s * 1000))
        return self.session

    def stop(self, timeout: float = 2.0) -> Optional[Dict]:
        """Stop ticking, release the camera, drop the session; returns its final snapshot."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.source.release()
        self._released = True
        snap = self.session.snapshot() if self.session else None
        self.session = None
        return snap

    def _run(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            self.tick()
            self._stop.wait(max(0.0, self.interval_s - (time.monotonic() - started)))

    # -------------- classifier access --------------
    def _with_classifier(self, fn, frame, wait_s: float):
        if not self._classify_lock.acquire(timeout=wait_s):
            return None
        try:
            return fn(frame)
        except Exception as e:
            logger.warning("[classify] %s failed: %s", getattr(fn, "__name__", "call"), e)
            return None
        finally:
            self._classify_lock.release()

    # -------------- one sampling tick --------------
    def tick(self, now_ms: Optional[int] = None) -> List[Dict]:
        """
        Classify one frame and fold the results in. Returns the events that
        were counted (and handed to the shipper). Never raises.
        """
        if self.session is None:
            self.session = TrackingSession(session_id=self.session_id)
        session = self.session

        frame = self.source.read()
        if frame is None:
            logger.debug("[tick] no frame")
            return []

        # enrollment holds the classifier: skip this tick instead of queueing
        if not self._classify_lock.acquire(blocking=False):
            return []
        try:
            detections = self.detector.classify(frame)
        except Exception as e:
            logger.warning("[tick] classification failed, skipping: %s", e)
            return []
        finally:
            self._classify_lock.release()

        counted = []
        for det in detections or []:
            det.label, _ = self.matcher.best_match(det.descriptor) if det.descriptor is not None else (UNKNOWN, 0.0)
            event = session.observe(det.label, det.emotion, det.confidence, now_ms)
            if event is None:
                continue
            if self.shipper is not None:
                self.shipper.ship(event)
            counted.append(event)
        self.last_detections = list(detections or [])
        return counted

    # -------------- enrollment (user action) --------------
    def _single_face(self, frame):
        dets = self._with_classifier(self.detector.classify, frame, CLASSIFIER_WAIT_S) or []
        usable = [d for d in dets if d.descriptor is not None]
        if not usable:
            return None
        return max(usable, key=lambda d: d.confidence)

    def enroll(self, label: str = "Me", attempts: int = ENROL_ATTEMPTS,
               backoff_s: float = ENROL_BACKOFF_S) -> EnrollResult:
        label = (label or "").strip()
        if not label:
            raise EnrollmentError("Enrollment needs a non-empty name.")

        det, via, frame = None, "single", None
        for attempt in range(1, attempts + 1):
            frame = self.source.read()
            if frame is not None:
                det = self._single_face(frame)
                if det is not None:
                    break
            logger.info("[enrol] no face on attempt %d/%d", attempt, attempts)
            if attempt < attempts:
                time.sleep(backoff_s * attempt)

        if det is None and frame is not None:
            via = "largest"
            det = self._with_classifier(self.detector.scan_largest, frame, CLASSIFIER_WAIT_S)

        if det is None or det.descriptor is None:
            raise EnrollmentError("No face detected for enrollment. Please position your face and try again.")

        descriptor = np.asarray(det.descriptor, dtype=np.float32)
        self.matcher.add(label, descriptor)

        persisted = False
        if self.shipper is not None and self.shipper.enabled:
            try:
                persisted = self.shipper.enroll_face(label, descriptor)
            except requests.RequestException as e:
                logger.warning("[enrol] kept locally, collector rejected/unreachable: %s", e)

        logger.info("[enrol] enrolled %r via %s (persisted=%s, samples=%d)", label, via, persisted, len(self.matcher))
        return EnrollResult(label=label, descriptor=descriptor, via=via, persisted=persisted)


# -------------- preview --------------
def draw_overlays(frame, detections, session: Optional[TrackingSession]):
    font = cv2.FONT_HERSHEY_SIMPLEX
    for det in detections:
        x1, y1, x2, y2 = det.bbox
        color = (0, 220, 0) if det.label != UNKNOWN else (0, 170, 255)
        agg = session.get(det.label) if session else None
        score = agg.score if agg else 0
        cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)
        cv2.putText(frame, f"{det.label} | {det.emotion} {det.confidence:.0f}% | {score:+d}",
                    (x1, max(20, y1 - 10)), font, 0.6, color, 2, cv2.LINE_AA)
    return frame


# -------------- main --------------
def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Emotion sampling loop feeding the telemetry collector")
    parser.add_argument("--camera", type=int, default=CAM_INDEX)
    parser.add_argument("--backend", default=BACKEND_URL)
    parser.add_argument("--interval-ms", type=int, default=SAMPLE_INTERVAL_MS)
    parser.add_argument("--session-name", default=None, help="open a server session and tag events with it")
    parser.add_argument("--enrol", metavar="LABEL", default=None, help="enroll the current face before sampling")
    parser.add_argument("--no-send", action="store_true", help="keep everything local")
    parser.add_argument("--show", action="store_true", help="preview window (ESC to quit)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    from vision.detector import EmotionDetector

    shipper = EventShipper(args.backend, enabled=SEND_TO_BACKEND and not args.no_send)
    matcher = FaceMatcher.from_records(shipper.fetch_faces() if shipper.enabled else [])
    logger.info("[run] loaded %d enrolled samples (%s)", len(matcher), ", ".join(matcher.labels) or "none")

    session_id = shipper.open_session(args.session_name) if args.session_name else None

    try:
        detector = EmotionDetector()
        source = FrameSource(args.camera)
    except (FileNotFoundError, RuntimeError) as e:
        logger.error("[err] %s", e)
        shipper.close()
        return 2

    loop = SamplingLoop(detector, source, shipper=shipper, matcher=matcher,
                        interval_ms=args.interval_ms, session_id=session_id)

    if args.enrol:
        try:
            res = loop.enroll(args.enrol)
            print(f"Enrolled face as '{res.label}'.")
        except EnrollmentError as e:
            print(str(e))

    loop.start()
    try:
        while loop.running:
            if args.show:
                frame = source.read()
                if frame is not None:
                    cv2.imshow("emotion telemetry", draw_overlays(frame, loop.last_detections, loop.session))
                if (cv2.waitKey(30) & 0xFF) == 27:
                    break
            else:
                time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        snap = loop.stop()
        shipper.close(wait=True)
        if args.show:
            cv2.destroyAllWindows()

    if snap:
        for label, agg in snap["faces"].items():
            print(f"{label}: score={agg['score']:+d} detections={agg['detections']} {agg['histogram']}")
    print("[i] Closed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
