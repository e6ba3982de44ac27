# project/vision/tools/enrol_from_webcam.py
# SPACE: enroll the face in view under a typed name (default "Me"), ESC: quit.
from __future__ import annotations
import os
import sys
import logging
import argparse

import cv2

from vision.detector import EmotionDetector
from vision.matcher import FaceMatcher
from vision.run_loop import BACKEND_URL, CAM_INDEX, EnrollmentError, FrameSource, SamplingLoop
from vision.shipper import EventShipper


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Enroll faces from the webcam into the collector")
    parser.add_argument("--camera", type=int, default=CAM_INDEX)
    parser.add_argument("--backend", default=BACKEND_URL)
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    try:
        detector = EmotionDetector()
        source = FrameSource(args.camera)
    except (FileNotFoundError, RuntimeError) as e:
        print(f"[err] {e}")
        return 2

    shipper = EventShipper(args.backend)
    loop = SamplingLoop(detector, source, shipper=shipper,
                        matcher=FaceMatcher.from_records(shipper.fetch_faces()))
    print(f"[enrol] {len(loop.matcher)} samples on the server. SPACE: capture | ESC: quit")

    while True:
        frame = source.read()
        if frame is None:
            break
        vis = frame.copy()
        for (x1, y1, x2, y2) in detector.detect_faces(frame):
            cv2.rectangle(vis, (x1, y1), (x2, y2), (0, 255, 255), 2)
        cv2.putText(vis, "SPACE: capture | ESC: quit", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2)
        cv2.imshow("enrol_from_webcam", vis)

        k = cv2.waitKey(1) & 0xFF
        if k == 27:
            break
        if k == 32:
            name = input("Name to enroll [Me]: ").strip() or "Me"
            try:
                res = loop.enroll(name)
            except EnrollmentError as e:
                print(str(e))
                continue
            where = "saved on server" if res.persisted else "kept locally only"
            print(f"[enrol] Enrolled face as '{res.label}' ({where}).")

    source.release()
    shipper.close(wait=True)
    cv2.destroyAllWindows()
    print("[enrol] done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
