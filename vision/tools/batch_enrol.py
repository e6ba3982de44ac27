# project/vision/tools/batch_enrol.py
# Enroll a folder tree into the collector: <root>/<label>/*.jpg -> POST /faces
# Every readable image becomes one sample for its folder's label
# (largest face in the image, the whole image if no face is found).
from __future__ import annotations
import os
import sys
import glob
import logging
import argparse

import cv2
import requests

from vision.auto_enrol import EmbedFactory
from vision.detector import BROAD_SCAN, expand_crop_xyxy
from vision.run_loop import BACKEND_URL
from vision.shipper import EventShipper

logger = logging.getLogger(__name__)

PATTERNS = ["*.jpg", "*.jpeg", "*.png", "*.bmp"]


def largest_face(cascade, img):
    gray = cv2.equalizeHist(cv2.cvtColor(img, cv2.COLOR_BGR2GRAY))
    for p in BROAD_SCAN:
        fs = cascade.detectMultiScale(gray, **p)
        if len(fs):
            x, y, w, h = max(fs, key=lambda f: f[2] * f[3])
            x1, y1, x2, y2 = expand_crop_xyxy(img, int(x), int(y), int(x + w), int(y + h))
            return img[y1:y2, x1:x2]
    return img


def enrol_label(shipper, factory, cascade, label, paths) -> int:
    sent = 0
    for p in paths:
        img = cv2.imread(p, cv2.IMREAD_COLOR)
        if img is None:
            logger.warning("[batch] unreadable image: %s", p)
            continue
        res = factory.embed(largest_face(cascade, img))
        if not res.ok:
            logger.warning("[batch] embed failed for %s: %s", p, res.error)
            continue
        try:
            shipper.enroll_face(label, res.emb)
            sent += 1
        except requests.RequestException as e:
            logger.error("[batch] collector rejected %s (%s): %s", label, p, e)
    return sent


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Batch enroll faces: one subfolder of images per label")
    parser.add_argument("--root", default="vision/data/dataset",
                        help="folder with one subfolder of images per label")
    parser.add_argument("--backend", default=BACKEND_URL)
    parser.add_argument("--skip-known", action="store_true",
                        help="skip labels the collector already has")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    if not os.path.isdir(args.root):
        logger.error("[batch] dataset root not found: %s", args.root)
        return 1

    factory = EmbedFactory()
    cascade = cv2.CascadeClassifier(cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
    shipper = EventShipper(args.backend, timeout=5.0)
    known = {r.get("label") for r in shipper.fetch_faces()} if args.skip_known else set()

    total = 0
    for label in sorted(os.listdir(args.root)):
        folder = os.path.join(args.root, label)
        if not os.path.isdir(folder):
            continue
        if label in known:
            logger.info("[batch] skipping known label: %s", label)
            continue

        paths = sorted(p for pat in PATTERNS for p in glob.glob(os.path.join(folder, pat)))
        if not paths:
            logger.warning("[batch] no images for %s, skipping", label)
            continue

        n = enrol_label(shipper, factory, cascade, label, paths)
        total += n
        logger.info("[batch] %s: %d/%d image(s) enrolled", label, n, len(paths))

    shipper.close(wait=True)
    logger.info("[batch] done, %d sample(s) enrolled", total)
    return 0


if __name__ == "__main__":
    sys.exit(main())
