# server/config.py
# ------------------------------------------------------------
# Process-wide settings, read once from the environment (.env honoured).
# ------------------------------------------------------------

import os
import logging

from dotenv import load_dotenv

load_dotenv()

PORT = int(os.environ.get("PORT", "4000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

DATA_DIR = os.environ.get("DATA_DIR", os.path.join(os.getcwd(), "data"))
DB_FILE = os.environ.get("DB_FILE", os.path.join(DATA_DIR, "telemetry.json"))

# Managed store credential: inline JSON wins over a file path
FIREBASE_SERVICE_ACCOUNT_JSON = os.environ.get("FIREBASE_SERVICE_ACCOUNT_JSON") or None
FIREBASE_SERVICE_ACCOUNT_FILE = os.environ.get("FIREBASE_SERVICE_ACCOUNT_FILE") or None

EVENTS_DEFAULT_LIMIT = 500
EVENTS_MAX_LIMIT = 1000
FIRESTORE_DELETE_BATCH = 400


def configure_logging(level=None):
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
