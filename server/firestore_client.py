# server/firestore_client.py
# ------------------------------------------------------------
# Picks the storage mode once per process:
#   - service-account credential present and valid -> Firestore client
#   - absent / malformed                            -> None (local JSON file)
# Never raises; a bad credential only costs a warning.
# ------------------------------------------------------------

import os
import json
import logging
from threading import Lock

import firebase_admin
from firebase_admin import credentials, firestore

from server import config

logger = logging.getLogger(__name__)

APP_NAME = "telemetry"

_client_lock = Lock()
_client = None
_resolved = False


def load_service_account(raw):
    """
    Turn a credential setting into a dict.
    `raw` is either inline JSON ("{...}") or a path to a JSON file.
    Returns None (with a warning) if it cannot be parsed or found.
    """
    if not raw:
        return None
    raw = raw.strip()
    try:
        if raw.startswith("{"):
            data = json.loads(raw)
        elif os.path.isfile(raw):
            with open(raw, "r", encoding="utf-8") as f:
                data = json.load(f)
        else:
            logger.warning("Service account file not found: %s", raw)
            return None
    except (OSError, ValueError) as e:
        logger.warning("Failed to parse service account credential: %s", e)
        return None

    if not isinstance(data, dict):
        logger.warning("Service account credential is not a JSON object")
        return None
    return data


def init_firestore(inline=None, path=None):
    """Build a Firestore client from the given settings, or return None."""
    source = "FIREBASE_SERVICE_ACCOUNT_JSON" if inline else "FIREBASE_SERVICE_ACCOUNT_FILE"
    raw = inline or path
    if not raw:
        logger.info("FIREBASE_SERVICE_ACCOUNT not set; Firestore disabled, using local file")
        return None

    service_account = load_service_account(raw)
    if service_account is None:
        logger.warning("Firestore disabled (bad %s); using local file", source)
        return None

    try:
        try:
            app = firebase_admin.get_app(APP_NAME)
        except ValueError:
            app = firebase_admin.initialize_app(
                credentials.Certificate(service_account), name=APP_NAME
            )
        client = firestore.client(app=app)
    except Exception as e:
        logger.warning("Failed to init Firestore (%s); using local file", e)
        return None

    logger.info("Firestore initialized via %s", source)
    return client


def get_firestore():
    """Process-wide client; resolved exactly once."""
    global _client, _resolved
    with _client_lock:
        if not _resolved:
            _client = init_firestore(
                config.FIREBASE_SERVICE_ACCOUNT_JSON,
                config.FIREBASE_SERVICE_ACCOUNT_FILE,
            )
            _resolved = True
        return _client
