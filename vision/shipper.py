# project/vision/shipper.py
# ------------------------------------------------------------
# Best-effort event delivery to the collector:
#   - ship() hands the POST to a small thread pool and returns at once
#   - at most once: no retry, failures are logged and dropped
#   - close() stops accepting work; posts already handed off still finish
# ------------------------------------------------------------

from __future__ import annotations
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)


class EventShipper:
    def __init__(self, base_url: str, timeout: float = 2.0, max_workers: int = 2,
                 enabled: bool = True, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.enabled = enabled
        self.http = session or requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ship")
        self._closed = False
        self.sent = 0
        self.failed = 0

    # -------------- fire-and-forget --------------
    def _post_event(self, payload: Dict) -> bool:
        try:
            r = self.http.post(f"{self.base_url}/events", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            self.failed += 1
            logger.warning("[post] failed: %s", e)
            return False
        if r.status_code != 200:
            self.failed += 1
            logger.warning("[post] non-200 %s: %s", r.status_code, r.text[:160])
            return False
        self.sent += 1
        return True

    def ship(self, payload: Dict) -> Optional[Future]:
        """Queue one event. Never raises, never waits on the network."""
        if not self.enabled or self._closed:
            return None
        try:
            return self._pool.submit(self._post_event, dict(payload))
        except RuntimeError as e:  # pool shut down between the check and submit
            logger.debug("[post] dropped, shipper closed: %s", e)
            return None

    # -------------- blocking helpers (startup / enrollment) --------------
    def open_session(self, name: Optional[str] = None, meta: Optional[Dict] = None):
        """Create a server-side session; returns its id or None."""
        if not self.enabled:
            return None
        try:
            r = self.http.post(f"{self.base_url}/sessions",
                               json={"name": name, "meta": meta}, timeout=self.timeout)
            r.raise_for_status()
            return r.json().get("id")
        except (requests.RequestException, ValueError) as e:
            logger.warning("[session] could not open session: %s", e)
            return None

    def enroll_face(self, label: str, descriptor) -> bool:
        """POST /faces. Raises requests.RequestException on failure."""
        r = self.http.post(f"{self.base_url}/faces",
                           json={"label": label, "descriptor": [float(x) for x in descriptor]},
                           timeout=self.timeout)
        r.raise_for_status()
        return True

    def fetch_faces(self):
        """GET /faces; an empty list if the collector is unreachable."""
        try:
            r = self.http.get(f"{self.base_url}/faces", timeout=self.timeout)
            r.raise_for_status()
            rows = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("[faces] could not load enrolled faces: %s", e)
            return []
        return rows if isinstance(rows, list) else []

    def close(self, wait: bool = False) -> None:
        self._closed = True
        self._pool.shutdown(wait=wait)
