# server/db.py
# ------------------------------------------------------------
# Persistence layer: faces, events, students, sessions.
#   - FileStore      : one JSON document on disk, whole-file rewrite per write
#   - FirestoreStore : managed document store, backend-generated ids
# get_db() picks one at first use and keeps it for the process lifetime.
# Reads never raise (empty result on failure); writes go through.
# Firestore: filtered event reads (face_label or session_id + timestamp desc)
# need a composite index per filter combination; a missing one logs an ERROR.
# ------------------------------------------------------------

import os
import copy
import json
import logging
import tempfile
from datetime import datetime, timezone
from threading import Lock, RLock

from firebase_admin import firestore
from google.api_core import exceptions as gexc

from server import config
from server.firestore_client import get_firestore

logger = logging.getLogger(__name__)

COLLECTIONS = ("faces", "events", "students", "sessions")
COUNTERS = ("faces", "events", "sessions")

INITIAL_DOC = {
    "_counters": {"faces": 0, "events": 0, "sessions": 0},
    "faces": [],
    "events": [],
    "students": [],
    "sessions": [],
}


class StoreError(RuntimeError):
    """A write could not be persisted by the active backend."""


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def _ts_key(value):
    """Sort key for ISO-8601 timestamps; unparsable values sort oldest."""
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _as_int(x):
    try:
        return int(x)
    except (TypeError, ValueError):
        return 0


class Store:
    """Operations every backend provides. Callers depend on this only."""

    name = "abstract"

    def get_faces(self):
        raise NotImplementedError

    def add_face(self, label, descriptor):
        raise NotImplementedError

    def insert_event(self, face_label=None, emotion=None, confidence=0, delta=0,
                     session_id=None, timestamp=None):
        raise NotImplementedError

    def get_events(self, face_label=None, session_id=None, limit=config.EVENTS_DEFAULT_LIMIT):
        raise NotImplementedError

    def get_students(self):
        raise NotImplementedError

    def get_student_history(self, email):
        raise NotImplementedError

    def set_student_history(self, email, name, history):
        raise NotImplementedError

    def add_session(self, name, meta):
        raise NotImplementedError

    def get_sessions(self):
        raise NotImplementedError

    def clear_all(self):
        raise NotImplementedError


# -------------------- Local JSON file --------------------
class FileStore(Store):
    """
    Whole-document JSON file. Each write is read-modify-write of the full
    document, written to a temp file and swapped in with os.replace().
    Counters only move forward for the lifetime of this object, even across
    clear_all() or a file that vanished / got corrupted underneath us.
    """

    name = "file"

    def __init__(self, path):
        self.path = os.path.abspath(path)
        self._lock = RLock()
        self._high_water = {k: 0 for k in COUNTERS}
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._ensure()

    # ---- raw document I/O ----
    def _repair(self, data):
        counters = data.get("_counters")
        if not isinstance(counters, dict):
            counters = {}
        for key in COLLECTIONS:
            rows = data.get(key)
            data[key] = [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []
        for key in COUNTERS:
            top = max((_as_int(r.get("id")) for r in data[key]), default=0)
            counters[key] = max(_as_int(counters.get(key)), top)
        data["_counters"] = counters
        return data

    def _read(self):
        try:
            if not os.path.exists(self.path):
                return copy.deepcopy(INITIAL_DOC)
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
            if not raw.strip():
                return copy.deepcopy(INITIAL_DOC)
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON is not an object")
        except (OSError, ValueError) as e:
            logger.warning("Failed to read db file %s, recreating: %s", self.path, e)
            return copy.deepcopy(INITIAL_DOC)
        return self._repair(data)

    def _write(self, data):
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(self.path), prefix=".telemetry-", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to write db file %s: %s", self.path, e)
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

    def _ensure(self):
        with self._lock:
            data = self._read()
            for key in COUNTERS:
                self._high_water[key] = data["_counters"][key]
            self._write(data)
        logger.debug("File store ready at %s", self.path)

    def _next_id(self, data, kind):
        n = max(_as_int(data["_counters"].get(kind)), self._high_water[kind]) + 1
        data["_counters"][kind] = n
        self._high_water[kind] = n
        return n

    # ---- faces ----
    def get_faces(self):
        return list(reversed(self._read()["faces"]))

    def add_face(self, label, descriptor):
        with self._lock:
            d = self._read()
            face_id = self._next_id(d, "faces")
            d["faces"].append({
                "id": face_id,
                "label": label,
                "descriptor": descriptor,
                "created_at": now_iso(),
            })
            self._write(d)
        return face_id

    # ---- events ----
    def insert_event(self, face_label=None, emotion=None, confidence=0, delta=0,
                     session_id=None, timestamp=None):
        with self._lock:
            d = self._read()
            event_id = self._next_id(d, "events")
            d["events"].append({
                "id": event_id,
                "face_label": face_label,
                "emotion": emotion,
                "confidence": confidence,
                "delta": delta,
                "session_id": session_id,
                "timestamp": timestamp or now_iso(),
            })
            self._write(d)
        return event_id

    def get_events(self, face_label=None, session_id=None, limit=config.EVENTS_DEFAULT_LIMIT):
        # newest insert first, then a stable sort by timestamp: ties keep arrival order
        rows = list(reversed(self._read()["events"]))
        if face_label:
            rows = [e for e in rows if e.get("face_label") == face_label]
        if session_id not in (None, ""):
            rows = [e for e in rows if str(e.get("session_id")) == str(session_id)]
        rows.sort(key=lambda e: _ts_key(e.get("timestamp")), reverse=True)
        return rows[:max(0, int(limit))]

    # ---- students ----
    def get_students(self):
        return list(reversed(self._read()["students"]))

    def get_student_history(self, email):
        for s in self._read()["students"]:
            if s.get("email") == email:
                return s
        return None

    def set_student_history(self, email, name, history):
        row = {"email": email, "name": name, "history": history}
        with self._lock:
            d = self._read()
            for i, s in enumerate(d["students"]):
                if s.get("email") == email:
                    row["created_at"] = s.get("created_at") or now_iso()
                    d["students"][i] = row
                    break
            else:
                row["created_at"] = now_iso()
                d["students"].append(row)
            self._write(d)

    # ---- sessions ----
    def add_session(self, name, meta):
        with self._lock:
            d = self._read()
            session_id = self._next_id(d, "sessions")
            d["sessions"].append({
                "id": session_id,
                "name": name,
                "meta": meta or None,
                "created_at": now_iso(),
            })
            self._write(d)
        return session_id

    def get_sessions(self):
        return list(reversed(self._read()["sessions"]))

    # ---- admin ----
    def clear_all(self):
        with self._lock:
            d = self._read()
            fresh = copy.deepcopy(INITIAL_DOC)
            for key in COUNTERS:
                fresh["_counters"][key] = max(_as_int(d["_counters"].get(key)), self._high_water[key])
            self._write(fresh)
        return True


# -------------------- Firestore --------------------
class FirestoreStore(Store):
    """
    Firestore collections faces/events/students/sessions.
    Ids are Firestore document ids; no local counters.
    clear_all() is not transactional across collections: an interrupted clear
    can leave some collections wiped and others untouched.
    """

    name = "firestore"

    def __init__(self, client, batch_size=config.FIRESTORE_DELETE_BATCH):
        self.client = client
        self.batch_size = batch_size

    def _collection(self, name):
        return self.client.collection(name)

    @staticmethod
    def _rows(query):
        return [{"id": doc.id, **(doc.to_dict() or {})} for doc in query.stream()]

    def _add(self, collection, payload):
        try:
            _, ref = self._collection(collection).add(payload)
        except Exception as e:
            logger.warning("Firestore add to %s failed: %s", collection, e)
            raise StoreError(f"could not write to {collection}") from e
        return ref.id

    # ---- faces ----
    def get_faces(self):
        try:
            q = self._collection("faces").order_by("created_at", direction=firestore.Query.DESCENDING)
            return self._rows(q)
        except Exception as e:
            logger.warning("Firestore read faces failed: %s", e)
            return []

    def add_face(self, label, descriptor):
        return self._add("faces", {"label": label, "descriptor": descriptor, "created_at": now_iso()})

    # ---- events ----
    def insert_event(self, face_label=None, emotion=None, confidence=0, delta=0,
                     session_id=None, timestamp=None):
        return self._add("events", {
            "face_label": face_label,
            "emotion": emotion,
            "confidence": confidence,
            "delta": delta,
            "session_id": session_id,
            "timestamp": timestamp or now_iso(),
        })

    def get_events(self, face_label=None, session_id=None, limit=config.EVENTS_DEFAULT_LIMIT):
        try:
            q = self._collection("events")
            if face_label:
                q = q.where(filter=firestore.FieldFilter("face_label", "==", face_label))
            if session_id not in (None, ""):
                q = q.where(filter=firestore.FieldFilter("session_id", "==", session_id))
            q = q.order_by("timestamp", direction=firestore.Query.DESCENDING).limit(int(limit))
            return self._rows(q)
        except gexc.FailedPrecondition as e:
            logger.error("Firestore events query needs a composite index "
                         "(filter field + timestamp desc); create it from the link in: %s", e)
            return []
        except Exception as e:
            logger.warning("Firestore read events failed: %s", e)
            return []

    # ---- students ----
    def get_students(self):
        """Most recently created first; records without created_at sort last."""
        try:
            rows = [doc.to_dict() or {} for doc in self._collection("students").stream()]
        except Exception as e:
            logger.warning("Firestore read students failed: %s", e)
            return []
        rows.sort(key=lambda r: _ts_key(r.get("created_at")), reverse=True)
        return rows

    def get_student_history(self, email):
        try:
            doc = self._collection("students").document(email).get()
            return doc.to_dict() if doc.exists else None
        except Exception as e:
            logger.warning("Firestore read student %s failed: %s", email, e)
            return None

    def set_student_history(self, email, name, history):
        try:
            ref = self._collection("students").document(email)
            current = ref.get()
            created_at = (current.to_dict() or {}).get("created_at") if current.exists else None
            ref.set({"email": email, "name": name, "history": history,
                     "created_at": created_at or now_iso()})
        except Exception as e:
            logger.warning("Firestore write student %s failed: %s", email, e)
            raise StoreError("could not write to students") from e

    # ---- sessions ----
    def add_session(self, name, meta):
        return self._add("sessions", {"name": name, "meta": meta or None, "created_at": now_iso()})

    def get_sessions(self):
        try:
            q = self._collection("sessions").order_by("created_at", direction=firestore.Query.DESCENDING)
            return self._rows(q)
        except Exception as e:
            logger.warning("Firestore read sessions failed: %s", e)
            return []

    # ---- admin ----
    def _clear_collection(self, name):
        coll = self._collection(name)
        deleted = 0
        while True:
            docs = list(coll.limit(self.batch_size).stream())
            if not docs:
                return deleted
            batch = self.client.batch()
            for doc in docs:
                batch.delete(doc.reference)
            batch.commit()
            deleted += len(docs)

    def clear_all(self):
        ok = True
        for name in COLLECTIONS:
            try:
                n = self._clear_collection(name)
                logger.info("Cleared %d docs from %s", n, name)
            except Exception as e:
                ok = False
                logger.warning("Failed to clear Firestore collection %s: %s", name, e)
        return ok


# -------------------- Backend selection --------------------
_db_lock = Lock()
_db = None


def get_db():
    """The process-wide store; chosen on first call, never swapped."""
    global _db
    with _db_lock:
        if _db is None:
            client = get_firestore()
            _db = FirestoreStore(client) if client is not None else FileStore(config.DB_FILE)
        return _db
