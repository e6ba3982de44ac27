# -------------------- Import --------------------
import math
import logging

import numpy as np
from flask import Blueprint, Flask, current_app, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO, emit

from server import config
from server.db import get_db, now_iso, StoreError
from server.services.summary_service import compute_summary_payload

logger = logging.getLogger(__name__)

socketio = SocketIO()
api = Blueprint("api", __name__)


# -------------------- Helpers --------------------
def db():
    return current_app.config["STORE"]


def body():
    """JSON body as a dict; anything else (missing, invalid, a list) is {}."""
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


# --- JSON-safe casters (never raise; bad input becomes the default) ---
def pfloat(x, default=0.0):
    if x is None or isinstance(x, bool):
        return default
    try:
        v = float(x)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default


def pint(x, default=0):
    if x is None or isinstance(x, bool):
        return default
    try:
        return int(float(x))
    except (TypeError, ValueError, OverflowError):
        return default


def pstr(x):
    """Non-empty string or None."""
    return x if isinstance(x, str) and x else None


def pkey(x):
    """Session key: non-empty string or integer id, else None."""
    if isinstance(x, int) and not isinstance(x, bool):
        return x
    return pstr(x)


def _safe_vec(value):
    if value is None or isinstance(value, (str, bytes, dict)):
        return None
    try:
        v = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if v.ndim != 1 or v.size == 0 or not np.all(np.isfinite(v)):
        return None
    return v


def limit_arg():
    n = pint(request.args.get("limit"), config.EVENTS_MAX_LIMIT)
    return max(1, min(config.EVENTS_MAX_LIMIT, n))


# -------------------- API: Health --------------------
@api.get("/health")
def api_health():
    return jsonify({"ok": True, "timestamp": now_iso()}), 200


# -------------------- API: Faces --------------------
@api.get("/faces")
def list_faces():
    return jsonify(db().get_faces())


@api.post("/faces")
def enroll_face():
    data = body()
    label = data.get("label")
    label = label.strip() if isinstance(label, str) else ""
    vec = _safe_vec(data.get("descriptor"))
    if not label or vec is None:
        return jsonify({"error": "Missing label or descriptor"}), 400

    face_id = db().add_face(label, vec.tolist())
    logger.info("Enrolled face %s as %r (%d dims)", face_id, label, vec.size)
    return jsonify({"ok": True, "id": face_id})


# -------------------- API: Events --------------------
@api.post("/events")
def create_event():
    """
    Per-detection emotion event from the vision loop.
    Every field is optional; missing or malformed fields get defaults.
      { face_label?, emotion?, confidence?, delta?, session_id?, timestamp? }
    """
    data = body()
    row = {
        "face_label": pstr(data.get("face_label")),
        "emotion": pstr(data.get("emotion")),
        "confidence": pfloat(data.get("confidence")),
        "delta": pint(data.get("delta")),
        "session_id": pkey(data.get("session_id")),
        "timestamp": pstr(data.get("timestamp")) or now_iso(),
    }
    event_id = db().insert_event(**row)

    try:
        socketio.emit("event", {"id": event_id, **row}, namespace="/events")
    except Exception as e:
        logger.debug("socket emit failed: %s", e)

    return jsonify({"ok": True, "id": event_id})


@api.get("/events")
def recent_events():
    """
    Query params:
      face_label=Me     exact match
      session_id=5      exact match
      limit=1000        capped at 1000
    """
    rows = db().get_events(
        face_label=request.args.get("face_label") or None,
        session_id=request.args.get("session_id") or None,
        limit=limit_arg(),
    )
    return jsonify(rows)


@api.get("/events/summary")
def events_summary():
    session_id = request.args.get("session_id") or None
    rows = db().get_events(
        face_label=request.args.get("face_label") or None,
        session_id=session_id,
        limit=limit_arg(),
    )
    return jsonify(compute_summary_payload(rows, session_id=session_id))


# -------------------- API: Sessions --------------------
@api.post("/sessions")
def create_session():
    data = body()
    session_id = db().add_session(data.get("name") or None, data.get("meta") or None)
    return jsonify({"ok": True, "id": session_id})


@api.get("/sessions")
def list_sessions():
    return jsonify(db().get_sessions())


# -------------------- API: Students --------------------
@api.get("/students")
def list_students():
    return jsonify(db().get_students())


@api.get("/students/<path:email>/history")
def get_student_history(email):
    row = db().get_student_history(email)
    if not row:
        return jsonify({"error": "Not found"}), 404
    return jsonify({"email": row.get("email"), "name": row.get("name"), "history": row.get("history")})


@api.post("/students/<path:email>/history")
def set_student_history(email):
    data = body()
    db().set_student_history(email, data.get("name") or None, data.get("history") or {})
    return jsonify({"ok": True})


# -------------------- API: Admin (dev only, unauthenticated) --------------------
@api.post("/_admin/clear")
def admin_clear():
    ok = db().clear_all()
    if ok:
        logger.info("All collections cleared via /_admin/clear")
    else:
        logger.warning("clear_all finished with errors; some collections may remain")
    return jsonify({"ok": True})


@api.errorhandler(StoreError)
def on_store_error(e):
    return jsonify({"ok": False, "error": str(e)}), 503


# -------------------- Socket.IO --------------------
@socketio.on("connect", namespace="/events")
def on_connect_events():
    emit("connected", {"ok": True})


# -------------------- App factory --------------------
def create_app(store=None):
    app = Flask(__name__)
    app.config["STORE"] = store if store is not None else get_db()

    CORS(app, origins=config.CORS_ORIGINS)
    app.register_blueprint(api)
    socketio.init_app(app, cors_allowed_origins=config.CORS_ORIGINS)
    return app


# -------------------- Main --------------------
def main():
    config.configure_logging()
    app = create_app()
    logger.info("Telemetry server (%s store) on http://localhost:%d", app.config["STORE"].name, config.PORT)
    socketio.run(app, host="0.0.0.0", port=config.PORT, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
