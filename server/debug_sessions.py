# Print the newest sessions with their event counts.
from collections import Counter

from server import config
from server.db import get_db


def main(limit=5):
    config.configure_logging("WARNING")
    store = get_db()
    print("Using store:", store.name)

    per_session = Counter(str(e.get("session_id")) for e in store.get_events(limit=config.EVENTS_MAX_LIMIT))
    for s in store.get_sessions()[:limit]:
        print(s.get("id"), s.get("name"), s.get("created_at"), "events:", per_session.get(str(s.get("id")), 0))


if __name__ == "__main__":
    main()
