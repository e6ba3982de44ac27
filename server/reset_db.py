# server/reset_db.py
# Wipe faces/events/students/sessions on the configured backend
# (same effect as POST /_admin/clear, without a running server).
import sys
import argparse
import logging

from server import config
from server.db import get_db

logger = logging.getLogger("reset_db")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Clear every telemetry collection (dev only)")
    parser.add_argument("--yes", action="store_true", help="do not ask for confirmation")
    args = parser.parse_args(argv)

    config.configure_logging()
    store = get_db()

    if not args.yes:
        answer = input(f"Clear ALL data in the {store.name} store? [y/N] ").strip().lower()
        if answer != "y":
            print("Aborted.")
            return 1

    ok = store.clear_all()
    if not ok:
        logger.warning("Reset finished with errors; some collections were not cleared")
        return 2

    print(f"✅ Reset complete ({store.name} store)")
    if store.name == "file":
        print(f"DB: {store.path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
