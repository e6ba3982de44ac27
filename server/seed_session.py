# POST a named session to a running server: python -m server.seed_session "Reading session"
import os
import sys

import requests


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    url = os.environ.get("BACKEND_URL", "http://127.0.0.1:4000").rstrip("/") + "/sessions"
    payload = {
        "name": argv[0] if argv else "Reading session",
        "meta": {"source": "seed_session"},
    }

    try:
        r = requests.post(url, json=payload, timeout=5)
        r.raise_for_status()
        print("Response:", r.json())
    except requests.RequestException as e:
        print("Error:", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
