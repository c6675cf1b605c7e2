from __future__ import annotations

import argparse
import os
from pathlib import Path

import requests


def _load_env_file(path: str = ".env") -> None:
    p = Path(path)
    if not p.exists():
        return
    for line in p.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        k, v = s.split("=", 1)
        os.environ.setdefault(k.strip(), v.strip())


def main() -> int:
    """Cron entry point: ask a running API to drop expired username holds.

    Example crontab line (every 5 minutes):
      */5 * * * * cd /srv/ring && python scripts/sweep_usernames.py
    """
    _load_env_file()
    parser = argparse.ArgumentParser(description="Clean expired, unconfirmed username reservations")
    parser.add_argument("--base-url", default=os.getenv("RING_API_URL") or "http://127.0.0.1:8000")
    parser.add_argument("--timeout", type=float, default=30.0)
    args = parser.parse_args()

    token = (os.getenv("ADMIN_TOKEN") or "").strip()
    if not token:
        print("ADMIN_TOKEN is not set")
        return 2

    url = args.base_url.rstrip("/") + "/admin/usernames/sweep"
    try:
        r = requests.post(url, headers={"X-Admin-Token": token}, timeout=args.timeout)
    except requests.exceptions.RequestException as e:
        print(f"sweep request failed: {e.__class__.__name__}: {e}")
        return 1

    if r.status_code != 200:
        print(f"sweep failed (HTTP {r.status_code}): {r.text[:2000]}")
        return 1

    print(f"cleaned {r.json().get('cleaned', 0)} expired username reservations")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
