#!/usr/bin/env python
"""
Run the fundraiser settlement sweep by hand.

Usage:
    python scripts/run_settlement_sweep.py            # settle locally against the configured store
    python scripts/run_settlement_sweep.py --remote   # trigger the deployed /api/cron/daily

Environment variables:
    SUPABASE_URL, SUPABASE_KEY, USE_SUPABASE   (local run against Supabase)
    DATABASE_URL                               (local run against SQL, optional)
    APP_URL, CRON_SECRET                       (required for --remote)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import create_app  # noqa: E402  (reuse the app's config and store wiring)
from fundraisers import build_engine  # noqa: E402


def _print_report(report: dict) -> None:
    processed = report.get("processed") or []
    skipped = report.get("skipped") or []
    failed = report.get("failed") or []

    for item in processed:
        print(
            f"  • {item.get('title')} ({item.get('fundraiser_id')}): "
            f"${item.get('total_raised')} from {item.get('pledges_settled')} pledge(s)"
        )
        excluded = item.get("pledges_excluded") or []
        if excluded:
            print(f"    ⚠️ Excluded malformed pledges: {', '.join(excluded)}")
    for item in failed:
        print(f"  ✖ {item.get('fundraiser_id')}: {item.get('error')}")

    print("\n✅ Sweep complete.")
    print(f"    Settled: {len(processed)}")
    print(f"    Skipped: {len(skipped)}")
    print(f"    Failed:  {len(failed)}")


def sweep_local() -> dict:
    app = create_app()
    print("🔍 Settling fundraisers closed before today...")
    with app.app_context():
        return build_engine(app).finalize_due().to_dict()


def sweep_remote() -> dict:
    app_url = os.environ.get("APP_URL")
    secret = os.environ.get("CRON_SECRET")
    if not (app_url and secret):
        raise SystemExit("Missing APP_URL or CRON_SECRET environment variables.")

    url = f"{app_url.rstrip('/')}/api/cron/daily"
    print(f"🔍 Triggering {url} ...")
    resp = requests.post(url, headers={"Authorization": f"Bearer {secret}"}, timeout=120)
    if resp.status_code != 200:
        raise SystemExit(f"Sweep request failed ({resp.status_code}): {resp.text[:200]}")
    return resp.json().get("fundraisers") or {}


if __name__ == "__main__":
    try:
        result = sweep_remote() if "--remote" in sys.argv[1:] else sweep_local()
    except KeyboardInterrupt:
        sys.exit("\n⚠️ Sweep cancelled by user.")
    _print_report(result)
