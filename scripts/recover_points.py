#!/usr/bin/env python
"""
Recalculate EVA Online point totals from completed sessions.

Usage:
    python scripts/recover_points.py --handle someuser            # dry run, one user
    python scripts/recover_points.py --handle someuser --apply
    python scripts/recover_points.py --all --apply --max-change 20000

Environment variables required:
    SUPABASE_URL
    SUPABASE_KEY
    EVA_OG_HANDLES     (optional, comma separated, added to accounts/config/og_handles.json)
"""

from __future__ import annotations

import argparse
import os
import sys

try:
    from supabase import create_client  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("supabase-py is required. Run `pip install -e .`.") from exc

from app import create_app
from recovery.service import BatchRecoveryOptions, batch_recover_points, recover_user_points


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Recalculate user points from completed sessions.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--handle", help="Twitter handle of a single user")
    target.add_argument("--all", action="store_true", help="Walk every user in handle order")
    parser.add_argument("--apply", action="store_true", help="Write changes (default is a dry run)")
    parser.add_argument("--batch-size", type=int, default=50)
    parser.add_argument("--max-change", type=int, default=50000)
    parser.add_argument("--start-after", default=None, help="Resume after this handle")
    parser.add_argument("--delay", type=float, default=1.0, help="Seconds to wait between batches")
    parser.add_argument("--include-unchanged", action="store_true")
    return parser.parse_args(argv)


def _print_single(entry) -> None:
    print(f"  • @{entry['twitter_handle']}: {entry['old_points']} → {entry['new_points']} ({entry['difference']:+d})")
    og = entry["og_status"]
    print(f"    OG: {og['wasOG']} → {og['isNowOG']}")
    if entry.get("backup_id"):
        print(f"    Backup: {entry['backup_id']}")


def run(argv=None) -> int:
    args = _parse_args(argv)
    supabase_url = os.environ.get("SUPABASE_URL")
    supabase_key = os.environ.get("SUPABASE_KEY")
    if not (supabase_url and supabase_key):
        raise SystemExit("Missing SUPABASE_URL or SUPABASE_KEY environment variables.")

    client = create_client(supabase_url, supabase_key)
    app = create_app({"SUPABASE_CLIENT": client, "MIRROR_SYNC_ENABLED": False})
    dry_run = not args.apply
    print(f"🔍 Point recovery ({'dry run' if dry_run else 'APPLYING CHANGES'})")

    with app.app_context():
        if args.handle:
            entry = recover_user_points(client, args.handle, dry_run=dry_run)
            if not entry:
                print(f"❌ User @{args.handle} not found (or has no profile).")
                return 1
            _print_single(entry)
            if not entry["changed"]:
                print("    No updates were necessary.")
            return 0

        options = BatchRecoveryOptions(
            batch_size=max(1, args.batch_size),
            max_point_change=max(1, args.max_change),
            dry_run=dry_run,
            start_after_handle=args.start_after,
            only_affected_users=not args.include_unchanged,
            delay_between_batches=max(0.0, args.delay),
        )
        result = batch_recover_points(client, options)

    for entry in result["recoveries"]:
        _print_single(entry)
    for error in result["errors"]:
        print(f"  ⚠️ @{error['twitterHandle']}: {error['error']}")

    print("\n✅ Recovery complete.")
    print(f"    Users processed:  {result['totalUsers']}")
    print(f"    Users updated:    {result['usersUpdated']}")
    print(f"    Points changed:   {result['totalPointsChanged']}")
    print(f"    Errors / flagged: {len(result['errors'])}")
    print(f"    Last handle:      {result['lastHandle']}")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        sys.exit("\n⚠️ Recovery cancelled by user.")
