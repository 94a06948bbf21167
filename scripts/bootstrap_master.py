#!/usr/bin/env python3
"""Create the one-time master admin and print its token.

Usage:
    STAGEKEY_STATE_DIR=/var/lib/stagekey python scripts/bootstrap_master.py --username director

    # Check whether the system is already bootstrapped:
    python scripts/bootstrap_master.py --status

Environment Variables:
    MASTER_USERNAME: Username for the master admin (or pass --username)
    STAGEKEY_STATE_DIR: Directory of the JSON state file; without it the
        master admin only lives for the duration of this process
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_master(username: str, dry_run: bool = False) -> dict:
    """Bootstrap the master admin.

    Returns:
        dict with status ('created', 'already_bootstrapped' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from stagekey.logging import set_correlation_id
    from stagekey.service.errors import BootstrapCompleteError
    from stagekey.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()
    try:
        marker = runtime.identity.bootstrap_status()
        if marker.master_ready:
            return {"status": "already_bootstrapped", "master_admin_id": marker.master_admin_id}
        if dry_run:
            print(f"[DRY RUN] Would create master admin: {username}")
            return {"status": "dry_run", "username": username}
        try:
            raw_token = await runtime.identity.bootstrap(username)
        except BootstrapCompleteError:
            return {"status": "already_bootstrapped"}
        marker = runtime.identity.bootstrap_status()
    finally:
        await runtime.close()
    return {
        "status": "created",
        "username": username,
        "master_admin_id": marker.master_admin_id,
        "token": raw_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the stage access master admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("MASTER_USERNAME"),
        help="Master admin username (or set MASTER_USERNAME env var)",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Only report whether the system is bootstrapped",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("STAGEKEY_STATE_DIR"):
        print("Note: STAGEKEY_STATE_DIR is not set; state will not outlive this process")

    if args.status:
        from stagekey.service.runtime import get_runtime

        marker = get_runtime().identity.bootstrap_status()
        print("bootstrapped" if marker.master_ready else "not bootstrapped")
        return

    if not args.username:
        print("Error: --username or MASTER_USERNAME environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(bootstrap_master(args.username, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nMaster admin created.")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['master_admin_id']}")
        print(f"  Token: {result['token']}")
        print("\nStore this token now; it cannot be shown again.")
    elif result["status"] == "already_bootstrapped":
        print("System is already bootstrapped; nothing to do.")
        sys.exit(2)


if __name__ == "__main__":
    main()
