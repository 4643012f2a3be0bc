# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Command line front end.

Usage:
    python -m snipsync --vault ~/notes login
    python -m snipsync --vault ~/notes sync
    python -m snipsync --vault ~/notes watch --minutes 30
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import threading
from pathlib import Path

from .client import ExportSyncClient, SyncError, SyncOutput, SyncStatus
from .scheduler import SyncScheduler
from .vault import SyncableVault


def _report(output: SyncOutput) -> int:
    print(output.message)
    return 0 if output.status in (SyncStatus.COMPLETED, SyncStatus.NO_CHANGES) else 1


def _run(client: ExportSyncClient, test: bool = False) -> int:
    try:
        return _report(client.test_sync() if test else client.sync())
    except SyncError as e:
        print(f"Sync failed: {e}")
        return 1
    except KeyboardInterrupt:
        client.cancel()
        print("Sync stopped; the next run resumes from the last saved batch")
        return 130


def _status(vault: SyncableVault) -> int:
    s = vault.settings
    p = s.progress
    print(f"Vault:          {vault.root}")
    print(f"Target folder:  {s.target_dir}")
    print(f"Connected:      {'yes' if s.api_key else 'no'}")
    print(f"Synced files:   {len(s.file_hash_map)} ({len(s.append_only_files)} append-only)")
    print(f"Last sync:      {s.last_sync_timestamp or 'never'}")
    if s.last_sync_timestamp:
        print(
            f"                {s.last_sync_episode_count} episodes, "
            f"{s.last_sync_snip_count} snips"
        )
    if p.in_flight:
        print(f"Interrupted:    batch {p.batch_index + 1}/{p.total_batches} pending")
    return 0


def _watch(client: ExportSyncClient, minutes: float) -> int:
    if minutes <= 0:
        print("Error: --minutes must be positive")
        return 1
    scheduler = SyncScheduler(client, minutes)
    _run(client)
    scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
        client.cancel()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="snipsync", description="Mirror your podcast snips into a folder"
    )
    parser.add_argument("--vault", "-d", default=".", help="Vault directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command")
    login = sub.add_parser("login", help="Store the API key")
    login.add_argument("--api-key", help="API key (prompted if omitted)")
    sub.add_parser("logout", help="Forget the API key")
    configure = sub.add_parser("configure", help="Change sync preferences")
    configure.add_argument("--target-dir")
    configure.add_argument("--frequency", type=int, help="Minutes between syncs")
    configure.add_argument("--endpoint")
    configure.add_argument(
        "--only-edited", action=argparse.BooleanOptionalAction, default=None
    )
    configure.add_argument(
        "--trigger-on-load", action=argparse.BooleanOptionalAction, default=None
    )
    configure.add_argument(
        "--debug-bundles", action=argparse.BooleanOptionalAction, default=None
    )
    sub.add_parser("sync", help="Sync now")
    sub.add_parser("test-sync", help="Sync 5 random episodes into a test folder")
    sub.add_parser("status", help="Show sync status")
    reset_asset = sub.add_parser(
        "reset-asset", help="Let sync overwrite a locally modified base asset again"
    )
    reset_asset.add_argument("path", help="Vault-relative path of the asset")
    watch = sub.add_parser("watch", help="Sync periodically until interrupted")
    watch.add_argument("--minutes", type=float, help="Interval (default: settings)")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        vault = SyncableVault(Path(args.vault).expanduser())
    except SyncError as e:
        print(f"Error: {e}")
        return 1
    s = vault.settings

    if args.command == "login":
        s.api_key = args.api_key or getpass.getpass("API key: ")
        vault.save_settings()
        print("API key saved")
        return 0
    if args.command == "logout":
        s.api_key = ""
        vault.save_settings()
        print("API key removed")
        return 0
    if args.command == "configure":
        if args.target_dir is not None:
            s.target_dir = args.target_dir
        if args.frequency is not None:
            s.frequency_minutes = args.frequency
        if args.endpoint is not None:
            s.endpoint = args.endpoint
        if args.only_edited is not None:
            s.only_edited_snips = args.only_edited
        if args.trigger_on_load is not None:
            s.trigger_on_load = args.trigger_on_load
        if args.debug_bundles is not None:
            s.save_debug_bundles = args.debug_bundles
        vault.save_settings()
        return _status(vault)
    if args.command == "status":
        return _status(vault)
    if args.command == "reset-asset":
        if not vault.reset_base_override(args.path):
            print(f"{args.path} is not a manually overridden base asset")
            return 1
        print(f"{args.path} will be updated by the next sync")
        return 0

    client = ExportSyncClient(vault)
    if args.command == "sync":
        return _run(client)
    if args.command == "test-sync":
        return _run(client, test=True)
    if args.command == "watch":
        minutes = args.minutes if args.minutes is not None else s.frequency_minutes
        return _watch(client, minutes)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
