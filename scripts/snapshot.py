#!/usr/bin/env python3
"""
Snapshot utility: take, list and verify knowledge store snapshots.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from insight_store.core.config import STORE_DIR, SNAPSHOT_MASTER_PASSWORD
from insight_store.core.errors import CorruptSnapshot, KnowledgeStoreError
from insight_store.core.knowledge_store import KnowledgeStore
from insight_store.core.persistence import PersistenceManager


def cmd_take(args) -> int:
    store = KnowledgeStore.open(args.store)
    manifest = store.snapshot()
    print(f"✓ Snapshot {manifest.snapshot_id} written")
    if args.verbose:
        print(json.dumps(manifest.to_dict(), indent=2))
    return 0


def cmd_list(args) -> int:
    manager = PersistenceManager(args.store, encryption_password=SNAPSHOT_MASTER_PASSWORD)
    ids = manager.list_snapshots()
    if not ids:
        print("No snapshots found")
        return 0
    for snapshot_id in ids:
        print(manager.snapshot_path(snapshot_id).name)
    return 0


def cmd_verify(args) -> int:
    manager = PersistenceManager(args.store, encryption_password=SNAPSHOT_MASTER_PASSWORD)
    ids = [args.id] if args.id is not None else manager.list_snapshots()
    failures = 0
    for snapshot_id in ids:
        try:
            manifest = manager.verify(snapshot_id)
            print(f"✓ snapshot {snapshot_id}: {manifest.document_count} documents, sequence {manifest.sequence}")
        except CorruptSnapshot as e:
            failures += 1
            print(f"✗ snapshot {snapshot_id}: {e.reason}")
    return 1 if failures else 0


def main():
    parser = argparse.ArgumentParser(description="Manage knowledge store snapshots")
    parser.add_argument("--store", default=STORE_DIR, help="Store directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("take", help="Write a new snapshot and rotate the change log")
    subparsers.add_parser("list", help="List snapshot directories")
    verify = subparsers.add_parser("verify", help="Validate checksums and consistency")
    verify.add_argument("--id", type=int, help="Only verify this snapshot id")

    args = parser.parse_args()
    commands = {"take": cmd_take, "list": cmd_list, "verify": cmd_verify}

    try:
        sys.exit(commands[args.command](args))
    except KnowledgeStoreError as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
