#!/usr/bin/env python3
"""
Index rebuild utility.
Compacts tombstoned rows out of the similarity index and snapshots the result.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from insight_store.core.config import STORE_DIR
from insight_store.core.errors import KnowledgeStoreError
from insight_store.core.knowledge_store import KnowledgeStore


def main():
    parser = argparse.ArgumentParser(description="Compact the similarity index and snapshot it")
    parser.add_argument("--store", default=STORE_DIR, help="Store directory")
    parser.add_argument("--no-snapshot", action="store_true", help="Skip the snapshot after compaction")

    args = parser.parse_args()

    try:
        store = KnowledgeStore.open(args.store)
        print("Starting index rebuild...")
        stats = store.stats()
        print(f"Found {stats.total_documents} documents, {stats.tombstones} tombstoned rows")

        reclaimed = store.compact()
        print(f"✓ Reclaimed {reclaimed} rows")

        store.check_consistency()
        print("✓ Metadata and index are consistent")

        if not args.no_snapshot:
            manifest = store.snapshot()
            print(f"✓ Snapshot {manifest.snapshot_id} written")
    except KnowledgeStoreError as e:
        print(f"ERROR: Rebuild failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
