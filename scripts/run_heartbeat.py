#!/usr/bin/env python3
"""
Run periodic snapshot and compaction for a knowledge store directory.
"""

import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from insight_store.core.config import STORE_DIR, is_heartbeat_enabled
from insight_store.core.errors import KnowledgeStoreError
from insight_store.core.heartbeat import register_store_tasks, start, stop, list_tasks
from insight_store.core.knowledge_store import KnowledgeStore


def main():
    """Main entry point for heartbeat script."""
    if not is_heartbeat_enabled():
        print("❌ Heartbeat requires HEARTBEAT_ENABLED=true")
        sys.exit(1)

    store_dir = sys.argv[1] if len(sys.argv) > 1 else STORE_DIR

    try:
        store = KnowledgeStore.open(store_dir)
        register_store_tasks(store)
        print(f"🏃 Running {list_tasks()} for {store_dir}")

        start()

    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
        stop()
        store.snapshot()
    except (KnowledgeStoreError, ValueError) as e:
        print(f"💥 Critical error: {e}")
        stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
