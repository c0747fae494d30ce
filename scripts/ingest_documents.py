#!/usr/bin/env python3
"""
Ingest a JSON-lines file of documents into the knowledge store.

Each line is one document payload: {"content", "source", "title",
"sourceUrl"/"source_url", "category", "timestamp"}. An optional "vector"
field is used instead of calling the embedding provider.
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from insight_store.core.config import STORE_DIR, get_embedding_provider
from insight_store.core.errors import KnowledgeStoreError
from insight_store.core.knowledge_store import KnowledgeStore
from insight_store.core.schema import IngestOutcome, summarize_outcomes


def read_documents(path: Path):
    """Yield (line_number, payload) pairs; blank lines are skipped."""
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            if line.strip():
                yield number, json.loads(line)


def main():
    parser = argparse.ArgumentParser(
        description="Ingest JSON-lines documents into the knowledge store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s crawl.jsonl                    # Ingest into STORE_DIR
  %(prog)s crawl.jsonl --store ./data/vp  # Ingest into another store
  %(prog)s crawl.jsonl --snapshot         # Snapshot after ingesting

Environment variables:
- STORE_DIR (default ./data/store)
- EMBED_PROVIDER=hash|sentence_transformers|ollama
        """
    )
    parser.add_argument("input", help="JSON-lines file of documents")
    parser.add_argument("--store", default=STORE_DIR, help="Store directory")
    parser.add_argument("--snapshot", action="store_true", help="Take a snapshot when done")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print every outcome")

    args = parser.parse_args()

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"ERROR: Input file not found: {input_path}")
        sys.exit(1)

    try:
        store = KnowledgeStore.open(args.store, embedding_provider=get_embedding_provider())
    except KnowledgeStoreError as e:
        print(f"ERROR: Cannot open store at {args.store}: {e}")
        sys.exit(1)

    outcomes = []
    try:
        for number, payload in read_documents(input_path):
            vector = payload.pop("vector", None) if isinstance(payload, dict) else None
            try:
                identity, status = store.ingest_with_status(payload, vector)
                outcome = IngestOutcome(identity=identity, status=status)
            except KnowledgeStoreError as e:
                outcome = IngestOutcome(identity=None, status="failed", error=f"line {number}: {e}")
            outcomes.append(outcome)
            if args.verbose or not outcome.ok:
                print(f"{outcome.status:10} {outcome.identity or '-'} {outcome.error or ''}".rstrip())
    except json.JSONDecodeError as e:
        print(f"ERROR: Malformed JSON in {input_path}: {e}")
        sys.exit(1)

    summary = summarize_outcomes(outcomes)
    print("Ingestion complete: " + ", ".join(f"{status}={count}" for status, count in summary.items()))

    if args.snapshot:
        manifest = store.snapshot()
        print(f"✓ Snapshot {manifest.snapshot_id} written ({manifest.document_count} documents)")

    sys.exit(1 if summary["failed"] else 0)


if __name__ == "__main__":
    main()
