"""
Tests for the reader/writer lock and concurrent store access.
"""

import threading
import time

import numpy as np

from insight_store.core.concurrency import ReadWriteLock
from insight_store.core.knowledge_store import KnowledgeStore
from insight_store.core.schema import Document
from insight_store.vector.index import BruteForceIndex


class TestReadWriteLock:

    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        lock.acquire_read()

        assert lock.readers == 2

        lock.release_read()
        lock.release_read()
        assert lock.readers == 0

    def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        acquired = threading.Event()

        def writer():
            with lock.write():
                acquired.set()

        lock.acquire_read()
        thread = threading.Thread(target=writer)
        thread.start()

        assert not acquired.wait(0.1)
        lock.release_read()
        assert acquired.wait(2)
        thread.join(2)

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order = []

        lock.acquire_read()

        def writer():
            with lock.write():
                order.append("writer")

        def reader():
            with lock.read():
                order.append("reader")

        writer_thread = threading.Thread(target=writer)
        writer_thread.start()
        time.sleep(0.05)
        reader_thread = threading.Thread(target=reader)
        reader_thread.start()
        time.sleep(0.05)

        assert order == []
        lock.release_read()
        writer_thread.join(2)
        reader_thread.join(2)

        assert order == ["writer", "reader"]


class TestConcurrentStore:

    def test_queries_during_ingestion_and_compaction(self):
        store = KnowledgeStore(dimension=8, index=BruteForceIndex(dimension=8))
        rng = np.random.default_rng(11)
        vectors = rng.normal(size=(300, 8))
        errors = []
        done = threading.Event()

        def writer():
            try:
                for i, vector in enumerate(vectors):
                    document = Document.create(content=f"doc {i}", source="feed",
                                               category="even" if i % 2 == 0 else "odd")
                    store.ingest_embedded(document, vector)
                    if i % 10 == 9:
                        store.delete(Document.create(content=f"doc {i - 5}", source="feed").identity)
                    if i % 50 == 49:
                        store.compact()
            except Exception as e:
                errors.append(e)
            finally:
                done.set()

        def reader(seed):
            local_rng = np.random.default_rng(seed)
            try:
                while not done.is_set():
                    for result in store.query(local_rng.normal(size=8), filters={"category": "even"}, k=5):
                        assert result.metadata.category == "even"
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader, args=(seed,)) for seed in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert errors == []
        store.check_consistency()
        assert len(store) == 300 - 30
