"""
Tests for snapshot persistence: layout, checksums, fallback and encryption.
"""

import json
import os

import pytest
from unittest.mock import patch

from insight_store.core.errors import CorruptSnapshot, SnapshotNotFound, StorageError
from insight_store.core.persistence import (
    PersistenceManager,
    StoreImage,
    _calculate_checksum,
    _decrypt_data,
    _encrypt_data,
)
from insight_store.core.schema import Document
from insight_store.vector.index import BruteForceIndex


def build_image(contents, sequence=1, deleted=()):
    index = BruteForceIndex(dimension=4)
    records = []
    for i, content in enumerate(contents):
        document = Document.create(content=content, source="IMF", category="economy")
        vector = [0.0] * 4
        vector[i % 4] = 1.0
        vector[(i + 1) % 4] = 0.1 * (i + 1)
        index.insert(document.identity, vector)
        if content in deleted:
            index.delete(document.identity)
        else:
            records.append((document.metadata(), document.content))
    return StoreImage(records=records, index_state=index.export_state(), sequence=sequence)


@pytest.fixture
def manager(tmp_path):
    return PersistenceManager(tmp_path / "store", retain=3)


class TestSnapshotWrite:

    def test_layout(self, manager):
        manifest = manager.snapshot(build_image(["Nigeria GDP", "Kenya inflation"]))
        directory = manager.snapshot_path(manifest.snapshot_id)

        assert directory.name == "snapshot-00000001"
        assert {p.name for p in directory.iterdir()} == {"manifest.json", "metadata.db", "vectors.npy", "index.json"}
        assert manifest.document_count == 2
        assert manifest.dimension == 4
        assert manifest.index_kind == "memory"
        assert not manifest.encrypted

    def test_manifest_checksums_match_files(self, manager):
        manifest = manager.snapshot(build_image(["a", "b"]))
        directory = manager.snapshot_path(manifest.snapshot_id)

        for name, checksum in manifest.files.items():
            assert _calculate_checksum((directory / name).read_bytes()) == checksum

    def test_ids_increase(self, manager):
        first = manager.snapshot(build_image(["a"]))
        second = manager.snapshot(build_image(["a", "b"], sequence=2))

        assert second.snapshot_id == first.snapshot_id + 1
        assert manager.list_snapshots() == [1, 2]
        assert manager.latest_id() == 2

    def test_failed_rename_keeps_previous_snapshot(self, manager):
        manager.snapshot(build_image(["a"]))

        with patch("insight_store.core.persistence.os.rename", side_effect=OSError("disk full")):
            with pytest.raises(StorageError, match="durability not advanced"):
                manager.snapshot(build_image(["a", "b"], sequence=2))

        assert manager.list_snapshots() == [1]
        assert not any(p.name.startswith(".tmp-snapshot-") for p in manager.store_dir.iterdir())
        assert manager.load().manifest.document_count == 1

    def test_empty_image(self, manager):
        manager.snapshot(build_image([], sequence=0))
        loaded = manager.load()

        assert loaded.records == []
        assert loaded.index_state.row_ids == []


class TestSnapshotLoad:

    def test_round_trip(self, manager):
        image = build_image(["Nigeria GDP", "Kenya inflation", "Ghana vote"], sequence=7, deleted=("Ghana vote",))
        manager.snapshot(image)

        loaded = manager.load()

        assert loaded.manifest.sequence == 7
        live = {identity for identity, _ in image.index_state.live_entries()}
        assert {record.identity for record, _ in loaded.records} == live
        assert loaded.index_state.tombstones == image.index_state.tombstones
        assert sorted(content for _, content in loaded.records) == ["Kenya inflation", "Nigeria GDP"]

    def test_no_snapshot(self, manager):
        with pytest.raises(SnapshotNotFound):
            manager.load()

    def test_corrupt_latest_falls_back(self, manager):
        manager.snapshot(build_image(["a"]))
        manager.snapshot(build_image(["a", "b"], sequence=2))

        vectors = manager.snapshot_path(2) / "vectors.npy"
        data = bytearray(vectors.read_bytes())
        data[-1] ^= 0xFF
        vectors.write_bytes(bytes(data))

        with pytest.raises(CorruptSnapshot, match="checksum mismatch"):
            manager.load_snapshot(2)

        loaded = manager.load()
        assert loaded.manifest.snapshot_id == 1

    def test_missing_manifest_falls_back(self, manager):
        manager.snapshot(build_image(["a"]))
        manager.snapshot(build_image(["a", "b"], sequence=2))
        os.remove(manager.snapshot_path(2) / "manifest.json")

        assert manager.load().manifest.snapshot_id == 1

    def test_inconsistent_snapshot_is_rejected(self, manager):
        image = build_image(["a", "b"])
        image.records = image.records[:1]
        manager.snapshot(image)

        with pytest.raises(CorruptSnapshot, match="mismatch"):
            manager.load_snapshot(1)
        with pytest.raises(SnapshotNotFound):
            manager.load()

    def test_tampered_manifest_id(self, manager):
        manager.snapshot(build_image(["a"]))
        path = manager.snapshot_path(1) / "manifest.json"
        data = json.loads(path.read_text())
        data["snapshot_id"] = 9
        path.write_text(json.dumps(data))

        with pytest.raises(CorruptSnapshot):
            manager.load_snapshot(1)


class TestHousekeeping:

    def test_cleanup_temp(self, manager):
        (manager.store_dir / ".tmp-snapshot-00000004").mkdir()

        assert manager.cleanup_temp() == 1
        assert list(manager.store_dir.iterdir()) == []

    def test_interrupted_write_is_ignored(self, manager):
        manager.snapshot(build_image(["a"]))
        partial = manager.store_dir / ".tmp-snapshot-00000002"
        partial.mkdir()
        (partial / "vectors.npy").write_bytes(b"partial")

        assert manager.load().manifest.snapshot_id == 1

    def test_prune(self, manager):
        for seq in range(1, 6):
            manager.snapshot(build_image(["a"], sequence=seq))

        removed = manager.prune(retain=2)

        assert removed == [1, 2, 3]
        assert manager.list_snapshots() == [4, 5]

    def test_prune_keeps_newest_valid(self, manager):
        for seq in range(1, 5):
            manager.snapshot(build_image(["a"], sequence=seq))
        os.remove(manager.snapshot_path(4) / "manifest.json")

        removed = manager.prune(retain=2)

        assert removed == [1, 4]
        assert manager.list_snapshots() == [2, 3]
        assert manager.load().manifest.snapshot_id == 3

    def test_oldest_sequence(self, manager):
        assert manager.oldest_sequence() == 0

        manager.snapshot(build_image(["a"], sequence=3))
        manager.snapshot(build_image(["a", "b"], sequence=7))
        assert manager.oldest_sequence() == 3

        manager.prune(retain=1)
        assert manager.oldest_sequence() == 7

    def test_clear(self, manager):
        manager.snapshot(build_image(["a"]))
        manager.clear()
        assert manager.list_snapshots() == []


class TestEncryption:

    def test_checksum_calculation(self):
        expected = "916f0027a575074ce72a331777c3478d6513f786a591bd892da1a577bf2335f9"
        assert _calculate_checksum(b"test data") == expected

    def test_encryption_round_trip(self):
        key = os.urandom(32)
        encrypted = _encrypt_data(b"Nigeria GDP", key)

        assert encrypted != b"Nigeria GDP"
        assert _decrypt_data(encrypted, key) == b"Nigeria GDP"

    def test_encrypted_snapshot_round_trip(self, tmp_path):
        manager = PersistenceManager(tmp_path / "store", encryption_password="s3cret")
        manager.snapshot(build_image(["Nigeria GDP", "Kenya inflation"]))

        manifest_data = json.loads((manager.snapshot_path(1) / "manifest.json").read_text())
        assert manifest_data["encrypted"] is True
        assert manifest_data["salt"]
        assert b"Nigeria GDP" not in (manager.snapshot_path(1) / "metadata.db").read_bytes()

        loaded = manager.load()
        assert sorted(content for _, content in loaded.records) == ["Kenya inflation", "Nigeria GDP"]

    def test_wrong_password_is_corrupt(self, tmp_path):
        PersistenceManager(tmp_path / "store", encryption_password="right").snapshot(build_image(["a"]))
        manager = PersistenceManager(tmp_path / "store", encryption_password="wrong")

        with pytest.raises(CorruptSnapshot, match="cannot decrypt"):
            manager.load_snapshot(1)

    def test_missing_password_is_corrupt(self, tmp_path):
        PersistenceManager(tmp_path / "store", encryption_password="right").snapshot(build_image(["a"]))

        with pytest.raises(CorruptSnapshot, match="no decryption password"):
            PersistenceManager(tmp_path / "store").load_snapshot(1)
