"""
Snapshot persistence for the knowledge store.
Snapshots are written to a temporary directory and renamed into place, so a
crash mid-write always leaves the previous snapshot intact.
"""

import hashlib
import io
import json
import os
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CorruptSnapshot, SnapshotNotFound, StorageError
from .schema import MetadataRecord
from ..vector.types import IndexState
from ..util.logging import logger, audit_event

SNAPSHOT_PREFIX = "snapshot-"
TMP_PREFIX = ".tmp-snapshot-"
FORMAT_VERSION = "1"

MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.db"
VECTORS_FILE = "vectors.npy"
INDEX_FILE = "index.json"
STRUCTURE_FILE = "index.faiss"


@dataclass
class SnapshotManifest:
    """Describes one snapshot directory and the checksums of its files."""
    snapshot_id: int
    created_at: str
    sequence: int
    document_count: int
    dimension: int
    index_kind: str
    files: Dict[str, str] = field(default_factory=dict)
    version: str = FORMAT_VERSION
    encrypted: bool = False
    salt: Optional[str] = None  # PBKDF2 salt for key derivation

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SnapshotManifest':
        return cls(**data)


@dataclass
class StoreImage:
    """Consistent in-memory copy of the store handed to ``snapshot``."""
    records: List[Tuple[MetadataRecord, str]]
    index_state: IndexState
    sequence: int


@dataclass
class LoadedSnapshot:
    manifest: SnapshotManifest
    records: List[Tuple[MetadataRecord, str]]
    index_state: IndexState


def _derive_key(password: str, salt: bytes) -> bytes:
    """Derive encryption key from password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
    )
    return kdf.derive(password.encode())


def _encrypt_data(data: bytes, key: bytes) -> bytes:
    """Encrypt data using AES-256-GCM. Output is nonce + tag + ciphertext."""
    nonce = os.urandom(12)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return nonce + encryptor.tag + ciphertext


def _decrypt_data(encrypted_data: bytes, key: bytes) -> bytes:
    """Decrypt data produced by ``_encrypt_data``."""
    if len(encrypted_data) < 28:  # nonce (12) + tag (16)
        raise ValueError("Encrypted data too short")

    nonce = encrypted_data[:12]
    tag = encrypted_data[12:28]
    ciphertext = encrypted_data[28:]

    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()


def _calculate_checksum(data: bytes) -> str:
    """Calculate SHA-256 checksum of data."""
    return hashlib.sha256(data).hexdigest()


def _fsync_dir(path: Path) -> None:
    """Flush a directory entry; not supported on every platform."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _write_file(path: Path, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


@contextmanager
def _connect(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite connection to a snapshot metadata table."""
    conn = sqlite3.connect(str(db_path))
    try:
        yield conn
    finally:
        conn.close()


def _write_metadata_db(db_path: Path, records: List[Tuple[MetadataRecord, str]]) -> None:
    with _connect(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute('''
            CREATE TABLE documents (
                identity TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                source TEXT NOT NULL,
                source_url TEXT,
                category TEXT NOT NULL,
                timestamp TEXT,
                content TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX idx_documents_category ON documents(category)')
        cursor.executemany(
            "INSERT INTO documents (identity, title, source, source_url, category, timestamp, content) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                (r.identity, r.title, r.source, r.source_url, r.category, r.timestamp, content)
                for r, content in records
            ]
        )
        conn.commit()


def _read_metadata_db(db_path: Path) -> List[Tuple[MetadataRecord, str]]:
    with _connect(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT identity, title, source, source_url, category, timestamp, content FROM documents"
        )
        rows = cursor.fetchall()

    return [
        (
            MetadataRecord(
                identity=identity,
                title=title,
                source=source,
                source_url=source_url or "",
                category=category,
                timestamp=timestamp or "",
            ),
            content,
        )
        for identity, title, source, source_url, category, timestamp, content in rows
    ]


class PersistenceManager:
    """Sole writer of snapshot directories under the store directory.

    Layout::

        <store_dir>/snapshot-00000001/manifest.json
                                      metadata.db
                                      vectors.npy
                                      index.json
                                      index.faiss   (FAISS indexes only)
    """

    def __init__(self, store_dir, retain: int = 3, encryption_password: Optional[str] = None):
        self.store_dir = Path(store_dir)
        self.retain = retain
        self.encryption_password = encryption_password
        self.store_dir.mkdir(parents=True, exist_ok=True)

    # Layout helpers

    def snapshot_path(self, snapshot_id: int) -> Path:
        return self.store_dir / f"{SNAPSHOT_PREFIX}{snapshot_id:08d}"

    def _snapshot_ids_on_disk(self) -> List[int]:
        ids = []
        for entry in self.store_dir.iterdir():
            if entry.is_dir() and entry.name.startswith(SNAPSHOT_PREFIX):
                suffix = entry.name[len(SNAPSHOT_PREFIX):]
                if suffix.isdigit():
                    ids.append(int(suffix))
        return sorted(ids)

    def list_snapshots(self) -> List[int]:
        """Snapshot ids present on disk, ascending. Validity is not checked."""
        return self._snapshot_ids_on_disk()

    def latest_id(self) -> Optional[int]:
        ids = self._snapshot_ids_on_disk()
        return ids[-1] if ids else None

    def cleanup_temp(self) -> int:
        """Remove temporary directories left behind by interrupted snapshots."""
        removed = 0
        for entry in self.store_dir.iterdir():
            if entry.is_dir() and entry.name.startswith(TMP_PREFIX):
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            logger.log_recovery("cleanup", {"removed_temp_dirs": removed})
        return removed

    # Writing

    def snapshot(self, image: StoreImage) -> SnapshotManifest:
        """Write ``image`` as the next snapshot.

        Raises:
            StorageError: the write failed; the previous snapshot stays current
        """
        latest = self.latest_id()
        snapshot_id = (latest or 0) + 1
        tmp_dir = self.store_dir / f"{TMP_PREFIX}{snapshot_id:08d}"
        final_dir = self.snapshot_path(snapshot_id)

        state = image.index_state
        key = None
        salt = None
        if self.encryption_password:
            salt_bytes = os.urandom(16)
            key = _derive_key(self.encryption_password, salt_bytes)
            salt = salt_bytes.hex()

        try:
            if tmp_dir.exists():
                shutil.rmtree(tmp_dir)
            tmp_dir.mkdir(parents=True)

            payloads: Dict[str, bytes] = {}

            # SQLite needs a real file; build it privately so plaintext never lands in the snapshot
            with tempfile.TemporaryDirectory() as scratch:
                db_path = Path(scratch) / METADATA_FILE
                _write_metadata_db(db_path, image.records)
                payloads[METADATA_FILE] = db_path.read_bytes()

            buffer = io.BytesIO()
            np.save(buffer, np.asarray(state.vectors, dtype=np.float32).reshape(len(state.row_ids), state.dimension),
                    allow_pickle=False)
            payloads[VECTORS_FILE] = buffer.getvalue()

            payloads[INDEX_FILE] = json.dumps({
                "kind": state.kind,
                "dimension": state.dimension,
                "row_ids": state.row_ids,
                "tombstones": state.tombstones,
                "params": state.params,
            }).encode("utf-8")

            if state.structure:
                payloads[STRUCTURE_FILE] = state.structure

            checksums = {}
            for name, data in payloads.items():
                if key is not None:
                    data = _encrypt_data(data, key)
                _write_file(tmp_dir / name, data)
                checksums[name] = _calculate_checksum(data)

            manifest = SnapshotManifest(
                snapshot_id=snapshot_id,
                created_at=datetime.now(timezone.utc).isoformat(),
                sequence=image.sequence,
                document_count=len(image.records),
                dimension=state.dimension,
                index_kind=state.kind,
                files=checksums,
                encrypted=key is not None,
                salt=salt,
            )
            # Manifest last: a directory without one is never valid
            _write_file(tmp_dir / MANIFEST_FILE, json.dumps(manifest.to_dict(), indent=2).encode("utf-8"))
            _fsync_dir(tmp_dir)

            os.rename(tmp_dir, final_dir)
            _fsync_dir(self.store_dir)

        except (OSError, sqlite3.Error, ValueError) as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            logger.log_snapshot(snapshot_id, "failed", {"error": str(e)[:200]})
            raise StorageError(f"Snapshot {snapshot_id} failed; durability not advanced: {e}") from e

        logger.log_snapshot(snapshot_id, "success", {
            "documents": manifest.document_count,
            "sequence": manifest.sequence,
            "encrypted": manifest.encrypted
        })
        audit_event(
            event_type="snapshot_created",
            identifiers={"snapshot_id": snapshot_id},
            payload={"documents": manifest.document_count, "index_kind": manifest.index_kind}
        )
        return manifest

    # Reading

    def load(self) -> LoadedSnapshot:
        """Load the highest-numbered valid snapshot.

        Corrupt snapshots are logged and skipped in favour of older ones.

        Raises:
            SnapshotNotFound: no valid snapshot exists
        """
        for snapshot_id in reversed(self._snapshot_ids_on_disk()):
            try:
                loaded = self.load_snapshot(snapshot_id)
            except CorruptSnapshot as e:
                logger.log_recovery("fallback", {"snapshot_id": snapshot_id, "reason": e.reason})
                continue
            logger.log_recovery("loaded", {
                "snapshot_id": snapshot_id,
                "documents": loaded.manifest.document_count,
                "sequence": loaded.manifest.sequence
            })
            return loaded

        raise SnapshotNotFound(f"No valid snapshot in {self.store_dir}")

    def verify(self, snapshot_id: int) -> SnapshotManifest:
        """Validate a snapshot without keeping its contents."""
        return self.load_snapshot(snapshot_id).manifest

    def load_snapshot(self, snapshot_id: int) -> LoadedSnapshot:
        """Load and validate one snapshot.

        Raises:
            CorruptSnapshot: the snapshot is missing files, fails checksums or
                its metadata and index disagree
        """
        directory = self.snapshot_path(snapshot_id)
        manifest = self._read_manifest(snapshot_id, directory)

        key = None
        if manifest.encrypted:
            if not self.encryption_password or not manifest.salt:
                raise CorruptSnapshot(snapshot_id, "encrypted snapshot but no decryption password configured")
            key = _derive_key(self.encryption_password, bytes.fromhex(manifest.salt))

        payloads = {}
        for name in (METADATA_FILE, VECTORS_FILE, INDEX_FILE):
            if name not in manifest.files:
                raise CorruptSnapshot(snapshot_id, f"manifest does not list {name}")
        for name, expected in manifest.files.items():
            try:
                data = (directory / name).read_bytes()
            except OSError as e:
                raise CorruptSnapshot(snapshot_id, f"cannot read {name}: {e}") from e
            actual = _calculate_checksum(data)
            if actual != expected:
                raise CorruptSnapshot(snapshot_id, f"checksum mismatch for {name}")
            if key is not None:
                try:
                    data = _decrypt_data(data, key)
                except (InvalidTag, ValueError) as e:
                    raise CorruptSnapshot(snapshot_id, f"cannot decrypt {name}") from e
            payloads[name] = data

        try:
            records = self._decode_records(directory, payloads[METADATA_FILE], manifest.encrypted)
            vectors = np.load(io.BytesIO(payloads[VECTORS_FILE]), allow_pickle=False)
            index_info = json.loads(payloads[INDEX_FILE].decode("utf-8"))
        except (sqlite3.Error, ValueError, OSError, UnicodeDecodeError) as e:
            raise CorruptSnapshot(snapshot_id, f"unreadable payload: {e}") from e

        state = self._build_state(snapshot_id, manifest, index_info, vectors, payloads.get(STRUCTURE_FILE))
        self._check_consistency(snapshot_id, manifest, records, state)
        return LoadedSnapshot(manifest=manifest, records=records, index_state=state)

    def _read_manifest(self, snapshot_id: int, directory: Path) -> SnapshotManifest:
        try:
            data = json.loads((directory / MANIFEST_FILE).read_text(encoding="utf-8"))
            manifest = SnapshotManifest.from_dict(data)
        except FileNotFoundError as e:
            raise CorruptSnapshot(snapshot_id, "missing manifest") from e
        except (OSError, ValueError, TypeError) as e:
            raise CorruptSnapshot(snapshot_id, f"unreadable manifest: {e}") from e

        if manifest.snapshot_id != snapshot_id:
            raise CorruptSnapshot(snapshot_id, f"manifest claims id {manifest.snapshot_id}")
        if manifest.version != FORMAT_VERSION:
            raise CorruptSnapshot(snapshot_id, f"unsupported format version {manifest.version}")
        return manifest

    def _decode_records(self, directory: Path, data: bytes, encrypted: bool) -> List[Tuple[MetadataRecord, str]]:
        if not encrypted:
            return _read_metadata_db(directory / METADATA_FILE)

        # Decrypted table only exists in a private temporary file
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / METADATA_FILE
            db_path.write_bytes(data)
            return _read_metadata_db(db_path)

    def _build_state(self, snapshot_id: int, manifest: SnapshotManifest, info: Dict[str, Any],
                     vectors: np.ndarray, structure: Optional[bytes]) -> IndexState:
        if not isinstance(info, dict):
            raise CorruptSnapshot(snapshot_id, "index description is not an object")
        row_ids = info.get("row_ids")
        tombstones = info.get("tombstones")
        if not isinstance(row_ids, list) or not isinstance(tombstones, list) or len(row_ids) != len(tombstones):
            raise CorruptSnapshot(snapshot_id, "index rows and tombstones disagree")
        if info.get("kind") != manifest.index_kind or info.get("dimension") != manifest.dimension:
            raise CorruptSnapshot(snapshot_id, "index description disagrees with manifest")
        if vectors.ndim != 2 or vectors.shape != (len(row_ids), manifest.dimension):
            raise CorruptSnapshot(snapshot_id, f"vector matrix has shape {vectors.shape}")

        return IndexState(
            kind=manifest.index_kind,
            dimension=manifest.dimension,
            row_ids=[str(identity) for identity in row_ids],
            vectors=vectors.astype(np.float32),
            tombstones=[bool(flag) for flag in tombstones],
            params=info.get("params") or {},
            structure=structure,
        )

    def _check_consistency(self, snapshot_id: int, manifest: SnapshotManifest,
                           records: List[Tuple[MetadataRecord, str]], state: IndexState) -> None:
        metadata_ids = [record.identity for record, _ in records]
        if len(metadata_ids) != manifest.document_count:
            raise CorruptSnapshot(snapshot_id, "document count disagrees with manifest")

        live = [identity for identity, _ in state.live_entries()]
        if len(live) != len(set(live)):
            raise CorruptSnapshot(snapshot_id, "identity has more than one live index row")
        if set(live) != set(metadata_ids):
            missing = len(set(metadata_ids) - set(live))
            orphaned = len(set(live) - set(metadata_ids))
            raise CorruptSnapshot(
                snapshot_id,
                f"metadata/index mismatch ({missing} without vectors, {orphaned} orphaned vectors)"
            )

    # Housekeeping

    def prune(self, retain: Optional[int] = None) -> List[int]:
        """Keep the newest ``retain`` valid snapshots and delete the rest,
        corrupt ones included. Returns removed ids."""
        retain = retain or self.retain
        kept = []
        removed = []
        for snapshot_id in reversed(self._snapshot_ids_on_disk()):
            if len(kept) < retain:
                try:
                    self.verify(snapshot_id)
                except CorruptSnapshot as e:
                    logger.log_recovery("discard", {"snapshot_id": snapshot_id, "reason": e.reason})
                else:
                    kept.append(snapshot_id)
                    continue
            shutil.rmtree(self.snapshot_path(snapshot_id), ignore_errors=True)
            removed.append(snapshot_id)
        return sorted(removed)

    def oldest_sequence(self) -> int:
        """Lowest change sequence covered by a snapshot on disk, 0 if none.

        The change log must keep every entry above this so that a fallback
        to any retained snapshot can be replayed forward.
        """
        sequences = []
        for snapshot_id in self._snapshot_ids_on_disk():
            try:
                sequences.append(self._read_manifest(snapshot_id, self.snapshot_path(snapshot_id)).sequence)
            except CorruptSnapshot:
                continue
        return min(sequences) if sequences else 0

    def clear(self) -> None:
        """Remove every snapshot directory."""
        for snapshot_id in self._snapshot_ids_on_disk():
            shutil.rmtree(self.snapshot_path(snapshot_id), ignore_errors=True)
        self.cleanup_temp()
