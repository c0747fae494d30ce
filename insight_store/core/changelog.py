"""
Append-only change log replayed on top of the latest snapshot.
One JSON object per line; a torn trailing line from a crash is ignored.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StorageError
from ..util.logging import logger

OPS = ("put", "delete", "reset")


@dataclass
class ChangeEntry:
    seq: int
    op: str
    identity: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    content: Optional[str] = None
    vector: Optional[List[float]] = None

    def to_json(self) -> str:
        data = {"seq": self.seq, "op": self.op}
        if self.identity is not None:
            data["identity"] = self.identity
        if self.record is not None:
            data["record"] = self.record
        if self.content is not None:
            data["content"] = self.content
        if self.vector is not None:
            data["vector"] = self.vector
        return json.dumps(data, ensure_ascii=False)

    @classmethod
    def from_json(cls, line: str) -> "ChangeEntry":
        data = json.loads(line)
        if not isinstance(data, dict) or data.get("op") not in OPS or not isinstance(data.get("seq"), int):
            raise ValueError("malformed change entry")
        return cls(
            seq=data["seq"],
            op=data["op"],
            identity=data.get("identity"),
            record=data.get("record"),
            content=data.get("content"),
            vector=data.get("vector"),
        )


class ChangeLog:
    """Durable log of committed writes since the last snapshot."""

    def __init__(self, path, fsync: bool = True):
        self.path = Path(path)
        self.fsync = fsync
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, entry: ChangeEntry) -> None:
        """Append one entry; raises StorageError if it could not be written."""
        line = entry.to_json() + "\n"
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"Failed to append to change log {self.path}: {e}") from e

    def read(self, after_seq: int = 0) -> List[ChangeEntry]:
        """Entries with seq greater than ``after_seq``, in log order.

        Replay stops at the first unreadable line: everything after it is
        of unknown provenance.
        """
        if not self.path.exists():
            return []

        entries = []
        with open(self.path, "r", encoding="utf-8") as f:
            lines = f.read().split("\n")

        # A complete log ends with a newline, leaving an empty last element
        torn_tail = lines[-1] if lines else ""
        lines = lines[:-1]

        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entry = ChangeEntry.from_json(line)
            except ValueError as e:
                logger.log_recovery("skipped", {
                    "changelog": str(self.path),
                    "line": number,
                    "error": str(e)[:100],
                    "message": "Stopping change log replay at unreadable entry"
                })
                return entries
            if entry.seq > after_seq:
                entries.append(entry)

        if torn_tail.strip():
            logger.log_recovery("skipped", {
                "changelog": str(self.path),
                "message": "Ignoring torn trailing change log entry"
            })

        return entries

    def truncate_through(self, seq: int) -> int:
        """Drop entries with seq <= ``seq``, atomically. Returns entries kept."""
        kept = self.read(after_seq=seq)
        tmp_path = self.path.with_suffix(".log.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                for entry in kept:
                    f.write(entry.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to rotate change log {self.path}: {e}") from e
        return len(kept)

    def last_seq(self) -> int:
        entries = self.read()
        return entries[-1].seq if entries else 0

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
