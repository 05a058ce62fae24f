"""Append-only JSONL journal of committed store transactions."""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Iterator, List

from facegroups.errors import StorageUnavailableError
from facegroups.io_utils import append_jsonl, ensure_dir, iter_jsonl
from facegroups.storage.records import op_from_record, op_to_record
from facegroups.storage.store import StoreOp

LOGGER = logging.getLogger("facegroups.storage.journal")


class JournalSink:
    """One JSON line per transaction, so a torn write never replays half a decision."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        ensure_dir(self.path.parent)

    def write(self, ops: List[StoreOp]) -> None:
        record = {
            "txn": uuid.uuid4().hex,
            "ts": int(time.time() * 1000),
            "ops": [op_to_record(op) for op in ops],
        }
        try:
            append_jsonl(self.path, [record])
        except OSError as exc:
            LOGGER.error("Journal write to %s failed: %s", self.path, exc)
            raise StorageUnavailableError(f"Journal unavailable at {self.path}: {exc}") from exc

    def replay(self) -> Iterator[List[StoreOp]]:
        for record in iter_jsonl(self.path):
            yield [op_from_record(op) for op in record.get("ops", [])]

    def truncate(self) -> None:
        if self.path.exists():
            self.path.write_text("", encoding="utf-8")
            LOGGER.debug("Truncated journal %s", self.path)
