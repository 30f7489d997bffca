"""
Durable local storage for the response queue.

``JsonlQueueStore`` keeps one append-only JSON-lines log per namespace. Every
change is a record (``put`` with the full item, or ``delete``); replay keeps
the last state per ``local_id`` in first-seen order. A write interrupted by a
crash can only damage the final line, which replay drops and truncates away.
"""
from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List

from .models import QueueItem

logger = logging.getLogger(__name__)

_SAFE_NAMESPACE = re.compile(r"[^A-Za-z0-9_.-]+")


class MemoryQueueStore:
    """Non-durable store for tests and throwaway sessions."""

    def __init__(self, items: Iterable[QueueItem] = ()):
        self._items: Dict[str, dict] = {i.local_id: i.to_dict() for i in items}

    def load(self) -> List[QueueItem]:
        return [QueueItem.from_dict(d) for d in self._items.values()]

    def put(self, item: QueueItem) -> None:
        self._items[item.local_id] = item.to_dict()

    def delete(self, local_id: str) -> None:
        self._items.pop(local_id, None)

    def compact(self, items: Iterable[QueueItem]) -> None:
        self._items = {i.local_id: i.to_dict() for i in items}


class JsonlQueueStore:
    def __init__(self, directory, namespace: str = "default", *, fsync: bool = True):
        self.directory = Path(directory)
        self.namespace = _SAFE_NAMESPACE.sub("_", namespace) or "default"
        self.path = self.directory / f"{self.namespace}.jsonl"
        self.fsync = fsync
        self.directory.mkdir(parents=True, exist_ok=True)

    # ---- Replay ----

    def load(self) -> List[QueueItem]:
        if not self.path.exists():
            return []
        state: Dict[str, dict] = {}
        good_end = 0
        unterminated = False
        with open(self.path, "rb") as fh:
            while True:
                line = fh.readline()
                if not line:
                    break
                last = not line.endswith(b"\n")
                try:
                    record = json.loads(line.decode("utf-8"))
                    self._apply(state, record)
                except (ValueError, KeyError, TypeError):
                    if last:
                        logger.warning("Dropping torn record at end of queue log", extra={"path": str(self.path)})
                        break
                    logger.warning("Skipping unreadable queue log record", extra={"path": str(self.path)})
                good_end = fh.tell()
                unterminated = last
        if good_end < self.path.stat().st_size:
            with open(self.path, "r+b") as fh:
                fh.truncate(good_end)
        elif unterminated:
            # keep the next append on its own line
            with open(self.path, "ab") as fh:
                fh.write(b"\n")

        items = []
        for data in state.values():
            try:
                items.append(QueueItem.from_dict(data))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping malformed queue item", extra={"local_id": data.get("local_id")})
        return items

    @staticmethod
    def _apply(state: Dict[str, dict], record: dict) -> None:
        op = record["op"]
        if op == "put":
            item = record["item"]
            state[item["local_id"]] = item
        elif op == "delete":
            state.pop(record["local_id"], None)
        else:
            raise ValueError(f"unknown op {op!r}")

    # ---- Writes ----

    def _append(self, record: dict) -> None:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()
            if self.fsync:
                os.fsync(fh.fileno())

    def put(self, item: QueueItem) -> None:
        self._append({"op": "put", "item": item.to_dict()})

    def delete(self, local_id: str) -> None:
        self._append({"op": "delete", "local_id": local_id})

    def compact(self, items: Iterable[QueueItem]) -> None:
        """Rewrite the log as one put per live item; atomic via rename."""
        fd, tmp = tempfile.mkstemp(prefix=f".{self.namespace}.", suffix=".tmp", dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                for item in items:
                    fh.write(json.dumps({"op": "put", "item": item.to_dict()}, ensure_ascii=False, separators=(",", ":")) + "\n")
                fh.flush()
                if self.fsync:
                    os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
