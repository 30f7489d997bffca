"""
Offline-first response queue.

Items move ``pending -> inflight -> flushed`` (removed from storage) or back
to ``pending`` with exponential backoff on transient errors. Permanent
rejections, and transient errors after the item's window closed, park the
item in ``failed`` until an operator calls ``retry_failed`` or ``remove``.

Only one flush pass runs at a time; ``inflight`` marks the item a pass is
currently delivering. Items persisted as ``inflight`` (the process died
mid-delivery) come back as ``pending`` on startup; the server's ``local_id``
idempotency makes the re-send harmless.

Storage is compacted at the end of a flush pass once ``compact_every``
records have been written since the last compaction.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

from .errors import PermanentDeliveryError, TransientDeliveryError
from .events import FLUSH, QUEUE_CHANGE, FlushReport, QueueChange, QueueEvents
from .models import FAILED, FLUSHED, INFLIGHT, PENDING, QueueItem, new_local_id

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL = 30.0
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 60.0
DEFAULT_COMPACT_EVERY = 200
WINDOW_CLOSED = "window_closed"


def backoff_delay(attempt_count: int, base: float = DEFAULT_BACKOFF_BASE, cap: float = DEFAULT_BACKOFF_CAP) -> float:
    return min(cap, base * (2 ** attempt_count))


class ResponseQueue:
    def __init__(
        self,
        store,
        transport,
        *,
        events: Optional[QueueEvents] = None,
        online: bool = True,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        compact_every: int = DEFAULT_COMPACT_EVERY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.transport = transport
        self.events = events or QueueEvents()
        self.flush_interval = flush_interval
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.compact_every = compact_every
        self.clock = clock
        self._online = online
        self._flush_lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._last_flush_at: Optional[float] = None
        self._items: "OrderedDict[str, QueueItem]" = OrderedDict()
        self._writes = 0

        for item in store.load():
            if item.status == INFLIGHT:
                item.status = PENDING
                store.put(item)
                logger.info("Recovered interrupted delivery", extra={"local_id": item.local_id})
            self._items[item.local_id] = item

    # ---- Mutations ----

    def enqueue(
        self,
        survey_id: int,
        assignment_id: int,
        answers: Dict[str, Any],
        *,
        local_id: Optional[str] = None,
        expires_at: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QueueItem:
        item = QueueItem(
            survey_id=survey_id,
            assignment_id=assignment_id,
            answers=copy.deepcopy(answers),
            created_at=self.clock(),
            local_id=local_id or new_local_id(),
            expires_at=expires_at,
            metadata=copy.deepcopy(metadata or {}),
        )
        return self.enqueue_item(item)

    def enqueue_item(self, item: QueueItem) -> QueueItem:
        """Add an item; an already-queued local_id is returned as is."""
        existing = self._items.get(item.local_id)
        if existing is not None:
            return copy.deepcopy(existing)
        item = copy.deepcopy(item)
        item.status = PENDING
        self.store.put(item)
        self._writes += 1
        self._items[item.local_id] = item
        self._changed("added", item)
        return copy.deepcopy(item)

    def remove(self, local_id: str) -> bool:
        item = self._items.get(local_id)
        if item is None:
            return False
        if item.status == INFLIGHT:
            raise ValueError(f"Item {local_id} is being delivered and cannot be removed")
        self._drop(item)
        return True

    def retry_failed(self, local_id: Optional[str] = None) -> int:
        """Move failed items (or one of them) back to pending for immediate retry."""
        moved = 0
        for item in list(self._items.values()):
            if item.status != FAILED or (local_id is not None and item.local_id != local_id):
                continue
            item.last_error = None
            item.next_attempt_at = self.clock()
            self._set_status(item, PENDING)
            moved += 1
        return moved

    def compact(self) -> None:
        """Rewrite storage to hold only the items still queued."""
        self.store.compact(list(self._items.values()))
        self._writes = 0

    # ---- Inspection ----

    @property
    def online(self) -> bool:
        return self._online

    def get_queue_snapshot(self) -> List[QueueItem]:
        return [copy.deepcopy(item) for item in self._items.values()]

    def status(self) -> Dict[str, Any]:
        counts = {PENDING: 0, INFLIGHT: 0, FAILED: 0}
        for item in self._items.values():
            counts[item.status] = counts.get(item.status, 0) + 1
        return {
            "pending": counts[PENDING],
            "inflight": counts[INFLIGHT],
            "failed": counts[FAILED],
            "total": len(self._items),
            "online": self._online,
            "last_flush_at": self._last_flush_at,
        }

    # ---- Flushing ----

    async def flush_now(self) -> FlushReport:
        """Attempt every pending item now, ignoring backoff."""
        return await self._flush(due_only=False)

    async def flush_due(self) -> FlushReport:
        """Attempt pending items whose backoff has elapsed."""
        return await self._flush(due_only=True)

    async def _flush(self, *, due_only: bool) -> FlushReport:
        async with self._flush_lock:
            attempted = flushed = failed = retried = 0
            if self._online:
                now = self.clock()
                batch = [
                    i for i in self._items.values()
                    if i.status == PENDING and (not due_only or i.next_attempt_at <= now)
                ]
                for item in batch:
                    # removed or retried elsewhere while we were awaiting
                    if self._items.get(item.local_id) is not item or item.status != PENDING:
                        continue
                    attempted += 1
                    outcome = await self._deliver(item)
                    if outcome == "flushed":
                        flushed += 1
                    elif outcome == "failed":
                        failed += 1
                    else:
                        retried += 1
            self._compact_if_due()

            self._last_flush_at = self.clock()
            report = FlushReport(
                attempted=attempted,
                flushed=flushed,
                failed=failed,
                retried=retried,
                remaining=sum(1 for i in self._items.values() if i.status == PENDING),
                at=self._last_flush_at,
            )
        logger.info("Queue flush finished", extra={
            "attempted": attempted, "flushed": flushed, "failed": failed, "retried": retried,
        })
        self.events.emit(FLUSH, report)
        return report

    async def _deliver(self, item: QueueItem) -> str:
        try:
            self._set_status(item, INFLIGHT)
        except Exception:
            logger.exception("Could not persist delivery start", extra={"local_id": item.local_id})
            return "retried"
        try:
            return await self._attempt(item)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Could not persist delivery outcome", extra={"local_id": item.local_id})
            return "retried"
        finally:
            # a store failure must not strand the item outside the pending set
            if self._items.get(item.local_id) is item and item.status in (INFLIGHT, FLUSHED):
                item.status = PENDING

    async def _attempt(self, item: QueueItem) -> str:
        try:
            await self.transport.deliver(copy.deepcopy(item))
        except PermanentDeliveryError as e:
            item.last_error = str(e)
            self._set_status(item, FAILED)
            logger.warning("Submission rejected", extra={"local_id": item.local_id, "status_code": e.status_code})
            return "failed"
        except TransientDeliveryError as e:
            return self._retry_later(item, str(e))
        except asyncio.CancelledError:
            self._set_status(item, PENDING)
            raise
        except Exception as e:
            logger.exception("Unexpected delivery error", extra={"local_id": item.local_id})
            return self._retry_later(item, repr(e))
        item.status = FLUSHED
        self._drop(item)
        return "flushed"

    def _retry_later(self, item: QueueItem, error: str) -> str:
        now = self.clock()
        item.attempt_count += 1
        if item.expires_at is not None and now >= item.expires_at:
            item.last_error = WINDOW_CLOSED
            self._set_status(item, FAILED)
            return "failed"
        item.last_error = error
        item.next_attempt_at = now + backoff_delay(item.attempt_count, self.backoff_base, self.backoff_cap)
        self._set_status(item, PENDING)
        return "retried"

    # ---- Connectivity and timer ----

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """
        Update connectivity. Going from offline to online schedules an
        immediate flush of everything pending; the task is returned.
        """
        was_online, self._online = self._online, online
        if online and not was_online:
            logger.info("Connectivity regained; flushing queue", extra={"pending": self.status()["pending"]})
            return asyncio.get_running_loop().create_task(self.flush_now())
        return None

    def start(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._run_timer())

    async def stop(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        try:
            await self._timer
        except asyncio.CancelledError:
            pass
        self._timer = None

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            if not self._online:
                continue
            try:
                await self.flush_due()
            except Exception:
                logger.exception("Periodic queue flush failed")

    # ---- Internals ----

    def _set_status(self, item: QueueItem, status: str) -> None:
        previous, item.status = item.status, status
        try:
            self.store.put(item)
        except Exception:
            item.status = previous
            raise
        self._writes += 1
        self._changed("status", item)

    def _drop(self, item: QueueItem) -> None:
        self.store.delete(item.local_id)
        self._writes += 1
        self._items.pop(item.local_id, None)
        self._changed("removed", item)

    def _compact_if_due(self) -> None:
        if self._writes < self.compact_every:
            return
        try:
            self.compact()
        except OSError:
            logger.exception("Queue storage compaction failed")

    def _changed(self, kind: str, item: QueueItem) -> None:
        self.events.emit(
            QUEUE_CHANGE,
            QueueChange(kind=kind, local_id=item.local_id, status=item.status, queue_length=len(self._items)),
        )
