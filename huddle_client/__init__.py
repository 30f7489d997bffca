"""Offline-first client queue for survey responses."""
from .errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from .events import FLUSH, QUEUE_CHANGE, FlushReport, QueueChange, QueueEvents, Subscription
from .models import FAILED, FLUSHED, INFLIGHT, PENDING, QueueItem
from .queue import ResponseQueue, backoff_delay
from .storage import JsonlQueueStore, MemoryQueueStore
from .transport import HttpResponseTransport

__all__ = [
    "DeliveryError", "PermanentDeliveryError", "TransientDeliveryError",
    "FLUSH", "QUEUE_CHANGE", "FlushReport", "QueueChange", "QueueEvents", "Subscription",
    "FAILED", "FLUSHED", "INFLIGHT", "PENDING", "QueueItem",
    "ResponseQueue", "backoff_delay",
    "JsonlQueueStore", "MemoryQueueStore",
    "HttpResponseTransport",
]
