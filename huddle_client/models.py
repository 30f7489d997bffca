from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

PENDING = "pending"
INFLIGHT = "inflight"
FAILED = "failed"
FLUSHED = "flushed"
STATUSES = (PENDING, INFLIGHT, FAILED, FLUSHED)


def new_local_id() -> str:
    return uuid.uuid4().hex


@dataclass
class QueueItem:
    """
    One submission waiting for server acknowledgement. Timestamps are epoch
    seconds from the queue's clock.
    """
    survey_id: int
    assignment_id: int
    answers: Dict[str, Any]
    created_at: float
    local_id: str = field(default_factory=new_local_id)
    attempt_count: int = 0
    status: str = PENDING
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None
    expires_at: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueItem":
        status = data.get("status", PENDING)
        if status not in STATUSES:
            raise ValueError(f"Unknown queue item status {status!r}")
        return cls(
            survey_id=int(data["survey_id"]),
            assignment_id=int(data["assignment_id"]),
            answers=dict(data.get("answers") or {}),
            created_at=float(data["created_at"]),
            local_id=str(data["local_id"]),
            attempt_count=int(data.get("attempt_count", 0)),
            status=status,
            next_attempt_at=float(data.get("next_attempt_at") or 0.0),
            last_error=data.get("last_error"),
            expires_at=None if data.get("expires_at") is None else float(data["expires_at"]),
            metadata=dict(data.get("metadata") or {}),
        )
