from __future__ import annotations

import logging

from django.db import DatabaseError
from django.utils import timezone

from huddle.celery import celery_app
from .models import Assignment, AssignmentStatus
from . import reminders, services

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    autoretry_for=(DatabaseError,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def dispatch_due_reminders_task(self) -> int:
    """
    Hourly: send reminders whose window contains now. Fires are recorded per
    (assignment, offset), so re-runs inside the same window send nothing.
    """
    return reminders.dispatch_due_reminders(timezone.now())


@celery_app.task(
    bind=True,
    autoretry_for=(DatabaseError,),
    retry_backoff=5,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def advance_assignment_statuses_task(self) -> dict:
    counts = services.advance_statuses(timezone.now())
    logger.info("Assignment statuses advanced", extra=counts)
    return counts


@celery_app.task(
    bind=True,
    autoretry_for=(DatabaseError,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def reconcile_assignment_counts_task(self, batch_size: int = 200) -> int:
    """
    Refresh cached response counters for active and paused assignments in
    batches of `batch_size`. Returns the number reconciled.
    """
    total = 0
    last_id = 0
    while True:
        batch = list(
            Assignment.objects.filter(
                status__in=[AssignmentStatus.ACTIVE, AssignmentStatus.PAUSED],
                id__gt=last_id,
            ).order_by("id")[:batch_size]
        )
        if not batch:
            break
        for assignment in batch:
            services.reconcile_response_counts(assignment)
        total += len(batch)
        last_id = batch[-1].id
        if len(batch) < batch_size:
            break

    logger.info("Assignment counters reconciled", extra={"count": total})
    return total
