from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Set

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.mail import EmailMultiAlternatives, get_connection
from django.db import DatabaseError, IntegrityError, transaction
from django.template.loader import render_to_string
from django.utils import timezone

from .models import Assignment, AssignmentStatus, ReminderFireRecord
from .services import resolve_recipients

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(days=1)


@dataclass(frozen=True)
class ReminderAction:
    assignment_id: int
    offset_days: int
    window_start: datetime
    deadline: datetime


def reminder_window(deadline: datetime, offset_days: int):
    """Half-open [deadline - d days, deadline - d days + 1 day)."""
    start = deadline - timedelta(days=offset_days)
    return start, start + REMINDER_WINDOW


def due_reminders(
    assignment: Assignment,
    now: datetime,
    *,
    fired_offsets: Optional[Iterable[int]] = None,
) -> List[ReminderAction]:
    """
    Offsets whose window contains `now` and that have not fired yet, largest
    offset first. Nothing is due for disabled schedules, non-active
    assignments, or once the deadline has passed.
    """
    deadline = assignment.end_date
    if not assignment.reminders_enabled or deadline is None:
        return []
    if assignment.status != AssignmentStatus.ACTIVE or now >= deadline:
        return []

    if fired_offsets is None:
        fired_offsets = assignment.reminder_fires.values_list("offset_days", flat=True)
    fired: Set[int] = set(fired_offsets)

    actions = []
    for offset in sorted(set(assignment.reminder_offsets), reverse=True):
        if offset in fired:
            continue
        start, end = reminder_window(deadline, offset)
        if start <= now < end:
            actions.append(ReminderAction(assignment.id, offset, start, deadline))
    return actions


def pending_recipient_emails(assignment: Assignment) -> List[str]:
    """
    Emails of resolved recipients who have not completed the survey yet.
    Anonymous responses carry no respondent, so those recipients stay in.
    """
    from apps.responses.models import SurveyResponse, ResponseStatus  # local import to avoid circulars

    user_ids = resolve_recipients(assignment)
    done = set(
        SurveyResponse.objects.filter(
            assignment=assignment, status=ResponseStatus.COMPLETED, respondent__isnull=False,
        ).values_list("respondent_id", flat=True)
    )
    User = get_user_model()
    return list(
        User.objects.filter(id__in=user_ids - done)
        .exclude(email="")
        .order_by("id")
        .values_list("email", flat=True)
    )


def send_reminder_emails(assignment: Assignment, action: ReminderAction, emails: List[str]) -> int:
    """
    Render and send reminder emails for one action.
    Uses a single SMTP connection for the whole batch.
    """
    if not emails:
        return 0

    title = assignment.survey_version.definition.get("title") or assignment.survey.title
    site_url = getattr(settings, "SITE_URL", "").rstrip("/")
    context = {
        "survey_title": title,
        "survey_url": f"{site_url}/surveys/{assignment.id}",
        "deadline": action.deadline,
        "days_left": action.offset_days,
        "site_url": site_url,
    }
    subject = f"Reminder: {title} closes in {action.offset_days} day(s)"
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None)
    text_body = render_to_string("emails/reminder.txt", context)
    html_body = render_to_string("emails/reminder.html", context)

    messages: list[EmailMultiAlternatives] = []
    for to in emails:
        msg = EmailMultiAlternatives(subject=subject, body=text_body, from_email=from_email, to=[to])
        msg.attach_alternative(html_body, "text/html")
        messages.append(msg)

    with get_connection(fail_silently=False) as conn:
        sent = conn.send_messages(messages) or 0
    logger.info(
        "Reminder batch sent",
        extra={"assignment_id": assignment.id, "offset_days": action.offset_days, "sent": sent, "batch_size": len(emails)},
    )
    return int(sent)


def _record_fire(assignment: Assignment, action: ReminderAction, recipient_count: int, now: datetime) -> bool:
    try:
        with transaction.atomic():
            ReminderFireRecord.objects.create(
                assignment=assignment,
                offset_days=action.offset_days,
                fired_at=now,
                recipient_count=recipient_count,
            )
    except IntegrityError:
        # another run recorded it first; the reminder is sent either way
        logger.warning(
            "Reminder already recorded", extra={"assignment_id": assignment.id, "offset_days": action.offset_days}
        )
        return True
    except DatabaseError:
        logger.exception(
            "Failed to record reminder; it will be sent again",
            extra={"assignment_id": assignment.id, "offset_days": action.offset_days},
        )
        return False
    return True


def dispatch_due_reminders(
    now: Optional[datetime] = None,
    *,
    send: Callable[[Assignment, ReminderAction, List[str]], int] = send_reminder_emails,
) -> int:
    """
    Send every due reminder across active assignments and record each fire.
    Returns the number of reminders recorded as sent.

    Sending happens before recording: a crash in between leads to a duplicate
    reminder on the next run rather than a lost one.
    """
    now = now or timezone.now()
    recorded = 0
    candidates = (
        Assignment.objects.filter(status=AssignmentStatus.ACTIVE, end_date__gt=now)
        .select_related("survey", "survey_version")
        .order_by("id")
    )
    for assignment in candidates:
        with transaction.atomic():
            # serialise overlapping runs on the same assignment
            locked = Assignment.objects.select_for_update().get(pk=assignment.pk)
            for action in due_reminders(locked, now):
                emails = pending_recipient_emails(assignment)
                try:
                    send(assignment, action, emails)
                except Exception:
                    logger.exception(
                        "Reminder send failed",
                        extra={"assignment_id": assignment.id, "offset_days": action.offset_days},
                    )
                    continue
                if _record_fire(assignment, action, len(emails), now):
                    recorded += 1

    logger.info("Reminder dispatch finished", extra={"recorded": recorded})
    return recorded
