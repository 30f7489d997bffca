"""
Assignment engine: turns a published survey into a time-boxed distribution to
users, organizations and departments.

Organization and department targets are kept as references. The concrete
recipient list is computed by ``resolve_recipients`` every time it is needed,
so membership changes after creation are always reflected.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from apps.accounts.models import Department, Organization, OrganizationMember
from apps.core.exceptions import AssignmentResolutionError, AssignmentStateError, SurveyEngineError
from apps.core.utility import normalize_offsets
from apps.surveys.models import Survey, SurveyStatus
from .models import (
    Assignment, AssignmentStatus, ReminderFrequency,
    default_access_control, default_reminder_schedule,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    AssignmentStatus.DRAFT: {AssignmentStatus.SCHEDULED, AssignmentStatus.ACTIVE},
    AssignmentStatus.SCHEDULED: {AssignmentStatus.ACTIVE, AssignmentStatus.PAUSED, AssignmentStatus.DRAFT},
    AssignmentStatus.ACTIVE: {AssignmentStatus.PAUSED, AssignmentStatus.COMPLETED},
    AssignmentStatus.PAUSED: {AssignmentStatus.ACTIVE, AssignmentStatus.COMPLETED},
    AssignmentStatus.COMPLETED: set(),
}


class AssignmentTargets:
    def __init__(self, users: Iterable[int] = (), organizations: Iterable[int] = (), departments: Iterable[int] = ()):
        self.users = sorted(set(users))
        self.organizations = sorted(set(organizations))
        self.departments = sorted(set(departments))


class AssignmentWindow:
    def __init__(self, start: Optional[datetime] = None, end: Optional[datetime] = None):
        if start and end and not start < end:
            raise SurveyEngineError("startDate must be before endDate")
        self.start = start
        self.end = end


def normalize_reminder_policy(policy: Optional[dict]) -> dict:
    merged = {**default_reminder_schedule(), **(policy or {})}
    if merged["frequency"] not in ReminderFrequency.values:
        raise SurveyEngineError(f"Unknown reminder frequency {merged['frequency']!r}")
    try:
        merged["daysBeforeDeadline"] = normalize_offsets(merged.get("daysBeforeDeadline") or [])
    except ValueError as e:
        raise SurveyEngineError(str(e))
    merged["enabled"] = bool(merged["enabled"])
    return merged


def normalize_access_control(policy: Optional[dict]) -> dict:
    merged = {**default_access_control(), **(policy or {})}
    return {key: bool(merged[key]) for key in default_access_control()}


def _unresolved_targets(targets: AssignmentTargets) -> Dict[str, List[int]]:
    User = get_user_model()
    found_users = set(User.objects.filter(id__in=targets.users).values_list("id", flat=True))
    found_orgs = set(Organization.objects.filter(id__in=targets.organizations).values_list("id", flat=True))
    found_depts = set(Department.objects.filter(id__in=targets.departments).values_list("id", flat=True))
    unresolved = {
        "assignedTo": set(targets.users) - found_users,
        "assignedOrganizations": set(targets.organizations) - found_orgs,
        "assignedDepartments": set(targets.departments) - found_depts,
    }
    return {key: sorted(ids) for key, ids in unresolved.items() if ids}


def create_assignment(
    survey: Survey,
    targets: AssignmentTargets,
    window: AssignmentWindow,
    reminder_policy: Optional[dict] = None,
    access_control: Optional[dict] = None,
    *,
    created_by=None,
    activate: bool = False,
    now: Optional[datetime] = None,
) -> Assignment:
    """
    Create an assignment bound to the survey's latest published version.

    If any target id does not exist the assignment is kept as a draft that
    records the unresolved references, and AssignmentResolutionError is
    raised carrying it. An assignment whose targets currently resolve to
    nobody is still created; it just cannot be activated until somebody
    resolves.
    """
    now = now or timezone.now()
    if survey.status != SurveyStatus.PUBLISHED:
        raise SurveyEngineError("Only published surveys can be assigned")
    version = survey.latest_version()
    if version is None:
        raise SurveyEngineError("Survey has no published version")
    reminder_schedule = normalize_reminder_policy(reminder_policy)

    unresolved = _unresolved_targets(targets)
    with transaction.atomic():
        assignment = Assignment.objects.create(
            survey=survey,
            survey_version=version,
            start_date=window.start,
            end_date=window.end,
            reminder_schedule=reminder_schedule,
            access_control=normalize_access_control(access_control),
            status=AssignmentStatus.DRAFT,
            unresolved_targets=unresolved,
            created_by=created_by,
        )
        assignment.assigned_users.set(set(targets.users) - set(unresolved.get("assignedTo", [])))
        assignment.assigned_organizations.set(
            set(targets.organizations) - set(unresolved.get("assignedOrganizations", []))
        )
        assignment.assigned_departments.set(
            set(targets.departments) - set(unresolved.get("assignedDepartments", []))
        )

        if not unresolved:
            if window.start and window.start > now:
                transition(assignment, AssignmentStatus.SCHEDULED, now=now)
            elif activate:
                transition(assignment, AssignmentStatus.ACTIVE, now=now)

    if unresolved:
        logger.warning(
            "Assignment kept as draft with unresolved targets",
            extra={"assignment_id": assignment.id, "survey_id": survey.id, "unresolved": unresolved},
        )
        raise AssignmentResolutionError(unresolved, assignment=assignment)

    logger.info(
        "Assignment created",
        extra={"assignment_id": assignment.id, "survey_id": survey.id, "version": version.version, "status": assignment.status},
    )
    return assignment


def resolve_recipients(assignment: Assignment, *, organization_id: Optional[int] = None) -> Set[int]:
    """
    Expand direct users, organization members and department members into a
    de-duplicated set of active user ids. `organization_id` narrows the result
    to members of that organization.
    """
    members = OrganizationMember.objects.filter(is_active=True, user__is_active=True)

    direct = set(assignment.assigned_users.filter(is_active=True).values_list("id", flat=True))
    via_org = set(
        members.filter(organization__in=assignment.assigned_organizations.all()).values_list("user_id", flat=True)
    )
    via_dept = set(
        members.filter(department__in=assignment.assigned_departments.all()).values_list("user_id", flat=True)
    )
    recipients = direct | via_org | via_dept

    if organization_id is not None:
        in_scope = set(members.filter(organization_id=organization_id).values_list("user_id", flat=True))
        recipients &= in_scope
    return recipients


def transition(assignment: Assignment, target: str, *, now: Optional[datetime] = None) -> Assignment:
    now = now or timezone.now()
    current = assignment.status
    if target == current:
        return assignment
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise AssignmentStateError(f"Cannot move assignment from {current} to {target}")
    if current == AssignmentStatus.DRAFT and assignment.unresolved_targets:
        raise AssignmentStateError("Assignment has unresolved targets")

    if target == AssignmentStatus.ACTIVE:
        if assignment.end_date and assignment.end_date <= now:
            raise AssignmentStateError("Assignment window has already closed")
        if not resolve_recipients(assignment):
            raise AssignmentStateError("Assignment has no resolvable recipients")
    if target == AssignmentStatus.SCHEDULED and not assignment.start_date:
        raise AssignmentStateError("Scheduling requires a start date")

    assignment.status = target
    assignment.save(update_fields=["status", "updated_at"])
    logger.info("Assignment status changed", extra={"assignment_id": assignment.id, "from": current, "to": target})
    return assignment


def advance_statuses(now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Time-driven transitions: scheduled -> active once started (if anyone
    resolves), and active/paused -> completed once the window closed.
    """
    now = now or timezone.now()
    counts = {"activated": 0, "completed": 0, "stalled": 0}

    closing = Assignment.objects.filter(
        status__in=[AssignmentStatus.SCHEDULED, AssignmentStatus.ACTIVE, AssignmentStatus.PAUSED],
        end_date__isnull=False,
        end_date__lte=now,
    )
    for assignment in closing:
        if assignment.status == AssignmentStatus.SCHEDULED:
            # scheduled -> completed is not a user-facing edge; close it directly
            assignment.status = AssignmentStatus.COMPLETED
            assignment.save(update_fields=["status", "updated_at"])
        else:
            transition(assignment, AssignmentStatus.COMPLETED, now=now)
        counts["completed"] += 1

    starting = Assignment.objects.filter(status=AssignmentStatus.SCHEDULED, start_date__lte=now)
    for assignment in starting:
        try:
            transition(assignment, AssignmentStatus.ACTIVE, now=now)
            counts["activated"] += 1
        except AssignmentStateError as e:
            counts["stalled"] += 1
            logger.warning("Scheduled assignment not activated: %s", e, extra={"assignment_id": assignment.id})
    return counts


def reconcile_response_counts(assignment: Assignment) -> Assignment:
    """
    Refresh the cached counters from the response store. The store is the
    source of truth; `responses_completed` never goes backwards.
    """
    from apps.responses.models import SurveyResponse, ResponseStatus  # local import to avoid circulars

    rows = SurveyResponse.objects.filter(assignment=assignment)
    completed = rows.filter(status=ResponseStatus.COMPLETED).count()
    in_progress = rows.filter(status=ResponseStatus.IN_PROGRESS).count()

    if completed < assignment.responses_completed:
        logger.warning(
            "Completed count below cached value; keeping cached",
            extra={"assignment_id": assignment.id, "stored": completed, "cached": assignment.responses_completed},
        )
        completed = assignment.responses_completed

    assignment.responses_completed = completed
    assignment.responses_in_progress = in_progress
    assignment.responses_total = completed + in_progress
    assignment.counts_reconciled_at = timezone.now()
    assignment.save(update_fields=[
        "responses_completed", "responses_in_progress", "responses_total", "counts_reconciled_at", "updated_at",
    ])
    return assignment


def assignments_for_user(user, *, organization_id: Optional[int] = None, now: Optional[datetime] = None) -> List[Assignment]:
    """Active, open assignments that currently resolve to `user`."""
    now = now or timezone.now()
    memberships = OrganizationMember.objects.filter(user=user, is_active=True)
    if organization_id is not None:
        memberships = memberships.filter(organization_id=organization_id)
    org_ids = list(memberships.values_list("organization_id", flat=True))
    dept_ids = [d for d in memberships.values_list("department_id", flat=True) if d]

    qs = (
        Assignment.objects
        .filter(status=AssignmentStatus.ACTIVE)
        .filter(Q(end_date__isnull=True) | Q(end_date__gt=now))
        .filter(Q(start_date__isnull=True) | Q(start_date__lte=now))
        .filter(
            Q(assigned_users=user)
            | Q(assigned_organizations__in=org_ids)
            | Q(assigned_departments__in=dept_ids)
        )
        .select_related("survey_version")
        .distinct()
        .order_by("end_date", "id")
    )
    return list(qs)
