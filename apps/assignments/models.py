from django.conf import settings
from django.db import models
from apps.core.models import TimeStampedModel
from apps.accounts.models import Organization, Department
from apps.surveys.models import Survey, SurveyVersion
from auditlog.registry import auditlog


class AssignmentStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    SCHEDULED = "scheduled", "Scheduled"
    ACTIVE = "active", "Active"
    PAUSED = "paused", "Paused"
    COMPLETED = "completed", "Completed"


class ReminderFrequency(models.TextChoices):
    DAILY = "daily", "Daily"
    WEEKLY = "weekly", "Weekly"
    BI_WEEKLY = "bi-weekly", "Bi-weekly"


def default_reminder_schedule() -> dict:
    return {"enabled": True, "frequency": ReminderFrequency.WEEKLY.value, "daysBeforeDeadline": [7, 3, 1]}


def default_access_control() -> dict:
    return {"requireLogin": True, "allowAnonymous": False, "oneTimeAccess": True}


class Assignment(TimeStampedModel):
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="assignments")
    survey_version = models.ForeignKey(SurveyVersion, on_delete=models.PROTECT, related_name="assignments")

    # Stored as references; membership is expanded at send time.
    assigned_users = models.ManyToManyField(settings.AUTH_USER_MODEL, related_name="survey_assignments", blank=True)
    assigned_organizations = models.ManyToManyField(Organization, related_name="survey_assignments", blank=True)
    assigned_departments = models.ManyToManyField(Department, related_name="survey_assignments", blank=True)

    start_date = models.DateTimeField(blank=True, null=True)
    end_date = models.DateTimeField(blank=True, null=True)
    reminder_schedule = models.JSONField(default=default_reminder_schedule)
    access_control = models.JSONField(default=default_access_control)
    # Target ids that did not exist at creation; the assignment stays a draft
    unresolved_targets = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=16, choices=AssignmentStatus.choices, default=AssignmentStatus.DRAFT)

    # Cache of the response store; see services.reconcile_response_counts
    responses_total = models.PositiveIntegerField(default=0)
    responses_completed = models.PositiveIntegerField(default=0)
    responses_in_progress = models.PositiveIntegerField(default=0)
    counts_reconciled_at = models.DateTimeField(blank=True, null=True)

    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")

    class Meta:
        indexes = [
            models.Index(fields=["status", "end_date"], name="idx_assign_status_end"),
        ]

    def __str__(self):
        return f"assignment#{self.id} survey#{self.survey_id} ({self.status})"

    @property
    def reminder_offsets(self) -> list:
        return list((self.reminder_schedule or {}).get("daysBeforeDeadline") or [])

    @property
    def reminders_enabled(self) -> bool:
        return bool((self.reminder_schedule or {}).get("enabled"))

    def access(self, key: str) -> bool:
        return bool((self.access_control or {}).get(key, default_access_control()[key]))


class ReminderFireRecord(models.Model):
    """Marks the reminder for (assignment, offset_days) as sent."""
    assignment = models.ForeignKey(Assignment, on_delete=models.CASCADE, related_name="reminder_fires")
    offset_days = models.PositiveIntegerField()
    fired_at = models.DateTimeField()
    recipient_count = models.PositiveIntegerField(default=0)

    class Meta:
        unique_together = ("assignment", "offset_days")

    def __str__(self):
        return f"reminder:{self.assignment_id}@-{self.offset_days}d"


auditlog.register(Assignment)
auditlog.register(ReminderFireRecord)
