from django.conf import settings
from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog
from apps.accounts.models import Organization, Department
from apps.assignments.models import Assignment
from apps.surveys.models import SurveyVersion


class ResponseStatus(models.TextChoices):
    IN_PROGRESS = "in_progress", "In progress"
    COMPLETED = "completed", "Completed"


class SurveyResponse(TimeStampedModel):
    assignment = models.ForeignKey(Assignment, on_delete=models.CASCADE, related_name="responses")
    survey_version = models.ForeignKey(SurveyVersion, on_delete=models.PROTECT, related_name="responses")
    # Client-generated idempotency key
    local_id = models.CharField(max_length=64)

    # Null for anonymous surveys; respondent_key still allows one-time access checks.
    respondent = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="survey_responses"
    )
    respondent_key = models.CharField(max_length=64, blank=True, default="")

    # Reporting attributes captured at submission time
    organization = models.ForeignKey(Organization, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    department = models.ForeignKey(Department, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    job_role = models.CharField(max_length=128, blank=True, default="")
    demographics = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=16, choices=ResponseStatus.choices, default=ResponseStatus.COMPLETED)
    submitted_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        unique_together = ("assignment", "local_id")
        indexes = [
            models.Index(fields=["assignment", "status"], name="idx_response_assign_status"),
            models.Index(fields=["survey_version", "-submitted_at"], name="idx_response_version_time"),
        ]

    def __str__(self):
        return f"response#{self.id} assignment#{self.assignment_id} ({self.local_id})"


class SurveyAnswer(TimeStampedModel):
    response = models.ForeignKey(SurveyResponse, on_delete=models.CASCADE, related_name="answers")
    question_code = models.CharField(max_length=128)
    value = models.JSONField(blank=True, null=True)
    # Set instead of `value` for sensitive questions
    encrypted_value = models.BinaryField(blank=True, null=True)

    class Meta:
        unique_together = ("response", "question_code")
        indexes = [
            models.Index(fields=["question_code"], name="idx_answer_question"),
        ]

    def __str__(self):
        return f"ans#{self.id} {self.question_code}"


# Register audit logging for responses models
auditlog.register(SurveyResponse)
auditlog.register(SurveyAnswer, exclude_fields=["value", "encrypted_value"])
