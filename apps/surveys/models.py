from django.conf import settings as django_settings
from django.core.exceptions import ValidationError
from django.db import models
from apps.core.models import TimeStampedModel
from apps.accounts.models import Organization
from auditlog.registry import auditlog


class SurveyStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    PUBLISHED = "published", "Published"
    ARCHIVED = "archived", "Archived"


class AnonymityMode(models.TextChoices):
    ANONYMOUS = "anonymous", "Anonymous"
    CONFIDENTIAL = "confidential", "Confidential"
    IDENTIFIED = "identified", "Identified"


def default_survey_settings() -> dict:
    return {
        "anonymityMode": AnonymityMode.ANONYMOUS.value,
        "anonymityThreshold": django_settings.SURVEY_ENGINE["DEFAULT_ANONYMITY_THRESHOLD"],
        "consentRequired": False,
        "allowMultipleResponses": False,
        "showProgressBar": True,
        "allowSaveAndContinue": True,
        "randomizeQuestions": False,
        "randomizeOptions": False,
    }


def default_completion_settings() -> dict:
    return {
        "thankYouMessage": "Thank you for completing our survey!",
        "showResources": False,
        "recommendedCourses": [],
    }


def default_languages() -> list:
    return ["en"]


class Survey(TimeStampedModel):
    organization = models.ForeignKey(Organization, on_delete=models.SET_NULL, null=True, blank=True, related_name="surveys")
    code = models.SlugField(max_length=128, unique=True)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, null=True)
    status = models.CharField(max_length=16, choices=SurveyStatus.choices, default=SurveyStatus.DRAFT)
    version = models.PositiveIntegerField(default=0)   # bumped by publish only
    settings = models.JSONField(default=default_survey_settings)
    branding = models.JSONField(default=dict)
    completion_settings = models.JSONField(default=default_completion_settings)
    default_language = models.CharField(max_length=16, default="en")
    supported_languages = models.JSONField(default=default_languages)
    reflection_prompts = models.JSONField(default=list)
    created_by = models.ForeignKey(django_settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    published_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["status"], name="idx_survey_status"),
        ]

    def __str__(self):
        return f"{self.code}"

    @property
    def anonymity_threshold(self) -> int:
        return (self.settings or {}).get("anonymityThreshold", django_settings.SURVEY_ENGINE["DEFAULT_ANONYMITY_THRESHOLD"])

    def latest_version(self):
        return self.versions.order_by("-version").first()


class SurveyBlock(TimeStampedModel):
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="blocks")
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, null=True)
    sort_order = models.IntegerField()

    class Meta:
        unique_together = ("survey", "sort_order")
        ordering = ["sort_order"]

    def __str__(self):
        return f"{self.survey_id}:{self.title}"


class QuestionType(models.TextChoices):
    SINGLE_SELECT = "single-select", "Single select"
    MULTI_SELECT = "multi-select", "Multi select"
    MATRIX_LIKERT = "matrix-likert", "Matrix / Likert"
    RANKING = "ranking", "Ranking"
    NPS = "nps", "Net Promoter Score"
    SLIDER = "slider", "Slider"
    OPEN_ENDED = "open-ended", "Open ended"
    FILE_UPLOAD = "file-upload", "File upload"
    DEMOGRAPHICS = "demographics", "Demographics"


class SurveyQuestion(TimeStampedModel):
    block = models.ForeignKey(SurveyBlock, on_delete=models.CASCADE, related_name="questions")
    code = models.CharField(max_length=128)              # question id used in answers/logic
    title = models.TextField()
    description = models.TextField(blank=True, null=True)
    type = models.CharField(max_length=24, choices=QuestionType.choices)
    required = models.BooleanField(default=False)
    sensitive = models.BooleanField(default=False)       # if true, answer will be encrypted
    sort_order = models.IntegerField()
    options = models.JSONField(default=list)
    allow_other = models.BooleanField(default=False)
    matrix_rows = models.JSONField(default=list)
    matrix_columns = models.JSONField(default=list)
    scale = models.JSONField(blank=True, null=True)      # {min, max, minLabel, maxLabel, midLabel}
    ranking_items = models.JSONField(default=list)
    max_rankings = models.PositiveIntegerField(blank=True, null=True)
    conditional_logic = models.JSONField(blank=True, null=True)
    validation = models.JSONField(default=dict)

    class Meta:
        unique_together = (("block", "sort_order"), ("block", "code"))
        ordering = ["sort_order"]

    def __str__(self):
        return f"{self.block_id}:{self.code}"


class SurveyVersion(models.Model):
    """
    Frozen definition of a survey at publish time. Assignments and responses
    point here, so a row is written once and never updated.
    """
    survey = models.ForeignKey(Survey, on_delete=models.CASCADE, related_name="versions")
    version = models.PositiveIntegerField()
    definition = models.JSONField()
    published_at = models.DateTimeField()
    published_by = models.ForeignKey(django_settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")

    class Meta:
        unique_together = ("survey", "version")
        ordering = ["version"]

    def __str__(self):
        return f"{self.survey_id}@v{self.version}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Published survey versions are immutable")
        super().save(*args, **kwargs)

    @property
    def anonymity_threshold(self) -> int:
        return (self.definition.get("settings") or {}).get(
            "anonymityThreshold", django_settings.SURVEY_ENGINE["DEFAULT_ANONYMITY_THRESHOLD"]
        )


# Register audit logging for survey models
auditlog.register(Survey)
auditlog.register(SurveyBlock)
auditlog.register(SurveyQuestion)
auditlog.register(SurveyVersion)
