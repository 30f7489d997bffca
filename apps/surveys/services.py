from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.core.exceptions import SurveyValidationError, SurveyEngineError
from .models import Survey, SurveyStatus, SurveyVersion
from .questions import OPS, QUESTION_RULES, iter_questions, scale_for

logger = logging.getLogger(__name__)


class ValidationIssue:
    def __init__(self, path: str, code: str, message: str, blocking: bool = True):
        self.path = path
        self.code = code
        self.message = message
        self.blocking = blocking

    def as_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "code": self.code, "message": self.message, "blocking": self.blocking}

    def __repr__(self):
        return f"ValidationIssue({self.path!r}, {self.code!r}, blocking={self.blocking})"


class ValidationResult:
    """Outcome of validating a survey definition; warnings never block publish."""

    def __init__(self, issues: Optional[List[ValidationIssue]] = None):
        self.issues: List[ValidationIssue] = list(issues or [])

    def add(self, path: str, code: str, message: str, blocking: bool = True) -> None:
        self.issues.append(ValidationIssue(path, code, message, blocking))

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.blocking]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if not i.blocking]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> List[str]:
        return [i.code for i in self.issues]

    def as_list(self) -> List[Dict[str, Any]]:
        return [i.as_dict() for i in self.issues]


# ---- Definition snapshot -------------------------------------------------------

def build_definition(survey: Survey) -> Dict[str, Any]:
    """
    Serialize the current draft (blocks -> questions, in sort order) into the
    JSON shape that gets frozen into a SurveyVersion.
    """
    blocks = survey.blocks.all().prefetch_related("questions").order_by("sort_order")
    out_blocks = []
    for block in blocks:
        questions = []
        for q in sorted(block.questions.all(), key=lambda x: x.sort_order):
            questions.append({
                "id": q.code,
                "title": q.title,
                "description": q.description or "",
                "type": q.type,
                "required": q.required,
                "sensitive": q.sensitive,
                "order": q.sort_order,
                "options": list(q.options or []),
                "allow_other": q.allow_other,
                "matrix_rows": list(q.matrix_rows or []),
                "matrix_columns": list(q.matrix_columns or []),
                "scale": q.scale,
                "ranking_items": list(q.ranking_items or []),
                "max_rankings": q.max_rankings,
                "conditional_logic": q.conditional_logic,
                "validation": dict(q.validation or {}),
            })
        out_blocks.append({
            "id": block.id,
            "title": block.title,
            "description": block.description or "",
            "order": block.sort_order,
            "questions": questions,
        })

    return {
        "survey_id": survey.id,
        "code": survey.code,
        "title": survey.title,
        "description": survey.description or "",
        "settings": dict(survey.settings or {}),
        "branding": dict(survey.branding or {}),
        "completion_settings": dict(survey.completion_settings or {}),
        "default_language": survey.default_language,
        "supported_languages": list(survey.supported_languages or []),
        "reflection_prompts": list(survey.reflection_prompts or []),
        "blocks": out_blocks,
    }


# ---- Validation ----------------------------------------------------------------

def _validate_settings(survey_settings: Mapping[str, Any], result: ValidationResult) -> None:
    engine = settings.SURVEY_ENGINE
    threshold = survey_settings.get("anonymityThreshold")
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        result.add("settings.anonymityThreshold", "threshold_invalid", "Anonymity threshold must be a whole number")
    elif threshold < engine["MIN_ANONYMITY_THRESHOLD"]:
        result.add(
            "settings.anonymityThreshold", "threshold_too_low",
            f"Anonymity threshold must be at least {engine['MIN_ANONYMITY_THRESHOLD']}",
        )
    elif threshold < engine["RECOMMENDED_ANONYMITY_THRESHOLD"]:
        result.add(
            "settings.anonymityThreshold", "threshold_below_recommended",
            f"Anonymity threshold below {engine['RECOMMENDED_ANONYMITY_THRESHOLD']} makes small groups identifiable",
            blocking=False,
        )


def _validate_question(q: Mapping[str, Any], path: str, seen_before: List[str], result: ValidationResult) -> None:
    rule = QUESTION_RULES.get(q.get("type"))
    if rule is None:
        result.add(f"{path}.type", "unknown_type", f"Unknown question type {q.get('type')!r}")
        return

    if not (q.get("title") or "").strip():
        result.add(f"{path}.title", "title_missing", "Question title is required")

    for key, label in rule.collections:
        values = q.get(key) or []
        if not values:
            result.add(f"{path}.{key}", "empty_collection", f"Question {q['id']} needs at least one of its {label}")
            continue
        if len(set(values)) != len(values):
            result.add(f"{path}.{key}", "duplicate_entries", f"Question {q['id']} lists duplicate {label}", blocking=False)

    if rule.scale != "none":
        scale = scale_for(q)
        if not scale:
            result.add(f"{path}.scale", "scale_missing", f"Question {q['id']} needs a scale")
        else:
            low, high = scale.get("min"), scale.get("max")
            if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (low, high)):
                result.add(f"{path}.scale", "scale_invalid", f"Question {q['id']} scale needs numeric min and max")
            elif low >= high:
                result.add(f"{path}.scale", "scale_inverted", f"Question {q['id']} scale min must be below max")

    pattern = (q.get("validation") or {}).get("pattern")
    if pattern:
        try:
            re.compile(str(pattern))
        except re.error:
            result.add(f"{path}.validation.pattern", "pattern_invalid", f"Question {q['id']} has an invalid pattern")

    logic = q.get("conditional_logic") or {}
    for i, clause in enumerate(logic.get("showIf") or []):
        ref = clause.get("questionId")
        if ref not in seen_before:
            result.add(
                f"{path}.conditional_logic.showIf[{i}]", "logic_reference",
                f"Question {q['id']} depends on {ref!r}, which is not an earlier question",
            )
        if clause.get("operator") not in OPS:
            result.add(
                f"{path}.conditional_logic.showIf[{i}]", "logic_operator",
                f"Unsupported operator {clause.get('operator')!r}",
            )
    if logic and (logic.get("logic") or "and") not in ("and", "or"):
        result.add(f"{path}.conditional_logic.logic", "logic_operator", "Logic must be 'and' or 'or'")


def validate_definition(definition: Mapping[str, Any]) -> ValidationResult:
    """Pure validation of a definition dict (draft or snapshot)."""
    result = ValidationResult()
    _validate_settings(definition.get("settings") or {}, result)

    seen: List[str] = []
    total = 0
    for b_idx, block in enumerate(definition.get("blocks", [])):
        for q_idx, q in enumerate(block.get("questions", [])):
            total += 1
            path = f"blocks[{b_idx}].questions[{q_idx}]"
            qid = q.get("id")
            if not qid:
                result.add(f"{path}.id", "id_missing", "Question id is required")
            elif qid in seen:
                result.add(f"{path}.id", "duplicate_id", f"Question id {qid!r} is used more than once")
            _validate_question(q, path, list(seen), result)
            if qid:
                seen.append(qid)

    if total == 0:
        result.add("blocks", "no_questions", "Survey has no questions")
    return result


def validate(survey: Survey) -> ValidationResult:
    return validate_definition(build_definition(survey))


# ---- Lifecycle -----------------------------------------------------------------

@transaction.atomic
def publish(survey: Survey, *, published_by=None) -> SurveyVersion:
    """
    Freeze the current draft into a new immutable SurveyVersion.

    Raises SurveyValidationError on blocking issues; earlier versions (and the
    assignments/responses bound to them) are left untouched.
    """
    locked = Survey.objects.select_for_update().get(pk=survey.pk)
    if locked.status == SurveyStatus.ARCHIVED:
        raise SurveyEngineError("Archived surveys cannot be published")

    definition = build_definition(locked)
    result = validate_definition(definition)
    if not result.is_valid:
        logger.info("Publish blocked", extra={"survey_id": locked.id, "issues": result.codes()})
        raise SurveyValidationError(result)

    now = timezone.now()
    locked.version += 1
    locked.status = SurveyStatus.PUBLISHED
    locked.published_at = now
    locked.save(update_fields=["version", "status", "published_at", "updated_at"])

    definition["version"] = locked.version
    snapshot = SurveyVersion.objects.create(
        survey=locked,
        version=locked.version,
        definition=definition,
        published_at=now,
        published_by=published_by,
    )

    survey.version, survey.status, survey.published_at = locked.version, locked.status, locked.published_at
    logger.info("Survey published", extra={"survey_id": locked.id, "version": locked.version})
    return snapshot


@transaction.atomic
def archive(survey: Survey) -> Survey:
    if survey.status != SurveyStatus.ARCHIVED:
        survey.status = SurveyStatus.ARCHIVED
        survey.save(update_fields=["status", "updated_at"])
        logger.info("Survey archived", extra={"survey_id": survey.id})
    return survey
