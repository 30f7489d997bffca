from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.accounts.models import OrganizationMember
from apps.assignments.models import Assignment, AssignmentStatus
from apps.assignments.services import reconcile_response_counts, resolve_recipients
from apps.core.exceptions import SubmissionRejected
from apps.surveys.models import AnonymityMode, QuestionType
from apps.surveys.questions import iter_questions, validate_answers
from .models import ResponseStatus, SurveyAnswer, SurveyResponse

logger = logging.getLogger(__name__)


# ---- Encryption utilities ------------------------------------------------------

def _secret() -> str:
    return str(getattr(settings, "RESPONSES_ENCRYPTION_SECRET", None) or settings.SECRET_KEY or "")


def _derive_fernet() -> Fernet:
    """Derive a Fernet key from RESPONSES_ENCRYPTION_SECRET (or SECRET_KEY fallback)."""
    key_bytes = hashlib.sha256(_secret().encode("utf-8")).digest()  # 32 bytes
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def encrypt_value(raw: Any) -> Optional[bytes]:
    """Encrypt any JSON-serializable `raw` value. Returns None for None input."""
    if raw is None:
        return None
    payload = json.dumps(raw, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return _derive_fernet().encrypt(payload)


def decrypt_value(blob: Optional[bytes]) -> Any:
    """Inverse of `encrypt_value`. A blob encrypted under another key yields None."""
    if blob is None:
        return None
    try:
        plaintext = _derive_fernet().decrypt(bytes(blob))
    except InvalidToken:
        logger.warning("Could not decrypt sensitive answer; key mismatch?")
        return None
    return json.loads(plaintext.decode("utf-8"))


def respondent_key_for(assignment_id: int, user_id: int) -> str:
    """Stable pseudonymous key per (assignment, user); not reversible without the secret."""
    msg = f"{assignment_id}:{user_id}".encode("utf-8")
    return hmac.new(_secret().encode("utf-8"), msg, hashlib.sha256).hexdigest()


def answers_of(response: SurveyResponse) -> Dict[str, Any]:
    """Answers dict keyed by question id, sensitive values decrypted."""
    out: Dict[str, Any] = {}
    for ans in response.answers.all():
        out[ans.question_code] = decrypt_value(ans.encrypted_value) if ans.encrypted_value is not None else ans.value
    return out


# ---- Admission checks ----------------------------------------------------------

def _check_open(assignment: Assignment, now: datetime) -> None:
    if assignment.status == AssignmentStatus.COMPLETED or (assignment.end_date and assignment.end_date <= now):
        raise SubmissionRejected("The response window for this survey has closed", reason="window_closed")
    if assignment.status != AssignmentStatus.ACTIVE or (assignment.start_date and assignment.start_date > now):
        raise SubmissionRejected("This survey is not accepting responses right now", reason="not_open")


def _check_access(assignment: Assignment, user) -> None:
    authenticated = bool(user and user.is_authenticated)
    if not authenticated:
        if assignment.access("requireLogin") or not assignment.access("allowAnonymous"):
            raise SubmissionRejected("Login is required to answer this survey", reason="login_required")
        return
    if user.id not in resolve_recipients(assignment):
        raise SubmissionRejected("You are not a recipient of this survey", reason="not_assigned")


def _check_single_use(assignment: Assignment, respondent_key: str, local_id: str, survey_settings: dict) -> None:
    if not respondent_key:
        return
    single = assignment.access("oneTimeAccess") or not survey_settings.get("allowMultipleResponses", False)
    if not single:
        return
    taken = (
        SurveyResponse.objects.filter(assignment=assignment, respondent_key=respondent_key, status=ResponseStatus.COMPLETED)
        .exclude(local_id=local_id)
        .exists()
    )
    if taken:
        raise SubmissionRejected("You have already submitted this survey", reason="already_submitted")


# ---- Respondent attributes -----------------------------------------------------

def _reporting_attributes(assignment: Assignment, user, definition: dict, answers: Dict[str, Any]) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {"organization": None, "department": None, "job_role": ""}
    if user and user.is_authenticated:
        memberships = OrganizationMember.objects.filter(user=user, is_active=True).select_related("department")
        targeted = set(assignment.assigned_organizations.values_list("id", flat=True))
        membership = (
            memberships.filter(organization_id__in=targeted).order_by("id").first()
            or memberships.order_by("id").first()
        )
        if membership:
            attrs["organization"] = membership.organization
            attrs["department"] = membership.department
            attrs["job_role"] = membership.job_role
    attrs["demographics"] = {
        q["id"]: answers[q["id"]]
        for q in iter_questions(definition)
        if q["type"] == QuestionType.DEMOGRAPHICS and q["id"] in answers
    }
    return attrs


def _write_answers(response: SurveyResponse, answers: Dict[str, Any], definition: dict) -> None:
    sensitive = {q["id"] for q in iter_questions(definition) if q.get("sensitive")}
    response.answers.all().delete()
    rows = []
    for code, raw in answers.items():
        if code in sensitive:
            rows.append(SurveyAnswer(response=response, question_code=code, encrypted_value=encrypt_value(raw)))
        else:
            rows.append(SurveyAnswer(response=response, question_code=code, value=raw))
    SurveyAnswer.objects.bulk_create(rows)


# ---- Public API ---------------------------------------------------------------

def submit_response(
    assignment: Assignment,
    *,
    local_id: str,
    answers: Dict[str, Any],
    user=None,
    survey_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
    complete: bool = True,
    now: Optional[datetime] = None,
) -> Tuple[SurveyResponse, bool]:
    """
    Store a submission for `assignment`, idempotent on `local_id`.

    Returns (response, created). A `local_id` that already completed returns
    the original record untouched. An in-progress record with the same
    `local_id` is updated with the merged answers (save-and-continue).

    Raises SubmissionRejected for anything the client must not retry.
    """
    now = now or timezone.now()
    existing = SurveyResponse.objects.filter(assignment=assignment, local_id=local_id).first()
    if existing and existing.status == ResponseStatus.COMPLETED:
        logger.info("Duplicate submission", extra={"assignment_id": assignment.id, "local_id": local_id})
        return existing, False

    if survey_id is not None and survey_id != assignment.survey_id:
        raise SubmissionRejected("Submission does not belong to this assignment", reason="survey_mismatch")
    _check_open(assignment, now)
    _check_access(assignment, user)

    version = assignment.survey_version
    definition = version.definition
    survey_settings = definition.get("settings") or {}
    metadata = dict(metadata or {})

    merged = dict(answers_of(existing)) if existing else {}
    merged.update(answers or {})

    errors = validate_answers(definition, merged, partial=not complete)
    if errors:
        raise SubmissionRejected("Answers do not match the survey", reason="invalid", errors=errors)
    if complete and survey_settings.get("consentRequired") and not metadata.get("consent"):
        raise SubmissionRejected("Consent is required before submitting", reason="consent_required")

    authenticated = bool(user and user.is_authenticated)
    respondent_key = respondent_key_for(assignment.id, user.id) if authenticated else ""
    _check_single_use(assignment, respondent_key, local_id, survey_settings)

    anonymous = survey_settings.get("anonymityMode") == AnonymityMode.ANONYMOUS
    attrs = _reporting_attributes(assignment, user, definition, merged)
    status = ResponseStatus.COMPLETED if complete else ResponseStatus.IN_PROGRESS

    try:
        with transaction.atomic():
            created = existing is None
            response = existing or SurveyResponse(assignment=assignment, survey_version=version, local_id=local_id)
            response.respondent = None if (anonymous or not authenticated) else user
            response.respondent_key = respondent_key
            response.organization = attrs["organization"]
            response.department = attrs["department"]
            response.job_role = attrs["job_role"]
            response.demographics = attrs["demographics"]
            response.status = status
            response.completed_at = now if complete else None
            response.metadata = {**response.metadata, **metadata}
            response.save()
            _write_answers(response, merged, definition)
    except IntegrityError:
        # Concurrent submission with the same local_id won the insert
        winner = SurveyResponse.objects.get(assignment=assignment, local_id=local_id)
        logger.info("Concurrent duplicate submission", extra={"assignment_id": assignment.id, "local_id": local_id})
        return winner, False

    reconcile_response_counts(assignment)
    logger.info(
        "Response stored",
        extra={"assignment_id": assignment.id, "local_id": local_id, "status": status, "is_new": created},
    )
    return response, created
