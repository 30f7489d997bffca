from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from apps.responses.models import ResponseStatus, SurveyResponse
from apps.responses.services import answers_of
from apps.surveys.models import QuestionType, Survey, SurveyVersion
from apps.surveys.questions import iter_questions
from .aggregation import AggregateSlice, ResponseRecord, aggregate

BUILTIN_DIMENSIONS = ("organization", "department", "role")
MAX_DIMENSIONS = 3


def allowed_dimensions(definition: Dict[str, Any]) -> List[str]:
    demographics = [q["id"] for q in iter_questions(definition) if q.get("type") == QuestionType.DEMOGRAPHICS]
    return list(BUILTIN_DIMENSIONS) + demographics


def department_label(department) -> str:
    # department names repeat across organizations
    return f"{department.organization.name} / {department.name}"


def load_records(
    version: SurveyVersion,
    *,
    assignment_id: Optional[int] = None,
    organization_id: Optional[int] = None,
) -> List[ResponseRecord]:
    """
    Completed responses of one survey version as aggregation input. Scope
    (assignment, organization) is always passed in explicitly.
    """
    qs = (
        SurveyResponse.objects.filter(survey_version=version, status=ResponseStatus.COMPLETED)
        .select_related("organization", "department__organization")
        .prefetch_related("answers")
        .order_by("id")
    )
    if assignment_id:
        qs = qs.filter(assignment_id=assignment_id)
    if organization_id:
        qs = qs.filter(organization_id=organization_id)

    records = []
    for resp in qs:
        attributes = {
            "organization": resp.organization.name if resp.organization else None,
            "department": department_label(resp.department) if resp.department else None,
            "role": resp.job_role or None,
        }
        for code, value in (resp.demographics or {}).items():
            attributes.setdefault(code, value)
        records.append(
            ResponseRecord(
                respondent=resp.respondent_key or f"response:{resp.id}",
                attributes=attributes,
                answers=answers_of(resp),
            )
        )
    return records


def survey_report(
    survey: Survey,
    slice_by: Sequence[str],
    *,
    version_number: Optional[int] = None,
    assignment_id: Optional[int] = None,
    organization_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build the suppressed report for a survey version (latest by default).
    Raises SurveyVersion.DoesNotExist when the version is unknown and
    ValueError for slice dimensions the version cannot provide.
    """
    if version_number is not None:
        version = survey.versions.get(version=version_number)
    else:
        version = survey.latest_version()
        if version is None:
            raise SurveyVersion.DoesNotExist("Survey has no published version")

    allowed = allowed_dimensions(version.definition)
    unknown = [d for d in slice_by if d not in allowed]
    if unknown:
        raise ValueError(f"Unknown slice dimension(s): {unknown}")
    if len(slice_by) > MAX_DIMENSIONS:
        raise ValueError(f"At most {MAX_DIMENSIONS} slice dimensions are supported")

    threshold = int(version.anonymity_threshold)
    records = load_records(version, assignment_id=assignment_id, organization_id=organization_id)
    slices: List[AggregateSlice] = aggregate(records, slice_by, threshold, definition=version.definition)
    return {
        "survey_id": survey.id,
        "version": version.version,
        "threshold": threshold,
        "slice_by": list(slice_by),
        "slices": [s.as_dict() for s in slices],
    }
