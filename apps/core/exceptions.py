from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class SurveyEngineError(Exception):
    """Base class for domain errors raised by the survey engine services."""

    default_detail = "Survey engine error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def as_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail}


class SurveyValidationError(SurveyEngineError):
    """A survey definition has blocking issues; carries the full ValidationResult."""

    default_detail = "Survey definition is invalid"

    def __init__(self, result, detail: Optional[str] = None):
        self.result = result
        super().__init__(detail)

    def as_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "issues": self.result.as_list()}


class AssignmentResolutionError(SurveyEngineError):
    """One or more org/department/user references did not resolve."""

    default_detail = "Assignment targets could not be resolved"

    def __init__(self, unresolved: Dict[str, Iterable[Any]], detail: Optional[str] = None, *, assignment=None):
        self.unresolved = {k: sorted(v) for k, v in unresolved.items() if v}
        self.assignment = assignment
        super().__init__(detail)

    def as_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.detail, "unresolved": self.unresolved}
        if self.assignment is not None:
            body["assignment_id"] = self.assignment.id
        return body


class AssignmentStateError(SurveyEngineError):
    default_detail = "Assignment cannot change to the requested status"


class SubmissionRejected(SurveyEngineError):
    """
    Permanent, server-side rejection of a submission (bad answers, closed window,
    access policy). Clients must not retry these.
    """

    default_detail = "Submission rejected"

    def __init__(self, detail: Optional[str] = None, *, reason: str = "invalid", errors: Optional[List[str]] = None):
        self.reason = reason
        self.errors = list(errors or [])
        super().__init__(detail)

    def as_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.detail, "reason": self.reason}
        if self.errors:
            body["errors"] = self.errors
        return body


class AnonymityViolation(SurveyEngineError):
    """An aggregate slice below the anonymity threshold escaped suppression."""

    default_detail = "Aggregate slice below anonymity threshold was not suppressed"
