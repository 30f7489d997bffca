"""
Closed set of question variants.

Every ``QuestionType`` has exactly one ``QuestionRule`` describing which
collections it needs before publish, whether it carries a numeric scale and how
a submitted answer is checked. ``QUESTION_RULES`` is checked against the enum at
import time, so a new type without rules fails loudly instead of falling through
string compares at runtime.
"""
from __future__ import annotations

import operator as _op
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import QuestionType

NPS_DEFAULT_SCALE = {"min": 0, "max": 10, "minLabel": "Not at all likely", "maxLabel": "Extremely likely"}

# Supported comparison operators for conditional display logic.
OPS: Mapping[str, Callable[[Any, Any], bool]] = {
    "equals": _op.eq,
    "not-equals": _op.ne,
    "contains": lambda left, right: right in left if isinstance(left, (list, str)) else False,
    "greater-than": _op.gt,
    "less-than": _op.lt,
}


def _is_present(val: Any) -> bool:
    """Uniform presence check used by required/conditional validations."""
    return not (val in (None, "") or (isinstance(val, (list, dict)) and len(val) == 0))


def _to_number(raw: Any) -> Optional[Decimal]:
    if isinstance(raw, bool):
        return None
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None


def scale_for(question: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    scale = question.get("scale")
    if not scale and question.get("type") == QuestionType.NPS:
        return dict(NPS_DEFAULT_SCALE)
    return scale or None


# ---- Answer checkers -----------------------------------------------------------
# Each returns None when the value is acceptable, else a human-friendly message.

def _check_single_choice(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return f"{q['id']}: expected a single option"
    if raw in q.get("options", []):
        return None
    if q.get("allow_other") and raw.strip():
        return None
    return f"Invalid option '{raw}' for question {q['id']}"


def _check_multi_choice(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        return f"Expected list of options for question {q['id']}"
    if len(set(raw)) != len(raw):
        return f"{q['id']}: options may only be selected once"
    allowed = set(q.get("options", []))
    invalid = [v for v in raw if v not in allowed]
    if invalid and not q.get("allow_other"):
        return f"Invalid option(s) {invalid} for question {q['id']}"
    return None


def _check_matrix(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    if not isinstance(raw, dict):
        return f"Expected row -> column mapping for question {q['id']}"
    rows = set(q.get("matrix_rows", []))
    columns = set(q.get("matrix_columns", []))
    unknown_rows = sorted(r for r in raw if r not in rows)
    if unknown_rows:
        return f"Unknown row(s) {unknown_rows} for question {q['id']}"
    bad = sorted(r for r, c in raw.items() if c not in columns)
    if bad:
        return f"Invalid column for row(s) {bad} in question {q['id']}"
    if q.get("required") and set(raw) != rows:
        return f"{q['id']}: every row must be answered"
    return None


def _check_ranking(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    items = q.get("ranking_items", [])
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        return f"Expected ordered list of items for question {q['id']}"
    if len(set(raw)) != len(raw):
        return f"{q['id']}: each item may only be ranked once"
    invalid = [v for v in raw if v not in items]
    if invalid:
        return f"Invalid item(s) {invalid} for question {q['id']}"
    expected = min(q.get("max_rankings") or len(items), len(items))
    if len(raw) != expected:
        return f"{q['id']}: rank exactly {expected} item(s)"
    return None


def _check_scale(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    num = _to_number(raw)
    if num is None:
        return f"{q['id']}: expected a number"
    scale = scale_for(q) or {}
    low, high = scale.get("min"), scale.get("max")
    if low is not None and num < Decimal(str(low)):
        return f"{q['id']}: must be >= {low}"
    if high is not None and num > Decimal(str(high)):
        return f"{q['id']}: must be <= {high}"
    if q.get("type") == QuestionType.NPS and num != num.to_integral_value():
        return f"{q['id']}: must be a whole number"
    return None


def _check_text(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return f"{q['id']}: expected text"
    rules = q.get("validation") or {}
    min_len = rules.get("minLength")
    max_len = rules.get("maxLength")
    if isinstance(min_len, int) and len(raw) < min_len:
        return f"{q['id']}: must be at least {min_len} characters"
    if isinstance(max_len, int) and len(raw) > max_len:
        return f"{q['id']}: must be at most {max_len} characters"
    pattern = rules.get("pattern")
    if pattern and not re.fullmatch(str(pattern), raw):
        return rules.get("customMessage") or f"{q['id']}: value does not match pattern"
    return None


def _check_file(q: Mapping[str, Any], raw: Any) -> Optional[str]:
    if isinstance(raw, str) and raw.strip():
        return None
    if isinstance(raw, dict) and (raw.get("url") or raw.get("file_id")):
        return None
    return f"{q['id']}: expected an uploaded file reference"


class QuestionRule:
    """Publish-time and answer-time rules for one question variant."""

    def __init__(
        self,
        *,
        collections: Sequence[Tuple[str, str]] = (),
        scale: str = "none",
        check_answer: Callable[[Mapping[str, Any], Any], Optional[str]],
    ):
        self.collections = tuple(collections)   # (definition key, human label)
        self.scale = scale                      # "none" | "optional" | "required"
        self.check_answer = check_answer


QUESTION_RULES: Dict[str, QuestionRule] = {
    QuestionType.SINGLE_SELECT: QuestionRule(collections=[("options", "options")], check_answer=_check_single_choice),
    QuestionType.MULTI_SELECT: QuestionRule(collections=[("options", "options")], check_answer=_check_multi_choice),
    QuestionType.MATRIX_LIKERT: QuestionRule(
        collections=[("matrix_rows", "rows"), ("matrix_columns", "columns")],
        check_answer=_check_matrix,
    ),
    QuestionType.RANKING: QuestionRule(collections=[("ranking_items", "ranking items")], check_answer=_check_ranking),
    QuestionType.NPS: QuestionRule(scale="optional", check_answer=_check_scale),
    QuestionType.SLIDER: QuestionRule(scale="required", check_answer=_check_scale),
    QuestionType.OPEN_ENDED: QuestionRule(check_answer=_check_text),
    QuestionType.FILE_UPLOAD: QuestionRule(check_answer=_check_file),
    QuestionType.DEMOGRAPHICS: QuestionRule(collections=[("options", "options")], check_answer=_check_single_choice),
}

if set(QUESTION_RULES) != set(QuestionType.values):
    raise RuntimeError(
        "QUESTION_RULES out of sync with QuestionType: "
        f"missing={sorted(set(QuestionType.values) - set(QUESTION_RULES))}"
    )


def rule_for(question_type: str) -> QuestionRule:
    try:
        return QUESTION_RULES[question_type]
    except KeyError:
        raise ValueError(f"Unknown question type: {question_type!r}")


# ---- Conditional display -------------------------------------------------------

def _evaluate_condition(left: Any, op_symbol: str, right: Any) -> bool:
    """
    Evaluate a single showIf clause. Numeric comparisons coerce both sides;
    anything that cannot be compared counts as not matching.
    """
    func = OPS.get((op_symbol or "equals").strip())
    if func is None or left is None:
        return False
    if op_symbol in ("greater-than", "less-than"):
        left, right = _to_number(left), _to_number(right)
        if left is None or right is None:
            return False
    elif op_symbol in ("equals", "not-equals") and not isinstance(left, (list, dict)):
        left, right = str(left), str(right)
    try:
        return func(left, right)
    except TypeError:
        return False


def is_visible(question: Mapping[str, Any], answers: Mapping[str, Any]) -> bool:
    """A question without conditional logic is always shown."""
    logic = question.get("conditional_logic") or {}
    clauses = logic.get("showIf") or []
    if not clauses:
        return True
    results = [
        _evaluate_condition(answers.get(c.get("questionId")), c.get("operator"), c.get("value"))
        for c in clauses
    ]
    if (logic.get("logic") or "and") == "or":
        return any(results)
    return all(results)


def iter_questions(definition: Mapping[str, Any]):
    for block in definition.get("blocks", []):
        for q in block.get("questions", []):
            yield q


def validate_answers(definition: Mapping[str, Any], answers: Mapping[str, Any], *, partial: bool = False) -> List[str]:
    """
    Check a submitted answers dict against a frozen survey definition.

    Returns a list of error messages (empty when valid). Unknown question ids
    are errors; hidden questions must not carry answers; ``partial`` skips the
    required checks for in-progress saves.
    """
    errors: List[str] = []
    by_id = {q["id"]: q for q in iter_questions(definition)}

    unknown = sorted(code for code in answers if code not in by_id)
    if unknown:
        errors.append(f"Unknown question id(s): {unknown}")

    for code, q in by_id.items():
        raw = answers.get(code)
        visible = is_visible(q, answers)
        if not visible:
            if _is_present(raw):
                errors.append(f"{code}: question is not shown for these answers")
            continue
        if not _is_present(raw):
            if q.get("required") and not partial:
                errors.append(f"Missing required answer for {q.get('title') or code}")
            continue
        message = rule_for(q["type"]).check_answer(q, raw)
        if message:
            errors.append(message)
    return errors
