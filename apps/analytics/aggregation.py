"""
Anonymity-preserving aggregation of survey responses.

Responses are grouped by every prefix of the requested slice dimensions
(overall, first dimension, first x second, ...) and each group is tallied per
question. Any group with fewer respondents than the threshold is suppressed:
its tallies are dropped and its count is reported only as "< threshold". If
the whole filtered population is below the threshold, every group is.

Nothing here touches the database; callers load ``ResponseRecord``s first.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from apps.core.exceptions import AnonymityViolation
from apps.surveys.models import QuestionType
from apps.surveys.questions import iter_questions

UNKNOWN = "(unknown)"

PROMOTER_MIN = 9
DETRACTOR_MAX = 6


@dataclass(frozen=True)
class ResponseRecord:
    respondent: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    answers: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class AggregateSlice:
    dimensions: Tuple[str, ...]
    key: Tuple[Any, ...]
    respondent_count: Optional[int]
    respondent_count_display: str
    suppressed: bool
    tallies: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "dimensions": list(self.dimensions),
            "key": [UNKNOWN if v is None else v for v in self.key],
            "respondent_count": self.respondent_count,
            "respondent_count_display": self.respondent_count_display,
            "suppressed": self.suppressed,
            "tallies": self.tallies,
        }


# ---- Sorting helpers ------------------------------------------------------------

def _sort_token(value: Any) -> Tuple[int, str]:
    return (1, "") if value is None else (0, str(value))


def _ordered_counts(counter: Counter, known: Sequence[Any] = ()) -> Dict[str, int]:
    """Defined options first in their authored order, then anything else sorted."""
    out: Dict[str, int] = {}
    for option in known:
        out[str(option)] = counter.get(option, 0)
    for value in sorted((v for v in counter if v not in known), key=_sort_token):
        out[str(value)] = counter[value]
    return out


def _number(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _numeric_counts(values: List[float]) -> Dict[str, int]:
    counter = Counter(values)
    return {_fmt_number(v): counter[v] for v in sorted(counter)}


def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


# ---- Per-type tallies -----------------------------------------------------------

def _tally_choice(q: Mapping[str, Any], values: List[Any]) -> Dict[str, Any]:
    counter: Counter = Counter()
    for raw in values:
        for v in (raw if isinstance(raw, list) else [raw]):
            if isinstance(v, (dict, list)):
                continue
            counter[v] += 1
    return {"type": q.get("type"), "answered": len(values), "counts": _ordered_counts(counter, q.get("options") or [])}


def _tally_matrix(q: Mapping[str, Any], values: List[Any]) -> Dict[str, Any]:
    rows = q.get("matrix_rows") or []
    columns = q.get("matrix_columns") or []
    per_row: Dict[Any, Counter] = defaultdict(Counter)
    for raw in values:
        if isinstance(raw, dict):
            for row, column in raw.items():
                per_row[row][column] += 1
    extra_rows = sorted((r for r in per_row if r not in rows), key=_sort_token)
    return {
        "type": q.get("type"),
        "answered": len(values),
        "rows": {str(r): _ordered_counts(per_row.get(r, Counter()), columns) for r in list(rows) + extra_rows},
    }


def _tally_ranking(q: Mapping[str, Any], values: List[Any]) -> Dict[str, Any]:
    items = q.get("ranking_items") or []
    positions: Dict[Any, List[int]] = defaultdict(list)
    first: Counter = Counter()
    for raw in values:
        if not isinstance(raw, list) or not raw:
            continue
        first[raw[0]] += 1
        for pos, item in enumerate(raw, start=1):
            positions[item].append(pos)
    return {
        "type": q.get("type"),
        "answered": len(values),
        "mean_position": {
            str(item): (round(sum(positions[item]) / len(positions[item]), 4) if positions.get(item) else None)
            for item in items
        },
        "first_place": _ordered_counts(first, items),
    }


def _tally_nps(q: Mapping[str, Any], values: List[Any]) -> Dict[str, Any]:
    scores = [n for n in (_number(v) for v in values) if n is not None]
    promoters = sum(1 for s in scores if s >= PROMOTER_MIN)
    detractors = sum(1 for s in scores if s <= DETRACTOR_MAX)
    total = len(scores)
    return {
        "type": q.get("type"),
        "answered": total,
        "distribution": _numeric_counts(scores),
        "promoters": promoters,
        "passives": total - promoters - detractors,
        "detractors": detractors,
        "nps": round((promoters - detractors) * 100.0 / total, 1) if total else None,
    }


def _tally_slider(q: Mapping[str, Any], values: List[Any]) -> Dict[str, Any]:
    nums = [n for n in (_number(v) for v in values) if n is not None]
    return {
        "type": q.get("type"),
        "answered": len(nums),
        "distribution": _numeric_counts(nums),
        "mean": round(sum(nums) / len(nums), 4) if nums else None,
        "min": min(nums) if nums else None,
        "max": max(nums) if nums else None,
    }


def _tally_count_only(q: Mapping[str, Any], values: List[Any]) -> Dict[str, Any]:
    # free text and files never leave the boundary
    return {"type": q.get("type"), "answered": len(values)}


TALLIES = {
    QuestionType.SINGLE_SELECT: _tally_choice,
    QuestionType.MULTI_SELECT: _tally_choice,
    QuestionType.DEMOGRAPHICS: _tally_choice,
    QuestionType.MATRIX_LIKERT: _tally_matrix,
    QuestionType.RANKING: _tally_ranking,
    QuestionType.NPS: _tally_nps,
    QuestionType.SLIDER: _tally_slider,
    QuestionType.OPEN_ENDED: _tally_count_only,
    QuestionType.FILE_UPLOAD: _tally_count_only,
}


def _questions(definition: Optional[Mapping[str, Any]], records: Sequence[ResponseRecord]) -> List[Mapping[str, Any]]:
    if definition:
        return list(iter_questions(definition))
    # Without a definition the tally follows the answer shape: row -> column
    # mappings are matrices, anything else is counted as a choice.
    shapes: Dict[str, Optional[str]] = {}
    for r in records:
        for code, value in r.answers.items():
            if isinstance(value, dict):
                shapes[code] = QuestionType.MATRIX_LIKERT
            else:
                shapes.setdefault(code, None)
    return [{"id": code, "type": shapes[code]} for code in sorted(shapes)]


def tally(records: Sequence[ResponseRecord], questions: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for q in questions:
        values = [r.answers[q["id"]] for r in records if r.answers.get(q["id"]) not in (None, "", [], {})]
        out[q["id"]] = TALLIES.get(q.get("type"), _tally_choice)(q, values)
    return out


# ---- Slicing --------------------------------------------------------------------

def _matches(record: ResponseRecord, filters: Mapping[str, Any]) -> bool:
    for name, wanted in filters.items():
        value = record.attributes.get(name)
        if isinstance(wanted, (list, tuple, set, frozenset)):
            if value not in wanted:
                return False
        elif value != wanted:
            return False
    return True


def _respondents(records: Iterable[ResponseRecord]) -> int:
    return len({r.respondent for r in records})


def aggregate(
    responses: Iterable[ResponseRecord],
    slice_by: Sequence[str],
    threshold: int,
    *,
    definition: Optional[Mapping[str, Any]] = None,
    filters: Optional[Mapping[str, Any]] = None,
) -> List[AggregateSlice]:
    """
    Group, tally and suppress. Output order is fixed: coarser granularity
    first, then by slice key with missing values last.
    """
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
        raise ValueError(f"Invalid anonymity threshold: {threshold!r}")
    dims = tuple(dict.fromkeys(d for d in slice_by if d))

    records = [r for r in responses if _matches(r, filters or {})]
    questions = _questions(definition, records)
    below_overall = _respondents(records) < threshold

    slices: List[AggregateSlice] = []
    for depth in range(len(dims) + 1):
        level = dims[:depth]
        groups: Dict[Tuple[Any, ...], List[ResponseRecord]] = defaultdict(list)
        for r in records:
            groups[tuple(r.attributes.get(d) for d in level)].append(r)
        if not level and not groups:
            groups[()] = []

        for key in sorted(groups, key=lambda k: tuple(_sort_token(v) for v in k)):
            members = groups[key]
            count = _respondents(members)
            if below_overall or count < threshold:
                slices.append(AggregateSlice(level, key, None, f"< {threshold}", True, {}))
            else:
                slices.append(AggregateSlice(level, key, count, str(count), False, tally(members, questions)))

    guard_slices(slices, threshold)
    return slices


def guard_slices(slices: Iterable[AggregateSlice], threshold: int) -> None:
    """Last line of defence: nothing below threshold may leave unsuppressed."""
    for s in slices:
        if s.suppressed:
            if s.respondent_count is not None or s.tallies:
                raise AnonymityViolation(f"Suppressed slice {s.key} still carries data")
            continue
        if s.respondent_count is None or s.respondent_count < threshold:
            raise AnonymityViolation(f"Slice {s.key} has {s.respondent_count} respondents, threshold is {threshold}")
