from __future__ import annotations

from typing import Iterable, List, Optional, Type

from django.utils.text import slugify

def parse_int(value: object, default: int) -> int:
    """Safe int parse with default fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

def parse_csv(value: Optional[str]) -> List[str]:
    """Split a comma separated query param, dropping blanks and keeping order."""
    if not value:
        return []
    seen: List[str] = []
    for part in str(value).split(","):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen


def unique_slug_for_code(model: Type, base: str, code_field: str = "code") -> str:
    """Generate a unique, URL-safe code using base and numeric suffix if needed."""
    base = slugify(base) or "survey"
    candidate = base
    i = 1
    exists = model.objects.filter(**{code_field: candidate}).exists()
    while exists:
        i += 1
        candidate = f"{base}-{i}"
        exists = model.objects.filter(**{code_field: candidate}).exists()
    return candidate

def sort_order_conflict_exists(queryset, sort_order: Optional[int], exclude_pk: Optional[int] = None) -> bool:
    """
    Check if a given sort_order already exists within the sibling queryset
    (blocks of a survey, questions of a block).
    """
    if sort_order is None:
        return False
    qs = queryset.only("id").filter(sort_order=sort_order)
    if exclude_pk:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()

def normalize_offsets(values: Iterable[object]) -> List[int]:
    """
    Coerce reminder offsets to unique non-negative ints, largest first.
    Raises ValueError on negatives or non-integers.
    """
    out = set()
    for v in values or []:
        if isinstance(v, bool):
            raise ValueError(f"Invalid reminder offset: {v!r}")
        try:
            n = int(v)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid reminder offset: {v!r}")
        if isinstance(v, float) and n != v:
            raise ValueError(f"Reminder offsets must be whole days: {v!r}")
        if n < 0:
            raise ValueError(f"Reminder offsets must be non-negative: {v!r}")
        out.add(n)
    return sorted(out, reverse=True)
