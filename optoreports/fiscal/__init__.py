"""
OptoReports — Fiscal Calendar

Fiscal year runs April → March and is labelled by the calendar year it starts
in. Reports carry the calendar year of the month they describe, so
January–March 2025 belong to fiscal year 2024.

Month labels arrive as "April", "apr", "Sept", "4", "04"... canonical_month()
maps them onto FY_MONTHS and hands back anything unrecognised unchanged.
"""
import re
from typing import Optional

from optoreports.config import FY_MONTHS, FY_TRAILING_MONTHS
from optoreports.answers import number_from_any

MONTH_INDEX = {m: i for i, m in enumerate(FY_MONTHS)}

# Unknown labels sort after March
UNKNOWN_MONTH_ORDER = len(FY_MONTHS)

_NUMERAL = re.compile(r"^\d{1,2}$")


def clean(s) -> str:
    """Trim and collapse internal whitespace."""
    return re.sub(r"\s+", " ", str(s or "").strip())


def _fiscal_index(label) -> Optional[int]:
    s = clean(label).lower()
    if not s:
        return None
    for i, m in enumerate(FY_MONTHS):
        if m.lower() == s or m.lower().startswith(s):
            return i
    if _NUMERAL.match(s):
        n = int(s)
        if 1 <= n <= 12:
            return (n + 8) % 12  # calendar April(4) → 0 ... March(3) → 11
    return None


def canonical_month(label):
    """'apr' / '4' / 'April ' → 'April'. Unrecognised labels come back as given."""
    if not clean(label):
        return ""
    idx = _fiscal_index(label)
    return FY_MONTHS[idx] if idx is not None else label


def month_index(label) -> Optional[int]:
    return _fiscal_index(label)


def fiscal_year_start(year, month) -> int:
    y = int(number_from_any(year))
    return y - 1 if canonical_month(month) in FY_TRAILING_MONTHS else y


def is_on_or_before(month_a, year_a, month_b, year_b) -> bool:
    """True if (month_a, year_a) falls on or before (month_b, year_b) in fiscal order."""
    fy_a = fiscal_year_start(year_a, month_a)
    fy_b = fiscal_year_start(year_b, month_b)
    if fy_a != fy_b:
        return fy_a < fy_b
    idx_a = month_index(month_a)
    idx_b = month_index(month_b)
    idx_a = UNKNOWN_MONTH_ORDER if idx_a is None else idx_a
    idx_b = UNKNOWN_MONTH_ORDER if idx_b is None else idx_b
    return idx_a <= idx_b


def report_sort_key(doc: dict):
    """Newest year first, then fiscal month order, then institution name."""
    idx = month_index(doc.get("month"))
    return (
        -int(number_from_any(doc.get("year"))),
        UNKNOWN_MONTH_ORDER if idx is None else idx,
        (doc.get("institution") or "").lower(),
    )
