"""
OptoReports — Fiscal-Year Cumulative Aggregation

cumulative(target) = Σ answers of earlier months in the same fiscal year
                     + the target's own (already resolved) answers

The stored record for the target month itself is skipped so a resave does not
double count. Cumulatives are computed at write time only: editing an earlier
month does NOT refresh the cumulative stored on later months of that fiscal
year until those months are saved again.
"""
import logging
from typing import Dict, Iterable

import numpy as np

from optoreports.config import KEY_COUNT
from optoreports.answers import ANSWER_KEYS, coerce_vector
from optoreports.fiscal import canonical_month, fiscal_year_start, is_on_or_before

logger = logging.getLogger(__name__)


def to_array(vector) -> np.ndarray:
    """Keyed (q1..q84) or positional vector → float64 array of length 84."""
    c = coerce_vector(vector)
    return np.array([c[k] for k in ANSWER_KEYS], dtype=float)


def from_array(arr: np.ndarray) -> Dict[str, float]:
    return {k: float(arr[i]) for i, k in enumerate(ANSWER_KEYS)}


def is_same_month(month_a, year_a, month_b, year_b) -> bool:
    return (str(year_a).strip() == str(year_b).strip()
            and canonical_month(month_a) == canonical_month(month_b))


def contributing_reports(prior_reports: Iterable[dict], target_month, target_year) -> list:
    """Reports from the target's fiscal year that fall strictly before it."""
    fy = fiscal_year_start(target_year, target_month)
    out = []
    for r in prior_reports:
        r_month = str(r.get("month") or "")
        r_year = str(r.get("year") or "")
        if not r_month or not r_year:
            continue
        if is_same_month(r_month, r_year, target_month, target_year):
            continue
        if (fiscal_year_start(r_year, r_month) == fy
                and is_on_or_before(r_month, r_year, target_month, target_year)):
            out.append(r)
    return out


def compute_cumulative(prior_reports: Iterable[dict], target_month, target_year,
                       target_answers) -> Dict[str, float]:
    """Fiscal-year-to-date totals for the target month, inclusive."""
    total = np.zeros(KEY_COUNT, dtype=float)
    used = contributing_reports(prior_reports, target_month, target_year)
    with np.errstate(over="ignore", invalid="ignore"):
        for r in used:
            total += to_array(r.get("answers"))
        total += to_array(target_answers)
    # overflowed slots saturate at the largest finite float
    total = np.nan_to_num(total, nan=0.0)
    logger.debug("[Cumulative] %s %s: %d prior month(s) summed",
                 target_month, target_year, len(used))
    return from_array(total)
