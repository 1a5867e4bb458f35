"""
OptoReports — Report Assembly

Builds the document that gets stored for one (district, institution, month,
year) submission:

  1. identity   — cleaned, month canonicalized, all four fields required
  2. answers    — replace, or merge over the stored vector (see resolve_answers)
  3. cumulative — client-supplied, else fiscal-year-to-date from history
  4. attachments (eyeBank / visionCenter) passed through as lists

Merge rules:
  - merge requested (?merge=1 or body.merge=true) → only supplied slots change
  - no answers sent and a stored vector exists     → merge automatically, so an
    attachments-only update never zeroes recorded answers
  - otherwise                                       → full replace, omitted slots 0

Saves for the same identity key are serialized in-process by KeyedLock.
"""
import json
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Optional

from optoreports.config import DEBUG_API, DOCTOR_ACCOUNT_PREFIXES
from optoreports.answers import (
    coerce_vector, is_nonempty_payload, nonzero_keys, normalize, normalize_answers,
    payload_from_raw,
)
from optoreports.aggregation import compute_cumulative
from optoreports.fiscal import canonical_month, clean, report_sort_key
from optoreports.db import ReportStore, UpsertResult, parse_report_id, report_id

logger = logging.getLogger(__name__)


class IdentityError(ValueError):
    """district / institution / month / year missing from a request."""


# ============================================================
# IDENTITY
# ============================================================
@dataclass(frozen=True)
class ReportKey:
    district: str
    institution: str
    month: str
    year: str

    @classmethod
    def from_mapping(cls, data) -> "ReportKey":
        data = data or {}
        district = clean(data.get("district"))
        institution = clean(data.get("institution"))
        month = canonical_month(clean(data.get("month")))
        year = clean(data.get("year"))
        if not (district and institution and month and year):
            raise IdentityError("district, institution, month, year are required")
        return cls(district=district, institution=institution, month=month, year=year)

    def get(self, field, default=None):
        return getattr(self, field, default)

    def as_dict(self) -> dict:
        return asdict(self)


def normalize_filters(filters: Optional[dict]) -> dict:
    """Listing filters: cleaned, month canonicalized, blanks dropped."""
    out = {}
    for f in ("district", "institution", "month", "year"):
        v = clean((filters or {}).get(f))
        if not v:
            continue
        out[f] = canonical_month(v) if f == "month" else v
    return out


# ============================================================
# REQUEST HELPERS
# ============================================================
def merge_flag(query_value=None, body_value=None) -> bool:
    return str(query_value or "").strip().lower() in ("1", "true") or body_value is True


def parse_maybe_json(value):
    """Form posts send nested fields as JSON strings; decode those, keep the rest."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def as_list(value) -> list:
    value = parse_maybe_json(value)
    return value if isinstance(value, list) else []


# ============================================================
# MERGE-SAFE ANSWERS
# ============================================================
def resolve_answers(existing: Optional[dict], incoming_raw, merge_requested: bool = False) -> dict:
    """Final 84-slot answers for a save, given the stored report (if any)."""
    incoming = normalize(payload_from_raw(incoming_raw))
    has_incoming = is_nonempty_payload(incoming_raw)
    existing_answers = (existing or {}).get("answers")

    merge = merge_requested or (not has_incoming and bool(existing_answers))
    if merge and existing is not None:
        out = coerce_vector(existing_answers or {})
        for slot in incoming.present:
            out[slot] = incoming.values[slot]
        return out
    return dict(incoming.values)


# ============================================================
# PER-KEY SERIALIZATION
# ============================================================
class KeyedLock:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._waiters = defaultdict(int)

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self):
        return len(self._locks)


# ============================================================
# SERVICE
# ============================================================
class ReportService:
    def __init__(self, store: ReportStore, debug: bool = DEBUG_API):
        self.store = store
        self.debug = debug
        self.locks = KeyedLock()

    def history(self, key: ReportKey) -> list:
        """Every stored report for the key's district + institution."""
        return self.store.list_reports({"district": key.district, "institution": key.institution})

    def build_report(self, key: ReportKey, body: dict, merge: bool = False,
                     existing: Optional[dict] = None) -> dict:
        """Resolve answers and cumulative for a submission. Nothing is written."""
        body = body or {}
        if existing is None:
            existing = self.store.get_report(key)

        incoming_raw = parse_maybe_json(body.get("answers"))
        answers = resolve_answers(existing, incoming_raw, merge)
        if self.debug:
            logger.info("[Reports] recognized non-zero: %s",
                        ", ".join(nonzero_keys(answers)) or "(none)")

        cumulative_raw = parse_maybe_json(body.get("cumulative"))
        if is_nonempty_payload(cumulative_raw):
            cumulative = normalize_answers(cumulative_raw)
        else:
            cumulative = compute_cumulative(self.history(key), key.month, key.year, answers)

        return {
            **key.as_dict(),
            "answers": answers,
            "cumulative": cumulative,
            "eyeBank": as_list(body.get("eyeBank")),
            "visionCenter": as_list(body.get("visionCenter")),
        }

    def preview(self, key: ReportKey, body: dict, merge: bool = False) -> dict:
        existing = self.store.get_report(key)
        doc = self.build_report(key, body, merge, existing=existing)
        return {
            "preview": {"answers": doc["answers"], "cumulative": doc["cumulative"]},
            "existingId": report_id(existing) if existing else None,
        }

    def save_report(self, key: ReportKey, body: dict, merge: bool = False) -> UpsertResult:
        with self.locks.hold(key):
            doc = self.build_report(key, body, merge)
            result = self.store.upsert_report(key, doc)
        logger.info("[Reports] saved %s / %s %s %s (merge=%s)",
                    key.institution, key.district, key.month, key.year, merge)
        return result

    def get_report(self, key: ReportKey) -> Optional[dict]:
        return self.store.get_report(key)

    def get_by_id(self, rid: str) -> Optional[dict]:
        try:
            key = ReportKey.from_mapping(parse_report_id(rid))
        except IdentityError:
            return None
        return self.store.get_report(key)

    def list_reports(self, filters: Optional[dict] = None) -> list:
        docs = self.store.list_reports(normalize_filters(filters))
        docs.sort(key=report_sort_key)
        return [{**d, "_id": report_id(d)} for d in docs]

    def institutions(self, district: Optional[str] = None) -> list:
        filters = normalize_filters({"district": district})
        names = {d.get("institution") for d in self.store.list_reports(filters)}
        return sorted((n for n in names
                       if n and not n.upper().startswith(DOCTOR_ACCOUNT_PREFIXES)),
                      key=str.lower)
