"""
OptoReports — Answer Normalization

Turns whatever a client sends as "answers" into the canonical 84-slot vector
{q1..q84} of floats.

Accepted shapes:
  - [123, "45", "1,200", "N/A", ...]            → positional, first 84 used
  - {"q1": "123", "2": 45, "answer04": "10"}    → any key ending in 1–2 digits
  - anything else (None, strings, numbers)       → all zeros

Parsing is total: bad scalars become 0, unknown keys are dropped. Callers rely
on that, so nothing here raises.
"""
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Tuple, Union

from optoreports.config import KEY_COUNT, NA_TOKENS

ANSWER_KEYS = [f"q{i}" for i in range(1, KEY_COUNT + 1)]

_TRAILING_INDEX = re.compile(r"(\d{1,2})$")


def zero_vector() -> Dict[str, float]:
    return {k: 0.0 for k in ANSWER_KEYS}


# ============================================================
# VALUE COERCION
# ============================================================
def number_from_any(val) -> float:
    """Lenient numeric conversion: None/empty/NA tokens → 0, '1,200' → 1200.0."""
    if val is None:
        return 0.0
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        try:
            n = float(val)
        except OverflowError:
            return 0.0
        return n if math.isfinite(n) else 0.0
    s = str(val).strip()
    if not s or s.lower() in NA_TOKENS:
        return 0.0
    try:
        n = float(s.replace(",", ""))
    except ValueError:
        return 0.0
    return n if math.isfinite(n) else 0.0


# ============================================================
# PAYLOAD VARIANTS
# ============================================================
@dataclass(frozen=True)
class SequencePayload:
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class MappingPayload:
    entries: Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class AbsentPayload:
    pass


AnswerPayload = Union[SequencePayload, MappingPayload, AbsentPayload]


def payload_from_raw(raw) -> AnswerPayload:
    """Classify a decoded JSON value. The only place answer shapes are sniffed."""
    if isinstance(raw, (list, tuple)):
        return SequencePayload(tuple(raw))
    if isinstance(raw, dict):
        return MappingPayload(tuple((str(k), v) for k, v in raw.items()))
    return AbsentPayload()


# ============================================================
# NORMALIZER
# ============================================================
@dataclass(frozen=True)
class NormalizedAnswers:
    """Full 84-slot vector plus the slots the raw payload actually supplied."""
    values: Dict[str, float]
    present: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def supplied(self) -> bool:
        return bool(self.present)


def _slot_for_key(key: str):
    m = _TRAILING_INDEX.search(key)
    if not m:
        return None
    n = int(m.group(1))
    if 1 <= n <= KEY_COUNT:
        return f"q{n}"
    return None


def normalize(payload: AnswerPayload) -> NormalizedAnswers:
    out = zero_vector()
    present = set()

    if isinstance(payload, SequencePayload):
        for i, v in enumerate(payload.values[:KEY_COUNT]):
            out[ANSWER_KEYS[i]] = number_from_any(v)
            present.add(ANSWER_KEYS[i])
    elif isinstance(payload, MappingPayload):
        for k, v in payload.entries:
            slot = _slot_for_key(k)
            if slot is None:
                continue
            out[slot] = number_from_any(v)
            present.add(slot)
    elif isinstance(payload, AbsentPayload):
        pass
    else:
        raise TypeError(f"Unsupported answer payload: {type(payload).__name__}")

    return NormalizedAnswers(values=out, present=frozenset(present))


def normalize_answers(raw) -> Dict[str, float]:
    """Raw JSON value → 84-slot dict. Shortcut for normalize(payload_from_raw(raw)).values."""
    return normalize(payload_from_raw(raw)).values


def coerce_vector(src) -> Dict[str, float]:
    """Re-coerce an already keyed vector slot by slot (q1..q84 lookup, not suffix match)."""
    if isinstance(src, dict):
        return {k: number_from_any(src.get(k)) for k in ANSWER_KEYS}
    if isinstance(src, (list, tuple)):
        return normalize(SequencePayload(tuple(src))).values
    return zero_vector()


def nonzero_keys(vector: Dict[str, float]) -> List[str]:
    return [k for k, v in vector.items() if v != 0]


def is_nonempty_payload(raw) -> bool:
    """True when the client actually sent something to normalize."""
    return isinstance(raw, (list, tuple, dict)) and len(raw) > 0


__all__ = [
    "ANSWER_KEYS", "AbsentPayload", "AnswerPayload", "MappingPayload",
    "NormalizedAnswers", "SequencePayload", "coerce_vector",
    "is_nonempty_payload", "nonzero_keys", "normalize", "normalize_answers",
    "number_from_any", "payload_from_raw", "zero_vector",
]
