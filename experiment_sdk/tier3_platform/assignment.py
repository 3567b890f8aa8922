"""
experiment_sdk.tier3_platform.assignment
─────────────────────────────────────────
Deterministic bucketing: (subject_id, salt) -> integer in [0, 99].

The hash is part of the external contract, not an implementation detail:
other services (including JavaScript clients) must land every subject in
the same bucket. It is the 32-bit polynomial rolling hash
``h = h * 31 + code_unit`` over the UTF-16 code units of
``"{salt}:{subject_id}"``, wrapped to a signed 32-bit integer, then
``abs(h) % 100``.

No state, no I/O. Safe to call from any number of threads.
"""
from __future__ import annotations

from experiment_sdk.tier0_core.errors import ValidationError

BUCKETS = 100

_MASK = 0xFFFFFFFF


def _utf16_units(text: str) -> list[int]:
    raw = text.encode("utf-16-le")
    return [int.from_bytes(raw[i:i + 2], "little") for i in range(0, len(raw), 2)]


def rolling_hash(text: str) -> int:
    """Signed 32-bit ``h = h * 31 + c`` hash, matching JavaScript charCodeAt."""
    h = 0
    for unit in _utf16_units(text):
        h = (h * 31 + unit) & _MASK
    return h - (1 << 32) if h & 0x80000000 else h


def require_subject(subject_id: object) -> str:
    if not isinstance(subject_id, str) or not subject_id:
        raise ValidationError(
            user_message="Subject identifier must be a non-empty string.",
            fields={"subjectId": "required"},
        )
    return subject_id


def bucket(subject_id: str, salt: str) -> int:
    """
    Map a subject to a stable bucket in [0, 99] for the given salt
    (experiment key, feature key or allocation seed).
    """
    require_subject(subject_id)
    return abs(rolling_hash(f"{salt}:{subject_id}")) % BUCKETS


__all__ = ["bucket", "rolling_hash", "require_subject", "BUCKETS"]
