"""
Policy status normalisation.

openIMIS reports a policy status as an integer code from GraphQL
(``policiesByFamily``, ``insurees``) and as free text from FHIR. Callers
hand either form to ``normalize_policy_status`` and match on the result.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class PolicyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DRAFT = "DRAFT"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    READY = "READY"
    PENDING = "PENDING"


STATUS_CODES = {
    1: PolicyStatus.ACTIVE.value,
    2: PolicyStatus.DRAFT.value,
    3: PolicyStatus.SUSPENDED.value,
    4: PolicyStatus.EXPIRED.value,
    5: PolicyStatus.CANCELLED.value,
}

IN_FORCE_STATUSES = frozenset({PolicyStatus.ACTIVE.value, PolicyStatus.DRAFT.value})
PENDING_STATUSES = frozenset({PolicyStatus.READY.value, PolicyStatus.PENDING.value})
TERMINATED_STATUSES = frozenset({
    PolicyStatus.EXPIRED.value,
    PolicyStatus.SUSPENDED.value,
    PolicyStatus.CANCELLED.value,
})


def normalize_policy_status(raw: Any) -> str | None:
    """
    Map a raw status to its canonical upper-case name.

    Strings are upper-cased verbatim, so unknown words like "ready" survive
    as "READY". Integers (or numeric values) go through ``STATUS_CODES``;
    anything unmapped yields None.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.upper()
    if isinstance(raw, bool):
        return None
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return None
    if not number.is_integer():
        return None
    return STATUS_CODES.get(int(number))
