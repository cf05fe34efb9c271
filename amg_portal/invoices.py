"""Amount due from the patient's FHIR invoices."""

from __future__ import annotations

from typing import Iterable, Optional

from amg_portal.fhir import Bundle, Invoice


def total_unpaid(invoices: Iterable[Invoice]) -> float:
    """Sum ``totalNet ?? totalGross ?? 0`` over invoices not balanced or cancelled."""
    return sum((invoice.amount_due for invoice in invoices if invoice.is_open), 0.0)


def total_unpaid_from_bundle(bundle: Optional[Bundle]) -> float:
    if bundle is None:
        return 0.0
    return total_unpaid(bundle.resources(Invoice))
