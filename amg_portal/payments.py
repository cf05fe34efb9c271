"""
Payments: HOLO mobile-money initialisation, HOLO notifications and the
patient's payment history from AMG.

In test mode no gateway is contacted: the client is sent straight to the
success page. In production mode the client receives the gateway URL and
the form parameters to POST there.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

from amg_portal.amg_client import AmgClient
from amg_portal.config import Settings
from amg_portal.coverage import parse_timestamp
from amg_portal.errors import ConfigurationError, ValidationError
from amg_portal.fhir import PaymentNotice, PaymentReconciliation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# HOLO initialisation
# ---------------------------------------------------------------------------


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def init_payment(body: Any, settings: Settings) -> dict:
    body = body if isinstance(body, dict) else {}
    insurance_number = body.get("insuranceNumber")
    amount = _amount(body.get("amount"))
    operator = str(body.get("operator") or "holo").lower()

    if not insurance_number or not isinstance(insurance_number, str):
        raise ValidationError(error="insuranceNumber is required")
    if amount <= 0:
        raise ValidationError(error="amount must be > 0")

    mode = (settings.holo_mode or "test").lower()
    frontend = settings.frontend_base_url.rstrip("/")

    if mode != "production":
        redirect_url = (
            f"{frontend}/payment-result?status=success"
            f"&operator={quote(operator, safe='')}&ref={quote(insurance_number, safe='')}"
        )
        logger.info(
            "[holo-init-payment] [test] Simulating payment: insurance=%s amount=%s operator=%s",
            insurance_number, amount, operator,
        )
        return {"success": True, "testMode": True, "redirectUrl": redirect_url}

    if not settings.holo_payment_url or not settings.holo_merchant_id:
        raise ConfigurationError(
            error="HOLO payment not configured (HOLO_PAYMENT_URL, HOLO_MERCHANT_ID)"
        )

    payment_params = {
        "merchantId": settings.holo_merchant_id,
        "amount": amount,
        "reference": insurance_number,
        "currency": settings.holo_currency,
        "callbackUrl": f"{frontend}/payment-result?operator={quote(operator, safe='')}",
        "operator": operator,
    }
    logger.info("[holo-init-payment] [prod] Returning payment form params for HOLO gateway")
    return {"success": True, "paymentUrl": settings.holo_payment_url, "paymentParams": payment_params}


# ---------------------------------------------------------------------------
# HOLO notification callback
# ---------------------------------------------------------------------------


def handle_notification(params: dict) -> bool:
    """Log a HOLO callback. Returns True when the gateway reports success."""
    purchase_ref = params.get("purchaseref")
    logger.info(
        "HOLO notification received: purchaseref=%s amount=%s currency=%s status=%s clientid=%s",
        purchase_ref, params.get("amount"), params.get("currency"),
        params.get("status"), params.get("clientid"),
    )
    if params.get("status") == "OK":
        logger.info("Payment successful for reference: %s", purchase_ref)
        return True
    logger.info("Payment failed/cancelled for reference: %s", purchase_ref)
    return False


# ---------------------------------------------------------------------------
# Payment history
# ---------------------------------------------------------------------------


def _reconciliation_entry(payment: PaymentReconciliation) -> dict:
    detail_amount = payment.detail[0].amount if payment.detail else None
    money = payment.payment_amount or detail_amount
    return {
        "id": payment.id,
        "type": "reconciliation",
        "status": payment.status or "unknown",
        "amount": (money.value if money and money.value is not None else 0),
        "currency": (money.currency if money and money.currency else "KMF"),
        "date": payment.created or (payment.period.start if payment.period else None),
        "paymentIdentifier": payment.payment_identifier.value if payment.payment_identifier else None,
        "description": payment.disposition or "Payment reconciliation",
        "raw": payment.raw(),
    }


def _notice_entry(payment: PaymentNotice) -> dict:
    coding = payment.payment_status.coding if payment.payment_status else []
    return {
        "id": payment.id,
        "type": "notice",
        "status": payment.status or "unknown",
        "amount": payment.amount.value if payment.amount and payment.amount.value is not None else 0,
        "currency": payment.amount.currency if payment.amount and payment.amount.currency else "KMF",
        "date": payment.created or (payment.payment.date if payment.payment else None),
        "paymentIdentifier": coding[0].display if coding else None,
        "description": "Payment notice",
        "raw": payment.raw(),
    }


def sort_payments(payments: list[dict]) -> list[dict]:
    """Most recent first; undated or unparseable dates go last."""
    dated = [(parse_timestamp(p.get("date")), p) for p in payments]
    with_date = sorted((d for d in dated if d[0] is not None), key=lambda d: d[0], reverse=True)
    return [p for _, p in with_date] + [p for when, p in dated if when is None]


async def get_payment_history(insurance_number: str, client: AmgClient) -> dict:
    await client.login()
    logger.info("Fetching payment history for patient: %s", insurance_number)

    reconciliations = await client.get_payment_reconciliations(insurance_number)
    notices = await client.get_payment_notices(insurance_number)

    payments: list[dict] = []
    if reconciliations is not None:
        payments.extend(_reconciliation_entry(p) for p in reconciliations.resources(PaymentReconciliation))
    if notices is not None:
        payments.extend(_notice_entry(p) for p in notices.resources(PaymentNotice))

    payments = sort_payments(payments)
    logger.info("Total payments found: %d", len(payments))
    return {
        "success": True,
        "payments": payments,
        "paymentReconciliations": _raw(reconciliations),
        "paymentNotices": _raw(notices),
    }


def _raw(bundle) -> Optional[dict]:
    return bundle.raw() if bundle is not None else None
