"""
Insurance verification: the orchestration behind /api/auth/verify-insurance.

Flow: login → Patient (identifier search, then direct id, then the GraphQL
insuree record) → Coverage → Group/familyUuid → policy resolution →
Invoices → environment guard → one aggregate payload for the client.
Only login and the patient lookups can fail the request; every other
upstream read degrades the data instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from amg_portal.amg_client import AmgClient
from amg_portal.contract_store import ContractStore
from amg_portal.coverage import (
    CoverageResolver,
    PolicyDates,
    Resolution,
    decide,
    decide_coverage,
)
from amg_portal.env_guard import GuardConfig, is_env_allowed
from amg_portal.errors import NotFound, UpstreamUnavailable, ValidationError
from amg_portal.fhir import Bundle, Coverage, InsureeNode, Patient
from amg_portal.invoices import total_unpaid_from_bundle

logger = logging.getLogger(__name__)


def require_insurance_number(body: Any) -> str:
    number = body.get("insuranceNumber") if isinstance(body, dict) else None
    if not number or not isinstance(number, str):
        raise ValidationError(error="Insurance number is required")
    return number


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def find_patient(client: AmgClient, insurance_number: str) -> Patient:
    """
    Identifier search first, then a direct ``Patient/{id}`` read.

    Raises ``UpstreamUnavailable`` when the direct read fails and
    ``NotFound`` when it answers with something that is not a Patient.
    """
    try:
        patient = await client.search_patient_by_identifier(insurance_number)
    except UpstreamUnavailable as exc:
        logger.warning("Patient search by identifier failed: %s", exc)
        patient = None
    if patient is not None:
        return patient

    logger.info("No patient for identifier %s, trying direct Patient/{id} lookup", insurance_number)
    patient = await client.get_patient_by_id(insurance_number)
    if patient is None:
        raise NotFound(f"Resource returned for id={insurance_number} is not a Patient")
    return patient


async def find_insuree(client: AmgClient, insurance_number: str) -> Optional[InsureeNode]:
    try:
        return await client.get_insuree_inquire(insurance_number)
    except UpstreamUnavailable as exc:
        logger.warning("GraphQL insurees lookup failed: %s", exc)
        return None


async def resolve_family_uuid(
    client: AmgClient,
    group_id: Optional[str],
    fallback_to_group_id: bool = False,
) -> Optional[str]:
    if not group_id:
        return None
    group = await client.get_group(group_id)
    if group is not None:
        return group.family_uuid()
    return group_id if fallback_to_group_id else None


def _plan_name(coverage: Optional[Bundle]) -> str:
    resource = coverage.first(Coverage) if coverage is not None else None
    return resource.plan_name if resource else ""


def _payload(
    *,
    resolution: Resolution,
    decision,
    full_name: str,
    patient: Optional[Patient] = None,
    coverage: Optional[Bundle] = None,
    invoices: Optional[Bundle] = None,
    total_unpaid_amount: float = 0.0,
    group_id: Optional[str] = None,
    family_uuid: Optional[str] = None,
) -> dict:
    policy = resolution.policy
    return {
        "exists": True,
        "patientData": patient.raw() if patient else None,
        "coverageData": coverage.raw() if coverage else None,
        "contractData": resolution.contract_data,
        "invoicesData": invoices.raw() if invoices else None,
        "totalUnpaidAmount": total_unpaid_amount,
        "fullName": full_name,
        "coverageStatus": decision.coverage_status,
        "coverageReason": decision.coverage_reason,
        "policyStatus": decision.policy_status,
        "policyDates": decision.policy_dates.to_dict(),
        "policyData": policy.data if policy else None,
        "policyErrorText": resolution.policy_error_text,
        "groupId": group_id,
        "familyUuidUsed": family_uuid,
        "groupStatus": resolution.group_status,
        "groupReason": resolution.group_reason,
        "groupProductName": policy.product_name if policy else None,
        "groupProductCode": policy.product_code if policy else None,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


async def verify_insurance(
    insurance_number: str,
    client: AmgClient,
    guard: GuardConfig,
    contract_store: Optional[ContractStore] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    logger.info("[verify-insurance] Start, insuranceNumber=%s", insurance_number)

    await client.login()
    resolver = CoverageResolver(client, contract_store)

    try:
        patient = await find_patient(client, insurance_number)
    except NotFound as exc:
        logger.warning("[verify-insurance] %s", exc)
        return {"exists": False}
    except UpstreamUnavailable as exc:
        if not exc.is_missing_resource():
            raise
        logger.info("[verify-insurance] Patient %s missing upstream, trying GraphQL insurees", insurance_number)
        insuree = await find_insuree(client, insurance_number)
        if insuree is None:
            return {"exists": False, "details": exc.body or None}
        return _verify_from_insuree(insuree, resolver, guard, now)

    logger.info("[verify-insurance] Patient OK id=%s", patient.id)

    coverage = await client.get_coverage(patient.id) if patient.id else None
    group_id = patient.group_reference_id()
    family_uuid = await resolve_family_uuid(client, group_id)

    resolution = await resolver.resolve(
        patient,
        coverage=coverage,
        group_id=group_id,
        family_uuid=family_uuid,
        now=now,
    )

    invoices = await client.get_invoices(patient.id) if patient.id else None
    total = total_unpaid_from_bundle(invoices)

    policy = resolution.policy
    env_allowed = is_env_allowed(
        guard,
        policy.product_name if policy else "",
        policy.product_code if policy else "",
        _plan_name(coverage) or (policy.plan_name if policy else ""),
    )
    decision = decide_coverage(policy, now, env_allowed, group_resolved=bool(group_id))

    logger.info(
        "[verify-insurance] Success for %s coverageStatus=%s reason=%s",
        insurance_number, decision.coverage_status, decision.coverage_reason,
    )
    return _payload(
        resolution=resolution,
        decision=decision,
        full_name=patient.full_name,
        patient=patient,
        coverage=coverage,
        invoices=invoices,
        total_unpaid_amount=total,
        group_id=group_id,
        family_uuid=family_uuid,
    )


def _verify_from_insuree(
    insuree: InsureeNode,
    resolver: CoverageResolver,
    guard: GuardConfig,
    now: datetime,
) -> dict:
    # The person exists even when no policy or product comes back, so the
    # answer is exists=true with a coverage status that says so.
    resolution = resolver.resolve_insuree(insuree, now)
    policy = resolution.policy
    env_allowed = is_env_allowed(
        guard,
        policy.product_name if policy else "",
        policy.product_code if policy else "",
        "",
    )
    decision = decide_coverage(policy, now, env_allowed)
    logger.info(
        "[verify-insurance] GraphQL fallback success for %s coverageStatus=%s",
        insuree.chf_id, decision.coverage_status,
    )
    return _payload(resolution=resolution, decision=decision, full_name=insuree.full_name)


async def get_policy_status(
    insurance_number: str,
    client: AmgClient,
    contract_store: Optional[ContractStore] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Policy facts for a patient id, without the environment guard.

    Only the direct ``Patient/{id}`` read is tried; a 404 means the patient
    does not exist.
    """
    now = now or datetime.now(timezone.utc)
    await client.login()

    try:
        patient = await client.get_patient_by_id(insurance_number)
    except UpstreamUnavailable as exc:
        if exc.status == 404:
            return {"exists": False}
        raise
    if patient is None:
        return {"exists": False}

    group_id = patient.group_reference_id()
    family_uuid = await resolve_family_uuid(client, group_id, fallback_to_group_id=True)
    resolution = await CoverageResolver(client, contract_store).resolve(
        patient, group_id=group_id, family_uuid=family_uuid, now=now
    )

    policy = resolution.policy
    if policy is not None:
        status, reason = decide(policy.status, policy.dates, now, policy.reason_prefix)
    else:
        status, reason = "unknown", "unknown"

    return {
        "exists": True,
        "fullName": patient.full_name,
        "patientId": patient.id,
        "groupId": patient.group_identifier(),
        "familyUuidUsed": family_uuid,
        "groupReference": patient.group_reference(),
        "groupIdentifier": patient.group_identifier(),
        "policyStatus": policy.status if policy else None,
        "policyDates": (policy.dates if policy else PolicyDates()).to_dict(),
        "policyData": policy.data if policy else None,
        "coverageStatusGraphQL": status,
        "coverageReasonGraphQL": reason,
        "policyErrorText": resolution.policy_error_text,
    }
