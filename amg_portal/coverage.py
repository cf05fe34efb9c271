"""
Coverage resolution.

A verification asks several upstream sources for the insured person's
policy, in strict priority order, and keeps the first one that answers:

  1. GraphQL ``policiesByFamily`` for the resolved familyUuid
  2. GraphQL ``insurees`` (only when no FHIR Patient could be fetched)
  3. the first FHIR Coverage of the patient, which also supplies status
     and dates to a family policy that came back with neither
  4. the locally cached Contract rows for the patient's group

Whatever the source, the same decision table turns (status, dates, now)
into a coverage status. Only the reason-code prefix tells the sources
apart, so the logs show which rule fired on which data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from amg_portal.errors import UpstreamUnavailable
from amg_portal.fhir import (
    Bundle,
    Contract,
    Coverage,
    FamilyPolicyNode,
    InsureeNode,
    Patient,
)
from amg_portal.status import (
    IN_FORCE_STATUSES,
    PENDING_STATUSES,
    TERMINATED_STATUSES,
    PolicyStatus,
    normalize_policy_status,
)

logger = logging.getLogger(__name__)

ACTIVE = "active"
PENDING = "pending"
INACTIVE = "inactive"
UNKNOWN = "unknown"

NO_GROUP_POLICY = "no_group_policy"
NO_AMG_COVERAGE = "no_amg_coverage"


class PolicySource(str, Enum):
    GRAPHQL_FAMILY_POLICY = "graphql_family_policy"
    GRAPHQL_INSUREE = "graphql_insuree"
    FHIR_COVERAGE = "fhir_coverage"
    CACHED_CONTRACT = "cached_contract"


REASON_PREFIXES = {
    PolicySource.GRAPHQL_FAMILY_POLICY: "graphql_",
    PolicySource.GRAPHQL_INSUREE: "graphql_fallback_",
    PolicySource.FHIR_COVERAGE: "fallback_",
    PolicySource.CACHED_CONTRACT: "cached_contract_",
}

GROUP_REASON_PREFIXES = {
    PolicySource.GRAPHQL_FAMILY_POLICY: "group_",
    PolicySource.GRAPHQL_INSUREE: "fallback_group_",
}


# ---------------------------------------------------------------------------
# Canonical policy model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyDates:
    start_date: Optional[str] = None
    effective_date: Optional[str] = None
    expiry_date: Optional[str] = None

    @property
    def start(self) -> Optional[str]:
        return self.start_date or self.effective_date

    @property
    def is_empty(self) -> bool:
        return not (self.start_date or self.effective_date or self.expiry_date)

    def to_dict(self) -> dict:
        return {
            "startDate": self.start_date,
            "effectiveDate": self.effective_date,
            "expiryDate": self.expiry_date,
        }


@dataclass(frozen=True)
class Policy:
    source: PolicySource
    status: Optional[str] = None
    dates: PolicyDates = field(default_factory=PolicyDates)
    value: Optional[float] = None
    product_name: Optional[str] = None
    product_code: Optional[str] = None
    plan_name: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def reason_prefix(self) -> str:
        return REASON_PREFIXES[self.source]


@dataclass(frozen=True)
class CoverageDecision:
    coverage_status: str
    coverage_reason: str
    policy_status: Optional[str] = None
    policy_dates: PolicyDates = field(default_factory=PolicyDates)


# ---------------------------------------------------------------------------
# Decision table
# ---------------------------------------------------------------------------


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime. Naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable policy date %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def in_window(dates: PolicyDates, now: datetime) -> bool:
    start = parse_timestamp(dates.start)
    end = parse_timestamp(dates.expiry_date)
    if start is None or end is None:
        return False
    return start <= now <= end


def decide(
    status: Optional[str],
    dates: PolicyDates,
    now: datetime,
    prefix: str = "",
    policy_present: bool = True,
) -> tuple[str, str]:
    """Return ``(coverage_status, reason)`` for one policy. Pure."""
    if status in PENDING_STATUSES:
        return PENDING, f"{prefix}pending_status"
    if status in TERMINATED_STATUSES:
        return INACTIVE, f"{prefix}inactive_status"
    if not in_window(dates, now):
        return INACTIVE, f"{prefix}out_of_window"
    if status == PolicyStatus.ACTIVE.value:
        return ACTIVE, f"{prefix}active_in_window"
    if status == PolicyStatus.DRAFT.value:
        return ACTIVE, f"{prefix}draft_in_window"
    if status is None and policy_present:
        return ACTIVE, f"{prefix}policy_in_window"
    return UNKNOWN, f"{prefix}unknown"


def decide_coverage(
    policy: Optional[Policy],
    now: datetime,
    env_allowed: bool,
    group_resolved: bool = True,
) -> CoverageDecision:
    """
    Final coverage for a verification.

    No policy at all forces ``inactive`` (``no_group_policy``, or ``unknown``
    when not even a group could be resolved). A policy whose product fails
    the environment guard is ``inactive`` / ``no_amg_coverage`` whatever the
    table says.
    """
    if policy is None:
        reason = NO_GROUP_POLICY if group_resolved else UNKNOWN
        return CoverageDecision(INACTIVE, reason)
    status, reason = decide(policy.status, policy.dates, now, policy.reason_prefix)
    if not env_allowed:
        status, reason = INACTIVE, NO_AMG_COVERAGE
    return CoverageDecision(status, reason, policy.status, policy.dates)


def decide_group_status(
    policy: Optional[Policy],
    now: datetime,
    family_resolved: bool,
    upstream_failed: bool = False,
) -> tuple[str, Optional[str]]:
    """
    Status of the family/group itself, shown next to the personal coverage.

    Stays ``unknown`` when the family lookup itself failed upstream, so an
    outage is not reported as a family without a policy.
    """
    if not family_resolved or upstream_failed:
        return UNKNOWN, None
    if policy is None or policy.source not in GROUP_REASON_PREFIXES:
        return INACTIVE, NO_GROUP_POLICY
    status, reason = decide(
        policy.status, policy.dates, now, GROUP_REASON_PREFIXES[policy.source]
    )
    if status == UNKNOWN:
        status = INACTIVE
    return status, reason


# ---------------------------------------------------------------------------
# Source adapters
# ---------------------------------------------------------------------------


@dataclass
class SourceResult:
    source: PolicySource
    policy: Optional[Policy] = None
    error: Optional[str] = None
    # True when the upstream call failed, as opposed to answering with nothing.
    upstream_failed: bool = False

    @property
    def found(self) -> bool:
        return self.policy is not None


def policy_from_family_node(node: FamilyPolicyNode) -> Policy:
    return Policy(
        source=PolicySource.GRAPHQL_FAMILY_POLICY,
        status=normalize_policy_status(node.status),
        dates=PolicyDates(
            start_date=node.start_date or None,
            effective_date=node.effective_date or None,
            expiry_date=node.expiry_date or None,
        ),
        value=node.policy_value,
        product_name=node.product_name,
        product_code=node.product_code,
        data=node.raw(),
    )


def policy_from_insuree(insuree: InsureeNode) -> Optional[Policy]:
    policy = insuree.first_policy()
    if policy is None:
        return None
    enroll = policy.enroll_date or None
    product = policy.product
    return Policy(
        source=PolicySource.GRAPHQL_INSUREE,
        status=normalize_policy_status(policy.status),
        dates=PolicyDates(start_date=enroll, effective_date=enroll, expiry_date=policy.expiry_date or None),
        value=policy.value,
        product_name=product.name if product else None,
        product_code=product.code if product else None,
        data=policy.raw(),
    )


def policy_from_coverage(coverage: Coverage) -> Policy:
    period = coverage.period
    start = period.start if period else None
    return Policy(
        source=PolicySource.FHIR_COVERAGE,
        status=normalize_policy_status(coverage.status),
        dates=PolicyDates(start_date=start, effective_date=start, expiry_date=period.end if period else None),
        plan_name=coverage.plan_name,
        data=coverage.raw(),
    )


def policy_from_contract(contract: Contract, now: datetime) -> Policy:
    period = contract.period()
    dates = PolicyDates(
        start_date=period.start if period else None,
        effective_date=period.start if period else None,
        expiry_date=period.end if period else None,
    )
    # Without a premium receipt a contract is only awaiting payment while
    # its period runs; after that it has lapsed unpaid.
    if contract.has_payment():
        status = PolicyStatus.ACTIVE
    elif in_window(dates, now):
        status = PolicyStatus.PENDING
    else:
        status = PolicyStatus.EXPIRED
    product = contract.product()
    product_code = None
    if product is not None:
        if product.identifier and product.identifier.value:
            product_code = product.identifier.value
        elif product.reference:
            product_code = product.reference.rsplit("/", 1)[-1]
    return Policy(
        source=PolicySource.CACHED_CONTRACT,
        status=status.value,
        dates=dates,
        product_name=product.display if product else None,
        product_code=product_code,
        data=contract.raw(),
    )


def with_coverage_terms(policy: Policy, coverage: Policy) -> Policy:
    """Family policy with the status, dates and plan of a FHIR Coverage."""
    return replace(
        policy,
        source=PolicySource.FHIR_COVERAGE,
        status=coverage.status,
        dates=coverage.dates,
        plan_name=coverage.plan_name,
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass
class Resolution:
    policy: Optional[Policy] = None
    attempts: list[SourceResult] = field(default_factory=list)
    group_status: str = UNKNOWN
    group_reason: Optional[str] = None

    @property
    def policy_error_text(self) -> Optional[str]:
        errors = [f"{a.source.value}: {a.error}" for a in self.attempts if a.error]
        return " | ".join(errors) or None

    @property
    def contract_data(self) -> dict:
        if self.policy and self.policy.source is PolicySource.CACHED_CONTRACT:
            return {"entry": [{"resource": self.policy.data}]}
        return {"entry": []}

    def record(self, result: SourceResult) -> Optional[Policy]:
        self.attempts.append(result)
        if result.error:
            logger.warning("Policy source %s errored: %s", result.source.value, result.error)
        elif not result.found:
            logger.info("Policy source %s returned nothing", result.source.value)
        if result.found and self.policy is None:
            self.policy = result.policy
        return result.policy


class CoverageResolver:
    """Runs the policy sources in priority order for one verification."""

    def __init__(self, client, contract_store=None):
        self.client = client
        self.contract_store = contract_store

    async def family_policy(self, family_uuid: str) -> SourceResult:
        source = PolicySource.GRAPHQL_FAMILY_POLICY
        try:
            node = await self.client.get_policies_by_family(family_uuid)
        except UpstreamUnavailable as exc:
            return SourceResult(source, error=str(exc), upstream_failed=True)
        if node is None:
            return SourceResult(source, error=f"No policy found for familyUuid {family_uuid}")
        return SourceResult(source, policy_from_family_node(node))

    async def fhir_coverage(self, patient: Patient, coverage: Optional[Bundle]) -> SourceResult:
        source = PolicySource.FHIR_COVERAGE
        if coverage is None and patient.id:
            coverage = await self.client.get_coverage(patient.id)
        if coverage is None:
            return SourceResult(source, error="Coverage unavailable")
        resource = coverage.first(Coverage)
        if resource is None:
            return SourceResult(source)
        return SourceResult(source, policy_from_coverage(resource))

    def cached_contract(self, group_id: Optional[str], now: datetime) -> SourceResult:
        source = PolicySource.CACHED_CONTRACT
        if self.contract_store is None or not group_id:
            return SourceResult(source)
        row = self.contract_store.find_for_group(group_id, now)
        if row is None:
            return SourceResult(source)
        return SourceResult(source, policy_from_contract(row.contract, now))

    async def resolve(
        self,
        patient: Patient,
        *,
        coverage: Optional[Bundle] = None,
        group_id: Optional[str] = None,
        family_uuid: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Resolution:
        now = now or datetime.now(timezone.utc)
        resolution = Resolution()

        if family_uuid:
            family = await self.family_policy(family_uuid)
            resolution.record(family)
            resolution.group_status, resolution.group_reason = decide_group_status(
                family.policy, now, family_resolved=True, upstream_failed=family.upstream_failed
            )

        if resolution.policy is None:
            resolution.record(await self.fhir_coverage(patient, coverage))
        elif resolution.policy.status is None and resolution.policy.dates.is_empty:
            # A family policy with neither status nor dates takes both from
            # the patient's FHIR Coverage.
            overlay = resolution.record(await self.fhir_coverage(patient, coverage))
            if overlay is not None:
                resolution.policy = with_coverage_terms(resolution.policy, overlay)

        if resolution.policy is None:
            resolution.record(self.cached_contract(group_id, now))

        if resolution.policy:
            logger.info(
                "Policy resolved from %s: status=%s dates=%s product=%r/%r",
                resolution.policy.source.value,
                resolution.policy.status,
                resolution.policy.dates.to_dict(),
                resolution.policy.product_name,
                resolution.policy.product_code,
            )
        return resolution

    def resolve_insuree(self, insuree: InsureeNode, now: Optional[datetime] = None) -> Resolution:
        """Degraded path: no FHIR Patient, only the GraphQL insuree record."""
        now = now or datetime.now(timezone.utc)
        resolution = Resolution()
        policy = policy_from_insuree(insuree)
        resolution.record(SourceResult(PolicySource.GRAPHQL_INSUREE, policy))
        resolution.group_status, resolution.group_reason = decide_group_status(
            policy, now, family_resolved=policy is not None
        )
        return resolution
