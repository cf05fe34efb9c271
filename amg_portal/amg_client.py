"""AMG / openIMIS API client for the FHIR R4 resources plus the GraphQL endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote, unquote

import httpx
from pydantic import ValidationError

from amg_portal.config import Settings
from amg_portal.errors import AuthError, ConfigurationError, UpstreamUnavailable
from amg_portal.fhir import (
    Bundle,
    FamilyPolicyNode,
    Group,
    InsureeNode,
    Patient,
)

logger = logging.getLogger(__name__)

FHIR_PREFIX = "/api/api_fhir_r4"
GRAPHQL_PATH = "/api/graphql"

POLICIES_BY_FAMILY_QUERY = """
query GetPolicies($familyUuid: String!) {
  policiesByFamily(activeOrLastExpiredOnly: true, familyUuid: $familyUuid) {
    edges { node {
      policyUuid status startDate effectiveDate expiryDate productCode productName policyValue
    } }
  }
}
"""

INSUREE_INQUIRE_QUERY = """
query GetInsureeInquire($chfId: String) {
  insurees(chfId: $chfId, ignoreLocation: true) {
    edges { node {
      chfId lastName otherNames dob gender { gender }
      photos { folder filename photo }
      insureePolicies { edges { node {
        policy {
          product { name code ceiling ceilingIp ceilingOp deductible deductibleIp deductibleOp
            maxNoAntenatal maxAmountAntenatal maxNoSurgery maxAmountSurgery maxNoConsultation maxAmountConsultation
            maxNoDelivery maxAmountDelivery maxNoHospitalization maxAmountHospitalization maxMembers maxNoVisits maxInstallments
            maxCeilingPolicy maxCeilingPolicyIp maxCeilingPolicyOp maxPolicyExtraMember maxPolicyExtraMemberIp maxPolicyExtraMemberOp
          }
          enrollDate expiryDate status value validityTo
        }
      } } }
    } }
  }
}
"""


def _first_node(payload: dict, field: str) -> Optional[dict]:
    edges = ((payload.get("data") or {}).get(field) or {}).get("edges") or []
    if not edges:
        return None
    return (edges[0] or {}).get("node") or None


class AmgClient:
    """
    One authenticated session against the AMG API.

    Login and the two patient lookups raise; every other read returns None
    when the upstream fails so callers can carry on with partial data.
    """

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.token: str | None = None
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "AmgClient":
        return cls(
            settings.amg_base_url,
            settings.amg_api_username,
            settings.amg_api_password,
            timeout=settings.amg_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "AmgClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"{method} {url} failed: {exc}") from exc
        if response.is_error:
            raise UpstreamUnavailable(
                f"{method} {url} -> {response.status_code} {response.text}",
                status=response.status_code,
                body=response.text,
            )
        return response

    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        response = await self._request("GET", url, params=params)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"GET {url} returned invalid JSON", status=response.status_code) from exc

    async def _fetch_bundle(self, url: str, params: Optional[dict], what: str) -> Optional[Bundle]:
        try:
            return Bundle.model_validate(await self._get_json(url, params))
        except (UpstreamUnavailable, ValidationError) as exc:
            logger.warning("%s unavailable: %s", what, exc)
            return None

    async def graphql(self, query: str, variables: dict) -> dict:
        response = await self._request("POST", GRAPHQL_PATH, json={"query": query, "variables": variables})
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("GraphQL returned invalid JSON", status=response.status_code) from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("GraphQL returned an unexpected payload", body=response.text)
        if payload.get("errors") and not payload.get("data"):
            raise UpstreamUnavailable(f"GraphQL errors: {payload['errors']}", body=response.text)
        return payload

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self) -> str:
        if not self.username or not self.password:
            raise ConfigurationError("AMG API credentials not configured")
        try:
            response = await self._http.post(
                f"{FHIR_PREFIX}/login/",
                json={"username": self.username, "password": self.password},
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"AMG login failed: {exc}") from exc
        if response.is_error:
            raise AuthError(f"AMG login failed: {response.status_code} {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("AMG login returned invalid JSON") from exc
        token = payload.get("token") or payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthError("No auth token received")
        self.token = token
        return token

    # ------------------------------------------------------------------
    # Patient (failures raise UpstreamUnavailable)
    # ------------------------------------------------------------------

    async def search_patient_by_identifier(self, identifier: str) -> Optional[Patient]:
        payload = await self._get_json(f"{FHIR_PREFIX}/Patient", {"identifier": identifier})
        try:
            bundle = Bundle.model_validate(payload)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"Malformed Patient bundle: {exc}") from exc
        patient = bundle.first(Patient)
        return patient if patient and patient.is_patient else None

    async def get_patient_by_id(self, patient_id: str) -> Optional[Patient]:
        payload = await self._get_json(f"{FHIR_PREFIX}/Patient/{quote(patient_id, safe='')}")
        try:
            patient = Patient.model_validate(payload)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"Malformed Patient resource: {exc}") from exc
        return patient if patient.is_patient else None

    # ------------------------------------------------------------------
    # Best-effort FHIR reads
    # ------------------------------------------------------------------

    async def get_group(self, group_id: str) -> Optional[Group]:
        try:
            payload = await self._get_json(f"{FHIR_PREFIX}/Group/{quote(group_id, safe='')}")
            return Group.model_validate(payload)
        except (UpstreamUnavailable, ValidationError) as exc:
            logger.warning("Group %s unavailable: %s", group_id, exc)
            return None

    async def get_coverage(self, patient_id: str) -> Optional[Bundle]:
        return await self._fetch_bundle(
            f"{FHIR_PREFIX}/Coverage/", {"beneficiary": f"Patient/{patient_id}"}, "Coverage"
        )

    async def get_invoices(self, patient_id: str) -> Optional[Bundle]:
        return await self._fetch_bundle(
            f"{FHIR_PREFIX}/Invoice/", {"subject": f"Patient/{patient_id}"}, "Invoices"
        )

    async def get_payment_reconciliations(self, patient_id: str) -> Optional[Bundle]:
        return await self._fetch_bundle(
            f"{FHIR_PREFIX}/PaymentReconciliation/",
            {"request": f"Patient/{patient_id}"},
            "Payment reconciliations",
        )

    async def get_payment_notices(self, patient_id: str) -> Optional[Bundle]:
        return await self._fetch_bundle(
            f"{FHIR_PREFIX}/PaymentNotice/",
            {"request": f"Patient/{patient_id}"},
            "Payment notices",
        )

    async def get_contracts_page(self, next_url: Optional[str] = None, count: int = 1000) -> Optional[Bundle]:
        """First Contract page (most recently updated first), or the page at ``next_url``."""
        if next_url:
            return await self._fetch_bundle(unquote(next_url), None, "Contracts page")
        return await self._fetch_bundle(
            f"{FHIR_PREFIX}/Contract/", {"_count": count, "_sort": "-_lastUpdated"}, "Contracts page"
        )

    # ------------------------------------------------------------------
    # GraphQL (failures raise so the resolver can tell "errored" from "empty")
    # ------------------------------------------------------------------

    async def get_policies_by_family(self, family_uuid: str) -> Optional[FamilyPolicyNode]:
        payload = await self.graphql(POLICIES_BY_FAMILY_QUERY, {"familyUuid": family_uuid})
        node = _first_node(payload, "policiesByFamily")
        if node is None:
            return None
        try:
            return FamilyPolicyNode.model_validate(node)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"Malformed policiesByFamily node: {exc}") from exc

    async def get_insuree_inquire(self, chf_id: str) -> Optional[InsureeNode]:
        payload = await self.graphql(INSUREE_INQUIRE_QUERY, {"chfId": chf_id})
        node = _first_node(payload, "insurees")
        if node is None:
            return None
        try:
            return InsureeNode.model_validate(node)
        except ValidationError as exc:
            raise UpstreamUnavailable(f"Malformed insurees node: {exc}") from exc
