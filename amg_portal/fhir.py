"""
Typed views over the openIMIS FHIR R4 and GraphQL payloads.

Only the fields the portal reads are declared. Everything else is kept as
pydantic "extra" data so ``raw()`` hands the client the upstream payload
unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

GROUP_REFERENCE_URL = (
    "https://openimis.github.io/openimis_fhir_r4_ig/StructureDefinition/patient-group-reference"
)
CONTRACT_PREMIUM_URL = (
    "https://openimis.github.io/openimis_fhir_r4_ig/StructureDefinition/contract-premium"
)

_FAMILY_ID_PATTERN = re.compile(r"uuid|family", re.IGNORECASE)
_GROUP_SUBJECT_PATTERN = re.compile(r"Group/(.+)")

M = TypeVar("M", bound="UpstreamModel")


class UpstreamModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")


class FhirModel(UpstreamModel):
    """A FHIR R4 resource or datatype."""


class GraphQLNode(UpstreamModel):
    """A node from the openIMIS GraphQL API."""


# ---------------------------------------------------------------------------
# FHIR datatypes
# ---------------------------------------------------------------------------


class Coding(FhirModel):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(FhirModel):
    coding: list[Coding] = Field(default_factory=list)
    text: Optional[str] = None


class Identifier(FhirModel):
    system: Optional[str] = None
    value: Optional[str] = None
    type: Optional[CodeableConcept] = None


class Reference(FhirModel):
    reference: Optional[str] = None
    identifier: Optional[Identifier] = None
    display: Optional[str] = None


class Period(FhirModel):
    start: Optional[str] = None
    end: Optional[str] = None


class Money(FhirModel):
    value: Optional[float] = None
    currency: Optional[str] = None


class Extension(FhirModel):
    url: str = ""
    value_reference: Optional[Reference] = None
    value_string: Optional[str] = None
    extension: list["Extension"] = Field(default_factory=list)


class HumanName(FhirModel):
    family: Optional[str] = None
    given: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# FHIR resources
# ---------------------------------------------------------------------------


class Patient(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    name: list[HumanName] = Field(default_factory=list)
    extension: list[Extension] = Field(default_factory=list)

    @property
    def is_patient(self) -> bool:
        return self.resource_type == "Patient"

    @property
    def full_name(self) -> str:
        if not self.name:
            return "Unknown"
        first = self.name[0]
        given = first.given[0] if first.given else ""
        return f"{given or ''} {first.family or ''}".strip()

    def group_extension(self) -> Extension | None:
        for ext in self.extension:
            if ext.url == GROUP_REFERENCE_URL:
                return ext
        return None

    def group_reference(self) -> str | None:
        ext = self.group_extension()
        if ext and ext.value_reference:
            return ext.value_reference.reference
        return None

    def group_identifier(self) -> str | None:
        ext = self.group_extension()
        if ext and ext.value_reference and ext.value_reference.identifier:
            return ext.value_reference.identifier.value
        return None

    def group_reference_id(self) -> str | None:
        """Group id from the family extension: ``Group/<id>`` wins over the identifier."""
        ref = self.group_reference()
        if ref:
            return ref.split("/")[1] if "/" in ref else ref
        return self.group_identifier() or None


class Group(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    identifier: list[Identifier] = Field(default_factory=list)

    def family_uuid(self) -> str | None:
        """
        The GraphQL familyUuid for this FHIR Group.

        Prefers an identifier whose system mentions "uuid"/"family", then one
        whose type coding does, and finally falls back to the resource id.
        """
        by_system = next(
            (i for i in self.identifier if i.system and _FAMILY_ID_PATTERN.search(i.system)),
            None,
        )
        by_type = next(
            (
                i for i in self.identifier
                if i.type and any(_FAMILY_ID_PATTERN.search(c.code or "") for c in i.type.coding)
            ),
            None,
        )
        candidate = (by_system and by_system.value) or (by_type and by_type.value)
        return candidate or self.id or None


class CoverageClass(FhirModel):
    value: Optional[str] = None


class Coverage(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    status: Optional[str] = None
    period: Optional[Period] = None
    class_: list[CoverageClass] = Field(default_factory=list, alias="class")

    @property
    def plan_name(self) -> str:
        if self.class_ and self.class_[0].value:
            return self.class_[0].value
        return ""


class ContractAsset(FhirModel):
    period: list[Period] = Field(default_factory=list)
    extension: list[Extension] = Field(default_factory=list)
    type_reference: list[Reference] = Field(default_factory=list)


class ContractTerm(FhirModel):
    asset: list[ContractAsset] = Field(default_factory=list)


class Contract(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    status: Optional[str] = None
    subject: list[Reference] = Field(default_factory=list)
    term: list[ContractTerm] = Field(default_factory=list)

    def group_id(self) -> str | None:
        ref = (self.subject[0].reference or "") if self.subject else ""
        match = _GROUP_SUBJECT_PATTERN.search(ref)
        return match.group(1) if match else None

    def asset(self) -> ContractAsset | None:
        if self.term and self.term[0].asset:
            return self.term[0].asset[0]
        return None

    def period(self) -> Period | None:
        asset = self.asset()
        if asset and asset.period:
            return asset.period[0]
        return None

    def has_payment(self) -> bool:
        asset = self.asset()
        if not asset:
            return False
        for ext in asset.extension:
            if ext.url != CONTRACT_PREMIUM_URL:
                continue
            for sub in ext.extension:
                if sub.url == "receipt" and sub.value_string:
                    return True
        return False

    def product(self) -> Reference | None:
        asset = self.asset()
        if asset and asset.type_reference:
            return asset.type_reference[0]
        return None


class Invoice(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    status: Optional[str] = None
    total_net: Optional[Money] = None
    total_gross: Optional[Money] = None

    @property
    def is_open(self) -> bool:
        return self.status not in ("balanced", "cancelled")

    @property
    def amount_due(self) -> float:
        for money in (self.total_net, self.total_gross):
            if money is not None and money.value is not None:
                return float(money.value)
        return 0.0


class PaymentDetail(FhirModel):
    amount: Optional[Money] = None


class PaymentReconciliation(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    status: Optional[str] = None
    created: Optional[str] = None
    period: Optional[Period] = None
    payment_amount: Optional[Money] = None
    payment_identifier: Optional[Identifier] = None
    detail: list[PaymentDetail] = Field(default_factory=list)
    disposition: Optional[str] = None


class PaymentNoticePayment(FhirModel):
    date: Optional[str] = None


class PaymentNotice(FhirModel):
    resource_type: Optional[str] = None
    id: Optional[str] = None
    status: Optional[str] = None
    created: Optional[str] = None
    amount: Optional[Money] = None
    payment: Optional[PaymentNoticePayment] = None
    payment_status: Optional[CodeableConcept] = None


class BundleLink(FhirModel):
    relation: Optional[str] = None
    url: Optional[str] = None


class BundleEntry(FhirModel):
    resource: Optional[dict[str, Any]] = None


class Bundle(FhirModel):
    resource_type: Optional[str] = None
    total: Optional[int] = None
    entry: list[BundleEntry] = Field(default_factory=list)
    link: list[BundleLink] = Field(default_factory=list)

    def resources(self, model: type[M]) -> list[M]:
        """Parse every entry resource as ``model``, skipping malformed ones."""
        parsed = []
        for entry in self.entry:
            if not entry.resource:
                continue
            try:
                parsed.append(model.model_validate(entry.resource))
            except ValidationError as exc:
                logger.warning("Skipping malformed %s entry: %s", model.__name__, exc)
        return parsed

    def first(self, model: type[M]) -> M | None:
        resources = self.resources(model)
        return resources[0] if resources else None

    def next_url(self) -> str | None:
        for link in self.link:
            if link.relation == "next" and link.url:
                return link.url
        return None


# ---------------------------------------------------------------------------
# GraphQL nodes
# ---------------------------------------------------------------------------


class FamilyPolicyNode(GraphQLNode):
    policy_uuid: Optional[str] = None
    status: Union[int, str, None] = None
    start_date: Optional[str] = None
    effective_date: Optional[str] = None
    expiry_date: Optional[str] = None
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    policy_value: Optional[float] = None


class InsureeProduct(GraphQLNode):
    name: Optional[str] = None
    code: Optional[str] = None


class InsureePolicy(GraphQLNode):
    product: Optional[InsureeProduct] = None
    enroll_date: Optional[str] = None
    expiry_date: Optional[str] = None
    status: Union[int, str, None] = None
    value: Optional[float] = None
    validity_to: Optional[str] = None


class InsureePolicyLink(GraphQLNode):
    policy: Optional[InsureePolicy] = None


class InsureePolicyEdge(GraphQLNode):
    node: Optional[InsureePolicyLink] = None


class InsureePolicyConnection(GraphQLNode):
    edges: list[InsureePolicyEdge] = Field(default_factory=list)


class InsureeNode(GraphQLNode):
    chf_id: Optional[str] = None
    last_name: Optional[str] = None
    other_names: Optional[str] = None
    insuree_policies: Optional[InsureePolicyConnection] = None

    @property
    def full_name(self) -> str:
        name = f"{self.other_names or ''} {self.last_name or ''}".strip()
        return name or "Unknown"

    def first_policy(self) -> InsureePolicy | None:
        if not self.insuree_policies or not self.insuree_policies.edges:
            return None
        node = self.insuree_policies.edges[0].node
        return node.policy if node else None


Extension.model_rebuild()
