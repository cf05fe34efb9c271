from amg_portal.fhir import (
    GROUP_REFERENCE_URL,
    Bundle,
    Contract,
    FamilyPolicyNode,
    FhirModel,
    GraphQLNode,
    Group,
    InsureeNode,
    Invoice,
    Patient,
)
from payloads import bundle, contract_resource, group_resource, patient_resource


def test_patient_full_name_and_group_reference():
    patient = Patient.model_validate(patient_resource(group_ref="Group/G-42"))
    assert patient.is_patient
    assert patient.full_name == "Amina Said"
    assert patient.group_reference_id() == "G-42"


def test_patient_without_name_is_unknown():
    assert Patient.model_validate({"resourceType": "Patient", "id": "1"}).full_name == "Unknown"


def test_group_reference_falls_back_to_identifier():
    resource = patient_resource(group_ref=None)
    resource["extension"].append({
        "url": GROUP_REFERENCE_URL,
        "valueReference": {"identifier": {"value": "FAM-7"}},
    })
    patient = Patient.model_validate(resource)
    assert patient.group_reference() is None
    assert patient.group_reference_id() == "FAM-7"


def test_patient_without_group_extension():
    assert Patient.model_validate(patient_resource(group_ref=None)).group_reference_id() is None


def test_family_uuid_prefers_system_match():
    assert Group.model_validate(group_resource(family_uuid="fam-1")).family_uuid() == "fam-1"


def test_family_uuid_by_type_code():
    group = Group.model_validate({
        "resourceType": "Group",
        "id": "G-1",
        "identifier": [
            {"system": "https://openimis.org/code", "value": "CODE-9"},
            {"type": {"coding": [{"code": "UUID"}]}, "value": "fam-from-type"},
        ],
    })
    assert group.family_uuid() == "fam-from-type"


def test_family_uuid_falls_back_to_group_id():
    assert Group.model_validate(group_resource(family_uuid=None)).family_uuid() == "G-1"


def test_raw_round_trips_unknown_fields():
    resource = patient_resource()
    resource["birthDate"] = "1990-05-04"
    resource["gender"] = "female"
    raw = Patient.model_validate(resource).raw()
    assert raw["birthDate"] == "1990-05-04"
    assert raw["gender"] == "female"
    assert raw["extension"][0]["valueReference"] == {"reference": "Group/G-1"}


def test_bundle_resources_skip_malformed_entries():
    payload = bundle({"resourceType": "Invoice", "status": "active"}, {"resourceType": "Invoice", "totalNet": "lots"})
    invoices = Bundle.model_validate(payload).resources(Invoice)
    assert len(invoices) == 1


def test_bundle_next_url():
    assert Bundle.model_validate(bundle(next_url="https://amg.test/next")).next_url() == "https://amg.test/next"
    assert Bundle.model_validate(bundle()).next_url() is None


def test_contract_helpers():
    contract = Contract.model_validate(contract_resource(group_id="G-9"))
    assert contract.group_id() == "G-9"
    assert contract.has_payment()
    assert contract.period().end == "2099-01-01"
    assert not Contract.model_validate(contract_resource(receipt=None)).has_payment()


def test_graphql_nodes_are_not_fhir_models():
    for model in (FamilyPolicyNode, InsureeNode):
        assert issubclass(model, GraphQLNode)
        assert not issubclass(model, FhirModel)
    assert issubclass(Patient, FhirModel)


def test_graphql_node_keeps_raw_payload():
    node = FamilyPolicyNode.model_validate({"policyUuid": "pol-1", "status": 1, "isOffline": False})
    assert node.raw() == {"policyUuid": "pol-1", "status": 1, "isOffline": False}
