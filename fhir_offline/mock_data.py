"""Seed data for the mock FHIR server."""
import copy
from typing import Any, Dict, List

SEED_LAST_UPDATED = "2024-01-15T10:00:00Z"

LOINC = "http://loinc.org"
SNOMED = "http://snomed.info/sct"
RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"


def _meta() -> Dict[str, str]:
    return {"versionId": "1", "lastUpdated": SEED_LAST_UPDATED}


def _coding(system: str, code: str, display: str) -> Dict[str, Any]:
    return {"coding": [{"system": system, "code": code, "display": display}], "text": display}


def _organization(org_id: str, name: str, npi: str, city: str, state: str) -> Dict[str, Any]:
    return {
        "resourceType": "Organization",
        "id": org_id,
        "meta": _meta(),
        "identifier": [{"system": "http://hl7.org/fhir/sid/us-npi", "value": npi}],
        "active": True,
        "name": name,
        "address": [{"use": "work", "city": city, "state": state, "country": "US"}],
    }


def _patient(
    patient_id: str, family: str, given: List[str], gender: str, birth_date: str, mrn: str, org_id: str
) -> Dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": patient_id,
        "meta": _meta(),
        "identifier": [{"system": "http://hospital.smarthealthit.org", "value": mrn}],
        "active": True,
        "name": [{"use": "official", "family": family, "given": given}],
        "gender": gender,
        "birthDate": birth_date,
        "managingOrganization": {"reference": f"Organization/{org_id}"},
    }


def _encounter(encounter_id: str, patient_id: str, status: str, start: str, org_id: str) -> Dict[str, Any]:
    return {
        "resourceType": "Encounter",
        "id": encounter_id,
        "meta": _meta(),
        "status": status,
        "class": {
            "system": "http://terminology.hl7.org/CodeSystem/v3-ActCode",
            "code": "AMB",
            "display": "ambulatory",
        },
        "subject": {"reference": f"Patient/{patient_id}"},
        "period": {"start": start},
        "serviceProvider": {"reference": f"Organization/{org_id}"},
    }


def _clinical(
    resource_type: str, resource_id: str, patient_id: str, encounter_id: str, **fields: Any
) -> Dict[str, Any]:
    resource = {
        "resourceType": resource_type,
        "id": resource_id,
        "meta": _meta(),
        "subject": {"reference": f"Patient/{patient_id}"},
        "encounter": {"reference": f"Encounter/{encounter_id}"},
    }
    resource.update(fields)
    return resource


SEED_RESOURCES: Dict[str, List[Dict[str, Any]]] = {
    "Organization": [
        _organization("org-1", "General Hospital", "1234567890", "Medical City", "CA"),
        _organization("org-2", "Community Health Center", "0987654321", "Healthville", "NY"),
    ],
    "Patient": [
        _patient("patient-1", "Smith", ["John", "Michael"], "male", "1985-03-15", "MRN123456", "org-1"),
        _patient("patient-2", "Johnson", ["Sarah"], "female", "1990-07-22", "MRN234567", "org-1"),
        _patient("patient-3", "Brown", ["Robert"], "male", "1978-11-02", "MRN345678", "org-2"),
    ],
    "Encounter": [
        _encounter("encounter-1", "patient-1", "finished", "2024-01-10T09:00:00Z", "org-1"),
        _encounter("encounter-2", "patient-1", "in-progress", "2024-02-01T14:30:00Z", "org-1"),
        _encounter("encounter-3", "patient-2", "finished", "2024-01-20T11:00:00Z", "org-1"),
    ],
    "Observation": [
        _clinical(
            "Observation", "observation-1", "patient-1", "encounter-1",
            status="final",
            code=_coding(LOINC, "85354-9", "Blood pressure panel"),
            component=[
                {"code": _coding(LOINC, "8480-6", "Systolic blood pressure"),
                 "valueQuantity": {"value": 128, "unit": "mmHg"}},
                {"code": _coding(LOINC, "8462-4", "Diastolic blood pressure"),
                 "valueQuantity": {"value": 82, "unit": "mmHg"}},
            ],
        ),
        _clinical(
            "Observation", "observation-2", "patient-1", "encounter-1",
            status="final",
            code=_coding(LOINC, "8867-4", "Heart rate"),
            valueQuantity={"value": 72, "unit": "beats/minute"},
        ),
        _clinical(
            "Observation", "observation-3", "patient-2", "encounter-3",
            status="final",
            code=_coding(LOINC, "8310-5", "Body temperature"),
            valueQuantity={"value": 37.2, "unit": "Cel"},
        ),
    ],
    "Condition": [
        _clinical(
            "Condition", "condition-1", "patient-1", "encounter-1",
            clinicalStatus=_coding("http://terminology.hl7.org/CodeSystem/condition-clinical", "active", "Active"),
            code=_coding(SNOMED, "38341003", "Hypertension"),
        ),
    ],
    "MedicationRequest": [
        _clinical(
            "MedicationRequest", "medication-1", "patient-1", "encounter-1",
            status="active",
            intent="order",
            medicationCodeableConcept=_coding(RXNORM, "314076", "Lisinopril 10 MG Oral Tablet"),
        ),
    ],
    "DiagnosticReport": [
        _clinical(
            "DiagnosticReport", "diagnostic-1", "patient-1", "encounter-1",
            status="final",
            code=_coding(LOINC, "58410-2", "Complete blood count panel"),
        ),
    ],
    "Procedure": [
        _clinical(
            "Procedure", "procedure-1", "patient-2", "encounter-3",
            status="completed",
            code=_coding(SNOMED, "73761001", "Colonoscopy"),
        ),
    ],
}


def seed_store() -> Dict[str, Dict[str, Dict[str, Any]]]:
    """Fresh, independent copy of the seed data keyed by resource type, then id."""
    return {
        resource_type: {resource["id"]: copy.deepcopy(resource) for resource in resources}
        for resource_type, resources in SEED_RESOURCES.items()
    }
