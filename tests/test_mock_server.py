import pytest

from fhir_offline.mock_server import FHIR_BASE, create_app


@pytest.fixture
def http(mock_app):
    return mock_app.test_client()


def issue_text(resp):
    return " ".join(iss.get("diagnostics", "") for iss in resp.json["issue"])


def test_metadata(http):
    resp = http.get(f"{FHIR_BASE}/metadata")
    assert resp.status_code == 200
    assert resp.mimetype == "application/fhir+json"
    assert resp.json["resourceType"] == "CapabilityStatement"
    assert resp.json["fhirVersion"] == "4.0.1"
    types = {r["type"] for r in resp.json["rest"][0]["resource"]}
    assert {"Patient", "Encounter", "Observation", "Organization"} <= types


def test_read_resource(http):
    resp = http.get(f"{FHIR_BASE}/Patient/patient-1")
    assert resp.status_code == 200
    assert resp.json["name"][0]["family"] == "Smith"
    assert resp.json["managingOrganization"]["reference"] == "Organization/org-1"


def test_read_missing_resource(http):
    resp = http.get(f"{FHIR_BASE}/Patient/nope")
    assert resp.status_code == 404
    assert resp.json["resourceType"] == "OperationOutcome"
    assert resp.json["issue"][0]["code"] == "not-found"
    assert "Patient with id 'nope' not found" in issue_text(resp)


def test_unknown_type_suggests_close_match(http):
    resp = http.get(f"{FHIR_BASE}/Patiant/patient-1")
    assert resp.status_code == 404
    assert "is not supported" in issue_text(resp)
    assert "Did you mean: Patient" in issue_text(resp)


def test_search_patients_by_name_and_organization(http):
    resp = http.get(f"{FHIR_BASE}/Patient", query_string={"name": "smith"})
    assert resp.json["type"] == "searchset"
    assert [e["resource"]["id"] for e in resp.json["entry"]] == ["patient-1"]

    resp = http.get(f"{FHIR_BASE}/Patient", query_string={"organization": "org-1"})
    assert resp.json["total"] == 2

    resp = http.get(f"{FHIR_BASE}/Patient", query_string={"organization": "org-2", "gender": "male"})
    assert [e["resource"]["id"] for e in resp.json["entry"]] == ["patient-3"]


def test_search_clinical_resources_by_patient_and_encounter(http):
    resp = http.get(f"{FHIR_BASE}/Encounter", query_string={"patient": "patient-1"})
    assert {e["resource"]["id"] for e in resp.json["entry"]} == {"encounter-1", "encounter-2"}

    resp = http.get(f"{FHIR_BASE}/Observation", query_string={"encounter": "encounter-1"})
    assert resp.json["total"] == 2

    resp = http.get(f"{FHIR_BASE}/Encounter", query_string={"patient": "Patient/patient-1", "status": "in-progress"})
    assert [e["resource"]["id"] for e in resp.json["entry"]] == ["encounter-2"]


def test_search_empty_result(http):
    resp = http.get(f"{FHIR_BASE}/Procedure", query_string={"patient": "patient-3"})
    assert resp.status_code == 200
    assert resp.json["total"] == 0
    assert resp.json["entry"] == []


def test_search_paging_links(http):
    resp = http.get(f"{FHIR_BASE}/Observation", query_string={"_count": "1", "_offset": "1"})
    assert resp.json["total"] == 3
    assert len(resp.json["entry"]) == 1
    relations = {link["relation"]: link["url"] for link in resp.json["link"]}
    assert set(relations) == {"self", "next", "previous"}
    assert "_offset=2" in relations["next"]
    assert "_offset=0" in relations["previous"]


def test_search_rejects_bad_count(http):
    resp = http.get(f"{FHIR_BASE}/Observation", query_string={"_count": "many"})
    assert resp.status_code == 400
    assert "_count" in issue_text(resp)


def test_create_update_delete_cycle(http):
    resp = http.post(f"{FHIR_BASE}/Encounter", json={"resourceType": "Encounter", "status": "planned"})
    assert resp.status_code == 201
    new_id = resp.json["id"]
    assert resp.json["meta"]["versionId"] == "1"
    assert resp.headers["Location"].endswith(f"/Encounter/{new_id}/_history/1")

    resp = http.put(f"{FHIR_BASE}/Encounter/{new_id}", json={"resourceType": "Encounter", "status": "finished"})
    assert resp.status_code == 200
    assert resp.json["meta"]["versionId"] == "2"
    assert resp.json["status"] == "finished"

    resp = http.delete(f"{FHIR_BASE}/Encounter/{new_id}")
    assert resp.status_code == 204
    assert http.get(f"{FHIR_BASE}/Encounter/{new_id}").status_code == 404
    assert http.delete(f"{FHIR_BASE}/Encounter/{new_id}").status_code == 404


def test_put_creates_missing_resource_with_given_id(http):
    resp = http.put(f"{FHIR_BASE}/Patient/custom-id", json={"resourceType": "Patient", "gender": "other"})
    assert resp.status_code == 201
    assert resp.json["id"] == "custom-id"


def test_create_rejects_mismatched_resource_type(http):
    resp = http.post(f"{FHIR_BASE}/Patient", json={"resourceType": "Encounter"})
    assert resp.status_code == 400
    assert "Expected resourceType Patient" in issue_text(resp)


def test_update_rejects_id_mismatch(http):
    resp = http.put(f"{FHIR_BASE}/Patient/patient-1", json={"resourceType": "Patient", "id": "patient-2"})
    assert resp.status_code == 400


def test_batch_reports_each_entry(http):
    bundle = {
        "resourceType": "Bundle",
        "type": "batch",
        "entry": [
            {"request": {"method": "GET", "url": "Patient/patient-1"}},
            {"request": {"method": "GET", "url": "Patient/missing"}},
            {"resource": {"resourceType": "Organization", "name": "Clinic"}, "request": {"method": "POST", "url": "Organization"}},
        ],
    }
    resp = http.post(f"{FHIR_BASE}/", json=bundle)
    assert resp.status_code == 200
    assert resp.json["type"] == "batch-response"
    statuses = [e["response"]["status"] for e in resp.json["entry"]]
    assert statuses == ["200 OK", "404 Not Found", "201 Created"]
    assert resp.json["entry"][1]["response"]["outcome"]["resourceType"] == "OperationOutcome"


def test_transaction_is_all_or_nothing(mock_app, http):
    bundle = {
        "resourceType": "Bundle",
        "type": "transaction",
        "entry": [
            {"request": {"method": "DELETE", "url": "Patient/patient-2"}},
            {"request": {"method": "DELETE", "url": "Patient/missing"}},
        ],
    }
    resp = http.post(f"{FHIR_BASE}/", json=bundle)
    assert resp.status_code == 404
    assert resp.json["resourceType"] == "OperationOutcome"
    # the first delete was rolled back
    assert http.get(f"{FHIR_BASE}/Patient/patient-2").status_code == 200

    bundle["entry"] = bundle["entry"][:1]
    resp = http.post(f"{FHIR_BASE}/", json=bundle)
    assert resp.json["type"] == "transaction-response"
    assert resp.json["entry"][0]["response"]["status"] == "204 No Content"
    assert "patient-2" not in mock_app.config["FHIR_STORE"]["Patient"]


def test_bundle_type_must_be_batch_or_transaction(http):
    resp = http.post(f"{FHIR_BASE}/", json={"resourceType": "Bundle", "type": "collection"})
    assert resp.status_code == 400


def test_unknown_route_is_operation_outcome(http):
    resp = http.get("/not/a/fhir/path/at/all")
    assert resp.status_code == 404
    assert resp.json["resourceType"] == "OperationOutcome"


def test_apps_do_not_share_state():
    first = create_app().test_client()
    second = create_app().test_client()
    first.delete(f"{FHIR_BASE}/Patient/patient-1")
    assert second.get(f"{FHIR_BASE}/Patient/patient-1").status_code == 200
