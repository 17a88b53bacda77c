"""Client and offline wrapper running against the in-process mock server."""
import pytest
import requests

from fhir_offline.errors import OperationOutcomeError
from fhir_offline.resilience import OfflineResilientClient
from fhir_offline.schemas import Patient, QueuedOperation


@pytest.mark.asyncio
async def test_connection_and_capabilities(live_client):
    assert await live_client.check_connection() is True
    statement = await live_client.get_capability_statement()
    assert statement.fhirVersion == "4.0.1"


@pytest.mark.asyncio
async def test_patient_search_is_scoped_to_selected_organization(live_client):
    bundle = await live_client.search_patients()
    assert {p.id for p in bundle.resources} == {"patient-1", "patient-2"}

    live_client.update_config(organization_id="org-2")
    bundle = await live_client.search_patients()
    assert [p.id for p in bundle.resources] == ["patient-3"]


@pytest.mark.asyncio
async def test_created_patient_is_findable_in_its_organization(live_client):
    created = await live_client.create_patient({
        "resourceType": "Patient",
        "name": [{"family": "Nguyen", "given": ["Linh"]}],
        "gender": "female",
    })
    assert isinstance(created, Patient)
    assert created.managingOrganization.reference == "Organization/org-1"

    bundle = await live_client.search_patients({"name": "nguyen"})
    assert [p.id for p in bundle.resources] == [created.id]


@pytest.mark.asyncio
async def test_encounter_resources(live_client):
    result = await live_client.get_encounter_resources("encounter-1")
    assert {o.id for o in result.observations.resources} == {"observation-1", "observation-2"}
    assert [c.id for c in result.conditions.resources] == ["condition-1"]
    assert [m.id for m in result.medication_requests.resources] == ["medication-1"]
    assert [d.id for d in result.diagnostic_reports.resources] == ["diagnostic-1"]
    assert result.procedures.resources == []


@pytest.mark.asyncio
async def test_patient_encounters_and_organizations(live_client):
    encounters = await live_client.get_patient_encounters("patient-1")
    assert encounters.total == 2
    organization = await live_client.get_organization("org-2")
    assert organization.name == "Community Health Center"
    assert (await live_client.get_organizations()).total == 2


@pytest.mark.asyncio
async def test_server_errors_surface_as_operation_outcome(live_client):
    with pytest.raises(OperationOutcomeError) as exc_info:
        await live_client.get_patient("does-not-exist")
    assert exc_info.value.status == 404
    assert exc_info.value.message == "Patient with id 'does-not-exist' not found"


@pytest.mark.asyncio
async def test_transaction_round_trip(live_client):
    result = await live_client.transaction({
        "resourceType": "Bundle",
        "type": "batch",
        "entry": [
            {"resource": {"resourceType": "Encounter", "status": "planned", "subject": {"reference": "Patient/patient-2"}},
             "request": {"method": "POST", "url": "Encounter"}},
            {"request": {"method": "DELETE", "url": "Procedure/procedure-1"}},
        ],
    })
    assert result.type == "transaction-response"
    assert [e.response.status for e in result.entry] == ["201 Created", "204 No Content"]


@pytest.mark.asyncio
async def test_offline_writes_replay_when_server_returns(live_client, flask_transport):
    resilient = OfflineResilientClient(live_client)
    flask_transport.offline = True

    assert await resilient.initialize() is False
    queued = await resilient.create_patient({"resourceType": "Patient", "name": [{"family": "Offline"}]})
    update = await resilient.update_encounter(
        "encounter-2", {"resourceType": "Encounter", "id": "encounter-2", "status": "finished",
                        "subject": {"reference": "Patient/patient-1"}}
    )
    assert isinstance(queued, QueuedOperation)
    assert isinstance(update, QueuedOperation)
    with pytest.raises(requests.exceptions.ConnectionError):
        await resilient.get_encounter("encounter-2")

    flask_transport.offline = False
    report = await resilient.set_online()

    assert [op.id for op in report.replayed] == [queued.id, update.id]
    assert resilient.queue_size == 0
    encounter = await resilient.get_encounter("encounter-2")
    assert encounter.status == "finished"
    patients = await resilient.search_patients({"name": "offline"})
    assert patients.resources[0].managingOrganization.reference == "Organization/org-1"


@pytest.mark.asyncio
async def test_write_during_outage_is_queued(live_client, flask_transport):
    resilient = OfflineResilientClient(live_client)
    flask_transport.offline = True

    result = await resilient.delete_patient("patient-2")

    assert isinstance(result, QueuedOperation)
    assert resilient.is_offline
    flask_transport.offline = False
    assert (await resilient.get_patient("patient-2")).id == "patient-2"

    report = await resilient.set_online()
    assert report.remaining == 0
    with pytest.raises(OperationOutcomeError):
        await resilient.get_patient("patient-2")


@pytest.mark.asyncio
async def test_create_refused_during_outage_replays_after_poll(live_client, flask_transport):
    resilient = OfflineResilientClient(live_client)
    before = (await resilient.search_encounters({"patient": "patient-3"})).total
    flask_transport.offline = True

    queued = await resilient.create_encounter(
        {"resourceType": "Encounter", "status": "planned", "subject": {"reference": "Patient/patient-3"}}
    )
    assert isinstance(queued, QueuedOperation)
    assert resilient.is_offline

    flask_transport.offline = False
    assert await resilient.poll_connection() is True

    assert resilient.queue_size == 0
    assert (await resilient.search_encounters({"patient": "patient-3"})).total == before + 1
