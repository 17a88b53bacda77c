"""Async HTTP client for a FHIR R4 server.

Provides typed CRUD, search, batch and transaction operations. Non-2xx
responses raise `OperationOutcomeError` or `HttpStatusError`, deadlines raise
`RequestTimeoutError`, and transport failures surface as the original
`requests` exception.

Usage:
    client = ResourceClient(ClientConfig(base_url="http://localhost:3001/fhir/R4"))
    await client.get_patient("123")
    await client.search("Observation", {"code": "1234-5"})
"""
import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Union

from fhir_offline.config import ClientConfig
from fhir_offline.executor import RequestExecutor, Transport
from fhir_offline.schemas import (
    Bundle,
    EncounterResources,
    Resource,
    parse_resource,
    to_payload,
)

logger = logging.getLogger(__name__)

PATIENT = "Patient"
ENCOUNTER = "Encounter"
ORGANIZATION = "Organization"

DEFAULT_PAGE_SIZE = 50

# Resource types searched by get_encounter_resources, keyed by result field
ENCOUNTER_RESOURCE_TYPES = {
    "observations": "Observation",
    "conditions": "Condition",
    "medication_requests": "MedicationRequest",
    "diagnostic_reports": "DiagnosticReport",
    "procedures": "Procedure",
}

Payload = Union[Resource, Mapping[str, Any]]


def _organization_reference(organization_id: str) -> Dict[str, str]:
    return {"reference": f"{ORGANIZATION}/{organization_id}"}


class ResourceClient:
    """
    HTTP client for a FHIR R4 server.

    Each operation reads the current `ClientConfig` snapshot once, so
    `update_config` only affects calls issued afterwards.

    Raises:
        OperationOutcomeError: the server answered with an OperationOutcome.
        HttpStatusError: any other non-2xx response.
        RequestTimeoutError: the request exceeded config.timeout_ms.
        requests.exceptions.ConnectionError: the server could not be reached.

    Examples:
        >>> client = ResourceClient(ClientConfig(base_url="http://localhost:3001/fhir/R4", organization_id="org-1"))
        >>> await client.search_patients({"name": "Smith"})
        Bundle(resourceType='Bundle', type='searchset', ...)
        >>> await client.create_patient({"resourceType": "Patient", "name": [{"family": "Smith"}]})
        Patient(resourceType='Patient', id='...', managingOrganization=Reference(reference='Organization/org-1'), ...)
    """

    def __init__(self, config: ClientConfig, transport: Optional[Transport] = None):
        """
        Initialize the client.

        Args:
            config: initial configuration snapshot.
            transport: optional async transport; defaults to `requests` in a worker thread.
        """
        self._config = config
        self.executor = RequestExecutor(transport)

    @property
    def config(self) -> ClientConfig:
        return self._config

    def update_config(self, **changes: Any) -> ClientConfig:
        """Swap in a new config snapshot with `changes` merged in; in-flight calls keep the old one."""
        self._config = self._config.updated(**changes)
        return self._config

    # Generic resource operations

    async def search(
        self,
        resource_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        scope_to_organization: Optional[bool] = None,
    ) -> Bundle:
        """
        Search resources of one type.

        Args:
            resource_type: FHIR resource type (e.g., 'Patient').
            filters: search parameters (e.g., {'name': 'Smith', '_count': 10}).
            scope_to_organization: add the configured organization as an
                'organization' parameter. Defaults to True for Patient searches
                and False for everything else.

        Returns:
            The search result Bundle.
        """
        config = self._config
        query = dict(filters or {})
        if scope_to_organization is None:
            scope_to_organization = resource_type == PATIENT
        if scope_to_organization and config.organization_id:
            query["organization"] = config.organization_id
        data = await self.executor.execute(config, "GET", resource_type, query=query)
        return Bundle.model_validate(data)

    async def get(self, resource_type: str, resource_id: str) -> Resource:
        """Fetch a resource by type and ID."""
        data = await self.executor.execute(self._config, "GET", f"{resource_type}/{resource_id}")
        return parse_resource(data)

    async def create(self, resource_type: str, payload: Payload) -> Resource:
        """
        POST a new resource.

        Patient payloads get a managingOrganization reference to the configured
        organization, replacing any the caller supplied. The caller's payload is
        not modified.
        """
        config = self._config
        body = to_payload(payload)
        if resource_type == PATIENT and config.organization_id:
            body["managingOrganization"] = _organization_reference(config.organization_id)
        data = await self.executor.execute(config, "POST", resource_type, body=body)
        return parse_resource(data)

    async def update(self, resource_type: str, resource_id: str, payload: Payload) -> Resource:
        """PUT a resource, sending the payload verbatim."""
        data = await self.executor.execute(
            self._config, "PUT", f"{resource_type}/{resource_id}", body=to_payload(payload)
        )
        return parse_resource(data)

    async def delete(self, resource_type: str, resource_id: str) -> None:
        """
        DELETE a resource by type and ID.

        Args:
            resource_type: FHIR resource type (e.g., 'Encounter').
            resource_id: logical ID of the resource to remove.

        Returns:
            None; the server's response body, if any, is ignored.

        Raises:
            OperationOutcomeError: the server refused the delete (e.g., 404 not found).
            RequestTimeoutError: the request exceeded config.timeout_ms.
        """
        await self.executor.execute(self._config, "DELETE", f"{resource_type}/{resource_id}")

    # Bulk submission

    async def batch(self, bundle: Payload) -> Bundle:
        """POST a batch Bundle to the server root, leaving its type as given."""
        data = await self.executor.execute(self._config, "POST", "", body=to_payload(bundle))
        return Bundle.model_validate(data)

    async def transaction(self, bundle: Payload) -> Bundle:
        """POST a Bundle to the server root as a transaction (type forced to 'transaction')."""
        body = to_payload(bundle)
        body["type"] = "transaction"
        data = await self.executor.execute(self._config, "POST", "", body=body)
        return Bundle.model_validate(data)

    # Server metadata

    async def check_connection(self) -> bool:
        """Return True if the server's metadata endpoint answers; never raises."""
        try:
            await self.executor.execute(self._config, "GET", "metadata")
        except Exception as ex:
            logger.info("FHIR server unreachable at %s: %s", self._config.base_url, ex)
            return False
        return True

    async def get_capability_statement(self) -> Resource:
        """
        Fetch the server's CapabilityStatement from the metadata endpoint.

        Unlike check_connection, failures propagate.

        Returns:
            The parsed CapabilityStatement.

        Raises:
            OperationOutcomeError, HttpStatusError: the server answered with an error.
            RequestTimeoutError: the request exceeded config.timeout_ms.
            requests.exceptions.ConnectionError: the server could not be reached.
        """
        data = await self.executor.execute(self._config, "GET", "metadata")
        return parse_resource(data)

    # Patient operations

    async def search_patients(self, filters: Optional[Mapping[str, Any]] = None) -> Bundle:
        return await self.search(PATIENT, filters)

    async def get_patient(self, patient_id: str) -> Resource:
        return await self.get(PATIENT, patient_id)

    async def create_patient(self, patient: Payload) -> Resource:
        return await self.create(PATIENT, patient)

    async def update_patient(self, patient_id: str, patient: Payload) -> Resource:
        return await self.update(PATIENT, patient_id, patient)

    async def delete_patient(self, patient_id: str) -> None:
        await self.delete(PATIENT, patient_id)

    # Encounter operations

    async def search_encounters(self, filters: Optional[Mapping[str, Any]] = None) -> Bundle:
        return await self.search(ENCOUNTER, filters)

    async def get_patient_encounters(
        self, patient_id: str, count: int = DEFAULT_PAGE_SIZE, sort: Optional[str] = None
    ) -> Bundle:
        return await self.search_encounters({"patient": patient_id, "_count": count, "_sort": sort})

    async def get_encounter(self, encounter_id: str) -> Resource:
        return await self.get(ENCOUNTER, encounter_id)

    async def create_encounter(self, encounter: Payload) -> Resource:
        return await self.create(ENCOUNTER, encounter)

    async def update_encounter(self, encounter_id: str, encounter: Payload) -> Resource:
        return await self.update(ENCOUNTER, encounter_id, encounter)

    async def delete_encounter(self, encounter_id: str) -> None:
        await self.delete(ENCOUNTER, encounter_id)

    # Patient-centred clinical searches

    async def _search_for_patient(
        self, resource_type: str, patient_id: str, count: int, **filters: Optional[str]
    ) -> Bundle:
        return await self.search(resource_type, {"patient": patient_id, "_count": count, **filters})

    async def get_patient_observations(
        self,
        patient_id: str,
        category: Optional[str] = None,
        code: Optional[str] = None,
        date: Optional[str] = None,
        count: int = DEFAULT_PAGE_SIZE,
    ) -> Bundle:
        return await self._search_for_patient(
            "Observation", patient_id, count, category=category, code=code, date=date
        )

    async def get_patient_conditions(
        self,
        patient_id: str,
        category: Optional[str] = None,
        status: Optional[str] = None,
        count: int = DEFAULT_PAGE_SIZE,
    ) -> Bundle:
        return await self._search_for_patient("Condition", patient_id, count, category=category, status=status)

    async def get_patient_medication_requests(
        self, patient_id: str, status: Optional[str] = None, count: int = DEFAULT_PAGE_SIZE
    ) -> Bundle:
        return await self._search_for_patient("MedicationRequest", patient_id, count, status=status)

    async def get_patient_diagnostic_reports(
        self,
        patient_id: str,
        category: Optional[str] = None,
        status: Optional[str] = None,
        count: int = DEFAULT_PAGE_SIZE,
    ) -> Bundle:
        return await self._search_for_patient(
            "DiagnosticReport", patient_id, count, category=category, status=status
        )

    async def get_patient_procedures(
        self, patient_id: str, status: Optional[str] = None, count: int = DEFAULT_PAGE_SIZE
    ) -> Bundle:
        return await self._search_for_patient("Procedure", patient_id, count, status=status)

    async def get_encounter_resources(self, encounter_id: str) -> EncounterResources:
        """
        Fetch everything recorded during one encounter.

        Runs five searches concurrently. If any of them fails, the others are
        cancelled and the error propagates; there is no partial result.
        """
        query = {"encounter": encounter_id}
        tasks = [
            asyncio.ensure_future(self.search(resource_type, query))
            for resource_type in ENCOUNTER_RESOURCE_TYPES.values()
        ]
        try:
            bundles = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise
        return EncounterResources(**dict(zip(ENCOUNTER_RESOURCE_TYPES, bundles)))

    # Organization operations

    async def get_organizations(self) -> Bundle:
        return await self.search(ORGANIZATION)

    async def get_organization(self, organization_id: str) -> Resource:
        return await self.get(ORGANIZATION, organization_id)
