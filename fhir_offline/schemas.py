"""Pydantic models for FHIR resources and client-side records.

Resources are open records: every model allows extra fields so that payloads
round-trip through the client untouched. `parse_resource` dispatches on the
`resourceType` discriminator and falls back to the catch-all `Resource`.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator

FHIR_JSON = "application/fhir+json"


class FhirElement(BaseModel):
    """Base for FHIR datatypes and resources: unknown fields are kept as extras."""
    model_config = ConfigDict(extra="allow")


class Reference(FhirElement):
    reference: Optional[str] = None
    display: Optional[str] = None


class Resource(FhirElement):
    """
    Catch-all FHIR resource.

    resourceType: discriminator string, always present on server data.
    id: logical id assigned by the server.
    meta: version/lastUpdated metadata.
    """
    resourceType: str
    id: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        """Dump to a wire dict, keeping only fields that were actually set."""
        data = self.model_dump(mode="json", exclude_unset=True)
        return {"resourceType": self.resourceType, **data}


class Patient(Resource):
    resourceType: Literal["Patient"] = "Patient"
    managingOrganization: Optional[Reference] = None


class Encounter(Resource):
    resourceType: Literal["Encounter"] = "Encounter"
    status: Optional[str] = None
    subject: Optional[Reference] = None


class Organization(Resource):
    resourceType: Literal["Organization"] = "Organization"
    name: Optional[str] = None


class Observation(Resource):
    resourceType: Literal["Observation"] = "Observation"
    status: Optional[str] = None
    subject: Optional[Reference] = None
    encounter: Optional[Reference] = None


class Condition(Resource):
    resourceType: Literal["Condition"] = "Condition"
    subject: Optional[Reference] = None
    encounter: Optional[Reference] = None


class MedicationRequest(Resource):
    resourceType: Literal["MedicationRequest"] = "MedicationRequest"
    status: Optional[str] = None
    subject: Optional[Reference] = None
    encounter: Optional[Reference] = None


class DiagnosticReport(Resource):
    resourceType: Literal["DiagnosticReport"] = "DiagnosticReport"
    status: Optional[str] = None
    subject: Optional[Reference] = None
    encounter: Optional[Reference] = None


class Procedure(Resource):
    resourceType: Literal["Procedure"] = "Procedure"
    status: Optional[str] = None
    subject: Optional[Reference] = None
    encounter: Optional[Reference] = None


class CapabilityStatement(Resource):
    resourceType: Literal["CapabilityStatement"] = "CapabilityStatement"
    fhirVersion: Optional[str] = None
    rest: List[Dict[str, Any]] = Field(default_factory=list)


class OperationOutcomeIssue(FhirElement):
    """
    Represents a single FHIR OperationOutcome issue.

    severity: issue severity (e.g., 'error', 'warning').
    code: machine-readable issue code (e.g., 'not-found').
    diagnostics: human-readable explanation of the issue.
    details: optional CodeableConcept; its 'text' is used when diagnostics is missing.
    """
    severity: Optional[str] = Field(None, description="Issue severity (e.g., 'error', 'warning').")
    code: Optional[str] = Field(None, description="Machine-readable issue code (e.g., 'not-found').")
    diagnostics: Optional[str] = Field(None, description="Human-readable explanation of the issue.")
    details: Optional[Dict[str, Any]] = Field(None, description="CodeableConcept with optional 'text'.")

    def message(self) -> Optional[str]:
        """Best human-readable text for this issue: diagnostics, then details.text, then code."""
        if self.diagnostics:
            return self.diagnostics
        if self.details and self.details.get("text"):
            return self.details["text"]
        return self.code or None


class OperationOutcome(Resource):
    resourceType: Literal["OperationOutcome"] = "OperationOutcome"
    issue: List[OperationOutcomeIssue] = Field(default_factory=list)


class BundleEntryRequest(FhirElement):
    method: str
    url: str


class BundleEntryResponse(FhirElement):
    status: str
    location: Optional[str] = None
    etag: Optional[str] = None
    outcome: Optional[Dict[str, Any]] = None


class BundleLink(FhirElement):
    relation: str
    url: str


class BundleEntry(FhirElement):
    fullUrl: Optional[str] = None
    resource: Optional[SerializeAsAny[Resource]] = None
    request: Optional[BundleEntryRequest] = None
    response: Optional[BundleEntryResponse] = None

    @field_validator("resource", mode="before")
    @classmethod
    def _typed_resource(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return parse_resource(value)
        return value


class Bundle(Resource):
    """
    Container for search results and batch/transaction submissions.

    type: 'searchset', 'batch', 'batch-response', 'collection', 'transaction', ...
    """
    resourceType: Literal["Bundle"] = "Bundle"
    type: str
    total: Optional[int] = None
    link: List[BundleLink] = Field(default_factory=list)
    entry: List[BundleEntry] = Field(default_factory=list)

    @property
    def resources(self) -> List[Resource]:
        return [e.resource for e in self.entry if e.resource is not None]

    def link_url(self, relation: str) -> Optional[str]:
        for link in self.link:
            if link.relation == relation:
                return link.url
        return None


RESOURCE_MODELS: Dict[str, Type[Resource]] = {
    model.model_fields["resourceType"].default: model
    for model in (
        Patient,
        Encounter,
        Organization,
        Observation,
        Condition,
        MedicationRequest,
        DiagnosticReport,
        Procedure,
        CapabilityStatement,
        OperationOutcome,
        Bundle,
    )
}


def parse_resource(data: Mapping[str, Any]) -> Resource:
    """
    Validate a wire dict into the model registered for its resourceType.

    Unknown resource types parse into the catch-all `Resource`.

    Raises:
        pydantic.ValidationError: if `resourceType` is missing or a known field is malformed.
    """
    model = RESOURCE_MODELS.get(data.get("resourceType"), Resource)
    return model.model_validate(data)


def to_payload(value: Union[Resource, Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a fresh wire dict for a model or mapping; the input is never mutated."""
    if isinstance(value, Resource):
        return value.to_payload()
    return dict(value)


class NormalizedError(BaseModel):
    """
    The single error shape surfaced to callers.

    message: human-readable message (joined issue diagnostics or 'HTTP {status}: {reason}').
    status: HTTP status code, if a response was received.
    resource_type: 'OperationOutcome' when the server sent a structured error.
    issues: issues of that OperationOutcome, in server order.
    """
    message: str
    status: Optional[int] = None
    resource_type: Optional[str] = Field(None, alias="resourceType")
    issues: List[OperationOutcomeIssue] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


MutationMethod = Literal["create", "update", "delete", "batch", "transaction"]


class QueuedOperation(BaseModel):
    """
    A mutating call deferred while offline.

    Returned to the caller in place of a server result so pending writes can be
    told apart from confirmed ones.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    method: MutationMethod
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EncounterResources(BaseModel):
    """Clinical resources recorded during one encounter, one search bundle per type."""
    observations: Bundle
    conditions: Bundle
    medication_requests: Bundle
    diagnostic_reports: Bundle
    procedures: Bundle


class ReplayReport(BaseModel):
    """
    Outcome of one offline-queue replay pass.

    replayed: operations confirmed by the server during this pass.
    remaining: operations still queued afterwards.
    failed: the operation that halted the pass, if any.
    error: message of the failure that halted the pass.
    skipped: True when another pass was already running.
    """
    replayed: List[QueuedOperation] = Field(default_factory=list)
    remaining: int = 0
    failed: Optional[QueuedOperation] = None
    error: Optional[str] = None
    skipped: bool = False
