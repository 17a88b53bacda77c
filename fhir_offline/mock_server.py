"""
In-memory mock FHIR R4 server for development and tests.

Serves the subset of the FHIR REST API used by the client under /fhir/R4:
 - GET    /metadata                      CapabilityStatement
 - GET    /<resource>                    search (with _count/_offset paging)
 - POST   /<resource>                    create
 - GET    /<resource>/<resource_id>      read
 - PUT    /<resource>/<resource_id>      update (or create with that id)
 - DELETE /<resource>/<resource_id>      delete
 - POST   /                              batch / transaction Bundle

Every error is an OperationOutcome. Data lives in process memory only.
Environment variables:
 - MOCK_FHIR_PORT: port for running the server (default 3001).
"""
# Type hints
from typing import Any, Dict, List, Mapping, Optional, Tuple

# Standard library imports
import copy
import difflib
import os
import uuid
from datetime import datetime, timezone
from http import HTTPStatus
from urllib.parse import parse_qsl, urlencode

# Third-party imports
from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

# Internal imports
from fhir_offline.mock_data import seed_store
from fhir_offline.schemas import FHIR_JSON

FHIR_BASE = "/fhir/R4"
DEFAULT_PAGE_SIZE = 20

Store = Dict[str, Dict[str, Dict[str, Any]]]

PATIENT_SEARCH_PARAMS = ["name", "identifier", "birthdate", "gender", "organization"]
CLINICAL_SEARCH_PARAMS = ["patient", "encounter", "status"]


class FhirRequestError(Exception):
    """Raised by request handlers; rendered as an OperationOutcome response."""

    def __init__(self, status: int, code: str, diagnostics: str):
        super().__init__(diagnostics)
        self.status = status
        self.code = code
        self.diagnostics = diagnostics


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def operation_outcome(severity: str, code: str, diagnostics: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "id": str(uuid.uuid4()),
        "meta": {"lastUpdated": _now()},
        "issue": [{"severity": severity, "code": code, "diagnostics": diagnostics}],
    }


def fhir_response(body: Optional[Mapping[str, Any]], status: int = 200, headers: Optional[Dict[str, str]] = None) -> Response:
    """JSON response with the FHIR media type."""
    resp = jsonify(body) if body is not None else Response(status=status)
    resp.status_code = status
    resp.mimetype = FHIR_JSON
    for key, value in (headers or {}).items():
        resp.headers[key] = value
    return resp


def capability_statement(store: Store) -> Dict[str, Any]:
    resources = []
    for resource_type in sorted(store):
        entry: Dict[str, Any] = {
            "type": resource_type,
            "interaction": [{"code": code} for code in ("read", "create", "update", "delete", "search-type")],
        }
        params = PATIENT_SEARCH_PARAMS if resource_type == "Patient" else CLINICAL_SEARCH_PARAMS
        entry["searchParam"] = [{"name": name, "type": "string"} for name in params]
        resources.append(entry)
    return {
        "resourceType": "CapabilityStatement",
        "id": "mock-fhir-server",
        "status": "active",
        "date": _now(),
        "publisher": "Mock FHIR Server",
        "kind": "instance",
        "software": {"name": "Mock FHIR Server", "version": "1.0.0"},
        "fhirVersion": "4.0.1",
        "format": ["json"],
        "rest": [{"mode": "server", "resource": resources, "interaction": [{"code": "batch"}, {"code": "transaction"}]}],
    }


def _require_type(store: Store, resource_type: str) -> Dict[str, Dict[str, Any]]:
    if resource_type not in store:
        diagnostics = f"Resource type '{resource_type}' is not supported. Supported types: {sorted(store)}."
        close = difflib.get_close_matches(resource_type, list(store), n=3)
        if close:
            diagnostics += f" Did you mean: {', '.join(close)}?"
        raise FhirRequestError(404, "not-supported", diagnostics)
    return store[resource_type]


def _check_body(resource_type: str, body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise FhirRequestError(400, "structure", f"Request body must be a {resource_type} resource.")
    if body.get("resourceType") != resource_type:
        raise FhirRequestError(
            400, "invalid", f"Expected resourceType {resource_type}, got {body.get('resourceType')}"
        )
    return body


def read_resource(store: Store, resource_type: str, resource_id: str) -> Dict[str, Any]:
    resources = _require_type(store, resource_type)
    if resource_id not in resources:
        raise FhirRequestError(404, "not-found", f"{resource_type} with id '{resource_id}' not found")
    return resources[resource_id]


def create_resource(store: Store, resource_type: str, body: Any, resource_id: Optional[str] = None) -> Dict[str, Any]:
    resources = _require_type(store, resource_type)
    resource = dict(_check_body(resource_type, body))
    resource["id"] = resource_id or str(uuid.uuid4())
    resource["meta"] = {"versionId": "1", "lastUpdated": _now()}
    resources[resource["id"]] = resource
    return resource


def update_resource(store: Store, resource_type: str, resource_id: str, body: Any) -> Tuple[Dict[str, Any], int]:
    """Replace a resource; returns (resource, 200), or (resource, 201) when it did not exist yet."""
    resources = _require_type(store, resource_type)
    body = _check_body(resource_type, body)
    if body.get("id") not in (None, resource_id):
        raise FhirRequestError(400, "invalid", f"Resource id '{body.get('id')}' does not match URL id '{resource_id}'")
    existing = resources.get(resource_id)
    if existing is None:
        return create_resource(store, resource_type, body, resource_id), 201
    version = int(existing.get("meta", {}).get("versionId", "1")) + 1
    resource = dict(body, id=resource_id, meta={"versionId": str(version), "lastUpdated": _now()})
    resources[resource_id] = resource
    return resource, 200


def delete_resource(store: Store, resource_type: str, resource_id: str) -> None:
    resources = _require_type(store, resource_type)
    if resources.pop(resource_id, None) is None:
        raise FhirRequestError(404, "not-found", f"{resource_type} with id '{resource_id}' not found")


def _reference_matches(resource: Mapping[str, Any], field: str, target_type: str, value: str) -> bool:
    target = value.split("/", 1)[1] if value.startswith(f"{target_type}/") else value
    reference = (resource.get(field) or {}).get("reference")
    return reference == f"{target_type}/{target}"


def _patient_matches(patient: Mapping[str, Any], params: Mapping[str, str]) -> bool:
    if params.get("name"):
        term = params["name"].lower()
        names = patient.get("name") or []
        found = False
        for name in names:
            given = " ".join(name.get("given") or []).lower()
            family = (name.get("family") or "").lower()
            if term in f"{given} {family}".strip() or term in given or term in family:
                found = True
                break
        if not found:
            return False
    if params.get("identifier"):
        if not any(params["identifier"] in (i.get("value") or "") for i in patient.get("identifier") or []):
            return False
    if params.get("birthdate") and patient.get("birthDate") != params["birthdate"]:
        return False
    if params.get("gender") and patient.get("gender") != params["gender"]:
        return False
    if params.get("organization") and not _reference_matches(
        patient, "managingOrganization", "Organization", params["organization"]
    ):
        return False
    return True


def _clinical_matches(resource: Mapping[str, Any], params: Mapping[str, str]) -> bool:
    if params.get("patient") and not _reference_matches(resource, "subject", "Patient", params["patient"]):
        return False
    if params.get("encounter") and not _reference_matches(resource, "encounter", "Encounter", params["encounter"]):
        return False
    if params.get("status") and resource.get("status") != params["status"]:
        return False
    return True


def _int_param(params: Mapping[str, str], name: str, default: int) -> int:
    raw = params.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise FhirRequestError(400, "invalid", f"Search parameter '{name}' must be an integer, got '{raw}'")
    if value < 0:
        raise FhirRequestError(400, "invalid", f"Search parameter '{name}' must not be negative")
    return value


def search_resources(store: Store, resource_type: str, params: Mapping[str, str], base_url: str) -> Dict[str, Any]:
    """Filter, page and wrap matching resources in a searchset Bundle."""
    resources = list(_require_type(store, resource_type).values())
    matches = _patient_matches if resource_type == "Patient" else _clinical_matches
    results = [r for r in resources if matches(r, params)]
    count = _int_param(params, "_count", DEFAULT_PAGE_SIZE) or DEFAULT_PAGE_SIZE
    offset = _int_param(params, "_offset", 0)
    page = results[offset:offset + count]
    type_url = f"{base_url}/{resource_type}"

    bundle: Dict[str, Any] = {
        "resourceType": "Bundle",
        "id": str(uuid.uuid4()),
        "meta": {"lastUpdated": _now()},
        "type": "searchset",
        "total": len(results),
        "entry": [
            {"fullUrl": f"{type_url}/{r['id']}", "resource": r, "search": {"mode": "match"}}
            for r in page
        ],
    }
    if len(results) > count:
        def page_link(relation: str, page_offset: int) -> Dict[str, str]:
            query = dict(params, _offset=str(page_offset))
            return {"relation": relation, "url": f"{type_url}?{urlencode(query)}"}

        links = [{"relation": "self", "url": f"{type_url}?{urlencode(dict(params))}"}]
        if offset + count < len(results):
            links.append(page_link("next", offset + count))
        if offset > 0:
            links.append(page_link("previous", max(0, offset - count)))
        bundle["link"] = links
    return bundle


def _process_entry(store: Store, entry: Mapping[str, Any], base_url: str) -> Tuple[int, Optional[Dict[str, Any]], Optional[str]]:
    """Run one batch/transaction entry; returns (status, resource, location)."""
    req = entry.get("request") or {}
    method = (req.get("method") or "").upper()
    url = (req.get("url") or "").strip("/")
    path, _, query = url.partition("?")
    parts = path.split("/") if path else []

    if method == "GET" and len(parts) == 1:
        return 200, search_resources(store, parts[0], dict(parse_qsl(query)), base_url), None
    if method == "GET" and len(parts) == 2:
        return 200, read_resource(store, parts[0], parts[1]), None
    if method == "POST" and len(parts) == 1:
        created = create_resource(store, parts[0], entry.get("resource"))
        return 201, created, f"{parts[0]}/{created['id']}/_history/1"
    if method == "PUT" and len(parts) == 2:
        updated, status = update_resource(store, parts[0], parts[1], entry.get("resource"))
        return status, updated, f"{parts[0]}/{parts[1]}/_history/{updated['meta']['versionId']}"
    if method == "DELETE" and len(parts) == 2:
        delete_resource(store, parts[0], parts[1])
        return 204, None, None
    raise FhirRequestError(400, "not-supported", f"Unsupported bundle entry request: {method} {url}")


def _entry_response(status: int, resource: Optional[Dict[str, Any]], location: Optional[str]) -> Dict[str, Any]:
    response: Dict[str, Any] = {"status": f"{status} {HTTPStatus(status).phrase}"}
    if location:
        response["location"] = location
    entry: Dict[str, Any] = {"response": response}
    if resource is not None:
        entry["resource"] = resource
    return entry


def process_bundle(store: Store, bundle: Any, base_url: str) -> Tuple[Dict[str, Any], Store]:
    """
    Apply a batch or transaction Bundle.

    Batch entries succeed or fail independently; failures become entries with an
    OperationOutcome. A transaction runs against a copy of the store and is
    committed only if every entry succeeds; otherwise the first error is raised.

    Returns:
        The response Bundle and the store to keep (the committed copy for
        transactions, the same store for batches).
    """
    if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
        raise FhirRequestError(400, "structure", "Request body must be a Bundle resource.")
    bundle_type = bundle.get("type")
    if bundle_type not in ("batch", "transaction"):
        raise FhirRequestError(400, "invalid", f"Bundle type must be 'batch' or 'transaction', got '{bundle_type}'")

    entries: List[Dict[str, Any]] = []
    # 1️⃣ Transactions work on a scratch copy so a failure leaves nothing behind
    target = copy.deepcopy(store) if bundle_type == "transaction" else store
    for entry in bundle.get("entry") or []:
        try:
            entries.append(_entry_response(*_process_entry(target, entry, base_url)))
        except FhirRequestError as err:
            # 2️⃣ Transaction: abort everything on the first failing entry
            if bundle_type == "transaction":
                raise
            # 3️⃣ Batch: record the failure and move on
            entries.append({
                "response": {
                    "status": f"{err.status} {HTTPStatus(err.status).phrase}",
                    "outcome": operation_outcome("error", err.code, err.diagnostics),
                }
            })
    response = {
        "resourceType": "Bundle",
        "id": str(uuid.uuid4()),
        "type": f"{bundle_type}-response",
        "entry": entries,
    }
    return response, target


def create_app(store: Optional[Store] = None) -> Flask:
    """
    Build a mock FHIR server app.

    Args:
        store: resources keyed by type then id. Defaults to a fresh copy of the seed data.
    """
    app = Flask(__name__)
    app.config["FHIR_STORE"] = store if store is not None else seed_store()

    def current_store() -> Store:
        return app.config["FHIR_STORE"]

    def base_url() -> str:
        return f"{request.host_url.rstrip('/')}{FHIR_BASE}"

    @app.route(f"{FHIR_BASE}/metadata", methods=["GET"])
    def metadata() -> Response:
        return fhir_response(capability_statement(current_store()))

    @app.route(f"{FHIR_BASE}/", methods=["POST"])
    def submit_bundle() -> Response:
        response, committed = process_bundle(current_store(), request.get_json(silent=True), base_url())
        app.config["FHIR_STORE"] = committed
        return fhir_response(response)

    @app.route(f"{FHIR_BASE}/<resource>", methods=["GET"])
    def search(resource: str) -> Response:
        return fhir_response(search_resources(current_store(), resource, request.args.to_dict(), base_url()))

    @app.route(f"{FHIR_BASE}/<resource>", methods=["POST"])
    def create(resource: str) -> Response:
        created = create_resource(current_store(), resource, request.get_json(silent=True))
        location = f"{base_url()}/{resource}/{created['id']}/_history/1"
        return fhir_response(created, 201, {"Location": location})

    @app.route(f"{FHIR_BASE}/<resource>/<resource_id>", methods=["GET"])
    def read(resource: str, resource_id: str) -> Response:
        return fhir_response(read_resource(current_store(), resource, resource_id))

    @app.route(f"{FHIR_BASE}/<resource>/<resource_id>", methods=["PUT"])
    def update(resource: str, resource_id: str) -> Response:
        updated, status = update_resource(current_store(), resource, resource_id, request.get_json(silent=True))
        return fhir_response(updated, status)

    @app.route(f"{FHIR_BASE}/<resource>/<resource_id>", methods=["DELETE"])
    def delete(resource: str, resource_id: str) -> Response:
        delete_resource(current_store(), resource, resource_id)
        return fhir_response(None, 204)

    @app.errorhandler(FhirRequestError)
    def handle_fhir_error(err: FhirRequestError) -> Response:
        return fhir_response(operation_outcome("error", err.code, err.diagnostics), err.status)

    @app.errorhandler(HTTPException)
    def handle_http_error(err: HTTPException) -> Response:
        """Convert Flask routing errors (404, 405, ...) into OperationOutcome responses."""
        code = "not-found" if err.code == 404 else "not-supported"
        diagnostics = getattr(err, "description", str(err))
        return fhir_response(operation_outcome("error", code, diagnostics), err.code or 500)

    return app


# Entry point: run the mock server on MOCK_FHIR_PORT (default 3001)
if __name__ == "__main__":
    port = int(os.environ.get("MOCK_FHIR_PORT", 3001))
    print(f"Mock FHIR Server running on port {port}")
    print(f"FHIR Base URL: http://localhost:{port}{FHIR_BASE}")
    print(f"Capability Statement: http://localhost:{port}{FHIR_BASE}/metadata")
    create_app().run(port=port)
