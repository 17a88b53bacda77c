"""Translate failed FHIR HTTP responses into a single normalized error.

The translator never raises: whatever the server sent back, the caller gets a
`NormalizedError` to raise or display.
"""
import logging
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from fhir_offline.schemas import NormalizedError, OperationOutcome

logger = logging.getLogger(__name__)

# Content types that may carry an OperationOutcome body
STRUCTURED_CONTENT_TYPES = ("application/fhir+json", "application/json")

ISSUE_SEPARATOR = "; "


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value or ""
    return ""


def fallback_message(status: int, status_text: Optional[str]) -> str:
    return f"HTTP {status}: {status_text or ''}"


def translate_error_response(
    status: int,
    status_text: Optional[str],
    headers: Mapping[str, str],
    load_body: Callable[[], Any],
) -> NormalizedError:
    """
    Build a NormalizedError for a non-2xx response.

    Args:
        status: HTTP status code.
        status_text: reason phrase (e.g. 'Not Found').
        headers: response headers; Content-Type decides whether the body is parsed.
        load_body: zero-argument callable returning the decoded JSON body. Only
            called for structured content types.

    Returns:
        NormalizedError with the joined issue messages and resource_type
        'OperationOutcome' when the body is an OperationOutcome, otherwise the
        generic 'HTTP {status}: {status_text}' message.
    """
    message = fallback_message(status, status_text)
    content_type = _header(headers, "Content-Type").lower()
    if not any(ct in content_type for ct in STRUCTURED_CONTENT_TYPES):
        return NormalizedError(message=message, status=status)

    try:
        body = load_body()
    except ValueError as ex:
        # json.JSONDecodeError and requests' JSON errors are both ValueErrors
        logger.debug("Could not decode error body for HTTP %s: %s", status, ex)
        return NormalizedError(message=message, status=status)

    if not isinstance(body, Mapping) or body.get("resourceType") != "OperationOutcome":
        return NormalizedError(message=message, status=status)

    try:
        outcome = OperationOutcome.model_validate(body)
    except ValidationError as ex:
        logger.debug("Malformed OperationOutcome for HTTP %s: %s", status, ex)
        return NormalizedError(message=message, status=status)

    issue_messages = [m for m in (issue.message() for issue in outcome.issue) if m]
    if issue_messages:
        message = ISSUE_SEPARATOR.join(issue_messages)
    return NormalizedError(
        message=message,
        status=status,
        resource_type="OperationOutcome",
        issues=outcome.issue,
    )
