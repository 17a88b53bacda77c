"""Exceptions raised by the FHIR offline client.

Taxonomy:
 - RequestTimeoutError: the request deadline expired before a response arrived.
 - Transport errors: `requests.exceptions.ConnectionError` and friends, re-raised unchanged.
 - OperationOutcomeError: the server rejected the request with an OperationOutcome.
 - HttpStatusError: any other non-2xx response.
 - CircuitOpenError: the circuit breaker blocked the call before it was sent.
"""
from typing import Any, Dict, List, Optional

import requests
from urllib3.exceptions import MaxRetryError, NewConnectionError

from fhir_offline.schemas import NormalizedError, OperationOutcomeIssue


class FhirError(Exception):
    """Base class for errors surfaced by the client, carrying the normalized error fields."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        resource_type: Optional[str] = None,
        issues: Optional[List[OperationOutcomeIssue]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.resource_type = resource_type
        self.issues = list(issues or [])

    def to_normalized(self) -> NormalizedError:
        return NormalizedError(
            message=self.message,
            status=self.status,
            resource_type=self.resource_type,
            issues=self.issues,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Normalized error as a wire-style dict ({message, status, resourceType})."""
        return self.to_normalized().model_dump(by_alias=True, exclude_none=True, exclude={"issues"})


class RequestTimeoutError(FhirError):
    """The request did not complete within the configured timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Request timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class OperationOutcomeError(FhirError):
    """The server answered with an OperationOutcome; fix the request before retrying."""


class HttpStatusError(FhirError):
    """Non-2xx response whose body was not a structured OperationOutcome."""


class CircuitOpenError(FhirError):
    """The circuit breaker is refusing calls after repeated failures; nothing was sent."""


def error_from_normalized(error: NormalizedError) -> FhirError:
    """Pick the exception class matching a normalized error."""
    cls = OperationOutcomeError if error.resource_type == "OperationOutcome" else HttpStatusError
    return cls(error.message, status=error.status, resource_type=error.resource_type, issues=error.issues)


def is_connectivity_error(exc: BaseException) -> bool:
    """
    True for failures that mean the server could not be reached.

    Timeouts, transport-level `requests` errors and an open circuit breaker
    qualify; HTTP and protocol errors do not, since the server did answer.
    """
    if isinstance(exc, (RequestTimeoutError, CircuitOpenError)):
        return True
    if isinstance(exc, requests.exceptions.HTTPError):
        return False
    return isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout))


def is_unsent_error(exc: BaseException) -> bool:
    """
    True when the request provably never reached the server.

    That covers a refused connection, a failed DNS lookup, a connect timeout
    and a call the circuit breaker blocked. A read timeout or a connection
    dropped mid-request may have been processed, so neither qualifies.
    """
    if isinstance(exc, CircuitOpenError):
        return True
    if isinstance(exc, RequestTimeoutError):
        return isinstance(exc.__cause__, requests.exceptions.ConnectTimeout)
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    if not isinstance(exc, requests.exceptions.ConnectionError) or isinstance(exc, requests.exceptions.Timeout):
        return False
    reason = exc.args[0] if exc.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, NewConnectionError)
