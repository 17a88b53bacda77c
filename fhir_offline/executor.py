"""Single-request HTTP execution against a FHIR server.

`RequestExecutor.execute` issues exactly one HTTP call under a deadline. It does
not retry; retry policy belongs to the resilience layer.

The transport is injectable. It is an async callable with the signature of
`requests.request` that returns a `requests.Response`:

    async def transport(method, url, *, headers, data, timeout) -> requests.Response

The default transport runs `requests.request` in a worker thread.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

import requests

from fhir_offline.config import ClientConfig
from fhir_offline.error_translator import translate_error_response
from fhir_offline.errors import RequestTimeoutError, error_from_normalized
from fhir_offline.query import encode_query
from fhir_offline.schemas import FHIR_JSON

logger = logging.getLogger(__name__)

Transport = Callable[..., Awaitable[requests.Response]]


async def requests_transport(method: str, url: str, **kwargs: Any) -> requests.Response:
    """Default transport: blocking `requests.request` moved off the event loop."""
    return await asyncio.to_thread(requests.request, method, url, **kwargs)


def build_url(config: ClientConfig, path: str, query: Optional[Mapping[str, Any]] = None) -> str:
    """Join base URL and path ('' targets the server root), appending the encoded query if any."""
    url = f"{config.base_url}/{path.lstrip('/')}"
    query_string = encode_query(query)
    if query_string:
        url = f"{url}?{query_string}"
    return url


def build_headers(config: ClientConfig) -> dict:
    headers = {"Content-Type": FHIR_JSON, "Accept": FHIR_JSON}
    headers.update(config.headers)
    return headers


class RequestExecutor:
    """
    Issues one HTTP request per call and maps failures onto the error taxonomy.

    Raises (from execute):
        RequestTimeoutError: the configured deadline expired first.
        requests.exceptions.RequestException: transport failures, unchanged.
        OperationOutcomeError / HttpStatusError: non-2xx responses.
    """

    def __init__(self, transport: Optional[Transport] = None):
        self.transport = transport or requests_transport

    async def execute(
        self,
        config: ClientConfig,
        method: str,
        path: str,
        query: Optional[Mapping[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Optional[Any]:
        """
        Send a request using the given config snapshot.

        Args:
            config: snapshot captured by the caller when the operation started.
            method: HTTP verb.
            path: path relative to the base URL, e.g. 'Patient/123', 'metadata' or ''.
            query: search filters, encoded with encode_query.
            body: JSON-serializable request body.

        Returns:
            The decoded JSON body, or None when the response has no body.
        """
        url = build_url(config, path, query)
        data = json.dumps(body) if body is not None else None
        logger.debug("FHIR request: %s %s", method, url)
        try:
            response = await asyncio.wait_for(
                self.transport(
                    method,
                    url,
                    headers=build_headers(config),
                    data=data,
                    timeout=config.timeout_seconds,
                ),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise RequestTimeoutError(config.timeout_ms) from None
        except requests.exceptions.Timeout as ex:
            raise RequestTimeoutError(config.timeout_ms) from ex

        logger.debug("FHIR response: %s %s -> %s", method, url, response.status_code)
        if not 200 <= response.status_code < 300:
            error = translate_error_response(
                response.status_code,
                response.reason,
                response.headers,
                response.json,
            )
            raise error_from_normalized(error)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()
