import json
from http import HTTPStatus
from urllib.parse import urlsplit

import pytest
import requests
from urllib3.exceptions import MaxRetryError, NewConnectionError

from fhir_offline.client import ResourceClient
from fhir_offline.config import ClientConfig
from fhir_offline.mock_server import FHIR_BASE, create_app

BASE_URL = "http://fhir.test/fhir/R4"


def refused_connection(url):
    """The ConnectionError requests raises when nothing is listening at `url`."""
    reason = NewConnectionError(None, "Failed to establish a new connection: [Errno 111] Connection refused")
    return requests.exceptions.ConnectionError(MaxRetryError(None, url, reason))


def build_response(status_code=200, body=None, reason=None, content_type="application/fhir+json", raw=None):
    """Construct a real requests.Response without touching the network."""
    resp = requests.Response()
    resp.status_code = status_code
    resp.reason = reason if reason is not None else HTTPStatus(status_code).phrase
    if raw is not None:
        resp._content = raw
    elif body is not None:
        resp._content = json.dumps(body).encode("utf-8")
    else:
        resp._content = b""
    if content_type:
        resp.headers["Content-Type"] = content_type
    return resp


class RecordingTransport:
    """
    Async transport that records every call and replies from a queue.

    Queue items are requests.Response objects, exceptions to raise, or
    callables taking the recorded call and returning either.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def __call__(self, method, url, **kwargs):
        call = {"method": method, "url": url, **kwargs}
        call["json"] = json.loads(kwargs["data"]) if kwargs.get("data") else None
        self.calls.append(call)
        if not self.responses:
            raise AssertionError(f"No response queued for {method} {url}")
        reply = self.responses.pop(0)
        if callable(reply) and not isinstance(reply, requests.Response):
            reply = reply(call)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @property
    def last(self):
        return self.calls[-1]


@pytest.fixture
def fhir_response():
    return build_response


@pytest.fixture
def refused():
    return refused_connection


@pytest.fixture
def config():
    return ClientConfig(base_url=BASE_URL, timeout_ms=1000, retry_count=1)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def client(config, transport):
    return ResourceClient(config, transport=transport)


@pytest.fixture
def mock_app():
    app = create_app()
    app.config.update({
        "TESTING": True,
    })
    yield app


@pytest.fixture
def flask_transport(mock_app):
    """
    Transport that routes client requests into the mock server's Flask test client.

    Set `flask_transport.offline = True` to make every call fail like an unreachable host.
    """
    test_client = mock_app.test_client()

    class FlaskTransport:
        offline = False
        calls = []

        async def __call__(self, method, url, headers=None, data=None, timeout=None):
            self.calls.append((method, url))
            if self.offline:
                raise refused_connection(url)
            parts = urlsplit(url)
            resp = test_client.open(
                parts.path, method=method, query_string=parts.query, headers=headers, data=data
            )
            return build_response(
                resp.status_code,
                raw=resp.get_data(),
                content_type=resp.headers.get("Content-Type"),
            )

    return FlaskTransport()


@pytest.fixture
def live_client(flask_transport):
    """ResourceClient wired to the in-process mock server."""
    config = ClientConfig(base_url=f"http://localhost{FHIR_BASE}", organization_id="org-1", timeout_ms=2000, retry_count=1)
    return ResourceClient(config, transport=flask_transport)
