"""Tests for the shared httpx client and its logging hooks"""

import io

import httpx
import pytest
from loguru import logger

from sfgate.infrastructure.salesforce.transport import USER_AGENT, build_http_client


@pytest.fixture
def log_capture():
    capture = io.StringIO()
    handler_id = logger.add(capture, format="{message}", level="DEBUG")
    yield capture
    logger.remove(handler_id)


@pytest.mark.unit
def test_client_masks_authorization_and_query(log_capture):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    with build_http_client(transport=httpx.MockTransport(handler)) as client:
        client.get(
            "https://login.example.com/services/oauth2/revoke",
            params={"token": "T1-secret"},
            headers={"Authorization": "Bearer T1-secret", "Cookie": "sid=T1-secret"},
        )

    output = log_capture.getvalue()
    assert "HTTPX request: GET https://login.example.com/services/oauth2/revoke" in output
    assert "HTTPX response: status=200" in output
    assert "T1-secret" not in output
    assert seen[0].headers["User-Agent"] == USER_AGENT


@pytest.mark.unit
def test_client_never_logs_request_body(log_capture):
    transport = httpx.MockTransport(lambda request: httpx.Response(200))

    with build_http_client(transport=transport) as client:
        client.post(
            "https://login.example.com/services/oauth2/token",
            data={"password": "hunter2"},
        )

    assert "hunter2" not in log_capture.getvalue()
