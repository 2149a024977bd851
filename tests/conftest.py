"""Pytest fixtures for sfgate tests"""

import sys
import threading
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

# Add src to Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sfgate.infrastructure.salesforce.session import (  # noqa: E402
    Credentials,
    SessionManager,
)
from sfgate.infrastructure.salesforce.transport import (  # noqa: E402
    build_http_client,
)

LOGIN_URL = "https://login.example.com"
INSTANCE_URL = "https://na1.example.com"
TOKEN_PATH = "/services/oauth2/token"
REVOKE_PATH = "/services/oauth2/revoke"


class FakeSalesforce:
    """Scripted Salesforce endpoints behind httpx.MockTransport

    Token requests issue T1, T2, ... unless a login response is queued.
    Resource requests are answered by the handler registered for
    (method, path), or by queued responses for that route.
    """

    login_url = LOGIN_URL
    instance_url = INSTANCE_URL

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.requests: list[httpx.Request] = []
        self.login_count = 0
        self.revoked: list[str] = []
        self.login_responses: list[httpx.Response] = []
        self.revoke_status = 200
        self.routes: dict[tuple[str, str], list] = {}
        self.login_delay: threading.Event | None = None

    def queue_login(self, status_code: int, payload: dict) -> None:
        self.login_responses.append(httpx.Response(status_code, json=payload))

    def route(
        self,
        method: str,
        path: str,
        *responses: httpx.Response | Callable[[httpx.Request], httpx.Response],
    ) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self.lock:
            self.requests.append(request)

        if request.url.path == TOKEN_PATH:
            return self._login()
        if request.url.path == REVOKE_PATH:
            with self.lock:
                self.revoked.append(request.url.params.get("token"))
            return httpx.Response(self.revoke_status)

        key = (request.method, request.url.path)
        with self.lock:
            queue = self.routes.get(key)
            if not queue:
                return httpx.Response(
                    404, json=[{"errorCode": "NOT_FOUND", "message": "no route"}]
                )
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response):
            return response(request)
        # fresh copy, sticky responses are served more than once
        return httpx.Response(
            response.status_code, headers=response.headers, content=response.content
        )

    def _login(self) -> httpx.Response:
        if self.login_delay is not None:
            self.login_delay.wait(timeout=5)
        with self.lock:
            if self.login_responses:
                return self.login_responses.pop(0)
            self.login_count += 1
            token = f"T{self.login_count}"
        return httpx.Response(
            200,
            json={
                "access_token": token,
                "instance_url": INSTANCE_URL,
                "token_type": "Bearer",
            },
        )


@pytest.fixture
def fake_salesforce() -> FakeSalesforce:
    return FakeSalesforce()


@pytest.fixture
def http_client(fake_salesforce: FakeSalesforce):
    client = build_http_client(
        timeout=5.0, transport=httpx.MockTransport(fake_salesforce.handler)
    )
    yield client
    client.close()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(
        login_url=LOGIN_URL + "/",
        client_id="client-id",
        client_secret="client-secret",
        username="user@example.com",
        password="secret",
    )


@pytest.fixture
def session(credentials: Credentials, http_client: httpx.Client) -> SessionManager:
    return SessionManager(credentials, http_client)

