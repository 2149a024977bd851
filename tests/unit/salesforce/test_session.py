"""Tests for SessionManager login, refresh and logout"""

import threading
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from sfgate.infrastructure.salesforce.session import Credentials, SessionManager
from sfgate.shared.exceptions import (
    AuthenticationError,
    RemoteApiError,
    TransportError,
)


@pytest.mark.unit
def test_credentials_strip_trailing_slash(credentials):
    assert credentials.login_url == "https://login.example.com"


@pytest.mark.unit
def test_credentials_require_all_fields():
    with pytest.raises(ValueError, match="password"):
        Credentials(
            login_url="https://login.example.com",
            client_id="id",
            client_secret="secret",
            username="user",
            password="",
        )


@pytest.mark.unit
def test_credentials_repr_hides_secrets(credentials):
    text = repr(credentials)
    assert "client-secret" not in text
    assert "'secret'" not in text
    assert "user@example.com" in text


@pytest.mark.unit
def test_login_posts_password_grant(session, fake_salesforce):
    token = session.login(None)

    assert token == "T1"
    assert session.access_token == "T1"
    assert session.instance_url == fake_salesforce.instance_url

    (request,) = fake_salesforce.requests_to("/services/oauth2/token")
    assert request.method == "POST"
    form = httpx.QueryParams(request.content.decode())
    assert form["grant_type"] == "password"
    assert form["client_id"] == "client-id"
    assert form["client_secret"] == "client-secret"
    assert form["username"] == "user@example.com"
    assert form["password"] == "secret"
    assert form["format"] == "json"


@pytest.mark.unit
def test_login_returns_held_token_without_network(session, fake_salesforce):
    session.login(None)

    assert session.login(None) == "T1"
    assert session.login("some-older-token") == "T1"
    assert fake_salesforce.login_count == 1


@pytest.mark.unit
def test_login_with_stale_token_revokes_and_refreshes(session, fake_salesforce):
    """Presenting the held token means it was rejected: revoke it, log in again."""
    session.login(None)

    token = session.login("T1")

    assert token == "T2"
    assert fake_salesforce.revoked == ["T1"]
    assert fake_salesforce.login_count == 2


@pytest.mark.unit
def test_login_refresh_survives_revoke_failure(session, fake_salesforce):
    session.login(None)
    fake_salesforce.revoke_status = 400

    assert session.login("T1") == "T2"


@pytest.mark.unit
def test_login_invalid_grant_raises_authentication_error(session, fake_salesforce):
    fake_salesforce.queue_login(
        400,
        {
            "error": "invalid_grant",
            "error_description": "authentication failure",
        },
    )

    with pytest.raises(AuthenticationError) as exc_info:
        session.login(None)

    error = exc_info.value
    assert error.code == "invalid_grant"
    assert error.description == "authentication failure"
    assert error.status_code == 400
    assert "invalid_grant" in str(error)
    assert session.access_token is None


@pytest.mark.unit
def test_login_unexpected_status_uses_reason(session, fake_salesforce):
    fake_salesforce.login_responses.append(httpx.Response(503))

    with pytest.raises(AuthenticationError) as exc_info:
        session.login(None)

    assert exc_info.value.code is None
    assert exc_info.value.status_code == 503
    assert exc_info.value.description == "Service Unavailable"


@pytest.mark.unit
def test_login_network_failure_raises_transport_error(credentials):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        session = SessionManager(credentials, client)
        with pytest.raises(TransportError):
            session.login(None)


@pytest.mark.unit
def test_concurrent_logins_share_one_network_login(session, fake_salesforce):
    """Many threads presenting the same stale token cause exactly one refresh."""
    session.login(None)
    assert fake_salesforce.login_count == 1

    gate = threading.Event()
    fake_salesforce.login_delay = gate

    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [pool.submit(session.login, "T1") for _ in range(8)]
        gate.set()
        tokens = [f.result(timeout=10) for f in futures]

    assert tokens == ["T2"] * 8
    assert fake_salesforce.login_count == 2
    assert fake_salesforce.revoked == ["T1"]


@pytest.mark.unit
def test_logout_revokes_and_clears(session, fake_salesforce):
    session.login(None)

    session.logout()

    assert fake_salesforce.revoked == ["T1"]
    assert session.access_token is None
    assert session.instance_url is None


@pytest.mark.unit
def test_logout_without_session_is_noop(session, fake_salesforce):
    session.logout()

    assert fake_salesforce.requests == []


@pytest.mark.unit
def test_logout_clears_session_even_on_error(session, fake_salesforce):
    session.login(None)
    fake_salesforce.revoke_status = 400

    with pytest.raises(RemoteApiError) as exc_info:
        session.logout()

    assert exc_info.value.status_code == 400
    assert session.access_token is None
    assert session.instance_url is None


@pytest.mark.unit
def test_logout_other_status_raises_remote_api_error(session, fake_salesforce):
    session.login(None)
    fake_salesforce.revoke_status = 500

    with pytest.raises(RemoteApiError) as exc_info:
        session.logout()

    assert exc_info.value.status_code == 500
    assert session.access_token is None
