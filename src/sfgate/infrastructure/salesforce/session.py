"""SessionManager - OAuth password-grant login, refresh and revoke"""

import threading
from dataclasses import dataclass, field

import httpx
from loguru import logger
from pydantic import ValidationError

from sfgate.shared.exceptions import (
    AuthenticationError,
    RemoteApiError,
    SalesforceError,
    TransportError,
)

from .models import LoginError, LoginToken

OAUTH2_TOKEN_PATH = "/services/oauth2/token"
OAUTH2_REVOKE_PATH = "/services/oauth2/revoke"


@dataclass(frozen=True)
class Credentials:
    """OAuth password-grant credentials

    Secrets are excluded from repr so they never reach the logs.
    """

    login_url: str
    client_id: str
    client_secret: str = field(repr=False)
    username: str
    password: str = field(repr=False)

    def __post_init__(self) -> None:
        missing = [
            name
            for name in (
                "login_url",
                "client_id",
                "client_secret",
                "username",
                "password",
            )
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Missing OAuth credentials: {missing}")
        # strip trailing '/'
        object.__setattr__(self, "login_url", self.login_url.rstrip("/"))


@dataclass
class Session:
    """Current access token and instance URL"""

    access_token: str | None = None
    instance_url: str | None = None

    def clear(self) -> None:
        self.access_token = None
        self.instance_url = None


class SessionManager:
    """Manages the OAuth session shared by every client

    Responsibilities:
    - Password-grant token acquisition
    - Single-flight refresh of a stale token
    - Revoking the previous token before acquiring a new one

    All session state is read and written under one lock. Network I/O for
    acquisition happens while holding it, so concurrent refreshes of the
    same stale token collapse into a single login.
    """

    def __init__(self, credentials: Credentials, http_client: httpx.Client) -> None:
        """Initialize session manager

        Args:
            credentials: OAuth credentials
            http_client: Shared HTTP client
        """
        self._credentials = credentials
        self._http_client = http_client
        self._session = Session()
        self._lock = threading.Lock()

    @property
    def access_token(self) -> str | None:
        """Get current access token"""
        with self._lock:
            return self._session.access_token

    @property
    def instance_url(self) -> str | None:
        """Get current instance URL"""
        with self._lock:
            return self._session.instance_url

    @property
    def username(self) -> str:
        return self._credentials.username

    def snapshot(self) -> Session:
        """Get a consistent copy of token and instance URL"""
        with self._lock:
            return Session(
                self._session.access_token, self._session.instance_url
            )

    def login(self, presented_token: str | None = None) -> str:
        """Return a valid access token, logging in if needed

        A new token is acquired only when none is held or the held token
        equals presented_token (the caller saw it rejected). Otherwise the
        token already refreshed by another caller is returned.

        Args:
            presented_token: Token the caller last used, or None

        Returns:
            Current access token

        Raises:
            AuthenticationError: If the token endpoint rejects the login
            TransportError: If the token endpoint cannot be reached
        """
        with self._lock:
            current = self._session.access_token
            if current is not None and current != presented_token:
                return current

            if current is not None:
                try:
                    self._revoke_locked()
                except SalesforceError as e:
                    logger.warning(f"Error revoking old access token: {e}")

            self._acquire_locked()
            return self._session.access_token  # type: ignore[return-value]

    def logout(self) -> None:
        """Revoke the current token and forget the session

        The session is cleared even when the revoke call fails.

        Raises:
            RemoteApiError: If the revoke endpoint returns an error status
            TransportError: If the revoke endpoint cannot be reached
        """
        with self._lock:
            self._revoke_locked()

    def _acquire_locked(self) -> None:
        url = self._credentials.login_url + OAUTH2_TOKEN_PATH
        form = {
            "grant_type": "password",
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "username": self._credentials.username,
            "password": self._credentials.password,
            "format": "json",
        }

        logger.info(f"Logging in to Salesforce as {self._credentials.username}...")
        try:
            response = self._http_client.post(url, data=form)
        except httpx.HTTPError as e:
            msg = f"Login error: Unknown exception {e}"
            logger.error(msg)
            raise TransportError(msg) from e

        try:
            if response.status_code == 200:
                token = LoginToken.model_validate_json(response.content)
                self._session.access_token = token.access_token
                self._session.instance_url = token.instance_url
                logger.info(f"Login successful, instance {token.instance_url}")
            elif response.status_code == 400:
                error = LoginError.model_validate_json(response.content)
                logger.error(
                    f"Login error code:[{error.error}] "
                    f"description:[{error.error_description}]"
                )
                raise AuthenticationError(
                    error.error, error.error_description, status_code=400
                )
            else:
                logger.error(
                    f"Login error status:[{response.status_code}] "
                    f"reason:[{response.reason_phrase}]"
                )
                raise AuthenticationError(
                    None, response.reason_phrase, status_code=response.status_code
                )
        except ValidationError as e:
            msg = f"Login error: unreadable token response ({response.status_code})"
            logger.error(msg)
            raise TransportError(msg) from e
        finally:
            response.close()

    def _revoke_locked(self) -> None:
        token = self._session.access_token
        if token is None:
            return

        url = self._credentials.login_url + OAUTH2_REVOKE_PATH
        try:
            response = self._http_client.get(url, params={"token": token})
            try:
                if response.status_code == 200:
                    logger.info("Logout successful")
                elif response.status_code == 400:
                    logger.error(f"Logout error: {response.reason_phrase}")
                    raise RemoteApiError(response.reason_phrase, 400)
                else:
                    logger.error(
                        f"Logout error code: {response.status_code} "
                        f"reason: {response.reason_phrase}"
                    )
                    raise RemoteApiError(
                        response.reason_phrase, response.status_code
                    )
            finally:
                response.close()
        except httpx.HTTPError as e:
            msg = f"Logout error: {e}"
            logger.error(msg)
            raise TransportError(msg) from e
        finally:
            self._session.clear()
