"""ResilientApiClient - HTTP requests with session-expiry retry"""

import io
from typing import IO
from urllib.parse import quote

import httpx
from loguru import logger

from sfgate.core.cancellation import CancelToken
from sfgate.shared.exceptions import (
    OperationCancelled,
    RequestReplayError,
    TransportError,
)

from .errors import decode_error_response
from .session import SessionManager

SESSION_EXPIRED = 401
SERVICES_DATA = "/services/data/"
CONTENT_TYPES = {
    "json": "application/json;charset=UTF-8",
    "xml": "application/xml;charset=UTF-8",
}

Body = bytes | str | IO | None


class _ReplayableBody:
    """Request body that can be re-read for a single replay

    bytes and str are buffered; file objects are used as given and can only
    be replayed when seekable.
    """

    def __init__(self, body: Body) -> None:
        self._stream: IO | None
        self._start: int | None = None
        if body is None:
            self._stream = None
        elif isinstance(body, (bytes, bytearray, str)):
            data = body.encode("utf-8") if isinstance(body, str) else bytes(body)
            self._stream = io.BytesIO(data)
            self._start = 0
        else:
            self._stream = body
            seekable = getattr(body, "seekable", None)
            if callable(seekable) and seekable():
                self._start = body.tell()

    @property
    def present(self) -> bool:
        return self._stream is not None

    def read(self) -> bytes | None:
        if self._stream is None:
            return None
        data = self._stream.read()
        return data.encode("utf-8") if isinstance(data, str) else data

    def rewind(self) -> bytes | None:
        """Reset the body to its start and read it again

        Raises:
            RequestReplayError: If the body stream cannot be reset
        """
        if self._stream is None:
            return None
        if self._start is None:
            raise RequestReplayError(
                "Cannot retry request after session refresh: "
                "request body is not seekable"
            )
        self._stream.seek(self._start)
        return self.read()


class ResilientApiClient:
    """Authenticated HTTP executor

    Responsibilities:
    - Stamping requests with the cached access token
    - Refresh and single replay on HTTP 401
    - Decoding provider error responses

    The cached token may go stale when another client refreshes the shared
    session; it is corrected on the next 401.
    """

    def __init__(
        self,
        session: SessionManager,
        http_client: httpx.Client,
        payload_format: str = "json",
    ) -> None:
        """Initialize API client

        Logs in when the session holds no token yet.

        Args:
            session: Shared session manager
            http_client: Shared HTTP client
            payload_format: "json" or "xml", used for Accept and error decoding
        """
        if payload_format not in CONTENT_TYPES:
            raise ValueError(f"Unsupported payload format: {payload_format}")
        self._session = session
        self._http_client = http_client
        self._format = payload_format

        # local cache
        snapshot = session.snapshot()
        if snapshot.access_token is None:
            session.login(None)
            snapshot = session.snapshot()
        self._access_token = snapshot.access_token
        self._instance_url = snapshot.instance_url

    @property
    def access_token(self) -> str | None:
        """Get cached access token"""
        return self._access_token

    @property
    def instance_url(self) -> str | None:
        """Get cached instance URL"""
        return self._instance_url

    @property
    def payload_format(self) -> str:
        return self._format

    def execute(
        self,
        method: str,
        path: str,
        body: Body = None,
        headers: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
    ) -> io.BytesIO | None:
        """Execute an authenticated request

        Flow: request -> 401 -> refresh session -> replay once. A second 401
        is reported like any other error status.

        Args:
            method: HTTP method
            path: Path relative to the instance URL, or an absolute URL
            body: Request body (bytes, str or a file object)
            headers: Extra request headers
            cancel: Optional token to abandon the call between round trips

        Returns:
            Response content, or None for an empty 2xx response

        Raises:
            RemoteApiError: On a non-2xx response
            TransportError: On network failure
            RequestReplayError: If a 401 retry needs a non-seekable body
            OperationCancelled: If cancel is set before a round trip
        """
        method = method.upper()
        request_body = _ReplayableBody(body)

        self._check_cancelled(cancel, method, path)
        response = self._send(method, path, request_body.read(), headers)

        if response.status_code == SESSION_EXPIRED:
            logger.warning(
                f"Retrying {method} on session expiry: {response.reason_phrase}"
            )
            response.close()
            self._refresh_token()

            content = request_body.rewind()
            self._check_cancelled(cancel, method, path)
            response = self._send(method, path, content, headers)

        try:
            return self._handle_response(method, response)
        finally:
            response.close()

    def _refresh_token(self) -> None:
        self._access_token = self._session.login(self._access_token)
        self._instance_url = self._session.instance_url

    def _check_cancelled(
        self, cancel: CancelToken | None, method: str, path: str
    ) -> None:
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"{method} {path} cancelled")

    def _resolve_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if self._instance_url is None:
            raise TransportError("No instance URL, login first")
        return self._instance_url.rstrip("/") + "/" + path.lstrip("/")

    def _build_headers(
        self, content: bytes | None, extra: dict[str, str] | None
    ) -> dict[str, str]:
        content_type = CONTENT_TYPES[self._format]
        headers = {
            "Accept": content_type.split(";")[0],
            "Accept-Charset": "UTF-8",
        }
        if content is not None:
            headers["Content-Type"] = content_type
        if extra:
            headers.update(extra)
        headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    def _send(
        self,
        method: str,
        path: str,
        content: bytes | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        url = self._resolve_url(path)
        headers = self._build_headers(content, extra_headers)
        logger.debug(f"{method} {url}")
        try:
            return self._http_client.request(
                method, url, content=content, headers=headers
            )
        except httpx.HTTPError as e:
            msg = f"Unexpected Error: {e}"
            logger.error(msg)
            raise TransportError(msg) from e

    def _handle_response(
        self, method: str, response: httpx.Response
    ) -> io.BytesIO | None:
        status_code = response.status_code
        if 200 <= status_code < 300:
            content = response.content
            return io.BytesIO(content) if content else None

        logger.error(
            f"Error {{{status_code}:{response.reason_phrase}}} "
            f"executing {{{method}:{response.request.url.path}}}"
        )
        raise decode_error_response(response, self._format)


class RestClient(ResilientApiClient):
    """REST API operations used by the access layer

    URLs follow {instance_url}/services/data/v{version}/...
    """

    def __init__(
        self,
        session: SessionManager,
        http_client: httpx.Client,
        api_version: str,
        payload_format: str = "json",
    ) -> None:
        super().__init__(session, http_client, payload_format)
        self._api_version = api_version

    @property
    def api_version(self) -> str:
        return self._api_version

    def _version_path(self) -> str:
        if not self._api_version:
            raise ValueError("NULL API version")
        return f"{SERVICES_DATA}v{self._api_version}/"

    def _sobjects_path(self, suffix: str) -> str:
        return f"{self._version_path()}sobjects/{suffix}"

    def query(self, soql: str, cancel: CancelToken | None = None) -> io.BytesIO | None:
        """Execute a SOQL query"""
        return self.execute(
            "GET",
            f"{self._version_path()}query/?q={quote(soql, safe='')}",
            cancel=cancel,
        )

    def query_more(
        self, next_records_url: str, cancel: CancelToken | None = None
    ) -> io.BytesIO | None:
        """Fetch the next page of query results"""
        return self.execute("GET", next_records_url, cancel=cancel)

    def get_sobject(
        self,
        sobject_name: str,
        sobject_id: str,
        fields: list[str] | None = None,
        cancel: CancelToken | None = None,
    ) -> io.BytesIO | None:
        path = self._sobjects_path(f"{sobject_name}/{sobject_id}")
        if fields:
            path += "?fields=" + ",".join(fields)
        return self.execute("GET", path, cancel=cancel)

    def create_sobject(
        self, sobject_name: str, body: Body, cancel: CancelToken | None = None
    ) -> io.BytesIO | None:
        return self.execute(
            "POST", self._sobjects_path(sobject_name), body=body, cancel=cancel
        )

    def update_sobject(
        self,
        sobject_name: str,
        sobject_id: str,
        body: Body,
        cancel: CancelToken | None = None,
    ) -> None:
        self.execute(
            "PATCH",
            self._sobjects_path(f"{sobject_name}/{sobject_id}"),
            body=body,
            cancel=cancel,
        )

    def delete_sobject(
        self,
        sobject_name: str,
        sobject_id: str,
        cancel: CancelToken | None = None,
    ) -> None:
        self.execute(
            "DELETE",
            self._sobjects_path(f"{sobject_name}/{sobject_id}"),
            cancel=cancel,
        )
