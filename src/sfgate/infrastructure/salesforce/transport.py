"""Shared httpx transport with request/response logging hooks"""

import httpx
from loguru import logger

from sfgate.core.logbridge import install_logging_bridge

USER_AGENT = "sfgate/0.1"
_MASKED_HEADERS = ("authorization", "cookie")


def _without_query(url: httpx.URL) -> str:
    # query strings may carry tokens (revoke endpoint)
    return f"{url.scheme}://{url.netloc.decode()}{url.path}"


def _log_httpx_request(request: httpx.Request) -> None:
    """Log outbound httpx requests with headers (auth masked)."""
    headers = {
        k: ("***" if k.lower() in _MASKED_HEADERS else v)
        for k, v in request.headers.items()
    }
    # Request bodies are never logged; token requests carry the password.
    logger.debug(
        f"HTTPX request: {request.method} {_without_query(request.url)} {headers}"
    )


def _log_httpx_response(response: httpx.Response) -> None:
    """Log httpx response status."""
    request = response.request
    logger.debug(
        f"HTTPX response: status={response.status_code} "
        f"{request.method} {_without_query(request.url)}"
    )


def build_http_client(
    timeout: float = 60.0,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create the pooled Client shared by session, REST and streaming calls

    Args:
        timeout: Connect/read timeout in seconds
        transport: Optional transport (e.g. httpx.MockTransport in tests)

    Returns:
        httpx.Client with logging event hooks installed
    """
    install_logging_bridge()
    return httpx.Client(
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": USER_AGENT},
        event_hooks={
            "request": [_log_httpx_request],
            "response": [_log_httpx_response],
        },
    )
