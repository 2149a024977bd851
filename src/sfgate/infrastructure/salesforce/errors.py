"""Decoding of Salesforce REST error responses (JSON and XML)"""

import json
import xml.etree.ElementTree as ET

import httpx
from loguru import logger
from pydantic import TypeAdapter, ValidationError

from sfgate.shared.exceptions import RemoteApiError

from .models import RestError

_REST_ERRORS = TypeAdapter(list[RestError])


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_json_errors(content: bytes) -> list[RestError]:
    """Parse a JSON array of {errorCode, message, fields} objects

    A single error object (not wrapped in an array) is also accepted.

    Raises:
        ValueError: If the content is not a valid error list
    """
    data = json.loads(content)
    if isinstance(data, dict):
        data = [data]
    return _REST_ERRORS.validate_python(data)


def parse_xml_errors(content: bytes) -> list[RestError]:
    """Parse an XML <Errors><Error>...</Error></Errors> document

    Raises:
        ValueError: If the content is not a valid error list document
    """
    root = ET.fromstring(content)
    if _local_name(root.tag) == "Error":
        elements = [root]
    elif _local_name(root.tag) == "Errors":
        elements = [e for e in root if _local_name(e.tag) == "Error"]
    else:
        raise ValueError(f"Unexpected XML error root <{root.tag}>")

    errors = []
    for element in elements:
        values: dict = {"fields": []}
        for child in element:
            name = _local_name(child.tag)
            text = (child.text or "").strip()
            if name == "fields":
                values["fields"].append(text)
            elif name in ("errorCode", "message"):
                values[name] = text
        errors.append(RestError.model_validate(values))
    return errors


def decode_error_response(
    response: httpx.Response, payload_format: str
) -> RemoteApiError:
    """Build a RemoteApiError from a non-2xx response

    The body is parsed according to the negotiated payload format. When it
    is absent or cannot be parsed, the reason phrase and status code are
    reported instead.

    Args:
        response: Response whose body has already been read
        payload_format: "json" or "xml"

    Returns:
        RemoteApiError carrying status code and decoded error entries
    """
    status_code = response.status_code
    content = response.content
    if content:
        try:
            if payload_format == "json":
                errors = parse_json_errors(content)
            else:
                errors = parse_xml_errors(content)
            return RemoteApiError.from_errors(errors, status_code)
        except (ValueError, ET.ParseError, ValidationError) as e:
            logger.warning(
                f"Unexpected error parsing {payload_format} error response: {e}"
            )

    return RemoteApiError(response.reason_phrase, status_code)
