"""
Shared error types and the structured error payload.

Every non-2xx response of the server carries the same body shape:
    {"errMessage": "<human readable message>"}

``error_response`` renders it on the server side and
``extract_error_message`` reads it back on the client side.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi.responses import JSONResponse

ERR_MESSAGE_FIELD = "errMessage"


class ParameterError(ValueError):
    """Raised when startup parameters cannot be resolved or validated."""


def missing_parameter_message(flag: str, env: str) -> str:
    return (
        f"neither {flag} (command line flag) nor {env} (environment variable) "
        "have been set"
    )


def extract_message(detail: Any) -> str:
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        for key in (ERR_MESSAGE_FIELD, "message", "error"):
            value = detail.get(key)
            if isinstance(value, str) and value:
                return value
    return str(detail)


def error_response(status_code: int, detail: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={ERR_MESSAGE_FIELD: extract_message(detail)},
    )


def extract_error_message(body: bytes) -> str:
    """Return the ``errMessage`` of a JSON error body, or "" for any other shape."""
    try:
        payload = json.loads(body)
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    message = payload.get(ERR_MESSAGE_FIELD)
    if isinstance(message, str):
        return message
    return ""
