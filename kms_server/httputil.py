"""
=============================================================================
HTTP Request Helper (httputil.py)
=============================================================================

One authenticated HTTP round trip against a KMS (or any JSON) endpoint.

    resp = do_request(
        Context(timeout=10),
        "https://kms.example.com/v1/keystores",
        with_method("POST"),
        with_body(json.dumps(payload).encode()),
        with_gnap_token(token),
        with_signer(signer),
    )

Behaviour:
  - ``Content-Type: application/json`` is always sent; a GNAP token is sent
    as ``Authorization: GNAP <token>``.
  - The body is read once up front.  A signer runs on the prepared request
    and may drain its body; the body is then put back from the buffered copy
    so the bytes on the wire are the bytes that were signed.
  - Only HTTP 200 is success.  Any other status raises ``HTTPStatusError``
    carrying the body's ``errMessage`` when present, the status line
    otherwise.
  - Transport problems (and a cancelled or expired ``Context``) raise
    ``TransportError`` naming the failing stage.  Nothing is retried.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, BinaryIO, Callable, Optional, Protocol, Union

import requests

import config
from errors import extract_error_message

logger = logging.getLogger("kms-server.httputil")

CONTENT_TYPE = "Content-Type"
APPLICATION_JSON = "application/json"
AUTHORIZATION = "Authorization"

# Shared connection pool used when no client is given.
_default_session = requests.Session()


# =============================================================================
# Errors
# =============================================================================

class ContextCancelledError(Exception):
    """The caller cancelled the request Context."""


class DeadlineExceededError(Exception):
    """The request Context deadline passed."""


class RequestError(RuntimeError):
    """Base class for do_request failures."""


class TransportError(RequestError):
    """The request could not be built, signed, sent or read."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")


class HTTPStatusError(RequestError):
    """The server answered with a status other than 200."""

    def __init__(self, status: str, status_code: int, message: str, body: bytes = b""):
        self.status = status
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(message)


# =============================================================================
# Context
# =============================================================================

class Context:
    """
    Cancellation scope for outbound calls.

    ``timeout`` sets a deadline relative to now.  ``cancel()`` may be called
    from any thread.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def err(self) -> Optional[Exception]:
        if self._cancelled.is_set():
            return ContextCancelledError("context canceled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return DeadlineExceededError("context deadline exceeded")
        return None


# =============================================================================
# Request options
# =============================================================================

class RequestSigner(Protocol):
    def sign(self, request: requests.PreparedRequest) -> None:
        ...


@dataclass(frozen=True)
class RequestOptions:
    http_client: Optional[requests.Session] = None
    method: str = "GET"
    body: Union[bytes, BinaryIO, None] = None
    gnap_token: str = ""
    signer: Optional[RequestSigner] = None


Opt = Callable[[RequestOptions], RequestOptions]


def with_http_client(client: requests.Session) -> Opt:
    """Use *client* instead of the shared default session."""
    return lambda o: dataclasses.replace(o, http_client=client)


def with_method(method: str) -> Opt:
    """HTTP method.  Default is GET."""
    return lambda o: dataclasses.replace(o, method=method.upper())


def with_body(val: bytes) -> Opt:
    return lambda o: dataclasses.replace(o, body=bytes(val))


def with_body_stream(reader: BinaryIO) -> Opt:
    """Body read from a file-like object.  It is read exactly once."""
    return lambda o: dataclasses.replace(o, body=reader)


def with_gnap_token(token: str) -> Opt:
    return lambda o: dataclasses.replace(o, gnap_token=token)


def with_signer(signer: RequestSigner) -> Opt:
    """Sign the prepared request (e.g. HTTP signatures) before it is sent."""
    return lambda o: dataclasses.replace(o, signer=signer)


# =============================================================================
# Response
# =============================================================================

@dataclass(frozen=True)
class Response:
    status: str
    status_code: int
    body: bytes = b""

    def json(self) -> Any:
        return json.loads(self.body)


# =============================================================================
# Request execution
# =============================================================================

def _read_body(body: Union[bytes, BinaryIO, None]) -> bytes:
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    data = body.read()
    if isinstance(data, str):
        data = data.encode("utf-8")
    return data


def _status_line(resp: requests.Response) -> str:
    reason = (resp.reason or "").strip()
    if not reason:
        try:
            reason = HTTPStatus(resp.status_code).phrase
        except ValueError:
            reason = ""
    return f"{resp.status_code} {reason}".strip()


def _close_response(resp: requests.Response, log: logging.Logger) -> None:
    try:
        resp.close()
    except Exception as exc:
        log.error(f"Failed to close response body: {exc}")


def do_request(
    ctx: Optional[Context],
    url: str,
    *opts: Opt,
    log: Optional[logging.Logger] = None,
) -> Response:
    """
    Execute one request against *url*.

    Returns a Response for HTTP 200.  Raises TransportError for build, sign,
    network and body read failures (and when *ctx* is cancelled or expired)
    and HTTPStatusError for every other status code.
    """
    log = log or logger
    ctx = ctx or Context()

    op = RequestOptions()
    for fn in opts:
        op = fn(op)
    session = op.http_client or _default_session

    try:
        body = _read_body(op.body)
    except (OSError, ValueError) as exc:
        raise TransportError("request body", exc) from exc

    request = requests.Request(
        method=op.method,
        url=url,
        data=body,
        headers={CONTENT_TYPE: APPLICATION_JSON},
    )
    if op.gnap_token:
        request.headers[AUTHORIZATION] = f"{config.AUTHORIZATION_SCHEME} {op.gnap_token}"

    try:
        prepared = session.prepare_request(request)
    except (requests.exceptions.RequestException, ValueError) as exc:
        raise TransportError("new request", exc) from exc

    if op.signer is not None:
        try:
            op.signer.sign(prepared)
        except Exception as exc:
            raise TransportError("sign http request", exc) from exc

        # Signing may have drained the body; restore the buffered copy.
        prepared.body = body or None
        prepared.prepare_content_length(prepared.body)

    err = ctx.err()
    if err is not None:
        raise TransportError("http do", err)

    timeout = ctx.remaining()
    if timeout is None:
        timeout = config.DEFAULT_HTTP_TIMEOUT_SECONDS

    # Streamed, so the body is read below, after the Context check.
    settings = session.merge_environment_settings(prepared.url, {}, True, None, None)
    settings["stream"] = True
    try:
        resp = session.send(prepared, timeout=timeout, **settings)
    except requests.exceptions.RequestException as exc:
        raise TransportError("http do", exc) from exc

    try:
        err = ctx.err()
        if err is not None:
            raise TransportError("http do", err)
        try:
            payload = resp.content or b""
        except requests.exceptions.RequestException as exc:
            raise TransportError("read response body", exc) from exc
    finally:
        _close_response(resp, log)

    status = _status_line(resp)
    if resp.status_code != 200:
        message = extract_error_message(payload) if payload else ""
        raise HTTPStatusError(status, resp.status_code, message or status, body=payload)

    return Response(status=status, status_code=resp.status_code, body=payload)
