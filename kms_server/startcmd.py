"""
=============================================================================
kms-server start (startcmd.py)
=============================================================================

Command line entry point.

    kms-server start --database-type mem --secret-lock-type local \\
        --secret-lock-key-path /etc/kms/secret-lock.key

Startup sequence:
  1. Resolve flags / KMS_* environment variables (parameters.py).
  2. Apply --log-level.
  3. If --metrics-host is set, serve Prometheus metrics on a daemon thread.
  4. Select the storage provider and secret lock, build the FastAPI app and
     hand it to the server's ``listen_and_serve``.

The server is passed in, so tests swap uvicorn for a fake exposing the same
two methods::

    listen_and_serve(host, cert_file, key_file, app) -> None
    logger() -> logging.Logger
"""

from __future__ import annotations

import argparse
import errno
import logging
import os
import sys
import threading
from typing import List, Mapping, Optional, Tuple

import uvicorn

import config
from app import create_app
from errors import ParameterError
from metrics import create_metrics_app
from parameters import ServerParameters, add_flags, resolve_parameters
from secret_lock import create_secret_lock
from storage import create_storage_provider
from tlsutil import build_ssl_context

logger = logging.getLogger("kms-server.startcmd")

START_SHORT = "Starts kms-server"
START_LONG = "Starts server for handling key management and crypto operations"

_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_NOISY_LOGGERS = ("urllib3", "botocore", "uvicorn.access")


class StartupError(RuntimeError):
    """Raised when the server cannot be configured or started."""


# =============================================================================
# HTTP server
# =============================================================================

def split_host_port(address: str) -> Tuple[str, int]:
    """Split "host:port"; ValueError if the port is missing or invalid."""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address}: missing port in address")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"address {address}: invalid port {port!r}") from None
    if not 0 <= port_num <= 65535:
        raise ValueError(f"address {address}: invalid port {port!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host or "[" in host or "]" in host:
        raise ValueError(f"address {address}: too many colons in address")
    return host or "0.0.0.0", port_num


class HTTPServer:
    """Serves an ASGI app with uvicorn, over HTTPS when both TLS files are given."""

    def listen_and_serve(self, host: str, cert_file: str, key_file: str, app) -> None:
        hostname, port = split_host_port(host)
        for path in (cert_file, key_file):
            if path and not os.path.isfile(path):
                raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), path)

        uvicorn.run(
            app,
            host=hostname,
            port=port,
            ssl_certfile=cert_file or None,
            ssl_keyfile=key_file or None,
            log_config=None,
        )

    def logger(self) -> logging.Logger:
        return logging.getLogger("kms-server.http")


# =============================================================================
# Startup steps
# =============================================================================

def set_log_level(name: str) -> int:
    """Apply *name* to the service logger; unknown names fall back to info."""
    level = _LOG_LEVELS.get((name or "").strip().lower())
    if level is None:
        logger.warning(
            f"{name!r} is not a valid logging level. It must be one of: "
            f"{', '.join(_LOG_LEVELS)}. Defaulting to {config.DEFAULT_LOG_LEVEL}."
        )
        level = _LOG_LEVELS[config.DEFAULT_LOG_LEVEL]

    logging.getLogger(config.LOGGER_NAME).setLevel(level)
    if level == logging.DEBUG:
        for noisy in _NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)
    return level


def start_metrics(server, address: str) -> threading.Thread:
    """Serve the metrics app on *address* in a daemon thread."""
    metrics_app = create_metrics_app()

    def _serve() -> None:
        try:
            server.listen_and_serve(address, "", "", metrics_app)
        except Exception as exc:
            server.logger().critical(f"Failed to start metrics server on {address}: {exc}")

    thread = threading.Thread(target=_serve, name="kms-metrics", daemon=True)
    thread.start()
    logger.info(f"Metrics server starting on {address}")
    return thread


def start_server(server, params: ServerParameters) -> None:
    try:
        storage = create_storage_provider(
            params.database_type, params.database_url, params.database_prefix
        )
        secret_lock = create_secret_lock(params)
    except ValueError as exc:
        raise StartupError(f"start server: {exc}") from exc

    tls_context = build_ssl_context(params.tls_system_cert_pool, params.tls_ca_bundle)
    app = create_app(params, storage=storage, secret_lock=secret_lock, tls_context=tls_context)

    logger.info(f"Starting kms-server on host {params.host}")
    try:
        server.listen_and_serve(params.host, params.tls_serve_cert, params.tls_serve_key, app)
    except (OSError, ValueError) as exc:
        raise StartupError(f"start server: {exc}") from exc


def start(server, args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> ServerParameters:
    try:
        params = resolve_parameters(args, environ)
    except ParameterError as exc:
        raise StartupError(f"get parameters: {exc}") from exc

    set_log_level(params.log_level)

    if params.metrics_host:
        start_metrics(server, params.metrics_host)

    start_server(server, params)
    return params


# =============================================================================
# Command line
# =============================================================================

def build_parser(parser: Optional[argparse.ArgumentParser] = None) -> argparse.ArgumentParser:
    """Flags of the start command, added to *parser* or to a new one."""
    if parser is None:
        parser = argparse.ArgumentParser(prog="kms-server start", description=START_LONG)
    return add_flags(parser)


def run(server, argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> ServerParameters:
    """Parse start command arguments and start *server*."""
    args = build_parser().parse_args(argv)
    return start(server, args, environ)


def main(argv: Optional[List[str]] = None) -> int:
    root = argparse.ArgumentParser(prog="kms-server", description="Key management server")
    commands = root.add_subparsers(dest="command", required=True)
    build_parser(commands.add_parser("start", help=START_SHORT, description=START_LONG))
    args = root.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=config.LOG_FORMAT)

    try:
        start(HTTPServer(), args)
    except StartupError as exc:
        print(f"kms-server: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
