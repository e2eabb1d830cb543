from __future__ import annotations

import logging
import os
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI

import config
import startcmd
from secret_lock import AWSSecretLock, LocalSecretLock, NoopSecretLock
from startcmd import HTTPServer, StartupError, build_parser, run, set_log_level, split_host_port

AWS_KEY_URI = "aws-kms://arn:aws:kms:ca-central-1:111122223333:key/bc436485-5092-42b8-92a3-0aa8b93536dc"


class _FakeServer:
    """Records listen_and_serve calls instead of binding a socket."""

    def __init__(self, exc: Exception = None):
        self.calls = []
        self.exc = exc
        self.log = MagicMock()

    def listen_and_serve(self, host, cert_file, key_file, app):
        self.calls.append((host, cert_file, key_file, app))
        if self.exc is not None:
            raise self.exc

    def logger(self):
        return self.log


@pytest.fixture(autouse=True)
def _restore_log_levels():
    names = (config.LOGGER_NAME,) + startcmd._NOISY_LOGGERS
    saved = {name: logging.getLogger(name).level for name in names}
    yield
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(config.ENV_PREFIX):
            monkeypatch.delenv(key)


# =============================================================================
# Command definition
# =============================================================================


def test_parser_declares_every_flag():
    parser = build_parser()
    flags = {opt for action in parser._actions for opt in action.option_strings}
    for flag in (
        "--host",
        "--database-type",
        "--database-url",
        "--database-prefix",
        "--secret-lock-type",
        "--secret-lock-key-path",
        "--tls-systemcertpool",
        "--tls-cacerts",
        "--key-store-cache-ttl",
        "--kms-cache-ttl",
        "--enable-cache",
        "--log-level",
    ):
        assert flag in flags


def test_command_descriptions():
    assert startcmd.START_SHORT == "Starts kms-server"
    assert build_parser().description == startcmd.START_LONG


# =============================================================================
# start
# =============================================================================


class TestStart:
    def test_missing_database_type(self):
        server = _FakeServer()
        with pytest.raises(StartupError) as exc_info:
            run(server, ["--host", "localhost:8080"], environ={})
        assert str(exc_info.value) == (
            "get parameters: neither database-type (command line flag) "
            "nor KMS_DATABASE_TYPE (environment variable) have been set"
        )
        assert server.calls == []

    def test_mem_with_local_lock(self, secret_lock_key_file):
        server = _FakeServer()
        params = run(
            server,
            [
                "--host", "localhost:8080",
                "--database-type", "mem",
                "--secret-lock-type", "local",
                "--secret-lock-key-path", secret_lock_key_file,
            ],
            environ={},
        )
        assert params.host == "localhost:8080"
        host, cert, key, app = server.calls[0]
        assert (host, cert, key) == ("localhost:8080", "", "")
        assert isinstance(app, FastAPI)
        assert isinstance(app.state.secret_lock, LocalSecretLock)
        assert app.state.storage.database_type == "mem"

    def test_mongodb(self):
        server = _FakeServer()
        run(
            server,
            [
                "--database-type", "mongodb",
                "--database-url", "mongodb://localhost:27017",
                "--database-prefix", "kms",
                "--secret-lock-type", "none",
            ],
            environ={},
        )
        host, _, _, app = server.calls[0]
        assert host == config.DEFAULT_HOST
        assert app.state.storage.url == "mongodb://localhost:27017"
        assert isinstance(app.state.secret_lock, NoopSecretLock)

    def test_environment_only(self, secret_lock_key_file):
        server = _FakeServer()
        params = run(
            server,
            [],
            environ={
                "KMS_HOST": "localhost:8081",
                "KMS_DATABASE_TYPE": "mem",
                "KMS_SECRET_LOCK_TYPE": "local",
                "KMS_SECRET_LOCK_KEY_PATH": secret_lock_key_file,
                "KMS_CACHE_ENABLE": "true",
                "KMS_KMS_CACHE_TTL": "5m",
            },
        )
        assert params.enable_cache is True
        assert server.calls[0][0] == "localhost:8081"

    def test_tls_flags(self, ca_cert_file):
        server = _FakeServer()
        run(
            server,
            [
                "--database-type", "mem",
                "--secret-lock-type", "none",
                "--tls-systemcertpool", "true",
                "--tls-cacerts", ca_cert_file,
                "--tls-serve-cert", "/etc/kms/tls.crt",
                "--tls-serve-key", "/etc/kms/tls.key",
            ],
            environ={},
        )
        _, cert, key, app = server.calls[0]
        assert (cert, key) == ("/etc/kms/tls.crt", "/etc/kms/tls.key")
        assert app.state.tls_context is not None

    def test_aws_lock(self, monkeypatch):
        monkeypatch.setattr("secret_lock.boto3.client", MagicMock())
        server = _FakeServer()
        run(
            server,
            [
                "--database-type", "mem",
                "--secret-lock-type", "aws",
                "--secret-lock-aws-key-uri", AWS_KEY_URI,
                "--secret-lock-aws-access-key", "ak",
                "--secret-lock-aws-secret-key", "sk",
            ],
            environ={},
        )
        assert isinstance(server.calls[0][3].state.secret_lock, AWSSecretLock)

    def test_unknown_database_type(self):
        server = _FakeServer()
        with pytest.raises(StartupError, match="^start server: 'couchdb' is not a valid database type"):
            run(server, ["--database-type", "couchdb", "--secret-lock-type", "none"], environ={})
        assert server.calls == []

    def test_unknown_secret_lock_type(self):
        server = _FakeServer()
        with pytest.raises(StartupError, match="^start server: unsupported secret lock type"):
            run(server, ["--database-type", "mem", "--secret-lock-type", "vault"], environ={})

    def test_listen_failure(self):
        server = _FakeServer(exc=OSError("address already in use"))
        with pytest.raises(StartupError, match="^start server: address already in use$"):
            run(server, ["--database-type", "mem", "--secret-lock-type", "none"], environ={})

    def test_metrics_server_started(self, monkeypatch):
        start_metrics = MagicMock()
        monkeypatch.setattr(startcmd, "start_metrics", start_metrics)
        server = _FakeServer()
        run(
            server,
            [
                "--database-type", "mem",
                "--secret-lock-type", "none",
                "--metrics-host", "localhost:9090",
            ],
            environ={},
        )
        start_metrics.assert_called_once_with(server, "localhost:9090")
        assert server.calls[0][0] == config.DEFAULT_HOST

    def test_no_metrics_server_by_default(self, monkeypatch):
        start_metrics = MagicMock()
        monkeypatch.setattr(startcmd, "start_metrics", start_metrics)
        run(_FakeServer(), ["--database-type", "mem", "--secret-lock-type", "none"], environ={})
        start_metrics.assert_not_called()


# =============================================================================
# Log level
# =============================================================================


@pytest.mark.parametrize(
    "name, level",
    [
        ("critical", logging.CRITICAL),
        ("error", logging.ERROR),
        ("warning", logging.WARNING),
        ("info", logging.INFO),
        ("debug", logging.DEBUG),
        ("DEBUG", logging.DEBUG),
    ],
)
def test_set_log_level(name, level):
    assert set_log_level(name) == level
    assert logging.getLogger(config.LOGGER_NAME).level == level


def test_invalid_log_level_defaults_to_info(caplog):
    with caplog.at_level(logging.WARNING, logger="kms-server.startcmd"):
        assert set_log_level("verbose") == logging.INFO
    assert "not a valid logging level" in caplog.text


def test_log_level_flag_applied():
    run(
        _FakeServer(),
        ["--database-type", "mem", "--secret-lock-type", "none", "--log-level", "debug"],
        environ={},
    )
    assert logging.getLogger(config.LOGGER_NAME).level == logging.DEBUG


# =============================================================================
# Metrics thread
# =============================================================================


def test_start_metrics_failure_is_logged():
    server = _FakeServer(exc=OSError("bind failed"))
    thread = startcmd.start_metrics(server, "localhost:9090")
    thread.join(timeout=5)
    assert not thread.is_alive()
    server.log.critical.assert_called_once()
    assert "bind failed" in server.log.critical.call_args[0][0]


# =============================================================================
# HTTPServer
# =============================================================================


class TestHTTPServer:
    def test_missing_port(self):
        with pytest.raises(ValueError, match="missing port in address"):
            HTTPServer().listen_and_serve("wronghost", "", "", FastAPI())

    def test_missing_cert_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            HTTPServer().listen_and_serve("localhost:8080", str(tmp_path / "tls.crt"), str(tmp_path / "tls.key"), FastAPI())

    def test_runs_uvicorn(self, monkeypatch):
        uvicorn_run = MagicMock()
        monkeypatch.setattr(startcmd.uvicorn, "run", uvicorn_run)
        app = FastAPI()
        HTTPServer().listen_and_serve("localhost:8080", "", "", app)
        uvicorn_run.assert_called_once_with(
            app, host="localhost", port=8080, ssl_certfile=None, ssl_keyfile=None, log_config=None
        )

    def test_logger(self):
        assert HTTPServer().logger().name == "kms-server.http"


@pytest.mark.parametrize(
    "address, expected",
    [
        ("localhost:8080", ("localhost", 8080)),
        (":8074", ("0.0.0.0", 8074)),
        ("[::1]:443", ("::1", 443)),
    ],
)
def test_split_host_port(address, expected):
    assert split_host_port(address) == expected


@pytest.mark.parametrize("address", ["localhost", "localhost:http", "localhost:70000", "::1", "[::1:443", "fe80::1:8080"])
def test_split_host_port_invalid(address):
    with pytest.raises(ValueError):
        split_host_port(address)


# =============================================================================
# main
# =============================================================================


def test_main_reports_startup_error(clean_env, capsys):
    assert startcmd.main(["start"]) == 1
    err = capsys.readouterr().err
    assert err.startswith("kms-server: get parameters: neither database-type")


def test_main_reports_out_of_range_ttl(clean_env, capsys):
    argv = [
        "start",
        "--database-type", "mem",
        "--secret-lock-type", "none",
        "--enable-cache", "true",
        "--kms-cache-ttl", "99999999999h",
    ]
    assert startcmd.main(argv) == 1
    err = capsys.readouterr().err
    assert "kms-server: get parameters: kms-cache-ttl: invalid duration '99999999999h'" in err


def test_main_starts_server(clean_env, monkeypatch):
    server = _FakeServer()
    monkeypatch.setattr(startcmd, "HTTPServer", lambda: server)
    assert startcmd.main(["start", "--database-type", "mem", "--secret-lock-type", "none"]) == 0
    assert len(server.calls) == 1


def test_main_requires_command(capsys):
    with pytest.raises(SystemExit):
        startcmd.main([])


def test_split_host_port_unbracketed_ipv6():
    with pytest.raises(ValueError, match="too many colons in address"):
        split_host_port("::1")
