"""
=============================================================================
Startup Parameters (parameters.py)
=============================================================================

Turns command line flags and ``KMS_*`` environment variables into one
immutable ``ServerParameters`` record.

Every setting is declared once in ``OPTIONS``.  Resolution walks that table:

  1. the command line flag, if it was given;
  2. otherwise the environment variable, if it is set and non-empty;
  3. otherwise the option default;
  4. otherwise, for a required option, fail with
     "neither <flag> (command line flag) nor <ENV> (environment variable)
     have been set".

Raw strings are then converted (strict booleans, Go-style durations) and the
cross-field rules are checked: secret lock sub-parameters, database URL,
CA certificate bundles and cache TTLs.  The first failure is raised as a
``ParameterError``; nothing is accumulated and nothing global is mutated, so
resolving the same inputs twice yields equal records.
"""

from __future__ import annotations

import argparse
import datetime
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import config
from errors import ParameterError, missing_parameter_message
from secret_lock import load_local_key, parse_aws_key_uri
from tlsutil import load_ca_certs

logger = logging.getLogger("kms-server.parameters")


# =============================================================================
# Value parsers
# =============================================================================

_TRUE_STRINGS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_STRINGS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def parse_bool(raw: str) -> bool:
    """Strict boolean: accepts 1/t/true and 0/f/false spellings only."""
    if raw in _TRUE_STRINGS:
        return True
    if raw in _FALSE_STRINGS:
        return False
    raise ValueError(f"invalid boolean {raw!r}")


# Nanoseconds per unit.
_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

# Largest duration a signed 64-bit nanosecond count holds (about 2562047h).
_MAX_DURATION_NS = (1 << 63) - 1

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(raw: str) -> datetime.timedelta:
    """
    Parse a duration string such as "300ms", "1.5h" or "1h30m".

    A sign prefix is allowed and a bare "0" means zero; every other number
    needs a unit.  Parts are summed in whole nanoseconds and the result is
    rounded away from zero to the next microsecond, so a non-zero duration
    never becomes a zero timedelta.
    """
    s = raw
    negative = False
    if s[:1] in ("+", "-"):
        negative = s[0] == "-"
        s = s[1:]
    if s == "0":
        return datetime.timedelta(0)
    if not s:
        raise ValueError(f"invalid duration {raw!r}")

    total_ns = 0
    pos = 0
    while pos < len(s):
        match = _DURATION_PART_RE.match(s, pos)
        if match is None:
            raise ValueError(f"invalid duration {raw!r}")
        whole, _, frac = match.group(1).partition(".")
        unit = _DURATION_UNITS[match.group(2)]
        total_ns += int(whole or "0") * unit
        if frac:
            total_ns += int(frac) * unit // 10 ** len(frac)
        if total_ns > _MAX_DURATION_NS:
            raise ValueError(f"invalid duration {raw!r}")
        pos = match.end()

    micros = -(-total_ns // 1_000)
    return datetime.timedelta(microseconds=-micros if negative else micros)


# =============================================================================
# Option table
# =============================================================================

@dataclass(frozen=True)
class ConfigOption:
    """One setting: where it is read from and how its raw string is converted."""

    name: str
    flag: str
    env: str
    usage: str
    default: Optional[str] = None
    required: bool = False
    parse: Optional[Callable[[str], Any]] = None
    multiple: bool = False

    @property
    def dest(self) -> str:
        return self.flag.replace("-", "_")


def _env(name: str) -> str:
    return config.ENV_PREFIX + name


OPTIONS: Tuple[ConfigOption, ...] = (
    ConfigOption(
        "host", "host", _env("HOST"),
        "The host to run the kms-server on. Format: HostName:Port.",
        default=config.DEFAULT_HOST,
    ),
    ConfigOption(
        "tls_system_cert_pool", "tls-systemcertpool", _env("TLS_SYSTEMCERTPOOL"),
        "Use system certificate pool. Possible values [true] [false]. Defaults to false.",
        default="false", parse=parse_bool,
    ),
    ConfigOption(
        "tls_cacerts", "tls-cacerts", _env("TLS_CACERTS"),
        "Comma-separated list of CA certs path. Flag may be repeated.",
        multiple=True,
    ),
    ConfigOption(
        "tls_serve_cert", "tls-serve-cert", _env("TLS_SERVE_CERT"),
        "Path to the server certificate to use when serving HTTPS.",
    ),
    ConfigOption(
        "tls_serve_key", "tls-serve-key", _env("TLS_SERVE_KEY"),
        "Path to the private key to use when serving HTTPS.",
    ),
    ConfigOption(
        "database_type", "database-type", _env("DATABASE_TYPE"),
        "The type of database to use for storage. Supported options: "
        + ", ".join(config.STORAGE_TYPES) + ".",
        required=True,
    ),
    ConfigOption(
        "database_url", "database-url", _env("DATABASE_URL"),
        "The URL of the database. Not needed if using in-memory storage.",
    ),
    ConfigOption(
        "database_prefix", "database-prefix", _env("DATABASE_PREFIX"),
        "An optional prefix to be used when creating and retrieving underlying databases.",
    ),
    ConfigOption(
        "secret_lock_type", "secret-lock-type", _env("SECRET_LOCK_TYPE"),
        "Type of a secret lock used to protect server KMS. Supported options: "
        + ", ".join(config.SECRET_LOCK_TYPES) + ".",
        required=True,
    ),
    ConfigOption(
        "secret_lock_key_path", "secret-lock-key-path", _env("SECRET_LOCK_KEY_PATH"),
        "The path to the file with key to be used by local secret lock.",
    ),
    ConfigOption(
        "secret_lock_aws_key_uri", "secret-lock-aws-key-uri", _env("SECRET_LOCK_AWS_KEY_URI"),
        "The URI of AWS key to be used by server secret lock.",
    ),
    ConfigOption(
        "secret_lock_aws_access_key", "secret-lock-aws-access-key", _env("SECRET_LOCK_AWS_ACCESS_KEY"),
        "AWS access key ID to be used by server secret lock.",
    ),
    ConfigOption(
        "secret_lock_aws_secret_key", "secret-lock-aws-secret-key", _env("SECRET_LOCK_AWS_SECRET_KEY"),
        "AWS secret access key to be used by server secret lock.",
    ),
    ConfigOption(
        "secret_lock_aws_endpoint", "secret-lock-aws-endpoint", _env("SECRET_LOCK_AWS_ENDPOINT"),
        "Optional AWS KMS endpoint override.",
    ),
    ConfigOption(
        "auth_server_url", "auth-server-url", _env("AUTH_SERVER_URL"),
        "The URL of Auth server.",
    ),
    ConfigOption(
        "auth_server_token", "auth-server-token", _env("AUTH_SERVER_TOKEN"),
        "The static token used to protect the GNAP introspection API of Auth server.",
    ),
    ConfigOption(
        "log_level", "log-level", _env("LOG_LEVEL"),
        "Logging level. Supported options: critical, error, warning, info, debug. Defaults to info.",
        default=config.DEFAULT_LOG_LEVEL,
    ),
    ConfigOption(
        "enable_cors", "enable-cors", _env("CORS_ENABLE"),
        "Enables CORS. Possible values [true] [false]. Defaults to false.",
        default="false", parse=parse_bool,
    ),
    ConfigOption(
        "enable_cache", "enable-cache", _env("CACHE_ENABLE"),
        "Enables caching support. Possible values [true] [false]. Defaults to false.",
        default="false", parse=parse_bool,
    ),
    ConfigOption(
        "key_store_cache_ttl", "key-store-cache-ttl", _env("KEY_STORE_CACHE_TTL"),
        "An optional value for key store cache TTL (e.g. 10m). Requires caching to be enabled.",
        parse=parse_duration,
    ),
    ConfigOption(
        "kms_cache_ttl", "kms-cache-ttl", _env("KMS_CACHE_TTL"),
        "An optional value for KMS cache TTL (e.g. 10m). Requires caching to be enabled.",
        parse=parse_duration,
    ),
    ConfigOption(
        "metrics_host", "metrics-host", _env("METRICS_HOST"),
        "The address to expose Prometheus metrics on. Format: HostName:Port.",
    ),
    ConfigOption(
        "enable_zcap", "enable-zcap", _env("ZCAP_ENABLE"),
        "Enables ZCAPs authorization. Possible values [true] [false]. Defaults to false.",
        default="false", parse=parse_bool,
    ),
)

OPTIONS_BY_NAME: Dict[str, ConfigOption] = {option.name: option for option in OPTIONS}


def add_flags(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Declare one flag per option.  Unset flags parse to None."""
    for option in OPTIONS:
        parser.add_argument(
            f"--{option.flag}",
            dest=option.dest,
            default=None,
            action="append" if option.multiple else "store",
            help=option.usage,
        )
    return parser


# =============================================================================
# Resolved configuration
# =============================================================================

@dataclass(frozen=True)
class ServerParameters:
    host: str
    database_type: str
    secret_lock_type: str
    database_url: str = ""
    database_prefix: str = ""
    secret_lock_key_path: str = ""
    secret_lock_key: bytes = field(default=b"", repr=False)
    secret_lock_aws_key_uri: str = ""
    secret_lock_aws_access_key: str = ""
    secret_lock_aws_secret_key: str = field(default="", repr=False)
    secret_lock_aws_endpoint: str = ""
    tls_system_cert_pool: bool = False
    tls_cacerts: Tuple[str, ...] = ()
    tls_ca_bundle: Tuple[bytes, ...] = field(default=(), repr=False)
    tls_serve_cert: str = ""
    tls_serve_key: str = ""
    auth_server_url: str = ""
    auth_server_token: str = field(default="", repr=False)
    log_level: str = config.DEFAULT_LOG_LEVEL
    enable_cors: bool = False
    enable_cache: bool = False
    key_store_cache_ttl: Optional[datetime.timedelta] = None
    kms_cache_ttl: Optional[datetime.timedelta] = None
    metrics_host: str = ""
    enable_zcap: bool = False


# =============================================================================
# Resolution
# =============================================================================

def _lookup(option: ConfigOption, args: argparse.Namespace, environ: Mapping[str, str]) -> Any:
    value = getattr(args, option.dest, None)
    if value is not None:
        return value

    raw = environ.get(option.env, "")
    if raw:
        if option.multiple:
            return [part.strip() for part in raw.split(",") if part.strip()]
        return raw

    if option.default is not None:
        return option.default
    if option.required:
        raise ParameterError(missing_parameter_message(option.flag, option.env))
    return None


def _convert(option: ConfigOption, raw: Any) -> Any:
    if raw is None or option.parse is None:
        return raw
    try:
        return option.parse(raw)
    except ValueError as exc:
        raise ParameterError(f"{option.flag}: {exc}") from exc


def _require(values: Dict[str, Any], name: str) -> str:
    value = values.get(name)
    if not value:
        option = OPTIONS_BY_NAME[name]
        raise ParameterError(missing_parameter_message(option.flag, option.env))
    return value


def _resolve_secret_lock(values: Dict[str, Any]) -> bytes:
    """Validate the sub-parameters of the selected secret lock; return the local key if any."""
    lock_type = values["secret_lock_type"]

    if lock_type == config.SECRET_LOCK_TYPE_LOCAL:
        path = _require(values, "secret_lock_key_path")
        flag = OPTIONS_BY_NAME["secret_lock_key_path"].flag
        try:
            return load_local_key(path)
        except OSError as exc:
            raise ParameterError(f"{flag}: open {path}: {exc.strerror or exc}") from exc
        except ValueError as exc:
            raise ParameterError(f"{flag}: {exc}") from exc

    if lock_type == config.SECRET_LOCK_TYPE_AWS:
        uri = _require(values, "secret_lock_aws_key_uri")
        try:
            parse_aws_key_uri(uri)
        except ValueError as exc:
            raise ParameterError(f"{OPTIONS_BY_NAME['secret_lock_aws_key_uri'].flag}: {exc}") from exc
        _require(values, "secret_lock_aws_access_key")
        _require(values, "secret_lock_aws_secret_key")

    # "none" needs nothing; unknown types are left to secret_lock.create_secret_lock.
    return b""


def _validate_database(values: Dict[str, Any]) -> None:
    if values["database_type"] == config.STORAGE_TYPE_MONGODB:
        _require(values, "database_url")


def _validate_cache_ttls(values: Dict[str, Any]) -> None:
    enabled = values["enable_cache"]
    enable_flag = OPTIONS_BY_NAME["enable_cache"]
    zero = datetime.timedelta(0)

    for name in ("key_store_cache_ttl", "kms_cache_ttl"):
        ttl = values[name]
        if ttl is None:
            continue
        flag = OPTIONS_BY_NAME[name].flag
        if ttl < zero:
            raise ParameterError(f"{flag}: cache TTL must be a positive duration")
        if ttl > zero and not enabled:
            raise ParameterError(
                f"{flag}: cache TTL is set but caching is disabled "
                f"(set {enable_flag.flag} or {enable_flag.env} to true)"
            )
        if ttl == zero and enabled:
            raise ParameterError(f"{flag}: cache TTL must be greater than zero when caching is enabled")


def resolve_parameters(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None,
) -> ServerParameters:
    """
    Resolve and validate every option.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed flags (see ``add_flags``).  Flags that were not given are None.
    environ : mapping, optional
        Environment to fall back to.  Defaults to ``os.environ``.

    Raises
    ------
    ParameterError
        On the first missing, malformed or inconsistent value.
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}
    for option in OPTIONS:
        values[option.name] = _convert(option, _lookup(option, args, environ))

    secret_lock_key = _resolve_secret_lock(values)
    _validate_database(values)
    cacerts: List[str] = values["tls_cacerts"] or []
    ca_bundle = load_ca_certs(cacerts)
    _validate_cache_ttls(values)

    params = ServerParameters(
        host=values["host"],
        database_type=values["database_type"],
        secret_lock_type=values["secret_lock_type"],
        database_url=values["database_url"] or "",
        database_prefix=values["database_prefix"] or "",
        secret_lock_key_path=values["secret_lock_key_path"] or "",
        secret_lock_key=secret_lock_key,
        secret_lock_aws_key_uri=values["secret_lock_aws_key_uri"] or "",
        secret_lock_aws_access_key=values["secret_lock_aws_access_key"] or "",
        secret_lock_aws_secret_key=values["secret_lock_aws_secret_key"] or "",
        secret_lock_aws_endpoint=values["secret_lock_aws_endpoint"] or "",
        tls_system_cert_pool=values["tls_system_cert_pool"],
        tls_cacerts=tuple(cacerts),
        tls_ca_bundle=ca_bundle,
        tls_serve_cert=values["tls_serve_cert"] or "",
        tls_serve_key=values["tls_serve_key"] or "",
        auth_server_url=values["auth_server_url"] or "",
        auth_server_token=values["auth_server_token"] or "",
        log_level=values["log_level"],
        enable_cors=values["enable_cors"],
        enable_cache=values["enable_cache"],
        key_store_cache_ttl=values["key_store_cache_ttl"],
        kms_cache_ttl=values["kms_cache_ttl"],
        metrics_host=values["metrics_host"] or "",
        enable_zcap=values["enable_zcap"],
    )
    logger.debug(
        f"Resolved parameters: host={params.host} database-type={params.database_type} "
        f"secret-lock-type={params.secret_lock_type} cache={params.enable_cache}"
    )
    return params
