"""kms_server/config.py

Static configuration for the KMS server start command.

Runtime values (host, database, secret lock, caches, ...) are resolved at
startup from command line flags and ``KMS_*`` environment variables by
``parameters.resolve_parameters``.  This module only holds the constants that
resolution and the HTTP helpers are built on: defaults, known type tags and
wire-level names.
"""

from __future__ import annotations

# =============================================================================
# Environment
# =============================================================================

# ENV_PREFIX:
# Every option has a matching environment variable named ENV_PREFIX + NAME,
# e.g. --database-type <-> KMS_DATABASE_TYPE.
#
# Used in: parameters.py (option table)
ENV_PREFIX = "KMS_"

# LOGGER_NAME:
# Root logger of the service.  Module loggers are children of it
# ("kms-server.httputil", "kms-server.startcmd", ...) so --log-level applies
# to all of them at once.
#
# Used in: every module (logging.getLogger), startcmd.py (set_log_level)
LOGGER_NAME = "kms-server"

# LOG_FORMAT:
# Used in: startcmd.py (logging.basicConfig)
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# DEFAULT_LOG_LEVEL:
# Applied when --log-level is not set or names an unknown level.
DEFAULT_LOG_LEVEL = "info"

# =============================================================================
# Server
# =============================================================================

# DEFAULT_HOST:
# Listen address used when neither --host nor KMS_HOST is set.
# Format: HostName:Port.
DEFAULT_HOST = "0.0.0.0:8074"

# =============================================================================
# Storage
# =============================================================================

# Known database type tags.  Other tags pass resolution untouched and are
# rejected by storage.create_storage_provider.
STORAGE_TYPE_MEM = "mem"
STORAGE_TYPE_MONGODB = "mongodb"

STORAGE_TYPES = (STORAGE_TYPE_MEM, STORAGE_TYPE_MONGODB)

# =============================================================================
# Secret Lock
# =============================================================================

# Known secret lock type tags.  Other tags pass resolution untouched and are
# rejected by secret_lock.create_secret_lock.
SECRET_LOCK_TYPE_LOCAL = "local"
SECRET_LOCK_TYPE_AWS = "aws"
SECRET_LOCK_TYPE_NONE = "none"

SECRET_LOCK_TYPES = (SECRET_LOCK_TYPE_LOCAL, SECRET_LOCK_TYPE_AWS, SECRET_LOCK_TYPE_NONE)

# SECRET_LOCK_KEY_SIZE:
# Length in bytes of the local secret lock key (AES-256).  The key file holds
# the URL-safe base64 encoding of exactly this many bytes.
#
# Used in: secret_lock.py (load_local_key, LocalSecretLock)
SECRET_LOCK_KEY_SIZE = 32

# AWS_KEY_URI_PREFIX:
# Key URIs for the aws secret lock look like
#   aws-kms://arn:aws:kms:<region>:<account-id>:key/<key-id>
#
# Used in: secret_lock.py (parse_aws_key_uri)
AWS_KEY_URI_PREFIX = "aws-kms://"

# =============================================================================
# Outbound HTTP
# =============================================================================

# AUTHORIZATION_SCHEME:
# Scheme prefix of the Authorization header carrying a GNAP access token.
#
# Used in: httputil.py (with_gnap_token)
AUTHORIZATION_SCHEME = "GNAP"

# DEFAULT_HTTP_TIMEOUT_SECONDS:
# Timeout for a single outbound request when the caller's Context carries no
# deadline.  A Context deadline always wins.
#
# Used in: httputil.py (do_request)
DEFAULT_HTTP_TIMEOUT_SECONDS: float = 30.0

# Signature headers written by signer.WalletSigner.
SIGNATURE_HEADER = "X-Request-Signature"
SIGNATURE_TIMESTAMP_HEADER = "X-Request-Timestamp"
SIGNATURE_WALLET_HEADER = "X-Request-Wallet"
