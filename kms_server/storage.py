"""
Storage provider selection.

The key store backends themselves live outside this service; startup only
selects one by its ``--database-type`` tag and checks that the parameters it
needs are present and well formed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import config

logger = logging.getLogger("kms-server.storage")

_MONGODB_SCHEMES = ("mongodb", "mongodb+srv")


@dataclass(frozen=True)
class StorageProvider:
    database_type: str
    url: str = ""
    prefix: str = ""

    def describe(self) -> str:
        """Human readable form with credentials stripped from the URL."""
        if not self.url:
            return self.database_type
        return f"{self.database_type} at {_redact(self.url)}"


def _redact(url: str) -> str:
    parts = urlsplit(url)
    if parts.password is None and parts.username is None:
        return url
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


def create_storage_provider(database_type: str, url: str = "", prefix: str = "") -> StorageProvider:
    """
    Select the storage provider for *database_type*.

    Raises ValueError for unknown types and for a MongoDB URL with the wrong
    scheme.
    """
    if database_type == config.STORAGE_TYPE_MEM:
        provider = StorageProvider(database_type, prefix=prefix)
    elif database_type == config.STORAGE_TYPE_MONGODB:
        scheme = urlsplit(url).scheme
        if scheme not in _MONGODB_SCHEMES:
            raise ValueError(f"invalid MongoDB URL: scheme must be one of {', '.join(_MONGODB_SCHEMES)}")
        provider = StorageProvider(database_type, url=url, prefix=prefix)
    else:
        raise ValueError(
            f"{database_type!r} is not a valid database type: "
            f"must be one of {', '.join(config.STORAGE_TYPES)}"
        )

    logger.info(f"Using storage provider: {provider.describe()}")
    return provider
