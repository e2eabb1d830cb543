"""
TLS helpers: CA bundle loading and the outbound SSL context.
"""

from __future__ import annotations

import ssl
from typing import Iterable, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from errors import ParameterError


def load_ca_certs(paths: Iterable[str]) -> Tuple[bytes, ...]:
    """
    Read each PEM bundle in *paths* and return every certificate as DER.

    Raises ParameterError naming the failing path.
    """
    certs = []
    for path in paths:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise ParameterError(f"failed to read cert: open {path}: {exc.strerror or exc}") from exc

        try:
            parsed = x509.load_pem_x509_certificates(data)
        except ValueError as exc:
            raise ParameterError(f"failed to parse cert {path}: {exc}") from exc

        certs.extend(cert.public_bytes(serialization.Encoding.DER) for cert in parsed)
    return tuple(certs)


def build_ssl_context(use_system_cert_pool: bool, ca_certs: Tuple[bytes, ...] = ()) -> ssl.SSLContext:
    """Client-side context trusting *ca_certs* and, optionally, the system roots."""
    if use_system_cert_pool:
        ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    else:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    if ca_certs:
        ctx.load_verify_locations(cadata=b"".join(ca_certs))
    return ctx
