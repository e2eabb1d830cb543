"""
conftest.py: make the kms_server modules importable and provide key / cert files.
"""

import base64
import datetime
import os
import sys
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# Add the kms_server directory to sys.path so test modules can import
# server modules directly (e.g. `from parameters import resolve_parameters`).
kms_server_dir = Path(__file__).resolve().parent.parent / "kms_server"
if str(kms_server_dir) not in sys.path:
    sys.path.insert(0, str(kms_server_dir))


@pytest.fixture
def secret_lock_key_file(tmp_path) -> str:
    """A key file holding the URL-safe base64 encoding of a random 32-byte key."""
    path = tmp_path / "secret-lock.key"
    path.write_bytes(base64.urlsafe_b64encode(os.urandom(32)))
    return str(path)


@pytest.fixture
def ca_cert_file(tmp_path) -> str:
    """A self-signed CA certificate in PEM form."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kms-test-ca")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    path = tmp_path / "ca.pem"
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return str(path)
