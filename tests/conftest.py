import datetime
import sys
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

CNPJ = "12345678000190"
PASSWORD = "senha123"


def make_certificate(key, cnpj=CNPJ, days=365):
    name = x509.Name(
        [x509.NameAttribute(NameOID.COMMON_NAME, f"EMPRESA TESTE LTDA:{cnpj}")]
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=10))
        .not_valid_after(now + datetime.timedelta(days=days))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key):
    return make_certificate(rsa_key)


@pytest.fixture(scope="session")
def pfx_bytes(rsa_key, certificate):
    return pkcs12.serialize_key_and_certificates(
        b"teste", rsa_key, certificate, None, BestAvailableEncryption(PASSWORD.encode())
    )


@pytest.fixture
def pfx_file(tmp_path, pfx_bytes):
    path = tmp_path / "certificado.pfx"
    path.write_bytes(pfx_bytes)
    return path
