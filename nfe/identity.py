from __future__ import annotations

import datetime
import logging
import os
import re
import secrets
import ssl
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    PrivateFormat,
)
from cryptography.hazmat.primitives.serialization.pkcs12 import (
    load_key_and_certificates,
)
from cryptography.x509.oid import NameOID

from .errors import IdentityError, SignError

logger = logging.getLogger(__name__)


def _looks_like_pfx(data: bytes) -> bool:
    """Check the outer DER structure of a PKCS#12 file (SEQUENCE + version 3).

    The declared length must cover the whole blob, so a truncated file is
    caught here and not reported as a wrong password later.
    """
    if len(data) < 5 or data[0] != 0x30:
        return False
    length_byte = data[1]
    if length_byte == 0x80:
        # BER indefinite length, closed by end-of-contents octets
        idx = 2
        complete = data.endswith(b"\x00\x00")
    elif length_byte & 0x80:
        n = length_byte & 0x7F
        if n > 4 or len(data) < 2 + n:
            return False
        idx = 2 + n
        complete = idx + int.from_bytes(data[2:idx], "big") == len(data)
    else:
        idx = 2
        complete = idx + length_byte == len(data)
    return complete and data[idx:idx + 3] == b"\x02\x01\x03"


class SigningIdentity:
    """Certificate chain and private key loaded from a PKCS#12 container.

    The key only lives in memory. Use the identity as a context manager so
    the key is released as soon as the operation is over::

        with SigningIdentity.load(data, "senha") as identity:
            signature = identity.sign(b"...")
    """

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        certificate: x509.Certificate,
        additional: Optional[List[x509.Certificate]] = None,
    ):
        self._key: Optional[rsa.RSAPrivateKey] = private_key
        self.certificate = certificate
        self.additional = list(additional or [])

    @classmethod
    def load(cls, data: bytes, passphrase: str) -> "SigningIdentity":
        """Unwrap ``data`` (a .pfx/.p12 blob) with ``passphrase``."""
        if not _looks_like_pfx(data):
            raise IdentityError(
                "Arquivo não é um certificado PKCS#12 válido", IdentityError.MALFORMED
            )
        password = passphrase.encode() if passphrase else None
        try:
            key, cert, add_certs = load_key_and_certificates(data, password)
        except ValueError as exc:
            logger.warning("Falha ao abrir certificado: %s", exc)
            if "deserialize" in str(exc):
                raise IdentityError(
                    "Arquivo PKCS#12 corrompido", IdentityError.MALFORMED
                ) from exc
            raise IdentityError(
                "Senha do certificado incorreta", IdentityError.BAD_PASSPHRASE
            ) from exc
        if key is None:
            raise IdentityError(
                "Certificado não possui chave privada", IdentityError.NO_PRIVATE_KEY
            )
        if cert is None:
            raise IdentityError(
                "Certificado ausente no arquivo PKCS#12", IdentityError.MALFORMED
            )
        if not isinstance(key, rsa.RSAPrivateKey):
            raise IdentityError(
                "Chave privada não é RSA", IdentityError.NO_PRIVATE_KEY
            )
        return cls(key, cert, add_certs)

    def __enter__(self) -> "SigningIdentity":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    @property
    def chain(self) -> List[x509.Certificate]:
        return [self.certificate] + self.additional

    @property
    def not_valid_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc

    @property
    def cnpj(self) -> Optional[str]:
        """CNPJ from the ICP-Brasil subject (``NOME:00000000000000``), if any."""
        for attr in self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
            match = re.search(r":(\d{14})$", str(attr.value))
            if match:
                return match.group(1)
        return None

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        return self._require_key()

    def release(self) -> None:
        """Drop the reference to the private key."""
        self._key = None

    def _require_key(self) -> rsa.RSAPrivateKey:
        if self._key is None:
            raise SignError("Chave privada indisponível")
        now = datetime.datetime.now(datetime.timezone.utc)
        if self.not_valid_after < now:
            raise SignError("Certificado expirado em " + self.not_valid_after.isoformat())
        return self._key

    def sign(self, data: bytes) -> bytes:
        """Return an RSA PKCS#1 v1.5 / SHA-256 signature of ``data``."""
        return self._require_key().sign(data, padding.PKCS1v15(), hashes.SHA256())

    def certificate_pem(self) -> str:
        return self.certificate.public_bytes(Encoding.PEM).decode("ascii")

    @contextmanager
    def pem_file(self) -> Iterator[Tuple[str, bytes]]:
        """Write the chain and an encrypted key to a temporary PEM file.

        Yields ``(path, password)``; the file is removed on exit.
        """
        key = self._require_key()
        password = secrets.token_hex(16).encode()
        tmp = tempfile.NamedTemporaryFile(suffix=".pem", delete=False)
        pem_path = tmp.name
        tmp.close()
        try:
            with open(pem_path, "wb") as f:
                f.write(
                    key.private_bytes(
                        Encoding.PEM,
                        PrivateFormat.PKCS8,
                        BestAvailableEncryption(password),
                    )
                )
                for cert in self.chain:
                    f.write(cert.public_bytes(Encoding.PEM))
            yield pem_path, password
        finally:
            os.remove(pem_path)

    def tls_context(self, ca_bundle: Optional[str] = None) -> ssl.SSLContext:
        """Return a client TLS context presenting this identity.

        Without ``ca_bundle`` the server certificate is not verified.
        """
        if ca_bundle:
            ctx = ssl.create_default_context(cafile=ca_bundle)
        else:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        with self.pem_file() as (pem_path, password):
            ctx.load_cert_chain(pem_path, password=password)
        return ctx


def load_identity(container_path: str, passphrase: str) -> SigningIdentity:
    """Read the container at ``container_path`` and load it."""
    path = Path(container_path)
    if not path.exists():
        raise IdentityError(
            f"Certificado não encontrado: {container_path}", IdentityError.NOT_FOUND
        )
    return SigningIdentity.load(path.read_bytes(), passphrase)
