from __future__ import annotations

from typing import Optional


class NFeError(Exception):
    """Base exception for the NF-e distribution client.

    Every error carries a stable ``code`` so callers can tell apart a wrong
    passphrase, a network failure and a rejection by the authority.
    """

    code = "error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class IdentityError(NFeError):
    """Raised when the certificate container cannot be used."""

    BAD_PASSPHRASE = "bad_passphrase"
    MALFORMED = "malformed"
    NO_PRIVATE_KEY = "no_private_key"
    NOT_FOUND = "not_found"


class SignError(NFeError):
    """Raised when the key is not usable at signing time."""

    NO_KEY = "no_key"
    code = NO_KEY


class ParseError(NFeError):
    """Raised when a response or document does not have the expected shape."""

    UNEXPECTED_SHAPE = "unexpected_shape"
    MALFORMED_XML = "malformed_xml"
    INVALID_DOCUMENT = "invalid_document"


class TransportError(NFeError):
    """Raised when the HTTPS exchange fails."""

    UNREACHABLE = "unreachable"
    SERVER_REJECTED = "server_rejected"

    def __init__(
        self,
        message: str,
        code: str,
        status: Optional[int] = None,
        body: bytes = b"",
    ):
        super().__init__(message, code)
        self.status = status
        self.body = body

    @classmethod
    def unreachable(cls, message: str) -> "TransportError":
        return cls(message, cls.UNREACHABLE)

    @classmethod
    def server_rejected(cls, status: int, body: bytes) -> "TransportError":
        return cls(
            f"Servidor retornou HTTP {status}", cls.SERVER_REJECTED, status, body
        )


class RemoteProtocolError(NFeError):
    """Well formed response carrying a rejection status from the authority."""

    code = "remote_rejected"

    def __init__(self, status_code: str, message: str, raw: bytes = b""):
        super().__init__(f"SEFAZ retornou cStat {status_code}: {message}")
        self.status_code = status_code
        self.status_message = message
        self.raw = raw
