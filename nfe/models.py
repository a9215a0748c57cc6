from __future__ import annotations

from dataclasses import dataclass, field, asdict
from decimal import Decimal
from typing import List, Optional

SUMMARY = "summary"
FULL = "full"

AUTHORIZED = "authorized"
CANCELED = "canceled"


@dataclass
class Account:
    cnpj: str
    cert_path: str
    cert_pass: str
    cursor: int = 0


@dataclass
class DocumentEnvelope:
    """One ``docZip`` entry of a distribution batch."""

    sequence: int
    schema: str
    payload: str


@dataclass
class CanonicalDocument:
    access_key: str
    issuer_tax_id: str
    issuer_name: Optional[str]
    issued_at: str
    amount: Decimal
    completeness: str
    status: str
    sequence: int
    raw_xml: str
    authorized_at: Optional[str] = None
    numero: str = "000"
    serie: str = "0"
    uf: Optional[str] = None
    operation_type: Optional[str] = None

    @property
    def is_full(self) -> bool:
        return self.completeness == FULL

    def to_dict(self) -> dict:
        data = asdict(self)
        data["amount"] = str(self.amount)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CanonicalDocument":
        data = dict(data)
        data["amount"] = Decimal(str(data["amount"]))
        return cls(**data)


@dataclass
class DistributionResponse:
    status_code: str
    status_message: str
    cursor: int
    max_cursor: int
    documents: List[DocumentEnvelope] = field(default_factory=list)


@dataclass
class EventResponse:
    status_code: str
    status_message: str
    protocol: Optional[str] = None
    raw: bytes = b""


@dataclass
class SyncResult:
    status_code: str
    status_message: str
    cursor: int
    max_cursor: int
    documents: List[CanonicalDocument] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.cursor < self.max_cursor


@dataclass
class FullDocumentResult:
    available: bool
    status_code: str
    status_message: str
    document: Optional[CanonicalDocument] = None


@dataclass
class ManifestResult:
    status_code: str
    status_message: str
    protocol: Optional[str] = None
    already_registered: bool = False
