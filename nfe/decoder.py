from __future__ import annotations

import base64
import binascii
import gzip
import logging
import re
import zlib
import xml.etree.ElementTree as ET
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from .errors import ParseError
from .models import (
    AUTHORIZED,
    CANCELED,
    FULL,
    SUMMARY,
    CanonicalDocument,
    DocumentEnvelope,
)

logger = logging.getLogger(__name__)


def _ns(el: ET.Element) -> str:
    """Return the ``{uri}`` prefix of ``el``'s own namespace, or ``""``."""
    if el.tag.startswith("{"):
        return el.tag[: el.tag.index("}") + 1]
    return ""


def _child(el: Optional[ET.Element], ns: str, *path: str) -> Optional[ET.Element]:
    for name in path:
        if el is None:
            return None
        el = el.find(ns + name)
    return el


def _txt(el: Optional[ET.Element], ns: str, *path: str) -> Optional[str]:
    node = _child(el, ns, *path)
    if node is None or node.text is None:
        return None
    value = node.text.strip()
    return value or None


def parse_amount(value: Optional[str]) -> Decimal:
    """Parse a wire decimal (``.`` separator) independently of locale."""
    try:
        amount = Decimal((value or "").strip())
    except InvalidOperation:
        raise ParseError(f"Valor inválido: {value!r}", ParseError.INVALID_DOCUMENT) from None
    if not amount.is_finite():
        raise ParseError(f"Valor inválido: {value!r}", ParseError.INVALID_DOCUMENT)
    return amount


def build_document(**fields) -> CanonicalDocument:
    """Validate the extracted fields and return a :class:`CanonicalDocument`."""
    missing = [
        name
        for name in ("access_key", "issuer_tax_id", "issued_at")
        if not fields.get(name)
    ]
    if missing:
        raise ParseError(
            "Campos obrigatórios ausentes: " + ", ".join(missing),
            ParseError.INVALID_DOCUMENT,
        )
    if not re.fullmatch(r"\d{44}", fields["access_key"]):
        raise ParseError(
            f"Chave de acesso inválida: {fields['access_key']}",
            ParseError.INVALID_DOCUMENT,
        )
    fields["amount"] = parse_amount(fields.get("amount"))
    return CanonicalDocument(**fields)


def unpack(payload: str) -> str:
    """Base64-decode and gunzip a ``docZip`` payload."""
    try:
        compressed = base64.b64decode(payload, validate=True)
        return gzip.decompress(compressed).decode("utf-8")
    except (binascii.Error, zlib.error, OSError, EOFError, UnicodeDecodeError) as exc:
        raise ParseError(f"Conteúdo compactado inválido: {exc}", ParseError.INVALID_DOCUMENT) from exc


def _summary(root: ET.Element, sequence: int, xml_text: str) -> CanonicalDocument:
    ns = _ns(root)
    return build_document(
        access_key=_txt(root, ns, "chNFe"),
        issuer_tax_id=_txt(root, ns, "CNPJ") or _txt(root, ns, "CPF"),
        issuer_name=_txt(root, ns, "xNome"),
        issued_at=_txt(root, ns, "dhEmi"),
        authorized_at=_txt(root, ns, "dhRecbto"),
        amount=_txt(root, ns, "vNF"),
        completeness=SUMMARY,
        status=AUTHORIZED if _txt(root, ns, "cSitNFe") == "1" else CANCELED,
        sequence=sequence,
        raw_xml=xml_text,
        numero="000",
        serie="0",
    )


def _full(root: ET.Element, sequence: int, xml_text: str) -> CanonicalDocument:
    ns_proc = _ns(root)
    nfe = root if root.tag == ns_proc + "NFe" else root.find(f".//{ns_proc}NFe")
    if nfe is None:
        nfe = root.find(".//{*}NFe")
    if nfe is None:
        raise ParseError("Elemento NFe não encontrado", ParseError.INVALID_DOCUMENT)
    ns = _ns(nfe)
    inf = _child(nfe, ns, "infNFe")
    ide = _child(inf, ns, "ide")
    emit = _child(inf, ns, "emit")
    prot = root.find(f".//{ns_proc}protNFe/{ns_proc}infProt")

    access_key = _txt(prot, ns_proc, "chNFe")
    if not access_key and inf is not None:
        access_key = re.sub(r"^NFe", "", inf.get("Id", "")) or None
    tp_nf = _txt(ide, ns, "tpNF")
    return build_document(
        access_key=access_key,
        issuer_tax_id=_txt(emit, ns, "CNPJ") or _txt(emit, ns, "CPF"),
        issuer_name=_txt(emit, ns, "xNome"),
        issued_at=_txt(ide, ns, "dhEmi"),
        authorized_at=_txt(prot, ns_proc, "dhRecbto"),
        amount=_txt(inf, ns, "total", "ICMSTot", "vNF"),
        completeness=FULL,
        status=AUTHORIZED,
        sequence=sequence,
        raw_xml=xml_text,
        numero=_txt(ide, ns, "nNF") or "000",
        serie=_txt(ide, ns, "serie") or "0",
        uf=_txt(emit, ns, "enderEmit", "UF"),
        operation_type=None if tp_nf is None else ("Entrada" if tp_nf == "0" else "Saida"),
    )


def decode_entry(envelope: DocumentEnvelope) -> Optional[CanonicalDocument]:
    """Decode one entry. Returns ``None`` for schemas that are not NF-e documents."""
    schema = envelope.schema or ""
    if "resNFe" in schema:
        builder = _summary
    elif "procNFe" in schema:
        builder = _full
    else:
        logger.info("NSU %s ignorado: schema %s não suportado", envelope.sequence, schema)
        return None
    xml_text = unpack(envelope.payload)
    try:
        root = ET.fromstring(xml_text.encode("utf-8"))
    except ET.ParseError as exc:
        raise ParseError(f"XML do documento inválido: {exc}", ParseError.MALFORMED_XML) from exc
    return builder(root, envelope.sequence, xml_text)


def decode(envelopes: Iterable[DocumentEnvelope], account_id: str) -> List[CanonicalDocument]:
    """Decode a batch; malformed entries are logged and skipped."""
    documents = []
    for envelope in envelopes:
        try:
            doc = decode_entry(envelope)
        except ParseError as exc:
            logger.warning(
                "Documento NSU %s (CNPJ %s) descartado: %s", envelope.sequence, account_id, exc
            )
            continue
        if doc is not None:
            documents.append(doc)
    return documents
