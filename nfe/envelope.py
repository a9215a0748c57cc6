"""SOAP 1.2 envelopes for the distribution and event web services.

Requests are written with explicit namespaces. Responses are read with
``{*}`` wildcards because the service is not consistent about declaring the
wrapper namespaces.
"""
from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import ParseError
from .models import DistributionResponse, DocumentEnvelope, EventResponse
from .nsu import format_nsu, parse_nsu

logger = logging.getLogger(__name__)

SOAP_NAMESPACE = "http://www.w3.org/2003/05/soap-envelope"
NFE_NAMESPACE = "http://www.portalfiscal.inf.br/nfe"
WSDL_DISTRIBUICAO = "http://www.portalfiscal.inf.br/nfe/wsdl/NFeDistribuicaoDFe"
WSDL_EVENTO = "http://www.portalfiscal.inf.br/nfe/wsdl/NFeRecepcaoEvento4"
DIST_VERSION = "1.01"
EVENT_VERSION = "1.00"


@dataclass(frozen=True)
class Operation:
    name: str
    action: str
    urls: Dict[int, str] = field(default_factory=dict)

    def url(self, environment: int) -> str:
        try:
            return self.urls[int(environment)]
        except KeyError:
            raise ValueError(f"Ambiente desconhecido: {environment}") from None


DISTRIBUTION = Operation(
    "nfeDistDFeInteresse",
    f"{WSDL_DISTRIBUICAO}/nfeDistDFeInteresse",
    {
        1: "https://www1.nfe.fazenda.gov.br/NFeDistribuicaoDFe/NFeDistribuicaoDFe.asmx",
        2: "https://hom1.nfe.fazenda.gov.br/NFeDistribuicaoDFe/NFeDistribuicaoDFe.asmx",
    },
)

EVENT = Operation(
    "nfeRecepcaoEvento",
    f"{WSDL_EVENTO}/nfeRecepcaoEvento",
    {
        1: "https://www.nfe.fazenda.gov.br/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx",
        2: "https://hom1.nfe.fazenda.gov.br/NFeRecepcaoEvento4/NFeRecepcaoEvento4.asmx",
    },
)


def somente_digitos(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _soap(body: str) -> bytes:
    envelope = (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap12:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
        f'xmlns:xsd="http://www.w3.org/2001/XMLSchema" xmlns:soap12="{SOAP_NAMESPACE}">'
        f"<soap12:Body>{body}</soap12:Body>"
        "</soap12:Envelope>"
    )
    return envelope.encode("utf-8")


def _dist_dfe_int(cnpj: str, environment: int, query: str, uf_autor: Optional[str]) -> str:
    cnpj = somente_digitos(cnpj)
    if len(cnpj) not in (11, 14):
        raise ValueError(f"CNPJ/CPF inválido: {cnpj}")
    tag = "CNPJ" if len(cnpj) == 14 else "CPF"
    autor = f"<cUFAutor>{uf_autor}</cUFAutor>" if uf_autor else ""
    return (
        f'<distDFeInt versao="{DIST_VERSION}" xmlns="{NFE_NAMESPACE}">'
        f"<tpAmb>{int(environment)}</tpAmb>{autor}<{tag}>{cnpj}</{tag}>{query}"
        "</distDFeInt>"
    )


def _distribution(inner: str) -> bytes:
    return _soap(
        f'<nfeDistDFeInteresse xmlns="{WSDL_DISTRIBUICAO}">'
        f"<nfeDadosMsg>{inner}</nfeDadosMsg>"
        "</nfeDistDFeInteresse>"
    )


def build_bulk_fetch_request(
    cnpj: str, cursor: int, environment: int = 1, uf_autor: Optional[str] = None
) -> bytes:
    query = f"<distNSU><ultNSU>{format_nsu(cursor)}</ultNSU></distNSU>"
    return _distribution(_dist_dfe_int(cnpj, environment, query, uf_autor))


def build_single_key_request(
    cnpj: str, access_key: str, environment: int = 1, uf_autor: Optional[str] = None
) -> bytes:
    if not re.fullmatch(r"\d{44}", access_key or ""):
        raise ValueError(f"Chave de acesso inválida: {access_key}")
    query = f"<consChNFe><chNFe>{access_key}</chNFe></consChNFe>"
    return _distribution(_dist_dfe_int(cnpj, environment, query, uf_autor))


def build_event_request(signed_event_xml: str, lot_id: int = 1) -> bytes:
    signed = re.sub(r"^\s*<\?xml[^>]*\?>", "", signed_event_xml)
    return _soap(
        f'<nfeDadosMsg xmlns="{WSDL_EVENTO}">'
        f'<envEvento versao="{EVENT_VERSION}" xmlns="{NFE_NAMESPACE}">'
        f"<idLote>{int(lot_id)}</idLote>{signed}"
        "</envEvento>"
        "</nfeDadosMsg>"
    )


def _local(tag: str) -> str:
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _parse_xml(data: bytes) -> ET.Element:
    try:
        return ET.fromstring(data)
    except ET.ParseError as exc:
        raise ParseError(f"Resposta não é XML válido: {exc}", ParseError.MALFORMED_XML) from exc


def _locate(root: ET.Element, name: str) -> Optional[ET.Element]:
    if _local(root.tag) == name:
        return root
    el = root.find(f".//{{*}}{name}")
    if el is not None:
        return el
    # some gateways return the result escaped inside nfeResultMsg
    for node in root.iter():
        text = (node.text or "").strip()
        if text.startswith("<") and name in text:
            try:
                return _locate(ET.fromstring(text.encode("utf-8")), name)
            except ET.ParseError:
                continue
    return None


def _text(el: ET.Element, name: str) -> str:
    return (el.findtext(f"{{*}}{name}") or "").strip()


def _cursor(ret: ET.Element, name: str) -> int:
    value = _text(ret, name)
    try:
        return parse_nsu(value)
    except ValueError:
        raise ParseError(f"{name} inválido: {value!r}", ParseError.UNEXPECTED_SHAPE) from None


def parse_response(data: bytes) -> DistributionResponse:
    """Parse a ``nfeDistDFeInteresse`` response.

    A ``docZip`` with an unreadable ``NSU`` is logged and left out of the
    batch.
    """
    root = _parse_xml(data)
    ret = _locate(root, "retDistDFeInt")
    if ret is None:
        raise ParseError("retDistDFeInt não encontrado na resposta", ParseError.UNEXPECTED_SHAPE)
    documents = []
    for doc in ret.findall("{*}loteDistDFeInt/{*}docZip"):
        try:
            sequence = parse_nsu(doc.get("NSU"))
        except ValueError:
            logger.warning("docZip descartado: NSU inválido %r", doc.get("NSU"))
            continue
        documents.append(
            DocumentEnvelope(
                sequence=sequence,
                schema=doc.get("schema", ""),
                payload=(doc.text or "").strip(),
            )
        )
    return DistributionResponse(
        status_code=_text(ret, "cStat"),
        status_message=_text(ret, "xMotivo"),
        cursor=_cursor(ret, "ultNSU"),
        max_cursor=_cursor(ret, "maxNSU"),
        documents=documents,
    )


def parse_event_response(data: bytes) -> EventResponse:
    """Parse a ``nfeRecepcaoEvento`` response.

    The status of the event itself wins over the status of the lot.
    """
    root = _parse_xml(data)
    inf = None
    ret = _locate(root, "retEvento")
    if ret is not None:
        inf = ret.find("{*}infEvento")
    if inf is None:
        inf = _locate(root, "retEnvEvento")
    if inf is None:
        raise ParseError("retEvento não encontrado na resposta", ParseError.UNEXPECTED_SHAPE)
    return EventResponse(
        status_code=_text(inf, "cStat"),
        status_message=_text(inf, "xMotivo"),
        protocol=_text(inf, "nProt") or None,
        raw=data,
    )
