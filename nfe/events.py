from __future__ import annotations

import base64
import datetime
import re
from dataclasses import dataclass
from typing import Optional

from lxml import etree
from signxml import XMLSigner
from signxml.algorithms import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)

from .identity import SigningIdentity

NFE_NAMESPACE = "http://www.portalfiscal.inf.br/nfe"
DSIG_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
ORGAO_NACIONAL = "91"
EVENT_VERSION = "1.00"
BRT = datetime.timezone(datetime.timedelta(hours=-3))

CONFIRMACAO = "210200"
CIENCIA = "210210"
DESCONHECIMENTO = "210220"
NAO_REALIZADA = "210240"

EVENT_DESCRIPTIONS = {
    CONFIRMACAO: "Confirmacao da Operacao",
    CIENCIA: "Ciencia da Operacao",
    DESCONHECIMENTO: "Desconhecimento da Operacao",
    NAO_REALIZADA: "Operacao nao Realizada",
}


@dataclass
class ManifestRequest:
    cnpj: str
    access_key: str
    event_type: str = CIENCIA
    environment: int = 1
    sequence: int = 1
    timestamp: Optional[datetime.datetime] = None
    justification: Optional[str] = None

    def __post_init__(self):
        self.cnpj = re.sub(r"\D", "", self.cnpj)
        if not re.fullmatch(r"\d{44}", self.access_key or ""):
            raise ValueError(f"Chave de acesso inválida: {self.access_key}")
        if self.event_type not in EVENT_DESCRIPTIONS:
            raise ValueError(f"Tipo de evento não suportado: {self.event_type}")
        if not 1 <= self.sequence <= 99:
            raise ValueError("nSeqEvento deve estar entre 1 e 99")
        if self.event_type == NAO_REALIZADA:
            just = (self.justification or "").strip()
            if not 15 <= len(just) <= 255:
                raise ValueError("Justificativa deve ter entre 15 e 255 caracteres")
        if self.timestamp is None:
            self.timestamp = datetime.datetime.now(BRT)

    @property
    def event_id(self) -> str:
        return f"ID{self.event_type}{self.access_key}{self.sequence:02d}"

    @property
    def event_time(self) -> str:
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=BRT)
        return ts.astimezone(BRT).replace(microsecond=0).isoformat()


def _sub(parent, tag: str, text: Optional[str] = None, **attrib):
    el = etree.SubElement(parent, f"{{{NFE_NAMESPACE}}}{tag}", **attrib)
    if text is not None:
        el.text = text
    return el


def build_event_xml(request: ManifestRequest) -> str:
    """Return the unsigned ``evento`` element for ``request``."""
    evento = etree.Element(
        f"{{{NFE_NAMESPACE}}}evento",
        nsmap={None: NFE_NAMESPACE},
        versao=EVENT_VERSION,
    )
    inf = _sub(evento, "infEvento", Id=request.event_id)
    _sub(inf, "cOrgao", ORGAO_NACIONAL)
    _sub(inf, "tpAmb", str(request.environment))
    _sub(inf, "CNPJ" if len(request.cnpj) == 14 else "CPF", request.cnpj)
    _sub(inf, "chNFe", request.access_key)
    _sub(inf, "dhEvento", request.event_time)
    _sub(inf, "tpEvento", request.event_type)
    _sub(inf, "nSeqEvento", str(request.sequence))
    _sub(inf, "verEvento", EVENT_VERSION)
    det = _sub(inf, "detEvento", versao=EVENT_VERSION)
    _sub(det, "descEvento", EVENT_DESCRIPTIONS[request.event_type])
    if request.event_type == NAO_REALIZADA:
        _sub(det, "xJust", request.justification.strip())
    return etree.tostring(evento, encoding="unicode")


def _ds(tag: str) -> str:
    return f"{{{DSIG_NAMESPACE}}}{tag}"


def _without_prefix(el, parent=None):
    """Copy a ``ds:``-prefixed subtree into the default namespace."""
    if parent is None:
        copy = etree.Element(el.tag, nsmap={None: DSIG_NAMESPACE})
    else:
        copy = etree.SubElement(parent, el.tag)
    for name, value in el.attrib.items():
        copy.set(name, value)
    copy.text = el.text
    copy.tail = el.tail if parent is not None else None
    for child in el:
        _without_prefix(child, copy)
    return copy


def sign_event(event_xml: str, identity: SigningIdentity) -> str:
    """Return a signed copy of ``event_xml``.

    The ``Signature`` is appended to ``evento`` after ``infEvento`` and
    references the ``infEvento`` Id. The authority rejects a prefixed
    ``ds:Signature``, so the signature element is moved to the default
    namespace and ``SignatureValue`` is computed again over the
    unprefixed ``SignedInfo``.
    """
    key = identity.private_key
    root = etree.fromstring(event_xml.encode("utf-8"))
    inf = root.find(f"{{{NFE_NAMESPACE}}}infEvento")
    if inf is None or not inf.get("Id"):
        raise ValueError("Evento sem infEvento/Id")
    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm=CanonicalizationMethod.CANONICAL_XML_1_0,
    )
    signed = signer.sign(
        root,
        key=key,
        cert=identity.certificate_pem(),
        reference_uri="#" + inf.get("Id"),
    )
    signature = signed.find(_ds("Signature"))
    signed.remove(signature)
    signed.append(_without_prefix(signature))

    # canonicalize from a reparsed tree, the same way a verifier sees it
    doc = etree.fromstring(etree.tostring(signed))
    signed_info = doc.find(f"{_ds('Signature')}/{_ds('SignedInfo')}")
    c14n = etree.tostring(signed_info, method="c14n", exclusive=False, with_comments=False)
    value = doc.find(f"{_ds('Signature')}/{_ds('SignatureValue')}")
    value.text = base64.b64encode(identity.sign(c14n)).decode("ascii")
    return etree.tostring(doc, encoding="unicode")


def build_and_sign(request: ManifestRequest, identity: SigningIdentity) -> str:
    """Build the event for ``request`` and sign it.

    Raises :class:`SignError` when ``identity`` no longer holds a usable key.
    """
    return sign_event(build_event_xml(request), identity)
