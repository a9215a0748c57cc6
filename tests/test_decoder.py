import locale
from decimal import Decimal

import pytest

from samples import CHAVE, CHAVE_2, NFE_NS, pack, proc_nfe, res_nfe
from nfe.decoder import decode, decode_entry, parse_amount
from nfe.errors import ParseError
from nfe.models import AUTHORIZED, CANCELED, FULL, SUMMARY, DocumentEnvelope


def env(nsu, schema, xml):
    return DocumentEnvelope(sequence=nsu, schema=schema, payload=pack(xml))


def test_summary_document():
    docs = decode([env(15, "resNFe_v1.01.xsd", res_nfe(vnf="777.79"))], "12345678000190")
    assert len(docs) == 1
    doc = docs[0]
    assert doc.completeness == SUMMARY
    assert doc.numero == "000"
    assert doc.serie == "0"
    assert doc.amount == Decimal("777.79")
    assert doc.access_key == CHAVE
    assert doc.issuer_tax_id == "11111111000111"
    assert doc.issuer_name == "Fornecedor de Hardware S.A."
    assert doc.issued_at == "2024-01-10T10:00:00-03:00"
    assert doc.status == AUTHORIZED
    assert doc.sequence == 15
    assert "<resNFe" in doc.raw_xml


def test_summary_canceled_and_cpf_issuer():
    doc = decode_entry(env(1, "resNFe_v1.01.xsd", res_nfe(sit="3", emitente="12345678909", tag="CPF")))
    assert doc.status == CANCELED
    assert doc.issuer_tax_id == "12345678909"


def test_full_document():
    doc = decode_entry(env(16, "procNFe_v4.00.xsd", proc_nfe(vnf="15450.00", numero="1234", serie="1")))
    assert doc.completeness == FULL
    assert doc.is_full
    assert doc.status == AUTHORIZED
    assert doc.numero == "1234"
    assert doc.serie == "1"
    assert doc.amount == Decimal("15450.00")
    assert doc.authorized_at == "2024-01-10T10:00:05-03:00"
    assert doc.uf == "SP"
    assert doc.operation_type == "Entrada"


def test_full_document_inner_namespace_differs():
    xml = proc_nfe().replace(
        f'<NFe xmlns="{NFE_NS}">', '<NFe xmlns="http://example.com/outro">'
    )
    doc = decode_entry(env(1, "procNFe_v4.00.xsd", xml))
    assert doc.numero == "1234"
    assert doc.access_key == CHAVE


def test_full_document_key_from_infnfe_id():
    xml = proc_nfe().replace(f"<chNFe>{CHAVE}</chNFe>", "")
    assert decode_entry(env(1, "procNFe_v4.00.xsd", xml)).access_key == CHAVE


def test_unknown_schema_is_skipped():
    xml = f'<resEvento xmlns="{NFE_NS}"><chNFe>{CHAVE}</chNFe></resEvento>'
    assert decode_entry(env(1, "resEvento_v1.01.xsd", xml)) is None


def test_bad_entry_does_not_abort_batch():
    batch = [
        DocumentEnvelope(sequence=1, schema="resNFe_v1.01.xsd", payload="!!nao-base64!!"),
        env(2, "resNFe_v1.01.xsd", res_nfe(vnf="abc")),
        env(3, "resNFe_v1.01.xsd", "<resNFe>"),
        env(4, "resNFe_v1.01.xsd", res_nfe(chave=CHAVE_2)),
    ]
    docs = decode(batch, "12345678000190")
    assert [d.access_key for d in docs] == [CHAVE_2]


def test_missing_required_field():
    xml = res_nfe().replace("<dhEmi>2024-01-10T10:00:00-03:00</dhEmi>", "")
    with pytest.raises(ParseError) as exc:
        decode_entry(env(1, "resNFe_v1.01.xsd", xml))
    assert exc.value.code == ParseError.INVALID_DOCUMENT


def test_amount_is_locale_independent(monkeypatch):
    monkeypatch.setattr(locale, "localeconv", lambda: {"decimal_point": ",", "thousands_sep": "."})
    assert parse_amount("1234.56") == Decimal("1234.56")
    with pytest.raises(ParseError):
        parse_amount("1.234,56")
