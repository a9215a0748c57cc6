import pytest

from conftest import PASSWORD
from samples import CHAVE, CHAVE_2, dist_response, doc_zip, event_response, proc_nfe, res_nfe
from nfe.envelope import DISTRIBUTION, EVENT
from nfe.errors import RemoteProtocolError, TransportError
from nfe.identity import SigningIdentity
from nfe.models import Account, FULL, SUMMARY
from nfe.store import JsonStore
from nfe.sync import SyncOrchestrator

CNPJ = "12345678000190"


class DummyIdentity:
    def __init__(self):
        self.released = False

    def release(self):
        self.released = True


class DummyTransport:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def send(self, account_id, identity, operation, request_bytes):
        self.calls.append((account_id, operation, request_bytes))
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return 200, resp


class RecordingStore(JsonStore):
    def __init__(self, path):
        super().__init__(path)
        self.writes = []

    def upsert_documents(self, account_id, documents):
        documents = list(documents)
        self.writes.append(("upsert", [d.access_key for d in documents]))
        return super().upsert_documents(account_id, documents)

    def advance_cursor(self, account_id, new_cursor):
        self.writes.append(("cursor", new_cursor))
        super().advance_cursor(account_id, new_cursor)


@pytest.fixture
def store(tmp_path):
    return RecordingStore(str(tmp_path / "db.json"))


@pytest.fixture
def account():
    return Account(cnpj="12.345.678/0001-90", cert_path="cert.pfx", cert_pass=PASSWORD)


def make_orchestrator(store, transport, loader=None):
    identities = []

    def dummy_loader(path, password):
        identity = DummyIdentity()
        identities.append(identity)
        return identity

    orch = SyncOrchestrator(store, transport, identity_loader=loader or dummy_loader)
    orch.identities = identities
    return orch


def test_sync_once_documents_found(store, account):
    docs = [
        doc_zip(10, "resNFe_v1.01.xsd", res_nfe(chave=CHAVE)),
        doc_zip(11, "procNFe_v4.00.xsd", proc_nfe(chave=CHAVE_2)),
        doc_zip(12, "resEvento_v1.01.xsd", "<resEvento/>"),
    ]
    transport = DummyTransport(dist_response("138", "Documento(s) localizado(s)", 12, 30, docs))
    orch = make_orchestrator(store, transport)

    result = orch.sync_once(account)

    assert result.cursor == 12
    assert result.max_cursor == 30
    assert result.has_more
    assert {d.access_key for d in result.documents} == {CHAVE, CHAVE_2}
    # merge before cursor
    assert [w[0] for w in store.writes] == ["upsert", "cursor"]
    assert store.get_cursor(CNPJ) == 12
    assert b"<ultNSU>000000000000000</ultNSU>" in transport.calls[0][2]
    assert transport.calls[0][1] is DISTRIBUTION
    assert all(i.released for i in orch.identities)


def test_sync_once_uses_stored_cursor(store, account):
    store.advance_cursor(CNPJ, 50)
    store.writes.clear()
    transport = DummyTransport(dist_response("137", "Nenhum documento localizado", 50, 50))
    make_orchestrator(store, transport).sync_once(account)
    assert b"<ultNSU>000000000000050</ultNSU>" in transport.calls[0][2]


def test_sync_once_none_found_no_writes(store, account):
    account.cursor = 7
    store.advance_cursor(CNPJ, 7)
    store.writes.clear()
    transport = DummyTransport(dist_response("137", "Nenhum documento localizado", 7, 7))
    result = make_orchestrator(store, transport).sync_once(account)
    assert result.documents == []
    assert result.cursor == 7
    assert not result.has_more
    assert store.writes == []


def test_sync_once_none_found_advances_to_echoed_cursor(store, account):
    transport = DummyTransport(dist_response("137", "Nenhum documento localizado", 25, 25))
    result = make_orchestrator(store, transport).sync_once(account)
    assert result.cursor == 25
    assert store.writes == [("cursor", 25)]


def test_sync_once_is_idempotent(store, account):
    docs = [doc_zip(10, "resNFe_v1.01.xsd", res_nfe())]
    transport = DummyTransport(
        dist_response("138", "Documento(s) localizado(s)", 10, 10, docs),
        dist_response("137", "Nenhum documento localizado", 10, 10),
    )
    orch = make_orchestrator(store, transport)
    orch.sync_once(account)
    snapshot = store.documents(CNPJ)
    orch.sync_once(account)
    assert store.documents(CNPJ) == snapshot


def test_sync_once_remote_rejection_keeps_cursor(store, account):
    transport = DummyTransport(dist_response("656", "Rejeicao: Consumo Indevido", 0, 0))
    with pytest.raises(RemoteProtocolError) as exc:
        make_orchestrator(store, transport).sync_once(account)
    assert exc.value.status_code == "656"
    assert exc.value.code == "remote_rejected"
    assert store.writes == []


def test_sync_once_transport_error_keeps_cursor(store, account):
    transport = DummyTransport(TransportError.unreachable("timeout"))
    orch = make_orchestrator(store, transport)
    with pytest.raises(TransportError):
        orch.sync_once(account)
    assert store.writes == []
    assert orch.identities[0].released


def test_fetch_full_document_unavailable(store, account):
    docs = [doc_zip(0, "resNFe_v1.01.xsd", res_nfe())]
    transport = DummyTransport(dist_response("138", "Documento localizado", 0, 0, docs))
    result = make_orchestrator(store, transport).fetch_full_document(account, CHAVE)
    assert not result.available
    assert result.document.completeness == SUMMARY
    assert store.writes == []
    assert f"<chNFe>{CHAVE}</chNFe>".encode() in transport.calls[0][2]


def test_fetch_full_document_available(store, account):
    docs = [doc_zip(0, "procNFe_v4.00.xsd", proc_nfe())]
    transport = DummyTransport(dist_response("138", "Documento localizado", 0, 0, docs))
    result = make_orchestrator(store, transport).fetch_full_document(account, CHAVE)
    assert result.available
    assert result.document.completeness == FULL
    assert store.get_document(CNPJ, CHAVE).completeness == FULL
    assert store.get_cursor(CNPJ) == 0


def test_fetch_full_document_rejected(store, account):
    transport = DummyTransport(dist_response("640", "Rejeicao: CNPJ/CPF do interessado nao possui permissao", 0, 0))
    with pytest.raises(RemoteProtocolError):
        make_orchestrator(store, transport).fetch_full_document(account, CHAVE)


def test_manifest_is_idempotent(store, account, pfx_bytes):
    identities = []

    def loader(path, password):
        identity = SigningIdentity.load(pfx_bytes, password)
        identities.append(identity)
        return identity

    transport = DummyTransport(
        event_response("135", "Evento registrado e vinculado a NF-e"),
        event_response("573", "Rejeicao: Duplicidade de evento"),
    )
    orch = make_orchestrator(store, transport, loader=loader)

    first = orch.manifest(account, CHAVE)
    second = orch.manifest(account, CHAVE)

    assert first.status_code == "135"
    assert not first.already_registered
    assert second.status_code == "573"
    assert second.already_registered
    assert transport.calls[0][1] is EVENT
    assert b"<Signature" in transport.calls[0][2]
    assert f"ID210210{CHAVE}01".encode() in transport.calls[1][2]
    assert all(i._key is None for i in identities)


def test_manifest_rejected(store, account, pfx_bytes):
    transport = DummyTransport(event_response("650", "Rejeicao: Evento nao permitido"))
    orch = make_orchestrator(
        store, transport, loader=lambda p, pw: SigningIdentity.load(pfx_bytes, pw)
    )
    with pytest.raises(RemoteProtocolError) as exc:
        orch.manifest(account, CHAVE)
    assert exc.value.status_code == "650"


def test_manifest_and_fetch(store, account, pfx_bytes):
    docs = [doc_zip(0, "procNFe_v4.00.xsd", proc_nfe())]
    transport = DummyTransport(
        event_response("135"),
        dist_response("138", "Documento localizado", 0, 0, docs),
    )
    orch = make_orchestrator(
        store, transport, loader=lambda p, pw: SigningIdentity.load(pfx_bytes, pw)
    )
    manifest, full = orch.manifest_and_fetch(account, CHAVE)
    assert manifest.status_code == "135"
    assert full.available


def test_lock_is_per_account(store):
    orch = make_orchestrator(store, DummyTransport())
    assert orch._lock_for("1") is orch._lock_for("1")
    assert orch._lock_for("1") is not orch._lock_for("2")
