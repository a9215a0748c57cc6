from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Tuple

from . import decoder
from .envelope import (
    DISTRIBUTION,
    EVENT,
    build_bulk_fetch_request,
    build_event_request,
    build_single_key_request,
    parse_event_response,
    parse_response,
    somente_digitos,
)
from .errors import RemoteProtocolError
from .events import CIENCIA, ManifestRequest, build_and_sign
from .identity import SigningIdentity, load_identity
from .models import Account, FullDocumentResult, ManifestResult, SyncResult
from .store import DocumentStore
from .transport import Transport

DOCUMENTOS_LOCALIZADOS = "138"
NENHUM_DOCUMENTO = "137"

EVENTO_VINCULADO = "135"
EVENTO_REGISTRADO = "136"
EVENTO_DUPLICADO = "573"
EVENT_SUCCESS_CODES = {EVENTO_VINCULADO, EVENTO_REGISTRADO, EVENTO_DUPLICADO}


class SyncOrchestrator:
    """Drive the distribution and manifestation protocols for accounts.

    Only one fetch per account runs at a time; different accounts do not
    share state and may run in parallel. Documents are always merged into
    the store before the cursor is advanced.
    """

    def __init__(
        self,
        store: DocumentStore,
        transport: Transport,
        environment: int = 1,
        uf_autor: Optional[str] = None,
        identity_loader: Callable[[str, str], SigningIdentity] = load_identity,
    ):
        self.store = store
        self.transport = transport
        self.environment = environment
        self.uf_autor = uf_autor
        self.identity_loader = identity_loader
        self.logger = logging.getLogger(__name__)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account_id, threading.Lock())

    @contextmanager
    def _identity(self, account: Account) -> Iterator[SigningIdentity]:
        identity = self.identity_loader(account.cert_path, account.cert_pass)
        try:
            yield identity
        finally:
            identity.release()

    def _send(self, account: Account, cnpj: str, operation, request: bytes) -> bytes:
        with self._identity(account) as identity:
            _, body = self.transport.send(cnpj, identity, operation, request)
        return body

    def sync_once(self, account: Account) -> SyncResult:
        """Fetch the next batch after the account cursor.

        Returns the new cursor in the result; the store is updated with the
        merged documents first and the cursor afterwards.
        """
        cnpj = somente_digitos(account.cnpj)
        with self._lock_for(cnpj):
            cursor = max(account.cursor, self.store.get_cursor(cnpj))
            self.logger.info("Consultando NSU %s para CNPJ %s", cursor, cnpj)
            request = build_bulk_fetch_request(cnpj, cursor, self.environment, self.uf_autor)
            body = self._send(account, cnpj, DISTRIBUTION, request)
            response = parse_response(body)

            if response.status_code == DOCUMENTOS_LOCALIZADOS:
                documents = decoder.decode(response.documents, cnpj)
                if documents:
                    self.store.upsert_documents(cnpj, documents)
                sequences = [env.sequence for env in response.documents]
                new_cursor = max([cursor] + sequences) if sequences else max(cursor, response.cursor)
            elif response.status_code == NENHUM_DOCUMENTO:
                documents = []
                new_cursor = max(cursor, response.cursor)
            else:
                self.logger.error(
                    "SEFAZ rejeitou a consulta: %s %s", response.status_code, response.status_message
                )
                raise RemoteProtocolError(response.status_code, response.status_message, body)

            if new_cursor > cursor:
                self.store.advance_cursor(cnpj, new_cursor)
            self.logger.info(
                "cStat %s: %s documento(s), NSU %s de %s",
                response.status_code, len(documents), new_cursor, response.max_cursor,
            )
            return SyncResult(
                status_code=response.status_code,
                status_message=response.status_message,
                cursor=new_cursor,
                max_cursor=max(response.max_cursor, new_cursor),
                documents=documents,
            )

    def fetch_full_document(self, account: Account, access_key: str) -> FullDocumentResult:
        """Fetch one document by access key.

        When the authority only returns the summary (the document was not
        manifested yet) the result is ``available=False``.
        """
        cnpj = somente_digitos(account.cnpj)
        with self._lock_for(cnpj):
            request = build_single_key_request(cnpj, access_key, self.environment, self.uf_autor)
            body = self._send(account, cnpj, DISTRIBUTION, request)
            response = parse_response(body)
            if response.status_code not in (DOCUMENTOS_LOCALIZADOS, NENHUM_DOCUMENTO):
                raise RemoteProtocolError(response.status_code, response.status_message, body)

            documents = [d for d in decoder.decode(response.documents, cnpj) if d.access_key == access_key]
            full = next((d for d in documents if d.is_full), None)
            if full is None:
                self.logger.info("XML completo indisponível para %s; manifestação necessária", access_key)
                return FullDocumentResult(
                    available=False,
                    status_code=response.status_code,
                    status_message=response.status_message,
                    document=documents[0] if documents else None,
                )
            self.store.upsert_documents(cnpj, [full])
            return FullDocumentResult(
                available=True,
                status_code=response.status_code,
                status_message=response.status_message,
                document=full,
            )

    def manifest(
        self,
        account: Account,
        access_key: str,
        event_type: str = CIENCIA,
        justification: Optional[str] = None,
    ) -> ManifestResult:
        """Sign and submit a recipient manifestation event.

        A duplicate event (573) counts as success: resubmitting the same
        manifestation is safe.
        """
        cnpj = somente_digitos(account.cnpj)
        request = ManifestRequest(
            cnpj=cnpj,
            access_key=access_key,
            event_type=event_type,
            environment=self.environment,
            justification=justification,
        )
        with self._identity(account) as identity:
            signed = build_and_sign(request, identity)
            _, body = self.transport.send(cnpj, identity, EVENT, build_event_request(signed))
        response = parse_event_response(body)
        if response.status_code not in EVENT_SUCCESS_CODES:
            self.logger.error(
                "Manifestação rejeitada: %s %s", response.status_code, response.status_message
            )
            raise RemoteProtocolError(response.status_code, response.status_message, body)
        duplicate = response.status_code == EVENTO_DUPLICADO
        if duplicate:
            self.logger.info("Evento %s já registrado para %s", event_type, access_key)
        return ManifestResult(
            status_code=response.status_code,
            status_message=response.status_message,
            protocol=response.protocol,
            already_registered=duplicate,
        )

    def manifest_and_fetch(
        self, account: Account, access_key: str, event_type: str = CIENCIA
    ) -> Tuple[ManifestResult, FullDocumentResult]:
        manifest = self.manifest(account, access_key, event_type)
        return manifest, self.fetch_full_document(account, access_key)
