import datetime
import logging
import os
import time
from typing import Callable, Optional

from .config import Config
from .errors import NFeError
from .events import CIENCIA
from .models import Account, FullDocumentResult, ManifestResult
from .retry import RetryPolicy
from .store import JsonStore
from .sync import SyncOrchestrator
from .transport import Transport


class NFeDownloader:
    """Download NF-e documents addressed to the configured CNPJ."""

    def __init__(self, config: Config, orchestrator: Optional[SyncOrchestrator] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.store = JsonStore(config.store_path)
        if orchestrator is None:
            transport = Transport(
                timeout=int(config.timeout),
                ca_bundle=config.ca_bundle,
                environment=int(config.environment),
            )
            orchestrator = SyncOrchestrator(
                self.store,
                transport,
                environment=int(config.environment),
                uf_autor=config.uf_autor,
            )
        self.orchestrator = orchestrator
        self.retry = RetryPolicy(
            max_attempts=int(config.retry_attempts),
            wait_seconds=config.retry_wait_seconds,
        )

    @property
    def account(self) -> Account:
        cfg = self.config
        return Account(cnpj=cfg.cnpj, cert_path=cfg.cert_path, cert_pass=cfg.cert_pass)

    def configurar_log(self) -> str:
        """Send log records to a timestamped file in ``log_dir``."""
        os.makedirs(self.config.log_dir, exist_ok=True)
        log_name = os.path.join(
            self.config.log_dir,
            f"log_nfe_{datetime.datetime.now().strftime('%Y%m%d_%H%M%S')}.txt",
        )
        logging.basicConfig(
            filename=log_name,
            level=logging.INFO,
            format="%(asctime)s %(levelname)s: %(message)s",
        )
        return log_name

    def run(
        self,
        write: Callable[[str, bool], None] = lambda msg, log=True: None,
        running: Callable[[], bool] = lambda: True,
    ) -> int:
        """Fetch batches until the cursor reaches ``maxNSU`` or ``running`` is ``False``.

        Returns the number of documents received.
        """
        cfg = self.config
        delay_seconds = int(cfg.delay_seconds)
        account = self.account
        total_baixados = 0
        write(f"Consultando NF-e para CNPJ {cfg.cnpj}.", log=True)

        for _ in range(int(cfg.max_rounds)):
            if not running():
                break
            result = self.retry.call(self.orchestrator.sync_once, account)
            account.cursor = result.cursor
            for doc in result.documents:
                write(f"NSU {doc.sequence}: {doc.access_key} ({doc.completeness})", log=True)
            total_baixados += len(result.documents)
            write(f"cStat {result.status_code}: {result.status_message}", log=True)
            if not result.has_more:
                write("Nenhuma nota pendente. Fim da consulta.", log=True)
                break
            write(f"Aguardando {delay_seconds} segundos para o próximo lote...", log=True)
            for _ in range(delay_seconds):
                if not running():
                    break
                time.sleep(1)

        write(f"Processo concluído. Total baixados: {total_baixados}", log=True)
        return total_baixados

    def baixar_chave(self, chave: str) -> FullDocumentResult:
        return self.retry.call(self.orchestrator.fetch_full_document, self.account, chave)

    def manifestar(self, chave: str, evento: str = CIENCIA) -> ManifestResult:
        return self.retry.call(self.orchestrator.manifest, self.account, chave, evento)


def describe_error(exc: NFeError) -> str:
    """Short message telling the user what to do about ``exc``."""
    hints = {
        "bad_passphrase": "Senha do certificado incorreta.",
        "malformed": "Arquivo de certificado inválido.",
        "no_private_key": "Certificado sem chave privada.",
        "not_found": "Certificado não encontrado.",
        "no_key": "Chave indisponível ou certificado expirado; envie o certificado novamente.",
        "unreachable": "Não foi possível conectar à SEFAZ; verifique a rede.",
        "server_rejected": "A SEFAZ recusou a requisição.",
        "remote_rejected": "A SEFAZ rejeitou a solicitação.",
    }
    return f"[{exc.code}] {hints.get(exc.code, 'Erro')} {exc}"
