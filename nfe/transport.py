from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple

import requests
import urllib3
from requests.adapters import HTTPAdapter

from .envelope import Operation
from .errors import TransportError
from .identity import SigningIdentity


class ClientCertificateAdapter(HTTPAdapter):
    """HTTPAdapter that opens connections with a prepared SSL context."""

    def __init__(self, ssl_context, **kwargs):
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)


class Transport:
    """POST SOAP envelopes to the authority using mutual TLS.

    No retries are done here; see :class:`nfe.retry.RetryPolicy`.
    """

    def __init__(
        self,
        timeout: int = 30,
        ca_bundle: Optional[str] = None,
        environment: int = 1,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.timeout = timeout
        self.ca_bundle = ca_bundle
        self.environment = environment
        self.session_factory = session_factory
        self.logger = logging.getLogger(__name__)
        if not ca_bundle:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def send(
        self,
        account_id: str,
        identity: SigningIdentity,
        operation: Operation,
        request_bytes: bytes,
    ) -> Tuple[int, bytes]:
        """Send ``request_bytes`` and return ``(http_status, body)``."""
        url = operation.url(self.environment)
        headers = {
            "Content-Type": f'application/soap+xml; charset=utf-8; action="{operation.action}"',
        }
        ssl_context = identity.tls_context(self.ca_bundle)
        sess = self.session_factory()
        try:
            sess.mount("https://", ClientCertificateAdapter(ssl_context))
            self.logger.info("Enviando %s para %s (CNPJ %s)", operation.name, url, account_id)
            try:
                resp = sess.post(
                    url,
                    data=request_bytes,
                    headers=headers,
                    timeout=self.timeout,
                    verify=self.ca_bundle or False,
                )
            except requests.exceptions.RequestException as e:
                self.logger.error("Erro de conexão: %s", e)
                raise TransportError.unreachable(f"Erro de conexão: {e}") from e
        finally:
            sess.close()
        if not 200 <= resp.status_code < 300:
            self.logger.error("Erro: %s %s", resp.status_code, resp.text)
            raise TransportError.server_rejected(resp.status_code, resp.content)
        return resp.status_code, resp.content
