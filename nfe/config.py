from __future__ import annotations

import json
import os
from dataclasses import dataclass, asdict
from typing import Optional


@dataclass
class Config:
    cert_path: str = "caminho/para/certificado.pfx"
    cert_pass: str = "sua_senha"
    cnpj: str = "00000000000000"
    environment: int = 1
    uf_autor: Optional[str] = None
    store_path: str = "db.json"
    log_dir: str = "logs"
    timeout: int = 30
    delay_seconds: int = 60
    max_rounds: int = 100
    ca_bundle: Optional[str] = None
    retry_attempts: int = 3
    retry_wait_seconds: int = 5

    REQUIRED_FIELDS = ["cert_path", "cert_pass", "cnpj", "store_path", "log_dir"]

    @classmethod
    def load(cls, path: str) -> "Config":
        """Load configuration from ``path`` or create it with defaults."""
        created = False
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        else:
            data = {}
            created = True
        cfg_data = asdict(cls())
        cfg_data.update({k: v for k, v in data.items() if k in cfg_data})
        cfg = cls(**cfg_data)
        missing = [k for k in cls.REQUIRED_FIELDS if not getattr(cfg, k)]
        if missing and not created:
            raise ValueError(
                "Campos obrigatórios ausentes no config.json: " + ", ".join(missing)
            )
        if cfg.environment not in (1, 2):
            raise ValueError("environment deve ser 1 (produção) ou 2 (homologação)")
        if created:
            cfg.save(path)
        return cfg

    def save(self, path: str) -> None:
        """Persist configuration to ``path`` as JSON."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2, ensure_ascii=False)
