from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Dict, Iterable, Optional, Protocol

from .models import CanonicalDocument
from .nsu import format_nsu, parse_nsu

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    def get_cursor(self, account_id: str) -> int: ...

    def upsert_documents(self, account_id: str, documents: Iterable[CanonicalDocument]) -> int: ...

    def advance_cursor(self, account_id: str, new_cursor: int) -> None: ...


def merge_document(
    existing: Optional[CanonicalDocument], incoming: CanonicalDocument
) -> CanonicalDocument:
    """Return the record to keep for an access key.

    A full document is never replaced by a summary of the same key.
    """
    if existing is None:
        return incoming
    if existing.is_full and not incoming.is_full:
        return existing
    return incoming


class JsonStore:
    """Document store kept in a single JSON file.

    Layout::

        {"accounts": {"<cnpj>": {"cursor": "000000000000123"}},
         "documents": {"<cnpj>": {"<chave>": {...}}}}
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {"accounts": {}, "documents": {}}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data.setdefault("accounts", {})
        data.setdefault("documents", {})
        return data

    def _write(self, data: dict) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.remove(tmp_path)
            raise

    def get_cursor(self, account_id: str) -> int:
        with self._lock:
            account = self._read()["accounts"].get(account_id, {})
        return parse_nsu(account.get("cursor"))

    def get_document(self, account_id: str, access_key: str) -> Optional[CanonicalDocument]:
        with self._lock:
            raw = self._read()["documents"].get(account_id, {}).get(access_key)
        return CanonicalDocument.from_dict(raw) if raw else None

    def documents(self, account_id: str) -> Dict[str, CanonicalDocument]:
        with self._lock:
            raw = self._read()["documents"].get(account_id, {})
        return {key: CanonicalDocument.from_dict(value) for key, value in raw.items()}

    def upsert_documents(self, account_id: str, documents: Iterable[CanonicalDocument]) -> int:
        """Merge ``documents`` by access key. Returns how many records changed."""
        with self._lock:
            data = self._read()
            bucket = data["documents"].setdefault(account_id, {})
            changed = 0
            for doc in documents:
                raw = bucket.get(doc.access_key)
                existing = CanonicalDocument.from_dict(raw) if raw else None
                kept = merge_document(existing, doc)
                if existing is None or kept is not existing:
                    new_raw = kept.to_dict()
                    if new_raw != raw:
                        bucket[doc.access_key] = new_raw
                        changed += 1
            if changed:
                self._write(data)
        return changed

    def advance_cursor(self, account_id: str, new_cursor: int) -> None:
        with self._lock:
            data = self._read()
            account = data["accounts"].setdefault(account_id, {})
            current = parse_nsu(account.get("cursor"))
            if new_cursor < current:
                logger.warning(
                    "NSU %s menor que o atual %s para CNPJ %s; ignorado",
                    new_cursor, current, account_id,
                )
                return
            if new_cursor == current and "cursor" in account:
                return
            account["cursor"] = format_nsu(new_cursor)
            self._write(data)
