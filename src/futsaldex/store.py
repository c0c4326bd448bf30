"""Document store backends (in-memory and JSON on disk)."""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


# -----------------------------
# Helpers
# -----------------------------
def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_document_id() -> str:
    return uuid.uuid4().hex


def _safe_name(name: str) -> str:
    s = re.sub(r"[^\w.\-]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _upsert(
    docs: Dict[str, Document],
    doc_id: Optional[str],
    *,
    array_field: str,
    items: Sequence[Document],
    create_fields: Document,
) -> str:
    """Append ``items`` to an existing document or create it. Returns the id."""
    now = utc_iso()
    doc_id = doc_id or new_document_id()
    existing = docs.get(doc_id)
    if existing is not None:
        existing.setdefault(array_field, []).extend(copy.deepcopy(list(items)))
        existing["updatedAt"] = now
        return doc_id

    doc = copy.deepcopy(dict(create_fields))
    doc["createdAt"] = now
    doc["updatedAt"] = now
    doc[array_field] = copy.deepcopy(list(items))
    docs[doc_id] = doc
    return doc_id


# -----------------------------
# Interface
# -----------------------------
class DocumentStore(Protocol):
    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    async def append_and_upsert(
        self,
        collection: str,
        doc_id: Optional[str],
        *,
        array_field: str,
        items: Sequence[Document],
        create_fields: Document,
    ) -> str:
        ...

    async def list_documents(self, collection: str) -> List[Document]:
        ...

    async def put_document(self, collection: str, doc_id: str, data: Document) -> None:
        ...

    async def put_documents(self, collection: str, docs: Dict[str, Document]) -> None:
        ...

    async def delete_documents(self, collection: str, doc_ids: Sequence[str]) -> int:
        ...


# -----------------------------
# In-memory backend
# -----------------------------
class InMemoryDocumentStore:
    """Dict-backed store; every read hands out a deep copy."""

    name = "memory"

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}

    def _docs(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = self._docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def append_and_upsert(
        self,
        collection: str,
        doc_id: Optional[str],
        *,
        array_field: str,
        items: Sequence[Document],
        create_fields: Document,
    ) -> str:
        return _upsert(
            self._docs(collection),
            doc_id,
            array_field=array_field,
            items=items,
            create_fields=create_fields,
        )

    async def list_documents(self, collection: str) -> List[Document]:
        return [{**copy.deepcopy(v), "id": k} for k, v in self._docs(collection).items()]

    async def put_document(self, collection: str, doc_id: str, data: Document) -> None:
        self._docs(collection)[doc_id] = copy.deepcopy(dict(data))

    async def put_documents(self, collection: str, docs: Dict[str, Document]) -> None:
        target = self._docs(collection)
        for doc_id, data in docs.items():
            target[doc_id] = copy.deepcopy(dict(data))

    async def delete_documents(self, collection: str, doc_ids: Sequence[str]) -> int:
        target = self._docs(collection)
        return sum(1 for doc_id in doc_ids if target.pop(doc_id, None) is not None)


# -----------------------------
# Disk backend
# -----------------------------
class DiskDocumentStore:
    """JSON-file store, one file per collection (thread-safe, atomic).

    Layout:
        data_dir/
          <collection>.json     # {doc_id: document}

    A file that fails to parse is renamed to ``<collection>.corrupt.json``
    and the collection starts empty. Blocking file access runs in a worker
    thread so the event loop is not held up.
    """

    name = "disk"

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, collection: str) -> Path:
        return self.root / f"{_safe_name(collection)}.json"

    def _load(self, collection: str) -> Dict[str, Document]:
        path = self._path(collection)
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("corrupt collection file %s: %s", path, e)
            with self._lock:
                try:
                    path.rename(path.with_suffix(".corrupt.json"))
                except OSError:
                    logger.exception("could not move aside %s", path)
            return {}
        if not isinstance(data, dict):
            logger.warning("unexpected content in %s, ignoring", path)
            return {}
        return data

    def _save(self, collection: str, docs: Dict[str, Document]) -> None:
        _atomic_write_text(self._path(collection), json.dumps(docs, ensure_ascii=False, indent=2))

    # --------- sync internals ----------
    def _get_sync(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            return self._load(collection).get(doc_id)

    def _upsert_sync(
        self,
        collection: str,
        doc_id: Optional[str],
        array_field: str,
        items: Sequence[Document],
        create_fields: Document,
    ) -> str:
        with self._lock:
            docs = self._load(collection)
            out = _upsert(docs, doc_id, array_field=array_field, items=items, create_fields=create_fields)
            self._save(collection, docs)
            return out

    def _list_sync(self, collection: str) -> List[Document]:
        with self._lock:
            return [{**v, "id": k} for k, v in self._load(collection).items()]

    def _put_sync(self, collection: str, doc_id: str, data: Document) -> None:
        self._put_many_sync(collection, {doc_id: data})

    def _put_many_sync(self, collection: str, new_docs: Dict[str, Document]) -> None:
        # One load/save per batch, so a batch lands in a single atomic write.
        with self._lock:
            docs = self._load(collection)
            for doc_id, data in new_docs.items():
                docs[doc_id] = dict(data)
            self._save(collection, docs)

    def _delete_sync(self, collection: str, doc_ids: Sequence[str]) -> int:
        with self._lock:
            docs = self._load(collection)
            removed = sum(1 for doc_id in doc_ids if docs.pop(doc_id, None) is not None)
            if removed:
                self._save(collection, docs)
            return removed

    # --------- async API ----------
    async def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        return await asyncio.to_thread(self._get_sync, collection, doc_id)

    async def append_and_upsert(
        self,
        collection: str,
        doc_id: Optional[str],
        *,
        array_field: str,
        items: Sequence[Document],
        create_fields: Document,
    ) -> str:
        return await asyncio.to_thread(
            self._upsert_sync, collection, doc_id, array_field, items, create_fields
        )

    async def list_documents(self, collection: str) -> List[Document]:
        return await asyncio.to_thread(self._list_sync, collection)

    async def put_document(self, collection: str, doc_id: str, data: Document) -> None:
        await asyncio.to_thread(self._put_sync, collection, doc_id, data)

    async def put_documents(self, collection: str, docs: Dict[str, Document]) -> None:
        await asyncio.to_thread(self._put_many_sync, collection, docs)

    async def delete_documents(self, collection: str, doc_ids: Sequence[str]) -> int:
        return await asyncio.to_thread(self._delete_sync, collection, list(doc_ids))


def create_store(cfg: Dict[str, Any]) -> DocumentStore:
    """Build the configured store backend from the ``store`` config section."""
    store_cfg = (cfg or {}).get("store", {})
    backend = str(store_cfg.get("backend", "memory")).lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "disk":
        return DiskDocumentStore(store_cfg.get("data_dir") or "data")
    raise ValueError(f"Unknown store backend: {backend!r}")
