"""Exercise library: cached listing plus the admin bulk operations."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .cache import TTLCache
from .store import DocumentStore, new_document_id, utc_iso

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "ejercicios_futsal"
ITEMS_PER_PAGE = 10
GUEST_ITEM_LIMIT = 5

MAX_BATCH_SIZE = 499
DELETE_BATCH_SIZE = 400
PLACEHOLDER_HOST = "placehold.co"


def _has_custom_image(doc: Dict[str, Any]) -> bool:
    imagen = doc.get("imagen")
    return bool(imagen) and PLACEHOLDER_HOST not in str(imagen)


class ExerciseLibrary:
    """Filtered views over the exercise collection.

    The whole collection is read once and cached; filtering, ordering and
    paging are applied on every call. Writes made through this class drop
    the cached copy.
    """

    def __init__(
        self,
        store: DocumentStore,
        cache: TTLCache,
        *,
        collection: str = DEFAULT_COLLECTION,
        ttl: float = 300,
    ) -> None:
        self.store = store
        self.cache = cache
        self.collection = collection
        self.ttl = ttl

    @property
    def cache_key(self) -> str:
        return f"exercises:{self.collection}"

    async def _all(self) -> List[Dict[str, Any]]:
        cached = self.cache.get(self.cache_key, self.ttl)
        if cached is not None:
            return cached
        docs = await self.store.list_documents(self.collection)
        logger.info("loaded %d exercises from %s", len(docs), self.collection)
        self.cache.set(self.cache_key, docs)
        return docs

    async def list_exercises(
        self,
        *,
        fase: Optional[str] = None,
        categoria_edad: Optional[str] = None,
        search: Optional[str] = None,
        registered: bool = True,
        page: int = 1,
    ) -> List[Dict[str, Any]]:
        """Return one page of exercises ordered by name.

        Registered callers page through the results ``ITEMS_PER_PAGE`` at a
        time. Guests only ever see the first ``GUEST_ITEM_LIMIT`` matches.
        A page past the end is empty.
        """
        if page < 1:
            raise ValueError("page must be >= 1")

        docs = await self._all()
        out = [
            d for d in docs
            if (not fase or d.get("fase") == fase)
            and (not categoria_edad or d.get("categoria_edad") == categoria_edad)
            and (not search or str(d.get("ejercicio", "")).startswith(search))
        ]
        out.sort(key=lambda d: str(d.get("ejercicio", "")))

        if not registered:
            return [dict(d) for d in out[:GUEST_ITEM_LIMIT]]
        start = (page - 1) * ITEMS_PER_PAGE
        return [dict(d) for d in out[start:start + ITEMS_PER_PAGE]]

    async def batch_add_exercises(self, exercises: Sequence[Dict[str, Any]]) -> int:
        """Insert ``exercises`` under new ids, ``MAX_BATCH_SIZE`` per write.

        Returns the number of exercises written. A failing chunk propagates;
        chunks already written stay written.
        """
        added = 0
        try:
            for i in range(0, len(exercises), MAX_BATCH_SIZE):
                chunk = exercises[i:i + MAX_BATCH_SIZE]
                now = utc_iso()
                docs = {}
                for ex in chunk:
                    doc = dict(ex)
                    doc["createdAt"] = now
                    doc["numero"] = ex.get("numero") or None
                    doc["variantes"] = ex.get("variantes") or None
                    doc["consejos_entrenador"] = ex.get("consejos_entrenador") or None
                    doc["isVisible"] = True if ex.get("isVisible") is None else ex["isVisible"]
                    docs[new_document_id()] = doc
                await self.store.put_documents(self.collection, docs)
                added += len(chunk)
        finally:
            if added:
                self.cache.delete(self.cache_key)
        logger.info("batch added %d exercises to %s", added, self.collection)
        return added

    async def delete_exercises_without_images(self) -> int:
        """Delete exercises whose ``imagen`` is empty or a placeholder URL."""
        docs = await self.store.list_documents(self.collection)
        doomed = [d["id"] for d in docs if not _has_custom_image(d)]

        deleted = 0
        try:
            for i in range(0, len(doomed), DELETE_BATCH_SIZE):
                deleted += await self.store.delete_documents(
                    self.collection, doomed[i:i + DELETE_BATCH_SIZE]
                )
        finally:
            if deleted:
                self.cache.delete(self.cache_key)
        logger.info("deleted %d exercises without images from %s", deleted, self.collection)
        return deleted
