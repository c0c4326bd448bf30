"""FastAPI application exposing the support coach and the exercise library."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .cache import TTLCache
from .coach import GUEST_USER_ID, SupportCoach
from .config import load_config
from .errors import GenerationFailure
from .exercises import ExerciseLibrary
from .llm import TextGenerator, create_from_config
from .store import DocumentStore, create_store

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    question: str = Field(..., min_length=1, description="The coach's question.")
    chat_id: Optional[str] = Field(default=None, description="Session to continue, if any.")
    user_id: str = Field(default=GUEST_USER_ID, min_length=1, description="Caller identity.")


class ChatResponse(BaseModel):
    answer: str
    chat_id: Optional[str] = None
    degraded: bool = False


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    generator: Optional[TextGenerator] = None,
    store: Optional[DocumentStore] = None,
    cache: Optional[TTLCache] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    chat_cfg = cfg.get("chat", {})

    # Services
    # An empty TTLCache is falsy, so test against None.
    if store is None:
        store = create_store(cfg)
    if generator is None:
        generator = create_from_config(cfg)
    if cache is None:
        cache = TTLCache()

    coach = SupportCoach(
        store,
        generator,
        collection=chat_cfg.get("collection", "support_chats"),
        history_limit=int(chat_cfg.get("history_limit", 0) or 0),
    )
    library = ExerciseLibrary(
        store,
        cache,
        collection=cfg.get("exercises", {}).get("collection", "ejercicios_futsal"),
        ttl=float(cfg.get("cache", {}).get("exercises_ttl", 300)),
    )

    app = FastAPI(title="FutsalDex Coach", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.coach = coach
    app.state.library = library
    app.state.store = store
    app.state.cache = cache

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "store": getattr(store, "name", type(store).__name__),
            "generator": getattr(generator, "name", type(generator).__name__),
        }

    @app.post("/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest):
        try:
            result = await coach.process_turn(req.question, req.user_id, req.chat_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except GenerationFailure as e:
            logger.error("chat turn failed for user %s: %s", req.user_id, e)
            raise HTTPException(status_code=502, detail=str(e))

        if result.degraded:
            logger.info(
                "chat %s degraded (history=%s/%s, persistence=%s/%s)",
                result.chat_id,
                result.history.status,
                result.history.reason,
                result.persistence.status,
                result.persistence.reason,
            )
        return ChatResponse(answer=result.answer, chat_id=result.chat_id, degraded=result.degraded)

    @app.get("/exercises")
    async def exercises(
        fase: Optional[str] = Query(default=None),
        categoria_edad: Optional[str] = Query(default=None),
        search: Optional[str] = Query(default=None),
        registered: bool = Query(default=False),
        page: int = Query(default=1, ge=1),
    ) -> List[Dict[str, Any]]:
        return await library.list_exercises(
            fase=fase,
            categoria_edad=categoria_edad,
            search=search,
            registered=registered,
            page=page,
        )

    return app
