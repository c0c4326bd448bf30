"""Support chat with the FutsalDex AI coach.

A turn runs four steps in order:

1. load the caller's prior messages for ``chat_id`` (registered users only),
2. ask the text generator for an answer,
3. append the question/answer pair to the session (registered users only),
4. return the answer together with the session id.

Only a failed generation is fatal. A history read that fails, finds nothing
or finds someone else's session continues with empty history; a failed save
still returns the answer. Both cases are reported on the returned
:class:`TurnResult` instead of being raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import GenerationFailure, HistoryFetchError, PersistenceError
from .llm import ChatMessage, TextGenerator
from .store import DocumentStore, utc_iso

logger = logging.getLogger(__name__)

GUEST_USER_ID = "guest-user"
GUEST_CHAT_ID = "guest-chat"

DEFAULT_COLLECTION = "support_chats"
TITLE_CHARS = 40

SYSTEM_INSTRUCTION = """You are FutsalDex AI Coach, a futsal expert who has coached at elite level for many years. You act as a professional, encouraging and knowledgeable mentor.

Give authentic, detailed and precise answers:
1. Be specific and actionable: give step-by-step instructions, concrete drills or tactical setups, and explain why you recommend them.
2. Give detail: for an exercise, include its objectives, required space and materials, and key coaching points; for a tactic, its strengths and weaknesses.
3. Use your expertise: refer to tactical concepts, current training methodology and player development principles.
4. Keep context: you can see the conversation history. Build on your previous answers and stay consistent with them.

**IMPORTANT: You MUST respond in Spanish (es-ES).**"""

OK = "ok"
SKIPPED = "skipped"
DEGRADED = "degraded"


@dataclass
class StepOutcome:
    """How an optional step (history or persistence) ended."""

    status: str
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def degraded(self) -> bool:
        return self.status == DEGRADED


@dataclass
class TurnResult:
    answer: str
    chat_id: Optional[str]
    history: StepOutcome
    persistence: StepOutcome

    @property
    def degraded(self) -> bool:
        return self.history.degraded or self.persistence.degraded


def _to_history(messages: List[Dict[str, Any]]) -> List[ChatMessage]:
    out: List[ChatMessage] = []
    for m in messages:
        if not isinstance(m, dict):
            continue
        role = "model" if m.get("role") == "ai" else "user"
        out.append({"role": role, "content": str(m.get("content") or "")})
    return out


class SupportCoach:
    """Coordinates one chat turn across the document store and the generator."""

    def __init__(
        self,
        store: DocumentStore,
        generator: TextGenerator,
        *,
        collection: str = DEFAULT_COLLECTION,
        history_limit: int = 0,
        system_instruction: str = SYSTEM_INSTRUCTION,
    ) -> None:
        self.store = store
        self.generator = generator
        self.collection = collection
        self.history_limit = max(0, int(history_limit))
        self.system_instruction = system_instruction

    async def _load_history(
        self, chat_id: Optional[str], user_id: str
    ) -> Tuple[List[ChatMessage], StepOutcome]:
        if user_id == GUEST_USER_ID:
            return [], StepOutcome(SKIPPED, "guest")
        if not chat_id:
            return [], StepOutcome(SKIPPED, "new_chat")

        try:
            doc = await self.store.get_document(self.collection, chat_id)
        except Exception as e:
            err = HistoryFetchError(f"could not read chat {chat_id}: {e}", reason="error")
            logger.warning("history fetch failed for chat %s: %s", chat_id, e)
            return [], StepOutcome(DEGRADED, err.reason, err)

        if doc is None:
            err = HistoryFetchError(f"chat {chat_id} not found", reason="not_found")
            logger.info("chat %s not found, starting without history", chat_id)
            return [], StepOutcome(DEGRADED, err.reason, err)

        if doc.get("userId") != user_id:
            err = HistoryFetchError(f"chat {chat_id} is not owned by caller", reason="forbidden")
            logger.warning("user %s asked for chat %s owned by someone else", user_id, chat_id)
            return [], StepOutcome(DEGRADED, err.reason, err)

        messages = doc.get("messages")
        if not isinstance(messages, list):
            messages = []
        if self.history_limit:
            messages = messages[-self.history_limit:]
        return _to_history(messages), StepOutcome(OK)

    async def _generate(self, question: str, history: List[ChatMessage]) -> str:
        try:
            text = await self.generator.generate(
                system_instruction=self.system_instruction,
                history=history,
                prompt=question,
            )
        except GenerationFailure:
            raise
        except Exception as e:
            logger.exception("text generation failed")
            raise GenerationFailure(f"text generation failed: {e}") from e

        if not text or not text.strip():
            raise GenerationFailure("The AI model did not return a valid answer.")
        return text

    async def _save_turn(
        self, chat_id: Optional[str], user_id: str, question: str, answer: str
    ) -> Tuple[Optional[str], StepOutcome]:
        now = utc_iso()
        items = [
            {"role": "user", "content": question, "createdAt": now},
            {"role": "ai", "content": answer, "createdAt": now},
        ]
        create_fields = {
            "userId": user_id,
            "title": question[:TITLE_CHARS] + "...",
        }
        try:
            saved_id = await self.store.append_and_upsert(
                self.collection,
                chat_id,
                array_field="messages",
                items=items,
                create_fields=create_fields,
            )
        except Exception as e:
            err = PersistenceError(f"could not save turn: {e}")
            logger.exception("error saving chat turn for user %s", user_id)
            return None, StepOutcome(DEGRADED, "error", err)
        return saved_id, StepOutcome(OK)

    async def process_turn(
        self,
        question: str,
        user_id: str,
        chat_id: Optional[str] = None,
    ) -> TurnResult:
        """Answer ``question`` for ``user_id``, continuing ``chat_id`` if given.

        Raises
        ------
        ValueError
            Empty question or missing user id.
        GenerationFailure
            The generator failed or returned no text. Nothing is saved.
        """
        if not question or not question.strip():
            raise ValueError("question must not be empty")
        if not user_id:
            raise ValueError("user_id is required")
        chat_id = chat_id or None

        history, history_outcome = await self._load_history(chat_id, user_id)
        answer = await self._generate(question, history)

        if user_id == GUEST_USER_ID:
            return TurnResult(answer, GUEST_CHAT_ID, history_outcome, StepOutcome(SKIPPED, "guest"))

        # Never append to a session owned by another user; open a new one.
        target = None if history_outcome.reason == "forbidden" else chat_id
        saved_id, persistence_outcome = await self._save_turn(target, user_id, question, answer)

        return TurnResult(
            answer=answer,
            chat_id=saved_id if saved_id is not None else chat_id,
            history=history_outcome,
            persistence=persistence_outcome,
        )
