from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from futsaldex.coach import (
    GUEST_CHAT_ID,
    GUEST_USER_ID,
    SYSTEM_INSTRUCTION,
    SupportCoach,
)
from futsaldex.errors import GenerationFailure, HistoryFetchError, PersistenceError
from futsaldex.store import InMemoryDocumentStore


class SpyGenerator:
    """Records every call and replies from a script."""

    name = "spy"

    def __init__(self, *replies: str) -> None:
        self.replies = list(replies) or ["ok"]
        self.calls: List[dict] = []

    async def generate(self, *, system_instruction, history, prompt):
        self.calls.append(
            {"system_instruction": system_instruction, "history": list(history), "prompt": prompt}
        )
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


class BrokenGenerator:
    name = "broken"

    async def generate(self, *, system_instruction, history, prompt):
        raise RuntimeError("quota exceeded")


class RecordingStore(InMemoryDocumentStore):
    def __init__(self, *, fail_reads: bool = False, fail_writes: bool = False) -> None:
        super().__init__()
        self.reads: List[str] = []
        self.writes: List[Optional[str]] = []
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    async def get_document(self, collection, doc_id):
        self.reads.append(doc_id)
        if self.fail_reads:
            raise ConnectionError("store unreachable")
        return await super().get_document(collection, doc_id)

    async def append_and_upsert(self, collection, doc_id, **kwargs):
        self.writes.append(doc_id)
        if self.fail_writes:
            raise ConnectionError("store unreachable")
        return await super().append_and_upsert(collection, doc_id, **kwargs)


def _seed(store, chat_id: str, owner: str, messages):
    asyncio.run(
        store.put_document("support_chats", chat_id, {"userId": owner, "title": "t", "messages": messages})
    )


def test_end_to_end_two_turns():
    store = RecordingStore()
    gen = SpyGenerator("Practica pases cortos...", "Trabaja el golpeo con el empeine...")
    coach = SupportCoach(store, gen)

    first = asyncio.run(coach.process_turn("¿Cómo mejoro el pase?", "U1"))
    assert first.answer == "Practica pases cortos..."
    assert first.chat_id
    assert first.history.status == "skipped" and first.history.reason == "new_chat"
    assert first.persistence.status == "ok"
    assert not first.degraded
    assert gen.calls[0]["history"] == []
    assert gen.calls[0]["system_instruction"] == SYSTEM_INSTRUCTION

    second = asyncio.run(coach.process_turn("¿Y el tiro?", "U1", first.chat_id))
    assert second.chat_id == first.chat_id
    assert second.history.status == "ok"
    assert gen.calls[1]["history"] == [
        {"role": "user", "content": "¿Cómo mejoro el pase?"},
        {"role": "model", "content": "Practica pases cortos..."},
    ]
    assert gen.calls[1]["prompt"] == "¿Y el tiro?"

    doc = asyncio.run(store.get_document("support_chats", first.chat_id))
    assert doc["userId"] == "U1"
    assert doc["title"] == "¿Cómo mejoro el pase?..."
    assert [(m["role"], m["content"]) for m in doc["messages"]] == [
        ("user", "¿Cómo mejoro el pase?"),
        ("ai", "Practica pases cortos..."),
        ("user", "¿Y el tiro?"),
        ("ai", "Trabaja el golpeo con el empeine..."),
    ]


def test_guest_never_touches_the_store():
    store = RecordingStore()
    coach = SupportCoach(store, SpyGenerator("respuesta"))

    result = asyncio.run(coach.process_turn("Q", GUEST_USER_ID, chat_id="X"))

    assert result.answer == "respuesta"
    assert result.chat_id == GUEST_CHAT_ID
    assert result.history.reason == "guest"
    assert result.persistence.reason == "guest"
    assert store.reads == []
    assert store.writes == []


def test_foreign_session_is_not_leaked_or_appended_to():
    store = RecordingStore()
    _seed(store, "X", "U2", [{"role": "user", "content": "secreto de U2"}])
    gen = SpyGenerator("respuesta")
    coach = SupportCoach(store, gen)

    result = asyncio.run(coach.process_turn("Q", "U1", chat_id="X"))

    assert result.answer == "respuesta"
    assert gen.calls[0]["history"] == []
    assert result.history.status == "degraded"
    assert result.history.reason == "forbidden"
    assert isinstance(result.history.error, HistoryFetchError)
    # The turn goes to a fresh session owned by U1.
    assert result.chat_id != "X"
    owned = asyncio.run(store.get_document("support_chats", result.chat_id))
    assert owned["userId"] == "U1"
    foreign = asyncio.run(store.get_document("support_chats", "X"))
    assert len(foreign["messages"]) == 1


def test_unknown_chat_id_starts_empty_and_is_created():
    store = RecordingStore()
    gen = SpyGenerator("respuesta")
    coach = SupportCoach(store, gen)

    result = asyncio.run(coach.process_turn("Q", "U1", chat_id="nuevo"))

    assert result.history.reason == "not_found"
    assert result.chat_id == "nuevo"
    assert asyncio.run(store.get_document("support_chats", "nuevo"))["userId"] == "U1"


def test_history_read_failure_degrades_to_empty_history():
    store = RecordingStore(fail_reads=True)
    gen = SpyGenerator("respuesta")
    coach = SupportCoach(store, gen)

    result = asyncio.run(coach.process_turn("Q", "U1", chat_id="X"))

    assert result.answer == "respuesta"
    assert gen.calls[0]["history"] == []
    assert result.history.status == "degraded"
    assert result.history.reason == "error"
    assert result.degraded


@pytest.mark.parametrize("reply", ["", "   \n"])
def test_empty_generation_raises_and_saves_nothing(reply):
    store = RecordingStore()
    coach = SupportCoach(store, SpyGenerator(reply))

    with pytest.raises(GenerationFailure):
        asyncio.run(coach.process_turn("Q", "U1"))
    assert store.writes == []


def test_generator_exception_becomes_generation_failure():
    store = RecordingStore()
    coach = SupportCoach(store, BrokenGenerator())

    with pytest.raises(GenerationFailure) as exc:
        asyncio.run(coach.process_turn("Q", "U1"))
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert store.writes == []


def test_persistence_failure_still_returns_answer():
    store = RecordingStore(fail_writes=True)
    coach = SupportCoach(store, SpyGenerator("respuesta"))

    new_chat = asyncio.run(coach.process_turn("Q", "U1"))
    assert new_chat.answer == "respuesta"
    assert new_chat.chat_id is None
    assert new_chat.persistence.status == "degraded"
    assert isinstance(new_chat.persistence.error, PersistenceError)

    _seed(store, "S1", "U1", [])
    existing = asyncio.run(coach.process_turn("Q", "U1", chat_id="S1"))
    assert existing.chat_id == "S1"
    assert existing.persistence.degraded


def test_history_limit_keeps_latest_messages():
    store = RecordingStore()
    _seed(
        store,
        "S1",
        "U1",
        [
            {"role": "user", "content": "q1"},
            {"role": "ai", "content": "a1"},
            {"role": "user", "content": "q2"},
            {"role": "ai", "content": "a2"},
        ],
    )
    gen = SpyGenerator("respuesta")
    coach = SupportCoach(store, gen, history_limit=2)

    asyncio.run(coach.process_turn("Q", "U1", chat_id="S1"))
    assert gen.calls[0]["history"] == [
        {"role": "user", "content": "q2"},
        {"role": "model", "content": "a2"},
    ]


@pytest.mark.parametrize("question,user_id", [("", "U1"), ("   ", "U1"), ("Q", "")])
def test_invalid_input_is_rejected(question, user_id):
    store = RecordingStore()
    gen = SpyGenerator("respuesta")
    coach = SupportCoach(store, gen)

    with pytest.raises(ValueError):
        asyncio.run(coach.process_turn(question, user_id))
    assert gen.calls == []
