"""Text-generation backends for the support coach.

Every backend exposes the same coroutine::

    text = await generator.generate(
        system_instruction="...",
        history=[{"role": "user", "content": "..."}, {"role": "model", "content": "..."}],
        prompt="...",
    )

History roles use the ``user`` / ``model`` vocabulary. An empty string means
the backend produced nothing; deciding whether that is an error is left to
the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, TypedDict

import httpx

logger = logging.getLogger(__name__)


class ChatMessage(TypedDict):
    role: str      # "user" | "model"
    content: str


class TextGenerator(Protocol):
    name: str

    async def generate(
        self,
        *,
        system_instruction: str,
        history: Sequence[ChatMessage],
        prompt: str,
    ) -> str:
        ...


@dataclass
class GenerationConfig:
    temperature: float = 0.7
    top_p: float = 0.95
    max_output_tokens: int = 1024
    stop: Optional[List[str]] = None


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# Google Gemini (REST)
# -----------------------------

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiGenerator:
    """Calls the Gemini ``generateContent`` endpoint over HTTP."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.0-flash",
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 60.0,
        gen_cfg: Optional[GenerationConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.gen_cfg = gen_cfg or GenerationConfig()
        self._client = client

    def _payload(self, system_instruction: str, history: Sequence[ChatMessage], prompt: str) -> Dict[str, Any]:
        contents = [
            {"role": m["role"], "parts": [{"text": m["content"]}]}
            for m in history
            if m.get("content")
        ]
        contents.append({"role": "user", "parts": [{"text": prompt}]})

        generation_config: Dict[str, Any] = {
            "temperature": self.gen_cfg.temperature,
            "topP": self.gen_cfg.top_p,
            "maxOutputTokens": self.gen_cfg.max_output_tokens,
        }
        if self.gen_cfg.stop:
            generation_config["stopSequences"] = list(self.gen_cfg.stop)

        return {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": contents,
            "generationConfig": generation_config,
        }

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(p.get("text", "")) for p in parts)

    async def generate(
        self,
        *,
        system_instruction: str,
        history: Sequence[ChatMessage],
        prompt: str,
    ) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = self._payload(system_instruction, history, prompt)
        headers = {"x-goog-api-key": self.api_key}

        if self._client is not None:
            resp = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()
        return self._extract_text(resp.json())


# -----------------------------
# Local GGUF model (llama.cpp)
# -----------------------------

class GGUFGenerator:
    """Thin wrapper around :mod:`llama_cpp` for local chat generation."""

    name = "gguf"

    def __init__(
        self,
        model_path: Optional[str] = None,
        *,
        gen_cfg: Optional[GenerationConfig] = None,
        llama: Any = None,
        **kwargs: Any,
    ) -> None:
        """
        Parameters
        ----------
        model_path : str | None
            Path to .gguf weights. Ignored when ``llama`` is given.
        llama : Any
            Pre-built model object (mainly for tests).
        kwargs : Any
            Passed to llama_cpp.Llama with some defaults:
              - n_threads: defaults to os.cpu_count()
              - n_gpu_layers: auto if gpu offload supported; else 0
              - use_mmap: default True, with fallback retry if OSError
        """
        self.gen_cfg = gen_cfg or GenerationConfig()
        self._default_stops = ["</s>", "###", "User:", "Assistant:"]

        if llama is not None:
            self._llama = llama
            return

        # Lazy import so the package works without the dep.
        from llama_cpp import Llama, llama_supports_gpu_offload  # type: ignore

        threads = kwargs.get("n_threads")
        if threads is None or int(threads) <= 0:
            kwargs["n_threads"] = os.cpu_count() or 1

        if kwargs.get("n_gpu_layers") is None:
            kwargs["n_gpu_layers"] = -1 if llama_supports_gpu_offload() else 0

        use_mmap = _bool(kwargs.get("use_mmap", True), True)
        kwargs["use_mmap"] = use_mmap
        kwargs.setdefault("verbose", False)

        try:
            self._llama = Llama(model_path=model_path, **kwargs)
        except OSError as e:
            if not use_mmap:
                raise
            # Retry without mmap on network filesystems.
            logger.warning("mmap load failed, retrying without mmap: %s", e)
            kwargs["use_mmap"] = False
            self._llama = Llama(model_path=model_path, **kwargs)

    def _build_messages(
        self,
        system_instruction: str,
        history: Sequence[ChatMessage],
        prompt: str,
    ) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = [{"role": "system", "content": system_instruction}]
        for m in history:
            if not m.get("content"):
                continue
            role = "assistant" if m["role"] == "model" else "user"
            msgs.append({"role": role, "content": m["content"]})
        msgs.append({"role": "user", "content": prompt})
        return msgs

    def _render_prompt(self, messages: List[Dict[str, str]]) -> str:
        """Generic instruction template for builds without chat completion."""
        lines: List[str] = []
        for m in messages:
            if m["role"] == "system":
                lines.append("### System\n" + m["content"].strip() + "\n")
            elif m["role"] == "user":
                lines.append("### User\n" + m["content"].strip() + "\n")
            elif m["role"] == "assistant":
                lines.append("### Assistant\n" + m["content"].strip() + "\n")
        lines.append("### Assistant\n")
        return "\n".join(lines)

    def _complete(self, messages: List[Dict[str, str]]) -> str:
        cfg = self.gen_cfg
        if hasattr(self._llama, "create_chat_completion"):
            result = self._llama.create_chat_completion(
                messages=messages,
                max_tokens=cfg.max_output_tokens,
                temperature=cfg.temperature,
                top_p=cfg.top_p,
                stop=cfg.stop,
            )
            return (result["choices"][0].get("message") or {}).get("content") or ""

        result = self._llama(
            self._render_prompt(messages),
            max_tokens=cfg.max_output_tokens,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            stop=cfg.stop or self._default_stops,
        )
        return result["choices"][0].get("text") or ""

    async def generate(
        self,
        *,
        system_instruction: str,
        history: Sequence[ChatMessage],
        prompt: str,
    ) -> str:
        messages = self._build_messages(system_instruction, history, prompt)
        return await asyncio.to_thread(self._complete, messages)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> TextGenerator:
    """Create a generator from a config dict (e.g., loaded YAML)."""
    gen = (cfg or {}).get("generator", {}) if isinstance(cfg, dict) else {}
    provider = str(gen.get("provider", "gemini")).lower()
    gen_cfg = GenerationConfig(
        temperature=float(gen.get("temperature", 0.7)),
        top_p=float(gen.get("top_p", 0.95)),
        max_output_tokens=int(gen.get("max_output_tokens", 1024)),
        stop=gen.get("stop"),
    )

    if provider == "gemini":
        api_key = gen.get("api_key") or os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        if not api_key:
            raise RuntimeError("No Gemini API key configured (generator.api_key or GEMINI_API_KEY).")
        return GeminiGenerator(
            api_key,
            model=gen.get("model", "gemini-2.0-flash"),
            base_url=gen.get("base_url", GEMINI_BASE_URL),
            timeout=float(gen.get("timeout", 60.0)),
            gen_cfg=gen_cfg,
        )

    if provider == "gguf":
        model_path = gen.get("model_path")
        if not model_path or not os.path.exists(model_path):
            raise FileNotFoundError(f"Model not found at: {model_path!r}")
        params = {
            "n_ctx": gen.get("n_ctx", 4096),
            "n_threads": gen.get("n_threads"),
            "n_gpu_layers": gen.get("n_gpu_layers"),
            "use_mmap": gen.get("use_mmap", True),
        }
        params = {k: v for k, v in params.items() if v is not None}
        return GGUFGenerator(model_path, gen_cfg=gen_cfg, **params)

    raise ValueError(f"Unknown generator provider: {provider!r}")
