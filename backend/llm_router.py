"""
LLM Router

Single choke-point for all language-model calls made during a game:
- move generation (forced tool call or plain text)
- strategy planning (plain text)
- vision analysis (text + image)

Two request shapes exist because the o-series models reject tool calls and take
`max_completion_tokens` instead of `max_tokens`. Callers never build kwargs for
the OpenAI SDK themselves.
"""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI


logger = logging.getLogger(__name__)

_CONSTRAINED_MODEL_RE = re.compile(r"^o\d")

# Model ids that cannot serve chat completions.
_EXCLUDED_MODEL_PATTERNS = [
    re.compile(r"embedding", re.I),
    re.compile(r"whisper", re.I),
    re.compile(r"tts-", re.I),
    re.compile(r"dall-e", re.I),
    re.compile(r"moderation", re.I),
    re.compile(r"babbage|davinci|curie|ada", re.I),
    re.compile(r"^text-", re.I),
]

FALLBACK_MODELS = [
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4",
    "gpt-4-turbo",
    "gpt-3.5-turbo",
    "o1",
    "o1-mini",
    "o3",
    "o3-mini",
    "o4-mini",
    "chatgpt-4o-latest",
]


def is_constrained_model(model: str) -> bool:
    """o-series models: no tool calls, different token-limit parameter."""
    return bool(_CONSTRAINED_MODEL_RE.match(model or ""))


def filter_chat_models(model_ids: List[str]) -> List[str]:
    return sorted(m for m in model_ids if not any(p.search(m) for p in _EXCLUDED_MODEL_PATTERNS))


@dataclass
class LLMRouterConfig:
    api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    base_url: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_BASE_URL") or None)
    planner_model: str = field(default_factory=lambda: os.getenv("PLANNER_MODEL", "gpt-4-turbo"))
    vision_model: str = field(default_factory=lambda: os.getenv("VISION_MODEL", "gpt-4o"))
    move_max_tokens: int = field(default_factory=lambda: int(os.getenv("MOVE_MAX_TOKENS", "1000")))
    planner_max_tokens: int = field(default_factory=lambda: int(os.getenv("PLANNER_MAX_TOKENS", "600")))
    simple_max_tokens: int = field(default_factory=lambda: int(os.getenv("SIMPLE_MAX_TOKENS", "500")))
    request_timeout_s: float = field(default_factory=lambda: float(os.getenv("LLM_TIMEOUT_S", "60")))
    # High-signal one-line log per call.
    log_calls: bool = field(default_factory=lambda: os.getenv("LLM_ROUTER_LOG_CALLS", "true").lower().strip() == "true")


@dataclass
class ToolCallReply:
    content: str
    tool_name: Optional[str]
    # Raw JSON string as produced by the model; parsing is the caller's job.
    arguments: Optional[str]


class LLMRouter:
    def __init__(self, config: Optional[LLMRouterConfig] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or LLMRouterConfig()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Created lazily so the app boots without an API key.
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.request_timeout_s,
            )
        return self._client

    def _log_call(
        self,
        *,
        stage: str,
        model: str,
        prompt_chars: int,
        response_chars: int,
        total_ms: float,
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self.config.log_calls:
            return
        err_str = f" error={error!r}" if error else ""
        logger.info(
            "[LLM_ROUTER] stage=%s model=%s prompt_chars=%d out_chars=%d total_ms=%.1f tokens_in=%s tokens_out=%s%s",
            stage, model, prompt_chars, response_chars, total_ms, tokens_in, tokens_out, err_str,
        )

    @staticmethod
    def _prompt_chars(messages: List[Dict[str, Any]]) -> int:
        total = 0
        for m in messages:
            content = m.get("content")
            if isinstance(content, str):
                total += len(content)
            elif isinstance(content, list):
                total += sum(len(part.get("text", "")) for part in content if isinstance(part, dict))
        return total

    @staticmethod
    def token_limit_kwargs(model: str, max_tokens: Optional[int]) -> Dict[str, int]:
        if max_tokens is None:
            return {}
        key = "max_completion_tokens" if is_constrained_model(model) else "max_tokens"
        return {key: int(max_tokens)}

    async def _create(self, *, stage: str, kwargs: Dict[str, Any]):
        t0 = time.monotonic()
        prompt_chars = self._prompt_chars(kwargs.get("messages", []))
        try:
            resp = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            self._log_call(
                stage=stage,
                model=str(kwargs.get("model")),
                prompt_chars=prompt_chars,
                response_chars=0,
                total_ms=(time.monotonic() - t0) * 1000.0,
                error=str(e)[:200],
            )
            raise

        usage = getattr(resp, "usage", None)
        content = ""
        if resp.choices:
            content = resp.choices[0].message.content or ""
        self._log_call(
            stage=stage,
            model=str(kwargs.get("model")),
            prompt_chars=prompt_chars,
            response_chars=len(content),
            total_ms=(time.monotonic() - t0) * 1000.0,
            tokens_in=getattr(usage, "prompt_tokens", None),
            tokens_out=getattr(usage, "completion_tokens", None),
        )
        return resp, content

    async def complete(
        self,
        *,
        stage: str,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Plain chat completion; returns the message text (may be empty)."""
        kwargs: Dict[str, Any] = {"model": model, "messages": messages}
        kwargs.update(self.token_limit_kwargs(model, max_tokens))
        # o-series models only accept the default temperature.
        if temperature is not None and not is_constrained_model(model):
            kwargs["temperature"] = temperature
        _, content = await self._create(stage=stage, kwargs=kwargs)
        return content

    async def complete_with_tool(
        self,
        *,
        stage: str,
        model: str,
        messages: List[Dict[str, Any]],
        tool: Dict[str, Any],
        max_tokens: Optional[int] = None,
    ) -> ToolCallReply:
        """Chat completion offering exactly one tool and forcing the model to call it."""
        if is_constrained_model(model):
            raise ValueError(f"Model {model} does not support tool calls.")
        name = tool["function"]["name"]
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": name}},
        }
        kwargs.update(self.token_limit_kwargs(model, max_tokens))
        resp, content = await self._create(stage=stage, kwargs=kwargs)

        tool_name: Optional[str] = None
        arguments: Optional[str] = None
        if resp.choices:
            calls = resp.choices[0].message.tool_calls or []
            if calls:
                tool_name = calls[0].function.name
                arguments = calls[0].function.arguments
        return ToolCallReply(content=content, tool_name=tool_name, arguments=arguments)

    async def list_chat_models(self) -> List[str]:
        """Chat-capable model ids from the provider, or a static list if listing fails."""
        try:
            page = await self.client.models.list()
            models = filter_chat_models([m.id for m in page.data])
            logger.info("[LLM_ROUTER] found %d chat models", len(models))
            return models
        except Exception as e:
            logger.warning("[LLM_ROUTER] model listing failed, using static list: %s", e)
            return list(FALLBACK_MODELS)
