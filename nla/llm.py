"""
NLA Oracle — LLM Backend Factory

Single point of chat-model construction. The provider router asks this
module for a backend; nothing else imports a provider SDK.

Supported backend kinds (closed set):
  openai      : OpenAI direct (langchain-openai), hosted web search tool
  anthropic   : Anthropic Claude (langchain-anthropic), Perplexity search tool
  openrouter  : OpenRouter OpenAI-compatible gateway (langchain-openai),
                Perplexity search tool

A provider *name* is mapped to a kind by family substring ("claude"
→ anthropic). That mapping is strict: an unknown family raises
UnsupportedProvider. Fuzzy selection of which registered provider
serves a demand lives in the router, not here.

Design rules:
  - Returns text only; callers never see provider response types
  - Provider SDKs are imported lazily inside the factories
  - Every model is built with a bounded request timeout
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage, ToolMessage

from nla.errors import UnsupportedProvider

logger = logging.getLogger("nla.llm")

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_MAX_TOKENS = 512
ANTHROPIC_MAX_TOKENS = 1024


class BackendKind(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"


# Checked in order; first family containing a matching token wins.
_NAME_FAMILIES: list[tuple[BackendKind, tuple[str, ...]]] = [
    (BackendKind.OPENAI, ("openai",)),
    (BackendKind.ANTHROPIC, ("anthropic", "claude")),
    (BackendKind.OPENROUTER, ("openrouter",)),
]


def classify_backend(provider_name: str) -> BackendKind:
    name = provider_name.lower().strip()
    for kind, tokens in _NAME_FAMILIES:
        if any(token in name for token in tokens):
            return kind
    raise UnsupportedProvider(provider_name, supported=[k.value for k in BackendKind])


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_openai(model: str, api_key: str | None, base_url: str | None,
                   timeout: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, api_key=api_key, base_url=base_url,
                      timeout=timeout, **kwargs)


def _create_anthropic(model: str, api_key: str | None, base_url: str | None,
                      timeout: float, **kwargs) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic
    kwargs.setdefault("max_tokens", ANTHROPIC_MAX_TOKENS)
    if base_url:
        kwargs["base_url"] = base_url
    return ChatAnthropic(model=model, api_key=api_key, timeout=timeout, **kwargs)


def _create_openrouter(model: str, api_key: str | None, base_url: str | None,
                       timeout: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    kwargs.setdefault("max_tokens", OPENROUTER_MAX_TOKENS)
    return ChatOpenAI(model=model, api_key=api_key,
                      base_url=base_url or OPENROUTER_BASE_URL,
                      timeout=timeout, **kwargs)


_FACTORIES: dict[BackendKind, Callable[..., BaseChatModel]] = {
    BackendKind.OPENAI:     _create_openai,
    BackendKind.ANTHROPIC:  _create_anthropic,
    BackendKind.OPENROUTER: _create_openrouter,
}


def create_chat_model(
    kind: BackendKind,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 60.0,
    **kwargs,
) -> BaseChatModel:
    if not timeout or timeout <= 0:
        raise ValueError("A positive timeout is required for backend calls")
    return _FACTORIES[kind](model, api_key, base_url, timeout, **kwargs)


def message_text(message: Any) -> str:
    """Plain text of a chat response, whatever shape its content has."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") in ("text", "output_text"):
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content or "")


# ═══════════════════════════════════════════════════════════════════════
# Chat backend
# ═══════════════════════════════════════════════════════════════════════

class ChatBackend:
    """
    One registered provider, invocable as (system, prompt, model) → text.

    Auxiliary tools are attached per kind. Locally executed tools
    (Perplexity search) run in a loop bounded by max_tool_steps; hosted
    tools (OpenAI web search) run inside the provider's own request.
    """

    def __init__(
        self,
        kind: BackendKind,
        api_key: str | None = None,
        base_url: str | None = None,
        search_api_key: str | None = None,
        timeout: float = 60.0,
        max_tool_steps: int = 3,
        model_factory: Callable[..., BaseChatModel] = create_chat_model,
    ):
        self.kind = kind
        self.api_key = api_key
        self.base_url = base_url
        self.search_api_key = search_api_key
        self.timeout = timeout
        self.max_tool_steps = max(1, max_tool_steps)
        self._model_factory = model_factory

    def _local_tools(self) -> list[Any]:
        if self.kind in (BackendKind.ANTHROPIC, BackendKind.OPENROUTER) and self.search_api_key:
            from nla.search import make_search_tool
            return [make_search_tool(self.search_api_key, timeout=self.timeout)]
        return []

    def _build(self, model: str) -> tuple[Any, dict[str, Any]]:
        extra: dict[str, Any] = {}
        hosted: list[dict] = []
        if self.kind is BackendKind.OPENAI and not self.base_url:
            # Hosted web search needs the Responses API
            extra["use_responses_api"] = True
            hosted.append({"type": "web_search_preview"})

        llm = self._model_factory(
            self.kind, model,
            api_key=self.api_key, base_url=self.base_url,
            timeout=self.timeout, **extra,
        )
        local = self._local_tools()
        if hosted or local:
            llm = llm.bind_tools(hosted + local)
        return llm, {t.name: t for t in local}

    def complete(self, system: str, prompt: str, model: str) -> str:
        llm, tools = self._build(model)
        messages: list[BaseMessage] = [SystemMessage(content=system), HumanMessage(content=prompt)]

        response = llm.invoke(messages)
        for _ in range(self.max_tool_steps - 1):
            calls = [c for c in (getattr(response, "tool_calls", None) or []) if c["name"] in tools]
            if not calls:
                break
            messages.append(response)
            for call in calls:
                logger.debug("Tool call %s(%s)", call["name"], call.get("args"))
                result = tools[call["name"]].invoke(call.get("args", {}))
                messages.append(ToolMessage(content=str(result), tool_call_id=call["id"]))
            response = llm.invoke(messages)

        return message_text(response)
