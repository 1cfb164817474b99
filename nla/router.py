"""
NLA Oracle — Provider Router

Turns (demand, obligation text) into a boolean verdict:

  1. select   fuzzy, case-insensitive substring match of demand.provider
              against registered names (either direction); first
              registered provider is the fallback
  2. render   {{demand}} / {{obligation}} substitution into the template
  3. invoke   one backend request, fixed system instruction, bounded timeout
  4. normalize  reply → bool; only an exact "true" is true

Selection is loose. Invocation is strict: every registered
provider is classified into a BackendKind when it is added, and an
unknown family is rejected there rather than at arbitration time.

Usage:
    from nla.router import ProviderRouter, ProviderDescriptor

    router = ProviderRouter(timeout=60)
    router.add_provider(ProviderDescriptor("OpenAI", api_key="sk-..."))
    verdict = router.arbitrate(demand, "The sky appears blue today")
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from nla.codec import Demand
from nla.errors import ArbitrationFailed, NoProviderAvailable
from nla.llm import BackendKind, ChatBackend, classify_backend

logger = logging.getLogger("nla.router")

SYSTEM_PROMPT = (
    "You are an arbitrator that always tells the truth. "
    "You must respond with only 'true' or 'false' - no other words or explanations."
)

PROMPT_SUFFIX = (
    "\nBased on the above information, determine if the fulfillment satisfies the demand."
    "\nAnswer ONLY with 'true' or 'false' - no explanations or additional text."
)

_TAG_RE = re.compile(r"</?[^>]+(>|$)")
_FENCE_RE = re.compile(r"```[\s\S]*?```")
_PREFIX_RE = re.compile(r"^(result:|answer:)\s*")


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    api_key: str | None = None
    base_url: str | None = None
    search_api_key: str | None = None


class Backend(Protocol):
    def complete(self, system: str, prompt: str, model: str) -> str: ...


BackendFactory = Callable[[ProviderDescriptor, BackendKind], Backend]


def normalize_verdict(raw: str | None) -> bool:
    """
    Map a free-text reply to a verdict.

    Anything other than exactly "true" after cleanup is False, including
    empty replies and explanations. Never raises.
    """
    text = (raw or "").strip().lower()
    text = _TAG_RE.sub("", text).strip()
    text = _FENCE_RE.sub("", text).strip()
    text = _PREFIX_RE.sub("", text).strip()
    return text == "true"


def render_prompt(template: str, demand_text: str, obligation_text: str) -> str:
    rendered = template.replace("{{demand}}", demand_text).replace("{{obligation}}", obligation_text)
    return rendered + PROMPT_SUFFIX


class ProviderRouter:
    """Ordered registry of AI backends plus the arbitrate() pipeline."""

    def __init__(
        self,
        providers: list[ProviderDescriptor] | None = None,
        backend_factory: BackendFactory | None = None,
        timeout: float = 60.0,
        max_tool_steps: int = 3,
    ):
        self.timeout = timeout
        self.max_tool_steps = max_tool_steps
        self._backend_factory = backend_factory or self._default_backend
        self._providers: list[tuple[ProviderDescriptor, BackendKind]] = []
        self._backends: dict[str, Backend] = {}
        for p in providers or []:
            self.add_provider(p)

    def _default_backend(self, descriptor: ProviderDescriptor, kind: BackendKind) -> Backend:
        return ChatBackend(
            kind,
            api_key=descriptor.api_key,
            base_url=descriptor.base_url,
            search_api_key=descriptor.search_api_key,
            timeout=self.timeout,
            max_tool_steps=self.max_tool_steps,
        )

    # ── Registry ───────────────────────────────────────────────

    def add_provider(self, descriptor: ProviderDescriptor) -> BackendKind:
        """Append a provider. Raises UnsupportedProvider for unknown families."""
        kind = classify_backend(descriptor.name)
        self._providers.append((descriptor, kind))
        logger.info("Registered provider %s (kind=%s)", descriptor.name, kind.value)
        return kind

    @property
    def providers(self) -> list[ProviderDescriptor]:
        return [d for d, _ in self._providers]

    def get_provider(self, name: str) -> ProviderDescriptor | None:
        wanted = name.lower()
        for descriptor, _ in self._providers:
            if descriptor.name.lower() == wanted:
                return descriptor
        return None

    def select_provider(self, provider_name: str) -> tuple[ProviderDescriptor, BackendKind]:
        if not self._providers:
            raise NoProviderAvailable("No LLM providers registered")

        wanted = provider_name.lower()
        for descriptor, kind in self._providers:
            name = descriptor.name.lower()
            if wanted in name or name in wanted:
                return descriptor, kind

        fallback = self._providers[0]
        logger.debug("No provider matches %r, falling back to %s", provider_name, fallback[0].name)
        return fallback

    def _backend_for(self, descriptor: ProviderDescriptor, kind: BackendKind) -> Backend:
        key = descriptor.name.lower()
        if key not in self._backends:
            self._backends[key] = self._backend_factory(descriptor, kind)
        return self._backends[key]

    # ── Arbitration ────────────────────────────────────────────

    def render_prompt(self, demand: Demand, obligation_text: str) -> str:
        return render_prompt(demand.prompt_template, demand.demand_text, obligation_text)

    def arbitrate(self, demand: Demand, obligation_text: str) -> bool:
        descriptor, kind = self.select_provider(demand.provider)
        prompt = self.render_prompt(demand, obligation_text)
        logger.debug("Prompt for %s/%s:\n%s", descriptor.name, demand.model, prompt)

        start = time.monotonic()
        try:
            backend = self._backend_for(descriptor, kind)
            raw = backend.complete(SYSTEM_PROMPT, prompt, demand.model)
        except Exception as e:
            raise ArbitrationFailed(e, provider=descriptor.name, model=demand.model) from e

        verdict = normalize_verdict(raw)
        logger.debug(
            "Backend %s replied %r → %s (%.0fms)",
            descriptor.name, (raw or "")[:200], verdict, (time.monotonic() - start) * 1000,
        )
        return verdict
