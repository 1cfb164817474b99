"""
NLA Oracle — Process Shell

Owns the oracle's lifecycle:
  - builds the provider router from config (fixed order: OpenAI,
    Anthropic, OpenRouter)
  - refuses to start with no providers (NoProviderAvailable)
  - starts the arbitration loop on a background thread
  - SIGINT / SIGTERM call unwatch(); the process exits once the loop
    thread has finished its in-flight requests

Usage:
    process = OracleProcess(config, ledger)
    process.run_forever()
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any

from nla.arbitration import ArbitrationLoop, Subscription
from nla.config import OracleConfig
from nla.errors import NoProviderAvailable
from nla.ledger import Ledger
from nla.logging import ArbitrationLogger
from nla.router import BackendFactory, ProviderDescriptor, ProviderRouter

logger = logging.getLogger("nla.oracle")

# Registration order is the fallback order for fuzzy provider matching
PROVIDER_ORDER = ["openai", "anthropic", "openrouter"]


def _order_key(name: str) -> int:
    lowered = name.lower()
    for i, family in enumerate(PROVIDER_ORDER):
        if family in lowered:
            return i
    return len(PROVIDER_ORDER)


def build_router(config: OracleConfig, backend_factory: BackendFactory | None = None) -> ProviderRouter:
    """Register every configured provider that has an API key."""
    router = ProviderRouter(
        backend_factory=backend_factory,
        timeout=config.request_timeout_seconds,
        max_tool_steps=config.max_tool_steps,
    )
    for settings in sorted(config.providers, key=lambda p: _order_key(p.name)):
        if not settings.api_key:
            logger.debug("Skipping provider %s: no API key", settings.name)
            continue
        router.add_provider(ProviderDescriptor(
            name=settings.name,
            api_key=settings.api_key,
            base_url=settings.base_url,
            search_api_key=settings.search_api_key,
        ))
    return router


class OracleProcess:

    def __init__(
        self,
        config: OracleConfig,
        ledger: Ledger,
        router: ProviderRouter | None = None,
        events: ArbitrationLogger | None = None,
    ):
        self.config = config
        self.ledger = ledger
        self.router = router if router is not None else build_router(config)
        self.events = events or ArbitrationLogger(oracle=ledger.address)
        self.loop = ArbitrationLoop(ledger, self.router, config, events=self.events)
        self.subscription: Subscription | None = None
        self._previous_handlers: dict[int, Any] = {}
        self._stop_reason = ""

    def start(self) -> Subscription:
        if not self.router.providers:
            raise NoProviderAvailable(
                "No LLM providers configured. Set OPENAI_API_KEY, "
                "ANTHROPIC_API_KEY or OPENROUTER_API_KEY"
            )
        self.events.on_oracle_start(
            providers=[p.name for p in self.router.providers],
            polling_interval_ms=self.config.polling_interval_ms,
            from_block=self.config.from_block,
        )
        self.subscription = self.loop.watch()
        return self.subscription

    def stop(self, reason: str = "requested") -> None:
        """Signal-safe: only sets the loop's cancellation token."""
        self._stop_reason = self._stop_reason or reason
        self.loop.unwatch()

    def _handle_signal(self, signum, frame) -> None:
        self.stop(reason=signal.Signals(signum).name)

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal handlers not installed")
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def run_forever(self, poll_join_seconds: float = 0.5) -> int:
        """Block until stopped. Returns the process exit code."""
        subscription = self.start()
        self.install_signal_handlers()
        try:
            # Short joins keep the main thread responsive to signals
            while not subscription.join(timeout=poll_join_seconds):
                pass
        finally:
            self.restore_signal_handlers()
            self.events.on_oracle_stop(
                reason=self._stop_reason or "loop_exited",
                decided=self.loop.decided,
                skipped=self.loop.failed + self.loop.skipped,
            )
        return 0
