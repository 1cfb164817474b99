"""
NLA Oracle — Process Shell Tests

Tests:
  - build_router registers keyed providers in fixed family order
  - start() with no providers → NoProviderAvailable
  - run_forever returns 0 once stopped and reports the stop reason
  - SIGTERM handler only cancels the loop
  - Full run decides a pending request before exiting
"""

import os
import signal
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from nla.codec import DEFAULT_PROMPT_TEMPLATE, Demand, encode_demand
from nla.commit_reveal import CommitRevealCoordinator
from nla.config import OracleConfig, ProviderSettings
from nla.errors import NoProviderAvailable
from nla.ledger import InMemoryLedger
from nla.llm import BackendKind
from nla.oracle import OracleProcess, build_router

ORACLE = "0x" + "0a" * 20


class StubBackend:

    def complete(self, system, prompt, model):
        return "true"


def _stub_factory(descriptor, kind):
    return StubBackend()


def _config(*providers, **fields):
    return OracleConfig(providers=list(providers), polling_interval_ms=10, **fields)


class TestBuildRouter(unittest.TestCase):

    def test_fixed_order(self):
        config = _config(
            ProviderSettings("OpenRouter", api_key="or", base_url="https://openrouter.ai/api/v1"),
            ProviderSettings("Anthropic", api_key="ant"),
            ProviderSettings("OpenAI", api_key="oa"),
        )
        router = build_router(config, backend_factory=_stub_factory)
        self.assertEqual([p.name for p in router.providers], ["OpenAI", "Anthropic", "OpenRouter"])
        self.assertEqual(router.providers[2].base_url, "https://openrouter.ai/api/v1")

    def test_keyless_skipped(self):
        config = _config(ProviderSettings("OpenAI"), ProviderSettings("Anthropic", api_key="ant"))
        router = build_router(config, backend_factory=_stub_factory)
        self.assertEqual([p.name for p in router.providers], ["Anthropic"])
        _, kind = router.select_provider("openai")
        self.assertEqual(kind, BackendKind.ANTHROPIC)

    def test_search_key_carried(self):
        config = _config(ProviderSettings("Anthropic", api_key="ant", search_api_key="pplx"))
        router = build_router(config, backend_factory=_stub_factory)
        self.assertEqual(router.providers[0].search_api_key, "pplx")


class TestLifecycle(unittest.TestCase):

    def test_no_providers(self):
        process = OracleProcess(_config(), InMemoryLedger(address=ORACLE))
        with self.assertRaises(NoProviderAvailable):
            process.start()
        self.assertIsNone(process.subscription)

    def _process(self, ledger=None, events=None):
        config = _config(ProviderSettings("OpenAI", api_key="oa"))
        ledger = ledger or InMemoryLedger(address=ORACLE)
        router = build_router(config, backend_factory=_stub_factory)
        return OracleProcess(config, ledger, router=router, events=events)

    def test_run_forever_after_stop(self):
        events = MagicMock()
        process = self._process(events=events)
        process.stop(reason="test")
        self.assertEqual(process.run_forever(poll_join_seconds=0.05), 0)
        events.on_oracle_start.assert_called_once()
        self.assertEqual(events.on_oracle_stop.call_args.kwargs["reason"], "test")

    def test_stop_from_another_thread(self):
        process = self._process()
        timer = threading.Timer(0.1, process.stop)
        timer.start()
        start = time.monotonic()
        self.assertEqual(process.run_forever(poll_join_seconds=0.05), 0)
        timer.join()
        self.assertLess(time.monotonic() - start, 5)
        self.assertTrue(process.loop.stopped)

    def test_signal_handler_only_cancels(self):
        process = self._process()
        process._handle_signal(signal.SIGTERM, None)
        self.assertTrue(process.loop.stopped)
        self.assertEqual(process._stop_reason, "SIGTERM")

    def test_handlers_restored(self):
        before = signal.getsignal(signal.SIGTERM)
        process = self._process()
        process.stop()
        process.run_forever(poll_join_seconds=0.05)
        self.assertEqual(signal.getsignal(signal.SIGTERM), before)

    def test_pending_request_decided(self):
        depositor = InMemoryLedger(address="0x" + "0d" * 20)
        demand = Demand("OpenAI", "gpt-4o-mini", DEFAULT_PROMPT_TEMPLATE, "The sky is blue")
        escrow = depositor.create_escrow(encode_demand(demand), oracle=ORACLE)
        receipt = CommitRevealCoordinator(depositor.as_signer("0x" + "0f" * 20)).fulfill(
            escrow.uid, "The sky appears blue today", oracle=ORACLE)
        oracle = depositor.as_signer(ORACLE)
        process = self._process(ledger=oracle)

        def stop_when_decided():
            deadline = time.monotonic() + 5
            while not oracle.has_decision(receipt.fulfillment_uid) and time.monotonic() < deadline:
                time.sleep(0.01)
            process.stop()

        watcher = threading.Thread(target=stop_when_decided)
        watcher.start()
        process.run_forever(poll_join_seconds=0.05)
        watcher.join()
        self.assertTrue(oracle.has_decision(receipt.fulfillment_uid))
        self.assertEqual(process.loop.decided, 1)


if __name__ == "__main__":
    unittest.main()
