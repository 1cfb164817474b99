"""
NLA Oracle — Arbitration Loop

Poll-then-process cycle with a cancellation token:

    IDLE ──▶ POLLING ──▶ DISPATCHING (one per new request) ──▶ IDLE
                ▲                                               │
                └────────── wait polling_interval_ms ◀──────────┘

Per request:
    fulfillment attestation → obligation text
    escrow demand           → decode_demand (validating)
    router.arbitrate        → bool
    ledger.record_decision  against the escrow's arbiter demand bytes

Each request is isolated: any exception on that path is logged as one
event_failed line and the request is skipped. No decision is recorded
for it and the loop keeps going. A failed arbitration is never written
as ``False``.

A fulfillment UID is dispatched at most once per session. Duplicates
across restarts are the ledger's to reject. When only the recording
step fails, the verdict is kept and re-submitted on the next
``record_retries`` polls without asking the backend again.

unwatch() stops new dispatches as well as new polls. Requests from the
current poll that have not started are handed back: they are unmarked
and the cursor stays at the earliest of them.

With max_workers > 1 requests from one poll are dispatched on a thread
pool. Decisions are recorded in completion order; the ledger serializes
writes from the shared signer.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from nla.codec import decode_demand, obligation_text
from nla.config import OracleConfig
from nla.errors import LedgerError, error_kind
from nla.ledger import ArbitrationRequest, DecisionRecord, Ledger, normalize_uid
from nla.logging import ArbitrationLogger
from nla.retry import CircuitBreaker, RetryPolicy, call_with_retry
from nla.router import ProviderRouter

logger = logging.getLogger("nla.arbitration")


class OutcomeStatus(str, enum.Enum):
    DECIDED = "decided"
    SKIPPED = "skipped"    # already handled this session
    FAILED = "failed"      # isolated error, no decision recorded


@dataclass
class ArbitrationOutcome:
    uid: str
    status: OutcomeStatus
    decision: bool | None = None
    error_kind: str = ""
    error: BaseException | None = None
    stage: str = ""
    decision_uid: str = ""
    tx_hash: str = ""


@dataclass
class _UnrecordedVerdict:
    uid: str
    decision: bool
    demand: bytes
    retries: int = 0


class Subscription:
    """Handle returned by ArbitrationLoop.watch()."""

    def __init__(self, loop: ArbitrationLoop, thread: threading.Thread):
        self._loop = loop
        self._thread = thread

    @property
    def active(self) -> bool:
        return self._thread.is_alive()

    def unwatch(self) -> None:
        self._loop.unwatch()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread. True once it has exited."""
        self._thread.join(timeout)
        return not self._thread.is_alive()


class ArbitrationLoop:

    def __init__(
        self,
        ledger: Ledger,
        router: ProviderRouter,
        config: OracleConfig,
        events: ArbitrationLogger | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ):
        self.ledger = ledger
        self.router = router
        self.config = config
        self.oracle = ledger.address
        self.events = events or ArbitrationLogger(oracle=self.oracle)

        self.cursor = config.from_block
        self.decided = 0
        self.failed = 0
        self.skipped = 0

        self._stop = threading.Event()
        self._seen: set[str] = set()
        self._unrecorded: dict[str, _UnrecordedVerdict] = {}
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._queued: list[Future] = []

        self._retry_policy = RetryPolicy.from_dict(config.retry)
        self._breaker = CircuitBreaker(
            threshold=self._retry_policy.circuit_breaker_threshold,
            reset_seconds=self._retry_policy.circuit_breaker_reset_seconds,
        )
        self._sleep = sleep_fn or self._stop.wait

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def unrecorded(self) -> list[str]:
        """UIDs holding a verdict whose recording is still to be retried."""
        with self._lock:
            return list(self._unrecorded)

    # ═══════════════════════════════════════════════════════════════
    # One cycle
    # ═══════════════════════════════════════════════════════════════

    def poll_once(self) -> list[ArbitrationOutcome]:
        """Poll from the cursor, dispatch new requests, advance the cursor."""
        from_block = self.cursor
        try:
            polled = call_with_retry(
                lambda: self.ledger.poll_arbitration_requests(self.oracle, from_block),
                policy=self._retry_policy,
                op_name="poll_arbitration_requests",
                breaker=self._breaker,
                sleep_fn=self._sleep,
            )
        except Exception as e:
            # Cursor stays put so the same range is polled next cycle
            self.events.on_poll_failed(from_block, e)
            return []

        outcomes = self._retry_unrecorded()

        fresh: list[ArbitrationRequest] = []
        for request in polled.requests:
            uid = normalize_uid(request.fulfillment_uid)
            if not self._mark_seen(uid):
                self.events.on_duplicate_skipped(uid)
                self.skipped += 1
                outcomes.append(ArbitrationOutcome(uid=uid, status=OutcomeStatus.SKIPPED))
                continue
            fresh.append(request)

        dispatched, undispatched = self._dispatch(fresh)
        outcomes.extend(dispatched)

        next_block = polled.next_block
        if undispatched:
            with self._lock:
                for request in undispatched:
                    self._seen.discard(normalize_uid(request.fulfillment_uid))
            next_block = min(next_block, min(r.block_number for r in undispatched))
            logger.info("Stopped with %d requests undispatched; next poll starts at block %d",
                        len(undispatched), next_block)
        self.cursor = max(self.cursor, next_block)
        return outcomes

    def _mark_seen(self, uid: str) -> bool:
        with self._lock:
            if uid in self._seen:
                return False
            self._seen.add(uid)
            return True

    def _dispatch(self, requests: list[ArbitrationRequest]
                  ) -> tuple[list[ArbitrationOutcome], list[ArbitrationRequest]]:
        """(outcomes, requests not started because unwatch() was called)"""
        if not requests:
            return [], []
        if self.config.max_workers <= 1 or len(requests) == 1:
            outcomes = []
            for i, request in enumerate(requests):
                if self._stop.is_set():
                    return outcomes, requests[i:]
                outcomes.append(self.process_request(request))
            return outcomes, []

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="nla-arbitrate",
            )
        futures = [self._executor.submit(self.process_request, r) for r in requests]
        self._queued = futures
        if self._stop.is_set():
            self._cancel_queued()

        outcomes: list[ArbitrationOutcome] = []
        undispatched: list[ArbitrationRequest] = []
        try:
            for request, future in zip(requests, futures):
                try:
                    outcomes.append(future.result())
                except CancelledError:
                    undispatched.append(request)
        finally:
            self._queued = []
        return outcomes, undispatched

    def _cancel_queued(self) -> None:
        for future in list(self._queued):
            future.cancel()

    def _retry_unrecorded(self) -> list[ArbitrationOutcome]:
        with self._lock:
            pending = list(self._unrecorded.values())
        outcomes = []
        for verdict in pending:
            if self._stop.is_set():
                break
            verdict.retries += 1
            try:
                record = self.ledger.record_decision(verdict.uid, verdict.decision, verdict.demand)
            except Exception as e:
                kind = error_kind(e)
                self.events.on_event_failed(verdict.uid, kind, e, stage="record_decision")
                with self._lock:
                    self.failed += 1
                if verdict.retries >= self.config.record_retries:
                    with self._lock:
                        self._unrecorded.pop(verdict.uid, None)
                    logger.warning("Giving up on recording the verdict for %s after %d retries",
                                   verdict.uid, verdict.retries)
                outcomes.append(ArbitrationOutcome(
                    uid=verdict.uid, status=OutcomeStatus.FAILED,
                    error_kind=kind, error=e, stage="record_decision",
                ))
                continue

            with self._lock:
                self._unrecorded.pop(verdict.uid, None)
            outcomes.append(self._decided(verdict.uid, record))
        return outcomes

    def _decided(self, uid: str, record: DecisionRecord) -> ArbitrationOutcome:
        with self._lock:
            self.decided += 1
        self.events.on_decision_recorded(
            uid, record.decision, tx_hash=record.tx.tx_hash,
            decision_uid=record.attestation_uid,
        )
        return ArbitrationOutcome(
            uid=uid, status=OutcomeStatus.DECIDED, decision=record.decision,
            decision_uid=record.attestation_uid, tx_hash=record.tx.tx_hash,
        )

    # ═══════════════════════════════════════════════════════════════
    # One request
    # ═══════════════════════════════════════════════════════════════

    def process_request(self, request: ArbitrationRequest) -> ArbitrationOutcome:
        """Arbitrate one request. Never raises."""
        uid = normalize_uid(request.fulfillment_uid)
        self.events.on_request_received(uid, block_number=request.block_number)

        stage = "fetch_fulfillment"
        decision: bool | None = None
        escrow_demand = None
        try:
            fulfillment = self.ledger.get_attestation(uid)
            if fulfillment.revoked:
                raise LedgerError(f"Fulfillment {uid} has been revoked", uid=uid)

            stage = "decode_obligation"
            text = obligation_text(fulfillment.data, self.config.obligation_format)

            stage = "fetch_demand"
            escrow_demand = self.ledger.get_escrow_demand(fulfillment)

            stage = "decode_demand"
            demand = decode_demand(escrow_demand.data)
            self.events.on_demand_decoded(
                uid, demand.provider, demand.model,
                demand_chars=len(demand.demand_text), obligation_chars=len(text),
            )

            stage = "arbitrate"
            started = _now_ms()
            decision = self.router.arbitrate(demand, text)
            self.events.on_verdict(
                uid, decision, provider=demand.provider, model=demand.model,
                latency_ms=_now_ms() - started,
            )

            stage = "record_decision"
            record = self.ledger.record_decision(uid, decision, escrow_demand.arbiter_demand)
        except Exception as e:
            with self._lock:
                self.failed += 1
                if stage == "record_decision" and self.config.record_retries > 0:
                    self._unrecorded[uid] = _UnrecordedVerdict(
                        uid=uid, decision=decision, demand=escrow_demand.arbiter_demand,
                    )
            kind = error_kind(e)
            self.events.on_event_failed(uid, kind, e, stage=stage)
            logger.debug("Request %s failed at %s", uid, stage, exc_info=True)
            return ArbitrationOutcome(
                uid=uid, status=OutcomeStatus.FAILED,
                error_kind=kind, error=e, stage=stage,
            )

        return self._decided(uid, record)

    # ═══════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════

    def run(self) -> None:
        """Poll until unwatch() is called. Blocks the calling thread."""
        interval = self.config.polling_interval_ms / 1000
        try:
            while not self._stop.is_set():
                self.poll_once()
                self._stop.wait(interval)
        finally:
            self.close()

    def watch(self) -> Subscription:
        """Start polling on a background thread."""
        thread = threading.Thread(target=self.run, name="nla-arbitration-loop", daemon=True)
        thread.start()
        logger.info("Watching for arbitration requests to %s from block %d",
                    self.oracle, self.cursor)
        return Subscription(self, thread)

    def unwatch(self) -> None:
        """
        Stop polling and dispatching. Does not block.
        Requests already running finish; queued ones are cancelled.
        """
        self._stop.set()
        self._cancel_queued()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def _now_ms() -> float:
    return time.monotonic() * 1000
