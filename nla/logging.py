"""
NLA Oracle — Structured Logging

JSON log lines for every arbitration event, with a session trace_id so a
whole oracle run can be correlated. Field names follow OpenTelemetry
semantic conventions (trace_id, span_id, service.name).

Levels:
  DEBUG    rendered prompts and raw backend replies
  INFO     requests, verdicts, recorded decisions
  WARNING  skipped events, poll failures

Usage:
    from nla.logging import ArbitrationLogger, configure_logging

    configure_logging(level="INFO")
    events = ArbitrationLogger(oracle="0xabc...")
    events.on_request_received(uid, block_number=12)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


ROOT_LOGGER = "nla"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def __init__(self, service_name: str = "nla_oracle"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("NLA_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "nla_oracle",
) -> logging.Logger:
    """
    Configure the ``nla`` logger tree with JSON output.

    Safe to call repeatedly; handlers are replaced, not stacked.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Arbitration event logger
# ═══════════════════════════════════════════════════════════════════

class ArbitrationLogger:
    """
    Emits one structured entry per arbitration lifecycle event.

    Each fulfillment UID gets its own span_id so all lines about one
    request can be grouped, even when dispatch is parallel.
    """

    def __init__(self, oracle: str = "", trace_id: str | None = None):
        self.oracle = oracle
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("events")
        self._spans: dict[str, str] = {}

    def _span(self, uid: str) -> str:
        if uid not in self._spans:
            self._spans[uid] = generate_span_id()
        return self._spans[uid]

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {"trace_id": self.trace_id, "oracle": self.oracle, "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Process lifecycle ──────────────────────────────────────

    def on_oracle_start(self, providers: list[str], polling_interval_ms: int,
                        from_block: int) -> None:
        self._emit(
            logging.INFO, "oracle_start",
            providers=providers,
            polling_interval_ms=polling_interval_ms,
            from_block=from_block,
        )

    def on_oracle_stop(self, reason: str = "", decided: int = 0, skipped: int = 0) -> None:
        self._emit(logging.INFO, "oracle_stop", reason=reason, decided=decided, skipped=skipped)

    def on_poll_failed(self, from_block: int, error: BaseException) -> None:
        self._emit(
            logging.WARNING, "poll_failed",
            from_block=from_block,
            error_kind=type(error).__name__,
            cause=str(error)[:500],
        )

    # ── Per-request events ─────────────────────────────────────

    def on_request_received(self, uid: str, block_number: int = 0) -> None:
        self._emit(
            logging.INFO, "request_received",
            uid=uid, span_id=self._span(uid), block_number=block_number,
        )

    def on_demand_decoded(self, uid: str, provider: str, model: str,
                          demand_chars: int, obligation_chars: int) -> None:
        self._emit(
            logging.DEBUG, "demand_decoded",
            uid=uid, span_id=self._span(uid),
            provider=provider, model=model,
            demand_chars=demand_chars, obligation_chars=obligation_chars,
        )

    def on_verdict(self, uid: str, decision: bool, provider: str = "",
                   model: str = "", latency_ms: float = 0.0) -> None:
        self._emit(
            logging.INFO, "arbitration_verdict",
            uid=uid, span_id=self._span(uid),
            decision=decision, provider=provider, model=model,
            latency_ms=round(latency_ms, 1),
        )

    def on_decision_recorded(self, uid: str, decision: bool, tx_hash: str = "",
                             decision_uid: str = "") -> None:
        self._emit(
            logging.INFO, "decision_recorded",
            uid=uid, span_id=self._spans.pop(uid, None),
            decision=decision, tx_hash=tx_hash, decision_uid=decision_uid,
        )

    def on_event_failed(self, uid: str, error_kind: str, cause: BaseException | str,
                        stage: str = "") -> None:
        """One line per failed event: uid, error kind, cause."""
        self._emit(
            logging.WARNING, "event_failed",
            uid=uid, span_id=self._spans.pop(uid, None),
            error_kind=error_kind, stage=stage, cause=str(cause)[:500],
        )

    def on_duplicate_skipped(self, uid: str) -> None:
        self._emit(logging.DEBUG, "duplicate_skipped", uid=uid)
