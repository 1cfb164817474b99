"""
NLA Oracle — Ledger Boundary

The escrow / attestation ledger is an external collaborator. This module
defines the slice of it the oracle and the fulfiller call, and an
in-memory implementation used by the tests and for local dry runs.

Writes through one ledger instance are serialized (one signer, one nonce
sequence). Reads may run concurrently.

Usage:
    oracle = "0x" + "0a" * 20
    ledger = InMemoryLedger(address=oracle)
    escrow = ledger.create_escrow(encode_demand(demand), oracle=oracle)
    ...
    polled = ledger.poll_arbitration_requests(oracle, from_block=0)
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

from eth_utils import keccak

from nla.codec import (
    ObligationRecord,
    encode_decision,
    encode_obligation,
    encode_trusted_oracle_demand,
)
from nla.errors import LedgerError

logger = logging.getLogger("nla.ledger")


def normalize_uid(uid: bytes | str) -> str:
    """Canonical lowercase 0x-hex form of a 32-byte UID."""
    if isinstance(uid, (bytes, bytearray)):
        return "0x" + bytes(uid).hex()
    uid = uid.lower()
    return uid if uid.startswith("0x") else "0x" + uid


def uid_bytes(uid: bytes | str) -> bytes:
    if isinstance(uid, (bytes, bytearray)):
        return bytes(uid)
    return bytes.fromhex(normalize_uid(uid)[2:])


# ═══════════════════════════════════════════════════════════════════
# Boundary types
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Attestation:
    """Ledger-owned, immutable, UID-addressed record."""
    uid: str
    schema: str
    ref_uid: str
    attester: str
    recipient: str
    data: bytes
    revocable: bool = True
    revocation_time: int = 0
    time: int = 0

    @property
    def revoked(self) -> bool:
        return self.revocation_time > 0


@dataclass(frozen=True)
class TxHandle:
    tx_hash: str
    block_number: int | None = None  # None while pending

    @property
    def confirmed(self) -> bool:
        return self.block_number is not None


@dataclass(frozen=True)
class ArbitrationRequest:
    """One arbitration-request event addressed to an oracle."""
    fulfillment_uid: str
    oracle: str
    demand: bytes = b""
    block_number: int = 0
    log_index: int = 0


@dataclass
class PollResult:
    requests: list[ArbitrationRequest]
    next_block: int


@dataclass(frozen=True)
class EscrowDemand:
    """
    An escrow's demand at both wrapping levels.

    ``data`` is the NLA demand tuple the router reads. ``arbiter_demand``
    is the trusted-oracle wrapper stored in the escrow; the arbiter keys
    decisions on it, so requests and decisions must carry these bytes.
    """
    data: bytes
    arbiter_demand: bytes


@dataclass(frozen=True)
class DecisionRecord:
    fulfillment_uid: str
    decision: bool
    tx: TxHandle
    attestation_uid: str = ""


class Ledger(Protocol):
    """Operations the core calls on the external ledger."""

    @property
    def address(self) -> str: ...

    # reads
    def get_attestation(self, uid: str) -> Attestation: ...
    def poll_arbitration_requests(self, oracle: str, from_block: int) -> PollResult: ...
    def get_escrow_demand(self, fulfillment: Attestation) -> EscrowDemand: ...
    def list_attestations_referencing(self, uid: str) -> list[Attestation]: ...
    def compute_commitment(self, escrow_uid: str, fulfiller: str,
                           record: ObligationRecord) -> bytes: ...

    # writes
    def record_decision(self, fulfillment_uid: str, decision: bool,
                        demand: bytes = b"") -> DecisionRecord: ...
    def commit(self, commitment: bytes) -> TxHandle: ...
    def wait_for_confirmation(self, tx: TxHandle, timeout: float = 120.0) -> TxHandle: ...
    def reveal(self, record: ObligationRecord, escrow_uid: str) -> Attestation: ...
    def reclaim_bond(self, fulfillment_uid: str) -> TxHandle: ...
    def request_arbitration(self, fulfillment_uid: str, oracle: str,
                            demand: bytes = b"") -> TxHandle: ...
    def create_escrow(self, demand: bytes, oracle: str, token: str = "",
                      amount: int = 0) -> Attestation: ...
    def collect_escrow(self, escrow_uid: str, fulfillment_uid: str) -> TxHandle: ...


# ═══════════════════════════════════════════════════════════════════
# In-memory ledger
# ═══════════════════════════════════════════════════════════════════

ZERO_UID = "0x" + "00" * 32
ESCROW_SCHEMA = normalize_uid(keccak(text="nla.escrow"))
FULFILLMENT_SCHEMA = normalize_uid(keccak(text="nla.commit_reveal_obligation"))
DECISION_SCHEMA = normalize_uid(keccak(text="nla.trusted_oracle_decision"))


@dataclass
class _Escrow:
    oracle: str
    demand: bytes
    arbiter_demand: bytes
    token: str
    amount: int
    depositor: str
    collected_by: str = ""


@dataclass
class _Commitment:
    committer: str
    tx: TxHandle
    bond_reclaimed: bool = False
    fulfillment_uid: str = ""


@dataclass
class _ChainState:
    """State shared by every signer connected to the same in-memory chain."""
    lock: threading.RLock = field(default_factory=threading.RLock)
    block: int = 0
    counter: itertools.count = field(default_factory=lambda: itertools.count(1))
    attestations: dict[str, Attestation] = field(default_factory=dict)
    escrows: dict[str, _Escrow] = field(default_factory=dict)
    commitments: dict[bytes, _Commitment] = field(default_factory=dict)
    pending: list[bytes] = field(default_factory=list)
    requests: list[ArbitrationRequest] = field(default_factory=list)
    decisions: dict[tuple[str, str], bool] = field(default_factory=dict)
    decision_demands: dict[tuple[str, str], bytes] = field(default_factory=dict)
    write_log: list[tuple[str, str]] = field(default_factory=list)


class InMemoryLedger:
    """
    Single-process ledger with the same rejection rules as the contracts:

      - reveal requires a commitment from the same fulfiller, already mined
      - the revealed payload must hash to the committed value
      - a bond is reclaimed at most once
      - at most one decision per (fulfillment, oracle)
      - collect requires a positive decision from the escrow's oracle,
        recorded against the escrow's arbiter demand

    Every write mines a block except commit, which stays pending until
    wait_for_confirmation() mines it. Use as_signer() to act as another
    party on the same chain.
    """

    def __init__(self, address: str = "0x" + "11" * 20, chain: _ChainState | None = None):
        self._address = address.lower()
        self._chain = chain or _ChainState()

    @property
    def address(self) -> str:
        return self._address

    @property
    def block_number(self) -> int:
        with self._chain.lock:
            return self._chain.block

    @property
    def write_log(self) -> list[tuple[str, str]]:
        """(signer, operation) for every write, in order."""
        return list(self._chain.write_log)

    def as_signer(self, address: str) -> InMemoryLedger:
        return InMemoryLedger(address=address, chain=self._chain)

    # ── internals (caller holds the lock) ────────────────────────

    def _mine(self) -> int:
        self._chain.block += 1
        return self._chain.block

    def _new_uid(self) -> str:
        return normalize_uid(keccak(f"uid:{next(self._chain.counter)}".encode()))

    def _tx(self, label: str, block: int | None) -> TxHandle:
        tx_hash = normalize_uid(keccak(f"tx:{next(self._chain.counter)}:{label}".encode()))
        self._chain.write_log.append((self._address, label))
        return TxHandle(tx_hash=tx_hash, block_number=block)

    def _attest(self, schema: str, ref_uid: str, recipient: str, data: bytes) -> Attestation:
        att = Attestation(
            uid=self._new_uid(),
            schema=schema,
            ref_uid=ref_uid,
            attester=self._address,
            recipient=recipient,
            data=data,
            time=int(time.time()),
        )
        self._chain.attestations[att.uid] = att
        return att

    def _require_attestation(self, uid: str) -> Attestation:
        att = self._chain.attestations.get(uid)
        if att is None:
            raise LedgerError(f"Attestation not found: {uid}", uid=uid)
        return att

    # ── reads ────────────────────────────────────────────────────

    def get_attestation(self, uid: str) -> Attestation:
        uid = normalize_uid(uid)
        with self._chain.lock:
            return self._require_attestation(uid)

    def poll_arbitration_requests(self, oracle: str, from_block: int) -> PollResult:
        oracle = oracle.lower()
        with self._chain.lock:
            found = [
                r for r in self._chain.requests
                if r.oracle == oracle and r.block_number >= from_block
            ]
            return PollResult(requests=found, next_block=self._chain.block + 1)

    def get_escrow_demand(self, fulfillment: Attestation) -> EscrowDemand:
        with self._chain.lock:
            escrow = self._chain.escrows.get(fulfillment.ref_uid)
        if escrow is None:
            raise LedgerError(
                f"Fulfillment {fulfillment.uid} does not reference an escrow",
                uid=fulfillment.uid,
            )
        return EscrowDemand(data=escrow.demand, arbiter_demand=escrow.arbiter_demand)

    def list_attestations_referencing(self, uid: str) -> list[Attestation]:
        uid = normalize_uid(uid)
        with self._chain.lock:
            return [a for a in self._chain.attestations.values() if a.ref_uid == uid]

    def compute_commitment(self, escrow_uid: str, fulfiller: str,
                           record: ObligationRecord) -> bytes:
        return keccak(uid_bytes(escrow_uid) + fulfiller.lower().encode() + encode_obligation(record))

    def has_decision(self, fulfillment_uid: str, oracle: str | None = None) -> bool:
        key = (normalize_uid(fulfillment_uid), (oracle or self._address).lower())
        with self._chain.lock:
            return key in self._chain.decisions

    # ── writes ───────────────────────────────────────────────────

    def create_escrow(self, demand: bytes, oracle: str, token: str = "",
                      amount: int = 0) -> Attestation:
        with self._chain.lock:
            self._mine()
            att = self._attest(ESCROW_SCHEMA, ZERO_UID, self._address, demand)
            self._chain.escrows[att.uid] = _Escrow(
                oracle=oracle.lower(), demand=demand,
                arbiter_demand=encode_trusted_oracle_demand(oracle, demand), token=token,
                amount=amount, depositor=self._address,
            )
            self._tx("create_escrow", self._chain.block)
            return att

    def commit(self, commitment: bytes) -> TxHandle:
        with self._chain.lock:
            if commitment in self._chain.commitments:
                raise LedgerError("Commitment already submitted")
            tx = self._tx("commit", None)
            self._chain.commitments[commitment] = _Commitment(committer=self._address, tx=tx)
            self._chain.pending.append(commitment)
            return tx

    def wait_for_confirmation(self, tx: TxHandle, timeout: float = 120.0) -> TxHandle:
        if tx.confirmed:
            return tx
        with self._chain.lock:
            if self._chain.pending:
                block = self._mine()
                for c in self._chain.pending:
                    entry = self._chain.commitments[c]
                    entry.tx = TxHandle(entry.tx.tx_hash, block)
                self._chain.pending.clear()
            for entry in self._chain.commitments.values():
                if entry.tx.tx_hash == tx.tx_hash:
                    return entry.tx
        raise LedgerError(f"Unknown transaction: {tx.tx_hash}")

    def reveal(self, record: ObligationRecord, escrow_uid: str) -> Attestation:
        escrow_uid = normalize_uid(escrow_uid)
        with self._chain.lock:
            commitment = self.compute_commitment(escrow_uid, self._address, record)
            entry = self._chain.commitments.get(commitment)
            if entry is None or entry.committer != self._address:
                raise LedgerError("Revealed obligation does not match a commitment from this fulfiller")
            if not entry.tx.confirmed:
                raise LedgerError("Commitment not yet mined")
            if entry.fulfillment_uid:
                raise LedgerError("Commitment already revealed", uid=entry.fulfillment_uid)
            if escrow_uid not in self._chain.escrows:
                raise LedgerError(f"Escrow not found: {escrow_uid}", uid=escrow_uid)
            self._mine()
            att = self._attest(FULFILLMENT_SCHEMA, escrow_uid, self._address,
                               encode_obligation(record))
            entry.fulfillment_uid = att.uid
            self._tx("reveal", self._chain.block)
            return att

    def reclaim_bond(self, fulfillment_uid: str) -> TxHandle:
        fulfillment_uid = normalize_uid(fulfillment_uid)
        with self._chain.lock:
            for entry in self._chain.commitments.values():
                if entry.fulfillment_uid != fulfillment_uid:
                    continue
                if entry.committer != self._address:
                    raise LedgerError("Only the committer can reclaim the bond", uid=fulfillment_uid)
                if entry.bond_reclaimed:
                    raise LedgerError("Bond already reclaimed", uid=fulfillment_uid)
                entry.bond_reclaimed = True
                return self._tx("reclaim_bond", self._mine())
        raise LedgerError(f"No revealed commitment for {fulfillment_uid}", uid=fulfillment_uid)

    def request_arbitration(self, fulfillment_uid: str, oracle: str,
                            demand: bytes = b"") -> TxHandle:
        fulfillment_uid = normalize_uid(fulfillment_uid)
        with self._chain.lock:
            self._require_attestation(fulfillment_uid)
            block = self._mine()
            self._chain.requests.append(ArbitrationRequest(
                fulfillment_uid=fulfillment_uid,
                oracle=oracle.lower(),
                demand=demand,
                block_number=block,
                log_index=len(self._chain.requests),
            ))
            return self._tx("request_arbitration", block)

    def record_decision(self, fulfillment_uid: str, decision: bool,
                        demand: bytes = b"") -> DecisionRecord:
        fulfillment_uid = normalize_uid(fulfillment_uid)
        with self._chain.lock:
            key = (fulfillment_uid, self._address)
            if key in self._chain.decisions:
                raise LedgerError(
                    f"Decision already recorded for {fulfillment_uid}", uid=fulfillment_uid,
                )
            fulfillment = self._require_attestation(fulfillment_uid)
            self._mine()
            self._chain.decisions[key] = bool(decision)
            self._chain.decision_demands[key] = bytes(demand)
            att = self._attest(DECISION_SCHEMA, fulfillment_uid, fulfillment.attester,
                               encode_decision(decision))
            tx = self._tx("record_decision", self._chain.block)
            logger.debug("Decision %s recorded for %s by %s", decision, fulfillment_uid, self._address)
            return DecisionRecord(
                fulfillment_uid=fulfillment_uid,
                decision=bool(decision),
                tx=tx,
                attestation_uid=att.uid,
            )

    def collect_escrow(self, escrow_uid: str, fulfillment_uid: str) -> TxHandle:
        escrow_uid = normalize_uid(escrow_uid)
        fulfillment_uid = normalize_uid(fulfillment_uid)
        with self._chain.lock:
            escrow = self._chain.escrows.get(escrow_uid)
            if escrow is None:
                raise LedgerError(f"Escrow not found: {escrow_uid}", uid=escrow_uid)
            if escrow.collected_by:
                raise LedgerError("Escrow already collected", uid=escrow_uid)
            key = (fulfillment_uid, escrow.oracle)
            if not self._chain.decisions.get(key, False):
                raise LedgerError("Fulfillment has not been approved by the oracle",
                                  uid=fulfillment_uid)
            if self._chain.decision_demands.get(key) != escrow.arbiter_demand:
                raise LedgerError("Decision was recorded against a different demand",
                                  uid=fulfillment_uid)
            escrow.collected_by = self._address
            return self._tx("collect_escrow", self._mine())
