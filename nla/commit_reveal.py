"""
NLA Oracle — Commit-Reveal Coordinator

Fulfiller-side protocol for publishing an answer without being
front-run:

  UNSTARTED ──commit──▶ COMMITTED ──(confirmed)──reveal──▶ REVEALED ──reclaim──▶ BOND_RECLAIMED

The ledger enforces the same ordering, but the coordinator checks it
locally first: revealing before the commit transaction is mined, or
reclaiming a bond twice, raises CommitRevealViolation without touching
the ledger.

One coordinator instance tracks one fulfillment attempt.

Usage:
    coord = CommitRevealCoordinator(ledger)
    receipt = coord.fulfill(escrow_uid, "The sky appears blue today",
                            oracle=oracle_address)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from nla.codec import ObligationRecord, new_obligation_record
from nla.errors import CommitRevealViolation
from nla.ledger import Attestation, Ledger, TxHandle, normalize_uid

logger = logging.getLogger("nla.commit_reveal")


class State(str, enum.Enum):
    UNSTARTED = "unstarted"
    COMMITTED = "committed"
    REVEALED = "revealed"
    BOND_RECLAIMED = "bond_reclaimed"


@dataclass(frozen=True)
class FulfillmentReceipt:
    escrow_uid: str
    commitment: bytes
    commit_tx: TxHandle
    fulfillment: Attestation
    reclaim_tx: TxHandle
    arbitration_tx: TxHandle | None = None

    @property
    def fulfillment_uid(self) -> str:
        return self.fulfillment.uid


class CommitRevealCoordinator:

    def __init__(self, ledger: Ledger, confirmation_timeout: float = 120.0):
        self.ledger = ledger
        self.confirmation_timeout = confirmation_timeout
        self.state = State.UNSTARTED
        self.commitment: bytes | None = None
        self.commit_tx: TxHandle | None = None
        self.fulfillment: Attestation | None = None
        self._reclaimed: set[str] = set()

    @property
    def commit_confirmed(self) -> bool:
        return self.commit_tx is not None and self.commit_tx.confirmed

    def compute_commitment(self, escrow_uid: str, fulfiller: str,
                           record: ObligationRecord) -> bytes:
        return self.ledger.compute_commitment(escrow_uid, fulfiller, record)

    def commit(self, commitment: bytes) -> TxHandle:
        if self.state is not State.UNSTARTED:
            raise CommitRevealViolation(
                f"Cannot commit in state {self.state.value}", state=self.state.value,
            )
        tx = self.ledger.commit(commitment)
        self.commitment = commitment
        self.commit_tx = tx
        self.state = State.COMMITTED
        logger.info("Commitment submitted: %s", tx.tx_hash)
        return tx

    def wait_for_confirmation(self, timeout: float | None = None) -> TxHandle:
        if self.commit_tx is None:
            raise CommitRevealViolation("No commit transaction to wait for", state=self.state.value)
        self.commit_tx = self.ledger.wait_for_confirmation(
            self.commit_tx, timeout=timeout or self.confirmation_timeout,
        )
        logger.info("Commitment confirmed in block %s", self.commit_tx.block_number)
        return self.commit_tx

    def do_obligation(self, record: ObligationRecord, escrow_uid: str) -> Attestation:
        """Reveal the obligation. The commit must already be confirmed."""
        if self.state is not State.COMMITTED:
            raise CommitRevealViolation(
                f"Cannot reveal in state {self.state.value}", state=self.state.value,
            )
        if not self.commit_confirmed:
            raise CommitRevealViolation(
                "Commit transaction is not confirmed yet; wait before revealing",
                state=self.state.value,
            )
        fulfillment = self.ledger.reveal(record, escrow_uid)
        self.fulfillment = fulfillment
        self.state = State.REVEALED
        logger.info("Obligation revealed: %s", fulfillment.uid)
        return fulfillment

    def reclaim_bond(self, fulfillment_uid: str) -> TxHandle:
        uid = normalize_uid(fulfillment_uid)
        if uid in self._reclaimed:
            raise CommitRevealViolation(f"Bond already reclaimed for {uid}", state=self.state.value)
        if self.state is State.COMMITTED or self.state is State.UNSTARTED:
            raise CommitRevealViolation(
                "Bond can only be reclaimed after the obligation is revealed",
                state=self.state.value,
            )
        tx = self.ledger.reclaim_bond(uid)
        self._reclaimed.add(uid)
        self.state = State.BOND_RECLAIMED
        logger.info("Bond reclaimed for %s", uid)
        return tx

    def request_arbitration(self, fulfillment_uid: str, oracle: str,
                            demand: bytes = b"") -> TxHandle:
        tx = self.ledger.request_arbitration(fulfillment_uid, oracle, demand)
        logger.info("Arbitration requested from %s for %s", oracle, fulfillment_uid)
        return tx

    def fulfill(self, escrow_uid: str, text: str, oracle: str | None = None,
                demand: bytes = b"") -> FulfillmentReceipt:
        """
        Run the full sequence for one answer: commit, wait, reveal,
        reclaim, and optionally ask ``oracle`` to arbitrate.

        ``demand`` is the escrow's arbiter demand; when omitted it is read
        back from the escrow the fulfillment references.
        """
        escrow_uid = normalize_uid(escrow_uid)
        record = new_obligation_record(text)
        commitment = self.compute_commitment(escrow_uid, self.ledger.address, record)

        self.commit(commitment)
        commit_tx = self.wait_for_confirmation()
        fulfillment = self.do_obligation(record, escrow_uid)
        reclaim_tx = self.reclaim_bond(fulfillment.uid)

        arbitration_tx = None
        if oracle:
            if not demand:
                demand = self.ledger.get_escrow_demand(fulfillment).arbiter_demand
            arbitration_tx = self.request_arbitration(fulfillment.uid, oracle, demand)

        return FulfillmentReceipt(
            escrow_uid=escrow_uid,
            commitment=commitment,
            commit_tx=commit_tx,
            fulfillment=fulfillment,
            reclaim_tx=reclaim_tx,
            arbitration_tx=arbitration_tx,
        )
