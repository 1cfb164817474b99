"""
NLA Oracle — web3.py Ledger Adapter

Implements the Ledger boundary against deployed contracts:

  eas                        EAS attestation registry (getAttestation, Attested)
  trusted_oracle_arbiter     requestArbitration / arbitrate / ArbitrationRequested
  commit_reveal_obligation   computeCommitment / commit / doObligation / reclaimBond
  erc20_escrow_obligation    doObligation / collectEscrow

Only the functions the oracle and fulfiller call are in the ABIs below.

Escrow attestations wrap the demand twice:

  escrow data   (address arbiter, bytes demand, address token, uint256 amount)
  arbiter data  (address oracle, bytes data)      TrustedOracleArbiter
  data          the NLA demand tuple (see nla.codec)

The arbiter keys decisions on the arbiter data bytes, so requestArbitration
and arbitrate both carry those, never the inner tuple.

Event logs are fetched in windows of at most log_chunk_blocks blocks.

Writes share one signer: signing and submission run under a lock with a
locally tracked nonce, so parallel arbitrations never race on nonces.
Waiting for receipts happens outside the lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from nla.codec import (
    ObligationRecord,
    decode_trusted_oracle_demand,
    encode_trusted_oracle_demand,
)
from nla.config import LedgerSettings
from nla.errors import DecodeError, LedgerError
from nla.ledger import (
    ArbitrationRequest,
    Attestation,
    DecisionRecord,
    EscrowDemand,
    PollResult,
    TxHandle,
    normalize_uid,
    uid_bytes,
)

logger = logging.getLogger("nla.web3_ledger")

ESCROW_TYPES = ["(address,bytes,address,uint256)"]

DEFAULT_LOG_CHUNK_BLOCKS = 2000

REQUIRED_ADDRESSES = (
    "eas",
    "trusted_oracle_arbiter",
    "commit_reveal_obligation",
    "erc20_escrow_obligation",
)


# ═══════════════════════════════════════════════════════════════════
# Minimal ABIs
# ═══════════════════════════════════════════════════════════════════

def _fn(name: str, inputs: list[dict], outputs: list[dict] | None = None,
        mutability: str = "nonpayable") -> dict:
    return {"type": "function", "name": name, "inputs": inputs,
            "outputs": outputs or [], "stateMutability": mutability}


def _arg(name: str, type_: str, **extra) -> dict:
    return {"name": name, "type": type_, **extra}


_OBLIGATION_DATA = _arg("data", "tuple", components=[
    _arg("payload", "bytes"), _arg("salt", "bytes32"), _arg("schema", "bytes32"),
])

EAS_ABI = [
    _fn("getAttestation", [_arg("uid", "bytes32")], [_arg("", "tuple", components=[
        _arg("uid", "bytes32"),
        _arg("schema", "bytes32"),
        _arg("time", "uint64"),
        _arg("expirationTime", "uint64"),
        _arg("revocationTime", "uint64"),
        _arg("refUID", "bytes32"),
        _arg("recipient", "address"),
        _arg("attester", "address"),
        _arg("revocable", "bool"),
        _arg("data", "bytes"),
    ])], mutability="view"),
    {"type": "event", "name": "Attested", "anonymous": False, "inputs": [
        _arg("recipient", "address", indexed=True),
        _arg("attester", "address", indexed=True),
        _arg("uid", "bytes32", indexed=False),
        _arg("schemaUID", "bytes32", indexed=True),
    ]},
]

TRUSTED_ORACLE_ABI = [
    _fn("arbitrate", [_arg("obligation", "bytes32"), _arg("demand", "bytes"),
                      _arg("decision", "bool")]),
    _fn("requestArbitration", [_arg("obligation", "bytes32"), _arg("oracle", "address"),
                               _arg("demand", "bytes")]),
    {"type": "event", "name": "ArbitrationRequested", "anonymous": False, "inputs": [
        _arg("obligation", "bytes32", indexed=True),
        _arg("oracle", "address", indexed=True),
        _arg("demand", "bytes", indexed=False),
    ]},
]

COMMIT_REVEAL_ABI = [
    _fn("computeCommitment", [_arg("refUID", "bytes32"), _arg("claimer", "address"),
                              _OBLIGATION_DATA],
        [_arg("", "bytes32")], mutability="view"),
    _fn("bondAmount", [], [_arg("", "uint256")], mutability="view"),
    _fn("commit", [_arg("commitment", "bytes32")], mutability="payable"),
    _fn("doObligation", [_OBLIGATION_DATA, _arg("refUID", "bytes32")], [_arg("", "bytes32")]),
    _fn("reclaimBond", [_arg("obligationUid", "bytes32")], [_arg("", "uint256")]),
]

ERC20_ESCROW_ABI = [
    _fn("doObligation", [_arg("data", "tuple", components=[
        _arg("arbiter", "address"), _arg("demand", "bytes"),
        _arg("token", "address"), _arg("amount", "uint256"),
    ]), _arg("expirationTime", "uint64")], [_arg("", "bytes32")]),
    _fn("collectEscrow", [_arg("escrow", "bytes32"), _arg("fulfillment", "bytes32")],
        [_arg("", "bool")]),
]

ERC20_ABI = [
    _fn("approve", [_arg("spender", "address"), _arg("amount", "uint256")], [_arg("", "bool")]),
]


# ═══════════════════════════════════════════════════════════════════
# Escrow data wrappers
# ═══════════════════════════════════════════════════════════════════

def encode_escrow_data(arbiter: str, demand: bytes, token: str, amount: int) -> bytes:
    return abi_encode(ESCROW_TYPES, [(
        Web3.to_checksum_address(arbiter), demand,
        Web3.to_checksum_address(token), amount,
    )])


def decode_escrow_data(data: bytes) -> dict[str, Any]:
    try:
        (arbiter, demand, token, amount), = abi_decode(ESCROW_TYPES, bytes(data))
    except (DecodingError, OverflowError, ValueError) as e:
        raise DecodeError(f"Not an ERC20 escrow obligation: {e}") from e
    return {"arbiter": arbiter.lower(), "demand": bytes(demand),
            "token": token.lower(), "amount": amount}


# ═══════════════════════════════════════════════════════════════════
# Adapter
# ═══════════════════════════════════════════════════════════════════

class Web3Ledger:

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        addresses: dict[str, str],
        chain_id: int | None = None,
        receipt_timeout: float = 120.0,
        log_chunk_blocks: int = DEFAULT_LOG_CHUNK_BLOCKS,
        w3: Web3 | None = None,
    ):
        missing = [k for k in REQUIRED_ADDRESSES if not addresses.get(k)]
        if missing:
            raise LedgerError(f"Missing contract addresses: {', '.join(missing)}")

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
        self._account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.log_chunk_blocks = max(1, log_chunk_blocks)
        self.addresses = {k: Web3.to_checksum_address(v) for k, v in addresses.items()}

        self.eas = self._contract("eas", EAS_ABI)
        self.arbiter = self._contract("trusted_oracle_arbiter", TRUSTED_ORACLE_ABI)
        self.commit_reveal = self._contract("commit_reveal_obligation", COMMIT_REVEAL_ABI)
        self.escrow = self._contract("erc20_escrow_obligation", ERC20_ESCROW_ABI)

        self._write_lock = threading.Lock()
        self._nonce: int | None = None

    @classmethod
    def from_settings(cls, settings: LedgerSettings) -> Web3Ledger:
        if not settings.private_key:
            raise LedgerError("A signer private key is required (ORACLE_PRIVATE_KEY)")
        return cls(
            rpc_url=settings.rpc_url,
            private_key=settings.private_key,
            addresses=settings.addresses,
            chain_id=settings.chain_id,
            receipt_timeout=settings.receipt_timeout_seconds,
            log_chunk_blocks=settings.log_chunk_blocks,
        )

    def _contract(self, key: str, abi: list[dict]):
        return self.w3.eth.contract(address=self.addresses[key], abi=abi)

    @property
    def address(self) -> str:
        return self._account.address.lower()

    # ── transactions ─────────────────────────────────────────────

    def _submit(self, fn, label: str, value: int = 0) -> str:
        """Sign and send under the signer lock. Returns the tx hash."""
        with self._write_lock:
            if self._nonce is None:
                self._nonce = self.w3.eth.get_transaction_count(self._account.address, "pending")
            params: dict[str, Any] = {
                "from": self._account.address,
                "nonce": self._nonce,
                "value": value,
            }
            if self.chain_id is not None:
                params["chainId"] = self.chain_id
            try:
                tx = fn.build_transaction(params)
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except (ContractLogicError, Web3Exception, ValueError) as e:
                # Resync from the node next time; the nonce may not have been used
                self._nonce = None
                raise LedgerError(f"{label} rejected: {e}") from e
            self._nonce += 1
        tx_hex = Web3.to_hex(tx_hash)
        logger.debug("Sent %s tx %s", label, tx_hex)
        return tx_hex

    def _receipt(self, tx_hash: str, label: str, timeout: float | None = None):
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout or self.receipt_timeout,
            )
        except TimeExhausted as e:
            raise LedgerError(f"{label} not mined within timeout: {tx_hash}") from e
        if receipt["status"] != 1:
            raise LedgerError(f"{label} reverted: {tx_hash}")
        return receipt

    def _transact(self, fn, label: str, value: int = 0):
        tx_hash = self._submit(fn, label, value=value)
        receipt = self._receipt(tx_hash, label)
        return TxHandle(tx_hash=tx_hash, block_number=receipt["blockNumber"]), receipt

    def _attested_uids(self, receipt) -> list[str]:
        events = self.eas.events.Attested().process_receipt(receipt, errors=DISCARD)
        return [normalize_uid(ev["args"]["uid"]) for ev in events]

    # ── reads ────────────────────────────────────────────────────

    def get_attestation(self, uid: str) -> Attestation:
        raw = self.eas.functions.getAttestation(uid_bytes(uid)).call()
        (att_uid, schema, created, _expiration, revocation_time, ref_uid,
         recipient, attester, revocable, data) = raw
        if not any(att_uid):
            raise LedgerError(f"Attestation not found: {normalize_uid(uid)}", uid=normalize_uid(uid))
        return Attestation(
            uid=normalize_uid(att_uid),
            schema=normalize_uid(schema),
            ref_uid=normalize_uid(ref_uid),
            attester=attester.lower(),
            recipient=recipient.lower(),
            data=bytes(data),
            revocable=revocable,
            revocation_time=revocation_time,
            time=created,
        )

    def _log_windows(self, from_block: int, to_block: int):
        start = from_block
        while start <= to_block:
            end = min(start + self.log_chunk_blocks - 1, to_block)
            yield start, end
            start = end + 1

    def poll_arbitration_requests(self, oracle: str, from_block: int) -> PollResult:
        latest = self.w3.eth.block_number
        if from_block > latest:
            return PollResult(requests=[], next_block=from_block)

        event = self.arbiter.events.ArbitrationRequested()
        oracle_filter = {"oracle": Web3.to_checksum_address(oracle)}
        requests: list[ArbitrationRequest] = []
        for start, end in self._log_windows(from_block, latest):
            try:
                logs = event.get_logs(from_block=start, to_block=end,
                                      argument_filters=oracle_filter)
            except Exception as e:
                if start == from_block:
                    raise
                # Keep what the earlier windows found; resume from this one
                logger.warning("Log query for blocks %d-%d failed: %s", start, end, e)
                return PollResult(requests=requests, next_block=start)
            requests.extend(
                ArbitrationRequest(
                    fulfillment_uid=normalize_uid(log["args"]["obligation"]),
                    oracle=log["args"]["oracle"].lower(),
                    demand=bytes(log["args"]["demand"]),
                    block_number=log["blockNumber"],
                    log_index=log["logIndex"],
                )
                for log in logs
            )
        return PollResult(requests=requests, next_block=latest + 1)

    def get_escrow_demand(self, fulfillment: Attestation) -> EscrowDemand:
        escrow = self.get_attestation(fulfillment.ref_uid)
        arbiter_demand = decode_escrow_data(escrow.data)["demand"]
        _oracle, inner = decode_trusted_oracle_demand(arbiter_demand)
        return EscrowDemand(data=inner, arbiter_demand=arbiter_demand)

    def list_attestations_referencing(self, uid: str) -> list[Attestation]:
        uid = normalize_uid(uid)
        event = self.eas.events.Attested()
        found = []
        for start, end in self._log_windows(0, self.w3.eth.block_number):
            for log in event.get_logs(from_block=start, to_block=end):
                att = self.get_attestation(normalize_uid(log["args"]["uid"]))
                if att.ref_uid == uid:
                    found.append(att)
        return found

    def compute_commitment(self, escrow_uid: str, fulfiller: str,
                           record: ObligationRecord) -> bytes:
        return bytes(self.commit_reveal.functions.computeCommitment(
            uid_bytes(escrow_uid),
            Web3.to_checksum_address(fulfiller),
            (record.payload, record.salt, record.schema),
        ).call())

    # ── writes ───────────────────────────────────────────────────

    def commit(self, commitment: bytes) -> TxHandle:
        bond = self.commit_reveal.functions.bondAmount().call()
        tx_hash = self._submit(self.commit_reveal.functions.commit(commitment), "commit", value=bond)
        return TxHandle(tx_hash=tx_hash)

    def wait_for_confirmation(self, tx: TxHandle, timeout: float = 120.0) -> TxHandle:
        if tx.confirmed:
            return tx
        receipt = self._receipt(tx.tx_hash, "commit", timeout=timeout)
        return TxHandle(tx_hash=tx.tx_hash, block_number=receipt["blockNumber"])

    def reveal(self, record: ObligationRecord, escrow_uid: str) -> Attestation:
        _, receipt = self._transact(
            self.commit_reveal.functions.doObligation(
                (record.payload, record.salt, record.schema), uid_bytes(escrow_uid),
            ),
            "doObligation",
        )
        uids = self._attested_uids(receipt)
        if not uids:
            raise LedgerError("doObligation produced no attestation")
        return self.get_attestation(uids[0])

    def reclaim_bond(self, fulfillment_uid: str) -> TxHandle:
        tx, _ = self._transact(
            self.commit_reveal.functions.reclaimBond(uid_bytes(fulfillment_uid)), "reclaimBond",
        )
        return tx

    def request_arbitration(self, fulfillment_uid: str, oracle: str,
                            demand: bytes = b"") -> TxHandle:
        tx, _ = self._transact(
            self.arbiter.functions.requestArbitration(
                uid_bytes(fulfillment_uid), Web3.to_checksum_address(oracle), demand,
            ),
            "requestArbitration",
        )
        return tx

    def record_decision(self, fulfillment_uid: str, decision: bool,
                        demand: bytes = b"") -> DecisionRecord:
        tx, receipt = self._transact(
            self.arbiter.functions.arbitrate(uid_bytes(fulfillment_uid), demand, bool(decision)),
            "arbitrate",
        )
        uids = self._attested_uids(receipt)
        return DecisionRecord(
            fulfillment_uid=normalize_uid(fulfillment_uid),
            decision=bool(decision),
            tx=tx,
            attestation_uid=uids[0] if uids else "",
        )

    def create_escrow(self, demand: bytes, oracle: str, token: str = "",
                      amount: int = 0) -> Attestation:
        if not token:
            raise LedgerError("An ERC20 token address is required to create an escrow")
        arbiter_demand = encode_trusted_oracle_demand(oracle, demand)
        token_contract = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        self._transact(
            token_contract.functions.approve(self.addresses["erc20_escrow_obligation"], amount),
            "approve",
        )
        _, receipt = self._transact(
            self.escrow.functions.doObligation(
                (self.addresses["trusted_oracle_arbiter"], arbiter_demand,
                 Web3.to_checksum_address(token), amount),
                0,
            ),
            "createEscrow",
        )
        uids = self._attested_uids(receipt)
        if not uids:
            raise LedgerError("Escrow creation produced no attestation")
        return self.get_attestation(uids[0])

    def collect_escrow(self, escrow_uid: str, fulfillment_uid: str) -> TxHandle:
        tx, _ = self._transact(
            self.escrow.functions.collectEscrow(uid_bytes(escrow_uid), uid_bytes(fulfillment_uid)),
            "collectEscrow",
        )
        return tx
