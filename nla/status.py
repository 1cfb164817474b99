"""
NLA Oracle — Escrow Status

Read-only report for one escrow: its demand, every fulfillment that
references it, and the decisions recorded against each fulfillment.

    status = escrow_status(ledger, escrow_uid)
    print(format_status(status))
"""

from __future__ import annotations

from dataclasses import dataclass, field

from nla.codec import (
    Demand,
    decode_decision,
    decode_demand,
    decode_trusted_oracle_demand,
    obligation_text,
)
from nla.errors import DecodeError
from nla.ledger import Attestation, Ledger, normalize_uid


@dataclass
class FulfillmentStatus:
    attestation: Attestation
    text: str | None = None
    decisions: list[bool] = field(default_factory=list)

    @property
    def uid(self) -> str:
        return self.attestation.uid

    @property
    def pending(self) -> bool:
        return not self.decisions

    @property
    def approved(self) -> bool:
        return any(self.decisions)


@dataclass
class EscrowStatus:
    escrow: Attestation
    demand: Demand | None = None
    fulfillments: list[FulfillmentStatus] = field(default_factory=list)

    @property
    def uid(self) -> str:
        return self.escrow.uid


def _escrow_demand(data: bytes) -> Demand | None:
    try:
        return decode_demand(data, validate=False)
    except DecodeError:
        pass
    # On-chain escrows wrap the demand in escrow and arbiter tuples
    from nla.web3_ledger import decode_escrow_data
    try:
        _, inner = decode_trusted_oracle_demand(decode_escrow_data(data)["demand"])
        return decode_demand(inner, validate=False)
    except DecodeError:
        return None


def escrow_status(ledger: Ledger, escrow_uid: str,
                  obligation_format: str = "commit_reveal") -> EscrowStatus:
    escrow = ledger.get_attestation(normalize_uid(escrow_uid))
    status = EscrowStatus(escrow=escrow, demand=_escrow_demand(escrow.data))

    for att in ledger.list_attestations_referencing(escrow.uid):
        try:
            text = obligation_text(att.data, obligation_format)
        except DecodeError:
            text = None
        entry = FulfillmentStatus(attestation=att, text=text)

        for ref in ledger.list_attestations_referencing(att.uid):
            try:
                entry.decisions.append(decode_decision(ref.data))
            except DecodeError:
                continue
        status.fulfillments.append(entry)

    return status


def format_status(status: EscrowStatus) -> str:
    escrow = status.escrow
    lines = [
        f"Escrow {escrow.uid}",
        f"  Attester:  {escrow.attester}",
        f"  Revoked:   {'yes' if escrow.revoked else 'no'}",
    ]
    if status.demand is not None:
        lines += [
            f"  Demand:    {status.demand.demand_text!r}",
            f"  Provider:  {status.demand.provider} / {status.demand.model}",
        ]
    else:
        lines.append(f"  Raw data:  0x{escrow.data.hex()}")

    if not status.fulfillments:
        lines.append("No fulfillments yet")
        return "\n".join(lines)

    lines.append(f"Fulfillments ({len(status.fulfillments)}):")
    for f in status.fulfillments:
        lines.append(f"  {f.uid}")
        lines.append(f"    Attester:  {f.attestation.attester}")
        if f.text is not None:
            lines.append(f"    Text:      {f.text!r}")
        if f.pending:
            lines.append("    Decision:  pending")
        else:
            verdicts = ", ".join("approved" if d else "rejected" for d in f.decisions)
            lines.append(f"    Decision:  {verdicts}")
    return "\n".join(lines)
