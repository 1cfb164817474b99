"""
NLA Oracle — Attestation Data Codec

ABI encoding for every payload the oracle reads or writes:

  Demand       (string arbitrationProvider, string arbitrationModel,
                string arbitrationPrompt, string demand)
  Obligation   (bytes payload, bytes32 salt, bytes32 schema)   commit-reveal
  String item  (string item)                                   plain obligation
  Decision     (bool item)
  Arbiter      (address oracle, bytes data)                    trusted-oracle wrapper

Encoding is deterministic and does no content validation. Decoding
raises DecodeError on a structural mismatch; decode_demand additionally
runs validate_demand unless told not to.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, to_checksum_address

from nla.errors import DecodeError, MalformedDemand


DEMAND_TYPES = ["(string,string,string,string)"]
OBLIGATION_TYPES = ["(bytes,bytes32,bytes32)"]
STRING_ITEM_TYPES = ["(string)"]
DECISION_TYPES = ["(bool)"]
TRUSTED_ORACLE_TYPES = ["(address,bytes)"]

# Hash identifying the logical obligation shape {item: string}
OBLIGATION_SCHEMA = keccak(text="{item:string}")

DEFAULT_PROMPT_TEMPLATE = (
    "Evaluate the fulfillment against the demand and decide whether the "
    "demand was validly fulfilled\n\n"
    "Demand: {{demand}}\n\n"
    "Fulfillment: {{obligation}}"
)


@dataclass(frozen=True)
class Demand:
    """Natural-language demand attached to an escrow by the depositor."""
    provider: str
    model: str
    prompt_template: str
    demand_text: str

    def to_dict(self) -> dict[str, str]:
        return {
            "arbitrationProvider": self.provider,
            "arbitrationModel": self.model,
            "arbitrationPrompt": self.prompt_template,
            "demand": self.demand_text,
        }


@dataclass(frozen=True)
class ObligationRecord:
    """Commit-reveal payload bound into the fulfiller's commitment."""
    payload: bytes
    salt: bytes
    schema: bytes = OBLIGATION_SCHEMA

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8")


def _as_bytes(data: bytes | str) -> bytes:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        hex_str = data[2:] if data.startswith(("0x", "0X")) else data
        try:
            return bytes.fromhex(hex_str)
        except ValueError as e:
            raise DecodeError(f"Not a hex string: {data[:20]!r}") from e
    raise DecodeError(f"Cannot decode {type(data).__name__}; expected bytes or hex str")


def _decode_tuple(types: list[str], data: bytes | str, what: str) -> tuple[Any, ...]:
    raw = _as_bytes(data)
    try:
        (decoded,) = abi_decode(types, raw)
    except (DecodingError, UnicodeDecodeError, OverflowError, ValueError) as e:
        raise DecodeError(f"Cannot decode {what} ({len(raw)} bytes): {e}") from e
    return decoded


# ═══════════════════════════════════════════════════════════════════
# Demand
# ═══════════════════════════════════════════════════════════════════

def encode_demand(demand: Demand) -> bytes:
    return abi_encode(
        DEMAND_TYPES,
        [(demand.provider, demand.model, demand.prompt_template, demand.demand_text)],
    )


def validate_demand(demand: Demand) -> Demand:
    """
    Reject demands that signal an encoding mistake.

    An empty model or demand text, or a model with embedded NULs, is what
    a mis-encoded demand decodes to. These are never arbitrated.
    """
    if "\x00" in demand.model:
        raise MalformedDemand("model contains NUL bytes", field_name="model")
    if not demand.model:
        raise MalformedDemand("model is empty", field_name="model")
    if not demand.demand_text:
        raise MalformedDemand("demand text is empty", field_name="demand_text")
    return demand


def decode_demand(data: bytes | str, validate: bool = True) -> Demand:
    raw = _as_bytes(data)
    provider, model, prompt, text = _decode_tuple(DEMAND_TYPES, raw, "demand")
    demand = Demand(
        provider=provider,
        model=model,
        prompt_template=prompt,
        demand_text=text,
    )
    # eth_abi ignores extra head words, so a tuple with more fields still decodes
    if encode_demand(demand) != raw:
        raise DecodeError(f"Non-canonical demand encoding ({len(raw)} bytes)")
    if validate:
        validate_demand(demand)
    return demand


# ═══════════════════════════════════════════════════════════════════
# Obligations
# ═══════════════════════════════════════════════════════════════════

def new_obligation_record(text: str) -> ObligationRecord:
    """Build a record for ``text`` with a fresh unpredictable salt."""
    return ObligationRecord(
        payload=text.encode("utf-8"),
        salt=keccak(secrets.token_bytes(32)),
        schema=OBLIGATION_SCHEMA,
    )


def encode_obligation(record: ObligationRecord) -> bytes:
    return abi_encode(OBLIGATION_TYPES, [(record.payload, record.salt, record.schema)])


def decode_obligation(data: bytes | str) -> ObligationRecord:
    payload, salt, schema = _decode_tuple(OBLIGATION_TYPES, data, "obligation")
    return ObligationRecord(payload=payload, salt=salt, schema=schema)


def encode_string_obligation(item: str) -> bytes:
    return abi_encode(STRING_ITEM_TYPES, [(item,)])


def decode_string_obligation(data: bytes | str) -> str:
    (item,) = _decode_tuple(STRING_ITEM_TYPES, data, "string obligation")
    return item


def obligation_text(data: bytes | str, obligation_format: str = "commit_reveal") -> str:
    """Extract the fulfiller's claimed text from fulfillment attestation data."""
    if obligation_format == "string":
        return decode_string_obligation(data)
    if obligation_format == "commit_reveal":
        record = decode_obligation(data)
        try:
            return record.text
        except UnicodeDecodeError as e:
            raise DecodeError(f"Obligation payload is not UTF-8: {e}") from e
    raise ValueError(f"Unknown obligation format: {obligation_format!r}")


# ═══════════════════════════════════════════════════════════════════
# Decisions
# ═══════════════════════════════════════════════════════════════════

def encode_decision(decision: bool) -> bytes:
    return abi_encode(DECISION_TYPES, [(bool(decision),)])


def decode_decision(data: bytes | str) -> bool:
    (item,) = _decode_tuple(DECISION_TYPES, data, "decision")
    return item


# ═══════════════════════════════════════════════════════════════════
# Trusted-oracle arbiter demand
# ═══════════════════════════════════════════════════════════════════

def encode_trusted_oracle_demand(oracle: str, data: bytes) -> bytes:
    """Wrap demand ``data`` for the arbiter. Decisions are keyed on these bytes."""
    return abi_encode(TRUSTED_ORACLE_TYPES, [(to_checksum_address(oracle), data)])


def decode_trusted_oracle_demand(data: bytes | str) -> tuple[str, bytes]:
    """(oracle address, inner demand bytes)"""
    oracle, inner = _decode_tuple(TRUSTED_ORACLE_TYPES, data, "trusted-oracle demand")
    return oracle.lower(), bytes(inner)
