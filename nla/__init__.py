"""
NLA Oracle — Natural-Language Arbitration

An oracle that watches an attestation ledger for arbitration requests,
asks an AI backend whether a fulfillment satisfies an escrow's
natural-language demand, and records the boolean decision on-chain.
Fulfillers publish their answer through the commit-reveal coordinator.

Layout:
  - nla.codec: Demand / obligation / decision ABI codec
  - nla.router: ProviderRouter (select, render, invoke, normalize)
  - nla.arbitration: ArbitrationLoop (poll, dispatch, record)
  - nla.commit_reveal: CommitRevealCoordinator
  - nla.oracle: OracleProcess (lifecycle, signals)
  - nla.ledger / nla.web3_ledger: ledger boundary

Usage:
    from nla.oracle import OracleProcess, build_router
    from nla.config import OracleConfig, load_config

    config = OracleConfig.from_dict(load_config("nla_config.yaml"))
"""

__version__ = "0.1.0"

from nla.codec import Demand, ObligationRecord, decode_demand, encode_demand
from nla.errors import (
    ArbitrationFailed,
    CommitRevealViolation,
    DecodeError,
    LedgerError,
    MalformedDemand,
    NlaError,
    NoProviderAvailable,
    UnsupportedProvider,
)
