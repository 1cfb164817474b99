"""
NLA Oracle — CLI

Operator commands. Everything here only assembles an OracleConfig and a
ledger; the components never read the environment themselves.

Usage:
    # Run the oracle until SIGINT / SIGTERM
    python -m nla.cli oracle --rpc-url http://localhost:8545

    # Lock tokens behind a demand
    python -m nla.cli create-escrow --demand "The sky is blue" --amount 10 \
        --token 0x... --oracle 0x...

    # Fulfill an escrow (commit, reveal, reclaim bond, request arbitration)
    python -m nla.cli fulfill --escrow-uid 0x... --fulfillment "The sky appears blue today"

    # Collect after the oracle approves
    python -m nla.cli collect --escrow-uid 0x... --fulfillment-uid 0x...

    # Show fulfillments and decisions for an escrow
    python -m nla.cli status --escrow-uid 0x...

Secrets are read from the environment or a .env file (OPENAI_API_KEY,
ANTHROPIC_API_KEY, OPENROUTER_API_KEY, PERPLEXITY_API_KEY,
ORACLE_PRIVATE_KEY, RPC_URL). Flags override the environment.
"""

from __future__ import annotations

import argparse
import sys
from typing import Any

from dotenv import load_dotenv

from nla.config import OracleConfig, deep_merge, load_config
from nla.errors import NlaError, NoProviderAvailable
from nla.logging import configure_logging


def _cli_overrides(args) -> dict[str, Any]:
    """Flags as a config overlay; unset flags are left out."""
    overrides: dict[str, Any] = {}
    ledger: dict[str, Any] = {}
    oracle: dict[str, Any] = {}
    keys: dict[str, str] = {}

    if getattr(args, "rpc_url", None):
        ledger["rpc_url"] = args.rpc_url
    if getattr(args, "private_key", None):
        ledger["private_key"] = args.private_key
    if getattr(args, "from_block", None) is not None:
        oracle["from_block"] = args.from_block
    if getattr(args, "polling_interval", None) is not None:
        oracle["polling_interval_ms"] = args.polling_interval
    if getattr(args, "max_workers", None) is not None:
        oracle["max_workers"] = args.max_workers
    for name, attr in (("OpenAI", "openai_api_key"), ("Anthropic", "anthropic_api_key"),
                       ("OpenRouter", "openrouter_api_key")):
        if getattr(args, attr, None):
            keys[name] = getattr(args, attr)
    if getattr(args, "perplexity_api_key", None):
        overrides["search"] = {"perplexity_api_key": args.perplexity_api_key}

    if ledger:
        overrides["ledger"] = ledger
    if oracle:
        overrides["oracle"] = oracle
    if keys:
        overrides["provider_keys"] = keys
    return overrides


def _build_config(args) -> OracleConfig:
    cfg = load_config(args.config, env=args.env)
    cfg = deep_merge(cfg, _cli_overrides(args))
    return OracleConfig.from_dict(cfg)


def _ledger(config: OracleConfig):
    from nla.web3_ledger import Web3Ledger
    return Web3Ledger.from_settings(config.ledger)


def cmd_oracle(args) -> int:
    from nla.oracle import OracleProcess

    config = _build_config(args)
    issues = config.validate()
    if issues:
        for issue in issues:
            print(f"Error: {issue}", file=sys.stderr)
        return 1

    configure_logging(level=args.log_level or config.log_level)
    ledger = _ledger(config)

    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  NLA ORACLE  {ledger.address}", file=sys.stderr)
    print(f"  RPC:        {config.ledger.rpc_url}", file=sys.stderr)
    print(f"  Providers:  {', '.join(p.name for p in config.providers)}", file=sys.stderr)
    print(f"  Interval:   {config.polling_interval_ms}ms", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    try:
        return OracleProcess(config, ledger).run_forever()
    except NoProviderAvailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_create_escrow(args) -> int:
    from nla.codec import DEFAULT_PROMPT_TEMPLATE, Demand, encode_demand, validate_demand

    config = _build_config(args)
    configure_logging(level=args.log_level or config.log_level)
    ledger = _ledger(config)

    demand = validate_demand(Demand(
        provider=args.provider,
        model=args.model,
        prompt_template=args.prompt_template or DEFAULT_PROMPT_TEMPLATE,
        demand_text=args.demand,
    ))
    escrow = ledger.create_escrow(encode_demand(demand), oracle=args.oracle,
                                  token=args.token, amount=args.amount)

    print(f"Escrow UID:  {escrow.uid}")
    print(f"Demand:      {demand.demand_text!r} ({demand.provider} / {demand.model})")
    print(f"Escrowed:    {args.amount} of {args.token}")
    print(f"Oracle:      {args.oracle}")
    return 0


def cmd_fulfill(args) -> int:
    from nla.codec import decode_trusted_oracle_demand
    from nla.commit_reveal import CommitRevealCoordinator
    from nla.web3_ledger import decode_escrow_data

    config = _build_config(args)
    configure_logging(level=args.log_level or config.log_level)
    ledger = _ledger(config)

    escrow = ledger.get_attestation(args.escrow_uid)
    arbiter_demand = decode_escrow_data(escrow.data)["demand"]
    escrow_oracle, _ = decode_trusted_oracle_demand(arbiter_demand)
    oracle = args.oracle or escrow_oracle

    coord = CommitRevealCoordinator(ledger, confirmation_timeout=config.ledger.receipt_timeout_seconds)
    receipt = coord.fulfill(escrow.uid, args.fulfillment, oracle=oracle, demand=arbiter_demand)

    print(f"Fulfillment UID:  {receipt.fulfillment_uid}")
    print(f"Commit tx:        {receipt.commit_tx.tx_hash} (block {receipt.commit_tx.block_number})")
    print(f"Bond reclaimed:   {receipt.reclaim_tx.tx_hash}")
    if receipt.arbitration_tx is not None:
        print(f"Arbitration:      requested from {oracle} ({receipt.arbitration_tx.tx_hash})")
    return 0


def cmd_collect(args) -> int:
    config = _build_config(args)
    configure_logging(level=args.log_level or config.log_level)
    ledger = _ledger(config)

    tx = ledger.collect_escrow(args.escrow_uid, args.fulfillment_uid)
    print(f"Collected escrow {args.escrow_uid} (tx {tx.tx_hash}, block {tx.block_number})")
    return 0


def cmd_status(args) -> int:
    from nla.status import escrow_status, format_status

    config = _build_config(args)
    ledger = _ledger(config)
    status = escrow_status(ledger, args.escrow_uid, obligation_format=config.obligation_format)
    print(format_status(status))
    return 0


COMMANDS = {
    "oracle": cmd_oracle,
    "create-escrow": cmd_create_escrow,
    "fulfill": cmd_fulfill,
    "collect": cmd_collect,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nla",
        description="Natural-language arbitration oracle",
    )
    parser.add_argument("--config", default="nla_config.yaml", help="Base YAML config")
    parser.add_argument("--env", default="", help="Config overlay name (config/<env>.yaml)")
    parser.add_argument("--env-file", default=".env", help="dotenv file with secrets")
    parser.add_argument("--log-level", default="", help="DEBUG, INFO, WARNING")

    subs = parser.add_subparsers(dest="command")

    def ledger_args(p):
        p.add_argument("--rpc-url", help="Ledger RPC endpoint")
        p.add_argument("--private-key", help="Signer private key")

    # oracle
    oracle_p = subs.add_parser("oracle", help="Run the arbitration oracle")
    ledger_args(oracle_p)
    oracle_p.add_argument("--from-block", type=int, help="First block to scan")
    oracle_p.add_argument("--polling-interval", type=int, help="Polling interval in ms")
    oracle_p.add_argument("--max-workers", type=int, help="Parallel arbitrations per poll")
    oracle_p.add_argument("--openai-api-key")
    oracle_p.add_argument("--anthropic-api-key")
    oracle_p.add_argument("--openrouter-api-key")
    oracle_p.add_argument("--perplexity-api-key")

    # create-escrow
    create_p = subs.add_parser("create-escrow", help="Lock ERC20 tokens behind a natural-language demand")
    ledger_args(create_p)
    create_p.add_argument("--demand", required=True, help="Natural-language demand")
    create_p.add_argument("--amount", type=int, required=True, help="Token amount to escrow")
    create_p.add_argument("--token", required=True, help="ERC20 token address")
    create_p.add_argument("--oracle", required=True, help="Oracle address that will arbitrate")
    create_p.add_argument("--provider", default="OpenAI", help="Arbitration provider")
    create_p.add_argument("--model", default="gpt-4.1", help="Arbitration model")
    create_p.add_argument("--prompt-template", help="Prompt with {{demand}} and {{obligation}}")

    # fulfill
    fulfill_p = subs.add_parser("fulfill", help="Fulfill an escrow via commit-reveal")
    ledger_args(fulfill_p)
    fulfill_p.add_argument("--escrow-uid", required=True)
    fulfill_p.add_argument("--fulfillment", required=True, help="Fulfillment text")
    fulfill_p.add_argument("--oracle", help="Oracle address (defaults to the escrow's oracle)")

    # collect
    collect_p = subs.add_parser("collect", help="Collect an escrow after an approving decision")
    ledger_args(collect_p)
    collect_p.add_argument("--escrow-uid", required=True)
    collect_p.add_argument("--fulfillment-uid", required=True)

    # status
    status_p = subs.add_parser("status", help="Show fulfillments and decisions for an escrow")
    ledger_args(status_p)
    status_p.add_argument("--escrow-uid", required=True)

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    load_dotenv(args.env_file)

    try:
        code = COMMANDS[args.command](args)
    except NlaError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
