"""
NLA Oracle — Configuration Loader

Three-tier configuration, merged in order (later wins):
  1. Base YAML file (nla_config.yaml)
  2. Per-environment overlay (config/{NLA_ENV}.yaml)
  3. Environment variables:
       - well-known keys: ORACLE_PRIVATE_KEY, RPC_URL, OPENAI_API_KEY,
         ANTHROPIC_API_KEY, OPENROUTER_API_KEY, PERPLEXITY_API_KEY
       - NLA_SECTION__KEY=value → {"section": {"key": value}}

The merged dict is turned into a typed OracleConfig, which is what the
oracle components receive. No component reads the environment itself.

Usage:
    from nla.config import load_config, OracleConfig

    cfg = OracleConfig.from_dict(load_config("nla_config.yaml"))
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger("nla.config")

DEFAULT_POLLING_INTERVAL_MS = 5000
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0

# Registration order matters: it is the fallback order for fuzzy matching.
WELL_KNOWN_PROVIDER_KEYS = [
    ("OpenAI", "OPENAI_API_KEY"),
    ("Anthropic", "ANTHROPIC_API_KEY"),
    ("OpenRouter", "OPENROUTER_API_KEY"),
]


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Tiers
# ═══════════════════════════════════════════════════════════════════

def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "",
                       environ: Mapping[str, str] = os.environ) -> dict[str, Any]:
    env = env or environ.get("NLA_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or environ.get("NLA_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]
    for path in candidates:
        if path.is_file():
            overlay = _load_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


def _load_env_overrides(environ: Mapping[str, str] = os.environ,
                        prefix: str = "NLA_") -> dict[str, Any]:
    """
    NLA_ORACLE__POLLING_INTERVAL_MS=1000 → {"oracle": {"polling_interval_ms": 1000}}

    Double underscore separates levels so keys may contain single
    underscores. NLA_ENV, NLA_CONFIG_DIR and NLA_VERSION are meta config.
    """
    excluded = {"NLA_ENV", "NLA_CONFIG_DIR", "NLA_VERSION", "NLA_POLLING_INTERVAL"}
    overrides: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if path:
            _set_nested(overrides, path, _parse_scalar(value))

    # Conventional names used by operators and .env files
    if environ.get("ORACLE_PRIVATE_KEY"):
        _set_nested(overrides, ["ledger", "private_key"], environ["ORACLE_PRIVATE_KEY"])
    if environ.get("RPC_URL"):
        _set_nested(overrides, ["ledger", "rpc_url"], environ["RPC_URL"])
    if environ.get("PERPLEXITY_API_KEY"):
        _set_nested(overrides, ["search", "perplexity_api_key"], environ["PERPLEXITY_API_KEY"])
    if environ.get("NLA_POLLING_INTERVAL"):
        _set_nested(overrides, ["oracle", "polling_interval_ms"],
                    _parse_scalar(environ["NLA_POLLING_INTERVAL"]))

    env_keys = {name: environ.get(var) for name, var in WELL_KNOWN_PROVIDER_KEYS if environ.get(var)}
    if env_keys:
        overrides["provider_keys"] = env_keys

    if overrides:
        logger.debug("Loaded %d env var override sections", len(overrides))
    return overrides


def load_config(
    base_path: str = "nla_config.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load and merge all configuration tiers into a plain dict."""
    environ = os.environ if environ is None else environ

    config: dict[str, Any] = {}
    if base_path and os.path.exists(base_path):
        config = _load_yaml(Path(base_path))
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir, environ=environ)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides(environ)
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or environ.get("NLA_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(path: str, config: dict[str, Any], default: Any = None) -> Any:
    """Nested lookup by dotted path, e.g. "oracle.polling_interval_ms"."""
    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed configuration
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ProviderSettings:
    name: str
    api_key: str | None = None
    base_url: str | None = None
    search_api_key: str | None = None


@dataclass
class LedgerSettings:
    rpc_url: str = "http://localhost:8545"
    private_key: str | None = None
    chain_id: int | None = None
    receipt_timeout_seconds: float = 120.0
    log_chunk_blocks: int = 2000
    addresses: dict[str, str] = field(default_factory=dict)


@dataclass
class OracleConfig:
    """Explicit configuration context handed to the oracle at construction."""
    providers: list[ProviderSettings] = field(default_factory=list)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    from_block: int = 0
    max_workers: int = 1
    record_retries: int = 3
    obligation_format: str = "commit_reveal"
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    max_tool_steps: int = 3
    retry: dict[str, Any] = field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, cfg: dict[str, Any]) -> OracleConfig:
        oracle = cfg.get("oracle", {}) or {}
        ledger = cfg.get("ledger", {}) or {}
        search_key = get_config_value("search.perplexity_api_key", cfg)

        providers: list[ProviderSettings] = []
        for entry in cfg.get("providers", []) or []:
            providers.append(ProviderSettings(
                name=entry["name"],
                api_key=entry.get("api_key"),
                base_url=entry.get("base_url"),
                search_api_key=entry.get("search_api_key", search_key),
            ))

        # Keys from the environment fill in or add providers, in fixed order
        env_keys = cfg.get("provider_keys", {}) or {}
        for name, _ in WELL_KNOWN_PROVIDER_KEYS:
            key = env_keys.get(name)
            if not key:
                continue
            existing = next((p for p in providers if p.name.lower() == name.lower()), None)
            if existing is None:
                providers.append(ProviderSettings(name=name, api_key=key, search_api_key=search_key))
            elif not existing.api_key:
                existing.api_key = key

        chain_id = ledger.get("chain_id")
        return cls(
            providers=providers,
            ledger=LedgerSettings(
                rpc_url=ledger.get("rpc_url", LedgerSettings.rpc_url),
                private_key=ledger.get("private_key"),
                chain_id=int(chain_id) if chain_id is not None else None,
                receipt_timeout_seconds=float(ledger.get("receipt_timeout_seconds", 120.0)),
                log_chunk_blocks=int(ledger.get("log_chunk_blocks", 2000)),
                addresses=dict(ledger.get("addresses", {}) or {}),
            ),
            polling_interval_ms=int(oracle.get("polling_interval_ms", DEFAULT_POLLING_INTERVAL_MS)),
            from_block=int(oracle.get("from_block", 0)),
            max_workers=max(1, int(oracle.get("max_workers", 1))),
            record_retries=max(0, int(oracle.get("record_retries", 3))),
            obligation_format=str(oracle.get("obligation_format", "commit_reveal")),
            request_timeout_seconds=float(oracle.get(
                "request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)),
            max_tool_steps=int(oracle.get("max_tool_steps", 3)),
            retry=dict(oracle.get("retry", {}) or {}),
            log_level=str(get_config_value("logging.level", cfg, "INFO")),
        )

    def validate(self) -> list[str]:
        """Return a list of configuration problems. Empty means usable."""
        issues = []
        if not any(p.api_key for p in self.providers):
            issues.append(
                "At least one LLM provider API key is required "
                "(OPENAI_API_KEY, ANTHROPIC_API_KEY or OPENROUTER_API_KEY)"
            )
        if self.polling_interval_ms <= 0:
            issues.append(f"polling_interval_ms must be positive, got {self.polling_interval_ms}")
        if self.request_timeout_seconds <= 0:
            issues.append("request_timeout_seconds must be positive (backend calls need a bound)")
        if self.obligation_format not in ("commit_reveal", "string"):
            issues.append(f"Unknown obligation_format: {self.obligation_format!r}")
        return issues
