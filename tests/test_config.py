"""
NLA Oracle — Configuration Loader Tests

Tests three-tier config loading (base YAML → overlay → env vars) and the
typed OracleConfig built from the merged dict.
"""

import os
import shutil
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from nla.config import (
    DEFAULT_POLLING_INTERVAL_MS,
    OracleConfig,
    _load_env_overrides,
    _load_overlay_file,
    _set_nested,
    deep_merge,
    get_config_value,
    load_config,
)

SHIPPED_CONFIG = os.path.join(_base, "nla_config.yaml")


class TestDeepMerge(unittest.TestCase):

    def test_nested_merge(self):
        base = {"oracle": {"polling_interval_ms": 5000, "retry": {"max_attempts": 3}}}
        overlay = {"oracle": {"retry": {"backoff_base": 0}}}
        result = deep_merge(base, overlay)
        self.assertEqual(result["oracle"]["polling_interval_ms"], 5000)
        self.assertEqual(result["oracle"]["retry"], {"max_attempts": 3, "backoff_base": 0})

    def test_lists_replaced(self):
        result = deep_merge({"providers": [{"name": "OpenAI"}]}, {"providers": [{"name": "Anthropic"}]})
        self.assertEqual(result["providers"], [{"name": "Anthropic"}])

    def test_inputs_not_mutated(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        self.assertEqual(base, {"a": {"b": 1}})

    def test_set_nested(self):
        d = {}
        _set_nested(d, ["ledger", "addresses", "eas"], "0xabc")
        self.assertEqual(d, {"ledger": {"addresses": {"eas": "0xabc"}}})


class TestEnvOverrides(unittest.TestCase):

    def test_double_underscore_paths(self):
        env = {"NLA_ORACLE__POLLING_INTERVAL_MS": "1000", "NLA_ORACLE__MAX_WORKERS": "4"}
        result = _load_env_overrides(env)
        self.assertEqual(result["oracle"], {"polling_interval_ms": 1000, "max_workers": 4})

    def test_meta_keys_excluded(self):
        result = _load_env_overrides({"NLA_ENV": "prod", "NLA_CONFIG_DIR": "/etc", "NLA_VERSION": "1"})
        self.assertEqual(result, {})

    def test_polling_interval_shorthand(self):
        result = _load_env_overrides({"NLA_POLLING_INTERVAL": "2500"})
        self.assertEqual(result["oracle"]["polling_interval_ms"], 2500)

    def test_conventional_names(self):
        env = {
            "ORACLE_PRIVATE_KEY": "0xkey",
            "RPC_URL": "http://rpc:8545",
            "PERPLEXITY_API_KEY": "pplx",
            "OPENAI_API_KEY": "sk-openai",
            "UNRELATED": "x",
        }
        result = _load_env_overrides(env)
        self.assertEqual(result["ledger"], {"private_key": "0xkey", "rpc_url": "http://rpc:8545"})
        self.assertEqual(result["search"], {"perplexity_api_key": "pplx"})
        self.assertEqual(result["provider_keys"], {"OpenAI": "sk-openai"})

    def test_unprefixed_ignored(self):
        self.assertEqual(_load_env_overrides({"ORACLE__X": "1"}), {})


class TestOverlayFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.base_path = os.path.join(self.tmp, "nla_config.yaml")
        with open(self.base_path, "w") as f:
            f.write("oracle:\n  polling_interval_ms: 5000\n  max_workers: 1\n")
        os.makedirs(os.path.join(self.tmp, "config"))
        with open(os.path.join(self.tmp, "config", "prod.yaml"), "w") as f:
            f.write("oracle:\n  max_workers: 8\n")

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def test_no_env_no_overlay(self):
        self.assertEqual(_load_overlay_file(self.base_path, environ={}), {})

    def test_overlay_next_to_base(self):
        overlay = _load_overlay_file(self.base_path, env="prod", environ={})
        self.assertEqual(overlay, {"oracle": {"max_workers": 8}})

    def test_missing_overlay(self):
        self.assertEqual(_load_overlay_file(self.base_path, env="staging", environ={}), {})

    def test_tiers_merged_in_order(self):
        env = {"NLA_ENV": "prod", "NLA_ORACLE__POLLING_INTERVAL_MS": "750"}
        cfg = load_config(self.base_path, environ=env)
        self.assertEqual(cfg["oracle"]["max_workers"], 8)
        self.assertEqual(cfg["oracle"]["polling_interval_ms"], 750)
        self.assertEqual(cfg["_active_env"], "prod")

    def test_env_vars_can_be_disabled(self):
        cfg = load_config(self.base_path, include_env_vars=False,
                          environ={"NLA_ORACLE__MAX_WORKERS": "3"})
        self.assertEqual(cfg["oracle"]["max_workers"], 1)

    def test_missing_base_file(self):
        cfg = load_config(os.path.join(self.tmp, "absent.yaml"), environ={})
        self.assertEqual(cfg["_active_env"], "default")


class TestGetConfigValue(unittest.TestCase):

    def test_dotted_lookup(self):
        cfg = {"oracle": {"retry": {"max_attempts": 3}}}
        self.assertEqual(get_config_value("oracle.retry.max_attempts", cfg), 3)
        self.assertEqual(get_config_value("oracle.missing", cfg, "dflt"), "dflt")


class TestOracleConfig(unittest.TestCase):

    def test_shipped_config(self):
        cfg = OracleConfig.from_dict(load_config(SHIPPED_CONFIG, environ={}))
        self.assertEqual([p.name for p in cfg.providers], ["OpenAI", "Anthropic", "OpenRouter"])
        self.assertEqual(cfg.providers[2].base_url, "https://openrouter.ai/api/v1")
        self.assertEqual(cfg.polling_interval_ms, DEFAULT_POLLING_INTERVAL_MS)
        self.assertEqual(cfg.obligation_format, "commit_reveal")
        self.assertEqual(cfg.retry["max_attempts"], 3)

    def test_env_keys_fill_yaml_providers(self):
        env = {"ANTHROPIC_API_KEY": "sk-ant", "PERPLEXITY_API_KEY": "pplx"}
        cfg = OracleConfig.from_dict(load_config(SHIPPED_CONFIG, environ=env))
        keys = {p.name: p.api_key for p in cfg.providers}
        self.assertEqual(keys, {"OpenAI": None, "Anthropic": "sk-ant", "OpenRouter": None})
        self.assertTrue(all(p.search_api_key == "pplx" for p in cfg.providers))

    def test_env_keys_add_providers_in_fixed_order(self):
        cfg = OracleConfig.from_dict({
            "provider_keys": {"OpenRouter": "or-key", "OpenAI": "sk-openai"},
        })
        self.assertEqual([p.name for p in cfg.providers], ["OpenAI", "OpenRouter"])

    def test_yaml_key_not_overwritten(self):
        cfg = OracleConfig.from_dict({
            "providers": [{"name": "OpenAI", "api_key": "from-yaml"}],
            "provider_keys": {"OpenAI": "from-env"},
        })
        self.assertEqual(cfg.providers[0].api_key, "from-yaml")

    def test_ledger_settings(self):
        cfg = OracleConfig.from_dict({
            "ledger": {"rpc_url": "http://x", "chain_id": "31337",
                       "addresses": {"eas": "0xeas"}},
        })
        self.assertEqual(cfg.ledger.rpc_url, "http://x")
        self.assertEqual(cfg.ledger.chain_id, 31337)
        self.assertEqual(cfg.ledger.addresses, {"eas": "0xeas"})

    def test_max_workers_floor(self):
        cfg = OracleConfig.from_dict({"oracle": {"max_workers": 0}})
        self.assertEqual(cfg.max_workers, 1)


class TestValidate(unittest.TestCase):

    def test_requires_a_keyed_provider(self):
        cfg = OracleConfig.from_dict(load_config(SHIPPED_CONFIG, environ={}))
        issues = cfg.validate()
        self.assertEqual(len(issues), 1)
        self.assertIn("API key", issues[0])

    def test_valid(self):
        cfg = OracleConfig.from_dict({"provider_keys": {"OpenAI": "sk"}})
        self.assertEqual(cfg.validate(), [])

    def test_bad_values(self):
        cfg = OracleConfig.from_dict({
            "provider_keys": {"OpenAI": "sk"},
            "oracle": {"polling_interval_ms": 0, "request_timeout_seconds": 0,
                       "obligation_format": "xml"},
        })
        self.assertEqual(len(cfg.validate()), 3)


if __name__ == "__main__":
    unittest.main()
