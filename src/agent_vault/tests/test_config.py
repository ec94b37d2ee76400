"""Tests for YAML configuration loading and RPC endpoint resolution."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from agent_vault.config import (
    ProviderConfig,
    VaultConfig,
    default_base_dir,
    get_root_dir,
    is_unresolved,
    load_config,
    save_config,
)
from agent_vault.errors import TransactionBuildError, UnknownChainError
from agent_vault.wallet.chains import (
    ChainType,
    from_base_units,
    get_chain,
    resolve_rpc_url,
    to_base_units,
)

_CONFIG_YAML = """\
storage:
  base_dir: ${VAULT_TEST_DIR}/wallets
logging:
  level: INFO
providers:
  ethereum:
    rpc_url: ${VAULT_TEST_RPC}
    testnet: true
    api_key: ${VAULT_TEST_MISSING_KEY}
  solana:
    commitment: finalized
"""


class TestConfig(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_gives_defaults(self):
        config = load_config(self.root / "absent.yaml")
        self.assertEqual(config, VaultConfig())
        self.assertEqual(config.logging.level, "WARNING")

    def test_env_placeholders_are_expanded(self):
        path = self.root / "config.yaml"
        path.write_text(_CONFIG_YAML, encoding="utf-8")
        env = {"VAULT_TEST_DIR": str(self.root), "VAULT_TEST_RPC": "http://localhost:8545"}
        with mock.patch.dict(os.environ, env):
            os.environ.pop("VAULT_TEST_MISSING_KEY", None)
            config = load_config(path)

        self.assertEqual(config.wallet_dir(), self.root / "wallets")
        self.assertEqual(config.logging.level, "INFO")
        eth = config.providers.for_chain("eth")
        self.assertEqual(eth.rpc_url, "http://localhost:8545")
        self.assertTrue(eth.testnet)
        self.assertEqual(eth.api_key, "${VAULT_TEST_MISSING_KEY}")
        self.assertTrue(is_unresolved(eth.api_key))
        self.assertEqual(config.providers.for_chain(ChainType.SOLANA).commitment, "finalized")
        self.assertEqual(config.providers.polkadot, ProviderConfig())

    def test_save_and_reload(self):
        config = VaultConfig()
        config.providers.polkadot.ss58_format = 42
        path = self.root / "nested" / "config.yaml"
        save_config(config, path)
        self.assertEqual(load_config(path), config)

    def test_root_dir_override(self):
        with mock.patch.dict(os.environ, {"AGENT_VAULT_HOME": str(self.root)}):
            self.assertEqual(get_root_dir(), self.root)
            self.assertEqual(default_base_dir(), self.root / "wallets")
            self.assertEqual(VaultConfig().wallet_dir(), self.root / "wallets")

    def test_is_unresolved(self):
        self.assertTrue(is_unresolved(""))
        self.assertTrue(is_unresolved(None))
        self.assertTrue(is_unresolved("${ETHERSCAN_API_KEY}"))
        self.assertFalse(is_unresolved("abc123"))


class TestChains(unittest.TestCase):

    def test_aliases(self):
        self.assertIs(ChainType.parse("cketh"), ChainType.ETHEREUM)
        self.assertIs(ChainType.parse("Substrate-Like"), ChainType.POLKADOT)
        self.assertIs(ChainType.parse(" sol "), ChainType.SOLANA)
        with self.assertRaises(UnknownChainError):
            ChainType.parse("bitcoin")

    def test_chain_table(self):
        self.assertEqual(get_chain("eth").decimals, 18)
        self.assertEqual(get_chain("dot").decimals, 10)
        self.assertEqual(get_chain("sol").denomination, "SOL")

    def test_explicit_rpc_url_wins(self):
        self.assertEqual(resolve_rpc_url("sol", explicit="http://node"), "http://node")

    def test_env_rpc_url(self):
        with mock.patch.dict(os.environ, {"WESTEND_RPC_URL": "wss://westend.local"}):
            self.assertEqual(resolve_rpc_url("dot", testnet=True), "wss://westend.local")

    def test_infura_key(self):
        env = {"INFURA_API_KEY": "k1"}
        with mock.patch.dict(os.environ, env):
            os.environ.pop("SEPOLIA_RPC_URL", None)
            self.assertEqual(
                resolve_rpc_url("ethereum", testnet=True), "https://sepolia.infura.io/v3/k1"
            )

    def test_public_fallback(self):
        with mock.patch.dict(os.environ, {}):
            os.environ.pop("SOLANA_RPC_URL", None)
            with self.assertLogs("agent_vault.wallet.chains", level="WARNING"):
                url = resolve_rpc_url("solana")
        self.assertEqual(url, "https://api.mainnet-beta.solana.com")

    def test_amount_conversion(self):
        self.assertEqual(to_base_units("1.5", 18), 1_500_000_000_000_000_000)
        self.assertEqual(to_base_units("0.0000000001", 9), 0)
        self.assertEqual(from_base_units(1_500_000_000, 9), "1.5")
        self.assertEqual(from_base_units(0, 10), "0")
        with self.assertRaises(TransactionBuildError):
            to_base_units("abc", 9)
        with self.assertRaises(TransactionBuildError):
            to_base_units("-1", 9)


if __name__ == "__main__":
    unittest.main()
