"""Tests for WalletManager: creation, removal, connections and bundles."""

import hashlib
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import base58

from agent_vault.errors import (
    BundleDecryptionError,
    IntegrityError,
    InvalidSeedPhrase,
    InvalidSeedStrength,
    WalletNotFound,
)
from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.manager import ConnectionCache, WalletManager
from agent_vault.wallet.models import CreationMethod, ExportFormat
from agent_vault.wallet.storage import WalletStore

PHRASE = " ".join(["abandon"] * 11 + ["about"])
PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class FakeProvider:
    """Stands in for a ChainProvider; records lifecycle calls."""

    def __init__(self):
        self.loaded = None
        self.connected = False
        self.connects = 0
        self.disconnects = 0

    @property
    def is_connected(self):
        return self.connected

    def load_wallet(self, record):
        self.loaded = record

    async def connect(self):
        self.connected = True
        self.connects += 1

    async def disconnect(self):
        self.connected = False
        self.disconnects += 1


class ManagerTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.manager = WalletManager(store=WalletStore(self.root / "wallets"))

    def tearDown(self):
        self._tmp.cleanup()


class TestCreation(ManagerTestCase):

    async def test_generate_wallet(self):
        record = await self.manager.generate_wallet("agent-1", "sol")
        self.assertTrue(record.id.startswith("wallet-"))
        self.assertEqual(len(record.id), len("wallet-") + 32)
        self.assertEqual(record.chain, ChainType.SOLANA)
        self.assertEqual(record.creation_method, CreationMethod.GENERATE)
        self.assertEqual(len(record.mnemonic.split()), 12)
        self.assertIsNone(record.private_key)
        self.assertEqual(record.seed_derivation_path, "m/44'/501'/0'/0'/0'")
        self.assertEqual(len(base58.b58decode(record.address)), 32)
        self.assertEqual(await self.manager.get_wallet("agent-1", record.id), record)

    async def test_generate_24_words(self):
        record = await self.manager.generate_wallet("agent-1", "ethereum", strength=256)
        self.assertEqual(len(record.mnemonic.split()), 24)

    async def test_import_private_key(self):
        record = await self.manager.import_wallet_from_private_key(
            "agent-1", "cketh", "0x" + PRIVATE_KEY, wallet_id="wallet-fixed"
        )
        digest = hashlib.sha256(hashlib.sha256(bytes.fromhex(PRIVATE_KEY)).digest()).digest()
        self.assertEqual(record.id, "wallet-fixed")
        self.assertEqual(record.address, "0x" + digest[-20:].hex())
        self.assertEqual(record.private_key, PRIVATE_KEY)
        self.assertIsNone(record.mnemonic)
        self.assertEqual(record.creation_method, CreationMethod.PRIVATE_KEY)

    async def test_import_seed_normalises_phrase(self):
        messy = "  " + PHRASE.replace(" ", "  ") + "\n"
        record = await self.manager.import_wallet_from_seed("agent-1", "dot", messy)
        self.assertEqual(record.mnemonic, PHRASE)
        self.assertEqual(record.creation_method, CreationMethod.SEED)
        self.assertEqual(record.seed_derivation_path, "//hard//stash")

    async def test_import_mnemonic_keeps_method(self):
        record = await self.manager.import_wallet_from_mnemonic(
            "agent-1", "ethereum", PHRASE, derivation_path="m/44'/60'/0'/0/1"
        )
        self.assertEqual(record.creation_method, CreationMethod.MNEMONIC)
        self.assertEqual(record.seed_derivation_path, "m/44'/60'/0'/0/1")
        other = await self.manager.import_wallet_from_seed("agent-1", "ethereum", PHRASE)
        self.assertNotEqual(record.address, other.address)

    async def test_invalid_phrase_writes_nothing(self):
        with self.assertRaises(InvalidSeedPhrase):
            await self.manager.import_wallet_from_seed(
                "agent-1", "ethereum", " ".join(["abandon"] * 12)
            )
        self.assertEqual(await self.manager.list_agent_wallets("agent-1"), [])

    async def test_reads(self):
        a = await self.manager.generate_wallet("agent-1", "eth", wallet_id="wallet-a")
        await self.manager.generate_wallet("agent-2", "dot", wallet_id="wallet-b")
        self.assertEqual(await self.manager.list_agent_wallets("agent-1"), [a])
        self.assertEqual(await self.manager.list_agents(), ["agent-1", "agent-2"])
        self.assertTrue(await self.manager.has_wallet("agent-2", "wallet-b"))
        self.assertFalse(await self.manager.has_wallet("agent-1", "wallet-b"))
        self.assertIsNone(await self.manager.get_wallet("agent-1", "wallet-b"))
        with self.assertRaises(WalletNotFound):
            await self.manager.require_wallet("agent-1", "wallet-b")


class TestRemovalAndConnections(ManagerTestCase):

    async def test_remove_evicts_cached_connection(self):
        record = await self.manager.generate_wallet("agent-1", "eth")
        provider = FakeProvider()
        self.manager.cache_wallet_connection("agent-1", record.id, provider)

        self.assertTrue(await self.manager.remove_wallet("agent-1", record.id))
        self.assertIsNone(await self.manager.get_wallet("agent-1", record.id))
        self.assertIsNone(self.manager.get_cached_connection("agent-1", record.id))
        self.assertEqual(provider.disconnects, 1)
        self.assertFalse(await self.manager.remove_wallet("agent-1", record.id))

    async def test_clear_agent_wallets(self):
        for _ in range(3):
            await self.manager.generate_wallet("agent-1", "sol")
        await self.manager.generate_wallet("agent-2", "sol")
        self.assertEqual(await self.manager.clear_agent_wallets("agent-1"), 3)
        self.assertEqual(await self.manager.list_agent_wallets("agent-1"), [])
        self.assertEqual(len(await self.manager.list_agent_wallets("agent-2")), 1)

    async def test_connect_wallet_caches_provider(self):
        record = await self.manager.generate_wallet("agent-1", "eth")
        provider = FakeProvider()
        with mock.patch(
            "agent_vault.wallet.manager.create_provider", return_value=provider
        ) as factory:
            first = await self.manager.connect_wallet("agent-1", record.id)
            second = await self.manager.connect_wallet("agent-1", record.id)

        self.assertIs(first, provider)
        self.assertIs(second, provider)
        factory.assert_called_once()
        self.assertEqual(factory.call_args.args[0], ChainType.ETHEREUM)
        self.assertEqual(provider.loaded, record)
        self.assertEqual(provider.connects, 1)

    async def test_connect_wallet_replaces_dead_connection(self):
        record = await self.manager.generate_wallet("agent-1", "eth")
        stale = FakeProvider()
        self.manager.cache_wallet_connection("agent-1", record.id, stale)
        fresh = FakeProvider()
        with mock.patch("agent_vault.wallet.manager.create_provider", return_value=fresh):
            provider = await self.manager.connect_wallet("agent-1", record.id)
        self.assertIs(provider, fresh)
        self.assertIs(self.manager.get_cached_connection("agent-1", record.id), fresh)

    async def test_connect_unknown_wallet(self):
        with self.assertRaises(WalletNotFound):
            await self.manager.connect_wallet("agent-1", "wallet-none")

    def test_connection_cache(self):
        cache = ConnectionCache()
        provider = FakeProvider()
        cache.put("a", "w", provider)
        self.assertEqual(cache.keys(), ["a:w"])
        self.assertIs(cache.get("a", "w"), provider)
        self.assertIs(cache.evict("a", "w"), provider)
        self.assertIsNone(cache.evict("a", "w"))
        self.assertEqual(len(cache), 0)

    async def test_disconnect_wallet_evicts_and_closes(self):
        record = await self.manager.generate_wallet("agent-1", "eth")
        provider = FakeProvider()
        with mock.patch("agent_vault.wallet.manager.create_provider", return_value=provider):
            await self.manager.connect_wallet("agent-1", record.id)
        await self.manager.disconnect_wallet("agent-1", record.id)
        self.assertEqual(provider.disconnects, 1)
        self.assertIsNone(self.manager.get_cached_connection("agent-1", record.id))
        await self.manager.disconnect_wallet("agent-1", record.id)
        self.assertEqual(provider.disconnects, 1)

    async def test_generate_rejects_unsupported_strength(self):
        with self.assertRaises(InvalidSeedStrength):
            await self.manager.generate_wallet("agent-1", "eth", strength=160)
        self.assertEqual(await self.manager.list_agent_wallets("agent-1"), [])

    def test_clear_cached_connection(self):
        provider = FakeProvider()
        self.manager.cache_wallet_connection("a", "w", provider)
        self.manager.clear_cached_connection("a", "w")
        self.assertIsNone(self.manager.get_cached_connection("a", "w"))


class TestBundles(ManagerTestCase):

    async def _seed_agent(self):
        generated = await self.manager.generate_wallet("agent-1", "sol", wallet_id="wallet-a")
        imported = await self.manager.import_wallet_from_private_key(
            "agent-1", "eth", PRIVATE_KEY, wallet_id="wallet-b"
        )
        return generated, imported

    async def test_export_without_wallets(self):
        with self.assertRaises(WalletNotFound):
            await self.manager.export_wallets("agent-1")

    async def test_round_trip_into_other_agent(self):
        generated, imported = await self._seed_agent()
        text = await self.manager.export_wallets("agent-1")
        result = await self.manager.import_wallets("agent-9", text)

        self.assertEqual(sorted(result.imported), ["wallet-a", "wallet-b"])
        copy = await self.manager.get_wallet("agent-9", "wallet-a")
        self.assertEqual(copy.agent_id, "agent-9")
        self.assertEqual(copy.address, generated.address)
        self.assertEqual(copy.created_at, generated.created_at)
        self.assertEqual(copy.mnemonic, generated.mnemonic)
        key_copy = await self.manager.get_wallet("agent-9", "wallet-b")
        self.assertEqual(key_copy.private_key, imported.private_key)

    async def test_encrypted_round_trip(self):
        await self._seed_agent()
        text = await self.manager.export_wallets("agent-1", ExportFormat.ENCRYPTED, "pw-123")
        self.assertNotIn(PRIVATE_KEY, text)
        with self.assertRaises(BundleDecryptionError):
            await self.manager.import_wallets("agent-2", text, "wrong")
        result = await self.manager.import_wallets("agent-2", text, "pw-123")
        self.assertEqual(len(result.imported), 2)

    async def test_conflict_skip(self):
        await self._seed_agent()
        text = await self.manager.export_wallets("agent-1")
        result = await self.manager.import_wallets("agent-1", text)
        self.assertEqual(result.imported, [])
        self.assertEqual(sorted(result.skipped), ["wallet-a", "wallet-b"])

    async def test_conflict_overwrite(self):
        await self._seed_agent()
        text = await self.manager.export_wallets("agent-1")
        provider = FakeProvider()
        self.manager.cache_wallet_connection("agent-1", "wallet-a", provider)
        result = await self.manager.import_wallets("agent-1", text, conflict="overwrite")
        self.assertEqual(sorted(result.overwritten), ["wallet-a", "wallet-b"])
        self.assertEqual(provider.disconnects, 1)
        self.assertIsNone(self.manager.get_cached_connection("agent-1", "wallet-a"))

    async def test_conflict_rename(self):
        await self._seed_agent()
        text = await self.manager.export_wallets("agent-1")
        result = await self.manager.import_wallets("agent-1", text, conflict="rename")
        self.assertEqual(sorted(result.renamed), ["wallet-a", "wallet-b"])
        self.assertEqual(sorted(result.imported), sorted(result.renamed.values()))
        self.assertEqual(len(await self.manager.list_agent_wallets("agent-1")), 4)

    async def test_unknown_conflict_mode(self):
        await self._seed_agent()
        text = await self.manager.export_wallets("agent-1")
        with self.assertRaises(ValueError):
            await self.manager.import_wallets("agent-1", text, conflict="merge")

    async def test_tampered_address_rejects_whole_bundle(self):
        await self._seed_agent()
        data = json.loads(await self.manager.export_wallets("agent-1"))
        data["wallets"][-1]["address"] = "0x" + "00" * 20
        with self.assertRaises(IntegrityError):
            await self.manager.import_wallets("agent-3", json.dumps(data))
        self.assertEqual(await self.manager.list_agent_wallets("agent-3"), [])


if __name__ == "__main__":
    unittest.main()
