"""Tests for export bundles and their password envelope."""

import json
import unittest

from agent_vault.errors import BundleDecryptionError, InvalidBundleError
from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.export import (
    build_bundle,
    decrypt_payload,
    dumps_bundle,
    encrypt_payload,
    is_encrypted,
    loads_bundle,
)
from agent_vault.wallet.models import CreationMethod, ExportFormat, WalletRecord

PHRASE = " ".join(["abandon"] * 11 + ["about"])


def _record(wallet_id="wallet-a") -> WalletRecord:
    return WalletRecord(
        id=wallet_id,
        agent_id="agent-1",
        chain=ChainType.POLKADOT,
        address="5abc",
        mnemonic=PHRASE,
        seed_derivation_path="//hard//stash",
        created_at=10,
        updated_at=20,
        creation_method=CreationMethod.MNEMONIC,
    )


class TestEnvelope(unittest.TestCase):

    def test_round_trip(self):
        envelope = encrypt_payload("hello vault", "s3cret")
        self.assertEqual(set(envelope), {"encrypted", "iv", "salt"})
        self.assertEqual(len(bytes.fromhex(envelope["iv"])), 12)
        self.assertEqual(len(bytes.fromhex(envelope["salt"])), 16)
        self.assertEqual(len(envelope["encrypted"].split(".")[1]), 32)
        self.assertEqual(decrypt_payload(envelope, "s3cret"), "hello vault")

    def test_fresh_salt_and_iv_per_call(self):
        first = encrypt_payload("same", "pw")
        second = encrypt_payload("same", "pw")
        self.assertNotEqual(first["salt"], second["salt"])
        self.assertNotEqual(first["encrypted"], second["encrypted"])

    def test_wrong_password(self):
        envelope = encrypt_payload("hello", "right")
        with self.assertRaises(BundleDecryptionError):
            decrypt_payload(envelope, "wrong")

    def test_tampered_ciphertext(self):
        envelope = encrypt_payload("hello", "pw")
        ciphertext, tag = envelope["encrypted"].split(".")
        flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]
        envelope["encrypted"] = f"{flipped}.{tag}"
        with self.assertRaises(BundleDecryptionError):
            decrypt_payload(envelope, "pw")

    def test_malformed_envelope(self):
        with self.assertRaises(InvalidBundleError):
            decrypt_payload({"encrypted": "nodot", "iv": "00" * 12, "salt": "00"}, "pw")
        with self.assertRaises(InvalidBundleError):
            decrypt_payload({"encrypted": "00.zz", "iv": "00" * 12, "salt": "00"}, "pw")

    def test_is_encrypted(self):
        self.assertTrue(is_encrypted({"encrypted": "a.b", "iv": "", "salt": ""}))
        self.assertFalse(is_encrypted({"version": "1.0", "wallets": []}))


class TestBundles(unittest.TestCase):

    def test_plain_bundle_uses_camel_case(self):
        text = dumps_bundle(build_bundle("agent-1", [_record()]))
        data = json.loads(text)
        self.assertEqual(data["version"], "1.0")
        self.assertEqual(data["agentId"], "agent-1")
        self.assertEqual(data["format"], "json")
        wallet = data["wallets"][0]
        self.assertEqual(wallet["seedDerivationPath"], "//hard//stash")
        self.assertEqual(wallet["creationMethod"], "mnemonic")
        self.assertNotIn("privateKey", wallet)

    def test_plain_round_trip(self):
        bundle = build_bundle("agent-1", [_record("wallet-a"), _record("wallet-b")])
        loaded = loads_bundle(dumps_bundle(bundle))
        self.assertEqual(loaded.wallets, bundle.wallets)
        self.assertEqual(loaded.exported_at, bundle.exported_at)

    def test_encrypted_round_trip(self):
        bundle = build_bundle("agent-1", [_record()], ExportFormat.ENCRYPTED)
        text = dumps_bundle(bundle, "correct horse")
        self.assertNotIn(PHRASE.split()[-1], text)
        loaded = loads_bundle(text, "correct horse")
        self.assertEqual(loaded.wallets, bundle.wallets)
        self.assertEqual(loaded.format, ExportFormat.ENCRYPTED)

    def test_encrypted_needs_password_both_ways(self):
        bundle = build_bundle("agent-1", [_record()], "encrypted")
        with self.assertRaises(ValueError):
            dumps_bundle(bundle)
        text = dumps_bundle(bundle, "pw")
        with self.assertRaises(BundleDecryptionError):
            loads_bundle(text)
        with self.assertRaises(BundleDecryptionError):
            loads_bundle(text, "other")

    def test_invalid_json(self):
        with self.assertRaises(InvalidBundleError):
            loads_bundle("{not json")
        with self.assertRaises(InvalidBundleError):
            loads_bundle("[1, 2]")

    def test_missing_keys(self):
        with self.assertRaises(InvalidBundleError):
            loads_bundle(json.dumps({"version": "1.0", "wallets": []}))

    def test_empty_wallet_list(self):
        with self.assertRaises(InvalidBundleError):
            loads_bundle(json.dumps({"version": "1.0", "agentId": "a", "wallets": []}))

    def test_invalid_wallet_entry(self):
        data = {"version": "1.0", "agentId": "a", "wallets": [{"id": "w"}]}
        with self.assertRaises(InvalidBundleError):
            loads_bundle(json.dumps(data))


if __name__ == "__main__":
    unittest.main()
