"""Tests for the binary wallet record format."""

import struct
import unittest

from agent_vault.errors import IntegrityError
from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.models import CreationMethod, WalletRecord
from agent_vault.wallet.serializer import (
    TAG_ADDRESS,
    TAG_AGENT_ID,
    TAG_CHAIN,
    TAG_CREATION_METHOD,
    TAG_ID,
    TAG_MNEMONIC,
    checksum,
    decode_record,
    decode_varint,
    deserialize_wallet,
    encode_record,
    encode_varint,
    frame,
    serialize_wallet,
    unframe,
)

PHRASE = " ".join(["abandon"] * 11 + ["about"])


def _field(tag, value: bytes) -> bytes:
    return bytes([tag]) + encode_varint(len(value)) + value


def _seed_record(**overrides) -> WalletRecord:
    values = dict(
        id="wallet-0001",
        agent_id="agent-7",
        chain=ChainType.ETHEREUM,
        address="0x" + "ab" * 20,
        mnemonic=PHRASE,
        seed_derivation_path="m/44'/60'/0'/0/0",
        created_at=1_700_000_000_000,
        updated_at=1_700_000_000_500,
        creation_method=CreationMethod.SEED,
    )
    values.update(overrides)
    return WalletRecord(**values)


class TestVarint(unittest.TestCase):

    def test_known_encodings(self):
        self.assertEqual(encode_varint(0), b"\x00")
        self.assertEqual(encode_varint(127), b"\x7f")
        self.assertEqual(encode_varint(128), b"\x80\x01")
        self.assertEqual(encode_varint(300), b"\xac\x02")

    def test_decode_reports_consumed_bytes(self):
        self.assertEqual(decode_varint(b"\xac\x02\xff"), (300, 2))
        self.assertEqual(decode_varint(b"\x00\x7f", 1), (127, 1))

    def test_truncated_varint(self):
        with self.assertRaises(ValueError):
            decode_varint(b"\x80")

    def test_negative_rejected(self):
        with self.assertRaises(ValueError):
            encode_varint(-1)


class TestFraming(unittest.TestCase):

    def test_checksum_is_rolling_fold(self):
        value = 0
        for byte in b"wallet":
            value = (value * 31 + byte) & 0xFFFFFFFF
        self.assertEqual(checksum(b"wallet"), struct.pack(">I", value))

    def test_unframe_strips_checksum(self):
        self.assertEqual(unframe(frame(b"\x01payload")), b"\x01payload")

    def test_too_short(self):
        with self.assertRaises(IntegrityError):
            unframe(b"\x00\x00\x00\x00")

    def test_every_single_byte_flip_is_detected(self):
        data = serialize_wallet(_seed_record())
        for index in range(len(data)):
            corrupted = bytearray(data)
            corrupted[index] ^= 0x01
            with self.assertRaises(IntegrityError, msg=f"flip at byte {index}"):
                deserialize_wallet(bytes(corrupted))


class TestRecords(unittest.TestCase):

    def test_seed_record_round_trip(self):
        record = _seed_record(chain_metadata={"label": "treasury", "tier": 2})
        self.assertEqual(deserialize_wallet(serialize_wallet(record)), record)

    def test_private_key_record_round_trip(self):
        record = WalletRecord(
            id="wallet-0002",
            agent_id="agent-7",
            chain=ChainType.SOLANA,
            address="11111111111111111111111111111111",
            private_key="aa" * 64,
            created_at=1,
            updated_at=2,
            creation_method=CreationMethod.PRIVATE_KEY,
        )
        decoded = deserialize_wallet(serialize_wallet(record))
        self.assertEqual(decoded, record)
        self.assertIsNone(decoded.mnemonic)
        self.assertIsNone(decoded.seed_derivation_path)

    def test_unset_fields_are_not_written(self):
        payload = encode_record(_seed_record(seed_derivation_path=None))
        self.assertNotIn(b"m/44'", payload)
        self.assertNotIn(b"{", payload)

    def test_non_ascii_text_survives(self):
        record = _seed_record(agent_id="agent-ü", chain_metadata={"note": "größe"})
        decoded = deserialize_wallet(serialize_wallet(record))
        self.assertEqual(decoded.agent_id, "agent-ü")
        self.assertEqual(decoded.chain_metadata, {"note": "größe"})

    def test_unknown_tags_are_skipped(self):
        payload = encode_record(_seed_record()) + _field(0x42, b"future")
        self.assertEqual(decode_record(payload), _seed_record())

    def test_missing_fields_take_defaults(self):
        payload = (
            b"\x01"
            + _field(TAG_ID, b"wallet-x")
            + _field(TAG_AGENT_ID, b"agent-x")
            + _field(TAG_ADDRESS, b"0xabc")
            + _field(TAG_MNEMONIC, PHRASE.encode())
        )
        record = decode_record(payload)
        self.assertEqual(record.chain, ChainType.ETHEREUM)
        self.assertEqual(record.creation_method, CreationMethod.SEED)
        self.assertGreater(record.created_at, 0)
        self.assertIsNone(record.seed_derivation_path)

    def test_unsupported_version(self):
        payload = b"\x02" + encode_record(_seed_record())[1:]
        with self.assertRaises(IntegrityError):
            decode_record(payload)

    def test_overrunning_field(self):
        payload = b"\x01" + bytes([TAG_ID]) + encode_varint(50) + b"short"
        with self.assertRaises(IntegrityError):
            decode_record(payload)

    def test_unknown_chain_value(self):
        payload = (
            b"\x01"
            + _field(TAG_ID, b"wallet-x")
            + _field(TAG_AGENT_ID, b"agent-x")
            + _field(TAG_CHAIN, b"bitcoin")
            + _field(TAG_ADDRESS, b"1abc")
            + _field(TAG_MNEMONIC, PHRASE.encode())
        )
        with self.assertRaises(IntegrityError):
            decode_record(payload)

    def test_secret_must_match_method(self):
        payload = (
            b"\x01"
            + _field(TAG_ID, b"wallet-x")
            + _field(TAG_AGENT_ID, b"agent-x")
            + _field(TAG_ADDRESS, b"0xabc")
            + _field(TAG_CREATION_METHOD, b"private-key")
            + _field(TAG_MNEMONIC, PHRASE.encode())
        )
        with self.assertRaises(IntegrityError):
            decode_record(payload)


if __name__ == "__main__":
    unittest.main()
