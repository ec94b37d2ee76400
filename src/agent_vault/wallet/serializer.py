"""Binary wallet record format.

A wallet file is ``payload || checksum(payload)`` where the checksum is a
4-byte big-endian rolling fold. The fold only detects corruption; it offers
no protection against deliberate tampering.

Payload layout::

    version (1 byte, 0x01)
    repeated fields:
        tag    (1 byte)
        length (varint)
        value  (length bytes)

Strings are UTF-8, timestamps are 8-byte big-endian epoch milliseconds and
``chain_metadata`` is UTF-8 JSON. Optional fields that are unset are not
written; unknown tags are skipped on decode.
"""

from __future__ import annotations

import json
import logging
import struct

from pydantic import ValidationError

from agent_vault.errors import IntegrityError
from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.models import CreationMethod, WalletRecord, now_ms

logger = logging.getLogger("agent_vault.wallet.serializer")

FORMAT_VERSION = 1
CHECKSUM_SIZE = 4

TAG_ID = 0x01
TAG_AGENT_ID = 0x02
TAG_CHAIN = 0x03
TAG_ADDRESS = 0x04
TAG_PRIVATE_KEY = 0x05
TAG_MNEMONIC = 0x06
TAG_DERIVATION_PATH = 0x07
TAG_CREATED_AT = 0x08
TAG_UPDATED_AT = 0x09
TAG_CREATION_METHOD = 0x0A
TAG_CHAIN_METADATA = 0x0B

_STRING_FIELDS = {
    TAG_ID: "id",
    TAG_AGENT_ID: "agent_id",
    TAG_CHAIN: "chain",
    TAG_ADDRESS: "address",
    TAG_PRIVATE_KEY: "private_key",
    TAG_MNEMONIC: "mnemonic",
    TAG_DERIVATION_PATH: "seed_derivation_path",
    TAG_CREATION_METHOD: "creation_method",
}
_TIMESTAMP_FIELDS = {
    TAG_CREATED_AT: "created_at",
    TAG_UPDATED_AT: "updated_at",
}


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def encode_varint(value: int) -> bytes:
    """Encode an unsigned LEB128 varint."""
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a varint, returns (value, bytes_consumed)."""
    result = 0
    shift = 0
    pos = offset
    while True:
        if pos >= len(data):
            raise ValueError("Not enough data for varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos - offset
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def checksum(payload: bytes) -> bytes:
    """4-byte big-endian rolling fold over *payload*."""
    value = 0
    for byte in payload:
        value = (value * 31 + byte) & 0xFFFFFFFF
    return struct.pack(">I", value)


def frame(payload: bytes) -> bytes:
    """Append the checksum to *payload*."""
    return payload + checksum(payload)


def unframe(data: bytes) -> bytes:
    """Verify and strip the trailing checksum, returning the payload."""
    if len(data) < CHECKSUM_SIZE + 1:
        raise IntegrityError("Invalid wallet data: too short")
    payload, stored = data[:-CHECKSUM_SIZE], data[-CHECKSUM_SIZE:]
    if checksum(payload) != stored:
        raise IntegrityError("Invalid wallet data: checksum mismatch")
    return payload


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _field(tag: int, value: bytes) -> bytes:
    return bytes([tag]) + encode_varint(len(value)) + value


def encode_record(record: WalletRecord) -> bytes:
    """Encode *record* into the binary payload (without checksum)."""
    parts = [bytes([FORMAT_VERSION])]
    for tag, attr in _STRING_FIELDS.items():
        value = getattr(record, attr)
        if value is None:
            continue
        if hasattr(value, "value"):
            value = value.value
        parts.append(_field(tag, value.encode("utf-8")))
    for tag, attr in _TIMESTAMP_FIELDS.items():
        parts.append(_field(tag, struct.pack(">Q", getattr(record, attr))))
    if record.chain_metadata is not None:
        meta = json.dumps(record.chain_metadata, sort_keys=True, separators=(",", ":"))
        parts.append(_field(TAG_CHAIN_METADATA, meta.encode("utf-8")))
    return b"".join(parts)


def _read_fields(payload: bytes) -> dict[int, bytes]:
    if not payload or payload[0] != FORMAT_VERSION:
        raise ValueError(f"Unsupported format version: {payload[:1].hex() or 'empty'}")
    fields: dict[int, bytes] = {}
    pos = 1
    while pos < len(payload):
        tag = payload[pos]
        length, consumed = decode_varint(payload, pos + 1)
        start = pos + 1 + consumed
        end = start + length
        if end > len(payload):
            raise ValueError(f"Field 0x{tag:02x} overruns payload")
        fields[tag] = payload[start:end]
        pos = end
    return fields


def decode_record(payload: bytes) -> WalletRecord:
    """Decode a payload produced by :func:`encode_record`.

    Missing fields get defaults: empty strings for ids and address,
    ``ethereum`` for the chain, ``seed`` for the creation method and the
    current time for timestamps.
    """
    try:
        fields = _read_fields(payload)
        values: dict = {
            "id": "",
            "agent_id": "",
            "chain": ChainType.ETHEREUM.value,
            "address": "",
            "creation_method": CreationMethod.SEED.value,
        }
        for tag, attr in _STRING_FIELDS.items():
            if tag in fields:
                values[attr] = fields[tag].decode("utf-8")
        for tag, attr in _TIMESTAMP_FIELDS.items():
            if tag in fields:
                (values[attr],) = struct.unpack(">Q", fields[tag])
            else:
                values[attr] = now_ms()
        if TAG_CHAIN_METADATA in fields:
            values["chain_metadata"] = json.loads(fields[TAG_CHAIN_METADATA].decode("utf-8"))
        return WalletRecord(**values)
    except (ValueError, UnicodeDecodeError, struct.error, ValidationError) as exc:
        raise IntegrityError(f"Invalid wallet data: {exc}") from exc


def serialize_wallet(record: WalletRecord) -> bytes:
    """Encode *record* and append its checksum."""
    return frame(encode_record(record))


def deserialize_wallet(data: bytes) -> WalletRecord:
    """Verify the checksum of *data* and decode the record."""
    return decode_record(unframe(data))
