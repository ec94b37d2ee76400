"""Key derivation for Ethereum, Polkadot and Solana wallets.

Seed phrases are BIP39 (english wordlist). Child keys come from a simplified
hierarchical scheme: every path component is applied as a hardened
HMAC-SHA512 step over the previous key and chain code. This is *not* BIP32 /
SLIP-0010, so keys will not match other wallets for the same mnemonic.

Ethereum and Polkadot public keys are SHA-256 digests of the private key
rather than curve points; only Solana uses a real Ed25519 keypair.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import struct
from dataclasses import dataclass

import base58
from mnemonic import Mnemonic
from solders.keypair import Keypair

from agent_vault.errors import (
    InvalidDerivationPath,
    InvalidSeedPhrase,
    InvalidSeedStrength,
    UnsupportedCreationMethod,
)
from agent_vault.wallet.chains import ChainType, get_default_derivation_path
from agent_vault.wallet.models import CreationMethod, WalletRecord

logger = logging.getLogger("agent_vault.wallet.derivation")

HARDENED_OFFSET = 0x80000000
VALID_WORD_COUNTS = (12, 24)
SEED_STRENGTHS = {128: 12, 256: 24}

_mnemo = Mnemonic("english")
_SEGMENT_RE = re.compile(r"^(\d+)'?$")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DerivationPathComponents:
    purpose: int = 0
    coin_type: int = 0
    account: int = 0
    change: int = 0
    index: int = 0

    def as_tuple(self) -> tuple[int, int, int, int, int]:
        return (self.purpose, self.coin_type, self.account, self.change, self.index)


@dataclass(frozen=True)
class KeyPair:
    private_key: bytes
    public_key: bytes


@dataclass(frozen=True)
class DerivedKey:
    """Result of deriving a wallet key.

    ``private_key`` and ``public_key`` are lowercase hex without ``0x``.
    """

    private_key: str
    public_key: str
    address: str
    derivation_path: str


# ---------------------------------------------------------------------------
# Seed phrases
# ---------------------------------------------------------------------------


def _normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.strip().split())


def validate_seed_phrase(phrase: str) -> bool:
    """Return True for a 12 or 24 word BIP39 phrase with a valid checksum."""
    if not isinstance(phrase, str):
        return False
    normalized = _normalize_phrase(phrase)
    if len(normalized.split(" ")) not in VALID_WORD_COUNTS:
        return False
    try:
        return _mnemo.check(normalized)
    except (ValueError, LookupError):
        return False


def generate_seed_phrase(strength_bits: int = 128) -> str:
    """Generate a fresh BIP39 phrase (128 bits = 12 words, 256 bits = 24 words)."""
    if strength_bits not in SEED_STRENGTHS:
        raise InvalidSeedStrength(
            f"Unsupported strength {strength_bits}; use one of {sorted(SEED_STRENGTHS)}"
        )
    return _mnemo.generate(strength=strength_bits)


def derive_seed(phrase: str, passphrase: str = "") -> bytes:
    """Derive the 64-byte BIP39 seed for *phrase* and *passphrase*."""
    return Mnemonic.to_seed(_normalize_phrase(phrase), passphrase=passphrase)


# ---------------------------------------------------------------------------
# Derivation paths
# ---------------------------------------------------------------------------


def parse_derivation_path(path: str) -> DerivationPathComponents:
    """Parse ``m/44'/60'/0'/0/0`` into its five components.

    Missing trailing components default to 0. Hardening marks are accepted
    but not recorded, since every step is hardened anyway.
    """
    parts = path.strip().split("/")
    if parts[0] != "m":
        raise InvalidDerivationPath(
            f"Invalid derivation path '{path}': must start with 'm'"
        )
    segments = parts[1:]
    if len(segments) > 5:
        raise InvalidDerivationPath(
            f"Invalid derivation path '{path}': at most 5 components allowed"
        )

    values: list[int] = []
    for segment in segments:
        match = _SEGMENT_RE.match(segment)
        if match is None:
            raise InvalidDerivationPath(
                f"Invalid derivation path '{path}': bad component '{segment}'"
            )
        value = int(match.group(1))
        if value >= HARDENED_OFFSET:
            raise InvalidDerivationPath(
                f"Invalid derivation path '{path}': component {value} out of range"
            )
        values.append(value)
    values.extend([0] * (5 - len(values)))
    return DerivationPathComponents(*values)


def build_derivation_path(components: DerivationPathComponents) -> str:
    """Inverse of :func:`parse_derivation_path` (first three segments hardened)."""
    return (
        f"m/{components.purpose}'/{components.coin_type}'/{components.account}'"
        f"/{components.change}/{components.index}"
    )


def derive_key_from_seed(seed: bytes, path: str) -> tuple[bytes, bytes]:
    """Walk *path* from *seed* and return ``(private_key, chain_code)``."""
    components = parse_derivation_path(path)

    key = seed[:32]
    chain_code = seed[32:64]
    for component in components.as_tuple():
        index = component if component >= HARDENED_OFFSET else component + HARDENED_OFFSET
        data = key + b"\x00" + struct.pack(">I", index)
        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        key, chain_code = digest[:32], digest[32:]
    return key, chain_code


# ---------------------------------------------------------------------------
# KeyPair -> address
# ---------------------------------------------------------------------------


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def public_key_for(chain: ChainType, private_key: bytes) -> bytes:
    """Public key for *private_key* under *chain*'s (possibly simplified) scheme."""
    if chain is ChainType.SOLANA:
        return bytes(Keypair.from_seed(private_key[:32]).pubkey())
    return _sha256(private_key)


def address_for(chain: ChainType, public_key: bytes) -> str:
    """Address string for *public_key*; a pure function of its inputs."""
    if chain is ChainType.ETHEREUM:
        return "0x" + _sha256(public_key)[-20:].hex()
    if chain is ChainType.POLKADOT:
        return base58.b58encode(_sha256(public_key)).decode("ascii")
    return base58.b58encode(public_key[:32]).decode("ascii")


def keypair_for(chain: ChainType, private_key: bytes) -> KeyPair:
    return KeyPair(private_key=private_key, public_key=public_key_for(chain, private_key))


def _derived(chain: ChainType, private_key: bytes, path: str) -> DerivedKey:
    pair = keypair_for(chain, private_key)
    return DerivedKey(
        private_key=pair.private_key.hex(),
        public_key=pair.public_key.hex(),
        address=address_for(chain, pair.public_key),
        derivation_path=path,
    )


def derive_eth_key(seed: bytes, derivation_path: str | None = None) -> DerivedKey:
    path = derivation_path or get_default_derivation_path(ChainType.ETHEREUM)
    private_key, _ = derive_key_from_seed(seed, path)
    return _derived(ChainType.ETHEREUM, private_key, path)


def derive_polkadot_key(seed: bytes, derivation_path: str | None = None) -> DerivedKey:
    # Substrate junctions ("//hard//stash") are kept as an opaque label.
    path = derivation_path or get_default_derivation_path(ChainType.POLKADOT)
    return _derived(ChainType.POLKADOT, seed[:32], path)


def derive_solana_key(seed: bytes, derivation_path: str | None = None) -> DerivedKey:
    path = derivation_path or get_default_derivation_path(ChainType.SOLANA)
    private_key, _ = derive_key_from_seed(seed, path)
    return _derived(ChainType.SOLANA, private_key[:32], path)


_CHAIN_DERIVERS = {
    ChainType.ETHEREUM: derive_eth_key,
    ChainType.POLKADOT: derive_polkadot_key,
    ChainType.SOLANA: derive_solana_key,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def parse_private_key(private_key: str) -> bytes:
    """Decode a hex private key (optional ``0x`` prefix)."""
    text = private_key.strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    try:
        raw = bytes.fromhex(text)
    except ValueError as exc:
        raise UnsupportedCreationMethod("Private key must be hex encoded") from exc
    if len(raw) not in (32, 64):
        raise UnsupportedCreationMethod(
            f"Private key must be 32 or 64 bytes, got {len(raw)}"
        )
    return raw


def derive_wallet_key(
    method: CreationMethod | str,
    seed_phrase: str | None = None,
    private_key: str | None = None,
    derivation_path: str | None = None,
    chain: ChainType | str = ChainType.ETHEREUM,
) -> DerivedKey:
    """Derive the key and address for a new wallet.

    ``private-key`` passes the key through; ``seed``, ``mnemonic`` and
    ``generate`` validate the phrase and run the chain's derivation.
    """
    chain = ChainType.parse(chain)
    try:
        method = CreationMethod(method)
    except ValueError as exc:
        raise UnsupportedCreationMethod(
            f"Invalid wallet creation method: {method}"
        ) from exc
    path = derivation_path or get_default_derivation_path(chain)

    if method is CreationMethod.PRIVATE_KEY:
        if not private_key:
            raise UnsupportedCreationMethod(
                "Creation method 'private-key' requires a private key"
            )
        raw = parse_private_key(private_key)
        if chain is not ChainType.SOLANA and len(raw) != 32:
            raise UnsupportedCreationMethod(
                f"{chain.value} private keys must be 32 bytes"
            )
        derived = _derived(chain, raw if chain is not ChainType.SOLANA else raw[:32], path)
        # Keep the caller's key bytes (a 64-byte Solana secret stays 64 bytes).
        return DerivedKey(
            private_key=raw.hex(),
            public_key=derived.public_key,
            address=derived.address,
            derivation_path=path,
        )

    if not seed_phrase:
        raise UnsupportedCreationMethod(
            f"Creation method '{method.value}' requires a seed phrase"
        )
    if not validate_seed_phrase(seed_phrase):
        raise InvalidSeedPhrase("Invalid seed phrase")

    seed = derive_seed(seed_phrase)
    return _CHAIN_DERIVERS[chain](seed, path)


def resolve_signing_key(record: WalletRecord) -> bytes:
    """Return the raw secret a provider signs with for *record*."""
    if record.private_key:
        raw = parse_private_key(record.private_key)
        return raw[:32] if record.chain is ChainType.SOLANA else raw
    derived = derive_wallet_key(
        record.creation_method,
        seed_phrase=record.mnemonic,
        derivation_path=record.seed_derivation_path,
        chain=record.chain,
    )
    return bytes.fromhex(derived.private_key)
