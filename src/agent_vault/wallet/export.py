"""Export bundles: every wallet of one agent as JSON, optionally encrypted.

Plain bundle::

    {"version": "1.0", "agentId": ..., "exportedAt": <ms>,
     "format": "json" | "encrypted", "wallets": [...]}

Encrypted envelope::

    {"encrypted": "<hex ciphertext>.<hex auth tag>", "iv": <hex>, "salt": <hex>}

The key is PBKDF2-HMAC-SHA256 (100,000 iterations) over the password; the
cipher is AES-256-GCM.
"""

from __future__ import annotations

import json
import logging
import secrets
from typing import Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from agent_vault.errors import BundleDecryptionError, InvalidBundleError
from agent_vault.wallet.models import ExportFormat, WalletBundle, WalletRecord

logger = logging.getLogger("agent_vault.wallet.export")

BUNDLE_VERSION = "1.0"
PBKDF2_ITERATIONS = 100_000
AES_KEY_SIZE = 32
AES_IV_SIZE = 12
SALT_SIZE = 16
TAG_SIZE = 16


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


def derive_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_payload(text: str, password: str) -> dict[str, str]:
    """Encrypt *text* into the ``{encrypted, iv, salt}`` envelope."""
    salt = secrets.token_bytes(SALT_SIZE)
    iv = secrets.token_bytes(AES_IV_SIZE)
    key = derive_key(password, salt)
    sealed = AESGCM(key).encrypt(iv, text.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return {
        "encrypted": f"{ciphertext.hex()}.{tag.hex()}",
        "iv": iv.hex(),
        "salt": salt.hex(),
    }


def decrypt_payload(envelope: dict, password: str) -> str:
    """Authenticate and decrypt an envelope made by :func:`encrypt_payload`.

    Raises
    ------
    InvalidBundleError
        If the envelope is missing fields or is not hex.
    BundleDecryptionError
        If the password is wrong or the data was modified.
    """
    try:
        ciphertext_hex, tag_hex = envelope["encrypted"].split(".")
        ciphertext = bytes.fromhex(ciphertext_hex)
        tag = bytes.fromhex(tag_hex)
        iv = bytes.fromhex(envelope["iv"])
        salt = bytes.fromhex(envelope["salt"])
    except (KeyError, AttributeError, ValueError) as exc:
        raise InvalidBundleError(f"Malformed encrypted bundle: {exc}") from exc
    if len(tag) != TAG_SIZE or len(iv) != AES_IV_SIZE:
        raise InvalidBundleError("Malformed encrypted bundle: bad iv or tag length")

    key = derive_key(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise BundleDecryptionError(
            "Failed to decrypt bundle - incorrect password or corrupted data"
        ) from exc
    return plaintext.decode("utf-8")


def is_encrypted(data: dict) -> bool:
    return isinstance(data.get("encrypted"), str) and "iv" in data and "salt" in data


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


def build_bundle(
    agent_id: str,
    wallets: Iterable[WalletRecord],
    format: ExportFormat | str = ExportFormat.JSON,
) -> WalletBundle:
    return WalletBundle(
        version=BUNDLE_VERSION,
        agent_id=agent_id,
        format=ExportFormat(format),
        wallets=list(wallets),
    )


def dumps_bundle(bundle: WalletBundle, password: str | None = None) -> str:
    """Serialize *bundle*; with a password the JSON is wrapped in an envelope."""
    if bundle.format is ExportFormat.ENCRYPTED and not password:
        raise ValueError("An encrypted export requires a password")
    text = bundle.model_dump_json(by_alias=True, exclude_none=True, indent=2)
    if bundle.format is ExportFormat.JSON:
        return text
    return json.dumps(encrypt_payload(text, password), indent=2)


def loads_bundle(text: str, password: str | None = None) -> WalletBundle:
    """Parse (and, for an envelope, decrypt) a bundle.

    Raises
    ------
    InvalidBundleError
        On malformed JSON, a bad structure or an empty wallet list.
    BundleDecryptionError
        If the envelope cannot be authenticated with *password*.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidBundleError(f"Invalid bundle file format: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidBundleError("Invalid bundle structure")

    if is_encrypted(data):
        if not password:
            raise BundleDecryptionError("Bundle is encrypted; a password is required")
        try:
            data = json.loads(decrypt_payload(data, password))
        except json.JSONDecodeError as exc:
            raise InvalidBundleError(f"Decrypted bundle is not JSON: {exc}") from exc

    for required in ("version", "agentId", "wallets"):
        if required not in data:
            raise InvalidBundleError(f"Invalid bundle structure: missing '{required}'")
    if not isinstance(data["wallets"], list) or not data["wallets"]:
        raise InvalidBundleError("Bundle contains no wallets")

    try:
        bundle = WalletBundle.model_validate(data)
    except ValidationError as exc:
        raise InvalidBundleError(f"Invalid wallet data in bundle: {exc}") from exc
    logger.debug(f"Loaded bundle for agent {bundle.agent_id} with {len(bundle.wallets)} wallet(s)")
    return bundle
