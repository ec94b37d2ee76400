"""Pydantic models for wallet records, balances and transactions.

Python attributes are snake_case; the JSON form (export bundles) uses the
camelCase names of the on-disk format, e.g. ``agentId`` and ``createdAt``.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from agent_vault.wallet.chains import ChainType


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CreationMethod(str, Enum):
    GENERATE = "generate"
    SEED = "seed"
    MNEMONIC = "mnemonic"
    PRIVATE_KEY = "private-key"

    @property
    def uses_mnemonic(self) -> bool:
        return self is not CreationMethod.PRIVATE_KEY


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ExportFormat(str, Enum):
    JSON = "json"
    ENCRYPTED = "encrypted"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_wallet_id() -> str:
    """Generate a random wallet ID (``wallet-`` + 32 hex chars)."""
    return f"wallet-{secrets.token_hex(16)}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Wallet records
# ---------------------------------------------------------------------------

class WalletRecord(_CamelModel):
    """A persisted wallet owned by exactly one agent.

    Exactly one of ``private_key`` or ``mnemonic`` is set: ``private_key``
    for wallets imported from a raw key, ``mnemonic`` for every other
    creation method.
    """

    id: str = Field(default_factory=new_wallet_id)
    agent_id: str
    chain: ChainType
    address: str
    private_key: Optional[str] = None
    mnemonic: Optional[str] = None
    seed_derivation_path: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    creation_method: CreationMethod = CreationMethod.SEED
    chain_metadata: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_secret_matches_method(self) -> WalletRecord:
        if self.creation_method.uses_mnemonic:
            if not self.mnemonic or self.private_key is not None:
                raise ValueError(
                    f"Wallet created by '{self.creation_method.value}' must carry "
                    "a mnemonic and no private key"
                )
        elif not self.private_key or self.mnemonic is not None:
            raise ValueError(
                "Wallet created from a private key must carry a private key "
                "and no mnemonic"
            )
        return self


class WalletCreationOptions(BaseModel):
    """Input to :meth:`WalletManager.create_wallet`."""

    agent_id: str
    chain: ChainType
    method: CreationMethod
    seed_phrase: Optional[str] = None
    private_key: Optional[str] = None
    derivation_path: Optional[str] = None
    wallet_id: Optional[str] = None
    chain_metadata: Optional[dict[str, Any]] = None


class WalletFileStats(BaseModel):
    size: int
    modified: datetime
    created: datetime


class WalletBundle(_CamelModel):
    """Export / backup bundle holding every wallet of one agent."""

    version: str = "1.0"
    agent_id: str
    exported_at: int = Field(default_factory=now_ms)
    format: ExportFormat = ExportFormat.JSON
    wallets: list[WalletRecord] = Field(default_factory=list)


class ImportResult(BaseModel):
    imported: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    renamed: dict[str, str] = Field(default_factory=dict)
    overwritten: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chain data
# ---------------------------------------------------------------------------

class Balance(BaseModel):
    amount: str
    denomination: str
    chain: ChainType
    address: str
    block_number: Optional[int] = None


class TransactionRequest(BaseModel):
    to: str
    amount: str
    chain: ChainType
    memo: Optional[str] = None
    gas_price: Optional[str] = None  # base units (wei)
    gas_limit: Optional[str] = None


class Transaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: str
    from_address: str = Field(alias="from")
    to: str
    amount: str
    chain: ChainType
    timestamp: int = Field(default_factory=now_ms)
    status: TransactionStatus = TransactionStatus.PENDING
    fee: Optional[str] = None
    data: Optional[Any] = None


class SignedTransaction(BaseModel):
    tx_hash: str
    signed_payload: str
    signature: Optional[str] = None
    request: TransactionRequest
