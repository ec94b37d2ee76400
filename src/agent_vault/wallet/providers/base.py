"""Abstract base class that all chain providers must implement."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum

from agent_vault.config import ProviderConfig
from agent_vault.errors import (
    AddressValidationError,
    NetworkError,
    NotConnectedError,
    SigningError,
    TransactionBuildError,
)
from agent_vault.wallet.chains import (
    Chain,
    ChainType,
    from_base_units,
    get_chain,
    resolve_rpc_url,
    to_base_units,
)
from agent_vault.wallet.derivation import (
    derive_wallet_key,
    parse_private_key,
    resolve_signing_key,
)
from agent_vault.wallet.models import (
    Balance,
    CreationMethod,
    SignedTransaction,
    Transaction,
    TransactionRequest,
    WalletRecord,
)

logger = logging.getLogger("agent_vault.wallet.providers")

HISTORY_LIMIT = 20
HISTORY_BLOCK_WINDOW = 100


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ChainProvider(ABC):
    """Uniform wallet operations against one chain.

    Subclasses implement the ``_open`` / ``_close`` transport hooks and the
    data operations. Every data operation must call
    :meth:`_require_connected` first.

    Parameters
    ----------
    config:
        Provider settings (RPC URL, testnet flag, API keys).
    """

    chain_type: ChainType
    fallback_fee: str

    def __init__(self, config: ProviderConfig | None = None) -> None:
        self.config = config or ProviderConfig()
        self.chain: Chain = get_chain(self.chain_type)
        self.rpc_url = resolve_rpc_url(
            self.chain_type, testnet=self.config.testnet, explicit=self.config.rpc_url
        )
        self.state = ConnectionState.DISCONNECTED
        self._secret: bytes | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def _require_connected(self) -> None:
        if self.state is not ConnectionState.CONNECTED:
            raise NotConnectedError(
                f"{self.chain_type.value} provider is not connected; call connect() first"
            )

    async def connect(self) -> None:
        """Open the transport and probe the current height. Idempotent.

        Concurrent callers share a single transport.

        Raises
        ------
        NetworkError
            If the transport cannot be opened or the probe fails.
        """
        async with self._lock:
            if self.state is ConnectionState.CONNECTED:
                return
            self.state = ConnectionState.CONNECTING
            try:
                await self._open()
                height = await self._probe()
            except Exception as exc:
                self.state = ConnectionState.DISCONNECTED
                await self._safe_close()
                if isinstance(exc, NetworkError):
                    raise
                raise NetworkError(
                    f"Failed to connect to {self.chain_type.value} at {self.rpc_url}: {exc}"
                ) from exc
            self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to {self.chain_type.value} at {self.rpc_url} (height {height})")

    async def disconnect(self) -> None:
        """Tear down the transport. Idempotent."""
        async with self._lock:
            if self.state is ConnectionState.DISCONNECTED:
                return
            self.state = ConnectionState.DISCONNECTED
            await self._safe_close()
        logger.info(f"Disconnected from {self.chain_type.value}")

    async def _safe_close(self) -> None:
        try:
            await self._close()
        except Exception as exc:
            logger.warning(f"Error closing {self.chain_type.value} transport: {exc}")

    @abstractmethod
    async def _open(self) -> None:
        """Create the transport client."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the transport client."""

    async def _probe(self) -> int:
        return await self._fetch_block_number()

    # ------------------------------------------------------------------
    # Signing material
    # ------------------------------------------------------------------

    def load_wallet(self, record: WalletRecord) -> None:
        """Use *record*'s secret for subsequent sends."""
        if record.chain is not self.chain_type:
            raise TransactionBuildError(
                f"Wallet {record.id} is on {record.chain.value}, "
                f"not {self.chain_type.value}"
            )
        self._secret = resolve_signing_key(record)

    def init_from_private_key(self, private_key: str) -> None:
        raw = parse_private_key(private_key)
        self._secret = raw[:32]

    def init_from_mnemonic(self, phrase: str, derivation_path: str | None = None) -> None:
        derived = derive_wallet_key(
            CreationMethod.MNEMONIC,
            seed_phrase=phrase,
            derivation_path=derivation_path,
            chain=self.chain_type,
        )
        self._secret = bytes.fromhex(derived.private_key)

    @property
    def has_signer(self) -> bool:
        return self._secret is not None

    def _require_secret(self) -> bytes:
        if self._secret is None:
            raise SigningError(
                f"No wallet loaded into the {self.chain_type.value} provider"
            )
        return self._secret

    @staticmethod
    def _coerce_secret(secret: bytes | str) -> bytes:
        if isinstance(secret, str):
            return parse_private_key(secret)[:32]
        return bytes(secret)[:32]

    @abstractmethod
    def get_address(self) -> str:
        """On-chain address of the loaded signer."""

    # ------------------------------------------------------------------
    # Amount helpers
    # ------------------------------------------------------------------

    def to_base_units(self, amount: str) -> int:
        return to_base_units(amount, self.chain.decimals)

    def from_base_units(self, value: int | str) -> str:
        return from_base_units(value, self.chain.decimals)

    def _check_request(self, request: TransactionRequest) -> int:
        """Validate chain, destination and amount; return the amount in base units."""
        if request.chain is not self.chain_type:
            raise TransactionBuildError(
                f"Request is for {request.chain.value}, provider is {self.chain_type.value}"
            )
        if not self.validate_address(request.to):
            raise AddressValidationError(
                f"Invalid {self.chain_type.value} address: {request.to}"
            )
        value = self.to_base_units(request.amount)
        if value <= 0:
            raise TransactionBuildError(f"Amount must be positive, got {request.amount}")
        return value

    def _fallback_fee(self, exc: Exception) -> str:
        logger.warning(
            f"Fee estimation failed on {self.chain_type.value}, "
            f"using fallback {self.fallback_fee} {self.chain.denomination}: {exc}"
        )
        return self.fallback_fee

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        self._require_connected()
        return await self._fetch_block_number()

    @abstractmethod
    async def _fetch_block_number(self) -> int:
        """Current block height / slot, without the connection check."""

    @abstractmethod
    async def get_balance(self, address: str) -> Balance: ...

    @abstractmethod
    async def send_transaction(
        self, from_address: str, request: TransactionRequest
    ) -> Transaction: ...

    @abstractmethod
    async def sign_transaction(
        self, request: TransactionRequest, secret: bytes | str
    ) -> SignedTransaction: ...

    @abstractmethod
    async def get_transaction_history(self, address: str) -> list[Transaction]: ...

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> Transaction | None: ...

    @abstractmethod
    async def estimate_fee(self, request: TransactionRequest) -> str: ...

    @abstractmethod
    def validate_address(self, address: str) -> bool: ...
