"""Ethereum provider built on web3's AsyncWeb3 and eth-account."""

from __future__ import annotations

import logging
import re

import httpx
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from agent_vault.config import is_unresolved
from agent_vault.errors import (
    AddressValidationError,
    NetworkError,
    SigningError,
    WalletError,
)
from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.models import (
    Balance,
    SignedTransaction,
    Transaction,
    TransactionRequest,
    TransactionStatus,
    now_ms,
)
from agent_vault.wallet.providers.base import (
    HISTORY_BLOCK_WINDOW,
    HISTORY_LIMIT,
    ChainProvider,
)

logger = logging.getLogger("agent_vault.wallet.providers.ethereum")

MAINNET_CHAIN_ID = 1
SEPOLIA_CHAIN_ID = 11155111
DEFAULT_GAS_LIMIT = 21_000
GAS_PER_DATA_BYTE = 16

EXPLORER_API_URLS = {
    MAINNET_CHAIN_ID: "https://api.etherscan.io/api",
    SEPOLIA_CHAIN_ID: "https://api-sepolia.etherscan.io/api",
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _hex(value) -> str:
    return value if isinstance(value, str) else Web3.to_hex(value)


class EthereumProvider(ChainProvider):
    """Native ETH transfers over JSON-RPC.

    Injects POA middleware when the configured chain id is not mainnet.
    """

    chain_type = ChainType.ETHEREUM
    fallback_fee = "0.00042"

    def __init__(self, config=None) -> None:
        super().__init__(config)
        self.chain_id = self.config.chain_id or (
            SEPOLIA_CHAIN_ID if self.config.testnet else MAINNET_CHAIN_ID
        )
        self._w3: AsyncWeb3 | None = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_client(self) -> AsyncWeb3:
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.rpc_url))
        if self.chain_id != MAINNET_CHAIN_ID:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    async def _open(self) -> None:
        self._w3 = self._build_client()

    async def _probe(self) -> int:
        self.chain_id = int(await self._w3.eth.chain_id)
        return await self._fetch_block_number()

    async def _close(self) -> None:
        w3, self._w3 = self._w3, None
        if w3 is not None:
            await w3.provider.disconnect()

    async def _rpc(self, action: str, awaitable):
        try:
            return await awaitable
        except WalletError:
            raise
        except Exception as exc:
            raise NetworkError(f"Ethereum {action} failed: {exc}") from exc

    async def _fetch_block_number(self) -> int:
        return int(await self._rpc("block number", self._w3.eth.block_number))

    # ------------------------------------------------------------------
    # Signer
    # ------------------------------------------------------------------

    @staticmethod
    def _account(secret: bytes):
        try:
            return Account.from_key(secret)
        except Exception as exc:
            raise SigningError(f"Invalid Ethereum signing key: {exc}") from exc

    def get_address(self) -> str:
        return self._account(self._require_secret()).address

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        return isinstance(address, str) and bool(_ADDRESS_RE.match(address))

    async def get_balance(self, address: str) -> Balance:
        self._require_connected()
        if not self.validate_address(address):
            raise AddressValidationError(f"Invalid Ethereum address: {address}")
        wei = await self._rpc(
            "balance query", self._w3.eth.get_balance(Web3.to_checksum_address(address))
        )
        return Balance(
            amount=self.from_base_units(wei),
            denomination=self.chain.denomination,
            chain=self.chain_type,
            address=address,
            block_number=await self._fetch_block_number(),
        )

    async def get_transaction(self, tx_hash: str) -> Transaction | None:
        self._require_connected()
        try:
            tx = await self._w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as exc:
            raise NetworkError(f"Ethereum transaction lookup failed: {exc}") from exc

        try:
            receipt = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None
        except Exception as exc:
            raise NetworkError(f"Ethereum receipt lookup failed: {exc}") from exc

        if receipt is None:
            status = TransactionStatus.PENDING
        else:
            status = TransactionStatus.CONFIRMED if receipt["status"] else TransactionStatus.FAILED

        timestamp = now_ms()
        if tx.get("blockNumber") is not None:
            block = await self._rpc("block lookup", self._w3.eth.get_block(tx["blockNumber"]))
            timestamp = int(block["timestamp"]) * 1000

        return self._to_transaction(tx, status, timestamp)

    def _to_transaction(self, tx, status: TransactionStatus, timestamp: int) -> Transaction:
        gas_price = tx.get("gasPrice")
        fee = None
        if gas_price is not None:
            fee = self.from_base_units(int(gas_price) * int(tx.get("gas", DEFAULT_GAS_LIMIT)))
        return Transaction(
            hash=_hex(tx["hash"]),
            from_address=tx["from"],
            to=tx.get("to") or "",
            amount=self.from_base_units(tx["value"]),
            chain=self.chain_type,
            timestamp=timestamp,
            status=status,
            fee=fee,
        )

    async def get_transaction_history(self, address: str) -> list[Transaction]:
        """Recent transfers touching *address*, most recent first.

        Uses the explorer ``txlist`` API when an API key is configured,
        otherwise scans the last blocks.
        """
        self._require_connected()
        if not is_unresolved(self.config.api_key):
            return await self._explorer_history(address)
        return await self._scan_history(address)

    async def _explorer_history(self, address: str) -> list[Transaction]:
        url = self.config.explorer_api_url or EXPLORER_API_URLS.get(
            self.chain_id, EXPLORER_API_URLS[MAINNET_CHAIN_ID]
        )
        params = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "sort": "desc",
            "page": 1,
            "offset": HISTORY_LIMIT,
            "apikey": self.config.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=30) as client:
                resp = await client.get(url, params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise NetworkError(f"Explorer history request failed: {exc}") from exc

        result = data.get("result")
        if not isinstance(result, list):
            if data.get("status") == "0" and "No transactions" in str(data.get("message", "")):
                return []
            raise NetworkError(f"Explorer returned an error: {data.get('message') or result}")

        history: list[Transaction] = []
        for item in result[:HISTORY_LIMIT]:
            try:
                gas_used = int(item.get("gasUsed", 0))
                history.append(Transaction(
                    hash=item["hash"],
                    from_address=item["from"],
                    to=item.get("to") or "",
                    amount=self.from_base_units(item["value"]),
                    chain=self.chain_type,
                    timestamp=int(item["timeStamp"]) * 1000,
                    status=(
                        TransactionStatus.FAILED if item.get("isError") == "1"
                        else TransactionStatus.CONFIRMED
                    ),
                    fee=self.from_base_units(gas_used * int(item.get("gasPrice", 0))),
                ))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping malformed explorer entry: {exc}")
        return history

    async def _scan_history(self, address: str) -> list[Transaction]:
        target = address.lower()
        latest = await self._fetch_block_number()
        history: list[Transaction] = []
        for number in range(latest, max(latest - HISTORY_BLOCK_WINDOW, -1), -1):
            try:
                block = await self._w3.eth.get_block(number, full_transactions=True)
            except Exception as exc:
                logger.warning(f"Skipping block {number} during history scan: {exc}")
                continue
            timestamp = int(block["timestamp"]) * 1000
            for tx in reversed(block["transactions"]):
                sender = str(tx.get("from") or "").lower()
                recipient = str(tx.get("to") or "").lower()
                if target not in (sender, recipient):
                    continue
                history.append(
                    self._to_transaction(tx, TransactionStatus.CONFIRMED, timestamp)
                )
                if len(history) >= HISTORY_LIMIT:
                    return history
        return history

    # ------------------------------------------------------------------
    # Fees and signing
    # ------------------------------------------------------------------

    @staticmethod
    def _memo_data(request: TransactionRequest) -> bytes:
        return request.memo.encode("utf-8") if request.memo else b""

    def _gas_limit(self, request: TransactionRequest) -> int:
        if request.gas_limit:
            return int(request.gas_limit)
        return DEFAULT_GAS_LIMIT + GAS_PER_DATA_BYTE * len(self._memo_data(request))

    async def _gas_price(self, request: TransactionRequest) -> int:
        if request.gas_price:
            return int(request.gas_price)
        return int(await self._rpc("gas price query", self._w3.eth.gas_price))

    async def estimate_fee(self, request: TransactionRequest) -> str:
        self._require_connected()
        value = self._check_request(request)
        try:
            gas_price = await self._gas_price(request)
            if request.gas_limit:
                gas = int(request.gas_limit)
            else:
                tx = {"to": Web3.to_checksum_address(request.to), "value": value}
                data = self._memo_data(request)
                if data:
                    tx["data"] = Web3.to_hex(data)
                gas = int(await self._rpc("gas estimate", self._w3.eth.estimate_gas(tx)))
        except NetworkError as exc:
            return self._fallback_fee(exc)
        return self.from_base_units(gas_price * gas)

    async def _build_and_sign(
        self, request: TransactionRequest, secret: bytes
    ) -> tuple[SignedTransaction, int]:
        value = self._check_request(request)
        account = self._account(secret)
        nonce = await self._rpc(
            "nonce query", self._w3.eth.get_transaction_count(account.address)
        )
        gas = self._gas_limit(request)
        gas_price = await self._gas_price(request)

        tx: dict = {
            "to": Web3.to_checksum_address(request.to),
            "value": value,
            "nonce": nonce,
            "chainId": self.chain_id,
            "gas": gas,
            "gasPrice": gas_price,
        }
        data = self._memo_data(request)
        if data:
            tx["data"] = Web3.to_hex(data)

        try:
            signed = Account.sign_transaction(tx, secret)
        except Exception as exc:
            raise SigningError(f"Ethereum signing failed: {exc}") from exc

        return SignedTransaction(
            tx_hash=Web3.to_hex(signed.hash),
            signed_payload=Web3.to_hex(signed.raw_transaction),
            signature=f"0x{signed.r:064x}{signed.s:064x}{signed.v:02x}",
            request=request,
        ), gas * gas_price

    async def sign_transaction(
        self, request: TransactionRequest, secret: bytes | str
    ) -> SignedTransaction:
        self._require_connected()
        signed, _ = await self._build_and_sign(request, self._coerce_secret(secret))
        return signed

    async def send_transaction(
        self, from_address: str, request: TransactionRequest
    ) -> Transaction:
        self._require_connected()
        secret = self._require_secret()
        signed, fee_wei = await self._build_and_sign(request, secret)
        tx_hash = await self._rpc(
            "broadcast",
            self._w3.eth.send_raw_transaction(Web3.to_bytes(hexstr=signed.signed_payload)),
        )
        sender = self._account(secret).address
        if sender.lower() != from_address.lower():
            logger.debug(f"Vault address {from_address} signs as {sender} on-chain")
        logger.info(f"Broadcast {request.amount} ETH to {request.to}: {Web3.to_hex(tx_hash)}")
        return Transaction(
            hash=Web3.to_hex(tx_hash),
            from_address=sender,
            to=request.to,
            amount=request.amount,
            chain=self.chain_type,
            status=TransactionStatus.PENDING,
            fee=self.from_base_units(fee_wei),
        )
