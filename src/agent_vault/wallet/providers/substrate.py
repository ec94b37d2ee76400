"""Polkadot (Substrate) provider built on substrate-interface.

``SubstrateInterface`` is a blocking websocket client, so every call runs on
a single-worker executor owned by the provider.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor

from substrateinterface import Keypair, KeypairType, SubstrateInterface
from substrateinterface.utils.ss58 import is_valid_ss58_address

from agent_vault.errors import (
    AddressValidationError,
    NetworkError,
    NotConnectedError,
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

logger = logging.getLogger("agent_vault.wallet.providers.substrate")

TRANSFER_MODULE = "Balances"
TRANSFER_CALL = "transfer_keep_alive"
TRANSFER_EVENT = "Transfer"


def _to_hex(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def _transfer_fields(attributes) -> tuple[str, str, int] | None:
    """Normalise ``Balances.Transfer`` attributes across runtime versions."""
    if isinstance(attributes, dict):
        try:
            return str(attributes["from"]), str(attributes["to"]), int(attributes["amount"])
        except (KeyError, TypeError, ValueError):
            return None
    if isinstance(attributes, (list, tuple)) and len(attributes) >= 3:
        values = [a.get("value") if isinstance(a, dict) else a for a in attributes[:3]]
        return str(values[0]), str(values[1]), int(values[2])
    return None


class SubstrateProvider(ChainProvider):
    """DOT transfers via ``Balances.transfer_keep_alive`` signed with sr25519."""

    chain_type = ChainType.POLKADOT
    fallback_fee = "0.01"

    def __init__(self, config=None) -> None:
        super().__init__(config)
        self.ss58_format = self.config.ss58_format
        self._substrate: SubstrateInterface | None = None
        self._executor: ThreadPoolExecutor | None = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_client(self) -> SubstrateInterface:
        return SubstrateInterface(url=self.rpc_url, ss58_format=self.ss58_format)

    async def _in_executor(self, fn, *args, **kwargs):
        if self._executor is None:
            raise NotConnectedError("Polkadot provider has no open transport")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def _call(self, action: str, fn, *args, **kwargs):
        try:
            return await self._in_executor(fn, *args, **kwargs)
        except WalletError:
            raise
        except Exception as exc:
            raise NetworkError(f"Polkadot {action} failed: {exc}") from exc

    async def _open(self) -> None:
        # The websocket client is not thread-safe: one worker serialises every call.
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._substrate = await self._call("connect", self._build_client)

    async def _close(self) -> None:
        substrate, self._substrate = self._substrate, None
        executor = self._executor
        try:
            if substrate is not None and executor is not None:
                await asyncio.get_running_loop().run_in_executor(executor, substrate.close)
        finally:
            self._executor = None
            if executor is not None:
                executor.shutdown(wait=True)

    def _block_number_sync(self, block_hash: str | None = None) -> int:
        header = self._substrate.get_block_header(block_hash=block_hash)
        return int(header["header"]["number"])

    async def _fetch_block_number(self) -> int:
        return await self._call("block number", self._block_number_sync)

    # ------------------------------------------------------------------
    # Signer
    # ------------------------------------------------------------------

    def _keypair(self, secret: bytes) -> Keypair:
        try:
            return Keypair.create_from_seed(
                seed_hex=secret.hex(),
                ss58_format=self.ss58_format,
                crypto_type=KeypairType.SR25519,
            )
        except Exception as exc:
            raise SigningError(f"Invalid sr25519 seed: {exc}") from exc

    def get_address(self) -> str:
        return self._keypair(self._require_secret()).ss58_address

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        if not isinstance(address, str) or not address:
            return False
        try:
            return bool(is_valid_ss58_address(address, valid_ss58_format=self.ss58_format))
        except (ValueError, TypeError):
            return False

    async def get_balance(self, address: str) -> Balance:
        self._require_connected()
        if not self.validate_address(address):
            raise AddressValidationError(f"Invalid Polkadot address: {address}")
        account = await self._call(
            "balance query", self._substrate.query, "System", "Account", [address]
        )
        data = (account.value or {}).get("data", {})
        planck = int(data.get("free", 0)) + int(data.get("reserved", 0))
        return Balance(
            amount=self.from_base_units(planck),
            denomination=self.chain.denomination,
            chain=self.chain_type,
            address=address,
            block_number=await self._fetch_block_number(),
        )

    def _block_timestamp(self, block_hash: str) -> int:
        return int(self._substrate.query("Timestamp", "Now", block_hash=block_hash).value)

    def _transfers_in_block(self, block_hash: str) -> list[tuple[int | None, str, str, int]]:
        transfers = []
        for record in self._substrate.get_events(block_hash=block_hash):
            value = record.value
            if value.get("module_id") != TRANSFER_MODULE or value.get("event_id") != TRANSFER_EVENT:
                continue
            fields = _transfer_fields(value.get("attributes"))
            if fields is not None:
                transfers.append((value.get("extrinsic_idx"), *fields))
        return transfers

    async def get_transaction_history(self, address: str) -> list[Transaction]:
        """``Balances.Transfer`` events for *address* in the recent block window."""
        self._require_connected()
        latest = await self._fetch_block_number()
        history: list[Transaction] = []
        for number in range(latest, max(latest - HISTORY_BLOCK_WINDOW, -1), -1):
            try:
                block_hash = await self._call("block hash", self._substrate.get_block_hash, number)
                transfers = await self._call("event scan", self._transfers_in_block, block_hash)
                timestamp = None
                for _, sender, recipient, amount in transfers:
                    if address not in (sender, recipient):
                        continue
                    if timestamp is None:
                        timestamp = await self._call("timestamp", self._block_timestamp, block_hash)
                    history.append(Transaction(
                        hash=block_hash,
                        from_address=sender,
                        to=recipient,
                        amount=self.from_base_units(amount),
                        chain=self.chain_type,
                        timestamp=timestamp,
                        status=TransactionStatus.CONFIRMED,
                        data={"block_number": number},
                    ))
            except NetworkError as exc:
                logger.warning(f"Skipping block {number} during history scan: {exc}")
                continue
            if len(history) >= HISTORY_LIMIT:
                break
        return history[:HISTORY_LIMIT]

    def _find_extrinsic_sync(self, tx_hash: str) -> Transaction | None:
        wanted = tx_hash.lower().removeprefix("0x")
        latest = self._block_number_sync()
        for number in range(latest, max(latest - HISTORY_BLOCK_WINDOW, -1), -1):
            block_hash = self._substrate.get_block_hash(number)
            block = self._substrate.get_block(block_hash=block_hash)
            for index, extrinsic in enumerate(block.get("extrinsics", [])):
                ext_hash = extrinsic.extrinsic_hash
                if ext_hash is None or _to_hex(ext_hash).lower().removeprefix("0x") != wanted:
                    continue
                return self._receipt_to_transaction(tx_hash, block_hash, index)
        return None

    def _receipt_to_transaction(self, tx_hash: str, block_hash: str, index: int) -> Transaction:
        status = TransactionStatus.PENDING
        transfer = None
        for record in self._substrate.get_events(block_hash=block_hash):
            value = record.value
            if value.get("extrinsic_idx") != index:
                continue
            if value.get("module_id") == "System":
                if value.get("event_id") == "ExtrinsicSuccess":
                    status = TransactionStatus.CONFIRMED
                elif value.get("event_id") == "ExtrinsicFailed":
                    status = TransactionStatus.FAILED
            elif value.get("module_id") == TRANSFER_MODULE and value.get("event_id") == TRANSFER_EVENT:
                transfer = _transfer_fields(value.get("attributes"))
        sender, recipient, amount = transfer or ("", "", 0)
        return Transaction(
            hash=tx_hash,
            from_address=sender,
            to=recipient,
            amount=self.from_base_units(amount),
            chain=self.chain_type,
            timestamp=self._block_timestamp(block_hash),
            status=status,
            data={"block_hash": block_hash, "extrinsic_idx": index},
        )

    async def get_transaction(self, tx_hash: str) -> Transaction | None:
        """Look up an extrinsic by hash within the recent block window."""
        self._require_connected()
        return await self._call("transaction lookup", self._find_extrinsic_sync, tx_hash)

    # ------------------------------------------------------------------
    # Fees and signing
    # ------------------------------------------------------------------

    def _compose_transfer(self, request: TransactionRequest, value: int):
        return self._substrate.compose_call(
            call_module=TRANSFER_MODULE,
            call_function=TRANSFER_CALL,
            call_params={"dest": request.to, "value": value},
        )

    async def estimate_fee(self, request: TransactionRequest) -> str:
        """Runtime payment info for the transfer, signed by the loaded wallet."""
        self._require_connected()
        value = self._check_request(request)
        if self._secret is None:
            return self._fallback_fee(SigningError("no wallet loaded"))
        keypair = self._keypair(self._secret)
        try:
            call = await self._call("compose call", self._compose_transfer, request, value)
            info = await self._call(
                "payment info", self._substrate.get_payment_info, call=call, keypair=keypair
            )
            return self.from_base_units(int(info["partialFee"]))
        except (NetworkError, KeyError, TypeError, ValueError) as exc:
            return self._fallback_fee(exc)

    async def _build_and_sign(self, request: TransactionRequest, secret: bytes):
        value = self._check_request(request)
        keypair = self._keypair(secret)
        call = await self._call("compose call", self._compose_transfer, request, value)
        try:
            extrinsic = await self._in_executor(
                self._substrate.create_signed_extrinsic, call=call, keypair=keypair
            )
        except WalletError:
            raise
        except Exception as exc:
            raise SigningError(f"Polkadot signing failed: {exc}") from exc

        signature = None
        raw_signature = (extrinsic.value or {}).get("signature")
        if isinstance(raw_signature, dict) and raw_signature:
            signature = str(next(iter(raw_signature.values())))
        elif raw_signature:
            signature = str(raw_signature)

        signed = SignedTransaction(
            tx_hash=_to_hex(extrinsic.extrinsic_hash),
            signed_payload=str(extrinsic.data),
            signature=signature,
            request=request,
        )
        return signed, extrinsic, keypair

    async def sign_transaction(
        self, request: TransactionRequest, secret: bytes | str
    ) -> SignedTransaction:
        self._require_connected()
        signed, _, _ = await self._build_and_sign(request, self._coerce_secret(secret))
        return signed

    async def send_transaction(
        self, from_address: str, request: TransactionRequest
    ) -> Transaction:
        self._require_connected()
        secret = self._require_secret()
        fee = await self.estimate_fee(request)
        signed, extrinsic, keypair = await self._build_and_sign(request, secret)
        receipt = await self._call(
            "broadcast", self._substrate.submit_extrinsic, extrinsic, wait_for_inclusion=False
        )
        tx_hash = _to_hex(getattr(receipt, "extrinsic_hash", None) or signed.tx_hash)
        logger.info(f"Broadcast {request.amount} DOT to {request.to}: {tx_hash}")
        return Transaction(
            hash=tx_hash,
            from_address=keypair.ss58_address,
            to=request.to,
            amount=request.amount,
            chain=self.chain_type,
            timestamp=now_ms(),
            status=TransactionStatus.PENDING,
            fee=fee,
            data={"memo": request.memo} if request.memo else None,
        )
