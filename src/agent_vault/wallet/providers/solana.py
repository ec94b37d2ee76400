"""Solana provider built on solana-py's AsyncClient and solders."""

from __future__ import annotations

import json
import logging

import base58
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction as SoldersTransaction

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
from agent_vault.wallet.providers.base import HISTORY_LIMIT, ChainProvider

logger = logging.getLogger("agent_vault.wallet.providers.solana")

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")


def _parse_transfer(result: dict) -> tuple[str, str, int]:
    """Extract (source, destination, lamports) from a jsonParsed transaction."""
    message = result["transaction"]["message"]
    for ix in message.get("instructions", []):
        parsed = ix.get("parsed")
        if ix.get("program") == "system" and isinstance(parsed, dict) and parsed.get("type") == "transfer":
            info = parsed["info"]
            return info["source"], info["destination"], int(info["lamports"])
    keys = message.get("accountKeys", [])
    first = keys[0] if keys else ""
    sender = first.get("pubkey", "") if isinstance(first, dict) else str(first)
    return sender, "", 0


class SolanaProvider(ChainProvider):
    """SOL transfers via the system program, with an optional memo instruction."""

    chain_type = ChainType.SOLANA
    fallback_fee = "0.000005"

    def __init__(self, config=None) -> None:
        super().__init__(config)
        self.commitment = Commitment(self.config.commitment)
        self._client: AsyncClient | None = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_client(self) -> AsyncClient:
        return AsyncClient(self.rpc_url, commitment=self.commitment)

    async def _open(self) -> None:
        self._client = self._build_client()

    async def _close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()

    async def _rpc(self, action: str, awaitable):
        try:
            return await awaitable
        except WalletError:
            raise
        except Exception as exc:
            raise NetworkError(f"Solana {action} failed: {exc}") from exc

    async def _fetch_block_number(self) -> int:
        resp = await self._rpc("slot query", self._client.get_slot())
        return int(resp.value)

    # ------------------------------------------------------------------
    # Signer
    # ------------------------------------------------------------------

    @staticmethod
    def _keypair(secret: bytes) -> Keypair:
        try:
            return Keypair.from_seed(secret[:32])
        except Exception as exc:
            raise SigningError(f"Invalid Ed25519 seed: {exc}") from exc

    def get_address(self) -> str:
        return str(self._keypair(self._require_secret()).pubkey())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        if not isinstance(address, str) or not address:
            return False
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False

    def _pubkey(self, address: str) -> Pubkey:
        if not self.validate_address(address):
            raise AddressValidationError(f"Invalid Solana address: {address}")
        return Pubkey.from_string(address)

    async def get_balance(self, address: str) -> Balance:
        self._require_connected()
        resp = await self._rpc("balance query", self._client.get_balance(self._pubkey(address)))
        return Balance(
            amount=self.from_base_units(resp.value),
            denomination=self.chain.denomination,
            chain=self.chain_type,
            address=address,
            block_number=int(resp.context.slot),
        )

    async def _fetch_parsed(self, signature: str) -> dict | None:
        resp = await self._rpc(
            "transaction lookup",
            self._client.get_transaction(
                Signature.from_string(signature),
                encoding="jsonParsed",
                max_supported_transaction_version=0,
            ),
        )
        if resp.value is None:
            return None
        return json.loads(resp.to_json())["result"]

    def _to_transaction(self, signature: str, result: dict) -> Transaction:
        sender, recipient, lamports = _parse_transfer(result)
        meta = result.get("meta") or {}
        block_time = result.get("blockTime")
        return Transaction(
            hash=signature,
            from_address=sender,
            to=recipient,
            amount=self.from_base_units(lamports),
            chain=self.chain_type,
            timestamp=int(block_time) * 1000 if block_time else now_ms(),
            status=TransactionStatus.FAILED if meta.get("err") else TransactionStatus.CONFIRMED,
            fee=self.from_base_units(meta.get("fee", 0)),
            data={"slot": result.get("slot")},
        )

    async def get_transaction_history(self, address: str) -> list[Transaction]:
        """Last signatures for *address*, each resolved to a parsed transaction."""
        self._require_connected()
        resp = await self._rpc(
            "signature query",
            self._client.get_signatures_for_address(self._pubkey(address), limit=HISTORY_LIMIT),
        )
        history: list[Transaction] = []
        for status in resp.value[:HISTORY_LIMIT]:
            signature = str(status.signature)
            try:
                result = await self._fetch_parsed(signature)
                if result is None:
                    continue
                history.append(self._to_transaction(signature, result))
            except (NetworkError, KeyError, TypeError, ValueError) as exc:
                logger.warning(f"Skipping transaction {signature}: {exc}")
        return history

    async def get_transaction(self, tx_hash: str) -> Transaction | None:
        self._require_connected()
        try:
            Signature.from_string(tx_hash)
        except ValueError:
            return None
        result = await self._fetch_parsed(tx_hash)
        if result is None:
            return None
        return self._to_transaction(tx_hash, result)

    # ------------------------------------------------------------------
    # Fees and signing
    # ------------------------------------------------------------------

    def _instructions(self, payer: Pubkey, request: TransactionRequest, lamports: int) -> list:
        instructions = [
            transfer(TransferParams(
                from_pubkey=payer,
                to_pubkey=Pubkey.from_string(request.to),
                lamports=lamports,
            ))
        ]
        if request.memo:
            instructions.append(Instruction(
                program_id=MEMO_PROGRAM_ID,
                accounts=[AccountMeta(pubkey=payer, is_signer=True, is_writable=False)],
                data=request.memo.encode("utf-8"),
            ))
        return instructions

    async def _latest_blockhash(self) -> Hash:
        resp = await self._rpc("blockhash query", self._client.get_latest_blockhash())
        return resp.value.blockhash

    async def estimate_fee(self, request: TransactionRequest) -> str:
        self._require_connected()
        lamports = self._check_request(request)
        payer = self._keypair(self._secret).pubkey() if self._secret else Pubkey.from_string(request.to)
        try:
            blockhash = await self._latest_blockhash()
            message = Message.new_with_blockhash(
                self._instructions(payer, request, lamports), payer, blockhash
            )
            resp = await self._rpc("fee query", self._client.get_fee_for_message(message))
        except NetworkError as exc:
            return self._fallback_fee(exc)
        if resp.value is None:
            return self._fallback_fee(NetworkError("blockhash expired"))
        return self.from_base_units(resp.value)

    async def _build_and_sign(self, request: TransactionRequest, secret: bytes) -> SoldersTransaction:
        lamports = self._check_request(request)
        keypair = self._keypair(secret)
        blockhash = await self._latest_blockhash()
        message = Message.new_with_blockhash(
            self._instructions(keypair.pubkey(), request, lamports), keypair.pubkey(), blockhash
        )
        try:
            return SoldersTransaction([keypair], message, blockhash)
        except Exception as exc:
            raise SigningError(f"Solana signing failed: {exc}") from exc

    async def sign_transaction(
        self, request: TransactionRequest, secret: bytes | str
    ) -> SignedTransaction:
        self._require_connected()
        tx = await self._build_and_sign(request, self._coerce_secret(secret))
        signature = str(tx.signatures[0])
        return SignedTransaction(
            tx_hash=signature,
            signed_payload=bytes(tx).hex(),
            signature=signature,
            request=request,
        )

    async def send_transaction(
        self, from_address: str, request: TransactionRequest
    ) -> Transaction:
        self._require_connected()
        secret = self._require_secret()
        fee = await self.estimate_fee(request)
        tx = await self._build_and_sign(request, secret)
        resp = await self._rpc("broadcast", self._client.send_raw_transaction(bytes(tx)))
        signature = str(resp.value)
        logger.info(f"Broadcast {request.amount} SOL to {request.to}: {signature}")
        return Transaction(
            hash=signature,
            from_address=str(self._keypair(secret).pubkey()),
            to=request.to,
            amount=request.amount,
            chain=self.chain_type,
            timestamp=now_ms(),
            status=TransactionStatus.PENDING,
            fee=fee,
            data={"memo": request.memo} if request.memo else None,
        )
