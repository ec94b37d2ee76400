"""High-level wallet manager used by the CLI and by agent runtimes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from agent_vault.config import VaultConfig
from agent_vault.errors import IntegrityError, WalletNotFound
from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.derivation import derive_wallet_key, generate_seed_phrase
from agent_vault.wallet.export import build_bundle, dumps_bundle, loads_bundle
from agent_vault.wallet.models import (
    CreationMethod,
    ExportFormat,
    ImportResult,
    WalletCreationOptions,
    WalletRecord,
    new_wallet_id,
    now_ms,
)
from agent_vault.wallet.providers import create_provider
from agent_vault.wallet.storage import WalletStore

if TYPE_CHECKING:
    from agent_vault.config import ProviderConfig
    from agent_vault.wallet.providers import ChainProvider

logger = logging.getLogger("agent_vault.wallet.manager")

CONFLICT_MODES = ("skip", "overwrite", "rename")


class ConnectionCache:
    """Live providers keyed by ``agent_id:wallet_id``.

    Unsynchronised; callers serialise concurrent access to the same key.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ChainProvider] = {}

    @staticmethod
    def key(agent_id: str, wallet_id: str) -> str:
        return f"{agent_id}:{wallet_id}"

    def put(self, agent_id: str, wallet_id: str, provider: ChainProvider) -> None:
        self._providers[self.key(agent_id, wallet_id)] = provider

    def get(self, agent_id: str, wallet_id: str) -> Optional[ChainProvider]:
        return self._providers.get(self.key(agent_id, wallet_id))

    def evict(self, agent_id: str, wallet_id: str) -> Optional[ChainProvider]:
        return self._providers.pop(self.key(agent_id, wallet_id), None)

    def keys(self) -> list[str]:
        return list(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


class WalletManager:
    """Orchestrates key derivation, the wallet store and provider connections."""

    def __init__(
        self,
        store: WalletStore | None = None,
        cache: ConnectionCache | None = None,
        config: VaultConfig | None = None,
    ) -> None:
        self.config = config or VaultConfig()
        self.store = store or WalletStore(self.config.wallet_dir())
        self.cache = cache if cache is not None else ConnectionCache()

    # ------------------------------------------------------------------
    # Creation / import
    # ------------------------------------------------------------------

    async def create_wallet(self, options: WalletCreationOptions) -> WalletRecord:
        """Derive the key for *options*, persist the record and return it.

        Raises
        ------
        InvalidSeedPhrase
            If a seed-based method is given an invalid phrase.
        UnsupportedCreationMethod
            If the method is unknown or its secret is missing.
        """
        method = CreationMethod(options.method)
        derived = derive_wallet_key(
            method,
            seed_phrase=options.seed_phrase,
            private_key=options.private_key,
            derivation_path=options.derivation_path,
            chain=options.chain,
        )
        now = now_ms()
        record = WalletRecord(
            id=options.wallet_id or new_wallet_id(),
            agent_id=options.agent_id,
            chain=options.chain,
            address=derived.address,
            private_key=derived.private_key if not method.uses_mnemonic else None,
            mnemonic=" ".join(options.seed_phrase.split()) if method.uses_mnemonic else None,
            seed_derivation_path=derived.derivation_path,
            created_at=now,
            updated_at=now,
            creation_method=method,
            chain_metadata=options.chain_metadata,
        )
        await self.store.save(record)
        logger.info(
            f"Created {record.chain.value} wallet {record.id} for agent "
            f"{record.agent_id} via {method.value}"
        )
        return record

    async def import_wallet_from_private_key(
        self,
        agent_id: str,
        chain: str | ChainType,
        private_key: str,
        wallet_id: str | None = None,
    ) -> WalletRecord:
        return await self.create_wallet(WalletCreationOptions(
            agent_id=agent_id,
            chain=ChainType.parse(chain),
            method=CreationMethod.PRIVATE_KEY,
            private_key=private_key,
            wallet_id=wallet_id,
        ))

    async def import_wallet_from_seed(
        self,
        agent_id: str,
        chain: str | ChainType,
        seed_phrase: str,
        derivation_path: str | None = None,
        wallet_id: str | None = None,
    ) -> WalletRecord:
        return await self.create_wallet(WalletCreationOptions(
            agent_id=agent_id,
            chain=ChainType.parse(chain),
            method=CreationMethod.SEED,
            seed_phrase=seed_phrase,
            derivation_path=derivation_path,
            wallet_id=wallet_id,
        ))

    async def import_wallet_from_mnemonic(
        self,
        agent_id: str,
        chain: str | ChainType,
        mnemonic: str,
        derivation_path: str | None = None,
        wallet_id: str | None = None,
    ) -> WalletRecord:
        return await self.create_wallet(WalletCreationOptions(
            agent_id=agent_id,
            chain=ChainType.parse(chain),
            method=CreationMethod.MNEMONIC,
            seed_phrase=mnemonic,
            derivation_path=derivation_path,
            wallet_id=wallet_id,
        ))

    async def generate_wallet(
        self,
        agent_id: str,
        chain: str | ChainType,
        derivation_path: str | None = None,
        strength: int = 128,
        wallet_id: str | None = None,
    ) -> WalletRecord:
        """Create a wallet from a freshly generated seed phrase."""
        phrase = generate_seed_phrase(strength)
        return await self.create_wallet(WalletCreationOptions(
            agent_id=agent_id,
            chain=ChainType.parse(chain),
            method=CreationMethod.GENERATE,
            seed_phrase=phrase,
            derivation_path=derivation_path,
            wallet_id=wallet_id,
        ))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_wallet(self, agent_id: str, wallet_id: str) -> WalletRecord | None:
        return await self.store.load(agent_id, wallet_id)

    async def require_wallet(self, agent_id: str, wallet_id: str) -> WalletRecord:
        record = await self.store.load(agent_id, wallet_id)
        if record is None:
            raise WalletNotFound(f"Wallet {wallet_id} not found for agent {agent_id}")
        return record

    async def list_agent_wallets(self, agent_id: str) -> list[WalletRecord]:
        records = []
        for wallet_id in await self.store.list_wallets(agent_id):
            record = await self.store.load(agent_id, wallet_id)
            if record is not None:
                records.append(record)
        return records

    async def has_wallet(self, agent_id: str, wallet_id: str) -> bool:
        return await self.store.exists(agent_id, wallet_id)

    async def list_agents(self) -> list[str]:
        return await self.store.list_agents()

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def _evict(self, agent_id: str, wallet_id: str) -> None:
        provider = self.cache.evict(agent_id, wallet_id)
        if provider is not None:
            await provider.disconnect()

    async def remove_wallet(self, agent_id: str, wallet_id: str) -> bool:
        """Delete the wallet file and drop its cached connection."""
        removed = await self.store.delete(agent_id, wallet_id)
        await self._evict(agent_id, wallet_id)
        return removed

    async def clear_agent_wallets(self, agent_id: str) -> int:
        """Remove every wallet of *agent_id*; returns how many were deleted."""
        count = 0
        for wallet_id in await self.store.list_wallets(agent_id):
            if await self.remove_wallet(agent_id, wallet_id):
                count += 1
        logger.info(f"Cleared {count} wallet(s) for agent {agent_id}")
        return count

    # ------------------------------------------------------------------
    # Connection cache
    # ------------------------------------------------------------------

    def cache_wallet_connection(
        self, agent_id: str, wallet_id: str, provider: ChainProvider
    ) -> None:
        self.cache.put(agent_id, wallet_id, provider)

    def get_cached_connection(self, agent_id: str, wallet_id: str) -> ChainProvider | None:
        return self.cache.get(agent_id, wallet_id)

    def clear_cached_connection(self, agent_id: str, wallet_id: str) -> None:
        self.cache.evict(agent_id, wallet_id)

    async def disconnect_wallet(self, agent_id: str, wallet_id: str) -> None:
        """Drop the cached connection for the wallet and close its transport."""
        await self._evict(agent_id, wallet_id)

    async def connect_wallet(
        self,
        agent_id: str,
        wallet_id: str,
        config: ProviderConfig | None = None,
    ) -> ChainProvider:
        """Return a connected provider with the wallet's secret loaded.

        A connected provider already cached for the wallet is reused.
        """
        cached = self.cache.get(agent_id, wallet_id)
        if cached is not None and cached.is_connected:
            return cached

        record = await self.require_wallet(agent_id, wallet_id)
        provider = create_provider(
            record.chain, config or self.config.providers.for_chain(record.chain)
        )
        provider.load_wallet(record)
        await provider.connect()
        self.cache.put(agent_id, wallet_id, provider)
        return provider

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    async def export_wallets(
        self,
        agent_id: str,
        format: ExportFormat | str = ExportFormat.JSON,
        password: str | None = None,
    ) -> str:
        """Serialize all wallets of *agent_id* as a (possibly encrypted) bundle.

        Raises
        ------
        WalletNotFound
            If the agent has no wallets.
        """
        wallets = await self.list_agent_wallets(agent_id)
        if not wallets:
            raise WalletNotFound(f"No wallets found for agent: {agent_id}")
        bundle = build_bundle(agent_id, wallets, format)
        text = dumps_bundle(bundle, password)
        logger.info(f"Exported {len(wallets)} wallet(s) for agent {agent_id} as {bundle.format.value}")
        return text

    @staticmethod
    def _verify_address(record: WalletRecord) -> None:
        if record.creation_method is CreationMethod.PRIVATE_KEY:
            derived = derive_wallet_key(
                CreationMethod.PRIVATE_KEY,
                private_key=record.private_key,
                chain=record.chain,
            )
        else:
            derived = derive_wallet_key(
                record.creation_method,
                seed_phrase=record.mnemonic,
                derivation_path=record.seed_derivation_path,
                chain=record.chain,
            )
        if derived.address != record.address:
            raise IntegrityError(
                f"Wallet {record.id}: address {record.address} does not match "
                f"its key material ({derived.address})"
            )

    async def import_wallets(
        self,
        agent_id: str,
        text: str,
        password: str | None = None,
        conflict: str = "skip",
    ) -> ImportResult:
        """Import a bundle into *agent_id*'s wallets.

        Every record is verified before anything is written. *conflict*
        decides what happens when a wallet id already exists: ``skip``,
        ``overwrite`` or ``rename`` (store under a fresh id).

        Raises
        ------
        InvalidBundleError, BundleDecryptionError
            If the bundle cannot be read.
        IntegrityError
            If a record's address does not match its key material.
        """
        if conflict not in CONFLICT_MODES:
            raise ValueError(f"Unknown conflict mode '{conflict}'; use one of {CONFLICT_MODES}")
        bundle = loads_bundle(text, password)
        for record in bundle.wallets:
            self._verify_address(record)

        result = ImportResult()
        for record in bundle.wallets:
            record = record.model_copy(update={"agent_id": agent_id})
            if await self.store.exists(agent_id, record.id):
                if conflict == "skip":
                    result.skipped.append(record.id)
                    continue
                if conflict == "overwrite":
                    await self.store.save(record)
                    await self._evict(agent_id, record.id)
                    result.overwritten.append(record.id)
                    continue
                new_id = new_wallet_id()
                result.renamed[record.id] = new_id
                record = record.model_copy(update={"id": new_id})
            await self.store.save(record)
            result.imported.append(record.id)

        logger.info(
            f"Imported bundle into agent {agent_id}: {len(result.imported)} imported, "
            f"{len(result.skipped)} skipped, {len(result.overwritten)} overwritten"
        )
        return result
