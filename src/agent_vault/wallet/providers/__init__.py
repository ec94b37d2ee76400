"""Chain provider registry.

Maps each chain to its provider class. Imports are deferred so that only
the SDK of the requested chain is loaded.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

from agent_vault.wallet.chains import ChainType
from agent_vault.wallet.providers.base import ChainProvider, ConnectionState

if TYPE_CHECKING:
    from agent_vault.config import ProviderConfig

_PROVIDER_FACTORIES: dict[ChainType, str] = {
    ChainType.ETHEREUM: "agent_vault.wallet.providers.ethereum.EthereumProvider",
    ChainType.POLKADOT: "agent_vault.wallet.providers.substrate.SubstrateProvider",
    ChainType.SOLANA: "agent_vault.wallet.providers.solana.SolanaProvider",
}


def _import_provider_class(dotted_path: str) -> type[ChainProvider]:
    """Dynamically import a provider class from its fully-qualified path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    if not (isinstance(cls, type) and issubclass(cls, ChainProvider)):
        raise TypeError(
            f"Expected a ChainProvider subclass at '{dotted_path}', got {cls!r}"
        )
    return cls


def create_provider(
    chain: str | ChainType, config: ProviderConfig | None = None
) -> ChainProvider:
    """Build an unconnected provider for *chain* (name or alias)."""
    chain_type = ChainType.parse(chain)
    cls = _import_provider_class(_PROVIDER_FACTORIES[chain_type])
    return cls(config)


__all__ = ["ChainProvider", "ConnectionState", "create_provider"]
