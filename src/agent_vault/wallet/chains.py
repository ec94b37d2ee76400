"""Chain definitions for the three supported wallet families."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum

from agent_vault.errors import TransactionBuildError, UnknownChainError

logger = logging.getLogger("agent_vault.wallet.chains")


class ChainType(str, Enum):
    ETHEREUM = "ethereum"
    POLKADOT = "polkadot"
    SOLANA = "solana"

    @classmethod
    def parse(cls, value: str | ChainType) -> ChainType:
        """Resolve a chain name or alias (``cketh``, ``sol``, ...) to a member."""
        if isinstance(value, ChainType):
            return value
        key = str(value).strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        raise UnknownChainError(
            f"Unknown chain '{value}'. Available: {list_chain_names()}"
        )


_ALIASES: dict[str, ChainType] = {
    "ethereum": ChainType.ETHEREUM,
    "eth": ChainType.ETHEREUM,
    "cketh": ChainType.ETHEREUM,
    "ethereum-like": ChainType.ETHEREUM,
    "polkadot": ChainType.POLKADOT,
    "dot": ChainType.POLKADOT,
    "substrate": ChainType.POLKADOT,
    "substrate-like": ChainType.POLKADOT,
    "solana": ChainType.SOLANA,
    "sol": ChainType.SOLANA,
    "solana-like": ChainType.SOLANA,
}


@dataclass(frozen=True)
class Chain:
    """A supported network family and its public endpoints."""

    name: ChainType
    denomination: str
    decimals: int
    default_derivation_path: str
    mainnet_rpc_url: str
    testnet_rpc_url: str
    mainnet_env_var: str
    testnet_env_var: str
    explorer_url: str

    @property
    def base_unit(self) -> int:
        return 10 ** self.decimals


CHAINS: dict[ChainType, Chain] = {
    ChainType.ETHEREUM: Chain(
        name=ChainType.ETHEREUM,
        denomination="ETH",
        decimals=18,
        default_derivation_path="m/44'/60'/0'/0/0",
        mainnet_rpc_url="https://eth.llamarpc.com",
        testnet_rpc_url="https://rpc.sepolia.org",
        mainnet_env_var="ETHEREUM_RPC_URL",
        testnet_env_var="SEPOLIA_RPC_URL",
        explorer_url="https://etherscan.io",
    ),
    ChainType.POLKADOT: Chain(
        name=ChainType.POLKADOT,
        denomination="DOT",
        decimals=10,
        default_derivation_path="//hard//stash",
        mainnet_rpc_url="wss://rpc.polkadot.io",
        testnet_rpc_url="wss://westend-rpc.polkadot.io",
        mainnet_env_var="POLKADOT_RPC_URL",
        testnet_env_var="WESTEND_RPC_URL",
        explorer_url="https://polkadot.subscan.io",
    ),
    ChainType.SOLANA: Chain(
        name=ChainType.SOLANA,
        denomination="SOL",
        decimals=9,
        default_derivation_path="m/44'/501'/0'/0'/0'",
        mainnet_rpc_url="https://api.mainnet-beta.solana.com",
        testnet_rpc_url="https://api.devnet.solana.com",
        mainnet_env_var="SOLANA_RPC_URL",
        testnet_env_var="SOLANA_DEVNET_RPC_URL",
        explorer_url="https://explorer.solana.com",
    ),
}


def get_chain(name: str | ChainType) -> Chain:
    """Get a chain by name or alias. Raises ``UnknownChainError`` if not found."""
    return CHAINS[ChainType.parse(name)]


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return [c.value for c in CHAINS]


def get_default_derivation_path(chain: str | ChainType) -> str:
    return get_chain(chain).default_derivation_path


def resolve_rpc_url(
    chain: str | ChainType,
    testnet: bool = False,
    explicit: str | None = None,
) -> str:
    """Pick the RPC endpoint for *chain*.

    Priority: explicitly configured URL, then the chain's environment
    variable (plus ``INFURA_API_KEY`` for Ethereum), then the public
    endpoint, which is rate-limited and logged as a warning.
    """
    info = get_chain(chain)
    if explicit and "YOUR-API-KEY" not in explicit:
        return explicit

    env_var = info.testnet_env_var if testnet else info.mainnet_env_var
    env_url = os.environ.get(env_var)
    if env_url:
        return env_url

    if info.name is ChainType.ETHEREUM:
        infura_key = os.environ.get("INFURA_API_KEY")
        if infura_key:
            network = "sepolia" if testnet else "mainnet"
            return f"https://{network}.infura.io/v3/{infura_key}"

    public_url = info.testnet_rpc_url if testnet else info.mainnet_rpc_url
    logger.warning(
        f"Using public RPC endpoint {public_url} for {info.name.value}. "
        f"Set {env_var} for better reliability."
    )
    return public_url


# ---------------------------------------------------------------------------
# Amount conversion
# ---------------------------------------------------------------------------


def to_base_units(amount: str | Decimal | int, decimals: int) -> int:
    """Convert a human amount (``"1.5"``) into integer base units, rounding down."""
    try:
        value = Decimal(str(amount).replace(",", "").strip())
    except (InvalidOperation, ValueError) as exc:
        raise TransactionBuildError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite() or value < 0:
        raise TransactionBuildError(f"Invalid amount: {amount!r}")
    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(value: int | str, decimals: int) -> str:
    """Convert integer base units into a plain decimal string (``"1.5"``)."""
    amount = Decimal(int(value)) / (Decimal(10) ** decimals)
    text = format(amount.normalize(), "f")
    return text
