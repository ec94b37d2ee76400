"""Agent Vault - per-agent multi-chain wallet management.

Derives keys for Ethereum, Polkadot and Solana wallets, stores them in
checksummed binary files (one directory per agent), and talks to each
network through a common async provider interface.
"""

__version__ = "0.1.0"
