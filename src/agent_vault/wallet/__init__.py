"""Multi-chain wallet system for agent vaults.

Derives Ethereum, Polkadot and Solana keys from BIP39 phrases or raw private
keys, stores one checksummed file per wallet under each agent's directory
and exposes a uniform provider interface for balances, transfers and
history on each chain.
"""
