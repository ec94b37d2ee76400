"""Configuration system for the agent vault.

Loads settings from ``~/.agent-vault/config.yaml`` (or ``$AGENT_VAULT_HOME``),
supports ``${VAR}`` environment variable expansion and provides the default
wallet storage location.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from agent_vault.wallet.chains import ChainType

HOME_ENV_VAR = "AGENT_VAULT_HOME"


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    Unset variables are left as-is.
    """

    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def is_unresolved(value: str | None) -> bool:
    """True for empty values and placeholders whose variable was not set."""
    return not value or _ENV_VAR_RE.search(value) is not None


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class ProviderConfig(BaseModel):
    """Connection settings for one chain provider."""

    rpc_url: Optional[str] = None     # falls back to env var, then public endpoint
    testnet: bool = False
    api_key: str = ""                 # ${ETHERSCAN_API_KEY}, enables explorer history
    explorer_api_url: Optional[str] = None
    chain_id: Optional[int] = None    # ethereum only
    ss58_format: int = 0              # polkadot only
    commitment: str = "confirmed"     # solana only


class ProvidersConfig(BaseModel):
    ethereum: ProviderConfig = Field(default_factory=ProviderConfig)
    polkadot: ProviderConfig = Field(default_factory=ProviderConfig)
    solana: ProviderConfig = Field(default_factory=ProviderConfig)

    def for_chain(self, chain: str | ChainType) -> ProviderConfig:
        return getattr(self, ChainType.parse(chain).value)


class StorageConfig(BaseModel):
    base_dir: Optional[str] = None    # default: <root>/wallets


class LoggingConfig(BaseModel):
    level: str = "WARNING"


class VaultConfig(BaseModel):
    """Root configuration object."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)

    def wallet_dir(self) -> Path:
        """Resolved wallet storage directory."""
        if self.storage.base_dir:
            return Path(self.storage.base_dir).expanduser()
        return default_base_dir()


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_root_dir() -> Path:
    """Return the vault root directory (no auto-create).

    ``$AGENT_VAULT_HOME`` wins over the default ``~/.agent-vault``.
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".agent-vault"


def default_base_dir() -> Path:
    return get_root_dir() / "wallets"


def default_config_path() -> Path:
    return get_root_dir() / "config.yaml"


def load_config(path: Path | None = None) -> VaultConfig:
    """Load and validate the configuration from a YAML file.

    A missing file yields the defaults. Environment variable placeholders
    (``${VAR}``) are expanded before validation.
    """
    path = path or default_config_path()
    if not path.exists():
        return VaultConfig()
    raw_data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    expanded = _expand_env_recursive(raw_data)
    return VaultConfig.model_validate(expanded)


def save_config(config: VaultConfig, path: Path | None = None) -> None:
    """Serialize a :class:`VaultConfig` to a YAML file."""
    path = path or default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
