"""Per-agent wallet file storage.

Layout::

    <base_dir>/<agent_id>/<wallet_id>.wallet

Each file is written in a single operation. The checksum is verified only
when a record is loaded; backup and restore copy raw bytes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from agent_vault.config import default_base_dir
from agent_vault.errors import InvalidWalletId, WalletNotFound
from agent_vault.wallet.models import WalletFileStats, WalletRecord
from agent_vault.wallet.serializer import deserialize_wallet, serialize_wallet

logger = logging.getLogger("agent_vault.wallet.storage")

WALLET_SUFFIX = ".wallet"


class WalletStore:
    """Reads and writes wallet records under *base_dir*."""

    def __init__(self, base_dir: Path | str | None = None) -> None:
        self.base_dir = Path(base_dir).expanduser() if base_dir else default_base_dir()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def agent_dir(self, agent_id: str) -> Path:
        if not agent_id or "/" in agent_id or "\\" in agent_id or agent_id in (".", ".."):
            raise InvalidWalletId(f"Invalid agent id: {agent_id!r}")
        return self.base_dir / agent_id

    def wallet_path(self, agent_id: str, wallet_id: str) -> Path:
        if not wallet_id or "/" in wallet_id or "\\" in wallet_id:
            raise InvalidWalletId(f"Invalid wallet id: {wallet_id!r}")
        return self.agent_dir(agent_id) / f"{wallet_id}{WALLET_SUFFIX}"

    async def _wallet_files(self, directory: Path) -> list[str]:
        if not await aiofiles.os.path.isdir(directory):
            return []
        return sorted(
            name for name in await aiofiles.os.listdir(directory)
            if name.endswith(WALLET_SUFFIX)
        )

    @staticmethod
    async def _copy(src: Path, dest: Path) -> None:
        async with aiofiles.open(src, "rb") as fh:
            data = await fh.read()
        async with aiofiles.open(dest, "wb") as fh:
            await fh.write(data)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def save(self, record: WalletRecord) -> Path:
        """Persist *record*, overwriting any existing file for its id."""
        path = self.wallet_path(record.agent_id, record.id)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        data = serialize_wallet(record)
        async with aiofiles.open(path, "wb") as fh:
            await fh.write(data)
        logger.debug(f"Saved wallet {record.id} for agent {record.agent_id} ({len(data)} bytes)")
        return path

    async def load(self, agent_id: str, wallet_id: str) -> WalletRecord | None:
        """Load a record, or ``None`` if no file exists.

        Raises
        ------
        IntegrityError
            If the file fails its checksum or cannot be decoded.
        """
        path = self.wallet_path(agent_id, wallet_id)
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "rb") as fh:
            data = await fh.read()
        return deserialize_wallet(data)

    async def delete(self, agent_id: str, wallet_id: str) -> bool:
        """Remove the wallet file. Returns False if it did not exist."""
        path = self.wallet_path(agent_id, wallet_id)
        if not await aiofiles.os.path.exists(path):
            return False
        await aiofiles.os.remove(path)
        logger.info(f"Deleted wallet {wallet_id} for agent {agent_id}")
        return True

    async def exists(self, agent_id: str, wallet_id: str) -> bool:
        return await aiofiles.os.path.exists(self.wallet_path(agent_id, wallet_id))

    async def list_wallets(self, agent_id: str) -> list[str]:
        """Wallet ids stored for *agent_id*, sorted."""
        files = await self._wallet_files(self.agent_dir(agent_id))
        return [name[: -len(WALLET_SUFFIX)] for name in files]

    async def list_agents(self) -> list[str]:
        """Agent ids that have a directory under the base dir."""
        if not await aiofiles.os.path.isdir(self.base_dir):
            return []
        agents = []
        for name in await aiofiles.os.listdir(self.base_dir):
            if await aiofiles.os.path.isdir(self.base_dir / name):
                agents.append(name)
        return sorted(agents)

    async def stats(self, agent_id: str, wallet_id: str) -> WalletFileStats | None:
        path = self.wallet_path(agent_id, wallet_id)
        if not await aiofiles.os.path.exists(path):
            return None
        st = await aiofiles.os.stat(path)
        return WalletFileStats(
            size=st.st_size,
            modified=datetime.fromtimestamp(st.st_mtime),
            created=datetime.fromtimestamp(st.st_ctime),
        )

    async def storage_size(self, agent_id: str) -> int:
        """Total size in bytes of the agent's wallet files."""
        directory = self.agent_dir(agent_id)
        total = 0
        for name in await self._wallet_files(directory):
            total += await aiofiles.os.path.getsize(directory / name)
        return total

    async def clear(self, agent_id: str) -> list[str]:
        """Delete every wallet file of *agent_id*; returns the removed ids."""
        removed = []
        for wallet_id in await self.list_wallets(agent_id):
            if await self.delete(agent_id, wallet_id):
                removed.append(wallet_id)
        return removed

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    async def backup(self, agent_id: str, dest_dir: Path | str) -> Path:
        """Copy the agent's wallet files into ``dest_dir/<agent_id>/``.

        Raises
        ------
        WalletNotFound
            If the agent has no wallet files.
        """
        source = self.agent_dir(agent_id)
        files = await self._wallet_files(source)
        if not files:
            raise WalletNotFound(f"No wallets found for agent: {agent_id}")

        target = Path(dest_dir).expanduser() / agent_id
        await aiofiles.os.makedirs(target, exist_ok=True)
        for name in files:
            await self._copy(source / name, target / name)
        logger.info(f"Backed up {len(files)} wallet(s) for agent {agent_id} to {target}")
        return target

    async def restore(self, agent_id: str, src_dir: Path | str) -> list[str]:
        """Copy ``*.wallet`` files from *src_dir* into the agent's directory.

        Returns the restored wallet ids.

        Raises
        ------
        FileNotFoundError
            If *src_dir* does not exist.
        """
        source = Path(src_dir).expanduser()
        if not await aiofiles.os.path.isdir(source):
            raise FileNotFoundError(f"Backup directory not found: {source}")

        target = self.agent_dir(agent_id)
        await aiofiles.os.makedirs(target, exist_ok=True)
        files = await self._wallet_files(source)
        for name in files:
            await self._copy(source / name, target / name)
        logger.info(f"Restored {len(files)} wallet(s) for agent {agent_id} from {source}")
        return [name[: -len(WALLET_SUFFIX)] for name in files]
