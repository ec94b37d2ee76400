"""CLI for the agent vault - manage per-agent multi-chain wallets from the terminal."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_vault.config import load_config
from agent_vault.errors import WalletError
from agent_vault.wallet.chains import ChainType, get_chain, list_chain_names
from agent_vault.wallet.derivation import resolve_signing_key
from agent_vault.wallet.export import is_encrypted
from agent_vault.wallet.manager import CONFLICT_MODES, WalletManager
from agent_vault.wallet.models import ExportFormat, TransactionRequest

app = typer.Typer(
    name="agent-vault",
    help="Per-agent wallets for Ethereum, Polkadot and Solana.",
    no_args_is_help=True,
)
console = Console()

_config_path: Path | None = None


def _version_callback(value: bool):
    if value:
        from agent_vault import __version__
        console.print(f"agent-vault {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Path = typer.Option(
        None,
        "--config",
        help="Path to config.yaml (default: ~/.agent-vault/config.yaml)",
        envvar="AGENT_VAULT_CONFIG",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Per-agent wallets for Ethereum, Polkadot and Solana."""
    global _config_path
    _config_path = config
    level = "DEBUG" if verbose else load_config(_config_path).logging.level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(coro):
    """Run an async function synchronously."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Already inside a loop (e.g. a notebook): run on a worker thread.
    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor() as pool:
        return pool.submit(asyncio.run, coro).result()


def _execute(coro):
    """Run *coro*, turning vault errors into a red message and exit code 1."""
    try:
        return _run(coro)
    except WalletError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _manager() -> WalletManager:
    return WalletManager(config=load_config(_config_path))


def _chain(value: str) -> ChainType:
    try:
        return ChainType.parse(value)
    except WalletError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _fmt_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


_CHAIN_HELP = f"Chain ({', '.join(list_chain_names())} or an alias)"


# ------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------


def _created_panel(record, mnemonic: str | None = None) -> Panel:
    body = (
        f"[bold green]Wallet created![/bold green]\n\n"
        f"ID:      [cyan]{record.id}[/cyan]\n"
        f"Chain:   {record.chain.value}\n"
        f"Address: [cyan]{record.address}[/cyan]\n"
        f"Path:    {record.seed_derivation_path}"
    )
    if mnemonic:
        body += (
            f"\n\n[bold yellow]Seed phrase:[/bold yellow] {mnemonic}\n"
            f"[dim]Write it down and keep it offline.[/dim]"
        )
    return Panel(body, title=f"Agent {record.agent_id}")


@app.command()
def generate(
    agent: str = typer.Argument(help="Agent ID"),
    chain: str = typer.Option("ethereum", "--chain", "-c", help=_CHAIN_HELP),
    path: str = typer.Option(None, "--path", "-p", help="Derivation path override"),
    words: int = typer.Option(12, "--words", "-w", help="Seed phrase length (12 or 24)"),
    show_mnemonic: bool = typer.Option(False, "--show-mnemonic", help="Print the new seed phrase"),
):
    """Generate a new wallet from a fresh seed phrase."""
    if words not in (12, 24):
        console.print("[red]--words must be 12 or 24.[/red]")
        raise typer.Exit(1)
    chain_type = _chain(chain)
    strength = 128 if words == 12 else 256

    record = _execute(_manager().generate_wallet(
        agent, chain_type, derivation_path=path, strength=strength
    ))
    console.print(_created_panel(record, record.mnemonic if show_mnemonic else None))


@app.command("import-key")
def import_key(
    agent: str = typer.Argument(help="Agent ID"),
    chain: str = typer.Option("ethereum", "--chain", "-c", help=_CHAIN_HELP),
    key: str = typer.Option(None, "--key", "-k", help="Hex private key (prompted if omitted)"),
):
    """Import a wallet from a raw private key."""
    chain_type = _chain(chain)
    if not key:
        key = typer.prompt("Private key", hide_input=True)
    record = _execute(_manager().import_wallet_from_private_key(agent, chain_type, key))
    console.print(_created_panel(record))


@app.command("import-seed")
def import_seed(
    agent: str = typer.Argument(help="Agent ID"),
    chain: str = typer.Option("ethereum", "--chain", "-c", help=_CHAIN_HELP),
    path: str = typer.Option(None, "--path", "-p", help="Derivation path override"),
    phrase: str = typer.Option(None, "--phrase", help="Seed phrase (prompted if omitted)"),
    mnemonic: bool = typer.Option(False, "--mnemonic", help="Record the creation method as 'mnemonic'"),
):
    """Import a wallet from a 12 or 24 word seed phrase."""
    chain_type = _chain(chain)
    if not phrase:
        phrase = typer.prompt("Seed phrase", hide_input=True)
    manager = _manager()
    importer = (
        manager.import_wallet_from_mnemonic if mnemonic else manager.import_wallet_from_seed
    )
    record = _execute(importer(agent, chain_type, phrase, derivation_path=path))
    console.print(_created_panel(record))


# ------------------------------------------------------------------
# Inspection
# ------------------------------------------------------------------


@app.command("list")
def list_wallets(agent: str = typer.Argument(help="Agent ID")):
    """List an agent's wallets."""
    records = _execute(_manager().list_agent_wallets(agent))
    if not records:
        console.print(f"[dim]No wallets for agent {agent}.[/dim]")
        return

    table = Table(title=f"Wallets of {agent}")
    table.add_column("ID", style="dim")
    table.add_column("Chain", style="cyan")
    table.add_column("Address")
    table.add_column("Method")
    table.add_column("Created")
    for r in records:
        table.add_row(r.id, r.chain.value, r.address, r.creation_method.value, _fmt_ms(r.created_at))
    console.print(table)


@app.command()
def show(
    agent: str = typer.Argument(help="Agent ID"),
    wallet_id: str = typer.Argument(help="Wallet ID"),
):
    """Show one wallet (secrets are never printed)."""
    manager = _manager()

    async def _show():
        record = await manager.require_wallet(agent, wallet_id)
        stats = await manager.store.stats(agent, wallet_id)
        return record, stats

    record, stats = _execute(_show())
    chain = get_chain(record.chain)
    console.print(Panel(
        f"Chain:    {record.chain.value} ({chain.denomination})\n"
        f"Address:  [cyan]{record.address}[/cyan]\n"
        f"Method:   {record.creation_method.value}\n"
        f"Path:     {record.seed_derivation_path or '-'}\n"
        f"Created:  {_fmt_ms(record.created_at)}\n"
        f"Updated:  {_fmt_ms(record.updated_at)}\n"
        f"File:     {stats.size if stats else 0} bytes\n"
        f"Explorer: {chain.explorer_url}",
        title=f"Wallet {record.id}",
    ))


@app.command()
def agents():
    """List agents that have wallets."""
    manager = _manager()

    async def _agents():
        result = []
        for agent_id in await manager.list_agents():
            wallets = await manager.store.list_wallets(agent_id)
            size = await manager.store.storage_size(agent_id)
            result.append((agent_id, len(wallets), size))
        return result

    rows = _execute(_agents())
    if not rows:
        console.print("[dim]No agents found.[/dim]")
        return
    table = Table(title="Agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Wallets", justify="right")
    table.add_column("Bytes", justify="right")
    for agent_id, count, size in rows:
        table.add_row(agent_id, str(count), str(size))
    console.print(table)


@app.command()
def remove(
    agent: str = typer.Argument(help="Agent ID"),
    wallet_id: str = typer.Argument(help="Wallet ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a wallet file."""
    if not yes:
        typer.confirm(f"Delete wallet {wallet_id} of {agent}? This cannot be undone.", abort=True)
    removed = _execute(_manager().remove_wallet(agent, wallet_id))
    if not removed:
        console.print(f"[yellow]Wallet {wallet_id} not found.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[bold]Wallet {wallet_id} removed.[/bold]")


# ------------------------------------------------------------------
# Chain operations
# ------------------------------------------------------------------


@app.command()
def balance(
    agent: str = typer.Argument(help="Agent ID"),
    wallet_id: str = typer.Argument(help="Wallet ID"),
):
    """Show the on-chain balance of a wallet's signer address."""
    manager = _manager()

    async def _balance():
        provider = await manager.connect_wallet(agent, wallet_id)
        try:
            return await provider.get_balance(provider.get_address())
        finally:
            await manager.disconnect_wallet(agent, wallet_id)

    result = _execute(_balance())
    console.print(
        f"[bold]{result.chain.value}:[/bold] {result.amount} {result.denomination} "
        f"[dim]({result.address} @ {result.block_number})[/dim]"
    )


@app.command()
def history(
    agent: str = typer.Argument(help="Agent ID"),
    wallet_id: str = typer.Argument(help="Wallet ID"),
):
    """Show recent transactions of a wallet's signer address."""
    manager = _manager()

    async def _history():
        provider = await manager.connect_wallet(agent, wallet_id)
        try:
            return await provider.get_transaction_history(provider.get_address())
        finally:
            await manager.disconnect_wallet(agent, wallet_id)

    txs = _execute(_history())
    if not txs:
        console.print("[dim]No recent transactions.[/dim]")
        return

    table = Table(title="Recent Transactions")
    table.add_column("Hash", style="dim")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Time")
    status_colors = {"pending": "yellow", "confirmed": "green", "failed": "red"}
    for tx in txs:
        color = status_colors.get(tx.status.value, "white")
        table.add_row(
            tx.hash[:14] + "...",
            tx.from_address[:12] + "...",
            (tx.to or "-")[:12] + "...",
            tx.amount,
            f"[{color}]{tx.status.value}[/{color}]",
            _fmt_ms(tx.timestamp),
        )
    console.print(table)


@app.command()
def sign(
    agent: str = typer.Argument(help="Agent ID"),
    wallet_id: str = typer.Argument(help="Wallet ID"),
    to: str = typer.Option(..., "--to", "-t", help="Recipient address"),
    amount: str = typer.Option(..., "--amount", "-a", help="Amount in whole units (e.g. 0.01)"),
    memo: str = typer.Option(None, "--memo", "-m", help="Optional memo"),
):
    """Build and sign a transfer without broadcasting it."""
    manager = _manager()

    async def _sign():
        record = await manager.require_wallet(agent, wallet_id)
        provider = await manager.connect_wallet(agent, wallet_id)
        try:
            request = TransactionRequest(to=to, amount=amount, chain=record.chain, memo=memo)
            return await provider.sign_transaction(request, resolve_signing_key(record))
        finally:
            await manager.disconnect_wallet(agent, wallet_id)

    signed = _execute(_sign())
    console.print(Panel(
        f"Tx hash:   [cyan]{signed.tx_hash}[/cyan]\n"
        f"Signature: {signed.signature or '-'}\n\n"
        f"[dim]{signed.signed_payload}[/dim]",
        title="Signed Transaction",
    ))


@app.command()
def send(
    agent: str = typer.Argument(help="Agent ID"),
    wallet_id: str = typer.Argument(help="Wallet ID"),
    to: str = typer.Option(..., "--to", "-t", help="Recipient address"),
    amount: str = typer.Option(..., "--amount", "-a", help="Amount in whole units (e.g. 0.01)"),
    memo: str = typer.Option(None, "--memo", "-m", help="Optional memo"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Sign and broadcast a native transfer."""
    manager = _manager()
    record = _execute(manager.require_wallet(agent, wallet_id))
    chain = get_chain(record.chain)

    console.print(f"\n[bold]Send {amount} {chain.denomination} on {chain.name.value}[/bold]")
    console.print(f"  To: {to}")
    console.print(f"  Explorer: {chain.explorer_url}\n")
    if not yes:
        typer.confirm("Confirm this transaction?", abort=True)

    async def _send():
        provider = await manager.connect_wallet(agent, wallet_id)
        try:
            request = TransactionRequest(to=to, amount=amount, chain=record.chain, memo=memo)
            return await provider.send_transaction(provider.get_address(), request)
        finally:
            await manager.disconnect_wallet(agent, wallet_id)

    tx = _execute(_send())
    console.print(Panel(
        f"[bold green]Transaction sent![/bold green]\n\n"
        f"Tx:  [cyan]{tx.hash}[/cyan]\n"
        f"Fee: {tx.fee or '-'} {chain.denomination}\n"
        f"Explorer: {chain.explorer_url}/tx/{tx.hash}",
        title="Transaction Sent",
    ))


# ------------------------------------------------------------------
# Export / import / backup
# ------------------------------------------------------------------


@app.command("export")
def export_cmd(
    agent: str = typer.Argument(help="Agent ID"),
    output: Path = typer.Option(..., "--output", "-o", help="Destination JSON file"),
    encrypt: bool = typer.Option(False, "--encrypt", "-e", help="Password-encrypt the bundle"),
    password: str = typer.Option(None, "--password", help="Encryption password (prompted if omitted)"),
):
    """Export all wallets of an agent to a JSON bundle."""
    fmt = ExportFormat.ENCRYPTED if encrypt else ExportFormat.JSON
    if encrypt and not password:
        password = typer.prompt("Bundle password", hide_input=True, confirmation_prompt=True)

    text = _execute(_manager().export_wallets(agent, fmt, password))
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    console.print(f"[bold green]Exported wallets of {agent} to {output}[/bold green] ({fmt.value})")
    if not encrypt:
        console.print("[yellow]The bundle contains plaintext secrets. Store it securely.[/yellow]")


@app.command("import")
def import_cmd(
    agent: str = typer.Argument(help="Agent ID"),
    source: Path = typer.Argument(help="Bundle JSON file"),
    conflict: str = typer.Option("skip", "--conflict", help=f"On id clash: {', '.join(CONFLICT_MODES)}"),
    password: str = typer.Option(None, "--password", help="Decryption password (prompted if needed)"),
):
    """Import wallets from an exported bundle."""
    if not source.exists():
        console.print(f"[red]Bundle file not found: {source}[/red]")
        raise typer.Exit(1)
    text = source.read_text(encoding="utf-8")
    try:
        encrypted = is_encrypted(json.loads(text))
    except (json.JSONDecodeError, AttributeError):
        encrypted = False
    if encrypted and not password:
        password = typer.prompt("Bundle password", hide_input=True)

    try:
        result = _execute(_manager().import_wallets(agent, text, password, conflict))
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold green]Imported {len(result.imported)} wallet(s) into {agent}.[/bold green]")
    for old, new in result.renamed.items():
        console.print(f"  renamed {old} -> {new}")
    if result.overwritten:
        console.print(f"  overwritten: {', '.join(result.overwritten)}")
    if result.skipped:
        console.print(f"  [yellow]skipped existing: {', '.join(result.skipped)}[/yellow]")


@app.command()
def backup(
    agent: str = typer.Argument(help="Agent ID"),
    dest: Path = typer.Argument(help="Backup directory"),
):
    """Copy an agent's raw wallet files into DEST/<agent>/."""
    target = _execute(_manager().store.backup(agent, dest))
    console.print(f"[bold green]Backed up wallets of {agent} to {target}[/bold green]")


@app.command()
def restore(
    agent: str = typer.Argument(help="Agent ID"),
    src: Path = typer.Argument(help="Directory holding .wallet files"),
):
    """Restore raw wallet files into an agent's directory."""
    try:
        restored = _execute(_manager().store.restore(agent, src))
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[bold green]Restored {len(restored)} wallet(s) for {agent}.[/bold green]")


if __name__ == "__main__":
    app()
