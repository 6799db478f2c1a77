"""CLI interface for ledgerq."""

import asyncio
import click
import random
import sys
from typing import Optional
from pydantic import ValidationError
from . import backoff
from .feed import read_snapshots, read_trades
from .ledger import FileLedger, FlakySink, LedgerBook
from .logging_cfg import setup_logging
from .orchestrator import Orchestrator
from .queue import RetryScheduler
from .settings import Settings
from .storage import Storage


# Global storage instance
_storage: Optional[Storage] = None


def get_settings() -> Settings:
    return Settings()


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(get_settings().data_dir)
    return _storage


@click.group()
@click.option("--log-level", default=None, help="Logging level (default from LEDGERQ_LOG_LEVEL)")
def cli(log_level: Optional[str]):
    """LedgerQ - Trade and Funding Ledger Writer"""
    setup_logging(log_level or get_settings().log_level)


@cli.command()
@click.argument("status_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--trades", "trades_file", type=click.Path(exists=True, dir_okay=False), help="JSON-lines trade fills")
@click.option("--status-key", default=None, help="Status key the snapshots belong to")
@click.option("--fail-rate", default=0.0, type=float, help="Share of sink calls to fail transiently")
@click.option("--seed", default=None, type=int, help="Seed for jitter and failure injection")
@click.option("--memory", is_flag=True, help="Write to an in-memory ledger instead of ledger.json")
def replay(status_file: str, trades_file: Optional[str], status_key: Optional[str],
           fail_rate: float, seed: Optional[int], memory: bool):
    """Replay recorded status snapshots (and trades) into the ledger.

    Example:
        ledgerq replay status-log.txt.xz --trades trades.jsonl
    """
    storage = get_storage()
    cfg = storage.get_config()
    rng = random.Random(seed)

    try:
        sink = LedgerBook() if memory else FileLedger(storage)
        if fail_rate:
            sink = FlakySink(sink, fail_rate=fail_rate, rng=rng)
    except ValueError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)

    async def run():
        scheduler = RetryScheduler(cfg.concurrency, cfg.retry_config(), rng=rng)
        orchestrator = Orchestrator(
            sink, scheduler, cfg, status_key=status_key or get_settings().status_key
        )
        statuses = read_snapshots(status_file)
        trades = read_trades(trades_file) if trades_file else ()
        return orchestrator, await orchestrator.run_replay(statuses, trades)

    try:
        orchestrator, stats = asyncio.run(run())
    except ValueError as e:
        click.echo(f"✗ Invalid feed: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Replay finished: {stats['completed']} applied, {stats['dead']} failed, "
               f"{stats['total']} tasks")
    if orchestrator.failures:
        sys.exit(1)


@cli.command()
def status():
    """Show ledger status and configuration.

    Example:
        ledgerq status
    """
    storage = get_storage()
    sheets = storage.get_sheets()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("LedgerQ Status")
    click.echo("=" * 50)
    click.echo(f"Sheets:         {len(sheets)}")
    if sheets:
        current = sheets[-1]
        click.echo(f"  Current:      {current.title} ({current.status.value})")
        click.echo(f"  Rows:         {len(current.rows)}")
        click.echo(f"  Position:     {current.position_size}")
    click.echo("\nConfiguration:")
    click.echo(f"  Concurrency:  {config.concurrency}")
    click.echo(f"  Max Attempts: {config.max_attempts}")
    click.echo(f"  Delay:        {config.min_delay}-{config.max_delay} ms x{config.factor}")
    click.echo("=" * 50 + "\n")


@cli.group()
def ledger():
    """Inspect the ledger book"""
    pass


@ledger.command("show")
@click.option("--limit", default=20, help="Maximum rows to display")
def show_ledger(limit: int):
    """Show the latest rows of the current sheet.

    Example:
        ledgerq ledger show --limit 50
    """
    sheets = get_storage().get_sheets()
    if not sheets:
        click.echo("Ledger is empty")
        return

    sheet = sheets[-1]
    rows = sheet.rows[-limit:]
    click.echo(f"\nSheet {sheet.title} ({sheet.status.value})")
    click.echo(f"{'Id':<12} {'Date':<20} {'Type':<8} {'Size':>14} {'Price':>14} {'Funding':>14} {'Fee':>8}")
    click.echo("-" * 96)
    for row in rows:
        row_id = "" if row.id is None else str(row.id)
        date = row.date.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{row_id:<12} {date:<20} {row.type.value:<8} {row.size:>14.8f} "
            f"{row.exec_price:>14.8f} {row.funding_amount:>14.8f} {row.fee_rate:>8.3%}"
        )
    click.echo()


@cli.command("backoff")
@click.option("--seed", default=None, type=int, help="Seed for jitter")
def show_backoff(seed: Optional[int]):
    """Show the retry delay schedule for the current configuration.

    Example:
        ledgerq backoff --seed 1
    """
    retry = get_storage().get_config().retry_config()
    delays = backoff.schedule(retry, random.Random(seed))
    click.echo("Attempt 1: immediate")
    for attempt, wait in enumerate(delays, start=2):
        click.echo(f"Attempt {attempt}: after {wait:g} ms")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("show")
def show_config():
    """Show current configuration.

    Example:
        ledgerq config show
    """
    cfg = get_storage().get_config()

    click.echo("\nCurrent Configuration:")
    click.echo(f"  concurrency:     {cfg.concurrency}")
    click.echo(f"  max-attempts:    {cfg.max_attempts}")
    click.echo(f"  min-delay:       {cfg.min_delay} ms")
    click.echo(f"  max-delay:       {cfg.max_delay} ms")
    click.echo(f"  factor:          {cfg.factor}")
    click.echo(f"  jitter:          {cfg.jitter}")
    click.echo(f"  attempt-timeout: {cfg.attempt_timeout} seconds")
    click.echo()


CONFIG_KEYS = {
    "concurrency": "concurrency",
    "max-attempts": "max_attempts",
    "min-delay": "min_delay",
    "max-delay": "max_delay",
    "factor": "factor",
    "jitter": "jitter",
    "attempt-timeout": "attempt_timeout",
}


@config.command("set")
@click.argument("key")
@click.argument("value")
def set_config(key: str, value: str):
    """Set a configuration value.

    Example:
        ledgerq config set max-attempts 5
        ledgerq config set jitter false
    """
    storage = get_storage()
    cfg = storage.get_config()

    field = CONFIG_KEYS.get(key)
    if field is None:
        click.echo(f"✗ Unknown config key: {key}", err=True)
        sys.exit(1)

    try:
        # validate_assignment coerces the string and re-checks min/max delay
        setattr(cfg, field, value)
        storage.set_config(cfg)
        click.echo(f"✓ Configuration updated: {key} = {value}")
    except ValidationError as e:
        click.echo(f"✗ Invalid value: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
