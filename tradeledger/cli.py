"""
CLI entrypoint for the trade ledger reconciliation engine.

Provides commands for trade reconciliation, balance reconciliation,
discrepancy resolution, snapshot capture and maintenance.
"""
import asyncio
import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import pydantic
import typer

from tradeledger import __version__
from tradeledger.config.config import CONFIG_SCHEMA_VERSION, Config, load_config
from tradeledger.domain.models import SnapshotSource
from tradeledger.exceptions import TradeLedgerError
from tradeledger.monitoring.logger import get_logger, setup_logging
from tradeledger.storage.db import init_db
from tradeledger.storage.gateway import PersistenceGateway

app = typer.Typer(
    name="tradeledger",
    help="Trade lifecycle aggregation and balance reconciliation",
    add_completion=False,
)

logger = get_logger(__name__)


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"Not a decimal number: {value}")
    if not result.is_finite():
        raise typer.BadParameter(f"Not a finite number: {value}")
    return result


def _load(config_path: Optional[Path]) -> Config:
    try:
        config = load_config(config_path)
    except (FileNotFoundError, pydantic.ValidationError) as e:
        typer.echo(f"Error: invalid configuration: {e}", err=True)
        raise typer.Exit(2)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    logger.info("CONFIG_LOADED", config_schema_version=CONFIG_SCHEMA_VERSION, environment=config.environment)
    return config


def _gateway(config: Config) -> PersistenceGateway:
    if not config.data.database_url:
        typer.echo("Error: DATABASE_URL is not set (data.database_url in config)", err=True)
        raise typer.Exit(2)
    db = init_db(config.data.database_url)
    return PersistenceGateway(db, lock_ttl_seconds=config.data.run_lock_ttl_seconds)


def _emit(payload) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(e: TradeLedgerError, what: str) -> None:
    logger.error(f"{what} failed", error=str(e), error_type=type(e).__name__)
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


@app.command(name="reconcile-trades")
def reconcile_trades(
    account: str = typer.Option(..., "--account", help="Account id"),
    input_path: Path = typer.Option(..., "--input", exists=True, dir_okay=False, help="JSON export of fills and income"),
    tolerance: Optional[str] = typer.Option(None, "--tolerance", help="Reconciliation tolerance in percent"),
    window_minutes: Optional[int] = typer.Option(None, "--window-minutes", min=0, help="Income matching window"),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.001, help="Fetch timeout in seconds"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", min=1, help="Fetch page cap"),
    page_size: int = typer.Option(500, "--page-size", min=1, help="Records per page when replaying a flat export"),
    persist: bool = typer.Option(True, "--persist/--dry-run", help="Record closed lifecycles and ledger entries"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Aggregate fills into lifecycles and reconcile realized P&L against the ledger.

    Example:
        tradeledger reconcile-trades --account main --input export.json
    """
    from datetime import timedelta

    from tradeledger.ingest.feed import StaticPageFeed
    from tradeledger.reconciliation.pipeline import TradeReconciliationService

    config = _load(config_path)
    params = config.run_parameters(
        tolerance_pct=_decimal(tolerance),
        match_window=timedelta(minutes=window_minutes) if window_minutes is not None else None,
        fetch_timeout_seconds=timeout,
        max_pages=max_pages,
    )
    gateway = _gateway(config) if persist else None

    try:
        feed = StaticPageFeed.from_json_file(input_path, page_size=page_size)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: cannot read {input_path}: {e}", err=True)
        raise typer.Exit(2)

    try:
        result = asyncio.run(TradeReconciliationService(gateway, params).run(account, feed))
    except TradeLedgerError as e:
        _fail(e, "Trade reconciliation")
    finally:
        if gateway is not None:
            gateway.db.dispose()

    _emit(result.to_dict(currency_places=params.currency_precision))
    if not result.reconciliation.is_reconciled:
        raise typer.Exit(3)


@app.command(name="reconcile-balances")
def reconcile_balances(
    account: Optional[str] = typer.Option(None, "--account", help="Only this account"),
    auto_fix: Optional[bool] = typer.Option(None, "--auto-fix/--no-auto-fix", help="Correct small discrepancies"),
    threshold: Optional[str] = typer.Option(None, "--threshold", help="Max discrepancy to auto-fix"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Compare stored balances with the ledger and record discrepancies.

    Example:
        tradeledger reconcile-balances --auto-fix --threshold 5
    """
    from tradeledger.reconciliation.resolution import DiscrepancyResolutionWorkflow

    config = _load(config_path)
    params = config.run_parameters(auto_fix_threshold=_decimal(threshold))
    gateway = _gateway(config)
    if auto_fix is None:
        auto_fix = config.reconciliation.auto_fix_enabled

    try:
        report = DiscrepancyResolutionWorkflow(gateway, params).run_reconciliation(
            auto_fix=auto_fix,
            auto_fix_threshold=params.auto_fix_threshold,
            account_id=account,
        )
    except TradeLedgerError as e:
        _fail(e, "Balance reconciliation")
    finally:
        gateway.db.dispose()

    _emit(report.to_dict())


@app.command()
def resolve(
    discrepancy_id: str = typer.Argument(..., help="Discrepancy id"),
    method: str = typer.Option("manual", "--method", help="manual or ignored"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Resolution notes"),
    apply_fix: bool = typer.Option(False, "--apply-fix", help="Set the stored balance to the expected balance"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Resolve a discrepancy.

    Example:
        tradeledger resolve 7c1e... --method manual --apply-fix --notes "missing deposit"
    """
    from tradeledger.reconciliation.resolution import DiscrepancyResolutionWorkflow

    config = _load(config_path)
    gateway = _gateway(config)
    try:
        record = DiscrepancyResolutionWorkflow(gateway, config.run_parameters()).resolve_discrepancy(
            discrepancy_id, method, notes=notes, apply_fix=apply_fix
        )
    except TradeLedgerError as e:
        _fail(e, "Resolution")
    finally:
        gateway.db.dispose()

    _emit(record.to_dict())


@app.command(name="capture-snapshot")
def capture_snapshot(
    account: str = typer.Option(..., "--account", help="Account id"),
    balance: str = typer.Option(..., "--balance", help="Account balance"),
    snapshot_date: Optional[str] = typer.Option(None, "--date", help="Snapshot date (YYYY-MM-DD), default today UTC"),
    unrealized: str = typer.Option("0", "--unrealized", help="Unrealized P&L"),
    realized_today: str = typer.Option("0", "--realized-today", help="Realized P&L today"),
    source: SnapshotSource = typer.Option(SnapshotSource.MANUAL, "--source", help="Snapshot source"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Record a balance snapshot. A second capture on the same day overwrites the first.
    """
    from tradeledger.storage.repository import snapshot_date_today

    if snapshot_date:
        try:
            day = datetime.strptime(snapshot_date, "%Y-%m-%d").date()
        except ValueError:
            raise typer.BadParameter(f"Invalid date: {snapshot_date}", param_hint="--date")
    else:
        day = snapshot_date_today()

    config = _load(config_path)
    gateway = _gateway(config)
    try:
        snapshot = gateway.capture_balance_snapshot(account, day, {
            "balance": _decimal(balance),
            "unrealized_pnl": _decimal(unrealized),
            "realized_pnl_today": _decimal(realized_today),
            "source": source,
        })
    except TradeLedgerError as e:
        _fail(e, "Snapshot capture")
    finally:
        gateway.db.dispose()

    _emit({
        "accountId": snapshot.account_id,
        "date": snapshot.date.isoformat(),
        "balance": snapshot.balance,
        "source": snapshot.source.value,
        "capturedAt": snapshot.captured_at.isoformat(),
    })


@app.command(name="list-discrepancies")
def list_discrepancies(
    account: Optional[str] = typer.Option(None, "--account", help="Only this account"),
    show_all: bool = typer.Option(False, "--all", help="Include resolved records"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """List discrepancies, unresolved only unless --all."""
    config = _load(config_path)
    gateway = _gateway(config)
    try:
        records = gateway.list_discrepancies(account_id=account, resolved=None if show_all else False)
    finally:
        gateway.db.dispose()
    _emit([r.to_dict() for r in records])


@app.command(name="prune-keys")
def prune_keys(
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Retention in days"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """Delete old idempotency keys and expired run locks."""
    from tradeledger.storage.maintenance import DatabasePruner

    config = _load(config_path)
    gateway = _gateway(config)
    try:
        stats = DatabasePruner(gateway.db).run_maintenance(days or config.data.idempotency_key_retention_days)
    finally:
        gateway.db.dispose()
    _emit(stats)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Trade ledger reconciliation engine.
    """
    if version:
        typer.echo(f"tradeledger v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
