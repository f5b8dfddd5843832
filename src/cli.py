from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="Portfolio returns CLI")


def _check_runtime() -> None:
    try:
        import sqlalchemy  # noqa: F401
    except Exception as e:
        typer.echo(
            "Runtime dependency error: SQLAlchemy failed to import.\n"
            "If you're using system Python 3.13, create a venv (prefer Python 3.11/3.12) and run:\n"
            "  python -m venv .venv\n"
            "  source .venv/bin/activate\n"
            "  pip install -e .\n\n"
            f"Original error: {type(e).__name__}: {e}",
            err=True,
        )
        raise typer.Exit(code=1)


def _setup() -> None:
    load_dotenv()
    _check_runtime()
    from src.db.init_db import init_db

    init_db()


def _parse_day(value: Optional[str]) -> dt.date | None:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value)
    except ValueError:
        typer.echo(f"Invalid date: {value!r} (expected YYYY-MM-DD)", err=True)
        raise typer.Exit(code=2)


def _today(as_of: Optional[str]) -> dt.date:
    from src.core.performance_config import load_performance_config
    from src.utils.time import local_today

    d = _parse_day(as_of)
    if d is not None:
        return d
    cfg, _src = load_performance_config()
    return local_today(cfg.timezone)


@app.callback()
def main(log_level: str = typer.Option("WARNING", help="DEBUG|INFO|WARNING|ERROR")):
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command("import-daily")
def import_daily_cmd(
    user: str = typer.Option(..., help="User id"),
    scope: str = typer.Option("overall", help="Account id or 'overall'"),
    path: Path = typer.Option(..., exists=True, dir_okay=False, help="JSON list of daily records"),
):
    _setup()
    from src.core.performance_store import SqlPerformanceStore
    from src.core.records import DailyRecord
    from src.db.session import get_session_factory

    raw = json.loads(path.read_text())
    items = raw.get("records", []) if isinstance(raw, dict) else raw
    try:
        records = [DailyRecord.from_dict(item) for item in items]
    except ValueError as e:
        typer.echo(f"Invalid record: {e}", err=True)
        raise typer.Exit(code=2)
    written = SqlPerformanceStore(get_session_factory()).save_daily_records(user, scope, records)
    typer.echo(json.dumps({"ok": True, "written": written}, indent=2))


@app.command("consolidate")
def consolidate_cmd(
    period: str = typer.Option("monthly", help="monthly|yearly"),
    as_of: Optional[str] = typer.Option(None, help="Run as if today were this date (YYYY-MM-DD)"),
):
    _setup()
    from src.core.consolidation_job import run_monthly_consolidation, run_yearly_consolidation
    from src.core.performance_store import SqlPerformanceStore
    from src.db.session import get_session_factory

    p = period.strip().lower()
    if p not in {"monthly", "yearly"}:
        typer.echo("period must be monthly or yearly", err=True)
        raise typer.Exit(code=2)
    store = SqlPerformanceStore(get_session_factory())
    today = _today(as_of)
    metrics = run_monthly_consolidation(store, today) if p == "monthly" else run_yearly_consolidation(store, today)
    typer.echo(json.dumps(metrics, indent=2))
    if metrics["errors"]:
        raise typer.Exit(code=1)


@app.command("backfill")
def backfill_cmd(
    user: str = typer.Option(..., help="User id"),
    scope: str = typer.Option("overall", help="Account id or 'overall'"),
    as_of: Optional[str] = typer.Option(None, help="Run as if today were this date (YYYY-MM-DD)"),
):
    _setup()
    from src.core.consolidation_job import backfill_scope
    from src.core.performance_store import SqlPerformanceStore
    from src.db.session import get_session_factory

    store = SqlPerformanceStore(get_session_factory())
    typer.echo(json.dumps(backfill_scope(store, user, scope, _today(as_of)), indent=2))


@app.command("returns")
def returns_cmd(
    user: str = typer.Option(..., help="User id"),
    currency: str = typer.Option("USD"),
    account: list[str] = typer.Option([], help="Account id (repeat for several; omit for overall)"),
    ticker: Optional[str] = typer.Option(None),
    asset_type: Optional[str] = typer.Option(None),
    refresh: bool = typer.Option(False, help="Bypass the returns cache"),
):
    _setup()
    from src.core.exceptions import PerformanceError
    from src.core.historical_returns import HistoricalReturnsService, ReturnsQuery
    from src.core.performance_config import load_performance_config
    from src.core.performance_store import SqlPerformanceStore
    from src.core.returns_cache import ReturnsCache
    from src.db.session import get_session_factory

    cfg, _src = load_performance_config()
    factory = get_session_factory()
    svc = HistoricalReturnsService(SqlPerformanceStore(factory), cfg, cache=ReturnsCache(factory))
    try:
        query = ReturnsQuery(
            user_id=user, currency=currency, account_ids=tuple(account), ticker=ticker, asset_type=asset_type
        )
        result = svc.get_cached_historical_returns(query, force_refresh=refresh)
    except (ValueError, PerformanceError) as e:
        typer.echo(f"{type(e).__name__}: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result, indent=2, default=str))


@app.command("invalidate-cache")
def invalidate_cache_cmd(user: list[str] = typer.Option(..., help="User id (repeatable)")):
    _setup()
    from src.core.returns_cache import ReturnsCache
    from src.db.session import get_session_factory

    removed = ReturnsCache(get_session_factory()).invalidate_many(user)
    typer.echo(json.dumps({"ok": True, "removed": removed}, indent=2))


if __name__ == "__main__":
    app()
