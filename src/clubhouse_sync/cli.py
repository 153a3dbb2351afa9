"""clubhouse_sync.cli

Operator CLI.

Modes:
  serve               -- start the cron scheduler and block until SIGINT/SIGTERM
  ranking_refresh     -- run one ranking refresh now
  live_score_refresh  -- run one live score refresh now
  lifecycle_sweep     -- run one lifecycle sweep now
  manual_update       -- ranking refresh, lifecycle sweep, live score refresh in order
  status              -- last run per job kind + active competitions
  health              -- health probe as JSON (exit 1 when unhealthy)

Without --db-dsn an in-memory store is used, which is only useful for
trying a config against live sources.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from pathlib import Path

import click

from clubhouse_sync.config import (
    DEFAULT_CONFIG_PATH,
    JOB_KINDS,
    JOB_LIFECYCLE_SWEEP,
    JOB_LIVE_SCORE_REFRESH,
    JOB_RANKING_REFRESH,
    load_config,
)
from clubhouse_sync.run_log import RunStatus, build_run_report
from clubhouse_sync.scheduler import SyncEngine
from clubhouse_sync.shared import ConfigValidationError
from clubhouse_sync.store import MemoryStore, PgStore, Store

log = logging.getLogger(__name__)

MANUAL_UPDATE_ORDER = (JOB_RANKING_REFRESH, JOB_LIFECYCLE_SWEEP, JOB_LIVE_SCORE_REFRESH)


@click.command()
@click.option(
    "--mode",
    default="serve",
    type=click.Choice(["serve", *JOB_KINDS, "manual_update", "status", "health"]),
    show_default=True,
    help="Engine mode",
)
@click.option("--db-dsn", default=None, envvar="CLUBHOUSE_SYNC_DB_DSN", help="PostgreSQL DSN")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Engine YAML config (default: config/engine.yml of a source checkout; required otherwise)",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(mode: str, db_dsn: str | None, config_path: str | None, log_level: str) -> None:
    """Ranking + leaderboard sync engine."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    if config_path is None and not DEFAULT_CONFIG_PATH.exists():
        raise click.UsageError(
            f"--config is required: no default config at {DEFAULT_CONFIG_PATH}"
        )
    try:
        config = load_config(Path(config_path) if config_path else DEFAULT_CONFIG_PATH)
    except (ConfigValidationError, FileNotFoundError) as exc:
        click.echo(f"FATAL: invalid config: {exc}", err=True)
        sys.exit(2)

    store = _open_store(db_dsn)
    engine = SyncEngine(config, store)
    try:
        if mode == "serve":
            _serve(engine)
        elif mode in JOB_KINDS:
            _run_jobs(engine, [mode])
        elif mode == "manual_update":
            _run_jobs(engine, list(MANUAL_UPDATE_ORDER))
        elif mode == "status":
            _status(engine)
        elif mode == "health":
            health = engine.check_health()
            click.echo(json.dumps(health, indent=2, default=str))
            if health["status"] != "healthy":
                sys.exit(1)
    finally:
        engine.shutdown()
        if isinstance(store, PgStore):
            store.close()


def _open_store(db_dsn: str | None) -> Store:
    if not db_dsn:
        click.echo("WARNING: no --db-dsn given; using an in-memory store", err=True)
        return MemoryStore()
    return PgStore.connect(db_dsn)


def _run_jobs(engine: SyncEngine, kinds: list[str]) -> None:
    failed = False
    for kind in kinds:
        run = engine.run_job(kind)
        if run is None:
            click.echo(f"{kind}: already running, skipped")
            continue
        click.echo(f"[{run.run_id}] {kind} finished: {run.status}")
        click.echo(build_run_report(run))
        failed = failed or run.status == RunStatus.FAILED
    if failed:
        click.echo("One or more runs failed; exiting non-zero", err=True)
        sys.exit(1)


def _status(engine: SyncEngine) -> None:
    for kind in JOB_KINDS:
        run = engine.get_last_run(kind)
        if run is None:
            click.echo(f"{kind}: never run")
        else:
            click.echo(
                f"{kind}: {run.status} at {run.finished_at.isoformat()} "
                f"(seen={run.records_seen} created={run.created} "
                f"updated={run.updated} skipped={run.skipped} errored={run.errored})"
            )
    active = engine.get_active_competitions()
    click.echo(f"active competitions: {len(active)}")
    for comp in active:
        click.echo(f"  {comp.competition_id}  {comp.name}  ends {comp.end_at.isoformat()}")


def _serve(engine: SyncEngine) -> None:
    stop = threading.Event()

    def _on_signal(signum: int, _frame: object) -> None:
        log.info("received signal %d; shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    engine.start()
    engine.trigger_lifecycle_sweep()
    click.echo("clubhouse-sync scheduler running; Ctrl-C to stop")
    while not stop.wait(1.0):
        pass
    click.echo("Stopping scheduler...")


if __name__ == "__main__":
    main()
