import time
from decimal import Decimal, InvalidOperation

import typer

from genbilling.app.core.auth import SessionStore
from genbilling.app.core.database import Database
from genbilling.app.core.errors import ServiceError
from genbilling.app.services.catalog import load_catalog
from genbilling.app.services.jobs import JobStore
from genbilling.app.services.ledger import LedgerStore

app = typer.Typer(help="Operator tools for the generation credit ledger.")


def _database(database_url: str | None) -> Database:
    return Database(url=database_url)


DATABASE_OPTION = typer.Option(
    None,
    "--database-url",
    envvar="GEN_DATABASE_URL",
    help="SQLAlchemy URL of the ledger database.",
)


@app.command("models")
def list_models(
    catalog_file: str = typer.Option(None, "--catalog", help="Path to a models.toml catalog."),
) -> None:
    """List catalog models and their per-unit price tables."""
    catalog = load_catalog(catalog_file)
    for model in catalog.list_models():
        batch = f", up to {model.max_units} units" if model.allows_batch else ""
        typer.echo(f"{model.id} ({model.type}{batch}): {model.name}")
        for key, price in sorted(model.price_table.items()):
            label = key or "flat"
            typer.echo(f"  {label}: {price}")


@app.command("topup")
def topup(
    telegram_id: int = typer.Argument(..., help="External (Telegram) user id."),
    amount: str = typer.Argument(..., help="Amount of credits to add."),
    note: str = typer.Option("", "--note", help="Free-form note stored with the transaction."),
    database_url: str = DATABASE_OPTION,
) -> None:
    """Credit an account's cash balance."""
    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise typer.BadParameter("amount must be a number")

    ledger = LedgerStore(_database(database_url))
    meta = {"source": "cli", "note": note} if note else {"source": "cli"}
    try:
        balances = ledger.topup(telegram_id, value, meta)
    except ServiceError as exc:
        typer.secho(f"Top-up failed: {exc.code}: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"balance={balances.cash_balance} promo_credits={balances.promo_credits}")


@app.command("refund")
def refund(
    job_id: str = typer.Argument(..., help="Id of a failed job."),
    database_url: str = DATABASE_OPTION,
) -> None:
    """Refund a failed job. Safe to repeat: a job is refunded at most once."""
    ledger = LedgerStore(_database(database_url))
    try:
        balances = ledger.refund_job(job_id)
    except ServiceError as exc:
        typer.secho(f"Refund failed: {exc.code}: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"balance={balances.cash_balance} promo_credits={balances.promo_credits}")


@app.command("reconcile")
def reconcile(
    stale_after_minutes: int = typer.Option(
        30,
        "--stale-after",
        min=1,
        help="Report processing jobs older than this many minutes.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report; do not refund."),
    database_url: str = DATABASE_OPTION,
) -> None:
    """Refund failed jobs that never got their refund and report stuck jobs.

    Stuck ``processing`` jobs are only reported: the executor may still finish
    them, so settling them here could contradict a late result.
    """
    db = _database(database_url)
    ledger = LedgerStore(db)
    jobs = JobStore(db)

    pending = ledger.list_unrefunded_failed_jobs()
    refunded = 0
    failures = 0
    for job_id in pending:
        if dry_run:
            typer.echo(f"would refund {job_id}")
            continue
        try:
            ledger.refund_job(job_id)
            refunded += 1
            typer.echo(f"refunded {job_id}")
        except ServiceError as exc:
            failures += 1
            typer.secho(f"could not refund {job_id}: {exc.code}", fg=typer.colors.RED, err=True)

    cutoff = int(time.time()) - stale_after_minutes * 60
    stale = jobs.list_stale_processing(cutoff)
    for job in stale:
        typer.echo(f"stuck {job.id} model={job.model_id} created_at={job.created_at}")

    typer.echo(f"failed_without_refund={len(pending)} refunded={refunded} stuck_processing={len(stale)}")
    if failures:
        raise typer.Exit(code=1)


@app.command("settle")
def settle(
    job_id: str = typer.Argument(..., help="Id of a job left in processing."),
    output_url: str = typer.Option(None, "--output-url", help="Record the job as succeeded with this output."),
    error_code: str = typer.Option(None, "--error-code", help="Record the job as failed and refund it."),
    error_message: str = typer.Option("", "--error-message", help="Message stored with --error-code."),
    database_url: str = DATABASE_OPTION,
) -> None:
    """Apply an executor outcome whose settlement write failed.

    The outcome comes from the "Settlement write failed" log record of the job.
    A failed outcome is refunded right away.
    """
    if (output_url is None) == (error_code is None):
        raise typer.BadParameter("pass exactly one of --output-url or --error-code")

    db = _database(database_url)
    try:
        if output_url is not None:
            JobStore(db).mark_succeeded(job_id, output_url)
            typer.echo(f"settled {job_id} status=succeeded")
            return
        JobStore(db).mark_failed(job_id, {"code": error_code, "message": error_message or error_code})
        balances = LedgerStore(db).refund_job(job_id)
    except LookupError:
        typer.secho(f"Settle failed: job {job_id} not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except ServiceError as exc:
        typer.secho(f"Settle failed: {exc.code}: {exc.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"settled {job_id} status=failed balance={balances.cash_balance} promo_credits={balances.promo_credits}"
    )


@app.command("purge-sessions")
def purge_sessions(database_url: str = DATABASE_OPTION) -> None:
    """Delete expired session tokens."""
    removed = SessionStore(db=_database(database_url)).purge_expired()
    typer.echo(f"purged={removed}")


if __name__ == "__main__":
    app()
