"""
CLI interface for kroniq-guard.

Operator access to profiles, balances, access answers and the intent
router. Reads KRONIQ_GUARD_DB and KRONIQ_GUARD_CONFIG from the environment.
"""

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from kroniq_guard.config.loader import db_path_from_env, load_config_from_env
from kroniq_guard.core.accounts import AccountService
from kroniq_guard.core.intent import IntentKind
from kroniq_guard.core.routing import RoutingContext, project_name_for
from kroniq_guard.errors import KroniqGuardError
from kroniq_guard.storage.models import Plan
from kroniq_guard.storage.repository import (
    LegacyProfileSource,
    SQLiteProfileStore,
    initialize_schema,
    migrate_legacy_profiles,
)

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _service() -> AccountService:
    config = load_config_from_env()
    store = SQLiteProfileStore(db_path_from_env())
    return AccountService(store, config=config)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """kroniq-guard CLI."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("kroniq-guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the profile database."""
    try:
        initialize_schema(db_path_from_env())
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Show database location and profile count."""
    db_path = db_path_from_env()
    try:
        count = SQLiteProfileStore(db_path).count_profiles()
    except KroniqGuardError as e:
        logger.debug("status check failed: %s", e)
        _fail("Database is not initialized. Run `kroniq-guard init` first.")
    console.print(f"[green]✓[/] {count} profiles")
    console.print(f"Database: {db_path}")


@app.command()
def provision(
    user_id: str = typer.Argument(..., help="Identity to provision"),
    email: Optional[str] = typer.Option(None, "--email", help="Email address"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
):
    """Create a profile as first sign-in would."""
    try:
        result = asyncio.run(_service().ensure_profile(user_id, email=email, display_name=name))
    except (KroniqGuardError, ValueError) as e:
        _fail(str(e))

    if not result.created:
        console.print(f"Profile {user_id} already exists")
    elif result.early_adopter_bonus:
        console.print(
            f"[green]✓[/] Created {user_id} with {result.early_adopter_bonus:,} tokens "
            "(early adopter)"
        )
    else:
        console.print(f"[green]✓[/] Created {user_id} with {result.profile.tokens_limit:,} tokens")


@app.command()
def access(user_id: str = typer.Argument(..., help="Identity to resolve")):
    """Resolve the current access status."""
    service = _service()

    async def _run():
        status = await service.resolve_access(user_id)
        summary = await service.token_summary(user_id)
        return status, summary

    try:
        status, summary = asyncio.run(_run())
    except KroniqGuardError as e:
        logger.debug("access lookup failed: %s", e)
        _fail("Database is not initialized. Run `kroniq-guard init` first.")

    table = Table(title=f"Access for {user_id}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Premium", "yes" if status.is_premium else "no")
    table.add_row("Tier", status.tier)
    table.add_row("Tokens", f"{status.total_tokens:,}")
    table.add_row("Paid tokens", f"{status.paid_tokens:,}")
    table.add_row("Source", status.source.value)
    if summary is not None:
        table.add_row("Next reset", summary.next_reset_at.date().isoformat())
        table.add_row("Days until reset", str(summary.days_until_reset))
    console.print(table)

    if status.source.is_degraded:
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def quota(user_id: str = typer.Argument(..., help="Identity to inspect")):
    """Show today's generation quotas."""
    try:
        limits = asyncio.run(_service().generation_limits(user_id))
    except KroniqGuardError as e:
        _fail(str(e))

    table = Table(title=f"Generations today for {user_id}")
    table.add_column("Kind")
    table.add_column("Used")
    table.add_column("Limit")
    table.add_column("Allowed")
    for kind, info in limits.items():
        table.add_row(
            kind,
            str(info.current),
            "unlimited" if info.is_paid else str(info.limit),
            "yes" if info.can_generate else "no",
        )
    console.print(table)


@app.command()
def deduct(
    user_id: str = typer.Argument(..., help="Identity to bill"),
    cost_usd: float = typer.Argument(..., help="Provider cost in USD"),
    request_id: Optional[str] = typer.Option(None, "--request-id", help="Idempotency key"),
    model: Optional[str] = typer.Option(None, "--model", help="Model that served the request"),
):
    """Bill a provider charge against a profile."""
    try:
        result = asyncio.run(
            _service().deduct(user_id, cost_usd, request_id=request_id, model=model)
        )
    except ValueError as e:
        _fail(str(e))

    if not result.success:
        _fail(result.error or "deduction failed")
    console.print(
        f"[green]✓[/] Deducted {result.tokens:,} tokens, balance {result.balance:,} "
        f"(request {result.request_id})"
    )
    if result.overdraft:
        console.print("[yellow]Warning:[/] balance overdrawn")


@app.command("reset-check")
def reset_check(user_id: str = typer.Argument(..., help="Identity to check")):
    """Apply the monthly token reset if it is due."""
    result = asyncio.run(_service().check_and_reset(user_id))
    if result is None:
        _fail(f"Reset check skipped for {user_id}")
    if result.was_reset:
        console.print(
            f"[green]✓[/] Reset applied: {result.previous_balance:,} -> {result.new_balance:,}"
        )
    else:
        console.print(f"No reset due (next reset {result.next_reset_at.date().isoformat()})")


@app.command("set-plan")
def set_plan(
    user_id: str = typer.Argument(..., help="Identity to update"),
    plan: str = typer.Argument(..., help="free, pro or enterprise"),
):
    """Record a plan change from billing."""
    try:
        new_plan = Plan(plan.lower())
    except ValueError:
        _fail(f"Unknown plan: {plan}")
    try:
        profile = asyncio.run(_service().set_plan(user_id, new_plan))
    except KroniqGuardError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {profile.id} is now on the {profile.plan.value} plan")


@app.command()
def classify(text: str = typer.Argument(..., help="Message to classify")):
    """Classify a message's intent."""
    intent = _service().classify_intent(text)
    console.print(f"[bold]Intent:[/bold] {intent.kind.value} ({intent.confidence:.2f})")
    console.print(f"Studio: {intent.suggested_studio}")
    console.print(f"Reason: {intent.reasoning}")
    if intent.prompt:
        console.print(f"Prompt: {intent.prompt}")


@app.command()
def route(
    text: str = typer.Argument(..., help="Message to route"),
    active_project: Optional[str] = typer.Option(
        None, "--active-project", help="Kind of the open project, if any"
    ),
    confirmed: bool = typer.Option(False, "--confirmed", help="User already confirmed"),
):
    """Classify a message and show the routing decision."""
    project_kind = None
    if active_project is not None:
        try:
            project_kind = IntentKind(active_project.lower())
        except ValueError:
            _fail(f"Unknown project kind: {active_project}")

    service = _service()
    intent = service.classify_intent(text)
    decision = service.decide_routing(
        intent,
        RoutingContext(
            has_active_project=project_kind is not None,
            active_project_kind=project_kind,
            user_confirmed_previously=confirmed,
        ),
    )
    console.print(f"[bold]Intent:[/bold] {intent.kind.value}")
    console.print(f"[bold]Action:[/bold] {decision.action.value}")
    console.print(f"Target: {decision.target_kind.value}")
    if decision.requires_new_project:
        console.print(f"New project: {project_name_for(text)}")
    if decision.overrides_project_kind:
        console.print(f"Overrides open {project_kind.value} project")


@app.command("migrate-legacy")
def migrate_legacy(legacy_db: str = typer.Argument(..., help="Path to the legacy database")):
    """Import legacy profiles into the canonical store."""
    config = load_config_from_env()
    store = SQLiteProfileStore(db_path_from_env())
    try:
        report = migrate_legacy_profiles(
            LegacyProfileSource(legacy_db),
            store,
            config.ledger.standard_allocation,
        )
    except KroniqGuardError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Migrated {report.total_migrated} profiles")
    console.print(f"Power users (balance honored): {len(report.migrated_power_users)}")
    console.print(f"Standard allocation: {len(report.migrated_standard)}")
    console.print(f"Already present: {len(report.skipped_existing)}")


if __name__ == "__main__":
    app()
