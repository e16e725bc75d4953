#!/usr/bin/env python3
"""
IAM Reconciler Control CLI.

Provides commands for validating the account/role definition tree,
previewing and applying a reconciliation, and reviewing the audit trail.
"""

import logging
import sys
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from ..audit import AuditLogger
from ..config import ReconcilerSettings, load_settings
from ..connectors import create_connector
from ..definitions import AccountTree, load_tree
from ..engine import CredentialManager
from ..exceptions import ReconcileAbortedError, ReconcileError
from ..models import ReconcileSummary
from ..workflows import AccountReconcileWorkflow, select_roles, validate_account_tree

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def _load(root: str, accounts: Optional[List[str]] = None) -> List[AccountTree]:
    trees = load_tree(root, accounts or None)
    problems = []
    for tree in trees:
        problems.extend(f"{tree.account.name}: {error}" for error in validate_account_tree(tree))
    if problems:
        console.print("[red]Definition validation failed:[/red]")
        for problem in problems:
            console.print(f"  - {problem}")
        raise click.exceptions.Exit(1)
    return trees


@click.group()
@click.option('--config', '-c', type=click.Path(), help='Path to configuration file (YAML or JSON)')
@click.option('--mock/--real', default=None, help='Use the in-memory backend or real AWS APIs')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config, mock, verbose):
    """IAM Reconciler - converge IAM roles and policies per account"""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['settings'] = load_settings(config, {"mock_mode": mock})


@cli.command()
@click.argument('root', type=click.Path(exists=True, file_okay=False))
def validate(root):
    """Load and check the definition tree without contacting the backend."""
    try:
        trees = _load(root)
    except ReconcileError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    table = Table(title="Definitions")
    table.add_column("Account", style="cyan")
    table.add_column("Account ID", style="green")
    table.add_column("Region", style="yellow")
    table.add_column("Roles", style="magenta")

    for tree in trees:
        table.add_row(
            tree.account.name,
            tree.account.account_id,
            tree.account.region,
            ", ".join(role.role_name for role in tree.roles) or "-",
        )

    console.print(table)
    console.print(f"[green]✓ {len(trees)} accounts valid[/green]")


@cli.command()
@click.argument('root', type=click.Path(exists=True, file_okay=False))
@click.option('--account', '-a', 'accounts', multiple=True, help='Only these accounts')
@click.option('--role', '-r', 'roles', multiple=True, help='Only roles containing this substring')
def plan(root, accounts, roles):
    """Show which accounts and roles a run would reconcile."""
    try:
        trees = _load(root, list(accounts))
    except ReconcileError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    _print_plan(trees, list(roles))


def _print_plan(trees: List[AccountTree], role_filter: List[str]) -> int:
    table = Table(title="Reconciliation Plan")
    table.add_column("Account", style="cyan")
    table.add_column("Enacting Role", style="yellow")
    table.add_column("Role / Stack / Policy", style="magenta")

    total = 0
    for tree in trees:
        for role in select_roles(tree.roles, role_filter):
            table.add_row(tree.account.name, tree.account.enacting_role_arn, role.role_name)
            total += 1

    console.print(table)
    return total


@cli.command()
@click.argument('root', type=click.Path(exists=True, file_okay=False))
@click.option('--account', '-a', 'accounts', multiple=True, help='Only these accounts')
@click.option('--role', '-r', 'roles', multiple=True, help='Only roles containing this substring')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def apply(ctx, root, accounts, roles, yes):
    """Reconcile accounts against the backend."""
    settings: ReconcilerSettings = ctx.obj['settings']

    try:
        trees = _load(root, list(accounts))
    except ReconcileError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    if _print_plan(trees, list(roles)) == 0:
        console.print("[yellow]Nothing to reconcile[/yellow]")
        return

    backend = "mock backend" if settings.mock_mode else "AWS"
    if not yes and not Confirm.ask(f"Apply these changes against {backend}?"):
        console.print("[yellow]Aborted[/yellow]")
        return

    workflow = AccountReconcileWorkflow(settings)
    try:
        summaries = workflow.execute(trees, list(roles))
    except ReconcileAbortedError as e:
        where = f"account {e.account}" + (f", role {e.role}" if e.role else "")
        console.print(Panel.fit(f"[red]✗ Reconciliation aborted in {where}[/red]\n{e.cause}"))
        logger.debug("Reconciliation aborted", exc_info=True)
        sys.exit(1)

    for summary in summaries:
        display_summary(summary)
    console.print(f"[green]✓ Reconciled {len(summaries)} accounts[/green]")


@cli.command()
@click.option('--region', default=None, help='Region for the identity call')
@click.pass_context
def whoami(ctx, region):
    """Show the identity remote calls run as."""
    settings: ReconcilerSettings = ctx.obj['settings']
    connector = create_connector(settings.connector_config("aws"), mock_mode=settings.mock_mode)

    try:
        identity = CredentialManager(connector).current_identity(region or settings.default_region)
    except ReconcileError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    console.print(Panel.fit(f"[bold blue]{identity.arn}[/bold blue]\nAccount: {identity.account}"))


@cli.command('audit-trail')
@click.option('--account', help='Filter by account name')
@click.option('--role', help='Filter by role name')
@click.option('--limit', default=50, help='Maximum number of records to show')
@click.pass_context
def audit_trail(ctx, account, role, limit):
    """Show recorded reconciliation actions, newest first."""
    settings: ReconcilerSettings = ctx.obj['settings']
    records = AuditLogger(settings.audit_dir).get_events(account=account, role=role, limit=limit)

    if not records:
        console.print("[yellow]No audit records found[/yellow]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Account", style="green")
    table.add_column("Role", style="yellow")
    table.add_column("Action", style="magenta")
    table.add_column("Resource", style="blue")
    table.add_column("Success", style="red")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.account,
            record.role or "-",
            record.action,
            record.resource,
            "✓" if record.success else "✗",
        )

    console.print(table)


def display_summary(summary: ReconcileSummary):
    """Display the per-role outcome of an account."""
    table = Table(title=f"{summary.account} ({summary.account_id})")
    table.add_column("Role", style="cyan")
    table.add_column("Stack", style="magenta")
    table.add_column("Policy", style="green")
    table.add_column("Orphan Removed", style="yellow")
    table.add_column("Stack ID", style="blue")

    for role in summary.roles:
        table.add_row(
            role.role_name,
            role.outcome.value,
            role.policy_action.value,
            "yes" if role.orphan_removed else "no",
            role.stack_id,
        )

    console.print(table)

    for warning in summary.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
