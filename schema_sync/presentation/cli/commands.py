"""CLI commands using Click framework."""

import functools
import json
import logging
from typing import Any, Dict, Optional

import click

from schema_sync.application.dtos.evolution_dto import SyncRequest, plan_from_dict, snapshot_to_dict
from schema_sync.domain.entities.execution import ApplyReport
from schema_sync.domain.entities.history import MigrationStatus
from schema_sync.domain.exceptions import DestructiveChangeRejected, ModelError, SchemaSyncError
from schema_sync.infrastructure.di_container import DIContainer
from schema_sync.infrastructure.repositories.config_repository import ConfigRepository

DIALECTS = ["postgres", "postgresql", "mysql", "sqlite"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def handle_errors(f):
    """Turn synchronization errors into a non-zero exit with a readable message."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except DestructiveChangeRejected as e:
            raise click.ClickException(e.message + "".join(f"\n  - {r}" for r in e.rejected))
        except ModelError as e:
            raise click.ClickException(e.message + "".join(f"\n  - {p}" for p in e.problems))
        except SchemaSyncError as e:
            context = e.context()
            suffix = f" ({', '.join(f'{k}={v}' for k, v in context.items())})" if context else ""
            raise click.ClickException(e.message + suffix)
    return wrapper


def build_container(ctx: click.Context, models: Optional[str] = None, **overrides) -> DIContainer:
    """Load configuration (file < env < options) and wire a container for one command."""
    settings = ctx.obj or {}
    values: Dict[str, Any] = dict(settings.get("overrides", {}))
    values.update({k: v for k, v in overrides.items() if v is not None})
    config = ConfigRepository(settings.get("config_file")).load(values)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    container = DIContainer()
    container.configure(config, models_path=models)
    ctx.call_on_close(container.close)
    return container


def echo_report(report: ApplyReport):
    if report.dry_run:
        click.echo("🧪 Dry run, nothing was executed")
    elif report.skipped:
        click.echo(f"⏭️  Nothing to do{f' ({report.record_id} already applied)' if report.record_id else ''}")
        return
    for result in report.results:
        icon = "✓" if result.status in ("executed", "validated") else "✗"
        click.echo(f"   {icon} [{result.index}] {result.status}: {result.sql}")
        if result.error:
            click.echo(f"      {result.error}")
    if not report.dry_run:
        click.echo(f"\n✅ Migration {report.record_id} {report.status.value} "
                   f"in {report.total_duration_ms:.1f} ms")


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', 'config_file', type=click.Path(exists=True),
              help='Path to JSON configuration file')
@click.option('--database-url', '-d', help='Database URL (sqlite:///path or a PostgreSQL DSN)')
@click.option('--dialect', type=click.Choice(DIALECTS), help='Target database dialect')
@click.option('--log-level', type=click.Choice(LOG_LEVELS, case_sensitive=False), help='Logging level')
@click.pass_context
def cli(ctx, config_file, database_url, dialect, log_level):
    """Schema Sync - reconcile a database with declarative models."""
    ctx.obj = {
        "config_file": config_file,
        "overrides": {"database_url": database_url, "dialect": dialect, "log_level": log_level},
    }


def policy_options(f):
    f = click.option('--strict', is_flag=True, help='Reject lossy type and nullability changes')(f)
    f = click.option('--allow-table-removal', is_flag=True, help='Allow dropping tables')(f)
    f = click.option('--allow-column-removal', is_flag=True, help='Allow dropping columns')(f)
    return f


def policy_overrides(allow_column_removal, allow_table_removal, strict) -> Dict[str, Any]:
    # unset flags leave the configured value alone
    return {
        "allow_column_removal": allow_column_removal or None,
        "allow_table_removal": allow_table_removal or None,
        "strict_mode": strict or None,
    }


@cli.command()
@click.option('--output', '-o', type=click.Path(), help='Write the schema to a JSON file')
@click.pass_context
@handle_errors
def analyze(ctx, output):
    """Introspect the current database schema."""
    container = build_container(ctx)
    click.echo("🔍 Introspecting database...")
    snapshot = container.get_orchestrator().analyze()
    data = snapshot_to_dict(snapshot)

    for table in data["tables"]:
        click.echo(f"   {table['name']}: {len(table['columns'])} column(s), rows={table['row_count']}")

    if output:
        with open(output, 'w') as f:
            json.dump(data, f, indent=2)
        click.echo(f"\n💾 Schema saved to: {output}")
    click.echo(f"   Tables: {len(data['tables'])}")


@cli.command()
@click.option('--models', '-m', required=True, type=click.Path(exists=True), help='Path to models JSON file')
@click.option('--output', '-o', type=click.Path(), default='migration_plan.json', help='Output file for the plan')
@click.option('--description', help='Migration description')
@policy_options
@click.pass_context
@handle_errors
def generate(ctx, models, output, description, allow_column_removal, allow_table_removal, strict):
    """Diff models against the database and write a migration plan."""
    container = build_container(
        ctx, models, **policy_overrides(allow_column_removal, allow_table_removal, strict)
    )
    orchestrator = container.get_orchestrator()
    desired = container.get_provider().get_desired_schema()
    response = orchestrator.generate(desired, description=description)
    if not container.config.dry_run:
        response.plan = orchestrator.reserve(response.plan)

    click.echo(f"📝 {len(response.changes)} change(s), {len(response.plan.statements)} statement(s)")
    for sql in response.sql_statements:
        click.echo(f"   {sql}")
    for warning in response.plan.warnings:
        click.echo(f"⚠️  {warning}")

    with open(output, 'w') as f:
        json.dump(response.to_dict(), f, indent=2)
    click.echo(f"\n💾 Plan saved to: {output}")
    if response.plan.record_id:
        click.echo(f"   Recorded as pending migration {response.plan.record_id}")


@cli.command()
@click.option('--plan', '-p', 'plan_file', required=True, type=click.Path(exists=True),
              help='Plan file written by generate')
@click.option('--dry-run', is_flag=True, help='Validate statements only')
@click.option('--backup', is_flag=True, help='Back up the database before destructive statements')
@click.pass_context
@handle_errors
def apply(ctx, plan_file, dry_run, backup):
    """Apply a saved migration plan."""
    container = build_container(ctx, dry_run=dry_run or None, backup_before_migrate=backup or None)
    with open(plan_file, 'r') as f:
        plan = plan_from_dict(json.load(f))

    if container.config.dry_run:
        report = container.get_executor().dry_run(plan)
    else:
        report = container.get_orchestrator().apply(plan)
    echo_report(report)
    if not report.succeeded:
        raise click.ClickException("Plan failed validation")


@cli.command()
@click.option('--models', '-m', required=True, type=click.Path(exists=True), help='Path to models JSON file')
@click.option('--dry-run', is_flag=True, help='Plan and validate only')
@click.option('--backup', is_flag=True, help='Back up the database before destructive statements')
@click.option('--description', help='Migration description')
@policy_options
@click.pass_context
@handle_errors
def sync(ctx, models, dry_run, backup, description, allow_column_removal, allow_table_removal, strict):
    """Bring the database in line with the models in one step."""
    container = build_container(
        ctx,
        models,
        dry_run=dry_run or None,
        backup_before_migrate=backup or None,
        **policy_overrides(allow_column_removal, allow_table_removal, strict),
    )
    orchestrator = container.get_orchestrator()
    request = SyncRequest(
        desired=container.get_provider().get_desired_schema(),
        policy=container.config.policy,
        options=orchestrator.default_options,
        description=description,
    )
    click.echo("🚀 Synchronizing schema...")
    response = orchestrator.sync(request)
    for warning in response.plan.warnings:
        click.echo(f"⚠️  {warning}")
    echo_report(response.report)
    if not response.report.succeeded:
        raise click.ClickException("Plan failed validation")


@cli.command()
@click.option('--status', type=click.Choice([s.value for s in MigrationStatus]), help='Filter by status')
@click.option('--json', 'as_json', is_flag=True, help='Print records as JSON')
@click.pass_context
@handle_errors
def history(ctx, status, as_json):
    """List recorded migrations."""
    container = build_container(ctx)
    records = container.get_ledger().list_records(MigrationStatus(status) if status else None)
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        click.echo("No migrations recorded")
    for record in records:
        click.echo(f"{record.id}  {record.status.value:<12} {len(record.statements):>3} stmt  {record.description}")


@cli.command()
@click.pass_context
@handle_errors
def verify(ctx):
    """Check recorded migrations for drift."""
    container = build_container(ctx)
    records = container.get_ledger().verify_all()
    click.echo(f"✅ {len(records)} migration(s) verified, no drift")


@cli.command()
@click.argument('record_id')
@click.pass_context
@handle_errors
def resolve(ctx, record_id):
    """Mark a failed migration as rolled back after manual repair."""
    container = build_container(ctx)
    record = container.get_orchestrator().resolve(record_id)
    click.echo(f"✅ {record.id} marked {record.status.value}")


@cli.command()
@click.option('--port', '-p', default=8000, help='Port to run API server')
@click.option('--host', '-h', default='127.0.0.1', help='Host to bind')
@click.option('--models', '-m', type=click.Path(exists=True), help='Models JSON file for plan previews')
@click.pass_context
@handle_errors
def serve(ctx, port, host, models):
    """Start the REST API server."""
    import uvicorn

    from schema_sync.presentation.api.app import create_app

    container = build_container(ctx, models)
    click.echo(f"🌐 Starting API server on {host}:{port}")
    uvicorn.run(create_app(container), host=host, port=port)


if __name__ == '__main__':
    cli()
