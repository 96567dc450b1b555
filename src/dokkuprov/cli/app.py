"""dokkuprov CLI - provision-app: set up one application on the Dokku server."""

from typing import Optional

import click

from dokkuprov.errors import ValidationError
from dokkuprov.params import AppParameters, resolve_app_parameters
from dokkuprov.plans import build_app_plan
from dokkuprov.runner import PlanReport, PlanState
from dokkuprov.steps import StepContext, StepOutcome

from ._common import fail_validation, load_settings, print_follow_ups, run_plan


def _print_summary(ctx: StepContext, report: PlanReport, params: AppParameters) -> None:
    """Where everything ended up, and what the operator does next."""
    if report.state is PlanState.HALTED_ON_FAILURE:
        return
    app = params.app_name
    domains = ctx.dokku.app_vhosts(app)
    domain = domains[0] if domains else "(not set)"
    scale = ", ".join(f"{proc}={qty}" for proc, qty in ctx.config.process_scale.items())
    ssl = report.result("enable_ssl")

    click.echo()
    click.secho(f"Application {app}", fg="green", bold=True)
    click.echo(f"  Domain:    {domain}")
    click.echo(f"  Database:  {params.database_name} (postgres)")
    click.echo(f"  Cache:     {params.cache_name} (redis)")
    click.echo(f"  Backups:   {params.backup_bucket}, schedule '{ctx.config.backup_schedule}'")
    click.echo(f"  Processes: {scale}")
    click.echo()
    click.secho("Next steps:", fg="cyan", bold=True)
    click.echo(f"  1. Deploy: git remote add dokku dokku@<server>:{app} && git push dokku main")
    if ssl is None or not ssl.outcome.satisfied:
        click.echo(f"  2. After the first deploy: dokku letsencrypt:enable {app}")
    if domains:
        click.echo(f"  Your app will be served at https://{domain}")


@click.command("provision-app")
@click.argument("app_name", required=False)
@click.argument("access_key", required=False)
@click.argument("secret_key", required=False)
@click.argument("bucket", required=False)
@click.option("--dry-run", is_flag=True, help="Check the platform and log changes without making them")
@click.option("--reverify", is_flag=True, help="Re-check every step recorded in the ledger")
@click.option(
    "--rotate-backup-credentials",
    is_flag=True,
    help="Store the backup credentials again, e.g. after changing only the secret key",
)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML settings file")
@click.option("--state-dir", type=click.Path(file_okay=False), help="Ledger and lock directory")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Status line format")
def provision_app(
    app_name: Optional[str],
    access_key: Optional[str],
    secret_key: Optional[str],
    bucket: Optional[str],
    dry_run: bool,
    reverify: bool,
    rotate_backup_credentials: bool,
    config_path: Optional[str],
    state_dir: Optional[str],
    log_format: Optional[str],
):
    """Set up APP_NAME with Postgres, Redis, S3 backups and SSL.

    ACCESS_KEY and SECRET_KEY are the backup storage credentials; they
    are never logged or written to the ledger. BUCKET defaults to the
    configured default bucket. Must run on the Dokku server itself.

    Examples:
        provision-app blog AKIA... wJalr... acme-backups
    """
    config = load_settings(config_path, state_dir=state_dir, log_format=log_format)
    try:
        params = resolve_app_parameters(
            app_name,
            access_key,
            secret_key,
            bucket,
            default_bucket=config.default_backup_bucket,
        )
    except ValidationError as e:
        fail_validation(e)

    report = run_plan(
        config,
        lambda ctx: build_app_plan(ctx, params, rotate_backup_credentials=rotate_backup_credentials),
        dry_run=dry_run,
        reverify=reverify,
        on_finish=lambda ctx, report: _print_summary(ctx, report, params),
    )

    print_follow_ups(report)
    ssl = report.result("enable_ssl")
    if ssl is not None and ssl.outcome is StepOutcome.FAILED:
        click.echo("SSL is expected to fail until the app has been deployed once.")
    raise SystemExit(int(report.exit_code))
