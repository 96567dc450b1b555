"""dokkuprov CLI - provision-server: harden a fresh host and install Dokku."""

from typing import Optional

import click

from dokkuprov.errors import ExitCode, ValidationError
from dokkuprov.params import resolve_server_parameters
from dokkuprov.plans import build_server_plan

from ._common import fail_validation, load_settings, print_follow_ups, run_plan


@click.command("provision-server")
@click.argument("admin_email", required=False)
@click.option("--host-address", help="Public IP for the global domain (detected if omitted)")
@click.option("--confirm-ssh-access", is_flag=True, help="Acknowledge that key-only SSH login works")
@click.option("--no-reboot", is_flag=True, help="Never reboot, even when upgrades require it")
@click.option("--dry-run", is_flag=True, help="Check the host and log changes without making them")
@click.option("--reverify", is_flag=True, help="Re-check every step recorded in the ledger")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML settings file")
@click.option("--state-dir", type=click.Path(file_okay=False), help="Ledger and lock directory")
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Status line format")
def provision_server(
    admin_email: Optional[str],
    host_address: Optional[str],
    confirm_ssh_access: bool,
    no_reboot: bool,
    dry_run: bool,
    reverify: bool,
    config_path: Optional[str],
    state_dir: Optional[str],
    log_format: Optional[str],
):
    """Provision this host as a Dokku server.

    Upgrades packages, enables a firewall and fail2ban, disables SSH
    password logins, installs Dokku with the postgres, redis and
    letsencrypt plugins, and sets a wildcard-DNS global domain.
    Safe to re-run; completed steps are skipped.

    Examples:
        provision-server admin@example.com
        provision-server admin@example.com --confirm-ssh-access
        provision-server admin@example.com --host-address 203.0.113.7 --no-reboot
    """
    try:
        params = resolve_server_parameters(admin_email, host_address)
    except ValidationError as e:
        fail_validation(e)

    config = load_settings(
        config_path,
        state_dir=state_dir,
        log_format=log_format,
        allow_reboot=False if no_reboot else None,
    )
    report = run_plan(
        config,
        lambda ctx: build_server_plan(ctx, params),
        confirmed={"harden_ssh"} if confirm_ssh_access else (),
        dry_run=dry_run,
        reverify=reverify,
    )

    print_follow_ups(report)
    if report.exit_code is ExitCode.AWAITING_CONFIRMATION:
        click.echo()
        click.secho(
            "Once a new SSH session works, re-run with --confirm-ssh-access to continue.",
            fg="yellow",
        )
    elif report.exit_code is ExitCode.OK:
        click.secho("Server is ready. Next: provision-app <app-name> <access-key> <secret-key>", fg="green")
    raise SystemExit(int(report.exit_code))
