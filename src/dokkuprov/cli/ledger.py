"""dokkuprov CLI - Inspect and reset state ledgers."""

import sys
from pathlib import Path
from typing import Optional

import click

from dokkuprov.errors import ExitCode, RunLockHeld
from dokkuprov.ledger import StateLedger
from dokkuprov.lock import run_lock

from ._common import load_settings


@click.group()
def ledger():
    """Show or reset what previous runs recorded."""
    pass


@ledger.command("show")
@click.argument("plan", required=False)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML settings file")
@click.option("--state-dir", type=click.Path(file_okay=False), help="Ledger and lock directory")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
def ledger_show(plan: Optional[str], config_path: Optional[str], state_dir: Optional[str], no_color: bool):
    """Print the ledger of PLAN (e.g. server, app-blog), or of every plan.

    Examples:
        dokkuprov ledger show
        dokkuprov ledger show app-blog
    """
    config = load_settings(config_path, state_dir=state_dir)
    use_colors = not no_color and sys.stdout.isatty()

    if plan:
        paths = [config.get_ledger_path(plan)]
        if not paths[0].exists():
            raise click.ClickException(f"No ledger for plan '{plan}' in {config.state_dir}")
    else:
        paths = sorted(Path(config.state_dir).glob("*.json"))
        if not paths:
            click.echo(f"No ledgers in {config.state_dir}")
            return

    for index, path in enumerate(paths):
        if index:
            click.echo()
        click.echo(StateLedger(path).show_summary(use_colors=use_colors))


@ledger.command("reset")
@click.argument("plan")
@click.option("--step", help="Forget only this step")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML settings file")
@click.option("--state-dir", type=click.Path(file_okay=False), help="Ledger and lock directory")
def ledger_reset(plan: str, step: Optional[str], yes: bool, config_path: Optional[str], state_dir: Optional[str]):
    """Forget recorded progress of PLAN so the next run re-checks it.

    A step reset appends a reset marker; a full reset moves the ledger
    file aside. Nothing on the host is changed.

    Examples:
        dokkuprov ledger reset server --step harden_ssh
        dokkuprov ledger reset app-blog --yes
    """
    config = load_settings(config_path, state_dir=state_dir)
    path = config.get_ledger_path(plan)
    if not path.exists():
        raise click.ClickException(f"No ledger for plan '{plan}' in {config.state_dir}")

    target = f"step '{step}' of plan '{plan}'" if step else f"the whole '{plan}' ledger"
    if not yes:
        click.confirm(f"Reset {target}?", abort=True)

    try:
        with run_lock(config.get_lock_path()):
            StateLedger(path, plan=plan).reset(step)
    except RunLockHeld as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(int(ExitCode.LOCKED))
    click.echo(f"✓ Reset {target}")
