"""Shared setup for the provisioning commands: config, logging, lock, Runner."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Callable, Collection, Optional

import click
import pydantic
import yaml

from dokkuprov.config import ProvisionConfig, load_config
from dokkuprov.dokku import DokkuClient
from dokkuprov.errors import ExitCode, RunLockHeld, ValidationError
from dokkuprov.executor import CommandExecutor
from dokkuprov.ledger import StateLedger
from dokkuprov.lock import run_lock
from dokkuprov.logger import StatusLogger
from dokkuprov.runner import PlanReport, Runner
from dokkuprov.steps import Plan, StepContext

logger = logging.getLogger(__name__)

PlanBuilder = Callable[[StepContext], Plan]
Finisher = Callable[[StepContext, PlanReport], None]


def fail_validation(error: ValidationError) -> None:
    """Report bad operator input and exit before anything is touched."""
    click.echo(f"Error ({error.kind}): {error}", err=True)
    raise SystemExit(int(ExitCode.INVALID_INPUT))


def load_settings(config_path: Optional[str], **overrides) -> ProvisionConfig:
    """Load configuration, exiting with the invalid-input code on a bad file or value."""
    try:
        config = load_config(Path(config_path) if config_path else None, **overrides)
    except (OSError, yaml.YAMLError, ValueError, pydantic.ValidationError) as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        raise SystemExit(int(ExitCode.INVALID_INPUT))
    configure_logging(config)
    return config


def configure_logging(config: ProvisionConfig) -> None:
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("dokkuprov").setLevel(config.log_level.upper())


def build_executor(config: ProvisionConfig, dry_run: bool) -> CommandExecutor:
    return CommandExecutor(dry_run=dry_run, lookup_timeout=config.lookup_timeout_seconds)


def confirm_session(message: str) -> bool:
    """Ask whether a new SSH session works. Ctrl-C or EOF counts as no."""
    try:
        return click.confirm(f"{message}\nDoes the new session work?", default=False)
    except click.Abort:
        click.echo()
        return False


def _interactive_prompt() -> Optional[Callable[[str], bool]]:
    if not click.get_text_stream("stdin").isatty():
        return None
    return confirm_session


def run_plan(
    config: ProvisionConfig,
    build: PlanBuilder,
    *,
    confirmed: Collection[str] = (),
    dry_run: bool = False,
    reverify: bool = False,
    on_finish: Optional[Finisher] = None,
) -> PlanReport:
    """
    Build a Plan and run it under the host run-lock.

    Exits with the lock-held code when another invocation owns the host.
    """
    executor = build_executor(config, dry_run)
    ctx = StepContext(executor=executor, dokku=DokkuClient(executor), config=config)
    plan = build(ctx)
    runner = Runner(
        plan,
        StateLedger(config.get_ledger_path(plan.name), plan=plan.name),
        status=StatusLogger(plan.name, fmt=config.log_format),
        trust=timedelta(0) if reverify else config.ledger_trust,
        confirmed=confirmed,
        prompt=_interactive_prompt(),
        tail_lines=config.diagnostic_tail_lines,
        dry_run=dry_run,
    )
    try:
        with run_lock(config.get_lock_path()):
            report = runner.run()
            if on_finish is not None:
                on_finish(ctx, report)
    except RunLockHeld as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(int(ExitCode.LOCKED))
    finally:
        executor.close()
    return report


def print_follow_ups(report: PlanReport) -> None:
    follow_ups = report.follow_ups()
    if not follow_ups:
        return
    click.echo()
    click.secho("Manual follow-up:", fg="yellow", bold=True)
    for step, command in follow_ups:
        click.echo(f"  {step}: {command}")
