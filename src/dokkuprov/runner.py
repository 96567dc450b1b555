"""
Runner: walks a Plan and applies its Steps.

Per Step: ``Pending -> Running -> Applied | Skipped | Failed`` (plus
``Vetoed`` when a safety guard refuses and ``Blocked`` when a strict
dependency did not succeed). Per Plan: ``NotStarted -> InProgress ->
Completed | HaltedOnFailure | AwaitingConfirmation``.

Decision order for one Step:

1. Any strict dependency not applied/skipped in this run -> Blocked.
2. Recent completed ledger entry -> Skipped without touching the host.
   Stale completed entry -> re-check the postcondition only.
3. ``precheck()`` holds -> Skipped.
4. ``guard()`` may veto -> Vetoed, Plan continues.
5. ``apply()`` then ``verify()`` -> Applied, or Failed.

A fatal failure halts the Plan. A degraded failure is recorded and the
Plan continues with whatever does not strictly depend on it. A Step with
a ``checkpoint`` that applied a change stops the Plan until the operator
confirms; the confirmation is recorded in the ledger.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import timedelta
from enum import Enum
from typing import Callable, Collection, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from dokkuprov.errors import (
    ExitCode,
    ExternalCommandFailure,
    PreconditionVeto,
    StepFailure,
    VerificationFailure,
)
from dokkuprov.ledger import StateLedger
from dokkuprov.logger import StatusLogger
from dokkuprov.otel import emit_plan_result, record_step_outcome, step_span
from dokkuprov.steps import ExecutionResult, Idempotency, Plan, Step, StepOutcome

logger = logging.getLogger(__name__)

__all__ = ["PlanReport", "PlanState", "Runner"]

Prompt = Callable[[str], bool]


class PlanState(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    HALTED_ON_FAILURE = "halted-on-failure"
    AWAITING_CONFIRMATION = "awaiting-confirmation"


class PlanReport(BaseModel):
    """Outcome of one Plan run."""

    plan: str
    state: PlanState = PlanState.NOT_STARTED
    results: List[ExecutionResult] = Field(default_factory=list)
    interrupted: bool = False
    pending_checkpoint: Optional[str] = None

    def result(self, step: str) -> Optional[ExecutionResult]:
        for result in self.results:
            if result.step == step:
                return result
        return None

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = OrderedDict((o.value, 0) for o in StepOutcome)
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def follow_ups(self) -> List[Tuple[str, str]]:
        return [(r.step, r.follow_up) for r in self.results if r.follow_up]

    @property
    def exit_code(self) -> ExitCode:
        if self.interrupted:
            return ExitCode.INTERRUPTED
        if self.state is PlanState.HALTED_ON_FAILURE:
            return ExitCode.FATAL
        if self.state is PlanState.AWAITING_CONFIRMATION:
            return ExitCode.AWAITING_CONFIRMATION
        outcomes = {r.outcome for r in self.results}
        if StepOutcome.FAILED in outcomes:
            return ExitCode.DEGRADED
        if outcomes & {StepOutcome.VETOED, StepOutcome.BLOCKED}:
            return ExitCode.PARTIAL
        return ExitCode.OK


class Runner:
    """
    Applies a Plan against the host, one Step at a time.

    Args:
        plan: Steps to run, already in dependency order
        ledger: State ledger of this Plan
        status: Status line emitter (defaults to text lines)
        trust: Age after which completed ledger entries are re-verified
        confirmed: Steps whose checkpoint the operator has acknowledged
        prompt: Blocking confirmation callback for interactive runs
        tail_lines: Lines of command output kept for failed Steps
        dry_run: Do not verify or record anything
    """

    def __init__(
        self,
        plan: Plan,
        ledger: StateLedger,
        *,
        status: Optional[StatusLogger] = None,
        trust: timedelta = timedelta(hours=24),
        confirmed: Collection[str] = (),
        prompt: Optional[Prompt] = None,
        tail_lines: int = 20,
        dry_run: bool = False,
    ):
        self.plan = plan
        self.ledger = ledger
        self.status = status or StatusLogger(plan.name)
        self.trust = trust
        self.confirmed = set(confirmed)
        self.prompt = prompt
        self.tail_lines = tail_lines
        self.dry_run = dry_run
        self._interrupted = False

    def run(self) -> PlanReport:
        report = PlanReport(plan=self.plan.name, state=PlanState.IN_PROGRESS)
        self.status.log_plan_started(len(self.plan))

        for step in self.plan:
            result = self._run_step(step, report)
            report.results.append(result)
            self.status.log_step_result(result)

            if self._interrupted:
                report.interrupted = True
                report.state = PlanState.HALTED_ON_FAILURE
                break
            if result.is_fatal:
                self.status.log_diagnostics(result.step, result.output)
                report.state = PlanState.HALTED_ON_FAILURE
                break
            if step.checkpoint and result.outcome.satisfied and self.ledger.checkpoint_pending(step.name):
                try:
                    confirmed = self._confirm(step)
                except KeyboardInterrupt:
                    logger.warning("Interrupted while waiting for confirmation of %s", step.name)
                    report.interrupted = True
                    report.state = PlanState.HALTED_ON_FAILURE
                    break
                if not confirmed:
                    report.state = PlanState.AWAITING_CONFIRMATION
                    report.pending_checkpoint = step.name
                    self.status.log_checkpoint(step.name, step.checkpoint)
                    break
        else:
            report.state = PlanState.COMPLETED

        self.status.log_plan_finished(report)
        emit_plan_result(report)
        return report

    def _run_step(self, step: Step, report: PlanReport) -> ExecutionResult:
        blocking = [
            dep for dep in step.dependencies
            if not (report.result(dep) and report.result(dep).outcome.satisfied)
        ]
        if blocking:
            result = self._result(step, StepOutcome.BLOCKED, f"needs {', '.join(blocking)}")
        else:
            with step_span(self.plan.name, step) as span:
                result = self._attempt(step)
                record_step_outcome(span, result)

        if not self.dry_run:
            self.ledger.record(result.step, result.outcome, result.reason, result.output)
        return result

    def _attempt(self, step: Step) -> ExecutionResult:
        try:
            if step.idempotency is Idempotency.SKIP_IF_SATISFIED:
                skipped = self._skip_reason(step)
                if skipped:
                    return self._result(step, StepOutcome.SKIPPED, skipped)
            step.guard()
            summary = step.apply()
            if self.dry_run:
                return self._result(step, StepOutcome.APPLIED, f"(dry-run) {summary}")
            if not step.verify():
                raise VerificationFailure(
                    f"postcondition does not hold after: {summary}",
                    step.follow_up(),
                )
            return self._result(step, StepOutcome.APPLIED, summary)
        except PreconditionVeto as e:
            return self._result(step, StepOutcome.VETOED, str(e), follow_up=e.follow_up)
        except ExternalCommandFailure as e:
            return self._result(
                step,
                StepOutcome.FAILED,
                str(e),
                follow_up=e.follow_up or step.follow_up(),
                output=e.result.tail(self.tail_lines),
            )
        except StepFailure as e:
            return self._result(step, StepOutcome.FAILED, str(e), follow_up=e.follow_up or step.follow_up())
        except KeyboardInterrupt:
            self._interrupted = True
            logger.warning("Interrupted during %s", step.name)
            return self._result(step, StepOutcome.FAILED, "interrupted by operator")

    def _skip_reason(self, step: Step) -> Optional[str]:
        entry = self.ledger.latest(step.name)
        if entry is not None and entry.outcome.satisfied:
            if not self.ledger.is_stale(entry, self.trust):
                return f"completed {entry.timestamp:%Y-%m-%d %H:%M} UTC"
            if step.verify():
                return "re-verified"
            logger.info("%s: recorded state no longer holds, re-applying", step.name)
        if step.precheck():
            return "already satisfied"
        return None

    def _confirm(self, step: Step) -> bool:
        if step.name in self.confirmed:
            self.ledger.record_confirmation(step.name, "confirmed by flag")
            return True
        if self.prompt is not None and self.prompt(step.checkpoint):
            self.ledger.record_confirmation(step.name, "confirmed interactively")
            return True
        return False

    def _result(
        self,
        step: Step,
        outcome: StepOutcome,
        reason: str = "",
        follow_up: Optional[str] = None,
        output: Optional[str] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            step=step.name,
            outcome=outcome,
            reason=reason,
            criticality=step.criticality,
            follow_up=follow_up,
            output=output,
        )
