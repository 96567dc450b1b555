"""
Structured status lines for provisioning runs.

Every Step emits exactly one status line (name, outcome, one-line reason)
so a re-run's incremental behavior is visible. Output is either a
console text line or a JSON object, selected by ``log_format``.

Logged events:
- plan.started
- step.result
- step.follow_up
- plan.checkpoint
- plan.finished

Usage:
    from dokkuprov.logger import StatusLogger

    status = StatusLogger(plan="server")
    status.log_step_result(result)
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from dokkuprov.runner import PlanReport
    from dokkuprov.steps import ExecutionResult

_status_logger = logging.getLogger("dokkuprov.status")
_status_logger.setLevel(logging.INFO)
# Status lines go to the operator only, never also through root handlers
_status_logger.propagate = False

# Default handler writes status lines to stdout for the operator
if not _status_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    _status_logger.addHandler(handler)


class StatusLogger:
    """
    Emits one status line per event of a Plan run.

    Text lines look like ``[applied ] create_app: created blog``;
    JSON lines carry timestamp, level, event, plan and event fields.
    """

    def __init__(self, plan: str, fmt: str = "text", service_name: str = "dokkuprov"):
        self.plan = plan
        self.fmt = fmt
        self.service_name = service_name
        self._logger = _status_logger

    def _emit(self, event: str, text: str, level: str = "info", **fields: Any) -> None:
        if self.fmt == "json":
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "event": event,
                "service": self.service_name,
                "plan": self.plan,
            }
            entry.update({k: v for k, v in fields.items() if v is not None})
            line = json.dumps(entry, default=str)
        else:
            line = text

        if level == "error":
            self._logger.error(line)
        elif level == "warn":
            self._logger.warning(line)
        else:
            self._logger.info(line)

    def log_plan_started(self, steps: int) -> None:
        self._emit("plan.started", f"==> {self.plan}: {steps} steps", steps=steps)

    def log_step_result(self, result: "ExecutionResult") -> None:
        outcome = result.outcome.value
        level = "info"
        if outcome == "failed":
            level = "error" if result.is_fatal else "warn"
        elif outcome in ("vetoed", "blocked"):
            level = "warn"
        reason = f": {result.reason}" if result.reason else ""
        self._emit(
            "step.result",
            f"[{outcome:<8}] {result.step}{reason}",
            level=level,
            step=result.step,
            outcome=outcome,
            reason=result.reason,
            criticality=result.criticality.value,
        )
        if result.follow_up:
            self.log_follow_up(result.step, result.follow_up)

    def log_follow_up(self, step: str, command: str) -> None:
        self._emit(
            "step.follow_up",
            f"           run manually: {command}",
            level="warn",
            step=step,
            follow_up=command,
        )

    def log_diagnostics(self, step: str, output: Optional[str]) -> None:
        if not output:
            return
        indented = "\n".join(f"           | {line}" for line in output.splitlines())
        self._emit("step.diagnostics", indented, level="error", step=step, output=output)

    def log_checkpoint(self, step: str, message: str) -> None:
        self._emit("plan.checkpoint", f"[waiting ] {step}: {message}", level="warn", step=step, message=message)

    def log_plan_finished(self, report: "PlanReport") -> None:
        counts = report.counts()
        summary = ", ".join(f"{n} {k}" for k, n in counts.items() if n)
        self._emit(
            "plan.finished",
            f"==> {self.plan}: {report.state.value} ({summary or 'no steps'})",
            level="info" if report.exit_code == 0 else "warn",
            state=report.state.value,
            exit_code=int(report.exit_code),
            **{f"steps_{k}": n for k, n in counts.items()},
        )
