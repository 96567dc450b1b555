"""
Error taxonomy for dokkuprov.

Every failure the provisioning core can raise derives from
``ProvisionError``. The Runner and the CLI map these onto step outcomes
and process exit codes:

- ``ValidationError``: bad operator input, raised before any mutation.
- ``PlanError``: a malformed Plan (duplicate names, unknown or cyclic
  dependencies). Programming error, never an operator error.
- ``StepFailure``: a Step could not reach its postcondition. Carries an
  optional ``follow_up`` command the operator can run manually.
  ``ExternalCommandFailure`` and ``VerificationFailure`` refine it.
- ``PreconditionVeto``: a safety guard refused to let a Step run.
- ``RunLockHeld``: another invocation owns the host.
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from dokkuprov.executor import CommandResult


class ExitCode(IntEnum):
    """Process exit codes of the ``provision-*`` commands."""
    OK = 0
    FATAL = 1
    INVALID_INPUT = 2
    DEGRADED = 3
    PARTIAL = 4
    LOCKED = 5
    AWAITING_CONFIRMATION = 6
    INTERRUPTED = 130


class ProvisionError(Exception):
    """Base class for all dokkuprov errors."""


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class ValidationError(ProvisionError):
    """Operator input rejected before any system mutation."""

    kind = "ValidationError"


class InvalidEmail(ValidationError):
    kind = "InvalidEmail"


class InvalidAppName(ValidationError):
    kind = "InvalidAppName"


class MissingCredential(ValidationError):
    kind = "MissingCredential"


# ---------------------------------------------------------------------------
# Plan construction
# ---------------------------------------------------------------------------


class PlanError(ProvisionError):
    """The step graph is not a valid Plan."""


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


class StepFailure(ProvisionError):
    """A Step failed; ``follow_up`` tells the operator what to run by hand."""

    def __init__(self, message: str, follow_up: Optional[str] = None):
        super().__init__(message)
        self.follow_up = follow_up


class ExternalCommandFailure(StepFailure):
    """An external command exited with a code the caller does not tolerate."""

    def __init__(
        self,
        result: "CommandResult",
        context: str = "",
        follow_up: Optional[str] = None,
    ):
        self.result = result
        self.context = context
        super().__init__(self._format_message(), follow_up)

    def _format_message(self) -> str:
        parts = []
        if self.context:
            parts.append(self.context)
        if self.result.timed_out:
            parts.append(f"'{self.result.display}' timed out")
        else:
            parts.append(f"'{self.result.display}' exited with {self.result.exit_code}")
        return ": ".join(parts)


class VerificationFailure(StepFailure):
    """The apply action ran but the postcondition does not hold."""


class PreconditionVeto(ProvisionError):
    """A safety guard vetoed a Step. The Step is skipped, the Plan continues."""

    def __init__(self, reason: str, follow_up: Optional[str] = None):
        super().__init__(reason)
        self.follow_up = follow_up


# ---------------------------------------------------------------------------
# Host ownership
# ---------------------------------------------------------------------------


class RunLockHeld(ProvisionError):
    """Another provisioning run holds the host run-lock."""
