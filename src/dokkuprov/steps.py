"""
Step abstraction and provisioning Plan.

A Step is one idempotent unit of host configuration with a three-phase
contract:

- ``precheck()``: is the desired state already in place?
- ``apply()``: make it so. Must be safe to run again.
- ``verify()``: does the desired state hold now? Defaults to ``precheck``.

Risky Steps add a ``guard()`` that can veto execution entirely and a
``checkpoint`` message: once the Step has applied a change, the Runner
stops until the operator confirms that access to the host survived.

A Plan is a fixed, dependency-ordered sequence of Steps. The order is
resolved once at construction; unknown or cyclic dependencies are
rejected with ``PlanError``.
"""

from __future__ import annotations

from abc import ABCMeta, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from dokkuprov.errors import PlanError, PreconditionVeto

if TYPE_CHECKING:
    from dokkuprov.config import ProvisionConfig
    from dokkuprov.dokku import DokkuClient
    from dokkuprov.executor import CommandExecutor

__all__ = [
    "Criticality",
    "ExecutionResult",
    "Idempotency",
    "Plan",
    "Step",
    "StepContext",
    "StepOutcome",
]


class Criticality(str, Enum):
    """What a failure of the Step does to the Plan."""
    FATAL = "fatal"
    DEGRADED = "degraded"


class Idempotency(str, Enum):
    SKIP_IF_SATISFIED = "skip-if-satisfied"
    ALWAYS_RUN = "always-run"


class StepOutcome(str, Enum):
    """Result of one Step in one run."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    VETOED = "vetoed"
    BLOCKED = "blocked"

    @property
    def satisfied(self) -> bool:
        """Dependents may proceed."""
        return self in (StepOutcome.APPLIED, StepOutcome.SKIPPED)


class ExecutionResult(BaseModel):
    """Per-step outcome of one run."""

    model_config = ConfigDict(frozen=True)

    step: str
    outcome: StepOutcome
    reason: str = ""
    criticality: Criticality = Criticality.FATAL
    follow_up: Optional[str] = None
    output: Optional[str] = None
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_fatal(self) -> bool:
        return self.outcome is StepOutcome.FAILED and self.criticality is Criticality.FATAL


@dataclass(frozen=True)
class StepContext:
    """Collaborators shared by every Step of a Plan."""
    executor: "CommandExecutor"
    dokku: "DokkuClient"
    config: "ProvisionConfig"


class Step(metaclass=ABCMeta):
    """
    Base class for provisioning steps.

    Subclasses set ``name`` and ``description`` and implement
    ``precheck`` and ``apply``. ``apply`` returns a one-line summary of
    what changed, or raises ``StepFailure``.
    """

    name: str = ""
    description: str = ""
    dependencies: Tuple[str, ...] = ()
    # Ordering-only predecessors; their failure does not block this Step
    after: Tuple[str, ...] = ()
    criticality: Criticality = Criticality.FATAL
    idempotency: Idempotency = Idempotency.SKIP_IF_SATISFIED
    checkpoint: Optional[str] = None

    def __init__(self, ctx: StepContext):
        self.ctx = ctx

    @property
    def executor(self) -> "CommandExecutor":
        return self.ctx.executor

    @property
    def dokku(self) -> "DokkuClient":
        return self.ctx.dokku

    @property
    def config(self) -> "ProvisionConfig":
        return self.ctx.config

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name!r}>"

    def guard(self) -> None:
        """Raise ``PreconditionVeto`` to refuse running. Default: no guard."""

    @abstractmethod
    def precheck(self) -> bool:
        """True if the desired state already holds."""

    @abstractmethod
    def apply(self) -> str:
        """Change the host; return a one-line summary."""

    def verify(self) -> bool:
        return self.precheck()

    def follow_up(self) -> Optional[str]:
        """Command the operator can run manually if this Step fails."""
        return None

    def veto(self, reason: str, follow_up: Optional[str] = None) -> None:
        raise PreconditionVeto(reason, follow_up)


class Plan:
    """Ordered Steps where every dependency precedes its dependents."""

    def __init__(self, name: str, steps: Sequence[Step]):
        self.name = name
        self._by_name: Dict[str, Step] = {}
        for step in steps:
            if not step.name:
                raise PlanError(f"{step!r} has no name")
            if step.name in self._by_name:
                raise PlanError(f"Duplicate step name: {step.name}")
            self._by_name[step.name] = step
        for step in steps:
            for dep in (*step.dependencies, *step.after):
                if dep not in self._by_name:
                    raise PlanError(f"Step {step.name} depends on unknown step {dep}")
        self._steps = self._ordered(list(steps))

    def _ordered(self, steps: List[Step]) -> List[Step]:
        """Stable topological sort: declaration order unless a dependency forces otherwise."""
        ordered: List[Step] = []
        placed = set()
        remaining = list(steps)
        while remaining:
            for index, step in enumerate(remaining):
                if all(dep in placed for dep in (*step.dependencies, *step.after)):
                    ordered.append(step)
                    placed.add(step.name)
                    del remaining[index]
                    break
            else:
                cycle = ", ".join(s.name for s in remaining)
                raise PlanError(f"Dependency cycle among steps: {cycle}")
        return ordered

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, name: str) -> Step:
        return self._by_name[name]

    def names(self) -> List[str]:
        return [step.name for step in self._steps]
