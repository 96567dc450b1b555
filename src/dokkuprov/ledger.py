"""
State Ledger for provisioning runs.

Persists which Steps of a Plan completed so a re-run (for instance after
the reboot the server Plan triggers) picks up where it left off:

- Append-only: every result, confirmation and reset is a new entry.
- Resume: a recent completed entry lets the Runner skip a Step.
- Staleness: completed entries older than the trust window are
  re-verified instead of trusted.
- Atomic updates: temporary file + rename, permissions 600.

One JSON file per Plan, under the configured state directory.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from dokkuprov.steps import StepOutcome

logger = logging.getLogger(__name__)

__all__ = [
    "EntryKind",
    "LedgerEntry",
    "StateLedger",
]

LEDGER_VERSION = 1


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


class EntryKind(str, Enum):
    RESULT = "result"
    CONFIRMATION = "confirmation"
    RESET = "reset"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LedgerEntry:
    """One append-only ledger record."""
    step: str
    kind: EntryKind = EntryKind.RESULT
    outcome: Optional[StepOutcome] = None
    timestamp: datetime = field(default_factory=_now)
    reason: str = ""
    output: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "step": self.step,
            "kind": self.kind.value,
            "outcome": self.outcome.value if self.outcome else None,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        """Create from dictionary."""
        outcome = data.get("outcome")
        return cls(
            step=data["step"],
            kind=EntryKind(data.get("kind", "result")),
            outcome=StepOutcome(outcome) if outcome else None,
            timestamp=datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00")),
            reason=data.get("reason", ""),
            output=data.get("output"),
        )


class StateLedger:
    """
    Append-only record of step outcomes for one Plan.

    Entries are never rewritten. ``reset`` is the only way to forget a
    Step and it is itself recorded.
    """

    def __init__(self, path: Path, plan: str = ""):
        self.path = Path(path)
        self.plan = plan or self.path.stem
        self._entries: Optional[List[LedgerEntry]] = None
        self.created_at: datetime = _now()

    @property
    def entries(self) -> List[LedgerEntry]:
        if self._entries is None:
            self._entries = self.load()
        return self._entries

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[LedgerEntry]:
        """
        Load entries from disk.

        A corrupted ledger (unparseable, or JSON of the wrong shape) is
        never discarded silently: it is moved aside and the run starts
        from an empty ledger, with a warning.
        """
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.created_at = datetime.fromisoformat(data["created_at"])
            return [LedgerEntry.from_dict(e) for e in data.get("entries", [])]
        except (json.JSONDecodeError, KeyError, ValueError, TypeError, AttributeError) as e:
            backup = self._archive("corrupt")
            logger.warning("Corrupted ledger %s (%s), moved to %s", self.path, e, backup)
            self.created_at = _now()
            return []

    def save(self) -> None:
        """Write the ledger atomically with owner-only permissions."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": LEDGER_VERSION,
            "plan": self.plan,
            "created_at": self.created_at.isoformat(),
            "updated_at": _now().isoformat(),
            "entries": [e.to_dict() for e in self.entries],
        }
        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.stem}-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def _append(self, entry: LedgerEntry) -> LedgerEntry:
        self.entries.append(entry)
        self.save()
        return entry

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        step: str,
        outcome: StepOutcome,
        reason: str = "",
        output: Optional[str] = None,
    ) -> LedgerEntry:
        """Append the outcome of a Step."""
        return self._append(LedgerEntry(step=step, outcome=outcome, reason=reason, output=output))

    def record_confirmation(self, step: str, reason: str = "operator confirmed") -> LedgerEntry:
        """Append an operator acknowledgment for a Step's checkpoint."""
        return self._append(LedgerEntry(step=step, kind=EntryKind.CONFIRMATION, reason=reason))

    def reset(self, step: Optional[str] = None) -> None:
        """
        Explicit operator reset.

        With ``step``, appends a reset marker so the Step is treated as
        never run. Without, archives the whole ledger file.
        """
        if step is not None:
            self._append(LedgerEntry(step=step, kind=EntryKind.RESET, reason="operator reset"))
            return
        if self.path.exists():
            self._archive("reset")
        self._entries = []
        self.created_at = _now()

    def _archive(self, label: str) -> Path:
        stamp = _now().strftime("%Y%m%dT%H%M%S")
        target = self.path.with_name(f"{self.path.name}.{label}-{stamp}")
        os.replace(self.path, target)
        return target

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def history(self, step: str) -> List[LedgerEntry]:
        return [e for e in self.entries if e.step == step]

    def latest(self, step: str) -> Optional[LedgerEntry]:
        """Most recent result entry since the last reset, if any."""
        for entry in reversed(self.history(step)):
            if entry.kind is EntryKind.RESET:
                return None
            if entry.kind is EntryKind.RESULT:
                return entry
        return None

    def lookup(self, step: str) -> Optional[StepOutcome]:
        entry = self.latest(step)
        return entry.outcome if entry else None

    def is_stale(self, entry: LedgerEntry, trust: timedelta, now: Optional[datetime] = None) -> bool:
        return (now or _now()) - entry.timestamp >= trust

    def checkpoint_pending(self, step: str) -> bool:
        """True if the Step applied a change nobody has confirmed yet."""
        for entry in reversed(self.history(step)):
            if entry.kind in (EntryKind.CONFIRMATION, EntryKind.RESET):
                return False
            if entry.outcome is StepOutcome.APPLIED:
                return True
        return False

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def show_summary(self, use_colors: bool = True) -> str:
        """
        Generate a summary of the ledger.

        Args:
            use_colors: Whether to use ANSI color codes

        Returns:
            Formatted summary string
        """
        c = Colors if use_colors else type("NoColors", (), {k: "" for k in dir(Colors) if not k.startswith("_")})()

        lines = [
            f"{c.BOLD}Provisioning ledger: {self.plan}{c.RESET}",
            f"{'=' * 40}",
            f"File: {self.path}",
            f"Created: {self.created_at.isoformat()}",
            "",
            f"{c.BOLD}Steps:{c.RESET}",
        ]

        colors = {
            StepOutcome.APPLIED: c.GREEN,
            StepOutcome.SKIPPED: c.CYAN,
            StepOutcome.FAILED: c.RED,
            StepOutcome.VETOED: c.YELLOW,
            StepOutcome.BLOCKED: c.YELLOW,
        }

        seen: List[str] = []
        for entry in self.entries:
            if entry.step not in seen:
                seen.append(entry.step)
        for step in seen:
            latest = self.latest(step)
            if latest is None:
                lines.append(f"  {c.BLUE}{'reset':<8}{c.RESET} {step}")
                continue
            color = colors.get(latest.outcome, "")
            reason = f" - {latest.reason}" if latest.reason else ""
            pending = " (awaiting confirmation)" if self.checkpoint_pending(step) else ""
            lines.append(
                f"  {color}{latest.outcome.value:<8}{c.RESET} {step}{reason}{pending}"
                f" [{latest.timestamp:%Y-%m-%d %H:%M}]"
            )

        if not seen:
            lines.append("  (no steps recorded)")

        done = sum(1 for s in seen if (self.lookup(s) or StepOutcome.FAILED).satisfied)
        lines.extend(["", f"Progress: {done}/{len(seen) or 1} steps complete"])
        return "\n".join(lines)
