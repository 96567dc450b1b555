"""
Command Executor.

The only component allowed to change the host: it runs external
processes, writes configuration files and performs bounded HTTP lookups.
Everything else in dokkuprov asks the executor.

Two entry points for processes:

- ``execute()`` for mutating commands. A non-zero exit that the caller
  did not declare as tolerable raises ``ExternalCommandFailure``.
- ``query()`` for read-only checks. It never raises on exit status; the
  caller inspects ``CommandResult`` itself.

In dry-run mode queries still run, mutations are only logged.

File paths are resolved against ``root`` so tests (and chroots) can point
the executor at a scratch directory.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Collection, Dict, List, Mapping, Optional, Sequence

import httpx

from dokkuprov.errors import ExternalCommandFailure
from dokkuprov.timeouts import COMMAND_DEFAULT_TIMEOUT_S, HTTP_LOOKUP_TIMEOUT_S, QUERY_TIMEOUT_S

logger = logging.getLogger(__name__)

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "Disposition",
    "classify",
]

# Conventional shell codes for a missing binary and a timeout
EXIT_NOT_FOUND = 127
EXIT_TIMED_OUT = 124

REDACTED = "******"


class Disposition(str, Enum):
    """How a caller treats a finished command."""
    SUCCESS = "success"
    TOLERATED = "tolerated"
    FATAL = "fatal"


@dataclass
class CommandResult:
    """Outcome of one external process."""
    argv: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    dry_run: bool = False
    duration_seconds: float = 0.0
    disposition: Disposition = field(default=Disposition.SUCCESS)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def display(self) -> str:
        return shlex.join(self.argv)

    def lines(self) -> List[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]

    def tail(self, n: int) -> str:
        """Last ``n`` lines of combined output, for failure diagnostics."""
        combined = (self.stdout.rstrip("\n") + "\n" + self.stderr.rstrip("\n")).strip("\n")
        return "\n".join(combined.splitlines()[-n:])


def classify(result: CommandResult, tolerate: Collection[int] = ()) -> Disposition:
    """Map an exit status onto success, tolerated failure or fatal failure."""
    if result.timed_out:
        return Disposition.FATAL
    if result.exit_code == 0:
        return Disposition.SUCCESS
    if result.exit_code in tolerate:
        return Disposition.TOLERATED
    return Disposition.FATAL


def _redact(text: str, secrets: Collection[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


class CommandExecutor:
    """
    Runs processes, writes files and fetches URLs on behalf of Steps.

    Args:
        root: Filesystem root that absolute paths are resolved against
        dry_run: Log mutations instead of performing them
        http_client: Injected ``httpx.Client`` (tests use a MockTransport)
        lookup_timeout: Default bound for HTTP lookups in seconds
    """

    def __init__(
        self,
        root: os.PathLike = Path("/"),
        dry_run: bool = False,
        http_client: Optional[httpx.Client] = None,
        lookup_timeout: float = HTTP_LOOKUP_TIMEOUT_S,
    ):
        self.root = Path(root)
        self.dry_run = dry_run
        self.lookup_timeout = lookup_timeout
        self._http = http_client

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout: float = COMMAND_DEFAULT_TIMEOUT_S,
        tolerate: Collection[int] = (),
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        redact: Collection[str] = (),
        context: str = "",
        cwd: Optional[os.PathLike] = None,
    ) -> CommandResult:
        """
        Run a mutating command.

        Args:
            command: Executable name
            args: Arguments
            timeout: Seconds before the process is killed
            tolerate: Non-zero exit codes the caller accepts
            input_text: Text fed to stdin
            env: Extra environment variables for the child process
            redact: Values masked in logs, results and errors
            context: What the command does (for error messages)
            cwd: Working directory for the child process

        Returns:
            CommandResult with ``disposition`` set

        Raises:
            ExternalCommandFailure: fatal exit status or timeout
        """
        argv = [command, *args]
        shown = _redact(shlex.join(argv), redact)
        if self.dry_run:
            logger.info("[dry-run] %s", shown)
            return CommandResult(argv=[_redact(a, redact) for a in argv], exit_code=0, dry_run=True)

        logger.debug("Running: %s", shown)
        result = self._run(argv, timeout=timeout, input_text=input_text, env=env, redact=redact, cwd=cwd)
        result.disposition = classify(result, tolerate)
        if result.disposition is Disposition.FATAL:
            raise ExternalCommandFailure(result, context=context)
        if result.disposition is Disposition.TOLERATED:
            logger.info("Tolerated exit %d from %s", result.exit_code, result.display)
        return result

    def query(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout: float = QUERY_TIMEOUT_S,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Run a read-only command. Never raises on exit status."""
        argv = [command, *args]
        logger.debug("Querying: %s", shlex.join(argv))
        result = self._run(argv, timeout=timeout, input_text=input_text)
        result.disposition = classify(result)
        return result

    def available(self, command: str) -> bool:
        """Check if an executable is on PATH."""
        return shutil.which(command) is not None

    def _run(
        self,
        argv: List[str],
        *,
        timeout: float,
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        redact: Collection[str] = (),
        cwd: Optional[os.PathLike] = None,
    ) -> CommandResult:
        child_env: Optional[Dict[str, str]] = None
        if env:
            child_env = {**os.environ, **env}
        started = time.monotonic()
        shown_argv = [_redact(a, redact) for a in argv]
        try:
            proc = subprocess.run(
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=child_env,
                cwd=cwd,
                # Steps never prompt; anything waiting on a tty must fail
                stdin=subprocess.DEVNULL if input_text is None else None,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                argv=shown_argv,
                exit_code=EXIT_TIMED_OUT,
                stdout=_redact(_as_text(e.stdout), redact),
                stderr=_redact(_as_text(e.stderr), redact),
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )
        except FileNotFoundError:
            return CommandResult(
                argv=shown_argv,
                exit_code=EXIT_NOT_FOUND,
                stderr=f"{argv[0]}: command not found",
                duration_seconds=time.monotonic() - started,
            )
        return CommandResult(
            argv=shown_argv,
            exit_code=proc.returncode,
            stdout=_redact(proc.stdout or "", redact),
            stderr=_redact(proc.stderr or "", redact),
            duration_seconds=time.monotonic() - started,
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def path(self, path: os.PathLike) -> Path:
        """Resolve a host path against ``root``."""
        return self.root / str(path).lstrip("/")

    def exists(self, path: os.PathLike) -> bool:
        return self.path(path).exists()

    def read_file(self, path: os.PathLike) -> Optional[str]:
        """Read a host file, None if it does not exist."""
        target = self.path(path)
        try:
            return target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_file(self, path: os.PathLike, content: str, mode: int = 0o644) -> bool:
        """
        Write a host file atomically.

        Rewriting identical content with identical permissions is a no-op.

        Returns:
            True if the file changed
        """
        target = self.path(path)
        if target.exists() and target.read_text(encoding="utf-8") == content:
            if (target.stat().st_mode & 0o777) == mode:
                return False
        if self.dry_run:
            logger.info("[dry-run] write %s (%d bytes, mode %o)", path, len(content), mode)
            return True

        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(temp_path, mode)
            os.replace(temp_path, target)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Wrote %s", target)
        return True

    def remove_file(self, path: os.PathLike) -> bool:
        """Remove a host file. Returns True if something was removed."""
        target = self.path(path)
        if not target.exists():
            return False
        if self.dry_run:
            logger.info("[dry-run] remove %s", path)
            return True
        target.unlink()
        return True

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def fetch_text(self, url: str, timeout: Optional[float] = None) -> Optional[str]:
        """
        GET a URL and return the stripped body.

        Best effort: any transport error, timeout or non-2xx status yields
        None so callers can fall back to a configured default.
        """
        bound = timeout if timeout is not None else self.lookup_timeout
        try:
            response = self._client().get(url, timeout=bound, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning("Lookup of %s failed: %s", url, e)
            return None
        if not response.is_success:
            logger.warning("Lookup of %s returned HTTP %d", url, response.status_code)
            return None
        return response.text.strip()

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(headers={"User-Agent": "dokkuprov"})
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
