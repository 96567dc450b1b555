"""
Thin wrapper over the Dokku command line.

Existence and state checks use dedicated query commands and their exit
codes (``apps:exists``, ``postgres:linked``, ``plugin:installed``, ...)
or the ``--<flag>`` form of ``*:report`` that prints a single value.
Error text of the platform is never parsed: a failed mutation is a
failure, and "already exists" cases are avoided by checking first.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import PurePosixPath
from typing import Collection, Dict, List, Optional, Sequence

from dokkuprov.executor import CommandExecutor, CommandResult
from dokkuprov.timeouts import COMMAND_DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)

DOKKU_HOME = PurePosixPath("/home/dokku")
DOKKU_LIB = PurePosixPath("/var/lib/dokku")

_SCALE_LINE_RE = re.compile(r"^\s*(?P<proc>[A-Za-z0-9_-]+):\s+(?P<qty>\d+)\s*$")
_SSH_KEY_NAME_RE = re.compile(r'NAME="(?P<name>[^"]+)"')


class DokkuClient:
    """Queries and mutations against the platform CLI."""

    def __init__(self, executor: CommandExecutor, binary: str = "dokku"):
        self.executor = executor
        self.binary = binary

    def query(self, *args: str) -> CommandResult:
        return self.executor.query(self.binary, args)

    def run(
        self,
        *args: str,
        context: str = "",
        redact: Collection[str] = (),
        input_text: Optional[str] = None,
        timeout: float = COMMAND_DEFAULT_TIMEOUT_S,
    ) -> CommandResult:
        return self.executor.execute(
            self.binary,
            args,
            context=context,
            redact=redact,
            input_text=input_text,
            timeout=timeout,
        )

    def _report_value(self, *args: str) -> str:
        result = self.query(*args)
        return result.stdout.strip() if result.ok else ""

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def is_server_install(self) -> bool:
        """
        True on the Dokku server itself.

        The remote CLI client also provides a ``dokku`` binary, but only
        the server has the ``dokku`` user home.
        """
        return self.executor.exists(DOKKU_HOME) and self.query("version").ok

    def version(self) -> Optional[str]:
        result = self.query("version")
        return result.stdout.strip() if result.ok else None

    def plugin_installed(self, name: str) -> bool:
        return self.query("plugin:installed", name).ok

    def missing_plugins(self, names: Sequence[str]) -> List[str]:
        return [name for name in names if not self.plugin_installed(name)]

    # ------------------------------------------------------------------
    # Apps and services
    # ------------------------------------------------------------------

    def app_exists(self, app: str) -> bool:
        return self.query("apps:exists", app).ok

    def app_deployed(self, app: str) -> bool:
        return self._report_value("ps:report", app, "--deployed") == "true"

    def service_exists(self, kind: str, name: str) -> bool:
        return self.query(f"{kind}:exists", name).ok

    def service_linked(self, kind: str, name: str, app: str) -> bool:
        return self.query(f"{kind}:linked", name, app).ok

    def backup_schedule(self, database: str) -> str:
        return self._report_value("postgres:backup-schedule-cat", database)

    def backup_access_key(self, database: str) -> Optional[str]:
        """Access key stored by ``postgres:backup-auth``, None if unset."""
        path = DOKKU_LIB / "services" / "postgres" / database / "backup" / "AWS_ACCESS_KEY_ID"
        value = self.executor.read_file(path)
        return value.strip() if value is not None else None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def app_env(self, app: str) -> Dict[str, str]:
        result = self.query("config:export", "--format", "json", app)
        if not result.ok or not result.stdout.strip():
            return {}
        try:
            data = json.loads(result.stdout)
        except ValueError:
            logger.warning("Unreadable config export for %s", app)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def global_vhosts(self) -> List[str]:
        return self._report_value("domains:report", "--global", "--domains-global-vhosts").split()

    def app_vhosts(self, app: str) -> List[str]:
        return self._report_value("domains:report", app, "--domains-app-vhosts").split()

    def process_scale(self, app: str) -> Dict[str, int]:
        """Current process counts, parsed from ``ps:scale <app>`` rows."""
        result = self.query("ps:scale", app)
        scale: Dict[str, int] = {}
        if not result.ok:
            return scale
        for line in result.stdout.splitlines():
            match = _SCALE_LINE_RE.match(line)
            if match and match["proc"] != "proctype":
                scale[match["proc"]] = int(match["qty"])
        return scale

    def ssh_key_names(self) -> List[str]:
        result = self.query("ssh-keys:list")
        if not result.ok:
            return []
        return _SSH_KEY_NAME_RE.findall(result.stdout)

    # ------------------------------------------------------------------
    # Let's Encrypt
    # ------------------------------------------------------------------

    def letsencrypt_active(self, app: str) -> bool:
        return self._report_value("letsencrypt:active", app) == "true"

    def letsencrypt_global_email(self) -> Optional[str]:
        """Global email property written by ``letsencrypt:set --global email``."""
        value = self.executor.read_file(DOKKU_LIB / "config" / "letsencrypt" / "--global" / "email")
        return value.strip() if value else None

    def letsencrypt_cron_installed(self) -> bool:
        result = self.executor.query("crontab", ["-l", "-u", "dokku"])
        return result.ok and "letsencrypt:auto-renew" in result.stdout
