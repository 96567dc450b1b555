"""
Pytest configuration and fixtures for dokkuprov tests.

The ``host`` fixture is a simulated Ubuntu/Dokku machine: a
``CommandExecutor`` whose processes are answered from in-memory state and
whose files live under a temporary root. Steps talk to it exactly as they
would to a real host, so plan tests exercise the real prechecks, apply
actions and verifications.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import httpx
import pytest

from dokkuprov.config import ProvisionConfig, reset_config
from dokkuprov.dokku import DokkuClient
from dokkuprov.executor import CommandExecutor, CommandResult, _redact
from dokkuprov.ledger import StateLedger
from dokkuprov.params import resolve_app_parameters, resolve_server_parameters
from dokkuprov.runner import PlanReport, Runner
from dokkuprov.server_steps import SHUTDOWN_SCHEDULED, SSHD_HARDENING
from dokkuprov.steps import Plan, StepContext

HOST_IPV4 = "203.0.113.7"
ROOT_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIEXAMPLEKEY operator@laptop"

DEFAULT_ROUTES: Dict[str, object] = {
    "https://api.github.com/repos/dokku/dokku/releases/latest": (200, '{"tag_name": "v0.35.20"}'),
    "https://dokku.com/install/v0.35.20/bootstrap.sh": (200, "#!/bin/bash\necho installing dokku\n"),
    "https://api.ipify.org": (200, f"{HOST_IPV4}\n"),
}


# ============================================================================
# Simulated host
# ============================================================================


@dataclass
class SimApp:
    env: Dict[str, str] = field(default_factory=dict)
    vhosts: List[str] = field(default_factory=list)
    scale: Dict[str, int] = field(default_factory=dict)
    deployed: bool = False
    ssl: bool = False


@dataclass
class SimService:
    links: Set[str] = field(default_factory=set)
    schedule: str = ""


class SimulatedHost(CommandExecutor):
    """Executor backed by in-memory OS and platform state."""

    def __init__(self, root: Path, routes: Optional[Dict[str, object]] = None):
        super().__init__(root=root)
        self.routes = {k.rstrip("/"): v for k, v in {**DEFAULT_ROUTES, **(routes or {})}.items()}
        self.transport = httpx.MockTransport(self._respond)
        self.calls: List[List[str]] = []
        self.mutations: List[List[str]] = []
        self.fetched: List[str] = []
        self.failures: Dict[Tuple[str, ...], Tuple[int, str]] = {}
        self.remote_client = False

        # Operating system
        self.packages: Set[str] = set()
        self.upgrades_pending = True
        self.active_services: Set[str] = set()
        self.ufw = {"active": False, "incoming": "allow", "outgoing": "allow", "rules": []}

        # Platform
        self.dokku_tag: Optional[str] = None
        self.plugins: Set[str] = set()
        self.apps: Dict[str, SimApp] = {}
        self.services: Dict[Tuple[str, str], SimService] = {}
        self.global_vhosts: List[str] = []
        self.ssh_keys: Dict[str, List[str]] = {}
        self.cron = False

    # ------------------------------------------------------------------
    # Scenario helpers
    # ------------------------------------------------------------------

    @property
    def dokku_installed(self) -> bool:
        return self.path("/home/dokku").is_dir()

    def install_dokku(self, tag: str = "v0.35.20") -> None:
        self.path("/home/dokku").mkdir(parents=True, exist_ok=True)
        self.dokku_tag = tag

    def provisioned(self) -> "SimulatedHost":
        """A server where the server plan already ran."""
        self.install_dokku()
        self.plugins.update({"postgres", "redis", "letsencrypt"})
        self.global_vhosts = [f"{HOST_IPV4}.sslip.io"]
        return self

    def put_file(self, path: str, content: str) -> None:
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    def fail(self, *prefix: str, code: int = 1, stderr: str = "simulated failure") -> None:
        """Make every command starting with ``prefix`` exit with ``code``."""
        self.failures[prefix] = (code, stderr)

    # ------------------------------------------------------------------
    # Executor overrides
    # ------------------------------------------------------------------

    def execute(self, command, args=(), **kwargs):
        if not self.dry_run:
            self.mutations.append([command, *args])
        return super().execute(command, args, **kwargs)

    def available(self, command: str) -> bool:
        if command == "dokku":
            return self.dokku_installed or self.remote_client
        return True

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(transport=self.transport)
        return self._http

    def _respond(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).rstrip("/")
        self.fetched.append(url)
        route = self.routes.get(url)
        if isinstance(route, type) and issubclass(route, Exception):
            raise route("simulated", request=request)
        if route is None:
            return httpx.Response(404, text="not found")
        status, body = route
        return httpx.Response(status, text=body)

    def _run(self, argv, *, timeout, input_text=None, env=None, redact=(), cwd=None):
        argv = list(argv)
        self.calls.append(argv)
        shown = [_redact(a, redact) for a in argv]
        for prefix, (code, stderr) in self.failures.items():
            if tuple(argv[: len(prefix)]) == prefix:
                return CommandResult(argv=shown, exit_code=code, stderr=_redact(stderr, redact))
        handler = getattr(self, "_cmd_" + argv[0].replace("-", "_"), None)
        if handler is None:
            return CommandResult(argv=shown, exit_code=127, stderr=f"{argv[0]}: command not found")
        code, out = handler(argv[1:], input_text, env or {})
        return CommandResult(argv=shown, exit_code=code, stdout=out)

    # ------------------------------------------------------------------
    # Operating system commands
    # ------------------------------------------------------------------

    def _cmd_dpkg_query(self, args, stdin, env):
        if args[-1] in self.packages:
            return 0, "install ok installed"
        return 1, ""

    def _cmd_apt_get(self, args, stdin, env):
        if "-s" in args:
            if self.upgrades_pending:
                return 0, "3 upgraded, 0 newly installed, 0 to remove and 0 not upgraded.\n"
            return 0, "0 upgraded, 0 newly installed, 0 to remove and 0 not upgraded.\n"
        if args[0] == "upgrade":
            self.upgrades_pending = False
        elif args[0] == "install":
            self.packages.update(
                a for a in args[1:] if not a.startswith("-") and not a.startswith("Dpkg::")
            )
        return 0, ""

    def _cmd_locale_gen(self, args, stdin, env):
        return 0, ""

    def _cmd_update_locale(self, args, stdin, env):
        self.put_file("/etc/default/locale", "".join(f"{a}\n" for a in args))
        return 0, ""

    def _cmd_systemctl(self, args, stdin, env):
        action, service = args[0], args[1]
        if action == "is-active":
            return (0, "active\n") if service in self.active_services else (3, "inactive\n")
        self.active_services.add(service)
        return 0, ""

    def _cmd_service(self, args, stdin, env):
        return 0, ""

    def _cmd_ufw(self, args, stdin, env):
        if args[0] == "status":
            if not self.ufw["active"]:
                return 0, "Status: inactive\n"
            rules = "".join(f"{port:<27}ALLOW IN    Anywhere\n" for port in self.ufw["rules"])
            return 0, (
                "Status: active\n"
                "Logging: on (low)\n"
                f"Default: {self.ufw['incoming']} (incoming), {self.ufw['outgoing']} (outgoing), "
                "disabled (routed)\n"
                "New profiles: skip\n\n"
                "To                         Action      From\n"
                "--                         ------      ----\n" + rules
            )
        if args[0] == "default":
            self.ufw[args[2]] = args[1]
        elif args[0] == "allow" and args[1] not in self.ufw["rules"]:
            self.ufw["rules"].append(args[1])
        elif args[:2] == ["--force", "enable"]:
            self.ufw["active"] = True
        return 0, ""

    def _cmd_sshd(self, args, stdin, env):
        if args[0] == "-T":
            hardened = self.path(SSHD_HARDENING).exists()
            return 0, f"passwordauthentication {'no' if hardened else 'yes'}\n"
        return 0, ""

    def _cmd_bash(self, args, stdin, env):
        if not Path(args[0]).exists():
            return 127, ""
        self.install_dokku(env.get("DOKKU_TAG", "unknown"))
        return 0, "installed\n"

    def _cmd_shutdown(self, args, stdin, env):
        self.put_file(str(SHUTDOWN_SCHEDULED), "USEC=0\n")
        return 0, ""

    def _cmd_crontab(self, args, stdin, env):
        if self.cron:
            return 0, "@daily /usr/bin/dokku letsencrypt:auto-renew\n"
        return 1, ""

    # ------------------------------------------------------------------
    # Platform CLI
    # ------------------------------------------------------------------

    def _cmd_dokku(self, args, stdin, env):
        if not (self.dokku_installed or self.remote_client):
            return 127, ""
        sub, rest = args[0], args[1:]
        if sub == "version":
            return 0, f"dokku version {self.dokku_tag or '0.35.20'}\n"
        if sub == "plugin:installed":
            return (0 if rest[0] in self.plugins else 1), ""
        if sub == "plugin:install":
            self.plugins.add(rest[rest.index("--name") + 1])
            return 0, ""
        if sub.startswith("apps:"):
            return self._apps(sub, rest)
        if sub.split(":")[0] in ("postgres", "redis"):
            return self._service(sub, rest)
        if sub.startswith(("config:", "domains:", "ps:")):
            return self._app_config(sub, rest)
        if sub.startswith("ssh-keys:"):
            if sub == "ssh-keys:add":
                self.ssh_keys[rest[0]] = (stdin or "").splitlines()
                return 0, ""
            if not self.ssh_keys:
                return 1, ""
            return 0, "".join(
                f'SHA256:abc{i} NAME="{name}" SSHCOMMAND_ALLOWED_KEYS="none"\n'
                for i, name in enumerate(self.ssh_keys)
            )
        if sub.startswith("letsencrypt:"):
            return self._letsencrypt(sub, rest)
        return 1, f"unknown command {sub}"

    def _apps(self, sub, rest):
        if sub == "apps:exists":
            return (0 if rest[0] in self.apps else 1), ""
        if sub == "apps:create":
            if rest[0] in self.apps:
                return 1, ""
            self.apps[rest[0]] = SimApp()
            return 0, ""
        return 1, ""

    def _service(self, sub, rest):
        kind, action = sub.split(":", 1)
        key = (kind, rest[0])
        service = self.services.get(key)
        if action == "exists":
            return (0 if service else 1), ""
        if action == "create":
            if service:
                return 1, ""
            self.services[key] = SimService()
            return 0, ""
        if service is None:
            return 1, ""
        if action == "linked":
            return (0 if rest[1] in service.links else 1), ""
        if action == "link":
            service.links.add(rest[1])
            self.apps[rest[1]].env[f"{kind.upper()}_URL"] = f"{kind}://{rest[0]}"
            return 0, ""
        if action == "backup-auth":
            self.put_file(f"/var/lib/dokku/services/{kind}/{rest[0]}/backup/AWS_ACCESS_KEY_ID", rest[1])
            return 0, ""
        if action == "backup-schedule":
            service.schedule = f"{rest[1]} dokku /usr/bin/dokku {kind}:backup {rest[0]} {rest[2]}"
            return 0, ""
        if action == "backup-schedule-cat":
            return (0, service.schedule + "\n") if service.schedule else (1, "")
        return 1, ""

    def _app_config(self, sub, rest):
        if sub == "domains:report":
            if rest[0] == "--global":
                return 0, " ".join(self.global_vhosts) + "\n"
            app = self.apps.get(rest[0])
            return (0, " ".join(app.vhosts) + "\n") if app else (1, "")
        if sub == "domains:set-global":
            self.global_vhosts = [rest[0]]
            return 0, ""
        app = self.apps.get(rest[-1] if sub == "config:export" else rest[0])
        if app is None:
            return 1, ""
        if sub == "config:export":
            return 0, json.dumps(app.env)
        if sub == "config:set":
            app.env.update(pair.split("=", 1) for pair in rest[1:])
            return 0, ""
        if sub == "domains:set":
            app.vhosts = rest[1:]
            return 0, ""
        if sub == "ps:report":
            return 0, "true\n" if app.deployed else "false\n"
        if sub == "ps:scale":
            if len(rest) == 1:
                rows = "".join(f"{proc}:  {qty}\n" for proc, qty in app.scale.items())
                return 0, f"-----> Scaling for {rest[0]}\nproctype: qty\n--------: ---\n{rows}"
            app.scale.update((p, int(q)) for p, q in (pair.split("=") for pair in rest[1:]))
            return 0, ""
        return 1, ""

    def _letsencrypt(self, sub, rest):
        if sub == "letsencrypt:set":
            self.put_file(f"/var/lib/dokku/config/letsencrypt/{rest[0]}/{rest[1]}", rest[2])
            return 0, ""
        if sub == "letsencrypt:cron-job":
            self.cron = True
            return 0, ""
        app = self.apps.get(rest[0])
        if sub == "letsencrypt:active":
            return 0, "true\n" if app and app.ssl else "false\n"
        if sub == "letsencrypt:enable":
            if app is None or not app.deployed:
                return 1, "failed to obtain certificate\n"
            app.ssl = True
            return 0, ""
        return 1, ""


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """No DOKKUPROV_* variables from the developer's shell, no cached config."""
    for key in list(os.environ):
        if key.startswith("DOKKUPROV_"):
            monkeypatch.delenv(key)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def config(state_dir: Path) -> ProvisionConfig:
    return ProvisionConfig(state_dir=str(state_dir))


# ============================================================================
# Host Fixtures
# ============================================================================


@pytest.fixture
def host(tmp_path: Path) -> SimulatedHost:
    """A fresh Ubuntu host with an operator key in root's authorized_keys."""
    sim = SimulatedHost(tmp_path / "root")
    sim.put_file("/root/.ssh/authorized_keys", ROOT_KEY + "\n")
    sim.put_file("/etc/default/ufw", "IPV6=no\nDEFAULT_INPUT_POLICY=\"DROP\"\n")
    return sim


@pytest.fixture
def server(host: SimulatedHost) -> SimulatedHost:
    """A host where the server plan already ran."""
    return host.provisioned()


@pytest.fixture
def ctx(host: SimulatedHost, config: ProvisionConfig) -> StepContext:
    return StepContext(executor=host, dokku=DokkuClient(host), config=config)


@pytest.fixture
def server_params():
    return resolve_server_parameters("admin@example.com")


@pytest.fixture
def blog_params():
    return resolve_app_parameters("blog", "AKIAEXAMPLE", "s3cr3t/KEY", "acme-backups")


@pytest.fixture
def run(config: ProvisionConfig) -> Callable[..., PlanReport]:
    """Run a Plan against its ledger in the test state directory."""

    def _run(plan: Plan, **kwargs) -> PlanReport:
        ledger = StateLedger(config.get_ledger_path(plan.name), plan=plan.name)
        return Runner(plan, ledger, **kwargs).run()

    return _run
