"""
Steps that set up one application on an existing Dokku server.

For app ``blog`` the Plan creates the app, a ``blogdb`` Postgres service
with scheduled S3 backups, a ``blogred`` Redis service, production
environment variables, the ``blog.<global vhost>`` domain, the process
scale, and finally tries to enable Let's Encrypt.
"""

from __future__ import annotations

import shlex
from typing import Optional

from dokkuprov.dokku import DOKKU_HOME
from dokkuprov.errors import StepFailure
from dokkuprov.params import AppParameters
from dokkuprov.steps import Criticality, Idempotency, Step, StepContext


class AppStep(Step):
    """Step bound to the application being provisioned."""

    def __init__(self, ctx: StepContext, params: AppParameters):
        super().__init__(ctx)
        self.params = params

    @property
    def app(self) -> str:
        return self.params.app_name


# ---------------------------------------------------------------------------
# Prerequisites
# ---------------------------------------------------------------------------


class CheckPlatform(AppStep):
    name = "check_platform"
    description = "Make sure this runs on the Dokku server itself"

    def precheck(self) -> bool:
        return self.dokku.is_server_install()

    def apply(self) -> str:
        if not self.executor.exists(DOKKU_HOME) and self.executor.available(self.dokku.binary):
            raise StepFailure(
                "the local 'dokku' command is the remote CLI client; this must run on the server",
                follow_up="ssh root@<server-ip> and run provision-app there",
            )
        raise StepFailure(
            "Dokku is not installed on this host",
            follow_up="provision-server <admin-email>",
        )


class CheckPlugins(AppStep):
    name = "check_plugins"
    description = "Make sure the datastore and certificate plugins are installed"
    dependencies = ("check_platform",)

    def precheck(self) -> bool:
        return not self.dokku.missing_plugins(list(self.config.required_plugins))

    def apply(self) -> str:
        missing = self.dokku.missing_plugins(list(self.config.required_plugins))
        commands = "; ".join(
            f"sudo dokku plugin:install {self.config.required_plugins[name]} --name {name}"
            for name in missing
        )
        raise StepFailure(f"missing required plugins: {', '.join(missing)}", follow_up=commands)


# ---------------------------------------------------------------------------
# App and datastores
# ---------------------------------------------------------------------------


class CreateApp(AppStep):
    name = "create_app"
    description = "Create the application"
    dependencies = ("check_plugins",)

    def precheck(self) -> bool:
        return self.dokku.app_exists(self.app)

    def apply(self) -> str:
        self.dokku.run("apps:create", self.app, context=f"Creating app {self.app}")
        return f"application {self.app} created"


class CreateService(AppStep):
    """Create a datastore service (``postgres`` or ``redis``)."""

    dependencies = ("check_plugins",)

    def __init__(self, ctx: StepContext, params: AppParameters, name: str, kind: str, service: str):
        super().__init__(ctx, params)
        self.name = name
        self.kind = kind
        self.service = service
        self.description = f"Create {kind} service {service}"

    def precheck(self) -> bool:
        return self.dokku.service_exists(self.kind, self.service)

    def apply(self) -> str:
        self.dokku.run(f"{self.kind}:create", self.service, context=f"Creating {self.kind} {self.service}")
        return f"{self.kind} service {self.service} created"


class LinkService(AppStep):
    """Link a datastore service to the app (exports its URL into the app env)."""

    def __init__(
        self,
        ctx: StepContext,
        params: AppParameters,
        name: str,
        kind: str,
        service: str,
        creates: str,
    ):
        super().__init__(ctx, params)
        self.name = name
        self.kind = kind
        self.service = service
        self.dependencies = ("create_app", creates)
        self.description = f"Link {service} to the app"

    def precheck(self) -> bool:
        return self.dokku.service_linked(self.kind, self.service, self.app)

    def apply(self) -> str:
        self.dokku.run(
            f"{self.kind}:link", self.service, self.app,
            context=f"Linking {self.service} to {self.app}",
        )
        return f"{self.service} linked to {self.app}"


class DatabaseBackupAuth(AppStep):
    """
    Only the access key can be read back from the host. A rotated secret
    behind an unchanged access key is applied with ``rotate=True``.
    """
    name = "database_backup_auth"
    description = "Store backup storage credentials for the database"
    dependencies = ("create_database",)
    criticality = Criticality.DEGRADED

    def __init__(self, ctx: StepContext, params: AppParameters, rotate: bool = False):
        super().__init__(ctx, params)
        if rotate:
            self.idempotency = Idempotency.ALWAYS_RUN

    def precheck(self) -> bool:
        stored = self.dokku.backup_access_key(self.params.database_name)
        return stored == self.params.credentials.access_key.get_secret_value()

    def apply(self) -> str:
        access = self.params.credentials.access_key.get_secret_value()
        secret = self.params.credentials.secret_key.get_secret_value()
        self.dokku.run(
            "postgres:backup-auth", self.params.database_name, access, secret,
            context="Configuring backup credentials",
            redact=(access, secret),
        )
        return f"backup credentials stored for {self.params.database_name}"

    def follow_up(self) -> Optional[str]:
        return f"dokku postgres:backup-auth {self.params.database_name} <access-key> <secret-key>"


class DatabaseBackupSchedule(AppStep):
    name = "database_backup_schedule"
    description = "Schedule database backups to the bucket"
    dependencies = ("database_backup_auth",)
    criticality = Criticality.DEGRADED

    def precheck(self) -> bool:
        current = self.dokku.backup_schedule(self.params.database_name)
        return (
            current.startswith(self.config.backup_schedule)
            and self.params.backup_bucket in current.split()
        )

    def apply(self) -> str:
        self.dokku.run(
            "postgres:backup-schedule",
            self.params.database_name,
            self.config.backup_schedule,
            self.params.backup_bucket,
            context="Scheduling backups",
        )
        return f"backups '{self.config.backup_schedule}' to {self.params.backup_bucket}"

    def follow_up(self) -> Optional[str]:
        return (
            f"dokku postgres:backup-schedule {self.params.database_name} "
            f"{shlex.quote(self.config.backup_schedule)} {self.params.backup_bucket}"
        )


# ---------------------------------------------------------------------------
# App configuration
# ---------------------------------------------------------------------------


class ConfigureEnvironment(AppStep):
    name = "configure_environment"
    description = "Set production environment variables"
    dependencies = ("create_app",)

    def precheck(self) -> bool:
        current = self.dokku.app_env(self.app)
        return all(current.get(k) == v for k, v in self.config.app_environment.items())

    def apply(self) -> str:
        pairs = [f"{k}={v}" for k, v in self.config.app_environment.items()]
        self.dokku.run("config:set", self.app, *pairs, context="Setting environment")
        return f"set {', '.join(self.config.app_environment)}"


class ConfigureDomain(AppStep):
    name = "configure_domain"
    description = "Serve the app at <app>.<global vhost>"
    dependencies = ("create_app",)
    criticality = Criticality.DEGRADED

    def _expected(self) -> Optional[str]:
        vhosts = self.dokku.global_vhosts()
        return f"{self.app}.{vhosts[0]}" if vhosts else None

    def precheck(self) -> bool:
        expected = self._expected()
        return expected is not None and expected in self.dokku.app_vhosts(self.app)

    def apply(self) -> str:
        expected = self._expected()
        if expected is None:
            raise StepFailure(
                "global domain not configured, the app keeps the default domain",
                follow_up=f"dokku domains:set {self.app} <domain>",
            )
        self.dokku.run("domains:set", self.app, expected, context="Setting app domain")
        return f"domain {expected}"


class ScaleProcesses(AppStep):
    name = "scale_processes"
    description = "Set process counts"
    dependencies = ("create_app",)

    def precheck(self) -> bool:
        current = self.dokku.process_scale(self.app)
        return all(current.get(proc) == qty for proc, qty in self.config.process_scale.items())

    def apply(self) -> str:
        spec = [f"{proc}={qty}" for proc, qty in self.config.process_scale.items()]
        self.dokku.run("ps:scale", self.app, *spec, context="Scaling processes")
        return f"scaled {','.join(spec)}"


class EnableSsl(AppStep):
    """
    Let's Encrypt certificate for the app domain.

    Needs a deployed app answering HTTP challenges; until the first
    ``git push`` this fails in degraded mode with the command to run later.
    """

    name = "enable_ssl"
    description = "Enable Let's Encrypt for the app"
    dependencies = ("create_app",)
    after = ("configure_domain", "scale_processes")
    criticality = Criticality.DEGRADED

    def precheck(self) -> bool:
        return self.dokku.letsencrypt_active(self.app)

    def apply(self) -> str:
        if not self.dokku.app_deployed(self.app):
            raise StepFailure("app not deployed yet, SSL needs a running app", follow_up=self.follow_up())
        self.dokku.run("letsencrypt:enable", self.app, context="Enabling Let's Encrypt")
        return "certificate issued"

    def follow_up(self) -> Optional[str]:
        return f"dokku letsencrypt:enable {self.app}"
