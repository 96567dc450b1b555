"""
Steps that prepare a fresh Ubuntu host for Dokku.

Each Step writes the smallest possible configuration and checks the
host before touching it, so running the server Plan twice is a no-op.
Managed files carry a "Managed by dokkuprov" header.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
from pathlib import PurePosixPath
from typing import List, Optional

from dokkuprov.errors import ExternalCommandFailure, StepFailure
from dokkuprov.executor import CommandExecutor
from dokkuprov.network import detect_host_address, latest_release_tag, wildcard_domain
from dokkuprov.params import ServerParameters
from dokkuprov.steps import Criticality, Step, StepContext
from dokkuprov.timeouts import INSTALL_TIMEOUT_S

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
# Keep locally modified config files (sshd_config in particular) on upgrade
DPKG_KEEP_CONFIG = ["-o", "Dpkg::Options::=--force-confdef", "-o", "Dpkg::Options::=--force-confold"]

LOCALE = "en_US.UTF-8"
AUTHORIZED_KEYS = PurePosixPath("/root/.ssh/authorized_keys")
REBOOT_REQUIRED = PurePosixPath("/var/run/reboot-required")
SHUTDOWN_SCHEDULED = PurePosixPath("/run/systemd/shutdown/scheduled")

UFW_AFTER_RULES = PurePosixPath("/etc/ufw/after.rules")
UFW_DEFAULTS = PurePosixPath("/etc/default/ufw")
FAIL2BAN_JAIL = PurePosixPath("/etc/fail2ban/jail.d/dokkuprov-sshd.local")
AUTO_UPGRADES = PurePosixPath("/etc/apt/apt.conf.d/20auto-upgrades")
SSHD_HARDENING = PurePosixPath("/etc/ssh/sshd_config.d/10-dokkuprov-hardening.conf")
DOCKER_DAEMON = PurePosixPath("/etc/docker/daemon.json")
NGINX_UPLOAD_CONF = PurePosixPath("/etc/nginx/conf.d/99-dokku-upload-limits.conf")
UPLOAD_HELPER = PurePosixPath("/usr/local/bin/dokku-setup-upload-limits")

# Docker publishes ports straight into iptables, bypassing ufw.
# Route container traffic through ufw's user rules instead.
DOCKER_AFTER_RULES = """\
# Managed by dokkuprov: put Docker behind UFW
*filter
:DOCKER-USER - [0:0]
:ufw-user-input - [0:0]

-A DOCKER-USER -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT
-A DOCKER-USER -m conntrack --ctstate INVALID -j DROP
-A DOCKER-USER -i eth0 -j ufw-user-input
-A DOCKER-USER -i enp1s0 -j ufw-user-input
-A DOCKER-USER -j DROP

COMMIT
"""

FAIL2BAN_SSHD_JAIL = """\
# Managed by dokkuprov
[sshd]
enabled = true
port = ssh
maxretry = 5
findtime = 10m
bantime = 1h
"""

AUTO_UPGRADES_CONF = """\
APT::Periodic::Update-Package-Lists "1";
APT::Periodic::Unattended-Upgrade "1";
"""

# Loaded before 50-cloud-init.conf; the first value sshd reads wins
SSHD_HARDENING_CONF = """\
# Managed by dokkuprov
PasswordAuthentication no
KbdInteractiveAuthentication no
PermitRootLogin prohibit-password
PubkeyAuthentication yes
MaxAuthTries 3
X11Forwarding no
"""

NGINX_UPLOAD_TEMPLATE = """\
# Managed by dokkuprov: global default upload limits for Dokku applications.
# Override per app: dokku nginx:set <app> client-max-body-size <size>
client_max_body_size {limit};

client_body_timeout 300s;
client_header_timeout 300s;
proxy_connect_timeout 300s;
proxy_send_timeout 300s;
proxy_read_timeout 300s;
"""

UPLOAD_HELPER_TEMPLATE = """\
#!/bin/bash
# Managed by dokkuprov
# Usage: dokku-setup-upload-limits <app-name> [size-limit]
set -e

APP_NAME="$1"
UPLOAD_LIMIT="${{2:-{limit}}}"

if [ -z "$APP_NAME" ]; then
    echo "Usage: dokku-setup-upload-limits <app-name> [size-limit]"
    exit 1
fi

dokku nginx:set "$APP_NAME" client-max-body-size "$UPLOAD_LIMIT"
dokku proxy:build-config "$APP_NAME"
echo "Upload limit for $APP_NAME set to $UPLOAD_LIMIT"
"""


def package_installed(executor: CommandExecutor, package: str) -> bool:
    result = executor.query("dpkg-query", ["-W", "-f=${Status}", package])
    return result.ok and result.stdout.strip() == "install ok installed"


def apt_install(executor: CommandExecutor, *packages: str) -> None:
    executor.execute(
        "apt-get",
        ["install", "-y", *DPKG_KEEP_CONFIG, *packages],
        env=APT_ENV,
        context=f"Installing {', '.join(packages)}",
    )


def service_active(executor: CommandExecutor, service: str) -> bool:
    return executor.query("systemctl", ["is-active", service]).stdout.strip() == "active"


def authorized_keys(executor: CommandExecutor) -> List[str]:
    """Public key lines of root's authorized_keys (comments dropped)."""
    content = executor.read_file(AUTHORIZED_KEYS) or ""
    return [
        line.strip() for line in content.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]


# ---------------------------------------------------------------------------
# Base system
# ---------------------------------------------------------------------------


class ConfigureLocale(Step):
    name = "configure_locale"
    description = f"Generate {LOCALE} and make it the system default"
    criticality = Criticality.DEGRADED

    def precheck(self) -> bool:
        content = self.executor.read_file("/etc/default/locale") or ""
        return f"LANG={LOCALE}" in content and f"LC_ALL={LOCALE}" in content

    def apply(self) -> str:
        self.executor.execute("locale-gen", [LOCALE], context="Generating locale")
        self.executor.execute(
            "update-locale",
            [f"LANG={LOCALE}", f"LC_ALL={LOCALE}"],
            context="Setting default locale",
        )
        return f"default locale set to {LOCALE}"

    def follow_up(self) -> Optional[str]:
        return f"locale-gen {LOCALE} && update-locale LANG={LOCALE} LC_ALL={LOCALE}"


class UpgradePackages(Step):
    name = "upgrade_packages"
    description = "Refresh package lists and upgrade installed packages"

    _nothing_to_do = re.compile(r"^0 upgraded, 0 newly installed", re.MULTILINE)

    def precheck(self) -> bool:
        result = self.executor.query("apt-get", ["-s", "upgrade"])
        return result.ok and bool(self._nothing_to_do.search(result.stdout))

    def apply(self) -> str:
        self.executor.execute("apt-get", ["update", "-y"], env=APT_ENV, context="Refreshing package lists")
        self.executor.execute(
            "apt-get",
            ["upgrade", "-y", *DPKG_KEEP_CONFIG],
            env=APT_ENV,
            timeout=INSTALL_TIMEOUT_S,
            context="Upgrading packages",
        )
        return "system packages upgraded"


# ---------------------------------------------------------------------------
# Firewall and intrusion prevention
# ---------------------------------------------------------------------------


class InstallFirewall(Step):
    name = "install_firewall"
    description = "Install ufw"
    dependencies = ("upgrade_packages",)

    def precheck(self) -> bool:
        return package_installed(self.executor, "ufw")

    def apply(self) -> str:
        apt_install(self.executor, "ufw")
        return "ufw installed"


class ConfigureFirewall(Step):
    """Deny inbound except the configured ports; keep Docker behind ufw."""

    name = "configure_firewall"
    description = "Default deny incoming, allow SSH/HTTP/HTTPS, IPv6 on"
    dependencies = ("install_firewall",)

    def _ipv6_enabled(self) -> bool:
        content = self.executor.read_file(UFW_DEFAULTS) or ""
        return re.search(r"^IPV6=yes$", content, re.MULTILINE) is not None

    def _status_ok(self) -> bool:
        result = self.executor.query("ufw", ["status", "verbose"])
        if not result.ok or "Status: active" not in result.stdout:
            return False
        if "deny (incoming)" not in result.stdout or "allow (outgoing)" not in result.stdout:
            return False
        lines = result.lines()
        return all(
            any(line.startswith(port) and "ALLOW" in line for line in lines)
            for port in self.config.firewall_ports
        )

    def precheck(self) -> bool:
        return (
            self.executor.read_file(UFW_AFTER_RULES) == DOCKER_AFTER_RULES
            and self._ipv6_enabled()
            and self._status_ok()
        )

    def _enable_ipv6(self) -> None:
        content = self.executor.read_file(UFW_DEFAULTS) or ""
        if re.search(r"^IPV6=", content, re.MULTILINE):
            content = re.sub(r"^IPV6=.*$", "IPV6=yes", content, flags=re.MULTILINE)
        else:
            content = content + ("" if content.endswith("\n") or not content else "\n") + "IPV6=yes\n"
        self.executor.write_file(UFW_DEFAULTS, content)

    def apply(self) -> str:
        self._enable_ipv6()
        self.executor.write_file(UFW_AFTER_RULES, DOCKER_AFTER_RULES, mode=0o640)
        self.executor.execute("ufw", ["default", "deny", "incoming"], context="Setting default policy")
        self.executor.execute("ufw", ["default", "allow", "outgoing"], context="Setting default policy")
        for port in self.config.firewall_ports:
            self.executor.execute(
                "ufw", ["allow", port, "comment", "dokkuprov"],
                context=f"Allowing {port}",
            )
        self.executor.execute("ufw", ["--force", "enable"], context="Enabling firewall")
        self.executor.execute("ufw", ["reload"], context="Reloading firewall")
        return f"firewall active, allowing {', '.join(self.config.firewall_ports)}"


class InstallFail2ban(Step):
    name = "install_fail2ban"
    description = "Ban hosts that brute-force SSH"
    dependencies = ("upgrade_packages",)
    criticality = Criticality.DEGRADED

    def precheck(self) -> bool:
        return (
            package_installed(self.executor, "fail2ban")
            and self.executor.read_file(FAIL2BAN_JAIL) == FAIL2BAN_SSHD_JAIL
            and service_active(self.executor, "fail2ban")
        )

    def apply(self) -> str:
        apt_install(self.executor, "fail2ban")
        self.executor.write_file(FAIL2BAN_JAIL, FAIL2BAN_SSHD_JAIL)
        self.executor.execute("systemctl", ["enable", "fail2ban"], context="Enabling fail2ban")
        self.executor.execute("systemctl", ["restart", "fail2ban"], context="Restarting fail2ban")
        return "fail2ban protecting sshd"

    def follow_up(self) -> Optional[str]:
        return "apt-get install -y fail2ban && systemctl enable --now fail2ban"


class EnableUnattendedUpgrades(Step):
    name = "enable_unattended_upgrades"
    description = "Install security updates automatically"
    dependencies = ("upgrade_packages",)
    criticality = Criticality.DEGRADED

    def precheck(self) -> bool:
        return (
            package_installed(self.executor, "unattended-upgrades")
            and self.executor.read_file(AUTO_UPGRADES) == AUTO_UPGRADES_CONF
        )

    def apply(self) -> str:
        apt_install(self.executor, "unattended-upgrades")
        self.executor.write_file(AUTO_UPGRADES, AUTO_UPGRADES_CONF)
        return "unattended upgrades enabled"

    def follow_up(self) -> Optional[str]:
        return "dpkg-reconfigure -f noninteractive unattended-upgrades"


class HardenSsh(Step):
    """
    Key-only SSH logins.

    Vetoed when root has no authorized key, since disabling passwords
    would lock the operator out. After applying, the Plan waits until the
    operator confirms a fresh SSH session still works.
    """

    name = "harden_ssh"
    description = "Disable password logins for SSH"
    checkpoint = "SSH now accepts keys only. Open a NEW ssh session to this host and check that it works."

    def guard(self) -> None:
        if not authorized_keys(self.executor):
            self.veto(
                f"no authorized key in {AUTHORIZED_KEYS}, refusing to disable password logins",
                follow_up=f"add your public key to {AUTHORIZED_KEYS}, then re-run",
            )

    def precheck(self) -> bool:
        return self.executor.read_file(SSHD_HARDENING) == SSHD_HARDENING_CONF

    def apply(self) -> str:
        self.executor.write_file(SSHD_HARDENING, SSHD_HARDENING_CONF)
        try:
            self.executor.execute("sshd", ["-t"], context="Validating sshd configuration")
        except ExternalCommandFailure:
            self.executor.remove_file(SSHD_HARDENING)
            raise
        self.executor.execute("systemctl", ["reload", "ssh"], context="Reloading sshd")
        return "password logins disabled"

    def verify(self) -> bool:
        if not self.precheck():
            return False
        effective = self.executor.query("sshd", ["-T"])
        return effective.ok and "passwordauthentication no" in effective.stdout.lower()


# ---------------------------------------------------------------------------
# Platform
# ---------------------------------------------------------------------------


class InstallDokku(Step):
    name = "install_dokku"
    description = "Install the Dokku platform via its bootstrap script"
    dependencies = ("upgrade_packages",)

    def precheck(self) -> bool:
        return self.dokku.is_server_install()

    def _version(self) -> str:
        if self.config.dokku_version:
            return self.config.dokku_version
        return latest_release_tag(
            self.executor,
            self.config.dokku_release_url,
            self.config.dokku_fallback_version,
        )

    def apply(self) -> str:
        version = self._version()
        url = self.config.dokku_bootstrap_url.format(version=version)
        script = self.executor.fetch_text(url)
        if not script:
            raise StepFailure(
                f"could not download {url}",
                follow_up=f"wget {url} && DOKKU_TAG={version} bash bootstrap.sh",
            )
        self.executor.write_file("/tmp/dokku-bootstrap.sh", script + "\n", mode=0o755)
        self.executor.execute(
            "bash",
            [str(self.executor.path("/tmp/dokku-bootstrap.sh"))],
            env={**APT_ENV, "DOKKU_TAG": version},
            timeout=INSTALL_TIMEOUT_S,
            context=f"Installing Dokku {version}",
        )
        return f"Dokku {version} installed"


class ConfigureDockerDns(Step):
    name = "configure_docker_dns"
    description = "Pin DNS resolvers used inside containers"
    dependencies = ("install_dokku",)
    criticality = Criticality.DEGRADED

    def _current(self) -> dict:
        content = self.executor.read_file(DOCKER_DAEMON)
        if not content or not content.strip():
            return {}
        try:
            data = json.loads(content)
        except ValueError:
            raise StepFailure(f"{DOCKER_DAEMON} is not valid JSON", follow_up=f"fix {DOCKER_DAEMON} by hand")
        if not isinstance(data, dict):
            raise StepFailure(f"{DOCKER_DAEMON} is not a JSON object", follow_up=f"fix {DOCKER_DAEMON} by hand")
        return data

    def precheck(self) -> bool:
        return self._current().get("dns") == list(self.config.docker_dns_servers)

    def apply(self) -> str:
        data = self._current()
        data["dns"] = list(self.config.docker_dns_servers)
        self.executor.write_file(DOCKER_DAEMON, json.dumps(data, indent=2) + "\n")
        self.executor.execute("systemctl", ["restart", "docker"], context="Restarting Docker")
        return f"container DNS set to {', '.join(data['dns'])}"


class InstallPlugin(Step):
    """Install one platform plugin from its git repository."""

    dependencies = ("install_dokku",)

    def __init__(self, ctx: StepContext, plugin: str, url: str):
        super().__init__(ctx)
        self.plugin = plugin
        self.url = url
        self.name = f"install_plugin_{plugin}"
        self.description = f"Install the {plugin} plugin"

    def precheck(self) -> bool:
        return self.dokku.plugin_installed(self.plugin)

    def apply(self) -> str:
        self.dokku.run(
            "plugin:install", self.url, "--name", self.plugin,
            context=f"Installing plugin {self.plugin}",
            timeout=INSTALL_TIMEOUT_S,
        )
        return f"plugin {self.plugin} installed"

    def follow_up(self) -> Optional[str]:
        return f"sudo dokku plugin:install {self.url} --name {self.plugin}"


class LetsencryptEmail(Step):
    name = "letsencrypt_email"
    description = "Set the global Let's Encrypt contact email"
    dependencies = ("install_plugin_letsencrypt",)
    criticality = Criticality.DEGRADED

    def __init__(self, ctx: StepContext, params: ServerParameters):
        super().__init__(ctx)
        self.email = params.admin_email

    def precheck(self) -> bool:
        return self.dokku.letsencrypt_global_email() == self.email

    def apply(self) -> str:
        self.dokku.run("letsencrypt:set", "--global", "email", self.email, context="Setting Let's Encrypt email")
        return f"Let's Encrypt email set to {self.email}"

    def follow_up(self) -> Optional[str]:
        return f"dokku letsencrypt:set --global email {shlex.quote(self.email)}"


class LetsencryptCron(Step):
    name = "letsencrypt_cron"
    description = "Renew certificates automatically"
    dependencies = ("install_plugin_letsencrypt",)
    criticality = Criticality.DEGRADED

    def precheck(self) -> bool:
        return self.dokku.letsencrypt_cron_installed()

    def apply(self) -> str:
        self.dokku.run("letsencrypt:cron-job", "--add", context="Adding renewal cron job")
        return "certificate auto-renewal enabled"

    def follow_up(self) -> Optional[str]:
        return "sudo dokku letsencrypt:cron-job --add"


class UploadLimits(Step):
    """Global nginx upload limit plus a helper to override it per app."""

    name = "upload_limits"
    description = "Raise the default request body size for uploads"
    dependencies = ("install_dokku",)
    criticality = Criticality.DEGRADED

    @property
    def _nginx_conf(self) -> str:
        return NGINX_UPLOAD_TEMPLATE.format(limit=self.config.upload_limit)

    @property
    def _helper(self) -> str:
        return UPLOAD_HELPER_TEMPLATE.format(limit=self.config.upload_limit)

    def precheck(self) -> bool:
        return (
            self.executor.read_file(NGINX_UPLOAD_CONF) == self._nginx_conf
            and self.executor.read_file(UPLOAD_HELPER) == self._helper
        )

    def apply(self) -> str:
        self.executor.write_file(UPLOAD_HELPER, self._helper, mode=0o755)
        if self.executor.write_file(NGINX_UPLOAD_CONF, self._nginx_conf):
            self._reload_nginx()
        return f"upload limit {self.config.upload_limit}, helper at {UPLOAD_HELPER}"

    def _reload_nginx(self) -> None:
        try:
            self.executor.execute("systemctl", ["reload", "nginx"], context="Reloading nginx")
        except ExternalCommandFailure:
            logger.info("systemctl reload nginx failed, trying the service command")
            self.executor.execute("service", ["nginx", "reload"], context="Reloading nginx")

    def follow_up(self) -> Optional[str]:
        return "systemctl reload nginx"


class AdminSshKeys(Step):
    name = "admin_ssh_keys"
    description = "Let root's SSH keys push to Dokku as 'admin'"
    dependencies = ("install_dokku",)
    criticality = Criticality.DEGRADED

    def guard(self) -> None:
        if not authorized_keys(self.executor):
            self.veto(
                f"{AUTHORIZED_KEYS} not found or empty",
                follow_up=f"cat {AUTHORIZED_KEYS} | dokku ssh-keys:add admin",
            )

    def precheck(self) -> bool:
        return "admin" in self.dokku.ssh_key_names()

    def apply(self) -> str:
        keys = authorized_keys(self.executor)
        self.dokku.run("ssh-keys:add", "admin", input_text="\n".join(keys) + "\n", context="Adding admin SSH keys")
        return f"{len(keys)} key(s) added for admin"

    def follow_up(self) -> Optional[str]:
        return f"cat {AUTHORIZED_KEYS} | dokku ssh-keys:add admin"


class GlobalDomain(Step):
    """
    Wildcard-DNS global domain so every app gets ``<app>.<ip>.sslip.io``.

    An explicitly passed host address wins over detection. An existing
    global domain is left alone unless an explicit address asks for a
    different one.
    """

    name = "global_domain"
    description = "Set the global vhost from the host's public address"
    dependencies = ("install_dokku",)
    criticality = Criticality.DEGRADED

    def __init__(self, ctx: StepContext, params: ServerParameters):
        super().__init__(ctx)
        self.host_address = params.host_address
        self._domain: Optional[str] = None

    def precheck(self) -> bool:
        current = self.dokku.global_vhosts()
        if self.host_address:
            return wildcard_domain(self.host_address, self.config.wildcard_dns_suffix) in current
        return bool(current)

    def apply(self) -> str:
        address = self.host_address or detect_host_address(
            self.executor,
            self.config.ipv4_lookup_urls,
            self.config.ipv6_lookup_urls,
        )
        if not address:
            raise StepFailure("could not detect the server's public address", follow_up=self.follow_up())
        self._domain = wildcard_domain(address, self.config.wildcard_dns_suffix)
        self.dokku.run("domains:set-global", self._domain, context="Setting global domain")
        return f"global domain set to {self._domain}"

    def verify(self) -> bool:
        if self._domain:
            return self._domain in self.dokku.global_vhosts()
        return self.precheck()

    def follow_up(self) -> Optional[str]:
        return (
            f"dokku domains:set-global <ip>.{self.config.wildcard_dns_suffix} "
            "(for IPv6 replace colons with dashes, e.g. 2a01-4f8-c013-ae--1)"
        )


class RebootIfRequired(Step):
    """Schedule a reboot when package upgrades asked for one."""

    name = "reboot_if_required"
    description = "Reboot to finish kernel and library upgrades"
    after = ("global_domain",)
    criticality = Criticality.DEGRADED

    def guard(self) -> None:
        if not self.config.allow_reboot:
            self.veto("a reboot is required but rebooting is disabled", follow_up="sudo reboot")

    def precheck(self) -> bool:
        return not self.executor.exists(REBOOT_REQUIRED)

    def apply(self) -> str:
        self.executor.execute(
            "shutdown", ["-r", "+1", "dokkuprov: rebooting to finish provisioning"],
            context="Scheduling reboot",
        )
        return "reboot scheduled in one minute; re-run afterwards to verify"

    def verify(self) -> bool:
        return self.precheck() or self.executor.exists(SHUTDOWN_SCHEDULED)
