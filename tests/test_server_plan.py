"""
Tests for the server plan against a simulated fresh Ubuntu host.
"""

import json
from datetime import timedelta

import pytest

from dokkuprov.errors import ExitCode
from dokkuprov.params import resolve_server_parameters
from dokkuprov.plans import build_server_plan
from dokkuprov.runner import PlanState
from dokkuprov.server_steps import (
    AUTO_UPGRADES,
    DOCKER_AFTER_RULES,
    DOCKER_DAEMON,
    FAIL2BAN_JAIL,
    NGINX_UPLOAD_CONF,
    REBOOT_REQUIRED,
    SSHD_HARDENING,
    UFW_AFTER_RULES,
    UPLOAD_HELPER,
)
from dokkuprov.steps import StepOutcome


def build(ctx, server_params):
    return build_server_plan(ctx, server_params)


@pytest.fixture
def provision(ctx, server_params, run):
    """Run the server plan; first pass stops at the SSH checkpoint."""

    def _provision(**kwargs):
        return run(build(ctx, server_params), **kwargs)

    return _provision


class TestSshCheckpoint:
    def test_first_run_stops_after_hardening(self, host, provision):
        report = provision()

        assert report.state is PlanState.AWAITING_CONFIRMATION
        assert report.exit_code is ExitCode.AWAITING_CONFIRMATION
        assert report.pending_checkpoint == "harden_ssh"
        assert report.results[-1].step == "harden_ssh"
        assert not host.dokku_installed
        assert "PasswordAuthentication no" in host.read_file(SSHD_HARDENING)

    def test_confirmed_run_completes(self, host, provision):
        provision()
        host.mutations.clear()

        report = provision(confirmed={"harden_ssh"})

        assert report.exit_code is ExitCode.OK
        skipped = [r.step for r in report.results if r.outcome is StepOutcome.SKIPPED]
        assert skipped[:7] == [
            "configure_locale",
            "upgrade_packages",
            "install_firewall",
            "configure_firewall",
            "install_fail2ban",
            "enable_unattended_upgrades",
            "harden_ssh",
        ]
        assert ["systemctl", "reload", "ssh"] not in host.mutations

    def test_sshd_validation_failure_rolls_back(self, host, provision):
        host.fail("sshd", "-t", stderr="bad configuration option")

        report = provision()

        assert report.result("harden_ssh").outcome is StepOutcome.FAILED
        assert report.exit_code is ExitCode.FATAL
        assert host.read_file(SSHD_HARDENING) is None
        assert report.result("harden_ssh").output == "bad configuration option"


class TestFullServer:
    @pytest.fixture
    def report(self, host, provision):
        provision()
        return provision(confirmed={"harden_ssh"})

    def test_host_configured(self, host, report):
        assert report.state is PlanState.COMPLETED
        assert {"ufw", "fail2ban", "unattended-upgrades"} <= host.packages
        assert not host.upgrades_pending
        assert host.ufw["active"]
        assert host.ufw["incoming"] == "deny"
        assert host.ufw["rules"] == ["22/tcp", "80/tcp", "443/tcp"]
        assert "IPV6=yes" in host.read_file("/etc/default/ufw")
        assert host.read_file(UFW_AFTER_RULES) == DOCKER_AFTER_RULES
        assert host.read_file(FAIL2BAN_JAIL).startswith("# Managed by dokkuprov")
        assert host.read_file(AUTO_UPGRADES)
        assert "LANG=en_US.UTF-8" in host.read_file("/etc/default/locale")

    def test_platform_configured(self, host, report):
        assert host.dokku_installed
        assert host.dokku_tag == "v0.35.20"
        assert host.plugins == {"postgres", "redis", "letsencrypt"}
        assert json.loads(host.read_file(DOCKER_DAEMON)) == {"dns": ["1.1.1.1", "8.8.8.8"]}
        assert host.read_file("/var/lib/dokku/config/letsencrypt/--global/email") == "admin@example.com"
        assert host.cron
        assert "client_max_body_size 20m;" in host.read_file(NGINX_UPLOAD_CONF)
        assert host.path(UPLOAD_HELPER).stat().st_mode & 0o777 == 0o755
        assert "admin" in host.ssh_keys
        assert host.global_vhosts == ["203.0.113.7.sslip.io"]

    def test_third_run_changes_nothing(self, host, report, provision):
        host.mutations.clear()

        again = provision()

        assert again.exit_code is ExitCode.OK
        assert all(r.outcome is StepOutcome.SKIPPED for r in again.results)
        assert host.mutations == []

    def test_reverify_changes_nothing(self, host, report, provision):
        host.mutations.clear()

        again = provision(trust=timedelta(0))

        assert all(r.reason == "re-verified" for r in again.results if r.step != "reboot_if_required")
        assert host.mutations == []


class TestMissingKeys:
    def test_partial_exit_without_authorized_keys(self, host, provision):
        host.path("/root/.ssh/authorized_keys").unlink()

        report = provision()

        assert report.result("harden_ssh").outcome is StepOutcome.VETOED
        assert report.result("admin_ssh_keys").outcome is StepOutcome.VETOED
        assert report.result("install_dokku").outcome is StepOutcome.APPLIED
        assert report.state is PlanState.COMPLETED
        assert report.exit_code is ExitCode.PARTIAL
        assert host.read_file(SSHD_HARDENING) is None

    def test_comment_only_key_file_counts_as_missing(self, host, provision):
        host.put_file("/root/.ssh/authorized_keys", "# no keys yet\n\n")

        report = provision()

        assert report.result("harden_ssh").outcome is StepOutcome.VETOED


class TestInstallDokku:
    def test_release_lookup_failure_uses_fallback(self, host, ctx, server_params, run):
        host.routes.pop("https://api.github.com/repos/dokku/dokku/releases/latest")

        run(build(ctx, server_params), confirmed={"harden_ssh"})

        assert host.dokku_tag == "v0.35.20"

    def test_pinned_version(self, host, ctx, server_params, run):
        ctx.config.dokku_version = "v0.34.0"
        host.routes["https://dokku.com/install/v0.34.0/bootstrap.sh"] = (200, "#!/bin/bash\n")

        run(build(ctx, server_params), confirmed={"harden_ssh"})

        assert host.dokku_tag == "v0.34.0"
        assert "https://api.github.com/repos/dokku/dokku/releases/latest" not in host.fetched

    def test_bootstrap_download_failure_is_fatal(self, host, ctx, server_params, run):
        host.routes.pop("https://dokku.com/install/v0.35.20/bootstrap.sh")

        report = run(build(ctx, server_params), confirmed={"harden_ssh"})

        result = report.result("install_dokku")
        assert result.outcome is StepOutcome.FAILED
        assert "DOKKU_TAG=v0.35.20 bash bootstrap.sh" in result.follow_up
        assert report.exit_code is ExitCode.FATAL


class TestGlobalDomain:
    def test_explicit_address(self, host, ctx, run):
        params = resolve_server_parameters("admin@example.com", "2a01:4f8:c013:ae::1")

        run(build(ctx, params), confirmed={"harden_ssh"})

        assert host.global_vhosts == ["2a01-4f8-c013-ae--1.sslip.io"]
        assert host.fetched.count("https://api.ipify.org") == 0

    def test_detection_failure_is_degraded(self, host, ctx, server_params, run):
        host.routes.pop("https://api.ipify.org")

        report = run(build(ctx, server_params), confirmed={"harden_ssh"})

        result = report.result("global_domain")
        assert result.outcome is StepOutcome.FAILED
        assert "dokku domains:set-global" in result.follow_up
        assert report.exit_code is ExitCode.DEGRADED
        assert report.result("reboot_if_required").outcome is StepOutcome.SKIPPED


class TestReboot:
    def test_reboot_when_required(self, host, ctx, server_params, run):
        host.put_file(str(REBOOT_REQUIRED), "*** System restart required ***\n")

        report = run(build(ctx, server_params), confirmed={"harden_ssh"})

        assert report.result("reboot_if_required").outcome is StepOutcome.APPLIED
        assert host.mutations[-1][0] == "shutdown"

    def test_reboot_disabled(self, host, ctx, server_params, run):
        host.put_file(str(REBOOT_REQUIRED), "*** System restart required ***\n")
        ctx.config.allow_reboot = False

        report = run(build(ctx, server_params), confirmed={"harden_ssh"})

        assert report.result("reboot_if_required").outcome is StepOutcome.VETOED
        assert report.exit_code is ExitCode.PARTIAL


class TestDockerDns:
    def test_existing_daemon_settings_kept(self, host, ctx, server_params, run):
        host.put_file(str(DOCKER_DAEMON), '{"log-driver": "journald"}')

        run(build(ctx, server_params), confirmed={"harden_ssh"})

        assert json.loads(host.read_file(DOCKER_DAEMON)) == {
            "log-driver": "journald",
            "dns": ["1.1.1.1", "8.8.8.8"],
        }

    def test_invalid_daemon_json_is_degraded(self, host, ctx, server_params, run):
        host.put_file(str(DOCKER_DAEMON), "{broken")

        report = run(build(ctx, server_params), confirmed={"harden_ssh"})

        assert report.result("configure_docker_dns").outcome is StepOutcome.FAILED
        assert report.exit_code is ExitCode.DEGRADED
