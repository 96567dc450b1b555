"""The two fixed provisioning Plans."""

from __future__ import annotations

from dokkuprov.app_steps import (
    CheckPlatform,
    CheckPlugins,
    ConfigureDomain,
    ConfigureEnvironment,
    CreateApp,
    CreateService,
    DatabaseBackupAuth,
    DatabaseBackupSchedule,
    EnableSsl,
    LinkService,
    ScaleProcesses,
)
from dokkuprov.params import AppParameters, ServerParameters
from dokkuprov.server_steps import (
    AdminSshKeys,
    ConfigureDockerDns,
    ConfigureFirewall,
    ConfigureLocale,
    EnableUnattendedUpgrades,
    GlobalDomain,
    HardenSsh,
    InstallDokku,
    InstallFail2ban,
    InstallFirewall,
    InstallPlugin,
    LetsencryptCron,
    LetsencryptEmail,
    RebootIfRequired,
    UpgradePackages,
    UploadLimits,
)
from dokkuprov.steps import Plan, StepContext

SERVER_PLAN = "server"


def app_plan_name(app_name: str) -> str:
    return f"app-{app_name}"


def build_server_plan(ctx: StepContext, params: ServerParameters) -> Plan:
    plugins = [InstallPlugin(ctx, name, url) for name, url in ctx.config.required_plugins.items()]
    return Plan(SERVER_PLAN, [
        ConfigureLocale(ctx),
        UpgradePackages(ctx),
        InstallFirewall(ctx),
        ConfigureFirewall(ctx),
        InstallFail2ban(ctx),
        EnableUnattendedUpgrades(ctx),
        HardenSsh(ctx),
        InstallDokku(ctx),
        ConfigureDockerDns(ctx),
        *plugins,
        LetsencryptEmail(ctx, params),
        LetsencryptCron(ctx),
        UploadLimits(ctx),
        AdminSshKeys(ctx),
        GlobalDomain(ctx, params),
        RebootIfRequired(ctx),
    ])


def build_app_plan(ctx: StepContext, params: AppParameters, rotate_backup_credentials: bool = False) -> Plan:
    db, cache = params.database_name, params.cache_name
    return Plan(app_plan_name(params.app_name), [
        CheckPlatform(ctx, params),
        CheckPlugins(ctx, params),
        CreateApp(ctx, params),
        CreateService(ctx, params, "create_database", "postgres", db),
        LinkService(ctx, params, "link_database", "postgres", db, creates="create_database"),
        DatabaseBackupAuth(ctx, params, rotate=rotate_backup_credentials),
        DatabaseBackupSchedule(ctx, params),
        CreateService(ctx, params, "create_cache", "redis", cache),
        LinkService(ctx, params, "link_cache", "redis", cache, creates="create_cache"),
        ConfigureEnvironment(ctx, params),
        ConfigureDomain(ctx, params),
        ScaleProcesses(ctx, params),
        EnableSsl(ctx, params),
    ])
