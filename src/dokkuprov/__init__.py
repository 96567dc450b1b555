"""
dokkuprov - Idempotent, resumable provisioning of a Dokku host and its apps.

Two fixed Plans of Steps run against the local host:

- the server Plan upgrades and hardens a fresh Ubuntu machine, installs
  Dokku and its datastore/certificate plugins, and sets a wildcard-DNS
  global domain;
- the app Plan creates one application with a Postgres database (with
  scheduled S3 backups), a Redis cache, environment, domain, scale and SSL.

Every Step checks the host before changing it and every outcome lands in
a per-Plan State Ledger, so a re-run (after a reboot, a fix, or an
interruption) only does what is still missing.

Example usage:
    from dokkuprov import Runner, StateLedger, build_app_plan

    plan = build_app_plan(ctx, params)
    report = Runner(plan, StateLedger(config.get_ledger_path(plan.name))).run()
    print(report.exit_code)
"""

__version__ = "0.1.0"
__all__ = [
    "Runner",
    "StateLedger",
    "build_app_plan",
    "build_server_plan",
    "get_config",
    "__version__",
]


# Lazy imports keep `--version` and `--help` fast
def __getattr__(name: str):
    if name == "Runner":
        from dokkuprov.runner import Runner
        return Runner
    if name == "StateLedger":
        from dokkuprov.ledger import StateLedger
        return StateLedger
    if name == "build_app_plan":
        from dokkuprov.plans import build_app_plan
        return build_app_plan
    if name == "build_server_plan":
        from dokkuprov.plans import build_server_plan
        return build_server_plan
    if name == "get_config":
        from dokkuprov.config import get_config
        return get_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
