"""
Centralized configuration for dokkuprov.

Uses Pydantic BaseSettings for environment variable integration
and validation. Every operational default the provisioning steps rely on
(fallback platform version, lookup endpoints, backup schedule, ...) is
defined here instead of being buried in step logic.

Configuration sources (in order of precedence):
1. Explicit constructor arguments (CLI flags, YAML file)
2. Environment variables (DOKKUPROV_*)
3. .env file
4. Default values

Operator inputs (admin email, app name, credentials, bucket) are NOT
configuration. They are passed explicitly on the command line and never
read from the environment.

Example:
    from dokkuprov.config import get_config

    config = get_config()
    print(config.backup_schedule)  # From DOKKUPROV_BACKUP_SCHEDULE or default

    # Override at runtime
    config = get_config(state_dir="/var/lib/dokkuprov")
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dokkuprov.timeouts import (
    HTTP_LOOKUP_TIMEOUT_MAX_S,
    HTTP_LOOKUP_TIMEOUT_MIN_S,
    HTTP_LOOKUP_TIMEOUT_S,
)


class ProvisionConfig(BaseSettings):
    """
    Central configuration for dokkuprov.

    All settings can be overridden via environment variables
    prefixed with DOKKUPROV_.

    Example:
        export DOKKUPROV_STATE_DIR=/var/lib/dokkuprov
        export DOKKUPROV_LOG_FORMAT=json
    """

    model_config = SettingsConfigDict(
        env_prefix="DOKKUPROV_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # State persistence
    state_dir: str = Field(
        default="~/.dokkuprov",
        description="Directory holding state ledgers and the run-lock",
    )
    ledger_trust_hours: float = Field(
        default=24.0,
        ge=0,
        description="Completed ledger entries older than this are re-verified",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level for diagnostics",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Status line format (json for log shipping, text for console)",
    )
    diagnostic_tail_lines: int = Field(
        default=20,
        ge=1,
        description="Lines of captured output shown when a step fails",
    )

    # Platform installation
    dokku_version: str = Field(
        default="",
        description="Pin the platform version (empty = look up latest release)",
    )
    dokku_fallback_version: str = Field(
        default="v0.35.20",
        description="Version installed when the release lookup fails",
    )
    dokku_release_url: str = Field(
        default="https://api.github.com/repos/dokku/dokku/releases/latest",
        description="Endpoint returning the latest release as JSON",
    )
    dokku_bootstrap_url: str = Field(
        default="https://dokku.com/install/{version}/bootstrap.sh",
        description="Bootstrap script URL template",
    )
    required_plugins: Dict[str, str] = Field(
        default_factory=lambda: {
            "postgres": "https://github.com/dokku/dokku-postgres.git",
            "redis": "https://github.com/dokku/dokku-redis.git",
            "letsencrypt": "https://github.com/dokku/dokku-letsencrypt.git",
        },
        description="Plugins installed on the server and required by apps",
    )

    # Host address detection
    ipv4_lookup_urls: List[str] = Field(
        default_factory=lambda: [
            "https://api.ipify.org",
            "https://ipv4.icanhazip.com",
        ],
    )
    ipv6_lookup_urls: List[str] = Field(
        default_factory=lambda: [
            "https://api6.ipify.org",
            "https://ipv6.icanhazip.com",
        ],
    )
    lookup_timeout_seconds: float = Field(
        default=HTTP_LOOKUP_TIMEOUT_S,
        ge=HTTP_LOOKUP_TIMEOUT_MIN_S,
        le=HTTP_LOOKUP_TIMEOUT_MAX_S,
        description="Bound for every outbound HTTP lookup",
    )
    wildcard_dns_suffix: str = Field(
        default="sslip.io",
        description="Wildcard DNS service appended to the host address",
    )

    # Host hardening
    firewall_ports: List[str] = Field(
        default_factory=lambda: ["22/tcp", "80/tcp", "443/tcp"],
    )
    docker_dns_servers: List[str] = Field(
        default_factory=lambda: ["1.1.1.1", "8.8.8.8"],
    )
    upload_limit: str = Field(
        default="20m",
        pattern=r"^\d+[kmg]?$",
        description="Default nginx client_max_body_size",
    )
    allow_reboot: bool = Field(
        default=True,
        description="Reboot when the package manager requests it",
    )

    # Application defaults
    default_backup_bucket: str = Field(default="my-app-backups")
    backup_schedule: str = Field(
        default="0 0 * * 0,4",
        description="Cron schedule for database backups (Sun/Thu midnight)",
    )
    app_environment: Dict[str, str] = Field(
        default_factory=lambda: {
            "RAILS_ENV": "production",
            "RACK_ENV": "production",
            "RAILS_SERVE_STATIC_FILES": "true",
            "RAILS_LOG_TO_STDOUT": "true",
        },
    )
    process_scale: Dict[str, int] = Field(
        default_factory=lambda: {"web": 1, "worker": 1},
    )

    @field_validator("state_dir")
    @classmethod
    def expand_path(cls, v: str) -> str:
        """Expand ~ and environment variables in paths."""
        return os.path.expanduser(os.path.expandvars(v))

    @field_validator("backup_schedule")
    @classmethod
    def validate_schedule(cls, v: str) -> str:
        """A cron schedule has exactly five fields."""
        if len(v.split()) != 5:
            raise ValueError(f"expected five cron fields, got {v!r}")
        return v

    @property
    def ledger_trust(self) -> timedelta:
        return timedelta(hours=self.ledger_trust_hours)

    def get_ledger_path(self, plan_name: str) -> Path:
        """Get the ledger file for a plan."""
        return Path(self.state_dir) / f"{plan_name}.json"

    def get_lock_path(self) -> Path:
        """One run-lock per host, shared by every plan."""
        return Path(self.state_dir) / "provision.lock"


# Global singleton
_config: Optional[ProvisionConfig] = None


def get_config(**overrides: Any) -> ProvisionConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided.

    Args:
        **overrides: Override any config values

    Returns:
        ProvisionConfig instance
    """
    global _config

    if overrides or _config is None:
        _config = ProvisionConfig(**overrides)

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None


def load_config(path: Optional[Path] = None, **overrides: Any) -> ProvisionConfig:
    """
    Build the configuration from an optional YAML file plus overrides.

    Keys in the YAML file use the field names of ``ProvisionConfig``.
    Explicit ``overrides`` (CLI flags) win over the file.
    """
    values: Dict[str, Any] = {}
    if path is not None:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        values.update(data)
    values.update({k: v for k, v in overrides.items() if v is not None})
    return get_config(**values)
