"""
Parameter Resolver.

Validates raw command-line inputs and produces immutable parameter
objects, or fails fast with a ``ValidationError`` before anything on the
host is touched. Pure validation, no side effects.

Credentials are held as ``SecretStr`` so they never show up in reprs,
logs or the state ledger.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, SecretStr

from dokkuprov.errors import InvalidAppName, InvalidEmail, MissingCredential, ValidationError

__all__ = [
    "AppParameters",
    "Credentials",
    "ServerParameters",
    "resolve_app_parameters",
    "resolve_server_parameters",
    "validate_app_name",
    "validate_email",
]

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
APP_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?$")

DEFAULT_BACKUP_BUCKET = "my-app-backups"


def validate_email(value: str) -> bool:
    """True iff ``value`` has the ``local@domain.tld`` shape."""
    return bool(EMAIL_RE.fullmatch(value))


def validate_app_name(value: str) -> bool:
    """True iff ``value`` is alphanumeric with inner hyphens only."""
    return bool(APP_NAME_RE.fullmatch(value))


class Credentials(BaseModel):
    """Backup storage credential pair."""

    model_config = ConfigDict(frozen=True)

    access_key: SecretStr
    secret_key: SecretStr


class ServerParameters(BaseModel):
    """Validated inputs of ``provision-server``."""

    model_config = ConfigDict(frozen=True)

    admin_email: str
    # Explicit public address; detected by the global_domain step when None
    host_address: Optional[str] = None


class AppParameters(BaseModel):
    """Validated inputs of ``provision-app``."""

    model_config = ConfigDict(frozen=True)

    app_name: str
    credentials: Credentials
    backup_bucket: str = DEFAULT_BACKUP_BUCKET

    @property
    def database_name(self) -> str:
        return f"{self.app_name}db"

    @property
    def cache_name(self) -> str:
        return f"{self.app_name}red"


def resolve_server_parameters(
    admin_email: Optional[str],
    host_address: Optional[str] = None,
) -> ServerParameters:
    """
    Validate ``provision-server`` inputs.

    Raises:
        InvalidEmail: email missing or malformed
        ValidationError: ``host_address`` given but not an IP address
    """
    if not admin_email or not validate_email(admin_email):
        raise InvalidEmail(f"Invalid email address: {admin_email!r}")
    if host_address:
        try:
            host_address = str(ipaddress.ip_address(host_address))
        except ValueError:
            raise ValidationError(f"Invalid host address: {host_address!r}") from None
    return ServerParameters(admin_email=admin_email, host_address=host_address or None)


def resolve_app_parameters(
    app_name: Optional[str],
    access_key: Optional[str],
    secret_key: Optional[str],
    backup_bucket: Optional[str] = None,
    default_bucket: str = DEFAULT_BACKUP_BUCKET,
) -> AppParameters:
    """
    Validate ``provision-app`` inputs.

    Credentials are checked first so a missing secret is reported even
    when the app name is also wrong.

    Raises:
        MissingCredential: access or secret key empty
        InvalidAppName: app name missing or malformed
    """
    if not access_key:
        raise MissingCredential("Backup access key is required")
    if not secret_key:
        raise MissingCredential("Backup secret key is required")
    if not app_name or not validate_app_name(app_name):
        raise InvalidAppName(
            f"Invalid application name {app_name!r}. Use only letters, numbers and "
            "hyphens; start and end with an alphanumeric character."
        )
    return AppParameters(
        app_name=app_name,
        credentials=Credentials(
            access_key=SecretStr(access_key),
            secret_key=SecretStr(secret_key),
        ),
        backup_bucket=backup_bucket or default_bucket,
    )
