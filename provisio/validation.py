"""Named validators and derivations for workflow parameters.

Workflow definitions refer to these by name so that the definitions stay
plain data. Validators receive the raw value and return its normalized
string form, raising :class:`~provisio.errors.ValidationError` otherwise.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Callable, Dict

from .errors import ValidationError

_LABEL_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_MAIL_USER_RE = re.compile(r"^[a-z_][a-z0-9_.-]{0,31}$")
_UNSAFE_USER_CHAR_RE = re.compile(r"[^a-z0-9_]")
_RESOURCE_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,252}$")
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def validate_domain(name: str, value: str) -> str:
    domain = value.strip().lower().rstrip(".")
    labels = domain.split(".")
    if (
        len(domain) > 253
        or len(labels) < 2
        or not all(_LABEL_RE.match(label) for label in labels)
        or labels[-1].isdigit()
    ):
        raise ValidationError(f"'{name}' is not a valid domain name")
    return domain


def validate_subdomain(name: str, value: str) -> str:
    sub = value.strip().lower()
    if not all(_LABEL_RE.match(label) for label in sub.split(".")):
        raise ValidationError(f"'{name}' is not a valid subdomain")
    return sub


def validate_identifier(name: str, value: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValidationError(
            f"'{name}' may only contain letters, digits and underscores (max 64)"
        )
    return value


def validate_email(name: str, value: str) -> str:
    address = value.strip().lower()
    local, sep, domain = address.partition("@")
    if not sep or not _MAIL_USER_RE.match(local):
        raise ValidationError(f"'{name}' is not a valid email address")
    validate_domain(name, domain)
    return address


def validate_password(name: str, value: str) -> str:
    if len(value) < 8 or len(value) > 128:
        raise ValidationError(f"'{name}' must be between 8 and 128 characters")
    if any(ord(c) < 32 or c == "\x7f" for c in value):
        raise ValidationError(f"'{name}' contains disallowed characters")
    return value


def validate_quota(name: str, value: str) -> str:
    try:
        quota = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be an integer (MB)") from None
    if quota <= 0 or quota > 1_048_576:
        raise ValidationError(f"'{name}' is out of range")
    return str(quota)


def validate_backup_type(name: str, value: str) -> str:
    if value not in ("database", "website"):
        raise ValidationError(f"'{name}' must be 'database' or 'website'")
    return value


def validate_resource_name(name: str, value: str) -> str:
    if not _RESOURCE_NAME_RE.match(value) or ".." in value:
        raise ValidationError(f"'{name}' is not a valid database or site name")
    return value


VALIDATORS: Dict[str, Callable[[str, str], str]] = {
    "resource_name": validate_resource_name,
    "domain": validate_domain,
    "subdomain": validate_subdomain,
    "identifier": validate_identifier,
    "email": validate_email,
    "password": validate_password,
    "quota": validate_quota,
    "backup_type": validate_backup_type,
}


# ----------------------------------------------------------------------
# Derived parameters


def derive_fqdn(params: Dict[str, str]) -> str:
    sub = params.get("subdomain")
    return f"{sub}.{params['domain']}" if sub else params["domain"]


def derive_mail_user(params: Dict[str, str]) -> str:
    """System account owning a mailbox: the local part and a digest of the address.

    Mailboxes on different domains never share an account, and the name
    never matches a pre-existing system user such as ``root`` or ``mail``.
    """
    address = params["email"]
    local = _UNSAFE_USER_CHAR_RE.sub("_", address.split("@", 1)[0])[:16]
    digest = hashlib.sha256(address.encode("utf-8")).hexdigest()[:10]
    return f"{local}_{digest}"


def derive_mail_domain(params: Dict[str, str]) -> str:
    return params["email"].split("@", 1)[1]


def derive_stamp(params: Dict[str, str]) -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def derive_backup_file(params: Dict[str, str]) -> str:
    suffix = "sql" if params["backup_type"] == "database" else "tar.gz"
    return f"{params['name']}_{params['stamp']}.{suffix}"


DERIVATIONS: Dict[str, Callable[[Dict[str, str]], str]] = {
    "fqdn": derive_fqdn,
    "mail_user": derive_mail_user,
    "mail_domain": derive_mail_domain,
    "stamp": derive_stamp,
    "backup_file": derive_backup_file,
}


def snake_case(key: str) -> str:
    """``dbName`` -> ``db_name``; keys already in snake case pass through."""
    return _CAMEL_RE.sub("_", key).lower()
