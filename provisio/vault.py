"""Secret store for credentials generated or received during provisioning.

Run state, step outputs and ledger entries only ever hold references of the
form ``vault:<handle>``. Handles are deterministic (``<run_id>/<name>``) so a
step that is re-executed after a crash finds the credential it stored the
first time instead of minting a new one.
"""

from __future__ import annotations

import asyncio
import os
import re
import secrets
import string
from pathlib import Path
from typing import Dict, Optional, Protocol

from .config import ProvisioConfig, VaultConfig, load_config

REF_PREFIX = "vault:"
_HANDLE_RE = re.compile(r"^[A-Za-z0-9_.-]+(/[A-Za-z0-9_.-]+)*$")

# Characters safe inside single-quoted PHP strings and dotenv values.
SALT_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()-_[]{}<>~+=,.;:/?|"


def make_ref(handle: str) -> str:
    return f"{REF_PREFIX}{handle}"


def is_ref(value: object) -> bool:
    return isinstance(value, str) and value.startswith(REF_PREFIX)


def handle_of(ref: str) -> str:
    if not is_ref(ref):
        raise ValueError("not a vault reference")
    return ref[len(REF_PREFIX):]


def generate_password(length: int = 24) -> str:
    return secrets.token_urlsafe(length)[:length]


def generate_salt(length: int = 64) -> str:
    return "".join(secrets.choice(SALT_ALPHABET) for _ in range(length))


class SecretNotFound(KeyError):
    pass


class SecretStore(Protocol):
    """Protocol for secret storage backends."""

    async def put(self, handle: str, value: str) -> str:
        """Store ``value`` under ``handle`` unless already present; return the reference."""

    async def get(self, handle: str) -> str:
        """Return the stored value or raise :class:`SecretNotFound`."""

    async def delete(self, handle: str) -> None:
        """Remove the secret; missing handles are ignored."""


class InMemorySecretStore(SecretStore):
    """Keep secrets in process memory. Intended for tests and development."""

    def __init__(self) -> None:
        self._secrets: Dict[str, str] = {}

    async def put(self, handle: str, value: str) -> str:
        self._secrets.setdefault(handle, value)
        return make_ref(handle)

    async def get(self, handle: str) -> str:
        try:
            return self._secrets[handle]
        except KeyError:
            raise SecretNotFound(handle) from None

    async def delete(self, handle: str) -> None:
        self._secrets.pop(handle, None)

    def __contains__(self, handle: str) -> bool:
        return handle in self._secrets


class FileSecretStore(SecretStore):
    """Store each secret in its own 0600 file below ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, handle: str) -> Path:
        if not _HANDLE_RE.match(handle) or ".." in handle:
            raise ValueError("invalid secret handle")
        return self.directory / handle.replace("/", "__")

    def _put(self, handle: str, value: str) -> None:
        path = self._path(handle)
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            return
        with os.fdopen(fd, "w") as f:
            f.write(value)

    def _get(self, handle: str) -> str:
        try:
            return self._path(handle).read_text()
        except FileNotFoundError:
            raise SecretNotFound(handle) from None

    async def put(self, handle: str, value: str) -> str:
        await asyncio.to_thread(self._put, handle, value)
        return make_ref(handle)

    async def get(self, handle: str) -> str:
        return await asyncio.to_thread(self._get, handle)

    async def delete(self, handle: str) -> None:
        await asyncio.to_thread(self._path(handle).unlink, True)


def get_secret_store(
    vault_config: Optional[VaultConfig] = None, config: Optional[ProvisioConfig] = None
) -> SecretStore:
    """Factory function for the configured secret store."""

    vault_config = vault_config or (config or load_config()).vault
    if vault_config.backend == "memory":
        return InMemorySecretStore()
    if vault_config.backend == "file":
        return FileSecretStore(vault_config.directory)
    raise ValueError(f"Unsupported vault backend: {vault_config.backend}")
