"""Scoped, time-limited credentials for worker executions."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from bounty_settlement.storage.common import utc_now


@dataclass(slots=True)
class CredentialLease:
    """Credential values granted to one execution; never persisted."""

    task_id: str
    worker_id: str
    scopes: tuple[str, ...]
    values: dict[str, str]
    expires_at: datetime

    def is_expired(self, *, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def environment(self) -> dict[str, str]:
        """Environment variables injected into the sandbox."""

        return {f"BOUNTY_CREDENTIAL_{name.upper()}": value for name, value in self.values.items()}

    def secret_values(self) -> tuple[str, ...]:
        return tuple(self.values.values())


class CredentialVault(Protocol):
    """External vault supplying third-party credentials to workers."""

    def lease(
        self,
        *,
        task_id: str,
        worker_id: str,
        scopes: tuple[str, ...],
        ttl_seconds: int,
    ) -> CredentialLease:
        """Return a lease limited to `scopes` and `ttl_seconds`."""


@dataclass(slots=True)
class StaticCredentialVault:
    """Vault backed by an in-memory scope -> secret mapping."""

    secrets: dict[str, str] = field(default_factory=dict)

    def lease(
        self,
        *,
        task_id: str,
        worker_id: str,
        scopes: tuple[str, ...],
        ttl_seconds: int,
    ) -> CredentialLease:
        values = {scope: self.secrets[scope] for scope in scopes if scope in self.secrets}
        return CredentialLease(
            task_id=task_id,
            worker_id=worker_id,
            scopes=tuple(scope for scope in scopes if scope in values),
            values=values,
            expires_at=utc_now() + timedelta(seconds=max(1, ttl_seconds)),
        )


def vault_from_env(prefix: str = "BOUNTY_SETTLEMENT_SECRET_") -> StaticCredentialVault:
    """Build a static vault from `<prefix><SCOPE>=value` environment variables."""

    secrets = {
        name[len(prefix) :].lower(): value
        for name, value in os.environ.items()
        if name.startswith(prefix) and value
    }
    return StaticCredentialVault(secrets=secrets)
