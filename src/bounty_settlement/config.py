"""Runtime configuration for escrow, execution, and verification."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

PLATFORM_FEE_PERCENT = 15


@dataclass(slots=True)
class EscrowSettings:
    """Payment processor and webhook settings."""

    platform_fee_percent: int = PLATFORM_FEE_PERCENT
    currency: str = "usd"
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    gateway_base_url: str = "http://127.0.0.1:12111"
    gateway_api_key: str = ""
    gateway_timeout_seconds: float = 30.0
    gateway_max_attempts: int = 3
    gateway_backoff_base_seconds: float = 0.5
    gateway_backoff_max_seconds: float = 8.0


@dataclass(slots=True)
class ExecutionSettings:
    """Sandbox limits and queue retry policy."""

    default_timeout_seconds: int = 300
    memory_limit_mb: int = 256
    max_retries: int = 3
    pool_size: int = 4
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    cancel_grace_seconds: float = 5.0
    max_code_bytes: int = 512 * 1024
    max_input_bytes: int = 1024 * 1024
    allow_network: bool = False
    poll_interval_seconds: float = 1.0
    worker_id: str = "worker-local"


@dataclass(slots=True)
class VerificationSettings:
    """Scoring thresholds and reasoning provider endpoint."""

    pass_threshold: float = 80.0
    fail_threshold: float = 40.0
    provider_base_url: str = ""
    provider_api_key: str = ""
    provider_model: str = "gpt-4o"
    provider_timeout_seconds: float = 60.0


@dataclass(slots=True)
class OrchestratorSettings:
    """Task lifecycle policy."""

    auto_release_on_pass: bool = False
    review_grace_hours: int = 72


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".bounty_settlement.db")
    sqlite_busy_timeout_ms: int = 5_000
    escrow: EscrowSettings = field(default_factory=EscrowSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("BOUNTY_SETTLEMENT_DB_PATH", ".bounty_settlement.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("BOUNTY_SETTLEMENT_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            escrow=EscrowSettings(
                currency=os.getenv("BOUNTY_SETTLEMENT_CURRENCY", "usd").strip().lower(),
                webhook_secret=os.getenv("BOUNTY_SETTLEMENT_WEBHOOK_SECRET", ""),
                webhook_tolerance_seconds=int(
                    os.getenv("BOUNTY_SETTLEMENT_WEBHOOK_TOLERANCE_SECONDS", "300"),
                ),
                gateway_base_url=os.getenv(
                    "BOUNTY_SETTLEMENT_GATEWAY_BASE_URL",
                    "http://127.0.0.1:12111",
                ),
                gateway_api_key=os.getenv("BOUNTY_SETTLEMENT_GATEWAY_API_KEY", ""),
                gateway_timeout_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_GATEWAY_TIMEOUT_SECONDS", "30"),
                ),
                gateway_max_attempts=int(
                    os.getenv("BOUNTY_SETTLEMENT_GATEWAY_MAX_ATTEMPTS", "3"),
                ),
                gateway_backoff_base_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_GATEWAY_BACKOFF_BASE_SECONDS", "0.5"),
                ),
                gateway_backoff_max_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_GATEWAY_BACKOFF_MAX_SECONDS", "8"),
                ),
            ),
            execution=ExecutionSettings(
                default_timeout_seconds=int(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_TIMEOUT_SECONDS", "300"),
                ),
                memory_limit_mb=int(os.getenv("BOUNTY_SETTLEMENT_EXECUTION_MEMORY_MB", "256")),
                max_retries=int(os.getenv("BOUNTY_SETTLEMENT_EXECUTION_MAX_RETRIES", "3")),
                pool_size=int(os.getenv("BOUNTY_SETTLEMENT_EXECUTION_POOL_SIZE", "4")),
                retry_base_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_RETRY_BASE_SECONDS", "5"),
                ),
                retry_max_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_RETRY_MAX_SECONDS", "300"),
                ),
                cancel_grace_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_CANCEL_GRACE_SECONDS", "5"),
                ),
                max_code_bytes=int(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_MAX_CODE_BYTES", str(512 * 1024)),
                ),
                max_input_bytes=int(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_MAX_INPUT_BYTES", str(1024 * 1024)),
                ),
                allow_network=_env_bool("BOUNTY_SETTLEMENT_EXECUTION_ALLOW_NETWORK", default=False),
                poll_interval_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_EXECUTION_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                worker_id=os.getenv("BOUNTY_SETTLEMENT_WORKER_ID", "worker-local"),
            ),
            verification=VerificationSettings(
                pass_threshold=float(os.getenv("BOUNTY_SETTLEMENT_PASS_THRESHOLD", "80")),
                fail_threshold=float(os.getenv("BOUNTY_SETTLEMENT_FAIL_THRESHOLD", "40")),
                provider_base_url=os.getenv("BOUNTY_SETTLEMENT_PROVIDER_BASE_URL", ""),
                provider_api_key=os.getenv("BOUNTY_SETTLEMENT_PROVIDER_API_KEY", ""),
                provider_model=os.getenv("BOUNTY_SETTLEMENT_PROVIDER_MODEL", "gpt-4o"),
                provider_timeout_seconds=float(
                    os.getenv("BOUNTY_SETTLEMENT_PROVIDER_TIMEOUT_SECONDS", "60"),
                ),
            ),
            orchestrator=OrchestratorSettings(
                auto_release_on_pass=_env_bool(
                    "BOUNTY_SETTLEMENT_AUTO_RELEASE_ON_PASS",
                    default=False,
                ),
                review_grace_hours=int(
                    os.getenv("BOUNTY_SETTLEMENT_REVIEW_GRACE_HOURS", "72"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the first invalid variable."""

        if self.escrow.platform_fee_percent != PLATFORM_FEE_PERCENT:
            raise ValueError(f"Platform fee is fixed at {PLATFORM_FEE_PERCENT}%.")
        if self.escrow.webhook_tolerance_seconds <= 0:
            raise ValueError("BOUNTY_SETTLEMENT_WEBHOOK_TOLERANCE_SECONDS must be > 0.")
        if self.escrow.gateway_max_attempts < 1:
            raise ValueError("BOUNTY_SETTLEMENT_GATEWAY_MAX_ATTEMPTS must be >= 1.")
        if not _is_http_url(self.escrow.gateway_base_url):
            raise ValueError(
                "BOUNTY_SETTLEMENT_GATEWAY_BASE_URL must be an http(s) URL, "
                f"got {self.escrow.gateway_base_url!r}.",
            )
        if self.execution.default_timeout_seconds <= 0:
            raise ValueError("BOUNTY_SETTLEMENT_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if self.execution.memory_limit_mb <= 0:
            raise ValueError("BOUNTY_SETTLEMENT_EXECUTION_MEMORY_MB must be > 0.")
        if self.execution.max_retries < 1:
            raise ValueError("BOUNTY_SETTLEMENT_EXECUTION_MAX_RETRIES must be >= 1.")
        if self.execution.pool_size < 1:
            raise ValueError("BOUNTY_SETTLEMENT_EXECUTION_POOL_SIZE must be >= 1.")
        if self.execution.retry_base_seconds < 0 or self.execution.retry_max_seconds < 0:
            raise ValueError("BOUNTY_SETTLEMENT_EXECUTION_RETRY_*_SECONDS must be >= 0.")
        if not 0 <= self.verification.fail_threshold <= 100:
            raise ValueError("BOUNTY_SETTLEMENT_FAIL_THRESHOLD must be within 0..100.")
        if not 0 <= self.verification.pass_threshold <= 100:
            raise ValueError("BOUNTY_SETTLEMENT_PASS_THRESHOLD must be within 0..100.")
        if self.verification.fail_threshold > self.verification.pass_threshold:
            raise ValueError(
                "BOUNTY_SETTLEMENT_FAIL_THRESHOLD must not exceed "
                "BOUNTY_SETTLEMENT_PASS_THRESHOLD.",
            )
        if self.verification.provider_base_url and not _is_http_url(
            self.verification.provider_base_url,
        ):
            raise ValueError(
                "BOUNTY_SETTLEMENT_PROVIDER_BASE_URL must be an http(s) URL, "
                f"got {self.verification.provider_base_url!r}.",
            )
        if self.orchestrator.review_grace_hours < 0:
            raise ValueError("BOUNTY_SETTLEMENT_REVIEW_GRACE_HOURS must be >= 0.")


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")
