from __future__ import annotations

from pathlib import Path

import allure
import pytest

from bounty_settlement.config import PLATFORM_FEE_PERCENT, Settings, VerificationSettings

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()

    assert settings.escrow.platform_fee_percent == PLATFORM_FEE_PERCENT == 15
    assert settings.execution.max_retries == 3
    assert settings.verification.pass_threshold == 80.0
    assert settings.orchestrator.auto_release_on_pass is False


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOUNTY_SETTLEMENT_PASS_THRESHOLD", "75")
    monkeypatch.setenv("BOUNTY_SETTLEMENT_EXECUTION_MAX_RETRIES", "5")
    monkeypatch.setenv("BOUNTY_SETTLEMENT_EXECUTION_ALLOW_NETWORK", "yes")
    monkeypatch.setenv("BOUNTY_SETTLEMENT_AUTO_RELEASE_ON_PASS", "1")
    monkeypatch.setenv("BOUNTY_SETTLEMENT_CURRENCY", " EUR ")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.verification.pass_threshold == 75.0
    assert settings.execution.max_retries == 5
    assert settings.execution.allow_network is True
    assert settings.orchestrator.auto_release_on_pass is True
    assert settings.escrow.currency == "eur"


def test_from_env_rejects_garbage_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOUNTY_SETTLEMENT_AUTO_RELEASE_ON_PASS", "maybe")

    with pytest.raises(ValueError, match="BOUNTY_SETTLEMENT_AUTO_RELEASE_ON_PASS"):
        Settings.from_env()


def test_validate_rejects_fail_threshold_above_pass_threshold() -> None:
    settings = Settings(
        verification=VerificationSettings(pass_threshold=50.0, fail_threshold=60.0),
    )

    with pytest.raises(ValueError, match="FAIL_THRESHOLD must not exceed"):
        settings.validate()


def test_validate_rejects_non_http_gateway_url() -> None:
    settings = Settings()
    settings.escrow.gateway_base_url = "ftp://processor.example"

    with pytest.raises(ValueError, match="GATEWAY_BASE_URL"):
        settings.validate()


def test_validate_refuses_a_different_platform_fee() -> None:
    settings = Settings()
    settings.escrow.platform_fee_percent = 10

    with pytest.raises(ValueError, match="fixed at 15%"):
        settings.validate()


def test_validate_requires_at_least_one_attempt() -> None:
    settings = Settings()
    settings.execution.max_retries = 0

    with pytest.raises(ValueError, match="MAX_RETRIES"):
        settings.validate()
