from __future__ import annotations

import allure

from bounty_settlement.pricing import estimate_cost_usd

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Resource Accounting"),
]


def test_estimate_cost_usd_uses_input_and_output_tokens(monkeypatch) -> None:
    monkeypatch.setenv("BOUNTY_SETTLEMENT_LLM_PRICING", "gpt-test:1.0:3.0")
    cost = estimate_cost_usd(
        model="gpt-test",
        prompt_tokens=1_000_000,
        completion_tokens=500_000,
        total_tokens=None,
    )
    assert cost == 2.5


def test_estimate_cost_usd_falls_back_to_input_price_for_total_tokens(monkeypatch) -> None:
    monkeypatch.setenv("BOUNTY_SETTLEMENT_LLM_PRICING", "gpt-test:1.0:3.0")
    cost = estimate_cost_usd(
        model="gpt-test",
        prompt_tokens=None,
        completion_tokens=None,
        total_tokens=2_000_000,
    )
    assert cost == 2.0


def test_estimate_cost_usd_applies_wildcard(monkeypatch) -> None:
    monkeypatch.setenv("BOUNTY_SETTLEMENT_LLM_PRICING", "gpt-test:1.0:1.0,*:9.0:9.0")
    cost = estimate_cost_usd(
        model="other-model",
        prompt_tokens=1_000_000,
        completion_tokens=0,
        total_tokens=None,
    )
    assert cost == 9.0


def test_estimate_cost_usd_skips_malformed_entries(monkeypatch) -> None:
    monkeypatch.setenv("BOUNTY_SETTLEMENT_LLM_PRICING", "broken,gpt-test:x:1.0")
    cost = estimate_cost_usd(
        model="gpt-test",
        prompt_tokens=10,
        completion_tokens=10,
        total_tokens=20,
    )
    assert cost is None
