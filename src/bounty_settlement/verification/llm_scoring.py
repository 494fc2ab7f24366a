"""Prompt construction and verdict parsing for provider-scored criteria."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from bounty_settlement.errors import ReasoningProviderError
from bounty_settlement.models import CriterionCheck

SCORING_PROMPT_VERSION = "v1"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_RECOMMENDATIONS = frozenset({"pass", "fail", "needs_review"})
_MAX_OUTPUT_CHARS = 20_000

SCORING_SYSTEM_PROMPT = (
    "You are a strict reviewer for a paid task marketplace. Judge only whether the "
    "submitted output satisfies the stated success criteria. Reply with JSON only."
)

_RESPONSE_SCHEMA = """\
{
  "score": <0-100 overall>,
  "confidence": <0.0-1.0>,
  "recommendation": "pass" | "fail" | "needs_review",
  "summary": "<one paragraph>",
  "checks": [
    {"criterion": "<criterion>", "passed": true | false | null, "score": <0-100>,
     "reasoning": "<why>"}
  ]
}"""


@dataclass(slots=True)
class ProviderVerdict:
    """Parsed provider judgement."""

    score: float
    confidence: float | None
    recommendation: str
    summary: str
    checks: list[CriterionCheck] = field(default_factory=list)


def build_scoring_prompt(
    *,
    title: str,
    description: str,
    success_criteria: str,
    output_text: str,
) -> str:
    truncated = output_text[:_MAX_OUTPUT_CHARS]
    if len(output_text) > _MAX_OUTPUT_CHARS:
        truncated += "\n[output truncated]"
    return (
        f"Task: {title}\n"
        f"\n"
        f"Description:\n{description or '(none)'}\n"
        f"\n"
        f"Success criteria (one per line):\n{success_criteria}\n"
        f"\n"
        f"Submitted output:\n{truncated}\n"
        f"\n"
        f"Score each criterion, then the submission overall. Use passed=null when the\n"
        f"output does not let you decide. Respond with exactly this JSON shape:\n"
        f"{_RESPONSE_SCHEMA}\n"
    )


def parse_scoring_response(text: str) -> ProviderVerdict:
    """Parse the provider JSON verdict or raise `ReasoningProviderError`."""

    payload = _parse_json_payload(text.strip())
    if payload is None:
        raise ReasoningProviderError("Provider verdict is not a JSON object.")

    score = _bounded_float(payload.get("score"), low=0.0, high=100.0)
    if score is None:
        raise ReasoningProviderError("Provider verdict has no valid 0-100 score.")
    confidence = _bounded_float(payload.get("confidence"), low=0.0, high=1.0)

    recommendation = str(payload.get("recommendation") or "needs_review").strip().lower()
    if recommendation not in _RECOMMENDATIONS:
        recommendation = "needs_review"

    checks: list[CriterionCheck] = []
    raw_checks = payload.get("checks")
    if isinstance(raw_checks, list):
        for item in raw_checks:
            if not isinstance(item, dict) or not isinstance(item.get("criterion"), str):
                continue
            passed = item.get("passed")
            check_score = _bounded_float(item.get("score"), low=0.0, high=100.0)
            checks.append(
                CriterionCheck(
                    criterion=item["criterion"],
                    passed=passed if isinstance(passed, bool) else None,
                    score=check_score if check_score is not None else score,
                    reasoning=str(item.get("reasoning") or ""),
                ),
            )

    summary = payload.get("summary")
    return ProviderVerdict(
        score=score,
        confidence=confidence,
        recommendation=recommendation,
        summary=summary if isinstance(summary, str) else "",
        checks=checks,
    )


def _parse_json_payload(text: str) -> dict[str, object] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _bounded_float(value: object, *, low: float, high: float) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    number = float(value)
    if number < low or number > high:
        return None
    return number
