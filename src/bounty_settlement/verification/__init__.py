"""Submission verification: structured metrics, provider scoring, manual review."""

from bounty_settlement.verification.engine import AutomatedResult, VerificationEngine

__all__ = ["AutomatedResult", "VerificationEngine"]
