"""Escrow ledger, payment gateway client, webhook verification."""

from bounty_settlement.escrow.gateway import EscrowHold, HttpPaymentGateway, PaymentGateway
from bounty_settlement.escrow.ledger import EscrowLedger
from bounty_settlement.escrow.webhooks import WebhookVerifier

__all__ = [
    "EscrowHold",
    "EscrowLedger",
    "HttpPaymentGateway",
    "PaymentGateway",
    "WebhookVerifier",
]
