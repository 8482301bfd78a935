# src/services/__init__.py

from src.services.claims import create_claim
from src.services.checkout import (
    create_checkout_for_claim,
    create_terminal_connection_token,
    create_terminal_payment_intent,
)
from src.services.redemptions import redeem, create_redemption
from src.services.reconciliation import (
    RecordOutcome,
    record_deposit_payment,
    record_balance_payment,
)
from src.services.stripe_service import (
    verify_webhook_signature,
    process_webhook_event,
    confirm_session,
)

__all__ = [
    "create_claim",
    "create_checkout_for_claim",
    "create_terminal_connection_token",
    "create_terminal_payment_intent",
    "redeem",
    "create_redemption",
    "RecordOutcome",
    "record_deposit_payment",
    "record_balance_payment",
    "verify_webhook_signature",
    "process_webhook_event",
    "confirm_session",
]
