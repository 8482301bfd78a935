# src/core/db/__init__.py

from src.core.db.pool import init_db, close_db, connection, transaction, healthcheck
from src.core.db.users import (
    PaymentAccount,
    insert_user,
    get_user,
    get_user_by_username,
    update_user,
    get_payment_account,
    save_payment_account,
)
from src.core.db.offers import (
    insert_offer,
    get_offer,
    list_offers_with_claim_counts,
)
from src.core.db.offer_slots import (
    SlotReservation,
    insert_slot,
    list_slots,
    reserve_slot_unit,
)
from src.core.db.claims import (
    insert_claim,
    get_claim,
    get_claim_context,
    mark_deposit_paid,
    mark_redeemed,
    list_host_sessions,
)
from src.core.db.payments import (
    insert_payment,
    get_payment_by_ref,
    set_payment_status,
    get_latest_payment,
    list_pending_payments,
    get_open_payment,
    expire_pending_payments,
)
from src.core.db.redemptions import (
    insert_redemption,
    get_last_paid_amount,
    count_creator_redemptions,
    list_public_redeemed_sessions,
)
from src.core.db.events import (
    append_event,
    list_for_user,
    list_for_offer,
    count_events,
)
from src.core.db.referrals import (
    insert_referral_link,
    get_referral_link,
)
from src.core.db.stripe_events import (
    claim_event,
    is_event_processed,
    purge_processed_events,
)

__all__ = [
    # pool
    "init_db",
    "close_db",
    "connection",
    "transaction",
    "healthcheck",
    # users
    "PaymentAccount",
    "insert_user",
    "get_user",
    "get_user_by_username",
    "update_user",
    "get_payment_account",
    "save_payment_account",
    # offers
    "insert_offer",
    "get_offer",
    "list_offers_with_claim_counts",
    # offer_slots
    "SlotReservation",
    "insert_slot",
    "list_slots",
    "reserve_slot_unit",
    # claims
    "insert_claim",
    "get_claim",
    "get_claim_context",
    "mark_deposit_paid",
    "mark_redeemed",
    "list_host_sessions",
    # payments
    "insert_payment",
    "get_payment_by_ref",
    "set_payment_status",
    "get_latest_payment",
    "list_pending_payments",
    "get_open_payment",
    "expire_pending_payments",
    # redemptions
    "insert_redemption",
    "get_last_paid_amount",
    "count_creator_redemptions",
    "list_public_redeemed_sessions",
    # events
    "append_event",
    "list_for_user",
    "list_for_offer",
    "count_events",
    # referrals
    "insert_referral_link",
    "get_referral_link",
    # stripe_events
    "claim_event",
    "is_event_processed",
    "purge_processed_events",
]
