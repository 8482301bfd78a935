# src/core/config.py

import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Environment
ENV = os.environ.get("ENV", "development").lower()
IS_PRODUCTION = ENV == "production"

# Database
DATABASE_URL = os.environ["DATABASE_URL"]
DB_POOL_MIN_SIZE = int(os.environ.get("DB_POOL_MIN_SIZE", "1"))
DB_POOL_MAX_SIZE = int(os.environ.get("DB_POOL_MAX_SIZE", "10"))

# Stripe (platform account + Connect)
STRIPE_API_KEY = os.environ.get("STRIPE_API_KEY")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
STRIPE_CLIENT_ID = os.environ.get("STRIPE_CLIENT_ID")
STRIPE_STATUS_CACHE_TTL = 60  # seconds

# PayPal
PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
PAYPAL_API_BASE = os.environ.get("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com")

# OAuth state signing
STATE_SECRET = os.environ.get("STATE_SECRET", "dev-state-secret")
OAUTH_STATE_MAX_AGE = 15 * 60  # seconds

# URLs
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5173").rstrip("/")
STRIPE_REDIRECT_BASE_URL = os.environ.get("STRIPE_REDIRECT_BASE_URL", "http://localhost:8000").rstrip("/")

CURRENCY = os.environ.get("CURRENCY", "usd").lower()

# Offers & claims
PAYMENT_MODES = ("deposit", "full", "pay_in_person")
DEFAULT_PAYMENT_MODE = "deposit"
# 決済済みとみなすステータス
SETTLED_PAYMENT_STATUSES = frozenset({"paid", "succeeded", "zero"})
DEFAULT_CREATOR_NAME = "New creator"

# Event feed
EVENT_TYPES = (
    "OFFER_CREATED",
    "OFFER_VIEWED",
    "OFFER_CLAIMED",
    "WALLET_SAVED",
    "REDEMPTION_COMPLETED",
    "DEPOSIT_PAID",
    "REDEEMED_IRL",
    "REFERRAL_INVITE_SENT",
    "REFERRAL_CONVERTED",
)
OFFER_ACTIVITY_LIMIT = 10
INBOX_LIMIT = 100
PUBLIC_SESSIONS_LIMIT = 12

# Referrals
REFERRAL_CODE_LENGTH = 6
REFERRAL_CODE_ATTEMPTS = 5

# Reconciliation sweep
PENDING_PAYMENT_GRACE_MINUTES = int(os.environ.get("PENDING_PAYMENT_GRACE_MINUTES", "15"))
PROCESSED_EVENTS_RETENTION_DAYS = 30

# Input validation limits
MAX_TITLE_LENGTH = 200
MAX_TEXT_LENGTH = 4000
MAX_HANDLE_LENGTH = 40
MAX_SLOTS_PER_OFFER = 100

# レート制限設定
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_CLAIM = os.environ.get("RATE_LIMIT_CLAIM", "20/minute")
RATE_LIMIT_PAYMENT = os.environ.get("RATE_LIMIT_PAYMENT", "5/minute")
RATE_LIMIT_WEBHOOK = os.environ.get("RATE_LIMIT_WEBHOOK", "100/minute")


def get_allowed_origins() -> list[str]:
    """Get CORS allowed origins based on environment."""
    origins = [PUBLIC_BASE_URL]
    if not IS_PRODUCTION:
        origins.extend([
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ])
    logger.info(f"CORS allowed origins: {origins}")
    return origins


# 起動時の設定検証
def validate_config():
    """Validate critical configuration on startup."""
    errors = []

    if IS_PRODUCTION:
        if not STRIPE_API_KEY or STRIPE_API_KEY.startswith("sk_test_"):
            logger.warning("Using test Stripe API key in production!")

        if not STRIPE_WEBHOOK_SECRET:
            errors.append("STRIPE_WEBHOOK_SECRET is required in production")

        if len(STATE_SECRET) < 32:
            errors.append("STATE_SECRET must be at least 32 characters in production")

        if not os.environ.get("ENCRYPTION_KEY"):
            errors.append("ENCRYPTION_KEY is required in production")

    if DB_POOL_MIN_SIZE < 1 or DB_POOL_MAX_SIZE < DB_POOL_MIN_SIZE:
        errors.append("DB_POOL_MAX_SIZE must be >= DB_POOL_MIN_SIZE >= 1")

    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise RuntimeError("Invalid configuration. See logs for details.")


# 起動時に設定を検証
validate_config()
