# src/core/errors.py

class MarketplaceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "internal_error"
    default_detail = "An unexpected error occurred"

    def __init__(self, detail: str | None = None, *, code: str | None = None):
        self.detail = detail or self.default_detail
        if code:
            self.code = code
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class InvalidRequest(MarketplaceError):
    status_code = 400
    code = "invalid_request"
    default_detail = "Invalid request"


class Unauthorized(MarketplaceError):
    status_code = 401
    code = "unauthorized"
    default_detail = "Missing or invalid user id"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"
    default_detail = "Not allowed"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"
    default_detail = "Not found"


class UserNotFound(NotFound):
    code = "user_not_found"
    default_detail = "User not found"


class OfferNotFound(NotFound):
    code = "offer_not_found"
    default_detail = "Offer not found"


class SlotNotFound(NotFound):
    code = "slot_not_found"
    default_detail = "Slot not found"


class ClaimNotFound(NotFound):
    code = "claim_not_found"
    default_detail = "Claim not found"


class Conflict(MarketplaceError):
    status_code = 409
    code = "conflict"
    default_detail = "Conflict"


class SlotFull(Conflict):
    code = "slot_full"
    default_detail = "Slot full"


class PaymentRequired(Conflict):
    code = "payment_required"
    default_detail = "No payment recorded for this claim"


class PaymentPending(Conflict):
    code = "payment_pending"
    default_detail = "Payment has not settled yet"


class NotConnected(Conflict):
    code = "creator_not_connected"
    default_detail = "Creator has not connected a payment account"


class HandleTaken(Conflict):
    code = "handle_taken"
    default_detail = "Handle already exists"


class BalanceNotDue(Conflict):
    code = "balance_not_due"
    default_detail = "No balance due for this claim"


class UpstreamFailure(MarketplaceError):
    status_code = 502
    code = "upstream_failure"
    default_detail = "Payment service error"


class StorageFailure(MarketplaceError):
    status_code = 500
    code = "storage_failure"
    default_detail = "Storage error"


class AlreadyPaid(Conflict):
    code = "already_paid"
    default_detail = "Claim has already been paid"
