import base64
import json
import time

import pytest
import stripe
from cryptography.fernet import Fernet
from pydantic import ValidationError

import src.scripts.reconcile_payments as reconcile_script
from src.core import crypto
from src.core.config import STRIPE_WEBHOOK_SECRET
from src.core.dependencies import (
    decode_state,
    encode_state,
    parse_positive_id,
    sign_value,
    verify_signed_value,
)
from src.core.errors import ClaimNotFound, NotConnected, SlotFull
from src.core.models import ClaimCreate, EventCreate, MeUpdate, OfferCreate, SessionInitRequest, UserCreate
from src.services.checkout import amount_due_now, balance_due, build_return_urls, sanitize_return_path
from src.services.stripe_service import verify_webhook_signature
from src.services.users import default_handle

from helpers import generate_stripe_signature


class TestModels:
    def test_claim_ids_must_be_positive_integers(self):
        assert ClaimCreate(offer_id=1, user_id=2).slot_id is None
        for bad in ({"offer_id": "1", "user_id": 2}, {"offer_id": -1, "user_id": 2}, {"offer_id": 1.5, "user_id": 2}):
            with pytest.raises(ValidationError):
                ClaimCreate(**bad)

    def test_blank_address_becomes_none(self):
        assert ClaimCreate(offer_id=1, user_id=2, address="   ").address is None

    def test_offer_payment_mode(self):
        base = {"creator_id": 1, "title": "Tour", "price_cents": 100, "capacity": 1, "location_text": "Pier"}
        assert OfferCreate(**base).resolved_payment_mode == "deposit"
        assert OfferCreate(**base, payment_mode="full").resolved_payment_mode == "full"
        assert OfferCreate(**base, payment_mode="bogus").resolved_payment_mode == "deposit"
        with pytest.raises(ValidationError):
            OfferCreate(**{**base, "capacity": 0})
        with pytest.raises(ValidationError):
            OfferCreate(**{**base, "title": "   "})

    def test_user_create_defaults(self):
        user = UserCreate(name="  Ada Lovelace ", username="AdaL")
        assert user.name == "Ada Lovelace"
        assert user.role == "creator"
        assert user.username == "adal"
        with pytest.raises(ValidationError):
            UserCreate(name="Ada", role="admin")

    def test_me_update_maps_columns(self):
        update = MeUpdate(name="Ada", photo_url="https://img.test/a.png", handle="AdaL")
        assert update.to_update_dict() == {"name": "Ada", "image_url": "https://img.test/a.png", "username": "adal"}
        assert MeUpdate(name="").to_update_dict() == {}

    def test_session_init_handle(self):
        assert SessionInitRequest(host_handle=" @Ada ", amount_cents=0).host_handle == "ada"
        with pytest.raises(ValidationError):
            SessionInitRequest(host_handle="@", amount_cents=0)
        with pytest.raises(ValidationError):
            SessionInitRequest(host_handle="ada", amount_cents=-5)

    def test_event_type_must_be_known(self):
        assert EventCreate(user_id=1, type="OFFER_VIEWED").type == "OFFER_VIEWED"
        with pytest.raises(ValidationError):
            EventCreate(user_id=1, type="SOMETHING_ELSE")


class TestAmounts:
    @pytest.mark.parametrize("mode, due_now, balance", [
        ("deposit", 1000, 4000),
        ("full", 5000, 5000),
        ("pay_in_person", 1000, 5000),
    ])
    def test_amounts_by_payment_mode(self, mode, due_now, balance):
        claim = {"payment_mode": mode, "price_cents": 5000, "deposit_cents": 1000}
        assert amount_due_now(claim) == due_now
        assert balance_due(claim) == balance

    def test_deposit_larger_than_price_leaves_nothing_due(self):
        assert balance_due({"payment_mode": "deposit", "price_cents": 500, "deposit_cents": 1000}) == 0


class TestReturnPath:
    @pytest.mark.parametrize("raw, expected", [
        ("/offers/3", "/offers/3"),
        ("/offers/3?x=1#top", "/offers/3"),
        (None, "/"),
        ("offers", "/"),
        ("//evil.test/path", "/"),
        ("/redirect/https://evil.test", "/"),
        ("/\\evil.test", "/"),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_return_path(raw) == expected

    def test_return_urls(self):
        success, cancel = build_return_urls("/offers/3", 12)
        assert success.endswith("/offers/3?claim=12&paid=1")
        assert cancel.endswith("/offers/3?claim=12&cancel=1")


class TestState:
    def test_signed_value_round_trip(self):
        signed = sign_value("hello")
        assert verify_signed_value(signed) == "hello"
        assert verify_signed_value(signed[:-1] + ("0" if signed[-1] != "0" else "1")) is None
        assert verify_signed_value("no-signature") is None
        assert verify_signed_value(None) is None

    def test_state_carries_user_id(self):
        assert decode_state(encode_state(42)) == 42

    def test_expired_state_is_rejected(self):
        payload = json.dumps({"user_id": 42, "issued_at": int(time.time()) - 3600})
        raw = base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")
        assert decode_state(sign_value(raw)) is None

    def test_tampered_state_is_rejected(self):
        state = encode_state(42)
        raw, sig = state.rsplit(".", 1)
        forged = base64.urlsafe_b64encode(json.dumps({"user_id": 1, "issued_at": int(time.time())}).encode())
        assert decode_state(f"{forged.decode().rstrip('=')}.{sig}") is None

    @pytest.mark.parametrize("value, expected", [
        (5, 5), ("17", 17), (" 3 ", 3), (0, None), (-2, None), ("abc", None),
        (True, None), ("١٢", None), (None, None), (2.0, None),
    ])
    def test_parse_positive_id(self, value, expected):
        assert parse_positive_id(value) == expected


class TestCryptoAndErrors:
    def test_encrypt_round_trip(self):
        token = crypto.encrypt("sk_test_secret")
        assert token != "sk_test_secret"
        assert crypto.decrypt(token) == "sk_test_secret"

    def test_undecryptable_value_is_none(self):
        assert crypto.decrypt("not-a-fernet-token") is None
        assert crypto.encrypt(None) is None

    def test_old_key_still_decrypts_after_rotation(self):
        old_key = Fernet.generate_key().decode()
        new_key = Fernet.generate_key().decode()
        token = crypto.CredentialCipher([old_key]).encrypt("rt_refresh")

        rotated_cipher = crypto.CredentialCipher([new_key, old_key])
        assert rotated_cipher.decrypt(token) == "rt_refresh"

        rotated = rotated_cipher.rotate(token)
        assert crypto.CredentialCipher([new_key]).decrypt(rotated) == "rt_refresh"
        assert crypto.CredentialCipher([new_key]).decrypt(token) is None

    def test_cipher_needs_a_key(self):
        with pytest.raises(ValueError):
            crypto.CredentialCipher([])

    def test_error_payloads(self):
        assert SlotFull().to_dict() == {"error": "slot_full", "detail": SlotFull.default_detail}
        err = NotConnected("Host has not connected a payment account", code="host_not_connected")
        assert err.status_code == 409
        assert err.to_dict() == {"error": "host_not_connected", "detail": "Host has not connected a payment account"}

    def test_default_handle(self):
        assert default_handle("  Ada Lovelace ") == "ada"


class _FakeConnection:
    async def __aenter__(self):
        return object()

    async def __aexit__(self, *exc):
        return False


class TestReconcileScript:
    async def test_confirms_each_pending_payment(self, monkeypatch):
        pending = [
            {"claim_id": 1, "provider_ref": "cs_1"},
            {"claim_id": 2, "provider_ref": "cs_2"},
            {"claim_id": 3, "provider_ref": "cs_3"},
            {"claim_id": 4, "provider_ref": "cs_4"},
        ]
        outcomes = {"cs_1": "inserted", "cs_2": "already_recorded", "cs_3": "not_paid"}
        seen = []

        async def fake_list(conn, provider, older_than):
            assert provider == "stripe"
            return pending

        async def fake_confirm(session_id):
            seen.append(session_id)
            if session_id == "cs_4":
                raise ClaimNotFound()
            return outcomes[session_id]

        monkeypatch.setattr(reconcile_script.db, "connection", lambda: _FakeConnection())
        monkeypatch.setattr(reconcile_script.db, "list_pending_payments", fake_list)
        monkeypatch.setattr(reconcile_script, "confirm_session", fake_confirm)

        summary = await reconcile_script.reconcile_pending_payments()

        assert seen == ["cs_1", "cs_2", "cs_3", "cs_4"]
        assert summary == {"checked": 4, "inserted": 1, "already_recorded": 1, "not_paid": 1, "failed": 1}


class TestWebhookSignature:
    def test_verified_event_is_a_plain_dict(self):
        event = {
            "id": "evt_core_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_core", "metadata": {"claim_id": "7"}}},
        }
        payload = json.dumps(event)

        verified = verify_webhook_signature(
            payload.encode(), generate_stripe_signature(payload, STRIPE_WEBHOOK_SECRET)
        )

        assert verified == event
        assert verified["data"]["object"]["metadata"].get("claim_id") == "7"

    def test_bad_signature_raises(self):
        payload = json.dumps({"id": "evt_core_2", "type": "ping"})

        with pytest.raises(stripe.SignatureVerificationError):
            verify_webhook_signature(payload.encode(), generate_stripe_signature(payload, "whsec_other"))
