import json
import time

import pytest

import src.routers.billing as billing_router
import src.routers.claims as claims_router
import src.routers.feed as feed_router
import src.routers.offers as offers_router
import src.routers.users as users_router
from src.core.config import STRIPE_WEBHOOK_SECRET
from src.core.errors import (
    Forbidden,
    NotConnected,
    PaymentPending,
    SlotFull,
    UserNotFound,
)

from helpers import generate_stripe_signature


def fake_async(result=None, exc=None, calls=None):
    async def _fake(*args, **kwargs):
        if calls is not None:
            calls.append((args, kwargs))
        if exc is not None:
            raise exc
        return result
    return _fake


class TestClaimsApi:
    def test_create_claim(self, client, monkeypatch):
        calls = []
        claim = {"id": 1, "offer_id": 3, "user_id": 5, "status": "pending"}
        monkeypatch.setattr(claims_router, "create_claim", fake_async((claim, "deposit"), calls=calls))

        response = client.post("/api/claims", json={"offer_id": 3, "user_id": 5, "slot_id": 8})

        assert response.status_code == 201
        assert response.json() == {"claim": claim, "payment_mode": "deposit"}
        assert calls[0][1] == {
            "offer_id": 3, "user_id": 5, "slot_id": 8, "address": None, "referral_code": None,
        }

    @pytest.mark.parametrize("body", [
        {"offer_id": "3", "user_id": 5},
        {"offer_id": 0, "user_id": 5},
        {"offer_id": 3},
        {"offer_id": 3, "user_id": 5, "slot_id": True},
    ])
    def test_invalid_claim_payload(self, client, monkeypatch, body):
        calls = []
        monkeypatch.setattr(claims_router, "create_claim", fake_async(calls=calls))

        response = client.post("/api/claims", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert calls == []

    def test_non_json_body(self, client):
        response = client.post("/api/claims", content=b"not json", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_slot_full_is_conflict(self, client, monkeypatch):
        monkeypatch.setattr(claims_router, "create_claim", fake_async(exc=SlotFull()))

        response = client.post("/api/claims", json={"offer_id": 3, "user_id": 5, "slot_id": 8})

        assert response.status_code == 409
        assert response.json()["error"] == "slot_full"

    def test_redeem_requires_acting_user(self, client):
        response = client.post("/api/sessions/4/redeem")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_redeem_passes_acting_user(self, client, monkeypatch):
        calls = []
        result = {"session": {"id": 4, "amount_cents": 0, "status": "redeemed", "redeemed_at": None},
                  "last_paid_amount_cents": None}
        monkeypatch.setattr(claims_router, "get_acting_user", fake_async({"id": 9}))
        monkeypatch.setattr(claims_router, "redeem", fake_async(result, calls=calls))

        response = client.post("/api/sessions/4/redeem", headers={"x-user-id": "9"})

        assert response.status_code == 200
        assert response.json() == result
        assert calls[0][0] == (4, 9)

    @pytest.mark.parametrize("exc, status, code", [
        (Forbidden(), 403, "forbidden"),
        (PaymentPending(), 409, "payment_pending"),
    ])
    def test_redeem_errors(self, client, monkeypatch, exc, status, code):
        monkeypatch.setattr(claims_router, "get_acting_user", fake_async({"id": 9}))
        monkeypatch.setattr(claims_router, "redeem", fake_async(exc=exc))

        response = client.post("/api/sessions/4/redeem", headers={"x-user-id": "9"})

        assert response.status_code == status
        assert response.json()["error"] == code

    def test_redeem_rejects_non_numeric_id(self, client):
        response = client.post("/api/sessions/abc/redeem", headers={"x-user-id": "9"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_session_init_normalizes_handle(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(
            claims_router, "init_session",
            fake_async({"session_id": 1, "amount_cents": 0, "status": "zero"}, calls=calls),
        )

        response = client.post("/api/sessions/init", json={"host_handle": "@Ada", "amount_cents": 0})

        assert response.status_code == 201
        assert calls[0][0] == ("ada", 0)

    def test_session_init_host_not_connected(self, client, monkeypatch):
        monkeypatch.setattr(
            claims_router, "init_session",
            fake_async(exc=NotConnected("Host has not connected a payment account", code="host_not_connected")),
        )

        response = client.post("/api/sessions/init", json={"host_handle": "ada", "amount_cents": 2500})

        assert response.status_code == 409
        assert response.json() == {
            "error": "host_not_connected",
            "detail": "Host has not connected a payment account",
        }

    def test_redemption_insert_or_return(self, client, monkeypatch):
        redemption = {"id": 2, "claim_id": 4}
        monkeypatch.setattr(claims_router, "create_redemption", fake_async(redemption))

        response = client.post("/api/redemptions", json={"claim_id": 4})

        assert response.status_code == 201
        assert response.json() == {"redemption": redemption}


class TestBillingApi:
    def _event(self):
        return {
            "id": "evt_api_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1", "metadata": {"claim_id": "4"}}},
        }

    def test_webhook_with_valid_signature(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(billing_router, "process_webhook_event", fake_async({"received": True}, calls=calls))
        payload = json.dumps(self._event())

        response = client.post(
            "/api/stripe/webhook",
            content=payload,
            headers={"stripe-signature": generate_stripe_signature(payload, STRIPE_WEBHOOK_SECRET)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert calls[0][0][0]["id"] == "evt_api_1"

    def test_webhook_missing_signature(self, client):
        response = client.post("/api/stripe/webhook", content=json.dumps(self._event()))

        assert response.status_code == 400
        assert response.json()["error"] == "missing_signature"

    def test_webhook_wrong_secret(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(billing_router, "process_webhook_event", fake_async(calls=calls))
        payload = json.dumps(self._event())

        response = client.post(
            "/api/stripe/webhook",
            content=payload,
            headers={"stripe-signature": generate_stripe_signature(payload, "whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"
        assert calls == []

    def test_webhook_signature_is_checked_against_raw_bytes(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(billing_router, "process_webhook_event", fake_async(calls=calls))
        payload = json.dumps(self._event())
        signature = generate_stripe_signature(payload, STRIPE_WEBHOOK_SECRET)

        # 同じ内容でも再シリアライズしたボディは検証に通らない
        reserialized = json.dumps(self._event(), separators=(",", ":"))
        response = client.post("/api/stripe/webhook", content=reserialized, headers={"stripe-signature": signature})

        assert response.status_code == 400
        assert calls == []

    def test_webhook_stale_timestamp(self, client):
        payload = json.dumps(self._event())
        signature = generate_stripe_signature(payload, STRIPE_WEBHOOK_SECRET, timestamp=int(time.time()) - 3600)

        response = client.post("/api/stripe/webhook", content=payload, headers={"stripe-signature": signature})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

    def test_webhook_processing_failure(self, client, monkeypatch):
        monkeypatch.setattr(billing_router, "process_webhook_event", fake_async(exc=RuntimeError("boom")))
        payload = json.dumps(self._event())

        response = client.post(
            "/api/stripe/webhook",
            content=payload,
            headers={"stripe-signature": generate_stripe_signature(payload, STRIPE_WEBHOOK_SECRET)},
        )

        assert response.status_code == 500
        assert response.json()["error"] == "webhook_processing_error"

    def test_confirm_checkout(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(billing_router, "confirm_session", fake_async("already_recorded", calls=calls))

        response = client.get("/api/checkout/confirm", params={"session_id": "cs_test_1"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "already_recorded"}
        assert calls[0][0] == ("cs_test_1",)

    def test_checkout_session(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(
            billing_router, "create_checkout_for_claim",
            fake_async({"url": "https://checkout.stripe.test/cs"}, calls=calls),
        )

        response = client.post("/api/checkout/session", json={"claim_id": 4, "return_path": "/offers/2"})

        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.test/cs"}
        assert calls[0][0] == (4, "/offers/2")

    def test_checkout_for_unconnected_creator(self, client, monkeypatch):
        monkeypatch.setattr(billing_router, "create_checkout_for_claim", fake_async(exc=NotConnected()))

        response = client.post("/api/checkout/session", json={"claim_id": 4})

        assert response.status_code == 409
        assert response.json()["error"] == "creator_not_connected"

    def test_connect_link_carries_signed_state(self, client):
        response = client.post("/api/stripe/connect_link", json={"user_id": 7})

        assert response.status_code == 200
        url = response.json()["url"]
        assert url.startswith("https://connect.stripe.com/oauth/authorize?")
        assert "client_id=ca_test_client" in url
        assert "state=" in url

    def test_connect_callback_redirects(self, client, monkeypatch):
        monkeypatch.setattr(
            billing_router, "complete_connect",
            fake_async("http://localhost:5173/?connected=1&user_id=7"),
        )

        response = client.get(
            "/api/stripe/callback", params={"code": "ac_1", "state": "s"}, follow_redirects=False
        )

        assert response.status_code == 307
        assert response.headers["location"] == "http://localhost:5173/?connected=1&user_id=7"


class TestOtherApi:
    def test_create_offer(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(offers_router, "create_offer", fake_async({"id": 3, "title": "Tour"}, calls=calls))

        response = client.post("/api/offers", json={
            "creator_id": 1, "title": "Tour", "price_cents": 0, "capacity": 5, "location_text": "Harbor",
        })

        assert response.status_code == 201
        assert response.json() == {"offer": {"id": 3, "title": "Tour"}}
        assert calls[0][0][0].resolved_payment_mode == "deposit"

    def test_create_offer_rejects_negative_price(self, client):
        response = client.post("/api/offers", json={
            "creator_id": 1, "title": "Tour", "price_cents": -1, "capacity": 5, "location_text": "Harbor",
        })

        assert response.status_code == 400

    def test_offer_not_found_path_id(self, client):
        response = client.get("/api/offers/0")

        assert response.status_code == 400

    def test_post_event_rejects_unknown_type(self, client):
        response = client.post("/api/events", json={"user_id": 1, "type": "NOT_A_TYPE"})

        assert response.status_code == 400

    def test_post_event(self, client, monkeypatch):
        calls = []
        monkeypatch.setattr(feed_router, "record_event", fake_async({}, calls=calls))

        response = client.post("/api/events", json={"user_id": 1, "type": "OFFER_VIEWED", "ref_id": 3})

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert calls[0][0] == (1, "OFFER_VIEWED", 3, None)

    def test_public_profile_unknown_handle(self, client, monkeypatch):
        monkeypatch.setattr(users_router, "get_public_profile", fake_async(exc=UserNotFound()))

        response = client.get("/api/u/nobody")

        assert response.status_code == 404
        assert response.json()["error"] == "user_not_found"

    def test_security_headers(self, client, monkeypatch):
        monkeypatch.setattr(feed_router, "get_kfactor", fake_async({"invites": 0, "conversions": 0, "k_factor": 0}))

        response = client.get("/api/metrics/kfactor/1")

        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"
        assert len(response.headers["X-Request-ID"]) == 16

    def test_request_id_is_echoed(self, client, monkeypatch):
        monkeypatch.setattr(feed_router, "get_kfactor", fake_async({"invites": 0, "conversions": 0, "k_factor": 0}))

        response = client.get("/api/metrics/kfactor/1", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"
