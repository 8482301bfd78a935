import asyncio

import pytest

import src.services.claims as claims_service
from src.core import db
from src.core.errors import InvalidRequest, OfferNotFound, SlotFull, SlotNotFound, UserNotFound
from src.services.claims import create_claim

from helpers import create_offer, create_slot, create_user, fetch_all, fetch_value

pytestmark = pytest.mark.usefixtures("database")


async def test_create_claim_copies_deposit_and_notifies_creator():
    creator = await create_user("Ada Host")
    customer = await create_user("Bob Guest", role="customer")
    offer = await create_offer(creator["id"], price_cents=5000, deposit_cents=1000)

    claim, payment_mode = await create_claim(offer["id"], customer["id"], address="12 Elm St")
    async with db.connection() as conn:
        stored = await db.get_claim(conn, claim["id"])

    assert payment_mode == "deposit"
    assert claim["status"] == "pending"
    assert claim["deposit_cents"] == 1000
    assert claim["address"] == "12 Elm St"
    assert stored == claim

    events = await fetch_all("SELECT user_id, type, ref_id FROM events")
    assert events == [{"user_id": creator["id"], "type": "OFFER_CLAIMED", "ref_id": claim["id"]}]


async def test_concurrent_claims_on_last_unit_admit_exactly_one():
    creator = await create_user("Ada Host")
    user_a = await create_user("Amy Guest", role="customer")
    user_b = await create_user("Ben Guest", role="customer")
    offer = await create_offer(creator["id"], capacity=1)
    slot = await create_slot(offer["id"], remaining_capacity=1)

    results = await asyncio.gather(
        create_claim(offer["id"], user_a["id"], slot_id=slot["id"]),
        create_claim(offer["id"], user_b["id"], slot_id=slot["id"]),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, tuple)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], SlotFull)

    assert await fetch_value("SELECT remaining_capacity FROM offer_slots WHERE id = $1", slot["id"]) == 0
    assert await fetch_value("SELECT COUNT(*) FROM claims") == 1


async def test_claim_rolls_back_slot_decrement_when_insert_fails(monkeypatch):
    creator = await create_user("Ada Host")
    customer = await create_user("Bob Guest", role="customer")
    offer = await create_offer(creator["id"], capacity=2)
    slot = await create_slot(offer["id"], remaining_capacity=2)

    async def failing_insert(conn, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(claims_service, "insert_claim", failing_insert)

    with pytest.raises(RuntimeError):
        await create_claim(offer["id"], customer["id"], slot_id=slot["id"])

    assert await fetch_value("SELECT remaining_capacity FROM offer_slots WHERE id = $1", slot["id"]) == 2
    assert await fetch_value("SELECT COUNT(*) FROM claims") == 0
    assert await fetch_value("SELECT COUNT(*) FROM events") == 0


async def test_slot_of_another_offer_is_not_found():
    creator = await create_user("Ada Host")
    customer = await create_user("Bob Guest", role="customer")
    offer = await create_offer(creator["id"])
    other_offer = await create_offer(creator["id"])
    slot = await create_slot(other_offer["id"])

    with pytest.raises(SlotNotFound):
        await create_claim(offer["id"], customer["id"], slot_id=slot["id"])
    with pytest.raises(SlotNotFound):
        await create_claim(offer["id"], customer["id"], slot_id=9999)

    assert await fetch_value("SELECT remaining_capacity FROM offer_slots WHERE id = $1", slot["id"]) == 1


async def test_missing_offer_and_user_are_reported():
    creator = await create_user("Ada Host")
    offer = await create_offer(creator["id"])

    with pytest.raises(OfferNotFound):
        await create_claim(9999, creator["id"])
    with pytest.raises(UserNotFound):
        await create_claim(offer["id"], 9999)


async def test_non_positive_ids_are_rejected_before_storage():
    with pytest.raises(InvalidRequest):
        await create_claim(0, 1)
    with pytest.raises(InvalidRequest):
        await create_claim(1, 1, slot_id=-3)
    assert await fetch_value("SELECT COUNT(*) FROM claims") == 0


async def test_referral_code_converts_for_inviter():
    creator = await create_user("Ada Host")
    inviter = await create_user("Ivy Friend", role="customer")
    customer = await create_user("Bob Guest", role="customer")
    offer = await create_offer(creator["id"])

    from src.services.offers import create_referral
    code = await create_referral(inviter["id"], offer["id"])

    claim, _ = await create_claim(offer["id"], customer["id"], referral_code=code.lower())

    converted = await fetch_all(
        "SELECT user_id, ref_id FROM events WHERE type = 'REFERRAL_CONVERTED'"
    )
    assert converted == [{"user_id": inviter["id"], "ref_id": claim["id"]}]


async def test_unknown_referral_code_is_ignored():
    creator = await create_user("Ada Host")
    customer = await create_user("Bob Guest", role="customer")
    offer = await create_offer(creator["id"])

    claim, _ = await create_claim(offer["id"], customer["id"], referral_code="NOPE42")

    assert claim["status"] == "pending"
    types = [e["type"] for e in await fetch_all("SELECT type FROM events")]
    assert types == ["OFFER_CLAIMED"]
