import json

import pytest

from casamatch.models import ContactStatus
from casamatch.service_layer.contact_ledger import ContactLedger


@pytest.fixture
def ledger(async_session_maker, clock):
    return ContactLedger(async_session_maker, min_days=30, clock=clock)


@pytest.mark.asyncio
async def test_recontact_blocked_before_min_days_and_allowed_after(ledger, clock):
    await ledger.record_contact("+39 333 123 4567", property_id=1, campaign_id="spring")

    clock.advance(days=10)
    d = await ledger.can_recontact("333-123-4567")
    assert d.allowed is False
    assert d.reason == "contacted_recently"
    assert d.days_since_last_contact == 10

    clock.advance(days=21)
    d = await ledger.can_recontact("0039 3331234567")
    assert d.allowed is True
    assert d.reason == "cooldown_elapsed"
    assert d.days_since_last_contact == 31


@pytest.mark.asyncio
async def test_partial_days_do_not_count(ledger, clock):
    await ledger.record_contact("3331234567")
    clock.advance(days=29, hours=23)
    assert (await ledger.can_recontact("3331234567")).allowed is False
    clock.advance(hours=1)
    assert (await ledger.can_recontact("3331234567")).allowed is True


@pytest.mark.asyncio
async def test_never_contacted_is_allowed_and_invalid_is_not(ledger):
    d = await ledger.can_recontact("+39 347 000 1111")
    assert d.allowed is True
    assert d.reason == "never_contacted"

    bad = await ledger.can_recontact("12-34")
    assert bad.allowed is False
    assert bad.reason == "invalid_phone"

    with pytest.raises(ValueError):
        await ledger.record_contact("n/a")


@pytest.mark.asyncio
async def test_do_not_contact_is_terminal(ledger, clock):
    await ledger.record_contact("3331234567", property_id=7)
    row = await ledger.mark_do_not_contact("+393331234567", notes="asked to stop")
    assert row.status == ContactStatus.do_not_contact

    clock.advance(days=365)
    d = await ledger.can_recontact("3331234567")
    assert d.allowed is False
    assert d.reason == "do_not_contact"

    await ledger.mark_responded("3331234567", response="ok call me")
    await ledger.record_contact("3331234567", property_id=8)
    await ledger.mark_converted("3331234567")

    row = await ledger.get("3331234567")
    assert row.status == ContactStatus.do_not_contact
    assert row.notes == "asked to stop"


@pytest.mark.asyncio
async def test_mark_do_not_contact_creates_missing_entry(ledger):
    row = await ledger.mark_do_not_contact("02 1234 5678")
    assert row.phone == "390212345678"
    assert row.contact_count == 0
    assert (await ledger.can_recontact("+39 02 12345678")).allowed is False


@pytest.mark.asyncio
async def test_record_contact_keeps_ids_unique(ledger):
    await ledger.record_contact("3331234567", property_id=1, campaign_id="c1")
    await ledger.record_contact("3331234567", property_id=1, campaign_id="c1")
    row = await ledger.record_contact("3331234567", property_id=2, campaign_id="c2")

    meta = json.loads(row.metadata_json)
    assert row.contact_count == 3
    assert meta["property_ids"] == [1, 2]
    assert meta["campaign_ids"] == ["c1", "c2"]
    assert row.last_campaign_id == "c2"


@pytest.mark.asyncio
async def test_responded_then_converted(ledger):
    await ledger.record_contact("3331234567")
    row = await ledger.mark_responded("3331234567", response="interessato")
    assert row.status == ContactStatus.responded
    assert json.loads(row.metadata_json)["last_response"] == "interessato"

    row = await ledger.mark_converted("3331234567")
    assert row.status == ContactStatus.converted


@pytest.mark.asyncio
async def test_filter_contactable(ledger, clock):
    await ledger.record_contact("3330000001")
    await ledger.mark_do_not_contact("3330000002")
    await ledger.record_contact("3330000003")
    clock.advance(days=40)
    await ledger.record_contact("3330000003")

    items = [
        {"id": 1, "phone": "3330000001"},  # cooled down
        {"id": 2, "phone": "3330000002"},  # dnc
        {"id": 3, "phone": "3330000003"},  # just contacted
        {"id": 4, "phone": "3330000004"},  # never
        {"id": 5, "phone": None},
    ]
    kept = await ledger.filter_contactable(items, lambda it: it["phone"])
    assert [it["id"] for it in kept] == [1, 4]
