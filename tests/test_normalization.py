from __future__ import annotations

from datetime import date
from types import SimpleNamespace

from config.orgmeter_catalog import ENTITY_SPECS
from crm.pipelines.normalization import (
    changed_fields,
    extract_id,
    map_advance_status,
    parse_date,
    pick_primary,
    progress_label,
    record_id,
    to_cents,
    transform_advance,
    transform_iso,
    transform_merchant,
)


def test_record_id_falls_back_to_underscore_id() -> None:
    assert record_id({"id": 12}) == "12"
    assert record_id({"_id": "abc"}) == "abc"
    assert record_id({"name": "no id"}) is None


def test_extract_id_accepts_bare_ids_and_objects() -> None:
    assert extract_id(5) == "5"
    assert extract_id({"id": 9, "name": "Broker"}) == "9"
    assert extract_id(None) is None
    assert extract_id(True) is None


def test_progress_label_uses_prefix_or_name() -> None:
    assert progress_label(ENTITY_SPECS["advance"], {"id": 42}) == "Advance 42"
    merchant = {"id": 3, "businessName": "", "businessDba": "Joe's Diner"}
    assert progress_label(ENTITY_SPECS["merchant"], merchant) == "Joe's Diner"
    assert progress_label(ENTITY_SPECS["iso"], {"id": 8}) == "8"


def test_pick_primary_prefers_flagged_entry() -> None:
    emails = [{"email": "a@x.com"}, {"email": "b@x.com", "primary": True}]
    assert pick_primary(emails, "email") == "b@x.com"
    assert pick_primary([{"email": "a@x.com"}], "email") == "a@x.com"
    assert pick_primary([], "email") is None


def test_to_cents_rounds_half_up() -> None:
    assert to_cents("1500.50") == 150050
    assert to_cents(10.005) == 1001
    assert to_cents(None) == 0
    assert to_cents("n/a") == 0


def test_parse_date_handles_datetimes_and_garbage() -> None:
    assert parse_date("2021-03-04T10:00:00Z") == date(2021, 3, 4)
    assert parse_date("2021-02-30") is None
    assert parse_date("yesterday") is None


def test_map_advance_status_defaults_to_funded() -> None:
    assert map_advance_status({"name": "Paid Off"}) == "CLOSED"
    assert map_advance_status("Slow Pay") == "SLOW_PAY"
    assert map_advance_status("something new") == "FUNDED"
    assert map_advance_status(None) == "FUNDED"


def test_transform_merchant_maps_contact_and_address() -> None:
    payload = {
        "id": 11,
        "businessName": "Joe's Diner LLC",
        "businessDba": "Joe's Diner",
        "businessEmails": [{"email": "joe@diner.com", "primary": True}],
        "businessPhones": [{"number": "555-0100"}],
        "federalIds": [{"number": "12-3456789"}],
        "businessType": "Limited Liability Company",
        "businessStartDate": "2015-06-01",
        "businessAddresses": [{"address1": "1 Main St", "city": "Austin", "state": "TX", "zip": "78701"}],
    }

    values = transform_merchant(payload)

    assert values["name"] == "Joe's Diner LLC"
    assert values["dba_name"] == "Joe's Diner"
    assert values["email"] == "joe@diner.com"
    assert values["phone"] == "555-0100"
    assert values["ein"] == "12-3456789"
    assert values["entity_type"] == "LLC"
    assert values["incorporation_date"] == date(2015, 6, 1)
    assert values["address_list"][0]["address_1"] == "1 Main St"
    assert values["address_list"][0]["type"] == "physical"
    assert values["inactive"] is False


def test_transform_iso_lowercases_type() -> None:
    values = transform_iso({"id": 4, "name": "Broker Co", "type": "EXTERNAL", "federalId": "99"})
    assert values == {
        "name": "Broker Co",
        "email": None,
        "type": "external",
        "ein": "99",
        "inactive": False,
    }


def test_transform_advance_converts_amounts_to_cents() -> None:
    values = transform_advance({
        "id": 7,
        "idText": "ADV-7",
        "type": "renewal",
        "funding": {"principalAmount": 10000, "paybackAmount": "13500.00"},
        "status": {"name": "Current"},
    })

    assert values["name"] == "Advance 7"
    assert values["identifier"] == "ADV-7"
    assert values["type"] == "RENEWAL"
    assert values["funded_amount"] == 1_000_000
    assert values["payback_amount"] == 1_350_000
    assert values["status"] == "FUNDED"


def test_changed_fields_ignores_empty_incoming_values() -> None:
    current = SimpleNamespace(name="Old", email="old@x.com", inactive=True)
    changes = changed_fields(
        current,
        {"name": "New", "email": None, "inactive": False},
        keep_empty=("inactive",),
    )
    assert changes == {"name": "New", "inactive": False}
