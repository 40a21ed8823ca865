"""OrgMeter payload normalization.

Small pure helpers used by the importer (ids, display names) and the
transforms that turn staged OrgMeter payloads into CRM column values.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from config.orgmeter_catalog import (
    ADVANCE_STATUS_MAP,
    BUSINESS_TYPE_MAP,
    DEFAULT_FUNDING_STATUS,
    EntitySpec,
)

logger = logging.getLogger(__name__)


def record_id(data: dict) -> str | None:
    """OrgMeter id of a payload as a string (``id`` or ``_id``)."""
    value = data.get("id")
    if value is None or value == "":
        value = data.get("_id")
    if value is None or value == "":
        return None
    return str(value)


def extract_id(value: Any) -> str | None:
    """Id of a reference that may be a bare id or an embedded object."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, str)):
        return str(value) if str(value) else None
    if isinstance(value, dict):
        return record_id(value)
    return None


def record_name(spec: EntitySpec, data: dict) -> str | None:
    """First non-empty display-name field of a payload."""
    for field_name in spec.name_fields:
        value = data.get(field_name)
        if value:
            return str(value)[:255]
    return None


def progress_label(spec: EntitySpec, data: dict) -> str:
    """Label reported to progress callbacks, e.g. ``Advance 42`` or a business name."""
    rid = record_id(data) or "?"
    if spec.label_prefix:
        return f"{spec.label_prefix} {rid}"
    return record_name(spec, data) or rid


def pick_primary(items: list[dict] | None, value_key: str) -> str | None:
    """Value of the entry flagged primary, else of the first entry."""
    if not items:
        return None
    chosen = next((item for item in items if item.get("primary")), items[0])
    return chosen.get(value_key) or None


def to_cents(amount: Any) -> int:
    """Dollar amount (number or numeric string) to integer cents, half-up."""
    if amount is None or amount == "":
        return 0
    try:
        value = Decimal(str(amount)) * 100
    except InvalidOperation:
        logger.warning(f"Unparseable amount: {amount!r}")
        return 0
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_date(value: Any) -> date | None:
    """Date from an ISO-8601 date or datetime string."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    match = re.match(r"^(\d{4}-\d{2}-\d{2})", str(value))
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def map_business_type(business_type: str | None) -> str | None:
    return BUSINESS_TYPE_MAP.get(business_type or "")


def map_advance_status(status: Any) -> str:
    """CRM funding status for an OrgMeter advance status (name or object)."""
    if isinstance(status, dict):
        status = status.get("name")
    if not status:
        return DEFAULT_FUNDING_STATUS
    return ADVANCE_STATUS_MAP.get(str(status).strip().lower(), DEFAULT_FUNDING_STATUS)


def map_address(address: dict) -> dict:
    return {
        "type": address.get("type") or "physical",
        "address_1": address.get("address1"),
        "address_2": address.get("address2") or None,
        "city": address.get("city"),
        "state": address.get("state"),
        "zip": address.get("zip"),
        "primary": bool(address.get("primary", False)),
        "verified": bool(address.get("verified", False)),
    }


def transform_merchant(payload: dict) -> dict:
    """Merchant column values from an OrgMeter merchant payload."""
    return {
        "name": payload.get("businessName") or payload.get("businessDba") or f"Merchant {record_id(payload)}",
        "dba_name": payload.get("businessDba") or None,
        "email": pick_primary(payload.get("businessEmails"), "email"),
        "phone": pick_primary(payload.get("businessPhones"), "number"),
        "website": payload.get("businessWebsite") or None,
        "sic_code": payload.get("sicCode") or None,
        "naics_code": payload.get("naicsCode") or None,
        "ein": pick_primary(payload.get("federalIds"), "number"),
        "entity_type": map_business_type(payload.get("businessType")),
        "incorporation_date": parse_date(payload.get("businessStartDate")),
        "address_list": [map_address(a) for a in payload.get("businessAddresses") or []],
        "inactive": bool(payload.get("deleted", False)),
    }


def transform_iso(payload: dict) -> dict:
    """ISO column values from an OrgMeter ISO payload."""
    iso_type = payload.get("type")
    return {
        "name": payload.get("name") or f"ISO {record_id(payload)}",
        "email": payload.get("email") or None,
        "type": iso_type.lower() if iso_type else "internal",
        "ein": payload.get("federalId") or None,
        "inactive": bool(payload.get("deleted", False)),
    }


def transform_advance(payload: dict) -> dict:
    """Funding column values from an OrgMeter advance payload.

    Merchant, ISO and lender references are resolved by the sync pipeline.
    """
    funding = payload.get("funding") or {}
    advance_type = payload.get("type")
    return {
        "name": payload.get("name") or f"Advance {record_id(payload)}",
        "identifier": str(payload["idText"]) if payload.get("idText") else None,
        "type": advance_type.upper() if advance_type else "NEW",
        "funded_amount": to_cents(funding.get("principalAmount")),
        "payback_amount": to_cents(funding.get("paybackAmount")),
        "status": map_advance_status(payload.get("status")),
        "inactive": bool(payload.get("deleted", False)),
    }


def changed_fields(current: Any, incoming: dict, *, keep_empty: tuple[str, ...] = ()) -> dict:
    """Subset of ``incoming`` that differs from ``current``.

    Empty incoming values never overwrite, except for keys in ``keep_empty``.
    """
    changes = {}
    for key, value in incoming.items():
        if value in (None, "", []) and key not in keep_empty:
            continue
        if getattr(current, key) != value:
            changes[key] = value
    return changes
