"""OrgMeter entity catalog.

Declares every OrgMeter entity the importer understands: which endpoint it
lives under, how to label it in progress updates, and which children are
embedded in its payload or fetched from sub-endpoints.
"""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class EmbeddedChild:
    """A list of child records carried inside the parent payload."""
    key: str
    entity_type: str


@dataclass(frozen=True)
class SubEntityChild:
    """A child resource fetched from ``/{entity}/{id}/{sub_entity}``."""
    sub_entity: str
    entity_type: str
    many: bool = True


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    label: str
    name_fields: tuple[str, ...] = ("name",)
    label_prefix: str | None = None
    tracks_sync: bool = True
    embedded: tuple[EmbeddedChild, ...] = field(default_factory=tuple)
    sub_entities: tuple[SubEntityChild, ...] = field(default_factory=tuple)


ENTITY_SPECS: dict[str, EntitySpec] = {
    "user": EntitySpec(
        entity_type="user",
        label="Users",
        name_fields=("name", "email"),
    ),
    "lender": EntitySpec(
        entity_type="lender",
        label="Lenders",
        embedded=(EmbeddedChild(key="underwriterUsers", entity_type="underwriter_user"),),
    ),
    "iso": EntitySpec(
        entity_type="iso",
        label="ISOs",
        embedded=(EmbeddedChild(key="salesRepUsers", entity_type="sales_rep_user"),),
    ),
    "merchant": EntitySpec(
        entity_type="merchant",
        label="Merchants",
        name_fields=("businessName", "businessDba"),
    ),
    "syndicator": EntitySpec(
        entity_type="syndicator",
        label="Syndicators",
    ),
    "advance": EntitySpec(
        entity_type="advance",
        label="Advances",
        label_prefix="Advance",
        sub_entities=(
            SubEntityChild(sub_entity="payment", entity_type="payment"),
            SubEntityChild(sub_entity="underwriting", entity_type="underwriting", many=False),
        ),
    ),
    # Child records, never imported on their own
    "sales_rep_user": EntitySpec(
        entity_type="sales_rep_user",
        label="Sales Rep Users",
        name_fields=("name", "email"),
    ),
    "underwriter_user": EntitySpec(
        entity_type="underwriter_user",
        label="Underwriter Users",
        name_fields=("name", "email"),
    ),
    "payment": EntitySpec(
        entity_type="payment",
        label="Payments",
        name_fields=(),
        tracks_sync=False,
    ),
    "underwriting": EntitySpec(
        entity_type="underwriting",
        label="Underwriting",
        name_fields=(),
        tracks_sync=False,
    ),
}

# Dependency order: later entities reference earlier ones.
IMPORT_ORDER: tuple[str, ...] = ("user", "lender", "iso", "merchant", "syndicator", "advance")

IMPORTABLE_ENTITIES = frozenset(IMPORT_ORDER)

SYNCABLE_ENTITIES: tuple[str, ...] = ("iso", "merchant", "advance")

IMPORT_STEPS: list[dict] = [
    {"step": i + 1, "entity_type": entity, "label": ENTITY_SPECS[entity].label}
    for i, entity in enumerate(IMPORT_ORDER)
]

BUSINESS_TYPE_MAP: dict[str, str] = {
    "Corporation": "C_CORP",
    "Limited Liability Company": "LLC",
    "Sole Proprietor": "SOLE_PROP",
}

ADVANCE_STATUS_MAP: dict[str, str] = {
    "submitted": "SUBMITTED",
    "prefunded": "PREFUNDED",
    "funded": "FUNDED",
    "current": "FUNDED",
    "performing": "FUNDED",
    "slow pay": "SLOW_PAY",
    "defaulted": "DEFAULTED",
    "default": "DEFAULTED",
    "collections": "DEFAULTED",
    "paid off": "CLOSED",
    "closed": "CLOSED",
}

DEFAULT_FUNDING_STATUS = "FUNDED"
