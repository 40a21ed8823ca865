"""Pydantic request/response models for the CRM entities."""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, ClassVar, Generic, Literal, TypeVar

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from . import models

T = TypeVar("T")

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_url_adapter = TypeAdapter(AnyHttpUrl)


def _valid_email(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    value = value.strip()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email")
    return value


def _required_email(value: str | None) -> str | None:
    if value is None:
        return None
    email = _valid_email(value)
    if email is None:
        raise ValueError("Email is required")
    return email


def _valid_url(value: str | None) -> str | None:
    if value is None or value == "":
        return None
    value = value.strip()
    try:
        _url_adapter.validate_python(value)
    except ValidationError:
        raise ValueError("Invalid URL") from None
    return value


def _choice(value: str | None, choices: tuple[str, ...], label: str) -> str | None:
    if value is None:
        return None
    if value not in choices:
        raise ValueError(f"Invalid {label}: {value}. Allowed: {', '.join(choices)}")
    return value


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PartialUpdate(BaseModel):
    """Partial update body.

    Omitted fields are left alone. An explicit ``null`` is rejected for
    NOT NULL columns of ``orm_model`` and for the names in ``required``.
    """
    orm_model: ClassVar[type[models.Base]]
    required: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="before")
    @classmethod
    def reject_required_nulls(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        columns = cls.orm_model.__table__.columns
        for key, value in data.items():
            if value is not None:
                continue
            if key in cls.required or (key in columns and not columns[key].nullable):
                raise ValueError(f"{key} cannot be null")
        return data


class Page(BaseModel, Generic[T]):
    """Paged list response."""
    items: list[T]
    total: int
    page: int
    limit: int


class Address(BaseModel):
    """Postal address."""
    type: str = "physical"
    address_1: str | None = None
    address_2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    primary: bool = False
    verified: bool = False


# Funders

class FunderBase(BaseModel):
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    bgcolor: str | None = None
    import_source: Literal["OrgMeter", "LendSaaS", "OnyxIQ"] | None = None
    import_api_key: str | None = None
    import_client_name: str | None = None

    normalize_email = field_validator("email")(_valid_email)
    normalize_website = field_validator("website")(_valid_url)


class FunderCreate(FunderBase):
    """Create funder request."""
    name: str = Field(min_length=1, max_length=255)


class FunderUpdate(FunderBase, PartialUpdate):
    """Partial funder update."""
    orm_model = models.Funder
    name: str | None = Field(default=None, min_length=1, max_length=255)
    inactive: bool | None = None


class FunderRead(ORMModel):
    """Funder response (the import API key is never returned)."""
    id: int
    name: str
    email: str | None
    phone: str | None
    website: str | None
    bgcolor: str | None
    import_source: str | None
    import_client_name: str | None
    inactive: bool
    created_at: datetime
    updated_at: datetime


# Merchants

class MerchantBase(BaseModel):
    dba_name: str | None = None
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    sic_code: str | None = None
    naics_code: str | None = None
    ein: str | None = None
    entity_type: str | None = None
    incorporation_date: date | None = None

    normalize_email = field_validator("email")(_valid_email)
    normalize_website = field_validator("website")(_valid_url)

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, v: str | None) -> str | None:
        return _choice(v, models.ENTITY_TYPES, "entity type")


class MerchantCreate(MerchantBase):
    """Create merchant request; ``funder_id`` links the merchant to a funder."""
    name: str = Field(min_length=1, max_length=255)
    address_list: list[Address] = Field(default_factory=list)
    funder_id: int | None = None


class MerchantUpdate(MerchantBase, PartialUpdate):
    """Partial merchant update."""
    orm_model = models.Merchant
    name: str | None = Field(default=None, min_length=1, max_length=255)
    address_list: list[Address] | None = None
    inactive: bool | None = None


class MerchantRead(ORMModel):
    """Merchant response."""
    id: int
    name: str
    dba_name: str | None
    email: str | None
    phone: str | None
    website: str | None
    sic_code: str | None
    naics_code: str | None
    ein: str | None
    entity_type: str | None
    incorporation_date: date | None
    address_list: list[Address] | None
    inactive: bool
    created_at: datetime
    updated_at: datetime


# ISOs

class ISOCreate(BaseModel):
    """Create ISO request."""
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=1)
    phone: str = Field(min_length=1, max_length=50)
    website: str | None = None
    type: Literal["internal", "external"] = "internal"
    ein: str | None = None
    address_list: list[Address] = Field(default_factory=list)
    funder_id: int | None = None

    validate_email = field_validator("email")(_required_email)
    normalize_website = field_validator("website")(_valid_url)


class ISOUpdate(PartialUpdate):
    """Partial ISO update; email and phone stay required."""
    orm_model = models.ISO
    required = ("email", "phone")
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = None
    phone: str | None = Field(default=None, min_length=1, max_length=50)
    website: str | None = None
    type: Literal["internal", "external"] | None = None
    ein: str | None = None
    address_list: list[Address] | None = None
    inactive: bool | None = None

    validate_email = field_validator("email")(_required_email)
    normalize_website = field_validator("website")(_valid_url)


class ISORead(ORMModel):
    """ISO response."""
    id: int
    name: str
    email: str | None
    phone: str | None
    website: str | None
    type: str
    ein: str | None
    address_list: list[Address] | None
    inactive: bool
    created_at: datetime
    updated_at: datetime


# Applications

class ApplicationCreate(BaseModel):
    """Create application request. Amounts are in cents."""
    name: str = Field(min_length=1, max_length=255)
    identifier: str | None = None
    funder_id: int
    merchant_id: int
    iso_id: int | None = None
    type: Literal["NEW", "RENEWAL", "RESUBMISSION", "RENEWAL_RESUBMISSION"]
    priority: bool = False
    internal: bool = False
    request_amount: int = Field(gt=0)
    request_date: date | None = None
    status: str | None = None
    status_date: datetime | None = None
    declined_reason: str | None = None
    closed: bool = False


class ApplicationUpdate(PartialUpdate):
    """Partial application update."""
    orm_model = models.Application
    name: str | None = Field(default=None, min_length=1, max_length=255)
    identifier: str | None = None
    iso_id: int | None = None
    type: Literal["NEW", "RENEWAL", "RESUBMISSION", "RENEWAL_RESUBMISSION"] | None = None
    priority: bool | None = None
    internal: bool | None = None
    request_amount: int | None = Field(default=None, gt=0)
    request_date: date | None = None
    status: str | None = None
    status_date: datetime | None = None
    declined_reason: str | None = None
    closed: bool | None = None
    inactive: bool | None = None


class ApplicationRead(ORMModel):
    """Application response."""
    id: int
    name: str
    identifier: str | None
    funder_id: int
    merchant_id: int
    iso_id: int | None
    type: str
    priority: bool
    internal: bool
    request_amount: int
    request_date: date | None
    status: str | None
    status_date: datetime | None
    declined_reason: str | None
    closed: bool
    inactive: bool
    created_at: datetime
    updated_at: datetime


# Fundings

FundingType = Literal["NEW", "RENEWAL", "REFINANCE", "BUYOUT", "OTHER"]


class FundingCreate(BaseModel):
    """Create funding request. Amounts are in cents."""
    name: str = Field(min_length=1, max_length=255)
    identifier: str | None = None
    funder_id: int
    merchant_id: int
    iso_id: int | None = None
    application_id: int | None = None
    lender_name: str | None = None
    type: FundingType
    funded_amount: int = Field(gt=0)
    payback_amount: int = Field(gt=0)
    status: str | None = None
    internal: bool = False

    @model_validator(mode="after")
    def check_payback(self) -> FundingCreate:
        if self.payback_amount <= self.funded_amount:
            raise ValueError("Payback amount must be greater than funded amount")
        return self


class FundingUpdate(PartialUpdate):
    """Partial funding update."""
    orm_model = models.Funding
    name: str | None = Field(default=None, min_length=1, max_length=255)
    identifier: str | None = None
    iso_id: int | None = None
    application_id: int | None = None
    lender_name: str | None = None
    type: FundingType | None = None
    funded_amount: int | None = Field(default=None, gt=0)
    payback_amount: int | None = Field(default=None, gt=0)
    status: str | None = None
    internal: bool | None = None
    inactive: bool | None = None

    @model_validator(mode="after")
    def check_payback(self) -> FundingUpdate:
        if (
            self.funded_amount is not None
            and self.payback_amount is not None
            and self.payback_amount <= self.funded_amount
        ):
            raise ValueError("Payback amount must be greater than funded amount")
        return self


class FundingRead(ORMModel):
    """Funding response."""
    id: int
    name: str
    identifier: str | None
    funder_id: int
    merchant_id: int
    iso_id: int | None
    application_id: int | None
    lender_name: str | None
    type: str
    funded_amount: int
    payback_amount: int
    status: str | None
    internal: bool
    inactive: bool
    created_at: datetime
    updated_at: datetime


# Stipulation types

class StipulationTypeCreate(BaseModel):
    """Create stipulation type request."""
    funder_id: int
    name: str = Field(min_length=1, max_length=255)
    required: bool = False

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v


class StipulationTypeUpdate(PartialUpdate):
    """Partial stipulation type update."""
    orm_model = models.StipulationType
    name: str | None = Field(default=None, min_length=1, max_length=255)
    required: bool | None = None
    inactive: bool | None = None


class StipulationTypeRead(ORMModel):
    """Stipulation type response."""
    id: int
    funder_id: int
    name: str
    required: bool
    inactive: bool
    created_at: datetime
    updated_at: datetime
