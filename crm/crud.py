"""CRUD helpers for CRM entities.

Shared by the REST routers and the sync pipeline. Writes commit; callers get
back the refreshed ORM instance.
"""
from __future__ import annotations

import logging
from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=models.Base)

# Merchants and ISOs are shared across funders through link tables.
FUNDER_LINKS: dict[type, tuple[type, str]] = {
    models.Merchant: (models.MerchantFunder, "merchant_id"),
    models.ISO: (models.ISOFunder, "iso_id"),
}


class NotFoundError(Exception):
    """Raised when a requested entity does not exist."""
    pass


class CrudError(Exception):
    """Raised when a write breaks a business rule (duplicates, bad references)."""
    pass


async def get_entity(session: AsyncSession, model: type[M], entity_id: int) -> M:
    entity = await session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(f"{model.__name__} {entity_id} not found")
    return entity


async def ensure_exists(session: AsyncSession, model: type[M], entity_id: int | None) -> M | None:
    """Load a referenced entity, raising ``CrudError`` when it is missing."""
    if entity_id is None:
        return None
    entity = await session.get(model, entity_id)
    if entity is None:
        raise CrudError(f"{model.__name__} {entity_id} does not exist")
    return entity


async def list_entities(
    session: AsyncSession,
    model: type[M],
    *,
    funder_id: int | None = None,
    search: str | None = None,
    include_inactive: bool = False,
    page: int = 1,
    limit: int = 20,
    **filters: Any,
) -> tuple[list[M], int]:
    """Page through entities of one model.

    Returns:
        (items, total matching count)
    """
    conditions = []
    if funder_id is not None:
        if model in FUNDER_LINKS:
            link_model, key = FUNDER_LINKS[model]
            conditions.append(
                model.id.in_(select(getattr(link_model, key)).where(link_model.funder_id == funder_id))
            )
        elif hasattr(model, "funder_id"):
            conditions.append(model.funder_id == funder_id)
    if search:
        conditions.append(model.name.ilike(f"%{search}%"))
    if not include_inactive:
        conditions.append(model.inactive.is_(False))
    for column, value in filters.items():
        if value is not None:
            conditions.append(getattr(model, column) == value)

    total = await session.scalar(select(func.count()).select_from(model).where(*conditions))
    result = await session.execute(
        select(model)
        .where(*conditions)
        .order_by(model.created_at.desc(), model.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total or 0


async def link_funder(session: AsyncSession, entity: models.Base, funder_id: int) -> None:
    link_model, key = FUNDER_LINKS[type(entity)]
    exists = await session.scalar(
        select(link_model.id).where(
            getattr(link_model, key) == entity.id,
            link_model.funder_id == funder_id,
        )
    )
    if exists is None:
        session.add(link_model(funder_id=funder_id, **{key: entity.id}))


async def _check_references(session: AsyncSession, model: type, values: dict) -> None:
    references = {
        "funder_id": models.Funder,
        "merchant_id": models.Merchant,
        "iso_id": models.ISO,
        "application_id": models.Application,
    }
    for column, ref_model in references.items():
        if hasattr(model, column) and values.get(column) is not None:
            await ensure_exists(session, ref_model, values[column])


async def _check_unique_stipulation(
    session: AsyncSession,
    funder_id: int,
    name: str,
    exclude_id: int | None = None,
) -> None:
    query = select(models.StipulationType.id).where(
        models.StipulationType.funder_id == funder_id,
        func.lower(models.StipulationType.name) == name.lower(),
    )
    if exclude_id is not None:
        query = query.where(models.StipulationType.id != exclude_id)
    if await session.scalar(query) is not None:
        raise CrudError(f"Stipulation type '{name}' already exists for this funder")


async def create_entity(
    session: AsyncSession,
    model: type[M],
    values: dict,
    *,
    funder_id: int | None = None,
) -> M:
    """Insert an entity; merchants and ISOs are linked to ``funder_id`` when given."""
    await _check_references(session, model, values)
    if model is models.StipulationType:
        await _check_unique_stipulation(session, values["funder_id"], values["name"])
    if funder_id is not None and model in FUNDER_LINKS:
        await ensure_exists(session, models.Funder, funder_id)

    entity = model(**values)
    session.add(entity)
    await session.flush()
    if funder_id is not None and model in FUNDER_LINKS:
        await link_funder(session, entity, funder_id)
    await session.commit()
    await session.refresh(entity)
    logger.info(f"Created {model.__name__} {entity.id}")
    return entity


async def update_entity(session: AsyncSession, entity: M, values: dict) -> M:
    """Apply a partial update."""
    model = type(entity)
    await _check_references(session, model, values)

    if model is models.StipulationType and values.get("name"):
        await _check_unique_stipulation(session, entity.funder_id, values["name"], exclude_id=entity.id)
    if model is models.Funding:
        funded = values.get("funded_amount", entity.funded_amount)
        payback = values.get("payback_amount", entity.payback_amount)
        if payback <= funded:
            raise CrudError("Payback amount must be greater than funded amount")

    for key, value in values.items():
        setattr(entity, key, value)
    await session.commit()
    await session.refresh(entity)
    logger.info(f"Updated {model.__name__} {entity.id}: {sorted(values)}")
    return entity


async def deactivate_entity(session: AsyncSession, entity: M) -> M:
    entity.inactive = True
    await session.commit()
    await session.refresh(entity)
    logger.info(f"Deactivated {type(entity).__name__} {entity.id}")
    return entity
