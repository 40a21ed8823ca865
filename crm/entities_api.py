"""CRUD endpoints for CRM entities.

Each entity gets list / get / create / partial update / deactivate routes.
Deleting is a soft delete that sets ``inactive``.
"""
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, models, schemas
from .db import get_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["crm"])


def register_crud(
    path: str,
    model: type[models.Base],
    create_schema: type[BaseModel],
    update_schema: type[BaseModel],
    read_schema: type[BaseModel],
    *,
    links_funder: bool = False,
) -> None:
    """Attach the five CRUD routes for one model under ``path``."""
    name = model.__name__

    async def list_items(
        funder_id: int | None = None,
        search: str | None = None,
        include_inactive: bool = False,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
    ) -> schemas.Page[read_schema]:
        items, total = await crud.list_entities(
            session,
            model,
            funder_id=funder_id,
            search=search,
            include_inactive=include_inactive,
            page=page,
            limit=limit,
        )
        return schemas.Page[read_schema](
            items=[read_schema.model_validate(item) for item in items],
            total=total,
            page=page,
            limit=limit,
        )

    async def get_item(item_id: int, session: AsyncSession = Depends(get_session)) -> read_schema:
        return read_schema.model_validate(await crud.get_entity(session, model, item_id))

    async def create_item(
        payload: create_schema,
        session: AsyncSession = Depends(get_session),
    ) -> read_schema:
        values = payload.model_dump()
        funder_id = values.pop("funder_id", None) if links_funder else None
        entity = await crud.create_entity(session, model, values, funder_id=funder_id)
        return read_schema.model_validate(entity)

    async def update_item(
        item_id: int,
        payload: update_schema,
        session: AsyncSession = Depends(get_session),
    ) -> read_schema:
        entity = await crud.get_entity(session, model, item_id)
        values = payload.model_dump(exclude_unset=True)
        entity = await crud.update_entity(session, entity, values)
        return read_schema.model_validate(entity)

    async def deactivate_item(item_id: int, session: AsyncSession = Depends(get_session)) -> read_schema:
        entity = await crud.get_entity(session, model, item_id)
        return read_schema.model_validate(await crud.deactivate_entity(session, entity))

    routes: list[tuple[str, str, Callable, int, str]] = [
        ("GET", path, list_items, status.HTTP_200_OK, f"List {name} records"),
        ("POST", path, create_item, status.HTTP_201_CREATED, f"Create a {name}"),
        ("GET", f"{path}/{{item_id}}", get_item, status.HTTP_200_OK, f"Get a {name}"),
        ("PATCH", f"{path}/{{item_id}}", update_item, status.HTTP_200_OK, f"Update a {name}"),
        ("DELETE", f"{path}/{{item_id}}", deactivate_item, status.HTTP_200_OK, f"Deactivate a {name}"),
    ]
    for method, route_path, endpoint, status_code, summary in routes:
        router.add_api_route(
            route_path,
            endpoint,
            methods=[method],
            status_code=status_code,
            summary=summary,
            name=f"{endpoint.__name__}_{path.strip('/').replace('-', '_')}",
        )


register_crud("/funders", models.Funder, schemas.FunderCreate, schemas.FunderUpdate, schemas.FunderRead)
register_crud(
    "/merchants",
    models.Merchant,
    schemas.MerchantCreate,
    schemas.MerchantUpdate,
    schemas.MerchantRead,
    links_funder=True,
)
register_crud(
    "/isos",
    models.ISO,
    schemas.ISOCreate,
    schemas.ISOUpdate,
    schemas.ISORead,
    links_funder=True,
)
register_crud(
    "/applications",
    models.Application,
    schemas.ApplicationCreate,
    schemas.ApplicationUpdate,
    schemas.ApplicationRead,
)
register_crud(
    "/fundings",
    models.Funding,
    schemas.FundingCreate,
    schemas.FundingUpdate,
    schemas.FundingRead,
)
register_crud(
    "/stipulation-types",
    models.StipulationType,
    schemas.StipulationTypeCreate,
    schemas.StipulationTypeUpdate,
    schemas.StipulationTypeRead,
)
