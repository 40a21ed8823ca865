"""Sync staged OrgMeter records into CRM entities.

Staged merchants become ``Merchant`` rows, ISOs become ``ISO`` rows and
advances become ``Funding`` rows. A staged record is linked to its CRM
entity through ``sync_id``; that link is the only matching key.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Iterable

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.orgmeter_catalog import SYNCABLE_ENTITIES
from .. import models
from ..crud import NotFoundError, link_funder
from .ingest import ImportInterrupted, ProgressCallback
from .normalization import changed_fields, extract_id, transform_advance, transform_iso, transform_merchant

logger = logging.getLogger(__name__)

SYNC_TARGETS: dict[str, type[models.Base]] = {
    "merchant": models.Merchant,
    "iso": models.ISO,
    "advance": models.Funding,
}


class SyncError(Exception):
    """Raised when a sync run fails as a whole."""
    pass


class RecordSyncError(Exception):
    """Raised when one staged record cannot be synced."""
    pass


@dataclass
class SyncStats:
    """Counters for one sync run."""
    total_processed: int = 0
    total_synced: int = 0
    total_updated: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["error_count"] = len(self.errors)
        return data


class OrgMeterSyncer:
    """Reconciles one funder's staged OrgMeter records with CRM entities."""

    def __init__(self, session: AsyncSession, funder_id: int, user_id: str | None = None) -> None:
        self.session = session
        self.funder_id = funder_id
        self.user_id = user_id
        self.stats = SyncStats()

    def results(self, entity_type: str) -> dict:
        return {
            "success": True,
            "message": f"{entity_type.capitalize()} sync completed",
            "stats": self.stats.to_dict(),
        }

    async def sync_all(
        self,
        entity_type: str,
        *,
        dry_run: bool = False,
        update_existing: bool = True,
        only_selected: bool = True,
        progress_callback: ProgressCallback | None = None,
        resume_from_index: int = 0,
    ) -> dict:
        """Sync the funder's staged records of one entity type.

        Args:
            entity_type: "merchant", "iso" or "advance"
            dry_run: Count candidates only
            update_existing: Update CRM entities already linked to a record
            only_selected: Restrict to records flagged ``needs_sync``
            progress_callback: Awaited after every record
            resume_from_index: Skip candidates before this position

        Returns:
            Result dict with ``success``, ``message`` and ``stats``

        Raises:
            NotFoundError: Funder does not exist
            SyncError: Any failure outside a single record
        """
        if entity_type not in SYNCABLE_ENTITIES:
            raise SyncError(f"Entity type {entity_type} cannot be synced")

        if await self.session.get(models.Funder, self.funder_id) is None:
            raise NotFoundError(f"Funder {self.funder_id} not found")

        try:
            query = select(models.OrgMeterRecord.id).where(
                models.OrgMeterRecord.funder_id == self.funder_id,
                models.OrgMeterRecord.entity_type == entity_type,
            )
            if only_selected:
                query = query.where(models.OrgMeterRecord.needs_sync.is_(True))
            pks = list((await self.session.execute(
                query.order_by(models.OrgMeterRecord.updated_at, models.OrgMeterRecord.id)
            )).scalars().all())

            self.stats.total_processed = len(pks)
            if not pks:
                logger.info(f"No staged {entity_type} records to sync for funder {self.funder_id}")
                return self.results(entity_type)

            logger.info(f"Found {len(pks)} staged {entity_type} records to sync")
            if resume_from_index > 0:
                logger.info(f"Resuming sync from index {resume_from_index}/{len(pks)}")
            if dry_run:
                return self.results(entity_type)

            remaining = len(pks) - resume_from_index
            for i in range(resume_from_index, len(pks)):
                record = await self.session.get(models.OrgMeterRecord, pks[i], populate_existing=True)
                orgmeter_id, name = record.orgmeter_id, record.name

                try:
                    action, entity = await self.sync_record(record, update_existing=update_existing)
                    if action == "synced":
                        self.stats.total_synced += 1
                    elif action == "updated":
                        self.stats.total_updated += 1
                    else:
                        self.stats.total_skipped += 1
                    self.update_sync_metadata(record, entity.id if entity is not None else None)
                    await self.session.commit()
                except Exception as e:
                    await self.session.rollback()
                    logger.error(f"Failed to sync {entity_type} {orgmeter_id}: {e}")
                    self.stats.total_failed += 1
                    self.stats.errors.append({"orgmeter_id": orgmeter_id, "name": name, "error": str(e)})

                if progress_callback:
                    await progress_callback(i - resume_from_index + 1, remaining, name or orgmeter_id)

            logger.info(f"OrgMeter {entity_type} sync completed: {self.stats.to_dict()}")
            return self.results(entity_type)

        except ImportInterrupted:
            raise
        except Exception as e:
            logger.error(f"Error during {entity_type} sync: {e}", exc_info=True)
            raise SyncError(f"Sync failed: {e}") from e

    async def sync_record(
        self,
        record: models.OrgMeterRecord,
        *,
        update_existing: bool = True,
    ) -> tuple[str, models.Base | None]:
        """Create, update or skip the CRM entity for one staged record.

        Returns:
            (action, entity) where action is "synced", "updated" or "skipped"
        """
        target = SYNC_TARGETS[record.entity_type]
        existing = await self.session.get(target, record.sync_id) if record.sync_id else None

        if existing is not None:
            if not update_existing:
                logger.debug(f"Skipped existing {record.entity_type} {existing.id}")
                return "skipped", existing
            values = await self.transform(record)
            changes = changed_fields(existing, values, keep_empty=("inactive",))
            for key, value in changes.items():
                setattr(existing, key, value)
            await self._link_funder(record.entity_type, existing)
            await self.session.flush()
            if changes:
                logger.debug(f"Updated {record.entity_type} {existing.id}: {sorted(changes)}")
            return "updated", existing

        values = await self.transform(record)
        if record.entity_type == "advance":
            values["funder_id"] = self.funder_id
        entity = target(**values)
        self.session.add(entity)
        await self.session.flush()
        await self._link_funder(record.entity_type, entity)
        logger.debug(f"Created {record.entity_type} {entity.id} from OrgMeter {record.orgmeter_id}")
        return "synced", entity

    async def transform(self, record: models.OrgMeterRecord) -> dict:
        payload = record.payload or {}
        if record.entity_type == "merchant":
            return transform_merchant(payload)
        if record.entity_type == "iso":
            return transform_iso(payload)
        return await self._transform_advance(payload)

    async def _staged(self, entity_type: str, orgmeter_id: str | None) -> models.OrgMeterRecord | None:
        if orgmeter_id is None:
            return None
        result = await self.session.execute(
            select(models.OrgMeterRecord).where(
                models.OrgMeterRecord.funder_id == self.funder_id,
                models.OrgMeterRecord.entity_type == entity_type,
                models.OrgMeterRecord.orgmeter_id == orgmeter_id,
            )
        )
        return result.scalar_one_or_none()

    async def _transform_advance(self, payload: dict) -> dict:
        values = transform_advance(payload)

        merchant_ref = payload.get("merchantId") or extract_id(payload.get("merchant"))
        merchant = await self._staged("merchant", str(merchant_ref) if merchant_ref else None)
        if merchant is None or merchant.sync_id is None:
            raise RecordSyncError(f"Merchant {merchant_ref} of advance {payload.get('id')} has not been synced")
        values["merchant_id"] = merchant.sync_id

        iso = await self._staged("iso", extract_id(payload.get("iso")))
        values["iso_id"] = iso.sync_id if iso is not None else None

        lender = await self._staged("lender", extract_id(payload.get("lender")))
        values["lender_name"] = lender.name if lender is not None else None
        lender_type = (lender.payload or {}).get("type") if lender is not None else None
        values["internal"] = str(lender_type or "").lower() == "internal"
        return values

    async def _link_funder(self, entity_type: str, entity: models.Base) -> None:
        if entity_type in ("merchant", "iso"):
            await link_funder(self.session, entity, self.funder_id)
            await self.session.flush()

    def update_sync_metadata(self, record: models.OrgMeterRecord, synced_id: int | None = None) -> None:
        """Stamp the sync time and link; the ``needs_sync`` selection is left alone."""
        record.last_synced_at = datetime.utcnow()
        record.last_synced_by = self.user_id or "system"
        if synced_id is not None:
            record.sync_id = synced_id

    async def _set_selection(self, entity_type: str, ids: Iterable[str | int], values: dict) -> int:
        ids = [str(i) for i in ids]
        if not ids:
            return 0
        result = await self.session.execute(
            update(models.OrgMeterRecord)
            .where(
                models.OrgMeterRecord.funder_id == self.funder_id,
                models.OrgMeterRecord.entity_type == entity_type,
                models.OrgMeterRecord.orgmeter_id.in_(ids),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def mark_for_sync(self, entity_type: str, ids: Iterable[str | int]) -> int:
        """Select records for the next sync, dropping any previous link."""
        count = await self._set_selection(
            entity_type,
            ids,
            {"needs_sync": True, "last_synced_at": None, "sync_id": None},
        )
        logger.info(f"Marked {count} {entity_type} records for sync")
        return count

    async def ignore(self, entity_type: str, ids: Iterable[str | int]) -> int:
        count = await self._set_selection(entity_type, ids, {"needs_sync": False})
        logger.info(f"Ignored {count} {entity_type} records")
        return count

    async def get_sync_status(
        self,
        entity_type: str,
        *,
        page: int = 1,
        limit: int = 20,
        search: str | None = None,
        sync_status: str = "all",
    ) -> dict:
        """Paged staged records with their sync state, plus funder-wide counts."""
        if entity_type not in SYNCABLE_ENTITIES:
            raise SyncError(f"Entity type {entity_type} cannot be synced")

        record = models.OrgMeterRecord
        base = [record.funder_id == self.funder_id, record.entity_type == entity_type]
        conditions = list(base)

        if sync_status == "pending":
            conditions += [record.needs_sync.is_(True), record.sync_id.is_(None)]
        elif sync_status == "synced":
            conditions.append(record.sync_id.is_not(None))
        elif sync_status == "ignored":
            conditions.append(record.needs_sync.is_(False))
        elif sync_status != "all":
            raise SyncError(f"Invalid sync status filter: {sync_status}")

        if search:
            pattern = f"%{search}%"
            conditions.append(record.name.ilike(pattern) | record.orgmeter_id.ilike(pattern))

        total = await self.session.scalar(select(func.count()).select_from(record).where(and_(*conditions))) or 0
        rows = (await self.session.execute(
            select(record)
            .where(and_(*conditions))
            .order_by(record.updated_at.desc(), record.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )).scalars().all()

        counts = (await self.session.execute(
            select(
                func.count(),
                func.count().filter(record.needs_sync.is_(True)),
                func.count().filter(record.sync_id.is_not(None)),
                func.count().filter(record.needs_sync.is_(False)),
            ).where(and_(*base))
        )).one()
        total_all, selected, synced, ignored = counts

        return {
            "records": [
                {
                    "orgmeter_id": r.orgmeter_id,
                    "name": r.name,
                    "deleted": r.deleted,
                    "imported_at": r.imported_at,
                    **r.sync_metadata(),
                }
                for r in rows
            ],
            "pagination": {
                "current": page,
                "pages": (total + limit - 1) // limit,
                "total": total,
                "limit": limit,
            },
            "stats": {
                "total": total_all,
                "selected": selected,
                "pending": max(selected - synced, 0),
                "synced": synced,
                "ignored": ignored,
            },
        }
