"""OrgMeter ingestion pipeline.

One importer handles every entity in the catalog:
- Page through the OrgMeter listing endpoint for the entity.
- Fetch each live record by id and create or update its staged row.
- Import embedded children (sales-rep / underwriter users) and sub-entity
  children (advance payments and underwriting) with bulk upserts.

All staged rows are scoped by funder.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.orgmeter_catalog import ENTITY_SPECS, IMPORTABLE_ENTITIES, EntitySpec
from .. import models
from ..config import settings
from ..orgmeter_client import OrgMeterClient
from .normalization import progress_label, record_id, record_name

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "orgmeter_api"
IMPORTED_BY = "api_import_service"

ProgressCallback = Callable[[int, int, str], Awaitable[None]]


class ImportFailedError(Exception):
    """Raised when an import run fails as a whole."""
    pass


class ImportInterrupted(Exception):
    """Raised from a progress callback to stop a running import."""
    pass


class ImportCancelled(ImportInterrupted):
    """The import was cancelled by a user."""
    pass


class ImportPaused(ImportInterrupted):
    """The import was paused by a user."""
    pass


@dataclass
class ImportStats:
    """Counters for one import run."""
    total_fetched: int = 0
    total_saved: int = 0
    total_updated: int = 0
    total_skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    children: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def total_processed(self) -> int:
        return self.total_saved + self.total_updated + self.total_skipped

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def count_child(self, entity_type: str, inserted: int, updated: int) -> None:
        bucket = self.children.setdefault(entity_type, {"inserted": 0, "updated": 0})
        bucket["inserted"] += inserted
        bucket["updated"] += updated

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_processed"] = self.total_processed
        data["error_count"] = self.error_count
        return data


def get_spec(entity_type: str) -> EntitySpec:
    try:
        return ENTITY_SPECS[entity_type]
    except KeyError:
        raise ImportFailedError(f"Unknown OrgMeter entity type: {entity_type}") from None


class OrgMeterImporter:
    """Imports OrgMeter records for one funder into ``orgmeter_records``."""

    def __init__(
        self,
        session: AsyncSession,
        client: OrgMeterClient,
        funder_id: int,
        *,
        bulk_batch_size: int | None = None,
    ) -> None:
        self.session = session
        self.client = client
        self.funder_id = funder_id
        self.bulk_batch_size = bulk_batch_size or settings.imports.bulk_batch_size
        self.stats = ImportStats()

    def reset_stats(self) -> None:
        self.stats = ImportStats()

    def results(self, message: str | None = None) -> dict:
        return {
            "success": True,
            "message": message or "Import completed successfully",
            "stats": self.stats.to_dict(),
        }

    async def import_all(
        self,
        entity_type: str,
        *,
        update_existing: bool = True,
        dry_run: bool = False,
        progress_callback: ProgressCallback | None = None,
        resume_from_index: int = 0,
    ) -> dict:
        """Import every record of ``entity_type`` from OrgMeter.

        Args:
            entity_type: One of the importable entity types
            update_existing: Overwrite staged rows that already exist
            dry_run: Only fetch and count; write nothing
            progress_callback: Awaited after every record as (done, total, label)
            resume_from_index: Skip records before this position

        Returns:
            Result dict with ``success``, ``message`` and ``stats``

        Raises:
            ImportFailedError: If the connection test or listing fails
            ImportInterrupted: If the progress callback stops the run
        """
        if entity_type not in IMPORTABLE_ENTITIES:
            raise ImportFailedError(f"Entity type {entity_type} cannot be imported directly")
        spec = get_spec(entity_type)

        try:
            logger.info(f"Starting OrgMeter {entity_type} import for funder {self.funder_id}")

            if not await self.client.test_connection():
                raise ImportFailedError("Failed to connect to OrgMeter API")

            listed = await self.client.fetch_all_entities(entity_type)
            self.stats.total_fetched = len(listed)

            if not listed:
                logger.info(f"No {entity_type} records returned by OrgMeter")
                return self.results(f"No {spec.label.lower()} found")

            if dry_run:
                logger.info(f"Dry run: {len(listed)} {entity_type} records would be imported")
                return self.results("Dry run completed")

            await self._import_listed(
                spec,
                listed,
                update_existing=update_existing,
                progress_callback=progress_callback,
                start=resume_from_index,
            )

            logger.info(f"OrgMeter {entity_type} import completed: {self.stats.to_dict()}")
            return self.results()

        except (ImportFailedError, ImportInterrupted):
            raise
        except Exception as e:
            logger.error(f"Error during OrgMeter {entity_type} import: {e}", exc_info=True)
            raise ImportFailedError(f"Import failed: {e}") from e

    async def import_by_ids(
        self,
        entity_type: str,
        ids: Iterable[str | int],
        *,
        update_existing: bool = True,
        dry_run: bool = False,
    ) -> dict:
        """Import specific records by OrgMeter id."""
        spec = get_spec(entity_type)
        listed = [{"id": entity_id} for entity_id in ids]
        self.stats.total_fetched = len(listed)

        if dry_run or not listed:
            return self.results("Dry run completed" if dry_run else f"No {spec.label.lower()} requested")

        try:
            await self._import_listed(spec, listed, update_existing=update_existing)
        except ImportInterrupted:
            raise
        except Exception as e:
            logger.error(f"Error importing {entity_type} by ids: {e}", exc_info=True)
            raise ImportFailedError(f"Import failed: {e}") from e
        return self.results()

    async def _import_listed(
        self,
        spec: EntitySpec,
        listed: list[dict],
        *,
        update_existing: bool,
        progress_callback: ProgressCallback | None = None,
        start: int = 0,
    ) -> None:
        total = len(listed)
        if start:
            logger.info(f"Resuming {spec.entity_type} import at {start}/{total}")

        for i in range(start, total):
            item = listed[i]
            rid = record_id(item)

            if item.get("deleted"):
                # deleted records are not served by /{entity}/{id}
                self.stats.total_skipped += 1
                logger.debug(f"Skipped deleted {spec.entity_type} {rid}")
            else:
                try:
                    data = await self.client.fetch_entity_by_id(spec.entity_type, rid)
                    outcome = await self._stage_record(spec, data, update_existing=update_existing)
                    await self.session.commit()
                except Exception as e:
                    await self.session.rollback()
                    logger.error(f"Error processing {spec.entity_type} {rid}: {e}")
                    self.stats.errors.append({f"{spec.entity_type}_id": rid, "error": str(e)})
                else:
                    self._count(spec.entity_type, outcome)
                    # each child import commits or rolls back on its own
                    await self._import_children(spec, rid, data, update_existing=update_existing)

            if progress_callback:
                await progress_callback(i + 1, total, progress_label(spec, item))

            await self.client.delay(self.client.request_delay)

    async def _find(self, entity_type: str, orgmeter_id: str) -> models.OrgMeterRecord | None:
        result = await self.session.execute(
            select(models.OrgMeterRecord).where(
                models.OrgMeterRecord.funder_id == self.funder_id,
                models.OrgMeterRecord.entity_type == entity_type,
                models.OrgMeterRecord.orgmeter_id == orgmeter_id,
            )
        )
        return result.scalar_one_or_none()

    def _new_record(
        self,
        spec: EntitySpec,
        orgmeter_id: str,
        data: dict,
        parent_id: str | None = None,
        now: datetime | None = None,
    ) -> models.OrgMeterRecord:
        deleted = bool(data.get("deleted", False))
        return models.OrgMeterRecord(
            funder_id=self.funder_id,
            entity_type=spec.entity_type,
            orgmeter_id=orgmeter_id,
            parent_orgmeter_id=parent_id,
            name=record_name(spec, data),
            deleted=deleted,
            payload=data,
            source=IMPORT_SOURCE,
            imported_at=now or datetime.utcnow(),
            imported_by=IMPORTED_BY,
            needs_sync=spec.tracks_sync and not deleted,
            last_synced_at=None,
            last_synced_by=None,
            sync_id=None,
        )

    def _apply_update(
        self,
        spec: EntitySpec,
        record: models.OrgMeterRecord,
        data: dict,
        parent_id: str | None = None,
        now: datetime | None = None,
    ) -> None:
        # import and sync metadata are preserved
        record.payload = data
        record.name = record_name(spec, data)
        record.deleted = bool(data.get("deleted", False))
        if parent_id is not None:
            record.parent_orgmeter_id = parent_id
        record.last_updated_at = now or datetime.utcnow()
        record.last_updated_by = IMPORTED_BY

    async def process_record(
        self,
        entity_type: str,
        data: dict,
        *,
        update_existing: bool = True,
        parent_id: str | None = None,
        orgmeter_id: str | None = None,
    ) -> str:
        """Create, update or skip one staged record.

        Returns:
            "created", "updated" or "skipped"
        """
        outcome = await self._stage_record(
            get_spec(entity_type),
            data,
            update_existing=update_existing,
            parent_id=parent_id,
            orgmeter_id=orgmeter_id,
        )
        self._count(entity_type, outcome)
        return outcome

    async def _stage_record(
        self,
        spec: EntitySpec,
        data: dict,
        *,
        update_existing: bool,
        parent_id: str | None = None,
        orgmeter_id: str | None = None,
    ) -> str:
        entity_type = spec.entity_type
        rid = orgmeter_id or record_id(data)
        if rid is None:
            raise ValueError(f"{entity_type} payload has no id")

        existing = await self._find(entity_type, rid)
        if existing is not None:
            if not update_existing:
                logger.debug(f"Skipped existing {entity_type} {rid}")
                return "skipped"
            self._apply_update(spec, existing, data, parent_id)
            await self.session.flush()
            logger.debug(f"Updated {entity_type} {rid}")
            return "updated"

        self.session.add(self._new_record(spec, rid, data, parent_id))
        await self.session.flush()
        logger.debug(f"Created {entity_type} {rid}")
        return "created"

    def _count(self, entity_type: str, outcome: str) -> None:
        if entity_type not in IMPORTABLE_ENTITIES:
            if outcome != "skipped":
                self.stats.count_child(entity_type, int(outcome == "created"), int(outcome == "updated"))
            return
        if outcome == "created":
            self.stats.total_saved += 1
        elif outcome == "updated":
            self.stats.total_updated += 1
        else:
            self.stats.total_skipped += 1

    async def bulk_upsert(
        self,
        entity_type: str,
        records: list[dict],
        *,
        update_existing: bool = True,
        parent_id: str | None = None,
    ) -> tuple[int, int]:
        """Upsert many staged records with one lookup and batched flushes.

        Without ``update_existing`` only records not yet staged are inserted.

        Returns:
            (inserted, updated)
        """
        spec = get_spec(entity_type)
        keyed: dict[str, dict] = {}
        for data in records:
            rid = record_id(data)
            if rid is None:
                logger.warning(f"Skipping {entity_type} without id")
                continue
            keyed[rid] = data

        if not keyed:
            return 0, 0

        result = await self.session.execute(
            select(models.OrgMeterRecord).where(
                models.OrgMeterRecord.funder_id == self.funder_id,
                models.OrgMeterRecord.entity_type == entity_type,
                models.OrgMeterRecord.orgmeter_id.in_(list(keyed)),
            )
        )
        existing = {r.orgmeter_id: r for r in result.scalars().all()}

        now = datetime.utcnow()
        inserted = updated = 0
        ids = list(keyed)
        for start in range(0, len(ids), self.bulk_batch_size):
            for rid in ids[start:start + self.bulk_batch_size]:
                data = keyed[rid]
                record = existing.get(rid)
                if record is None:
                    self.session.add(self._new_record(spec, rid, data, parent_id, now))
                    inserted += 1
                elif update_existing:
                    self._apply_update(spec, record, data, parent_id, now)
                    updated += 1
            await self.session.flush()

        self.stats.count_child(entity_type, inserted, updated)
        logger.info(f"Bulk upserted {entity_type}: {inserted} inserted, {updated} updated")
        return inserted, updated

    async def _import_children(
        self,
        spec: EntitySpec,
        parent_id: str,
        data: dict,
        *,
        update_existing: bool,
    ) -> None:
        for child in spec.embedded:
            items = data.get(child.key) or []
            if not items:
                continue
            try:
                await self.bulk_upsert(
                    child.entity_type,
                    items,
                    update_existing=update_existing,
                    parent_id=parent_id,
                )
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Error importing {child.entity_type} for {spec.entity_type} {parent_id}: {e}")
                self.stats.errors.append({
                    f"{spec.entity_type}_id": parent_id,
                    "error": f"{child.entity_type} import failed: {e}",
                })

        for child in spec.sub_entities:
            try:
                if child.many:
                    items = await self.client.fetch_all_sub_entities(
                        spec.entity_type, parent_id, child.sub_entity
                    )
                    if items:
                        await self.bulk_upsert(
                            child.entity_type,
                            items,
                            update_existing=update_existing,
                            parent_id=parent_id,
                        )
                        await self.session.commit()
                else:
                    body = await self.client.fetch_one_sub_entity(spec.entity_type, parent_id, child.sub_entity)
                    if isinstance(body, dict) and body:
                        # single child per parent, keyed by the parent id
                        outcome = await self._stage_record(
                            get_spec(child.entity_type),
                            body,
                            update_existing=update_existing,
                            parent_id=parent_id,
                            orgmeter_id=str(body.get(f"{spec.entity_type}Id") or parent_id),
                        )
                        await self.session.commit()
                        self._count(child.entity_type, outcome)
                    else:
                        logger.warning(f"Invalid {child.sub_entity} data for {spec.entity_type} {parent_id}")
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Error importing {child.sub_entity} for {spec.entity_type} {parent_id}: {e}")
                self.stats.errors.append({
                    f"{spec.entity_type}_id": parent_id,
                    "error": f"{child.sub_entity.capitalize()} import failed: {e}",
                })
