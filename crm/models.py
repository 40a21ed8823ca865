"""Core SQLAlchemy models (2.x style) for the CRM schema.

CRM entities are tenant-scoped through the funder. Raw OrgMeter payloads are
staged in a single ``orgmeter_records`` table and reconciled into CRM entities
by the sync pipeline.
"""

from __future__ import annotations

import random
import string
import time
import traceback
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

IMPORT_SOURCES = ("OrgMeter", "LendSaaS", "OnyxIQ")

ENTITY_TYPES = (
    "SOLE_PROP",
    "GEN_PART",
    "LTD_PART",
    "LLP",
    "LLC",
    "PLLC",
    "C_CORP",
    "S_CORP",
    "B_CORP",
    "CLOSE_CORP",
    "NONPROFIT_CORP",
    "COOP",
)

ISO_TYPES = ("internal", "external")

APPLICATION_TYPES = ("NEW", "RENEWAL", "RESUBMISSION", "RENEWAL_RESUBMISSION")

FUNDING_TYPES = ("NEW", "RENEWAL", "REFINANCE", "BUYOUT", "OTHER")

JOB_STATUSES = ("pending", "running", "completed", "failed", "cancelled", "paused")
ACTIVE_JOB_STATUSES = ("pending", "running", "paused")
FINISHED_JOB_STATUSES = ("completed", "failed", "cancelled")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Funder(Base):
    """Funders (tenants)."""
    __tablename__ = "funders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(50))
    website: Mapped[str | None] = mapped_column(String(255))
    bgcolor: Mapped[str | None] = mapped_column(String(20))
    import_source: Mapped[str | None] = mapped_column(String(50))
    import_api_key: Mapped[str | None] = mapped_column(String(255), index=True)
    import_client_name: Mapped[str | None] = mapped_column(String(255))
    inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )


class Merchant(Base):
    """Merchants (businesses receiving advances)."""
    __tablename__ = "merchants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    dba_name: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(50))
    website: Mapped[str | None] = mapped_column(String(255))
    sic_code: Mapped[str | None] = mapped_column(String(20))
    naics_code: Mapped[str | None] = mapped_column(String(20))
    ein: Mapped[str | None] = mapped_column(String(20))
    entity_type: Mapped[str | None] = mapped_column(String(30))
    incorporation_date: Mapped[date | None] = mapped_column(Date)
    address_list: Mapped[list[dict] | None] = mapped_column(JSON)
    inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    funder_links: Mapped[list[MerchantFunder]] = relationship(
        "MerchantFunder",
        back_populates="merchant",
        cascade="all, delete-orphan",
    )


class MerchantFunder(Base):
    """Merchant ↔ funder link."""
    __tablename__ = "merchant_funders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    merchant: Mapped[Merchant] = relationship("Merchant", back_populates="funder_links")

    __table_args__ = (
        UniqueConstraint("merchant_id", "funder_id", name="uq_merchant_funders_pair"),
    )


class ISO(Base):
    """Independent sales organisations (brokers)."""
    __tablename__ = "isos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(50))
    website: Mapped[str | None] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(20), default="internal", nullable=False)
    ein: Mapped[str | None] = mapped_column(String(20))
    address_list: Mapped[list[dict] | None] = mapped_column(JSON)
    inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    funder_links: Mapped[list[ISOFunder]] = relationship(
        "ISOFunder",
        back_populates="iso",
        cascade="all, delete-orphan",
    )


class ISOFunder(Base):
    """ISO ↔ funder link."""
    __tablename__ = "iso_funders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    iso_id: Mapped[int] = mapped_column(ForeignKey("isos.id", ondelete="CASCADE"), nullable=False)
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    iso: Mapped[ISO] = relationship("ISO", back_populates="funder_links")

    __table_args__ = (
        UniqueConstraint("iso_id", "funder_id", name="uq_iso_funders_pair"),
    )


class Application(Base):
    """Funding applications submitted for a merchant."""
    __tablename__ = "applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier: Mapped[str | None] = mapped_column(String(100), index=True)
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), nullable=False, index=True)
    iso_id: Mapped[int | None] = mapped_column(ForeignKey("isos.id"))
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="NEW")
    priority: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    request_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    request_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str | None] = mapped_column(String(50))
    status_date: Mapped[datetime | None] = mapped_column()
    declined_reason: Mapped[str | None] = mapped_column(Text)
    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_applications_funder_created", "funder_id", "created_at"),
    )


class Funding(Base):
    """Fundings (deals), synced from OrgMeter advances or created from applications."""
    __tablename__ = "fundings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier: Mapped[str | None] = mapped_column(String(100), index=True)
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), nullable=False, index=True)
    iso_id: Mapped[int | None] = mapped_column(ForeignKey("isos.id"))
    application_id: Mapped[int | None] = mapped_column(ForeignKey("applications.id"))
    lender_name: Mapped[str | None] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="NEW")
    funded_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    payback_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    status: Mapped[str | None] = mapped_column(String(50))
    internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_fundings_funder_created", "funder_id", "created_at"),
    )


class StipulationType(Base):
    """Per-funder catalogue of stipulations (documents required before funding)."""
    __tablename__ = "stipulation_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    inactive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("funder_id", "name", name="uq_stipulation_types_funder_name"),
    )


class OrgMeterRecord(Base):
    """Raw OrgMeter records staged per funder, with import and sync metadata."""
    __tablename__ = "orgmeter_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    orgmeter_id: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_orgmeter_id: Mapped[str | None] = mapped_column(String(100), index=True)
    name: Mapped[str | None] = mapped_column(String(255), index=True)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    # Import metadata
    source: Mapped[str] = mapped_column(String(50), default="orgmeter_api", nullable=False)
    imported_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    imported_by: Mapped[str] = mapped_column(String(100), default="api_import_service", nullable=False)
    last_updated_at: Mapped[datetime | None] = mapped_column()
    last_updated_by: Mapped[str | None] = mapped_column(String(100))

    # Sync metadata
    needs_sync: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column()
    last_synced_by: Mapped[str | None] = mapped_column(String(100))
    sync_id: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("funder_id", "entity_type", "orgmeter_id", name="uq_orgmeter_records_key"),
        Index("ix_orgmeter_records_funder_type_sync", "funder_id", "entity_type", "needs_sync"),
    )

    def sync_metadata(self) -> dict:
        return {
            "needs_sync": self.needs_sync,
            "last_synced_at": self.last_synced_at,
            "last_synced_by": self.last_synced_by,
            "sync_id": self.sync_id,
        }


class ImportJob(Base):
    """Background OrgMeter import jobs with progress and resume bookkeeping."""
    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)

    # Parameters
    funder_id: Mapped[int] = mapped_column(ForeignKey("funders.id", ondelete="CASCADE"), nullable=False)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, default=20, nullable=False)
    update_existing: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Progress
    progress_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_entity: Mapped[str | None] = mapped_column(String(255))

    # Results
    results_imported: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    results_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    results_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    results_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    results_details: Mapped[dict | None] = mapped_column(JSON)

    # Error
    error_message: Mapped[str | None] = mapped_column(Text)
    error_stack: Mapped[str | None] = mapped_column(Text)
    error_timestamp: Mapped[datetime | None] = mapped_column()

    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column(index=True)
    estimated_time_remaining: Mapped[int | None] = mapped_column(Integer)  # ms
    last_progress_update: Mapped[datetime | None] = mapped_column()
    paused_at: Mapped[datetime | None] = mapped_column()

    # Resume
    resume_from: Mapped[str] = mapped_column(String(20), default="current", nullable=False)
    last_processed_id: Mapped[str | None] = mapped_column(String(100))
    bookmark: Mapped[dict | None] = mapped_column(JSON)

    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_import_jobs_funder_entity_status", "funder_id", "entity_type", "status"),
        Index("ix_import_jobs_created_at", "created_at"),
    )

    @staticmethod
    def generate_job_id(entity_type: str) -> str:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        return f"import_{entity_type}_{int(time.time() * 1000)}_{suffix}"

    def update_progress(self, processed: int, total: int, current_entity: str | None = None) -> None:
        """Record progress and recompute percentage and ETA."""
        now = datetime.utcnow()
        self.progress_processed = processed
        self.progress_total = total
        self.progress_percentage = round(processed / total * 100) if total > 0 else 0
        self.current_entity = current_entity
        self.last_progress_update = now

        if processed > 0 and self.started_at:
            elapsed_ms = (now - self.started_at).total_seconds() * 1000
            remaining = total - processed
            if remaining > 0 and elapsed_ms > 0:
                self.estimated_time_remaining = round(remaining * elapsed_ms / processed)
            else:
                self.estimated_time_remaining = 0

    def mark_started(self) -> None:
        self.status = "running"
        self.started_at = datetime.utcnow()

    def results_summary(self) -> dict[str, int]:
        return {
            "imported": self.results_imported,
            "updated": self.results_updated,
            "errors": self.results_errors,
            "skipped": self.results_skipped,
        }

    def record_results(self, results: dict) -> None:
        self.results_imported = results.get("imported", self.results_imported)
        self.results_updated = results.get("updated", self.results_updated)
        self.results_errors = results.get("errors", self.results_errors)
        self.results_skipped = results.get("skipped", self.results_skipped)
        if "details" in results:
            self.results_details = results["details"]

    def mark_completed(self, results: dict) -> None:
        self.status = "completed"
        self.completed_at = datetime.utcnow()
        self.record_results(results)
        self.estimated_time_remaining = 0

    def mark_failed(self, error: BaseException) -> None:
        self.status = "failed"
        self.completed_at = datetime.utcnow()
        self.error_message = str(error)
        self.error_stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self.error_timestamp = datetime.utcnow()
        self.estimated_time_remaining = 0

    def mark_cancelled(self) -> None:
        self.status = "cancelled"
        self.completed_at = datetime.utcnow()
        self.estimated_time_remaining = 0

    def mark_paused(self, bookmark: dict | None = None) -> None:
        self.status = "paused"
        self.paused_at = datetime.utcnow()
        if bookmark:
            self.bookmark = bookmark
            self.last_processed_id = bookmark.get("last_processed_id")

    def mark_resumed(self, resume_from: str = "current", parameters: dict | None = None) -> None:
        """Move a paused or failed job back to running.

        Resuming from the beginning discards progress, results and bookmark.
        """
        self.status = "running"
        self.resume_from = resume_from
        self.paused_at = None
        self.completed_at = None
        self.error_message = None
        self.error_stack = None
        self.error_timestamp = None
        if self.started_at is None:
            self.started_at = datetime.utcnow()

        if parameters:
            if parameters.get("batch_size"):
                self.batch_size = parameters["batch_size"]
            if isinstance(parameters.get("update_existing"), bool):
                self.update_existing = parameters["update_existing"]

        if resume_from == "beginning":
            self.progress_processed = 0
            self.progress_percentage = 0
            self.current_entity = None
            self.results_imported = 0
            self.results_updated = 0
            self.results_errors = 0
            self.results_skipped = 0
            self.last_processed_id = None
            self.bookmark = None

    def to_dict(self, include_api_key: bool = False) -> dict:
        data = {
            "job_id": self.job_id,
            "entity_type": self.entity_type,
            "status": self.status,
            "parameters": {
                "funder_id": self.funder_id,
                "batch_size": self.batch_size,
                "update_existing": self.update_existing,
            },
            "progress": {
                "total": self.progress_total,
                "processed": self.progress_processed,
                "percentage": self.progress_percentage,
                "current_entity": self.current_entity,
            },
            "results": {
                "imported": self.results_imported,
                "updated": self.results_updated,
                "errors": self.results_errors,
                "skipped": self.results_skipped,
                "details": self.results_details,
            },
            "error": None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "estimated_time_remaining": self.estimated_time_remaining,
            "last_progress_update": self.last_progress_update,
            "paused_at": self.paused_at,
            "resume_data": {
                "resume_from": self.resume_from,
                "last_processed_id": self.last_processed_id,
                "bookmark": self.bookmark,
            },
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.error_message:
            data["error"] = {
                "message": self.error_message,
                "stack": self.error_stack,
                "timestamp": self.error_timestamp,
            }
        if include_api_key:
            data["parameters"]["api_key"] = self.api_key
        return data
