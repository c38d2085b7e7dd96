"""SQLAlchemy ORM model definitions.

This module defines every table of the pipeline store:
- pipelines, stages and pipeline item placements
- the placeable entities: leads, service files and trays (with line items)
- tags, the append-only item event log and invoice archive snapshots
- auxiliary rows: invoice number sequences and the durable board cache
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime,
    DECIMAL, ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

# SQLAlchemy declarative base shared by every model
# __allow_unmapped__ keeps the plain (non-Mapped) annotations valid on SQLAlchemy 2.0
Base = declarative_base()

Base.__allow_unmapped__ = True


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Pipeline(Base):
    """Pipeline table model.

    A named, ordered workflow (Vânzări, Receptie, a department...). The
    engine derives a pipeline's role from its name, so names stay free text.

    Attributes:
        id: primary key.
        name: display name, unique among active pipelines.
        position: ordering among pipelines.
        is_active: disabled pipelines reject moves.
        created_at: creation time (UTC).

    Relationships:
        stages: the pipeline's stages, ordered by position.
    """
    __tablename__ = "pipelines"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(100), nullable=False)
    position: int = Column(Integer, default=0)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=utcnow)

    stages: List["Stage"] = relationship(
        "Stage", back_populates="pipeline", order_by="Stage.position"
    )


class Stage(Base):
    """Stage table model.

    One step of a pipeline. The stage role (callback, courier sent...) is
    derived from ``name`` and never stored.
    """
    __tablename__ = "stages"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id: int = Column(Integer, ForeignKey("pipelines.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    position: int = Column(Integer, default=0)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=utcnow)

    pipeline: "Pipeline" = relationship("Pipeline", back_populates="stages")


class PipelineItem(Base):
    """Placement of one item in one pipeline.

    Keyed by (pipeline_id, item_type, item_id); an item may be placed in
    several pipelines at once but only once per pipeline.

    Attributes:
        item_type: lead / service_file / tray.
        item_id: id of the row in the matching entity table.
        stage_id: current stage.
        updated_at: time of the last move, used for last-write-wins.
    """
    __tablename__ = "pipeline_items"
    __table_args__ = (
        UniqueConstraint("pipeline_id", "item_type", "item_id",
                         name="uq_pipeline_item"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id: int = Column(Integer, ForeignKey("pipelines.id"), nullable=False)
    stage_id: int = Column(Integer, ForeignKey("stages.id"), nullable=False)
    item_type: str = Column(String(20), nullable=False)
    item_id: int = Column(Integer, nullable=False)
    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow)


class Lead(Base):
    """Lead table model.

    A sales contact. Owns the timestamps read by the callback, courier and
    follow-up rules.

    Attributes:
        assigned_to: actor id of the salesperson owning the lead.
        callback_date: when the lead must be called back.
        nu_raspunde_callback_at: retry time after an unanswered call.
        curier_trimis_at / curier_trimis_user_id: courier dispatch stamp.
        office_direct_at / office_direct_user_id: drop-off at the office stamp.
        no_deal_at: when the lead entered the No Deal stage.
    """
    __tablename__ = "leads"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    full_name: str = Column(String(100), nullable=False)
    phone: Optional[str] = Column(String(30))
    email: Optional[str] = Column(String(100))
    assigned_to: Optional[str] = Column(String(64))
    callback_date: Optional[datetime] = Column(DateTime)
    nu_raspunde_callback_at: Optional[datetime] = Column(DateTime)
    curier_trimis_at: Optional[datetime] = Column(DateTime)
    curier_trimis_user_id: Optional[str] = Column(String(64))
    office_direct_at: Optional[datetime] = Column(DateTime)
    office_direct_user_id: Optional[str] = Column(String(64))
    no_deal_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow)

    service_files: List["ServiceFile"] = relationship(
        "ServiceFile", back_populates="lead"
    )


class ServiceFile(Base):
    """Service file (fișă de serviciu) table model.

    Attributes:
        status: noua / in_lucru / finalizata / comanda / facturata.
        curier_trimis, curier_scheduled_at: courier pickup was ordered and when.
        office_direct, office_direct_at: the customer brings the items in.
        no_deal, colet_neridicat: flags written once by the unclaimed-package rule.
        colet_ajuns, colet_ajuns_at: the courier package reached the shop.
        urgent, retur: work flags mirrored as lead tags.
        is_locked: set by invoicing, cleared by invoice cancellation.
        invoice_number, invoiced_at, global_discount_pct, cash, card: billing data.
        cancelled, cancel_reason, cancelled_at, cancelled_by: last cancellation.
        archived_at: set once the file leaves the live board.
    """
    __tablename__ = "service_files"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    lead_id: Optional[int] = Column(Integer, ForeignKey("leads.id"))
    number: str = Column(String(50), nullable=False)
    status: str = Column(String(20), default="noua")
    curier_trimis: bool = Column(Boolean, default=False)
    curier_scheduled_at: Optional[datetime] = Column(DateTime)
    office_direct: bool = Column(Boolean, default=False)
    office_direct_at: Optional[datetime] = Column(DateTime)
    no_deal: bool = Column(Boolean, default=False)
    colet_neridicat: bool = Column(Boolean, default=False)
    colet_ajuns: bool = Column(Boolean, default=False)
    colet_ajuns_at: Optional[datetime] = Column(DateTime)
    urgent: bool = Column(Boolean, default=False)
    retur: bool = Column(Boolean, default=False)
    is_locked: bool = Column(Boolean, default=False)
    invoice_number: Optional[str] = Column(String(50), unique=True)
    invoiced_at: Optional[datetime] = Column(DateTime)
    global_discount_pct: float = Column(DECIMAL(5, 2), default=0)
    cash: bool = Column(Boolean, default=False)
    card: bool = Column(Boolean, default=False)
    cancelled: bool = Column(Boolean, default=False)
    cancel_reason: Optional[str] = Column(Text)
    cancelled_at: Optional[datetime] = Column(DateTime)
    cancelled_by: Optional[str] = Column(String(64))
    archived_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow)

    lead: Optional["Lead"] = relationship("Lead", back_populates="service_files")
    trays: List["Tray"] = relationship(
        "Tray", back_populates="service_file", order_by="Tray.id"
    )


class Tray(Base):
    """Equipment tray (tăviță) table model.

    Attributes:
        number: physical tray label; renamed with a ``-copyN`` suffix on release.
        status: in_lucru / finalizata.
        technician_id: actor working the tray.
        released_at: set when the tray is released after archival.
        deletable: released with no remaining line items.
    """
    __tablename__ = "trays"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    service_file_id: Optional[int] = Column(Integer, ForeignKey("service_files.id"))
    number: str = Column(String(50), nullable=False)
    size: Optional[str] = Column(String(20))
    status: str = Column(String(20), default="in_lucru")
    technician_id: Optional[str] = Column(String(64))
    released_at: Optional[datetime] = Column(DateTime)
    deletable: bool = Column(Boolean, default=False)
    created_at: datetime = Column(DateTime, default=utcnow)

    service_file: Optional["ServiceFile"] = relationship(
        "ServiceFile", back_populates="trays"
    )
    items: List["TrayItem"] = relationship(
        "TrayItem", back_populates="tray", order_by="TrayItem.id"
    )


class TrayItem(Base):
    """Billable line item inside a tray (service, part or instrument)."""
    __tablename__ = "tray_items"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    tray_id: int = Column(Integer, ForeignKey("trays.id"), nullable=False)
    name: str = Column(String(200), nullable=False)
    unit_price: float = Column(DECIMAL(10, 2), default=0)
    qty: int = Column(Integer, default=1)
    discount_pct: float = Column(DECIMAL(5, 2), default=0)
    urgent: bool = Column(Boolean, default=False)
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=utcnow)

    tray: "Tray" = relationship("Tray", back_populates="items")


class Tag(Base):
    """Lead tag (Suna!, Follow Up, Urgent, Retur...)."""
    __tablename__ = "tags"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(50), nullable=False, unique=True)
    color: str = Column(String(20), default="gray")


class LeadTag(Base):
    """Lead ↔ tag association."""
    __tablename__ = "lead_tags"
    __table_args__ = (
        UniqueConstraint("lead_id", "tag_id", name="uq_lead_tag"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    lead_id: int = Column(Integer, ForeignKey("leads.id"), nullable=False)
    tag_id: int = Column(Integer, ForeignKey("tags.id"), nullable=False)
    created_at: datetime = Column(DateTime, default=utcnow)


class ItemEvent(Base):
    """Append-only event log (transition events, rule firings, billing).

    Rows are never updated. The log doubles as the idempotency witness for
    "already handled" checks, e.g. a ``colet_ajuns`` event keeps a file out
    of the unclaimed-package rule.

    Attributes:
        item_type / item_id: the item the event belongs to.
        event_type: stage_change, stage_change_conflict, suna_tag_added,
                    colet_neridicat_auto, follow_up_reminder, factura_emisa...
        message: human readable summary.
        payload: JSON details (stage ids and names, elapsed time...).
        actor_id: acting user, ``system`` for automated rules.
    """
    __tablename__ = "item_events"
    __table_args__ = (
        Index("ix_item_events_item", "item_type", "item_id"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    item_type: str = Column(String(20), nullable=False)
    item_id: int = Column(Integer, nullable=False)
    event_type: str = Column(String(50), nullable=False)
    message: Optional[str] = Column(Text)
    payload: Dict[str, Any] = Column(JSON, default={})
    actor_id: Optional[str] = Column(String(64))
    created_at: datetime = Column(DateTime, default=utcnow)


class ArchiveRecord(Base):
    """Immutable snapshot of a service file taken at invoicing time.

    Only ``superseded_at`` / ``superseded_reason`` are ever written after
    creation, by invoice cancellation; the snapshot itself never changes.
    """
    __tablename__ = "archive_records"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    service_file_id: int = Column(Integer, ForeignKey("service_files.id"),
                                  nullable=False)
    lead_id: Optional[int] = Column(Integer)
    invoice_number: str = Column(String(50), nullable=False, unique=True)
    total: float = Column(DECIMAL(12, 2), default=0)
    snapshot: Dict[str, Any] = Column(JSON, default={})
    archived_by: Optional[str] = Column(String(64))
    created_at: datetime = Column(DateTime, default=utcnow)
    superseded_at: Optional[datetime] = Column(DateTime)
    superseded_reason: Optional[str] = Column(Text)

    tray_items: List["ArchiveTrayItem"] = relationship(
        "ArchiveTrayItem", back_populates="archive_record"
    )


class ArchiveTrayItem(Base):
    """Line item copied into an archive record."""
    __tablename__ = "archive_tray_items"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    archive_record_id: int = Column(Integer, ForeignKey("archive_records.id"),
                                    nullable=False)
    tray_number: str = Column(String(50))
    name: str = Column(String(200), nullable=False)
    unit_price: float = Column(DECIMAL(10, 2), default=0)
    qty: int = Column(Integer, default=1)
    discount_pct: float = Column(DECIMAL(5, 2), default=0)
    urgent: bool = Column(Boolean, default=False)
    total: float = Column(DECIMAL(12, 2), default=0)
    notes: Optional[str] = Column(Text)

    archive_record: "ArchiveRecord" = relationship(
        "ArchiveRecord", back_populates="tray_items"
    )


class InvoiceSequence(Base):
    """Per-year invoice counter."""
    __tablename__ = "invoice_sequences"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    year: int = Column(Integer, nullable=False, unique=True)
    last_value: int = Column(Integer, default=0)


class BoardCacheEntry(Base):
    """Durable, session-scoped layer of the board cache.

    Not authoritative: rows can be dropped at any time and are rebuilt from
    the placement tables on the next miss.
    """
    __tablename__ = "board_cache_entries"
    __table_args__ = (
        UniqueConstraint("scope", "cache_key", name="uq_board_cache_key"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    scope: str = Column(String(64), nullable=False)
    cache_key: str = Column(String(255), nullable=False)
    payload: str = Column(Text, nullable=False)
    stored_at: datetime = Column(DateTime, nullable=False)
