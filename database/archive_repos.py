"""Invoice archive repositories - archive snapshots and invoice numbering.

Archive records are written inside the invoicing transaction, so every
method here expects the caller's session.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import ArchiveRecord, ArchiveTrayItem, InvoiceSequence
from engine.results import Result, ErrorCode


class ArchiveRepository(BaseCRUD):
    """Archive record repository.

    A record is created once per invoicing and never rewritten; invoice
    cancellation only stamps ``superseded_at``.
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_snapshot(self, session: Session, service_file_id: int,
                        lead_id: Optional[int], invoice_number: str,
                        total: Decimal, snapshot: Dict[str, Any],
                        line_items: List[Dict[str, Any]],
                        archived_by: Optional[str],
                        created_at: datetime) -> Result[ArchiveRecord]:
        """Write the archive row and its line item copies.

        Args:
            session: the invoicing transaction.
            service_file_id: archived service file.
            lead_id: owning lead.
            invoice_number: number assigned by this invoicing.
            total: final total.
            snapshot: JSON snapshot (file, trays, items, events, totals).
            line_items: dicts with tray_number, name, unit_price, qty,
                discount_pct, urgent, total, notes.
            archived_by: acting user.
            created_at: archive time.

        Returns:
            Result with the new ArchiveRecord; a failure leaves the session
            for the caller to roll back.
        """
        try:
            record = ArchiveRecord(
                service_file_id=service_file_id,
                lead_id=lead_id,
                invoice_number=invoice_number,
                total=total,
                snapshot=snapshot,
                archived_by=archived_by,
                created_at=created_at,
            )
            session.add(record)
            session.flush()
            for item in line_items:
                session.add(ArchiveTrayItem(archive_record_id=record.id, **item))
            session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Archive snapshot for service file {service_file_id} failed: {e}")
            return Result.failure(
                ErrorCode.INVALID_STATE,
                f"Archive record could not be created: {e}",
            )
        return Result.success(record)

    def get_active_for_file(self, service_file_id: int,
                            session: Optional[Session] = None
                            ) -> Optional[ArchiveRecord]:
        """Latest archive record of a file that has not been superseded."""
        def _query(sess):
            return sess.query(ArchiveRecord).filter(
                ArchiveRecord.service_file_id == service_file_id,
                ArchiveRecord.superseded_at.is_(None),
            ).order_by(ArchiveRecord.id.desc()).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_for_file(self, service_file_id: int,
                      session: Optional[Session] = None) -> List[ArchiveRecord]:
        return self.get_all(
            ArchiveRecord, filters={"service_file_id": service_file_id},
            session=session,
        )

    def get_line_items(self, archive_record_id: int,
                       session: Optional[Session] = None
                       ) -> List[ArchiveTrayItem]:
        return self.get_all(
            ArchiveTrayItem, filters={"archive_record_id": archive_record_id},
            session=session,
        )

    def supersede(self, session: Session, service_file_id: int, reason: str,
                  superseded_at: datetime) -> Optional[ArchiveRecord]:
        """Mark the active archive record of a file as superseded."""
        record = self.get_active_for_file(service_file_id, session=session)
        if record is None:
            return None
        record.superseded_at = superseded_at
        record.superseded_reason = reason
        session.flush()
        return record


class InvoiceSequenceRepository(BaseCRUD):
    """Per-year invoice counter."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def next_value(self, session: Session, year: int) -> int:
        """Increment and return the counter for ``year``.

        Runs inside the invoicing transaction, so a rolled back invoice
        does not consume a number. The increment is a single UPDATE, so
        concurrent invoicings never read the same value; the year row is
        created under a savepoint and a lost creation race falls back to
        the UPDATE.
        """
        bump = (
            update(InvoiceSequence)
            .where(InvoiceSequence.year == year)
            .values(last_value=InvoiceSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        )
        if session.execute(bump).rowcount == 0:
            try:
                with session.begin_nested():
                    session.add(InvoiceSequence(year=year, last_value=1))
                return 1
            except IntegrityError:
                logger.info(f"Invoice sequence for {year} created concurrently, incrementing")
                session.execute(bump)
        return session.query(InvoiceSequence.last_value).filter(
            InvoiceSequence.year == year
        ).scalar()
