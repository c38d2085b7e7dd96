"""Invoicing and archival state machine for service files.

States::

    Open --invoice--> Locked (invoiced) --archive_and_release--> Archived
      ^                  |
      +--cancel_invoice--+

``invoice`` is one transaction: invoice number, lock flag, archive snapshot,
removal of the working line items and the audit event commit together or
not at all. ``cancel_invoice`` reopens a locked, unarchived file and keeps
the archive snapshot, marked superseded. ``archive_and_release`` takes the
file off the live boards, into the Arhivare pipeline when one is configured
and by releasing its trays otherwise.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from database.manager import DatabaseManager
from database.models import ServiceFile, Tray
from .clock import Clock
from .items import ItemRef, LeadRef, ServiceFileRef, TrayRef
from .permissions import (
    ARCHIVE_ROLES, CANCEL_INVOICE_ROLES, INVOICE_ROLES, RoleProvider, require_role
)
from .pricing import FileTotal, PriceCalculator, money, to_decimal
from .results import Result, ErrorCode
from .stage_directory import PipelineRole, StageDirectory, StageRole
from .transitions import TransitionExecutor

INVOICED_STATUS = "facturata"
REOPENED_STATUS = "in_lucru"
FINISHED_TRAY_STATUS = "finalizata"
PAYMENT_METHODS = ("cash", "card")
MAX_COPY_SUFFIX = 100


@dataclass
class BillingData:
    payment_method: Optional[str] = None
    global_discount_pct: Any = None
    note: Optional[str] = None
    urgent: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BillingData":
        """Accepts snake_case keys and the billing form's camelCase names."""
        data = data or {}
        return cls(
            payment_method=data.get("payment_method", data.get("metodaPlata")),
            global_discount_pct=data.get("global_discount_pct", data.get("discountGlobal")),
            note=data.get("note", data.get("noteFactura")),
            urgent=data.get("urgent"),
        )

    def validate(self) -> List[str]:
        errors = []
        if not self.payment_method:
            errors.append("payment_method is required")
        elif self.payment_method not in PAYMENT_METHODS:
            errors.append(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        if self.global_discount_pct is not None:
            try:
                pct = to_decimal(self.global_discount_pct)
            except (InvalidOperation, ValueError):
                errors.append("global_discount_pct must be a number")
            else:
                if pct < 0 or pct > 100:
                    errors.append("global_discount_pct must be between 0 and 100")
        return errors


@dataclass(frozen=True)
class InvoiceOutcome:
    archive_id: int
    invoice_number: str
    total: Decimal
    service_file_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facturaId": self.service_file_id,
            "facturaNumber": self.invoice_number,
            "total": float(self.total),
            "arhivaFisaId": self.archive_id,
        }


@dataclass
class ArchiveOutcome:
    lead_moved: bool = False
    file_moved: bool = False
    trays_moved: int = 0
    released_trays: int = 0
    used_archive_pipeline: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leadMoved": self.lead_moved,
            "fileMoved": self.file_moved,
            "traysMoved": self.trays_moved,
            "releasedTrays": self.released_trays,
            "usedArchivePipeline": self.used_archive_pipeline,
            "warnings": list(self.warnings),
        }


class InvoicingService:
    """Invoice, cancel and archive transitions of service files.

    Args:
        db: item store.
        executor: transition executor (moves and cache invalidation).
        directory: archive and sales stage resolution.
        clock: time source.
        roles: role lookup for privileged transitions.
        calculator: pricing rules.
        invoice_prefix: invoice numbers look like ``F2026-00042``.
    """

    def __init__(self, db: DatabaseManager, executor: TransitionExecutor,
                 directory: StageDirectory, clock: Clock, roles: RoleProvider,
                 calculator: Optional[PriceCalculator] = None,
                 invoice_prefix: str = "F") -> None:
        self.db = db
        self.executor = executor
        self.directory = directory
        self.clock = clock
        self.roles = roles
        self.calculator = calculator or PriceCalculator()
        self.invoice_prefix = invoice_prefix

    # ================================================================
    # Invoice
    # ================================================================

    def invoice(self, service_file_id: int, billing_data: Any,
                actor_id: Optional[str]) -> Result[InvoiceOutcome]:
        """Lock a service file, snapshot it and issue an invoice number.

        Args:
            service_file_id: file to invoice.
            billing_data: BillingData or its dict form.
            actor_id: acting user (owner / admin / vanzator).

        Returns:
            Result with InvoiceOutcome, or UNAUTHORIZED / NOT_FOUND /
            INVALID_STATE (already locked) / VALIDATION_FAILED.
        """
        allowed = require_role(self.roles, actor_id, INVOICE_ROLES, "issue invoices")
        if not allowed.ok:
            return Result.from_error(allowed.error)
        if billing_data is not None and not isinstance(billing_data, (BillingData, dict)):
            return Result.failure(ErrorCode.VALIDATION_FAILED, "billing data must be an object")
        billing = billing_data if isinstance(billing_data, BillingData) \
            else BillingData.from_dict(billing_data)
        now = self.clock.now()

        with self.db.get_session() as session:
            service_file = session.get(ServiceFile, service_file_id)
            if service_file is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Service file {service_file_id} not found")
            if service_file.is_locked or service_file.status == INVOICED_STATUS:
                return Result.failure(
                    ErrorCode.INVALID_STATE,
                    f"Service file {service_file.number} is already invoiced",
                )
            if service_file.archived_at is not None:
                return Result.failure(
                    ErrorCode.INVALID_STATE,
                    f"Service file {service_file.number} is archived",
                )

            if not self.db.service_files.lock_for_invoice(session, service_file_id, now):
                session.rollback()
                logger.warning(f"Service file {service_file.number} was invoiced concurrently")
                return Result.failure(
                    ErrorCode.INVALID_STATE,
                    f"Service file {service_file.number} is already invoiced",
                )
            session.refresh(service_file)

            trays = self.db.trays.get_for_service_file(service_file_id, session=session)
            errors = billing.validate()
            if not trays:
                errors.append("No trays found")
            unfinished = [t for t in trays if t.status != FINISHED_TRAY_STATUS]
            if unfinished:
                errors.append(f"{len(unfinished)} tray(s) not finalized")
            if errors:
                session.rollback()
                return Result.failure(
                    ErrorCode.VALIDATION_FAILED,
                    f"Service file {service_file.number} cannot be invoiced",
                    errors,
                )

            if billing.urgent is not None:
                service_file.urgent = bool(billing.urgent)
            items = self.db.trays.get_items([t.id for t in trays], session=session)
            items_by_tray: Dict[int, List[Any]] = {}
            for item in items:
                items_by_tray.setdefault(item.tray_id, []).append(item)
            totals = self.calculator.file_total(
                service_file, trays, items_by_tray,
                global_discount_pct=billing.global_discount_pct,
            )

            sequence = self.db.invoice_sequences.next_value(session, now.year)
            invoice_number = f"{self.invoice_prefix}{now.year}-{sequence:05d}"
            service_file.status = INVOICED_STATUS
            service_file.is_locked = True
            service_file.invoice_number = invoice_number
            service_file.invoiced_at = now
            service_file.global_discount_pct = totals.global_discount_pct
            service_file.cash = billing.payment_method == "cash"
            service_file.card = billing.payment_method == "card"
            service_file.updated_at = now

            archive = self.db.archives.create_snapshot(
                session,
                service_file_id=service_file.id,
                lead_id=service_file.lead_id,
                invoice_number=invoice_number,
                total=totals.final_total,
                snapshot=self._snapshot(session, service_file, trays, items_by_tray,
                                        totals, billing),
                line_items=self._line_items(trays, totals),
                archived_by=actor_id,
                created_at=now,
            )
            if not archive.ok:
                session.rollback()
                logger.error(f"Invoicing {service_file.number} rolled back: {archive.error.message}")
                return Result.from_error(archive.error)

            self.db.trays.delete_items([t.id for t in trays], session=session)
            self.db.events.append(
                "service_file", service_file.id, "factura_emisa",
                message=f"Factura {invoice_number} emisă. Total: {totals.final_total:.2f} RON",
                payload={
                    "invoice_number": invoice_number,
                    "total": str(totals.final_total),
                    "archive_id": archive.value.id,
                    "payment_method": billing.payment_method,
                    "global_discount_pct": str(totals.global_discount_pct),
                },
                actor_id=actor_id, created_at=now, session=session,
            )
            session.commit()
            outcome = InvoiceOutcome(
                archive_id=archive.value.id,
                invoice_number=invoice_number,
                total=totals.final_total,
                service_file_id=service_file.id,
            )
            touched = self._related_refs(service_file, trays)

        logger.info(f"Invoice {outcome.invoice_number} issued for service file {service_file_id}: {outcome.total} RON")
        self.executor.invalidate_items(touched)
        return Result.success(outcome)

    def _snapshot(self, session: Session, service_file: ServiceFile,
                  trays: List[Tray], items_by_tray: Dict[int, List[Any]],
                  totals: FileTotal, billing: BillingData) -> Dict[str, Any]:
        events = []
        for ref in [ServiceFileRef(service_file.id)] + [TrayRef(t.id) for t in trays]:
            events.extend(
                _plain(event) for event in
                self.db.events.list_for_item(ref.type, ref.id, session=session)
            )
        lead = service_file.lead
        return {
            "service_file": _plain(service_file),
            "lead": _plain(lead) if lead is not None else None,
            "trays": [
                dict(_plain(tray), items=[_plain(i) for i in items_by_tray.get(tray.id, [])])
                for tray in trays
            ],
            "events": events,
            "totals": totals.to_dict(),
            "billing": {
                "payment_method": billing.payment_method,
                "global_discount_pct": str(totals.global_discount_pct),
                "note": billing.note,
                "urgent": billing.urgent,
            },
        }

    @staticmethod
    def _line_items(trays: List[Tray], totals: FileTotal) -> List[Dict[str, Any]]:
        numbers = {tray.id: tray.number for tray in trays}
        lines = []
        for tray_total in totals.trays:
            for item in tray_total.items:
                lines.append({
                    "tray_number": numbers.get(tray_total.tray_id),
                    "name": item.name,
                    "unit_price": item.unit_price,
                    "qty": item.qty,
                    "discount_pct": item.discount_pct,
                    "urgent": item.is_urgent,
                    "total": money(item.total),
                })
        return lines

    # ================================================================
    # Cancel
    # ================================================================

    def cancel_invoice(self, service_file_id: int, reason: Optional[str],
                       actor_id: Optional[str]) -> Result[Dict[str, Any]]:
        """Reopen an invoiced, unarchived service file.

        Args:
            service_file_id: invoiced file.
            reason: mandatory cancellation reason.
            actor_id: acting user (owner / admin).

        Returns:
            Result with ``{"serviceFileId", "invoiceNumber", "archiveId"}``,
            or VALIDATION_FAILED / UNAUTHORIZED / NOT_FOUND / INVALID_STATE.
        """
        reason = (reason or "").strip()
        if not reason:
            return Result.failure(
                ErrorCode.VALIDATION_FAILED,
                "Motivul anulării este obligatoriu",
                ["reason is required"],
            )
        allowed = require_role(self.roles, actor_id, CANCEL_INVOICE_ROLES, "cancel invoices")
        if not allowed.ok:
            return Result.from_error(allowed.error)
        now = self.clock.now()

        with self.db.get_session() as session:
            service_file = session.get(ServiceFile, service_file_id)
            if service_file is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Service file {service_file_id} not found")
            if not service_file.is_locked or service_file.status != INVOICED_STATUS:
                return Result.failure(
                    ErrorCode.INVALID_STATE,
                    f"Service file {service_file.number} is not invoiced",
                )
            if service_file.archived_at is not None:
                return Result.failure(
                    ErrorCode.INVALID_STATE,
                    f"Service file {service_file.number} is already archived",
                )

            invoice_number = service_file.invoice_number
            service_file.is_locked = False
            service_file.status = REOPENED_STATUS
            service_file.cancelled = True
            service_file.cancel_reason = reason
            service_file.cancelled_at = now
            service_file.cancelled_by = actor_id
            service_file.cash = False
            service_file.card = False
            service_file.updated_at = now
            record = self.db.archives.supersede(session, service_file.id, reason, now)
            self.db.events.append(
                "service_file", service_file.id, "factura_anulata",
                message=f"Factura {invoice_number} anulată. Motiv: {reason}",
                payload={"invoice_number": invoice_number, "reason": reason,
                         "archive_id": record.id if record else None},
                actor_id=actor_id, created_at=now, session=session,
            )
            session.commit()
            touched = self._related_refs(service_file, [])

        logger.info(f"Invoice {invoice_number} cancelled by {actor_id}: {reason}")
        self.executor.invalidate_items(touched)
        return Result.success({
            "serviceFileId": service_file_id,
            "invoiceNumber": invoice_number,
            "archiveId": record.id if record else None,
        })

    # ================================================================
    # Archive and release
    # ================================================================

    def archive_and_release(self, service_file_id: int,
                            actor_id: Optional[str]) -> Result[ArchiveOutcome]:
        """Take an invoiced file off the live boards.

        With an Arhivare pipeline exposing lead, file and tray stages, the
        lead, the file and its trays move there. Otherwise the trays are
        released (renamed, unplaced, flagged deletable when empty) and the
        lead moves to the sales pipeline's archived stage.

        Returns:
            Result with ArchiveOutcome, or UNAUTHORIZED / NOT_FOUND /
            INVALID_STATE (not invoiced).
        """
        allowed = require_role(self.roles, actor_id, ARCHIVE_ROLES, "archive service files")
        if not allowed.ok:
            return Result.from_error(allowed.error)
        now = self.clock.now()

        with self.db.get_session() as session:
            service_file = session.get(ServiceFile, service_file_id)
            if service_file is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Service file {service_file_id} not found")
            if not service_file.is_locked or service_file.status != INVOICED_STATUS:
                return Result.failure(
                    ErrorCode.INVALID_STATE,
                    f"Service file {service_file.number} must be invoiced before archiving",
                )
            if service_file.archived_at is None:
                service_file.archived_at = now
                service_file.updated_at = now
                self.db.events.append(
                    "service_file", service_file.id, "service_file_archived",
                    message=f"Fișa {service_file.number} arhivată",
                    payload={"invoice_number": service_file.invoice_number},
                    actor_id=actor_id, created_at=now, session=session,
                )
                session.commit()
            lead_id = service_file.lead_id
            tray_ids = [t.id for t in self.db.trays.get_for_service_file(service_file_id, session=session)]

        outcome = ArchiveOutcome()
        if lead_id is not None:
            self._sync_lead_tags(lead_id)

        archive_stages = self._archive_stages()
        if archive_stages is not None:
            pipeline_id, stages = archive_stages
            outcome.used_archive_pipeline = True
            if lead_id is not None:
                outcome.lead_moved = self._archive_move(
                    LeadRef(lead_id), pipeline_id, stages[StageRole.ARCHIVE_LEADS], actor_id, outcome)
            outcome.file_moved = self._archive_move(
                ServiceFileRef(service_file_id), pipeline_id,
                stages[StageRole.ARCHIVE_FILES], actor_id, outcome)
            outcome.trays_moved = sum(
                1 for tray_id in tray_ids
                if self._archive_move(TrayRef(tray_id), pipeline_id,
                                      stages[StageRole.ARCHIVE_TRAYS], actor_id, outcome)
            )
        else:
            outcome.released_trays = self._release_trays(tray_ids, actor_id)
            if lead_id is not None:
                target = self.directory.require_pipeline_stage(
                    PipelineRole.SALES, StageRole.ARCHIVED
                )
                if target.ok:
                    pipeline, stage = target.value
                    outcome.lead_moved = self._archive_move(
                        LeadRef(lead_id), pipeline.id, stage.id, actor_id, outcome)
                else:
                    outcome.warnings.append(target.error.message)
                    logger.warning(f"Lead {lead_id} not archived: {target.error.message}")

        logger.info(f"Service file {service_file_id} archived: {outcome.to_dict()}")
        return Result.success(outcome)

    def _archive_stages(self):
        pipeline = self.directory.find_pipeline(PipelineRole.ARCHIVE)
        if pipeline is None:
            return None
        stages = {}
        for role in (StageRole.ARCHIVE_LEADS, StageRole.ARCHIVE_FILES, StageRole.ARCHIVE_TRAYS):
            stage = self.directory.find_stage(pipeline.id, role)
            if stage is None:
                logger.warning(f"Archive pipeline '{pipeline.name}' lacks a stage for {role.value}")
                return None
            stages[role] = stage.id
        return pipeline.id, stages

    def _archive_move(self, item: ItemRef, pipeline_id: int, stage_id: int,
                      actor_id: Optional[str], outcome: ArchiveOutcome) -> bool:
        result = self.executor.move(
            item, pipeline_id, stage_id, actor_id,
            message="Moved to archive", payload={"archived": True},
        )
        if not result.ok:
            outcome.warnings.append(f"{item}: {result.error.message}")
            logger.warning(f"Archive move of {item} failed: {result.error.message}")
        return result.ok

    def _release_trays(self, tray_ids: List[int], actor_id: Optional[str]) -> int:
        """Rename trays to a free ``{number}-copy{k}`` and drop their placements.

        Returns:
            Number of released trays.
        """
        if not tray_ids:
            return 0
        now = self.clock.now()
        left_pipelines = set()
        with self.db.get_session() as session:
            for tray_id in tray_ids:
                tray = session.get(Tray, tray_id)
                old_number = tray.number
                tray.number = self._free_copy_number(session, old_number, now)
                tray.released_at = now
                tray.deletable = not self.db.trays.get_items([tray.id], session=session)
                removed = self.executor.remove(TrayRef(tray.id), actor_id=actor_id, session=session)
                left_pipelines.update(removed.value)
                self.db.events.append(
                    "tray", tray.id, "tray_released",
                    message=f"Tăvița {old_number} eliberată ca {tray.number}",
                    payload={"old_number": old_number, "new_number": tray.number,
                             "deletable": tray.deletable},
                    actor_id=actor_id, created_at=now, session=session,
                )
            session.commit()
        self.executor.invalidate_pipelines(left_pipelines)
        return len(tray_ids)

    def _free_copy_number(self, session: Session, number: str, now: datetime) -> str:
        for index in range(1, MAX_COPY_SUFFIX + 1):
            candidate = f"{number}-copy{index}"
            if not self.db.trays.number_exists(candidate, session=session):
                return candidate
        return f"{number}-copy{int(now.timestamp() * 1000)}"

    def _sync_lead_tags(self, lead_id: int) -> None:
        """Mirror the Urgent / Retur flags of the lead's open files as lead tags."""
        open_files = self.db.service_files.get_open_for_lead(lead_id)
        changed = False
        with self.db.get_session() as session:
            for tag_name, flag, color in (("Urgent", "urgent", "red"), ("Retur", "retur", "orange")):
                tag = self.db.tags.get_or_create(tag_name, color, session=session)
                if any(getattr(f, flag) for f in open_files):
                    changed |= self.db.tags.add_to_lead(lead_id, tag.id, session=session)
                else:
                    changed |= self.db.tags.remove_from_lead(lead_id, tag.id, session=session)
            session.commit()
        if changed:
            self.executor.invalidate_items([LeadRef(lead_id)])

    @staticmethod
    def _related_refs(service_file: ServiceFile, trays: List[Tray]) -> List[ItemRef]:
        refs: List[ItemRef] = [ServiceFileRef(service_file.id)]
        if service_file.lead_id is not None:
            refs.append(LeadRef(service_file.lead_id))
        refs.extend(TrayRef(t.id) for t in trays)
        return refs


def _plain(row: Any) -> Dict[str, Any]:
    """JSON-safe dict of an ORM row's columns."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        data[column.name] = value
    return data
