"""Invoicing / archival state machine tests.

Tests for:
- invoice: numbering, lock, archive snapshot, line item removal, event
- invoice validation and role checks
- atomic rollback when the snapshot cannot be written
- concurrent invoicing of one file issues one invoice
- cancel_invoice: reason, roles, superseded snapshot
- archive_and_release: Arhivare pipeline path and tray release fallback
- lead tag sync
"""
import threading
from datetime import datetime
from decimal import Decimal

import pytest

from database.models import Tray
from engine.invoicing import BillingData
from engine.items import LeadRef, ServiceFileRef, TrayRef
from engine.results import ErrorCode, Result

NOW = datetime(2026, 3, 10, 12, 0)
SALES = "Vânzări"
BILLING = {"payment_method": "card", "global_discount_pct": 0, "note": "Mulțumim"}


@pytest.fixture
def workshop(engine, layout):
    """A lead with one finished service file holding tray T1 (two line items)."""
    lead_id = engine.db.create_lead({"full_name": "Ion Popescu", "assigned_to": "vlad"})
    file_id = engine.db.create_service_file({"number": "F-100", "lead_id": lead_id})
    tray_id = engine.db.create_tray(
        {"number": "T1", "service_file_id": file_id, "status": "finalizata"},
        items=[
            {"name": "Ascuțire", "unit_price": Decimal("25.50"), "qty": 2},
            {"name": "Reparație", "unit_price": Decimal("100"), "discount_pct": Decimal("10")},
        ],
    )
    reception = layout.pipeline_id("Receptie")
    engine.executor.move(LeadRef(lead_id), layout.pipeline_id(SALES),
                         layout.stage_id(SALES, "Avem Comandă"), "vlad")
    engine.executor.move(ServiceFileRef(file_id), reception,
                         layout.stage_id("Receptie", "De Facturat"), "ioana")
    engine.executor.move(TrayRef(tray_id), reception,
                         layout.stage_id("Receptie", "In Lucru"), "ioana")
    return {"lead_id": lead_id, "file_id": file_id, "tray_id": tray_id}


def _invoice(engine, workshop, actor="vlad", billing=None):
    return engine.invoicing.invoice(workshop["file_id"], billing or BILLING, actor)


# ============================================================================
# Invoice
# ============================================================================

class TestInvoice:
    """Issuing an invoice."""

    def test_invoice_locks_and_snapshots(self, engine, workshop):
        result = _invoice(engine, workshop)

        assert result.ok
        outcome = result.value
        assert outcome.invoice_number == "F2026-00001"
        assert outcome.total == Decimal("141.00")
        assert outcome.to_dict()["total"] == 141.0

        record = engine.db.get_service_file(workshop["file_id"])
        assert record["is_locked"] is True
        assert record["status"] == "facturata"
        assert record["invoice_number"] == "F2026-00001"
        assert record["invoiced_at"] == NOW
        assert record["card"] is True
        assert record["cash"] is False

        archive = engine.db.archives.get_active_for_file(workshop["file_id"])
        assert archive.id == outcome.archive_id
        assert archive.snapshot["service_file"]["number"] == "F-100"
        assert archive.snapshot["lead"]["full_name"] == "Ion Popescu"
        assert len(archive.snapshot["trays"][0]["items"]) == 2
        assert archive.snapshot["billing"]["note"] == "Mulțumim"
        assert len(engine.db.archives.get_line_items(archive.id)) == 2

        assert engine.db.trays.get_items([workshop["tray_id"]]) == []
        events = engine.db.get_events("service_file", workshop["file_id"], "factura_emisa")
        assert len(events) == 1
        assert events[0]["message"] == "Factura F2026-00001 emisă. Total: 141.00 RON"

    def test_second_invoice_rejected(self, engine, workshop):
        assert _invoice(engine, workshop).ok

        again = _invoice(engine, workshop)

        assert again.error.code is ErrorCode.INVALID_STATE
        assert len(engine.db.archives.list_for_file(workshop["file_id"])) == 1

    def test_numbers_increase(self, engine, workshop):
        other_id = engine.db.create_service_file({"number": "F-101"})
        engine.db.create_tray({"number": "T2", "service_file_id": other_id, "status": "finalizata"})

        first = _invoice(engine, workshop)
        second = engine.invoicing.invoice(other_id, {"metodaPlata": "cash"}, "ana")

        assert first.value.invoice_number == "F2026-00001"
        assert second.value.invoice_number == "F2026-00002"
        assert second.value.total == Decimal("0.00")

    def test_global_discount_and_urgency(self, engine, workshop):
        with engine.db.get_session() as session:
            for item in engine.db.trays.get_items([workshop["tray_id"]], session=session):
                item.urgent = True
            session.commit()

        result = _invoice(engine, workshop, billing={
            "payment_method": "cash", "global_discount_pct": "10", "urgent": True,
        })

        # (51 + 90) less 10% urgency = 126.90, less 10% global = 114.21
        assert result.value.total == Decimal("114.21")
        assert engine.db.get_service_file(workshop["file_id"])["urgent"] is True

    def test_board_cache_invalidated(self, engine, workshop, layout):
        reception = layout.pipeline_id("Receptie")
        engine.board.get_board(reception)

        _invoice(engine, workshop)
        view = engine.board.get_board(reception)

        assert view.source == "store"
        file_row = [r for r in view.rows if r["itemType"] == "service_file"][0]
        assert file_row["locked"] is True

    def test_file_keeps_its_stage(self, engine, workshop, layout):
        reception = layout.pipeline_id("Receptie")

        _invoice(engine, workshop)

        placement = engine.db.get_placement(reception, "service_file", workshop["file_id"])
        assert placement["stage_id"] == layout.stage_id("Receptie", "De Facturat")
        assert len(engine.db.get_events("service_file", workshop["file_id"], "stage_change")) == 1


class TestInvoiceValidation:
    """Rejected invoices change nothing."""

    def test_missing_payment_method(self, engine, workshop):
        result = _invoice(engine, workshop, billing={"global_discount_pct": 150})

        assert result.error.code is ErrorCode.VALIDATION_FAILED
        assert result.error.validation_errors == [
            "payment_method is required",
            "global_discount_pct must be between 0 and 100",
        ]
        assert engine.db.get_service_file(workshop["file_id"])["is_locked"] is False

    def test_unfinished_trays(self, engine, workshop):
        with engine.db.get_session() as session:
            session.get(Tray, workshop["tray_id"]).status = "in_lucru"
            session.commit()

        result = _invoice(engine, workshop)

        assert result.error.validation_errors == ["1 tray(s) not finalized"]

    def test_no_trays(self, engine):
        file_id = engine.db.create_service_file({"number": "F-EMPTY"})
        result = engine.invoicing.invoice(file_id, BILLING, "vlad")
        assert result.error.validation_errors == ["No trays found"]

    def test_bad_discount_type(self):
        errors = BillingData(payment_method="cash", global_discount_pct="abc").validate()
        assert errors == ["global_discount_pct must be a number"]

    def test_unknown_file(self, engine):
        assert engine.invoicing.invoice(404, BILLING, "vlad").error.code is ErrorCode.NOT_FOUND

    def test_billing_data_must_be_object(self, engine, workshop):
        result = _invoice(engine, workshop, billing=["card"])

        assert result.error.code is ErrorCode.VALIDATION_FAILED
        assert engine.db.get_service_file(workshop["file_id"])["is_locked"] is False

    @pytest.mark.parametrize("actor", ["mihai", "ioana", None, "stranger"])
    def test_role_required(self, engine, workshop, actor):
        result = _invoice(engine, workshop, actor=actor)
        assert result.error.code is ErrorCode.UNAUTHORIZED


class TestInvoiceAtomicity:
    """A failed snapshot rolls the whole invoice back."""

    def test_snapshot_failure_rolls_back(self, engine, workshop, monkeypatch):
        def _fail(session, **kwargs):
            return Result.failure(ErrorCode.INVALID_STATE, "Archive record could not be created: disk full")

        monkeypatch.setattr(engine.db.archives, "create_snapshot", _fail)
        result = _invoice(engine, workshop)

        assert result.error.code is ErrorCode.INVALID_STATE
        record = engine.db.get_service_file(workshop["file_id"])
        assert record["is_locked"] is False
        assert record["invoice_number"] is None
        assert record["status"] == "noua"
        assert len(engine.db.trays.get_items([workshop["tray_id"]])) == 2
        assert engine.db.get_events("service_file", workshop["file_id"], "factura_emisa") == []

        monkeypatch.undo()
        assert _invoice(engine, workshop).value.invoice_number == "F2026-00001"


class TestConcurrentInvoicing:
    """Invoice requests racing on the same database."""

    @staticmethod
    def _race(*calls):
        barrier = threading.Barrier(len(calls))
        results = [None] * len(calls)

        def _run(index, call):
            barrier.wait()
            results[index] = call()

        threads = [threading.Thread(target=_run, args=(i, call))
                   for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(60)
        return results

    def test_same_file_invoiced_once(self, engine, workshop):
        results = self._race(lambda: _invoice(engine, workshop),
                             lambda: _invoice(engine, workshop, actor="ana"))

        issued = [r for r in results if r.ok]
        rejected = [r for r in results if not r.ok]
        assert len(issued) == 1
        assert len(rejected) == 1
        assert rejected[0].error.code is ErrorCode.INVALID_STATE
        assert issued[0].value.invoice_number == "F2026-00001"
        assert len(engine.db.archives.list_for_file(workshop["file_id"])) == 1
        events = engine.db.get_events("service_file", workshop["file_id"], "factura_emisa")
        assert len(events) == 1

        # the rejected request consumed no number
        other_id = engine.db.create_service_file({"number": "F-101"})
        engine.db.create_tray({"number": "T2", "service_file_id": other_id, "status": "finalizata"})
        assert engine.invoicing.invoice(other_id, BILLING, "vlad").value.invoice_number == "F2026-00002"

    def test_first_invoices_of_the_year_get_distinct_numbers(self, engine, workshop):
        other_id = engine.db.create_service_file({"number": "F-101"})
        engine.db.create_tray({"number": "T2", "service_file_id": other_id, "status": "finalizata"})

        results = self._race(lambda: _invoice(engine, workshop),
                             lambda: engine.invoicing.invoice(other_id, BILLING, "ana"))

        assert all(r.ok for r in results)
        assert sorted(r.value.invoice_number for r in results) == ["F2026-00001", "F2026-00002"]


# ============================================================================
# Cancel
# ============================================================================

class TestCancelInvoice:
    """Reopening an invoiced file."""

    def test_cancel_reopens(self, engine, workshop):
        invoiced = _invoice(engine, workshop).value

        result = engine.invoicing.cancel_invoice(workshop["file_id"], "Client a refuzat", "ana")

        assert result.ok
        assert result.value == {"serviceFileId": workshop["file_id"],
                                "invoiceNumber": "F2026-00001",
                                "archiveId": invoiced.archive_id}
        record = engine.db.get_service_file(workshop["file_id"])
        assert record["is_locked"] is False
        assert record["status"] == "in_lucru"
        assert record["cancelled"] is True
        assert record["cancel_reason"] == "Client a refuzat"
        assert record["cancelled_by"] == "ana"
        assert record["card"] is False

        archive = engine.db.archives.list_for_file(workshop["file_id"])[0]
        assert archive.superseded_at == NOW
        assert archive.superseded_reason == "Client a refuzat"
        assert engine.db.archives.get_active_for_file(workshop["file_id"]) is None
        event = engine.db.get_events("service_file", workshop["file_id"], "factura_anulata")[0]
        assert event["message"] == "Factura F2026-00001 anulată. Motiv: Client a refuzat"

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_required(self, engine, workshop, reason):
        _invoice(engine, workshop)

        result = engine.invoicing.cancel_invoice(workshop["file_id"], reason, "ana")

        assert result.error.code is ErrorCode.VALIDATION_FAILED
        assert result.error.message == "Motivul anulării este obligatoriu"
        assert engine.db.get_service_file(workshop["file_id"])["is_locked"] is True

    def test_sales_cannot_cancel(self, engine, workshop):
        _invoice(engine, workshop)
        result = engine.invoicing.cancel_invoice(workshop["file_id"], "greșeală", "vlad")
        assert result.error.code is ErrorCode.UNAUTHORIZED

    def test_not_invoiced(self, engine, workshop):
        result = engine.invoicing.cancel_invoice(workshop["file_id"], "greșeală", "ana")
        assert result.error.code is ErrorCode.INVALID_STATE

    def test_archived_file_cannot_be_cancelled(self, engine, workshop):
        _invoice(engine, workshop)
        engine.invoicing.archive_and_release(workshop["file_id"], "ioana")

        result = engine.invoicing.cancel_invoice(workshop["file_id"], "greșeală", "ana")

        assert result.error.code is ErrorCode.INVALID_STATE


# ============================================================================
# Archive and release
# ============================================================================

class TestArchiveAndRelease:
    """Taking an invoiced file off the live boards."""

    def test_requires_invoice(self, engine, workshop):
        result = engine.invoicing.archive_and_release(workshop["file_id"], "ioana")
        assert result.error.code is ErrorCode.INVALID_STATE

    def test_requires_role(self, engine, workshop):
        _invoice(engine, workshop)
        result = engine.invoicing.archive_and_release(workshop["file_id"], "vlad")
        assert result.error.code is ErrorCode.UNAUTHORIZED

    def test_archive_pipeline(self, engine, workshop, layout):
        _invoice(engine, workshop)

        result = engine.invoicing.archive_and_release(workshop["file_id"], "ioana")

        outcome = result.value
        assert outcome.used_archive_pipeline is True
        assert (outcome.lead_moved, outcome.file_moved, outcome.trays_moved) == (True, True, 1)
        archive = layout.pipeline_id("Arhivare")
        assert engine.db.get_placement(archive, "lead", workshop["lead_id"])["stage_id"] == \
            layout.stage_id("Arhivare", "Leaduri")
        assert engine.db.get_placement(archive, "service_file", workshop["file_id"])["stage_id"] == \
            layout.stage_id("Arhivare", "Fișe")
        assert engine.db.get_placement(archive, "tray", workshop["tray_id"])["stage_id"] == \
            layout.stage_id("Arhivare", "Tăvițe")
        assert engine.db.get_service_file(workshop["file_id"])["archived_at"] == NOW

    def test_archive_is_recorded_once(self, engine, workshop):
        _invoice(engine, workshop)
        engine.invoicing.archive_and_release(workshop["file_id"], "ioana")
        engine.invoicing.archive_and_release(workshop["file_id"], "ioana")

        events = engine.db.get_events("service_file", workshop["file_id"], "service_file_archived")
        assert len(events) == 1

    def test_release_fallback(self, engine, workshop, layout):
        _invoice(engine, workshop)
        engine.deactivate_pipeline(layout.pipeline_id("Arhivare"))

        result = engine.invoicing.archive_and_release(workshop["file_id"], "ioana")

        outcome = result.value
        assert outcome.used_archive_pipeline is False
        assert outcome.released_trays == 1
        assert outcome.lead_moved is True
        with engine.db.get_session() as session:
            tray = session.get(Tray, workshop["tray_id"])
            assert tray.number == "T1-copy1"
            assert tray.deletable is True
            assert tray.released_at == NOW
        assert engine.db.placements.get_item_placements("tray", workshop["tray_id"]) == []
        assert engine.db.get_placement(layout.pipeline_id(SALES), "lead", workshop["lead_id"])["stage_id"] == \
            layout.stage_id(SALES, "Arhivat")
        released = engine.db.get_events("tray", workshop["tray_id"], "tray_released")[0]
        assert released["payload"]["old_number"] == "T1"

    def test_release_picks_free_copy_number(self, engine, workshop, layout):
        engine.db.create_tray({"number": "T1-copy1"})
        _invoice(engine, workshop)
        engine.deactivate_pipeline(layout.pipeline_id("Arhivare"))

        engine.invoicing.archive_and_release(workshop["file_id"], "ioana")

        with engine.db.get_session() as session:
            assert session.get(Tray, workshop["tray_id"]).number == "T1-copy2"

    def test_tag_sync(self, engine, workshop):
        engine.db.create_service_file({"number": "F-102", "lead_id": workshop["lead_id"], "urgent": True})
        retur = engine.db.tags.get_or_create("Retur", "orange")
        engine.db.tags.add_to_lead(workshop["lead_id"], retur.id)
        _invoice(engine, workshop)

        engine.invoicing.archive_and_release(workshop["file_id"], "ioana")

        assert engine.db.get_lead_tags(workshop["lead_id"]) == ["Urgent"]


class TestBillingData:
    def test_camel_case_keys(self):
        billing = BillingData.from_dict({"metodaPlata": "cash", "discountGlobal": 5,
                                         "noteFactura": "x"})
        assert billing.payment_method == "cash"
        assert billing.global_discount_pct == 5
        assert billing.note == "x"
        assert billing.validate() == []
