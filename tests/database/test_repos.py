"""Repository tests.

Tests for:
- PipelineRepository: create_pipeline, seed, deactivate
- PlacementRepository / EventRepository: lookups and removal
- LeadRepository / ServiceFileRepository: rule queries
- TrayRepository / TagRepository
- ArchiveRepository / InvoiceSequenceRepository
- CacheEntryRepository: upsert, prefix delete
- DatabaseManager convenience methods
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from config.role_config import role_config
from database.models import PipelineItem

NOW = datetime(2026, 3, 10, 12, 0)


def _place(db, pipeline_id, stage_id, item_type, item_id, updated_at=NOW):
    with db.get_session() as session:
        session.add(PipelineItem(pipeline_id=pipeline_id, stage_id=stage_id,
                                 item_type=item_type, item_id=item_id,
                                 updated_at=updated_at))
        session.commit()


# ============================================================
# PipelineRepository Tests
# ============================================================
class TestPipelineRepository:
    """Tests for PipelineRepository."""

    def test_create_pipeline_orders_stages(self, temp_db):
        pipeline = temp_db.pipelines.create_pipeline("Receptie", ["Noua", "In Lucru", "Facturat"])
        assert [s.name for s in pipeline.stages] == ["Noua", "In Lucru", "Facturat"]
        assert [s.position for s in pipeline.stages] == [0, 1, 2]

    def test_create_pipeline_requires_stages(self, temp_db):
        with pytest.raises(ValueError):
            temp_db.pipelines.create_pipeline("Gol", [])

    def test_duplicate_active_name_rejected(self, temp_db):
        temp_db.pipelines.create_pipeline("Vânzări", ["Leads"])
        with pytest.raises(ValueError):
            temp_db.pipelines.create_pipeline("Vânzări", ["Leads"])

    def test_seed_is_idempotent(self, temp_db):
        layouts = role_config.get_default_pipelines()
        assert temp_db.seed_pipelines(layouts) == 3
        assert temp_db.seed_pipelines(layouts) == 0
        names = [p.name for p in temp_db.pipelines.get_active_pipelines()]
        assert names == ["Vânzări", "Receptie", "Arhivare"]

    def test_deactivate_hides_pipeline(self, temp_db):
        created = temp_db.create_pipeline("Vânzări", ["Leads"])
        temp_db.pipelines.deactivate(created["id"])
        assert temp_db.pipelines.get_active_pipelines() == []

    def test_deactivate_missing_returns_none(self, temp_db):
        assert temp_db.pipelines.deactivate(999) is None


# ============================================================
# PlacementRepository / EventRepository Tests
# ============================================================
class TestPlacementRepository:
    """Tests for PlacementRepository."""

    def test_lookups(self, temp_db):
        sales = temp_db.create_pipeline("Vânzări", ["Leads", "No Deal"])
        leads_stage = sales["stages"]["Leads"]
        no_deal = sales["stages"]["No Deal"]
        _place(temp_db, sales["id"], leads_stage, "lead", 1)
        _place(temp_db, sales["id"], no_deal, "lead", 2, updated_at=NOW - timedelta(hours=30))

        assert temp_db.placements.get_placement(sales["id"], "lead", 1).stage_id == leads_stage
        assert temp_db.placements.pipelines_for_items("lead", [1, 2, 3]) == {sales["id"]}
        assert len(temp_db.placements.list_pipeline(sales["id"])) == 2
        assert len(temp_db.placements.list_pipeline(sales["id"], stage_id=no_deal)) == 1
        old = temp_db.placements.list_in_stage_since(
            sales["id"], no_deal, "lead", NOW - timedelta(hours=24)
        )
        assert [p.item_id for p in old] == [2]

    def test_delete_item_placements(self, temp_db):
        sales = temp_db.create_pipeline("Vânzări", ["Leads"])
        archive = temp_db.create_pipeline("Arhivare", ["Tăvițe"])
        _place(temp_db, sales["id"], sales["stages"]["Leads"], "tray", 5)
        _place(temp_db, archive["id"], archive["stages"]["Tăvițe"], "tray", 5)

        removed = temp_db.placements.delete_item_placements("tray", 5)
        assert sorted(removed) == sorted([sales["id"], archive["id"]])
        assert temp_db.placements.get_item_placements("tray", 5) == []


class TestEventRepository:
    """Tests for EventRepository."""

    def test_append_and_list(self, temp_db):
        temp_db.events.append("service_file", 1, "colet_ajuns", message="Colet ajuns",
                              created_at=NOW)
        temp_db.events.append("service_file", 1, "stage_change",
                              payload={"to_stage_role": "package_arrived"})
        temp_db.events.append("service_file", 2, "stage_change")

        assert len(temp_db.get_events("service_file", 1)) == 2
        assert temp_db.get_events("service_file", 1, "colet_ajuns")[0]["created_at"] == NOW
        batch = temp_db.events.list_for_items("service_file", [1, 2], ["stage_change"])
        assert [e.item_id for e in batch] == [1, 2]

    def test_list_for_items_empty_inputs(self, temp_db):
        assert temp_db.events.list_for_items("lead", [], ["x"]) == []
        assert temp_db.events.list_for_items("lead", [1], []) == []


# ============================================================
# Entity repository Tests
# ============================================================
class TestLeadRepository:
    """Tests for the lead rule queries."""

    def test_expired_callbacks(self, temp_db):
        due = temp_db.create_lead({"full_name": "A", "callback_date": NOW - timedelta(minutes=1)})
        retry = temp_db.create_lead({"full_name": "B", "nu_raspunde_callback_at": NOW})
        temp_db.create_lead({"full_name": "C", "callback_date": NOW + timedelta(hours=1)})

        ids = [l.id for l in temp_db.leads.get_expired_callbacks(NOW)]
        assert ids == [due, retry]

    def test_dispatched_before(self, temp_db):
        old = temp_db.create_lead({"full_name": "A", "curier_trimis_at": NOW - timedelta(hours=25)})
        temp_db.create_lead({"full_name": "B", "curier_trimis_at": NOW - timedelta(hours=2)})
        office = temp_db.create_lead({"full_name": "C", "office_direct_at": NOW - timedelta(days=2)})

        ids = [l.id for l in temp_db.leads.get_dispatched_before(NOW - timedelta(hours=24))]
        assert ids == [old, office]

    def test_callbacks_between_is_exclusive(self, temp_db):
        inside = temp_db.create_lead({"full_name": "A", "callback_date": NOW + timedelta(hours=3)})
        temp_db.create_lead({"full_name": "B", "callback_date": NOW + timedelta(hours=24)})

        leads = temp_db.leads.get_callbacks_between(NOW - timedelta(hours=24), NOW + timedelta(hours=24))
        assert [l.id for l in leads] == [inside]


class TestServiceFileRepository:
    """Tests for the service file rule queries."""

    def test_dispatched_before_uses_first_set_timestamp(self, temp_db):
        lead = temp_db.create_lead({"full_name": "A"})
        courier = temp_db.create_service_file({
            "number": "F1", "lead_id": lead, "curier_trimis": True,
            "curier_scheduled_at": NOW - timedelta(hours=30),
        })
        temp_db.create_service_file({
            "number": "F2", "lead_id": lead, "office_direct": True,
            "office_direct_at": NOW - timedelta(hours=1),
        })
        temp_db.create_service_file({
            "number": "F3", "curier_trimis": True,
            "curier_scheduled_at": NOW - timedelta(hours=30),
        })

        files = temp_db.service_files.get_dispatched_before(NOW - timedelta(hours=24))
        assert [f.id for f in files] == [courier]

    def test_unclaimed_candidates_exclude_closed_files(self, temp_db):
        scheduled = NOW - timedelta(days=3)
        open_file = temp_db.create_service_file({
            "number": "F1", "curier_trimis": True, "curier_scheduled_at": scheduled,
        })
        temp_db.create_service_file({
            "number": "F2", "curier_trimis": True, "curier_scheduled_at": scheduled,
            "status": "facturata", "is_locked": True,
        })
        temp_db.create_service_file({
            "number": "F3", "curier_trimis": True, "curier_scheduled_at": scheduled,
            "cancelled": True,
        })
        temp_db.create_service_file({
            "number": "F4", "curier_trimis": False, "curier_scheduled_at": scheduled,
        })

        files = temp_db.service_files.get_unclaimed_candidates(NOW - timedelta(hours=48))
        assert [f.id for f in files] == [open_file]

    def test_arrived_package_leaves_unclaimed_candidates(self, temp_db):
        file_id = temp_db.create_service_file({
            "number": "F1", "curier_trimis": True,
            "curier_scheduled_at": NOW - timedelta(days=3),
        })

        assert temp_db.service_files.mark_package_arrived(file_id, NOW) is True
        assert temp_db.service_files.mark_package_arrived(file_id, NOW) is False
        assert temp_db.get_service_file(file_id)["colet_ajuns_at"] == NOW
        assert temp_db.service_files.get_unclaimed_candidates(NOW) == []

    def test_lock_for_invoice_is_taken_once(self, temp_db):
        file_id = temp_db.create_service_file({"number": "F1"})
        archived_id = temp_db.create_service_file({"number": "F2", "archived_at": NOW})

        with temp_db.get_session() as session:
            assert temp_db.service_files.lock_for_invoice(session, file_id, NOW) is True
            assert temp_db.service_files.lock_for_invoice(session, file_id, NOW) is False
            assert temp_db.service_files.lock_for_invoice(session, archived_id, NOW) is False
            session.commit()

        assert temp_db.get_service_file(file_id)["is_locked"] is True

    def test_get_many(self, temp_db):
        first = temp_db.create_service_file({"number": "F1"})
        assert set(temp_db.service_files.get_many([first, 404])) == {first}
        assert temp_db.service_files.get_many([]) == {}

    def test_open_for_lead(self, temp_db):
        lead = temp_db.create_lead({"full_name": "A"})
        first = temp_db.create_service_file({"number": "F1", "lead_id": lead})
        second = temp_db.create_service_file({"number": "F2", "lead_id": lead})
        temp_db.create_service_file({"number": "F3", "lead_id": lead, "archived_at": NOW})

        assert [f.id for f in temp_db.service_files.get_open_for_lead(lead)] == [first, second]
        assert [f.id for f in temp_db.service_files.get_open_for_lead(lead, exclude_id=first)] == [second]


class TestTrayRepository:
    """Tests for TrayRepository."""

    def test_items_and_delete(self, temp_db):
        service_file = temp_db.create_service_file({"number": "F1"})
        tray = temp_db.create_tray(
            {"number": "T1", "service_file_id": service_file},
            items=[{"name": "Ascuțire", "unit_price": Decimal("20")},
                   {"name": "Lamă", "unit_price": Decimal("15"), "qty": 2}],
        )
        assert len(temp_db.trays.get_items([tray])) == 2
        assert temp_db.trays.number_exists("T1") is True
        assert temp_db.trays.delete_items([tray]) == 2
        assert temp_db.trays.get_items([tray]) == []


class TestTagRepository:
    """Tests for TagRepository."""

    def test_add_remove(self, temp_db):
        lead = temp_db.create_lead({"full_name": "A"})
        tag = temp_db.tags.get_or_create("Suna!", "red")

        assert temp_db.tags.add_to_lead(lead, tag.id) is True
        assert temp_db.tags.add_to_lead(lead, tag.id) is False
        assert temp_db.get_lead_tags(lead) == ["Suna!"]
        assert temp_db.tags.leads_with_tag("Suna!", [lead]) == [lead]
        assert temp_db.tags.remove_from_lead(lead, tag.id) is True
        assert temp_db.get_lead_tags(lead) == []

    def test_get_or_create_returns_existing(self, temp_db):
        first = temp_db.tags.get_or_create("Urgent", "red")
        second = temp_db.tags.get_or_create("Urgent", "blue")
        assert first.id == second.id

    def test_add_to_lead_duplicate_insert_keeps_transaction(self, temp_db, monkeypatch):
        lead = temp_db.create_lead({"full_name": "A"})
        tag = temp_db.tags.get_or_create("Suna!", "red")
        temp_db.tags.add_to_lead(lead, tag.id)
        # another writer attached the tag after this one checked
        monkeypatch.setattr(temp_db.tags, "lead_has_tag", lambda *args, **kwargs: False)

        with temp_db.get_session() as session:
            temp_db.events.append("lead", lead, "suna_tag_added", session=session)
            assert temp_db.tags.add_to_lead(lead, tag.id, session=session) is False
            session.commit()

        assert temp_db.get_lead_tags(lead) == ["Suna!"]
        assert len(temp_db.get_events("lead", lead, "suna_tag_added")) == 1


# ============================================================
# Archive repository Tests
# ============================================================
class TestArchiveRepository:
    """Tests for ArchiveRepository / InvoiceSequenceRepository."""

    def test_invoice_sequence_per_year(self, temp_db):
        with temp_db.get_session() as session:
            assert temp_db.invoice_sequences.next_value(session, 2026) == 1
            assert temp_db.invoice_sequences.next_value(session, 2026) == 2
            assert temp_db.invoice_sequences.next_value(session, 2027) == 1
            session.commit()

    def test_invoice_sequence_row_created_by_another_transaction(self, temp_db):
        with temp_db.get_session() as session:
            temp_db.invoice_sequences.next_value(session, 2026)
            session.commit()
        with temp_db.get_session() as session:
            assert temp_db.invoice_sequences.next_value(session, 2026) == 2
            session.commit()

    def test_rolled_back_sequence_is_not_consumed(self, temp_db):
        with temp_db.get_session() as session:
            temp_db.invoice_sequences.next_value(session, 2026)
            session.rollback()
        with temp_db.get_session() as session:
            assert temp_db.invoice_sequences.next_value(session, 2026) == 1

    def test_snapshot_and_supersede(self, temp_db):
        service_file = temp_db.create_service_file({"number": "F1"})
        with temp_db.get_session() as session:
            result = temp_db.archives.create_snapshot(
                session, service_file_id=service_file, lead_id=None,
                invoice_number="F2026-00001", total=Decimal("40.00"),
                snapshot={"totals": {"final_total": "40.00"}},
                line_items=[{"tray_number": "T1", "name": "Ascuțire",
                             "unit_price": Decimal("40"), "qty": 1,
                             "total": Decimal("40.00")}],
                archived_by="ana", created_at=NOW,
            )
            assert result.ok
            session.commit()
            record_id = result.value.id

        assert temp_db.archives.get_active_for_file(service_file).id == record_id
        assert len(temp_db.archives.get_line_items(record_id)) == 1

        with temp_db.get_session() as session:
            record = temp_db.archives.supersede(session, service_file, "greșeală", NOW)
            session.commit()
        assert record.superseded_reason == "greșeală"
        assert temp_db.archives.get_active_for_file(service_file) is None
        assert len(temp_db.archives.list_for_file(service_file)) == 1


# ============================================================
# CacheEntryRepository Tests
# ============================================================
class TestCacheEntryRepository:
    """Tests for CacheEntryRepository."""

    def test_upsert_replaces(self, temp_db):
        temp_db.cache_entries.upsert("server", "kanban_1-all-default", "v1", NOW)
        temp_db.cache_entries.upsert("server", "kanban_1-all-default", "v2", NOW)
        assert temp_db.cache_entries.get_entry("server", "kanban_1-all-default").payload == "v2"

    def test_delete_prefix_is_scoped_and_literal(self, temp_db):
        temp_db.cache_entries.upsert("server", "kanban_1-all-default", "a", NOW)
        temp_db.cache_entries.upsert("server", "kanban_1-ana-default", "b", NOW)
        temp_db.cache_entries.upsert("server", "kanban_12-all-default", "c", NOW)
        temp_db.cache_entries.upsert("other", "kanban_1-all-default", "d", NOW)

        assert temp_db.cache_entries.delete_prefix("server", "kanban_1-") == 2
        assert temp_db.cache_entries.get_entry("server", "kanban_12-all-default") is not None
        assert temp_db.cache_entries.get_entry("other", "kanban_1-all-default") is not None


# ============================================================
# DatabaseManager Tests
# ============================================================
class TestManager:
    """Tests for DatabaseManager convenience methods."""

    def test_properties(self, temp_db):
        assert temp_db.database_url.startswith("sqlite:///")
        assert temp_db.engine is not None
        assert temp_db.ping() is True

    def test_create_lead_requires_name(self, temp_db):
        with pytest.raises(ValueError):
            temp_db.create_lead({"phone": "0700"})

    def test_create_service_file_requires_number(self, temp_db):
        with pytest.raises(ValueError):
            temp_db.create_service_file({"status": "noua"})

    def test_get_service_file(self, temp_db):
        service_file = temp_db.create_service_file({"number": "F9", "urgent": True})
        data = temp_db.get_service_file(service_file)
        assert data["number"] == "F9"
        assert data["urgent"] is True
        assert temp_db.get_service_file(999) is None
