"""ORM model behavior tests.

Tests for:
- Model field defaults
- Pipeline → stage relationship ordering
- Unique constraints (placement per pipeline, lead tag, tag name, cache key,
  invoice number)
- JSON payload columns
"""
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from database.models import (
    Pipeline, Stage, PipelineItem, Lead, ServiceFile, Tray, TrayItem,
    Tag, LeadTag, ItemEvent, ArchiveRecord, BoardCacheEntry,
)


class TestPipelineModel:
    """Test Pipeline / Stage models."""

    def test_create_pipeline_with_defaults(self, temp_db):
        with temp_db.get_session() as session:
            pipeline = Pipeline(name="Vânzări")
            session.add(pipeline)
            session.commit()

            assert pipeline.id is not None
            assert pipeline.is_active is True
            assert pipeline.position == 0
            assert pipeline.created_at is not None

    def test_stages_ordered_by_position(self, temp_db):
        with temp_db.get_session() as session:
            pipeline = Pipeline(name="Receptie")
            session.add(pipeline)
            session.flush()
            session.add_all([
                Stage(pipeline_id=pipeline.id, name="Facturat", position=2),
                Stage(pipeline_id=pipeline.id, name="Noua", position=0),
                Stage(pipeline_id=pipeline.id, name="In Lucru", position=1),
            ])
            session.commit()
            session.refresh(pipeline)

            assert [s.name for s in pipeline.stages] == ["Noua", "In Lucru", "Facturat"]


class TestPipelineItemModel:
    """Test placement uniqueness."""

    def test_one_placement_per_pipeline(self, temp_db):
        created = temp_db.create_pipeline("Vânzări", ["Leads", "No Deal"])
        stage_id = created["stages"]["Leads"]
        with temp_db.get_session() as session:
            session.add(PipelineItem(pipeline_id=created["id"], stage_id=stage_id,
                                     item_type="lead", item_id=1))
            session.commit()
            session.add(PipelineItem(pipeline_id=created["id"], stage_id=stage_id,
                                     item_type="lead", item_id=1))
            with pytest.raises(IntegrityError):
                session.commit()

    def test_same_item_in_two_pipelines(self, temp_db):
        sales = temp_db.create_pipeline("Vânzări", ["Leads"])
        archive = temp_db.create_pipeline("Arhivare", ["Leaduri"])
        with temp_db.get_session() as session:
            session.add(PipelineItem(pipeline_id=sales["id"], stage_id=sales["stages"]["Leads"],
                                     item_type="lead", item_id=1))
            session.add(PipelineItem(pipeline_id=archive["id"], stage_id=archive["stages"]["Leaduri"],
                                     item_type="lead", item_id=1))
            session.commit()
            assert session.query(PipelineItem).count() == 2


class TestEntityModels:
    """Test lead / service file / tray defaults."""

    def test_lead_defaults(self, temp_db):
        with temp_db.get_session() as session:
            lead = Lead(full_name="Maria Pop")
            session.add(lead)
            session.commit()
            assert lead.curier_trimis_at is None
            assert lead.no_deal_at is None
            assert lead.created_at is not None

    def test_service_file_defaults(self, temp_db):
        with temp_db.get_session() as session:
            service_file = ServiceFile(number="F-100")
            session.add(service_file)
            session.commit()
            assert service_file.status == "noua"
            assert service_file.is_locked is False
            assert service_file.no_deal is False
            assert service_file.colet_neridicat is False
            assert service_file.colet_ajuns is False
            assert service_file.colet_ajuns_at is None
            assert service_file.cancelled is False
            assert service_file.archived_at is None

    def test_invoice_number_unique(self, temp_db):
        with temp_db.get_session() as session:
            session.add(ServiceFile(number="F-1", invoice_number="F2026-00001"))
            session.commit()
            session.add(ServiceFile(number="F-2", invoice_number="F2026-00001"))
            with pytest.raises(IntegrityError):
                session.commit()

    def test_tray_with_items(self, temp_db):
        with temp_db.get_session() as session:
            tray = Tray(number="T1")
            session.add(tray)
            session.flush()
            session.add(TrayItem(tray_id=tray.id, name="Ascuțire", unit_price=Decimal("25.50"), qty=2))
            session.commit()
            session.refresh(tray)

            assert tray.status == "in_lucru"
            assert tray.deletable is False
            assert len(tray.items) == 1
            assert tray.items[0].unit_price == Decimal("25.50")


class TestTagModels:
    """Test tag uniqueness."""

    def test_tag_name_unique(self, temp_db):
        with temp_db.get_session() as session:
            session.add(Tag(name="Suna!"))
            session.commit()
            session.add(Tag(name="Suna!"))
            with pytest.raises(IntegrityError):
                session.commit()

    def test_lead_tag_unique(self, temp_db):
        with temp_db.get_session() as session:
            lead = Lead(full_name="Ion")
            tag = Tag(name="Urgent", color="red")
            session.add_all([lead, tag])
            session.flush()
            session.add(LeadTag(lead_id=lead.id, tag_id=tag.id))
            session.commit()
            session.add(LeadTag(lead_id=lead.id, tag_id=tag.id))
            with pytest.raises(IntegrityError):
                session.commit()


class TestJsonColumns:
    """Test JSON payload columns."""

    def test_event_payload_roundtrip(self, temp_db):
        with temp_db.get_session() as session:
            event = ItemEvent(item_type="lead", item_id=1, event_type="stage_change",
                              payload={"to_stage": "Avem Comandă", "from_stage_id": None})
            session.add(event)
            session.commit()
            event_id = event.id

        with temp_db.get_session() as session:
            event = session.get(ItemEvent, event_id)
            assert event.payload["to_stage"] == "Avem Comandă"
            assert event.payload["from_stage_id"] is None

    def test_archive_snapshot(self, temp_db):
        with temp_db.get_session() as session:
            service_file = ServiceFile(number="F-1")
            session.add(service_file)
            session.flush()
            record = ArchiveRecord(service_file_id=service_file.id, invoice_number="F2026-00001",
                                   total=Decimal("10.00"), snapshot={"trays": []})
            session.add(record)
            session.commit()
            assert record.snapshot == {"trays": []}
            assert record.superseded_at is None

    def test_cache_key_unique_per_scope(self, temp_db):
        stored_at = datetime(2026, 3, 10, 12, 0)
        with temp_db.get_session() as session:
            session.add(BoardCacheEntry(scope="a", cache_key="kanban_1-all-default",
                                        payload="{}", stored_at=stored_at))
            session.add(BoardCacheEntry(scope="b", cache_key="kanban_1-all-default",
                                        payload="{}", stored_at=stored_at))
            session.commit()
            session.add(BoardCacheEntry(scope="a", cache_key="kanban_1-all-default",
                                        payload="{}", stored_at=stored_at))
            with pytest.raises(IntegrityError):
                session.commit()
