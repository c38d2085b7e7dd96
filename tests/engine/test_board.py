"""Board service tests."""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from app import build_engine
from engine.cache import CacheKey
from engine.core import PipelineEngine
from engine.items import LeadRef, ServiceFileRef, TrayRef

NOW = datetime(2026, 3, 10, 12, 0)
SALES = "Vânzări"


def _lead(engine, layout, stage, name, owner=None, at=None):
    lead_id = engine.db.create_lead({"full_name": name, "assigned_to": owner})
    engine.executor.move(LeadRef(lead_id), layout.pipeline_id(SALES),
                         layout.stage_id(SALES, stage), "vlad", timestamp=at)
    return lead_id


class TestBuildRows:
    """Rows from the store."""

    def test_rows_ordered_by_stage_then_recency(self, engine, layout):
        _lead(engine, layout, "Call Back", "Ana", at=NOW - timedelta(hours=3))
        _lead(engine, layout, "Leads", "Bogdan", at=NOW - timedelta(hours=2))
        _lead(engine, layout, "Leads", "Cristi", at=NOW - timedelta(hours=1))

        rows = engine.board.build_rows(layout.pipeline_id(SALES))

        assert [r["title"] for r in rows] == ["Cristi", "Bogdan", "Ana"]
        assert rows[0]["stageName"] == "Leads"
        assert rows[2]["stageName"] == "Call Back"
        assert rows[0]["itemType"] == "lead"

    def test_row_fields_per_kind(self, engine, layout):
        lead_id = engine.db.create_lead({"full_name": "Ion", "assigned_to": "vlad"})
        file_id = engine.db.create_service_file({"number": "F-9", "lead_id": lead_id, "urgent": True})
        tray_id = engine.db.create_tray({"number": "T3", "technician_id": "mihai"})
        reception = layout.pipeline_id("Receptie")
        engine.executor.move(ServiceFileRef(file_id), reception, layout.stage_id("Receptie", "Noua"))
        engine.executor.move(TrayRef(tray_id), reception, layout.stage_id("Receptie", "In Lucru"))

        rows = {r["itemType"]: r for r in engine.board.build_rows(reception)}

        assert rows["service_file"]["title"] == "F-9"
        assert rows["service_file"]["assignedTo"] == "vlad"
        assert rows["service_file"]["urgent"] is True
        assert rows["service_file"]["locked"] is False
        assert rows["tray"]["assignedTo"] == "mihai"
        assert rows["tray"]["status"] == "in_lucru"

    def test_tags_on_lead_rows(self, engine, layout):
        lead_id = _lead(engine, layout, "Leads", "Ion")
        tag = engine.db.tags.get_or_create("Urgent", "red")
        engine.db.tags.add_to_lead(lead_id, tag.id)

        rows = engine.board.build_rows(layout.pipeline_id(SALES))

        assert rows[0]["tags"] == ["Urgent"]

    def test_viewer_filter(self, engine, layout):
        _lead(engine, layout, "Leads", "Mine", owner="vlad")
        _lead(engine, layout, "Leads", "Theirs", owner="ana")

        rows = engine.board.build_rows(layout.pipeline_id(SALES), filter_key="vlad")

        assert [r["title"] for r in rows] == ["Mine"]

    def test_unknown_pipeline(self, engine):
        assert engine.board.build_rows(999) == []


class TestCachedBoard:
    """Reads through the tiered cache."""

    def test_store_then_memory_then_session(self, engine, layout, clock):
        pipeline_id = layout.pipeline_id(SALES)
        _lead(engine, layout, "Leads", "Ion")

        first = engine.board.get_board(pipeline_id)
        second = engine.board.get_board(pipeline_id)
        clock.advance(seconds=61)
        third = engine.board.get_board(pipeline_id)

        assert first.source == "store"
        assert second.source == "memory"
        assert third.source == "session"
        assert first.rows == second.rows == third.rows
        assert third.refresh is None

    def test_move_shows_on_next_read(self, engine, layout):
        pipeline_id = layout.pipeline_id(SALES)
        lead_id = _lead(engine, layout, "Leads", "Ion")
        engine.board.get_board(pipeline_id)

        engine.executor.move(LeadRef(lead_id), pipeline_id,
                             layout.stage_id(SALES, "Call Back"), "vlad")
        view = engine.board.get_board(pipeline_id)

        assert view.source == "store"
        assert view.rows[0]["stageName"] == "Call Back"

    def test_session_hit_refreshes_in_background(self, seeded_db, clock, test_settings, layout):
        with ThreadPoolExecutor(max_workers=1) as background:
            engine = PipelineEngine(seeded_db, test_settings, clock=clock, background=background)
            pipeline_id = layout.pipeline_id(SALES)
            engine.board.get_board(pipeline_id)
            clock.advance(seconds=61)

            view = engine.board.get_board(pipeline_id)

            assert view.source == "session"
            assert view.refresh is not None
            assert view.refresh.result(timeout=5) == view.rows
        assert engine.cache.get(CacheKey(pipeline_id)).source == "memory"

    def test_to_dict(self, engine, layout):
        view = engine.board.get_board(layout.pipeline_id(SALES), variant="sales")
        assert view.to_dict() == {"items": [], "source": "store"}


class TestRefreshExecutor:
    """The service entry point owns the board-refresh pool."""

    def test_build_engine_wires_pool(self, seeded_db, test_settings):
        engine = build_engine(seeded_db, test_settings.model_copy(update={"board_refresh_workers": 2}))
        pool = engine.background
        try:
            assert isinstance(pool, ThreadPoolExecutor)
            assert engine.board.background is pool
        finally:
            engine.close()

        assert engine.background is None
        assert engine.board.background is None
        with pytest.raises(RuntimeError):
            pool.submit(lambda: None)

    def test_refresh_disabled(self, seeded_db, test_settings):
        engine = build_engine(seeded_db, test_settings.model_copy(update={"board_refresh_workers": 0}))
        assert engine.background is None
        engine.close()
