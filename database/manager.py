"""Database manager - the store facade.

DatabaseManager is the single entry point of the database package. It
composes every repository and offers two APIs:

1. **Repository access** (fine grained):
   ``db.pipelines``, ``db.placements``, ``db.leads``... return ORM objects,
   for code that manages its own sessions and transactions.

2. **Convenience methods** (coarse grained):
   flat methods such as ``create_lead()`` or ``get_placement()`` that take
   and return dicts / plain values, for the HTTP layer, scripts and tests.
"""
from typing import Optional, List, Dict, Any
from sqlalchemy import text
from sqlalchemy.orm import Session

from .connection import DatabaseConnection
from .pipeline_repos import (
    PipelineRepository, PlacementRepository, EventRepository
)
from .entity_repos import (
    LeadRepository, ServiceFileRepository, TrayRepository, TagRepository
)
from .archive_repos import ArchiveRepository, InvoiceSequenceRepository
from .system_repos import CacheEntryRepository
from .models import Lead, ServiceFile, Tray, TrayItem, ItemEvent, PipelineItem


class DatabaseManager:
    """Database manager - store facade.

    Attributes:
        conn: connection manager.
        pipelines: pipelines and stages.
        placements: pipeline item placements.
        events: append-only item event log.
        leads: leads.
        service_files: service files.
        trays: trays and tray line items.
        tags: lead tags.
        archives: invoice archive records.
        invoice_sequences: invoice number counters.
        cache_entries: durable board cache rows.

    Example::

        db = DatabaseManager("sqlite:///data/pipeline.db")
        db.create_tables()

        # repository access (ORM objects)
        pipelines = db.pipelines.get_active_pipelines()

        # convenience access (dicts)
        lead_id = db.create_lead({"full_name": "Ion Popescu"})
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """Initialise the manager.

        Args:
            database_url: connection URL; settings value when None.
        """
        # infrastructure
        self.conn = DatabaseConnection(database_url)

        # pipeline model
        self.pipelines = PipelineRepository(self.conn)
        self.placements = PlacementRepository(self.conn)
        self.events = EventRepository(self.conn)

        # entities
        self.leads = LeadRepository(self.conn)
        self.service_files = ServiceFileRepository(self.conn)
        self.trays = TrayRepository(self.conn)
        self.tags = TagRepository(self.conn)

        # invoicing
        self.archives = ArchiveRepository(self.conn)
        self.invoice_sequences = InvoiceSequenceRepository(self.conn)

        # system
        self.cache_entries = CacheEntryRepository(self.conn)

    # ================================================================
    # Infrastructure
    # ================================================================

    def create_tables(self) -> None:
        """Create every table (idempotent)."""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """Return a new session."""
        return self.conn.get_session()

    @property
    def database_url(self) -> str:
        """Connection URL."""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy engine."""
        return self.conn.engine

    def ping(self) -> bool:
        """Check that the store answers a trivial query.

        Returns:
            True when readable. Errors propagate to the caller.
        """
        with self.get_session() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        """Release every connection."""
        self.conn.close()

    # ================================================================
    # Convenience writes
    # ================================================================

    def seed_pipelines(self, layouts: List[Dict[str, Any]]) -> int:
        """Create the missing pipelines of ``layouts``.

        Returns:
            Number of pipelines created.
        """
        return self.pipelines.seed(layouts)

    def create_pipeline(self, name: str, stage_names: List[str]) -> Dict[str, Any]:
        """Create a pipeline.

        Returns:
            ``{"id", "name", "stages": {stage name: stage id}}``.
        """
        pipeline = self.pipelines.create_pipeline(name, stage_names)
        return {
            "id": pipeline.id,
            "name": pipeline.name,
            "stages": {stage.name: stage.id for stage in pipeline.stages},
        }

    def create_lead(self, lead_data: Dict[str, Any]) -> int:
        """Create a lead.

        Args:
            lead_data: Lead column values; ``full_name`` is required.

        Returns:
            New lead id.
        """
        if not lead_data.get("full_name"):
            raise ValueError("full_name is required")
        return self.leads.create(Lead, **lead_data).id

    def create_service_file(self, file_data: Dict[str, Any]) -> int:
        """Create a service file.

        Args:
            file_data: ServiceFile column values; ``number`` is required.

        Returns:
            New service file id.
        """
        if not file_data.get("number"):
            raise ValueError("number is required")
        return self.service_files.create(ServiceFile, **file_data).id

    def create_tray(self, tray_data: Dict[str, Any],
                    items: Optional[List[Dict[str, Any]]] = None) -> int:
        """Create a tray with its line items.

        Args:
            tray_data: Tray column values; ``number`` is required.
            items: TrayItem column values (``name``, ``unit_price``, ``qty``...).

        Returns:
            New tray id.
        """
        if not tray_data.get("number"):
            raise ValueError("number is required")
        with self.get_session() as session:
            tray = self.trays.create(Tray, session=session, **tray_data)
            for item in items or []:
                self.trays.create(TrayItem, session=session,
                                  tray_id=tray.id, **item)
            session.commit()
            return tray.id

    # ================================================================
    # Convenience queries
    # ================================================================

    def get_placement(self, pipeline_id: int, item_type: str,
                      item_id: int) -> Optional[Dict[str, Any]]:
        """Current placement of an item in a pipeline, as a dict."""
        placement = self.placements.get_placement(pipeline_id, item_type, item_id)
        if placement is None:
            return None
        return _placement_dict(placement)

    def get_events(self, item_type: str, item_id: int,
                   event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Event log of one item, oldest first."""
        return [
            _event_dict(event)
            for event in self.events.list_for_item(item_type, item_id, event_type)
        ]

    def get_service_file(self, service_file_id: int) -> Optional[Dict[str, Any]]:
        record = self.service_files.get_by_id(ServiceFile, service_file_id)
        if record is None:
            return None
        return {
            column.name: getattr(record, column.name)
            for column in ServiceFile.__table__.columns
        }

    def get_lead_tags(self, lead_id: int) -> List[str]:
        return self.tags.names_for_leads([lead_id]).get(lead_id, [])


def _placement_dict(placement: PipelineItem) -> Dict[str, Any]:
    return {
        "id": placement.id,
        "pipeline_id": placement.pipeline_id,
        "stage_id": placement.stage_id,
        "item_type": placement.item_type,
        "item_id": placement.item_id,
        "updated_at": placement.updated_at,
    }


def _event_dict(event: ItemEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "item_type": event.item_type,
        "item_id": event.item_id,
        "event_type": event.event_type,
        "message": event.message,
        "payload": event.payload or {},
        "actor_id": event.actor_id,
        "created_at": event.created_at,
    }
