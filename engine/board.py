"""Board reads through the tiered cache.

A board is the list of placements of one pipeline, optionally narrowed to
one viewer, rendered as JSON-ready rows. Rows are served from the cache
when possible; a layer-2 hit is answered immediately and refreshed in the
background.
"""
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from database.manager import DatabaseManager
from database.models import Lead, ServiceFile, Tray
from .cache import CacheKey, SESSION, TieredCache
from .clock import Clock
from .items import ItemKind
from .stage_directory import StageDirectory


@dataclass
class BoardView:
    rows: List[Dict[str, Any]]
    source: str
    refresh: Optional[Future] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"items": self.rows, "source": self.source}


class BoardService:
    """Builds and caches board rows.

    Args:
        db: item store.
        directory: stage names for rows.
        cache: tiered cache.
        clock: time source.
        background: executor for layer-2 refreshes; refreshes are skipped
            when None.
    """

    def __init__(self, db: DatabaseManager, directory: StageDirectory,
                 cache: TieredCache, clock: Clock,
                 background: Optional[Executor] = None) -> None:
        self.db = db
        self.directory = directory
        self.cache = cache
        self.clock = clock
        self.background = background

    def get_board(self, pipeline_id: int, filter_key: Optional[str] = None,
                  variant: str = "default") -> BoardView:
        """Board rows for a pipeline.

        Args:
            pipeline_id: pipeline to render.
            filter_key: viewer filter (actor id), None for everyone.
            variant: board type, selects the layer-2 TTL.

        Returns:
            BoardView with ``source`` ``memory``, ``session`` or ``store``.
        """
        key = CacheKey(pipeline_id, filter_key, variant)
        hit = self.cache.get(key)
        if hit is not None:
            view = BoardView(hit.entry.items, hit.source)
            if hit.source == SESSION and self.background is not None:
                view.refresh = self.background.submit(self.refresh, key)
            return view
        return BoardView(self.refresh(key), "store")

    def refresh(self, key: CacheKey) -> List[Dict[str, Any]]:
        """Rebuild rows from the store and cache them."""
        generation = self.cache.generation(key.pipeline_id)
        as_of = self.clock.now()
        rows = self.build_rows(key.pipeline_id, key.filter_key)
        if not self.cache.put(key, rows, as_of=as_of, generation=generation):
            logger.debug(f"Board {key} changed while rebuilding; not cached")
        return rows

    def build_rows(self, pipeline_id: int,
                   filter_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Rows of a pipeline ordered by stage position, then most recent first."""
        pipeline = self.directory.get_pipeline(pipeline_id)
        if pipeline is None:
            return []
        stages = {stage.id: stage for stage in pipeline.stages}
        placements = self.db.placements.list_pipeline(pipeline_id)

        ids: Dict[ItemKind, List[int]] = {kind: [] for kind in ItemKind}
        for placement in placements:
            ids[ItemKind(placement.item_type)].append(placement.item_id)

        with self.db.get_session() as session:
            leads = _by_id(session, Lead, ids[ItemKind.LEAD])
            files = _by_id(session, ServiceFile, ids[ItemKind.SERVICE_FILE])
            trays = _by_id(session, Tray, ids[ItemKind.TRAY])
            file_leads = _by_id(session, Lead, [
                f.lead_id for f in files.values() if f.lead_id
            ])
        tags = self.db.tags.names_for_leads(ids[ItemKind.LEAD])

        rows = []
        for placement in placements:
            kind = ItemKind(placement.item_type)
            row = self._row(kind, placement.item_id, leads, files, trays,
                            file_leads, tags, filter_key)
            if row is None:
                continue
            stage = stages.get(placement.stage_id)
            row.update({
                "itemType": kind.value,
                "itemId": placement.item_id,
                "stageId": placement.stage_id,
                "stageName": stage.name if stage else None,
                "stagePosition": stage.position if stage else None,
                "updatedAt": placement.updated_at.isoformat() if placement.updated_at else None,
            })
            rows.append(row)
        rows.sort(key=lambda r: r["updatedAt"] or "", reverse=True)
        rows.sort(key=lambda r: (r["stagePosition"] is None, r["stagePosition"] or 0))
        return rows

    @staticmethod
    def _row(kind: ItemKind, item_id: int, leads, files, trays, file_leads,
             tags, filter_key: Optional[str]) -> Optional[Dict[str, Any]]:
        if kind is ItemKind.LEAD:
            lead = leads.get(item_id)
            if lead is None or (filter_key and lead.assigned_to != filter_key):
                return None
            return {"title": lead.full_name, "assignedTo": lead.assigned_to,
                    "tags": tags.get(lead.id, [])}
        if kind is ItemKind.SERVICE_FILE:
            service_file = files.get(item_id)
            if service_file is None:
                return None
            lead = file_leads.get(service_file.lead_id)
            owner = lead.assigned_to if lead else None
            if filter_key and owner != filter_key:
                return None
            return {"title": service_file.number, "assignedTo": owner,
                    "status": service_file.status,
                    "urgent": bool(service_file.urgent),
                    "locked": bool(service_file.is_locked)}
        tray = trays.get(item_id)
        if tray is None or (filter_key and tray.technician_id != filter_key):
            return None
        return {"title": tray.number, "assignedTo": tray.technician_id,
                "status": tray.status}


def _by_id(session, model, ids) -> Dict[int, Any]:
    ids = list(set(ids))
    if not ids:
        return {}
    return {row.id: row for row in session.query(model).filter(model.id.in_(ids)).all()}
