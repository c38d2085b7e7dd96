"""Pipeline repositories - pipelines, stages, placements and the event log.

These are the rows the transition engine owns. Entity rows (leads, service
files, trays) live in entity_repos.py.
"""
from typing import Optional, List, Dict, Any, Iterable, Set
from datetime import datetime
from sqlalchemy.orm import Session, selectinload

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import Pipeline, Stage, PipelineItem, ItemEvent


class PipelineRepository(BaseCRUD):
    """Pipeline and stage repository."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_pipeline(self, name: str, stage_names: List[str],
                        position: int = 0,
                        session: Optional[Session] = None) -> Pipeline:
        """Create a pipeline with its stages in the given order.

        Args:
            name: pipeline display name.
            stage_names: stage names, in board order.
            position: ordering among pipelines.
            session: external session (optional).

        Returns:
            The new Pipeline, stages loaded.

        Raises:
            ValueError: an active pipeline with the same name exists, or no
                stages were given.
        """
        if not stage_names:
            raise ValueError(f"Pipeline '{name}' needs at least one stage")

        def _do(sess):
            existing = sess.query(Pipeline).filter(
                Pipeline.name == name, Pipeline.is_active.is_(True)
            ).first()
            if existing:
                raise ValueError(f"Active pipeline '{name}' already exists")
            pipeline = Pipeline(name=name, position=position, is_active=True)
            sess.add(pipeline)
            sess.flush()
            for index, stage_name in enumerate(stage_names):
                sess.add(Stage(
                    pipeline_id=pipeline.id, name=stage_name,
                    position=index, is_active=True
                ))
            sess.flush()
            sess.refresh(pipeline)
            _ = list(pipeline.stages)
            return pipeline

        if session:
            return _do(session)

        with self._get_session() as sess:
            pipeline = _do(sess)
            sess.commit()
            return pipeline

    def get_active_pipelines(self,
                             session: Optional[Session] = None) -> List[Pipeline]:
        """Active pipelines with their stages eagerly loaded."""
        def _query(sess):
            return sess.query(Pipeline).options(
                selectinload(Pipeline.stages)
            ).filter(
                Pipeline.is_active.is_(True)
            ).order_by(Pipeline.position, Pipeline.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_stage(self, stage_id: int,
                  session: Optional[Session] = None) -> Optional[Stage]:
        return self.get_by_id(Stage, stage_id, session=session)

    def deactivate(self, pipeline_id: int,
                   session: Optional[Session] = None) -> Optional[Pipeline]:
        return self.update_by_id(
            Pipeline, pipeline_id, session=session, is_active=False
        )

    def set_stage_active(self, stage_id: int, is_active: bool,
                         session: Optional[Session] = None) -> Optional[Stage]:
        return self.update_by_id(
            Stage, stage_id, session=session, is_active=is_active
        )

    def seed(self, layouts: List[Dict[str, Any]]) -> int:
        """Create the pipelines of ``layouts`` that do not exist yet.

        Args:
            layouts: list of ``{"name": str, "stages": [str, ...]}``.

        Returns:
            Number of pipelines created.
        """
        created = 0
        with self._get_session() as sess:
            existing = {
                name for (name,) in sess.query(Pipeline.name).filter(
                    Pipeline.is_active.is_(True)
                ).all()
            }
            for position, layout in enumerate(layouts):
                if layout["name"] in existing:
                    continue
                self.create_pipeline(
                    layout["name"], layout["stages"],
                    position=position, session=sess
                )
                created += 1
            sess.commit()
        return created


class PlacementRepository(BaseCRUD):
    """Pipeline item placement repository.

    The upsert used by moves lives in the transition executor, which needs
    to run it inside its own transaction; this class covers lookups and
    removal.
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_placement(self, pipeline_id: int, item_type: str, item_id: int,
                      session: Optional[Session] = None
                      ) -> Optional[PipelineItem]:
        def _query(sess):
            return sess.query(PipelineItem).filter(
                PipelineItem.pipeline_id == pipeline_id,
                PipelineItem.item_type == item_type,
                PipelineItem.item_id == item_id,
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_item_placements(self, item_type: str, item_id: int,
                            session: Optional[Session] = None
                            ) -> List[PipelineItem]:
        """Every placement of one item, across pipelines."""
        return self.get_all(
            PipelineItem,
            filters={"item_type": item_type, "item_id": item_id},
            session=session,
        )

    def pipelines_for_items(self, item_type: str, item_ids: Iterable[int],
                            session: Optional[Session] = None) -> Set[int]:
        """Ids of the pipelines where any of the items is placed."""
        ids = list(item_ids)
        if not ids:
            return set()

        def _query(sess):
            rows = sess.query(PipelineItem.pipeline_id).filter(
                PipelineItem.item_type == item_type,
                PipelineItem.item_id.in_(ids),
            ).distinct().all()
            return {row[0] for row in rows}

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_pipeline(self, pipeline_id: int, item_type: Optional[str] = None,
                      stage_id: Optional[int] = None,
                      session: Optional[Session] = None) -> List[PipelineItem]:
        """Placements of a pipeline, optionally narrowed to a type and stage."""
        filters: Dict[str, Any] = {"pipeline_id": pipeline_id}
        if item_type:
            filters["item_type"] = item_type
        if stage_id is not None:
            filters["stage_id"] = stage_id
        return self.get_all(PipelineItem, filters=filters, session=session)

    def list_for_items(self, pipeline_id: int, item_type: str,
                       item_ids: Iterable[int],
                       session: Optional[Session] = None) -> List[PipelineItem]:
        ids = list(item_ids)
        if not ids:
            return []

        def _query(sess):
            return sess.query(PipelineItem).filter(
                PipelineItem.pipeline_id == pipeline_id,
                PipelineItem.item_type == item_type,
                PipelineItem.item_id.in_(ids),
            ).order_by(PipelineItem.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_in_stage_since(self, pipeline_id: int, stage_id: int,
                            item_type: str, cutoff: datetime,
                            session: Optional[Session] = None
                            ) -> List[PipelineItem]:
        """Placements that entered ``stage_id`` at or before ``cutoff``."""
        def _query(sess):
            return sess.query(PipelineItem).filter(
                PipelineItem.pipeline_id == pipeline_id,
                PipelineItem.stage_id == stage_id,
                PipelineItem.item_type == item_type,
                PipelineItem.updated_at <= cutoff,
            ).order_by(PipelineItem.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def delete_item_placements(self, item_type: str, item_id: int,
                               pipeline_id: Optional[int] = None,
                               session: Optional[Session] = None) -> List[int]:
        """Delete placements of one item.

        Returns:
            Ids of the pipelines the item was removed from.
        """
        def _do(sess):
            query = sess.query(PipelineItem).filter(
                PipelineItem.item_type == item_type,
                PipelineItem.item_id == item_id,
            )
            if pipeline_id is not None:
                query = query.filter(PipelineItem.pipeline_id == pipeline_id)
            placements = query.all()
            removed = [p.pipeline_id for p in placements]
            for placement in placements:
                sess.delete(placement)
            sess.flush()
            return removed

        if session:
            return _do(session)

        with self._get_session() as sess:
            removed = _do(sess)
            sess.commit()
            return removed


class EventRepository(BaseCRUD):
    """Append-only item event log repository."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def append(self, item_type: str, item_id: int, event_type: str,
               message: Optional[str] = None,
               payload: Optional[Dict[str, Any]] = None,
               actor_id: Optional[str] = None,
               created_at: Optional[datetime] = None,
               session: Optional[Session] = None) -> ItemEvent:
        """Append one event row.

        Args:
            item_type: lead / service_file / tray.
            item_id: item id.
            event_type: event kind, e.g. ``stage_change``.
            message: human readable summary.
            payload: JSON details.
            actor_id: acting user or ``system``.
            created_at: event time; column default when None.
            session: external session (optional).

        Returns:
            The new ItemEvent.
        """
        fields: Dict[str, Any] = {
            "item_type": item_type,
            "item_id": item_id,
            "event_type": event_type,
            "message": message,
            "payload": payload or {},
            "actor_id": actor_id,
        }
        if created_at is not None:
            fields["created_at"] = created_at
        return self.create(ItemEvent, session=session, **fields)

    def list_for_item(self, item_type: str, item_id: int,
                      event_type: Optional[str] = None,
                      session: Optional[Session] = None) -> List[ItemEvent]:
        filters: Dict[str, Any] = {"item_type": item_type, "item_id": item_id}
        if event_type:
            filters["event_type"] = event_type
        return self.get_all(ItemEvent, filters=filters, session=session)

    def list_for_items(self, item_type: str, item_ids: Iterable[int],
                       event_types: Iterable[str],
                       session: Optional[Session] = None) -> List[ItemEvent]:
        """Events of the given types for a batch of items."""
        ids = list(item_ids)
        types = list(event_types)
        if not ids or not types:
            return []

        def _query(sess):
            return sess.query(ItemEvent).filter(
                ItemEvent.item_type == item_type,
                ItemEvent.item_id.in_(ids),
                ItemEvent.event_type.in_(types),
            ).order_by(ItemEvent.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
