"""Transition executor - the single write path for pipeline placements.

Manual moves from the HTTP layer, time-triggered rules and the invoicing
state machine all place items through ``TransitionExecutor.move``. Every
call either commits the placement together with exactly one event row and
invalidates the pipeline's board cache, or returns a failed Result.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.manager import DatabaseManager
from database.models import Pipeline, Stage, PipelineItem
from .cache import TieredCache
from .clock import Clock
from .items import ItemKind, ItemRef
from .results import Result, ErrorCode
from .stage_directory import StageDirectory, StageRole

SYSTEM_ACTOR = "system"

# Hook run inside the move transaction: (session, entity row) -> None
SideEffect = Callable[[Session, Any], None]


@dataclass(frozen=True)
class Placement:
    """Outcome of a move."""
    item: ItemRef
    pipeline_id: int
    stage_id: int
    stage_name: str
    previous_stage_id: Optional[int]
    updated_at: datetime
    changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemType": self.item.type,
            "itemId": self.item.id,
            "pipelineId": self.pipeline_id,
            "stageId": self.stage_id,
            "stageName": self.stage_name,
            "previousStageId": self.previous_stage_id,
            "updatedAt": self.updated_at.isoformat(),
            "changed": self.changed,
        }


class TransitionExecutor:
    """Applies stage changes to single items.

    Args:
        db: item store.
        directory: used to classify the target stage for entity side effects.
        clock: time source.
        cache: board cache to invalidate after each committed write.
    """

    def __init__(self, db: DatabaseManager, directory: StageDirectory,
                 clock: Clock, cache: Optional[TieredCache] = None) -> None:
        self.db = db
        self.directory = directory
        self.clock = clock
        self.cache = cache

    # ================================================================
    # Moves
    # ================================================================

    def move(self, item: ItemRef, pipeline_id: int, target_stage_id: int,
             actor_id: Optional[str] = None,
             timestamp: Optional[datetime] = None,
             *,
             event_type: str = "stage_change",
             message: Optional[str] = None,
             payload: Optional[Dict[str, Any]] = None,
             side_effect: Optional[SideEffect] = None,
             unless_at_target: bool = False) -> Result[Placement]:
        """Move (or first-place) an item into a stage.

        Args:
            item: the item to move.
            pipeline_id: pipeline of the placement.
            target_stage_id: destination stage, must belong to the pipeline.
            actor_id: acting user; ``system`` for automated rules.
            timestamp: time the mover attributes the action to; now when None.
                Stored as the placement's ``updated_at`` and compared against
                the current one for last-write-wins.
            event_type: event row type.
            message: event message; a default one is generated when None.
            payload: extra event payload merged over the stage details.
            side_effect: extra entity writes run in the same transaction.
            unless_at_target: return ``changed=False`` without writing when
                the item already sits in the target stage.

        Returns:
            Result with the Placement, or NOT_FOUND / INACTIVE / CONFLICT.
        """
        try:
            return self._move(item, pipeline_id, target_stage_id, actor_id,
                              timestamp, event_type, message, payload,
                              side_effect, unless_at_target)
        except IntegrityError:
            # first placement raced with another writer; the retry sees its row
            logger.info(f"Concurrent first placement of {item} in pipeline {pipeline_id}, retrying")
            return self._move(item, pipeline_id, target_stage_id, actor_id,
                              timestamp, event_type, message, payload,
                              side_effect, unless_at_target)

    def _move(self, item: ItemRef, pipeline_id: int, target_stage_id: int,
              actor_id: Optional[str], timestamp: Optional[datetime],
              event_type: str, message: Optional[str],
              payload: Optional[Dict[str, Any]],
              side_effect: Optional[SideEffect],
              unless_at_target: bool) -> Result[Placement]:
        now = self.clock.now()
        effective_at = timestamp or now

        with self.db.get_session() as session:
            pipeline = session.get(Pipeline, pipeline_id)
            if pipeline is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Pipeline {pipeline_id} not found")
            stage = session.get(Stage, target_stage_id)
            if stage is None or stage.pipeline_id != pipeline_id:
                return Result.failure(
                    ErrorCode.NOT_FOUND,
                    f"Stage {target_stage_id} not found in pipeline {pipeline_id}",
                )
            if not pipeline.is_active:
                return Result.failure(ErrorCode.INACTIVE, f"Pipeline '{pipeline.name}' is inactive")
            if not stage.is_active:
                return Result.failure(ErrorCode.INACTIVE, f"Stage '{stage.name}' is inactive")
            entity = session.get(item.model, item.id)
            if entity is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Item {item} not found")

            current = self.db.placements.get_placement(
                pipeline_id, item.type, item.id, session=session
            )
            previous_stage_id = current.stage_id if current else None
            previous_stage = session.get(Stage, previous_stage_id) if current else None

            if unless_at_target and current and current.stage_id == target_stage_id:
                return Result.success(Placement(
                    item=item, pipeline_id=pipeline_id, stage_id=stage.id,
                    stage_name=stage.name, previous_stage_id=previous_stage_id,
                    updated_at=current.updated_at, changed=False,
                ))

            target_role = self.directory.matcher.resolve_stage_role(stage.name)
            event_payload: Dict[str, Any] = {
                "pipeline_id": pipeline_id,
                "from_stage_id": previous_stage_id,
                "from_stage": previous_stage.name if previous_stage else None,
                "to_stage_id": stage.id,
                "to_stage": stage.name,
                "to_stage_role": target_role.value if target_role else None,
            }
            event_payload.update(payload or {})

            if (current and current.stage_id != target_stage_id
                    and current.updated_at and current.updated_at > effective_at):
                # A later write already placed the item elsewhere: keep it,
                # but record the losing attempt.
                self.db.events.append(
                    item.type, item.id, "stage_change_conflict",
                    message=f"Move to '{stage.name}' lost to a later move",
                    payload=dict(event_payload, attempted_at=effective_at.isoformat(),
                                 current_updated_at=current.updated_at.isoformat()),
                    actor_id=actor_id, created_at=now, session=session,
                )
                session.commit()
                logger.warning(f"Move of {item} to stage {stage.id} conflicts with a later move")
                return Result.failure(
                    ErrorCode.CONFLICT,
                    f"{item} was moved to stage {current.stage_id} after {effective_at.isoformat()}",
                )

            placement = self._upsert(session, current, item, pipeline_id,
                                     stage.id, effective_at, now)
            self._apply_entity_side_effects(item, entity, target_role,
                                            actor_id, effective_at)
            if side_effect is not None:
                side_effect(session, entity)
            self.db.events.append(
                item.type, item.id, event_type,
                message=message or f"Moved to '{stage.name}'",
                payload=event_payload, actor_id=actor_id,
                created_at=now, session=session,
            )
            session.commit()
            result = Placement(
                item=item, pipeline_id=pipeline_id, stage_id=stage.id,
                stage_name=stage.name, previous_stage_id=previous_stage_id,
                updated_at=placement.updated_at,
            )

        logger.info(f"{item} moved to '{result.stage_name}' in pipeline {pipeline_id} by {actor_id or 'anonymous'}")
        self._invalidate([pipeline_id])
        return Result.success(result)

    def _upsert(self, session: Session, current: Optional[PipelineItem],
                item: ItemRef, pipeline_id: int, stage_id: int,
                effective_at: datetime, now: datetime) -> PipelineItem:
        if current is None:
            current = PipelineItem(
                pipeline_id=pipeline_id, item_type=item.type, item_id=item.id,
                stage_id=stage_id, created_at=now, updated_at=effective_at,
            )
            session.add(current)
        else:
            current.stage_id = stage_id
            if current.updated_at is None or effective_at > current.updated_at:
                current.updated_at = effective_at
        session.flush()
        return current

    def _apply_entity_side_effects(self, item: ItemRef, entity: Any,
                                   target_role: Optional[StageRole],
                                   actor_id: Optional[str],
                                   effective_at: datetime) -> None:
        if item.kind is not ItemKind.LEAD:
            return
        attributed = actor_id is not None and actor_id != SYSTEM_ACTOR
        if target_role is StageRole.COURIER_SENT and attributed:
            entity.curier_trimis_at = effective_at
            entity.curier_trimis_user_id = actor_id
        elif target_role is StageRole.OFFICE_DIRECT and attributed:
            entity.office_direct_at = effective_at
            entity.office_direct_user_id = actor_id
        elif target_role is StageRole.NO_DEAL and entity.no_deal_at is None:
            entity.no_deal_at = effective_at
        entity.updated_at = self.clock.now()

    # ================================================================
    # Non-moving writes
    # ================================================================

    def remove(self, item: ItemRef, pipeline_id: Optional[int] = None,
               actor_id: Optional[str] = None,
               session: Optional[Session] = None) -> Result[List[int]]:
        """Delete an item's placements (one pipeline, or all).

        With an external session the caller commits, then calls
        ``invalidate_pipelines`` with the returned ids.

        Returns:
            Result with the ids of the pipelines the item left.
        """
        def _do(sess):
            removed = self.db.placements.delete_item_placements(
                item.type, item.id, pipeline_id=pipeline_id, session=sess
            )
            if removed:
                self.db.events.append(
                    item.type, item.id, "removed_from_pipeline",
                    message=f"Removed from {len(removed)} pipeline(s)",
                    payload={"pipeline_ids": removed}, actor_id=actor_id,
                    created_at=self.clock.now(), session=sess,
                )
            return removed

        if session is not None:
            return Result.success(_do(session))

        with self.db.get_session() as sess:
            removed = _do(sess)
            sess.commit()
        self._invalidate(removed)
        return Result.success(removed)

    def annotate(self, item: ItemRef, event_type: str,
                 message: Optional[str] = None,
                 payload: Optional[Dict[str, Any]] = None,
                 actor_id: Optional[str] = SYSTEM_ACTOR,
                 mutate: Optional[Callable[[Session, Any], bool]] = None
                 ) -> Result[bool]:
        """Write entity changes plus one event without moving the item.

        Used for tags and reminders. ``mutate`` returns False to abort
        without writing anything (e.g. the tag was already there). The event
        row is written before ``mutate`` runs so the check inside ``mutate``
        happens under the write lock; an abort rolls it back.

        Returns:
            Result with True when something was written.
        """
        with self.db.get_session() as session:
            entity = session.get(item.model, item.id)
            if entity is None:
                return Result.failure(ErrorCode.NOT_FOUND, f"Item {item} not found")
            self.db.events.append(
                item.type, item.id, event_type, message=message,
                payload=payload, actor_id=actor_id,
                created_at=self.clock.now(), session=session,
            )
            if mutate is not None and mutate(session, entity) is False:
                session.rollback()
                return Result.success(False)
            session.commit()
        self.invalidate_items([item])
        return Result.success(True)

    # ================================================================
    # Cache signalling
    # ================================================================

    def invalidate_items(self, items: Iterable[ItemRef]) -> None:
        """Invalidate every pipeline where any of the items is placed."""
        by_kind: Dict[ItemKind, List[int]] = {}
        for ref in items:
            by_kind.setdefault(ref.kind, []).append(ref.id)
        pipeline_ids = set()
        for kind, ids in by_kind.items():
            pipeline_ids |= self.db.placements.pipelines_for_items(kind.value, ids)
        self._invalidate(pipeline_ids)

    def invalidate_pipelines(self, pipeline_ids: Iterable[int]) -> None:
        self._invalidate(pipeline_ids)

    def _invalidate(self, pipeline_ids: Iterable[int]) -> None:
        if self.cache is None:
            return
        for pipeline_id in sorted(set(pipeline_ids)):
            self.cache.invalidate(pipeline_id)
