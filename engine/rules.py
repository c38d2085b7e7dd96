"""Time-trigger rules.

Each rule has two halves: ``find_candidates`` reads the item store and
returns the items whose condition is newly true, and ``apply`` performs the
action for one of them (a move through the transition executor, a tag, or a
reminder). The scanner runs ``apply`` calls concurrently, each one its own
unit of work, so ``apply`` re-checks what it needs instead of trusting the
candidate list to still be current.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from database.manager import DatabaseManager
from database.models import ServiceFile
from .items import ItemKind, ItemRef, LeadRef, ServiceFileRef
from .notifications import Notifier
from .results import Result
from .stage_directory import PipelineRole, StageDirectory, StageRole
from .transitions import SYSTEM_ACTOR, TransitionExecutor


class Outcome(str, Enum):
    MOVED = "moved"
    TAGGED = "tagged"
    REMINDED = "reminded"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Candidate:
    item: ItemRef
    pipeline_id: Optional[int] = None
    target_stage_id: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass
class RuleContext:
    """Everything a rule may touch during one sweep; ``now`` is fixed per sweep."""
    db: DatabaseManager
    directory: StageDirectory
    executor: TransitionExecutor
    notifier: Notifier
    now: datetime


class TriggerRule(ABC):
    """A condition over entity timestamps paired with an automatic action."""

    name: str = "rule"

    @abstractmethod
    def find_candidates(self, ctx: RuleContext) -> Result[List[Candidate]]:
        """Items whose condition holds at ``ctx.now``.

        Returns a CONFIGURATION_MISSING failure when a required pipeline or
        stage role cannot be resolved.
        """
        pass

    @abstractmethod
    def apply(self, ctx: RuleContext, candidate: Candidate) -> Result[Outcome]:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def _moved(result) -> Result[Outcome]:
    if not result.ok:
        return Result.from_error(result.error)
    return Result.success(Outcome.MOVED if result.value.changed else Outcome.SKIPPED)


# ================================================================
# 1. Callback / no-answer expiry -> tag, never a move
# ================================================================

class CallbackTagRule(TriggerRule):
    """Tag leads whose callback or no-answer retry time has passed."""

    name = "callback_tag"

    def __init__(self, tag_name: str = "Suna!", color: str = "red") -> None:
        self.tag_name = tag_name
        self.color = color

    def find_candidates(self, ctx: RuleContext) -> Result[List[Candidate]]:
        leads = ctx.db.leads.get_expired_callbacks(ctx.now)
        tagged = set(ctx.db.tags.leads_with_tag(self.tag_name, [l.id for l in leads]))
        candidates = []
        for lead in leads:
            if lead.id in tagged:
                continue
            expired_field = (
                "callback_date"
                if lead.callback_date is not None and lead.callback_date <= ctx.now
                else "nu_raspunde_callback_at"
            )
            candidates.append(Candidate(
                item=LeadRef(lead.id),
                data={"field": expired_field, "due_at": getattr(lead, expired_field)},
            ))
        return Result.success(candidates)

    def apply(self, ctx: RuleContext, candidate: Candidate) -> Result[Outcome]:
        def _tag(session, lead):
            tag = ctx.db.tags.get_or_create(self.tag_name, self.color, session=session)
            return ctx.db.tags.add_to_lead(lead.id, tag.id, session=session)

        due_at = candidate.data.get("due_at")
        result = ctx.executor.annotate(
            candidate.item, "suna_tag_added",
            message=f"Tag '{self.tag_name}' added: callback due",
            payload={
                "tag": self.tag_name,
                "field": candidate.data.get("field"),
                "due_at": due_at.isoformat() if due_at else None,
                "automated": True,
            },
            mutate=_tag,
        )
        if not result.ok:
            return Result.from_error(result.error)
        return Result.success(Outcome.TAGGED if result.value else Outcome.SKIPPED)


# ================================================================
# 2. Courier sent / office direct -> order confirmed
# ================================================================

class CourierAgingRule(TriggerRule):
    """Move dispatched leads to the order-confirmed stage once the window passes.

    A lead qualifies through its own ``curier_trimis_at`` / ``office_direct_at``
    or through any of its courier / office-direct service files.
    """

    name = "courier_aging"

    def __init__(self, window: timedelta = timedelta(hours=24)) -> None:
        self.window = window

    def find_candidates(self, ctx: RuleContext) -> Result[List[Candidate]]:
        resolved = ctx.directory.require_pipeline_stage(
            PipelineRole.SALES, StageRole.ORDER_CONFIRMED
        )
        if not resolved.ok:
            return Result.from_error(resolved.error)
        pipeline, target = resolved.value

        cutoff = ctx.now - self.window
        lead_ids = {lead.id for lead in ctx.db.leads.get_dispatched_before(cutoff)}
        lead_ids |= {
            sf.lead_id for sf in ctx.db.service_files.get_dispatched_before(cutoff)
        }
        placements = ctx.db.placements.list_for_items(
            pipeline.id, ItemKind.LEAD.value, sorted(lead_ids)
        )
        return Result.success([
            Candidate(
                item=LeadRef(p.item_id), pipeline_id=pipeline.id,
                target_stage_id=target.id, data={"from_stage_id": p.stage_id},
            )
            for p in placements if p.stage_id != target.id
        ])

    def apply(self, ctx: RuleContext, candidate: Candidate) -> Result[Outcome]:
        result = ctx.executor.move(
            candidate.item, candidate.pipeline_id, candidate.target_stage_id,
            SYSTEM_ACTOR,
            message="Order confirmed automatically after courier window",
            payload={"rule": self.name, "automated": True,
                     "window_hours": self.window.total_seconds() / 3600},
            unless_at_target=True,
        )
        return _moved(result)


# ================================================================
# 3. Package unclaimed
# ================================================================

class PackageUnclaimedRule(TriggerRule):
    """Move courier service files whose package was never picked up.

    The same condition runs from the scheduled sweep and from the board-open
    check with different thresholds and different flags; both are
    parameters of this rule.

    Args:
        name: rule name (distinct per entry point).
        threshold: age of ``curier_scheduled_at`` after which the file qualifies.
        flag_field: ServiceFile flag written once (``no_deal`` or ``colet_neridicat``).
    """

    ARRIVED_EVENT = "colet_ajuns"

    def __init__(self, name: str = "package_unclaimed",
                 threshold: timedelta = timedelta(days=2),
                 flag_field: str = "no_deal") -> None:
        if flag_field not in ("no_deal", "colet_neridicat"):
            raise ValueError(f"Unsupported flag field: {flag_field}")
        self.name = name
        self.threshold = threshold
        self.flag_field = flag_field

    def find_candidates(self, ctx: RuleContext) -> Result[List[Candidate]]:
        resolved = ctx.directory.require_pipeline_stage(
            PipelineRole.SALES, StageRole.PACKAGE_UNCLAIMED
        )
        if not resolved.ok:
            return Result.from_error(resolved.error)
        pipeline, target = resolved.value

        files = [
            sf for sf in ctx.db.service_files.get_unclaimed_candidates(ctx.now - self.threshold)
            if not getattr(sf, self.flag_field)
        ]
        ids = [sf.id for sf in files]
        arrived = self._arrived_ids(ctx, ids)
        placed = {
            p.item_id for p in ctx.db.placements.list_for_items(
                pipeline.id, ItemKind.SERVICE_FILE.value, ids
            )
            if p.stage_id == target.id
        }
        return Result.success([
            Candidate(
                item=ServiceFileRef(sf.id), pipeline_id=pipeline.id,
                target_stage_id=target.id,
                data={"curier_scheduled_at": sf.curier_scheduled_at},
            )
            for sf in files if sf.id not in arrived and sf.id not in placed
        ])

    def _arrived_ids(self, ctx: RuleContext, ids: List[int]) -> set:
        """Files with a package-arrived witness in the event log."""
        events = ctx.db.events.list_for_items(
            ItemKind.SERVICE_FILE.value, ids, [self.ARRIVED_EVENT, "stage_change"]
        )
        arrived = set()
        for event in events:
            if event.event_type == self.ARRIVED_EVENT:
                arrived.add(event.item_id)
            elif (event.payload or {}).get("to_stage_role") == StageRole.PACKAGE_ARRIVED.value:
                arrived.add(event.item_id)
        return arrived

    def apply(self, ctx: RuleContext, candidate: Candidate) -> Result[Outcome]:
        scheduled_at: datetime = candidate.data["curier_scheduled_at"]
        elapsed = ctx.now - scheduled_at
        days = elapsed.days
        flag_field = self.flag_field

        def _flag(session, service_file: ServiceFile):
            if not getattr(service_file, flag_field):
                setattr(service_file, flag_field, True)
                service_file.updated_at = ctx.now

        result = ctx.executor.move(
            candidate.item, candidate.pipeline_id, candidate.target_stage_id,
            SYSTEM_ACTOR,
            event_type="colet_neridicat_auto",
            message=f"Colet neridicat după {days} zile de la trimiterea curierului",
            payload={
                "rule": self.name,
                "curier_scheduled_at": scheduled_at.isoformat(),
                "days_since_curier": days,
                "hours_since_curier": int(elapsed.total_seconds() // 3600),
                "flag": flag_field,
                "automated": True,
            },
            side_effect=_flag,
            unless_at_target=True,
        )
        return _moved(result)


# ================================================================
# 4. Follow-up reminder
# ================================================================

class FollowUpReminderRule(TriggerRule):
    """Remind the owner of sales leads whose callback falls within ±window.

    One reminder per scheduled callback: a ``follow_up_reminder`` event
    carrying the same ``callback_date`` means the lead was already reminded.
    Rescheduling the callback makes the lead eligible again.
    """

    name = "follow_up_reminder"
    EVENT_TYPE = "follow_up_reminder"

    def __init__(self, window: timedelta = timedelta(hours=24)) -> None:
        self.window = window

    def find_candidates(self, ctx: RuleContext) -> Result[List[Candidate]]:
        resolved = ctx.directory.require_pipeline(PipelineRole.SALES)
        if not resolved.ok:
            return Result.from_error(resolved.error)
        pipeline = resolved.value

        leads = ctx.db.leads.get_callbacks_between(
            ctx.now - self.window, ctx.now + self.window
        )
        placed = {
            p.item_id for p in ctx.db.placements.list_for_items(
                pipeline.id, ItemKind.LEAD.value, [l.id for l in leads]
            )
        }
        reminded = self._reminded(ctx, [l.id for l in leads if l.id in placed])
        seen = set()
        candidates = []
        for lead in leads:
            if lead.id not in placed or lead.id in seen:
                continue
            if (lead.id, lead.callback_date.isoformat()) in reminded:
                continue
            seen.add(lead.id)
            candidates.append(Candidate(
                item=LeadRef(lead.id), pipeline_id=pipeline.id,
                data={"callback_date": lead.callback_date,
                      "assigned_to": lead.assigned_to,
                      "full_name": lead.full_name},
            ))
        return Result.success(candidates)

    def _reminded(self, ctx: RuleContext, lead_ids: List[int]) -> set:
        """(lead id, callback_date iso) pairs that already got a reminder."""
        events = ctx.db.events.list_for_items(
            ItemKind.LEAD.value, lead_ids, [self.EVENT_TYPE]
        )
        return {(e.item_id, (e.payload or {}).get("callback_date")) for e in events}

    @staticmethod
    def describe(callback_date: datetime, now: datetime) -> Dict[str, Any]:
        """Reminder wording and timing for a callback.

        >>> FollowUpReminderRule.describe(datetime(2026, 3, 11, 9), datetime(2026, 3, 10, 12))["message"]
        'Callback programat MÂINE'
        """
        hours_until = (callback_date - now).total_seconds() / 3600
        days_until = (callback_date.date() - now.date()).days
        if days_until <= 0:
            message = "Callback programat ASTĂZI"
        elif days_until == 1:
            message = "Callback programat MÂINE"
        else:
            message = f"Callback programat în {days_until} zile"
        return {
            "message": message,
            "hours_until_callback": round(hours_until, 1),
            "days_until_callback": days_until,
        }

    def apply(self, ctx: RuleContext, candidate: Candidate) -> Result[Outcome]:
        callback_date: datetime = candidate.data["callback_date"]
        details = self.describe(callback_date, ctx.now)
        payload = {
            "callback_date": callback_date.isoformat(),
            "hours_until_callback": details["hours_until_callback"],
            "days_until_callback": details["days_until_callback"],
            "automated": True,
        }

        def _once(session, lead):
            # the event written by this call is already flushed
            events = ctx.db.events.list_for_items(
                ItemKind.LEAD.value, [lead.id], [self.EVENT_TYPE], session=session
            )
            same = [e for e in events
                    if (e.payload or {}).get("callback_date") == payload["callback_date"]]
            return len(same) == 1

        result = ctx.executor.annotate(
            candidate.item, self.EVENT_TYPE,
            message=details["message"], payload=payload, mutate=_once,
        )
        if not result.ok:
            return Result.from_error(result.error)
        if not result.value:
            return Result.success(Outcome.SKIPPED)
        ctx.notifier.notify(
            candidate.data.get("assigned_to"),
            f"Follow-up: {candidate.data.get('full_name')}",
            details["message"],
            dict(payload, lead_id=candidate.item.id),
        )
        return Result.success(Outcome.REMINDED)


# ================================================================
# 5. No deal -> archived (nightly)
# ================================================================

class NoDealArchiveRule(TriggerRule):
    """Move sales leads that have sat in No Deal for ``age`` to Arhivat."""

    name = "no_deal_archive"

    def __init__(self, age: timedelta = timedelta(hours=24)) -> None:
        self.age = age

    def find_candidates(self, ctx: RuleContext) -> Result[List[Candidate]]:
        resolved = ctx.directory.require_pipeline(PipelineRole.SALES)
        if not resolved.ok:
            return Result.from_error(resolved.error)
        pipeline = resolved.value
        no_deal = ctx.directory.require_stage(pipeline.id, StageRole.NO_DEAL)
        if not no_deal.ok:
            return Result.from_error(no_deal.error)
        archived = ctx.directory.require_stage(pipeline.id, StageRole.ARCHIVED)
        if not archived.ok:
            return Result.from_error(archived.error)

        placements = ctx.db.placements.list_in_stage_since(
            pipeline.id, no_deal.value.id, ItemKind.LEAD.value, ctx.now - self.age
        )
        return Result.success([
            Candidate(item=LeadRef(p.item_id), pipeline_id=pipeline.id,
                      target_stage_id=archived.value.id,
                      data={"in_no_deal_since": p.updated_at})
            for p in placements
        ])

    def apply(self, ctx: RuleContext, candidate: Candidate) -> Result[Outcome]:
        since = candidate.data.get("in_no_deal_since")
        result = ctx.executor.move(
            candidate.item, candidate.pipeline_id, candidate.target_stage_id,
            SYSTEM_ACTOR,
            message="Archived automatically after No Deal",
            payload={"rule": self.name, "automated": True,
                     "in_no_deal_since": since.isoformat() if since else None},
            unless_at_target=True,
        )
        return _moved(result)
