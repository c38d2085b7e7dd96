"""Time-trigger scanner.

Evaluates the trigger rules in two modes with the same rule logic:

- ``cron``: the scheduled sweep (shared-secret HTTP call or the in-process
  scheduler). No hard timeout.
- ``on_access``: run synchronously when someone opens the sales board,
  bounded by an overall timeout; whatever has not finished by then is
  reported as pending and the partial summary is returned.

Rule actions run on a bounded thread pool. Each action is its own
transaction, so a failing item is logged and counted without affecting the
others, and an interrupted sweep leaves no half-written multi-item state.
"""
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings, settings as default_settings
from database.manager import DatabaseManager
from .clock import Clock
from .notifications import Notifier, LogNotifier
from .results import Result, ErrorCode
from .rules import (
    Candidate, CallbackTagRule, CourierAgingRule, FollowUpReminderRule,
    NoDealArchiveRule, Outcome, PackageUnclaimedRule, RuleContext, TriggerRule,
)
from .stage_directory import PipelineRole, StageDirectory
from .transitions import TransitionExecutor

CRON = "cron"
ON_ACCESS = "on_access"


@dataclass
class RuleSummary:
    name: str
    candidates: int = 0
    moved: int = 0
    tagged: int = 0
    reminded: int = 0
    skipped: int = 0
    failed: int = 0
    pending: int = 0
    warning: Optional[str] = None
    error: Optional[str] = None

    def record(self, outcome: Outcome) -> None:
        if outcome is Outcome.MOVED:
            self.moved += 1
        elif outcome is Outcome.TAGGED:
            self.tagged += 1
        elif outcome is Outcome.REMINDED:
            self.reminded += 1
        else:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "candidates": self.candidates, "moved": self.moved,
            "tagged": self.tagged, "reminded": self.reminded,
            "skipped": self.skipped, "failed": self.failed,
            "pending": self.pending,
        }
        if self.warning:
            data["warning"] = self.warning
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ScanSummary:
    """Counts of one sweep, overall and per rule."""
    mode: str
    started_at: datetime
    rules: Dict[str, RuleSummary] = field(default_factory=dict)
    ok: bool = True
    partial: bool = False
    reason: Optional[str] = None

    def rule(self, name: str) -> RuleSummary:
        return self.rules.setdefault(name, RuleSummary(name))

    def _total(self, attr: str) -> int:
        return sum(getattr(r, attr) for r in self.rules.values())

    @property
    def moved(self) -> int:
        return self._total("moved")

    @property
    def tagged(self) -> int:
        return self._total("tagged")

    @property
    def reminded(self) -> int:
        return self._total("reminded")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def pending(self) -> int:
        return self._total("pending")

    @property
    def warnings(self) -> List[str]:
        return [f"{r.name}: {r.warning}" for r in self.rules.values() if r.warning]

    @property
    def errors(self) -> List[str]:
        return [f"{r.name}: {r.error}" for r in self.rules.values() if r.error]

    def to_response(self) -> Dict[str, Any]:
        """JSON shape returned by the trigger endpoints."""
        response: Dict[str, Any] = {
            "ok": self.ok,
            "mode": self.mode,
            "movedCount": self.moved,
            "addedCount": self.tagged,
            "reminderCount": self.reminded,
            "skippedCount": self.skipped,
            "failedCount": self.failed,
            "pendingCount": self.pending,
            "partial": self.partial,
            "rules": {name: r.to_dict() for name, r in self.rules.items()},
        }
        if self.mode == ON_ACCESS:
            unclaimed = self.rules.get(TimeTriggerScanner.ON_ACCESS_UNCLAIMED)
            response["coletNeridicatMovedCount"] = unclaimed.moved if unclaimed else 0
        if self.warnings:
            response["warnings"] = self.warnings
        if self.errors:
            response["errors"] = self.errors
        if self.reason:
            response["reason"] = self.reason
        return response


class TimeTriggerScanner:
    """Runs trigger rules against the item store.

    Args:
        db: item store.
        directory: stage directory.
        executor: transition executor.
        clock: time source; ``now`` is read once per sweep.
        notifier: reminder delivery.
        cron_rules: rules of the hourly sweep.
        nightly_rules: extra rules of the nightly sweep.
        on_access_rules: rules of the board-open check.
        max_workers: worker pool size.
        on_access_timeout_ms: overall on-access budget.
    """

    ON_ACCESS_UNCLAIMED = "package_unclaimed_on_access"

    def __init__(self, db: DatabaseManager, directory: StageDirectory,
                 executor: TransitionExecutor, clock: Clock,
                 notifier: Optional[Notifier] = None,
                 cron_rules: Optional[List[TriggerRule]] = None,
                 nightly_rules: Optional[List[TriggerRule]] = None,
                 on_access_rules: Optional[List[TriggerRule]] = None,
                 max_workers: int = 4,
                 on_access_timeout_ms: int = 300) -> None:
        self.db = db
        self.directory = directory
        self.executor = executor
        self.clock = clock
        self.notifier = notifier or LogNotifier()
        self.cron_rules = list(cron_rules if cron_rules is not None else [])
        self.nightly_rules = list(nightly_rules if nightly_rules is not None else [])
        self.on_access_rules = list(on_access_rules if on_access_rules is not None else [])
        self.max_workers = max(1, max_workers)
        self.on_access_timeout_ms = on_access_timeout_ms

    @classmethod
    def from_settings(cls, db: DatabaseManager, directory: StageDirectory,
                      executor: TransitionExecutor, clock: Clock,
                      notifier: Optional[Notifier] = None,
                      config: Optional[Settings] = None) -> "TimeTriggerScanner":
        """Scanner with the standard rule sets and thresholds from settings."""
        config = config or default_settings
        callback_tag = CallbackTagRule()
        return cls(
            db, directory, executor, clock, notifier,
            cron_rules=[
                callback_tag,
                CourierAgingRule(timedelta(hours=config.courier_aging_hours)),
                PackageUnclaimedRule(
                    "package_unclaimed",
                    timedelta(hours=config.package_unclaimed_cron_hours),
                    flag_field="no_deal",
                ),
                FollowUpReminderRule(timedelta(hours=config.followup_window_hours)),
            ],
            nightly_rules=[
                NoDealArchiveRule(timedelta(hours=config.no_deal_archive_hours)),
            ],
            on_access_rules=[
                callback_tag,
                PackageUnclaimedRule(
                    cls.ON_ACCESS_UNCLAIMED,
                    timedelta(hours=config.package_unclaimed_on_access_hours),
                    flag_field="colet_neridicat",
                ),
            ],
            max_workers=config.scan_max_workers,
            on_access_timeout_ms=config.on_access_timeout_ms,
        )

    def rule_names(self) -> List[str]:
        """Names accepted by ``run_cron(rule_names=...)``."""
        return [rule.name for rule in self.cron_rules + self.nightly_rules]

    # ================================================================
    # Entry points
    # ================================================================

    def run_cron(self, rule_names: Optional[Iterable[str]] = None,
                 include_nightly: bool = False) -> ScanSummary:
        """Scheduled sweep.

        Args:
            rule_names: restrict the sweep to these rules (cron or nightly).
            include_nightly: also run the nightly-only rules.

        Returns:
            ScanSummary; ``ok`` is False for unknown rule names or an
            unreachable store.
        """
        available = {rule.name: rule for rule in self.cron_rules + self.nightly_rules}
        if rule_names:
            names = list(rule_names)
            unknown = [name for name in names if name not in available]
            if unknown:
                summary = ScanSummary(CRON, self.clock.now(), ok=False)
                summary.reason = f"Unknown rule(s): {', '.join(unknown)}"
                return summary
            rules = [available[name] for name in names]
        else:
            rules = list(self.cron_rules)
            if include_nightly:
                rules += self.nightly_rules
        return self._run(CRON, rules, timeout_seconds=None)

    def run_on_access(self, pipeline_id: int) -> ScanSummary:
        """Board-open check for one pipeline, bounded by the on-access timeout."""
        role = self.directory.pipeline_role(pipeline_id)
        if role is not PipelineRole.SALES:
            summary = ScanSummary(ON_ACCESS, self.clock.now())
            summary.reason = "No on-access rules for this pipeline"
            return summary
        return self._run(ON_ACCESS, self.on_access_rules,
                         timeout_seconds=self.on_access_timeout_ms / 1000.0)

    # ================================================================
    # Sweep
    # ================================================================

    def _run(self, mode: str, rules: List[TriggerRule],
             timeout_seconds: Optional[float]) -> ScanSummary:
        started = time.monotonic()
        deadline = started + timeout_seconds if timeout_seconds is not None else None
        now = self.clock.now()
        summary = ScanSummary(mode, now)

        try:
            self.db.ping()
        except SQLAlchemyError as e:
            logger.error(f"[{mode}] Item store unavailable, sweep aborted: {e}")
            summary.ok = False
            summary.reason = f"Item store unavailable: {e}"
            return summary

        ctx = RuleContext(db=self.db, directory=self.directory,
                          executor=self.executor, notifier=self.notifier, now=now)
        pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                  thread_name_prefix=f"scan-{mode}")
        futures = {}
        try:
            for rule in rules:
                rule_summary = summary.rule(rule.name)
                if deadline is not None and time.monotonic() >= deadline:
                    rule_summary.warning = "not evaluated before timeout"
                    summary.partial = True
                    continue
                try:
                    found = rule.find_candidates(ctx)
                except SQLAlchemyError as e:
                    logger.error(f"[{mode}] Rule {rule.name} could not read the store: {e}")
                    rule_summary.error = str(e)
                    continue
                if not found.ok:
                    logger.warning(f"[{mode}] Rule {rule.name} skipped: {found.error.message}")
                    rule_summary.warning = found.error.message
                    continue
                rule_summary.candidates = len(found.value)
                for candidate in found.value:
                    future = pool.submit(self._apply, rule, ctx, candidate)
                    futures[future] = (rule, candidate)

            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            done, not_done = wait(list(futures), timeout=remaining)

            for future in done:
                rule, candidate = futures[future]
                result = future.result()
                rule_summary = summary.rule(rule.name)
                if result.ok:
                    rule_summary.record(result.value)
                else:
                    rule_summary.failed += 1
            for future in not_done:
                rule, candidate = futures[future]
                future.cancel()
                summary.rule(rule.name).pending += 1
            if not_done:
                summary.partial = True
        finally:
            pool.shutdown(wait=not summary.partial, cancel_futures=True)

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"[{mode}] sweep done in {elapsed_ms:.0f}ms: moved={summary.moved} "
            f"tagged={summary.tagged} reminded={summary.reminded} "
            f"failed={summary.failed} pending={summary.pending}"
        )
        return summary

    def _apply(self, rule: TriggerRule, ctx: RuleContext,
               candidate: Candidate) -> Result[Outcome]:
        try:
            result = rule.apply(ctx, candidate)
        except Exception as e:
            logger.warning(f"Rule {rule.name} failed for {candidate.item}: {e}")
            return Result.failure(ErrorCode.CONFLICT, str(e))
        if not result.ok:
            logger.warning(f"Rule {rule.name} failed for {candidate.item}: {result.error.message}")
        return result
