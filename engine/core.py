"""Pipeline engine facade.

Wires the stage directory, board cache, transition executor, trigger
scanner, board service and invoicing service around one DatabaseManager,
so the web surface, the scheduler and scripts share the same instances.

Usage:
    ```python
    db = DatabaseManager("sqlite:///data/pipeline.db")
    engine = PipelineEngine(db)
    engine.scanner.run_cron()
    engine.executor.move(LeadRef(7), pipeline_id=1, target_stage_id=4, actor_id="ana")
    ```
"""
from concurrent.futures import Executor
from typing import List, Optional

from loguru import logger

from config.settings import Settings, settings as default_settings
from database.manager import DatabaseManager
from .board import BoardService
from .cache import DatabaseSessionStore, TieredCache
from .clock import Clock, SystemClock
from .invoicing import InvoicingService
from .items import ServiceFileRef
from .notifications import Notifier, LogNotifier
from .permissions import RoleProvider, StaticRoleProvider
from .pricing import PriceCalculator
from .results import Result, ErrorCode
from .scanner import TimeTriggerScanner
from .stage_directory import RoleMatcher, StageDirectory
from .transitions import TransitionExecutor


class PipelineEngine:
    """All engine services over one item store.

    Args:
        db: item store.
        config: settings (thresholds, TTLs, pool sizes).
        clock: time source, SystemClock when None.
        notifier: reminder delivery, LogNotifier when None.
        role_provider: role lookup, ``config.actor_roles`` when None.
        background: executor for board refreshes after layer-2 hits.
        matcher: stage-name role matcher.
    """

    def __init__(self, db: DatabaseManager, config: Optional[Settings] = None,
                 clock: Optional[Clock] = None,
                 notifier: Optional[Notifier] = None,
                 role_provider: Optional[RoleProvider] = None,
                 background: Optional[Executor] = None,
                 matcher: Optional[RoleMatcher] = None) -> None:
        self.db = db
        self.config = config or default_settings
        self.clock = clock or SystemClock()
        self.notifier = notifier or LogNotifier()
        self.roles = role_provider or StaticRoleProvider(self.config.actor_roles)
        self.background = background

        self.directory = StageDirectory(
            db, self.clock, matcher=matcher,
            ttl_seconds=self.config.directory_ttl_seconds,
        )
        self.cache = TieredCache(
            self.clock,
            session_store=DatabaseSessionStore(db, scope=self.config.cache_scope),
            memory_ttl_seconds=self.config.cache_memory_ttl_seconds,
            session_ttls={
                "default": self.config.cache_session_ttl_seconds,
                "sales": self.config.cache_session_ttl_sales_seconds,
            },
            max_session_bytes=self.config.cache_session_max_bytes,
        )
        self.executor = TransitionExecutor(db, self.directory, self.clock, self.cache)
        self.scanner = TimeTriggerScanner.from_settings(
            db, self.directory, self.executor, self.clock,
            notifier=self.notifier, config=self.config,
        )
        self.board = BoardService(db, self.directory, self.cache, self.clock,
                                  background=background)
        self.invoicing = InvoicingService(
            db, self.executor, self.directory, self.clock, self.roles,
            calculator=PriceCalculator(),
            invoice_prefix=self.config.invoice_number_prefix,
        )
        logger.info(f"Pipeline engine ready on {db.database_url}")

    def deactivate_pipeline(self, pipeline_id: int) -> Result[bool]:
        """Deactivate a pipeline and drop every cached board.

        Role resolution may shift to another pipeline, so boards of all
        pipelines are invalidated, not only this one.
        """
        if not self.db.pipelines.deactivate(pipeline_id):
            return Result.failure(ErrorCode.NOT_FOUND, f"Pipeline {pipeline_id} not found")
        self.directory.invalidate()
        self.cache.invalidate_all()
        logger.info(f"Pipeline {pipeline_id} deactivated")
        return Result.success(True)

    def set_stage_active(self, stage_id: int, is_active: bool) -> Result[bool]:
        """Toggle a stage; its pipeline's boards are invalidated."""
        stage = self.db.pipelines.get_stage(stage_id)
        if stage is None:
            return Result.failure(ErrorCode.NOT_FOUND, f"Stage {stage_id} not found")
        self.db.pipelines.set_stage_active(stage_id, is_active)
        self.directory.invalidate()
        self.cache.invalidate(stage.pipeline_id)
        return Result.success(True)

    def mark_package_arrived(self, service_file_ids: List[int],
                             actor_id: Optional[str]) -> Result[List[int]]:
        """Record that the courier packages of some service files reached the shop.

        Sets ``colet_ajuns`` and writes one ``colet_ajuns`` event per file, so
        neither package-unclaimed rule picks the file up afterwards. Files
        already marked are left as they are.

        Args:
            service_file_ids: files whose package arrived.
            actor_id: acting user.

        Returns:
            Result with the ids marked by this call, or NOT_FOUND (nothing
            written) when any id is unknown.
        """
        ids = list(dict.fromkeys(service_file_ids))
        known = self.db.service_files.get_many(ids)
        missing = [i for i in ids if i not in known]
        if missing:
            return Result.failure(ErrorCode.NOT_FOUND,
                                  f"Service file(s) not found: {missing}")

        arrived_at = self.clock.now()

        def _mark(session, service_file):
            return self.db.service_files.mark_package_arrived(
                service_file.id, arrived_at, session=session
            )

        marked = []
        for service_file_id in ids:
            result = self.executor.annotate(
                ServiceFileRef(service_file_id), "colet_ajuns",
                message="Colet marcat ca ajuns",
                payload={"colet_ajuns_at": arrived_at.isoformat()},
                actor_id=actor_id, mutate=_mark,
            )
            if not result.ok:
                return Result.from_error(result.error)
            if result.value:
                marked.append(service_file_id)
        logger.info(f"Packages arrived for service files {marked} (by {actor_id})")
        return Result.success(marked)

    def close(self) -> None:
        """Stop the background refresh executor."""
        if self.background is not None:
            self.background.shutdown(wait=False, cancel_futures=True)
            self.background = None
            self.board.background = None
