"""Stage directory - pipeline/stage lookup and role resolution.

Pipeline and stage names are free text edited by operators. Roles are
resolved from names once, through a RoleMatcher built from the configured
keyword rules, so callers ask for ``StageRole.COURIER_SENT`` rather than
testing substrings themselves.

When several stages of a pipeline match the same role, the first active
one by position wins.
"""
import threading
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from loguru import logger

from config.role_config import RoleKeywordConfig, role_config
from database.manager import DatabaseManager
from .clock import Clock
from .results import Result, ErrorCode


class PipelineRole(str, Enum):
    SALES = "sales"
    RECEPTION = "reception"
    ARCHIVE = "archive"


class StageRole(str, Enum):
    # Declaration order is resolution priority: ARCHIVE_LEADS ("Leaduri")
    # must be tried before LEADS.
    ARCHIVE_LEADS = "archive_leads"
    ARCHIVE_FILES = "archive_files"
    ARCHIVE_TRAYS = "archive_trays"
    CALLBACK = "callback"
    NO_ANSWER = "no_answer"
    COURIER_SENT = "courier_sent"
    OFFICE_DIRECT = "office_direct"
    ORDER_CONFIRMED = "order_confirmed"
    PACKAGE_ARRIVED = "package_arrived"
    PACKAGE_UNCLAIMED = "package_unclaimed"
    NO_DEAL = "no_deal"
    ARCHIVED = "archived"
    INVOICED = "invoiced"
    LEADS = "leads"


def normalize(name: Optional[str]) -> str:
    """Lowercase, strip diacritics and surrounding whitespace.

    >>> normalize("  Avem Comandă ")
    'avem comanda'
    """
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.strip()


class RoleMatcher:
    """Name -> role matching driven by a RoleKeywordConfig."""

    def __init__(self, config: Optional[RoleKeywordConfig] = None) -> None:
        config = config or role_config
        pipeline_rules = config.get_pipeline_rules()
        stage_rules = config.get_stage_rules()
        self._pipeline_rules = [
            (role, pipeline_rules[role.value])
            for role in PipelineRole if role.value in pipeline_rules
        ]
        self._stage_rules = [
            (role, stage_rules[role.value])
            for role in StageRole if role.value in stage_rules
        ]

    def matches_pipeline(self, name: str, role: PipelineRole) -> bool:
        normalized = normalize(name)
        return any(r == role and rule.test(normalized)
                   for r, rule in self._pipeline_rules)

    def matches_stage(self, name: str, role: StageRole) -> bool:
        normalized = normalize(name)
        return any(r == role and rule.test(normalized)
                   for r, rule in self._stage_rules)

    def resolve_pipeline_role(self, name: str) -> Optional[PipelineRole]:
        normalized = normalize(name)
        for role, rule in self._pipeline_rules:
            if rule.test(normalized):
                return role
        return None

    def resolve_stage_role(self, name: str) -> Optional[StageRole]:
        normalized = normalize(name)
        for role, rule in self._stage_rules:
            if rule.test(normalized):
                return role
        return None


@dataclass(frozen=True)
class StageInfo:
    id: int
    pipeline_id: int
    name: str
    position: int
    is_active: bool


@dataclass(frozen=True)
class PipelineInfo:
    id: int
    name: str
    is_active: bool
    stages: Tuple[StageInfo, ...]


class StageDirectory:
    """Read-only view of pipelines and stages with role lookup.

    Holds a snapshot of the active pipelines, reloaded after ``ttl_seconds``
    or on ``invalidate()``. Role-requiring callers use ``require_pipeline``
    and ``require_stage``, which report gaps as CONFIGURATION_MISSING.

    Attributes:
        matcher: the RoleMatcher used for every name.
    """

    def __init__(self, db: DatabaseManager, clock: Clock,
                 matcher: Optional[RoleMatcher] = None,
                 ttl_seconds: int = 60) -> None:
        self.db = db
        self.clock = clock
        self.matcher = matcher or RoleMatcher()
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._pipelines: Optional[List[PipelineInfo]] = None
        self._loaded_at = None

    # ================================================================
    # Snapshot
    # ================================================================

    def _snapshot(self) -> List[PipelineInfo]:
        with self._lock:
            now = self.clock.now()
            if (self._pipelines is None or self._loaded_at is None
                    or (now - self._loaded_at).total_seconds() >= self.ttl_seconds):
                self._pipelines = self._load()
                self._loaded_at = now
            return self._pipelines

    def _load(self) -> List[PipelineInfo]:
        result = []
        for pipeline in self.db.pipelines.get_active_pipelines():
            stages = tuple(
                StageInfo(
                    id=stage.id, pipeline_id=pipeline.id, name=stage.name,
                    position=stage.position or 0, is_active=bool(stage.is_active),
                )
                for stage in sorted(pipeline.stages,
                                    key=lambda s: (s.position or 0, s.id))
            )
            result.append(PipelineInfo(
                id=pipeline.id, name=pipeline.name,
                is_active=bool(pipeline.is_active), stages=stages,
            ))
        logger.debug(f"Stage directory loaded {len(result)} pipelines")
        return result

    def invalidate(self) -> None:
        with self._lock:
            self._pipelines = None

    # ================================================================
    # Lookups
    # ================================================================

    def resolve_role(self, name: str):
        """Role of a pipeline or stage name.

        Pipeline roles are tried first, then stage roles.

        Returns:
            PipelineRole, StageRole or None.
        """
        return (self.matcher.resolve_pipeline_role(name)
                or self.matcher.resolve_stage_role(name))

    def pipelines(self) -> List[PipelineInfo]:
        return list(self._snapshot())

    def get_pipeline(self, pipeline_id: int) -> Optional[PipelineInfo]:
        for pipeline in self._snapshot():
            if pipeline.id == pipeline_id:
                return pipeline
        return None

    def pipeline_role(self, pipeline_id: int) -> Optional[PipelineRole]:
        pipeline = self.get_pipeline(pipeline_id)
        if pipeline is None:
            return None
        return self.matcher.resolve_pipeline_role(pipeline.name)

    def find_pipeline(self, role: PipelineRole) -> Optional[PipelineInfo]:
        """First active pipeline whose name matches ``role``."""
        for pipeline in self._snapshot():
            if self.matcher.matches_pipeline(pipeline.name, role):
                return pipeline
        return None

    def find_stage(self, pipeline_id: int,
                   role: StageRole) -> Optional[StageInfo]:
        """First active stage of the pipeline matching ``role``, by position."""
        pipeline = self.get_pipeline(pipeline_id)
        if pipeline is None:
            return None
        for stage in pipeline.stages:
            if stage.is_active and self.matcher.matches_stage(stage.name, role):
                return stage
        return None

    def stage_role(self, stage_id: int) -> Optional[StageRole]:
        for pipeline in self._snapshot():
            for stage in pipeline.stages:
                if stage.id == stage_id:
                    return self.matcher.resolve_stage_role(stage.name)
        return None

    def require_pipeline(self, role: PipelineRole) -> Result[PipelineInfo]:
        pipeline = self.find_pipeline(role)
        if pipeline is None:
            return Result.failure(
                ErrorCode.CONFIGURATION_MISSING,
                f"No active pipeline resolves to role '{role.value}'",
            )
        return Result.success(pipeline)

    def require_stage(self, pipeline_id: int,
                      role: StageRole) -> Result[StageInfo]:
        stage = self.find_stage(pipeline_id, role)
        if stage is None:
            return Result.failure(
                ErrorCode.CONFIGURATION_MISSING,
                f"Pipeline {pipeline_id} has no active stage for role '{role.value}'",
            )
        return Result.success(stage)

    def require_pipeline_stage(self, pipeline_role: PipelineRole,
                               stage_role: StageRole
                               ) -> Result[Tuple[PipelineInfo, StageInfo]]:
        """Resolve a pipeline role and one of its stage roles together."""
        pipeline_result = self.require_pipeline(pipeline_role)
        if not pipeline_result.ok:
            return Result.from_error(pipeline_result.error)
        stage_result = self.require_stage(pipeline_result.value.id, stage_role)
        if not stage_result.ok:
            return Result.from_error(stage_result.error)
        return Result.success((pipeline_result.value, stage_result.value))
