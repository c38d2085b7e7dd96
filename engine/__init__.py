"""Pipeline stage transition engine.

Components, leaf first:

- clock: injectable time source
- stage_directory: pipeline/stage lookup and role resolution
- transitions: the single write path for placements
- rules / scanner: time-triggered moves and tags (cron and on-access)
- cache / board: tiered board cache and board reads
- pricing / invoicing: invoice, cancellation and archival state machine
- core: PipelineEngine wiring everything together

Usage::

    from database import DatabaseManager
    from engine.core import PipelineEngine

    engine = PipelineEngine(DatabaseManager())
    engine.scanner.run_cron()
"""
