#!/usr/bin/env python3
"""Kanban stage engine - service entry point.

Starts:
1. The engine HTTP API (moves, boards, trigger sweeps, invoicing)
2. The in-process sweep scheduler (hourly sweep + nightly sweep)

Usage:
    python app.py

    # custom port
    python app.py --port 8080

    # custom database
    python app.py --db sqlite:///data/pipeline.db

    # external cron calls /api/cron/sweep instead
    python app.py --no-scheduler

Environment (.env, see .env.example):
    DATABASE_URL      database URL
    WEB_PORT          HTTP port (default 8080)
    CRON_SECRET       shared secret of /api/cron/sweep
    SESSION_TOKENS    JSON token -> actor id map
    ACTOR_ROLES       JSON actor id -> role map
"""
import argparse
import asyncio
import signal
from concurrent.futures import ThreadPoolExecutor

from loguru import logger

from config.settings import settings


def build_engine(db, config):
    """PipelineEngine with a board-refresh thread pool sized by ``config``."""
    from engine.core import PipelineEngine

    background = None
    if config.board_refresh_workers > 0:
        background = ThreadPoolExecutor(max_workers=config.board_refresh_workers,
                                        thread_name_prefix="board-refresh")
    return PipelineEngine(db, config, background=background)


async def _cleanup(api, scheduler, db, engine=None):
    """Stop the API, the scheduler, the engine and the database pool, in that order."""
    logger.info("Cleaning up...")

    if api is not None:
        try:
            await api.shutdown()
        except Exception as e:
            logger.warning(f"Error while stopping the web server: {e}")

    if scheduler is not None:
        try:
            scheduler.stop()
        except Exception as e:
            logger.warning(f"Error while stopping the scheduler: {e}")

    if engine is not None:
        try:
            engine.close()
        except Exception as e:
            logger.warning(f"Error while stopping the engine: {e}")

    if db is not None:
        try:
            db.close()
        except Exception as e:
            logger.warning(f"Error while closing the database: {e}")

    logger.info("Service stopped")


async def main():
    parser = argparse.ArgumentParser(description="Kanban stage engine")
    parser.add_argument("--host", default=settings.web_host,
                        help=f"listen address (default: {settings.web_host})")
    parser.add_argument("--port", type=int, default=settings.web_port,
                        help=f"listen port (default: {settings.web_port})")
    parser.add_argument("--db", default=None,
                        help="database URL (default: DATABASE_URL)")
    parser.add_argument("--no-scheduler", action="store_true",
                        help="do not run sweeps in process")
    args = parser.parse_args()

    api = None
    scheduler = None
    db = None
    engine = None

    try:
        from database import DatabaseManager
        db = DatabaseManager(args.db)
        db.create_tables()
        logger.info(f"Database connected: {db.database_url}")

        engine = build_engine(db, settings)

        if not args.no_scheduler:
            from engine.scheduler import Scheduler
            scheduler = Scheduler()
            scheduler.register_sweeps(engine.scanner, settings)
            scheduler.start()
        elif not settings.cron_secret:
            logger.warning("Scheduler disabled and CRON_SECRET unset: no sweeps will run")

        from interface.web.api import EngineWebAPI
        api = EngineWebAPI(engine, settings, host=args.host, port=args.port)
        await api.startup()

        print()
        print("=" * 60)
        print(f"  Kanban stage engine running")
        print(f"  API:       http://localhost:{args.port}/api/health")
        print(f"  Database:  {db.database_url}")
        print(f"  Scheduler: {'disabled' if scheduler is None else 'enabled'}")
        print("=" * 60)
        print("  Press Ctrl+C to stop")
        print()

        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()
        _shutdown_requested = False

        def signal_handler(signum):
            nonlocal _shutdown_requested
            if _shutdown_requested:
                logger.warning("Second stop signal, forcing exit...")
                for task in asyncio.all_tasks(loop):
                    task.cancel()
                return
            _shutdown_requested = True
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        await shutdown_event.wait()

    except asyncio.CancelledError:
        logger.info("Cancelled, cleaning up...")
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt")
    finally:
        await _cleanup(api, scheduler, db, engine)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        print("\nStopped.")
