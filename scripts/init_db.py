"""Initialise the database: create tables and seed the default pipelines."""
import sys
import os

# project root on sys.path when run as a script
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from config.role_config import role_config
from loguru import logger


def init_database(database_url=None):
    """Create every table and the Vânzări / Receptie / Arhivare pipelines.

    Existing pipelines with the same name are left untouched, so the
    script can be re-run safely.

    Returns:
        Number of pipelines created.
    """
    logger.info("Initializing database...")
    db = DatabaseManager(database_url)

    logger.info("Creating tables...")
    db.create_tables()

    logger.info("Seeding default pipelines...")
    created = db.seed_pipelines(role_config.get_default_pipelines())
    logger.info(f"Created {created} pipeline(s)")

    db.close()
    logger.info("Database initialization completed!")
    return created


if __name__ == "__main__":
    init_database(sys.argv[1] if len(sys.argv) > 1 else None)
