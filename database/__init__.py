"""Relational item store: pipelines, placements, entities, events, archives."""
from database.manager import DatabaseManager
from database.connection import DatabaseConnection

__all__ = ["DatabaseManager", "DatabaseConnection"]
