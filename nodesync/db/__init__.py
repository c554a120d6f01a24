"""Relational storage -- engine/session management and ORM rows."""

from nodesync.db.database import Base, Database, get_database, reset_database

__all__ = ["Base", "Database", "get_database", "reset_database"]
