"""SQLite persistence."""

from polymarket_breaking.database.repository import Database

__all__ = ["Database"]
