# src/infra/__init__.py
"""
Инфраструктурный слой.
PostgreSQL и документное хранилище поверх него.
"""

from src.infra.database import DatabaseManager, close_db, get_db, init_db
from src.infra.document_store import DocumentStore

__all__ = [
    "DatabaseManager",
    "DocumentStore",
    "close_db",
    "get_db",
    "init_db",
]
