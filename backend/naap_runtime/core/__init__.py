"""
NaaP Runtime - Core Package
===========================

Settings, persistence, error taxonomy, and the lifecycle and gateway
components.
"""

from naap_runtime.core.config import settings
from naap_runtime.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
