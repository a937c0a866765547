"""
Transmute - Core Package
========================

Core business logic, models, and schemas.
"""

from transmute.core.config import settings
from transmute.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
