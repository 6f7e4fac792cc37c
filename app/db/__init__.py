"""
Database init - Exports for models
Engine and sessions live in app.database.
"""

from .base import Base, utcnow

__all__ = ["Base", "utcnow"]
