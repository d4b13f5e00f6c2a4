"""
Shared infrastructure: configuration-aware logging, database, exceptions.
"""

from callengine.shared.database import Base, DatabaseManager, UTCDateTime, utcnow
from callengine.shared.logging import get_logger, setup_logging

__all__ = [
    "Base",
    "DatabaseManager",
    "UTCDateTime",
    "get_logger",
    "setup_logging",
    "utcnow",
]
