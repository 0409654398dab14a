"""
Relay data layer: database adapters, configuration and migrations.
"""

from .database import DatabaseService

__version__ = "1.0.0"

__all__ = ["DatabaseService", "__version__"]
