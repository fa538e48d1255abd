from __future__ import annotations

"""
Models package for the ACS dashboard backend.

Imports and exposes ORM models so they are registered with Base.metadata.
"""

import logging

from acs_dashboard.db import Base
from .storage_entry import StorageEntry  # noqa: F401

logger = logging.getLogger("acs.dashboard.models")

__all__ = [
    "Base",
    "StorageEntry",
]
