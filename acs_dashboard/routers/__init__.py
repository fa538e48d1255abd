from __future__ import annotations

import logging
from importlib import import_module
from types import ModuleType
from typing import List

logger = logging.getLogger(__name__)

# Router submodules, imported on first access.
_ROUTER_MODULES: List[str] = [
    "auth",
    "dashboard",
    "db",
    "lcp",
    "usage",
]

__all__ = _ROUTER_MODULES


def __getattr__(name: str) -> ModuleType:
    """
    Lazy import router submodules so that:

        from acs_dashboard.routers import lcp as lcp_router

    works without eagerly importing everything (and avoids circular imports).
    """
    if name not in _ROUTER_MODULES:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    full_name = f"{__name__}.{name}"
    logger.debug("Lazy-importing router module %s", full_name)
    return import_module(full_name)
