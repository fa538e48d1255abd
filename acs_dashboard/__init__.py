"""ACS real-estate dashboard backend: API proxy, conversation cache and metrics."""

__version__ = "0.1.0"
