"""Database utilities for the feed catalog."""

from .session import create_catalog_engine, get_engine, reset_engine  # noqa: F401

__all__ = [
    "create_catalog_engine",
    "get_engine",
    "reset_engine",
]
