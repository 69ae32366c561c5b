"""Engine helpers for the feed catalog database."""

from __future__ import annotations

from urllib.parse import quote

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError

from freshness.catalog.base import CatalogUnavailable
from freshness.settings import Settings, get_settings

_ENGINE: Engine | None = None
_CURRENT_DSN: str | None = None


def read_only_url(dsn: str) -> URL:
    """Rewrite a file-backed SQLite DSN so the driver opens it with ``mode=ro``.

    A read-only open never creates the file, so a missing catalog fails at
    connect time instead of turning into an empty database.
    """
    url = make_url(dsn)
    database = url.database
    if url.get_backend_name() != "sqlite" or not database or database == ":memory:":
        return url
    if url.query.get("uri") == "true":
        return url.update_query_dict({"mode": "ro"})
    return url.set(database=f"file:{quote(database)}").update_query_dict({"mode": "ro", "uri": "true"})


def _sqlite_text_as_bytes(dbapi_connection, connection_record) -> None:  # noqa: ANN001
    # Rows are decoded one at a time by the reader; bad UTF-8 must not abort the cursor.
    dbapi_connection.text_factory = bytes


def create_catalog_engine(dsn: str) -> Engine:
    """Create a read-only engine for ``dsn``; bad URLs and missing drivers are CatalogUnavailable."""
    try:
        url = read_only_url(dsn)
        engine = create_engine(url, future=True, pool_pre_ping=True)
    except (ArgumentError, ImportError) as exc:
        raise CatalogUnavailable(f"cannot create catalog engine: {exc}") from exc
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_text_as_bytes)
    return engine


def get_engine(settings: Settings | None = None) -> Engine:
    """Return a memoized catalog engine."""
    global _ENGINE, _CURRENT_DSN

    config = settings or get_settings()
    if _ENGINE is None or _CURRENT_DSN != config.catalog_dsn:
        if _ENGINE is not None:
            _ENGINE.dispose()
        _ENGINE = create_catalog_engine(config.catalog_dsn)
        _CURRENT_DSN = config.catalog_dsn
    return _ENGINE


def reset_engine() -> None:
    """Dispose the memoized engine (for tests)."""
    global _ENGINE, _CURRENT_DSN

    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _CURRENT_DSN = None
