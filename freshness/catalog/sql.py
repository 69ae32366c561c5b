"""SQL-backed catalog reader (SQLAlchemy Core, parameterized query)."""

from __future__ import annotations

from typing import Any, Iterator, Optional

from pydantic import ValidationError
from sqlalchemy import column, select, table
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.expression import Select

from freshness.models.domain import FeedCandidate, MalformedCandidate
from freshness.utils.logging import get_logger

from .base import CatalogItem, CatalogQueryError, CatalogUnavailable, validate_limit

logger = get_logger(__name__)


class SqlCatalogReader:
    """Reads recently updated feeds from a relational catalog.

    The default identifiers match the public podcast index dump
    (``podcasts(id, url, title, newestItemPubdate)``).
    """

    def __init__(
        self,
        engine: Engine,
        *,
        table_name: str = "podcasts",
        id_column: str = "id",
        url_column: str = "url",
        title_column: str = "title",
        updated_column: str = "newestItemPubdate",
    ) -> None:
        self._engine = engine
        self._table = table(
            table_name,
            column(id_column),
            column(url_column),
            column(title_column),
            column(updated_column),
        )
        self._id = self._table.c[id_column]
        self._url = self._table.c[url_column]
        self._title = self._table.c[title_column]
        self._updated = self._table.c[updated_column]

    @classmethod
    def from_settings(cls, settings) -> "SqlCatalogReader":  # noqa: ANN001
        from freshness.db.session import get_engine

        return cls(
            get_engine(settings),
            table_name=settings.catalog_table,
            updated_column=settings.catalog_updated_column,
        )

    def build_query(self, cutoff_epoch_seconds: int, limit: int) -> Select:
        return (
            select(
                self._id.label("id"),
                self._url.label("url"),
                self._title.label("title"),
            )
            .where(self._updated > int(cutoff_epoch_seconds))
            .limit(limit)
        )

    def list_recent_candidates(self, cutoff_epoch_seconds: int, limit: int) -> Iterator[CatalogItem]:
        """Return a lazy, single-pass stream of candidates updated after the cutoff.

        The connection is opened on first iteration and released once the
        stream is exhausted or closed.
        """
        limit = validate_limit(limit)
        stmt = self.build_query(cutoff_epoch_seconds, limit)
        return self._scan(stmt)

    def _connect(self) -> Connection:
        try:
            conn = self._engine.connect()
        except SQLAlchemyError as exc:
            raise CatalogUnavailable(f"cannot open catalog: {exc}") from exc
        if conn.dialect.name == "sqlite":
            try:
                conn.exec_driver_sql("PRAGMA query_only = ON")
            except SQLAlchemyError as exc:
                conn.close()
                raise CatalogUnavailable(f"cannot open catalog read-only: {exc}") from exc
        return conn

    def _scan(self, stmt: Select) -> Iterator[CatalogItem]:
        conn = self._connect()
        with conn:
            if conn.dialect.supports_server_side_cursors:
                conn = conn.execution_options(stream_results=True)
            try:
                result = conn.execute(stmt)
                for row in result:
                    yield self._decode(row)
            except SQLAlchemyError as exc:
                raise CatalogQueryError(f"catalog query failed: {exc}") from exc

    @staticmethod
    def _decode(row: Row[Any]) -> CatalogItem:
        raw_id = row[0]
        candidate_id = raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) and raw_id >= 0 else None
        try:
            raw_id, url, title = (_text(value) for value in (row[0], row[1], row[2]))
        except UnicodeDecodeError as exc:
            return _malformed(candidate_id, f"invalid utf-8 text: {exc}")
        try:
            return FeedCandidate(id=raw_id, endpoint_url=url, title="" if title is None else str(title))
        except ValidationError as exc:
            reason = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            return _malformed(candidate_id, reason)


def _text(value: Any) -> Any:
    # SQLite connections return TEXT as bytes, see freshness.db.session
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8")
    return value


def _malformed(candidate_id: Optional[int], reason: str) -> MalformedCandidate:
    logger.warning("catalog.malformed_row", extra={"candidate_id": candidate_id, "reason": reason})
    return MalformedCandidate(candidate_id=candidate_id, reason=f"malformed catalog row: {reason}")
