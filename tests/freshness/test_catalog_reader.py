from __future__ import annotations

from pathlib import Path
from typing import Any, List, Tuple

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from freshness.catalog.base import (
    CatalogQueryError,
    CatalogUnavailable,
    compute_cutoff,
)
from freshness.catalog.sql import SqlCatalogReader
from freshness.db.session import create_catalog_engine
from freshness.models.domain import FeedCandidate, MalformedCandidate

CUTOFF = 1_700_000_000


def _make_catalog(path: Path, rows: List[Tuple[Any, Any, Any, Any]]) -> str:
    dsn = f"sqlite:///{path}"
    engine = create_engine(dsn, future=True)
    with engine.begin() as conn:
        conn.execute(
            text("CREATE TABLE podcasts (id INTEGER, url TEXT, title TEXT, newestItemPubdate INTEGER)")
        )
        for row in rows:
            conn.execute(
                text("INSERT INTO podcasts (id, url, title, newestItemPubdate) VALUES (:id, :url, :title, :ts)"),
                {"id": row[0], "url": row[1], "title": row[2], "ts": row[3]},
            )
    engine.dispose()
    return dsn


@pytest.fixture()
def catalog_dsn(tmp_path: Path) -> str:
    return _make_catalog(
        tmp_path / "catalog.db",
        [
            (1, "https://a.example/feed", "A", CUTOFF + 10),
            (2, "https://b.example/feed", "B", CUTOFF + 1),
            (3, "https://c.example/feed", "C", CUTOFF),
            (4, "https://d.example/feed", "D", CUTOFF - 86_400),
            (5, "https://e.example/feed", None, CUTOFF + 500),
        ],
    )


def test_compute_cutoff_subtracts_staleness_window():
    assert compute_cutoff(now=1_000_000.7, staleness_days=1) == 1_000_000 - 86_400
    assert compute_cutoff(now=1_000_000, staleness_days=0) == 1_000_000
    assert compute_cutoff(now=10_000_000) == 10_000_000 - 90 * 86_400
    with pytest.raises(ValueError):
        compute_cutoff(now=0, staleness_days=-1)


def test_only_rows_strictly_newer_than_cutoff_are_returned(catalog_dsn: str):
    reader = SqlCatalogReader(create_catalog_engine(catalog_dsn))

    items = list(reader.list_recent_candidates(CUTOFF, 100))

    assert all(isinstance(i, FeedCandidate) for i in items)
    assert sorted(i.id for i in items) == [1, 2, 5]
    by_id = {i.id: i for i in items}
    assert by_id[1].endpoint_url == "https://a.example/feed"
    assert by_id[5].title == ""


def test_limit_bounds_result_count(catalog_dsn: str):
    reader = SqlCatalogReader(create_catalog_engine(catalog_dsn))

    items = list(reader.list_recent_candidates(0, 2))

    assert len(items) == 2


@pytest.mark.parametrize("limit", [None, 0, -5, "10", True])
def test_missing_or_invalid_limit_is_a_caller_error(catalog_dsn: str, limit):
    reader = SqlCatalogReader(create_catalog_engine(catalog_dsn))

    with pytest.raises(ValueError):
        reader.list_recent_candidates(CUTOFF, limit)  # type: ignore[arg-type]


def test_query_binds_cutoff_and_limit_as_parameters(catalog_dsn: str):
    reader = SqlCatalogReader(create_catalog_engine(catalog_dsn))

    compiled = reader.build_query(CUTOFF, 25).compile()

    assert str(CUTOFF) not in str(compiled)
    assert CUTOFF in compiled.params.values()
    assert 25 in compiled.params.values()


def test_stream_is_single_pass(catalog_dsn: str):
    reader = SqlCatalogReader(create_catalog_engine(catalog_dsn))
    stream = reader.list_recent_candidates(CUTOFF, 100)

    first = list(stream)
    second = list(stream)

    assert len(first) == 3
    assert second == []


def test_connection_released_on_early_termination(catalog_dsn: str):
    engine = create_catalog_engine(catalog_dsn)
    reader = SqlCatalogReader(engine)
    stream = reader.list_recent_candidates(0, 100)

    assert engine.pool.checkedout() == 0
    next(stream)
    assert engine.pool.checkedout() == 1
    stream.close()
    assert engine.pool.checkedout() == 0


def test_connection_released_after_exhaustion(catalog_dsn: str):
    engine = create_catalog_engine(catalog_dsn)
    reader = SqlCatalogReader(engine)

    list(reader.list_recent_candidates(0, 100))

    assert engine.pool.checkedout() == 0


def test_malformed_rows_do_not_abort_the_scan(tmp_path: Path):
    dsn = _make_catalog(
        tmp_path / "malformed.db",
        [
            (1, "https://a.example/feed", "A", CUTOFF + 1),
            (2, None, "no url", CUTOFF + 1),
            ("abc", "https://x.example/feed", "bad id", CUTOFF + 1),
            (4, "https://d.example/feed", "D", CUTOFF + 1),
        ],
    )
    reader = SqlCatalogReader(create_catalog_engine(dsn))

    items = list(reader.list_recent_candidates(CUTOFF, 100))

    assert len(items) == 4
    malformed = [i for i in items if isinstance(i, MalformedCandidate)]
    assert sorted((m.candidate_id is None, m.candidate_id) for m in malformed) == [(False, 2), (True, None)]
    assert all("malformed catalog row" in m.reason for m in malformed)
    assert sorted(i.id for i in items if isinstance(i, FeedCandidate)) == [1, 4]


def test_custom_identifiers(tmp_path: Path):
    dsn = f"sqlite:///{tmp_path / 'custom.db'}"
    engine = create_engine(dsn, future=True)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE feeds (id INTEGER, url TEXT, title TEXT, last_update INTEGER)"))
        conn.execute(text("INSERT INTO feeds VALUES (9, 'https://z.example/rss', 'Z', 50)"))
    engine.dispose()

    reader = SqlCatalogReader(create_catalog_engine(dsn), table_name="feeds", updated_column="last_update")

    assert [c.id for c in reader.list_recent_candidates(49, 10)] == [9]
    assert list(reader.list_recent_candidates(50, 10)) == []


def test_unopenable_store_raises_catalog_unavailable_on_iteration(tmp_path: Path):
    dsn = f"sqlite:///{tmp_path / 'missing-dir' / 'catalog.db'}"
    reader = SqlCatalogReader(create_catalog_engine(dsn))

    stream = reader.list_recent_candidates(CUTOFF, 10)

    with pytest.raises(CatalogUnavailable) as exc:
        next(stream)
    assert exc.value.__cause__ is not None


def test_bad_dsn_raises_catalog_unavailable():
    with pytest.raises(CatalogUnavailable):
        create_catalog_engine("nosuchdialect://user@host/db")


def test_missing_catalog_file_is_unavailable_and_not_created(tmp_path: Path):
    path = tmp_path / "missing.db"
    reader = SqlCatalogReader(create_catalog_engine(f"sqlite:///{path}"))

    with pytest.raises(CatalogUnavailable):
        list(reader.list_recent_candidates(CUTOFF, 10))
    assert not path.exists()


def test_catalog_is_opened_read_only(catalog_dsn: str):
    engine = create_catalog_engine(catalog_dsn)

    assert engine.url.query["mode"] == "ro"
    with engine.connect() as conn:
        with pytest.raises(OperationalError):
            conn.exec_driver_sql("DELETE FROM podcasts")


def test_invalid_utf8_text_is_a_malformed_row(tmp_path: Path):
    dsn = _make_catalog(
        tmp_path / "encoding.db",
        [
            (1, "https://a.example/feed", "A", CUTOFF + 1),
            (3, "https://c.example/feed", "C", CUTOFF + 1),
        ],
    )
    engine = create_engine(dsn, future=True)
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO podcasts VALUES (2, 'https://b.example/feed', CAST(X'C328' AS TEXT), :ts)"),
            {"ts": CUTOFF + 1},
        )
    engine.dispose()
    reader = SqlCatalogReader(create_catalog_engine(dsn))

    items = list(reader.list_recent_candidates(CUTOFF, 100))

    assert len(items) == 3
    assert sorted(i.id for i in items if isinstance(i, FeedCandidate)) == [1, 3]
    malformed = [i for i in items if isinstance(i, MalformedCandidate)]
    assert [m.candidate_id for m in malformed] == [2]
    assert "utf-8" in malformed[0].reason


def test_failed_query_raises_catalog_query_error(tmp_path: Path):
    dsn = f"sqlite:///{tmp_path / 'empty.db'}"
    engine = create_engine(dsn, future=True)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE other (id INTEGER)"))
    engine.dispose()
    reader = SqlCatalogReader(create_catalog_engine(dsn))

    with pytest.raises(CatalogQueryError) as exc:
        list(reader.list_recent_candidates(CUTOFF, 10))
    assert "no such table" in str(exc.value)
