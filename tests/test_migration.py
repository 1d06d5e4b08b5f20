from __future__ import annotations

import asyncio
from typing import Any

import pytest

import app.db_models  # noqa: F401  (registers the media_items table)
from app.database import Database
from app.services.documents import DocumentStore
from app.services.migration import SeasonMigrationEngine
from app.services.omdb import CatalogMatch


class FakeCatalog:
    """Catalog double returning canned season data."""

    def __init__(
        self,
        seasons: dict[str, int | None] | None = None,
        episodes: dict[tuple[str, int], int] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.seasons = seasons or {}
        self.episodes = episodes or {}
        self.failing = failing or set()
        self.lookups: list[tuple[str, str]] = []
        self.episode_requests: list[tuple[str, int]] = []

    async def lookup(self, title: str, kind: str = "series") -> CatalogMatch | None:
        self.lookups.append((title, kind))
        if title in self.failing:
            raise RuntimeError("catalog unavailable")
        if title not in self.seasons:
            return None
        return CatalogMatch(title=title, total_seasons=self.seasons[title])

    async def fetch_season_episode_count(self, imdb_id: str, season: int) -> int:
        self.episode_requests.append((imdb_id, season))
        return self.episodes.get((imdb_id, season), 0)


class RecordingEngine(SeasonMigrationEngine):
    """Engine that records throttle delays instead of sleeping."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.sleeps: list[float] = []

    async def _throttle(self, seconds: float) -> None:
        self.sleeps.append(seconds)


class FailingWriteStore(DocumentStore):
    async def update(self, doc_id, partial_fields):  # type: ignore[override]
        raise RuntimeError("disk full")


class FailingQueryStore(DocumentStore):
    async def query(self, filters=None):  # type: ignore[override]
        raise RuntimeError("database offline")


async def _open(tmp_path, store_cls: type[DocumentStore] = DocumentStore):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'migration.db'}")
    await database.create_all()
    return database, store_cls(database.session_factory)


async def _seed(store: DocumentStore, doc_id: str, **fields: Any) -> None:
    await store.set(doc_id, {"userId": "user-1", "type": "series", **fields})


def test_watched_series_gets_all_seasons_marked(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(
                store, "a-show", title="Show", totalSeasons=3, watched=True, watchedSeasons=[1]
            )
            catalog = FakeCatalog()
            engine = RecordingEngine(store, catalog)

            result = await engine.migrate_all_series("user-1")

            assert (result.total, result.updated, result.skipped, result.failed) == (1, 1, 0, 0)
            stored = await store.get("a-show")
            assert stored is not None
            assert stored.data["watchedSeasons"] == [1, 2, 3]
            assert stored.data["totalSeasons"] == 3
            assert catalog.lookups == []
            assert engine.sleeps == []
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_series_with_known_seasons_is_skipped(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Show", totalSeasons=3, watched=False)
            engine = RecordingEngine(store, FakeCatalog())

            result = await engine.migrate_all_series("user-1")

            assert (result.updated, result.skipped, result.failed) == (0, 1, 0)
            assert result.details[0].status == "skipped"
            stored = await store.get("a-show")
            assert stored is not None
            assert "watchedSeasons" not in stored.data
            assert engine.sleeps == []
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_missing_season_count_is_looked_up_and_throttled(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Dark")
            await _seed(store, "b-show", title="Finished", watched=True, totalSeasons="N/A")
            catalog = FakeCatalog(seasons={"Dark": 3, "Finished": 2})
            engine = RecordingEngine(store, catalog)

            result = await engine.migrate_all_series("user-1")

            assert (result.updated, result.skipped, result.failed) == (2, 0, 0)
            assert catalog.lookups == [("Dark", "series"), ("Finished", "series")]
            assert engine.sleeps == [0.5, 0.5]
            dark = await store.get("a-show")
            finished = await store.get("b-show")
            assert dark is not None and finished is not None
            assert dark.data["totalSeasons"] == 3
            assert dark.data["watchedSeasons"] == []
            assert finished.data["watchedSeasons"] == [1, 2]
            assert result.details[0].seasons == 3
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_catalog_failures_are_counted_and_still_throttled(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Unknown")
            await _seed(store, "b-show", title="Broken", totalSeasons=0)
            await _seed(store, "c-show", title="Zero")
            catalog = FakeCatalog(seasons={"Zero": 0}, failing={"Broken"})
            engine = RecordingEngine(store, catalog)

            result = await engine.migrate_all_series("user-1")

            assert (result.total, result.updated, result.skipped, result.failed) == (3, 0, 0, 3)
            assert [detail.reason for detail in result.details] == [
                "not_found",
                "lookup_error",
                "not_found",
            ]
            assert engine.sleeps == [0.5, 0.5, 0.5]
            untouched = await store.get("a-show")
            assert untouched is not None
            assert "totalSeasons" not in untouched.data
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_write_failures_are_reported_as_failed(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path, FailingWriteStore)
        try:
            await _seed(store, "a-show", title="Dark")
            await _seed(store, "b-show", title="Kept", totalSeasons=2)
            engine = RecordingEngine(store, FakeCatalog(seasons={"Dark": 3}))

            result = await engine.migrate_all_series("user-1")

            assert (result.updated, result.skipped, result.failed) == (0, 1, 1)
            assert result.details[0].reason == "persist_error"
            assert result.is_consistent
            assert engine.sleeps == [0.5]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_only_the_users_series_are_migrated(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Mine", totalSeasons=1)
            await store.set("b-movie", {"userId": "user-1", "type": "movie", "title": "Film"})
            await store.set(
                "c-other", {"userId": "user-2", "type": "series", "title": "Theirs"}
            )
            await _seed(store, "d-show", title="Also Mine", totalSeasons=2)
            engine = RecordingEngine(store, FakeCatalog())
            calls: list[tuple[int, int, str]] = []

            async def on_progress(current: int, total: int, title: str) -> None:
                calls.append((current, total, title))

            result = await engine.migrate_all_series("user-1", on_progress)

            assert result.total == 2
            assert calls == [(1, 2, "Mine"), (2, 2, "Also Mine")]
            assert [detail.id for detail in result.details] == ["a-show", "d-show"]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_malformed_documents_count_as_failures(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Bad", watchedSeasons=[0])
            await _seed(store, "b-show", title="Good", totalSeasons=1)
            engine = RecordingEngine(store, FakeCatalog())

            result = await engine.migrate_all_series("user-1")

            assert result.details[0].status == "failed"
            assert result.details[0].reason == "invalid_document"
            assert result.updated + result.skipped + result.failed == result.total == 2
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_enumeration_failure_aborts_the_run(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path, FailingQueryStore)
        try:
            engine = RecordingEngine(store, FakeCatalog())
            with pytest.raises(RuntimeError):
                await engine.migrate_all_series("user-1")
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_empty_library_yields_empty_result(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            result = await RecordingEngine(store, FakeCatalog()).migrate_all_series("nobody")
            assert result.to_payload() == {
                "total": 0,
                "updated": 0,
                "skipped": 0,
                "failed": 0,
                "details": [],
            }
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_refresh_one_series_overwrites_season_count_only(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Dark", totalSeasons=2, watchedSeasons=[1])
            catalog = FakeCatalog(seasons={"Dark": 3}, failing={"Broken"})
            engine = RecordingEngine(store, catalog)

            refreshed = await engine.refresh_one_series("a-show", "Dark")
            missing = await engine.refresh_one_series("a-show", "Nope")
            broken = await engine.refresh_one_series("a-show", "Broken")

            assert refreshed.to_payload() == {"success": True, "totalSeasons": 3}
            assert missing.success is False
            assert broken.success is False
            stored = await store.get("a-show")
            assert stored is not None
            assert stored.data["totalSeasons"] == 3
            assert stored.data["watchedSeasons"] == [1]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_episode_tracking_migration_expands_watched_seasons(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(
                store,
                "a-show",
                title="Dark",
                imdbId="tt1",
                totalSeasons=2,
                watchedSeasons=[1],
            )
            await _seed(store, "b-show", title="No Id", totalSeasons=2)
            await _seed(
                store,
                "c-show",
                title="Tracked",
                imdbId="tt3",
                totalSeasons=1,
                episodesPerSeason={"1": 6},
            )
            catalog = FakeCatalog(episodes={("tt1", 1): 3, ("tt1", 2): 2})
            engine = RecordingEngine(store, catalog)

            result = await engine.migrate_episode_tracking("user-1")

            assert (result.updated, result.skipped, result.failed) == (1, 2, 0)
            assert [detail.reason for detail in result.details] == [
                None,
                "missing_imdb_id",
                "already_tracked",
            ]
            assert catalog.episode_requests == [("tt1", 1), ("tt1", 2)]
            assert engine.sleeps == [0.3, 0.3]

            stored = await store.get("a-show")
            assert stored is not None
            assert stored.data["episodesPerSeason"] == {"1": 3, "2": 2}
            assert stored.data["watchedEpisodes"] == {"1": [1, 2, 3]}
            assert stored.data["currentSeason"] == 1
            assert stored.data["currentEpisode"] == 3
            assert stored.data["watchedSeasons"] == [1]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_episode_tracking_skips_when_catalog_has_no_episodes(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Obscure", imdbId="tt9", totalSeasons=1)
            await _seed(store, "b-show", title="Unknown", imdbId="tt8")
            engine = RecordingEngine(store, FakeCatalog())

            result = await engine.migrate_episode_tracking("user-1")

            assert [detail.reason for detail in result.details] == [
                "no_episode_data",
                "unknown_seasons",
            ]
            assert result.skipped == 2
            stored = await store.get("a-show")
            assert stored is not None
            assert "episodesPerSeason" not in stored.data
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_negative_season_count_is_looked_up(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(store, "a-show", title="Show", totalSeasons=-1)
            catalog = FakeCatalog(seasons={"Show": 4})
            engine = RecordingEngine(store, catalog)

            result = await engine.migrate_all_series("user-1")

            assert catalog.lookups == [("Show", "series")]
            assert result.details[0].status == "updated"
            assert engine.sleeps == [0.5]
            stored = await store.get("a-show")
            assert stored is not None
            assert stored.data["totalSeasons"] == 4
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_bad_episode_data_does_not_block_season_reconciliation(tmp_path) -> None:
    async def runner() -> None:
        database, store = await _open(tmp_path)
        try:
            await _seed(
                store,
                "a-show",
                title="Show",
                totalSeasons=3,
                watched=True,
                watchedSeasons=[1, 2],
                watchedEpisodes={"1": [0, 1]},
            )
            engine = RecordingEngine(store, FakeCatalog())

            result = await engine.migrate_all_series("user-1")

            assert result.details[0].status == "updated"
            stored = await store.get("a-show")
            assert stored is not None
            assert stored.data["watchedSeasons"] == [1, 2, 3]
            assert stored.data["watchedEpisodes"] == {"1": [0, 1]}
        finally:
            await database.dispose()

    asyncio.run(runner())
