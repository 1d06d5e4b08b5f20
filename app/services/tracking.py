"""High level orchestration for interactive episode tracking."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Mapping

from pydantic import ValidationError

from ..models import SeriesItem, dump_season_map
from . import episodes
from .documents import DocumentStore
from .episodes import EpisodeUpdate
from .migration import (
    MigrationResult,
    ProgressCallback,
    SeasonMigrationEngine,
    SeasonRefreshResult,
)
from .progress import (
    EpisodeRef,
    SeriesProgress,
    ShowCategory,
    calculate_progress,
    categorize_show,
    derive_watched_seasons,
    resolve_next_episode,
)

logger = logging.getLogger(__name__)


class SeriesNotFoundError(KeyError):
    """Raised when a series item cannot be located."""


@dataclass
class SessionContext:
    """Per-session state owned by the caller.

    ``cleanup_done`` records whether stored watch states have already been
    normalised for this session.
    """

    user_id: str
    cleanup_done: bool = False


@dataclass(slots=True)
class SeriesOverview:
    """Display-ready snapshot of a series and its derived progress."""

    item: SeriesItem
    progress: SeriesProgress
    next_episode: EpisodeRef | None
    category: ShowCategory

    @classmethod
    def from_item(cls, item: SeriesItem) -> "SeriesOverview":
        return cls(
            item=item,
            progress=calculate_progress(item),
            next_episode=resolve_next_episode(item),
            category=categorize_show(item),
        )

    def to_payload(self) -> dict[str, Any]:
        item = self.item
        return {
            "id": item.id,
            "title": item.title,
            "imdbId": item.imdb_id,
            **item.to_document(),
            "completedSeasons": derive_watched_seasons(item),
            "progress": self.progress.to_payload(),
            "nextEpisode": self.next_episode.to_payload() if self.next_episode else None,
            "category": self.category,
        }


class TrackingService:
    """Applies episode mutations to stored series items.

    Writes for the same item are serialised with a per-item lock so rapid
    repeated toggles cannot lose each other's updates. Migration runs do not
    take these locks.
    """

    def __init__(self, store: DocumentStore, migration_engine: SeasonMigrationEngine):
        self._store = store
        self._migration = migration_engine
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    async def get_series(self, item_id: str) -> SeriesItem:
        document = await self._store.get(item_id)
        if document is None or document.data.get("type", "series") != "series":
            raise SeriesNotFoundError(f"Series {item_id} not found")
        return SeriesItem.from_document(document.id, document.data)

    async def get_overview(self, item_id: str) -> SeriesOverview:
        return SeriesOverview.from_item(await self.get_series(item_id))

    async def list_series(self, user_id: str) -> list[SeriesOverview]:
        documents = await self._store.query({"userId": user_id, "type": "series"})
        overviews: list[SeriesOverview] = []
        for document in documents:
            try:
                item = SeriesItem.from_document(document.id, document.data)
            except ValidationError as exc:
                logger.warning("Ignoring malformed series document %s: %s", document.id, exc)
                continue
            overviews.append(SeriesOverview.from_item(item))
        return overviews

    async def toggle_episode(self, item_id: str, season: int, episode: int) -> SeriesOverview:
        """Toggle an episode and move the resume point to the season's latest."""

        def _transform(item: SeriesItem) -> list[EpisodeUpdate]:
            toggled = episodes.toggle_episode(item, season, episode)
            updates = [toggled]
            latest = episodes.resume_point_after_toggle(toggled.state, season)
            if latest is not None:
                try:
                    resume = episodes.update_resume_point(
                        toggled.state, latest.season, latest.episode
                    )
                except ValueError:
                    # The latest stored episode lies beyond the known bound.
                    logger.debug("No valid resume point left for %s", item_id)
                else:
                    updates.append(resume)
            return updates

        return await self._apply(item_id, _transform)

    async def mark_all_in_season(
        self, item_id: str, season: int, total_episodes: int | None = None
    ) -> SeriesOverview:
        def _transform(item: SeriesItem) -> list[EpisodeUpdate]:
            marked = episodes.mark_all_in_season(item, season, total_episodes)
            updates = [marked]
            watched = marked.state.watched_episodes.get(season)
            if watched:
                updates.append(
                    episodes.update_resume_point(marked.state, season, watched[-1])
                )
            return updates

        return await self._apply(item_id, _transform)

    async def clear_season(self, item_id: str, season: int) -> SeriesOverview:
        return await self._apply(
            item_id, lambda item: [episodes.clear_season(item, season)]
        )

    async def mark_next_episode(
        self, item_id: str
    ) -> tuple[EpisodeRef | None, SeriesOverview]:
        """Mark the next unseen episode watched, if there is one."""

        marked: list[EpisodeRef] = []

        def _transform(item: SeriesItem) -> list[EpisodeUpdate]:
            next_episode = resolve_next_episode(item)
            if next_episode is None:
                return []
            marked.append(next_episode)
            toggled = episodes.toggle_episode(item, next_episode.season, next_episode.episode)
            return [
                toggled,
                episodes.update_resume_point(
                    toggled.state, next_episode.season, next_episode.episode
                ),
            ]

        overview = await self._apply(item_id, _transform)
        return (marked[0] if marked else None), overview

    async def set_watched_seasons(self, item_id: str, seasons: list[int]) -> SeriesOverview:
        return await self._apply(
            item_id, lambda item: [episodes.set_watched_seasons(item, seasons)]
        )

    async def save_episodes_per_season(
        self, item_id: str, counts: Mapping[int, int]
    ) -> SeriesOverview:
        return await self._apply(
            item_id, lambda item: [episodes.set_episodes_per_season(item, counts)]
        )

    async def run_session_cleanup(self, context: SessionContext) -> int:
        """Normalise stored watch states once per session.

        Drops empty season entries and episodes beyond a season's known count.
        Returns the number of documents rewritten; later calls with the same
        context do nothing.
        """

        if context.cleanup_done:
            return 0

        rewritten = 0
        documents = await self._store.query({"userId": context.user_id, "type": "series"})
        for document in documents:
            try:
                item = SeriesItem.from_document(document.id, document.data)
            except ValidationError as exc:
                logger.warning("Cannot normalise series document %s: %s", document.id, exc)
                continue

            cleaned: dict[int, list[int]] = {}
            for season, watched in item.watched_episodes.items():
                bound = item.episode_count(season)
                kept = [episode for episode in watched if bound is None or episode <= bound]
                if kept:
                    cleaned[season] = kept

            normalized = dump_season_map(cleaned)
            stored = document.data.get("watchedEpisodes") or {}
            if normalized == stored:
                continue
            await self._store.update(document.id, {"watchedEpisodes": normalized})
            rewritten += 1

        context.cleanup_done = True
        if rewritten:
            logger.info(
                "Normalised %s series documents for user %s", rewritten, context.user_id
            )
        return rewritten

    async def migrate_all_series(
        self, user_id: str, on_progress: ProgressCallback | None = None
    ) -> MigrationResult:
        return await self._migration.migrate_all_series(user_id, on_progress)

    async def migrate_episode_tracking(
        self, user_id: str, on_progress: ProgressCallback | None = None
    ) -> MigrationResult:
        return await self._migration.migrate_episode_tracking(user_id, on_progress)

    async def refresh_one_series(
        self, item_id: str, title: str | None = None
    ) -> SeasonRefreshResult:
        item = await self.get_series(item_id)
        return await self._migration.refresh_one_series(item.id, title or item.title)

    @asynccontextmanager
    async def _item_lock(self, item_id: str) -> AsyncIterator[None]:
        """Hold the write lock for ``item_id``, dropping it once unused."""

        lock = self._locks.setdefault(item_id, asyncio.Lock())
        self._lock_holders[item_id] = self._lock_holders.get(item_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_holders[item_id] - 1
            if remaining:
                self._lock_holders[item_id] = remaining
            else:
                del self._lock_holders[item_id]
                del self._locks[item_id]

    async def _apply(
        self,
        item_id: str,
        transform: Callable[[SeriesItem], list[EpisodeUpdate]],
    ) -> SeriesOverview:
        async with self._item_lock(item_id):
            item = await self.get_series(item_id)
            updates = transform(item)
            if not updates:
                return SeriesOverview.from_item(item)

            changes: dict[str, Any] = {}
            for update in updates:
                changes.update(update.changes)
            latest = updates[-1].state
            await self._store.update(item_id, changes)
            return SeriesOverview.from_item(latest)  # type: ignore[arg-type]
