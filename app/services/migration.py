"""Batch backfill of season metadata for a user's series.

Runs are strictly sequential: at most one catalog request is in flight and a
fixed delay follows every catalog call, whether it succeeded or not. Per-item
problems are folded into the returned :class:`MigrationResult`; only the
initial enumeration query can abort a run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from pydantic import ValidationError

from ..models import SeasonSummary, SeriesItem
from .documents import DocumentStore, StoredDocument
from .episodes import mark_all_in_season, set_episodes_per_season, update_resume_point
from .omdb import CatalogLookupClient, CatalogMatch

logger = logging.getLogger(__name__)

MigrationStatus = Literal["updated", "skipped", "failed"]
ProgressCallback = Callable[[int, int, str], Any]


@dataclass(slots=True)
class MigrationDetail:
    """Outcome for a single item of a migration run."""

    id: str
    title: str
    status: MigrationStatus
    seasons: int | None = None
    reason: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status,
        }
        if self.seasons is not None:
            payload["seasons"] = self.seasons
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass
class MigrationResult:
    """Aggregate outcome of a migration run."""

    total: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    details: list[MigrationDetail] = field(default_factory=list)

    def record(self, detail: MigrationDetail) -> None:
        if detail.status == "updated":
            self.updated += 1
        elif detail.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.details.append(detail)

    @property
    def is_consistent(self) -> bool:
        return self.updated + self.skipped + self.failed == self.total

    def to_payload(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "details": [detail.to_payload() for detail in self.details],
        }


@dataclass(slots=True)
class SeasonRefreshResult:
    """Result of refreshing the season count of one series."""

    success: bool
    total_seasons: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.total_seasons is not None:
            payload["totalSeasons"] = self.total_seasons
        return payload


class SeasonMigrationEngine:
    """Reconciles stored series against the external catalog."""

    def __init__(
        self,
        store: DocumentStore,
        catalog: CatalogLookupClient,
        *,
        delay_seconds: float = 0.5,
        episode_delay_seconds: float = 0.3,
    ):
        self._store = store
        self._catalog = catalog
        self._delay_seconds = delay_seconds
        self._episode_delay_seconds = episode_delay_seconds

    async def migrate_all_series(
        self, user_id: str, on_progress: ProgressCallback | None = None
    ) -> MigrationResult:
        """Backfill ``totalSeasons`` and reconcile ``watchedSeasons``."""

        documents = await self._list_series(user_id)
        result = MigrationResult(total=len(documents))
        logger.info(
            "Starting season migration for user %s over %s series",
            user_id,
            result.total,
        )

        for index, document in enumerate(documents, start=1):
            title = str(document.data.get("title") or "")
            await self._report(on_progress, index, result.total, title)
            result.record(await self._migrate_series(document))

        logger.info(
            "Season migration for user %s finished: %s updated, %s skipped, %s failed",
            user_id,
            result.updated,
            result.skipped,
            result.failed,
        )
        return result

    async def refresh_one_series(self, item_id: str, title: str) -> SeasonRefreshResult:
        """Look a single series up and store its season count.

        Unlike a full run this always queries the catalog and leaves
        ``watchedSeasons`` untouched.
        """

        match = await self._lookup(title)
        if match is None or (match.total_seasons or 0) <= 0:
            return SeasonRefreshResult(success=False)
        try:
            await self._store.update(item_id, {"totalSeasons": match.total_seasons})
        except Exception:
            logger.exception("Could not store season count for %s", title)
            return SeasonRefreshResult(success=False)
        return SeasonRefreshResult(success=True, total_seasons=match.total_seasons)

    async def migrate_episode_tracking(
        self, user_id: str, on_progress: ProgressCallback | None = None
    ) -> MigrationResult:
        """Convert season-level progress into episode-level progress.

        Fetches per-season episode counts for series that have an IMDb id and a
        known season count but no episode data yet, expands every legacy
        watched season into a full episode set and moves the resume point to
        the last episode of the highest watched season.
        """

        documents = await self._list_series(user_id)
        result = MigrationResult(total=len(documents))
        logger.info(
            "Starting episode tracking migration for user %s over %s series",
            user_id,
            result.total,
        )
        for index, document in enumerate(documents, start=1):
            title = str(document.data.get("title") or "")
            await self._report(on_progress, index, result.total, title)
            result.record(await self._migrate_episodes(document))

        logger.info(
            "Episode tracking migration for user %s finished: %s updated, %s skipped, %s failed",
            user_id,
            result.updated,
            result.skipped,
            result.failed,
        )
        return result

    async def _list_series(self, user_id: str) -> list[StoredDocument]:
        return await self._store.query({"userId": user_id, "type": "series"})

    async def _migrate_series(self, document: StoredDocument) -> MigrationDetail:
        try:
            item = SeasonSummary.from_document(document.id, document.data)
        except ValidationError as exc:
            logger.warning("Skipping malformed series document %s: %s", document.id, exc)
            return MigrationDetail(
                id=document.id,
                title=str(document.data.get("title") or ""),
                status="failed",
                reason="invalid_document",
            )

        title = item.title
        total_seasons = item.total_seasons or 0
        needs_lookup = total_seasons <= 0

        if needs_lookup:
            reason = "not_found"
            try:
                match = await self._catalog.lookup(title, "series")
            except Exception as exc:
                logger.warning("Catalog lookup failed for %s: %s", title, exc)
                match = None
                reason = "lookup_error"
            if match is None or (match.total_seasons or 0) <= 0:
                logger.warning("No season count found for %s", title or item.id)
                await self._throttle(self._delay_seconds)
                return MigrationDetail(
                    id=item.id,
                    title=title,
                    status="failed",
                    reason=reason,
                )
            total_seasons = match.total_seasons

        watched_seasons = list(item.watched_seasons)
        needs_watched_seasons_update = (
            item.watched and len(watched_seasons) != total_seasons
        )
        if item.watched and total_seasons > 0:
            watched_seasons = list(range(1, total_seasons + 1))

        if needs_lookup or needs_watched_seasons_update:
            try:
                await self._store.update(
                    item.id,
                    {"totalSeasons": total_seasons, "watchedSeasons": watched_seasons},
                )
            except Exception:
                logger.exception("Season migration write failed for %s", title)
                detail = MigrationDetail(
                    id=item.id,
                    title=title,
                    status="failed",
                    seasons=total_seasons,
                    reason="persist_error",
                )
            else:
                detail = MigrationDetail(
                    id=item.id, title=title, status="updated", seasons=total_seasons
                )
        else:
            detail = MigrationDetail(
                id=item.id, title=title, status="skipped", seasons=total_seasons
            )

        if needs_lookup:
            await self._throttle(self._delay_seconds)
        return detail

    async def _migrate_episodes(self, document: StoredDocument) -> MigrationDetail:
        try:
            item = SeriesItem.from_document(document.id, document.data)
        except ValidationError as exc:
            logger.warning("Skipping malformed series document %s: %s", document.id, exc)
            return MigrationDetail(
                id=document.id,
                title=str(document.data.get("title") or ""),
                status="failed",
                reason="invalid_document",
            )

        title = item.title
        if not item.imdb_id:
            return MigrationDetail(
                id=item.id, title=title, status="skipped", reason="missing_imdb_id"
            )
        if item.episodes_per_season:
            return MigrationDetail(
                id=item.id,
                title=title,
                status="skipped",
                seasons=item.total_seasons,
                reason="already_tracked",
            )
        if not item.total_seasons:
            return MigrationDetail(
                id=item.id, title=title, status="skipped", reason="unknown_seasons"
            )

        counts: dict[int, int] = {}
        for season in range(1, item.total_seasons + 1):
            try:
                counts[season] = await self._catalog.fetch_season_episode_count(
                    item.imdb_id, season
                )
            except Exception as exc:
                logger.warning(
                    "Episode list lookup failed for %s season %s: %s", title, season, exc
                )
                counts[season] = 0
            await self._throttle(self._episode_delay_seconds)

        if not any(count > 0 for count in counts.values()):
            return MigrationDetail(
                id=item.id,
                title=title,
                status="skipped",
                seasons=item.total_seasons,
                reason="no_episode_data",
            )

        state = set_episodes_per_season(item, counts).state
        for season in item.watched_seasons:
            if season in state.episodes_per_season:
                state = mark_all_in_season(state, season).state

        fields = ["episodesPerSeason", "watchedEpisodes"]
        if item.watched_seasons:
            last_season = max(item.watched_seasons)
            last_episode = state.episodes_per_season.get(last_season)
            if last_episode:
                state = update_resume_point(state, last_season, last_episode).state
                fields.extend(["currentSeason", "currentEpisode"])

        try:
            await self._store.update(item.id, state.to_document(fields))
        except Exception:
            logger.exception("Episode tracking write failed for %s", title)
            return MigrationDetail(
                id=item.id,
                title=title,
                status="failed",
                seasons=item.total_seasons,
                reason="persist_error",
            )
        return MigrationDetail(
            id=item.id, title=title, status="updated", seasons=item.total_seasons
        )

    async def _lookup(self, title: str) -> CatalogMatch | None:
        try:
            return await self._catalog.lookup(title, "series")
        except Exception as exc:
            logger.warning("Catalog lookup failed for %s: %s", title, exc)
            return None

    async def _throttle(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    @staticmethod
    async def _report(
        callback: ProgressCallback | None, current: int, total: int, title: str
    ) -> None:
        if callback is None:
            return
        outcome = callback(current, total, title)
        if inspect.isawaitable(outcome):
            await outcome
