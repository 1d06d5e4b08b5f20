"""Progress and next-episode derivations for series watch state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from ..models import WatchState

ShowCategory = Literal["continue", "completed", "not_started"]


@dataclass(slots=True)
class SeriesProgress:
    """Aggregate episode progress for a series."""

    total_watched: int
    total_episodes: int
    percentage: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalWatched": self.total_watched,
            "totalEpisodes": self.total_episodes,
            "percentage": self.percentage,
        }


@dataclass(frozen=True, slots=True)
class EpisodeRef:
    """A single ``(season, episode)`` position."""

    season: int
    episode: int

    def label(self) -> str:
        return f"S{self.season} E{self.episode}"

    def to_payload(self) -> dict[str, int]:
        return {"season": self.season, "episode": self.episode}


def _round_half_up(numerator: int, denominator: int) -> int:
    # Python's round() is banker's rounding; progress bars expect 12.5 -> 13.
    return (200 * numerator + denominator) // (2 * denominator)


def calculate_progress(state: WatchState) -> SeriesProgress:
    """Return watched/total episode counts over seasons with known counts."""

    total_watched = 0
    total_episodes = 0
    for season, count in state.episodes_per_season.items():
        if count <= 0:
            continue
        total_episodes += count
        watched = state.watched_episodes.get(season, [])
        total_watched += min(len(watched), count)

    percentage = 0
    if total_episodes > 0:
        percentage = _round_half_up(total_watched, total_episodes)
    return SeriesProgress(
        total_watched=total_watched,
        total_episodes=total_episodes,
        percentage=percentage,
    )


def resolve_next_episode(state: WatchState) -> EpisodeRef | None:
    """Return the first unwatched episode, or ``None`` when nothing is left.

    Seasons whose episode count is still unknown are skipped, so the result
    can under-report remaining work until those counts are backfilled.
    """

    total_seasons = state.total_seasons or 0
    for season in range(1, total_seasons + 1):
        count = state.episodes_per_season.get(season) or 0
        if count <= 0:
            continue
        watched = set(state.watched_episodes.get(season, []))
        for episode in range(1, count + 1):
            if episode not in watched:
                return EpisodeRef(season=season, episode=episode)
    return None


def is_season_complete(state: WatchState, season: int) -> bool:
    count = state.episodes_per_season.get(season) or 0
    if count <= 0:
        return False
    watched = state.watched_episodes.get(season, [])
    return sum(1 for episode in watched if episode <= count) == count


def derive_watched_seasons(state: WatchState) -> list[int]:
    """Return the seasons whose watched episode set is full.

    This is a display helper; the stored ``watchedSeasons`` list is a separate
    legacy track and is not rewritten from it.
    """

    return [
        season
        for season in sorted(state.episodes_per_season)
        if is_season_complete(state, season)
    ]


def categorize_show(state: WatchState) -> ShowCategory:
    """Bucket a show for the "my shows" overview.

    Completion uses the rounded percentage, so 199 of 200 episodes counts as
    completed.
    """

    progress = calculate_progress(state)
    if progress.total_episodes > 0:
        if progress.percentage == 100:
            return "completed"
        if progress.total_watched > 0:
            return "continue"
        return "not_started"

    watched_seasons = state.watched_seasons
    if state.watched or (
        watched_seasons and len(watched_seasons) == state.total_seasons
    ):
        return "completed"
    if watched_seasons or state.watched_episodes:
        return "continue"
    return "not_started"
