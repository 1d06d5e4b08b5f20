"""Pure state transitions for episode and season tracking.

Each operation takes the current :class:`~app.models.WatchState` and returns an
:class:`EpisodeUpdate` holding the next state plus the persisted fields that
changed. Nothing here touches storage; callers write ``changes`` as a partial
update. Two toggles cancel out, so callers must treat the result as "last
computed state wins" rather than replaying an operation on retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from ..models import WatchState
from .progress import EpisodeRef


@dataclass(slots=True)
class EpisodeUpdate:
    """Next watch state plus the persisted keys that must be written."""

    state: WatchState
    changes: dict[str, Any]

    @property
    def is_noop(self) -> bool:
        return not self.changes


def _check_season(state: WatchState, season: int) -> None:
    if season <= 0:
        raise ValueError("Season numbers start at 1")
    if state.total_seasons and season > state.total_seasons:
        raise ValueError(
            f"Season {season} is beyond the {state.total_seasons} known seasons"
        )


def _check_episode(state: WatchState, season: int, episode: int) -> None:
    _check_season(state, season)
    if episode <= 0:
        raise ValueError("Episode numbers start at 1")
    bound = state.episode_count(season)
    if bound is not None and episode > bound:
        raise ValueError(f"Season {season} only has {bound} episodes")


def _with_watched_episodes(
    state: WatchState, watched: dict[int, list[int]]
) -> EpisodeUpdate:
    ordered = {season: watched[season] for season in sorted(watched) if watched[season]}
    next_state = state.model_copy(update={"watched_episodes": ordered})
    return EpisodeUpdate(
        state=next_state, changes=next_state.to_document(["watchedEpisodes"])
    )


def toggle_episode(state: WatchState, season: int, episode: int) -> EpisodeUpdate:
    """Flip a single episode between watched and unwatched."""

    watched = dict(state.watched_episodes)
    episodes = set(watched.get(season, []))
    if episode in episodes:
        # Stored episodes beyond a known bound can still be removed.
        episodes.discard(episode)
    else:
        _check_episode(state, season, episode)
        episodes.add(episode)

    if episodes:
        watched[season] = sorted(episodes)
    else:
        watched.pop(season, None)
    return _with_watched_episodes(state, watched)


def mark_all_in_season(
    state: WatchState, season: int, total_episodes: int | None = None
) -> EpisodeUpdate:
    """Mark episodes ``1..total_episodes`` of a season as watched.

    ``total_episodes`` defaults to the known episode count for the season.
    """

    _check_season(state, season)
    bound = state.episode_count(season)
    if total_episodes is None:
        if bound is None:
            raise ValueError(f"Episode count for season {season} is unknown")
        total_episodes = bound
    if bound is not None and total_episodes > bound:
        raise ValueError(f"Season {season} only has {bound} episodes")

    watched = dict(state.watched_episodes)
    if total_episodes <= 0:
        watched.pop(season, None)
    else:
        watched[season] = list(range(1, total_episodes + 1))
    return _with_watched_episodes(state, watched)


def clear_season(state: WatchState, season: int) -> EpisodeUpdate:
    """Forget every watched episode of a season."""

    if season <= 0:
        raise ValueError("Season numbers start at 1")
    watched = dict(state.watched_episodes)
    watched.pop(season, None)
    return _with_watched_episodes(state, watched)


def update_resume_point(state: WatchState, season: int, episode: int) -> EpisodeUpdate:
    """Record the most recently marked episode."""

    _check_episode(state, season, episode)
    next_state = state.model_copy(
        update={"current_season": season, "current_episode": episode}
    )
    return EpisodeUpdate(
        state=next_state,
        changes=next_state.to_document(["currentSeason", "currentEpisode"]),
    )


def resume_point_after_toggle(state: WatchState, season: int) -> EpisodeRef | None:
    """Return the latest watched episode in ``season`` after a toggle."""

    episodes = state.watched_episodes.get(season)
    if not episodes:
        return None
    return EpisodeRef(season=season, episode=max(episodes))


def set_episodes_per_season(
    state: WatchState, counts: Mapping[int, int]
) -> EpisodeUpdate:
    """Merge freshly fetched per-season episode counts into the state."""

    merged = dict(state.episodes_per_season)
    for season, count in counts.items():
        season = int(season)
        if season <= 0:
            raise ValueError("Season numbers start at 1")
        if count > 0:
            merged[season] = int(count)
    ordered = {season: merged[season] for season in sorted(merged)}
    next_state = state.model_copy(update={"episodes_per_season": ordered})
    return EpisodeUpdate(
        state=next_state, changes=next_state.to_document(["episodesPerSeason"])
    )


# Legacy season selector over the coarse ``watchedSeasons`` list.


def _with_watched_seasons(state: WatchState, seasons: set[int]) -> EpisodeUpdate:
    next_state = state.model_copy(update={"watched_seasons": sorted(seasons)})
    return EpisodeUpdate(
        state=next_state, changes=next_state.to_document(["watchedSeasons"])
    )


def toggle_watched_season(state: WatchState, season: int) -> EpisodeUpdate:
    _check_season(state, season)
    seasons = set(state.watched_seasons)
    if season in seasons:
        seasons.discard(season)
    else:
        seasons.add(season)
    return _with_watched_seasons(state, seasons)


def select_all_seasons(state: WatchState) -> EpisodeUpdate:
    if not state.total_seasons:
        raise ValueError("Total season count is unknown")
    return _with_watched_seasons(state, set(range(1, state.total_seasons + 1)))


def clear_watched_seasons(state: WatchState) -> EpisodeUpdate:
    return _with_watched_seasons(state, set())


def set_watched_seasons(state: WatchState, seasons: list[int]) -> EpisodeUpdate:
    """Replace the legacy watched-season selection wholesale."""

    for season in seasons:
        _check_season(state, season)
    return _with_watched_seasons(state, set(seasons))
