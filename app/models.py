"""Pydantic models describing tracked series documents."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

MediaType = Literal["movie", "series", "game", "book"]

WATCH_STATE_FIELDS: tuple[str, ...] = (
    "totalSeasons",
    "episodesPerSeason",
    "watchedEpisodes",
    "watchedSeasons",
    "currentSeason",
    "currentEpisode",
    "watched",
)


def _positive_int(value: Any, *, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if number <= 0:
        raise ValueError(f"{label} must be a positive integer")
    return number


def normalize_numbers(values: Iterable[Any], *, label: str) -> list[int]:
    """Return a sorted, de-duplicated list of positive integers."""

    return sorted({_positive_int(value, label=label) for value in values})


def parse_season_count(value: Any) -> int | None:
    """Return a positive season count, ``None`` when it is unknown."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _clean_title(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def dump_season_map(mapping: Mapping[int, Any]) -> dict[str, Any]:
    """Serialise a season keyed mapping with string keys in season order."""

    result: dict[str, Any] = {}
    for season in sorted(mapping):
        value = mapping[season]
        result[str(season)] = list(value) if isinstance(value, (list, tuple)) else value
    return result


class WatchState(BaseModel):
    """Episode and season watch progress for a single series item.

    Season keyed maps are held as ``dict[int, ...]`` and always iterated in
    ascending season order. Watched episode lists are sorted and unique, and a
    season with nothing watched is absent rather than stored as an empty list.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    total_seasons: int | None = Field(default=None, ge=0, alias="totalSeasons")
    episodes_per_season: dict[int, int] = Field(
        default_factory=dict, alias="episodesPerSeason"
    )
    watched_episodes: dict[int, list[int]] = Field(
        default_factory=dict, alias="watchedEpisodes"
    )
    watched_seasons: list[int] = Field(default_factory=list, alias="watchedSeasons")
    current_season: int | None = Field(default=None, ge=1, alias="currentSeason")
    current_episode: int | None = Field(default=None, ge=1, alias="currentEpisode")
    watched: bool = False

    @field_validator("total_seasons", mode="before")
    @classmethod
    def _parse_total_seasons(cls, value: object) -> object:
        return parse_season_count(value)

    @field_validator(
        "episodes_per_season", "watched_episodes", "watched_seasons", mode="before"
    )
    @classmethod
    def _default_empty(cls, value: object, info: ValidationInfo) -> object:
        if value is None:
            return [] if info.field_name == "watched_seasons" else {}
        return value

    @field_validator("episodes_per_season")
    @classmethod
    def _clean_episode_counts(cls, value: dict[int, int]) -> dict[int, int]:
        cleaned: dict[int, int] = {}
        for season in sorted(value):
            _positive_int(season, label="season")
            count = value[season]
            # Zero means the episode list could not be fetched yet.
            if count > 0:
                cleaned[season] = count
        return cleaned

    @field_validator("watched_episodes")
    @classmethod
    def _clean_watched_episodes(
        cls, value: dict[int, list[int]]
    ) -> dict[int, list[int]]:
        cleaned: dict[int, list[int]] = {}
        for season in sorted(value):
            _positive_int(season, label="season")
            episodes = normalize_numbers(value[season], label="episode")
            if episodes:
                cleaned[season] = episodes
        return cleaned

    @field_validator("watched_seasons")
    @classmethod
    def _clean_watched_seasons(cls, value: list[int]) -> list[int]:
        return normalize_numbers(value, label="season")

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "WatchState":
        """Build a state from a stored document payload."""

        return cls.model_validate({**data, "id": doc_id})

    def episode_count(self, season: int) -> int | None:
        """Return the known episode count for a season, if any."""

        return self.episodes_per_season.get(season)

    def watched_in_season(self, season: int) -> list[int]:
        return list(self.watched_episodes.get(season, []))

    def out_of_range_episodes(self) -> dict[int, list[int]]:
        """Return watched episodes that exceed their season's known bound."""

        offending: dict[int, list[int]] = {}
        for season, episodes in self.watched_episodes.items():
            bound = self.episodes_per_season.get(season)
            if bound is None:
                continue
            extra = [episode for episode in episodes if episode > bound]
            if extra:
                offending[season] = extra
        return offending

    def to_document(self, fields: Iterable[str] | None = None) -> dict[str, Any]:
        """Return the persisted representation of the watch fields.

        ``fields`` limits the output to the given persisted key names. Optional
        scalars that are unset are omitted entirely.
        """

        payload: dict[str, Any] = {
            "totalSeasons": self.total_seasons,
            "episodesPerSeason": dump_season_map(self.episodes_per_season),
            "watchedEpisodes": dump_season_map(self.watched_episodes),
            "watchedSeasons": list(self.watched_seasons),
            "currentSeason": self.current_season,
            "currentEpisode": self.current_episode,
            "watched": self.watched,
        }
        selected = WATCH_STATE_FIELDS if fields is None else tuple(fields)
        unknown = [name for name in selected if name not in payload]
        if unknown:
            raise KeyError(f"Unknown watch state fields: {', '.join(unknown)}")
        return {
            name: payload[name]
            for name in selected
            if not (payload[name] is None and fields is None)
        }


class SeriesItem(WatchState):
    """A series document: the watch state plus the owning item's metadata."""

    user_id: str | None = Field(default=None, alias="userId")
    title: str = ""
    type: MediaType = "series"
    imdb_id: str | None = Field(default=None, alias="imdbId")
    created_at: datetime | None = Field(default=None, alias="createdAt")

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value: object) -> object:
        return _clean_title(value)

    @field_validator("imdb_id", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    def display_title(self) -> str:
        """Return a human-friendly title for summaries and logs."""

        return self.title or self.imdb_id or self.id


class SeasonSummary(BaseModel):
    """The season level fields of a series document.

    Season backfills only read these, so malformed episode data elsewhere in
    the document does not stop a series from being reconciled.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str = ""
    total_seasons: int | None = Field(default=None, alias="totalSeasons")
    watched_seasons: list[int] = Field(default_factory=list, alias="watchedSeasons")
    watched: bool = False

    @field_validator("title", mode="before")
    @classmethod
    def _coerce_title(cls, value: object) -> object:
        return _clean_title(value)

    @field_validator("total_seasons", mode="before")
    @classmethod
    def _parse_total_seasons(cls, value: object) -> object:
        return parse_season_count(value)

    @field_validator("watched_seasons", mode="before")
    @classmethod
    def _clean_watched_seasons(cls, value: object) -> object:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise ValueError("watchedSeasons must be a list")
        return normalize_numbers(value, label="season")

    @field_validator("watched", mode="before")
    @classmethod
    def _default_unwatched(cls, value: object) -> object:
        return False if value is None else value

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "SeasonSummary":
        return cls.model_validate({**data, "id": doc_id})
