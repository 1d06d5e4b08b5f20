"""Client for the OMDb catalog used to resolve season and episode counts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..models import parse_season_count

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CatalogMatch:
    """The subset of a catalog title lookup the tracker cares about."""

    title: str
    imdb_id: str | None = None
    total_seasons: int | None = None
    year: str | None = None


class CatalogLookupClient(Protocol):
    """Read-only catalog able to report season and episode counts."""

    async def lookup(self, title: str, kind: str = "series") -> CatalogMatch | None:
        ...

    async def fetch_season_episode_count(self, imdb_id: str, season: int) -> int:
        ...


class OMDbClient:
    """Thin wrapper around the OMDb HTTP API.

    The client performs exactly one request per call and never sleeps; callers
    that walk many titles are responsible for spacing their requests.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.omdb_api_key)

    async def lookup(
        self, title: str, kind: str = "series", *, year: str | None = None
    ) -> CatalogMatch | None:
        """Look a title up by name and return its season count when known."""

        normalized_title = (title or "").strip()
        if not normalized_title:
            return None

        params: dict[str, str] = {"t": normalized_title, "r": "json"}
        if kind:
            params["type"] = kind
        if year:
            params["y"] = year

        payload = await self._get(params, context=normalized_title)
        if payload is None:
            return None

        return CatalogMatch(
            title=str(payload.get("Title") or normalized_title),
            imdb_id=self._clean(payload.get("imdbID")),
            total_seasons=self.parse_total_seasons(payload.get("totalSeasons")),
            year=self._clean(payload.get("Year")),
        )

    async def fetch_season_episode_count(self, imdb_id: str, season: int) -> int:
        """Return the number of episodes listed for a season, 0 when unknown."""

        if not imdb_id or season <= 0:
            return 0
        payload = await self._get(
            {"i": imdb_id, "Season": str(season), "r": "json"},
            context=f"{imdb_id} season {season}",
        )
        if payload is None:
            return 0
        episodes = payload.get("Episodes") or []
        if not isinstance(episodes, list):
            return 0
        return len(episodes)

    async def _get(self, params: dict[str, str], *, context: str) -> dict[str, Any] | None:
        if not self._settings.omdb_api_key:
            logger.info("OMDb API key missing, skipping catalog lookup for %s", context)
            return None

        query = {"apikey": self._settings.omdb_api_key, **params}
        try:
            response = await self._client.get("/", params=query)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("OMDb request failed for %s: %s", context, exc)
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("OMDb returned a non-JSON payload for %s", context)
            return None
        if not isinstance(payload, dict):
            return None
        if str(payload.get("Response", "")).lower() == "false":
            logger.debug(
                "OMDb reported no result for %s: %s", context, payload.get("Error")
            )
            return None
        return payload

    @staticmethod
    def parse_total_seasons(value: Any) -> int | None:
        """Parse OMDb's ``totalSeasons`` string, ``None`` unless positive."""

        return parse_season_count(value)

    @staticmethod
    def _clean(value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        text = value.strip()
        if not text or text.upper() == "N/A":
            return None
        return text
