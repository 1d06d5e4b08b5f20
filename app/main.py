"""Entry point for the FastAPI-powered series tracking service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from .config import settings
from .database import Database
from .services.documents import DocumentNotFoundError, DocumentStore
from .services.migration import SeasonMigrationEngine
from .services.omdb import OMDbClient
from .services.tracking import SessionContext, SeriesNotFoundError, TrackingService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class EpisodeRequest(BaseModel):
    season: int = Field(ge=1)
    episode: int = Field(ge=1)


class MarkSeasonRequest(BaseModel):
    total_episodes: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("totalEpisodes", "total_episodes"),
    )


class WatchedSeasonsRequest(BaseModel):
    seasons: list[int] = Field(default_factory=list)


class RefreshSeasonsRequest(BaseModel):
    title: str | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    omdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.omdb_api_url),
            timeout=httpx.Timeout(settings.catalog_timeout_seconds, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    store = DocumentStore(database.session_factory)
    omdb = OMDbClient(settings, omdb_http_client)
    if not omdb.configured:
        logger.warning("OMDB_API_KEY is not set; catalog lookups will report not found")
    migration_engine = SeasonMigrationEngine(
        store,
        omdb,
        delay_seconds=settings.migration_delay_seconds,
        episode_delay_seconds=settings.episode_fetch_delay_seconds,
    )

    app.state.tracking_service = TrackingService(store, migration_engine)
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Episode level watch progress tracking for series",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    fastapi_app.state.tracking_sessions: dict[str, SessionContext] = {}

    register_routes(fastapi_app)
    return fastapi_app


def get_tracking_service(app: FastAPI) -> TrackingService:
    service = getattr(app.state, "tracking_service", None)
    if not isinstance(service, TrackingService):
        raise RuntimeError("Tracking service not initialised")
    return service


def _session_for(fastapi_app: FastAPI, user_id: str) -> SessionContext:
    """Return the cleanup context for ``user_id``.

    Contexts live for the lifetime of the process, so each user's stored
    documents are normalised once per server start.
    """

    sessions = getattr(fastapi_app.state, "tracking_sessions", None)
    if sessions is None:
        sessions = {}
        fastapi_app.state.tracking_sessions = sessions
    context = sessions.get(user_id)
    if context is None:
        context = SessionContext(user_id=user_id)
        sessions[user_id] = context
    return context


async def _read_body(request: Request, model: type[BaseModel]) -> Any:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400, detail=json.loads(exc.json(include_url=False))
        ) from exc


def _not_found(exc: KeyError) -> HTTPException:
    message = exc.args[0] if exc.args else "Not found"
    return HTTPException(status_code=404, detail=str(message))


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/users/{user_id}/series")
    async def list_series(user_id: str) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        await service.run_session_cleanup(_session_for(fastapi_app, user_id))
        overviews = await service.list_series(user_id)
        return JSONResponse({"series": [overview.to_payload() for overview in overviews]})

    @fastapi_app.get("/api/series/{item_id}/progress")
    async def series_progress(item_id: str) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        try:
            overview = await service.get_overview(item_id)
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        return JSONResponse(overview.to_payload())

    @fastapi_app.post("/api/series/{item_id}/episodes/toggle")
    async def toggle_episode(item_id: str, request: Request) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        body: EpisodeRequest = await _read_body(request, EpisodeRequest)
        try:
            overview = await service.toggle_episode(item_id, body.season, body.episode)
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(overview.to_payload())

    @fastapi_app.post("/api/series/{item_id}/episodes/next")
    async def mark_next_episode(item_id: str) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        try:
            marked, overview = await service.mark_next_episode(item_id)
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        payload = overview.to_payload()
        payload["marked"] = marked.to_payload() if marked else None
        return JSONResponse(payload)

    @fastapi_app.post("/api/series/{item_id}/seasons/{season}/mark-all")
    async def mark_all_in_season(item_id: str, season: int, request: Request) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        body: MarkSeasonRequest = await _read_body(request, MarkSeasonRequest)
        try:
            overview = await service.mark_all_in_season(
                item_id, season, body.total_episodes
            )
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(overview.to_payload())

    @fastapi_app.delete("/api/series/{item_id}/seasons/{season}")
    async def clear_season(item_id: str, season: int) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        try:
            overview = await service.clear_season(item_id, season)
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(overview.to_payload())

    @fastapi_app.put("/api/series/{item_id}/watched-seasons")
    async def set_watched_seasons(item_id: str, request: Request) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        body: WatchedSeasonsRequest = await _read_body(request, WatchedSeasonsRequest)
        try:
            overview = await service.set_watched_seasons(item_id, body.seasons)
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(overview.to_payload())

    @fastapi_app.post("/api/series/{item_id}/refresh-seasons")
    async def refresh_seasons(item_id: str, request: Request) -> JSONResponse:
        service = get_tracking_service(fastapi_app)
        body: RefreshSeasonsRequest = await _read_body(request, RefreshSeasonsRequest)
        try:
            result = await service.refresh_one_series(item_id, body.title)
        except (SeriesNotFoundError, DocumentNotFoundError) as exc:
            raise _not_found(exc) from exc
        return JSONResponse(result.to_payload())

    @fastapi_app.post("/api/users/{user_id}/migrations/seasons")
    async def migrate_seasons(user_id: str) -> JSONResponse:
        service = get_tracking_service(fastapi_app)

        def _log_progress(current: int, total: int, title: str) -> None:
            logger.info("Season migration %s/%s: %s", current, total, title)

        result = await service.migrate_all_series(user_id, _log_progress)
        return JSONResponse(result.to_payload())

    @fastapi_app.post("/api/users/{user_id}/migrations/episodes")
    async def migrate_episodes(user_id: str) -> JSONResponse:
        service = get_tracking_service(fastapi_app)

        def _log_progress(current: int, total: int, title: str) -> None:
            logger.info("Episode migration %s/%s: %s", current, total, title)

        result = await service.migrate_episode_tracking(user_id, _log_progress)
        return JSONResponse(result.to_payload())


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
