from __future__ import annotations

import contextlib
import json
from http import HTTPStatus
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from shared.logging import setup_logging
from shared.storage import FileKeyValueStorage
from tally.db import Database, SqliteRemoteRepository
from tally.local_store import LocalStore
from tally.notifications import NotificationLog
from tally.scoring import sort_games_by_date
from tally.service import TallyService
from tally.settings import TallySettings
from tally.sync import RemoteSync

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request


class IdentityRequest(BaseModel):
    user_id: str | None = None


def _service(request: Request) -> TallyService:
    return request.app.state.service


def _command_failed(request: Request, status_code: int = HTTPStatus.BAD_REQUEST) -> JSONResponse:
    """Report the notification a rejected command just emitted."""
    notifications: NotificationLog = request.app.state.notifications
    errors = notifications.errors
    message = errors[-1].description if errors else "Request failed"
    return JSONResponse({"error": message}, status_code=status_code)


def _download(content: str, filename: str, media_type: str) -> Response:
    return Response(
        content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def list_games(request: Request) -> JSONResponse:
    service = _service(request)
    return JSONResponse({"games": [game.to_wire() for game in sort_games_by_date(service.games)]})


async def game_by_code(request: Request) -> JSONResponse:
    service = _service(request)
    game = service.get_game_by_code(request.path_params["code"])
    if game is None:
        return _command_failed(request, HTTPStatus.NOT_FOUND)
    return JSONResponse(game.to_wire())


async def rankings(request: Request) -> JSONResponse:
    service = _service(request)
    return JSONResponse(
        {
            "rankings": [
                {"playerId": r.player_id, "name": r.name, "total": r.total, "rank": r.rank}
                for r in service.rankings()
            ],
        },
    )


async def export_json(request: Request) -> Response:
    service = _service(request)
    return _download(service.export_json(), service.export_filename("json"), "application/json")


async def export_csv(request: Request) -> Response:
    service = _service(request)
    return _download(service.export_csv(), service.export_filename("csv"), "text/csv")


async def _import(request: Request, *, csv: bool) -> JSONResponse:
    service = _service(request)
    raw_body = await request.body()
    try:
        text = raw_body.decode("utf-8-sig")
    except UnicodeDecodeError:
        return JSONResponse({"error": "File must be UTF-8 encoded"}, status_code=HTTPStatus.BAD_REQUEST)
    imported = service.import_csv(text) if csv else service.import_json(text)
    if not imported:
        return _command_failed(request)
    return JSONResponse({"games": len(service.games), "players": len(service.players)})


async def import_json(request: Request) -> JSONResponse:
    return await _import(request, csv=False)


async def import_csv(request: Request) -> JSONResponse:
    return await _import(request, csv=True)


async def set_identity(request: Request) -> JSONResponse:
    """Session-changed signal from the external auth service."""
    service = _service(request)
    try:
        body = IdentityRequest(**json.loads(await request.body() or b"{}"))
    except (ValueError, TypeError, ValidationError) as e:
        return JSONResponse({"error": str(e)}, status_code=HTTPStatus.UNPROCESSABLE_ENTITY)

    await service.set_identity(body.user_id)
    return JSONResponse({"user_id": service.user_id, "games": len(service.games), "players": len(service.players)})


def create_app(settings: TallySettings | None = None) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = TallySettings()

    routes = [
        Route("/health", health, methods=["GET"], name="health"),
        Route("/api/games", list_games, methods=["GET"], name="list_games"),
        Route("/api/games/by-code/{code}", game_by_code, methods=["GET"], name="game_by_code"),
        Route("/api/rankings", rankings, methods=["GET"], name="rankings"),
        Route("/api/export.json", export_json, methods=["GET"], name="export_json"),
        Route("/api/export.csv", export_csv, methods=["GET"], name="export_csv"),
        Route("/api/import/json", import_json, methods=["POST"], name="import_json"),
        Route("/api/import/csv", import_csv, methods=["POST"], name="import_csv"),
        Route("/api/identity", set_identity, methods=["PUT"], name="set_identity"),
    ]

    db = Database(settings.remote_database_path)
    db.connect()
    notifications = NotificationLog()
    remote_sync = RemoteSync(
        SqliteRemoteRepository(db),
        notifications,
        retry_attempts=settings.remote_retry_attempts,
        retry_backoff_seconds=settings.remote_retry_backoff_seconds,
    )
    service = TallyService(
        LocalStore(FileKeyValueStorage(settings.data_dir)),
        remote_sync,
        notify=notifications,
        product_name=settings.product_name,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        await service.start()
        yield
        await service.close()
        db.close()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type"],
    )

    app.state.db = db
    app.state.settings = settings
    app.state.notifications = notifications
    app.state.service = service

    logger.info("tally server ready")
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory tally.server.app:get_app."""
    s = TallySettings()
    setup_logging(log_dir=s.log_dir)
    return create_app(settings=s)
