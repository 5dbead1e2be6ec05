import argparse
import logging
from typing import Optional

import redis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clipsync import __version__
from clipsync.api.auth import issue_session_token
from clipsync.api.routes import router
from clipsync.config import ServerConfig
from clipsync.database.object_store import FileObjectStore
from clipsync.database.redis_manager import RedisClipStore
from clipsync.errors import ClipSyncError, InternalError
from clipsync.services.clip_service import ClipService
from clipsync.services.tiering import ImageTieringPolicy

logger = logging.getLogger(__name__)


def fail(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "code": code, "message": message}, status_code=status_code)


def build_service(config: ServerConfig, client: Optional[redis.Redis] = None) -> ClipService:
    store = RedisClipStore(client or config.redis.create_client())
    objects = FileObjectStore(config.object_dir)
    images = ImageTieringPolicy(
        object_store=objects,
        inline_threshold=config.inline_image_bytes,
        max_image_bytes=config.max_image_bytes,
    )
    return ClipService(store, images)


def create_app(config: Optional[ServerConfig] = None, service: Optional[ClipService] = None) -> FastAPI:
    config = config or ServerConfig.from_env()
    app = FastAPI(title="ClipSync", version=__version__)
    app.state.config = config
    app.state.service = service or build_service(config)
    app.include_router(router)

    @app.exception_handler(ClipSyncError)
    async def handle_clipsync_error(request: Request, exc: ClipSyncError):
        if exc.status >= 500:
            logger.warning(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
        return JSONResponse(exc.to_dict(), status_code=exc.status)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()))
        return fail("INVALID_REQUEST", f"{field}: {first.get('msg', 'invalid request')}", 400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return fail("NOT_FOUND", "Route not found", 404)
        return fail("HTTP_ERROR", str(exc.detail), exc.status_code)

    @app.exception_handler(redis.ConnectionError)
    @app.exception_handler(redis.TimeoutError)
    async def handle_redis_unavailable(request: Request, exc: redis.RedisError):
        logger.warning(f"Metadata store unavailable: {exc}")
        return fail("UNAVAILABLE", "metadata store unavailable, retry later", 503)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        error = InternalError("Unexpected error")
        return JSONResponse(error.to_dict(), status_code=error.status)

    return app


def run(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(prog="clipsync-server", description="ClipSync HTTP API")
    sub = parser.add_subparsers(dest="command")
    serve = sub.add_parser("serve", help="run the API server (default)")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    token = sub.add_parser("token", help="issue a session token for a device")
    token.add_argument("--user", required=True)
    token.add_argument("--device", required=True)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    config = ServerConfig.from_env()

    if args.command == "token":
        if not config.jwt_secret:
            parser.error("CLIPSYNC_JWT_SECRET is not set")
        print(issue_session_token(config.jwt_secret, args.user, args.device))
        return

    host = getattr(args, "host", None) or config.host
    port = getattr(args, "port", None) or config.port
    uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    run()
