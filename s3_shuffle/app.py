from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response
from litestar.static_files import create_static_files_router

from .gateway import StreamGateway
from .settings import load_gateway_settings_from_env

if TYPE_CHECKING:
    from litestar.types import ControllerRouterHandler, Receive, Scope, Send

LOG = logging.getLogger("s3_shuffle.app")

prometheus_config = PrometheusConfig(app_name="s3_shuffle", prefix="s3_shuffle")


def create_app(
    gateway: StreamGateway | None = None,
    static_dir: str | Path | None = None,
) -> Litestar:
    """Create the streaming gateway ASGI application."""
    if gateway is None:
        gateway = StreamGateway.from_env()
    if static_dir is None:
        static_dir = load_gateway_settings_from_env().static_dir

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/stream", copy_scope=True)
    async def stream_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        if request.method not in {"GET", "HEAD"}:
            response = Response(
                content="Method not allowed",
                status_code=405,
                headers={"Allow": "GET, HEAD"},
                media_type="text/plain",
            )
        else:
            response = await gateway.handle(request)
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await gateway.startup()

    async def shutdown(app: Litestar) -> None:
        await gateway.shutdown()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Accept-Ranges", "Content-Length", "Content-Range"],
    )

    route_handlers: list[ControllerRouterHandler] = [
        health,
        stream_handler,
        PrometheusController,
    ]
    static_path = Path(static_dir)
    if static_path.is_dir():
        route_handlers.append(
            create_static_files_router(
                path="/",
                directories=[static_path],
                html_mode=True,
                include_in_schema=False,
            )
        )
    else:
        LOG.info("static directory %s not found, serving /stream only", static_path)

    return Litestar(
        route_handlers=route_handlers,
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
    )


app = create_app()
