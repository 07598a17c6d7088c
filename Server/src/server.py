"""
rigforge server entry point.

Builds the shared components from the environment, registers the MCP
tools/resources and the HTTP routes, and serves them:

    python server.py              # MCP (streamable HTTP) + HTTP API + proxy
    python server.py --http-only  # HTTP API + proxy only, served by uvicorn
"""

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route

from integrations.meshy_client import MeshyClient
from routes import get_generation_routes, get_proxy_routes
from services.config import ForgeConfig
from services.gallery import Gallery, InMemoryListStore
from services.orchestrator import GenerationOrchestrator
from services.registry import get_registered_resources, get_registered_tools
from services.sessions import SessionManager
from services.tools import ForgeState, bind_state

import services.resources  # noqa: F401  (registers resources)

logger = logging.getLogger("rigforge-server")


def build_state(
    config: ForgeConfig,
    meshy_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ForgeState:
    """Create the components shared by routes and tools."""
    gallery = Gallery(InMemoryListStore(), limit=config.gallery_limit)
    if not config.has_api_key:
        logger.warning("[Server] MESHY_API_KEY is not set; generation is disabled, the asset proxy still works")
        return ForgeState(config=config, gallery=gallery)

    client = MeshyClient(config, transport=meshy_transport)
    orchestrator = GenerationOrchestrator(client, config, gallery=gallery)
    return ForgeState(
        config=config,
        gallery=gallery,
        sessions=SessionManager(
            orchestrator,
            ttl_seconds=config.session_ttl_seconds,
            max_sessions=config.max_sessions,
        ),
        client=client,
    )


def build_routes(
    state: ForgeState,
    proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Route]:
    return get_proxy_routes(state.config, transport=proxy_transport) + get_generation_routes(
        state.config, state.gallery, state.sessions, state.client
    )


def _cors_middleware() -> List[Middleware]:
    return [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Range"],
        )
    ]


def create_http_app(
    state: ForgeState,
    proxy_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Starlette:
    """Plain Starlette app with the HTTP API and the asset proxy."""
    @asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        await _close_state(state)

    return Starlette(
        routes=build_routes(state, proxy_transport),
        middleware=_cors_middleware(),
        lifespan=lifespan,
    )


def create_server(state: ForgeState) -> FastMCP:
    """FastMCP server with every registered tool, resource and HTTP route."""
    mcp = FastMCP("rigforge")

    for tool in get_registered_tools():
        mcp.tool(tool['func'], name=tool['name'], description=tool['description'], **tool['kwargs'])
        logger.debug(f"[Server] Registered tool {tool['name']}")

    for resource in get_registered_resources():
        mcp.resource(
            resource['uri'],
            name=resource['name'],
            description=resource['description'],
            **resource['kwargs'],
        )(resource['func'])
        logger.debug(f"[Server] Registered resource {resource['uri']}")

    for route in build_routes(state):
        methods = sorted(route.methods - {"HEAD"}) if route.methods else None
        mcp.custom_route(route.path, methods=methods)(route.endpoint)

    return mcp


async def _close_state(state: ForgeState) -> None:
    if state.sessions:
        await state.sessions.shutdown()
    if state.client:
        await state.client.aclose()


async def _serve_mcp(config: ForgeConfig, state: ForgeState) -> None:
    mcp = create_server(state)
    try:
        await mcp.run_async(
            transport="http",
            host=config.host,
            port=config.port,
            middleware=_cors_middleware(),
        )
    finally:
        await _close_state(state)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="rigforge character generation server")
    parser.add_argument("--http-only", action="store_true", help="Serve only the HTTP API and asset proxy")
    args = parser.parse_args(argv)

    config = ForgeConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    state = build_state(config)
    bind_state(state)
    logger.info(f"[Server] Starting on {config.host}:{config.port} (model {config.ai_model})")

    if args.http_only:
        uvicorn.run(create_http_app(state), host=config.host, port=config.port)
    else:
        asyncio.run(_serve_mcp(config, state))


if __name__ == "__main__":
    main()
