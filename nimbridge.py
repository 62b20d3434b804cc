#!/usr/bin/env python3
"""
nimbridge - OpenAI-compatible gateway for NVIDIA NIM with a cloudflared tunnel

Exposes /v1/chat/completions locally, rewrites each request for the
configured upstream model, relays the answer (streamed or buffered) and
keeps usage statistics. A quick tunnel can be started from the admin API
to make the gateway reachable from a public URL.

Usage:
    python nimbridge.py --port 3000

Client configuration:
    Point your client's API base URL to http://localhost:3000/v1
"""

import argparse
import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from errors import GatewayError, MalformedRequest
from paths import get_settings_path
from persistence import SettingsFile
from relay import DEFAULT_UPSTREAM_URL, UpstreamRelay, create_upstream_client
from state import StateStore
from translator import decode_body, translate
from tunnel import TunnelSupervisor

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "nimbridge"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


# =============================================================================
# Configuration
# =============================================================================


class GatewaySettings(BaseSettings):
    """Process-level settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (NIMBRIDGE_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)

    The user-editable model/sampling configuration is not here; it lives in
    the persisted settings file and is changed through the admin API.
    """

    model_config = SettingsConfigDict(
        env_prefix="NIMBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str = Field(default="0.0.0.0", description="Host to bind to")
    port: int = Field(default=3000, description="Port to listen on (also exposed by the tunnel)")
    upstream_url: str = Field(
        default=DEFAULT_UPSTREAM_URL,
        description="Upstream chat completions endpoint",
    )
    request_timeout: float = Field(
        default=120.0,
        description="Upper bound in seconds for an upstream call",
    )
    connect_timeout: float = Field(
        default=30.0,
        description="Upper bound in seconds for connecting to the upstream",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify the upstream TLS certificate",
    )
    state_dir: str | None = Field(
        default=None,
        description="Directory for the settings file (default: XDG state dir)",
    )
    tunnel_executable: str | None = Field(
        default=None,
        description="Path to cloudflared, checked before the known install locations",
    )
    debug: bool = Field(default=False, description="Enable debug logging")


def load_settings() -> GatewaySettings:
    """Load settings from environment variables and .env file."""
    return GatewaySettings()


@dataclass
class GatewayContext:
    """Everything a request handler needs; attached to ``app.state.gateway``."""

    settings: GatewaySettings
    store: StateStore
    supervisor: TunnelSupervisor
    settings_file: SettingsFile
    client: httpx.AsyncClient | None = None
    relay: UpstreamRelay | None = None
    started_at: float = field(default_factory=time.monotonic)
    # Orders settings file writes so the last one always holds the live config
    persist_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def get_context(request: Request) -> GatewayContext:
    return request.app.state.gateway


# =============================================================================
# Middleware and error handling
# =============================================================================


class PermissiveCORSMiddleware(BaseHTTPMiddleware):
    """Allow any origin on every route and answer every OPTIONS request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


async def read_json_object(request: Request) -> dict[str, Any]:
    return decode_body(await request.body())


async def persist_config(ctx: GatewayContext) -> bool:
    """Write the live configuration to the settings file, one writer at a time."""
    async with ctx.persist_lock:
        return await ctx.settings_file.save_async(ctx.store.read().config)


# =============================================================================
# Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Load the persisted configuration, open the upstream client, clean up on exit."""
    ctx: GatewayContext = app.state.gateway
    settings = ctx.settings

    saved = await ctx.settings_file.load_async()
    if saved is not None:
        await ctx.store.load_config(saved)

    owns_client = ctx.client is None
    client = ctx.client or create_upstream_client(
        request_timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        verify_tls=settings.verify_tls,
    )
    ctx.relay = UpstreamRelay(
        client,
        ctx.store,
        upstream_url=settings.upstream_url,
        request_timeout=settings.request_timeout,
    )

    yield

    logger.info("Shutting down...")
    await ctx.supervisor.shutdown()
    if owns_client:
        await client.aclose()


# =============================================================================
# Admin API
# =============================================================================

router = APIRouter()


def health_payload(ctx: GatewayContext) -> dict[str, Any]:
    snapshot = ctx.store.read()
    configured = snapshot.config.has_api_key
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "model": snapshot.config.current_model,
        "api_key_configured": configured,
        "config": snapshot.config.public_dict(),
        "stats": snapshot.stats,
        "tunnel": ctx.supervisor.status(),
        "uptime": int(time.monotonic() - ctx.started_at),
        "setupComplete": configured,
    }


@router.get("/api/health")
@router.get("/health")
async def health(ctx: GatewayContext = Depends(get_context)) -> dict[str, Any]:
    """Combined status: configuration, statistics, tunnel and uptime."""
    return health_payload(ctx)


@router.get("/api/config")
async def get_config(ctx: GatewayContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.store.read().config.public_dict()


@router.post("/api/config/save")
async def save_config(
    request: Request, ctx: GatewayContext = Depends(get_context)
) -> dict[str, bool]:
    """Merge the posted configuration; an empty apiKey keeps the stored one."""
    changes = await read_json_object(request)
    await ctx.store.save_config(changes)
    return {"success": await persist_config(ctx)}


@router.post("/api/model")
async def set_model(
    request: Request, ctx: GatewayContext = Depends(get_context)
) -> dict[str, bool]:
    body = await read_json_object(request)
    model = body.get("model")
    if not isinstance(model, str) or not model:
        raise MalformedRequest("Field 'model' must be a non-empty string")
    await ctx.store.set_model(model)
    logger.info(f"Model set to {model}")
    return {"success": await persist_config(ctx)}


@router.post("/api/apikey")
async def set_api_key(
    request: Request, ctx: GatewayContext = Depends(get_context)
) -> dict[str, bool]:
    body = await read_json_object(request)
    key = body.get("key")
    if not isinstance(key, str):
        raise MalformedRequest("Field 'key' must be a string")
    await ctx.store.set_api_key(key.strip())
    logger.info("API key updated")
    return {"success": await persist_config(ctx)}


@router.get("/api/stats")
async def get_stats(ctx: GatewayContext = Depends(get_context)) -> dict[str, Any]:
    return ctx.store.read().stats


@router.post("/api/stats/reset")
async def reset_stats(ctx: GatewayContext = Depends(get_context)) -> dict[str, bool]:
    await ctx.store.reset_statistics()
    return {"success": True}


@router.post("/api/tunnel/start")
async def start_tunnel(ctx: GatewayContext = Depends(get_context)) -> dict[str, Any]:
    return await ctx.supervisor.start()


@router.post("/api/tunnel/stop")
async def stop_tunnel(ctx: GatewayContext = Depends(get_context)) -> dict[str, bool]:
    return {"success": await ctx.supervisor.stop()}


@router.get("/api/tunnel/status")
async def tunnel_status(ctx: GatewayContext = Depends(get_context)) -> dict[str, str]:
    return ctx.supervisor.status()


# =============================================================================
# OpenAI-compatible API
# =============================================================================


@router.get("/v1/models")
async def list_models() -> dict[str, Any]:
    """Static empty model list; the upstream model is chosen by configuration."""
    return {"object": "list", "data": []}


@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(
    request: Request, ctx: GatewayContext = Depends(get_context)
) -> Response:
    """Translate the request for the upstream API and relay its response."""
    config = ctx.store.read().config
    raw = await request.body()

    try:
        payload = translate(raw, config)
    except GatewayError as e:
        await ctx.store.record_error(e.message, e.code)
        raise

    if ctx.relay is None:
        raise RuntimeError("Upstream relay not initialized; start the app through its lifespan")
    response = await ctx.relay.forward(payload, config.api_key)

    if config.log_requests:
        logger.info(f"Relaying upstream response (status {response.status_code})")
    return response


def create_app(
    settings: GatewaySettings | None = None,
    *,
    store: StateStore | None = None,
    supervisor: TunnelSupervisor | None = None,
    settings_file: SettingsFile | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Build the gateway application.

    Collaborators default to real instances derived from ``settings``;
    tests pass their own.
    """
    settings = settings or load_settings()
    ctx = GatewayContext(
        settings=settings,
        store=store or StateStore(),
        supervisor=supervisor
        or TunnelSupervisor(settings.port, executable=settings.tunnel_executable),
        settings_file=settings_file or SettingsFile(get_settings_path(settings.state_dir)),
        client=client,
    )

    app = FastAPI(title="nimbridge", lifespan=lifespan)
    app.state.gateway = ctx
    app.add_middleware(PermissiveCORSMiddleware)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.include_router(router)
    return app


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def main() -> None:
    settings = load_settings()

    parser = argparse.ArgumentParser(
        description="OpenAI-compatible gateway for NVIDIA NIM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (NIMBRIDGE_*)
  3. .env file in working directory
  4. Default values

Model, API key and sampling defaults are edited through the admin API
(/api/config/save, /api/model, /api/apikey) and persisted to the
settings file.

Examples:
  python nimbridge.py
  python nimbridge.py --port 3000 --cloudflared /usr/local/bin/cloudflared
  NIMBRIDGE_STATE_DIR=/tmp/nimbridge python nimbridge.py
""",
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("NIMBRIDGE_HOST", "Host to bind to", "0.0.0.0"),
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("NIMBRIDGE_PORT", "Port to listen on", "3000"),
    )
    parser.add_argument(
        "--upstream-url",
        default=None,
        help=_env_help("NIMBRIDGE_UPSTREAM_URL", "Upstream chat completions URL", DEFAULT_UPSTREAM_URL),
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help=_env_help(
            "NIMBRIDGE_STATE_DIR",
            "Directory holding settings.json",
            "${XDG_STATE_HOME:-~/.local/state}/nimbridge",
        ),
    )
    parser.add_argument(
        "--cloudflared",
        default=None,
        help=_env_help("NIMBRIDGE_TUNNEL_EXECUTABLE", "Path to the cloudflared binary"),
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip upstream TLS certificate verification, for devices without a "
        "system trust store [env: NIMBRIDGE_VERIFY_TLS=false]",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging [env: NIMBRIDGE_DEBUG=true]",
    )

    args = parser.parse_args()

    # CLI takes precedence over environment variables
    if args.host is not None:
        settings.host = args.host
    if args.port is not None:
        settings.port = args.port
    if args.upstream_url is not None:
        settings.upstream_url = args.upstream_url
    if args.state_dir is not None:
        settings.state_dir = args.state_dir
    if args.cloudflared is not None:
        settings.tunnel_executable = args.cloudflared
    if args.insecure:
        settings.verify_tls = False
    if args.debug:
        settings.debug = True

    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    app = create_app(settings)
    ctx: GatewayContext = app.state.gateway

    logger.info("===========================================")
    logger.info("  nimbridge")
    logger.info("===========================================")
    logger.info(f"  Health: http://localhost:{settings.port}/api/health")
    logger.info(f"  API: http://localhost:{settings.port}/v1/chat/completions")
    logger.info(f"  Upstream: {settings.upstream_url}")
    logger.info(f"  Settings file: {ctx.settings_file.path}")
    logger.info(f"  TLS verification: {'enabled' if settings.verify_tls else 'DISABLED'}")
    logger.info("===========================================")

    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
