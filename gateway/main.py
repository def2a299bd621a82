"""
Reasoning Gateway - Main Entry Point

OpenAI-compatible API server that answers each chat request by chaining a
reasoning provider (DeepSeek) and a generation provider (Anthropic), and
relays the combined result as one response.

Usage:
    python -m gateway.main

Environment Variables:
    GATEWAY_HOST        - Server host (default: 0.0.0.0)
    GATEWAY_PORT        - Server port (default: 1337)
    API_TOKEN           - Bearer token clients must present
    PIPELINE_MODE       - plain | full (default: plain)
    PLAN_VISIBILITY     - reasoning | hidden, for the full mode's plan stage
    DEEPSEEK_API_KEY    - Reasoning provider credential
    DEEPSEEK_API_URL    - Reasoning provider endpoint
    ANTHROPIC_API_KEY   - Generation provider credential
    ANTHROPIC_API_URL   - Generation provider endpoint
    INCLUDE_REASONING   - Include reasoning_content in aggregate replies (default: true)
    LOG_LEVEL           - Logging level (default: INFO)
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import config
from .errors import GatewayError
from .pipeline import build_stages, validate_stages
from .state import tracker
from .api import router as api_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""

    # Startup
    logger.info("=" * 60)
    logger.info("Reasoning Gateway Starting")
    logger.info("=" * 60)

    # A bad mode is reported here; requests will answer 503 until it is fixed
    try:
        stages = build_stages(config.mode, config.plan_visibility)
        validate_stages(stages)
        logger.info(f"Pipeline mode: {config.mode} ({' -> '.join(s.name for s in stages)})")
    except GatewayError as e:
        logger.error(f"Pipeline misconfigured: {e.message}")

    for provider in (config.reasoning, config.generation):
        status = "ready" if provider.usable else "MISSING endpoint or API key"
        logger.info(f"{provider.role}: {provider.model} via {provider.wire_format} "
                    f"at {provider.endpoint} [{status}]")

    if not config.api_token:
        logger.warning("No API_TOKEN configured - every request will be rejected")

    logger.info("-" * 60)
    logger.info(f"Server ready at http://{config.host}:{config.port}")
    logger.info(f"OpenAI endpoint: http://{config.host}:{config.port}/v1/chat/completions")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down...")
    cancelled = tracker.cancel_all()
    if cancelled:
        logger.info(f"Cancelled {cancelled} in-flight requests")
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Reasoning Gateway",
    description=(
        "OpenAI-compatible chat completions backed by a reasoning model "
        "and a generation model. Reasoning is relayed as reasoning_content, "
        "the answer as content."
    ),
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(api_router)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """Render classified errors as OpenAI-style error bodies."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error_type}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.error_type}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "mode": config.mode,
        "model": config.model_id,
        "providers": {
            provider.role: {
                "endpoint": provider.endpoint,
                "model": provider.model,
                "wire_format": provider.wire_format,
                "usable": provider.usable,
            }
            for provider in (config.reasoning, config.generation)
        },
        "requests": tracker.snapshot(),
    }


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "name": "Reasoning Gateway",
        "version": __version__,
        "endpoints": {
            "chat": "/v1/chat/completions",
            "models": "/v1/models",
            "health": "/health",
        },
    }


def main():
    """Run the gateway server."""
    uvicorn.run(
        "gateway.main:app",
        host=config.host,
        port=config.port,
        reload=False,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
