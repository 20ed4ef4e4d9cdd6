"""
Task Planner — API Server
=========================
Version 1.0 — November 2025

FastAPI server for the task planner UI: planning routes, task progress
routes, the websocket channel and the Prometheus endpoint.
"""

import os
import sys
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Disable LangSmith tracing by default to prevent warnings
if "LANGCHAIN_TRACING_V2" not in os.environ:
    os.environ["LANGCHAIN_TRACING_V2"] = "false"

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Add src to path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from config import PlannerConfig

# Import API modules
from api.websocket import ConnectionManager
from api.routes import features_router, ws_router, metrics_router
from api.routes.features import limiter
import api.state as api_state

logger = logging.getLogger("server")

# Suppress noisy LangChain callback warnings about serialization
logging.getLogger("langchain_core.callbacks.manager").setLevel(logging.ERROR)


# =============================================================================
# APP SETUP
# =============================================================================

def _cors_origins(frontend_url: str):
    if frontend_url == "*":
        return ["*"]
    return [origin.strip() for origin in frontend_url.split(",") if origin.strip()]


def create_app(config: Optional[PlannerConfig] = None, llm_factory=None, context_provider=None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Planner configuration; read from the environment when omitted
        llm_factory: Optional ``(ModelConfig, json_mode) -> chat model`` used
            instead of the real provider clients
        context_provider: Optional async callable returning a codebase summary
    """
    config = config or PlannerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup - stores, provider, pipeline
        manager = ConnectionManager()
        api_state.manager = manager
        try:
            api_state.context = await api_state.build_context(
                config, notifier=manager, llm_factory=llm_factory, context_provider=context_provider,
            )
        except Exception as e:
            logger.error(f"❌ Failed to initialize planner: {e}")
            raise

        if api_state.context.provider is None:
            logger.warning("⚠️ No planning model configured; planning requests will fail")
        logger.info(f"Starting Task Planner Server (database: {config.db_path})")

        yield

        # Shutdown logic (runs when FastAPI stops)
        logger.info("Shutting down Task Planner Server")
        api_state.context = None
        api_state.manager = None

    app = FastAPI(title="Task Planner API", lifespan=lifespan)

    # Rate limiting setup
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(config.frontend_url),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # ROUTE REGISTRATION
    # =========================================================================

    app.include_router(features_router)
    app.include_router(ws_router)
    app.include_router(metrics_router)

    return app


if __name__ == "__main__":
    import uvicorn

    config = PlannerConfig.from_env()
    logging.basicConfig(level=config.log_level)

    logger.info(f"🚀 Starting server on {config.ws_host}:{config.ws_port}")
    uvicorn.run(create_app(config), host=config.ws_host, port=config.ws_port)
