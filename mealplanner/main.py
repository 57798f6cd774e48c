"""
Meal Planner - Main Entry Point

HTTP API generating personalized daily meal plans with an LLM served
through OpenRouter.

Usage:
    python -m mealplanner.main

Environment Variables:
    MEALPLANNER_HOST        - Server host (default: 0.0.0.0)
    MEALPLANNER_PORT        - Server port (default: 8000)
    OPENROUTER_API_KEY      - OpenRouter API key (mock generation when unset)
    OPENROUTER_BASE_URL     - API base URL (default: https://openrouter.ai/api/v1)
    OPENROUTER_TIMEOUT      - Per-attempt timeout in seconds (default: 30)
    OPENROUTER_MAX_RETRIES  - Retries after the first attempt (default: 3)
    MEALPLANNER_MODEL       - Model used for meal plans
    MEALPLANNER_USE_MOCKS   - Force mock generation (default: false)
    LOG_LEVEL               - Logging level (default: INFO)
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import config
from .errors import VALIDATION_ERROR, CompletionError
from .api import close_clients, completion_error_handler, router as api_router

# Configure logging
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""

    # Startup
    logger.info("=" * 60)
    logger.info("Meal Planner Starting")
    logger.info("=" * 60)

    if config.mocks_enabled:
        logger.warning("Mock generation enabled - OpenRouter will not be called for meal plans")
    else:
        logger.info(f"OpenRouter URL: {config.openrouter_base_url}")
        logger.info(f"Meal plan model: {config.mealplan_model}")
    logger.info(f"Timeout: {config.openrouter_timeout}s, max retries: {config.openrouter_max_retries}")

    logger.info("-" * 60)
    logger.info(f"Server ready at http://{config.host}:{config.port}")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await close_clients()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Meal Planner",
    description=(
        "Personalized daily meal plans generated by an LLM. "
        "Plans are validated against a strict schema before they are stored."
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

app.include_router(api_router)
app.add_exception_handler(CompletionError, completion_error_handler)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are reported as 400 with field details."""
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"] if part != "body")
        details.append(f"{location}: {error['msg']}" if location else error["msg"])
    return JSONResponse(status_code=400, content={"error": VALIDATION_ERROR, "details": details})


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "mocks": config.mocks_enabled,
        "model": config.mealplan_model,
    }


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "name": "Meal Planner",
        "version": __version__,
        "endpoints": {
            "chat": "/api/chat",
            "chat_stream": "/api/chat-stream",
            "models": "/api/models",
            "meal_plans": "/api/meal-plans",
            "current_plan": "/api/meal-plans/current",
            "feedback": "/api/feedback",
            "preferences": "/api/preferences",
            "analytics": "/api/analytics/events",
            "health": "/health",
        },
    }


def main():
    """Run the meal planner server."""
    uvicorn.run(
        "mealplanner.main:app",
        host=config.host,
        port=config.port,
        reload=False,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
