"""
HTTP API for the meal planner.

Provides chat completion passthrough (plain and streamed as SSE), the
model list, meal plan generation and retrieval, feedback, preferences and
analytics endpoints. Collaborators are FastAPI dependencies so tests can swap them
through ``app.dependency_overrides``.
"""

import json
import logging
import uuid
from typing import AsyncIterator, Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .config import config
from .errors import (
    CompletionError,
    ErrorKind,
    FeedbackForbiddenError,
    FeedbackNotFoundError,
    FeedbackServiceError,
    MealPlanGenerationError,
    MealPlanNotFoundError,
    MealPlanServiceError,
    PlanConflictError,
    PreferencesNotFoundError,
)
from .generator import MealPlanGenerator
from .models import (
    ActionType,
    ChatRequest,
    CompletionRequest,
    CreateFeedbackRequest,
    Feedback,
    GenerateMealPlanRequest,
    LogAnalyticsEventRequest,
    Message,
    StoredPlan,
    StreamChunk,
    UpdateFeedbackRequest,
    UserPreferences,
)
from .feedback import FeedbackService
from .openrouter_client import DONE_SENTINEL, CompletionClient
from .plans import MealPlansService
from . import store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

MISSING_PREFERENCES_MESSAGE = "Najpierw wypełnij swoje preferencje żywieniowe"
PREFERENCES_NOT_FOUND_MESSAGE = "Nie znaleziono preferencji. Wypełnij formularz onboardingu."
INVALID_FEEDBACK_ID_MESSAGE = "Nieprawidłowy format ID opinii"

# HTTP status for client errors surfaced by /api/chat
COMPLETION_ERROR_STATUS = {
    ErrorKind.AUTH: 401,
    ErrorKind.VALIDATION: 400,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.TIMEOUT: 504,
}

# HTTP status for generation failures, by the client error behind them
GENERATION_ERROR_STATUS = {
    ErrorKind.TIMEOUT: 504,
    ErrorKind.MODEL: 503,
    ErrorKind.NETWORK: 503,
    ErrorKind.RATE_LIMIT: 503,
}


# =============================================================================
# Dependencies
# =============================================================================

_client: Optional[CompletionClient] = None
_generator: Optional[MealPlanGenerator] = None


def get_client() -> CompletionClient:
    """Shared completion client, created on first use."""
    global _client
    if _client is None:
        _client = CompletionClient()
    return _client


def get_client_provider() -> Callable[[], CompletionClient]:
    """Completion client factory; routes call it only once the body is valid."""
    return get_client


def get_generator() -> MealPlanGenerator:
    global _generator
    if _generator is None:
        client = None if config.mocks_enabled else get_client()
        _generator = MealPlanGenerator(client=client)
    return _generator


def get_preferences_store() -> store.PreferencesStore:
    return store.preferences_store


def get_plan_store() -> store.PlanStore:
    return store.plan_store


def get_analytics() -> store.AnalyticsSink:
    return store.analytics


def get_feedback_store() -> store.FeedbackStore:
    return store.feedback_store


def get_service(
    plans: store.PlanStore = Depends(get_plan_store),
    generator: MealPlanGenerator = Depends(get_generator),
) -> MealPlansService:
    return MealPlansService(plans, generator)


def get_feedback_service(
    feedback: store.FeedbackStore = Depends(get_feedback_store),
    meal_plans: MealPlansService = Depends(get_service),
    analytics: store.AnalyticsSink = Depends(get_analytics),
) -> FeedbackService:
    return FeedbackService(feedback, meal_plans, analytics)


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity. Authentication happens upstream of this service."""
    return x_user_id or config.default_user_id


async def close_clients():
    """Release pooled connections on shutdown."""
    global _client, _generator
    if _client is not None:
        await _client.close()
    _client = None
    _generator = None


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message, **extra})


async def completion_error_handler(request: Request, exc: CompletionError) -> JSONResponse:
    """Map client errors that escape a route to an HTTP status."""
    status_code = COMPLETION_ERROR_STATUS.get(exc.kind, 500)
    logger.error(f"{request.method} {request.url.path} -> {status_code}: {exc.kind.value}: {exc.message}")
    return _error(status_code, exc.kind.value, exc.message)


def _to_completion_request(body: ChatRequest, stream: bool) -> CompletionRequest:
    return CompletionRequest(
        messages=[Message(role=m.role, content=m.content) for m in body.messages],
        model=body.model,
        temperature=0.7 if body.temperature is None else body.temperature,
        max_tokens=body.max_tokens or 1000,
        stream=stream,
    )


# =============================================================================
# Chat
# =============================================================================

@router.post("/chat")
async def chat(
    body: ChatRequest,
    client_provider: Callable[[], CompletionClient] = Depends(get_client_provider),
):
    """Non-streaming completion. Client errors are mapped by completion_error_handler."""
    client = client_provider()
    response = await client.complete(_to_completion_request(body, stream=False))
    return response.model_dump()


@router.post("/chat-stream")
async def chat_stream(
    body: ChatRequest,
    client_provider: Callable[[], CompletionClient] = Depends(get_client_provider),
):
    """
    Streamed completion as SSE.

    Each content delta is sent as ``data: {"content": ...}``, the stream ends
    with ``data: [DONE]``. A failure after the stream started is sent as a
    final ``data: {"error": ...}`` event.
    """
    client = client_provider()
    # Validation errors surface here, before any bytes are sent
    chunks = client.stream_complete(_to_completion_request(body, stream=True))

    return StreamingResponse(
        _stream_content(chunks),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


async def _stream_content(chunks: AsyncIterator[StreamChunk]) -> AsyncIterator[str]:
    try:
        async for chunk in chunks:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]

            if choice.delta.content:
                yield _format_sse_content(choice.delta.content)

            if choice.finish_reason:
                break
    except CompletionError as e:
        logger.error(f"Chat stream failed: {e.kind.value}: {e.message}")
        yield _format_sse_error(e.message)
        return
    finally:
        await chunks.aclose()

    yield _format_sse_done()


@router.get("/models")
async def list_models(client_provider: Callable[[], CompletionClient] = Depends(get_client_provider)):
    """List models available from the provider."""
    client = client_provider()
    models = await client.get_available_models()
    return {"object": "list", "data": [m.model_dump() for m in models]}


# =============================================================================
# Meal Plans
# =============================================================================

@router.post("/meal-plans", status_code=201, response_model=StoredPlan)
async def generate_meal_plan(
    body: GenerateMealPlanRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    service: MealPlansService = Depends(get_service),
    preferences_store: store.PreferencesStore = Depends(get_preferences_store),
    analytics: store.AnalyticsSink = Depends(get_analytics),
):
    """
    Generate a plan for the caller from their saved preferences.

    Returns 400 without preferences, 409 while another generation for the
    same user is running, 503/504 when the model service is unavailable or
    slow, and 500 for any other generation failure.
    """
    try:
        preferences = await preferences_store.get_preferences(user_id)
    except PreferencesNotFoundError:
        return _error(400, "Bad request", MISSING_PREFERENCES_MESSAGE)

    try:
        plan = await service.generate_meal_plan(user_id, preferences, body.regeneration)
    except PlanConflictError as e:
        return _error(409, "Conflict", str(e))
    except MealPlanGenerationError as e:
        status_code = GENERATION_ERROR_STATUS.get(e.kind, 500)
        return _error(status_code, "Generation failed", e.message, retry_count=e.retry_count)
    except MealPlanServiceError as e:
        logger.error(f"Meal plan service failed for user {user_id}: {e}")
        return _error(500, "Internal server error", str(e))

    action = ActionType.PLAN_REGENERATED if body.regeneration else ActionType.PLAN_GENERATED
    background_tasks.add_task(analytics.log_event, user_id, action, {"meal_plan_id": plan.id})

    return plan


@router.get("/meal-plans/current", response_model=StoredPlan)
async def get_current_meal_plan(
    user_id: str = Depends(get_user_id),
    service: MealPlansService = Depends(get_service),
):
    try:
        return await service.get_current_meal_plan(user_id)
    except MealPlanNotFoundError as e:
        return _error(404, "Not found", str(e))
    except MealPlanServiceError as e:
        return _error(500, "Internal server error", str(e))


# =============================================================================
# Feedback
# =============================================================================

@router.post("/feedback", status_code=201, response_model=Feedback)
async def create_feedback(
    body: CreateFeedbackRequest,
    user_id: str = Depends(get_user_id),
    service: FeedbackService = Depends(get_feedback_service),
):
    """Rate the caller's current plan. 404 when there is no plan to rate."""
    try:
        return await service.create_feedback(user_id, body)
    except MealPlanNotFoundError as e:
        return _error(404, "Not found", str(e))
    except FeedbackServiceError as e:
        logger.error(f"Feedback creation failed for user {user_id}: {e}")
        return _error(500, "Internal server error", str(e))


@router.put("/feedback/{feedback_id}", response_model=Feedback)
async def update_feedback(
    feedback_id: str,
    body: UpdateFeedbackRequest,
    user_id: str = Depends(get_user_id),
    service: FeedbackService = Depends(get_feedback_service),
):
    try:
        uuid.UUID(feedback_id)
    except ValueError:
        return _error(400, "Bad request", INVALID_FEEDBACK_ID_MESSAGE)

    try:
        return await service.update_feedback(user_id, feedback_id, body)
    except FeedbackNotFoundError as e:
        return _error(404, "Not found", str(e))
    except FeedbackForbiddenError as e:
        return _error(403, "Forbidden", str(e))
    except FeedbackServiceError as e:
        logger.error(f"Feedback update failed for user {user_id}: {e}")
        return _error(500, "Internal server error", str(e))


# =============================================================================
# Preferences & Analytics
# =============================================================================

@router.get("/preferences", response_model=UserPreferences)
async def get_preferences(
    user_id: str = Depends(get_user_id),
    preferences_store: store.PreferencesStore = Depends(get_preferences_store),
):
    try:
        return await preferences_store.get_preferences(user_id)
    except PreferencesNotFoundError:
        return _error(404, "Not found", PREFERENCES_NOT_FOUND_MESSAGE)


@router.put("/preferences", response_model=UserPreferences)
async def put_preferences(
    body: UserPreferences,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_user_id),
    preferences_store: store.PreferencesStore = Depends(get_preferences_store),
    analytics: store.AnalyticsSink = Depends(get_analytics),
):
    """Create or replace the caller's preferences."""
    try:
        previous = await preferences_store.get_preferences(user_id)
    except PreferencesNotFoundError:
        previous = None

    saved = await preferences_store.upsert_preferences(user_id, body)

    if previous is None:
        background_tasks.add_task(analytics.log_event, user_id, ActionType.PROFILE_CREATED)
    else:
        changed = [name for name, value in body if getattr(previous, name) != value]
        background_tasks.add_task(
            analytics.log_event, user_id, ActionType.PROFILE_UPDATED, {"changed_fields": changed},
        )

    return saved


@router.post("/analytics/events", status_code=204)
async def log_analytics_event(
    body: LogAnalyticsEventRequest,
    user_id: str = Depends(get_user_id),
    analytics: store.AnalyticsSink = Depends(get_analytics),
):
    """Record an event. Always 204; logging failures never reach the caller."""
    await analytics.log_event(user_id, body.action_type, body.metadata)
    return Response(status_code=204)


# =============================================================================
# SSE Formatting Helpers
# =============================================================================

def _format_sse_content(content: str) -> str:
    """Format content delta as SSE."""
    return f"data: {json.dumps({'content': content})}\n\n"


def _format_sse_error(message: str) -> str:
    return f"data: {json.dumps({'error': message})}\n\n"


def _format_sse_done() -> str:
    return f"data: {DONE_SENTINEL}\n\n"
