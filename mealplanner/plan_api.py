"""
Backends for the generation orchestrator.

The orchestrator talks to a PlanBackend and only understands the
BackendFailure vocabulary. MealPlanApiClient speaks to the HTTP API;
LocalPlanBackend calls the services in-process.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .config import config
from .errors import (
    VALIDATION_ERROR,
    ErrorKind,
    MealPlanGenerationError,
    MealPlanNotFoundError,
    MealPlanServiceError,
    PlanConflictError,
    PreferencesNotFoundError,
)
from .models import ActionType, StoredPlan
from .plans import MealPlansService
from .store import AnalyticsSink, PreferencesStore

logger = logging.getLogger(__name__)


class BackendFailure(str, Enum):
    MISSING_PREFERENCES = "missing_preferences"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    NETWORK = "network"
    FAILED = "failed"


class PlanBackendError(Exception):
    def __init__(self, reason: BackendFailure, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message


def generation_failure(error: MealPlanGenerationError) -> BackendFailure:
    """Classify a generation failure by the client error that caused it."""
    if error.kind == ErrorKind.TIMEOUT:
        return BackendFailure.TIMEOUT
    if error.kind in (ErrorKind.MODEL, ErrorKind.NETWORK, ErrorKind.RATE_LIMIT):
        return BackendFailure.UNAVAILABLE
    return BackendFailure.FAILED


class PlanBackend(ABC):

    @abstractmethod
    async def generate_plan(self, regeneration: bool) -> StoredPlan:
        """Generate and return a new plan or raise PlanBackendError."""

    @abstractmethod
    async def fetch_current_plan(self) -> StoredPlan:
        """Return the current plan or raise PlanBackendError."""

    @abstractmethod
    async def track_event(self, action_type: ActionType, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Record an analytics event."""


# Maps HTTP API status codes back to failures
_STATUS_FAILURES = {
    400: BackendFailure.MISSING_PREFERENCES,
    401: BackendFailure.UNAUTHORIZED,
    404: BackendFailure.NOT_FOUND,
    409: BackendFailure.CONFLICT,
    503: BackendFailure.UNAVAILABLE,
    504: BackendFailure.TIMEOUT,
}


class MealPlanApiClient(PlanBackend):
    """
    HTTP backend for the meal plan API.

    The caller's identity is sent explicitly in the X-User-Id header.
    """

    def __init__(
        self,
        base_url: str,
        user_id: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id or config.default_user_id
        self.client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"X-User-Id": self.user_id},
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def generate_plan(self, regeneration: bool) -> StoredPlan:
        response = await self._send("POST", "/api/meal-plans", json={"regeneration": regeneration})
        return _parse_plan(response)

    async def fetch_current_plan(self) -> StoredPlan:
        response = await self._send("GET", "/api/meal-plans/current")
        return _parse_plan(response)

    async def track_event(self, action_type: ActionType, metadata: Optional[Dict[str, Any]] = None) -> None:
        await self._send(
            "POST",
            "/api/analytics/events",
            json={"action_type": action_type.value, "metadata": metadata},
        )

    async def _send(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", json=json)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise PlanBackendError(BackendFailure.NETWORK, str(e)) from e

        if response.is_success:
            return response

        body = _error_body(response)
        reason = _STATUS_FAILURES.get(response.status_code, BackendFailure.FAILED)
        if reason == BackendFailure.MISSING_PREFERENCES and body.get("error") == VALIDATION_ERROR:
            # Malformed request, not missing preferences
            reason = BackendFailure.FAILED

        logger.warning(f"{method} {path} -> {response.status_code} ({reason.value})")
        raise PlanBackendError(reason, _error_message(body))


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(body: Dict[str, Any]) -> str:
    """Server-provided message, or empty when the body is not a JSON error."""
    message = body.get("message")
    if isinstance(message, str) and message:
        return message
    details = body.get("details")
    if isinstance(details, list):
        return "; ".join(str(detail) for detail in details)
    return ""


def _parse_plan(response: httpx.Response) -> StoredPlan:
    try:
        return StoredPlan.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise PlanBackendError(BackendFailure.FAILED, "Invalid meal plan structure") from e


class LocalPlanBackend(PlanBackend):
    """In-process backend over MealPlansService for a single user."""

    def __init__(
        self,
        service: MealPlansService,
        preferences: PreferencesStore,
        analytics: AnalyticsSink,
        user_id: str,
    ):
        self.service = service
        self.preferences = preferences
        self.analytics = analytics
        self.user_id = user_id

    async def generate_plan(self, regeneration: bool) -> StoredPlan:
        try:
            preferences = await self.preferences.get_preferences(self.user_id)
        except PreferencesNotFoundError as e:
            raise PlanBackendError(BackendFailure.MISSING_PREFERENCES, str(e)) from e

        try:
            return await self.service.generate_meal_plan(self.user_id, preferences, regeneration)
        except PlanConflictError as e:
            raise PlanBackendError(BackendFailure.CONFLICT, str(e)) from e
        except MealPlanGenerationError as e:
            raise PlanBackendError(generation_failure(e), e.message) from e
        except MealPlanServiceError as e:
            raise PlanBackendError(BackendFailure.FAILED, str(e)) from e

    async def fetch_current_plan(self) -> StoredPlan:
        try:
            return await self.service.get_current_meal_plan(self.user_id)
        except MealPlanNotFoundError as e:
            raise PlanBackendError(BackendFailure.NOT_FOUND, str(e)) from e
        except MealPlanServiceError as e:
            raise PlanBackendError(BackendFailure.FAILED, str(e)) from e

    async def track_event(self, action_type: ActionType, metadata: Optional[Dict[str, Any]] = None) -> None:
        await self.analytics.log_event(self.user_id, action_type, metadata)
