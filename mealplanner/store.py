"""
Storage collaborators: preferences, meal plans, feedback and analytics.

The abstract classes are the contracts the services depend on. The
in-memory implementations keep their records behind an asyncio.Lock
and back the HTTP API and the tests.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import FeedbackNotFoundError, PlanConflictError, PreferencesNotFoundError
from .models import (
    ActionType,
    AnalyticsEvent,
    Feedback,
    MealPlan,
    PlanStatus,
    Rating,
    StoredPlan,
    UserPreferences,
)

logger = logging.getLogger(__name__)


class PreferencesStore(ABC):

    @abstractmethod
    async def get_preferences(self, user_id: str) -> UserPreferences:
        """Return saved preferences or raise PreferencesNotFoundError."""

    @abstractmethod
    async def upsert_preferences(self, user_id: str, preferences: UserPreferences) -> UserPreferences:
        """Create or replace the user's preferences."""


class PlanStore(ABC):
    """One plan record per user, upserted."""

    @abstractmethod
    async def get_current_plan(self, user_id: str) -> Optional[StoredPlan]:
        """Return the user's plan record, or None if there is none."""

    @abstractmethod
    async def upsert_pending_plan(self, user_id: str) -> StoredPlan:
        """Mark a generation as started; raise PlanConflictError if one is already pending."""

    @abstractmethod
    async def upsert_generated_plan(self, user_id: str, meals: MealPlan) -> StoredPlan:
        """Store freshly generated meals."""

    @abstractmethod
    async def mark_error(self, user_id: str) -> None:
        """Record a failed generation. Best effort."""


class FeedbackStore(ABC):
    """Ratings of meal plans, several per plan."""

    @abstractmethod
    async def create_feedback(self, meal_plan_id: str, rating: Rating, comment: Optional[str] = None) -> Feedback:
        """Store new feedback for a plan."""

    @abstractmethod
    async def get_feedback(self, feedback_id: str) -> Optional[Feedback]:
        """Return the feedback, or None if there is none."""

    @abstractmethod
    async def update_feedback(
        self,
        feedback_id: str,
        rating: Optional[Rating] = None,
        comment: Optional[str] = None,
    ) -> Feedback:
        """Change the given fields; raise FeedbackNotFoundError for an unknown id."""


class AnalyticsSink(ABC):

    @abstractmethod
    async def log_event(
        self,
        user_id: str,
        action_type: ActionType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record an event. Must never raise into the caller."""


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Drop None entries; empty metadata becomes None."""
    if not metadata:
        return None
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    return cleaned or None


# ============================================================================
# In-memory implementations
# ============================================================================

class InMemoryPreferencesStore(PreferencesStore):

    def __init__(self):
        self._preferences: Dict[str, UserPreferences] = {}
        self._lock = asyncio.Lock()

    async def get_preferences(self, user_id: str) -> UserPreferences:
        async with self._lock:
            preferences = self._preferences.get(user_id)
        if preferences is None:
            raise PreferencesNotFoundError(f"No preferences for user {user_id}")
        return preferences

    async def upsert_preferences(self, user_id: str, preferences: UserPreferences) -> UserPreferences:
        async with self._lock:
            self._preferences[user_id] = preferences
            logger.info(f"Saved preferences for user {user_id}")
            return preferences


class InMemoryPlanStore(PlanStore):
    """
    Plan records keyed by user id.

    A pending upsert keeps the previous meals so a failed regeneration never
    destroys the last generated plan.
    """

    def __init__(self):
        self._plans: Dict[str, StoredPlan] = {}
        self._lock = asyncio.Lock()

    async def get_current_plan(self, user_id: str) -> Optional[StoredPlan]:
        async with self._lock:
            return self._plans.get(user_id)

    async def upsert_pending_plan(self, user_id: str) -> StoredPlan:
        async with self._lock:
            existing = self._plans.get(user_id)

            if existing is not None and existing.status == PlanStatus.PENDING:
                logger.warning(f"Rejected concurrent generation for user {user_id}")
                raise PlanConflictError("Plan jest już generowany. Poczekaj chwilę i spróbuj ponownie.")

            if existing is None:
                plan = StoredPlan(id=str(uuid.uuid4()), user_id=user_id, status=PlanStatus.PENDING)
            else:
                plan = existing.model_copy(update={"status": PlanStatus.PENDING})

            self._plans[user_id] = plan
            logger.debug(f"Plan {plan.id} for user {user_id} -> pending")
            return plan

    async def upsert_generated_plan(self, user_id: str, meals: MealPlan) -> StoredPlan:
        async with self._lock:
            existing = self._plans.get(user_id)
            update = {"meals": meals, "status": PlanStatus.GENERATED, "generated_at": datetime.now()}

            if existing is None:
                plan = StoredPlan(id=str(uuid.uuid4()), user_id=user_id, **update)
            else:
                plan = existing.model_copy(update=update)

            self._plans[user_id] = plan
            logger.info(f"Plan {plan.id} for user {user_id} -> generated")
            return plan

    async def mark_error(self, user_id: str) -> None:
        async with self._lock:
            existing = self._plans.get(user_id)
            if existing is None:
                logger.warning(f"No plan to mark as error for user {user_id}")
                return
            self._plans[user_id] = existing.model_copy(update={"status": PlanStatus.ERROR})
            logger.info(f"Plan {existing.id} for user {user_id} -> error")


class InMemoryFeedbackStore(FeedbackStore):

    def __init__(self):
        self._feedback: Dict[str, Feedback] = {}
        self._lock = asyncio.Lock()

    async def create_feedback(self, meal_plan_id: str, rating: Rating, comment: Optional[str] = None) -> Feedback:
        async with self._lock:
            feedback = Feedback(id=str(uuid.uuid4()), meal_plan_id=meal_plan_id, rating=rating, comment=comment)
            self._feedback[feedback.id] = feedback
            logger.info(f"Saved feedback {feedback.id} for plan {meal_plan_id}: {rating.value}")
            return feedback

    async def get_feedback(self, feedback_id: str) -> Optional[Feedback]:
        async with self._lock:
            return self._feedback.get(feedback_id)

    async def update_feedback(
        self,
        feedback_id: str,
        rating: Optional[Rating] = None,
        comment: Optional[str] = None,
    ) -> Feedback:
        async with self._lock:
            existing = self._feedback.get(feedback_id)
            if existing is None:
                raise FeedbackNotFoundError(f"No feedback {feedback_id}")

            update = {}
            if rating is not None:
                update["rating"] = rating
            if comment is not None:
                update["comment"] = comment

            feedback = existing.model_copy(update=update)
            self._feedback[feedback_id] = feedback
            logger.info(f"Updated feedback {feedback_id}: {sorted(update)}")
            return feedback


class InMemoryAnalyticsSink(AnalyticsSink):

    def __init__(self):
        self.events: List[AnalyticsEvent] = []

    async def log_event(
        self,
        user_id: str,
        action_type: ActionType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not user_id:
            return
        try:
            event = AnalyticsEvent(
                user_id=user_id,
                action_type=action_type,
                metadata=sanitize_metadata(metadata),
            )
        except ValueError as e:
            logger.warning(f"Dropped analytics event {action_type}: {e}")
            return
        self.events.append(event)
        logger.debug(f"Analytics event {event.action_type.value} for user {user_id}")


# Global instances
preferences_store = InMemoryPreferencesStore()
plan_store = InMemoryPlanStore()
feedback_store = InMemoryFeedbackStore()
analytics = InMemoryAnalyticsSink()
