"""Feedback service: rating the current meal plan."""

import logging

from .errors import (
    FeedbackForbiddenError,
    FeedbackNotFoundError,
    FeedbackServiceError,
    MealPlanNotFoundError,
)
from .models import ActionType, CreateFeedbackRequest, Feedback, UpdateFeedbackRequest
from .plans import MealPlansService
from .store import AnalyticsSink, FeedbackStore

logger = logging.getLogger(__name__)

NO_PLAN_TO_RATE_MESSAGE = "Nie znaleziono planu posiłków do oceny"
FEEDBACK_NOT_FOUND_MESSAGE = "Nie znaleziono opinii o podanym ID"
FEEDBACK_FORBIDDEN_MESSAGE = "Nie możesz edytować cudzej opinii"


class FeedbackService:
    """
    Feedback always targets the user's current plan. A user may only edit
    feedback given to their own plan.
    """

    def __init__(self, feedback: FeedbackStore, meal_plans: MealPlansService, analytics: AnalyticsSink):
        self.feedback = feedback
        self.meal_plans = meal_plans
        self.analytics = analytics

    async def create_feedback(self, user_id: str, request: CreateFeedbackRequest) -> Feedback:
        if not user_id:
            raise FeedbackServiceError("User ID is required")

        try:
            plan = await self.meal_plans.get_current_meal_plan(user_id)
        except MealPlanNotFoundError as e:
            raise MealPlanNotFoundError(NO_PLAN_TO_RATE_MESSAGE) from e

        feedback = await self.feedback.create_feedback(plan.id, request.rating, request.comment)

        await self.analytics.log_event(user_id, ActionType.FEEDBACK_GIVEN, {
            "feedback_id": feedback.id,
            "meal_plan_id": feedback.meal_plan_id,
            "rating": feedback.rating.value,
        })
        return feedback

    async def update_feedback(self, user_id: str, feedback_id: str, request: UpdateFeedbackRequest) -> Feedback:
        if not user_id:
            raise FeedbackServiceError("User ID is required")
        if not feedback_id:
            raise FeedbackServiceError("Feedback ID is required")

        existing = await self.feedback.get_feedback(feedback_id)
        if existing is None:
            raise FeedbackNotFoundError(FEEDBACK_NOT_FOUND_MESSAGE)

        # Plans are one per user, so owning the plan means owning its feedback
        try:
            plan = await self.meal_plans.get_current_meal_plan(user_id)
        except MealPlanNotFoundError:
            plan = None
        if plan is None or plan.id != existing.meal_plan_id:
            logger.warning(f"User {user_id} tried to edit feedback {feedback_id} of another plan")
            raise FeedbackForbiddenError(FEEDBACK_FORBIDDEN_MESSAGE)

        try:
            return await self.feedback.update_feedback(feedback_id, request.rating, request.comment)
        except FeedbackNotFoundError as e:
            raise FeedbackNotFoundError(FEEDBACK_NOT_FOUND_MESSAGE) from e
