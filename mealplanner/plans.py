"""Meal plan service: generation lifecycle and retrieval."""

import logging

from .errors import (
    MealPlanGenerationError,
    MealPlanNotFoundError,
    MealPlanServiceError,
)
from .generator import MealPlanGenerator
from .models import StoredPlan, UserPreferences
from .store import PlanStore

logger = logging.getLogger(__name__)


class MealPlansService:
    """
    Wraps the generator with plan persistence.

    Generation marks the user's record pending, runs the generator, then
    stores the meals (generated) or records the failure (error). The store
    rejects a second generation while one is pending.
    """

    def __init__(self, plans: PlanStore, generator: MealPlanGenerator):
        self.plans = plans
        self.generator = generator

    async def generate_meal_plan(
        self,
        user_id: str,
        preferences: UserPreferences,
        regeneration: bool = False,
    ) -> StoredPlan:
        if not user_id:
            raise MealPlanServiceError("User ID is required")

        # Raises PlanConflictError when a generation is already running
        await self.plans.upsert_pending_plan(user_id)

        try:
            meals = await self.generator.generate_meal_plan(preferences)
        except MealPlanGenerationError as e:
            logger.error(f"Generation failed for user {user_id} (regeneration={regeneration}): {e.message}")
            await self.plans.mark_error(user_id)
            raise
        except BaseException:
            # Cancelled or unexpected: never leave the record pending
            await self.plans.mark_error(user_id)
            raise

        plan = await self.plans.upsert_generated_plan(user_id, meals)
        logger.info(f"Generated plan {plan.id} for user {user_id} (regeneration={regeneration})")
        return plan

    async def get_current_meal_plan(self, user_id: str) -> StoredPlan:
        """Return the user's latest plan with meals, or raise MealPlanNotFoundError."""
        if not user_id:
            raise MealPlanServiceError("User ID is required")

        plan = await self.plans.get_current_plan(user_id)
        if plan is None or plan.meals is None:
            raise MealPlanNotFoundError("Nie masz jeszcze wygenerowanego planu. Kliknij 'Wygeneruj plan'.")
        return plan
