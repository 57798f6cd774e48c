"""Shared fixtures for the meal planner tests."""

import copy
import json
from typing import Any, Dict, List

import pytest

from mealplanner.models import DietType, HealthGoal, PlanStatus, StoredPlan, UserPreferences
from mealplanner.schema import validate


MEAL_PLAN_DATA: List[Dict[str, Any]] = [
    {
        "name": "Śniadanie: Owsianka z owocami",
        "ingredients": [
            {"name": "Płatki owsiane", "amount": "50g"},
            {"name": "Mleko owsiane", "amount": "200ml"},
            {"name": "Banan", "amount": "1 szt."},
        ],
        "steps": ["Zagotuj mleko", "Dodaj płatki i gotuj 5 minut", "Dodaj banana"],
        "time": 10,
    },
    {
        "name": "Obiad: Makaron z warzywami",
        "ingredients": [
            {"name": "Makaron pełnoziarnisty", "amount": "100g"},
            {"name": "Cukinia", "amount": "1 szt."},
        ],
        "steps": ["Ugotuj makaron", "Podsmaż cukinię", "Wymieszaj"],
        "time": 25,
    },
    {
        "name": "Kolacja: Sałatka z tofu",
        "ingredients": [
            {"name": "Tofu", "amount": "100g"},
            {"name": "Ogórek", "amount": "1 szt."},
        ],
        "steps": ["Pokrój składniki", "Wymieszaj w misce"],
        "time": 15,
    },
]


def plan_data() -> List[Dict[str, Any]]:
    """Fresh copy of a valid plan in wire shape."""
    return copy.deepcopy(MEAL_PLAN_DATA)


def plan_json() -> str:
    return json.dumps(MEAL_PLAN_DATA, ensure_ascii=False)


def make_stored_plan(plan_id: str = "plan-a", user_id: str = "user-1") -> StoredPlan:
    return StoredPlan(
        id=plan_id,
        user_id=user_id,
        meals=validate(plan_data()),
        status=PlanStatus.GENERATED,
    )


def completion_payload(content: str, model: str = "openai/gpt-4o-mini") -> Dict[str, Any]:
    """Upstream chat completion body with a single choice."""
    return {
        "id": "gen-123",
        "model": model,
        "created": 1700000000,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": "stop",
        }],
        "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
    }


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def vegan_preferences() -> UserPreferences:
    return UserPreferences(
        health_goal=HealthGoal.LOSE_WEIGHT,
        diet_type=DietType.VEGAN,
        activity_level=3,
        allergies=["Orzechy"],
        disliked_products=[],
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
