"""
Meal plan generation via the completion client.

The generator owns prompt construction and output validation only. Retries,
backoff and timeouts are inherited from the CompletionClient; any failure is
reported once as a MealPlanGenerationError.
"""

import asyncio
import json
import logging
import re
from typing import Any, List, Optional

from .config import config
from .errors import CompletionError, MealPlanGenerationError
from .models import CompletionRequest, DietType, MealPlan, Message, UserPreferences
from .openrouter_client import CompletionClient
from .schema import meal_plan_response_format, validate

logger = logging.getLogger(__name__)

GENERATION_FAILED_MESSAGE = "Nie udało się wygenerować planu. Spróbuj ponownie."

SYSTEM_PROMPT = (
    "Jesteś ekspertem dietetykiem. Twoje zadanie to generowanie zdrowych, smacznych planów posiłków na jeden dzień.\n"
    "Zawsze zwracaj odpowiedź w formacie JSON z tablicą dokładnie 3 posiłków (śniadanie, obiad, kolacja).\n"
    "Każdy posiłek musi mieć:\n"
    '- name: pełna nazwa z typem posiłku (np. "Śniadanie: Owsianka z owocami")\n'
    '- ingredients: tablica składników z polami "name" i "amount" (używaj europejskich jednostek: g, ml, szt.)\n'
    "- steps: tablica kroków przygotowania\n"
    "- time: szacowany czas przygotowania w minutach (liczba całkowita)\n"
    "Porcje muszą być realistyczne dla jednej osoby.\n"
    "Nigdy nie używaj składników, na które użytkownik ma alergię, ani produktów, których nie lubi.\n"
    "\n"
    "Zwróć TYLKO poprawny JSON bez dodatkowych komentarzy."
)

RESPONSE_EXAMPLE = (
    '[{"name":"Śniadanie: ...","ingredients":[{"name":"...","amount":"..."}],"steps":["..."],"time":15},'
    '{"name":"Obiad: ...","ingredients":[...],"steps":[...],"time":30},'
    '{"name":"Kolacja: ...","ingredients":[...],"steps":[...],"time":20}]'
)

GOAL_LABELS = {
    "LOSE_WEIGHT": "odchudzanie",
    "GAIN_WEIGHT": "przybranie na wadze",
    "MAINTAIN_WEIGHT": "utrzymanie wagi",
    "HEALTHY_EATING": "zdrowe odżywianie",
    "BOOST_ENERGY": "zwiększenie energii",
}

DIET_LABELS = {
    "STANDARD": "standardowa (wszystkożerna)",
    "VEGETARIAN": "wegetariańska",
    "VEGAN": "wegańska",
    "GLUTEN_FREE": "bezglutenowa",
}


def build_system_prompt() -> str:
    return SYSTEM_PROMPT


def build_user_prompt(preferences: UserPreferences) -> str:
    """Serialize preferences into natural-language constraints."""
    goal = preferences.health_goal.value
    diet = preferences.diet_type.value

    parts = [
        "Wygeneruj plan 3 posiłków (śniadanie, obiad, kolacja) dla osoby o następujących preferencjach:",
        f"- Cel zdrowotny: {GOAL_LABELS.get(goal, goal)}",
        f"- Dieta: {DIET_LABELS.get(diet, diet)}",
        f"- Poziom aktywności: {preferences.activity_level}/5",
    ]

    if preferences.allergies:
        parts.append(f"- Alergie (wyklucz te składniki): {', '.join(preferences.allergies)}")

    if preferences.disliked_products:
        parts.append(f"- Nielubiane produkty (pomiń je): {', '.join(preferences.disliked_products)}")

    parts.append("\nFormat odpowiedzi (TYLKO JSON, bez dodatkowego tekstu):")
    parts.append(RESPONSE_EXAMPLE)

    return "\n".join(parts)


def build_messages(preferences: UserPreferences) -> List[Message]:
    return [
        Message(role="system", content=build_system_prompt()),
        Message(role="user", content=build_user_prompt(preferences)),
    ]


def _strip_code_fence(text: str) -> str:
    txt = text.strip()
    if txt.startswith("```"):
        txt = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", txt, count=1)
        txt = re.sub(r"\s*```$", "", txt, count=1).strip()
    return txt


def parse_meal_plan(content: str) -> MealPlan:
    """
    Decode model output into a validated plan.

    Accepts a bare JSON array or the ``{"meals": [...]}`` object produced in
    structured-output mode. Raises ValueError (JSONDecodeError or
    SchemaValidationError) on malformed output.
    """
    candidate: Any = json.loads(_strip_code_fence(content))
    if isinstance(candidate, dict) and "meals" in candidate:
        candidate = candidate["meals"]
    return validate(candidate)


class MealPlanGenerator:
    """
    Generates a one-day plan of 3 meals from user preferences.

    In mock mode a deterministic plan adapted to the diet type is returned
    after a short simulated delay, without calling the API.
    """

    def __init__(
        self,
        client: Optional[CompletionClient] = None,
        model: Optional[str] = None,
        use_mocks: Optional[bool] = None,
        mock_delay: Optional[float] = None,
        structured_output: Optional[bool] = None,
    ):
        self.use_mocks = config.mocks_enabled if use_mocks is None else use_mocks
        self.model = model or config.mealplan_model
        self.mock_delay = config.mock_delay if mock_delay is None else mock_delay
        self.structured_output = config.structured_output if structured_output is None else structured_output

        if client is None and not self.use_mocks:
            client = CompletionClient()
        self.client = client

    @property
    def retry_count(self) -> int:
        """Retries attempted by the client before a failure is reported."""
        if self.client is not None:
            return self.client.max_retries
        return config.openrouter_max_retries

    async def generate_meal_plan(self, preferences: UserPreferences) -> MealPlan:
        if self.use_mocks:
            return await self._generate_mock_meal_plan(preferences)

        request = CompletionRequest(
            messages=build_messages(preferences),
            model=self.model,
            temperature=0.7,
            max_tokens=2000,
            response_format=meal_plan_response_format() if self.structured_output else None,
        )

        logger.info(f"Generating meal plan: model={self.model}, diet={preferences.diet_type.value}, "
                    f"structured={self.structured_output}")

        try:
            response = await self.client.complete(request)
        except CompletionError as e:
            logger.error(f"Meal plan generation failed: {e.kind.value}: {e.message}")
            raise MealPlanGenerationError(
                GENERATION_FAILED_MESSAGE, retry_count=self.retry_count, kind=e.kind,
            ) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            logger.error("Meal plan generation failed: empty response from LLM")
            raise MealPlanGenerationError(GENERATION_FAILED_MESSAGE, retry_count=self.retry_count)

        try:
            plan = parse_meal_plan(content)
        except ValueError as e:
            logger.error(f"Meal plan generation returned invalid output: {e}")
            raise MealPlanGenerationError(GENERATION_FAILED_MESSAGE, retry_count=self.retry_count) from e

        logger.info(f"Meal plan generated: {[meal.name for meal in plan]}")
        return plan

    async def _generate_mock_meal_plan(self, preferences: UserPreferences) -> MealPlan:
        """Deterministic plan for development."""
        if self.mock_delay > 0:
            await asyncio.sleep(self.mock_delay)

        is_vegan = preferences.diet_type == DietType.VEGAN
        is_vegetarian = is_vegan or preferences.diet_type == DietType.VEGETARIAN

        breakfast = {
            "name": "Śniadanie: Owsianka z owocami",
            "ingredients": [
                {"name": "Płatki owsiane", "amount": "50g"},
                {"name": "Mleko owsiane" if is_vegan else "Mleko", "amount": "200ml"},
                {"name": "Banan", "amount": "1 szt."},
                {"name": "Syrop klonowy" if is_vegan else "Miód", "amount": "1 łyżka"},
            ],
            "steps": [
                "Zagotuj mleko w garnku",
                "Dodaj płatki owsiane i gotuj 5 minut na małym ogniu, mieszając",
                "Przełóż do miski",
                "Udekoruj pokrojonym bananem i polej słodzikiem",
            ],
            "time": 10,
        }

        if is_vegetarian:
            lunch = {
                "name": "Obiad: Makaron z warzywami",
                "ingredients": [
                    {"name": "Makaron pełnoziarnisty", "amount": "100g"},
                    {"name": "Papryka", "amount": "1 szt."},
                    {"name": "Cukinia", "amount": "1 szt."},
                    {"name": "Pomidory", "amount": "200g"},
                    {"name": "Oliwa z oliwek", "amount": "2 łyżki"},
                    {"name": "Czosnek", "amount": "2 ząbki"},
                ],
                "steps": [
                    "Ugotuj makaron według instrukcji na opakowaniu",
                    "Pokrój warzywa w kostkę",
                    "Podsmaż czosnek na oliwie",
                    "Dodaj warzywa i smaż 10 minut",
                    "Wymieszaj z odsączonym makaronem",
                ],
                "time": 25,
            }
        else:
            lunch = {
                "name": "Obiad: Kurczak z ryżem i warzywami",
                "ingredients": [
                    {"name": "Filet z kurczaka", "amount": "150g"},
                    {"name": "Ryż brązowy", "amount": "80g"},
                    {"name": "Brokuł", "amount": "200g"},
                    {"name": "Marchew", "amount": "1 szt."},
                    {"name": "Oliwa z oliwek", "amount": "1 łyżka"},
                ],
                "steps": [
                    "Ugotuj ryż według instrukcji",
                    "Pokrój kurczaka w kostkę i usmaż na oliwie",
                    "Ugotuj brokuły i marchew na parze",
                    "Podawaj razem z ryżem",
                ],
                "time": 25,
            }

        dinner = {
            "name": "Kolacja: Sałatka grecka",
            "ingredients": [
                {"name": "Sałata rzymska", "amount": "1 główka"},
                {"name": "Ogórek", "amount": "1 szt."},
                {"name": "Pomidory koktajlowe", "amount": "200g"},
                {"name": "Tofu" if is_vegan else "Ser feta", "amount": "100g"},
                {"name": "Oliwki", "amount": "50g"},
                {"name": "Oliwa z oliwek", "amount": "2 łyżki"},
                {"name": "Sok z cytryny", "amount": "1 łyżka"},
            ],
            "steps": [
                "Pokrój wszystkie warzywa",
                "Pokrusz ser feta lub tofu",
                "Wymieszaj wszystkie składniki w misce",
                "Polej oliwą i sokiem z cytryny",
                "Dopraw solą i pieprzem",
            ],
            "time": 15,
        }

        return validate([breakfast, lunch, dinner])
