"""
Meal plan schema.

``validate`` enforces the shape of a generated plan: exactly three meals
(breakfast, lunch, dinner), each with a name, ingredients, steps and a
positive preparation time. ``meal_plan_response_format`` describes the same
shape as a strict json_schema response format for structured-output requests.
"""

from typing import Any, Dict, List

from pydantic import TypeAdapter, ValidationError

from .errors import SchemaValidationError
from .models import JsonSchemaSpec, MealPlan, ResponseFormat

MEALS_PER_PLAN = 3

_meal_plan_adapter = TypeAdapter(MealPlan)


def validate(candidate: Any) -> MealPlan:
    """Validate decoded JSON and return an immutable meal plan."""
    try:
        return _meal_plan_adapter.validate_python(candidate)
    except ValidationError as e:
        errors = _format_errors(e)
        raise SchemaValidationError(
            f"Invalid meal plan: {'; '.join(errors)}",
            errors=errors,
        ) from e


def dump(plan: MealPlan) -> List[Dict[str, Any]]:
    """Serialize a plan to its wire JSON shape."""
    return _meal_plan_adapter.dump_python(plan, mode="json")


def _format_errors(error: ValidationError) -> List[str]:
    formatted = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "plan"
        formatted.append(f"{location}: {item['msg']}")
    return formatted


# ============================================================================
# Strict JSON schema for structured output
# ============================================================================

_INGREDIENT_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Ingredient name"},
        "amount": {"type": "string", "description": "Amount with a metric unit (g, ml, szt.)"},
    },
    "required": ["name", "amount"],
    "additionalProperties": False,
}

_MEAL_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "description": "Meal name prefixed with the meal type"},
        "ingredients": {"type": "array", "items": _INGREDIENT_SCHEMA},
        "steps": {"type": "array", "items": {"type": "string"}},
        "time": {"type": "integer", "description": "Preparation time in minutes"},
    },
    "required": ["name", "ingredients", "steps", "time"],
    "additionalProperties": False,
}

MEAL_PLAN_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "meals": {
            "type": "array",
            "description": "Breakfast, lunch and dinner, in this order",
            "items": _MEAL_SCHEMA,
            "minItems": MEALS_PER_PLAN,
            "maxItems": MEALS_PER_PLAN,
        },
    },
    "required": ["meals"],
    "additionalProperties": False,
}


def meal_plan_schema_spec() -> JsonSchemaSpec:
    return JsonSchemaSpec(name="meal_plan", strict=True, schema=MEAL_PLAN_JSON_SCHEMA)


def meal_plan_response_format() -> ResponseFormat:
    """Strict response_format whose root object carries the ``meals`` array."""
    return ResponseFormat(type="json_schema", json_schema=meal_plan_schema_spec())
