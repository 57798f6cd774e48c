"""Data models for the meal planner."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)


# ============================================================================
# Chat Completion Request/Response Models (OpenRouter wire format)
# ============================================================================

class Message(BaseModel):
    """Chat message. Role and content are checked by the client before sending."""
    role: str
    content: str


class JsonSchemaSpec(BaseModel):
    """Named JSON schema for structured output."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    strict: bool = True
    schema_: Dict[str, Any] = Field(default_factory=dict, alias="schema")


class ResponseFormat(BaseModel):
    """response_format payload; only json_schema is accepted."""
    type: str = "json_schema"
    json_schema: Optional[JsonSchemaSpec] = None


class CompletionRequest(BaseModel):
    """
    Chat completion request.

    Range checks (temperature, top_p, penalties, max_tokens) are performed by
    the completion client so violations are reported as VALIDATION errors.
    """
    messages: List[Message]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    response_format: Optional[ResponseFormat] = None
    stop: Optional[Union[str, List[str]]] = None
    stream: bool = False


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChoiceMessage(BaseModel):
    role: str = "assistant"
    content: Optional[str] = ""


class Choice(BaseModel):
    """finish_reason is one of stop, length, content_filter, tool_calls."""
    index: int = 0
    message: ChoiceMessage
    finish_reason: Optional[str] = None


class CompletionResponse(BaseModel):
    id: str
    model: str
    created: int
    choices: List[Choice]
    usage: Optional[Usage] = None


class StreamDelta(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class StreamChoice(BaseModel):
    index: int = 0
    delta: StreamDelta = Field(default_factory=StreamDelta)
    finish_reason: Optional[str] = None


class StreamChunk(BaseModel):
    """Incremental completion. The end of a stream is the [DONE] sentinel, not a field."""
    id: str = ""
    model: str = ""
    created: int = 0
    choices: List[StreamChoice] = Field(default_factory=list)


class ModelPricing(BaseModel):
    prompt: str
    completion: str


class ModelArchitecture(BaseModel):
    modality: str = ""
    tokenizer: str = ""


class ModelInfo(BaseModel):
    """Model listed by the provider."""
    id: str
    name: str = ""
    description: Optional[str] = None
    pricing: Optional[ModelPricing] = None
    context_length: Optional[int] = None
    architecture: Optional[ModelArchitecture] = None


# ============================================================================
# Meal Plan Models
# ============================================================================

def _integral_float(value: Any) -> Any:
    """JSON numbers like 15.0 are integers."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]
PositiveInt = Annotated[StrictInt, BeforeValidator(_integral_float), Field(gt=0)]


class Ingredient(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: NonEmptyStr
    amount: NonEmptyStr


class Meal(BaseModel):
    """Single meal. ``time`` is preparation time in minutes."""
    model_config = ConfigDict(frozen=True)

    name: NonEmptyStr
    ingredients: Tuple[Ingredient, ...]
    steps: Tuple[NonEmptyStr, ...]
    time: PositiveInt


# Breakfast, lunch, dinner
MealPlan = Tuple[Meal, Meal, Meal]


class HealthGoal(str, Enum):
    LOSE_WEIGHT = "LOSE_WEIGHT"
    GAIN_WEIGHT = "GAIN_WEIGHT"
    MAINTAIN_WEIGHT = "MAINTAIN_WEIGHT"
    HEALTHY_EATING = "HEALTHY_EATING"
    BOOST_ENERGY = "BOOST_ENERGY"


class DietType(str, Enum):
    STANDARD = "STANDARD"
    VEGETARIAN = "VEGETARIAN"
    VEGAN = "VEGAN"
    GLUTEN_FREE = "GLUTEN_FREE"


class UserPreferences(BaseModel):
    """Dietary preferences used to build the generation prompt."""
    health_goal: HealthGoal
    diet_type: DietType
    activity_level: int = Field(ge=1, le=5)
    allergies: List[NonEmptyStr] = Field(default_factory=list, max_length=10)
    disliked_products: List[NonEmptyStr] = Field(default_factory=list, max_length=20)

    @field_validator("allergies", "disliked_products", mode="before")
    @classmethod
    def _clean_items(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [item.strip() if isinstance(item, str) else item for item in value]
        return value


class PlanStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    ERROR = "error"


class StoredPlan(BaseModel):
    """Persisted plan record; one per user."""
    id: str
    user_id: str
    meals: Optional[MealPlan] = None
    status: PlanStatus = PlanStatus.PENDING
    generated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ActionType(str, Enum):
    USER_REGISTERED = "user_registered"
    PROFILE_CREATED = "profile_created"
    PROFILE_UPDATED = "profile_updated"
    PLAN_GENERATED = "plan_generated"
    PLAN_REGENERATED = "plan_regenerated"
    PLAN_ACCEPTED = "plan_accepted"
    FEEDBACK_GIVEN = "feedback_given"
    API_ERROR = "api_error"


class AnalyticsEvent(BaseModel):
    user_id: str
    action_type: ActionType
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Optional[Dict[str, Any]] = None


class Rating(str, Enum):
    THUMBS_UP = "THUMBS_UP"
    THUMBS_DOWN = "THUMBS_DOWN"


class Feedback(BaseModel):
    """User's rating of a meal plan, with an optional comment."""
    id: str
    meal_plan_id: str
    rating: Rating
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


# ============================================================================
# HTTP API Models
# ============================================================================

class ChatMessage(BaseModel):
    """Chat message accepted from API callers."""
    role: str = Field(pattern="^(system|user|assistant)$")
    content: str = Field(min_length=1)


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)


class GenerateMealPlanRequest(BaseModel):
    regeneration: bool = False


class LogAnalyticsEventRequest(BaseModel):
    action_type: ActionType
    metadata: Optional[Dict[str, Any]] = None


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


CommentText = Annotated[str, Field(max_length=500)]
# Blank comments count as not given
FeedbackComment = Annotated[Optional[CommentText], BeforeValidator(_blank_to_none)]


class CreateFeedbackRequest(BaseModel):
    rating: Rating
    comment: FeedbackComment = None


class UpdateFeedbackRequest(BaseModel):
    """Partial update; at least one field must be given."""
    rating: Optional[Rating] = None
    comment: FeedbackComment = None

    @model_validator(mode="after")
    def _require_change(self) -> "UpdateFeedbackRequest":
        if self.rating is None and self.comment is None:
            raise ValueError("Co najmniej jedno pole (rating lub comment) musi być podane")
        return self
