"""Generation state shown to the user: one tagged variant at a time."""

from dataclasses import dataclass
from typing import Optional, Union

from .models import StoredPlan


@dataclass(frozen=True)
class Empty:
    """No plan yet."""


@dataclass(frozen=True)
class Generating:
    """Generation in flight. ``previous_plan`` is restored on cancel."""
    started_at: float
    previous_plan: Optional[StoredPlan] = None


@dataclass(frozen=True)
class Loaded:
    plan: StoredPlan


@dataclass(frozen=True)
class Error:
    """
    Failed generation or fetch.

    ``retryable`` tells the view whether to offer a retry action or send the
    user to the preferences form. ``previous_plan`` stays visible beneath the
    error.
    """
    message: str
    retryable: bool
    previous_plan: Optional[StoredPlan] = None


GenerationState = Union[Empty, Generating, Loaded, Error]


def visible_plan(state: GenerationState) -> Optional[StoredPlan]:
    """Plan the user currently sees, if any."""
    if isinstance(state, Loaded):
        return state.plan
    if isinstance(state, (Generating, Error)):
        return state.previous_plan
    return None
