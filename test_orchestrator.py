"""Tests for the generation orchestrator state machine."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from conftest import make_stored_plan
from mealplanner.generator import MealPlanGenerator
from mealplanner.models import ActionType, StoredPlan
from mealplanner.orchestrator import (
    CONFLICT_MESSAGE,
    FETCH_FAILED_MESSAGE,
    GENERATION_FAILED_MESSAGE,
    MISSING_PREFERENCES_MESSAGE,
    NETWORK_MESSAGE,
    TIMEOUT_MESSAGE,
    UNAVAILABLE_MESSAGE,
    UNEXPECTED_MESSAGE,
    GenerationOrchestrator,
)
from mealplanner.plan_api import BackendFailure, LocalPlanBackend, PlanBackend, PlanBackendError
from mealplanner.plans import MealPlansService
from mealplanner.state import Empty, Error, Generating, Loaded
from mealplanner.store import InMemoryAnalyticsSink, InMemoryPlanStore, InMemoryPreferencesStore

PLAN_A = make_stored_plan("plan-a")
PLAN_B = make_stored_plan("plan-b")


class FakeBackend(PlanBackend):
    """
    Scripted backend.

    Each generate_plan call takes the next outcome: a plan, an exception, or
    a future resolved later by the test.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: List[bool] = []
        self.current: Any = PlanBackendError(BackendFailure.NOT_FOUND)
        self.events: List[tuple] = []
        self.track_error: Optional[Exception] = None

    async def generate_plan(self, regeneration: bool) -> StoredPlan:
        self.calls.append(regeneration)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, asyncio.Future):
            outcome = await outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def fetch_current_plan(self) -> StoredPlan:
        if isinstance(self.current, BaseException):
            raise self.current
        return self.current

    async def track_event(self, action_type: ActionType, metadata: Optional[Dict[str, Any]] = None) -> None:
        if self.track_error is not None:
            raise self.track_error
        self.events.append((action_type, metadata))


class StubbornBackend(FakeBackend):
    """Ignores cancellation and delivers its plan late."""

    def __init__(self, late_plan: StoredPlan):
        super().__init__()
        self.late_plan = late_plan
        self.started = asyncio.Event()

    async def generate_plan(self, regeneration: bool) -> StoredPlan:
        self.started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            pass
        return self.late_plan


async def settle():
    """Let scheduled callbacks and background tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


async def loaded(backend: FakeBackend, plan: StoredPlan = PLAN_A) -> GenerationOrchestrator:
    """Orchestrator that already shows ``plan``."""
    backend.current = plan
    orchestrator = GenerationOrchestrator(backend)
    await orchestrator.fetch_current_plan()
    assert orchestrator.state == Loaded(plan=plan)
    return orchestrator


# =============================================================================
# Generation
# =============================================================================

async def test_generate_from_empty():
    backend = FakeBackend(PLAN_A)
    orchestrator = GenerationOrchestrator(backend, clock=lambda: 100.0)
    states = []
    orchestrator.subscribe(states.append)

    await orchestrator.generate_plan(False)

    assert states == [Generating(started_at=100.0, previous_plan=None), Loaded(plan=PLAN_A)]
    assert orchestrator.state == Loaded(plan=PLAN_A)
    assert backend.calls == [False]


async def test_generating_state_while_in_flight():
    loop = asyncio.get_running_loop()
    pending = loop.create_future()
    backend = FakeBackend(pending)
    orchestrator = await loaded(backend)

    task = asyncio.create_task(orchestrator.generate_plan(True))
    await settle()

    assert isinstance(orchestrator.state, Generating)
    assert orchestrator.state.previous_plan == PLAN_A
    assert orchestrator.is_generating

    pending.set_result(PLAN_B)
    await task

    assert orchestrator.state == Loaded(plan=PLAN_B)
    assert not orchestrator.is_generating


async def test_success_tracks_analytics():
    backend = FakeBackend(PLAN_A, PLAN_B)
    orchestrator = GenerationOrchestrator(backend)

    await orchestrator.generate_plan(False)
    await orchestrator.generate_plan(True)
    await settle()

    assert backend.events == [
        (ActionType.PLAN_GENERATED, {"plan_id": "plan-a"}),
        (ActionType.PLAN_REGENERATED, {"plan_id": "plan-b"}),
    ]


async def test_analytics_failure_does_not_affect_state():
    backend = FakeBackend(PLAN_A)
    backend.track_error = RuntimeError("analytics down")
    orchestrator = GenerationOrchestrator(backend)

    await orchestrator.generate_plan(False)
    await settle()

    assert orchestrator.state == Loaded(plan=PLAN_A)


async def test_failed_regeneration_keeps_previous_plan():
    backend = FakeBackend(PlanBackendError(BackendFailure.UNAVAILABLE, "Model error."))
    orchestrator = await loaded(backend)

    await orchestrator.generate_plan(True)

    assert orchestrator.state == Error(message=UNAVAILABLE_MESSAGE, retryable=True, previous_plan=PLAN_A)


@pytest.mark.parametrize("reason, server_message, message", [
    (BackendFailure.TIMEOUT, "", TIMEOUT_MESSAGE),
    (BackendFailure.NETWORK, "connection refused", NETWORK_MESSAGE),
    (BackendFailure.UNAVAILABLE, "", UNAVAILABLE_MESSAGE),
    (BackendFailure.CONFLICT, "Plan jest już generowany.", "Plan jest już generowany."),
    (BackendFailure.CONFLICT, "", CONFLICT_MESSAGE),
    (BackendFailure.FAILED, "Nie udało się wygenerować planu.", "Nie udało się wygenerować planu."),
    (BackendFailure.FAILED, "", GENERATION_FAILED_MESSAGE),
])
async def test_retryable_failures(reason, server_message, message):
    backend = FakeBackend(PlanBackendError(reason, server_message))
    orchestrator = GenerationOrchestrator(backend)

    await orchestrator.generate_plan(False)

    assert orchestrator.state == Error(message=message, retryable=True, previous_plan=None)


async def test_missing_preferences_is_not_retryable():
    backend = FakeBackend(PlanBackendError(BackendFailure.MISSING_PREFERENCES))
    orchestrator = await loaded(backend)

    await orchestrator.generate_plan(True)

    assert orchestrator.state == Error(
        message=MISSING_PREFERENCES_MESSAGE, retryable=False, previous_plan=PLAN_A,
    )


async def test_unexpected_exception_becomes_error_state():
    backend = FakeBackend(RuntimeError("boom"))
    orchestrator = GenerationOrchestrator(backend)

    await orchestrator.generate_plan(False)

    assert orchestrator.state == Error(message=UNEXPECTED_MESSAGE, retryable=True)


async def test_retry_after_error():
    backend = FakeBackend(PlanBackendError(BackendFailure.TIMEOUT), PLAN_B)
    orchestrator = await loaded(backend)
    states = []
    orchestrator.subscribe(states.append)

    await orchestrator.generate_plan(True)
    await orchestrator.generate_plan(True)

    assert [type(s) for s in states] == [Generating, Error, Generating, Loaded]
    assert states[2].previous_plan == PLAN_A
    assert orchestrator.state == Loaded(plan=PLAN_B)


async def test_auth_failure_redirects_without_error_state():
    redirects = []
    backend = FakeBackend(PlanBackendError(BackendFailure.UNAUTHORIZED))
    backend.current = PLAN_A
    orchestrator = GenerationOrchestrator(backend, on_auth_required=lambda: redirects.append(True))
    await orchestrator.fetch_current_plan()

    await orchestrator.generate_plan(True)

    assert redirects == [True]
    assert orchestrator.state == Loaded(plan=PLAN_A)


# =============================================================================
# Cancellation
# =============================================================================

async def test_cancel_restores_previous_plan():
    pending = asyncio.get_running_loop().create_future()
    backend = FakeBackend(pending)
    orchestrator = await loaded(backend)

    task = asyncio.create_task(orchestrator.generate_plan(True))
    await settle()
    orchestrator.cancel_generation()

    assert orchestrator.state == Loaded(plan=PLAN_A)
    await task
    assert orchestrator.state == Loaded(plan=PLAN_A)
    assert not orchestrator.is_generating


async def test_cancel_from_empty_returns_to_empty():
    pending = asyncio.get_running_loop().create_future()
    orchestrator = GenerationOrchestrator(FakeBackend(pending))

    task = asyncio.create_task(orchestrator.generate_plan(False))
    await settle()
    orchestrator.cancel_generation()
    await task

    assert orchestrator.state == Empty()


async def test_late_result_after_cancel_is_ignored():
    backend = StubbornBackend(late_plan=PLAN_B)
    backend.current = PLAN_A
    orchestrator = GenerationOrchestrator(backend)
    await orchestrator.fetch_current_plan()
    states = []
    orchestrator.subscribe(states.append)

    task = asyncio.create_task(orchestrator.generate_plan(True))
    await backend.started.wait()
    orchestrator.cancel_generation()
    await task
    await settle()

    assert orchestrator.state == Loaded(plan=PLAN_A)
    assert [type(s) for s in states] == [Generating, Loaded]
    assert backend.events == []


async def test_cancel_without_generation_is_noop():
    orchestrator = await loaded(FakeBackend())
    states = []
    orchestrator.subscribe(states.append)

    orchestrator.cancel_generation()

    assert states == []
    assert orchestrator.state == Loaded(plan=PLAN_A)


async def test_new_generation_supersedes_in_flight_one():
    loop = asyncio.get_running_loop()
    first, second = loop.create_future(), loop.create_future()
    orchestrator = GenerationOrchestrator(FakeBackend(first, second))

    first_task = asyncio.create_task(orchestrator.generate_plan(False))
    await settle()
    second_task = asyncio.create_task(orchestrator.generate_plan(False))
    await settle()

    second.set_result(PLAN_B)
    await asyncio.gather(first_task, second_task)

    assert orchestrator.state == Loaded(plan=PLAN_B)


async def test_external_cancellation_restores_state_and_propagates():
    pending = asyncio.get_running_loop().create_future()
    orchestrator = await loaded(FakeBackend(pending))

    task = asyncio.create_task(orchestrator.generate_plan(True))
    await settle()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.state == Loaded(plan=PLAN_A)


async def test_dispose_stops_in_flight_work():
    pending = asyncio.get_running_loop().create_future()
    orchestrator = await loaded(FakeBackend(pending))
    states = []
    orchestrator.subscribe(states.append)

    task = asyncio.create_task(orchestrator.generate_plan(True))
    await settle()
    orchestrator.dispose()
    await task

    assert pending.cancelled()
    assert [type(s) for s in states] == [Generating]


# =============================================================================
# Plan acceptance
# =============================================================================

class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def accepted(backend: FakeBackend) -> List[dict]:
    return [metadata for action, metadata in backend.events if action == ActionType.PLAN_ACCEPTED]


async def test_plan_accepted_after_delay():
    backend = FakeBackend()
    backend.current = PLAN_A
    clock = FakeClock()
    orchestrator = GenerationOrchestrator(backend, clock=clock, accept_after=0.01)

    await orchestrator.fetch_current_plan()
    clock.now = 250.0
    await asyncio.sleep(0.05)
    await settle()

    assert accepted(backend) == [{"plan_id": "plan-a", "time_on_page": 150}]


async def test_regeneration_restarts_acceptance():
    pending = asyncio.get_running_loop().create_future()
    backend = FakeBackend(pending)
    backend.current = PLAN_A
    orchestrator = GenerationOrchestrator(backend, accept_after=0.05)
    await orchestrator.fetch_current_plan()

    task = asyncio.create_task(orchestrator.generate_plan(True))
    await asyncio.sleep(0.1)
    assert accepted(backend) == []

    pending.set_result(PLAN_B)
    await task
    await asyncio.sleep(0.1)
    await settle()

    assert [metadata["plan_id"] for metadata in accepted(backend)] == ["plan-b"]


async def test_no_acceptance_without_plan():
    backend = FakeBackend(PlanBackendError(BackendFailure.FAILED))
    orchestrator = GenerationOrchestrator(backend, accept_after=0.01)

    await orchestrator.fetch_current_plan()
    await orchestrator.generate_plan(False)
    await asyncio.sleep(0.05)
    await settle()

    assert isinstance(orchestrator.state, Error)
    assert accepted(backend) == []


async def test_dispose_stops_acceptance_timer():
    backend = FakeBackend()
    backend.current = PLAN_A
    orchestrator = GenerationOrchestrator(backend, accept_after=0.01)
    await orchestrator.fetch_current_plan()

    orchestrator.dispose()
    await asyncio.sleep(0.05)
    await settle()

    assert backend.events == []


# =============================================================================
# Fetching the current plan
# =============================================================================

async def test_fetch_not_found_is_empty():
    orchestrator = GenerationOrchestrator(FakeBackend())

    await orchestrator.fetch_current_plan()

    assert orchestrator.state == Empty()


async def test_fetch_failure_is_retryable_error():
    backend = FakeBackend()
    backend.current = PlanBackendError(BackendFailure.FAILED)
    orchestrator = GenerationOrchestrator(backend)

    await orchestrator.fetch_current_plan()

    assert orchestrator.state == Error(message=FETCH_FAILED_MESSAGE, retryable=True)


async def test_fetch_unauthorized_redirects():
    redirects = []
    backend = FakeBackend()
    backend.current = PlanBackendError(BackendFailure.UNAUTHORIZED)
    orchestrator = GenerationOrchestrator(backend, on_auth_required=lambda: redirects.append(True))

    await orchestrator.fetch_current_plan()

    assert redirects == [True]
    assert orchestrator.state == Empty()


async def test_listener_errors_do_not_break_transitions():
    orchestrator = GenerationOrchestrator(FakeBackend(PLAN_A))

    def broken(state):
        raise ValueError("listener bug")

    orchestrator.subscribe(broken)
    await orchestrator.generate_plan(False)

    assert orchestrator.state == Loaded(plan=PLAN_A)


async def test_unsubscribe():
    orchestrator = GenerationOrchestrator(FakeBackend(PLAN_A))
    states = []
    unsubscribe = orchestrator.subscribe(states.append)

    unsubscribe()
    await orchestrator.generate_plan(False)

    assert states == []


# =============================================================================
# In-process backend
# =============================================================================

async def test_local_backend_end_to_end(vegan_preferences):
    preferences = InMemoryPreferencesStore()
    analytics = InMemoryAnalyticsSink()
    service = MealPlansService(InMemoryPlanStore(), MealPlanGenerator(use_mocks=True, mock_delay=0))
    backend = LocalPlanBackend(service, preferences, analytics, user_id="user-1")
    orchestrator = GenerationOrchestrator(backend)

    await orchestrator.fetch_current_plan()
    assert orchestrator.state == Empty()

    await orchestrator.generate_plan(False)
    assert orchestrator.state == Error(
        message=MISSING_PREFERENCES_MESSAGE, retryable=False, previous_plan=None,
    )

    await preferences.upsert_preferences("user-1", vegan_preferences)
    await orchestrator.generate_plan(False)
    await settle()

    assert isinstance(orchestrator.state, Loaded)
    plan = orchestrator.state.plan
    assert plan.user_id == "user-1"
    assert [e.action_type for e in analytics.events] == [ActionType.PLAN_GENERATED]
    assert analytics.events[0].metadata == {"plan_id": plan.id}


async def test_local_backend_maps_conflict(vegan_preferences):
    preferences = InMemoryPreferencesStore()
    await preferences.upsert_preferences("user-1", vegan_preferences)
    plans = InMemoryPlanStore()
    await plans.upsert_pending_plan("user-1")
    service = MealPlansService(plans, MealPlanGenerator(use_mocks=True, mock_delay=0))
    backend = LocalPlanBackend(service, preferences, InMemoryAnalyticsSink(), user_id="user-1")

    with pytest.raises(PlanBackendError) as exc_info:
        await backend.generate_plan(False)

    assert exc_info.value.reason == BackendFailure.CONFLICT
