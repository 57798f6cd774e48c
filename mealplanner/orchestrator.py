"""
Generation orchestrator.

Owns the plan the user sees and drives one generation at a time to a
terminal state:

    Empty    --generate--> Generating(previous=None)
    Loaded   --generate--> Generating(previous=plan)
    Error    --retry-----> Generating(previous)
    Generating --success--> Loaded(new plan)
    Generating --failure--> Error(message, retryable, previous)
    Generating --cancel---> Loaded(previous) or Empty

Authentication failures are handed to the ``on_auth_required`` callback
instead of producing an Error state. Backend failures never propagate out
of the public operations.

A plan that stays visible for ``accept_after`` seconds without being
regenerated is reported as accepted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .models import ActionType, StoredPlan
from .plan_api import BackendFailure, PlanBackend, PlanBackendError
from .state import Empty, Error, GenerationState, Generating, Loaded, visible_plan

logger = logging.getLogger(__name__)

MISSING_PREFERENCES_MESSAGE = "Najpierw wypełnij swoje preferencje żywieniowe"
UNAVAILABLE_MESSAGE = "Serwis AI jest chwilowo niedostępny. Spróbuj za chwilę."
TIMEOUT_MESSAGE = "Generowanie planu trwa zbyt długo. Spróbuj ponownie."
NETWORK_MESSAGE = "Błąd połączenia. Sprawdź swoje połączenie internetowe."
CONFLICT_MESSAGE = "Plan jest już generowany. Poczekaj chwilę i spróbuj ponownie."
GENERATION_FAILED_MESSAGE = "Nie udało się wygenerować planu. Spróbuj ponownie."
FETCH_FAILED_MESSAGE = "Wystąpił błąd podczas pobierania planu"
UNEXPECTED_MESSAGE = "Wystąpił nieoczekiwany błąd"

StateListener = Callable[[GenerationState], None]


@dataclass
class _Attempt:
    """In-flight generation. Superseded attempts never write state."""
    task: "asyncio.Future[StoredPlan]"
    previous_plan: Optional[StoredPlan]
    cancelled: bool = False


class GenerationOrchestrator:
    """
    Client-side controller for one user session.

    Not safe to share between sessions; create one per view.
    """

    def __init__(
        self,
        backend: PlanBackend,
        on_auth_required: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
        accept_after: Optional[float] = 120.0,
    ):
        self.backend = backend
        self._on_auth_required = on_auth_required
        self._clock = clock
        self._state: GenerationState = Empty()
        self._listeners: List[StateListener] = []
        self._current: Optional[_Attempt] = None
        self._background: Set[asyncio.Future] = set()
        self._accept_after = accept_after
        self._acceptance: Optional[asyncio.Future] = None

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def is_generating(self) -> bool:
        return self._current is not None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def fetch_current_plan(self) -> None:
        """Load the stored plan once, e.g. when the view mounts."""
        try:
            plan = await self.backend.fetch_current_plan()
        except PlanBackendError as e:
            if self._current is not None:
                return
            if e.reason == BackendFailure.NOT_FOUND:
                self._set_state(Empty())
            elif e.reason == BackendFailure.UNAUTHORIZED:
                self._auth_required()
            else:
                self._set_state(Error(message=e.message or FETCH_FAILED_MESSAGE, retryable=True))
            return
        except Exception as e:
            logger.exception(f"Unexpected error fetching plan: {e}")
            if self._current is None:
                self._set_state(Error(message=UNEXPECTED_MESSAGE, retryable=True))
            return

        # A generation started meanwhile owns the state
        if self._current is not None:
            return

        if plan.meals is None:
            self._set_state(Error(message="Invalid meal plan structure - expected 3 meals", retryable=True))
            return

        self._set_state(Loaded(plan=plan))

    async def generate_plan(self, is_regeneration: bool) -> None:
        """
        Generate a new plan, keeping the visible one as the fallback.

        Resolves once the attempt reaches Loaded, Error, or is cancelled.
        """
        previous = visible_plan(self._state)

        # A new request supersedes the in-flight one
        if self._current is not None:
            self._current.cancelled = True
            self._current.task.cancel()
            self._current = None

        task = asyncio.ensure_future(self.backend.generate_plan(is_regeneration))
        attempt = _Attempt(task=task, previous_plan=previous)
        self._current = attempt
        self._set_state(Generating(started_at=self._clock(), previous_plan=previous))

        logger.info(f"Generation started (regeneration={is_regeneration}, "
                    f"previous_plan={previous.id if previous else None})")

        try:
            plan = await task
        except asyncio.CancelledError:
            if attempt.cancelled:
                return
            # Cancelled from outside (view torn down)
            if self._current is attempt:
                self._current = None
                self._restore(previous)
            raise
        except PlanBackendError as e:
            if self._current is attempt:
                self._current = None
                self._fail(e, previous)
            return
        except Exception as e:
            logger.exception(f"Unexpected generation error: {e}")
            if self._current is attempt:
                self._current = None
                self._set_state(Error(message=UNEXPECTED_MESSAGE, retryable=True, previous_plan=previous))
            return

        if self._current is not attempt:
            logger.info(f"Ignoring late result {plan.id} from a superseded generation")
            return

        self._current = None
        self._set_state(Loaded(plan=plan))
        logger.info(f"Generation finished: plan {plan.id}")

        action = ActionType.PLAN_REGENERATED if is_regeneration else ActionType.PLAN_GENERATED
        self._track(action, {"plan_id": plan.id})

    def cancel_generation(self) -> None:
        """Abort the in-flight generation and go back to the previous plan."""
        attempt = self._current
        if attempt is None:
            return

        attempt.cancelled = True
        self._current = None
        attempt.task.cancel()
        self._restore(attempt.previous_plan)
        logger.info("Generation cancelled by user")

    def dispose(self) -> None:
        """Tear down: stop in-flight work without touching state."""
        self._stop_acceptance()
        if self._current is not None:
            self._current.cancelled = True
            self._current.task.cancel()
            self._current = None
        for task in list(self._background):
            task.cancel()
        self._listeners.clear()

    # ------------------------------------------------------------------

    def _set_state(self, state: GenerationState):
        self._state = state
        logger.debug(f"State -> {type(state).__name__}")

        if isinstance(state, Loaded):
            self._watch_acceptance(state.plan)
        else:
            self._stop_acceptance()

        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.exception(f"State listener failed: {e}")

    def _restore(self, previous: Optional[StoredPlan]):
        if previous is not None:
            self._set_state(Loaded(plan=previous))
        else:
            self._set_state(Empty())

    def _auth_required(self):
        logger.info("Authentication required, redirecting")
        if self._on_auth_required is not None:
            self._on_auth_required()

    def _fail(self, error: PlanBackendError, previous: Optional[StoredPlan]):
        reason = error.reason
        logger.warning(f"Generation failed: {reason.value} {error.message}")

        if reason == BackendFailure.UNAUTHORIZED:
            self._restore(previous)
            self._auth_required()
            return

        if reason == BackendFailure.MISSING_PREFERENCES:
            # Retrying cannot help until preferences are saved
            self._set_state(Error(
                message=MISSING_PREFERENCES_MESSAGE,
                retryable=False,
                previous_plan=previous,
            ))
            return

        if reason == BackendFailure.UNAVAILABLE:
            message = UNAVAILABLE_MESSAGE
        elif reason == BackendFailure.TIMEOUT:
            message = TIMEOUT_MESSAGE
        elif reason == BackendFailure.NETWORK:
            message = NETWORK_MESSAGE
        elif reason == BackendFailure.CONFLICT:
            message = error.message or CONFLICT_MESSAGE
        else:
            message = error.message or GENERATION_FAILED_MESSAGE

        self._set_state(Error(message=message, retryable=True, previous_plan=previous))

    def _track(self, action_type: ActionType, metadata: Dict[str, Any]):
        """Fire-and-forget analytics; failures are only logged."""
        try:
            task = asyncio.ensure_future(self.backend.track_event(action_type, metadata))
        except Exception as e:
            logger.warning(f"Failed to track {action_type.value}: {e}")
            return

        self._background.add(task)
        task.add_done_callback(self._on_track_done)

    def _on_track_done(self, task: asyncio.Future):
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Failed to track plan generation: {exc}")

    def _watch_acceptance(self, plan: StoredPlan):
        """(Re)start the acceptance timer for the visible plan."""
        self._stop_acceptance()
        if self._accept_after is None:
            return
        self._acceptance = asyncio.ensure_future(self._track_acceptance(plan.id, self._clock()))

    def _stop_acceptance(self):
        if self._acceptance is not None:
            self._acceptance.cancel()
            self._acceptance = None

    async def _track_acceptance(self, plan_id: str, shown_at: float):
        await asyncio.sleep(self._accept_after)
        self._acceptance = None
        time_on_page = int(self._clock() - shown_at)
        logger.info(f"Plan {plan_id} accepted after {time_on_page}s")
        self._track(ActionType.PLAN_ACCEPTED, {"plan_id": plan_id, "time_on_page": time_on_page})
