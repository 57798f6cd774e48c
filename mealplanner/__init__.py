"""
Meal Planner

Personalized daily meal plans generated through an OpenRouter chat
completion API, with a client-side controller for the generation lifecycle.

Components:
- openrouter_client: Completion client with retry, timeout and SSE streaming
- schema: Meal plan validation and strict structured-output schema
- generator: Prompt construction and plan generation
- plans: Plan persistence around generation
- feedback: Ratings of the current plan
- orchestrator: Generation state machine for one user session
- plan_api: Orchestrator backends (HTTP and in-process)
- api: HTTP endpoints
"""

from .main import app, __version__
