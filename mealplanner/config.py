"""Meal planner configuration."""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Server
    host: str = field(default_factory=lambda: os.getenv("MEALPLANNER_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("MEALPLANNER_PORT", "8000")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    # OpenRouter
    openrouter_api_key: str = field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY", ""))
    openrouter_base_url: str = field(default_factory=lambda:
        os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"))
    openrouter_default_model: str = field(default_factory=lambda:
        os.getenv("OPENROUTER_DEFAULT_MODEL", "openai/gpt-4o-mini"))
    openrouter_timeout: float = field(default_factory=lambda: float(os.getenv("OPENROUTER_TIMEOUT", "30")))
    openrouter_max_retries: int = field(default_factory=lambda: int(os.getenv("OPENROUTER_MAX_RETRIES", "3")))
    openrouter_retry_delay: float = field(default_factory=lambda: float(os.getenv("OPENROUTER_RETRY_DELAY", "1")))
    openrouter_site_name: str = field(default_factory=lambda: os.getenv("OPENROUTER_SITE_NAME", ""))
    openrouter_site_url: str = field(default_factory=lambda: os.getenv("OPENROUTER_SITE_URL", ""))

    # Meal plan generation
    mealplan_model: str = field(default_factory=lambda:
        os.getenv("MEALPLANNER_MODEL", "google/gemini-2.0-flash-001"))
    use_mocks: bool = field(default_factory=lambda: _env_flag("MEALPLANNER_USE_MOCKS"))
    mock_delay: float = field(default_factory=lambda: float(os.getenv("MEALPLANNER_MOCK_DELAY", "1")))
    structured_output: bool = field(default_factory=lambda: _env_flag("MEALPLANNER_STRUCTURED_OUTPUT"))

    # Sessions
    default_user_id: str = field(default_factory=lambda:
        os.getenv("DEFAULT_USER_ID", "00000000-0000-0000-0000-000000000001"))

    @property
    def mocks_enabled(self) -> bool:
        """Mock generation is used when requested or when no API key is set."""
        return self.use_mocks or not self.openrouter_api_key


# Global config instance
config = Config()
