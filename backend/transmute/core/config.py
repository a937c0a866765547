"""
Transmute - Configuration
=========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Transmute"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./transmute.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Pipeline
    # ==========================================================================
    CONFIDENCE_THRESHOLD: float = Field(0.85, ge=0.0, le=1.0)
    COMPLETION_MARGIN: float = Field(0.02, ge=0.0, le=1.0)
    MAX_SELF_HEAL_RETRIES: int = Field(3, ge=0)
    MAX_CONCURRENT_SLICE_BUILDS: int = Field(1, ge=1)
    AUTO_START_BUILD: bool = True
    EXECUTION_MODE: Literal["auto", "real", "scripted"] = "auto"
    EVENT_APPEND_RETRIES: int = Field(3, ge=0)
    EVENT_PACING_SECONDS: float = Field(0.0, ge=0.0)

    # ==========================================================================
    # Confidence deltas (product heuristics, not contract)
    # ==========================================================================
    DELTA_PLANNING: float = 0.03
    DELTA_CODE_FILE: float = 0.03
    DELTA_BUILD_SUCCESS: float = 0.10
    DELTA_TESTS_GENERATED: float = 0.05
    DELTA_TESTS_PASSED: float = 0.15
    DELTA_TESTS_FAILED: float = -0.05
    DELTA_HEAL_ATTEMPT: float = 0.02
    DELTA_HEAL_FIX_FILE: float = 0.05
    DELTA_HEAL_STALLED: float = -0.02
    DELTA_APP_STARTED: float = 0.05
    DELTA_E2E_PASSED: float = 0.15
    DELTA_E2E_INCONCLUSIVE: float = 0.08
    DELTA_SCREENSHOT: float = 0.08

    # ==========================================================================
    # Final confidence weights
    # ==========================================================================
    WEIGHT_UNIT: float = Field(0.15, ge=0.0)
    WEIGHT_E2E: float = Field(0.25, ge=0.0)
    WEIGHT_VISUAL: float = Field(0.20, ge=0.0)
    WEIGHT_BEHAVIORAL: float = Field(0.20, ge=0.0)
    WEIGHT_VIDEO: float = Field(0.20, ge=0.0)
    DEFAULT_VISUAL_MATCH: float = 80.0
    DEFAULT_BEHAVIORAL_MATCH: float = 85.0
    DEFAULT_VIDEO_SIMILARITY: float = 0.75

    @model_validator(mode="after")
    def check_weights(self) -> "Settings":
        """Final confidence weights must add up to 1."""
        total = (
            self.WEIGHT_UNIT
            + self.WEIGHT_E2E
            + self.WEIGHT_VISUAL
            + self.WEIGHT_BEHAVIORAL
            + self.WEIGHT_VIDEO
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Confidence weights sum to {total:.3f}, expected 1.0")
        return self

    # ==========================================================================
    # Sandbox commands
    # ==========================================================================
    BUILD_COMMAND: str = "pnpm build 2>&1 || true"
    TEST_COMMAND: str = "npx vitest run --reporter=verbose 2>&1 || true"
    TREE_COMMAND: str = (
        "find . -type f -not -path './node_modules/*' -not -path './.git/*' | sort | head -300"
    )

    # ==========================================================================
    # Live verification
    # ==========================================================================
    LIVE_VERIFICATION_ENABLED: bool = True
    APP_PORT: int = 3000
    APP_START_COMMAND: str = "nohup pnpm dev > /tmp/dev-server.log 2>&1 &"
    APP_READY_COMMAND: str = (
        "curl -s -o /dev/null -w '%{http_code}' http://127.0.0.1:3000 || echo 'waiting'"
    )
    APP_READY_POLL_ATTEMPTS: int = 30
    APP_READY_POLL_INTERVAL_SECONDS: float = 2.0
    E2E_COMMAND: str = "npx playwright test --reporter=list 2>&1 || true"
    SCREENSHOT_COMMAND: str = (
        "npx playwright screenshot --wait-for-timeout=3000 "
        "http://127.0.0.1:3000 /tmp/screenshots/home.png 2>&1 || true"
    )
    SCREENSHOT_PATH: str = "/tmp/screenshots/home.png"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def completion_floor(self) -> float:
        """Score a slice is lifted to when its tests pass."""
        return min(1.0, self.CONFIDENCE_THRESHOLD + self.COMPLETION_MARGIN)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
