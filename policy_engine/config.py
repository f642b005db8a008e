"""
Centralized configuration management for the discovery engine.
Loads settings from environment variables with sensible defaults.
"""

from pathlib import Path
from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, validator


# ============================================================================
# Path Configuration
# ============================================================================

PROJECT_ROOT = Path(__file__).parent.parent
PACKAGE_DIR = PROJECT_ROOT / "policy_engine"
LOGS_DIR = PROJECT_ROOT / "logs"
DATA_DIR = PROJECT_ROOT / "data"


DEFAULT_USER_AGENTS = ",".join([
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15",
])


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ========================================================================
    # Database Configuration
    # ========================================================================
    database_url: str = Field(
        default=f"sqlite:///{DATA_DIR / 'policy_engine.db'}",
        alias="DATABASE_URL",
    )
    db_pool_size: int = Field(default=10, alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, alias="DB_MAX_OVERFLOW")
    db_pool_recycle: int = Field(default=3600, alias="DB_POOL_RECYCLE")

    # ========================================================================
    # Application Configuration
    # ========================================================================
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # ========================================================================
    # Fetching Configuration
    # ========================================================================
    fetch_timeout_ms: int = Field(default=5000, alias="FETCH_TIMEOUT_MS")
    retry_budget_ms: int = Field(default=12000, alias="RETRY_BUDGET_MS")
    user_agents: str = Field(default=DEFAULT_USER_AGENTS, alias="USER_AGENTS")
    accept_language: str = Field(default="en-US,en;q=0.9", alias="ACCEPT_LANGUAGE")
    render_min_chars: int = Field(default=500, alias="RENDER_MIN_CHARS")

    # Per-host pacing shared by all workers
    rate_limit_interval_ms: int = Field(default=250, alias="RATE_LIMIT_INTERVAL_MS")
    rate_limit_burst: int = Field(default=12, alias="RATE_LIMIT_BURST")
    rate_limit_window_ms: int = Field(default=4000, alias="RATE_LIMIT_WINDOW_MS")
    rate_limit_cooldown_ms: int = Field(default=30000, alias="RATE_LIMIT_COOLDOWN_MS")

    @property
    def user_agents_list(self) -> list[str]:
        """User agents in rotation order."""
        return [ua.strip() for ua in self.user_agents.split(",") if ua.strip()]

    # ========================================================================
    # Discovery Configuration
    # ========================================================================
    discovery_budget_ms: int = Field(default=15000, alias="DISCOVERY_BUDGET_MS")
    worker_timeout_ms: int = Field(default=8000, alias="WORKER_TIMEOUT_MS")
    max_workers: int = Field(default=5, alias="MAX_WORKERS")
    discovery_strategies: str = Field(
        default="direct_probe,search_engine,site_crawl,sitemap,legal_hub",
        alias="DISCOVERY_STRATEGIES",
    )
    max_verifications: int = Field(default=8, alias="MAX_VERIFICATIONS")
    max_results: int = Field(default=3, alias="MAX_RESULTS")
    neural_weight: float = Field(default=30.0, alias="NEURAL_WEIGHT")
    preferred_language: str = Field(default="en", alias="PREFERRED_LANGUAGE")
    search_endpoint: str = Field(
        default="https://html.duckduckgo.com/html/", alias="SEARCH_ENDPOINT"
    )

    @property
    def discovery_strategies_list(self) -> list[str]:
        """Discovery strategies as a list."""
        return [s.strip() for s in self.discovery_strategies.split(",") if s.strip()]

    # ========================================================================
    # Scoring Model Configuration
    # ========================================================================
    model_id: str = Field(default="active_model", alias="MODEL_ID")
    learning_rate: float = Field(default=0.1, alias="LEARNING_RATE")
    model_input_nodes: int = Field(default=24, alias="MODEL_INPUT_NODES")
    model_hidden_nodes: int = Field(default=16, alias="MODEL_HIDDEN_NODES")
    model_output_nodes: int = Field(default=1, alias="MODEL_OUTPUT_NODES")
    train_on_outcomes: bool = Field(default=True, alias="TRAIN_ON_OUTCOMES")

    # ========================================================================
    # Classification Configuration
    # ========================================================================
    policy_confidence_threshold: float = Field(default=0.6, alias="POLICY_CONFIDENCE_THRESHOLD")
    high_confidence_threshold: float = Field(default=0.8, alias="HIGH_CONFIDENCE_THRESHOLD")
    ambiguous_lower: float = Field(default=0.4, alias="AMBIGUOUS_LOWER")
    ambiguous_upper: float = Field(default=0.8, alias="AMBIGUOUS_UPPER")

    # ========================================================================
    # LLM Tie-breaker Configuration (Optional)
    # ========================================================================
    enable_llm_tiebreaker: bool = Field(default=False, alias="ENABLE_LLM_TIEBREAKER")
    ollama_host: str = Field(default="http://localhost:11434", alias="OLLAMA_HOST")
    ollama_model: str = Field(default="mistral", alias="OLLAMA_MODEL")
    llm_timeout: int = Field(default=20, alias="LLM_TIMEOUT")

    # ========================================================================
    # Queue Configuration
    # ========================================================================
    queue_max_attempts: int = Field(default=3, alias="QUEUE_MAX_ATTEMPTS")
    policy_cache_ttl_hours: int = Field(default=24 * 7, alias="POLICY_CACHE_TTL_HOURS")

    class Config:
        """Pydantic settings config."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True

    @validator(
        "policy_confidence_threshold",
        "high_confidence_threshold",
        "ambiguous_lower",
        "ambiguous_upper",
    )
    def validate_unit_interval(cls, v):
        """Ensure thresholds are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("thresholds must be between 0 and 1")
        return v

    @validator("log_level")
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @validator("environment")
    def validate_environment(cls, v):
        """Ensure environment is valid."""
        valid_envs = {"development", "production", "testing"}
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of {valid_envs}")
        return v.lower()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Returns:
        Settings: Application configuration object
    """
    return Settings()


# Convenience access
settings = get_settings()
