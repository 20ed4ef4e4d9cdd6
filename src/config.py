"""
Task Planner — Configuration
============================
Version 1.0 — November 2025

Configuration classes for the planner. Values come from the environment
(optionally a .env file) via PlannerConfig.from_env().
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


@dataclass
class ModelConfig:
    """LLM model configuration."""
    provider: str  # "openrouter" or "google"
    model_name: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None


@dataclass
class BreakdownConfig:
    """Options for splitting a high-effort task into subtasks."""
    min_subtasks: int = 2
    max_subtasks: int = 5
    preferred_effort: str = "medium"  # "low" or "medium"
    max_attempts: int = 3
    temperature: float = 0.2


@dataclass
class PlannerConfig:
    """Main planner configuration."""

    db_path: str = "./data/taskmanager.db"

    # Credentials (OpenRouter wins when both are present)
    openrouter_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None

    openrouter_model: str = "google/gemini-2.5-flash-preview:thinking"
    fallback_openrouter_model: str = "google/gemini-2.0-flash-001"
    gemini_model: str = "gemini-2.5-flash-preview-04-17"
    fallback_gemini_model: str = "gemini-2.0-flash-001"

    # Temperatures per planning call
    planning_temperature: float = 0.5
    resume_temperature: float = 0.3
    effort_temperature: float = 0.1
    effort_max_tokens: int = 100

    breakdown: BreakdownConfig = field(default_factory=BreakdownConfig)

    # Server
    ws_host: str = "localhost"
    ws_port: int = 4999
    frontend_url: str = "*"

    log_level: str = "INFO"
    llm_logs_path: Optional[str] = None  # Per-feature LLM request logs (disabled when unset)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "PlannerConfig":
        """Build a config from environment variables, loading .env first."""
        load_dotenv(env_file)

        defaults = cls()
        return cls(
            db_path=os.getenv("SQLITE_DB_PATH", defaults.db_path),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or None,
            openrouter_model=os.getenv("OPENROUTER_MODEL", defaults.openrouter_model),
            fallback_openrouter_model=os.getenv("FALLBACK_OPENROUTER_MODEL", defaults.fallback_openrouter_model),
            gemini_model=os.getenv("GEMINI_MODEL", defaults.gemini_model),
            fallback_gemini_model=os.getenv("FALLBACK_GEMINI_MODEL", defaults.fallback_gemini_model),
            ws_host=os.getenv("WS_HOST", defaults.ws_host),
            ws_port=int(os.getenv("WS_PORT", str(defaults.ws_port))),
            frontend_url=os.getenv("FRONTEND_URL", defaults.frontend_url),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            llm_logs_path=os.getenv("LLM_LOGS_PATH") or None,
        )
