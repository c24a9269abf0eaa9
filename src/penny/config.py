"""
Configuration for Penny - agent thresholds, sampling rates and environment settings
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Gate thresholds. Instances copy this dict and accept overrides.
AGENT_CONFIG = {
    "allocation_drift_threshold": 10,     # percentage points
    "min_intervention_gap_hours": 12,
    "max_weekly_interventions": 5,
    "contribution_reminder_weekday": 4,   # Monday=0, so Friday
    "goal_check_interval_days": 7,
    "low_response_rate": 0.2,
    "max_message_length": 100,
    "tick_interval_seconds": 3600,
}

# Responses are learned over a short window while the log keeps a longer tail.
RESPONSE_WINDOW = 20
INTERVENTION_LOG_CAP = 100

EVALUATION_SAMPLE_RATE = 0.3
EVALUATION_HISTORY_CAP = 500
EXPERIMENT_RESULTS_CAP = 1000
TELEMETRY_SCORES_CAP = 1000
TELEMETRY_FEEDBACK_CAP = 500

THOUGHT_SUMMARY_MAX_CHARS = 1000
REVIEW_INTERVAL_DAYS = 7

# Shorter histories report a "stable" trend.
MIN_TREND_SAMPLES = 10

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_BASE_URL = "https://ai-gateway.andrew.cmu.edu/"


class Settings(BaseModel):
    """Runtime settings resolved from the environment."""
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    llm_timeout: float = Field(default=30.0, gt=0)
    db_path: Optional[str] = None
    log_dir: str = "logs"
    opik_api_key: Optional[str] = None
    opik_url: str = "https://www.comet.com/opik/api"
    opik_workspace: Optional[str] = None
    opik_project: str = "penny"


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Load settings from a .env file and the process environment.

    Args:
        env_file: Explicit .env path; defaults to the project root

    Returns:
        Settings instance
    """
    if env_file is None:
        env_file = str(Path(__file__).resolve().parent.parent.parent / ".env")
    load_dotenv(dotenv_path=env_file)

    return Settings(
        api_key=os.getenv("OPENAI_API_KEY"),
        model=os.getenv("PENNY_LLM_MODEL", DEFAULT_MODEL),
        base_url=os.getenv("PENNY_LLM_BASE_URL", DEFAULT_BASE_URL),
        llm_timeout=float(os.getenv("PENNY_LLM_TIMEOUT", "30")),
        db_path=os.getenv("PENNY_DB_PATH"),
        log_dir=os.getenv("PENNY_LOG_DIR", "logs"),
        opik_api_key=os.getenv("OPIK_API_KEY"),
        opik_url=os.getenv("OPIK_URL", "https://www.comet.com/opik/api"),
        opik_workspace=os.getenv("OPIK_WORKSPACE"),
        opik_project=os.getenv("OPIK_PROJECT", "penny"),
    )
