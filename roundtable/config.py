"""Configuration for the Expert Roundtable."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Chat-completion endpoint (OpenRouter or any OpenAI-compatible gateway)
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_API_URL = os.getenv("OPENROUTER_API_URL", "https://openrouter.ai/api/v1/chat/completions")
OPENROUTER_SITE_URL = os.getenv("OPENROUTER_SITE_URL", "http://localhost")
OPENROUTER_APP_TITLE = os.getenv("OPENROUTER_APP_TITLE", "Expert Roundtable")

# Model used for every roundtable step
ROUNDTABLE_MODEL = os.getenv("ROUNDTABLE_MODEL", "openai/gpt-4.1-nano")
# Cheap model for session titles
ROUNDTABLE_TITLE_MODEL = os.getenv("ROUNDTABLE_TITLE_MODEL", ROUNDTABLE_MODEL)

LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_RETRY_BASE_DELAY = float(os.getenv("LLM_RETRY_BASE_DELAY", "2.0"))

# Panel shape
PANEL_SIZE = 3
QUESTIONS_PER_EXPERT = 3
MAX_FOLLOWUPS = 3

# Run the three expert rounds concurrently (results are re-sorted into panel order)
EXPERT_FANOUT = _env_bool("EXPERT_FANOUT", False)

# Sandboxed interpreter worker
SANDBOX_TIMEOUT = float(os.getenv("SANDBOX_TIMEOUT", "30"))
SANDBOX_PYTHON = os.getenv("SANDBOX_PYTHON") or None

# Prompt preset: "general" or "clinical"
PROMPT_PRESET = os.getenv("PROMPT_PRESET", "general")

# Data directory for session storage
DATA_DIR = os.getenv("DATA_DIR", "data/sessions")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
