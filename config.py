# config.py — Runtime settings for HealthAssist, read from the environment / .env
import os
from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


class Settings:
    OPENAI_API_KEY  = os.getenv("OPENAI_API_KEY")
    MODEL_NAME      = os.getenv("MODEL_NAME", "gpt-4o-mini")

    # "openai" talks to the provider, "mock" runs fully offline
    LLM_PROVIDER    = os.getenv("LLM_PROVIDER", "openai").strip().lower()

    LLM_MAX_RETRIES = _int_env("LLM_MAX_RETRIES", 2)
    LLM_RETRY_DELAY = _float_env("LLM_RETRY_DELAY", 1.0)
    MAX_TOOL_CALLS  = _int_env("MAX_TOOL_CALLS", 3)

    LOG_LEVEL       = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
