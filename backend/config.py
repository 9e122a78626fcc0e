"""Settings loaded from environment variables (+ optional .env)."""
import os

from dotenv import load_dotenv

load_dotenv()

ENV_PREFIX = "CHECKBELL"

DEFAULT_DEPARTMENTS = ["Leitstand", "Technik", "Qualität", "Logistik"]


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


DATA_DIR = os.getenv(_k("DATA_DIR"), "data")
DEPARTMENTS = _env_list(_k("DEPARTMENTS"), DEFAULT_DEPARTMENTS)

SCHEDULER_ENABLED = _env_bool(_k("SCHEDULER_ENABLED"), True)
SCHEDULER_INTERVAL_SECONDS = max(1, _env_int(_k("SCHEDULER_INTERVAL"), 60))

ALLOW_SEED = _env_bool(_k("ALLOW_SEED"), False)

LOG_LEVEL = os.getenv(_k("LOG_LEVEL"), "INFO").upper()
LOG_DIR = os.getenv(_k("LOG_DIR")) or None
