import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def int_setting(config, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "gare.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    DEADLINE_JOB_ENABLED = _bool_env("DEADLINE_JOB_ENABLED", True)
    DEADLINE_JOB_NAME = os.environ.get("DEADLINE_JOB_NAME", "deadline_reevaluation")
    DEADLINE_JOB_CRON = os.environ.get("DEADLINE_JOB_CRON", "0 6 * * *")
    DEADLINE_JOB_RETRY_ATTEMPTS = _int_env("DEADLINE_JOB_RETRY_ATTEMPTS", 3)
    DEADLINE_JOB_RETRY_BACKOFF_SECONDS = _int_env("DEADLINE_JOB_RETRY_BACKOFF_SECONDS", 5)
    DEADLINE_JOB_RETRY_MAX_BACKOFF_SECONDS = _int_env("DEADLINE_JOB_RETRY_MAX_BACKOFF_SECONDS", 300)
    DEADLINE_JOB_LOCK_TTL_SECONDS = _int_env("DEADLINE_JOB_LOCK_TTL_SECONDS", 900)
    DEADLINE_JOB_BATCH_LIMIT = _int_env("DEADLINE_JOB_BATCH_LIMIT", 500)

    QUOTE_MIN_AUTO_RENEWAL_DAYS = _int_env("QUOTE_MIN_AUTO_RENEWAL_DAYS", 1)
    CLARIFICATION_MIN_TEXT_LENGTH = _int_env("CLARIFICATION_MIN_TEXT_LENGTH", 10)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL non definita per l'ambiente di produzione.")
