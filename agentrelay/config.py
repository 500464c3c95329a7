import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv(override=False)


def _as_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _as_float(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _as_csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    openai_api_key: str | None
    openai_api_base_url: str
    default_assistant_id: str | None
    engine_timeout_seconds: int
    run_max_attempts: int
    run_poll_interval_seconds: float
    run_tool_interval_seconds: float
    run_max_parallel_invocations: int
    supabase_url: str | None
    supabase_service_role_key: str | None
    conversations_table: str
    messages_table: str
    agents_table: str
    connected_accounts_table: str
    persistence_timeout_seconds: int
    google_search_api_key: str | None
    google_search_engine_id: str | None
    web_search_max_results: int
    web_search_timeout_seconds: int
    email_allowed_recipient_domains: tuple[str, ...]
    calendar_default_time_zone: str
    log_level: str


def load_settings() -> Settings:
    return Settings(
        openai_api_key=(os.getenv("OPENAI_API_KEY") or None),
        openai_api_base_url=os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1"),
        default_assistant_id=(os.getenv("AGENT_DEFAULT_ASSISTANT_ID") or None),
        engine_timeout_seconds=max(1, _as_int(os.getenv("ENGINE_TIMEOUT_SECONDS"), 30)),
        run_max_attempts=max(1, min(200, _as_int(os.getenv("RUN_MAX_ATTEMPTS"), 40))),
        run_poll_interval_seconds=max(
            0.0, _as_float(os.getenv("RUN_POLL_INTERVAL_SECONDS"), 0.9)
        ),
        run_tool_interval_seconds=max(
            0.0, _as_float(os.getenv("RUN_TOOL_INTERVAL_SECONDS"), 0.6)
        ),
        run_max_parallel_invocations=max(
            1, min(16, _as_int(os.getenv("RUN_MAX_PARALLEL_INVOCATIONS"), 4))
        ),
        supabase_url=(os.getenv("SUPABASE_URL") or None),
        supabase_service_role_key=(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or None),
        conversations_table=os.getenv("CONVERSATIONS_TABLE", "conversations"),
        messages_table=os.getenv("MESSAGES_TABLE", "messages"),
        agents_table=os.getenv("AGENTS_TABLE", "agents"),
        connected_accounts_table=os.getenv(
            "CONNECTED_ACCOUNTS_TABLE", "user_google_calendars"
        ),
        persistence_timeout_seconds=max(
            1, _as_int(os.getenv("PERSISTENCE_TIMEOUT_SECONDS"), 8)
        ),
        google_search_api_key=(os.getenv("GOOGLE_SEARCH_API_KEY") or None),
        google_search_engine_id=(os.getenv("GOOGLE_SEARCH_ENGINE_ID") or None),
        web_search_max_results=max(
            1, min(10, _as_int(os.getenv("WEB_SEARCH_MAX_RESULTS"), 3))
        ),
        web_search_timeout_seconds=max(
            1, _as_int(os.getenv("WEB_SEARCH_TIMEOUT_SECONDS"), 10)
        ),
        email_allowed_recipient_domains=_as_csv(
            os.getenv("EMAIL_ALLOWED_RECIPIENT_DOMAINS")
        ),
        calendar_default_time_zone=os.getenv(
            "CALENDAR_DEFAULT_TIME_ZONE", "Europe/Istanbul"
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


settings = load_settings()
