import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Process-level configuration loaded from environment variables."""

    agent_spec: str
    provider_name: str
    auth_token: Optional[str]
    storage: str = "memory"
    db_path: str = "./data/sessions.db"
    session_busy_policy: str = "wait"
    session_wait_timeout: Optional[float] = None
    cors_origins: str = "*"
    log_level: str = "INFO"

    service_name: str = "agent-runtime"
    http_host: str = "0.0.0.0"
    http_port: int = 4280

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """Defaults only. `get_settings` overlays the live environment on every call."""
    return Settings(
        agent_spec="support",
        provider_name="stub",
        auth_token=None,
    )


def _float_or_none(raw: Optional[str]) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    return float(raw)


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """
    base = _base_settings()
    storage = (os.getenv("STORAGE") or base.storage).lower()
    busy_policy = (os.getenv("SESSION_BUSY_POLICY") or base.session_busy_policy).lower()

    return Settings(
        agent_spec=os.getenv("AGENT_SPEC") or base.agent_spec,
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        auth_token=os.getenv("AUTH_TOKEN") or None,
        storage=storage,
        db_path=os.getenv("DB_PATH") or base.db_path,
        session_busy_policy=busy_policy,
        session_wait_timeout=_float_or_none(os.getenv("SESSION_WAIT_TIMEOUT")),
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
        http_host=os.getenv("HOST") or base.http_host,
        http_port=int(os.getenv("PORT") or base.http_port),
    )
