import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def is_enabled(flag: str, default: bool = False) -> bool:
    return os.getenv(flag, str(default)).lower() == "true"


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str]
    supabase_key: Optional[str]
    state_path: Path
    verify_timeout: float = 15.0
    http_timeout: float = 30.0
    realtime_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        # The child portal talks to the store with the public anon key; the
        # service role key is accepted for local tooling only.
        key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        return cls(
            supabase_url=(os.getenv("SUPABASE_URL") or "").strip().rstrip("/") or None,
            supabase_key=(key or "").strip() or None,
            state_path=Path(os.getenv("KIDPOINTS_STATE_PATH", "~/.kidpoints/state.json")).expanduser(),
            verify_timeout=_float_env("KIDPOINTS_VERIFY_TIMEOUT", 15.0),
            http_timeout=_float_env("KIDPOINTS_HTTP_TIMEOUT", 30.0),
            realtime_enabled=is_enabled("KIDPOINTS_REALTIME_ENABLED", True),
        )

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


settings = Settings.from_env()
