# =============================================================================
# casefile_core/config/settings.py
# Runtime configuration for the CaseFile field client
# =============================================================================
"""
Settings are resolved from two layers, the second only filling gaps:

1. Environment variables (a local ``.env`` is loaded first)
2. Streamlit secrets, ``[casefile]`` and ``[supabase]`` tables

Expected secrets.toml format:
    [casefile]
    gateway_provider = "http"
    api_base_url = "https://casefile.example.org/api"
    api_token = "..."

    [supabase]
    url = "https://your-project.supabase.co"
    key = "your-anon-key"
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from casefile_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent.parent / "local_data"

GATEWAY_PROVIDERS = ("supabase", "http")


def _read_secrets() -> Dict[str, Dict[str, Any]]:
    """Read the Streamlit secrets tables this app cares about, if any."""
    try:
        import streamlit as st
        secrets = {}
        for table in ("casefile", "supabase"):
            if table in st.secrets:
                secrets[table] = dict(st.secrets[table])
        return secrets
    except Exception as e:
        # No secrets.toml outside of a configured Streamlit deployment
        logger.debug(f"Streamlit secrets not available: {e}")
        return {}


@dataclass
class Settings:
    """Configuration shared by the cache, store, gateway and dispatcher."""
    db_path: Path = DEFAULT_DATA_DIR / "casefile.db"
    cache_dir: Path = DEFAULT_DATA_DIR / "cache"
    gateway_provider: str = "supabase"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    api_base_url: Optional[str] = None
    api_token: Optional[str] = None
    request_timeout: int = 30
    sync_batch_size: int = 50
    sync_interval: int = 30          # Seconds between background sync attempts
    max_fetch_workers: int = 4       # Concurrent form definition downloads
    log_level: str = "INFO"

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> Settings:
        """Build settings from the environment and Streamlit secrets."""
        load_dotenv(env_file)
        secrets = _read_secrets()
        app_secrets = secrets.get("casefile", {})
        supabase_secrets = secrets.get("supabase", {})

        def pick(env_key: str, secret_value: Any, default: Any = None) -> Any:
            value = os.getenv(env_key)
            if value not in (None, ""):
                return value
            if secret_value not in (None, ""):
                return secret_value
            return default

        settings = cls(
            db_path=Path(pick("CASEFILE_DB_PATH", app_secrets.get("db_path"), cls.db_path)),
            cache_dir=Path(pick("CASEFILE_CACHE_DIR", app_secrets.get("cache_dir"), cls.cache_dir)),
            gateway_provider=pick("CASEFILE_GATEWAY", app_secrets.get("gateway_provider"), cls.gateway_provider),
            supabase_url=pick("SUPABASE_URL", supabase_secrets.get("url")),
            supabase_key=pick("SUPABASE_KEY", supabase_secrets.get("key")),
            api_base_url=pick("CASEFILE_API_URL", app_secrets.get("api_base_url")),
            api_token=pick("CASEFILE_API_TOKEN", app_secrets.get("api_token")),
            request_timeout=int(pick("CASEFILE_REQUEST_TIMEOUT", app_secrets.get("request_timeout"), cls.request_timeout)),
            sync_batch_size=int(pick("CASEFILE_SYNC_BATCH_SIZE", app_secrets.get("sync_batch_size"), cls.sync_batch_size)),
            sync_interval=int(pick("CASEFILE_SYNC_INTERVAL", app_secrets.get("sync_interval"), cls.sync_interval)),
            max_fetch_workers=int(pick("CASEFILE_FETCH_WORKERS", app_secrets.get("max_fetch_workers"), cls.max_fetch_workers)),
            log_level=pick("CASEFILE_LOG_LEVEL", app_secrets.get("log_level"), cls.log_level),
        )
        return settings

    def validate(self) -> None:
        """Raise ConfigurationError if the chosen gateway cannot be built."""
        if self.gateway_provider not in GATEWAY_PROVIDERS:
            raise ConfigurationError(
                f"Unknown gateway provider '{self.gateway_provider}'",
                config_key="gateway_provider",
                details={"allowed": list(GATEWAY_PROVIDERS)},
            )
        if self.gateway_provider == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ConfigurationError(
                "Supabase gateway requires SUPABASE_URL and SUPABASE_KEY",
                config_key="supabase",
            )
        if self.gateway_provider == "http" and not self.api_base_url:
            raise ConfigurationError(
                "HTTP gateway requires CASEFILE_API_URL",
                config_key="api_base_url",
            )
        if self.sync_batch_size < 1:
            raise ConfigurationError(
                "sync_batch_size must be positive",
                config_key="sync_batch_size",
            )

    @property
    def log_level_value(self) -> int:
        return getattr(logging, str(self.log_level).upper(), logging.INFO)

    @property
    def log_dir(self) -> Path:
        """Daily log files live next to the local database."""
        return Path(self.db_path).parent / "logs"

    @property
    def remote_url(self) -> Optional[str]:
        """Base URL of whichever gateway is configured."""
        if self.gateway_provider == "http":
            return self.api_base_url
        return self.supabase_url
