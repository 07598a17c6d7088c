"""
Process-wide configuration for the rigforge server.

Built once at startup from environment variables and passed by reference
into the Meshy client, the orchestrator, the asset proxy and the tools.

Environment Variables:
    MESHY_API_KEY: Meshy API key (required for generation, not for the proxy)
    MESHY_BASE_URL: Meshy API base URL
    MESHY_AI_MODEL: Model used for mesh generation (default: meshy-5)
    RIGFORGE_*: Polling, rigging, proxy and server settings (see ForgeConfig)
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ForgeConfig:
    """Immutable server settings."""
    meshy_api_key: Optional[str] = None
    meshy_base_url: str = "https://api.meshy.ai"
    ai_model: str = "meshy-5"

    # Polling
    poll_interval: float = 5.0
    poll_initial_delay: float = 2.0
    poll_max_attempts: int = 120

    # Stage parameters
    rig_height_meters: float = 1.7
    enable_pbr: bool = False
    gallery_limit: int = 20

    # Session retention after a run ends
    session_ttl_seconds: float = 3600.0
    max_sessions: int = 200

    # Asset proxy
    proxy_user_agent: str = "curl/8.0.0"
    proxy_accept: str = "*/*"
    proxy_timeout: float = 60.0
    proxied_hosts: Tuple[str, ...] = field(default_factory=lambda: ("assets.meshy.ai",))

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def has_api_key(self) -> bool:
        return bool(self.meshy_api_key)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ForgeConfig":
        """Read settings from the environment (or the given mapping)."""
        env = os.environ if env is None else env

        hosts_raw = env.get("RIGFORGE_PROXIED_HOSTS", "assets.meshy.ai")
        proxied_hosts = tuple(h.strip().lower() for h in hosts_raw.split(",") if h.strip())

        return cls(
            meshy_api_key=env.get("MESHY_API_KEY") or env.get("VITE_MESHY_API_KEY") or None,
            meshy_base_url=env.get("MESHY_BASE_URL", "https://api.meshy.ai").rstrip("/"),
            ai_model=env.get("MESHY_AI_MODEL", "meshy-5"),
            poll_interval=_env_float(env, "RIGFORGE_POLL_INTERVAL", 5.0),
            poll_initial_delay=_env_float(env, "RIGFORGE_POLL_INITIAL_DELAY", 2.0),
            poll_max_attempts=_env_int(env, "RIGFORGE_POLL_MAX_ATTEMPTS", 120),
            rig_height_meters=_env_float(env, "RIGFORGE_RIG_HEIGHT_METERS", 1.7),
            enable_pbr=_env_bool(env, "RIGFORGE_ENABLE_PBR", False),
            gallery_limit=_env_int(env, "RIGFORGE_GALLERY_LIMIT", 20),
            session_ttl_seconds=_env_float(env, "RIGFORGE_SESSION_TTL_SECONDS", 3600.0),
            max_sessions=_env_int(env, "RIGFORGE_MAX_SESSIONS", 200),
            proxy_user_agent=env.get("RIGFORGE_PROXY_USER_AGENT", "curl/8.0.0"),
            proxy_accept=env.get("RIGFORGE_PROXY_ACCEPT", "*/*"),
            proxy_timeout=_env_float(env, "RIGFORGE_PROXY_TIMEOUT", 60.0),
            proxied_hosts=proxied_hosts,
            host=env.get("RIGFORGE_HOST", "0.0.0.0"),
            port=_env_int(env, "RIGFORGE_PORT", 3000),
            log_level=env.get("RIGFORGE_LOG_LEVEL", "INFO").upper(),
        )
