"""
Configuration for the token server.
Loads from environment variables with sensible defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


TOKEN_MODES = ("ephemeral", "passthrough")


def _parse_int_env(key: str, default: int) -> int:
    value = os.environ.get(key)
    if not value:
        return default
    value = value.split("#")[0].strip()
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class TokenServerConfig:
    """Token server configuration."""

    # Long-lived provider key; None means credentials cannot be issued
    api_key: Optional[str] = None

    # "ephemeral": mint a client secret per session; "passthrough": hand out api_key
    token_mode: str = "ephemeral"
    token_ttl_seconds: int = 3600

    realtime_sessions_url: str = "https://api.openai.com/v1/realtime/sessions"
    realtime_model: str = "gpt-4o-realtime-preview"
    voice: str = "alloy"
    mint_timeout_seconds: int = 10

    # Overrides the packaged instructions directory
    instructions_dir: Optional[str] = None

    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "TokenServerConfig":
        token_mode = os.environ.get("TOKEN_MODE", "ephemeral").strip().lower()
        if token_mode not in TOKEN_MODES:
            raise ValueError(f"TOKEN_MODE must be one of {TOKEN_MODES}, got {token_mode!r}")
        return cls(
            api_key=os.environ.get("OPENAI_API_KEY") or None,
            token_mode=token_mode,
            token_ttl_seconds=_parse_int_env("TOKEN_TTL_SECONDS", default=3600),
            realtime_sessions_url=os.environ.get(
                "REALTIME_SESSIONS_URL", "https://api.openai.com/v1/realtime/sessions"
            ),
            realtime_model=os.environ.get("REALTIME_MODEL", "gpt-4o-realtime-preview"),
            voice=os.environ.get("REALTIME_VOICE", "alloy"),
            mint_timeout_seconds=_parse_int_env("MINT_TIMEOUT_SECONDS", default=10),
            instructions_dir=os.environ.get("INSTRUCTIONS_DIR") or None,
            host=os.environ.get("TOKEN_SERVER_HOST", "0.0.0.0"),
            port=_parse_int_env("TOKEN_SERVER_PORT", default=8000),
        )


def load_env_files() -> None:
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def get_config() -> TokenServerConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = TokenServerConfig.from_env()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests change the environment between cases)."""
    global _config
    _config = None


_config: Optional[TokenServerConfig] = None
