"""
Voice session configuration.

Loads endpoint, rendezvous, protocol and device settings from environment
variables (optionally seeded from .env_local / .env.local).
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


DEFAULT_ICE_SERVERS: Tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


def load_env_files() -> None:
    """Best-effort local dev convenience; never overrides exported variables."""
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """Raw env value with trailing `# comment` and whitespace removed."""
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    - "300  # comment" -> 300
    - "abc" -> default
    """
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_list_env(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Comma separated list; empty items dropped."""
    value = _clean_env(key)
    if value is None:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


@dataclass
class VoiceSessionConfig:
    """Client-side realtime session configuration."""

    # Credential authority
    token_endpoint_url: str = "http://127.0.0.1:8000/api/rtc-token"
    credential_timeout_seconds: int = 10

    # Offer/answer exchange
    signaling_mode: str = "http"  # "http" | "websocket"
    realtime_url: str = "https://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-4o-realtime-preview"
    signaling_ws_url: Optional[str] = None
    signaling_timeout_seconds: int = 15

    # Rendezvous servers (STUN only; no relay servers)
    ice_servers: Tuple[str, ...] = DEFAULT_ICE_SERVERS
    channel_label: str = "oai-events"

    # Session update pushed on channel open
    voice: str = "alloy"
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    vad_silence_duration_ms: int = 500

    # Bound on the connecting state
    connect_timeout_seconds: int = 15

    # Transcript deduplication window
    dedup_window_ms: int = 2000

    # Local devices (ffmpeg input/output names)
    input_device: str = "default"
    input_format: Optional[str] = "pulse"
    output_device: Optional[str] = None
    output_format: Optional[str] = None

    # Capture constraints for the input device
    input_sample_rate: int = 24000
    input_channels: int = 1
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    # Out-of-band text chat endpoint
    text_chat_url: Optional[str] = None
    text_chat_timeout_seconds: int = 30

    @classmethod
    def from_env(cls) -> "VoiceSessionConfig":
        """Load configuration from environment variables."""
        return cls(
            token_endpoint_url=os.environ.get("RTC_TOKEN_URL", "http://127.0.0.1:8000/api/rtc-token"),
            credential_timeout_seconds=_parse_int_env("CREDENTIAL_TIMEOUT_SECONDS", default=10),
            signaling_mode=os.environ.get("SIGNALING_MODE", "http").lower(),
            realtime_url=os.environ.get("REALTIME_URL", "https://api.openai.com/v1/realtime"),
            realtime_model=os.environ.get("REALTIME_MODEL", "gpt-4o-realtime-preview"),
            signaling_ws_url=os.environ.get("SIGNALING_WS_URL") or None,
            signaling_timeout_seconds=_parse_int_env("SIGNALING_TIMEOUT_SECONDS", default=15),
            ice_servers=_parse_list_env("ICE_SERVERS", DEFAULT_ICE_SERVERS),
            channel_label=os.environ.get("CONTROL_CHANNEL_LABEL", "oai-events"),
            voice=os.environ.get("REALTIME_VOICE", "alloy"),
            transcription_model=os.environ.get("TRANSCRIPTION_MODEL", "whisper-1"),
            vad_threshold=_parse_float_env("VAD_THRESHOLD", default=0.5),
            vad_silence_duration_ms=_parse_int_env("VAD_SILENCE_DURATION_MS", default=500),
            connect_timeout_seconds=_parse_int_env("CONNECT_TIMEOUT_SECONDS", default=15),
            dedup_window_ms=_parse_int_env("TRANSCRIPT_DEDUP_WINDOW_MS", default=2000),
            input_device=os.environ.get("AUDIO_INPUT_DEVICE", "default"),
            input_format=os.environ.get("AUDIO_INPUT_FORMAT", "pulse") or None,
            output_device=os.environ.get("AUDIO_OUTPUT_DEVICE") or None,
            output_format=os.environ.get("AUDIO_OUTPUT_FORMAT") or None,
            input_sample_rate=_parse_int_env("AUDIO_INPUT_SAMPLE_RATE", default=24000),
            input_channels=_parse_int_env("AUDIO_INPUT_CHANNELS", default=1),
            echo_cancellation=_parse_bool_env("AUDIO_ECHO_CANCELLATION", default=True),
            noise_suppression=_parse_bool_env("AUDIO_NOISE_SUPPRESSION", default=True),
            auto_gain_control=_parse_bool_env("AUDIO_AUTO_GAIN_CONTROL", default=True),
            text_chat_url=os.environ.get("TEXT_CHAT_URL") or None,
            text_chat_timeout_seconds=_parse_int_env("TEXT_CHAT_TIMEOUT_SECONDS", default=30),
        )


def get_config() -> VoiceSessionConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = VoiceSessionConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[VoiceSessionConfig] = None
