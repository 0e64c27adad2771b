"""Environment configuration using pydantic-settings."""

from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"

# Load .env FIRST so it overrides any empty system env vars
load_dotenv(_ENV_FILE, override=True)


class Settings(BaseSettings):
    # OpenAI Realtime (required: the relay cannot start without it)
    openai_api_key: str = Field(..., description="OpenAI API key")
    openai_realtime_model: str = Field(
        "gpt-4o-realtime-preview", description="Realtime speech model ID"
    )
    openai_realtime_url: str = Field(
        "wss://api.openai.com/v1/realtime", description="Realtime WebSocket endpoint"
    )
    openai_voice: str = Field(
        "alloy", description="Output voice: alloy, ash, ballad, coral, echo, sage, shimmer, verse, marin, cedar"
    )
    temperature: float = Field(0.8, description="Sampling temperature for the model")
    initial_response_delay_ms: int = Field(
        500,
        description="Delay after session.updated before requesting the opening turn",
    )
    openai_calls_url: str = Field(
        "https://api.openai.com/v1/realtime/calls",
        description="Endpoint that accepts WebRTC SDP offers",
    )
    observer_response_delay_ms: int = Field(
        250, description="Delay after the observer attaches before the opening turn"
    )

    # Call defaults
    default_language: str = Field("english", description="Language when the caller gives none")
    default_persona: str = Field(
        "fallback_assistant", description="Persona type when the caller gives none"
    )

    # Twilio (optional: only needed for outbound calls and signature checks)
    twilio_account_sid: str | None = Field(None, description="Twilio Account SID")
    twilio_auth_token: str | None = Field(None, description="Twilio Auth Token")
    twilio_phone_number: str | None = Field(None, description="Twilio caller ID (E.164)")
    validate_twilio_signature: bool = Field(
        True, description="Reject webhooks without a valid X-Twilio-Signature"
    )

    # App settings
    base_url: str | None = Field(
        None, description="Public URL for Twilio webhooks (falls back to request host)"
    )
    recordings_dir: Path = Field(
        Path("recordings"), description="Directory for WAV call recordings"
    )
    log_level: str = Field("INFO", description="Logging level")

    model_config = {
        "env_file": str(_ENV_FILE),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
