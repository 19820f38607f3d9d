"""
VoiceBridge - Configuration

Centralised settings from environment variables.
All tuneable constants live here: pauses, poll intervals, inference
parameters and audio formats. Everything can still be overridden per client.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

# Transports speak TLS to the model endpoint
os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("VOICEBRIDGE_HOST", "0.0.0.0")
    port: int = int(os.getenv("VOICEBRIDGE_PORT", "8080"))
    # "package.module:factory" returning a StreamTransport
    transport: str = os.getenv("VOICEBRIDGE_TRANSPORT", "")
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    )


# ---------------------------------------------------------------------------
# Duplex stream timing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamConfig:
    """Model endpoint and every wait used by the session engine (seconds)."""
    model_id: str = os.getenv("NOVA_SONIC_MODEL_ID", "amazon.nova-sonic-v1:0")
    region: str = os.getenv("AWS_REGION", "us-east-1")
    # Bound on opening the duplex stream
    connect_timeout: float = _env_float("VOICEBRIDGE_CONNECT_TIMEOUT", 30.0)
    # Dispatch loop wakes at least this often to re-check liveness
    poll_interval: float = _env_float("VOICEBRIDGE_POLL_INTERVAL", 0.1)
    # Headroom for the remote side after each teardown frame
    content_end_pause: float = _env_float("VOICEBRIDGE_CONTENT_END_PAUSE", 0.5)
    prompt_end_pause: float = _env_float("VOICEBRIDGE_PROMPT_END_PAUSE", 0.3)
    session_end_pause: float = _env_float("VOICEBRIDGE_SESSION_END_PAUSE", 0.3)
    # Max wait for the outbound queue to empty during graceful close
    drain_timeout: float = _env_float("VOICEBRIDGE_DRAIN_TIMEOUT", 2.0)
    # Hard timeout for a single tool callout
    tool_timeout: float = _env_float("VOICEBRIDGE_TOOL_TIMEOUT", 10.0)


# ---------------------------------------------------------------------------
# Model inference
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InferenceConfig:
    max_tokens: int = int(os.getenv("VOICEBRIDGE_MAX_TOKENS", "1024"))
    top_p: float = _env_float("VOICEBRIDGE_TOP_P", 0.9)
    temperature: float = _env_float("VOICEBRIDGE_TEMPERATURE", 0.7)


# ---------------------------------------------------------------------------
# Audio formats
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AudioInputConfig:
    """Microphone side. Browser capture is resampled to this before sending."""
    media_type: str = "audio/lpcm"
    sample_rate_hertz: int = 16000
    sample_size_bits: int = 16
    channel_count: int = 1
    audio_type: str = "SPEECH"
    encoding: str = "base64"


@dataclass(frozen=True)
class AudioOutputConfig:
    media_type: str = "audio/lpcm"
    sample_rate_hertz: int = int(os.getenv("VOICEBRIDGE_OUTPUT_SAMPLE_RATE", "24000"))
    sample_size_bits: int = 16
    channel_count: int = 1
    voice_id: str = os.getenv("VOICEBRIDGE_VOICE_ID", "matthew")
    encoding: str = "base64"
    audio_type: str = "SPEECH"


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PromptConfig:
    system_prompt: str = os.getenv(
        "VOICEBRIDGE_SYSTEM_PROMPT",
        "You are a friendly assistant. The user and you will engage in a spoken "
        "dialog exchanging the transcripts of a natural real-time conversation. "
        "Keep your responses short, generally two or three sentences for chatty "
        "scenarios.",
    )
    # Timezone reported by the date/time tool
    tool_timezone: str = os.getenv("VOICEBRIDGE_TOOL_TIMEZONE", "America/Los_Angeles")


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
stream_cfg = StreamConfig()
inference_cfg = InferenceConfig()
audio_input_cfg = AudioInputConfig()
audio_output_cfg = AudioOutputConfig()
prompt_cfg = PromptConfig()
