"""
VoiceBridge - Outbound Event Payloads

Builders for the payload of every outbound event. They return plain dicts;
framing is the codec's job.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .config import AudioInputConfig, AudioOutputConfig, InferenceConfig
from .models import ContentType, Role


def session_start(inference: InferenceConfig) -> Dict[str, Any]:
    return {
        "inferenceConfiguration": {
            "maxTokens": inference.max_tokens,
            "topP": inference.top_p,
            "temperature": inference.temperature,
        }
    }


def prompt_start(
    prompt_name: str,
    audio_output: AudioOutputConfig,
    tools: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "textOutputConfiguration": {"mediaType": "text/plain"},
        "audioOutputConfiguration": {
            "mediaType": audio_output.media_type,
            "sampleRateHertz": audio_output.sample_rate_hertz,
            "sampleSizeBits": audio_output.sample_size_bits,
            "channelCount": audio_output.channel_count,
            "voiceId": audio_output.voice_id,
            "encoding": audio_output.encoding,
            "audioType": audio_output.audio_type,
        },
        "toolUseOutputConfiguration": {"mediaType": "application/json"},
        "toolConfiguration": {"tools": list(tools or [])},
    }


def text_content_start(prompt_name: str, content_name: str, role: Role = Role.SYSTEM) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "contentName": content_name,
        "type": ContentType.TEXT.value,
        "interactive": True,
        "role": role.value,
        "textInputConfiguration": {"mediaType": "text/plain"},
    }


def text_input(prompt_name: str, content_name: str, content: str, role: Role = Role.SYSTEM) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "contentName": content_name,
        "content": content,
        "role": role.value,
    }


def audio_content_start(prompt_name: str, content_name: str, audio_input: AudioInputConfig) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "contentName": content_name,
        "type": ContentType.AUDIO.value,
        "interactive": True,
        "role": Role.USER.value,
        "audioInputConfiguration": {
            "mediaType": audio_input.media_type,
            "sampleRateHertz": audio_input.sample_rate_hertz,
            "sampleSizeBits": audio_input.sample_size_bits,
            "channelCount": audio_input.channel_count,
            "audioType": audio_input.audio_type,
            "encoding": audio_input.encoding,
        },
    }


def audio_input(prompt_name: str, content_name: str, content_b64: str) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "contentName": content_name,
        "content": content_b64,
        "role": Role.USER.value,
    }


def tool_content_start(prompt_name: str, content_name: str, tool_use_id: str) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "contentName": content_name,
        "type": ContentType.TOOL.value,
        "interactive": False,
        "role": Role.TOOL.value,
        "toolResultInputConfiguration": {
            "toolUseId": tool_use_id,
            "type": ContentType.TEXT.value,
            "textInputConfiguration": {"mediaType": "text/plain"},
        },
    }


def tool_result(prompt_name: str, content_name: str, content: str) -> Dict[str, Any]:
    return {
        "promptName": prompt_name,
        "contentName": content_name,
        "content": content,
    }


def content_end(prompt_name: str, content_name: str) -> Dict[str, Any]:
    return {"promptName": prompt_name, "contentName": content_name}


def prompt_end(prompt_name: str) -> Dict[str, Any]:
    return {"promptName": prompt_name}


def session_end() -> Dict[str, Any]:
    return {}
