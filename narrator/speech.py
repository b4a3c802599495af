"""
ElevenLabs text-to-speech client.
Converts summary text to MP3 bytes.
"""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional

import requests
from dotenv import dotenv_values

from narrator.common import SECRETS_FILE

log = logging.getLogger(__name__)

TTS_ENDPOINT = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
OUTPUT_FORMAT = "mp3_44100_128"
MODEL_ID = "eleven_multilingual_v2"
REQUEST_TIMEOUT = 30  # seconds, for the whole call
CHUNK_SIZE = 64 * 1024
API_KEY_NAMES = ("ELEVENLABS_API_KEY", "ELEVEN_LABS_API_KEY")


class SpeechError(RuntimeError):
    """The speech API call failed (HTTP error, timeout, empty audio)."""


def load_api_key(secrets_file: Optional[Path] = None) -> Optional[str]:
    """API key from the secrets file, falling back to the process environment."""
    secrets_file = secrets_file or SECRETS_FILE
    secrets = dotenv_values(secrets_file) if secrets_file.exists() else {}
    for name in API_KEY_NAMES:
        value = secrets.get(name) or os.environ.get(name)
        if value and value.strip():
            return value.strip()
    return None


def synthesize(text: str, voice_id: str, api_key: str, timeout: float = REQUEST_TIMEOUT) -> bytes:
    """Synthesize text to MP3 bytes. Blocking; raises SpeechError on any failure.

    `timeout` bounds the whole call. requests only applies it per socket
    operation, so the body is streamed and the deadline checked per chunk.
    """
    deadline = time.monotonic() + timeout
    payload = {
        "text": text,
        "model_id": MODEL_ID,
        "voice_settings": {
            "stability": 0.5,
            "similarity_boost": 0.75,
        },
    }

    try:
        response = requests.post(
            TTS_ENDPOINT.format(voice_id=voice_id),
            params={"output_format": OUTPUT_FORMAT},
            headers={
                "xi-api-key": api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
            json=payload,
            timeout=timeout,
            stream=True,
        )
    except requests.Timeout as e:
        raise SpeechError(f"TTS API timed out after {timeout}s") from e
    except requests.RequestException as e:
        raise SpeechError(f"TTS API request failed: {e}") from e

    with response:
        if response.status_code != 200:
            raise SpeechError(f"TTS API error: {response.status_code} - {response.text[:200]}")

        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise SpeechError(f"TTS API timed out after {timeout}s")
                chunks.append(chunk)
        except requests.RequestException as e:
            raise SpeechError(f"TTS API download failed: {e}") from e

    audio = b"".join(chunks)
    if not audio:
        raise SpeechError("TTS API returned no audio data")

    log.debug(f"Synthesized {len(text)} chars into {len(audio)} bytes")
    return audio
