import logging
from dataclasses import dataclass
from typing import Optional

import httpx


logger = logging.getLogger("uvicorn.error")

VOICE_SETTINGS = {
    "stability": 0.35,
    "similarity_boost": 0.85,
    "style": 0.4,
    "use_speaker_boost": True,
}


class SpeechError(RuntimeError):
    """Text-to-speech synthesis failed."""


@dataclass
class SynthesizedAudio:
    data: bytes
    content_type: str = "audio/mpeg"


class ElevenLabsClient:
    def __init__(
        self,
        api_key: Optional[str],
        default_voice_id: str = "",
        model_id: str = "eleven_monolingual_v2",
        base_url: str = "https://api.elevenlabs.io/v1",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.default_voice_id = default_voice_id
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> SynthesizedAudio:
        if not self.enabled:
            raise SpeechError("ELEVENLABS_API_KEY is not configured")
        if not text or not text.strip():
            raise SpeechError("Invalid TTS payload")
        voice = (voice_id or "").strip() or self.default_voice_id
        if not voice:
            raise SpeechError("No ElevenLabs voice configured")
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": dict(VOICE_SETTINGS),
        }
        headers = {
            "xi-api-key": self.api_key or "",
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        try:
            resp = await self.client.post(f"{self.base_url}/text-to-speech/{voice}", json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise SpeechError(f"TTS request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text or exc.response.reason_phrase
            logger.warning("TTS provider error %s: %s", exc.response.status_code, detail)
            raise SpeechError(f"TTS provider error ({exc.response.status_code}): {detail}") from exc
        except httpx.RequestError as exc:
            raise SpeechError(str(exc) or "TTS request failed") from exc
        return SynthesizedAudio(
            data=resp.content,
            content_type=resp.headers.get("content-type") or "audio/mpeg",
        )

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
