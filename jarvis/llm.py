import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import normalize_model_id
from .schemas import ChatTurn, HistoryEntry, ModelError, ModelRefusal, ModelReply, ModelSuccess


logger = logging.getLogger("uvicorn.error")

FALLBACK_RESPONSE = "I do not have a response right now."
SYSTEM_PREAMBLE = (
    "You are Jarvis, a proactive multimodal assistant. Refer to yourself as Jarvis when it adds clarity, "
    "but avoid repeating your identity in every reply. Only when a user directly asks who you are, what your "
    "name is, or who built you should you confirm that you are Jarvis, note that you were created by Ayaan, "
    "and share his GitHub profile at github.com/ayxn07. Otherwise respond naturally with concise, helpful "
    "guidance. Use **bold** markdown only when emphasis is essential so the UI can style it, and keep "
    "language natural for text-to-speech."
)
GENERATION_CONFIG = {
    "temperature": 0.6,
    "maxOutputTokens": 2048,
    "topP": 0.95,
    "topK": 32,
}


def strip_data_url(value: Optional[str]) -> Optional[str]:
    """Drop a ``data:<mime>;base64,`` prefix, leaving bare base64."""
    if not value:
        return None
    if not value.startswith("data:"):
        return value
    comma = value.find(",")
    if comma == -1:
        return value
    return value[comma + 1:]


def inline_data_from(raw: Optional[str]) -> Optional[Dict[str, str]]:
    if not raw:
        return None
    if not raw.startswith("data:"):
        return {"data": raw, "mimeType": "image/jpeg"}
    comma = raw.find(",")
    if comma == -1:
        return {"data": raw, "mimeType": "image/jpeg"}
    meta = raw[5:comma]
    mime_type = meta.split(";")[0]
    return {"data": raw[comma + 1:], "mimeType": mime_type or "image/jpeg"}


def build_parts(text: Optional[str], image: Optional[str]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    if text:
        parts.append({"text": text})
    inline = inline_data_from(image)
    if inline:
        parts.append({"inlineData": inline})
    return parts


def build_contents(turn: ChatTurn, history: List[HistoryEntry]) -> List[Dict[str, Any]]:
    contents: List[Dict[str, Any]] = [{"role": "user", "parts": [{"text": SYSTEM_PREAMBLE}]}]
    for item in history:
        parts = build_parts(item.text, item.image)
        if not parts:
            continue
        contents.append({"role": "user" if item.role == "user" else "model", "parts": parts})
    contents.append({"role": "user", "parts": build_parts(turn.text, turn.image_base64)})
    return contents


def normalize_generate_response(model: str, data: Any) -> ModelReply:
    """Turn a raw ``generateContent`` payload into a tagged model reply."""
    if not isinstance(data, dict):
        return ModelError(model=model, error="Unexpected response from Gemini")
    feedback = data.get("promptFeedback") or {}
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return ModelRefusal(model=model, reason=str(feedback["blockReason"]))
    text = data.get("text") if isinstance(data.get("text"), str) else ""
    if not text:
        fragments: List[str] = []
        for candidate in data.get("candidates") or []:
            content = (candidate or {}).get("content") or {}
            for part in content.get("parts") or []:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    fragments.append(part["text"])
        text = " ".join(fragments)
    text = text.strip()
    return ModelSuccess(model=model, text=text or FALLBACK_RESPONSE)


def _normalize_error_text(detail: str) -> str:
    text = detail or ""
    for _ in range(2):
        try:
            parsed = json.loads(text)
        except Exception:
            break
        if isinstance(parsed, dict):
            found = False
            for key in ("error", "detail", "message"):
                val = parsed.get(key)
                if isinstance(val, dict):
                    val = val.get("message")
                if isinstance(val, str) and val.strip():
                    text = val
                    found = True
                    break
            if not found:
                break
        elif isinstance(parsed, str):
            text = parsed
        else:
            break
    return text


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def generate(self, model: str, turn: ChatTurn, history: List[HistoryEntry]) -> ModelReply:
        """Query one model; never raises, every outcome is a tagged reply."""
        model = normalize_model_id(model)
        if not self.enabled:
            return ModelError(model=model, error="GEMINI_API_KEY is not configured")
        url = f"{self.base_url}/models/{model}:generateContent"
        payload = {
            "contents": build_contents(turn, history),
            "generationConfig": dict(GENERATION_CONFIG),
        }
        try:
            resp = await self.client.post(
                url,
                json=payload,
                headers={"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException:
            logger.warning("Gemini model %s timed out after %.0fs", model, self.timeout)
            return ModelError(model=model, error=f"{model} timed out after {self.timeout:g}s")
        except httpx.HTTPStatusError as exc:
            detail = _normalize_error_text(self._extract_error_detail(exc.response))
            logger.warning("Gemini model %s failed (%s): %s", model, exc.response.status_code, detail)
            return ModelError(model=model, error=detail or f"Gemini request failed ({exc.response.status_code})")
        except httpx.RequestError as exc:
            logger.warning("Gemini model %s request error: %s", model, exc)
            return ModelError(model=model, error=str(exc) or "Gemini call failed")
        except ValueError as exc:
            return ModelError(model=model, error=f"Invalid JSON from Gemini: {exc}")
        return normalize_generate_response(model, data)

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
