from typing import List, Optional

from .config import AgentSettings


LONGFORM_CHAR_THRESHOLD = 600
LONGFORM_WORD_THRESHOLD = 120


def is_longform(text: Optional[str], image_base64: Optional[str] = None) -> bool:
    trimmed = (text or "").strip()
    if len(trimmed) >= LONGFORM_CHAR_THRESHOLD:
        return True
    words = len(trimmed.split()) if trimmed else 0
    if words >= LONGFORM_WORD_THRESHOLD:
        return True
    return bool(image_base64)


def models_differ(settings: AgentSettings) -> bool:
    return settings.secondary_model.strip().lower() != settings.model.strip().lower()


def decide_secondary_models(
    text: Optional[str],
    image_base64: Optional[str],
    settings: AgentSettings,
    allow_fallback: bool = False,
) -> List[str]:
    """Pick the extra models to query alongside the primary for one turn."""
    if not models_differ(settings):
        return []
    if settings.dual_model_preview:
        return [settings.secondary_model]
    if allow_fallback and settings.auto_fallback_longform and is_longform(text, image_base64):
        return [settings.secondary_model]
    return []
