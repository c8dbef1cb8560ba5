import math
import re
from typing import List, Pattern, Tuple

from .llm import FALLBACK_RESPONSE
from .markdown import strip_markdown


BASE_WPM = 165
BASE_CHARS_PER_SECOND = 13
MIN_SPEECH_RATE = 0.25
MIN_REVEAL_SECONDS = 0.8

# Applied in order; several patterns overlap (HTTP/HTTPS, hr/hrs, min/mins).
SPEECH_REPLACEMENTS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"Â?°\s*[Ff]"), " degrees Fahrenheit"),
    (re.compile(r"Â?°\s*[Cc]"), " degrees Celsius"),
    (re.compile(r"Â?°\s*[Kk]"), " degrees Kelvin"),
    (re.compile(r"\bAI\b"), "A I"),
    (re.compile(r"\bAR\b"), "A R"),
    (re.compile(r"\bVR\b"), "V R"),
    (re.compile(r"\bCPU\b"), "C P U"),
    (re.compile(r"\bGPU\b"), "G P U"),
    (re.compile(r"\bRAM\b"), "R A M"),
    (re.compile(r"\bAPI\b"), "A P I"),
    (re.compile(r"\bTTS\b"), "T T S"),
    (re.compile(r"\bETA\b"), "E T A"),
    (re.compile(r"\bHTTP\b"), "H T T P"),
    (re.compile(r"\bHTTPS\b"), "H T T P S"),
    (re.compile(r"\bSQL\b"), "S Q L"),
    (re.compile(r"\bGPS\b"), "G P S"),
    (re.compile(r"\bmph\b", re.IGNORECASE), " miles per hour"),
    (re.compile(r"\bkm/?h\b", re.IGNORECASE), " kilometres per hour"),
    (re.compile(r"\bkmph\b", re.IGNORECASE), " kilometres per hour"),
    (re.compile(r"\bbpm\b", re.IGNORECASE), " beats per minute"),
    (re.compile(r"\bhrs\b", re.IGNORECASE), " hours"),
    (re.compile(r"\bhr\b", re.IGNORECASE), " hour"),
    (re.compile(r"\bmins\b", re.IGNORECASE), " minutes"),
    (re.compile(r"\bmin\b", re.IGNORECASE), " minute"),
    (re.compile(r"\bsecs\b", re.IGNORECASE), " seconds"),
    (re.compile(r"\bsec\b", re.IGNORECASE), " second"),
    (re.compile(r"\bavg\b", re.IGNORECASE), " average"),
    (re.compile(r"\best\b", re.IGNORECASE), " estimate"),
    (re.compile(r"\btemp\b", re.IGNORECASE), " temperature"),
]


def expand_speech_abbreviations(text: str) -> str:
    if not text:
        return ""
    output = text
    for pattern, replacement in SPEECH_REPLACEMENTS:
        output = pattern.sub(replacement, output)
    return output


def reply_text(raw: str) -> str:
    """Trimmed reply text, never empty."""
    return (raw or "").strip() or FALLBACK_RESPONSE


def speakable_text(text: str) -> str:
    plain = strip_markdown(text)
    base = plain if plain.strip() else text
    return expand_speech_abbreviations(base)


def clamp_speech_rate(rate: float) -> float:
    if rate is None or not math.isfinite(rate):
        rate = 1.0
    return max(MIN_SPEECH_RATE, rate)


def estimate_reveal_duration(text: str, speech_rate: float = 1.0) -> float:
    """Seconds the caption should take when the audio length is not known yet."""
    rate = clamp_speech_rate(speech_rate)
    stripped = text.strip() if text else ""
    words = len(stripped.split()) if stripped else 0
    from_words = words / ((BASE_WPM / 60) * rate) if words else 0.0
    from_chars = len(text) / (BASE_CHARS_PER_SECOND * rate) if text else 0.0
    return max(from_words, from_chars, MIN_REVEAL_SECONDS)
