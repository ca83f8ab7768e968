"""
Language tagging for card text.

Cards are tagged with ISO 639-3 codes. Detection uses ``langdetect``
(ISO 639-1 output, mapped to 639-3 here) with a fixed seed so the same
text always gets the same answer.
"""

import logging
from typing import Optional

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

logger = logging.getLogger(__name__)

DetectorFactory.seed = 0

UNKNOWN = "unknown"

LANGUAGE_MAPPING = {
    "eng": "English", "cat": "Catalan", "nld": "Dutch", "spa": "Spanish",
    "fra": "French", "deu": "German", "ita": "Italian", "por": "Portuguese",
    "cmn": "Chinese", "jpn": "Japanese", "kor": "Korean", "rus": "Russian",
    "arb": "Arabic", "hin": "Hindi", "tgl": "Tagalog", "ind": "Indonesian",
    "nor": "Norwegian", "hrv": "Croatian", "som": "Somali", "sqi": "Albanian",
    "pol": "Polish", "est": "Estonian", "cym": "Welsh", "afr": "Afrikaans",
    "swa": "Swahili", "slv": "Slovenian", "swe": "Swedish", "ron": "Romanian",
    "tur": "Turkish", "dan": "Danish", "lit": "Lithuanian", "fin": "Finnish",
    "vie": "Vietnamese", "hun": "Hungarian", "slk": "Slovak", "ces": "Czech",
    "ben": "Bengali", "kan": "Kannada", "lav": "Latvian", "tam": "Tamil",
    "ell": "Greek", "ukr": "Ukrainian", "bul": "Bulgarian", "fas": "Persian",
    "mkd": "Macedonian", "heb": "Hebrew", "guj": "Gujarati", "mal": "Malayalam",
    "tha": "Thai", "unknown": "Unknown",
}

# langdetect (ISO 639-1) -> stored code (ISO 639-3)
_ISO1_TO_ISO3 = {
    "af": "afr", "ar": "arb", "bg": "bul", "bn": "ben", "ca": "cat",
    "cs": "ces", "cy": "cym", "da": "dan", "de": "deu", "el": "ell",
    "en": "eng", "es": "spa", "et": "est", "fa": "fas", "fi": "fin",
    "fr": "fra", "gu": "guj", "he": "heb", "hi": "hin", "hr": "hrv",
    "hu": "hun", "id": "ind", "it": "ita", "ja": "jpn", "kn": "kan",
    "ko": "kor", "lt": "lit", "lv": "lav", "mk": "mkd", "ml": "mal",
    "nl": "nld", "no": "nor", "pl": "pol", "pt": "por", "ro": "ron",
    "ru": "rus", "sk": "slk", "sl": "slv", "so": "som", "sq": "sqi",
    "sv": "swe", "sw": "swa", "ta": "tam", "th": "tha", "tl": "tgl",
    "tr": "tur", "uk": "ukr", "vi": "vie", "zh-cn": "cmn", "zh-tw": "cmn",
}


def detect_language(text: Optional[str], threshold: float = 0.8, min_length: int = 20) -> str:
    """
    ISO 639-3 code for the dominant language of ``text``.

    Short text, low-confidence guesses and detector errors all yield
    'unknown'.
    """
    if not text or len(text.strip()) < min_length:
        return UNKNOWN
    try:
        candidates = detect_langs(text)
    except LangDetectException as e:
        logger.debug("Language detection failed: %s", e)
        return UNKNOWN
    if not candidates or candidates[0].prob < threshold:
        return UNKNOWN
    return _ISO1_TO_ISO3.get(candidates[0].lang, candidates[0].lang)


def language_name(code: str) -> str:
    return LANGUAGE_MAPPING.get(code, code)
