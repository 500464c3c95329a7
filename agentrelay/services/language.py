from __future__ import annotations

import re

_TURKISH_CHARS = ("ç", "ğ", "ı", "ö", "ş", "ü")
_TURKISH_WORDS = frozenset(
    {
        "nedir", "nasıl", "ne", "hakkında", "için", "ile", "bir", "bu", "şu",
        "ve", "mi", "mı", "mu", "mü", "randevu", "merhaba", "teşekkürler",
    }
)
_TURKISH_SUFFIXES = ("dan", "den", "lar", "ler", "ın", "in", "un", "ün", "ım", "im", "um", "üm")
_ENGLISH_WORDS = frozenset(
    {
        "what", "how", "about", "with", "from", "the", "and", "for", "are",
        "is", "can", "will", "would", "my", "me", "you", "please", "book",
    }
)
_WORD_PATTERN = re.compile(r"[^\W\d_]+", re.UNICODE)

LANGUAGE_DIRECTIVES = {
    "tr": "[Sistem: Bu soruyu Türkçe yanıtla.]",
    "en": "[System: Please respond in English.]",
}


def detect_language(text: str) -> str:
    """Guess 'tr' or 'en' from characters and common words; ties go to English."""
    lowered = (text or "").lower()
    words = _WORD_PATTERN.findall(lowered)

    turkish_score = 0.0
    english_score = 0
    for char in _TURKISH_CHARS:
        if char in lowered:
            turkish_score += 2
    for word in words:
        if word in _TURKISH_WORDS:
            turkish_score += 1
        elif len(word) > 4 and word.endswith(_TURKISH_SUFFIXES) and word not in _ENGLISH_WORDS:
            # suffix matches count half
            turkish_score += 0.5
        if word in _ENGLISH_WORDS:
            english_score += 1
    return "tr" if turkish_score > english_score else "en"


def language_directive(language: str) -> str:
    return LANGUAGE_DIRECTIVES.get(language, LANGUAGE_DIRECTIVES["en"])


def with_language_directive(text: str, language: str) -> str:
    return f"{text}\n\n{language_directive(language)}"
