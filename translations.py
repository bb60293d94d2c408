import json
import logging
import os
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "ru")
DEFAULT_LANGUAGE = "en"

Texts = Dict[str, str]


class TranslationLoadError(RuntimeError):
    """A locale file could not be read or parsed at startup."""


def detect_language(lang_param: str) -> str:
    """Return the requested language if supported, else the default."""
    if lang_param and lang_param in SUPPORTED_LANGUAGES:
        return lang_param
    return DEFAULT_LANGUAGE


class Translations:
    """UI strings per language, loaded from `<directory>/<lang>.json`."""

    def __init__(self, translations: Dict[str, Texts]):
        self._translations = translations

    @classmethod
    def load(cls, directory: str, languages: Iterable[str] = SUPPORTED_LANGUAGES) -> "Translations":
        logger.info(f"Loading translation files from {directory}")
        translations: Dict[str, Texts] = {}
        for lang in languages:
            file_path = os.path.join(directory, f"{lang}.json")
            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    texts = json.load(f)
            except OSError as e:
                raise TranslationLoadError(f"failed to read translation file for {lang}: {e}") from e
            except json.JSONDecodeError as e:
                raise TranslationLoadError(f"failed to parse translation file for {lang}: {e}") from e
            translations[lang] = texts
            logger.debug(f"Translation '{lang}' loaded from {file_path}")

        logger.info(f"All translations loaded successfully ({len(translations)} languages)")
        return cls(translations)

    def get_texts(self, language: str) -> Texts:
        if language in self._translations:
            return self._translations[language]

        if DEFAULT_LANGUAGE in self._translations:
            logger.warning(f"Language '{language}' not found, falling back to {DEFAULT_LANGUAGE}")
            return self._translations[DEFAULT_LANGUAGE]

        logger.error(f"No translations available for '{language}'")
        return {}

    def supported_languages(self) -> List[str]:
        return list(self._translations)
