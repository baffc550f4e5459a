"""
Named word lists (prohibited words) referenced by `prohibitedWordsList`.

Lists live as JSON files `<WORDLISTS_DIR>/<name>.json` shaped like
`{"name": "...", "words": ["..."]}` and are loaded lazily, once per name.
"""
import json
import logging
import re
import unicodedata
from pathlib import Path
from typing import Dict, List, Optional

from ..core.config import settings

logger = logging.getLogger(__name__)

QUOTE_CHARS_RE = re.compile(r"[“”\"׳״'’`´]")
# Whitespace, dashes (incl. Hebrew maqaf), underscores and common punctuation
SEPARATORS_RE = re.compile(r"[\s\-־‐-―_.:,;!?()\[\]{}\\/]+")


def normalize_for_matching(text: str) -> str:
    """Aggressive normalization so spacing or punctuation cannot split a word."""
    normalized = unicodedata.normalize("NFKC", str(text or "")).casefold()
    normalized = QUOTE_CHARS_RE.sub("", normalized)
    return SEPARATORS_RE.sub("", normalized)


class WordListRegistry:
    """Loads and caches normalized word lists by name."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or settings.WORDLISTS_DIR)
        self._cache: Dict[str, List[str]] = {}

    def register(self, name: str, words: List[str]) -> None:
        """Register an in-memory list (takes precedence over files)."""
        self._cache[name] = self._normalize_words(words)

    def get(self, name: str) -> List[str]:
        if name not in self._cache:
            self._cache[name] = self._load(name)
        return self._cache[name]

    def find_match(self, name: str, value: str) -> Optional[str]:
        """Return the first blocked word contained in `value`, if any."""
        haystack = normalize_for_matching(value)
        if not haystack:
            return None
        for word in self.get(name):
            if word in haystack:
                return word
        return None

    def _load(self, name: str) -> List[str]:
        if not re.fullmatch(r"[A-Za-z0-9_\-]+", name or ""):
            logger.warning(f"Ignoring word list with unsafe name: {name!r}")
            return []

        path = self.directory / f"{name}.json"
        if not path.exists():
            logger.warning(f"Word list '{name}' not found at {path}")
            return []

        with path.open(encoding="utf-8") as f:
            payload = json.load(f)

        words = payload.get("words", []) if isinstance(payload, dict) else payload
        normalized = self._normalize_words(words)
        logger.info(f"Loaded word list '{name}' with {len(normalized)} entries")
        return normalized

    @staticmethod
    def _normalize_words(words: List[str]) -> List[str]:
        result = []
        for word in words or []:
            normalized = normalize_for_matching(word)
            if normalized and normalized not in result:
                result.append(normalized)
        return result


# Default registry (reads settings.WORDLISTS_DIR)
word_lists = WordListRegistry()
