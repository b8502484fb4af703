from __future__ import annotations

from typing import Mapping

MAX_SUGGESTIONS = 3

DEFAULT_SYNONYMS: dict[str, str] = {
    # Arabic
    "هودي": "hoodie",
    "جينز": "jeans",
    "تيشيرت": "t-shirt",
    "جاكيت": "jacket",
    # English misspellings
    "hodie": "hoodie",
    "hoddie": "hoodie",
    "tshirt": "t-shirt",
    "jaket": "jacket",
}


class SpellCorrector:
    """Synonym dictionary lookup. Keys are lowercase, values are canonical terms."""

    def __init__(self, synonyms: Mapping[str, str] | None = None) -> None:
        self._synonyms: dict[str, str] = {}
        self.reload(synonyms)

    def reload(self, synonyms: Mapping[str, str] | None = None) -> None:
        self._synonyms = dict(DEFAULT_SYNONYMS)
        for source, target in (synonyms or {}).items():
            self.add_synonym(source, target)

    def add_synonym(self, source: str, target: str) -> None:
        key = source.strip().lower()
        if key:
            self._synonyms[key] = target

    @property
    def synonyms(self) -> dict[str, str]:
        return dict(self._synonyms)

    def suggest(self, query: str, language: str = "en") -> list[str]:
        # Both languages share one dictionary; Arabic keys map to English terms.
        normalized = query.strip().lower()
        suggestions: list[str] = []

        exact = self._synonyms.get(normalized)
        if exact:
            suggestions.append(exact)

        for key, target in self._synonyms.items():
            if key in normalized or normalized in key:
                if target not in suggestions:
                    suggestions.append(target)

        return suggestions[:MAX_SUGGESTIONS]
