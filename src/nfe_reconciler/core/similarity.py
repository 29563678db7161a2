"""String and code similarity primitives shared by the resolvers.

The numeric values returned here feed the thresholds used by the client
resolver and the product matcher (0.6, 0.9, ...), so the edit distance is the
plain Levenshtein recurrence: insertion, deletion and substitution all cost
one and transpositions are not special-cased.
"""

from __future__ import annotations

import re
from typing import List, Optional


_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")

UNIT_SYNONYMS = {
    "kg": "kg",
    "kgs": "kg",
    "quilograma": "kg",
    "quilogramas": "kg",
    "l": "l",
    "lt": "l",
    "lts": "l",
    "litro": "l",
    "litros": "l",
    "ml": "ml",
    "mililitro": "ml",
    "mililitros": "ml",
    "g": "g",
    "gr": "g",
    "grs": "g",
    "grama": "g",
    "gramas": "g",
    "ton": "t",
    "tonelada": "t",
    "toneladas": "t",
    "t": "t",
    "un": "un",
    "und": "un",
    "unidade": "un",
    "unidades": "un",
    "pc": "pc",
    "pcs": "pc",
    "peça": "pc",
    "peças": "pc",
}

# Corporate suffixes and generic words that carry no identity in a company name
SEARCH_STOPWORDS = {
    "ltda",
    "sa",
    "eireli",
    "me",
    "epp",
    "sociedade",
    "empresa",
    "comercial",
    "industria",
    "servicos",
}


def normalize_for_comparison(text: Optional[str]) -> str:
    """Lowercase, replace punctuation by spaces and collapse whitespace."""

    if not text:
        return ""
    cleaned = _PUNCTUATION_RE.sub(" ", text.lower())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def levenshtein_distance(first: str, second: str) -> int:
    if first == second:
        return 0
    if not first:
        return len(second)
    if not second:
        return len(first)

    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            if char_a == char_b:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j - 1] + 1, current[j - 1] + 1, previous[j] + 1))
        previous = current
    return previous[-1]


def text_similarity(first: Optional[str], second: Optional[str]) -> float:
    """Return a similarity ratio in ``[0, 1]`` based on the edit distance."""

    if not first or not second:
        return 0.0

    clean_first = normalize_for_comparison(first)
    clean_second = normalize_for_comparison(second)
    if clean_first == clean_second:
        return 1.0

    max_length = max(len(clean_first), len(clean_second))
    if max_length == 0:
        return 0.0
    distance = levenshtein_distance(clean_first, clean_second)
    return (max_length - distance) / max_length


def normalize_code(code: Optional[str]) -> str:
    """Strip everything but letters and digits, e.g. ``AB-001`` -> ``ab001``."""

    if not code:
        return ""
    return "".join(char for char in str(code) if char.isalnum()).lower()


def normalize_unit(unit: Optional[str]) -> str:
    if not unit:
        return ""
    lowered = str(unit).strip().lower()
    return UNIT_SYNONYMS.get(lowered, lowered)


def extract_search_terms(name: Optional[str], limit: int = 3) -> List[str]:
    """Pick the first meaningful words of a company/product name."""

    cleaned = normalize_for_comparison(name)
    terms = [word for word in cleaned.split(" ") if len(word) > 2 and word not in SEARCH_STOPWORDS]
    return terms[:limit]


def clean_document(value: Optional[str]) -> str:
    """Remove the formatting of a CNPJ/CPF, keeping only its digits."""

    if not value:
        return ""
    return _NON_DIGIT_RE.sub("", str(value))


__all__ = [
    "UNIT_SYNONYMS",
    "SEARCH_STOPWORDS",
    "normalize_for_comparison",
    "levenshtein_distance",
    "text_similarity",
    "normalize_code",
    "normalize_unit",
    "extract_search_terms",
    "clean_document",
]
