"""Text normalisation shared by resolution, lookup and history retrieval.

* Entity name normalisation (the single matching rule for the graph)
* Entity type folding onto the closed vocabulary
* Relation label clean-up
* Mixed Latin/CJK tokenizer for note relevance scoring
"""

from __future__ import annotations

import re
import unicodedata
from typing import Dict, List, Tuple

# ---------------------------------------------------------------------------
# Entity names
# ---------------------------------------------------------------------------

_WS_RE = re.compile(r"\s+")


def clean_display_name(name: str) -> str:
    """Trim and collapse whitespace, keeping the original casing for display."""
    return _WS_RE.sub(" ", unicodedata.normalize("NFKC", name or "")).strip()


def normalize_name(name: str) -> str:
    """Matching key for entity names and aliases.

    NFKC, trim, collapse whitespace runs to a single space, case-fold.

    >>> normalize_name("  Li   MING ")
    'li ming'
    """
    return clean_display_name(name).casefold()


# ---------------------------------------------------------------------------
# Entity types
# ---------------------------------------------------------------------------

ENTITY_TYPES: Tuple[str, ...] = ("Person", "Location", "Event", "Time", "Organization", "Other")

_TYPE_SYNONYMS: Dict[str, str] = {
    "person": "Person",
    "people": "Person",
    "human": "Person",
    "character": "Person",
    "location": "Location",
    "place": "Location",
    "address": "Location",
    "city": "Location",
    "event": "Event",
    "activity": "Event",
    "time": "Time",
    "date": "Time",
    "datetime": "Time",
    "period": "Time",
    "organization": "Organization",
    "organisation": "Organization",
    "org": "Organization",
    "company": "Organization",
    "institution": "Organization",
    "other": "Other",
}


def normalize_entity_type(entity_type: str) -> str:
    """Fold a free-form type tag onto ENTITY_TYPES (unknown -> ``Other``)."""
    key = (entity_type or "").strip().casefold()
    return _TYPE_SYNONYMS.get(key, "Other")


# ---------------------------------------------------------------------------
# Relation labels
# ---------------------------------------------------------------------------

def normalize_relation_type(label: str) -> str:
    """Relation labels are free text; only whitespace is normalised."""
    return clean_display_name(label)


# ---------------------------------------------------------------------------
# Tokenizer (relevance scoring)
# ---------------------------------------------------------------------------

def is_cjk_char(ch: str) -> bool:
    code = ord(ch)
    return (
        0x3400 <= code <= 0x4DBF
        or 0x4E00 <= code <= 0x9FFF
        or 0xF900 <= code <= 0xFAFF
        or 0x3040 <= code <= 0x30FF
        or 0xAC00 <= code <= 0xD7AF
    )


def tokenize(text: str) -> List[str]:
    """Split text into ASCII alphanumeric runs (>= 2 chars) and CJK bigrams.

    A lone CJK character is kept as a unigram.

    >>> tokenize("Li Ming 在字节上班")
    ['li', 'ming', '在字', '字节', '节上', '上班']
    """
    tokens: List[str] = []
    latin: List[str] = []
    cjk: List[str] = []

    def flush_latin() -> None:
        if len(latin) >= 2:
            tokens.append("".join(latin))
        latin.clear()

    def flush_cjk() -> None:
        if len(cjk) == 1:
            tokens.append(cjk[0])
        else:
            tokens.extend(cjk[i] + cjk[i + 1] for i in range(len(cjk) - 1))
        cjk.clear()

    for ch in text or "":
        if ch.isascii() and ch.isalnum():
            if cjk:
                flush_cjk()
            latin.append(ch.lower())
        elif is_cjk_char(ch):
            if latin:
                flush_latin()
            cjk.append(ch)
        else:
            if latin:
                flush_latin()
            if cjk:
                flush_cjk()

    if latin:
        flush_latin()
    if cjk:
        flush_cjk()
    return tokens
