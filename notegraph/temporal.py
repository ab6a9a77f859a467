"""Time mention normalisation.

Extracted ``Time`` entities arrive as free text ("yesterday", "next Friday",
"2024/5/1"). Before resolution each one is renamed to a ``YYYY-MM-DD`` date
so that different wordings of one day resolve to one entity.

* **rule**: explicit year-month-day text is read directly
* **dateparser**: relative and natural-language expressions

The wording that was replaced is kept in the entity attributes, together
with the date and the reference day it was computed against.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Dict, Optional, Sequence, Tuple

import dateparser

from .extraction import ExtractionResult
from .normalize import normalize_entity_type

logger = logging.getLogger(__name__)

_YMD_RE = re.compile(r"(?<!\d)(\d{4})\s*[-/.年]\s*(\d{1,2})\s*[-/.月]\s*(\d{1,2})(?!\d)")


def parse_ymd(text: str) -> Optional[date]:
    """Read an explicit year-month-day date out of *text*.

    >>> parse_ymd("on 2024/5/1 at noon")
    datetime.date(2024, 5, 1)
    """
    m = _YMD_RE.search(text)
    if not m:
        return None
    year, month, day = (int(g) for g in m.groups())
    if not 1900 <= year <= 2200:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


class TimeNormalizer:
    """Renames Time entities (and the relations naming them) to ISO dates."""

    def __init__(self, languages: Sequence[str] = ("en",)) -> None:
        self.languages = list(languages) or None

    def parse(self, text: str, reference: date) -> Optional[Tuple[date, str]]:
        """Resolve *text* to ``(date, method)`` or ``None``."""
        text = text.strip()
        if not text:
            return None

        explicit = parse_ymd(text)
        if explicit is not None:
            return explicit, "rule"

        settings = {
            "PREFER_DATES_FROM": "future",
            "RELATIVE_BASE": datetime.combine(reference, datetime.min.time()),
            "RETURN_AS_TIMEZONE_AWARE": False,
        }
        try:
            parsed = dateparser.parse(text, languages=self.languages, settings=settings)
        except Exception as exc:
            logger.debug("dateparser failed for %r: %s", text, exc)
            return None
        if parsed is None:
            return None
        return parsed.date(), "dateparser"

    def apply(self, extracted: ExtractionResult, reference: Optional[date] = None) -> int:
        """Normalise *extracted* in place; returns the number of renamed entities."""
        reference = reference or date.today()
        ref_text = reference.isoformat()
        cache: Dict[str, Optional[Tuple[date, str]]] = {}
        renames: Dict[str, str] = {}
        renamed = 0

        for entity in extracted.entities:
            if normalize_entity_type(entity.type) != "Time":
                continue
            original = entity.name.strip()
            if not original:
                continue
            if original not in cache:
                cache[original] = self.parse(original, reference)
            hit = cache[original]
            if hit is None:
                continue
            day, method = hit
            iso = day.isoformat()
            if iso == original:
                continue

            attrs = dict(entity.attributes)
            attrs.setdefault("original_time_text", original)
            attrs["normalized_date"] = iso
            attrs["normalized_by"] = method
            attrs["reference_date"] = ref_text
            entity.name = iso
            entity.attributes = attrs
            renames[original] = iso
            renamed += 1

        if renames:
            for rel in extracted.relations:
                rel.source = renames.get(rel.source.strip(), rel.source)
                rel.target = renames.get(rel.target.strip(), rel.target)
            for hint in extracted.aliases:
                hint.primary = renames.get(hint.primary.strip(), hint.primary)
                hint.alias = renames.get(hint.alias.strip(), hint.alias)
            logger.debug("Normalised %d time mention(s) against %s", renamed, ref_text)
        return renamed
