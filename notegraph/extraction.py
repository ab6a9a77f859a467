"""Entity/relation extraction collaborator.

The graph engine only depends on the :class:`Extractor` protocol; the
concrete :class:`LLMExtractor` calls any OpenAI-compatible
``/chat/completions`` endpoint (Ollama, DeepSeek, OpenAI) with raw
``requests``. Features:

* Retry with exponential back-off on 429/5xx and connection errors
* Fenced or bare JSON responses
* Repair of truncated JSON (unterminated strings, unclosed brackets)
* Entity types folded onto the closed vocabulary
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests

from .config import Config, load_config
from .errors import ExtractionUnavailable
from .normalize import clean_display_name, normalize_entity_type, normalize_relation_type

logger = logging.getLogger(__name__)

# Large JSON payloads get cut off below this output budget
MIN_OUTPUT_TOKENS = 8192


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ExtractedEntity:
    type: str
    name: str
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExtractedRelation:
    source: str
    target: str
    relation: str


@dataclass
class AliasHint:
    """Fusion verdict: ``alias`` is another name for ``primary``."""
    primary: str
    alias: str


@dataclass
class ExtractionResult:
    entities: List[ExtractedEntity] = field(default_factory=list)
    relations: List[ExtractedRelation] = field(default_factory=list)
    aliases: List[AliasHint] = field(default_factory=list)

    def entity_names(self) -> List[str]:
        return [e.name for e in self.entities]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [
                {"type": e.type, "name": e.name, "attributes": dict(e.attributes)}
                for e in self.entities
            ],
            "relations": [
                {"from": r.source, "to": r.target, "relation": r.relation}
                for r in self.relations
            ],
            "aliases": [{"primary": a.primary, "alias": a.alias} for a in self.aliases],
        }


class Extractor(Protocol):
    """Injected extraction capability."""

    def extract(self, text: str) -> ExtractionResult:
        ...

    def fuse(self, history: Sequence[str], text: str) -> ExtractionResult:
        ...


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

EXTRACT_PROMPT = """You extract entities from personal notes.
Find:
1. Person: names, roles, traits
2. Time: dates or periods
3. Location: addresses or places
4. Event: what happened
5. Organization: companies, schools, teams

Output one JSON object and nothing else, shaped like:
{"entities":[{"type":"Person","name":"Li Ming","attributes":{"role":"classmate"}},{"type":"Organization","name":"ByteCo"}],"relations":[{"from":"Li Ming","to":"ByteCo","relation":"works at"}]}

Text:
"""

FUSION_PROMPT = """You maintain a personal knowledge graph. Given earlier notes and a new note:

1. Decide which different names refer to the same entity (e.g. "Li Ming" and "my older brother").
2. Carry relations across such names (Li Ming is my older brother + my older brother works at ByteCo => Li Ming works at ByteCo).
3. Output every entity, alias and relation of the new note, including derived ones.

Rules:
- If entity A "is" entity B, they are one entity: keep A and list B as its alias.
- Report each alternate name as {"primary": <main name>, "alias": <other name>}.
- Never derive across unrelated links (A colleague of B, B friend of C does not give A -> C).

Output JSON only:
{
  "entities": [{"type": "Person", "name": "Li Ming", "attributes": {"role": "colleague"}}, {"type": "Organization", "name": "ByteCo"}],
  "aliases": [{"primary": "Li Ming", "alias": "my older brother"}],
  "relations": [{"from": "Li Ming", "to": "ByteCo", "relation": "works at"}]
}

---
Earlier notes:
"""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)(?:```|$)", re.DOTALL | re.IGNORECASE)


def extract_json_block(response: str) -> Optional[str]:
    """Return the JSON text inside a model response (fenced or bare)."""
    text = (response or "").strip()
    if not text:
        return None
    match = _FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()
    start = text.find("{")
    if start < 0:
        return None
    return text[start:]


def _close_open(text: str) -> Optional[str]:
    """Append whatever closes an unterminated string and open brackets."""
    stack: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
            continue
        if in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            stack.append("]" if ch == "[" else "}")
        elif ch in "]}" and stack:
            stack.pop()

    if not in_string and not stack:
        return None
    closed = (text + ('"' if in_string else "")).rstrip()
    # a dangling separator would still be invalid once closed
    while closed and closed[-1] in ",:":
        closed = closed[:-1].rstrip()
    return closed + "".join(reversed(stack))


def _last_complete_element(text: str) -> int:
    """Index just past the last ``}``/``]`` outside a string, or 0."""
    last = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if escaped:
            escaped = False
            continue
        if in_string:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "]}":
            last = i + 1
    return last


def repair_truncated_json(text: str) -> Optional[str]:
    """Turn truncated JSON into parseable JSON, or return None.

    First closes the text where it stops; if that is still invalid (cut
    inside a key or value) the partial trailing element is dropped and the
    rest closed.
    """
    candidates = [_close_open(text)]
    cut = _last_complete_element(text)
    if 0 < cut < len(text):
        candidates.append(_close_open(text[:cut]))
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return candidate
    return None


def _as_str_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _first(item: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        val = item.get(key)
        if isinstance(val, str) and val.strip():
            return val
    return ""


def _build_result(data: Dict[str, Any]) -> ExtractionResult:
    result = ExtractionResult()
    for item in data.get("entities") or []:
        if not isinstance(item, dict):
            continue
        name = clean_display_name(_first(item, "name"))
        if not name:
            continue
        result.entities.append(ExtractedEntity(
            type=normalize_entity_type(_first(item, "type", "entity_type")),
            name=name,
            attributes=_as_str_map(item.get("attributes")),
        ))
    for item in data.get("relations") or []:
        if not isinstance(item, dict):
            continue
        source = clean_display_name(_first(item, "from", "source"))
        target = clean_display_name(_first(item, "to", "target"))
        label = normalize_relation_type(_first(item, "relation", "relation_type", "type"))
        if source and target and label:
            result.relations.append(ExtractedRelation(source, target, label))
    for item in data.get("aliases") or []:
        if not isinstance(item, dict):
            continue
        primary = clean_display_name(_first(item, "primary"))
        alias = clean_display_name(_first(item, "alias"))
        if primary and alias:
            result.aliases.append(AliasHint(primary, alias))
    return result


def parse_extraction_payload(response: str) -> ExtractionResult:
    """Parse a model response into an ExtractionResult.

    Raises ExtractionUnavailable if no JSON object can be recovered.
    """
    block = extract_json_block(response)
    if block is None:
        raise ExtractionUnavailable("could not find JSON in extractor response")

    try:
        # raw_decode tolerates commentary after the object
        data, _ = json.JSONDecoder().raw_decode(block)
    except json.JSONDecodeError:
        repaired = repair_truncated_json(block)
        if repaired is None:
            raise ExtractionUnavailable(
                f"could not parse extractor JSON (response length: {len(response)} chars); "
                "the output may be truncated, try a larger max token budget"
            )
        logger.warning("Extractor returned truncated JSON; using the repaired partial result")
        data = json.loads(repaired)

    if not isinstance(data, dict):
        raise ExtractionUnavailable("extractor JSON is not an object")
    return _build_result(data)


def format_history(history: Sequence[str]) -> str:
    if not history:
        return "(no earlier notes)"
    return "\n".join(f"{i}. {note}" for i, note in enumerate(history, 1))


# ---------------------------------------------------------------------------
# OpenAI-compatible client
# ---------------------------------------------------------------------------

class LLMExtractor:
    """Chat-completions extractor with retries."""

    def __init__(self, cfg: Optional[Config] = None) -> None:
        cfg = cfg or load_config()
        self.base_url: str = cfg.llm_base_url.rstrip("/")
        self.model: str = cfg.llm_model
        self.temperature: float = cfg.llm_temperature
        self.max_tokens: int = max(cfg.llm_max_tokens, MIN_OUTPUT_TOKENS)
        self.timeout: float = cfg.llm_timeout
        self.max_retries: int = max(1, cfg.llm_max_retries)

        self._url = f"{self.base_url}/chat/completions"
        self._headers = {"Content-Type": "application/json"}
        if cfg.llm_api_key:
            self._headers["Authorization"] = f"Bearer {cfg.llm_api_key}"

    def extract(self, text: str) -> ExtractionResult:
        return parse_extraction_payload(self._complete(EXTRACT_PROMPT + text))

    def fuse(self, history: Sequence[str], text: str) -> ExtractionResult:
        prompt = f"{FUSION_PROMPT}{format_history(history)}\n\nNew note:\n{text}"
        return parse_extraction_payload(self._complete(prompt))

    def _complete(self, prompt: str) -> str:
        """Blocking chat-completions call with exponential back-off."""
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.post(
                    self._url,
                    headers=self._headers,
                    json=payload,
                    timeout=self.timeout,
                )
                if resp.status_code == 200:
                    return self._content(resp.json())

                if resp.status_code in (429, 500, 502, 503, 504):
                    wait = 2 ** attempt
                    logger.warning(
                        "Extractor HTTP %s (attempt %d/%d), retrying in %ds",
                        resp.status_code, attempt + 1, self.max_retries, wait,
                    )
                    last_exc = ExtractionUnavailable(
                        f"HTTP {resp.status_code}: {resp.text[:200]}"
                    )
                    time.sleep(wait)
                    continue

                raise ExtractionUnavailable(f"HTTP {resp.status_code}: {resp.text[:500]}")

            except requests.RequestException as exc:
                wait = 2 ** attempt
                logger.warning(
                    "Extractor request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.max_retries, exc, wait,
                )
                last_exc = exc
                time.sleep(wait)

        raise ExtractionUnavailable(f"extractor failed after {self.max_retries} attempts: {last_exc}")

    def _content(self, data: Dict[str, Any]) -> str:
        try:
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExtractionUnavailable(f"malformed chat completion response: {exc}") from exc
        if choice.get("finish_reason") == "length":
            logger.warning(
                "Extractor output hit max_tokens=%d; attempting partial parse", self.max_tokens
            )
        return (content or "").strip()
