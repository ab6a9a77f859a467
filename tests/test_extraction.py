"""Tests for extractor response parsing and the chat-completions client."""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from notegraph.config import Config
from notegraph.errors import ExtractionUnavailable
from notegraph.extraction import (
    MIN_OUTPUT_TOKENS,
    LLMExtractor,
    extract_json_block,
    format_history,
    parse_extraction_payload,
    repair_truncated_json,
)


def _completion(content, finish_reason="stop", status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.text = content if status != 200 else ""
    resp.json.return_value = {
        "choices": [{"message": {"content": content}, "finish_reason": finish_reason}]
    }
    return resp


PAYLOAD = json.dumps({
    "entities": [
        {"type": "Person", "name": "Li Ming", "attributes": {"role": "colleague"}},
        {"type": "company", "name": " ByteCo "},
    ],
    "relations": [{"from": "Li Ming", "to": "ByteCo", "relation": "works at"}],
    "aliases": [{"primary": "Li Ming", "alias": "my older brother"}],
})


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParsing:
    def test_bare_json(self):
        result = parse_extraction_payload(PAYLOAD)
        assert [(e.type, e.name) for e in result.entities] == [
            ("Person", "Li Ming"),
            ("Organization", "ByteCo"),
        ]
        assert result.entities[0].attributes == {"role": "colleague"}
        assert result.relations[0].relation == "works at"
        assert result.aliases[0].alias == "my older brother"

    def test_fenced_json_with_commentary(self):
        response = f"Here you go:\n```json\n{PAYLOAD}\n```\nLet me know if you need more."
        assert len(parse_extraction_payload(response).entities) == 2

    def test_trailing_text_after_object(self):
        result = parse_extraction_payload('{"entities": [{"type": "Event", "name": "Party"}]} done')
        assert result.entity_names() == ["Party"]

    def test_alternative_relation_keys(self):
        payload = json.dumps({
            "relations": [{"source": "A", "target": "B", "relation_type": "knows"}]
        })
        rel = parse_extraction_payload(payload).relations[0]
        assert (rel.source, rel.target, rel.relation) == ("A", "B", "knows")

    def test_malformed_items_skipped(self):
        payload = json.dumps({
            "entities": ["oops", {"type": "Person"}, {"type": "Person", "name": "Ann"}],
            "relations": [{"from": "Ann", "to": "", "relation": "knows"}],
            "aliases": [{"primary": "Ann"}],
        })
        result = parse_extraction_payload(payload)
        assert result.entity_names() == ["Ann"]
        assert result.relations == []
        assert result.aliases == []

    def test_truncated_inside_string(self):
        text = '{"entities":[{"type":"Person","name":"Li Ming"},{"type":"Org'
        result = parse_extraction_payload(text)
        assert result.entity_names() == ["Li Ming"]

    def test_truncated_inside_key(self):
        text = '{"entities":[{"type":"Person","name":"Li Ming"},{"ty'
        assert parse_extraction_payload(text).entity_names() == ["Li Ming"]

    def test_repair_returns_none_when_hopeless(self):
        assert repair_truncated_json("{not json") is None

    def test_unparseable(self):
        with pytest.raises(ExtractionUnavailable):
            parse_extraction_payload("I could not find anything.")
        with pytest.raises(ExtractionUnavailable):
            parse_extraction_payload("{not json")
        with pytest.raises(ExtractionUnavailable):
            parse_extraction_payload("")

    def test_extract_json_block(self):
        assert extract_json_block("```\n{\"a\": 1}\n```") == '{"a": 1}'
        assert extract_json_block("no braces") is None

    def test_format_history(self):
        assert format_history([]) == "(no earlier notes)"
        assert format_history(["a", "b"]) == "1. a\n2. b"

    def test_to_dict(self):
        d = parse_extraction_payload(PAYLOAD).to_dict()
        assert d["relations"] == [{"from": "Li Ming", "to": "ByteCo", "relation": "works at"}]
        assert d["aliases"] == [{"primary": "Li Ming", "alias": "my older brother"}]


# ---------------------------------------------------------------------------
# LLMExtractor
# ---------------------------------------------------------------------------

@pytest.fixture
def llm_config(tmp_path):
    return Config(
        db_path=str(tmp_path / "unused.sqlite"),
        llm_base_url="http://llm.test/v1/",
        llm_model="test-model",
        llm_max_retries=3,
    )


class TestLLMExtractor:
    def test_success(self, llm_config):
        extractor = LLMExtractor(llm_config)
        with patch("notegraph.extraction.requests.post", return_value=_completion(PAYLOAD)) as post:
            result = extractor.extract("Li Ming works at ByteCo")

        assert len(result.entities) == 2
        url = post.call_args[0][0]
        body = post.call_args[1]["json"]
        assert url == "http://llm.test/v1/chat/completions"
        assert body["model"] == "test-model"
        assert body["messages"][0]["content"].endswith("Li Ming works at ByteCo")
        assert "Authorization" not in post.call_args[1]["headers"]

    def test_auth_header(self, llm_config):
        llm_config.llm_api_key = "sk-test"
        extractor = LLMExtractor(llm_config)
        with patch("notegraph.extraction.requests.post", return_value=_completion(PAYLOAD)) as post:
            extractor.extract("text")
        assert post.call_args[1]["headers"]["Authorization"] == "Bearer sk-test"

    def test_max_tokens_floor(self, llm_config):
        llm_config.llm_max_tokens = 512
        assert LLMExtractor(llm_config).max_tokens == MIN_OUTPUT_TOKENS

    def test_retries_on_server_error(self, llm_config):
        extractor = LLMExtractor(llm_config)
        responses = [_completion("busy", status=503), _completion(PAYLOAD)]
        with patch("notegraph.extraction.requests.post", side_effect=responses) as post, \
                patch("notegraph.extraction.time.sleep") as sleep:
            result = extractor.extract("text")
        assert len(result.entities) == 2
        assert post.call_count == 2
        sleep.assert_called_once_with(1)

    def test_client_error_not_retried(self, llm_config):
        extractor = LLMExtractor(llm_config)
        with patch("notegraph.extraction.requests.post",
                   return_value=_completion("bad key", status=401)) as post:
            with pytest.raises(ExtractionUnavailable, match="401"):
                extractor.extract("text")
        assert post.call_count == 1

    def test_connection_errors_exhaust_retries(self, llm_config):
        extractor = LLMExtractor(llm_config)
        with patch("notegraph.extraction.requests.post",
                   side_effect=requests.ConnectionError("refused")) as post, \
                patch("notegraph.extraction.time.sleep") as sleep:
            with pytest.raises(ExtractionUnavailable, match="after 3 attempts"):
                extractor.extract("text")
        assert post.call_count == 3
        assert [c[0][0] for c in sleep.call_args_list] == [1, 2, 4]

    def test_malformed_completion(self, llm_config):
        extractor = LLMExtractor(llm_config)
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"choices": []}
        with patch("notegraph.extraction.requests.post", return_value=resp):
            with pytest.raises(ExtractionUnavailable, match="malformed"):
                extractor.extract("text")

    def test_truncated_output_still_parsed(self, llm_config):
        extractor = LLMExtractor(llm_config)
        cut = '{"entities":[{"type":"Person","name":"Li Ming"},{"type":"Pers'
        with patch("notegraph.extraction.requests.post",
                   return_value=_completion(cut, finish_reason="length")):
            assert extractor.extract("text").entity_names() == ["Li Ming"]

    def test_fuse_prompt_includes_history(self, llm_config):
        extractor = LLMExtractor(llm_config)
        with patch("notegraph.extraction.requests.post", return_value=_completion(PAYLOAD)) as post:
            result = extractor.fuse(["Li Ming is my colleague"], "Li Ming is my older brother")
        prompt = post.call_args[1]["json"]["messages"][0]["content"]
        assert "1. Li Ming is my colleague" in prompt
        assert prompt.endswith("New note:\nLi Ming is my older brother")
        assert result.aliases[0].primary == "Li Ming"
