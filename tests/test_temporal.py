"""Tests for Time mention normalisation."""

from datetime import date
from unittest.mock import patch

import pytest

from notegraph.extraction import ExtractedEntity, ExtractedRelation, ExtractionResult
from notegraph.temporal import TimeNormalizer, parse_ymd

REF = date(2024, 5, 2)


def build_result(entities=(), relations=()):
    return ExtractionResult(
        entities=[ExtractedEntity(e[0], e[1], dict(e[2]) if len(e) > 2 else {}) for e in entities],
        relations=[ExtractedRelation(s, t, r) for s, t, r in relations],
    )


class TestParseYmd:
    @pytest.mark.parametrize("text", ["2024-05-01", "2024/5/1", "on 2024.5.1", "2024年5月1日"])
    def test_explicit_dates(self, text):
        assert parse_ymd(text) == date(2024, 5, 1)

    @pytest.mark.parametrize("text", ["2024-13-01", "1800-01-01", "call 555-1234", "spring"])
    def test_rejects(self, text):
        assert parse_ymd(text) is None


class TestTimeNormalizer:
    def test_relative_expressions(self):
        tn = TimeNormalizer()
        assert tn.parse("yesterday", REF) == (date(2024, 5, 1), "dateparser")
        assert tn.parse("tomorrow", REF) == (date(2024, 5, 3), "dateparser")
        assert tn.parse("2024/5/1", REF) == (date(2024, 5, 1), "rule")
        assert tn.parse("   ", REF) is None

    def test_apply_renames_entities_and_relations(self):
        extracted = build_result(
            entities=[
                ("Person", "Alice"),
                ("Time", "yesterday", {"note": "evening"}),
                ("Time", "2024-05-01"),
                ("Event", "yesterday"),
            ],
            relations=[("Alice", "yesterday", "met on")],
        )
        renamed = TimeNormalizer().apply(extracted, REF)

        assert renamed == 1
        alice, relative, explicit, event = extracted.entities
        assert alice.name == "Alice"
        assert relative.name == "2024-05-01"
        assert relative.attributes == {
            "note": "evening",
            "original_time_text": "yesterday",
            "normalized_date": "2024-05-01",
            "normalized_by": "dateparser",
            "reference_date": "2024-05-02",
        }
        assert explicit.name == "2024-05-01"
        assert explicit.attributes == {}
        assert event.name == "yesterday"
        assert extracted.relations[0].target == "2024-05-01"

    def test_unparseable_left_alone_and_cached(self):
        extracted = build_result(entities=[("Time", "someday"), ("Time", "someday")])
        with patch("notegraph.temporal.dateparser.parse", return_value=None) as parse:
            assert TimeNormalizer().apply(extracted, REF) == 0
        assert parse.call_count == 1
        assert [e.name for e in extracted.entities] == ["someday", "someday"]
        assert extracted.entities[0].attributes == {}

    def test_parser_error_is_not_fatal(self):
        extracted = build_result(entities=[("Time", "next blue moon")])
        with patch("notegraph.temporal.dateparser.parse", side_effect=RuntimeError("boom")):
            assert TimeNormalizer().apply(extracted, REF) == 0
        assert extracted.entities[0].name == "next blue moon"
