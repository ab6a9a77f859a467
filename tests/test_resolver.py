"""Tests for name normalisation and entity resolution."""

import warnings

import pytest

from notegraph.errors import ResolutionAmbiguous
from notegraph.normalize import (
    normalize_entity_type,
    normalize_name,
    normalize_relation_type,
    tokenize,
)
from notegraph.resolver import EntityResolver


@pytest.fixture
def resolver(tmp_storage):
    return EntityResolver(tmp_storage)


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_case_and_whitespace(self):
        assert normalize_name("  Li   MING ") == "li ming"
        assert normalize_name("li\tming\n") == "li ming"

    def test_nfkc(self):
        assert normalize_name("Ｌｉ Ｍｉｎｇ") == "li ming"

    def test_casefold_not_lower(self):
        assert normalize_name("Straße") == normalize_name("STRASSE")

    def test_type_synonyms(self):
        assert normalize_entity_type("company") == "Organization"
        assert normalize_entity_type(" PLACE ") == "Location"
        assert normalize_entity_type("Person") == "Person"
        assert normalize_entity_type("spaceship") == "Other"
        assert normalize_entity_type("") == "Other"

    def test_relation_label_keeps_case(self):
        assert normalize_relation_type("  works   at ") == "works at"
        assert normalize_relation_type("Sibling Of") == "Sibling Of"

    def test_tokenize_mixed(self):
        assert tokenize("Li Ming 在字节上班") == ["li", "ming", "在字", "字节", "节上", "上班"]

    def test_tokenize_drops_single_latin_chars(self):
        assert tokenize("a b cd") == ["cd"]

    def test_tokenize_single_cjk(self):
        assert tokenize("我 ok") == ["我", "ok"]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolve:
    def test_creates_on_miss(self, resolver, tmp_storage):
        eid = resolver.resolve("Li Ming", "Person")
        entity = tmp_storage.get_entity(eid)
        assert entity["name"] == "Li Ming"
        assert entity["type"] == "Person"

    def test_case_and_whitespace_variants_hit(self, resolver, tmp_storage):
        first = resolver.resolve("Li Ming", "Person")
        resolver.reset_batch()
        assert resolver.resolve("  li   MING", "person") == first
        # display name keeps the first-seen casing
        assert tmp_storage.get_entity(first)["name"] == "Li Ming"
        assert tmp_storage.stats()["entities"] == 1

    def test_type_synonym_folding(self, resolver):
        acme = resolver.resolve("Acme", "company")
        assert resolver.resolve("ACME", "org") == acme

    def test_same_name_other_type_is_distinct(self, resolver):
        person = resolver.resolve("Jordan", "Person")
        place = resolver.resolve("Jordan", "Location")
        assert person != place

    def test_alias_hit(self, resolver, tmp_storage):
        eid = resolver.resolve("Li Ming", "Person")
        tmp_storage.insert_alias(eid, "my older brother")
        resolver.reset_batch()
        assert resolver.resolve("My Older Brother", "Person") == eid
        assert tmp_storage.stats()["entities"] == 1

    def test_idempotent_within_batch(self, resolver, tmp_storage):
        a = resolver.resolve("Alice", "Person")
        b = resolver.resolve("alice", "Person")
        assert a == b
        assert tmp_storage.stats()["entities"] == 1

    def test_stale_batch_entry_is_dropped(self, resolver, tmp_storage):
        old = resolver.resolve("Alice", "Person")
        tmp_storage.delete_entity(old)
        new = resolver.resolve("Alice", "Person")
        assert new != old
        assert tmp_storage.get_entity(new) is not None

    def test_attributes_merge_incoming_wins(self, resolver, tmp_storage):
        eid = resolver.resolve("Li Ming", "Person", {"role": "colleague", "city": "Hangzhou"})
        resolver.resolve("Li Ming", "Person", {"role": "brother"})
        assert tmp_storage.get_entity(eid)["attributes"] == {
            "role": "brother",
            "city": "Hangzhou",
        }

    def test_empty_name_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve("   ", "Person")

    def test_nfkc_variant_hits(self, resolver):
        eid = resolver.resolve("Li Ming", "Person")
        resolver.reset_batch()
        assert resolver.resolve("Ｌｉ Ｍｉｎｇ", "Person") == eid

    def test_exact_match_beats_conflicting_alias(self, resolver, tmp_storage):
        boss = tmp_storage.insert_entity("Person", "Boss")
        alice = tmp_storage.insert_entity("Person", "Alice")
        tmp_storage.insert_alias(alice, "boss")
        with pytest.warns(ResolutionAmbiguous) as record:
            assert resolver.resolve("boss", "Person") == boss
        warning = record[0].message
        assert warning.chosen_id == boss
        assert set(warning.candidate_ids) == {boss, alice}

    def test_no_warning_when_alias_agrees(self, resolver, tmp_storage):
        eid = tmp_storage.insert_entity("Person", "Boss")
        tmp_storage.insert_alias(eid, "boss")
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            assert resolver.resolve("Boss", "Person") == eid


class TestFind:
    def test_find_by_name_any_type(self, resolver):
        eid = resolver.resolve("Hangzhou", "Location")
        assert resolver.find("HANGZHOU") == eid

    def test_find_by_alias(self, resolver, tmp_storage):
        eid = resolver.resolve("Li Ming", "Person")
        tmp_storage.insert_alias(eid, "big bro")
        assert resolver.find("Big  Bro") == eid

    def test_find_miss(self, resolver, tmp_storage):
        assert resolver.find("nobody") is None
        assert resolver.find("   ") is None
        assert tmp_storage.stats()["entities"] == 0

    def test_find_ambiguous_uses_lowest_id(self, resolver):
        person = resolver.resolve("Apple", "Person")
        org = resolver.resolve("Apple", "Organization")
        with pytest.warns(ResolutionAmbiguous):
            assert resolver.find("apple") == min(person, org)
