"""Tests for alias registration and entity merges."""

import pytest

from notegraph.errors import EntityNotFound, IntegrityViolation
from notegraph.merge import MergeCoordinator
from notegraph.relations import RelationPolicy
from notegraph.resolver import EntityResolver


@pytest.fixture
def merger(tmp_storage):
    return MergeCoordinator(tmp_storage)


@pytest.fixture
def pair(tmp_storage):
    """(canonical, duplicate, company) entity ids."""
    alice = tmp_storage.insert_entity("Person", "Alice", {"role": "colleague"})
    alicia = tmp_storage.insert_entity("Person", "Alicia", {"role": "friend", "city": "Oslo"})
    acme = tmp_storage.insert_entity("Organization", "Acme")
    return alice, alicia, acme


# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------

class TestAddAlias:
    def test_add_and_repeat(self, merger, tmp_storage, pair):
        alice, _, _ = pair
        alias_id = merger.add_alias(alice, "Ally")
        assert alias_id is not None
        assert merger.add_alias(alice, "  ALLY ") == alias_id
        assert tmp_storage.get_entity(alice)["aliases"] == ["Ally"]

    def test_own_name_is_not_an_alias(self, merger, tmp_storage, pair):
        alice, _, _ = pair
        assert merger.add_alias(alice, "alice") is None
        assert tmp_storage.list_aliases() == []

    def test_existing_mapping_kept(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        merger.add_alias(alice, "Ally")
        assert merger.add_alias(alicia, "ally") is None
        assert tmp_storage.find_alias("ally")["entity_id"] == alice

    def test_invalid(self, merger, pair):
        alice, _, _ = pair
        with pytest.raises(ValueError):
            merger.add_alias(alice, "   ")
        with pytest.raises(EntityNotFound):
            merger.add_alias(999, "ghost")


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

class TestMerge:
    def test_duplicate_removed_and_name_kept_as_alias(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        report = merger.merge(alice, alicia)
        assert tmp_storage.get_entity(alicia) is None
        assert report.alias_added is True
        assert tmp_storage.find_alias("alicia")["entity_id"] == alice

    def test_resolves_to_canonical_after_merge(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        merger.merge(alice, alicia)
        resolver = EntityResolver(tmp_storage)
        assert resolver.resolve("ALICIA", "Person") == alice
        assert resolver.find("alicia") == alice
        assert tmp_storage.stats()["entities"] == 2

    def test_cross_type_merge_keeps_name_resolvable(self, merger, tmp_storage):
        person = tmp_storage.insert_entity("Person", "Apple")
        org = tmp_storage.insert_entity("Organization", "Apple")
        report = merger.merge(person, org)
        assert report.alias_added is True
        assert EntityResolver(tmp_storage).resolve("apple", "Organization") == person

    def test_aliases_move(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        tmp_storage.insert_alias(alicia, "Lici")
        report = merger.merge(alice, alicia)
        assert report.aliases_moved == 1
        assert tmp_storage.find_alias("lici")["entity_id"] == alice

    def test_links_move_and_shared_links_drop(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        shared = tmp_storage.insert_memory("Alice aka Alicia")
        only_dup = tmp_storage.insert_memory("Alicia alone")
        tmp_storage.insert_link(shared, alice)
        tmp_storage.insert_link(shared, alicia)
        tmp_storage.insert_link(only_dup, alicia)

        report = merger.merge(alice, alicia)
        assert report.links_dropped == 1
        assert report.links_moved == 1
        assert tmp_storage.entity_ids_for_memory(shared) == {alice}
        assert tmp_storage.entity_ids_for_memory(only_dup) == {alice}

    def test_colliding_relations_fold(self, merger, tmp_storage, pair):
        alice, alicia, acme = pair
        tmp_storage.insert_relation(alice, acme, "works at", 1)
        tmp_storage.insert_relation(alicia, acme, "works at", 2)

        report = merger.merge(alice, alicia)
        assert report.relations_folded == 1
        rows = tmp_storage.list_relations()
        assert len(rows) == 1
        assert rows[0]["strength"] == 3

    def test_colliding_incoming_relations_fold(self, merger, tmp_storage, pair):
        alice, alicia, acme = pair
        tmp_storage.insert_relation(acme, alice, "employs", 4)
        tmp_storage.insert_relation(acme, alicia, "employs", 1)
        merger.merge(alice, alicia)
        assert tmp_storage.find_relation(acme, alice, "employs")["strength"] == 5
        assert len(tmp_storage.list_relations()) == 1

    def test_different_types_do_not_fold(self, merger, tmp_storage, pair):
        alice, alicia, acme = pair
        tmp_storage.insert_relation(alice, acme, "works at", 1)
        tmp_storage.insert_relation(alicia, acme, "likes", 1)
        report = merger.merge(alice, alicia)
        assert report.relations_moved == 1
        assert report.relations_folded == 0
        assert tmp_storage.find_relation(alice, acme, "likes")["strength"] == 1
        assert len(tmp_storage.list_relations()) == 2

    def test_self_loop_dropped(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        tmp_storage.insert_relation(alice, alicia, "knows", 1)
        report = merger.merge(alice, alicia)
        assert report.self_loops_dropped == 1
        assert tmp_storage.list_relations() == []

    def test_symmetric_relation_reordered(self, tmp_storage):
        merger = MergeCoordinator(tmp_storage, RelationPolicy(["sibling of"]))
        first = tmp_storage.insert_entity("Person", "Li Ming")
        sister = tmp_storage.insert_entity("Person", "Li Hua")
        dup = tmp_storage.insert_entity("Person", "Ming")
        tmp_storage.insert_relation(sister, dup, "sibling of", 1)

        merger.merge(first, dup)
        assert tmp_storage.find_relation(first, sister, "sibling of")["strength"] == 1
        assert tmp_storage.find_relation(sister, first, "sibling of") is None

    def test_symmetric_relation_folds_after_reorder(self, tmp_storage):
        merger = MergeCoordinator(tmp_storage, RelationPolicy(["sibling of"]))
        first = tmp_storage.insert_entity("Person", "Li Ming")
        sister = tmp_storage.insert_entity("Person", "Li Hua")
        dup = tmp_storage.insert_entity("Person", "Ming")
        tmp_storage.insert_relation(first, sister, "sibling of", 2)
        tmp_storage.insert_relation(sister, dup, "sibling of", 1)

        report = merger.merge(first, dup)
        assert report.relations_folded == 1
        assert tmp_storage.find_relation(first, sister, "sibling of")["strength"] == 3

    def test_attributes_canonical_wins(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        merger.merge(alice, alicia)
        assert tmp_storage.get_entity(alice)["attributes"] == {
            "role": "colleague",
            "city": "Oslo",
        }

    def test_duplicate_name_owned_by_third_entity(self, merger, tmp_storage, pair):
        alice, alicia, _ = pair
        carol = tmp_storage.insert_entity("Person", "Carol")
        tmp_storage.insert_alias(carol, "Alicia")
        report = merger.merge(alice, alicia)
        assert report.alias_added is True
        assert tmp_storage.find_alias("alicia")["entity_id"] == alice
        assert tmp_storage.aliases_for_entity(carol) == []
        assert tmp_storage.get_entity(alicia) is None
        assert EntityResolver(tmp_storage).find("Alicia") == alice

    def test_failure_rolls_back_everything(self, merger, tmp_storage, pair, monkeypatch):
        alice, alicia, acme = pair
        tmp_storage.insert_alias(alicia, "Lici")
        tmp_storage.insert_relation(alicia, acme, "works at", 1)
        mid = tmp_storage.insert_memory("Alicia at Acme")
        tmp_storage.insert_link(mid, alicia)

        def boom(entity_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(tmp_storage, "delete_entity", boom)
        with pytest.raises(RuntimeError):
            merger.merge(alice, alicia)

        assert tmp_storage.get_entity(alicia) is not None
        assert tmp_storage.find_alias("lici")["entity_id"] == alicia
        assert tmp_storage.find_alias("alicia") is None
        assert tmp_storage.find_relation(alicia, acme, "works at") is not None
        assert tmp_storage.entity_ids_for_memory(mid) == {alicia}

    def test_leftover_reference_aborts(self, merger, tmp_storage, pair, monkeypatch):
        alice, alicia, _ = pair
        mid = tmp_storage.insert_memory("Alicia")
        tmp_storage.insert_link(mid, alicia)
        monkeypatch.setattr(tmp_storage, "repoint_link", lambda *args: None)

        with pytest.raises(IntegrityViolation):
            merger.merge(alice, alicia)
        assert tmp_storage.get_entity(alicia) is not None
        assert tmp_storage.entity_ids_for_memory(mid) == {alicia}

    def test_invalid(self, merger, pair):
        alice, _, _ = pair
        with pytest.raises(ValueError):
            merger.merge(alice, alice)
        with pytest.raises(EntityNotFound):
            merger.merge(alice, 999)
        with pytest.raises(EntityNotFound):
            merger.merge(999, alice)

    def test_report_dict(self, merger, pair):
        alice, alicia, _ = pair
        d = merger.merge(alice, alicia).to_dict()
        assert d["canonical_id"] == alice
        assert d["duplicate_id"] == alicia
        assert d["alias_added"] is True
