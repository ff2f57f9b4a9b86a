"""
Unit tests for cl_knowledge.graph.search
"""

from __future__ import annotations

import pytest


@pytest.fixture
def db(tmp_path):
    from cl_knowledge.graph.database import KnowledgeGraphDatabase
    store = KnowledgeGraphDatabase(str(tmp_path / "kg.db"))
    yield store
    store.close()


def _add(db, path, title, summary=None, state="fluid", vault="v", confidence="medium"):
    from cl_knowledge.graph.models import KnowledgeNode
    return db.insert_node(KnowledgeNode(
        path=path, title=title, vault_name=vault, content_hash=f"h-{vault}-{path}",
        state=state, confidence=confidence, content_summary=summary,
    ))


class TestMatchExpression:
    def test_words_are_quoted(self):
        from cl_knowledge.graph.search import build_match_expression
        assert build_match_expression("heat engine") == '"heat" "engine"'

    def test_operators_and_punctuation_neutralised(self):
        from cl_knowledge.graph.search import build_match_expression
        assert build_match_expression('AND "(x* OR') == '"AND" "x" "OR"'
        assert build_match_expression("  ??? ") == ""


class TestSearchNodes:
    def test_finds_by_title_and_summary(self, db):
        from cl_knowledge.graph.search import search_nodes
        a = _add(db, "thermo.md", "Thermodynamics", "laws of heat and energy")
        b = _add(db, "mech.md", "Mechanics", "forces and motion")
        assert [h.node.id for h in search_nodes(db, "thermodynamics")] == [a]
        assert [h.node.id for h in search_nodes(db, "motion")] == [b]
        assert search_nodes(db, "quantum") == []

    def test_all_terms_required(self, db):
        from cl_knowledge.graph.search import search_nodes
        a = _add(db, "a.md", "Heat engines", "carnot cycle")
        _add(db, "b.md", "Heat pumps", "refrigeration")
        assert [h.node.id for h in search_nodes(db, "heat carnot")] == [a]

    def test_filters(self, db):
        from cl_knowledge.graph.search import search_nodes
        _add(db, "a.md", "Entropy basics", state="fluid")
        c = _add(db, "b.md", "Entropy definition", state="crystal", confidence="high")
        other = _add(db, "a.md", "Entropy elsewhere", vault="w")
        assert [h.node.id for h in search_nodes(db, "entropy", state="crystal")] == [c]
        assert [h.node.id for h in search_nodes(db, "entropy", vault_name="w")] == [other]
        assert len(search_nodes(db, "entropy", limit=2)) == 2

    def test_hostile_input_does_not_raise(self, db):
        from cl_knowledge.graph.search import search_nodes
        _add(db, "a.md", "Entropy")
        assert search_nodes(db, 'entropy" ( *') != []
        assert search_nodes(db, "NEAR(") == []
        assert search_nodes(db, "") == []

    def test_raw_expression(self, db):
        from cl_knowledge.graph.errors import ValidationError
        from cl_knowledge.graph.search import search_nodes
        a = _add(db, "a.md", "Entropy")
        _add(db, "b.md", "Enthalpy")
        assert [h.node.id for h in search_nodes(db, "entr*", raw=True)] == [a]
        with pytest.raises(ValidationError):
            search_nodes(db, '"unterminated', raw=True)

    def test_reflects_updates_and_deletes(self, db):
        from cl_knowledge.graph.search import search_nodes
        a = _add(db, "a.md", "Entropy")
        db.update_node(a, {"title": "Disorder"})
        assert search_nodes(db, "entropy") == []
        assert [h.node.title for h in search_nodes(db, "disorder")] == ["Disorder"]
        db.delete_node(a)
        assert search_nodes(db, "disorder") == []

    def test_invalid_state_filter(self, db):
        from cl_knowledge.graph.errors import ValidationError
        from cl_knowledge.graph.search import search_nodes
        with pytest.raises(ValidationError):
            search_nodes(db, "x", state="steam")


class TestViews:
    def test_authority_hierarchy(self, db):
        from cl_knowledge.graph.models import SemanticEdge
        from cl_knowledge.graph.search import get_authority_hierarchy
        hub = _add(db, "hub.md", "Hub", state="crystal")
        a = _add(db, "a.md", "A")
        b = _add(db, "b.md", "B")
        db.insert_edge(SemanticEdge(a, hub, "depends_on"))
        db.insert_edge(SemanticEdge(b, hub, "depends_on"))
        db.set_authority_weights({hub: 1.0})
        rows = get_authority_hierarchy(db, "v")
        assert rows[0]["id"] == hub
        assert rows[0]["dependent_count"] == 2
        assert [r["id"] for r in get_authority_hierarchy(db, "v", state="crystal")] == [hub]

    def test_knowledge_evolution(self, db):
        from cl_knowledge.graph.search import get_knowledge_evolution
        a = _add(db, "a.md", "A")
        db.apply_state_transition(a, "gel", reason="working conclusion")
        db.apply_state_transition(a, "fluid", reason="reopened")
        rows = get_knowledge_evolution(db, "v")
        assert [r["to_state"] for r in rows] == ["fluid", "gel"]
        assert rows[0]["node_id"] == a
        assert get_knowledge_evolution(db, node_id=999) == []

    def test_relationship_network(self, db):
        from cl_knowledge.graph.models import SemanticEdge
        from cl_knowledge.graph.search import get_relationship_network
        a = _add(db, "a.md", "A")
        b = _add(db, "b.md", "B")
        db.insert_edge(SemanticEdge(a, b, "links_to", confidence=0.3))
        db.insert_edge(SemanticEdge(a, b, "depends_on", confidence=0.9, inferred=True))
        rows = get_relationship_network(db, "v", min_confidence=0.5)
        assert len(rows) == 1
        assert rows[0]["source_path"] == "a.md"
        assert rows[0]["target_path"] == "b.md"
        assert rows[0]["inferred"] is True
        assert len(get_relationship_network(db, relation_type="links_to")) == 1

    def test_crystal_authority_conflicts(self, db):
        from cl_knowledge.graph.search import find_crystal_authority_conflicts
        c1 = _add(db, "c1.md", "C1", state="crystal", confidence="high")
        c2 = _add(db, "c2.md", "C2", state="crystal", confidence="high")
        g = _add(db, "g.md", "G", state="gel")
        contested = db.upsert_entity("Entropy", "concept", "v")
        settled = db.upsert_entity("Enthalpy", "concept", "v")
        db.record_mention(contested, c1, "Entropy", mention_type="definition")
        db.record_mention(contested, c2, "Entropy", mention_type="definition")
        db.record_mention(settled, c1, "Enthalpy", mention_type="definition")
        db.record_mention(settled, g, "Enthalpy", mention_type="definition")
        db.record_mention(settled, c2, "Enthalpy", mention_type="reference")

        conflicts = find_crystal_authority_conflicts(db, "v")
        assert len(conflicts) == 1
        assert conflicts[0].entity_name == "Entropy"
        assert sorted(conflicts[0].node_paths) == ["c1.md", "c2.md"]
