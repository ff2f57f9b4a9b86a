"""
Unit tests for cl_knowledge.vault.frontmatter
"""

from __future__ import annotations

NOTE = """---
title: Entropy
state: Crystal
confidence: high
dependencies:
  - "[[Thermodynamics]]"
  - Statistical Mechanics
summary: Measure of disorder.
---
# Entropy in practice

Entropy grows, see [[Second Law|the second law]] and [[Boltzmann#Formula]].
"""


class TestSplitFrontmatter:
    def test_split(self):
        from cl_knowledge.vault.frontmatter import split_frontmatter
        meta, body = split_frontmatter(NOTE)
        assert meta["title"] == "Entropy"
        assert body.startswith("# Entropy in practice")

    def test_no_frontmatter(self):
        from cl_knowledge.vault.frontmatter import split_frontmatter
        meta, body = split_frontmatter("# Just a note\n")
        assert meta == {}
        assert body == "# Just a note\n"

    def test_invalid_yaml_ignored(self):
        from cl_knowledge.vault.frontmatter import split_frontmatter
        meta, body = split_frontmatter("---\ntitle: [unclosed\n---\nbody\n")
        assert meta == {}
        assert body == "body\n"

    def test_non_mapping_yaml_ignored(self):
        from cl_knowledge.vault.frontmatter import split_frontmatter
        meta, _ = split_frontmatter("---\n- a\n- b\n---\nbody")
        assert meta == {}


class TestWikilinks:
    def test_targets_and_aliases(self):
        from cl_knowledge.vault.frontmatter import extract_wikilinks
        links = extract_wikilinks("See [[A]], [[B|bee]] and [[folder/C#Heading|c]]. [[ ]]")
        assert [l.target for l in links] == ["A", "B", "folder/C#Heading"]
        assert [l.alias for l in links] == [None, "bee", "c"]
        assert links[2].note_name == "folder/C"
        assert links[0].position == 4

    def test_no_links(self):
        from cl_knowledge.vault.frontmatter import extract_wikilinks
        assert extract_wikilinks("plain [text] here") == []


class TestParseNote:
    def test_full_note(self):
        from cl_knowledge.vault.frontmatter import parse_note
        note = parse_note(NOTE, "physics/entropy.md")
        assert note.title == "Entropy"
        assert note.state == "crystal"
        assert note.confidence == "high"
        assert note.summary == "Measure of disorder."
        assert note.dependencies == ["Thermodynamics", "Statistical Mechanics"]
        assert [l.note_name for l in note.wikilinks] == ["Second Law", "Boltzmann"]

    def test_title_falls_back_to_heading_then_filename(self):
        from cl_knowledge.vault.frontmatter import parse_note
        assert parse_note("# Heading Title\n\ntext", "x.md").title == "Heading Title"
        assert parse_note("no heading here", "dir/My Note.md").title == "My Note"

    def test_summary_from_first_paragraph(self):
        from cl_knowledge.vault.frontmatter import SUMMARY_MAX_CHARS, parse_note
        note = parse_note("# T\n\nFirst   paragraph\nwraps.\n\nSecond.", "t.md")
        assert note.summary == "First paragraph wraps."
        long_note = parse_note("word " * 100, "t.md")
        assert len(long_note.summary) == SUMMARY_MAX_CHARS
        assert long_note.summary.endswith("...")

    def test_missing_lifecycle_fields(self):
        from cl_knowledge.vault.frontmatter import parse_note
        note = parse_note("just text", "t.md")
        assert note.state is None
        assert note.confidence is None
        assert note.dependencies == []

    def test_single_dependency_string(self):
        from cl_knowledge.vault.frontmatter import parse_note
        note = parse_note("---\ndependencies: '[[Base]]'\n---\n", "t.md")
        assert note.dependencies == ["Base"]


class TestSetLifecycleState:
    def test_updates_fields_and_appends_history(self):
        from cl_knowledge.vault.frontmatter import parse_note, set_lifecycle_state, split_frontmatter
        text = set_lifecycle_state(NOTE, "gel", "revisiting the derivation", confidence="medium",
                                   timestamp="2026-01-02T03:04:05+00:00")
        meta, body = split_frontmatter(text)
        assert meta["state"] == "gel"
        assert meta["confidence"] == "medium"
        assert meta["modified"] == "2026-01-02T03:04:05+00:00"
        assert meta["title"] == "Entropy"
        assert meta["state_history"] == [{
            "from": "crystal",
            "to": "gel",
            "timestamp": "2026-01-02T03:04:05+00:00",
            "reason": "revisiting the derivation",
            "confidence": "medium",
        }]
        assert body.startswith("# Entropy in practice")
        assert parse_note(text, "entropy.md").dependencies == ["Thermodynamics", "Statistical Mechanics"]

        again = set_lifecycle_state(text, "crystal", "re-validated after revision")
        history = split_frontmatter(again)[0]["state_history"]
        assert [(h["from"], h["to"]) for h in history] == [("crystal", "gel"), ("gel", "crystal")]

    def test_note_without_frontmatter(self):
        from cl_knowledge.vault.frontmatter import parse_note, set_lifecycle_state
        text = set_lifecycle_state("# Draft\n\nBody.\n", "fluid", "first capture")
        note = parse_note(text, "draft.md")
        assert note.state == "fluid"
        assert note.title == "Draft"
        assert note.frontmatter["state_history"][0]["from"] is None
