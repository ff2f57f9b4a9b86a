"""
Unit tests for cl_knowledge.graph.hashing
"""

from __future__ import annotations


class TestContentHash:
    def test_stable(self):
        from cl_knowledge.graph.hashing import generate_content_hash
        for text in ("", "hello", "# Title\n\nBody with ünïcödé"):
            assert generate_content_hash(text) == generate_content_hash(text)

    def test_distinct_inputs(self):
        from cl_knowledge.graph.hashing import generate_content_hash
        assert generate_content_hash("alpha") != generate_content_hash("beta")
        assert generate_content_hash("note") != generate_content_hash("note ")

    def test_format(self):
        from cl_knowledge.graph.hashing import generate_content_hash
        h = generate_content_hash("hello")
        assert h == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"

    def test_str_and_utf8_bytes_agree(self):
        from cl_knowledge.graph.hashing import generate_content_hash
        text = "Café"
        assert generate_content_hash(text) == generate_content_hash(text.encode("utf-8"))

