"""
tests/test_serializer.py
========================
Structural serialization and the diagnostic pretty-printer.
"""

import json
import logging
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from grandconv._serializer import format_tree, log_tree, tree_to_document, tree_to_json
from grandconv._tree import Tree

from test_tree import caterpillar_parents


@pytest.fixture(scope="module")
def ab_tree():
    return Tree.from_newick("(A:1,B:2);")


class TestDocument:
    def test_two_leaf_shape(self, ab_tree):
        doc = tree_to_document(ab_tree)
        assert len(doc["children"]) == 2
        for child in doc["children"]:
            assert "children" not in child
        assert [c["name"] for c in doc["children"]] == ["A", "B"]

    def test_root_fields(self, ab_tree):
        doc = tree_to_document(ab_tree)
        assert doc["id"] == 2
        assert doc["name"] == "Root"
        assert doc["length"] == 0.0

    def test_field_types(self, ab_tree):
        doc = tree_to_document(ab_tree)
        leaf = doc["children"][1]
        assert type(leaf["id"]) is int
        assert type(leaf["length"]) is float
        assert leaf == {"id": 1, "name": "B", "length": 2.0}

    def test_sibling_order_follows_children(self):
        t = Tree([3, 3, 3, -1], [1, 2, 3, 0], names=["x", "y", "z"])
        doc = tree_to_document(t)
        assert [c["id"] for c in doc["children"]] == t.children(t.root)

    def test_nested_internal_nodes(self):
        t = Tree.from_newick("((A:1,B:1):0.5,C:2);")
        doc = tree_to_document(t)
        inner = doc["children"][0]
        assert inner["name"] == "Internal"
        assert inner["length"] == 0.5
        assert [c["name"] for c in inner["children"]] == ["A", "B"]
        assert "children" not in doc["children"][1]

    def test_document_is_fresh_each_call(self, ab_tree):
        first = tree_to_document(ab_tree)
        first["children"].clear()
        assert len(tree_to_document(ab_tree)["children"]) == 2

    def test_deep_tree_does_not_recurse(self):
        n_leaves = 4000
        t = Tree(caterpillar_parents(n_leaves), np.ones(2 * n_leaves - 1))
        doc = tree_to_document(t)
        depth = 0
        node = doc
        while "children" in node:
            node = node["children"][-1]
            depth += 1
        assert depth == n_leaves - 1


class TestJson:
    def test_canonical_rendering(self, ab_tree):
        assert tree_to_json(ab_tree) == (
            '{"children":[{"id":0,"length":1.0,"name":"A"},'
            '{"id":1,"length":2.0,"name":"B"}],'
            '"id":2,"length":0.0,"name":"Root"}'
        )

    def test_deterministic(self):
        t = Tree.from_newick("((A:0.1,B:0.2):0.5,(C:0.3,D:0.4):0.6);")
        assert tree_to_json(t) == tree_to_json(t)

    def test_parses_back(self, ab_tree):
        assert json.loads(tree_to_json(ab_tree)) == tree_to_document(ab_tree)


class TestPrettyPrinter:
    def test_indented_pre_order(self):
        t = Tree.from_newick("((A,B),C);")
        assert format_tree(t) == "Root\n  Internal\n    A\n    B\n  C"

    def test_custom_indent(self):
        t = Tree.from_newick("(A,B);")
        assert format_tree(t, indent=4) == "Root\n    A\n    B"

    def test_log_tree_at_debug(self, caplog):
        t = Tree.from_newick("((A,B),C);")
        with caplog.at_level(logging.DEBUG, logger="grandconv._serializer"):
            log_tree(t)
        lines = [r.getMessage() for r in caplog.records if r.name == "grandconv._serializer"]
        assert lines == ["Root", "  Internal", "    A", "    B", "  C"]
        assert all(r.levelno == logging.DEBUG for r in caplog.records if r.name == "grandconv._serializer")

    def test_log_tree_silent_above_debug(self, caplog):
        t = Tree.from_newick("(A,B);")
        with caplog.at_level(logging.INFO, logger="grandconv._serializer"):
            log_tree(t)
        assert not [r for r in caplog.records if r.name == "grandconv._serializer"]
