"""Tests for hierarchy code helpers."""

import pytest
from rich.console import Console

from swarmbus.hierarchy import (
    CodedEntry,
    build_tree,
    child_code,
    depth,
    is_descendant,
    is_valid_code,
    parent,
    render_tree,
    sort_key,
)


class TestDepthAndParent:
    def test_depth(self):
        assert depth("0") == 0
        assert depth("0.1") == 1
        assert depth("0.1.2") == 2

    def test_parent_chain_reaches_empty(self):
        code = "0.1.2.3"
        for _ in range(3):
            code = parent(code)
        assert code == "0"
        assert parent(code) == ""

    def test_parent_of_root(self):
        assert parent("0") == ""

    def test_child_code(self):
        assert child_code("0", 1) == "0.1"
        assert child_code("0.1", 12) == "0.1.12"

    def test_child_code_rejects_negative(self):
        with pytest.raises(ValueError):
            child_code("0", -1)


class TestIsDescendant:
    """Segment-aligned descendant checks."""

    def test_direct_child(self):
        assert is_descendant("0.1", "0")
        assert is_descendant("0.1.2", "0.1")

    def test_grandchild(self):
        assert is_descendant("0.1.2", "0")

    def test_not_self(self):
        assert not is_descendant("0.1", "0.1")

    def test_string_prefix_is_not_descent(self):
        assert not is_descendant("0.10", "0.1")

    def test_sibling(self):
        assert not is_descendant("0.2", "0.1")

    def test_ancestor_is_not_descendant(self):
        assert not is_descendant("0", "0.1")


class TestValidation:
    @pytest.mark.parametrize("code", ["0", "0.1", "0.12.3", "7"])
    def test_valid(self, code):
        assert is_valid_code(code)

    @pytest.mark.parametrize("code", ["", ".", "0.", ".1", "0..1", "0.a", "-1", None, 0])
    def test_invalid(self, code):
        assert not is_valid_code(code)

    def test_numeric_sort(self):
        codes = ["0.10", "0.2", "0.1.5", "0.1"]
        assert sorted(codes, key=sort_key) == ["0.1", "0.1.5", "0.2", "0.10"]


class TestBuildTree:
    """Tree construction over coded entries."""

    @pytest.fixture
    def entries(self):
        return [
            CodedEntry("b1", "0.2"),
            CodedEntry("a2", "0.1.2"),
            CodedEntry("coord", "0.1"),
            CodedEntry("a1", "0.1.1"),
        ]

    def test_preorder_starts_with_coord(self, entries):
        tree = build_tree(entries)
        assert [e.name for e in tree.order] == ["coord", "a1", "a2", "b1"]

    def test_root_children(self, entries):
        tree = build_tree(entries)
        assert [e.name for e in tree.children["0"]] == ["coord", "b1"]

    def test_coord_children_ordered(self, entries):
        tree = build_tree(entries)
        assert [e.name for e in tree.children["0.1"]] == ["a1", "a2"]

    def test_numeric_child_order(self):
        tree = build_tree([CodedEntry("ten", "0.10"), CodedEntry("two", "0.2")])
        assert [e.name for e in tree.children["0"]] == ["two", "ten"]

    def test_orphans_are_kept(self):
        tree = build_tree([CodedEntry("q", "0"), CodedEntry("lost", "0.3.1")])
        assert [e.name for e in tree.children["0.3"]] == ["lost"]
        assert [e.name for e in tree.order] == ["q", "lost"]
        assert [e.name for e in tree.roots()] == ["q", "lost"]

    def test_parent_precedes_children(self):
        entries = [CodedEntry(f"n{i}", code) for i, code in enumerate(
            ["0.2.1", "0", "0.1.1.1", "0.1", "0.2", "0.1.1"]
        )]
        order = [e.code for e in build_tree(entries).order]
        for code in order:
            if parent(code) in order:
                assert order.index(parent(code)) < order.index(code)

    def test_empty(self):
        tree = build_tree([])
        assert tree.order == []
        assert tree.children == {}


class TestRenderTree:
    def test_render_contains_names(self):
        tree = render_tree(
            [CodedEntry("queen", "0"), CodedEntry("coord", "0.1"), CodedEntry("a1", "0.1.1")],
            title="run",
        )
        console = Console(record=True, width=80)
        console.print(tree)
        text = console.export_text()
        assert "run" in text
        assert "queen" in text
        assert "a1" in text

    def test_nesting_follows_codes(self):
        tree = render_tree([CodedEntry("queen", "0"), CodedEntry("coord", "0.1")])
        assert len(tree.children) == 1
        assert len(tree.children[0].children) == 1

    def test_custom_label(self):
        tree = render_tree([CodedEntry("queen", "0")], label=lambda e: e.name.upper())
        assert tree.children[0].label == "QUEEN"
