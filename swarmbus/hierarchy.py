"""Hierarchy codes for the spawn tree.

A hierarchy code is a dot-separated list of non-negative integers describing
where a worker sits in the tree: ``0`` is the queen, ``0.1`` is her first
child, ``0.1.2`` the second child of that child, and so on. All helpers here
are pure functions over code strings.

Segment alignment matters everywhere: ``0.10`` is *not* below ``0.1`` even
though one string is a prefix of the other, so comparisons always split on
the dot and compare whole segments.
"""

from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, NamedTuple, Optional, Protocol, TypeVar

from rich.tree import Tree

ROOT_CODE = "0"
SEPARATOR = "."


class Coded(Protocol):
    """Anything carrying a hierarchy code."""

    code: str


T = TypeVar("T", bound=Coded)


class CodedEntry(NamedTuple):
    """A minimal named position in the tree."""

    name: str
    code: str


def segments(code: str) -> tuple[int, ...]:
    """Split a code into its integer segments: ``"0.1.2"`` -> ``(0, 1, 2)``."""
    return tuple(int(part) for part in code.split(SEPARATOR))


def is_valid_code(code: object) -> bool:
    """Check that *code* is a non-empty dot-separated list of non-negative integers."""
    if not isinstance(code, str) or not code:
        return False
    return all(part.isascii() and part.isdigit() for part in code.split(SEPARATOR))


def depth(code: str) -> int:
    """Number of levels below the root: ``depth("0.1.2") == 2``."""
    return code.count(SEPARATOR)


def parent(code: str) -> str:
    """Strip the final segment. The root has no parent, returned as ``""``."""
    return code.rpartition(SEPARATOR)[0]


def child_code(parent_code: str, index: int) -> str:
    """Code of the *index*-th child of *parent_code* (children count from 1)."""
    if index < 0:
        raise ValueError(f"Child index must be non-negative, got {index}")
    return f"{parent_code}{SEPARATOR}{index}"


def is_descendant(code: str, ancestor: str) -> bool:
    """True when *code* lies strictly below *ancestor*.

    A code is never its own descendant, and the test is segment aligned
    (``is_descendant("0.10", "0.1")`` is False).
    """
    if code == ancestor or not ancestor:
        return False
    own = code.split(SEPARATOR)
    above = ancestor.split(SEPARATOR)
    return len(own) > len(above) and own[: len(above)] == above


def sort_key(code: str) -> tuple[int, ...]:
    """Segment-wise numeric ordering so that ``0.2`` sorts before ``0.10``."""
    return segments(code)


@dataclass
class HierarchyTree(Generic[T]):
    """Relationships computed over a set of coded entries.

    Attributes:
        children: Parent code -> direct children, ordered by code
        order: Pre-order traversal; every parent precedes its children
    """

    children: dict[str, list[T]] = field(default_factory=dict)
    order: list[T] = field(default_factory=list)

    def roots(self) -> list[T]:
        """Entries whose parent code has no entry of its own."""
        present = {entry.code for entry in self.order}
        return [entry for entry in self.order if parent(entry.code) not in present]


def build_tree(entries: Iterable[T]) -> HierarchyTree[T]:
    """Group *entries* by parent code and compute a pre-order traversal.

    Entries whose parent is missing are kept: they are recorded as children
    of the absent code and start their own branch of the traversal.
    """
    ordered = sorted(entries, key=lambda entry: sort_key(entry.code))

    children: dict[str, list[T]] = {}
    for entry in ordered:
        children.setdefault(parent(entry.code), []).append(entry)

    present = {entry.code for entry in ordered}
    roots = [entry for entry in ordered if parent(entry.code) not in present]

    order: list[T] = []
    expanded: set[str] = set()

    def visit(entry: T) -> None:
        order.append(entry)
        # Two entries may share a code; expand the subtree only once
        if entry.code in expanded:
            return
        expanded.add(entry.code)
        for child in children.get(entry.code, []):
            visit(child)

    for root in roots:
        visit(root)

    return HierarchyTree(children=children, order=order)


def render_tree(
    entries: Iterable[T],
    label: Optional[Callable[[T], str]] = None,
    title: str = "swarm",
) -> Tree:
    """Render the hierarchy of *entries* as a rich Tree."""
    if label is None:
        label = lambda entry: f"{getattr(entry, 'name', '?')} [dim]{entry.code}[/dim]"

    tree = build_tree(entries)
    root = Tree(title)
    nodes: dict[str, Tree] = {}

    for entry in tree.order:
        branch = nodes.get(parent(entry.code), root)
        node = branch.add(label(entry))
        nodes.setdefault(entry.code, node)

    return root
