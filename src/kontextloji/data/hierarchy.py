"""
hierarchy.py - Cell-type hierarchy as an explicit tree

Maps fine (leaf) cell types to the coarser parent populations that
contain them. Parent populations are the context used by Kontextual.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .config import HierarchyDefinitionError, InvalidHierarchyError

ROOT_LABEL = "__root__"


@dataclass
class HierarchyNode:
    """A labelled node with ordered children."""

    label: str
    children: List["HierarchyNode"] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def walk(self) -> Iterator["HierarchyNode"]:
        """Depth-first pre-order traversal."""
        yield self
        for child in self.children:
            yield from child.walk()


class CellTypeHierarchy:
    """
    Tree of cell-type labels.

    The root is an unnamed node; its children are the top-level
    populations. Every label appears exactly once in the tree.

    Examples
    --------
    >>> h = CellTypeHierarchy.from_mapping({
    ...     'immune': ['tcell', 'bcell', 'macrophage'],
    ...     'tcell': ['cd4', 'cd8'],
    ... })
    >>> h.parent_of('cd8')
    'tcell'
    >>> sorted(h.population('immune'))
    ['bcell', 'cd4', 'cd8', 'immune', 'macrophage', 'tcell']
    """

    def __init__(self, root: HierarchyNode):
        self.root = root
        self._validate()
        self._parents = {}
        for node in self.root.walk():
            for child in node.children:
                self._parents[child.label] = node.label
        self._nodes = {node.label: node for node in self.root.walk()}

    # ========== Construction ==========

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "CellTypeHierarchy":
        """
        Build from a {parent: children} mapping.

        Children may themselves be keys (deeper levels). Parents that are
        nobody's child become top-level populations.
        """
        mapping = {str(p): [str(c) for c in children] for p, children in mapping.items()}

        seen_parent = {}
        for parent, children in mapping.items():
            for child in children:
                if child in seen_parent and seen_parent[child] != parent:
                    raise HierarchyDefinitionError(
                        f"'{child}' is listed under both '{seen_parent[child]}' and '{parent}'"
                    )
                if child == parent:
                    raise HierarchyDefinitionError(f"'{parent}' is listed as its own child")
                seen_parent[child] = parent

        top_level = [p for p in mapping if p not in seen_parent]
        if mapping and not top_level:
            raise HierarchyDefinitionError("Hierarchy has a cycle: every parent is also a child")

        def build(label: str, path: Tuple[str, ...]) -> HierarchyNode:
            if label in path:
                raise HierarchyDefinitionError(f"Cycle through '{label}'")
            children = [build(c, path + (label,)) for c in mapping.get(label, [])]
            return HierarchyNode(label, children)

        root = HierarchyNode(ROOT_LABEL, [build(p, ()) for p in top_level])
        hierarchy = cls(root)

        unreachable = set(mapping) - set(hierarchy.labels)
        if unreachable:
            raise HierarchyDefinitionError(f"Cycle among {sorted(unreachable)}")
        return hierarchy

    @classmethod
    def from_nested(cls, nested: Mapping) -> "CellTypeHierarchy":
        """
        Build from nested dicts/lists.

        >>> CellTypeHierarchy.from_nested({'immune': {'tcell': ['cd4', 'cd8'], 'bcell': []}})
        """
        def build(label, value) -> HierarchyNode:
            if value is None:
                return HierarchyNode(str(label))
            if isinstance(value, Mapping):
                return HierarchyNode(str(label), [build(k, v) for k, v in value.items()])
            return HierarchyNode(str(label), [HierarchyNode(str(v)) for v in value])

        return cls(HierarchyNode(ROOT_LABEL, [build(k, v) for k, v in nested.items()]))

    @classmethod
    def from_linkage(cls,
                     labels: Sequence[str],
                     linkage: np.ndarray,
                     node_prefix: str = "node") -> "CellTypeHierarchy":
        """
        Build a binary tree from a scipy linkage matrix.

        Leaves are `labels`; internal nodes are named
        ``{node_prefix}_{i}`` following scipy's cluster numbering.
        """
        labels = [str(l) for l in labels]
        n = len(labels)
        linkage = np.asarray(linkage)
        if n == 1:
            return cls(HierarchyNode(ROOT_LABEL, [HierarchyNode(labels[0])]))
        if linkage.shape != (n - 1, 4):
            raise HierarchyDefinitionError(
                f"Linkage shape {linkage.shape} does not match {n} labels"
            )

        nodes = {i: HierarchyNode(labels[i]) for i in range(n)}
        for i, row in enumerate(linkage):
            left, right = int(row[0]), int(row[1])
            nodes[n + i] = HierarchyNode(f"{node_prefix}_{n + i}", [nodes.pop(left), nodes.pop(right)])

        top = nodes[2 * n - 2]
        return cls(HierarchyNode(ROOT_LABEL, top.children))

    def _validate(self) -> None:
        seen = set()
        for node in self.root.walk():
            if node is self.root:
                continue
            if not node.label or node.label == ROOT_LABEL:
                raise HierarchyDefinitionError(f"Invalid label: {node.label!r}")
            if node.label in seen:
                raise HierarchyDefinitionError(f"Label '{node.label}' appears more than once")
            seen.add(node.label)

    # ========== Queries ==========

    @property
    def labels(self) -> List[str]:
        """All labels, depth-first."""
        return [n.label for n in self.root.walk() if n is not self.root]

    @property
    def leaves(self) -> List[str]:
        return [n.label for n in self.root.walk() if n.is_leaf and n is not self.root]

    @property
    def parents(self) -> List[str]:
        """Labels that have children."""
        return [n.label for n in self.root.walk() if n.children and n is not self.root]

    def __contains__(self, label: str) -> bool:
        return label in self._nodes and label != ROOT_LABEL

    def __iter__(self) -> Iterator[str]:
        return iter(self.labels)

    def __len__(self) -> int:
        return len(self.labels)

    def node(self, label: str) -> HierarchyNode:
        if label not in self:
            raise KeyError(f"'{label}' is not in the hierarchy")
        return self._nodes[label]

    def parent_of(self, label: str) -> Optional[str]:
        """Direct parent label, or None for top-level populations."""
        self.node(label)
        parent = self._parents.get(label)
        return None if parent == ROOT_LABEL else parent

    def ancestors(self, label: str) -> List[str]:
        """Parents from nearest to top-level."""
        out = []
        parent = self.parent_of(label)
        while parent is not None:
            out.append(parent)
            parent = self.parent_of(parent)
        return out

    def children_of(self, label: str) -> List[str]:
        return [c.label for c in self.node(label).children]

    def descendants(self, label: str) -> List[str]:
        return [n.label for n in self.node(label).walk() if n.label != label]

    def population(self, label: str) -> frozenset:
        """The label itself plus all of its descendants."""
        return frozenset([label, *self.descendants(label)])

    def expand(self, label: str) -> frozenset:
        """Population of `label`, or just the label if it is not in the tree."""
        return self.population(label) if label in self else frozenset([label])

    def contains(self, parent: str, child: str) -> bool:
        """True if `child` belongs to the population of `parent`."""
        if parent not in self or child not in self:
            return False
        return child in self.population(parent)

    def resolve_parent(self, parent: Union[str, Iterable[str]], to_type: str) -> frozenset:
        """
        Turn a parent label or explicit type collection into a population.

        Raises
        ------
        InvalidHierarchyError
            If the parent is unknown or does not contain `to_type`.
        """
        if isinstance(parent, str):
            if parent not in self:
                raise InvalidHierarchyError(f"Parent '{parent}' is not in the hierarchy")
            population = self.population(parent)
        else:
            population = frozenset(str(p) for p in parent)
        if to_type not in population:
            raise InvalidHierarchyError(f"'{to_type}' is not part of parent population {sorted(population)}")
        return population

    def parent_combinations(self, cell_types: Optional[Iterable[str]] = None) -> List[Tuple[str, str, str]]:
        """
        All (from, to, parent) triples for Kontextual.

        `to` ranges over the children of every parent node, `from` over
        `cell_types` (all leaves by default), excluding from == to.
        """
        from_types = list(cell_types) if cell_types is not None else self.leaves
        triples = []
        for parent in self.parents:
            for to_type in self.children_of(parent):
                for from_type in from_types:
                    if from_type != to_type:
                        triples.append((from_type, to_type, parent))
        return triples

    def to_dict(self) -> Dict[str, List[str]]:
        """{parent: children} mapping (inverse of from_mapping)."""
        return {n.label: [c.label for c in n.children]
                for n in self.root.walk() if n.children and n is not self.root}

    def __repr__(self) -> str:
        return f"CellTypeHierarchy({len(self.parents)} parents, {len(self.leaves)} leaves)"
