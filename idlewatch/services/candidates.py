"""Hierarchical set of entity keys.

A candidate map of depth 1 is a set of leaf strings. At depth N > 1 it maps
the first key component onto a candidate map of depth N - 1, so narrowing can
drop a whole namespace (or ingress, or host) in one operation while leaving
its siblings alone.

Empty branches are never kept: every narrowing removes a branch as soon as
its last key is gone, so ``len()`` and ``branches()`` only ever count real
keys.
"""

from typing import Iterable, Iterator

EntityKey = tuple[str, ...]
Node = dict | set


def _new_node(depth: int) -> Node:
    return set() if depth == 1 else {}


def _insert(node: Node, key: EntityKey) -> None:
    if len(key) == 1:
        node.add(key[0])
        return
    child = node.get(key[0])
    if child is None:
        child = _new_node(len(key) - 1)
        node[key[0]] = child
    _insert(child, key[1:])


def _contains(node: Node, key: EntityKey) -> bool:
    if len(key) == 1:
        return key[0] in node
    child = node.get(key[0])
    return child is not None and _contains(child, key[1:])


def _count(node: Node, depth: int) -> int:
    if depth == 1:
        return len(node)
    return sum(_count(child, depth - 1) for child in node.values())


def _iter_keys(node: Node, depth: int, prefix: EntityKey) -> Iterator[EntityKey]:
    if depth == 1:
        for leaf in node:
            yield prefix + (leaf,)
        return
    for component, child in node.items():
        yield from _iter_keys(child, depth - 1, prefix + (component,))


def _narrow(node: Node, sample: Node, depth: int) -> int:
    """Keep only keys also present in ``sample``. Returns the number removed."""
    if depth == 1:
        removed = len(node - sample)
        node.intersection_update(sample)
        return removed

    removed = 0
    for component in list(node):
        child = node[component]
        other = sample.get(component)
        if other is None:
            # Whole branch went active
            removed += _count(child, depth - 1)
            del node[component]
            continue
        removed += _narrow(child, other, depth - 1)
        if not child:
            del node[component]
    return removed


class CandidateMap:
    """Set of fixed-depth entity keys stored as nested maps."""

    def __init__(self, depth: int, keys: Iterable[EntityKey] = ()) -> None:
        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")
        self.depth = depth
        self._root: Node = _new_node(depth)
        for key in keys:
            self.add(key)

    def _check(self, key: EntityKey) -> EntityKey:
        key = tuple(key)
        if len(key) != self.depth:
            raise ValueError(
                f"key {key!r} has {len(key)} components, expected {self.depth}"
            )
        return key

    def add(self, key: EntityKey) -> None:
        _insert(self._root, self._check(key))

    def narrow(self, keys: Iterable[EntityKey]) -> int:
        """
        Intersect in place with ``keys``.

        Every candidate absent from ``keys`` is removed. Keys present in
        ``keys`` but not in the map are ignored; narrowing never adds.

        Returns:
            Number of keys removed
        """
        sample = keys if isinstance(keys, CandidateMap) else CandidateMap(self.depth, keys)
        if sample.depth != self.depth:
            raise ValueError(f"cannot narrow depth {self.depth} with depth {sample.depth}")
        return _narrow(self._root, sample._root, self.depth)

    def branches(self) -> list[str]:
        """Distinct first components, e.g. namespaces."""
        return sorted(self._root)

    def keys(self) -> Iterator[EntityKey]:
        return _iter_keys(self._root, self.depth, ())

    def to_set(self) -> frozenset[EntityKey]:
        return frozenset(self.keys())

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != self.depth:
            return False
        return _contains(self._root, key)

    def __iter__(self) -> Iterator[EntityKey]:
        return self.keys()

    def __len__(self) -> int:
        return _count(self._root, self.depth)

    def __bool__(self) -> bool:
        return bool(self._root)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, CandidateMap):
            return self.depth == other.depth and self._root == other._root
        if isinstance(other, (set, frozenset)):
            return self.to_set() == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"CandidateMap(depth={self.depth}, keys={sorted(self.keys())!r})"
