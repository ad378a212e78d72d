# casamatch/domain/disjoint_set.py
from __future__ import annotations

from collections import defaultdict
from typing import Generic, Hashable, Iterable, TypeVar

K = TypeVar("K", bound=Hashable)


class DisjointSet(Generic[K]):
    """Union-find keyed by arbitrary hashable items, with path compression and union by rank."""

    def __init__(self, items: Iterable[K] = ()) -> None:
        self.parent: dict[K, K] = {}
        self.rank: dict[K, int] = {}
        for it in items:
            self.add(it)

    def __contains__(self, item: object) -> bool:
        return item in self.parent

    def __len__(self) -> int:
        return len(self.parent)

    def add(self, item: K) -> None:
        if item not in self.parent:
            self.parent[item] = item
            self.rank[item] = 0

    def find(self, item: K) -> K:
        """Return canonical representative. Unknown items are added as singletons."""
        self.add(item)
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        # compress
        while self.parent[item] != root:
            nxt = self.parent[item]
            self.parent[item] = root
            item = nxt
        return root

    def union(self, a: K, b: K) -> bool:
        """Union sets containing a and b. Return True if merged."""
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return False

        rank_a = self.rank[root_a]
        rank_b = self.rank[root_b]
        if rank_a < rank_b:
            self.parent[root_a] = root_b
        elif rank_a > rank_b:
            self.parent[root_b] = root_a
        else:
            self.parent[root_b] = root_a
            self.rank[root_a] += 1
        return True

    def connected(self, a: K, b: K) -> bool:
        return self.find(a) == self.find(b)

    def groups(self) -> list[list[K]]:
        """All sets, members in insertion order."""
        clusters: dict[K, list[K]] = defaultdict(list)
        for it in self.parent:
            clusters[self.find(it)].append(it)
        return list(clusters.values())
