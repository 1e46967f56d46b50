"""R-tree over trajectory edges.

Each entry is the bounding box of a segment together with an integer id (the
global edge index). Insertion descends into the child needing the least
bounding-box enlargement and splits overflowing nodes with Guttman's quadratic
split. Window queries only descend into nodes whose box meets the window and
never miss an entry whose box intersects it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Hashable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from bundle_evolution.geometry import (
    BBox,
    bbox_area,
    bbox_enlargement,
    bbox_intersects,
    bbox_union,
    segment_bbox,
)

Segment = Union[Sequence[Sequence[float]], np.ndarray]


@dataclass
class _Entry:
    box: BBox
    child: Optional["_Node"] = None
    value: Hashable = None


@dataclass
class _Node:
    leaf: bool
    entries: List[_Entry] = field(default_factory=list)

    def box(self) -> BBox:
        result = self.entries[0].box
        for entry in self.entries[1:]:
            result = bbox_union(result, entry.box)
        return result


class RTree:
    """Balanced tree of bounding rectangles supporting insert and window queries.

    Parameters
    ----------
    max_entries:
        Node capacity; a node holding more entries is split in two.
    """

    def __init__(self, max_entries: int = 8) -> None:
        if max_entries < 2:
            raise ValueError("max_entries must be at least 2.")
        self.max_entries = max_entries
        self.min_entries = max(1, max_entries // 2)
        self._root = _Node(leaf=True)
        self._size = 0

    # -- insertion ---------------------------------------------------------

    def insert(self, segment: Segment, value: Hashable) -> None:
        """Index ``value`` under the bounding box of ``segment``."""

        seg = np.asarray(segment, dtype=float)
        if seg.shape != (2, 2):
            raise ValueError(f"Segment must have shape (2, 2), got {seg.shape}.")
        self.insert_box(segment_bbox(seg[0], seg[1]), value)

    def insert_box(self, box: BBox, value: Hashable) -> None:
        entry = _Entry(box=tuple(float(v) for v in box), value=value)  # type: ignore[arg-type]
        split = self._insert(self._root, entry)
        if split is not None:
            old_root = self._root
            self._root = _Node(
                leaf=False,
                entries=[_Entry(box=old_root.box(), child=old_root), _Entry(box=split.box(), child=split)],
            )
        self._size += 1

    def _insert(self, node: _Node, entry: _Entry) -> Optional[_Node]:
        """Insert below ``node``; return the new sibling if ``node`` was split."""

        if node.leaf:
            node.entries.append(entry)
        else:
            target = self._choose_subtree(node, entry.box)
            split = self._insert(target.child, entry)
            target.box = target.child.box()
            if split is not None:
                node.entries.append(_Entry(box=split.box(), child=split))
        if len(node.entries) > self.max_entries:
            return self._split(node)
        return None

    @staticmethod
    def _choose_subtree(node: _Node, box: BBox) -> _Entry:
        best = node.entries[0]
        best_key = (bbox_enlargement(best.box, box), bbox_area(best.box))
        for candidate in node.entries[1:]:
            key = (bbox_enlargement(candidate.box, box), bbox_area(candidate.box))
            if key < best_key:
                best, best_key = candidate, key
        return best

    def _split(self, node: _Node) -> _Node:
        """Quadratic split: ``node`` keeps one group, the returned node the other."""

        entries = node.entries
        seed_a, seed_b = self._pick_seeds(entries)
        group_a = [entries[seed_a]]
        group_b = [entries[seed_b]]
        box_a, box_b = entries[seed_a].box, entries[seed_b].box
        remaining = [e for i, e in enumerate(entries) if i not in (seed_a, seed_b)]

        while remaining:
            # Make sure both groups can still reach the minimum fill.
            if len(group_a) + len(remaining) == self.min_entries:
                group_a.extend(remaining)
                break
            if len(group_b) + len(remaining) == self.min_entries:
                group_b.extend(remaining)
                break

            # Pick the entry with the strongest preference for one group.
            best_index, best_diff = 0, -1.0
            for i, e in enumerate(remaining):
                diff = abs(bbox_enlargement(box_a, e.box) - bbox_enlargement(box_b, e.box))
                if diff > best_diff:
                    best_index, best_diff = i, diff
            chosen = remaining.pop(best_index)

            grow_a = bbox_enlargement(box_a, chosen.box)
            grow_b = bbox_enlargement(box_b, chosen.box)
            if (grow_a, bbox_area(box_a), len(group_a)) <= (grow_b, bbox_area(box_b), len(group_b)):
                group_a.append(chosen)
                box_a = bbox_union(box_a, chosen.box)
            else:
                group_b.append(chosen)
                box_b = bbox_union(box_b, chosen.box)

        node.entries = group_a
        return _Node(leaf=node.leaf, entries=group_b)

    @staticmethod
    def _pick_seeds(entries: List[_Entry]) -> Tuple[int, int]:
        """Pair of entries that would waste the most area if grouped together."""

        best_pair, best_waste = (0, 1), -float("inf")
        for i in range(len(entries)):
            for j in range(i + 1, len(entries)):
                a, b = entries[i].box, entries[j].box
                waste = bbox_area(bbox_union(a, b)) - bbox_area(a) - bbox_area(b)
                if waste > best_waste:
                    best_pair, best_waste = (i, j), waste
        return best_pair

    # -- queries -----------------------------------------------------------

    def window_query(self, xmin: float, ymin: float, xmax: float, ymax: float) -> Set[Hashable]:
        """Return every value whose box intersects the closed window."""

        window: BBox = (float(xmin), float(ymin), float(xmax), float(ymax))
        found: Set[Hashable] = set()
        if self._size == 0:
            return found
        stack = [self._root]
        while stack:
            node = stack.pop()
            for entry in node.entries:
                if not bbox_intersects(entry.box, window):
                    continue
                if node.leaf:
                    found.add(entry.value)
                else:
                    stack.append(entry.child)
        return found

    def bounds(self) -> Optional[BBox]:
        """Minimum bounding box of all inserted keys, or None when empty."""

        if self._size == 0:
            return None
        return self._root.box()

    def values(self) -> List[Hashable]:
        collected: List[Hashable] = []
        stack = [self._root]
        while stack:
            node = stack.pop()
            if node.leaf:
                collected.extend(entry.value for entry in node.entries)
            else:
                stack.extend(entry.child for entry in node.entries)
        return collected

    def height(self) -> int:
        depth, node = 1, self._root
        while not node.leaf:
            node = node.entries[0].child
            depth += 1
        return depth

    def size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return self._size
