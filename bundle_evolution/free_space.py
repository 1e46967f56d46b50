"""Free-space labelled graph between a representative and candidate trajectories.

Grid coordinates interleave vertices and edges: vertex ``i`` maps to ``2 i`` and
edge ``i`` maps to ``2 i + 1``. A cell ``(vertex_coord(i), edge_coord(j))`` pairs
representative point ``i`` with candidate edge ``j`` (a vertical cell); a cell
``(edge_coord(i), vertex_coord(j))`` pairs representative edge ``i`` with
candidate point ``j`` (a horizontal cell). The two kinds never share a
coordinate, so one sparse dict holds both.

A cell is free when its point lies within epsilon of its segment. Stored cells
carry the labelled edges leading into them from free neighbours on the left
(previous representative index) or below (previous candidate index).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Iterator, List, NamedTuple, Optional, Set, Tuple

from bundle_evolution.geometry import point_segment_distance
from bundle_evolution.rtree import RTree
from bundle_evolution.trajectory import ConcatenatedTrajectories, Trajectory

Coord = Tuple[int, int]


def vertex_coord(index: int) -> int:
    return 2 * index


def edge_coord(index: int) -> int:
    return 2 * index + 1


def is_vertex_coord(coord: int) -> bool:
    return coord % 2 == 0


def coord_index(coord: int) -> int:
    """Vertex or edge index encoded by a single grid coordinate."""

    return coord // 2


class Orientation(Enum):
    VERTICAL = "vertical"  # representative vertex against candidate edge
    HORIZONTAL = "horizontal"  # representative edge against candidate vertex


class Side(Enum):
    LEFT = "left"
    BOTTOM = "bottom"


class LabelledEdge(NamedTuple):
    """Connection into a cell from the free cell at ``source``."""

    source: Coord
    orientation: Orientation
    side: Side


class LabelledGraph:
    """Sparse mapping from grid coordinate to the labelled edges entering it."""

    def __init__(self) -> None:
        self._cells: Dict[Coord, List[LabelledEdge]] = {}

    def contains(self, x: int, y: int) -> bool:
        return (x, y) in self._cells

    def get(self, x: int, y: int) -> List[LabelledEdge]:
        return self._cells.get((x, y), [])

    def put(self, x: int, y: int, edges: List[LabelledEdge]) -> None:
        if edges:
            self._cells[(x, y)] = edges

    def items(self) -> Iterator[Tuple[Coord, List[LabelledEdge]]]:
        return iter(self._cells.items())

    def coords(self) -> List[Coord]:
        return list(self._cells)

    def num_edges(self) -> int:
        return sum(len(edges) for edges in self._cells.values())

    def __contains__(self, coord: object) -> bool:
        return coord in self._cells

    def __len__(self) -> int:
        return len(self._cells)


class FreeSpaceGraph:
    """Builds the labelled graph for one epsilon and one representative.

    Parameters
    ----------
    epsilon:
        Distance threshold deciding cell freeness.
    representative:
        Trajectory laid out along the x axis of the grid.
    concatenated:
        Candidate trajectories in one global index space (the y axis).
    index:
        R-tree holding every candidate edge under its global edge index.
    """

    def __init__(
        self,
        epsilon: float,
        representative: Trajectory,
        concatenated: ConcatenatedTrajectories,
        index: RTree,
    ) -> None:
        if epsilon < 0:
            raise ValueError("epsilon must be non-negative.")
        self.epsilon = float(epsilon)
        self.representative = representative
        self.concatenated = concatenated
        self.index = index
        self.graph = LabelledGraph()
        self._freeness: Dict[Coord, bool] = {}

    # -- freeness ----------------------------------------------------------

    def is_free(self, x: int, y: int) -> bool:
        """Freeness of a cell; computed on first access, never assumed."""

        if self.graph.contains(x, y):
            return True
        cached = self._freeness.get((x, y))
        if cached is not None:
            return cached
        free = self._distance(x, y) <= self.epsilon
        self._freeness[(x, y)] = free
        return free

    def _distance(self, x: int, y: int) -> float:
        if is_vertex_coord(x) and not is_vertex_coord(y):
            point = self.representative.point(coord_index(x))
            start, end = self.concatenated.edge(coord_index(y))
            return point_segment_distance(point, start, end)
        if not is_vertex_coord(x) and is_vertex_coord(y):
            point = self.concatenated.point(coord_index(y))
            start, end = self.representative.edge(coord_index(x))
            return point_segment_distance(point, start, end)
        raise ValueError(f"({x}, {y}) is not a vertex/edge cell.")

    # -- construction ------------------------------------------------------

    def build(self) -> LabelledGraph:
        """Add every representative column and return the labelled graph."""

        for i in range(self.representative.num_edges):
            self.add_layer(i)
        logging.debug(
            "Free-space graph for eps=%.4f: %d cells, %d edges",
            self.epsilon,
            len(self.graph),
            self.graph.num_edges(),
        )
        return self.graph

    def add_layer(self, i: int) -> None:
        """Process representative edge ``i`` and representative vertex ``i + 1``."""

        hits = self._query(i + 1)
        candidates: Dict[int, List[int]] = {}

        for j in sorted(hits):
            x, y = vertex_coord(i + 1), edge_coord(j)
            if self.is_free(x, y):
                self._try_add(x, y, (x - 2, y), Orientation.VERTICAL, Side.LEFT)

            x, y = edge_coord(i), vertex_coord(j + 1)
            if self.is_free(x, y):
                _, start, traj = self.concatenated.floor(j)
                # never step past the owning trajectory's last edge
                if j + 1 < start + traj.num_edges:
                    if self._try_add(x, y, (x - 1, y - 1), Orientation.HORIZONTAL, Side.LEFT):
                        candidates.setdefault(start, []).append(j + 1)

        for start, group in candidates.items():
            group.sort()
            last_edge = start + self.concatenated.floor(start)[2].num_edges
            pos = 0
            while pos < len(group):
                j = group[pos]

                x, y = vertex_coord(i + 1), edge_coord(j)
                if self.is_free(x, y):
                    self._try_add(x, y, (x - 1, y - 1), Orientation.VERTICAL, Side.BOTTOM)

                x, y = edge_coord(i), vertex_coord(j + 1)
                if j + 1 < last_edge and self.is_free(x, y):
                    if self._try_add(x, y, (x, y - 2), Orientation.HORIZONTAL, Side.BOTTOM):
                        # keep the group sorted so j + 1 is handled in this same pass
                        if pos + 1 >= len(group) or group[pos + 1] > j + 1:
                            group.insert(pos + 1, j + 1)
                pos += 1

    def _query(self, point_index: int) -> Set[int]:
        p = self.representative.point(point_index)
        eps = self.epsilon
        return self.index.window_query(p[0] - eps, p[1] - eps, p[0] + eps, p[1] + eps)

    def _try_add(self, x: int, y: int, source: Coord, orientation: Orientation, side: Side) -> bool:
        """Link ``(x, y)`` to ``source`` if the source is free.

        Returns whether ``(x, y)`` holds at least one labelled edge afterwards.
        """

        edges = list(self.graph.get(x, y))
        if self.is_free(*source):
            edge = LabelledEdge(source, orientation, side)
            if edge not in edges:
                edges.append(edge)
        self.graph.put(x, y, edges)
        return bool(edges)


def build_edge_index(concatenated: ConcatenatedTrajectories, max_entries: int = 8) -> RTree:
    """R-tree over every candidate edge keyed by its global edge index."""

    index = RTree(max_entries=max_entries)
    for global_index, (start, end) in concatenated.global_edges():
        index.insert((start, end), global_index)
    return index


def reachable_starts(graph: LabelledGraph) -> Dict[Coord, Optional[int]]:
    """For every stored cell, the smallest first-column entry reaching it.

    An entry is a source cell at ``x == 0`` (representative vertex 0 against a
    candidate edge); the value is that candidate edge's global index, or None
    when no chain of labelled edges leads back to the first column.
    """

    best: Dict[Coord, Optional[int]] = {}
    # sources always sit left of or below their target
    for coord in sorted(graph.coords()):
        smallest: Optional[int] = None
        for edge in graph.get(*coord):
            sx, sy = edge.source
            if sx == 0:
                candidate: Optional[int] = coord_index(sy)
            else:
                candidate = best.get(edge.source)
            if candidate is not None and (smallest is None or candidate < smallest):
                smallest = candidate
        best[coord] = smallest
    return best
