"""Bundle generators: from trajectories and one epsilon to a set of bundles.

The evolution diagram builder only relies on the :class:`BundleGenerator`
contract: given the trajectories, epsilon and lambda it returns the bundles
found at that epsilon plus a merge map recording, for every bundle the
generator itself discarded as dominated, the bundle that absorbed it. Results
must be deterministic for fixed inputs.

:class:`FreeSpaceBundleGenerator` is the reference implementation. Every
trajectory serves as representative once; a bundle collects the candidate
subtrajectories that follow the whole representative inside the free space.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Protocol, Sequence, Tuple

from bundle_evolution.base import AlgorithmComponent
from bundle_evolution.bundle import Bundle
from bundle_evolution.free_space import (
    FreeSpaceGraph,
    build_edge_index,
    coord_index,
    reachable_starts,
    vertex_coord,
)
from bundle_evolution.rtree import RTree
from bundle_evolution.trajectory import ConcatenatedTrajectories, Subtrajectory, Trajectory


@dataclass(frozen=True)
class GenerationResult:
    bundles: FrozenSet[Bundle] = frozenset()
    merges: Dict[Bundle, Bundle] = field(default_factory=dict)


class BundleGenerator(Protocol):
    def run(
        self,
        trajectories: Sequence[Trajectory],
        epsilon: float,
        lam: float,
        ignore_direction: bool = False,
        abort: Optional[threading.Event] = None,
    ) -> GenerationResult:
        ...


@dataclass
class _Candidates:
    """Candidate layout shared by every representative of one run."""

    concatenated: ConcatenatedTrajectories
    index: RTree
    # position in ``concatenated`` -> (original trajectory index, reversed?)
    origin: List[Tuple[int, bool]]
    originals: List[Trajectory]


class FreeSpaceBundleGenerator(AlgorithmComponent):
    """Whole-representative bundles extracted from free-space labelled graphs."""

    def __init__(self, max_entries: int = 8) -> None:
        super().__init__()
        self.max_entries = max_entries

    def run(
        self,
        trajectories: Sequence[Trajectory],
        epsilon: float,
        lam: float,
        ignore_direction: bool = False,
        abort: Optional[threading.Event] = None,
    ) -> GenerationResult:
        candidates = self._prepare(trajectories, ignore_direction)
        found: Dict[Bundle, None] = {}
        for rep_index, representative in enumerate(trajectories):
            self.check_abort(abort)
            bundle = self.bundle_for_representative(rep_index, representative, candidates, epsilon)
            if bundle is not None:
                found.setdefault(bundle, None)

        bundles, merges = self._remove_dominated(list(found), lam)
        self.logger.info("eps=%.4f: %d bundles, %d dominated", epsilon, len(bundles), len(merges))
        return GenerationResult(bundles=frozenset(bundles), merges=merges)

    def _prepare(self, trajectories: Sequence[Trajectory], ignore_direction: bool) -> _Candidates:
        layout: List[Trajectory] = []
        origin: List[Tuple[int, bool]] = []
        for k, traj in enumerate(trajectories):
            layout.append(traj)
            origin.append((k, False))
            if ignore_direction:
                layout.append(traj.reversed())
                origin.append((k, True))
        concatenated = ConcatenatedTrajectories(layout)
        index = build_edge_index(concatenated, max_entries=self.max_entries)
        return _Candidates(concatenated=concatenated, index=index, origin=origin, originals=list(trajectories))

    def bundle_for_representative(
        self,
        rep_index: int,
        representative: Trajectory,
        candidates: _Candidates,
        epsilon: float,
    ) -> Optional[Bundle]:
        """Bundle of candidate ranges that follow the entire representative."""

        if representative.num_edges == 0:
            return None
        graph = FreeSpaceGraph(epsilon, representative, candidates.concatenated, candidates.index).build()
        starts = reachable_starts(graph)
        last_column = vertex_coord(representative.num_points - 1)

        ranges: Dict[int, List[Tuple[int, int]]] = {}
        for (x, y), first_edge in starts.items():
            if x != last_column or first_edge is None:
                continue
            last_edge = coord_index(y)
            position, offset, traj = candidates.concatenated.floor(last_edge)
            original, flipped = candidates.origin[position]
            lo, hi = first_edge - offset, last_edge - offset + 1
            if flipped:
                lo, hi = traj.num_points - 1 - hi, traj.num_points - 1 - lo
            ranges.setdefault(original, []).append((lo, hi))

        members: List[Subtrajectory] = []
        for original, spans in ranges.items():
            for lo, hi in _merge_ranges(spans):
                members.append(Subtrajectory(original, lo, hi, candidates.originals[original]))
        if not members:
            self.logger.debug("Representative %d has no free path at eps=%.4f", rep_index, epsilon)
            return None
        return Bundle.of(members)

    @staticmethod
    def _remove_dominated(bundles: List[Bundle], lam: float) -> Tuple[List[Bundle], Dict[Bundle, Bundle]]:
        """Drop bundles lambda-covered by a higher-ranked one, recording who absorbed them."""

        ranked = sorted(bundles, key=lambda b: (b.size, b.coverage(), b.sort_key()), reverse=True)
        merges: Dict[Bundle, Bundle] = {}
        survivors: List[Bundle] = []
        for pos, bundle in enumerate(ranked):
            absorber = next((other for other in ranked[:pos] if other.has_as_lambda_sub_bundle(bundle, lam)), None)
            if absorber is None:
                survivors.append(bundle)
            else:
                merges[bundle] = absorber
        return survivors, merges


def _merge_ranges(spans: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    merged: List[Tuple[int, int]] = []
    for lo, hi in sorted(spans):
        if merged and lo <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], hi))
        else:
            merged.append((lo, hi))
    return merged


def get_generator(name: str, **kwargs) -> BundleGenerator:
    normalized = name.lower()
    if normalized in {"free_space", "freespace"}:
        return FreeSpaceBundleGenerator(**kwargs)
    raise ValueError(f"Unsupported bundle generator: {name}")
