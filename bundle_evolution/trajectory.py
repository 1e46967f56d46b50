"""Trajectory data model.

A trajectory is an immutable, ordered sequence of 2-D points stored as a NumPy
array of shape (T, 2). Candidate trajectories are laid out in one global index
space by :class:`ConcatenatedTrajectories`, which maps every global index back
to the trajectory that owns it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np


class Trajectory:
    """Immutable polyline with point and edge access by index."""

    def __init__(self, points: Iterable[Sequence[float]], name: Optional[str] = None) -> None:
        arr = np.array(points, dtype=float)
        if arr.size == 0:
            arr = arr.reshape(0, 2)
        if arr.ndim != 2 or arr.shape[1] != 2:
            raise ValueError(f"Trajectory points must have shape (T, 2), got {arr.shape}.")
        if np.isnan(arr).any():
            raise ValueError("Trajectory contains NaN values.")
        arr.setflags(write=False)
        self._points: np.ndarray = arr
        self.name: str = name if name is not None else ""
        self._arc_length: Optional[np.ndarray] = None

    @property
    def points(self) -> np.ndarray:
        return self._points

    @property
    def num_points(self) -> int:
        return int(self._points.shape[0])

    @property
    def num_edges(self) -> int:
        return max(0, self.num_points - 1)

    def point(self, index: int) -> np.ndarray:
        return self._points[index]

    def edge(self, index: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return the segment from point ``index`` to point ``index + 1``."""

        if not 0 <= index < self.num_edges:
            raise IndexError(f"Edge index {index} out of range for {self.num_edges} edges.")
        return self._points[index], self._points[index + 1]

    @property
    def arc_length(self) -> np.ndarray:
        """Cumulative length along the trajectory at every point."""

        if self._arc_length is None:
            steps = np.linalg.norm(np.diff(self._points, axis=0), axis=1)
            cumulative = np.concatenate([[0.0], np.cumsum(steps)])
            cumulative.setflags(write=False)
            self._arc_length = cumulative
        return self._arc_length

    def reversed(self) -> "Trajectory":
        return Trajectory(self._points[::-1], name=self.name)

    def __len__(self) -> int:
        return self.num_points

    def __repr__(self) -> str:
        return f"Trajectory(name={self.name!r}, points={self.num_points})"


@dataclass(frozen=True)
class Subtrajectory:
    """Point range ``[start, end]`` of the trajectory at ``trajectory_index``.

    Identity is the index triple; ``trajectory`` is carried along so that
    positional slack can be measured in arc length.
    """

    trajectory_index: int
    start: int
    end: int
    trajectory: Trajectory = field(compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Subtrajectory start {self.start} exceeds end {self.end}.")

    @property
    def num_points(self) -> int:
        return self.end - self.start + 1

    def contains(self, other: "Subtrajectory") -> bool:
        return (
            self.trajectory_index == other.trajectory_index
            and self.start <= other.start
            and other.end <= self.end
        )

    def contains_with_slack(self, other: "Subtrajectory", slack: float) -> bool:
        """Containment allowing ``other`` to stick out by ``slack`` arc length per side."""

        if self.trajectory_index != other.trajectory_index:
            return False
        arc = self.trajectory.arc_length
        before = max(0.0, float(arc[self.start] - arc[other.start]))
        after = max(0.0, float(arc[other.end] - arc[self.end]))
        return before <= slack and after <= slack

    def key(self) -> Tuple[int, int, int]:
        return (self.trajectory_index, self.start, self.end)


class ConcatenatedTrajectories:
    """Ordered mapping from a trajectory's first global index to the trajectory.

    Trajectory ``k`` occupies global point indices ``[start_k, start_k + T_k)``;
    the global edge index ``j`` joins global points ``j`` and ``j + 1``.
    """

    def __init__(self, trajectories: Sequence[Trajectory]) -> None:
        self._trajectories: List[Trajectory] = list(trajectories)
        starts: List[int] = []
        offset = 0
        for traj in self._trajectories:
            starts.append(offset)
            offset += traj.num_points
        self._starts = np.array(starts, dtype=np.int64)
        self._total_points = offset

    @property
    def trajectories(self) -> List[Trajectory]:
        return self._trajectories

    @property
    def total_points(self) -> int:
        return self._total_points

    def start_of(self, position: int) -> int:
        return int(self._starts[position])

    def floor(self, global_index: int) -> Tuple[int, int, Trajectory]:
        """Return ``(position, start, trajectory)`` owning ``global_index``."""

        if not 0 <= global_index < self._total_points:
            raise IndexError(f"Global index {global_index} out of range.")
        position = int(np.searchsorted(self._starts, global_index, side="right")) - 1
        return position, int(self._starts[position]), self._trajectories[position]

    def point(self, global_index: int) -> np.ndarray:
        _, start, traj = self.floor(global_index)
        return traj.point(global_index - start)

    def edge(self, global_index: int) -> Tuple[np.ndarray, np.ndarray]:
        _, start, traj = self.floor(global_index)
        return traj.edge(global_index - start)

    def global_edges(self) -> Iterator[Tuple[int, Tuple[np.ndarray, np.ndarray]]]:
        """Yield ``(global_edge_index, segment)`` for every edge of every trajectory."""

        for start, traj in zip(self._starts, self._trajectories):
            for local in range(traj.num_edges):
                yield int(start) + local, traj.edge(local)

    def __len__(self) -> int:
        return len(self._trajectories)

    def __iter__(self) -> Iterator[Tuple[int, Trajectory]]:
        return iter(zip((int(s) for s in self._starts), self._trajectories))
