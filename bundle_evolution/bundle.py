"""Bundles: sets of subtrajectories that stay close to a shared representative.

Two bundles compare equal when they hold the same subtrajectories. Containment
comes in two flavours: exact (index ranges nest) and lambda (a member may stick
out of its covering member by at most ``lambda`` arc length on either side).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Tuple

from bundle_evolution.trajectory import Subtrajectory


@dataclass(frozen=True)
class Bundle:
    members: FrozenSet[Subtrajectory]

    @classmethod
    def of(cls, members: Iterable[Subtrajectory]) -> "Bundle":
        return cls(frozenset(members))

    @property
    def size(self) -> int:
        return len(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def has_as_sub_bundle(self, other: "Bundle") -> bool:
        """True if every member of ``other`` lies inside some member of this bundle."""

        return all(any(mine.contains(theirs) for mine in self.members) for theirs in other.members)

    def has_as_lambda_sub_bundle(self, other: "Bundle", lam: float) -> bool:
        """Like :meth:`has_as_sub_bundle`, allowing ``lam`` arc-length slack per side."""

        if lam < 0:
            raise ValueError("lambda must be non-negative.")
        return all(
            any(mine.contains_with_slack(theirs, lam) for mine in self.members) for theirs in other.members
        )

    def coverage(self) -> int:
        """Total number of edges spanned by the members."""

        return sum(member.end - member.start for member in self.members)

    def sort_key(self) -> Tuple[Tuple[int, int, int], ...]:
        return tuple(sorted(member.key() for member in self.members))

    def __repr__(self) -> str:
        inner = ", ".join(f"{t}[{s}:{e}]" for t, s, e in self.sort_key())
        return f"Bundle({inner})"
