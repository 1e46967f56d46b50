"""Evolution diagram: bundle classes tracked over increasing epsilon.

A :class:`DiagramState` is the snapshot at one epsilon: which bundle carries
which class id, which classes were born there, and which classes merged into
which surviving class. The :class:`EvolutionDiagram` keeps the states in
strictly increasing epsilon order together with per-class birth and merge
moments, and answers the queries downstream consumers need.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import pandas as pd

from bundle_evolution.bundle import Bundle


@dataclass
class DiagramState:
    bundle_classes: Dict[Bundle, int] = field(default_factory=dict)
    births: Set[int] = field(default_factory=set)
    merges: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(set(self.bundle_classes.values())) != len(self.bundle_classes):
            raise ValueError("A class id may label only one bundle per state.")

    @property
    def class_bundles(self) -> Dict[int, Bundle]:
        return {cls: bundle for bundle, cls in self.bundle_classes.items()}

    def classes(self) -> Set[int]:
        return set(self.bundle_classes.values())


class EvolutionDiagram:
    """Ordered epsilon -> state mapping plus class birth and merge moments."""

    def __init__(self) -> None:
        self._states: Dict[float, DiagramState] = {}
        self._births: Dict[int, float] = {}
        self._merges: Dict[int, float] = {}

    # -- construction ------------------------------------------------------

    def add_state(self, epsilon: float, state: DiagramState) -> None:
        if self._states and epsilon <= self.epsilons[-1]:
            raise ValueError(f"States must be added in increasing epsilon order, got {epsilon}.")
        self._states[float(epsilon)] = state

    def add_birth_moment(self, bundle_class: int, epsilon: float) -> None:
        self._births[bundle_class] = float(epsilon)

    def add_merge_moment(self, bundle_class: int, epsilon: float) -> None:
        self._merges[bundle_class] = float(epsilon)

    # -- plain accessors ---------------------------------------------------

    @property
    def epsilons(self) -> List[float]:
        return sorted(self._states)

    def is_empty(self) -> bool:
        return not self._states

    @property
    def num_classes(self) -> int:
        return len(self._births)

    @property
    def classes(self) -> List[int]:
        return sorted(self._births)

    def state(self, epsilon: float) -> DiagramState:
        return self._states[float(epsilon)]

    def bundle_classes(self, epsilon: float) -> Dict[Bundle, int]:
        return self._states[float(epsilon)].bundle_classes

    def previous_state(self, epsilon: float) -> Optional[DiagramState]:
        """State at the largest sampled epsilon strictly below ``epsilon``."""

        below = [e for e in self._states if e < epsilon]
        return self._states[max(below)] if below else None

    def last_state(self) -> Optional[DiagramState]:
        return self._states[self.epsilons[-1]] if self._states else None

    def birth_moment(self, bundle_class: int) -> float:
        return self._births[bundle_class]

    def merge_moment(self, bundle_class: int) -> Optional[float]:
        return self._merges.get(bundle_class)

    def merged_into(self, bundle_class: int) -> Optional[int]:
        moment = self._merges.get(bundle_class)
        if moment is None:
            return None
        return self._states[moment].merges.get(bundle_class)

    # -- derived queries ---------------------------------------------------

    def bundle_up_to_level(self, bundle_class: int, epsilon: float) -> Optional[Bundle]:
        """Bundle of ``bundle_class`` at the last sampled epsilon <= ``epsilon`` where it exists."""

        found: Optional[Bundle] = None
        for eps in self.epsilons:
            if eps > epsilon:
                break
            bundle = self._states[eps].class_bundles.get(bundle_class)
            if bundle is not None:
                found = bundle
        return found

    def presence(self, bundle_class: int) -> List[float]:
        return [eps for eps in self.epsilons if bundle_class in self._states[eps].class_bundles]

    def lifespan(self, bundle_class: int) -> float:
        """Merge epsilon (or the last sampled epsilon while open) minus birth."""

        end = self._merges.get(bundle_class)
        if end is None:
            end = self.epsilons[-1]
        return end - self._births[bundle_class]

    def relative_lifespan(self, bundle_class: int) -> float:
        birth = self._births[bundle_class]
        if birth == 0:
            return math.nan
        return self.lifespan(bundle_class) / birth

    def best_epsilon(self, bundle_class: int) -> float:
        """Sampled epsilon where the class bundle covers the most edges; ties keep the smallest."""

        best_eps, best_cover = math.nan, -1
        for eps in self.presence(bundle_class):
            cover = self._states[eps].class_bundles[bundle_class].coverage()
            if cover > best_cover:
                best_eps, best_cover = eps, cover
        return best_eps

    def class_attributes(self) -> pd.DataFrame:
        """One row per class with birth, merge, lifespan and best epsilon."""

        rows = []
        for cls in self.classes:
            sizes = [self._states[eps].class_bundles[cls].size for eps in self.presence(cls)]
            merge = self._merges.get(cls)
            rows.append(
                {
                    "class_id": cls,
                    "birth": self._births[cls],
                    "merge": merge if merge is not None else math.nan,
                    "merged_into": self.merged_into(cls),
                    "lifespan": self.lifespan(cls),
                    "relative_lifespan": self.relative_lifespan(cls),
                    "best_eps": self.best_epsilon(cls),
                    "max_size": max(sizes) if sizes else 0,
                }
            )
        columns = ["class_id", "birth", "merge", "merged_into", "lifespan", "relative_lifespan", "best_eps", "max_size"]
        return pd.DataFrame(rows, columns=columns)

    def states_frame(self) -> pd.DataFrame:
        """One row per (epsilon, class) pair present in the diagram."""

        rows = []
        for eps in self.epsilons:
            state = self._states[eps]
            for bundle, cls in sorted(state.bundle_classes.items(), key=lambda item: item[1]):
                rows.append(
                    {
                        "epsilon": eps,
                        "class_id": cls,
                        "size": bundle.size,
                        "coverage": bundle.coverage(),
                        "born_here": cls in state.births,
                    }
                )
            for cls, target in sorted(state.merges.items()):
                rows.append({"epsilon": eps, "class_id": cls, "merged_into": target})
        columns = ["epsilon", "class_id", "size", "coverage", "born_here", "merged_into"]
        return pd.DataFrame(rows, columns=columns)

    def __len__(self) -> int:
        return len(self._states)

    def __repr__(self) -> str:
        return f"EvolutionDiagram(states={len(self._states)}, classes={self.num_classes})"
