"""Evolution diagram builder: sweep epsilon, classify bundles, refine narrow ranges.

The builder samples epsilon from ``min_eps`` to ``max_eps`` with an additive or
multiplicative step, calls the bundle generator at every sample and folds the
results, in increasing epsilon order, into an :class:`EvolutionDiagram`.

Bundles observed at one sample that have no continuation at the next one are
short-lived; the sequential sweep then probes epsilon values between and around
the two samples (``_dig_deep``) to record the bundles bracketing them. Probe
epsilons are restricted to multiples of 0.25 which bounds the recursion depth.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from bundle_evolution.base import AlgorithmComponent
from bundle_evolution.bundle import Bundle
from bundle_evolution.diagram import DiagramState, EvolutionDiagram
from bundle_evolution.errors import AlgorithmAborted
from bundle_evolution.generator import BundleGenerator, GenerationResult
from bundle_evolution.trajectory import Trajectory


class StepKind(Enum):
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"


@dataclass(frozen=True)
class EpsilonStep:
    kind: StepKind
    value: float

    def __post_init__(self) -> None:
        if self.kind is StepKind.ADDITIVE and self.value <= 0:
            raise ValueError("An additive epsilon step must be positive.")
        if self.kind is StepKind.MULTIPLICATIVE and self.value <= 1:
            raise ValueError("A multiplicative epsilon step must be greater than 1.")

    @classmethod
    def additive(cls, value: float) -> "EpsilonStep":
        return cls(StepKind.ADDITIVE, float(value))

    @classmethod
    def multiplicative(cls, value: float) -> "EpsilonStep":
        return cls(StepKind.MULTIPLICATIVE, float(value))

    @classmethod
    def from_name(cls, name: str, value: float) -> "EpsilonStep":
        try:
            kind = StepKind(name.lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported step type: {name}") from exc
        return cls(kind, float(value))


def next_epsilon(step: EpsilonStep, epsilon: float) -> float:
    if step.kind is StepKind.ADDITIVE:
        return epsilon + step.value
    return max(1.0, epsilon) * step.value


def is_admissible(epsilon: float) -> bool:
    """True for probe values on the quarter grid."""

    return float(4 * epsilon).is_integer()


class Direction(Enum):
    SMALLER = "smaller"  # candidate sampled below the query; query must contain it
    LARGER = "larger"  # candidate sampled above the query; candidate must contain it


@dataclass
class _Recorded:
    bundles: Dict[Bundle, None] = field(default_factory=dict)
    merges: Dict[Bundle, Bundle] = field(default_factory=dict)


@dataclass
class _RefinementContext:
    """Generator cache and recorded results owned by one sweep."""

    generate_fn: Callable[[float], GenerationResult]
    floor: float = 0.0
    generated: Dict[float, GenerationResult] = field(default_factory=dict)
    results: Dict[float, _Recorded] = field(default_factory=dict)

    def generate(self, epsilon: float) -> GenerationResult:
        cached = self.generated.get(epsilon)
        if cached is None:
            cached = self.generate_fn(epsilon)
            self.generated[epsilon] = cached
        return cached

    def record(self, epsilon: float, bundles: Iterable[Bundle]) -> None:
        entry = self.results.setdefault(epsilon, _Recorded())
        for bundle in bundles:
            entry.bundles.setdefault(bundle, None)
        entry.merges = dict(self.generated[epsilon].merges)


def _ordered(bundles: Iterable[Bundle]) -> List[Bundle]:
    return sorted(bundles, key=lambda b: b.sort_key())


class EvolutionDiagramBuilder(AlgorithmComponent):
    """Build an :class:`EvolutionDiagram` over a range of epsilon values.

    Parameters
    ----------
    generator:
        Bundle generator invoked once per sampled (or probed) epsilon.
    step:
        Additive or multiplicative epsilon step.
    lambda_factor:
        Lambda used for containment tests is ``epsilon * lambda_factor``.
    min_eps, max_eps:
        Sweep range; ``max_eps`` is always sampled.
    ignore_direction:
        Forwarded to the generator.
    refine:
        Probe between coarse samples to recover short-lived bundles.
    parallel, num_threads:
        Run coarse samples on a thread pool of ``num_threads - 1`` workers
        (at least one). Parallel runs never refine.
    initial_diagram:
        Non-empty diagram to extend with larger epsilon values.
    """

    def __init__(
        self,
        generator: BundleGenerator,
        step: EpsilonStep,
        lambda_factor: float = 0.0,
        min_eps: float = 1.0,
        max_eps: float = 10.0,
        ignore_direction: bool = False,
        refine: bool = True,
        parallel: bool = False,
        num_threads: int = 1,
        initial_diagram: Optional[EvolutionDiagram] = None,
    ) -> None:
        super().__init__()
        if min_eps < 0:
            raise ValueError("min_eps must be non-negative.")
        if min_eps > max_eps:
            raise ValueError(f"min_eps ({min_eps}) exceeds max_eps ({max_eps}).")
        if lambda_factor < 0:
            raise ValueError("lambda_factor must be non-negative.")
        if num_threads < 1:
            raise ValueError("num_threads must be at least 1.")
        self.generator = generator
        self.step = step
        self.lambda_factor = float(lambda_factor)
        self.min_eps = float(min_eps)
        self.max_eps = float(max_eps)
        self.ignore_direction = ignore_direction
        self.refine = refine
        self.parallel = parallel
        self.num_threads = num_threads
        self.initial_diagram = initial_diagram
        self._abort = threading.Event()
        self._progress = 0
        self._encountered: Set[Bundle] = set()
        self._next_class = 0

    # -- control -----------------------------------------------------------

    def abort(self) -> None:
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    @property
    def progress(self) -> int:
        return self._progress

    def _set_progress(self, epsilon: float) -> None:
        span = self.max_eps - self.min_eps
        value = 100 if span <= 0 else int(100 * (epsilon - self.min_eps) / span)
        self._progress = min(100, max(0, value))
        self.logger.debug("Progress %d%% at eps=%.4f", self._progress, epsilon)

    def _advance(self, epsilon: float) -> float:
        following = next_epsilon(self.step, epsilon)
        if epsilon < self.max_eps and following > self.max_eps:
            return self.max_eps
        return following

    # -- sweeps ------------------------------------------------------------

    def run(self, trajectories: Sequence[Trajectory]) -> EvolutionDiagram:
        if self.parallel:
            return self.run_parallel(trajectories)
        return self.run_sequential(trajectories)

    def _generate(self, trajectories: Sequence[Trajectory], epsilon: float) -> GenerationResult:
        self.logger.debug("Generating bundles at eps=%.4f", epsilon)
        return self.generator.run(
            trajectories,
            epsilon,
            epsilon * self.lambda_factor,
            ignore_direction=self.ignore_direction,
            abort=self._abort,
        )

    def _start_epsilon(self, diagram: EvolutionDiagram) -> float:
        if diagram.is_empty():
            return self.min_eps
        return self._advance(diagram.epsilons[-1])

    def run_sequential(self, trajectories: Sequence[Trajectory]) -> EvolutionDiagram:
        """Coarse sweep with optional refinement, then fold every recorded result."""

        diagram = self._initial()
        ctx = _RefinementContext(
            generate_fn=lambda eps: self._generate(trajectories, eps),
            floor=diagram.epsilons[-1] if not diagram.is_empty() else 0.0,
        )
        self._progress = 0
        epsilon = self._start_epsilon(diagram)
        previous: Optional[Tuple[float, Sequence[Bundle]]] = None

        while epsilon <= self.max_eps:
            try:
                self.check_abort(self._abort)
                result = ctx.generate(epsilon)
                ctx.record(epsilon, result.bundles)
                if self.refine and previous is not None:
                    self._refine_step(ctx, previous, epsilon, result)
                previous = (epsilon, _ordered(result.bundles))
                self._set_progress(epsilon)
                epsilon = self._advance(epsilon)
            except AlgorithmAborted:
                self.logger.warning("Algorithm aborted; returning partial diagram")
                break

        return self._fold(diagram, {eps: (rec.bundles, rec.merges) for eps, rec in ctx.results.items()})

    def run_parallel(self, trajectories: Sequence[Trajectory]) -> EvolutionDiagram:
        """One generator task per coarse epsilon on a thread pool; no refinement."""

        diagram = self._initial()
        self._progress = 0
        epsilons: List[float] = []
        epsilon = self._start_epsilon(diagram)
        while epsilon <= self.max_eps:
            epsilons.append(epsilon)
            epsilon = self._advance(epsilon)

        workers = max(1, self.num_threads - 1)
        results: Dict[float, Tuple[Iterable[Bundle], Dict[Bundle, Bundle]]] = {}
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {}
            for eps in epsilons:
                if self.aborted:
                    self.logger.warning("Algorithm aborted; %d epsilon values not submitted", len(epsilons) - len(futures))
                    break
                futures[pool.submit(self._generate, trajectories, eps)] = eps
            for future in as_completed(futures):
                eps = futures[future]
                try:
                    generated = future.result()
                except AlgorithmAborted:
                    self.logger.warning("Bundle generation at eps=%.4f aborted", eps)
                    continue
                except Exception:
                    self.logger.exception("Bundle generation failed at eps=%.4f; using an empty result", eps)
                    generated = GenerationResult()
                results[eps] = (generated.bundles, generated.merges)

        if results:
            self._set_progress(max(results))
        return self._fold(diagram, results)

    # -- refinement --------------------------------------------------------

    def _refine_step(
        self,
        ctx: _RefinementContext,
        previous: Tuple[float, Sequence[Bundle]],
        epsilon: float,
        result: GenerationResult,
    ) -> None:
        prev_eps, prev_bundles = previous
        leftover = [
            bundle
            for bundle in prev_bundles
            if self._find_match(result.bundles, bundle, Direction.LARGER, epsilon) is None
        ]
        midpoint = (prev_eps + epsilon) / 2
        lower = prev_eps - (epsilon - prev_eps) / 2
        if leftover and is_admissible(midpoint) and lower > ctx.floor:
            self.logger.info(
                "%d bundles from eps=%.4f not continued at eps=%.4f; refining",
                len(leftover),
                prev_eps,
                epsilon,
            )
            self._dig_deep(ctx, lower, midpoint, prev_eps, leftover)

    def _dig_deep(
        self,
        ctx: _RefinementContext,
        lower: float,
        upper: float,
        origin: float,
        tentative: Sequence[Bundle],
    ) -> None:
        """Confirm ``tentative`` bundles seen at ``origin`` against probes at ``lower`` and ``upper``.

        A bundle confirmed on both sides is recorded together with its
        confirming bundles. A bundle confirmed on one side only is recorded as
        well, and the search recurses around the confirming probe with half the
        bracket width. Unconfirmed bundles are dropped. Every recorded probe
        also keeps the bundles continuing its nearest recorded neighbours, so
        classes the search does not touch survive the probe state.
        """

        self.check_abort(self._abort)
        low = ctx.generate(lower)
        high = ctx.generate(upper)

        towards_upper: List[Bundle] = []
        towards_lower: List[Bundle] = []
        for bundle in tentative:
            below = self._find_match(low.bundles, bundle, Direction.SMALLER, lower)
            above = self._find_match(high.bundles, bundle, Direction.LARGER, upper)
            if below is not None and above is not None:
                ctx.record(lower, [below])
                ctx.record(upper, [above])
                ctx.record(origin, [bundle])
            elif above is not None:
                ctx.record(upper, [above])
                ctx.record(origin, [bundle])
                towards_upper.append(above)
            elif below is not None:
                ctx.record(lower, [below])
                ctx.record(origin, [bundle])
                towards_lower.append(below)

        for probe in (lower, upper):
            if probe in ctx.results:
                self._confirm_neighbours(ctx, probe)

        width = upper - lower
        if towards_upper:
            self._descend(ctx, upper, width, towards_upper)
        if towards_lower:
            self._descend(ctx, lower, width, towards_lower)

    def _confirm_neighbours(self, ctx: _RefinementContext, epsilon: float) -> None:
        """Record bundles at ``epsilon`` that continue the nearest recorded states below and above."""

        generated = ctx.generate(epsilon).bundles
        below = max((eps for eps in ctx.results if eps < epsilon), default=None)
        above = min((eps for eps in ctx.results if eps > epsilon), default=None)
        confirmed: List[Bundle] = []
        if below is not None:
            for bundle in _ordered(ctx.results[below].bundles):
                match = self._find_match(generated, bundle, Direction.LARGER, epsilon)
                if match is not None:
                    confirmed.append(match)
        if above is not None:
            for bundle in _ordered(ctx.results[above].bundles):
                match = self._find_match(generated, bundle, Direction.SMALLER, above)
                if match is not None:
                    confirmed.append(match)
        ctx.record(epsilon, confirmed)

    def _descend(self, ctx: _RefinementContext, centre: float, width: float, tentative: Sequence[Bundle]) -> None:
        lower, upper = centre - width / 4, centre + width / 4
        if not (is_admissible(lower) and is_admissible(upper)):
            return
        if upper > self.max_eps or lower <= ctx.floor:
            return
        self._dig_deep(ctx, lower, upper, centre, tentative)

    def _find_match(
        self,
        candidates: Iterable[Bundle],
        query: Bundle,
        direction: Direction,
        epsilon: float,
    ) -> Optional[Bundle]:
        """First equal-size candidate continuing (or continued by) ``query``."""

        lam = epsilon * self.lambda_factor
        for candidate in _ordered(candidates):
            if candidate.size != query.size:
                continue
            if direction is Direction.SMALLER:
                container, contained = query, candidate
            else:
                container, contained = candidate, query
            if (
                container == contained
                or container.has_as_sub_bundle(contained)
                or container.has_as_lambda_sub_bundle(contained, lam)
            ):
                return candidate
        return None

    # -- classification ----------------------------------------------------

    def _initial(self) -> EvolutionDiagram:
        diagram = EvolutionDiagram()
        self._encountered = set()
        self._next_class = 0
        source = self.initial_diagram
        if source is None or source.is_empty():
            return diagram
        for eps in source.epsilons:
            diagram.add_state(eps, source.state(eps))
            self._encountered.update(source.state(eps).bundle_classes)
        for cls in source.classes:
            diagram.add_birth_moment(cls, source.birth_moment(cls))
            merge = source.merge_moment(cls)
            if merge is not None:
                diagram.add_merge_moment(cls, merge)
        self._next_class = source.num_classes
        return diagram

    def _fold(
        self,
        diagram: EvolutionDiagram,
        results: Dict[float, Tuple[Iterable[Bundle], Dict[Bundle, Bundle]]],
    ) -> EvolutionDiagram:
        """Process recorded results into ``diagram`` in increasing epsilon order."""

        for eps in sorted(results):
            if not diagram.is_empty() and eps <= diagram.epsilons[-1]:
                self.logger.debug("Skipping eps=%.4f below the diagram's last state", eps)
                continue
            bundles, merges = results[eps]
            final = set(bundles)
            pruned = {src: dst for src, dst in merges.items() if src in final and dst in final}
            state = self.process_bundles(_ordered(final), pruned, eps, diagram)
            diagram.add_state(eps, state)
            for cls in state.births:
                diagram.add_birth_moment(cls, eps)
            for cls in state.merges:
                diagram.add_merge_moment(cls, eps)
            self._encountered.update(state.bundle_classes)
            self.logger.info(
                "eps=%.4f: %d bundles, %d births, %d merges",
                eps,
                len(state.bundle_classes),
                len(state.births),
                len(state.merges),
            )
        self._progress = 100
        return diagram

    def process_bundles(
        self,
        bundles: Sequence[Bundle],
        bundle_merges: Dict[Bundle, Bundle],
        epsilon: float,
        diagram: EvolutionDiagram,
    ) -> DiagramState:
        """Assign classes to ``bundles`` relative to the diagram's previous state."""

        bundle_classes: Dict[Bundle, int] = {}
        births: Set[int] = set()
        merges: Dict[int, int] = {}

        previous = diagram.previous_state(epsilon) if not diagram.is_empty() else None
        if previous is None:
            for bundle in bundles:
                bundle_classes[bundle] = self._new_class(births)
            return DiagramState(bundle_classes, births, merges)

        for bundle in bundles:
            if self._continue(previous, bundle, bundle_classes, epsilon):
                continue
            if bundle not in self._encountered:
                bundle_classes[bundle] = self._new_class(births)

        claimed = set(bundle_classes.values())
        for cls in sorted(previous.classes() - claimed):
            target = self._find_merge(previous, cls, bundle_classes, bundle_merges, epsilon)
            if target is not None:
                merges[cls] = target
        return DiagramState(bundle_classes, births, merges)

    def _new_class(self, births: Set[int]) -> int:
        cls = self._next_class
        self._next_class += 1
        births.add(cls)
        return cls

    def _continue(
        self,
        previous: DiagramState,
        bundle: Bundle,
        bundle_classes: Dict[Bundle, int],
        epsilon: float,
    ) -> bool:
        """Claim the first unclaimed equal-size previous class that ``bundle`` contains."""

        lam = epsilon * self.lambda_factor
        taken = set(bundle_classes.values())
        old_bundles = _ordered(previous.bundle_classes)
        tests = (
            lambda old: bundle.has_as_sub_bundle(old),
            lambda old: bundle.has_as_lambda_sub_bundle(old, lam),
        )
        for test in tests:
            for old in old_bundles:
                cls = previous.bundle_classes[old]
                if old.size == bundle.size and cls not in taken and test(old):
                    bundle_classes[bundle] = cls
                    return True
        return False

    def _find_merge(
        self,
        previous: DiagramState,
        cls: int,
        bundle_classes: Dict[Bundle, int],
        bundle_merges: Dict[Bundle, Bundle],
        epsilon: float,
    ) -> Optional[int]:
        lam = epsilon * self.lambda_factor
        retiring = previous.class_bundles[cls]
        for bundle in _ordered(bundle_classes):
            if bundle.has_as_lambda_sub_bundle(retiring, lam):
                return bundle_classes[bundle]

        for source in _ordered(bundle_merges):
            if not source.has_as_lambda_sub_bundle(retiring, lam):
                continue
            target = bundle_merges[source]
            seen = {source}
            while target not in bundle_classes and target in bundle_merges and target not in seen:
                seen.add(target)
                target = bundle_merges[target]
            if target in bundle_classes:
                self.logger.warning("Class %d merged through the generator's merge map", cls)
                return bundle_classes[target]
            break
        self.logger.warning("No merge found for class %d at eps=%.4f", cls, epsilon)
        return None
