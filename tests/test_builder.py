import threading

import pytest

from bundle_evolution.builder import (
    EpsilonStep,
    EvolutionDiagramBuilder,
    StepKind,
    is_admissible,
    next_epsilon,
)
from bundle_evolution.bundle import Bundle
from bundle_evolution.errors import AlgorithmAborted
from bundle_evolution.generator import FreeSpaceBundleGenerator, GenerationResult
from bundle_evolution.trajectory import Subtrajectory, Trajectory

LINES = [Trajectory([(float(x), float(k)) for x in range(12)]) for k in range(3)]


def _bundle(*ranges):
    return Bundle.of(Subtrajectory(t, s, e, LINES[t]) for t, s, e in ranges)


class ScriptedGenerator:
    """Returns fixed bundles per epsilon and records every call."""

    def __init__(self, script, fail_at=(), abort_at=None, honour_abort=True):
        self.script = script
        self.fail_at = set(fail_at)
        self.abort_at = abort_at
        self.honour_abort = honour_abort
        self.calls = []
        self.builder = None
        self._lock = threading.Lock()

    def run(self, trajectories, epsilon, lam, ignore_direction=False, abort=None):
        with self._lock:
            self.calls.append(epsilon)
        if epsilon == self.abort_at:
            self.builder.abort()
        if self.honour_abort and abort is not None and abort.is_set():
            raise AlgorithmAborted("scripted abort")
        if epsilon in self.fail_at:
            raise RuntimeError("scripted failure")
        entry = self.script.get(epsilon, ())
        if isinstance(entry, tuple) and len(entry) == 2 and isinstance(entry[1], dict):
            bundles, merges = entry
        else:
            bundles, merges = entry, {}
        return GenerationResult(bundles=frozenset(bundles), merges=dict(merges))


def _builder(generator, **kwargs):
    params = dict(step=EpsilonStep.additive(1.0), min_eps=1.0, max_eps=10.0)
    params.update(kwargs)
    builder = EvolutionDiagramBuilder(generator, **params)
    if isinstance(generator, ScriptedGenerator):
        generator.builder = builder
    return builder


# -- epsilon steps ---------------------------------------------------------


def test_epsilon_steps():
    assert next_epsilon(EpsilonStep.additive(0.5), 2.0) == 2.5
    assert next_epsilon(EpsilonStep.multiplicative(2.0), 3.0) == 6.0
    assert next_epsilon(EpsilonStep.multiplicative(2.0), 0.0) == 2.0
    assert EpsilonStep.from_name("Multiplicative", 3).kind is StepKind.MULTIPLICATIVE


@pytest.mark.parametrize(
    "make",
    [
        lambda: EpsilonStep.multiplicative(1.0),
        lambda: EpsilonStep.additive(0.0),
        lambda: EpsilonStep.from_name("geometric", 2.0),
    ],
)
def test_invalid_steps_rejected(make):
    with pytest.raises(ValueError):
        make()


def test_invalid_builder_settings_rejected():
    gen = ScriptedGenerator({})
    with pytest.raises(ValueError):
        _builder(gen, min_eps=5.0, max_eps=1.0)
    with pytest.raises(ValueError):
        _builder(gen, lambda_factor=-0.1)
    with pytest.raises(ValueError):
        _builder(gen, num_threads=0)


def test_quarter_grid():
    assert is_admissible(2.25)
    assert is_admissible(3.0)
    assert not is_admissible(2.125)


def test_max_eps_is_always_sampled():
    gen = ScriptedGenerator({})
    _builder(gen, step=EpsilonStep.multiplicative(2.0), min_eps=1.0, max_eps=6.0, refine=False).run([])
    assert gen.calls == [1.0, 2.0, 4.0, 6.0]


# -- scenarios -------------------------------------------------------------


def test_empty_trajectory_set():
    builder = _builder(FreeSpaceBundleGenerator())
    diagram = builder.run([])
    assert diagram.num_classes == 0
    assert diagram.epsilons == [float(e) for e in range(1, 11)]
    assert builder.progress == 100


def test_single_trajectory_persists_over_sweep():
    trajectory = Trajectory([(0.0, 0.0), (3.0, 1.0), (6.0, 0.0), (9.0, 2.0)])
    diagram = _builder(FreeSpaceBundleGenerator()).run([trajectory])

    assert diagram.num_classes == 1
    assert diagram.birth_moment(0) == 1.0
    assert diagram.merge_moment(0) is None
    for eps in diagram.epsilons:
        (bundle,) = diagram.bundle_classes(eps)
        assert bundle.size == 1
    assert diagram.epsilons[-1] == 10.0


def test_identical_trajectories_form_one_class():
    trajectory = Trajectory([(0.0, 0.0), (2.0, 2.0), (4.0, 0.0), (6.0, 2.0)])
    diagram = _builder(FreeSpaceBundleGenerator(), max_eps=4.0).run([trajectory, trajectory])

    assert diagram.num_classes == 1
    assert diagram.birth_moment(0) == 1.0
    assert all(
        [b.size for b in diagram.bundle_classes(eps)] == [2] for eps in diagram.epsilons
    )


def test_continuation_birth_and_merge():
    a1, b1 = _bundle((0, 0, 2)), _bundle((1, 0, 2))
    a2, b2 = _bundle((0, 0, 4)), _bundle((1, 0, 4))
    ab3 = _bundle((0, 0, 8), (1, 0, 8))
    gen = ScriptedGenerator({1.0: [a1, b1], 2.0: [a2, b2], 3.0: [ab3]})
    diagram = _builder(gen, max_eps=3.0, refine=False).run(LINES)

    a_cls = diagram.bundle_classes(1.0)[a1]
    b_cls = diagram.bundle_classes(1.0)[b1]
    assert diagram.bundle_classes(2.0) == {a2: a_cls, b2: b_cls}
    (merged_cls,) = diagram.bundle_classes(3.0).values()
    assert merged_cls not in (a_cls, b_cls)
    assert diagram.state(3.0).merges == {a_cls: merged_cls, b_cls: merged_cls}
    assert diagram.merge_moment(a_cls) == 3.0


def test_reappearing_bundle_is_not_reborn():
    a, b = _bundle((0, 0, 3)), _bundle((1, 5, 9))
    gen = ScriptedGenerator({1.0: [a], 2.0: [b], 3.0: [a, b]})
    diagram = _builder(gen, max_eps=3.0, refine=False).run(LINES)
    assert diagram.num_classes == 2
    assert list(diagram.bundle_classes(3.0)) == [b]


def test_merge_falls_back_to_generator_merge_map():
    x = _bundle((0, 0, 6), (1, 0, 6))
    a = _bundle((0, 0, 3))
    y = _bundle((2, 0, 5))
    gen = ScriptedGenerator({1.0: [x], 2.0: [a], 3.0: ([x, y], {x: y})})
    diagram = _builder(gen, max_eps=3.0, refine=False).run(LINES)

    # x reappears without a class; its merge-map entry routes a into y
    assert diagram.bundle_classes(3.0) == {y: 2}
    assert diagram.state(3.0).merges == {1: 2}


def test_class_ids_monotone_and_merges_after_births():
    script = {
        1.0: [_bundle((0, 0, 2)), _bundle((1, 0, 2)), _bundle((2, 0, 2))],
        2.0: [_bundle((0, 0, 4), (1, 0, 4)), _bundle((2, 0, 4))],
        3.0: [_bundle((0, 0, 6), (1, 0, 6), (2, 0, 6))],
        4.0: [_bundle((0, 0, 8), (1, 0, 8), (2, 0, 8))],
    }
    diagram = _builder(ScriptedGenerator(script), max_eps=4.0, refine=False).run(LINES)

    first_seen = []
    for eps in diagram.epsilons:
        for cls in sorted(diagram.state(eps).births):
            first_seen.append(cls)
    assert first_seen == sorted(first_seen) == list(range(diagram.num_classes))
    for cls in diagram.classes:
        merge = diagram.merge_moment(cls)
        if merge is not None:
            assert merge > diagram.birth_moment(cls)


# -- refinement ------------------------------------------------------------


def _refinement_script(*extra):
    a = _bundle((0, 0, 3), (1, 0, 3))
    transient = _bundle((0, 1, 4), (1, 1, 4))
    j = _bundle((0, 0, 5), (1, 0, 5))
    c = _bundle((0, 0, 9), (1, 0, 9), (2, 0, 9))
    script = {2.0: [a], 2.5: [transient], 3.0: [j], 4.0: [c]}
    for bundles in script.values():
        bundles.extend(extra)
    return script, transient


def test_refinement_recovers_transient_class():
    script, transient = _refinement_script()
    gen = ScriptedGenerator(script)
    diagram = _builder(gen, step=EpsilonStep.additive(2.0), min_eps=2.0, max_eps=4.0).run(LINES)

    assert diagram.epsilons == [2.0, 2.5, 3.0, 4.0]
    cls = diagram.bundle_classes(2.5)[transient]
    assert 2.0 < diagram.birth_moment(cls) < 4.0
    assert diagram.merge_moment(cls) == 4.0
    assert 2.5 in gen.calls and 1.0 in gen.calls
    assert all(is_admissible(eps) for eps in gen.calls)

    coarse = _builder(
        ScriptedGenerator(script), step=EpsilonStep.additive(2.0), min_eps=2.0, max_eps=4.0, refine=False
    ).run(LINES)
    assert coarse.epsilons == [2.0, 4.0]
    assert coarse.num_classes == 2
    assert not any(2.0 < coarse.birth_moment(c) < 4.0 for c in coarse.classes)


def test_no_refinement_without_leftovers():
    b = _bundle((0, 0, 3))
    gen = ScriptedGenerator({2.0: [b], 4.0: [b]})
    _builder(gen, step=EpsilonStep.additive(2.0), min_eps=2.0, max_eps=4.0).run(LINES)
    assert gen.calls == [2.0, 4.0]


def test_refinement_keeps_untouched_classes():
    stable = _bundle((2, 0, 11))
    script, transient = _refinement_script(stable)
    diagram = _builder(
        ScriptedGenerator(script), step=EpsilonStep.additive(2.0), min_eps=2.0, max_eps=4.0
    ).run(LINES)

    assert diagram.epsilons == [2.0, 2.5, 3.0, 4.0]
    cls = diagram.bundle_classes(2.0)[stable]
    assert all(diagram.bundle_classes(eps).get(stable) == cls for eps in diagram.epsilons)
    assert diagram.merge_moment(cls) is None
    assert transient in diagram.bundle_classes(2.5)


def test_abort_inside_refinement_keeps_recorded_states():
    stable = _bundle((2, 0, 11))
    script, _ = _refinement_script(stable)
    gen = ScriptedGenerator(script, abort_at=3.0, honour_abort=False)
    builder = _builder(gen, step=EpsilonStep.additive(2.0), min_eps=2.0, max_eps=4.0)
    diagram = builder.run(LINES)

    # the abort set while probing 3.0 stops the next refinement level
    assert builder.aborted
    assert 2.5 not in gen.calls
    assert diagram.epsilons == [2.0, 3.0, 4.0]
    cls = diagram.bundle_classes(2.0)[stable]
    assert diagram.bundle_classes(3.0)[stable] == cls
    assert diagram.bundle_classes(4.0)[stable] == cls


def test_lower_probe_uses_its_own_lambda():
    a = _bundle((0, 2, 5), (1, 2, 5))
    wider = _bundle((0, 1, 5), (1, 1, 5))
    gen = ScriptedGenerator({1.0: [wider], 2.0: [a]})
    diagram = _builder(
        gen, step=EpsilonStep.additive(2.0), min_eps=2.0, max_eps=4.0, lambda_factor=0.5
    ).run(LINES)

    # one unit of slack is needed; lambda at eps=1 allows only half of it
    assert 1.0 in gen.calls
    assert diagram.epsilons == [2.0, 4.0]


# -- parallel, abort, extension ------------------------------------------


def _growing_script():
    return {float(e): [_bundle((0, 0, e))] for e in range(1, 7)}


def test_parallel_matches_sequential_without_refinement():
    seq = _builder(ScriptedGenerator(_growing_script()), max_eps=6.0, refine=False).run(LINES)
    par = _builder(ScriptedGenerator(_growing_script()), max_eps=6.0, parallel=True, num_threads=3).run(LINES)

    assert par.epsilons == seq.epsilons
    for eps in seq.epsilons:
        assert par.bundle_classes(eps) == seq.bundle_classes(eps)


def test_parallel_failure_becomes_empty_result():
    gen = ScriptedGenerator(_growing_script(), fail_at={3.0})
    diagram = _builder(gen, max_eps=6.0, parallel=True, num_threads=2).run(LINES)
    assert diagram.epsilons == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]
    assert diagram.bundle_classes(3.0) == {}


def test_abort_returns_partial_diagram():
    gen = ScriptedGenerator(_growing_script(), abort_at=4.0)
    builder = _builder(gen, max_eps=6.0)
    diagram = builder.run(LINES)
    assert builder.aborted
    assert diagram.epsilons == [1.0, 2.0, 3.0]
    assert diagram.num_classes == 1


def test_extension_continues_numbering():
    first = _builder(ScriptedGenerator(_growing_script()), max_eps=3.0, refine=False).run(LINES)
    script = _growing_script()
    script[5.0] = [_bundle((0, 0, 5)), _bundle((2, 0, 4))]
    extended = _builder(ScriptedGenerator(script), max_eps=5.0, initial_diagram=first).run(LINES)

    assert extended.epsilons == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert extended.bundle_classes(4.0) == {_bundle((0, 0, 4)): 0}
    assert extended.bundle_classes(5.0)[_bundle((2, 0, 4))] == 1
    assert first.epsilons == [1.0, 2.0, 3.0]
