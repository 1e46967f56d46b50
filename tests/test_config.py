import pytest

from bundle_evolution.builder import EvolutionDiagramBuilder, StepKind
from bundle_evolution.config import EvolutionConfig, builder_from_config, get_nested, load_config
from bundle_evolution.generator import FreeSpaceBundleGenerator


def test_load_config_and_nested_lookup(tmp_path):
    path = tmp_path / "evolution.yaml"
    path.write_text(
        "evolution:\n  min_eps: 2\n  max_eps: 32\n  step_type: multiplicative\n  step: 2\n  refine: false\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert get_nested(cfg, ["evolution", "max_eps"], None) == 32
    assert get_nested(cfg, ["evolution", "missing"], "default") == "default"
    assert get_nested(cfg, ["output", "dir"], "output") == "output"

    evolution = EvolutionConfig.from_dict(cfg)
    assert evolution.min_eps == 2.0
    assert evolution.epsilon_step().kind is StepKind.MULTIPLICATIVE
    assert evolution.refine is False


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    evolution = EvolutionConfig.from_dict(load_config(path))
    assert evolution == EvolutionConfig()


@pytest.mark.parametrize(
    "overrides",
    [
        {"step_type": "exponential"},
        {"step_type": "multiplicative", "step": 1.0},
        {"min_eps": 5.0, "max_eps": 1.0},
        {"lambda_factor": -1.0},
        {"num_threads": 0},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValueError):
        EvolutionConfig.from_dict({"evolution": overrides})


def test_builder_from_config():
    builder = builder_from_config(EvolutionConfig(max_eps=4.0, lambda_factor=0.5, parallel=True, num_threads=3))
    assert isinstance(builder, EvolutionDiagramBuilder)
    assert isinstance(builder.generator, FreeSpaceBundleGenerator)
    assert builder.max_eps == 4.0
    assert builder.parallel


def test_null_section_gives_defaults():
    assert EvolutionConfig.from_dict({"evolution": None}) == EvolutionConfig()
    evolution = EvolutionConfig.from_dict({"evolution": {"step_type": "multiplicative"}})
    assert evolution.step == 2.0
