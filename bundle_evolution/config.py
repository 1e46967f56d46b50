"""Configuration helpers for the bundle evolution pipeline.

Provides YAML loading, nested lookups with defaults and the typed settings the
evolution diagram builder is constructed from.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from bundle_evolution.builder import EpsilonStep, EvolutionDiagramBuilder, StepKind
from bundle_evolution.diagram import EvolutionDiagram
from bundle_evolution.generator import get_generator


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load a YAML configuration file."""

    with Path(path).open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def get_nested(config: Dict[str, Any], keys: list[str], default: Any) -> Any:
    """Retrieve a nested value from a config dict with a default."""

    current: Any = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


@dataclass(frozen=True)
class EvolutionConfig:
    min_eps: float = 1.0
    max_eps: float = 10.0
    step_type: str = "additive"
    step: float = 1.0
    lambda_factor: float = 0.0
    ignore_direction: bool = False
    refine: bool = True
    parallel: bool = False
    num_threads: int = 1
    generator: str = "free_space"

    def __post_init__(self) -> None:
        if self.min_eps < 0:
            raise ValueError("min_eps must be non-negative.")
        if self.min_eps > self.max_eps:
            raise ValueError(f"min_eps ({self.min_eps}) exceeds max_eps ({self.max_eps}).")
        if self.lambda_factor < 0:
            raise ValueError("lambda_factor must be non-negative.")
        if self.num_threads < 1:
            raise ValueError("num_threads must be at least 1.")
        # validates the step type and value
        self.epsilon_step()

    def epsilon_step(self) -> EpsilonStep:
        return EpsilonStep.from_name(self.step_type, self.step)

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "EvolutionConfig":
        """Build from the ``evolution`` section of a loaded config."""

        def evo(key: str, default: Any) -> Any:
            return get_nested(cfg, ["evolution", key], default)

        step_type = str(evo("step_type", StepKind.ADDITIVE.value))
        return cls(
            min_eps=float(evo("min_eps", 1.0)),
            max_eps=float(evo("max_eps", 10.0)),
            step_type=step_type,
            step=float(evo("step", 2.0 if step_type == StepKind.MULTIPLICATIVE.value else 1.0)),
            lambda_factor=float(evo("lambda_factor", 0.0)),
            ignore_direction=bool(evo("ignore_direction", False)),
            refine=bool(evo("refine", True)),
            parallel=bool(evo("parallel", False)),
            num_threads=int(evo("num_threads", 1)),
            generator=str(evo("generator", "free_space")),
        )


def builder_from_config(
    config: EvolutionConfig,
    initial_diagram: Optional[EvolutionDiagram] = None,
) -> EvolutionDiagramBuilder:
    return EvolutionDiagramBuilder(
        generator=get_generator(config.generator),
        step=config.epsilon_step(),
        lambda_factor=config.lambda_factor,
        min_eps=config.min_eps,
        max_eps=config.max_eps,
        ignore_direction=config.ignore_direction,
        refine=config.refine,
        parallel=config.parallel,
        num_threads=config.num_threads,
        initial_diagram=initial_diagram,
    )
