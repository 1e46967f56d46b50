"""CLI entry point for the bundle evolution pipeline.

Orchestrates trajectory loading, optional UTM projection, the evolution
diagram sweep, and saving of the diagram and its class attributes.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict

from bundle_evolution.config import EvolutionConfig, builder_from_config, get_nested, load_config
from bundle_evolution.io import (
    add_utm_coordinates,
    load_diagram,
    read_trajectory_csv,
    save_dataframe,
    save_diagram,
    trajectories_from_frame,
)


def configure_logging(log_cfg: Dict[str, object]) -> None:
    """Configure root logger with both file and console handlers."""

    log_dir = Path(log_cfg.get("dir", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    filename = log_cfg.get("filename", "evolution.log")
    log_path = log_dir / filename
    level_name = str(log_cfg.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s - %(levelname)s - %(message)s"
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(fmt))
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(fmt))

    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    root.info("Logging to %s (level=%s)", log_path, level_name)


def main(config_path: str = "config/evolution.yaml", extend: str | None = None) -> None:
    cfg = load_config(config_path)

    configure_logging(cfg.get("logging", {}) or {})
    evolution = EvolutionConfig.from_dict(cfg)
    logging.info("Evolution settings: %s", evolution)

    input_cfg = cfg.get("input", {}) or {}
    csv_path = input_cfg.get("csv", "data/trajectories.csv")
    id_column = input_cfg.get("id_column", "trajectory_id")
    order_column = input_cfg.get("order_column")
    x_column = input_cfg.get("x_column", "x")
    y_column = input_cfg.get("y_column", "y")

    use_utm = bool(get_nested(cfg, ["coordinates", "use_utm"], False))
    if use_utm:
        lon_column = input_cfg.get("lon_column", "longitude")
        lat_column = input_cfg.get("lat_column", "latitude")
        required = [id_column, lon_column, lat_column]
    else:
        required = [id_column, x_column, y_column]
    if order_column:
        required.append(order_column)

    df = read_trajectory_csv(csv_path, required)
    if use_utm:
        utm_crs = get_nested(cfg, ["coordinates", "utm_crs"], "epsg:32632")
        df = add_utm_coordinates(df, utm_crs=utm_crs, lon_column=lon_column, lat_column=lat_column)
        x_column, y_column = "x_utm", "y_utm"
        logging.info("Using UTM coordinates (CRS=%s) for bundle discovery.", utm_crs)

    trajectories = trajectories_from_frame(df, id_column, order_column, x_column, y_column)
    if not trajectories:
        logging.warning("No trajectories with at least two points; exiting.")
        return

    initial = load_diagram(extend) if extend else None
    builder = builder_from_config(evolution, initial_diagram=initial)
    diagram = builder.run(trajectories)
    logging.info("Diagram finished: %d states, %d classes", len(diagram), diagram.num_classes)

    output_cfg = cfg.get("output", {}) or {}
    output_dir = Path(get_nested(cfg, ["output", "dir"], "output"))
    exp_name = str(get_nested(cfg, ["output", "experiment_name"], "evolution_exp_1"))
    run_dir = output_dir / exp_name
    logging.info("Using run directory %s (experiment=%s)", run_dir, exp_name)

    if output_cfg.get("save_diagram", True):
        save_diagram(diagram, run_dir / f"diagram_{exp_name}.joblib")
    if output_cfg.get("save_class_attributes", True):
        save_dataframe(diagram.class_attributes(), run_dir / f"class_attributes_{exp_name}.csv")
    if output_cfg.get("save_states", False):
        save_dataframe(diagram.states_frame(), run_dir / f"states_{exp_name}.csv")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Bundle evolution diagram pipeline.")
    parser.add_argument(
        "-c",
        "--config",
        default="config/evolution.yaml",
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--extend",
        default=None,
        help="Saved diagram (.joblib) to extend with larger epsilon values.",
    )
    args = parser.parse_args()
    main(args.config, args.extend)
