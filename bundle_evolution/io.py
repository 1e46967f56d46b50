"""Input/output helpers for the bundle evolution pipeline.

Covers trajectory CSV loading, coordinate conversion to UTM, CSV saving and
diagram persistence.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import joblib
import pandas as pd
from pyproj import Transformer

from bundle_evolution.diagram import EvolutionDiagram
from bundle_evolution.trajectory import Trajectory


def read_trajectory_csv(path: str | Path, required_columns: List[str]) -> pd.DataFrame:
    """Read a trajectory CSV and validate that ``required_columns`` are present."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Trajectory CSV not found: {path}")
    df = pd.read_csv(path, low_memory=False)
    missing = [col for col in required_columns if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    logging.info("Read %d rows from %s", len(df), path)
    return df


def add_utm_coordinates(
    df: pd.DataFrame,
    utm_crs: str = "epsg:32632",
    lon_column: str = "longitude",
    lat_column: str = "latitude",
) -> pd.DataFrame:
    """
    Convert longitude/latitude to UTM x/y coordinates and add columns 'x_utm', 'y_utm'.
    """

    if lon_column not in df.columns or lat_column not in df.columns:
        raise ValueError("Longitude and latitude columns are required for UTM conversion.")

    transformer = Transformer.from_crs("epsg:4326", utm_crs, always_xy=True)
    x_utm, y_utm = transformer.transform(df[lon_column].to_numpy(), df[lat_column].to_numpy())
    df = df.copy()
    df["x_utm"] = x_utm
    df["y_utm"] = y_utm
    logging.info("Added UTM coordinates using CRS=%s", utm_crs)
    return df


def trajectories_from_frame(
    df: pd.DataFrame,
    id_column: str = "trajectory_id",
    order_column: str | None = None,
    x_column: str = "x",
    y_column: str = "y",
) -> List[Trajectory]:
    """Group rows into trajectories, one per id, in first-appearance order.

    Rows are ordered by ``order_column`` inside each group (file order when it
    is None). Trajectories with fewer than two points are dropped.
    """

    trajectories: List[Trajectory] = []
    dropped = 0
    for traj_id, group in df.groupby(id_column, sort=False):
        if order_column is not None:
            group = group.sort_values(order_column, kind="stable")
        points = group[[x_column, y_column]].to_numpy(dtype=float)
        if len(points) < 2:
            dropped += 1
            continue
        trajectories.append(Trajectory(points, name=str(traj_id)))
    if dropped:
        logging.info("Dropped %d trajectories with fewer than two points", dropped)
    logging.info("Built %d trajectories from %d rows", len(trajectories), len(df))
    return trajectories


def load_trajectories(
    csv_path: str | Path,
    id_column: str = "trajectory_id",
    order_column: str | None = None,
    x_column: str = "x",
    y_column: str = "y",
) -> List[Trajectory]:
    """Read a CSV with one row per point and return its trajectories."""

    required = [id_column, x_column, y_column] + ([order_column] if order_column else [])
    df = read_trajectory_csv(csv_path, required)
    return trajectories_from_frame(df, id_column, order_column, x_column, y_column)


def save_dataframe(df: pd.DataFrame, path: str | Path) -> None:
    """Persist a DataFrame to CSV."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    logging.info("Saved %d rows to %s", len(df), path)


def save_diagram(diagram: EvolutionDiagram, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(diagram, path)
    logging.info("Saved diagram with %d states to %s", len(diagram), path)


def load_diagram(path: str | Path) -> EvolutionDiagram:
    diagram = joblib.load(Path(path))
    if not isinstance(diagram, EvolutionDiagram):
        raise ValueError(f"{path} does not contain an evolution diagram.")
    return diagram
