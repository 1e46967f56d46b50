"""Planar geometry helpers using only NumPy.

Points are arrays of shape (2,), segments are pairs of points. Distances are
Euclidean; bounding boxes are ``(xmin, ymin, xmax, ymax)`` tuples.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

BBox = Tuple[float, float, float, float]


def point_segment_distance(point: np.ndarray, start: np.ndarray, end: np.ndarray) -> float:
    """Return the distance from ``point`` to the closed segment ``[start, end]``."""

    direction = end - start
    length_sq = float(np.dot(direction, direction))
    if length_sq == 0.0:
        return float(np.linalg.norm(point - start))
    t = float(np.dot(point - start, direction)) / length_sq
    t = min(1.0, max(0.0, t))
    closest = start + t * direction
    return float(np.linalg.norm(point - closest))


def segment_bbox(start: np.ndarray, end: np.ndarray) -> BBox:
    """Axis-aligned bounding box of a segment."""

    return (
        float(min(start[0], end[0])),
        float(min(start[1], end[1])),
        float(max(start[0], end[0])),
        float(max(start[1], end[1])),
    )


def bbox_union(a: BBox, b: BBox) -> BBox:
    return (min(a[0], b[0]), min(a[1], b[1]), max(a[2], b[2]), max(a[3], b[3]))


def bbox_area(box: BBox) -> float:
    return (box[2] - box[0]) * (box[3] - box[1])


def bbox_intersects(a: BBox, b: BBox) -> bool:
    """Closed-interval intersection test; touching boxes intersect."""

    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def bbox_enlargement(box: BBox, extra: BBox) -> float:
    """Area growth needed for ``box`` to also cover ``extra``."""

    return bbox_area(bbox_union(box, extra)) - bbox_area(box)
