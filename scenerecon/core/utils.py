"""
Output helpers: ASCII PLY export and point cloud statistics
"""
import logging
from pathlib import Path
from typing import Dict

import numpy as np

from .camera import Pose

logger = logging.getLogger(__name__)

_PLY_PROPERTIES = [
    "property float x",
    "property float y",
    "property float z",
    "property uchar red",
    "property uchar green",
    "property uchar blue",
]


def save_ply(points: np.ndarray, colors: np.ndarray, output_path: str):
    """
    Write a colored point cloud as ASCII PLY

    Args:
        points: Nx3 array of 3D coordinates
        colors: Nx3 array of RGB colors (0-255)
        output_path: destination file, parent directories are created
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    colors = np.asarray(colors).reshape(-1, 3).astype(int)
    if len(points) != len(colors):
        raise ValueError(f"Got {len(points)} points but {len(colors)} colors")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    header = ["ply", "format ascii 1.0", f"element vertex {len(points)}",
              *_PLY_PROPERTIES, "end_header"]
    rows = [
        f"{x:.6f} {y:.6f} {z:.6f} {r} {g} {b}"
        for (x, y, z), (r, g, b) in zip(points, colors)
    ]
    output_path.write_text("\n".join(header + rows) + "\n")

    logger.info("Saved %d points to %s", len(points), output_path)


def save_cameras_ply(poses: Dict[int, Pose], output_path: str, scale: float = 0.5):
    """
    Write camera centers (red) and viewing directions (green) as PLY

    Args:
        poses: dict of {image index: Pose}
        output_path: destination file
        scale: distance of the direction marker from its center
    """
    markers = []
    colors = []
    for _, pose in sorted(poses.items()):
        center = pose.center
        # third row of R is the optical axis (+Z) in world coordinates
        markers.extend([center, center + pose.R[2] * scale])
        colors.extend([(255, 0, 0), (0, 255, 0)])

    save_ply(np.array(markers).reshape(-1, 3), np.array(colors).reshape(-1, 3), str(output_path))


def compute_scene_bounds(points: np.ndarray) -> dict:
    """Axis-aligned bounds, center and diagonal length of a point cloud"""
    points = np.asarray(points).reshape(-1, 3)
    if len(points) == 0:
        return {'min': np.zeros(3), 'max': np.zeros(3), 'center': np.zeros(3), 'size': 0.0}

    lo, hi = points.min(axis=0), points.max(axis=0)
    return {
        'min': lo,
        'max': hi,
        'center': (lo + hi) / 2,
        'size': float(np.linalg.norm(hi - lo)),
    }
