"""
Camera model and pose primitives
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from .errors import InvalidInput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraIntrinsics:
    """
    Pinhole intrinsics in pixel units

    K - intrinsic matrix (3x3):
        [fx  0  cx]
        [0  fy  cy]
        [0   0   1]

    dist - optional distortion coefficients [k1, k2, p1, p2, k3]
    """
    fx: float
    fy: float
    cx: float
    cy: float
    dist: Tuple[float, ...] = field(default=(0.0, 0.0, 0.0, 0.0, 0.0))

    def __post_init__(self):
        if not (np.isfinite(self.fx) and np.isfinite(self.fy)) or self.fx <= 0 or self.fy <= 0:
            raise InvalidInput(f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}")

    @property
    def K(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ])

    @property
    def dist_coeffs(self) -> np.ndarray:
        return np.asarray(self.dist, dtype=np.float64)

    @classmethod
    def from_matrix(cls, K: np.ndarray, dist: Optional[np.ndarray] = None) -> 'CameraIntrinsics':
        K = np.asarray(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise InvalidInput(f"Intrinsic matrix must be 3x3, got {K.shape}")
        if dist is None:
            dist_tuple = (0.0, 0.0, 0.0, 0.0, 0.0)
        else:
            dist_tuple = tuple(float(d) for d in np.asarray(dist).ravel())
        return cls(fx=float(K[0, 0]), fy=float(K[1, 1]),
                   cx=float(K[0, 2]), cy=float(K[1, 2]), dist=dist_tuple)

    def project(self, points_3d: np.ndarray) -> np.ndarray:
        """Pinhole projection of Nx3 camera-frame points to Nx2 pixels (no distortion)"""
        points_3d = np.atleast_2d(np.asarray(points_3d, dtype=np.float64))
        pixels = points_3d @ self.K.T
        return pixels[:, :2] / pixels[:, 2:3]

    def unproject(self, points_2d: np.ndarray, depth: float = 1.0) -> np.ndarray:
        """
        Back-project Nx2 pixels to camera-frame points at the given depth

        With depth=1.0 the result is the normalized ray (x, y, 1).
        """
        points_2d = np.atleast_2d(np.asarray(points_2d, dtype=np.float64))
        offsets = (points_2d - [self.cx, self.cy]) / [self.fx, self.fy]
        rays = np.column_stack([offsets, np.ones(len(points_2d))])
        return rays * depth

    def scaled(self, factor: float) -> 'CameraIntrinsics':
        """Intrinsics for an image resized by `factor`"""
        return CameraIntrinsics(fx=self.fx * factor, fy=self.fy * factor,
                                cx=self.cx * factor, cy=self.cy * factor,
                                dist=self.dist)


@dataclass(frozen=True, eq=False)
class Pose:
    """
    Camera pose in world coordinates

    R - rotation matrix (3x3): world to camera
    t - translation vector (3,): world to camera
    confidence - support of the estimate in [0, 1]; 0 means unusable

    Transform: X_camera = R @ X_world + t
    """
    R: np.ndarray
    t: np.ndarray
    confidence: float = 1.0

    def __post_init__(self):
        R = np.array(self.R, dtype=np.float64)
        t = np.array(self.t, dtype=np.float64).ravel()
        if R.shape != (3, 3) or t.shape != (3,):
            raise InvalidInput(f"Pose needs a 3x3 rotation and a 3-vector, got {R.shape} and {t.shape}")
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidInput(f"Pose confidence must lie in [0, 1], got {self.confidence}")
        R.setflags(write=False)
        t.setflags(write=False)
        object.__setattr__(self, 'R', R)
        object.__setattr__(self, 't', t)

    @property
    def is_usable(self) -> bool:
        return self.confidence > 0.0

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates: C = -R^T @ t"""
        return -self.R.T @ self.t

    @property
    def projection_matrix(self) -> np.ndarray:
        """3x4 projection matrix [R|t]"""
        return np.hstack([self.R, self.t.reshape(3, 1)])

    def transform_points(self, points_world: np.ndarray) -> np.ndarray:
        """Transform points from world to camera frame"""
        points_world = np.atleast_2d(points_world)
        return (self.R @ points_world.T).T + self.t

    def with_confidence(self, confidence: float) -> 'Pose':
        return Pose(R=self.R, t=self.t, confidence=confidence)

    @staticmethod
    def identity() -> 'Pose':
        """Create identity pose (camera at origin)"""
        return Pose(R=np.eye(3), t=np.zeros(3))


def load_calibration(calibration_path: str) -> CameraIntrinsics:
    """
    Load camera calibration from an OpenCV .npz file

    Args:
        calibration_path: path to a file holding 'mtx' and optionally 'dist'

    Returns:
        CameraIntrinsics with the loaded parameters
    """
    path = Path(calibration_path)

    if not path.exists():
        raise FileNotFoundError(f"Calibration file not found: {path}")

    data = np.load(str(path))
    if 'mtx' not in data:
        raise InvalidInput(f"Calibration file {path.name} has no 'mtx' entry")

    K = data['mtx'].astype(np.float64)
    dist = data['dist'].astype(np.float64).ravel() if 'dist' in data else np.zeros(5)

    # Ensure dist has 5 coefficients
    if len(dist) < 5:
        dist = np.pad(dist, (0, 5 - len(dist)))

    intrinsics = CameraIntrinsics.from_matrix(K, dist)
    logger.info("Loaded calibration from %s (fx=%.1f, fy=%.1f, cx=%.1f, cy=%.1f)",
                path.name, intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy)

    return intrinsics
