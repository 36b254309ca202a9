"""
Geometric primitives for 3D reconstruction

Contains:
- Reprojection error
- Ray-based triangulation (least squares over N >= 2 views)
- Essential matrix estimation and decomposition
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import cv2 as cv
import numpy as np

from .camera import CameraIntrinsics, Pose
from .errors import ConvergenceFailure, DegenerateGeometry, InsufficientData, InvalidInput

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Point3D:
    """
    Triangulated point in the reconstruction's world frame

    residual - sum of squared perpendicular distances to the viewing rays
    low_confidence - residual exceeded the triangulator's threshold
    """
    position: np.ndarray
    residual: float = 0.0
    low_confidence: bool = False
    num_observations: int = 2
    color: Optional[np.ndarray] = field(default=None)

    def __post_init__(self):
        if self.num_observations < 2:
            raise InsufficientData("A 3D point needs at least two posed observations")
        position = np.array(self.position, dtype=np.float64).ravel()
        if position.shape != (3,):
            raise InvalidInput(f"Point position must be a 3-vector, got {position.shape}")
        position.setflags(write=False)
        object.__setattr__(self, 'position', position)

    @property
    def x(self) -> float:
        return float(self.position[0])

    @property
    def y(self) -> float:
        return float(self.position[1])

    @property
    def z(self) -> float:
        return float(self.position[2])


def compute_reprojection_error(intrinsics: CameraIntrinsics,
                               pose: Pose,
                               points_3d: np.ndarray,
                               points_2d: np.ndarray) -> np.ndarray:
    """
    Compute reprojection error for points

    Points at or behind the camera get an infinite error.

    Returns:
        Per-point reprojection errors (in pixels)
    """
    points_cam = pose.transform_points(points_3d)
    errors = np.full(len(points_cam), np.inf)

    in_front = points_cam[:, 2] > 1e-9
    if np.any(in_front):
        projected = intrinsics.project(points_cam[in_front])
        errors[in_front] = np.linalg.norm(projected - points_2d[in_front], axis=1)

    return errors


class Triangulator:
    """
    Least-squares ray intersection

    Each observation is back-projected to a world-space ray through its
    camera center; the point minimizing the summed squared perpendicular
    distance to all rays is returned.
    """

    def __init__(self, min_baseline_ratio: float = 0.01,
                 max_residual: float = 1e-2,
                 parallel_tolerance: float = 1e-9):
        """
        Args:
            min_baseline_ratio: minimum baseline / mean depth before the
                geometry is considered degenerate
            max_residual: residual above which a point is flagged low-confidence
            parallel_tolerance: squared sine below which two rays count as parallel
        """
        self.min_baseline_ratio = min_baseline_ratio
        self.max_residual = max_residual
        self.parallel_tolerance = parallel_tolerance

    def triangulate(self, point_a: Sequence[float], point_b: Sequence[float],
                    pose_a: Pose, pose_b: Pose,
                    intrinsics: CameraIntrinsics) -> Point3D:
        """Triangulate one correspondence observed in two posed views"""
        return self.triangulate_views([(point_a, pose_a), (point_b, pose_b)], intrinsics)

    def triangulate_views(self, observations: Sequence[Tuple[Sequence[float], Pose]],
                          intrinsics: CameraIntrinsics) -> Point3D:
        """
        Triangulate one point from N >= 2 (pixel, pose) observations

        Raises:
            InsufficientData: fewer than two usable observations or camera centers
            DegenerateGeometry: parallel rays or too small a baseline for the depth
        """
        usable = [(pt, pose) for pt, pose in observations if pose.is_usable]
        if len(usable) < 2:
            raise InsufficientData(f"Triangulation needs two posed observations, got {len(usable)}")

        pixels = np.array([np.asarray(pt, dtype=np.float64).ravel()[:2] for pt, _ in usable])
        if not np.all(np.isfinite(pixels)):
            raise InvalidInput("Observation coordinates must be finite")

        rays_cam = intrinsics.unproject(pixels)
        origins = np.array([pose.center for _, pose in usable])
        directions = np.array([pose.R.T @ ray for ray, (_, pose) in zip(rays_cam, usable)])
        directions /= np.linalg.norm(directions, axis=1, keepdims=True)

        baseline = _max_pairwise_distance(origins)
        if baseline < 1e-12:
            raise DegenerateGeometry("All observations share one camera center")

        if _rays_parallel(directions, self.parallel_tolerance):
            raise DegenerateGeometry("Viewing rays are parallel")

        # Normal equations: sum(I - d d^T) X = sum(I - d d^T) C
        A = np.zeros((3, 3))
        b = np.zeros(3)
        projectors = []
        for origin, d in zip(origins, directions):
            P = np.eye(3) - np.outer(d, d)
            projectors.append(P)
            A += P
            b += P @ origin

        try:
            position = np.linalg.solve(A, b)
        except np.linalg.LinAlgError as exc:
            raise DegenerateGeometry("Ray system is singular") from exc

        residual = float(sum(np.sum((P @ (position - origin)) ** 2)
                             for P, origin in zip(projectors, origins)))

        depth = float(np.mean(np.linalg.norm(position - origins, axis=1)))
        if depth <= 0 or baseline / depth < self.min_baseline_ratio:
            raise DegenerateGeometry(
                f"Baseline/depth ratio {baseline / max(depth, 1e-12):.4g} "
                f"below {self.min_baseline_ratio}")

        return Point3D(
            position=position,
            residual=residual,
            low_confidence=residual > self.max_residual,
            num_observations=len(usable)
        )


def _max_pairwise_distance(points: np.ndarray) -> float:
    diff = points[:, None, :] - points[None, :, :]
    return float(np.sqrt(np.max(np.sum(diff * diff, axis=2))))


def _rays_parallel(directions: np.ndarray, tolerance: float) -> bool:
    """True when every pair of unit directions is parallel within tolerance"""
    for i in range(len(directions)):
        for j in range(i + 1, len(directions)):
            sin_sq = np.sum(np.cross(directions[i], directions[j]) ** 2)
            if sin_sq > tolerance:
                return False
    return True


def compute_essential_matrix(intrinsics: CameraIntrinsics,
                             points1: np.ndarray,
                             points2: np.ndarray,
                             threshold: float = 1.0,
                             confidence: float = 0.999) -> Tuple[np.ndarray, np.ndarray]:
    """
    Estimate the essential matrix from pixel correspondences with RANSAC

    Returns:
        E: 3x3 essential matrix
        mask: inlier mask (N,) as bool
    """
    if len(points1) < 5:
        raise InsufficientData(f"Essential matrix needs at least 5 correspondences, got {len(points1)}")

    E, mask = cv.findEssentialMat(points1, points2, intrinsics.K,
                                  method=cv.RANSAC, prob=confidence, threshold=threshold)
    if E is None or E.shape[0] < 3:
        raise ConvergenceFailure("Essential matrix estimation failed")

    # The five-point solver may stack several candidates; keep the first
    E = E[:3, :3]
    mask = mask.ravel().astype(bool) if mask is not None else np.ones(len(points1), dtype=bool)

    return E, mask


def decompose_essential(E: np.ndarray,
                        intrinsics: CameraIntrinsics,
                        points1: np.ndarray,
                        points2: np.ndarray,
                        mask: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decompose Essential matrix into R and t

    Uses OpenCV's recoverPose which:
    1. Decomposes E into 4 possible (R, t) combinations
    2. Tests all 4 using cheirality constraint
    3. Returns the one where most points have positive depth

    Returns:
        R: 3x3 rotation matrix
        t: (3,) translation vector (unit length)
        mask: cheirality inlier mask (N,) as bool
    """
    cv_mask = None if mask is None else mask.astype(np.uint8).reshape(-1, 1)
    _, R, t, out_mask = cv.recoverPose(E, points1, points2, intrinsics.K, mask=cv_mask)
    return R, t.ravel(), out_mask.ravel() > 0
