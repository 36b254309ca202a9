"""
Robust camera pose estimation

RANSAC over minimal four-point PnP samples. Iterations are grouped into
batches; each batch keeps its own best hypothesis and the batches are
reduced by (inlier count, lower mean error), so a batch can run on any
worker thread without shared mutable state.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from itertools import combinations
from typing import NamedTuple, Optional

import cv2 as cv
import numpy as np

from .camera import CameraIntrinsics, Pose
from .errors import Cancelled, ConvergenceFailure, InsufficientData, InvalidInput
from .geometry import compute_essential_matrix, compute_reprojection_error, decompose_essential

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 4

_SOLVER_FLAGS = {
    'ap3p': cv.SOLVEPNP_AP3P,
    'p3p': cv.SOLVEPNP_P3P,
    'epnp': cv.SOLVEPNP_EPNP,
}


class PoseHypothesis(NamedTuple):
    pose: Pose
    inliers: np.ndarray   # indices of inlier correspondences
    mean_error: float     # mean reprojection error over the inliers (pixels)

    @property
    def num_inliers(self) -> int:
        return len(self.inliers)


class _BatchResult(NamedTuple):
    best: Optional[PoseHypothesis]
    valid_samples: int


def _better(candidate: Optional[PoseHypothesis], current: Optional[PoseHypothesis]) -> bool:
    """Max by inlier count, tie-break by lower mean reprojection error"""
    if candidate is None:
        return False
    if current is None:
        return True
    if candidate.num_inliers != current.num_inliers:
        return candidate.num_inliers > current.num_inliers
    return candidate.mean_error < current.mean_error


def is_degenerate_sample(points: np.ndarray, tolerance: float) -> bool:
    """
    True when any three of the sample points are (near-)collinear

    Works for 2D and 3D points. The test uses the sine of the angle spanned
    at the first point of each triple, so it is scale independent.
    """
    if points.shape[1] == 2:
        points = np.column_stack([points, np.zeros(len(points))])

    for a, b, c in combinations(range(len(points)), 3):
        u = points[b] - points[a]
        v = points[c] - points[a]
        nu, nv = np.linalg.norm(u), np.linalg.norm(v)
        if nu < 1e-12 or nv < 1e-12:
            return True
        if np.linalg.norm(np.cross(u, v)) / (nu * nv) < tolerance:
            return True
    return False


class PoseEstimator:
    """
    RANSAC PnP pose estimator

    Usage:
        estimator = PoseEstimator(inlier_threshold=3.0, seed=0)
        pose = estimator.estimate(object_points, image_points, intrinsics)
    """

    def __init__(self,
                 max_iterations: int = 1000,
                 inlier_threshold: float = 3.0,
                 early_stop_ratio: float = 0.95,
                 batch_size: int = 50,
                 workers: int = 1,
                 collinearity_tolerance: float = 1e-3,
                 max_resample: int = 10,
                 minimal_solver: str = 'ap3p',
                 refine: bool = True,
                 seed: Optional[int] = None,
                 essential_threshold: float = 1.0,
                 essential_confidence: float = 0.999,
                 baseline: float = 1.0):
        if minimal_solver not in _SOLVER_FLAGS:
            raise InvalidInput(f"Unknown minimal solver '{minimal_solver}', "
                               f"expected one of {sorted(_SOLVER_FLAGS)}")
        if max_iterations < 1 or batch_size < 1 or workers < 1:
            raise InvalidInput("max_iterations, batch_size and workers must be positive")

        self.max_iterations = max_iterations
        self.inlier_threshold = inlier_threshold
        self.early_stop_ratio = early_stop_ratio
        self.batch_size = batch_size
        self.workers = workers
        self.collinearity_tolerance = collinearity_tolerance
        self.max_resample = max_resample
        self.minimal_solver = minimal_solver
        self.refine = refine
        self.seed = seed
        self.essential_threshold = essential_threshold
        self.essential_confidence = essential_confidence
        self.baseline = baseline

    # ------------------------------------------------------------------ PnP

    def estimate(self, object_points: np.ndarray, image_points: np.ndarray,
                 intrinsics: CameraIntrinsics, max_iterations: Optional[int] = None,
                 cancel_event=None) -> Pose:
        """
        Estimate the camera pose from 3D-2D correspondences

        Args:
            object_points: Nx3 world points
            image_points: Nx2 observed pixels
            intrinsics: camera intrinsics
            max_iterations: overrides the configured iteration budget
            cancel_event: object with is_set(), checked between batches

        Returns:
            Pose with confidence = inliers / N
        """
        return self.solve(object_points, image_points, intrinsics,
                          max_iterations=max_iterations, cancel_event=cancel_event).pose

    def solve(self, object_points: np.ndarray, image_points: np.ndarray,
              intrinsics: CameraIntrinsics, max_iterations: Optional[int] = None,
              cancel_event=None) -> PoseHypothesis:
        """Same as estimate() but also returns the inlier set and mean error"""
        object_points, image_points = self._validate(object_points, image_points)
        n_points = len(object_points)
        budget = max_iterations if max_iterations is not None else self.max_iterations
        if budget < 1:
            raise InvalidInput(f"max_iterations must be positive, got {budget}")

        seeds = np.random.SeedSequence(self.seed)
        best: Optional[PoseHypothesis] = None
        valid_samples = 0
        done = 0

        executor = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 else None
        try:
            while done < budget:
                if cancel_event is not None and cancel_event.is_set():
                    raise Cancelled("Pose estimation cancelled")

                # one round = up to `workers` batches evaluated side by side
                sizes = []
                while len(sizes) < self.workers and done + sum(sizes) < budget:
                    sizes.append(min(self.batch_size, budget - done - sum(sizes)))
                rngs = [np.random.default_rng(s) for s in seeds.spawn(len(sizes))]

                if executor is None:
                    results = [self._run_batch(rng, size, object_points, image_points, intrinsics)
                               for rng, size in zip(rngs, sizes)]
                else:
                    futures = [executor.submit(self._run_batch, rng, size,
                                               object_points, image_points, intrinsics)
                               for rng, size in zip(rngs, sizes)]
                    results = [f.result() for f in futures]

                for result in results:
                    valid_samples += result.valid_samples
                    if _better(result.best, best):
                        best = result.best
                done += sum(sizes)

                if best is not None and best.num_inliers / n_points >= self.early_stop_ratio:
                    logger.debug("RANSAC early stop after %d iterations (%d/%d inliers)",
                                 done, best.num_inliers, n_points)
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        if valid_samples == 0:
            raise ConvergenceFailure(
                f"No non-degenerate sample found in {done} iterations")
        if best is None or best.num_inliers == 0:
            raise ConvergenceFailure(
                f"RANSAC found no pose with inliers in {done} iterations")

        if self.refine and best.num_inliers >= SAMPLE_SIZE:
            refined = self._refine(best, object_points, image_points, intrinsics)
            if refined is not None and not _better(best, refined):
                best = refined

        pose = best.pose.with_confidence(best.num_inliers / n_points)
        logger.info("PnP pose: %d/%d inliers, mean error %.3f px after %d iterations",
                    best.num_inliers, n_points, best.mean_error, done)
        return PoseHypothesis(pose=pose, inliers=best.inliers, mean_error=best.mean_error)

    def _validate(self, object_points, image_points):
        object_points = np.asarray(object_points, dtype=np.float64)
        image_points = np.asarray(image_points, dtype=np.float64)

        if object_points.size == 0 or image_points.size == 0:
            raise InsufficientData("No correspondences supplied")
        if object_points.ndim != 2 or object_points.shape[1] != 3 or \
           image_points.ndim != 2 or image_points.shape[1] != 2:
            raise InvalidInput(
                f"Expected Nx3 object points and Nx2 image points, got "
                f"{object_points.shape} and {image_points.shape}")
        if len(object_points) != len(image_points):
            raise InvalidInput(
                f"Object/image point counts differ: {len(object_points)} vs {len(image_points)}")
        if len(object_points) < SAMPLE_SIZE:
            raise InsufficientData(
                f"PnP needs at least {SAMPLE_SIZE} correspondences, got {len(object_points)}")
        if not (np.all(np.isfinite(object_points)) and np.all(np.isfinite(image_points))):
            raise InvalidInput("Correspondences must be finite")

        return object_points, image_points

    def _draw_sample(self, rng: np.random.Generator, object_points: np.ndarray,
                     image_points: np.ndarray) -> Optional[np.ndarray]:
        """Draw a non-degenerate minimal sample, resampling on degenerate draws"""
        for _ in range(self.max_resample):
            idx = rng.choice(len(object_points), size=SAMPLE_SIZE, replace=False)
            if is_degenerate_sample(object_points[idx], self.collinearity_tolerance):
                continue
            if is_degenerate_sample(image_points[idx], self.collinearity_tolerance):
                continue
            return idx
        return None

    def _solve_minimal(self, object_points: np.ndarray, image_points: np.ndarray,
                       intrinsics: CameraIntrinsics) -> Optional[Pose]:
        try:
            ok, rvec, tvec = cv.solvePnP(
                np.ascontiguousarray(object_points),
                np.ascontiguousarray(image_points),
                intrinsics.K, None,
                flags=_SOLVER_FLAGS[self.minimal_solver]
            )
        except cv.error:
            return None

        if not ok or not np.all(np.isfinite(rvec)) or not np.all(np.isfinite(tvec)):
            return None

        R, _ = cv.Rodrigues(rvec)
        return Pose(R=R, t=tvec.ravel())

    def _score(self, pose: Pose, object_points: np.ndarray, image_points: np.ndarray,
               intrinsics: CameraIntrinsics) -> PoseHypothesis:
        errors = compute_reprojection_error(intrinsics, pose, object_points, image_points)
        inliers = np.flatnonzero(errors < self.inlier_threshold)
        mean_error = float(np.mean(errors[inliers])) if len(inliers) else np.inf
        return PoseHypothesis(pose=pose, inliers=inliers, mean_error=mean_error)

    def _run_batch(self, rng: np.random.Generator, iterations: int,
                   object_points: np.ndarray, image_points: np.ndarray,
                   intrinsics: CameraIntrinsics) -> _BatchResult:
        best = None
        valid_samples = 0

        for _ in range(iterations):
            idx = self._draw_sample(rng, object_points, image_points)
            if idx is None:
                continue
            valid_samples += 1

            pose = self._solve_minimal(object_points[idx], image_points[idx], intrinsics)
            if pose is None:
                continue

            candidate = self._score(pose, object_points, image_points, intrinsics)
            if _better(candidate, best):
                best = candidate

        return _BatchResult(best=best, valid_samples=valid_samples)

    def _refine(self, hypothesis: PoseHypothesis, object_points: np.ndarray,
                image_points: np.ndarray, intrinsics: CameraIntrinsics) -> Optional[PoseHypothesis]:
        """Levenberg-Marquardt refinement on the inlier set"""
        inl = hypothesis.inliers
        rvec, _ = cv.Rodrigues(np.array(hypothesis.pose.R))
        tvec = np.array(hypothesis.pose.t).reshape(3, 1)
        try:
            ok, rvec, tvec = cv.solvePnP(
                np.ascontiguousarray(object_points[inl]),
                np.ascontiguousarray(image_points[inl]),
                intrinsics.K, None,
                rvec=rvec, tvec=tvec,
                useExtrinsicGuess=True,
                flags=cv.SOLVEPNP_ITERATIVE
            )
        except cv.error:
            return None
        if not ok:
            return None

        R, _ = cv.Rodrigues(rvec)
        return self._score(Pose(R=R, t=tvec.ravel()), object_points, image_points, intrinsics)

    # -------------------------------------------------------- relative pose

    def estimate_relative(self, points_a: np.ndarray, points_b: np.ndarray,
                          intrinsics: CameraIntrinsics) -> Pose:
        """
        Relative pose of view B with view A at the origin

        The translation is only known up to scale and is scaled to
        `baseline`. Confidence is the fraction of correspondences that pass
        both the epipolar RANSAC and the cheirality check.
        """
        return self.solve_relative(points_a, points_b, intrinsics).pose

    def solve_relative(self, points_a: np.ndarray, points_b: np.ndarray,
                       intrinsics: CameraIntrinsics) -> PoseHypothesis:
        """Same as estimate_relative() but also returns the inlier indices"""
        points_a = np.asarray(points_a, dtype=np.float64).reshape(-1, 2)
        points_b = np.asarray(points_b, dtype=np.float64).reshape(-1, 2)
        if len(points_a) != len(points_b):
            raise InvalidInput(
                f"Point counts differ: {len(points_a)} vs {len(points_b)}")

        E, mask = compute_essential_matrix(intrinsics, points_a, points_b,
                                           threshold=self.essential_threshold,
                                           confidence=self.essential_confidence)
        R, t, cheiral = decompose_essential(E, intrinsics, points_a, points_b, mask)

        inliers = np.flatnonzero(cheiral)
        if len(inliers) == 0:
            raise ConvergenceFailure("No correspondence passes the cheirality check")

        pose = Pose(R=R, t=t * self.baseline, confidence=len(inliers) / len(points_a))
        logger.info("Relative pose: %d/%d inliers", len(inliers), len(points_a))
        # epipolar fits carry no pixel reprojection error
        return PoseHypothesis(pose=pose, inliers=inliers, mean_error=float('nan'))
