import threading

import numpy as np
import pytest

from scenerecon.core.camera import CameraIntrinsics, Pose
from scenerecon.core.errors import Cancelled, ConvergenceFailure, InsufficientData, InvalidInput
from scenerecon.core.pose import PoseEstimator, is_degenerate_sample

from synthetic import pose_from_center, rot_y


def rotation_error_deg(R_est, R_true):
    cos = (np.trace(R_est.T @ R_true) - 1.0) / 2.0
    return np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))


@pytest.fixture
def truth():
    return pose_from_center(rot_y(0.1), np.array([0.4, -0.1, 0.2]))


@pytest.fixture
def correspondences(intrinsics, truth):
    rng = np.random.default_rng(7)
    object_points = np.column_stack([
        rng.uniform(-1.5, 1.5, 80),
        rng.uniform(-1.0, 1.0, 80),
        rng.uniform(4.0, 7.0, 80),
    ])
    image_points = intrinsics.project(truth.transform_points(object_points))
    return object_points, image_points


def test_recovers_pose_with_noise(estimator, intrinsics, truth, correspondences):
    object_points, image_points = correspondences
    rng = np.random.default_rng(1)
    noisy = image_points + rng.normal(scale=0.5, size=image_points.shape)

    hypothesis = estimator.solve(object_points, noisy, intrinsics)

    assert hypothesis.num_inliers / len(object_points) >= 0.9
    assert hypothesis.pose.confidence == pytest.approx(hypothesis.num_inliers / len(object_points))
    assert rotation_error_deg(hypothesis.pose.R, truth.R) < 0.5
    assert np.linalg.norm(hypothesis.pose.center - truth.center) < 0.05


def test_exact_data_gives_full_confidence(estimator, intrinsics, truth, correspondences):
    pose = estimator.estimate(*correspondences, intrinsics)

    assert pose.confidence == 1.0
    np.testing.assert_allclose(pose.R, truth.R, atol=1e-6)
    np.testing.assert_allclose(pose.t, truth.t, atol=1e-5)


def test_outliers_are_excluded(estimator, intrinsics, truth, correspondences):
    object_points, image_points = correspondences
    image_points = image_points.copy()
    outliers = np.arange(0, 80, 4)
    image_points[outliers] += 60.0

    hypothesis = estimator.solve(object_points, image_points, intrinsics)

    assert not set(outliers) & set(hypothesis.inliers.tolist())
    assert hypothesis.pose.confidence == pytest.approx(0.75)
    assert rotation_error_deg(hypothesis.pose.R, truth.R) < 0.1


def test_parallel_batches_match_sequential(intrinsics, correspondences):
    object_points, image_points = correspondences
    image_points = image_points.copy()
    image_points[::3] += 40.0

    sequential = PoseEstimator(max_iterations=120, batch_size=20, workers=1, seed=3)
    parallel = PoseEstimator(max_iterations=120, batch_size=20, workers=3, seed=3)

    a = sequential.solve(object_points, image_points, intrinsics)
    b = parallel.solve(object_points, image_points, intrinsics)

    np.testing.assert_array_equal(a.inliers, b.inliers)
    np.testing.assert_allclose(a.pose.R, b.pose.R)


def test_same_seed_is_reproducible(intrinsics, correspondences):
    object_points, image_points = correspondences
    image_points = image_points.copy()
    image_points[::5] += 30.0

    first = PoseEstimator(max_iterations=100, seed=11).solve(object_points, image_points, intrinsics)
    second = PoseEstimator(max_iterations=100, seed=11).solve(object_points, image_points, intrinsics)

    np.testing.assert_array_equal(first.inliers, second.inliers)
    np.testing.assert_array_equal(first.pose.t, second.pose.t)


@pytest.mark.parametrize('n', [0, 1, 2, 3])
def test_fewer_than_four_points(estimator, intrinsics, correspondences, n):
    object_points, image_points = correspondences
    with pytest.raises(InsufficientData):
        estimator.estimate(object_points[:n], image_points[:n], intrinsics)


def test_mismatched_lengths(estimator, intrinsics, correspondences):
    object_points, image_points = correspondences
    with pytest.raises(InvalidInput):
        estimator.estimate(object_points[:10], image_points[:9], intrinsics)


def test_non_finite_input(estimator, intrinsics, correspondences):
    object_points, image_points = correspondences
    object_points = object_points.copy()
    object_points[3, 1] = np.nan
    with pytest.raises(InvalidInput):
        estimator.estimate(object_points, image_points, intrinsics)


def test_collinear_points_never_converge(estimator, intrinsics):
    s = np.linspace(0.0, 1.0, 12)
    object_points = np.column_stack([s, 0.5 * s, 5.0 + s])
    image_points = intrinsics.project(object_points)

    with pytest.raises(ConvergenceFailure):
        estimator.estimate(object_points, image_points, intrinsics)


def test_cancel_between_batches(estimator, intrinsics, correspondences):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        estimator.estimate(*correspondences, intrinsics, cancel_event=cancel)


def test_iteration_override_must_be_positive(estimator, intrinsics, correspondences):
    with pytest.raises(InvalidInput):
        estimator.estimate(*correspondences, intrinsics, max_iterations=0)


def test_unknown_solver_rejected():
    with pytest.raises(InvalidInput):
        PoseEstimator(minimal_solver='dlt')


@pytest.mark.parametrize('solver', ['ap3p', 'epnp'])
def test_minimal_solvers(intrinsics, truth, correspondences, solver):
    estimator = PoseEstimator(max_iterations=100, minimal_solver=solver, seed=0)
    pose = estimator.estimate(*correspondences, intrinsics)
    assert rotation_error_deg(pose.R, truth.R) < 0.01


def test_degenerate_sample_detection():
    collinear = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [5.0, 0.0]])
    spread = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    duplicate = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [1.0, 0.0, 1.0], [0.0, 1.0, 2.0]])

    assert is_degenerate_sample(collinear, 1e-3)
    assert not is_degenerate_sample(spread, 1e-3)
    assert is_degenerate_sample(duplicate, 1e-3)


def test_relative_pose_matches_truth(scene):
    estimator = PoseEstimator(baseline=1.0)
    pts_a, pts_b = scene.project(0), scene.project(2)

    hypothesis = estimator.solve_relative(pts_a, pts_b, scene.intrinsics)

    # view 0 sits at the origin with identity rotation
    truth = scene.poses[2]
    assert rotation_error_deg(hypothesis.pose.R, truth.R) < 0.05
    np.testing.assert_allclose(hypothesis.pose.t, truth.t / np.linalg.norm(truth.t), atol=1e-3)
    assert np.linalg.norm(hypothesis.pose.t) == pytest.approx(1.0)
    assert hypothesis.num_inliers >= 0.9 * len(pts_a)


def test_relative_pose_scaled_by_baseline(scene):
    pose = PoseEstimator(baseline=2.5).estimate_relative(
        scene.project(0), scene.project(1), scene.intrinsics)
    assert np.linalg.norm(pose.t) == pytest.approx(2.5)


def test_relative_pose_needs_five_points(scene):
    with pytest.raises(InsufficientData):
        PoseEstimator().estimate_relative(scene.project(0)[:4], scene.project(1)[:4],
                                          scene.intrinsics)
