import threading

import numpy as np
import pytest

from scenerecon.core.errors import Cancelled, InsufficientData
from scenerecon.core.features import CorrespondenceMatcher, Match
from scenerecon.core.geometry import Triangulator, compute_reprojection_error
from scenerecon.core.sparse import SparseMap, build_tracks, triangulate_tracks


@pytest.fixture
def descriptor_sets(scene):
    return [scene.descriptors_for(v) for v in range(scene.n_views)]


@pytest.fixture
def matches(descriptor_sets):
    return CorrespondenceMatcher().match_all_pairs(descriptor_sets, window=3)


@pytest.fixture
def sparse_map(scene, descriptor_sets, matches, estimator):
    return SparseMap(descriptor_sets, matches, scene.intrinsics, estimator, Triangulator())


def test_register_all_poses_every_view(sparse_map, scene):
    poses = sparse_map.register_all()

    assert set(poses) == set(range(scene.n_views))
    assert all(pose.confidence > 0.9 for pose in poses.values())
    assert len(sparse_map.points_3d) >= 0.9 * len(scene.points)


def test_map_points_reproject(sparse_map, scene):
    sparse_map.register_all()

    for point_id, observations in sparse_map.observations.items():
        position = sparse_map.points_3d[point_id].reshape(1, 3)
        for img_idx, kp_idx in observations:
            pixel = sparse_map.keypoints[img_idx][kp_idx].reshape(1, 2)
            error = compute_reprojection_error(scene.intrinsics, sparse_map.poses[img_idx],
                                               position, pixel)[0]
            assert error < 1.0


def test_registered_geometry_matches_truth_up_to_scale(sparse_map, scene):
    poses = sparse_map.register_all()

    estimated = np.array([poses[i].center for i in range(scene.n_views)])
    truth = np.array([scene.poses[i].center for i in range(scene.n_views)])
    scale = np.linalg.norm(estimated[1] - estimated[0]) / np.linalg.norm(truth[1] - truth[0])

    np.testing.assert_allclose((estimated - estimated[0]) / scale, truth - truth[0], atol=1e-3)


def test_seed_pair_prefers_most_matches(scene, descriptor_sets, matches, estimator):
    trimmed = dict(matches)
    trimmed[(0, 1)] = trimmed[(0, 1)][:20]
    sparse = SparseMap(descriptor_sets, trimmed, scene.intrinsics, estimator, Triangulator())

    assert sparse.select_seed_pair() == (0, 2)


def test_seed_pair_needs_enough_matches(scene, descriptor_sets, matches, estimator):
    few = {key: value[:5] for key, value in matches.items()}
    sparse = SparseMap(descriptor_sets, few, scene.intrinsics, estimator, Triangulator(),
                       min_seed_matches=8)
    with pytest.raises(InsufficientData):
        sparse.register_all()


def test_single_image_is_insufficient(scene, descriptor_sets, estimator):
    sparse = SparseMap(descriptor_sets[:1], {}, scene.intrinsics, estimator, Triangulator())
    with pytest.raises(InsufficientData):
        sparse.register_all()


def test_unmatched_view_can_be_skipped(scene, descriptor_sets, matches, estimator):
    isolated = {key: value for key, value in matches.items() if 3 not in key}

    strict = SparseMap(descriptor_sets, isolated, scene.intrinsics, estimator, Triangulator())
    with pytest.raises(InsufficientData):
        strict.register_all(require_all=True)

    lenient = SparseMap(descriptor_sets, isolated, scene.intrinsics, estimator, Triangulator())
    poses = lenient.register_all(require_all=False)
    assert set(poses) == {0, 1, 2}


def test_register_all_honors_cancel(sparse_map):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        sparse_map.register_all(cancel_event=cancel)


def test_build_tracks_chains_matches():
    matches = {
        (0, 1): [Match(0, 5, 1, 7, 1.0), Match(0, 6, 1, 8, 1.0)],
        (1, 2): [Match(1, 7, 2, 3, 1.0)],
        (0, 2): [Match(0, 9, 2, 3, 1.0)],
    }
    tracks = build_tracks(matches)

    # (0, 5) and (0, 9) meet through (2, 3); only the first image-0 observation is kept
    assert tracks == [[(0, 5), (1, 7), (2, 3)], [(0, 6), (1, 8)]]


def test_triangulate_tracks_with_known_poses(scene, descriptor_sets, matches):
    tracks = build_tracks(matches)
    poses = dict(enumerate(scene.poses))

    points, stats = triangulate_tracks(tracks, descriptor_sets, poses, scene.intrinsics,
                                       Triangulator(), images=scene.images)

    assert stats.tracks == len(scene.points)
    assert stats.triangulated == len(points) == len(scene.points)
    assert stats.degenerate == 0 and stats.rejected == 0
    recovered = np.array(sorted((p.position for p in points), key=lambda p: tuple(p)))
    expected = np.array(sorted(scene.points, key=lambda p: tuple(p)))
    np.testing.assert_allclose(recovered, expected, atol=1e-6)
    assert all(p.num_observations == scene.n_views for p in points)
    assert all(p.color is not None and p.color.dtype == np.uint8 for p in points)


@pytest.mark.parametrize('shape', [(480, 640), (480, 640, 1)])
def test_single_channel_images_give_gray_colors(scene, descriptor_sets, matches, shape):
    tracks = build_tracks(matches)
    poses = dict(enumerate(scene.poses))
    images = [np.full(shape, 90, dtype=np.uint8) for _ in range(scene.n_views)]

    points, _ = triangulate_tracks(tracks, descriptor_sets, poses, scene.intrinsics,
                                   Triangulator(), images=images)

    assert points
    for p in points:
        np.testing.assert_array_equal(p.color, [90, 90, 90])


def test_triangulate_tracks_skips_unposed_views(scene, descriptor_sets, matches):
    tracks = build_tracks(matches)
    poses = {0: scene.poses[0], 1: scene.poses[1].with_confidence(0.0)}

    points, stats = triangulate_tracks(tracks, descriptor_sets, poses, scene.intrinsics,
                                       Triangulator())

    assert points == []
    assert stats.tracks == 0


def test_low_confidence_points_rejected_on_request(scene, descriptor_sets, matches):
    tracks = build_tracks(matches)
    poses = dict(enumerate(scene.poses))
    strict = Triangulator(max_residual=-1.0)

    rejected, stats = triangulate_tracks(tracks, descriptor_sets, poses, scene.intrinsics, strict)
    kept, _ = triangulate_tracks(tracks, descriptor_sets, poses, scene.intrinsics, strict,
                                 reject_low_confidence=False)

    assert rejected == [] and stats.rejected == len(tracks)
    assert len(kept) == len(tracks)
    assert all(p.low_confidence for p in kept)
