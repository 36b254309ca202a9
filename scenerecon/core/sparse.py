"""
Incremental sparse reconstruction

1. Seed the map from the image pair with the most matches (relative pose)
2. Register the remaining images one by one with RANSAC PnP
3. Triangulate new points after every registration
4. Build feature tracks over all matches and triangulate them over every
   posed view for the final cloud
"""
import logging
from collections import defaultdict
from typing import Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

import numpy as np

from .camera import CameraIntrinsics, Pose
from .errors import Cancelled, ConvergenceFailure, InsufficientData, ReconstructionError
from .features import Descriptor, Match
from .geometry import Point3D, Triangulator, compute_reprojection_error
from .pose import PoseEstimator, PoseHypothesis

logger = logging.getLogger(__name__)

Observation = Tuple[int, int]  # (image index, descriptor index)


def _check_cancel(cancel_event):
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("Sparse reconstruction cancelled")


class SparseMap:
    """
    Incremental registration state for one reconstruction session

    Points are stored by id; observation_index maps every (image, descriptor)
    pair that has been linked to a 3D point back to that point's id.
    """

    def __init__(self,
                 descriptors: Sequence[Sequence[Descriptor]],
                 matches: Dict[Tuple[int, int], List[Match]],
                 intrinsics: CameraIntrinsics,
                 estimator: PoseEstimator,
                 triangulator: Triangulator,
                 min_seed_matches: int = 8,
                 max_reprojection_error: float = 4.0):
        self.intrinsics = intrinsics
        self.estimator = estimator
        self.triangulator = triangulator
        self.min_seed_matches = min_seed_matches
        self.max_reprojection_error = max_reprojection_error
        self.n_images = len(descriptors)

        self.keypoints: List[Dict[int, np.ndarray]] = [
            {d.index: d.point for d in image_descriptors} for image_descriptors in descriptors
        ]
        self.match_cache = {key: value for key, value in matches.items() if value}

        self.poses: Dict[int, Pose] = {}
        self.points_3d: Dict[int, np.ndarray] = {}
        self.observations: Dict[int, List[Observation]] = defaultdict(list)
        self.observation_index: Dict[Observation, int] = {}
        self._next_point_id = 0

    def _keypoint(self, img_idx: int, kp_idx: int) -> np.ndarray:
        return self.keypoints[img_idx][kp_idx]

    def _add_observation(self, point_id: int, img_idx: int, kp_idx: int):
        """Add observation linking 3D point to 2D keypoint"""
        self.observations[point_id].append((img_idx, kp_idx))
        self.observation_index[(img_idx, kp_idx)] = point_id

    def _add_point(self, position: np.ndarray, *observations: Observation) -> int:
        point_id = self._next_point_id
        self._next_point_id += 1
        self.points_3d[point_id] = position
        for img_idx, kp_idx in observations:
            self._add_observation(point_id, img_idx, kp_idx)
        return point_id

    def _pair_matches(self, img_idx: int, other_idx: int):
        """Yield (my_kp, other_kp) for the matches between two images"""
        key = (min(img_idx, other_idx), max(img_idx, other_idx))
        for m in self.match_cache.get(key, []):
            if key[0] == img_idx:
                yield m.index_a, m.index_b
            else:
                yield m.index_b, m.index_a

    def _try_triangulate(self, obs_a: Observation, obs_b: Observation) -> Optional[np.ndarray]:
        """Triangulate two observations, None when the result is unusable"""
        pose_a, pose_b = self.poses[obs_a[0]], self.poses[obs_b[0]]
        pt_a, pt_b = self._keypoint(*obs_a), self._keypoint(*obs_b)
        try:
            point = self.triangulator.triangulate(pt_a, pt_b, pose_a, pose_b, self.intrinsics)
        except ReconstructionError:
            return None

        position = point.position.reshape(1, 3)
        for pose, pt in ((pose_a, pt_a), (pose_b, pt_b)):
            error = compute_reprojection_error(self.intrinsics, pose, position, pt.reshape(1, 2))[0]
            if not error < self.max_reprojection_error:
                return None
        return point.position

    # ---------------------------------------------------------- seeding

    def select_seed_pair(self) -> Tuple[int, int]:
        """Image pair with the most matches; ties go to the lowest pair"""
        candidates = [(len(m), key) for key, m in self.match_cache.items()
                      if len(m) >= self.min_seed_matches]
        if not candidates:
            raise InsufficientData(
                f"No image pair has the {self.min_seed_matches} matches needed to seed the map")
        candidates.sort(key=lambda c: (-c[0], c[1]))
        return candidates[0][1]

    def initialize(self) -> Tuple[int, int]:
        """Seed poses and points from the best pair"""
        i, j = self.select_seed_pair()
        matches = self.match_cache[(i, j)]

        pts_i = np.array([self._keypoint(i, m.index_a) for m in matches])
        pts_j = np.array([self._keypoint(j, m.index_b) for m in matches])

        hypothesis = self.estimator.solve_relative(pts_i, pts_j, self.intrinsics)
        self.poses[i] = Pose.identity()
        self.poses[j] = hypothesis.pose

        for idx in hypothesis.inliers:
            m = matches[idx]
            position = self._try_triangulate((i, m.index_a), (j, m.index_b))
            if position is not None:
                self._add_point(position, (i, m.index_a), (j, m.index_b))

        if len(self.points_3d) < 4:
            raise InsufficientData(
                f"Seed pair ({i}, {j}) produced only {len(self.points_3d)} usable points")

        logger.info("Initialized from pair (%d, %d) with %d points", i, j, len(self.points_3d))
        return i, j

    # ---------------------------------------------------------- registration

    def correspondences(self, img_idx: int) -> Tuple[np.ndarray, np.ndarray, List[int], List[int]]:
        """2D-3D correspondences of an unposed image against the current map"""
        points_3d, points_2d, point_ids, kp_ids = [], [], [], []
        used_points, used_kps = set(), set()

        for other_idx in sorted(self.poses):
            for my_kp, other_kp in self._pair_matches(img_idx, other_idx):
                point_id = self.observation_index.get((other_idx, other_kp))
                if point_id is None or point_id in used_points or my_kp in used_kps:
                    continue
                points_3d.append(self.points_3d[point_id])
                points_2d.append(self._keypoint(img_idx, my_kp))
                point_ids.append(point_id)
                kp_ids.append(my_kp)
                used_points.add(point_id)
                used_kps.add(my_kp)

        return (np.array(points_3d).reshape(-1, 3), np.array(points_2d).reshape(-1, 2),
                point_ids, kp_ids)

    def find_next_image(self, failed: Set[int]) -> Optional[int]:
        """Unposed image with most 2D-3D correspondences"""
        candidates = []
        for img_idx in range(self.n_images):
            if img_idx in self.poses or img_idx in failed:
                continue
            count = len(self.correspondences(img_idx)[2])
            candidates.append((count, img_idx))

        if not candidates:
            return None
        candidates.sort(key=lambda c: (-c[0], c[1]))
        return candidates[0][1]

    def register_image(self, img_idx: int, cancel_event=None) -> PoseHypothesis:
        """Register new image using RANSAC PnP against the map"""
        points_3d, points_2d, point_ids, kp_ids = self.correspondences(img_idx)

        hypothesis = self.estimator.solve(points_3d, points_2d, self.intrinsics,
                                          cancel_event=cancel_event)
        self.poses[img_idx] = hypothesis.pose

        for idx in hypothesis.inliers:
            if (img_idx, kp_ids[idx]) not in self.observation_index:
                self._add_observation(point_ids[idx], img_idx, kp_ids[idx])

        logger.info("Registered image %d: %d/%d inliers",
                    img_idx, hypothesis.num_inliers, len(point_ids))
        return hypothesis

    def triangulate_new_points(self, img_idx: int) -> int:
        """Triangulate matches of a newly posed image that are not in the map yet"""
        new_count = 0
        for other_idx in sorted(self.poses):
            if other_idx == img_idx:
                continue
            for my_kp, other_kp in self._pair_matches(img_idx, other_idx):
                if (img_idx, my_kp) in self.observation_index or \
                   (other_idx, other_kp) in self.observation_index:
                    continue
                position = self._try_triangulate((img_idx, my_kp), (other_idx, other_kp))
                if position is not None:
                    self._add_point(position, (img_idx, my_kp), (other_idx, other_kp))
                    new_count += 1
        return new_count

    def register_all(self, require_all: bool = True, cancel_event=None) -> Dict[int, Pose]:
        """
        Seed the map and register every remaining image

        Args:
            require_all: raise when an image cannot be registered instead of
                leaving it unposed
            cancel_event: object with is_set(), checked between registrations
        """
        if self.n_images < 2:
            raise InsufficientData(f"Need at least two images, got {self.n_images}")

        _check_cancel(cancel_event)
        self.initialize()

        failed: Set[int] = set()
        while True:
            _check_cancel(cancel_event)
            img_idx = self.find_next_image(failed)
            if img_idx is None:
                break
            try:
                self.register_image(img_idx, cancel_event=cancel_event)
            except (InsufficientData, ConvergenceFailure):
                if require_all:
                    raise
                logger.warning("Image %d could not be registered", img_idx)
                failed.add(img_idx)
                continue
            added = self.triangulate_new_points(img_idx)
            logger.debug("Image %d added %d points", img_idx, added)

        logger.info("Registered %d/%d images, %d map points",
                    len(self.poses), self.n_images, len(self.points_3d))
        return dict(self.poses)


# -------------------------------------------------------------- tracks

def build_tracks(matches: Dict[Tuple[int, int], List[Match]]) -> List[List[Observation]]:
    """
    Union matched observations into tracks

    Each track keeps at most one observation per image (the first one seen
    in sorted order); tracks are returned in a deterministic order.
    """
    parent: Dict[Observation, Observation] = {}

    def find(obs):
        parent.setdefault(obs, obs)
        root = obs
        while parent[root] != root:
            root = parent[root]
        while parent[obs] != root:
            parent[obs], obs = root, parent[obs]
        return root

    def union(a, b):
        root_a, root_b = find(a), find(b)
        if root_a != root_b:
            parent[max(root_a, root_b)] = min(root_a, root_b)

    for key in sorted(matches):
        for m in matches[key]:
            union((m.image_a, m.index_a), (m.image_b, m.index_b))

    groups: Dict[Observation, List[Observation]] = defaultdict(list)
    for obs in sorted(parent):
        groups[find(obs)].append(obs)

    tracks = []
    for root in sorted(groups):
        seen_images = set()
        track = []
        for img_idx, kp_idx in groups[root]:
            if img_idx in seen_images:
                continue
            seen_images.add(img_idx)
            track.append((img_idx, kp_idx))
        if len(track) >= 2:
            tracks.append(track)

    return tracks


class TriangulationStats(NamedTuple):
    tracks: int
    triangulated: int
    degenerate: int
    rejected: int


def triangulate_tracks(tracks: Sequence[Sequence[Observation]],
                       descriptors: Sequence[Sequence[Descriptor]],
                       poses: Dict[int, Pose],
                       intrinsics: CameraIntrinsics,
                       triangulator: Triangulator,
                       images: Optional[Sequence[np.ndarray]] = None,
                       reject_low_confidence: bool = True,
                       cancel_event=None) -> Tuple[List[Point3D], TriangulationStats]:
    """
    Triangulate every track over all of its posed observations

    Degenerate tracks are skipped. With reject_low_confidence, points that
    are flagged low-confidence or lie behind any observing camera are
    dropped as well.
    """
    keypoints = [{d.index: d.point for d in image_descriptors} for image_descriptors in descriptors]

    points = []
    degenerate = rejected = considered = 0

    for n, track in enumerate(tracks):
        if n % 1000 == 0:
            _check_cancel(cancel_event)

        posed = [(img_idx, kp_idx) for img_idx, kp_idx in track
                 if img_idx in poses and poses[img_idx].is_usable]
        if len(posed) < 2:
            continue
        considered += 1

        observations = [(keypoints[img_idx][kp_idx], poses[img_idx]) for img_idx, kp_idx in posed]
        try:
            point = triangulator.triangulate_views(observations, intrinsics)
        except ReconstructionError as exc:
            logger.debug("Track %d skipped: %s", n, exc)
            degenerate += 1
            continue

        if reject_low_confidence:
            in_front = all(
                poses[img_idx].transform_points(point.position)[0, 2] > 0 for img_idx, _ in posed)
            if point.low_confidence or not in_front:
                rejected += 1
                continue

        color = None
        if images is not None:
            img_idx, kp_idx = posed[0]
            color = _sample_color(images[img_idx], keypoints[img_idx][kp_idx])

        points.append(Point3D(
            position=point.position,
            residual=point.residual,
            low_confidence=point.low_confidence,
            num_observations=point.num_observations,
            color=color
        ))

    stats = TriangulationStats(tracks=considered, triangulated=len(points),
                               degenerate=degenerate, rejected=rejected)
    logger.info("Triangulated %d/%d tracks (%d degenerate, %d rejected)",
                stats.triangulated, stats.tracks, stats.degenerate, stats.rejected)
    return points, stats


def _sample_color(image: np.ndarray, pt: np.ndarray) -> np.ndarray:
    """RGB color of a BGR image at a pixel, mid gray when out of bounds"""
    x, y = int(pt[0]), int(pt[1])
    h, w = image.shape[:2]
    if 0 <= x < w and 0 <= y < h:
        value = image[y, x]
        if np.size(value) == 1:
            gray = np.asarray(value).reshape(-1)[0]
            return np.array([gray, gray, gray], dtype=np.uint8)
        return np.asarray(value[:3][::-1], dtype=np.uint8)
    return np.array([127, 127, 127], dtype=np.uint8)
