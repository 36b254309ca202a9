"""
Feature descriptors and correspondence matching

Descriptors arrive from an external extractor; this module owns the
matching. Vectors are L2-normalized, so the halved Euclidean distance
lies in [0, 1] and similarity = 1 - distance.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .errors import InvalidInput

logger = logging.getLogger(__name__)

# Rows of A compared against all of B per chunk in brute-force mode
_CHUNK_ROWS = 64


@dataclass(frozen=True, eq=False)
class Descriptor:
    """Feature vector observed at one keypoint of one image"""
    vector: np.ndarray
    image_index: int
    index: int
    x: float
    y: float

    def __post_init__(self):
        vector = np.array(self.vector, dtype=np.float64).ravel()
        if vector.size == 0 or not np.all(np.isfinite(vector)):
            raise InvalidInput(
                f"Descriptor {self.index} of image {self.image_index} is empty or non-finite")
        vector.setflags(write=False)
        object.__setattr__(self, 'vector', vector)

    @property
    def point(self) -> np.ndarray:
        return np.array([self.x, self.y])


@dataclass(frozen=True)
class Match:
    """Correspondence between descriptor index_a of image_a and index_b of image_b"""
    image_a: int
    index_a: int
    image_b: int
    index_b: int
    similarity: float

    def __post_init__(self):
        if self.image_a == self.image_b:
            raise InvalidInput(f"Match must reference two distinct images, got {self.image_a} twice")

    @property
    def distance(self) -> float:
        return 1.0 - self.similarity


def descriptor_matrix(descriptors: Sequence[Descriptor]) -> np.ndarray:
    """Stack descriptors into an NxD array of unit vectors"""
    if len(descriptors) == 0:
        return np.zeros((0, 0))

    lengths = {d.vector.size for d in descriptors}
    if len(lengths) != 1:
        raise InvalidInput(f"Descriptors have mixed lengths: {sorted(lengths)}")

    matrix = np.vstack([d.vector for d in descriptors])
    return normalize_rows(matrix)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    # zero vectors stay zero
    norms[norms == 0] = 1.0
    return matrix / norms


class CorrespondenceMatcher:
    """
    Nearest-neighbor descriptor matcher with a similarity threshold

    For every descriptor of image A the closest descriptor of image B is
    selected (ties go to the lowest B index) and kept when its similarity
    reaches the threshold. Results are a pure function of the inputs.
    """

    def __init__(self, similarity_threshold: float = 0.85, index: str = 'brute'):
        """
        Args:
            similarity_threshold: minimum accepted similarity in [0, 1]
            index: 'brute' for exhaustive search, 'kdtree' for a scipy cKDTree
        """
        if not 0.0 <= similarity_threshold <= 1.0:
            raise InvalidInput(f"similarity_threshold must lie in [0, 1], got {similarity_threshold}")
        if index not in ('brute', 'kdtree'):
            raise InvalidInput(f"Unknown index backend: {index}")

        self.similarity_threshold = similarity_threshold
        self.index = index

    def distance_matrix(self, matrix_a: np.ndarray, matrix_b: np.ndarray) -> np.ndarray:
        """
        Halved Euclidean distances between rows of two normalized matrices

        Computed in row chunks so memory stays O(chunk * m * d).
        """
        n, m = len(matrix_a), len(matrix_b)
        distances = np.empty((n, m))

        for start in range(0, n, _CHUNK_ROWS):
            chunk = matrix_a[start:start + _CHUNK_ROWS]
            diff = chunk[:, None, :] - matrix_b[None, :, :]
            distances[start:start + len(chunk)] = np.sqrt(np.sum(diff * diff, axis=2)) / 2.0

        return distances

    def match(self, descriptors_a: Sequence[Descriptor],
              descriptors_b: Sequence[Descriptor]) -> List[Match]:
        """
        Match descriptors of image A against descriptors of image B

        Returns:
            Matches ordered by A index
        """
        if len(descriptors_a) == 0 or len(descriptors_b) == 0:
            return []

        image_a = descriptors_a[0].image_index
        image_b = descriptors_b[0].image_index
        if any(d.image_index != image_a for d in descriptors_a) or \
           any(d.image_index != image_b for d in descriptors_b):
            raise InvalidInput("Each descriptor sequence must come from a single image")

        matrix_a = descriptor_matrix(descriptors_a)
        matrix_b = descriptor_matrix(descriptors_b)
        if matrix_a.shape[1] != matrix_b.shape[1]:
            raise InvalidInput(
                f"Descriptor lengths differ: {matrix_a.shape[1]} vs {matrix_b.shape[1]}")

        if self.index == 'kdtree':
            best_idx, best_dist = self._nearest_kdtree(matrix_a, matrix_b)
        else:
            distances = self.distance_matrix(matrix_a, matrix_b)
            # argmin returns the first minimum, i.e. the lowest B index on ties
            best_idx = np.argmin(distances, axis=1)
            best_dist = distances[np.arange(len(matrix_a)), best_idx]

        matches = []
        for i, (j, dist) in enumerate(zip(best_idx, best_dist)):
            similarity = 1.0 - float(dist)
            if similarity >= self.similarity_threshold:
                matches.append(Match(
                    image_a=image_a,
                    index_a=descriptors_a[i].index,
                    image_b=image_b,
                    index_b=descriptors_b[int(j)].index,
                    similarity=similarity
                ))

        return matches

    def _nearest_kdtree(self, matrix_a: np.ndarray,
                        matrix_b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Nearest neighbors through a KD-tree, resolving ties to the lowest index"""
        tree = cKDTree(matrix_b)
        k = min(4, len(matrix_b))
        dists, idxs = tree.query(matrix_a, k=k)
        dists = np.asarray(dists).reshape(len(matrix_a), k) / 2.0
        idxs = np.asarray(idxs).reshape(len(matrix_a), k)

        best_idx = np.empty(len(matrix_a), dtype=int)
        best_dist = np.empty(len(matrix_a))
        for row in range(len(matrix_a)):
            nearest = dists[row].min()
            tied = idxs[row][dists[row] == nearest]
            best_idx[row] = tied.min()
            best_dist[row] = nearest

        return best_idx, best_dist

    def match_all_pairs(self, descriptor_sets: Sequence[Sequence[Descriptor]],
                        window: int = 1) -> Dict[Tuple[int, int], List[Match]]:
        """
        Match every image pair (i, j) with 0 < j - i <= window

        Args:
            descriptor_sets: descriptors per image, indexed by position
            window: how many following images each image is matched against

        Returns:
            dict of {(i, j): matches}, pairs with no matches omitted
        """
        n_images = len(descriptor_sets)
        results = {}

        for i in range(n_images):
            for j in range(i + 1, min(i + window + 1, n_images)):
                pair_matches = self.match(descriptor_sets[i], descriptor_sets[j])
                if pair_matches:
                    results[(i, j)] = pair_matches
                logger.debug("Matched images %d-%d: %d matches", i, j, len(pair_matches))

        logger.info("Matched %d/%d image pairs", len(results),
                    sum(min(window, n_images - i - 1) for i in range(n_images)))
        return results
