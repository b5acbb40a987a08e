"""Feature-space correspondence search with mutual consistency and tuple tests.

Classes:
    CorrespondenceSet: Index pairs between two point clouds and their feature distances.

Functions:
    advanced_matching: Finds correspondences between two point clouds from their features.
"""
import logging
import time
from typing import Union

import numpy as np
import open3d as o3d

from .config import RegistrationConfig
from .features import FeatureSet, eval_feature_data
from .search import SpatialIndex, build_index

Feature = o3d.pipelines.registration.Feature

logger = logging.getLogger(__name__)

TRIALS_PER_CORRESPONDENCE = 100
TUPLE_BATCH_SIZE = 10000


class CorrespondenceSet:
    """Index pairs between two point clouds and their feature distances.

    Attributes:
        indices: Kx2 integer array. Column 0 indexes the first cloud (A), column 1 the second (B).
        distances: The K feature-space L2 distances of the pairs.
    """

    def __init__(self, indices: np.ndarray, distances: Union[np.ndarray, None] = None) -> None:
        _indices = np.array(indices, dtype=np.int64).reshape(-1, 2)
        _distances = np.zeros(len(_indices)) if distances is None else np.array(distances, dtype=np.float64).ravel()
        if len(_indices) != len(_distances):
            raise ValueError(f"Got {len(_indices)} index pairs but {len(_distances)} distances.")
        _indices.setflags(write=False)
        _distances.setflags(write=False)
        self.indices = _indices
        self.distances = _distances

    def __len__(self) -> int:
        return len(self.indices)

    def __repr__(self) -> str:
        return f"CorrespondenceSet with {len(self)} correspondences"

    def to_open3d(self) -> o3d.utility.Vector2iVector:
        return o3d.utility.Vector2iVector(np.array(self.indices, dtype=np.int32))


def _nearest(index: SpatialIndex, query: np.ndarray) -> int:
    indices, _ = index.knn_search(query, 1)
    return int(indices[0])


def _mutual_matches(features_i: np.ndarray, features_j: np.ndarray, cross_check: bool) -> np.ndarray:
    """Matches every descriptor of j to its nearest in i and, lazily once per hit i, back to its nearest in j."""
    index_i = build_index(features_i)
    index_j = build_index(features_j)

    j_to_i = np.array([_nearest(index_i, f) for f in features_j], dtype=np.int64)
    i_to_j = np.full(len(features_i), -1, dtype=np.int64)
    for i in j_to_i:
        if i_to_j[i] == -1:
            i_to_j[i] = _nearest(index_j, features_i[i])

    j = np.arange(len(features_j))
    if cross_check:
        mutual = i_to_j[j_to_i] == j
        return np.stack([j_to_i[mutual], j[mutual]], axis=1)

    for i in range(len(features_i)):
        if i_to_j[i] == -1:
            i_to_j[i] = _nearest(index_j, features_i[i])
    pairs = np.concatenate([np.stack([j_to_i, j], axis=1),
                            np.stack([np.arange(len(features_i)), i_to_j], axis=1)])
    return np.unique(pairs, axis=0)


def _edge_lengths(points: np.ndarray, triplets: np.ndarray) -> np.ndarray:
    p0, p1, p2 = points[triplets[:, 0]], points[triplets[:, 1]], points[triplets[:, 2]]
    return np.stack([np.linalg.norm(p0 - p1, axis=1),
                     np.linalg.norm(p1 - p2, axis=1),
                     np.linalg.norm(p2 - p0, axis=1)], axis=1)


def _tuple_test(points_i: np.ndarray,
                points_j: np.ndarray,
                pairs: np.ndarray,
                max_tuples: int,
                scale: float,
                seed: Union[int, None]) -> np.ndarray:
    """Keeps random triplets of correspondences whose edge lengths agree up to `scale` in both clouds."""
    rng = np.random.default_rng(seed)
    num_pairs = len(pairs)
    trials_left = TRIALS_PER_CORRESPONDENCE * num_pairs
    accepted = list()
    num_accepted = 0
    while trials_left > 0 and num_accepted < max_tuples:
        batch_size = min(TUPLE_BATCH_SIZE, trials_left)
        trials_left -= batch_size
        triplets = rng.integers(0, num_pairs, size=(batch_size, 3))
        lengths_i = _edge_lengths(points_i, pairs[triplets, 0])
        lengths_j = _edge_lengths(points_j, pairs[triplets, 1])
        valid = np.all((lengths_i * scale < lengths_j) & (lengths_j < lengths_i / scale), axis=1)
        triplets = triplets[valid][:max_tuples - num_accepted]
        accepted.append(triplets)
        num_accepted += len(triplets)
    if num_accepted == 0:
        return np.empty((0, 2), dtype=np.int64)
    return pairs[np.concatenate(accepted).ravel()]


def advanced_matching(points_a: np.ndarray,
                      features_a: Union[FeatureSet, Feature, np.ndarray],
                      points_b: np.ndarray,
                      features_b: Union[FeatureSet, Feature, np.ndarray],
                      config: Union[RegistrationConfig, None] = None) -> CorrespondenceSet:
    """Finds correspondences between two point clouds from their features.

    Matching starts from the larger cloud: each of its descriptors is matched to the nearest descriptor in the
    smaller cloud. With `cross_check`, only pairs that are also nearest the other way round survive; otherwise the
    matches of both directions are merged. With `tuple_test`, random triplets of surviving pairs are drawn and a
    triplet is kept if all three edge length ratios between both clouds lie within
    (`similarity_threshold`, 1 / `similarity_threshold`). The kept triplets are concatenated, so a pair can appear
    more than once.

    Args:
        points_a: The Nx3 points of cloud A.
        features_a: The N features of cloud A.
        points_b: The Mx3 points of cloud B.
        features_b: The M features of cloud B.
        config: The registration parameters. Defaults are used if not provided.

    Returns:
        The correspondences. Column 0 indexes A, column 1 indexes B.
    """
    start = time.time()
    config = RegistrationConfig() if config is None else config
    config.validate()

    _points_a = np.asarray(points_a, dtype=np.float64).reshape(-1, 3)
    _points_b = np.asarray(points_b, dtype=np.float64).reshape(-1, 3)
    _features_a = eval_feature_data(features_a).data
    _features_b = eval_feature_data(features_b).data
    if len(_points_a) != len(_features_a) or len(_points_b) != len(_features_b):
        raise ValueError(f"Each point needs one feature but got {len(_points_a)} and {len(_points_b)} points and "
                         f"{len(_features_a)} and {len(_features_b)} features.")
    if _features_a.shape[1] != _features_b.shape[1]:
        raise ValueError(f"Feature dimensions differ: {_features_a.shape[1]} and {_features_b.shape[1]}.")
    if len(_points_a) == 0 or len(_points_b) == 0:
        logger.warning("Can't match features of an empty point cloud.")
        return CorrespondenceSet(np.empty((0, 2), dtype=np.int64))

    swap = len(_points_a) > len(_points_b)
    if swap:
        points_i, features_i, points_j, features_j = _points_b, _features_b, _points_a, _features_a
    else:
        points_i, features_i, points_j, features_j = _points_a, _features_a, _points_b, _features_b

    pairs = _mutual_matches(features_i, features_j, config.cross_check)
    logger.debug(f"Found {len(pairs)} {'mutual ' if config.cross_check else ''}feature matches.")

    if config.tuple_test:
        if len(pairs) < 3:
            logger.warning(f"Only {len(pairs)} feature matches. Skipping tuple test.")
        else:
            pairs = _tuple_test(points_i,
                                points_j,
                                pairs,
                                max_tuples=config.max_tuples,
                                scale=config.similarity_threshold,
                                seed=config.seed)
            logger.debug(f"Tuple test kept {len(pairs) // 3} tuples.")

    indices = pairs[:, ::-1] if swap else pairs
    distances = np.linalg.norm(_features_a[indices[:, 0]] - _features_b[indices[:, 1]], axis=1)
    logger.debug(f"Matching took {time.time() - start} seconds.")
    return CorrespondenceSet(indices, distances)
