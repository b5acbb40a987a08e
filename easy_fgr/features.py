"""Fast Point Feature Histogram (FPFH) descriptors.

Classes:
    FeatureSet: Per-point feature vectors indexed like the point cloud they describe.

Functions:
    compute_pair_features: Computes the Darboux frame angles between a point and its neighbors.
    compute_spfh: Computes Simplified Point Feature Histograms.
    compute_fpfh_feature: Computes FPFH descriptors of a point cloud.
"""
import logging
import time
from multiprocessing import cpu_count
from typing import List, Tuple, Union

import numpy as np
import open3d as o3d
from joblib import Parallel, delayed

from .errors import InsufficientNeighbors
from .search import (SearchParamTypes, SpatialIndex, build_index, eval_search_param, get_chunks,
                     get_neighborhoods)

Feature = o3d.pipelines.registration.Feature
Neighborhoods = List[Tuple[np.ndarray, np.ndarray]]

logger = logging.getLogger(__name__)

NUM_BINS = 11
FEATURE_DIMENSION = 3 * NUM_BINS
HISTOGRAM_SUM = 100.0


class FeatureSet:
    """Per-point feature vectors indexed like the point cloud they describe.

    Attributes:
        data: The NxD feature matrix. For FPFH, D is 33: three 11-bin histograms (theta, alpha, phi), each summing to
              100 (or all zero for points without neighbors).

    Methods:
        from_open3d(feature): Constructs a feature set from an Open3D `Feature`.
        to_open3d(): Converts to an Open3D `Feature`.
    """

    def __init__(self, data: np.ndarray) -> None:
        _data = np.array(data, dtype=np.float64)
        if _data.ndim != 2:
            raise ValueError(f"Feature data must have shape NxD but has shape {_data.shape}.")
        _data.setflags(write=False)
        self.data = _data

    def __len__(self) -> int:
        return len(self.data)

    @property
    def dimension(self) -> int:
        return self.data.shape[1]

    @classmethod
    def from_open3d(cls, feature: Feature) -> "FeatureSet":
        """Constructs a feature set from an Open3D `Feature`, whose data is stored as DxN."""
        return cls(np.asarray(feature.data).T)

    def to_open3d(self) -> Feature:
        feature = Feature()
        feature.data = np.array(self.data.T, order="C")
        return feature


def eval_feature_data(feature: Union[FeatureSet, Feature, np.ndarray]) -> FeatureSet:
    """Evaluates Open3D features or NxD arrays to obtain a `FeatureSet`."""
    if isinstance(feature, FeatureSet):
        return feature
    elif isinstance(feature, Feature):
        return FeatureSet.from_open3d(feature)
    elif isinstance(feature, np.ndarray):
        return FeatureSet(feature)
    raise TypeError(f"Can't evaluate feature of type {type(feature)}.")


def compute_pair_features(point: np.ndarray,
                          normal: np.ndarray,
                          neighbors: np.ndarray,
                          neighbor_normals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Computes the Darboux frame angles between a point and each of its neighbors.

    For every pair, the frame is anchored at the endpoint whose normal encloses the smaller angle with the line
    connecting both points. With u the anchor normal, v = (p_t - p_s) x u / |..| and w = u x v:
    theta = atan2(w . n_t, u . n_t), alpha = v . n_t and phi = u . (p_t - p_s) / |p_t - p_s|.

    Args:
        point: The 3D point.
        normal: Its unit normal.
        neighbors: A Kx3 array of neighboring points.
        neighbor_normals: Their Kx3 unit normals.

    Returns:
        A Kx4 array holding theta, alpha, phi and the point distance per pair, and a K mask of valid pairs. Pairs
        of coincident points or with the connecting line parallel to the anchor normal are invalid and zero.
    """
    dp = neighbors - point
    distance = np.linalg.norm(dp, axis=1)
    valid = distance > 0
    safe_distance = np.where(valid, distance, 1.0)

    angle_source = dp @ normal / safe_distance
    angle_target = np.einsum("ij,ij->i", neighbor_normals, dp) / safe_distance
    swap = np.abs(angle_source) < np.abs(angle_target)

    n_source = np.where(swap[:, None], neighbor_normals, normal)
    n_target = np.where(swap[:, None], normal, neighbor_normals)
    dp = np.where(swap[:, None], -dp, dp)
    phi = np.where(swap, -angle_target, angle_source)

    v = np.cross(dp, n_source)
    v_norm = np.linalg.norm(v, axis=1)
    valid &= v_norm > 0
    v /= np.where(valid, v_norm, 1.0)[:, None]
    w = np.cross(n_source, v)

    alpha = np.einsum("ij,ij->i", v, n_target)
    theta = np.arctan2(np.einsum("ij,ij->i", w, n_target), np.einsum("ij,ij->i", n_source, n_target))

    features = np.stack([theta, alpha, phi, distance], axis=1)
    features[~valid] = 0.0
    return features, valid


def _bin(values: np.ndarray, low: float, high: float) -> np.ndarray:
    bins = np.floor(NUM_BINS * (values - low) / (high - low)).astype(np.int64)
    return np.clip(bins, 0, NUM_BINS - 1)


def _other_neighbors(i: int, indices: np.ndarray, distances: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    mask = indices != i
    return indices[mask], distances[mask]


def _spfh_chunk(points: np.ndarray,
                normals: np.ndarray,
                neighborhoods: Neighborhoods,
                start: int) -> Tuple[np.ndarray, np.ndarray]:
    histograms = np.zeros((len(neighborhoods), FEATURE_DIMENSION))
    num_pairs = np.zeros(len(neighborhoods), dtype=np.int64)
    for k, (indices, distances) in enumerate(neighborhoods):
        i = start + k
        others, _ = _other_neighbors(i, indices, distances)
        if len(others) == 0:
            continue
        features, valid = compute_pair_features(points[i], normals[i], points[others], normals[others])
        num_pairs[k] = valid.sum()
        if num_pairs[k] == 0:
            continue
        features = features[valid]
        increment = HISTOGRAM_SUM / num_pairs[k]
        histograms[k, :NUM_BINS] = np.bincount(_bin(features[:, 0], -np.pi, np.pi), minlength=NUM_BINS) * increment
        histograms[k, NUM_BINS:2 * NUM_BINS] = np.bincount(_bin(features[:, 1], -1.0, 1.0),
                                                           minlength=NUM_BINS) * increment
        histograms[k, 2 * NUM_BINS:] = np.bincount(_bin(features[:, 2], -1.0, 1.0), minlength=NUM_BINS) * increment
    return histograms, num_pairs


def _normalize_blocks(histogram: np.ndarray) -> np.ndarray:
    blocks = histogram.reshape(-1, 3, NUM_BINS)
    sums = blocks.sum(axis=2, keepdims=True)
    blocks = np.divide(blocks * HISTOGRAM_SUM, sums, out=np.zeros_like(blocks), where=sums > 0)
    return blocks.reshape(histogram.shape)


def _fpfh_chunk(spfh: np.ndarray, neighborhoods: Neighborhoods, start: int) -> np.ndarray:
    fpfh = np.zeros((len(neighborhoods), FEATURE_DIMENSION))
    for k, (indices, distances) in enumerate(neighborhoods):
        i = start + k
        others, squared_distances = _other_neighbors(i, indices, distances)
        distance = np.sqrt(squared_distances)
        mask = distance > 0
        pooled = np.zeros(FEATURE_DIMENSION)
        if np.any(mask):
            pooled = (spfh[others[mask]] / distance[mask][:, None]).sum(axis=0)
            pooled = _normalize_blocks(pooled)
        fpfh[k] = _normalize_blocks(spfh[i] + pooled)
    return fpfh


def _run_chunks(func, chunks, n_jobs, *args) -> list:
    if len(chunks) == 1 or n_jobs == 1:
        return [func(*args, start, stop) for start, stop in chunks]
    parallel = Parallel(n_jobs=len(chunks), prefer="threads")
    return parallel(delayed(func)(*args, start, stop) for start, stop in chunks)


def compute_spfh(points: np.ndarray,
                 normals: np.ndarray,
                 neighborhoods: Neighborhoods) -> np.ndarray:
    """Computes Simplified Point Feature Histograms.

    Args:
        points: The Nx3 points.
        normals: Their Nx3 unit normals.
        neighborhoods: Per point, the neighbor indices and squared distances. The point itself is ignored.

    Returns:
        The Nx33 SPFH matrix. Rows of points without valid neighbor pairs are zero.
    """
    histograms, _ = _spfh_chunk(np.asarray(points, dtype=np.float64),
                                np.asarray(normals, dtype=np.float64),
                                neighborhoods,
                                0)
    return histograms


def compute_fpfh_feature(points: np.ndarray,
                         normals: np.ndarray,
                         search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
                         radius: float = 0.05,
                         knn: int = 100,
                         strict: bool = True,
                         n_jobs: int = 1,
                         index: Union[SpatialIndex, None] = None) -> FeatureSet:
    """Computes FPFH descriptors of a point cloud.

    First, the SPFH of every point is computed from its pairs with its neighbors. The FPFH of a point is its own
    SPFH plus the SPFHs of its neighbors weighted by inverse distance, each of the three sub-histograms normalized
    to sum to 100.

    Args:
        points: The Nx3 points.
        normals: Their Nx3 unit normals, e.g. `Normals.normals`.
        search_param: The neighborhood search type.
        radius: Search radius used by `RADIUS_SEARCH` and `HYBRID`.
        knn: Number of neighbors used by `K_NEAREST` and maximum number of neighbors used by `HYBRID`.
        strict: Raise if a point has no neighbor besides itself. Otherwise, its descriptor is zero.
        n_jobs: Number of threads. -1 uses all cores. The result does not depend on it.
        index: A spatial index over `points`. Built if not provided.

    Raises:
        InsufficientNeighbors: If `strict` and a point has no valid neighbor.

    Returns:
        The Nx33 FPFH feature set.
    """
    start = time.time()
    _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    _normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    if len(_points) != len(_normals):
        raise ValueError(f"Points and normals must have equal length but have {len(_points)} and {len(_normals)}.")
    eval_search_param(search_param, radius, knn)
    if len(_points) == 0:
        return FeatureSet(np.empty((0, FEATURE_DIMENSION)))

    _index = build_index(_points) if index is None else index
    n_jobs = cpu_count() if n_jobs == -1 else max(1, n_jobs)
    chunks = get_chunks(len(_points), n_jobs)

    neighborhoods = list()
    for chunk in _run_chunks(get_neighborhoods, chunks, n_jobs, _points, _index, search_param, radius, knn):
        neighborhoods.extend(chunk)

    def spfh_chunk(start, stop):
        return _spfh_chunk(_points, _normals, neighborhoods[start:stop], start)

    results = _run_chunks(spfh_chunk, chunks, n_jobs)
    spfh = np.concatenate([r[0] for r in results])
    num_pairs = np.concatenate([r[1] for r in results])

    isolated = num_pairs == 0
    if np.any(isolated):
        if strict:
            i = int(np.flatnonzero(isolated)[0])
            raise InsufficientNeighbors(f"Point {i} has no neighbors to compute its FPFH feature from.", index=i)
        logger.warning(f"{isolated.sum()} points have no neighbors. Their FPFH features are zero.")

    def fpfh_chunk(start, stop):
        return _fpfh_chunk(spfh, neighborhoods[start:stop], start)

    fpfh = np.concatenate(_run_chunks(fpfh_chunk, chunks, n_jobs))
    fpfh[isolated] = 0.0

    logger.debug(f"FPFH computation of {len(_points)} points took {time.time() - start} seconds.")
    return FeatureSet(fpfh)
