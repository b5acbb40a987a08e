"""Surface normal and curvature estimation by local principal component analysis.

Classes:
    OrientationTypes: Supported normal orientation types.
    Normals: Per-point unit normals, curvature and fallback flags.

Functions:
    estimate_normals: Estimates normals and curvature of a point cloud.
    project_to_tangent_planes: Smooths a point cloud by projecting each point onto its local tangent plane.
"""
import logging
import time
from enum import Flag, auto
from multiprocessing import cpu_count
from typing import Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from .errors import DegenerateNeighborhood
from .search import SearchParamTypes, SpatialIndex, build_index, eval_search_param, get_chunks, get_neighborhoods

logger = logging.getLogger(__name__)

MIN_NEIGHBORS = 3


class OrientationTypes(Flag):
    """Supported normal orientation types."""
    CENTROID = auto()
    CAMERA = auto()
    DIRECTION = auto()


class Normals:
    """Per-point unit normals, curvature and fallback flags, indexed like the point cloud they belong to.

    Attributes:
        normals: The Nx3 unit normals.
        curvature: The N curvature estimates (smallest eigenvalue over the sum of eigenvalues).
        degenerate: N flags marking points whose normal is a fallback because their neighborhood was too small.
    """

    def __init__(self,
                 normals: np.ndarray,
                 curvature: np.ndarray,
                 degenerate: Union[np.ndarray, None] = None) -> None:
        self.normals = np.array(normals, dtype=np.float64).reshape(-1, 3)
        self.curvature = np.array(curvature, dtype=np.float64).ravel()
        if degenerate is None:
            degenerate = np.zeros(len(self.normals), dtype=bool)
        self.degenerate = np.array(degenerate, dtype=bool).ravel()
        if not len(self.normals) == len(self.curvature) == len(self.degenerate):
            raise ValueError(f"Normals, curvature and degenerate flags must have equal length but have "
                             f"{len(self.normals)}, {len(self.curvature)} and {len(self.degenerate)}.")
        for array in [self.normals, self.curvature, self.degenerate]:
            array.setflags(write=False)

    def __len__(self) -> int:
        return len(self.normals)


def _covariance_chunk(points: np.ndarray,
                      index: SpatialIndex,
                      search_param: SearchParamTypes,
                      radius: float,
                      knn: int,
                      start: int,
                      stop: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    neighborhoods = get_neighborhoods(points, index, search_param, radius, knn, start, stop)
    centroids = np.zeros((len(neighborhoods), 3))
    covariances = np.zeros((len(neighborhoods), 3, 3))
    counts = np.zeros(len(neighborhoods), dtype=np.int64)
    for i, (indices, _) in enumerate(neighborhoods):
        counts[i] = len(indices)
        if len(indices) == 0:
            continue
        neighbors = index.data[indices]
        centroids[i] = neighbors.mean(axis=0)
        offsets = neighbors - centroids[i]
        covariances[i] = offsets.T @ offsets / len(indices)
    return centroids, covariances, counts


def _local_frames(points: np.ndarray,
                  search_param: SearchParamTypes,
                  radius: float,
                  knn: int,
                  n_jobs: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Computes neighborhood centroids, ascending eigenvalues, eigenvectors (as columns) and neighborhood sizes."""
    index = build_index(points)
    n_jobs = cpu_count() if n_jobs == -1 else max(1, n_jobs)
    chunks = get_chunks(len(points), n_jobs)
    if len(chunks) == 1:
        results = [_covariance_chunk(points, index, search_param, radius, knn, *chunks[0])]
    else:
        parallel = Parallel(n_jobs=len(chunks), prefer="threads")
        results = parallel(delayed(_covariance_chunk)(points, index, search_param, radius, knn, start, stop)
                           for start, stop in chunks)
    centroids = np.concatenate([r[0] for r in results])
    covariances = np.concatenate([r[1] for r in results])
    counts = np.concatenate([r[2] for r in results])
    eigenvalues, eigenvectors = np.linalg.eigh(covariances)
    return centroids, np.clip(eigenvalues, 0.0, None), eigenvectors, counts


def _orientation_vectors(points: np.ndarray,
                         orientation: OrientationTypes,
                         reference: Union[np.ndarray, list, None]) -> np.ndarray:
    if orientation == OrientationTypes.CENTROID:
        return points - points.mean(axis=0)
    elif orientation == OrientationTypes.CAMERA:
        camera_location = np.zeros(3) if reference is None else np.asarray(reference, dtype=np.float64).ravel()
        return camera_location - points
    elif orientation == OrientationTypes.DIRECTION:
        direction = np.array([0.0, 0.0, 1.0]) if reference is None else np.asarray(reference, dtype=np.float64).ravel()
        return np.tile(direction, (len(points), 1))
    raise ValueError(f"`orientation` needs to be one of `OrientationTypes` but is {orientation}.")


def estimate_normals(points: np.ndarray,
                     search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
                     radius: float = 0.02,
                     knn: int = 30,
                     orientation: OrientationTypes = OrientationTypes.CENTROID,
                     reference: Union[np.ndarray, list, None] = None,
                     strict: bool = True,
                     n_jobs: int = 1) -> Normals:
    """Estimates normals and curvature of a point cloud by local principal component analysis.

    The normal of a point is the eigenvector belonging to the smallest eigenvalue of the covariance of its
    neighborhood (the point itself included). Its sign is chosen to agree with an orientation reference: away from
    the cloud centroid, towards a camera location or along a fixed direction.

    Args:
        points: The Nx3 points.
        search_param: The neighborhood search type.
        radius: Search radius used by `RADIUS_SEARCH` and `HYBRID`.
        knn: Number of neighbors used by `K_NEAREST` and maximum number of neighbors used by `HYBRID`.
        orientation: How to disambiguate the sign of the normals.
        reference: The camera location for `CAMERA` (default origin) or the direction for `DIRECTION` (default +z).
        strict: Raise on neighborhoods with fewer than three points. Otherwise, such points get the normalized
                orientation reference as normal and zero curvature and are flagged as degenerate.
        n_jobs: Number of threads. -1 uses all cores. The result does not depend on it.

    Raises:
        DegenerateNeighborhood: If `strict` and a neighborhood holds fewer than three points.

    Returns:
        The normals, curvature and degenerate flags.
    """
    start = time.time()
    _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    eval_search_param(search_param, radius, knn)
    if len(_points) == 0:
        return Normals(normals=np.empty((0, 3)), curvature=np.empty(0))

    _, eigenvalues, eigenvectors, counts = _local_frames(_points, search_param, radius, knn, n_jobs)
    degenerate = counts < MIN_NEIGHBORS
    if strict and np.any(degenerate):
        index = int(np.flatnonzero(degenerate)[0])
        raise DegenerateNeighborhood(f"Point {index} has only {counts[index]} neighbors but at least {MIN_NEIGHBORS} "
                                     f"are needed to estimate its normal.",
                                     index=index,
                                     num_neighbors=int(counts[index]))

    normals = eigenvectors[:, :, 0].copy()
    total = eigenvalues.sum(axis=1)
    curvature = np.divide(eigenvalues[:, 0], total, out=np.zeros(len(total)), where=total > 0)

    reference_vectors = _orientation_vectors(_points, orientation, reference)
    flip = np.einsum("ij,ij->i", normals, reference_vectors) < 0
    normals[flip] *= -1.0

    if np.any(degenerate):
        logger.warning(f"{degenerate.sum()} points have fewer than {MIN_NEIGHBORS} neighbors. Using the orientation "
                       f"reference as their normal.")
        fallback = reference_vectors[degenerate]
        norms = np.linalg.norm(fallback, axis=1)
        fallback[norms == 0] = [0.0, 0.0, 1.0]
        norms[norms == 0] = 1.0
        normals[degenerate] = fallback / norms[:, None]
        curvature[degenerate] = 0.0

    logger.debug(f"Normal estimation of {len(_points)} points took {time.time() - start} seconds.")
    return Normals(normals=normals, curvature=curvature, degenerate=degenerate)


def project_to_tangent_planes(points: np.ndarray,
                              search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
                              radius: float = 0.02,
                              knn: int = 30,
                              n_jobs: int = 1) -> np.ndarray:
    """Smooths a point cloud by projecting each point onto the plane fitted to its neighborhood.

    This is a first order moving least squares surface. Points with fewer than three neighbors are left in place.

    Args:
        points: The Nx3 points.
        search_param: The neighborhood search type.
        radius: Search radius used by `RADIUS_SEARCH` and `HYBRID`.
        knn: Number of neighbors used by `K_NEAREST` and maximum number of neighbors used by `HYBRID`.
        n_jobs: Number of threads. -1 uses all cores.

    Returns:
        The smoothed Nx3 points.
    """
    start = time.time()
    _points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    eval_search_param(search_param, radius, knn)
    if len(_points) == 0:
        return _points.copy()

    centroids, _, eigenvectors, counts = _local_frames(_points, search_param, radius, knn, n_jobs)
    normals = eigenvectors[:, :, 0]
    heights = np.einsum("ij,ij->i", _points - centroids, normals)
    heights[counts < MIN_NEIGHBORS] = 0.0
    smoothed = _points - heights[:, None] * normals

    logger.debug(f"Smoothing of {len(_points)} points took {time.time() - start} seconds.")
    return smoothed
