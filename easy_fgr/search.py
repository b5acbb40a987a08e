"""Nearest neighbor search in 3D and in feature space.

Classes:
    SearchParamTypes: Supported neighborhood search types.
    SpatialIndex: A k-d tree over a set of points or feature vectors.

Functions:
    build_index: Builds a spatial index.
    eval_search_param: Validates neighborhood search parameters.
    get_neighborhoods: Returns the neighborhood of every point of a cloud within the cloud itself.
    get_chunks: Splits query indices into contiguous ranges for parallel processing.
"""
import logging
from enum import Flag, auto
from typing import List, Tuple, Union

import numpy as np
import open3d as o3d

from .errors import InsufficientNeighbors, InvalidConfiguration

KDTreeFlann = o3d.geometry.KDTreeFlann

logger = logging.getLogger(__name__)


class SearchParamTypes(Flag):
    """Supported neighborhood search types."""
    RADIUS_SEARCH = auto()
    K_NEAREST = auto()
    HYBRID = auto()


def eval_search_param(search_param: SearchParamTypes, radius: float, knn: int) -> None:
    """Validates neighborhood search parameters.

    Args:
        search_param: The neighborhood search type.
        radius: Search radius used by `RADIUS_SEARCH` and `HYBRID`.
        knn: Number of neighbors used by `K_NEAREST` and maximum number of neighbors used by `HYBRID`.

    Raises:
        InvalidConfiguration: If a parameter required by `search_param` is not positive.
    """
    if not isinstance(search_param, SearchParamTypes):
        raise InvalidConfiguration(f"`search_param` must be one of `SearchParamTypes` but is {search_param}.")
    if search_param in [SearchParamTypes.RADIUS_SEARCH, SearchParamTypes.HYBRID] and not radius > 0:
        raise InvalidConfiguration(f"Search radius must be positive but is {radius}.")
    if search_param in [SearchParamTypes.K_NEAREST, SearchParamTypes.HYBRID] and not (int(knn) == knn and knn > 0):
        raise InvalidConfiguration(f"Number of neighbors must be a positive integer but is {knn}.")


class SpatialIndex:
    """A k-d tree over a set of points or feature vectors.

    Wraps Open3D's `KDTreeFlann`. Query results are ordered by increasing distance with ties broken by index, so
    neighborhoods do not depend on the tree's internal traversal order.

    Attributes:
        data: The indexed NxD array.

    Methods:
        radius_search(query, radius): Returns all neighbors within `radius`.
        knn_search(query, k): Returns the `k` nearest neighbors.
        hybrid_search(query, radius, max_nn): Returns at most `max_nn` nearest neighbors within `radius`.
        search(query, search_param, radius, knn): Dispatches to one of the above based on `search_param`.
    """

    def __init__(self, data: np.ndarray) -> None:
        """
        Args:
            data: A NxD array, e.g. Nx3 points or Nx33 FPFH features.
        """
        _data = np.ascontiguousarray(data, dtype=np.float64)
        if _data.ndim != 2:
            raise ValueError(f"Indexed data must have shape NxD but has shape {_data.shape}.")
        _data.setflags(write=False)
        self.data = _data
        self._tree = KDTreeFlann(np.ascontiguousarray(_data.T)) if len(_data) > 0 else None
        self._is_3d = _data.shape[1] == 3

    def __len__(self) -> int:
        return len(self.data)

    @property
    def dimension(self) -> int:
        return self.data.shape[1]

    def _eval_query(self, query: Union[np.ndarray, list]) -> np.ndarray:
        if self._tree is None:
            raise InsufficientNeighbors("Can't search an empty index.")
        _query = np.asarray(query, dtype=np.float64).ravel()
        if _query.size != self.dimension:
            raise ValueError(f"Query must have {self.dimension} values but has {_query.size}.")
        return _query

    @staticmethod
    def _sorted(indices, distances) -> Tuple[np.ndarray, np.ndarray]:
        _indices = np.asarray(indices, dtype=np.int64)
        _distances = np.asarray(distances, dtype=np.float64)
        order = np.lexsort((_indices, _distances))
        return _indices[order], _distances[order]

    def radius_search(self, query: Union[np.ndarray, list], radius: float) -> Tuple[np.ndarray, np.ndarray]:
        """Returns all neighbors within `radius`.

        Args:
            query: The query point or feature vector.
            radius: The search radius.

        Raises:
            InsufficientNeighbors: If there is no neighbor within `radius`.

        Returns:
            Neighbor indices and squared distances ordered by increasing distance.
        """
        if not radius > 0:
            raise InvalidConfiguration(f"Search radius must be positive but is {radius}.")
        _query = self._eval_query(query)
        if self._is_3d:
            k, indices, distances = self._tree.search_radius_vector_3d(_query, radius)
        else:
            k, indices, distances = self._tree.search_radius_vector_xd(_query.reshape(-1, 1), radius)
        if k == 0:
            raise InsufficientNeighbors(f"No neighbors found within radius {radius}.")
        return self._sorted(indices, distances)

    def knn_search(self, query: Union[np.ndarray, list], k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Returns the `k` nearest neighbors. Requests for more neighbors than indexed points return all points.

        Args:
            query: The query point or feature vector.
            k: The number of neighbors.

        Returns:
            Neighbor indices and squared distances ordered by increasing distance.
        """
        if not (int(k) == k and k > 0):
            raise InvalidConfiguration(f"Number of neighbors must be a positive integer but is {k}.")
        _query = self._eval_query(query)
        knn = min(int(k), len(self))
        if self._is_3d:
            _, indices, distances = self._tree.search_knn_vector_3d(_query, knn)
        else:
            _, indices, distances = self._tree.search_knn_vector_xd(_query.reshape(-1, 1), knn)
        return self._sorted(indices, distances)

    def hybrid_search(self,
                      query: Union[np.ndarray, list],
                      radius: float,
                      max_nn: int) -> Tuple[np.ndarray, np.ndarray]:
        """Returns at most `max_nn` nearest neighbors within `radius`.

        Raises:
            InsufficientNeighbors: If there is no neighbor within `radius`.
        """
        indices, distances = self.radius_search(query, radius)
        if not (int(max_nn) == max_nn and max_nn > 0):
            raise InvalidConfiguration(f"Maximum number of neighbors must be a positive integer but is {max_nn}.")
        return indices[:int(max_nn)], distances[:int(max_nn)]

    def search(self,
               query: Union[np.ndarray, list],
               search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
               radius: float = 0.02,
               knn: int = 30) -> Tuple[np.ndarray, np.ndarray]:
        """Returns the neighborhood of `query` selected by `search_param`.

        Args:
            query: The query point or feature vector.
            search_param: The neighborhood search type.
            radius: Search radius used by `RADIUS_SEARCH` and `HYBRID`.
            knn: Number of neighbors used by `K_NEAREST` and maximum number of neighbors used by `HYBRID`.

        Returns:
            Neighbor indices and squared distances ordered by increasing distance.
        """
        if search_param == SearchParamTypes.RADIUS_SEARCH:
            return self.radius_search(query, radius)
        elif search_param == SearchParamTypes.K_NEAREST:
            return self.knn_search(query, knn)
        elif search_param == SearchParamTypes.HYBRID:
            return self.hybrid_search(query, radius, knn)
        raise InvalidConfiguration(f"`search_param` must be one of `SearchParamTypes` but is {search_param}.")


def build_index(data: np.ndarray) -> SpatialIndex:
    """Builds a spatial index over a NxD array of points or feature vectors."""
    return SpatialIndex(data)


def get_neighborhoods(points: np.ndarray,
                      index: SpatialIndex,
                      search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
                      radius: float = 0.02,
                      knn: int = 30,
                      start: int = 0,
                      stop: Union[int, None] = None) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Returns the neighborhoods of `points[start:stop]` in `index`.

    Queries without any neighbor yield empty arrays instead of raising, so callers decide how to handle them.

    Args:
        points: The Nx3 query points.
        index: The spatial index, usually built over `points` itself.
        search_param: The neighborhood search type.
        radius: Search radius used by `RADIUS_SEARCH` and `HYBRID`.
        knn: Number of neighbors used by `K_NEAREST` and maximum number of neighbors used by `HYBRID`.
        start: First query index.
        stop: One past the last query index. All remaining points if `None`.

    Returns:
        A list of (indices, squared distances) per query point.
    """
    neighborhoods = list()
    for point in points[start:stop]:
        try:
            neighborhoods.append(index.search(point, search_param=search_param, radius=radius, knn=knn))
        except InsufficientNeighbors:
            neighborhoods.append((np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)))
    return neighborhoods


def get_chunks(num_points: int, n_jobs: int) -> List[Tuple[int, int]]:
    """Splits `num_points` query indices into at most `n_jobs` contiguous (start, stop) ranges."""
    num_chunks = max(1, min(n_jobs, num_points))
    bounds = np.linspace(0, num_points, num_chunks + 1).astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:])]
