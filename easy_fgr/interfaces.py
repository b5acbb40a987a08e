"""Interfaces and base classes.

Classes:
    RegistrationResult: Mutable registration result with runtime and solver convergence information.
    RegistrationInterface: Interface for all registration classes.
"""
import logging
import sys
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Union, Dict, List

import numpy as np
import open3d as o3d
import tqdm

from .matching import CorrespondenceSet
from .transform import RigidTransform, transform_point_cloud
from .utils import (InputTypes, TransformationTypes, draw_geometries, eval_data, eval_transformation_data,
                    merge_point_clouds)

TriangleMesh = o3d.geometry.TriangleMesh
PointCloud = o3d.geometry.PointCloud

logger = logging.getLogger(__name__)


class RegistrationResult:
    """Mutable registration result with runtime and solver convergence information.

    Attributes:
        transformation: The 4x4 transformation aligning source with target.
        correspondence_set: Kx2 indices of source and target points within `max_correspondence_distance` after
                            alignment.
        fitness: Fraction of source points with a target point within `max_correspondence_distance` after alignment.
        inlier_rmse: Root mean squared distance of those point pairs.
        runtime: Wall-clock time of the registration in seconds.
        converged: Whether the solver finished annealing.
        iterations: Number of solver iterations.
        mu_schedule: The robust kernel scale per solver iteration.
        correspondences: The feature correspondences the transformation was estimated from.
    """

    def __init__(self,
                 transformation: np.ndarray,
                 correspondence_set: np.ndarray,
                 fitness: float,
                 inlier_rmse: float,
                 runtime: float,
                 converged: bool = True,
                 iterations: int = 0,
                 mu_schedule: Union[np.ndarray, None] = None,
                 correspondences: Union[CorrespondenceSet, None] = None) -> None:
        self.transformation = transformation
        self.correspondence_set = correspondence_set
        self.fitness = fitness
        self.inlier_rmse = inlier_rmse
        self.runtime = runtime
        self.converged = converged
        self.iterations = iterations
        self.mu_schedule = np.empty(0) if mu_schedule is None else mu_schedule
        self.correspondences = correspondences

    @property
    def transform(self) -> RigidTransform:
        return RigidTransform.from_matrix(self.transformation, orthonormalize=True)

    def __repr__(self) -> str:
        return (f"RegistrationResult with fitness={self.fitness}, inlier_rmse={self.inlier_rmse}, "
                f"converged={self.converged} after {self.iterations} iterations and {self.runtime} seconds.")


class RegistrationInterface(ABC):
    """Base class of registration algorithms.

    Inputs given by key, e.g. a file path, are loaded once and kept in a least-recently-used cache of point clouds,
    so batch runs over the same files don't reload them.

    Attributes:
        name: The name of the registration algorithm.
        auto_cache: Cache every hashable input loaded by `run`.
        cache_size: Maximum number of cached point clouds.

    Methods:
        add_to_cache(data, replace): Loads and caches `data.values()` under `data.keys()`.
        replace_in_cache(data): Replaces point clouds cached under `data.keys()`.
        get_cache_value(data_key): Returns the point cloud cached under `data_key`.
        get_cache_key(cached_value): Returns the key of a cached point cloud.
        is_in_cache(data_key_or_value): Checks for a cache key or a cached point cloud.
        draw_registration_result(source, target, pose, ...): Draws `source` moved by `pose` on top of `target`.
        run(source, target, ...): Runs the registration algorithm of the derived class.
        run_many(source_list, target_list, ...): Registers many sources and targets.
    """

    def __init__(self,
                 name: str,
                 data_to_cache: Union[Dict[Any, InputTypes], None] = None,
                 auto_cache: bool = True,
                 cache_size: int = 100) -> None:
        """
        Args:
            name: The name of the registration algorithm.
            data_to_cache: Point clouds or loadable inputs by key.
            auto_cache: Cache every hashable input loaded by `run`.
            cache_size: Maximum number of cached point clouds. The least recently used one is evicted first.
        """
        self.name = name
        self.auto_cache = auto_cache
        self.cache_size = cache_size
        self._cache = OrderedDict()
        if data_to_cache is not None:
            self.add_to_cache(data=data_to_cache)

    @staticmethod
    def _is_hashable(data: Any) -> bool:
        try:
            hash(data)
        except TypeError:
            return False
        return True

    def _evict(self) -> None:
        while len(self._cache) > self.cache_size:
            key, _ = self._cache.popitem(last=False)
            logger.warning(f"Cache holds more than {self.cache_size} point clouds. Evicted {key}.")

    def _eval_data(self, data_key_or_value: InputTypes) -> PointCloud:
        """Resolves a point cloud, a cache key or a loadable input to a point cloud."""
        if isinstance(data_key_or_value, PointCloud):
            return data_key_or_value
        if not self._is_hashable(data_key_or_value):
            return eval_data(data=data_key_or_value)
        if data_key_or_value in self._cache:
            return self.get_cache_value(data_key_or_value)
        point_cloud = eval_data(data=data_key_or_value)
        if self.auto_cache:
            self.add_to_cache(data={data_key_or_value: point_cloud})
        return point_cloud

    def add_to_cache(self, data: Dict[Any, InputTypes], replace: bool = True) -> None:
        """Loads and caches `data.values()` under `data.keys()`.

        A point cloud cached under another key is moved to the new key.

        Args:
            data: Point clouds or loadable inputs by key.
            replace: Overwrite point clouds already cached under the same key.

        Raises:
            TypeError: If a key isn't hashable.
        """
        for key, value in data.items():
            if not self._is_hashable(key):
                raise TypeError(f"Cache keys need to be hashable but got {type(key)}.")
            if key in self._cache and not replace:
                continue
            point_cloud = eval_data(data=value)
            if self.is_in_cache(point_cloud) and self.get_cache_key(point_cloud) != key:
                self._cache.pop(self.get_cache_key(point_cloud))
            self._cache[key] = point_cloud
            self._cache.move_to_end(key)
        self._evict()

    def replace_in_cache(self, data: Dict[Any, InputTypes]) -> None:
        """Replaces point clouds cached under `data.keys()`. Keys not in cache are ignored."""
        for key, value in data.items():
            if self._is_hashable(key) and key in self._cache:
                logger.debug(f"Replacing data with key {key} in cache.")
                self._cache[key] = eval_data(data=value)

    def get_cache_value(self, data_key: Any) -> PointCloud:
        """Returns the point cloud cached under `data_key` and marks it as recently used."""
        self._cache.move_to_end(data_key)
        return self._cache[data_key]

    def get_cache_key(self, cached_value: PointCloud) -> Any:
        """Returns the key of a cached point cloud."""
        for key, value in self._cache.items():
            if value is cached_value:
                return key
        raise KeyError(f"{cached_value} is not cached.")

    def is_in_cache(self, data_key_or_value: Any) -> bool:
        """Checks for a cache key or, given a point cloud, for that very object among the cached point clouds."""
        if isinstance(data_key_or_value, PointCloud):
            return any(value is data_key_or_value for value in self._cache.values())
        return self._is_hashable(data_key_or_value) and data_key_or_value in self._cache

    def draw_registration_result(self,
                                 source: InputTypes,
                                 target: InputTypes,
                                 pose: TransformationTypes = np.eye(4),
                                 draw_coordinate_frames: bool = True,
                                 **kwargs: Any) -> None:
        """Draws `source` moved by `pose` in blue on top of `target` in yellow.

        Args:
            source: The source data.
            target: The target data.
            pose: The transformation aligning `source` with `target`.
            draw_coordinate_frames: Adds the world frame and the frame moved by `pose`.
        """
        _pose = RigidTransform.from_matrix(eval_transformation_data(pose), orthonormalize=True)
        moved = transform_point_cloud(_pose, self._eval_data(data_key_or_value=source))
        geometries = [merge_point_clouds([moved, self._eval_data(data_key_or_value=target)], intensities=[0.0, 1.0])]
        if draw_coordinate_frames:
            points = np.asarray(moved.points)
            size = 0.5 * (points.max(axis=0) - points.min(axis=0)).max() if len(points) else 1.0
            geometries.append(TriangleMesh.create_coordinate_frame(size=2 * size))
            geometries.append(TriangleMesh.create_coordinate_frame(size=size).transform(_pose.matrix))
        draw_geometries(geometries=geometries, window_name=f"{self.name} Registration Result", **kwargs)

    @abstractmethod
    def run(self,
            source: InputTypes,
            target: InputTypes,
            init: TransformationTypes = np.eye(4),
            **kwargs: Any) -> RegistrationResult:
        """Registers `source` with `target` starting from `init`. Implemented by each registration algorithm."""
        raise NotImplementedError

    def run_many(self,
                 source_list: List[InputTypes],
                 target_list: List[InputTypes],
                 init_list: Union[List[TransformationTypes], None] = None,
                 one_vs_one: bool = False,
                 progress: bool = True,
                 source_feature_list: Union[List[Any], None] = None,
                 target_feature_list: Union[List[Any], None] = None,
                 **kwargs: Any) -> List[RegistrationResult]:
        """Convenience function to register multiple sources and targets.

        Args:
            source_list: A list of sources.
            target_list: A list of targets.
            init_list: One initial pose per registration. Identity for all if not provided.
            one_vs_one: Register one source to one target. Otherwise, each source is registered to each target.
            progress: Print progress bar.
            source_feature_list: One feature per source, passed to `run` as `source_feature`.
            target_feature_list: One feature per target, passed to `run` as `target_feature`.

        Raises:
            ValueError: If `init_list` or a feature list doesn't match the number of registrations or inputs.

        Returns:
            A list of registration results between
            source_0 <-> target_0, source_1 <-> target_0, ... source_N <-> target_0, source_0 <-> target_1, ...
            If `one_vs_one`, the order is source_0 <-> target_0, source_1 <-> target_1, ...
        """
        start = time.time()

        if one_vs_one and len(source_list) != len(target_list):
            logger.warning(f"Source and target list have unequal length which is required for `one_vs_one`.")
            one_vs_one = False
        if one_vs_one:
            pairs = [(index, index) for index in range(len(source_list))]
        else:
            pairs = [(i, j) for j in range(len(target_list)) for i in range(len(source_list))]

        if init_list is None:
            init_list = [np.eye(4)] * len(pairs)
        elif len(init_list) != len(pairs):
            raise ValueError(f"Need one initial pose per registration ({len(pairs)}) but got {len(init_list)}.")
        for name, feature_list, data_list in [("source", source_feature_list, source_list),
                                              ("target", target_feature_list, target_list)]:
            if feature_list is not None and len(feature_list) != len(data_list):
                raise ValueError(f"Need one {name} feature per {name} ({len(data_list)}) but got {len(feature_list)}.")

        results = list()
        for (i, j), init in tqdm.tqdm(zip(pairs, init_list),
                                      total=len(pairs),
                                      desc=self.name,
                                      file=sys.stdout,
                                      disable=not progress):
            if source_feature_list is not None:
                kwargs["source_feature"] = source_feature_list[i]
            if target_feature_list is not None:
                kwargs["target_feature"] = target_feature_list[j]
            results.append(self.run(source=source_list[i], target=target_list[j], init=init, **kwargs))
        logger.debug(f"`run_many` took {time.time() - start} seconds.")
        return results
