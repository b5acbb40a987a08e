"""Fast Global Registration of point clouds from FPFH feature correspondences.

Classes:
    FastGlobalRegistration: The *Fast Global Registration* (FGR) algorithm with input caching and visualization.

Functions:
    register: Estimates the rigid transformation moving point cloud B back onto point cloud A.
    evaluate_registration: Computes fitness and inlier RMSE of a transformation.
"""
import copy
import logging
import time
from typing import Any, Union, Dict, Tuple

import numpy as np
import open3d as o3d

from .config import DistanceModes, RegistrationConfig
from .errors import RegistrationDidNotConverge
from .features import FeatureSet, eval_feature_data
from .interfaces import RegistrationInterface, RegistrationResult
from .matching import CorrespondenceSet, advanced_matching
from .normals import OrientationTypes
from .search import SearchParamTypes
from .solver import SolverResult, get_extent, optimize_pairwise
from .transform import RigidTransform
from .utils import InputTypes, TransformationTypes, eval_transformation_data, process_point_cloud

PointCloud = o3d.geometry.PointCloud
Feature = o3d.pipelines.registration.Feature

FeatureTypes = Union[FeatureSet, Feature, np.ndarray]
PointTypes = Union[PointCloud, np.ndarray]

logger = logging.getLogger(__name__)


def _eval_points(data: PointTypes) -> np.ndarray:
    if isinstance(data, PointCloud):
        return np.asarray(data.points)
    elif isinstance(data, np.ndarray):
        return data.reshape(-1, 3)
    raise TypeError(f"Expected a point cloud or a Nx3 array but got {type(data)}.")


def _register(points_a: np.ndarray,
              features_a: FeatureTypes,
              points_b: np.ndarray,
              features_b: FeatureTypes,
              config: RegistrationConfig) -> Tuple[SolverResult, CorrespondenceSet]:
    correspondences = advanced_matching(points_a, features_a, points_b, features_b, config=config)
    logger.debug(f"Optimizing with {len(correspondences)} correspondences.")
    return optimize_pairwise(points_a, points_b, correspondences, config=config), correspondences


def register(cloud_a: PointTypes,
             features_a: FeatureTypes,
             cloud_b: PointTypes,
             features_b: FeatureTypes,
             config: Union[RegistrationConfig, None] = None,
             strict: bool = True) -> RigidTransform:
    """Estimates the rigid transformation moving point cloud B back onto point cloud A.

    Features are matched in feature space (see `matching.advanced_matching`) and the transformation is optimized
    with graduated non-convexity (see `solver.optimize_pairwise`). No initial pose is needed. Registering a cloud `C`
    against `T(C)` recovers the inverse of `T`.

    Args:
        cloud_a: Point cloud A or its Nx3 points.
        features_a: The features of A, one per point.
        cloud_b: Point cloud B or its Mx3 points.
        features_b: The features of B, one per point.
        config: The registration parameters. Defaults are used if not provided.
        strict: Raise if the solver stops before annealing finished. Otherwise, the estimate is returned anyway and a
                warning is logged. Use `FastGlobalRegistration.run` to get the convergence status with the estimate.

    Raises:
        InvalidConfiguration: If `config` holds invalid parameters.
        RegistrationDidNotConverge: If the solver can't produce a valid transformation or, if `strict`, if it didn't
                                    converge within `max_iteration` iterations.

    Returns:
        The transformation mapping B onto A.
    """
    start = time.time()
    config = RegistrationConfig() if config is None else config
    config.validate()
    result, _ = _register(_eval_points(cloud_a), features_a, _eval_points(cloud_b), features_b, config)
    if not result.converged:
        if strict:
            raise RegistrationDidNotConverge(f"Solver stopped after {result.iterations} iterations before annealing "
                                             f"finished. Increase `max_iteration` or pass `strict=False`.")
        logger.warning(f"Returning the estimate of a solver that didn't converge in {result.iterations} iterations.")
    logger.debug(f"Registration took {time.time() - start} seconds.")
    return result.transformation.inverse()


def evaluate_registration(source: PointCloud,
                          target: PointCloud,
                          transformation: TransformationTypes,
                          max_correspondence_distance: float) -> Tuple[float, float, np.ndarray]:
    """Computes fitness and inlier RMSE of a transformation.

    Args:
        source: The source point cloud.
        target: The target point cloud.
        transformation: The transformation aligning `source` with `target`.
        max_correspondence_distance: Distance below which transformed source points count as inliers.

    Returns:
        Fitness (inlier fraction of source points), inlier RMSE and the Kx2 inlier correspondences.
    """
    evaluation = o3d.pipelines.registration.evaluate_registration(source,
                                                                  target,
                                                                  max_correspondence_distance,
                                                                  eval_transformation_data(transformation))
    return evaluation.fitness, evaluation.inlier_rmse, np.asarray(evaluation.correspondence_set)


class FastGlobalRegistration(RegistrationInterface):
    """The *Fast Global Registration* (FGR) algorithm.

    Matches FPFH features of `source` and `target`, prunes the matches with the tuple test and estimates the
    transformation by graduated non-convexity. Missing normals and features are computed on the fly, and the result
    is evaluated with Open3D.

    Attributes:
        config: The registration parameters used in `run`.

    Methods:
        run(source, target, source_feature, target_feature, ...): Runs the FGR algorithm between `source` and `target`
                                                                  point cloud without any initial pose information.
    """

    def __init__(self,
                 config: Union[RegistrationConfig, None] = None,
                 data_to_cache: Union[Dict[Any, InputTypes], None] = None,
                 auto_cache: bool = True,
                 cache_size: int = 100,
                 **kwargs: Any) -> None:
        """
        Args:
            config: The registration parameters. Defaults are used if not provided.
            data_to_cache: Point clouds or loadable inputs by key.
            auto_cache: Cache every hashable input loaded by `run`.
            cache_size: Maximum number of cached point clouds.
            kwargs: Registration parameters overriding those of `config`, e.g. `max_iteration`.
        """
        super().__init__(name="FGR",
                         data_to_cache=data_to_cache,
                         auto_cache=auto_cache,
                         cache_size=cache_size)
        self.config = self._eval_config(RegistrationConfig() if config is None else config, **kwargs)

    @staticmethod
    def _eval_config(config: RegistrationConfig, **kwargs: Any) -> RegistrationConfig:
        params = config.to_dict()
        overrides = {key: value for key, value in kwargs.items() if key in params}
        if not overrides:
            config.validate()
            return config
        params.update(overrides)
        return RegistrationConfig(**params)

    def _eval_feature(self,
                      point_cloud: PointCloud,
                      data_key: Union[InputTypes, None],
                      feature: Union[FeatureTypes, None],
                      name: str,
                      **kwargs: Any) -> Tuple[PointCloud, FeatureSet]:
        """Returns `feature` or computes normals and FPFH features of `point_cloud` if not provided."""
        if feature is not None:
            return point_cloud, eval_feature_data(feature)

        has_params = "search_param_knn" in kwargs or "search_param_radius" in kwargs
        if not has_params:
            logger.warning(f"{name} FPFH feature weren't provided.")
            logger.warning("Computing with (potentially suboptimal) default parameters: kNN=100, radius=0.05.")

        search_param = kwargs.get("search_param", SearchParamTypes.HYBRID)
        _point_cloud = point_cloud
        if not _point_cloud.has_normals():
            if not has_params:
                logger.warning(f"{name} has no normals which are needed to compute FPFH features.")
                logger.warning("Computing with (potentially suboptimal) default parameters: kNN=30, radius=0.02.")
            _point_cloud = process_point_cloud(point_cloud=_point_cloud,
                                               estimate_normals=True,
                                               orient_normals=kwargs.get("orient_normals", OrientationTypes.CENTROID),
                                               camera_location_or_direction=kwargs.get("camera_location_or_direction"),
                                               search_param=search_param,
                                               search_param_knn=kwargs.get("search_param_knn", 30),
                                               search_param_radius=kwargs.get("search_param_radius", 0.02),
                                               strict=kwargs.get("strict", True),
                                               n_jobs=kwargs.get("n_jobs", 1))
            # Cached inputs keep their normals for later runs
            if data_key is not None and not isinstance(data_key, PointCloud):
                self.replace_in_cache(data={data_key: _point_cloud})

        feature_knn = kwargs.get("feature_knn", kwargs.get("search_param_knn", 100))
        feature_radius = kwargs.get("feature_radius", kwargs.get("search_param_radius", 0.05))
        _, _feature = process_point_cloud(point_cloud=_point_cloud,
                                          compute_feature=True,
                                          search_param=search_param,
                                          search_param_knn=feature_knn,
                                          search_param_radius=feature_radius,
                                          strict=kwargs.get("strict", True),
                                          n_jobs=kwargs.get("n_jobs", 1))
        return _point_cloud, _feature

    def _evaluation_distance(self, source: np.ndarray, target: np.ndarray, config: RegistrationConfig) -> float:
        if config.distance_mode == DistanceModes.RELATIVE:
            return config.max_correspondence_distance * get_extent(source, target)
        return config.max_correspondence_distance

    def run(self,
            source: InputTypes,
            target: InputTypes,
            init: TransformationTypes = np.eye(4),
            source_feature: Union[FeatureTypes, None] = None,
            target_feature: Union[FeatureTypes, None] = None,
            draw: bool = False,
            **kwargs: Any) -> RegistrationResult:
        """Runs the Fast Global Registration algorithm between `source` and `target` point cloud.

        Args:
            source: The source data.
            target: The target data.
            init: The initial pose of `source`. Applied before registration and included in the result.
            source_feature: The FPFH feature of `source`. Computed based on default values if not provided.
            target_feature: The FPFH feature of `target`. Computed based on default values if not provided.
            draw: Visualize the registration result.
            kwargs: Registration parameters overriding `config` for this run, feature computation parameters
                    (`search_param`, `search_param_knn`, `search_param_radius`, `feature_knn`, `feature_radius`,
                    `orient_normals`, `strict`, `n_jobs`) and `evaluation_distance`.

        Raises:
            RegistrationDidNotConverge: If the solver can't produce a valid transformation.

        Returns:
            The registration result containing fitness (`fitness`) and RMSE (`inlier_rmse`) as well as the
            correspondence set between `source` and `target` (`correspondence_set`), transformation
            (`transformation`) between `source` and `target`, runtime (`runtime`) and solver convergence information.
        """
        start = time.time()
        config = self._eval_config(self.config, **kwargs)

        _target = self._eval_data(data_key_or_value=target)
        _init = eval_transformation_data(init)
        _source = self._eval_data(data_key_or_value=source)
        source_key = source
        if not np.allclose(_init, np.eye(4)):
            _source = copy.deepcopy(_source).transform(_init)
            source_key = None

        _source, _source_feature = self._eval_feature(_source, source_key, source_feature, "Source", **kwargs)
        _target, _target_feature = self._eval_feature(_target, target, target_feature, "Target", **kwargs)

        source_points = np.asarray(_source.points)
        target_points = np.asarray(_target.points)
        result, correspondences = _register(source_points, _source_feature, target_points, _target_feature, config)
        transformation = result.transformation.matrix

        distance = kwargs.get("evaluation_distance", self._evaluation_distance(source_points, target_points, config))
        fitness, inlier_rmse, correspondence_set = evaluate_registration(_source, _target, transformation, distance)

        runtime = time.time() - start
        logger.debug(f"{self.name} took {runtime} seconds.")
        logger.debug(f"{self.name} result: fitness={fitness}, inlier_rmse={inlier_rmse}.")

        if draw:
            self.draw_registration_result(source=_source, target=_target, pose=transformation)

        return RegistrationResult(transformation=transformation @ _init,
                                  correspondence_set=correspondence_set,
                                  fitness=fitness,
                                  inlier_rmse=inlier_rmse,
                                  runtime=runtime,
                                  converged=result.converged,
                                  iterations=result.iterations,
                                  mu_schedule=result.mu_schedule,
                                  correspondences=correspondences)
