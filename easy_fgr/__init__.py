"""Fast Global Registration of point clouds using FPFH features, built on Open3D data structures.

Files:
    __init__.py: This file.
    config.py: Fast Global Registration parameters.
    errors.py: Exceptions raised by the registration pipeline.
    features.py: Fast Point Feature Histogram (FPFH) descriptors.
    interfaces.py: Registration base class and result type.
    matching.py: Feature-space correspondence search with mutual consistency and tuple tests.
    normals.py: Surface normal and curvature estimation.
    registration.py: Fast Global Registration from FPFH correspondences.
    search.py: Nearest neighbor search in 3D and in feature space.
    solver.py: Graduated non-convexity optimization of the registration objective.
    transform.py: Rigid transformations.
    utils.py: Point cloud loading, processing, pose parsing and evaluation helpers.

Classes:
    registration.FastGlobalRegistration: The Fast Global Registration (FGR) algorithm.
    interfaces.RegistrationInterface: Base class with input caching, drawing and batch runs.
    interfaces.RegistrationResult: Registration result with runtime and solver convergence information.
    config.RegistrationConfig: Validated parameter set of the matcher and the solver.
    config.DistanceModes: How the maximum correspondence distance is interpreted.
    search.SearchParamTypes: Supported neighborhood search types.
    search.SpatialIndex: A k-d tree over points or feature vectors.
    normals.OrientationTypes: Supported normal orientation types.
    normals.Normals: Per-point unit normals and curvature.
    features.FeatureSet: Per-point feature vectors.
    matching.CorrespondenceSet: Index pairs between two point clouds.
    solver.GNCState: Loop state of the solver.
    solver.SolverResult: Outcome of the solver.
    transform.RigidTransform: Rotation and translation acting on points and point clouds.
    utils.DownsampleTypes: Supported point cloud downsampling types.
    utils.OutlierTypes: Supported outlier removal types.

Functions:
    get_logger: Returns the package logger.
    set_logger_level: Sets the level of the package logger.
    registration.register: Estimates the rigid transformation aligning two point clouds.
    search.build_index: Builds a spatial index.
    normals.estimate_normals: Estimates normals and curvature of a point cloud.
    features.compute_fpfh_feature: Computes FPFH descriptors of a point cloud.
    matching.advanced_matching: Finds correspondences between two point clouds from their features.
    solver.optimize_pairwise: Estimates the rigid transformation from correspondences.
    transform.create_rigid_axis_angle_3d: Constructs a rigid transformation from an axis, an angle and a translation.
    transform.transform_point_cloud: Returns a transformed copy of a point cloud.
    utils.eval_data: Turns a point cloud, an array or a file path into a point cloud.
    utils.process_point_cloud: Runs the ordered processing steps, from sampling to FPFH features.
    utils.read_point_cloud: Reads a point cloud from an Open3D-readable or NumPy file.
    utils.create_patch: Creates a synthetic, smoothly curved surface patch.
    utils.merge_point_clouds: Concatenates point clouds, coloring each by a scalar intensity.
    utils.draw_geometries: Opens an Open3D viewer window.
    utils.eval_transformation_data: Parses pose data into a 4x4 transformation matrix.
    utils.get_transformation_error: Rotation and translation error of an estimate against a ground truth.
"""

import logging

logger = logging.getLogger(__name__)


def get_logger() -> logging.Logger:
    """Returns the logger all modules of this package log to."""
    return logger


def set_logger_level(level: int) -> None:
    """Sets the level of the package logger, e.g. `logging.DEBUG` for timings and intermediate sizes.

    Args:
        level: The logging level.
    """
    logger.setLevel(level)
