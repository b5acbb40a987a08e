"""Point cloud loading, processing, pose parsing and evaluation helpers built on Open3D.

Classes:
    DownsampleTypes: Supported point cloud downsampling types.
    OutlierTypes: Supported outlier removal types.

Functions:
    eval_data: Turns a point cloud, an array or a file path into a point cloud.
    eval_data_parallel: Runs `eval_data` on many inputs in a thread pool.
    sample_point_cloud: Randomly selects a fixed number of points from a point cloud.
    smooth_point_cloud: Smooths a point cloud by projecting its points onto local tangent planes.
    process_point_cloud: Runs the ordered processing steps (sampling to FPFH features) on a copy of a point cloud.
    process_point_cloud_parallel: Runs `process_point_cloud` on many point clouds in a thread pool.
    read_point_cloud: Reads a point cloud from an Open3D-readable or NumPy file.
    get_point_cloud_from_points: Builds a point cloud from an Nx3, Nx6 or Nx9 array.
    create_patch: Creates a synthetic, smoothly curved surface patch.
    merge_point_clouds: Concatenates point clouds, coloring each by a scalar intensity.
    eval_transformation_data: Parses matrices, Euler angles, quaternions, pose strings and pose files into 4x4 matrices.
    read_pose_file: Reads a pose from a JSON file.
    draw_geometries: Opens an Open3D viewer window.
    get_transformation_error: Rotation and translation error of an estimate against a ground truth.
    get_rotation_error: Angle of the relative rotation between estimate and ground truth.
    get_translation_error: Distance between estimated and ground-truth translation.
"""
import ast
import copy
import json
import logging
import math
import os
import time
from enum import Flag, auto
from multiprocessing import cpu_count
from typing import Any, Callable, Dict, List, Union, Tuple

import numpy as np
import open3d as o3d
from joblib import Parallel, delayed

from .features import FeatureSet, compute_fpfh_feature
from .normals import OrientationTypes, project_to_tangent_planes
from .normals import estimate_normals as estimate_point_normals
from .search import SearchParamTypes
from .transform import RigidTransform

PointCloud = o3d.geometry.PointCloud

InputTypes = Union[PointCloud, np.ndarray, str]
TransformationTypes = Union[RigidTransform, np.ndarray, List[float], List[List[float]], str]

logger = logging.getLogger(__name__)

INTENSITY_COLORS = np.array([[0.0, 0.651, 0.929],
                             [1.0, 0.706, 0.0]])


class DownsampleTypes(Flag):
    """Supported point cloud downsampling types."""
    VOXEL = auto()
    UNIFORM = auto()


class OutlierTypes(Flag):
    """Supported outlier removal types."""
    STATISTICAL = auto()
    RADIUS = auto()


def _map_threaded(func: Callable, name: str, items: List[Any], num_threads: int, kwargs: Dict[str, Any]) -> List[Any]:
    """Calls `func` once per item, passed as `name`. List-valued keyword arguments hold one value per item."""
    calls = list()
    for i, item in enumerate(items):
        call = {key: value[i] if isinstance(value, list) else value for key, value in kwargs.items()}
        call[name] = item
        calls.append(call)
    if len(calls) <= 1:
        return [func(**call) for call in calls]
    return Parallel(n_jobs=min(num_threads, len(calls)), prefer="threads")(delayed(func)(**call) for call in calls)


def eval_data(data: InputTypes, number_of_points: Union[int, None] = None, seed: Union[int, None] = 0) -> PointCloud:
    """Turns a point cloud, an array or a file path into a point cloud.

    Args:
        data: A point cloud (returned as is), an Nx3 array (Nx6 with normals, Nx9 with colors) or a file path.
        number_of_points: Randomly keep this many points. All points are kept if `None`.
        seed: Seed of the random sampling.

    Raises:
        TypeError: If `data` is of none of the above types.

    Returns:
        The point cloud.
    """
    if isinstance(data, PointCloud):
        point_cloud = data
    elif isinstance(data, str):
        point_cloud = read_point_cloud(filename=data)
    elif isinstance(data, np.ndarray):
        point_cloud = get_point_cloud_from_points(points=data)
    else:
        raise TypeError(f"Expected a point cloud, an array or a file path but got {type(data)}.")
    logger.debug(f"Evaluated {type(data).__name__} as point cloud with {len(point_cloud.points)} points.")

    if number_of_points is not None:
        return sample_point_cloud(point_cloud=point_cloud, number_of_points=number_of_points, seed=seed)
    return point_cloud


def eval_data_parallel(data_list: List[InputTypes],
                       num_threads: int = cpu_count(),
                       **kwargs: Any) -> List[PointCloud]:
    """Runs `eval_data` on many inputs in a thread pool.

    Args:
        data_list: The inputs.
        num_threads: Maximum number of threads.
        kwargs: Arguments of `eval_data`. A list holds one value per input.

    Returns:
        One point cloud per input, in input order.
    """
    return _map_threaded(eval_data, "data", data_list, num_threads, kwargs)


def sample_point_cloud(point_cloud: PointCloud, number_of_points: int, seed: Union[int, None] = 0) -> PointCloud:
    """Randomly selects `number_of_points` distinct points. Returns a copy if the cloud isn't larger than that."""
    num_points = len(point_cloud.points)
    if number_of_points >= num_points:
        logger.debug(f"Point cloud has {num_points} points. Requested {number_of_points}. Keeping all.")
        return copy.deepcopy(point_cloud)
    rng = np.random.default_rng(seed)
    indices = np.sort(rng.choice(num_points, size=number_of_points, replace=False))
    return point_cloud.select_by_index(indices.tolist())


def smooth_point_cloud(point_cloud: PointCloud,
                       search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
                       radius: float = 0.02,
                       knn: int = 30,
                       n_jobs: int = 1) -> PointCloud:
    """Smooths a point cloud by projecting its points onto local tangent planes. Existing normals are dropped."""
    start = time.time()
    points = project_to_tangent_planes(np.asarray(point_cloud.points),
                                       search_param=search_param,
                                       radius=radius,
                                       knn=knn,
                                       n_jobs=n_jobs)
    smoothed = copy.deepcopy(point_cloud)
    smoothed.points = o3d.utility.Vector3dVector(points)
    smoothed.normals = o3d.utility.Vector3dVector()
    logger.debug(f"Smoothing took {time.time() - start} seconds.")
    return smoothed


def _downsample(point_cloud: PointCloud, downsample: DownsampleTypes, factor: Union[float, int]) -> PointCloud:
    if downsample == DownsampleTypes.VOXEL:
        return point_cloud.voxel_down_sample(voxel_size=factor)
    if downsample == DownsampleTypes.UNIFORM:
        return point_cloud.uniform_down_sample(every_k_points=int(factor))
    raise ValueError(f"`downsample` must be one of `DownsampleTypes` but is {downsample}.")


def _remove_outlier(point_cloud: PointCloud,
                    remove_outlier: OutlierTypes,
                    std_ratio: float,
                    knn: int,
                    radius: float) -> PointCloud:
    if remove_outlier == OutlierTypes.STATISTICAL:
        filtered, _ = point_cloud.remove_statistical_outlier(nb_neighbors=knn, std_ratio=std_ratio)
    elif remove_outlier == OutlierTypes.RADIUS:
        filtered, _ = point_cloud.remove_radius_outlier(nb_points=knn, radius=radius)
    else:
        raise ValueError(f"`remove_outlier` must be one of `OutlierTypes` but is {remove_outlier}.")
    return filtered


def process_point_cloud(point_cloud: PointCloud,
                        scale: float = 1.0,
                        number_of_points: Union[int, None] = None,
                        downsample: Union[DownsampleTypes, None] = None,
                        downsample_factor: Union[float, int] = 1,
                        remove_outlier: Union[OutlierTypes, None] = None,
                        outlier_std_ratio: float = 1.0,
                        transformation: Union[TransformationTypes, None] = None,
                        smooth: bool = False,
                        smooth_radius: Union[float, None] = None,
                        estimate_normals: bool = False,
                        recalculate_normals: bool = False,
                        orient_normals: OrientationTypes = OrientationTypes.CENTROID,
                        camera_location_or_direction: Union[np.ndarray, list, None] = None,
                        compute_feature: bool = False,
                        search_param: SearchParamTypes = SearchParamTypes.RADIUS_SEARCH,
                        search_param_knn: int = 30,
                        search_param_radius: float = 0.02,
                        strict: bool = True,
                        n_jobs: int = 1,
                        seed: Union[int, None] = 0,
                        draw: bool = False) -> Union[PointCloud, Tuple[PointCloud, FeatureSet]]:
    """Runs the ordered processing steps on a copy of `point_cloud`.

    Steps run in argument order and are skipped unless enabled: scaling, random sampling, downsampling, outlier
    removal, transformation, smoothing, normal estimation and FPFH features. All neighborhood-based steps share
    `search_param`, `search_param_knn` and `search_param_radius`, so normals and features with different
    neighborhoods take two calls.

    Args:
        point_cloud: The point cloud. Left untouched.
        scale: Scale factor about the origin.
        number_of_points: Randomly keep this many points.
        downsample: Voxel grid or every-k-th-point downsampling.
        downsample_factor: Voxel size for `DownsampleTypes.VOXEL`, k for `DownsampleTypes.UNIFORM`.
        remove_outlier: Statistical or radius outlier removal.
        outlier_std_ratio: Points farther than this many standard deviations from their neighbors are removed.
        transformation: Any pose understood by `eval_transformation_data`.
        smooth: Project points onto their local tangent planes.
        smooth_radius: Neighborhood radius used for smoothing. Defaults to `search_param_radius`.
        estimate_normals: Estimate normals if there are none.
        recalculate_normals: Estimate normals even if there are some.
        orient_normals: Orient normals away from the centroid, towards a camera location or along a direction.
        camera_location_or_direction: The camera location or the direction used for orientation.
        compute_feature: Compute FPFH features. Needs normals.
        search_param: Radius, kNN or hybrid neighborhoods.
        search_param_knn: Neighborhood size. Also the neighbor count of outlier removal.
        search_param_radius: Neighborhood radius. Also the radius of radius outlier removal.
        strict: Raise on neighborhoods too small for normals or features instead of falling back.
        n_jobs: Number of threads used for smoothing, normals and features.
        seed: Seed of the random sampling.
        draw: Show the processed point cloud.

    Raises:
        ValueError: If features are requested for a point cloud without normals.

    Returns:
        The processed point cloud and, if `compute_feature`, its FPFH features.
    """
    start = time.time()
    _point_cloud = copy.deepcopy(point_cloud)
    if scale != 1.0:
        _point_cloud.scale(scale, center=np.zeros(3))

    if number_of_points is not None:
        _point_cloud = sample_point_cloud(point_cloud=_point_cloud, number_of_points=number_of_points, seed=seed)

    if downsample is not None:
        num_points = len(_point_cloud.points)
        _point_cloud = _downsample(_point_cloud, downsample, downsample_factor)
        logger.debug(f"{downsample} downsampling kept {len(_point_cloud.points)} of {num_points} points.")

    if remove_outlier is not None:
        num_points = len(_point_cloud.points)
        _point_cloud = _remove_outlier(_point_cloud,
                                       remove_outlier,
                                       std_ratio=outlier_std_ratio,
                                       knn=search_param_knn,
                                       radius=search_param_radius)
        logger.debug(f"Removed {num_points - len(_point_cloud.points)} outliers.")

    if transformation is not None:
        _point_cloud.transform(eval_transformation_data(transformation_data=transformation))

    if smooth:
        _point_cloud = smooth_point_cloud(point_cloud=_point_cloud,
                                          search_param=search_param,
                                          radius=search_param_radius if smooth_radius is None else smooth_radius,
                                          knn=search_param_knn,
                                          n_jobs=n_jobs)

    if estimate_normals and (recalculate_normals or not _point_cloud.has_normals()):
        normals = estimate_point_normals(np.asarray(_point_cloud.points),
                                         search_param=search_param,
                                         radius=search_param_radius,
                                         knn=search_param_knn,
                                         orientation=orient_normals,
                                         reference=camera_location_or_direction,
                                         strict=strict,
                                         n_jobs=n_jobs)
        _point_cloud.normals = o3d.utility.Vector3dVector(np.array(normals.normals))

    feature = None
    if compute_feature:
        if not _point_cloud.has_normals():
            raise ValueError("FPFH features need normals. Set `estimate_normals` or provide them.")
        feature = compute_fpfh_feature(np.asarray(_point_cloud.points),
                                       np.asarray(_point_cloud.normals),
                                       search_param=search_param,
                                       radius=search_param_radius,
                                       knn=search_param_knn,
                                       strict=strict,
                                       n_jobs=n_jobs)

    logger.debug(f"Processing took {time.time() - start} seconds.")

    if draw:
        if not _point_cloud.has_colors():
            _point_cloud.paint_uniform_color(INTENSITY_COLORS[0])
        draw_geometries(geometries=[_point_cloud], window_name="Processed Point Cloud")

    if compute_feature:
        return _point_cloud, feature
    return _point_cloud


def process_point_cloud_parallel(point_cloud_list: List[PointCloud],
                                 num_threads: int = cpu_count(),
                                 **kwargs: Any) -> List[Union[PointCloud, Tuple[PointCloud, FeatureSet]]]:
    """Runs `process_point_cloud` on many point clouds in a thread pool.

    Args:
        point_cloud_list: The point clouds.
        num_threads: Maximum number of threads.
        kwargs: Arguments of `process_point_cloud`. A list holds one value per point cloud.

    Returns:
        One result of `process_point_cloud` per point cloud, in input order.
    """
    return _map_threaded(process_point_cloud, "point_cloud", point_cloud_list, num_threads, kwargs)


def read_point_cloud(filename: str, remove_non_finite: bool = True) -> PointCloud:
    """Reads a point cloud from file. NumPy files hold Nx3 (Nx6, Nx9) arrays, other formats are read by Open3D.

    Args:
        filename: The path to the point cloud file.
        remove_non_finite: Drop points with NaN or infinite coordinates.

    Raises:
        FileNotFoundError: If `filename` doesn't exist.

    Returns:
        The point cloud.
    """
    if not os.path.isfile(filename):
        raise FileNotFoundError(f"Point cloud file {filename} doesn't exist.")
    if filename.endswith(".npy"):
        return get_point_cloud_from_points(points=np.load(filename))
    point_cloud = o3d.io.read_point_cloud(filename,
                                          remove_nan_points=remove_non_finite,
                                          remove_infinite_points=remove_non_finite)
    if not point_cloud.has_points():
        logger.warning(f"No points read from {filename}.")
    return point_cloud


def get_point_cloud_from_points(points: np.ndarray) -> PointCloud:
    """Builds a point cloud from an Nx3 array of coordinates, optionally followed by normals (Nx6) and colors (Nx9)."""
    _points = np.asarray(points, dtype=np.float64)
    if _points.ndim != 2 or _points.shape[1] not in [3, 6, 9]:
        raise ValueError(f"Point cloud data must be of shape Nx3 (xyz), Nx6 or Nx9 (normals, rgb) but is "
                         f"{_points.shape}.")
    point_cloud = PointCloud(o3d.utility.Vector3dVector(_points[:, :3]))
    if _points.shape[1] >= 6:
        point_cloud.normals = o3d.utility.Vector3dVector(_points[:, 3:6])
    if _points.shape[1] == 9:
        point_cloud.colors = o3d.utility.Vector3dVector(_points[:, 6:9])
    return point_cloud


def create_patch(number_of_points: int = 1000,
                 size: float = 10.0,
                 height: float = 1.0,
                 seed: Union[int, None] = 0) -> np.ndarray:
    """Creates a synthetic, smoothly curved surface patch.

    Points are scattered uniformly over a `size` x `size` square centered at the origin and lifted onto a height
    field of Gaussian bumps and a gentle wave, placed asymmetrically so that no rotation about z maps the patch onto
    itself.

    Args:
        number_of_points: Number of points.
        size: Edge length of the square.
        height: Amplitude of the height field.
        seed: Seed of the random point placement.

    Returns:
        The Nx3 points.
    """
    rng = np.random.default_rng(seed)
    xy = rng.uniform(-0.5 * size, 0.5 * size, size=(number_of_points, 2))
    x, y = xy[:, 0] / size, xy[:, 1] / size
    bumps = [(0.2, 0.15, 0.12, 1.0), (-0.25, 0.2, 0.1, -0.7), (0.05, -0.3, 0.15, 0.8), (-0.2, -0.15, 0.08, 0.5)]
    z = 0.2 * np.sin(2 * np.pi * (0.7 * x + 0.3 * y))
    for cx, cy, sigma, amplitude in bumps:
        z += amplitude * np.exp(-((x - cx) ** 2 + (y - cy) ** 2) / (2 * sigma ** 2))
    return np.column_stack([xy, height * z])


def merge_point_clouds(point_clouds: List[PointCloud],
                       intensities: Union[List[float], None] = None) -> PointCloud:
    """Concatenates point clouds, coloring each by a scalar intensity.

    Intensities in [0, 1] are rendered as a blend between blue (0) and yellow (1). Normals are kept only if all
    point clouds have them.

    Args:
        point_clouds: The point clouds to merge. Left untouched.
        intensities: One intensity per point cloud. Evenly spaced in [0, 1] if not provided.

    Returns:
        The merged point cloud.
    """
    if intensities is None:
        intensities = np.linspace(0.0, 1.0, len(point_clouds)).tolist()
    if len(intensities) != len(point_clouds):
        raise ValueError(f"Need one intensity per point cloud but got {len(intensities)} for {len(point_clouds)}.")

    points, normals, colors = list(), list(), list()
    for point_cloud, intensity in zip(point_clouds, intensities):
        _points = np.asarray(point_cloud.points)
        points.append(_points)
        normals.append(np.asarray(point_cloud.normals) if point_cloud.has_normals() else None)
        t = min(1.0, max(0.0, float(intensity)))
        colors.append(np.tile((1.0 - t) * INTENSITY_COLORS[0] + t * INTENSITY_COLORS[1], (len(_points), 1)))

    merged = PointCloud(o3d.utility.Vector3dVector(np.concatenate(points)))
    merged.colors = o3d.utility.Vector3dVector(np.concatenate(colors))
    if all(n is not None for n in normals):
        merged.normals = o3d.utility.Vector3dVector(np.concatenate(normals))
    return merged


def _rotation_matrix(rotation: np.ndarray) -> np.ndarray:
    """3x3 rotation from XYZ Euler angles in degrees, a WXYZ quaternion or nine row-major matrix entries."""
    if rotation.size == 3:
        return PointCloud.get_rotation_matrix_from_xyz(np.radians(rotation))
    if rotation.size == 4:
        norm = np.linalg.norm(rotation)
        if norm == 0:
            raise ValueError("Quaternion must not be zero.")
        return PointCloud.get_rotation_matrix_from_quaternion(rotation / norm)
    if rotation.size == 9:
        return rotation.reshape(3, 3)
    raise ValueError(f"Rotation needs 3 (Euler angles), 4 (quaternion) or 9 (matrix) values but has {rotation.size}.")


def _homogeneous(rotation: Union[np.ndarray, list, None] = None,
                 translation: Union[np.ndarray, list, None] = None) -> np.ndarray:
    matrix = np.eye(4)
    if rotation is not None:
        matrix[:3, :3] = _rotation_matrix(np.asarray(rotation, dtype=np.float64).ravel())
    if translation is not None:
        matrix[:3, 3] = np.asarray(translation, dtype=np.float64).ravel()[:3]
    return matrix


def eval_transformation_data(transformation_data: TransformationTypes) -> np.ndarray:
    """Parses pose data into a 4x4 transformation matrix.

    Accepted are a `RigidTransform`, a path to a JSON pose file (see `read_pose_file`), a `[rotation, translation]`
    pair, a string holding any of the list forms, or flat values: 16 (matrix), 12 (rotation matrix and translation),
    9 (rotation matrix), 7 (WXYZ quaternion and translation), 6 (XYZ Euler angles in degrees and translation) or 3
    (translation). Rotations of a pair may be Euler angles, a quaternion or a matrix. Translations may be homogeneous.

    Args:
        transformation_data: The pose data.

    Raises:
        ValueError: If the number of values fits none of the forms above.

    Returns:
        The 4x4 transformation matrix.
    """
    if isinstance(transformation_data, RigidTransform):
        return transformation_data.matrix
    data = transformation_data
    if isinstance(data, str):
        if os.path.isfile(data):
            return read_pose_file(path=data)
        data = ast.literal_eval(data)

    if isinstance(data, (list, tuple)) and len(data) == 2:
        return _homogeneous(rotation=data[0], translation=data[1])

    values = np.asarray(data, dtype=np.float64).ravel()
    if values.size == 16:
        return values.reshape(4, 4)
    if values.size == 3:
        logger.debug("Reading three values as translation, not as Euler angles.")
        return _homogeneous(translation=values)
    if values.size == 9:
        return _homogeneous(rotation=values)
    if values.size in [6, 7, 12]:
        return _homogeneous(rotation=values[:-3], translation=values[-3:])
    raise ValueError(f"Transformation data needs 3, 6, 7, 9, 12 or 16 values but has {values.size}.")


def read_pose_file(path: str) -> np.ndarray:
    """Reads a pose from a JSON file.

    The rotation is stored under a key starting with 'rot' and the translation under a key starting with 'tra'.

    Args:
        path: Path to the JSON file.

    Raises:
        ValueError: If either key is missing.

    Returns:
        The 4x4 transformation matrix.
    """
    with open(path) as f:
        pose = json.load(f)
    rotation = next((value for key, value in pose.items() if key.startswith("rot")), None)
    translation = next((value for key, value in pose.items() if key.startswith("tra")), None)
    if rotation is None or translation is None:
        raise ValueError(f"{path} needs a key starting with 'rot' and one starting with 'tra'.")
    return _homogeneous(rotation=rotation, translation=translation)


def draw_geometries(geometries: List[o3d.geometry.Geometry],
                    window_name: str = "Easy FGR",
                    size: Tuple[int, int] = (800, 600),
                    **kwargs: Any) -> None:
    """Opens an Open3D viewer window. Further keyword arguments, e.g. `point_show_normal`, go to the viewer."""
    o3d.visualization.draw_geometries(geometries, window_name=window_name, width=size[0], height=size[1], **kwargs)


def get_transformation_error(transformation_estimate: TransformationTypes,
                             transformation_ground_truth: TransformationTypes,
                             in_degrees: bool = True) -> Tuple[float, float]:
    """Rotation and translation error of an estimate against a ground truth.

    Args:
        transformation_estimate: The estimated pose.
        transformation_ground_truth: The ground-truth pose.
        in_degrees: Report the rotation error in degrees instead of radians.

    Returns:
        The angle of the relative rotation and the distance between the translations.
    """
    estimate = eval_transformation_data(transformation_data=transformation_estimate)
    ground_truth = eval_transformation_data(transformation_data=transformation_ground_truth)
    return (get_rotation_error(estimate[:3, :3], ground_truth[:3, :3], in_degrees=in_degrees),
            get_translation_error(estimate[:3, 3], ground_truth[:3, 3]))


def get_rotation_error(rotation_estimate: np.ndarray,
                       rotation_ground_truth: np.ndarray,
                       in_degrees: bool = True) -> float:
    """Angle of the relative rotation between estimate and ground truth in degrees or radians."""
    if not (np.shape(rotation_estimate) == np.shape(rotation_ground_truth) == (3, 3)):
        raise ValueError(f"Rotation estimate and ground truth both need to have shape (3, 3) but are "
                         f"{np.shape(rotation_estimate)} and {np.shape(rotation_ground_truth)}.")
    error_cos = 0.5 * (np.trace(rotation_estimate @ np.transpose(rotation_ground_truth)) - 1.0)
    error_rad = math.acos(min(1.0, max(-1.0, error_cos)))
    return math.degrees(error_rad) if in_degrees else error_rad


def get_translation_error(translation_estimate: np.ndarray, translation_ground_truth: np.ndarray) -> float:
    """Distance between estimated and ground-truth translation."""
    if not (np.size(translation_estimate) == np.size(translation_ground_truth) == 3):
        raise ValueError(f"Translation estimate and ground truth need to have size 3 but have "
                         f"{np.size(translation_estimate)} and {np.size(translation_ground_truth)}.")
    return float(np.linalg.norm(np.ravel(translation_ground_truth) - np.ravel(translation_estimate)))
