#!/usr/bin/env python3
"""Displaces, processes and registers point clouds using Fast Global Registration from this package."""
import argparse
import ast
import configparser
import glob
import logging
import os
import time
from typing import Union, Dict, Any, List, Tuple

import numpy as np
import tabulate

from easy_fgr import utils, registration, transform, set_logger_level
from easy_fgr.config import DistanceModes, RegistrationConfig
from easy_fgr.normals import OrientationTypes
from easy_fgr.search import SearchParamTypes

logger = logging.getLogger(__name__)

ENUM_OPTIONS = {"search_param": {"hybrid": SearchParamTypes.HYBRID,
                                 "knn": SearchParamTypes.K_NEAREST,
                                 "radius": SearchParamTypes.RADIUS_SEARCH},
                "downsample": {"uniform": utils.DownsampleTypes.UNIFORM,
                               "voxel": utils.DownsampleTypes.VOXEL},
                "remove_outlier": {"statistical": utils.OutlierTypes.STATISTICAL,
                                   "radius": utils.OutlierTypes.RADIUS},
                "orient_normals": {"centroid": OrientationTypes.CENTROID,
                                   "camera": OrientationTypes.CAMERA,
                                   "direction": OrientationTypes.DIRECTION},
                "distance_mode": {"absolute": DistanceModes.ABSOLUTE,
                                  "relative": DistanceModes.RELATIVE}}


def _eval_enum(option: str, value: Union[str, None]) -> Any:
    if value is None or value.lower() == "none":
        return None
    for name, enum in ENUM_OPTIONS[option].items():
        if name in value.lower():
            return enum
    raise ValueError(f"`{option}` needs to be one of {list(ENUM_OPTIONS[option])} but is {value}.")


def _eval_value(section: str, option: str, value: str) -> Any:
    """Evaluates a single config value: Python literals, 'none', enum names and file patterns."""
    try:
        evaluated = ast.literal_eval(value)
    except (ValueError, SyntaxError):
        if value.lower() == "none":
            return None
        if option in ENUM_OPTIONS:
            return _eval_enum(option, value)
        if section == "data" and option in ["source_files", "target_files"]:
            files = [value] if os.path.exists(value) else sorted(glob.glob(value))
            if not files:
                raise FileNotFoundError(f"No files found at {value}.")
            return files
        if section == "data" and option in ["ground_truth", "init_poses"]:
            return value if os.path.exists(value) else sorted(glob.glob(value))
        return value
    if isinstance(evaluated, list) and option in ENUM_OPTIONS:
        return [_eval_enum(option, item) for item in evaluated]
    return evaluated


def eval_config(config: configparser.ConfigParser) -> Dict[str, Dict[str, Any]]:
    """Evaluates the string values of a registration config.

    Args:
        config: The registration config.

    Raises:
        FileNotFoundError: If `source_files` or `target_files` don't match any file.

    Returns:
        The sections of `config` as dicts of evaluated values.
    """
    return {section: {option: _eval_value(section.lower(), option.lower(), value)
                      for option, value in config.items(section)}
            for section in config.sections()}


def print_config_dict(config_dict: Dict[str, Any], pretty: bool = True) -> None:
    """Prints a config dict created by `eval_config` as a table.

    Args:
        config_dict: A config dict created by `eval_config`.
        pretty: Print sections upper case and options capitalized, without underscores.
    """
    rows = list()
    for section, options in config_dict.items():
        title = section.upper().replace('_', ' ') if pretty else section
        rows.extend([("", ""), (title, ""), ('-' * len(section), "")])
        for option, value in options.items():
            value = str(value)
            if pretty:
                option = option.capitalize().replace('_', ' ')
                value = value.capitalize() if value.lower() in ["true", "false", "none"] else value
            rows.append((option, value))
    print(tabulate.tabulate(rows))


def _process(point_cloud_list: List[utils.PointCloud],
             processing: Dict[str, Any],
             feature_processing: Dict[str, Any],
             timings: Dict[str, float],
             n_jobs: int = 1,
             seed: Union[int, None] = 0) -> Tuple[List[utils.PointCloud], List[Any]]:
    """Samples, cleans and smooths point clouds and computes their normals and FPFH features step by step."""
    search_param = feature_processing["search_param"]
    start = time.time()
    point_cloud_list = utils.process_point_cloud_parallel(point_cloud_list=point_cloud_list,
                                                          scale=processing.get("scale", 1.0),
                                                          number_of_points=processing["number_of_points"],
                                                          downsample=processing.get("downsample"),
                                                          downsample_factor=processing.get("downsample_factor", 1),
                                                          remove_outlier=processing["remove_outlier"],
                                                          outlier_std_ratio=processing["outlier_std_ratio"],
                                                          search_param_knn=processing["outlier_knn"],
                                                          search_param_radius=processing["outlier_radius"],
                                                          seed=seed)
    timings["sampling and outlier removal"] = timings.get("sampling and outlier removal", 0.0) + time.time() - start

    if processing["smooth"]:
        start = time.time()
        point_cloud_list = utils.process_point_cloud_parallel(point_cloud_list=point_cloud_list,
                                                              smooth=True,
                                                              smooth_radius=processing["smooth_radius"],
                                                              search_param=SearchParamTypes.RADIUS_SEARCH,
                                                              n_jobs=n_jobs)
        timings["smoothing"] = timings.get("smoothing", 0.0) + time.time() - start

    direction = feature_processing["camera_location_or_direction"]
    start = time.time()
    point_cloud_list = utils.process_point_cloud_parallel(point_cloud_list=point_cloud_list,
                                                          estimate_normals=True,
                                                          recalculate_normals=True,
                                                          orient_normals=feature_processing["orient_normals"],
                                                          camera_location_or_direction=None if direction is None
                                                          else np.asarray(direction, dtype=float),
                                                          search_param=search_param,
                                                          search_param_knn=feature_processing["normal_knn"],
                                                          search_param_radius=feature_processing["normal_radius"],
                                                          strict=feature_processing["strict"],
                                                          n_jobs=n_jobs)
    timings["normals"] = timings.get("normals", 0.0) + time.time() - start

    start = time.time()
    processed = utils.process_point_cloud_parallel(point_cloud_list=point_cloud_list,
                                                   compute_feature=True,
                                                   search_param=search_param,
                                                   search_param_knn=feature_processing["feature_knn"],
                                                   search_param_radius=feature_processing["feature_radius"],
                                                   strict=feature_processing["strict"],
                                                   n_jobs=n_jobs,
                                                   draw=processing["draw"])
    timings["fpfh"] = timings.get("fpfh", 0.0) + time.time() - start
    return [point_cloud for point_cloud, _ in processed], [feature for _, feature in processed]


def run(config: Union[configparser.ConfigParser, None] = None,
        args: Union[List[str], None] = None) -> Dict[str, Any]:
    """Runs the registration demo: load, displace, process, register, transform back and merge.

    Args:
        config: A ConfigParser object. Read from the `--config` path if not provided.
        args: Command line arguments. Read from `sys.argv` if not provided.

    Returns:
        The data selected by the `return` option.
    """
    # Evaluate command line arguments
    start = time.time()
    parser = argparse.ArgumentParser(description="Displaces, processes and registers point clouds.")
    parser.add_argument("-c", "--config",
                        default=os.path.join(os.path.dirname(os.path.abspath(__file__)), "registration.ini"), type=str,
                        help="Path to registration config.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Get verbose output during execution.")
    parser.add_argument("-d", "--draw", action="store_true", help="Visualize the merged point clouds.")
    args = parser.parse_args(args)

    # Read config from argument or file
    if config is None:
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        if not config.read(args.config):
            raise FileNotFoundError(f"Config file {args.config} doesn't exist.")

    # Evaluate config
    config_dict = eval_config(config)
    data = config_dict["data"]
    source_processing = config_dict["source_processing"]
    target_processing = config_dict["target_processing"]
    feature_processing = config_dict["feature_processing"]
    registration_params = config_dict["registration"]
    options = config_dict["options"]
    verbose = args.verbose or options["verbose"]

    # Enable verbose output
    if verbose:
        logger.setLevel(logging.DEBUG)
        set_logger_level(logging.DEBUG)
        print_config_dict(config_dict)

    # Fails early on invalid registration parameters
    fgr = registration.FastGlobalRegistration(config=RegistrationConfig.from_dict(registration_params))

    # Load source data or create a synthetic patch
    if data["source_files"] is None:
        logger.debug("Creating synthetic source data.")
        source_list = [utils.eval_data(utils.create_patch(number_of_points=data["patch_points"],
                                                          size=data["patch_size"],
                                                          height=data["patch_height"],
                                                          seed=options["seed"]))]
    else:
        logger.debug("Loading source data.")
        source_list = utils.eval_data_parallel(data_list=data["source_files"])

    # Load target data or displace a copy of each source
    ground_truth = data["ground_truth"]
    if data["target_files"] is None:
        axis, angle, translation = data["displacement"]
        displacement = transform.create_rigid_axis_angle_3d(axis, angle, *translation)
        logger.debug(f"Displacing source data by {displacement}.")
        target_list = [transform.transform_point_cloud(displacement, source) for source in source_list]
        if ground_truth is None:
            ground_truth = displacement.inverse()
    else:
        logger.debug("Loading target data.")
        target_list = utils.eval_data_parallel(data_list=data["target_files"])

    # Process source and target data
    timings = dict()
    n_jobs = options["n_jobs"]
    seed = options["seed"]
    logger.debug("Processing source data.")
    source_list, source_features = _process(source_list, source_processing, feature_processing, timings,
                                            n_jobs=n_jobs, seed=seed)
    logger.debug("Processing target data.")
    target_list, target_features = _process(target_list, target_processing, feature_processing, timings,
                                            n_jobs=n_jobs, seed=None if seed is None else seed + 1)

    # Run registration. Each estimate moves a target back onto its source.
    registration_start = time.time()
    init_list = data["init_poses"]
    if isinstance(init_list, str):
        init_list = [init_list]
    elif isinstance(init_list, list) and not init_list:
        init_list = None
    results = fgr.run_many(source_list=target_list,
                           target_list=source_list,
                           init_list=init_list,
                           one_vs_one=data["one_vs_one"],
                           source_feature_list=target_features,
                           target_feature_list=source_features,
                           progress=options["progress"] and not verbose)
    timings["registration"] = time.time() - registration_start
    logger.debug(f"Execution took {time.time() - start} seconds.")

    # Pair names in `run_many` order
    one_vs_one = data["one_vs_one"] and len(source_list) == len(target_list)
    if one_vs_one:
        pairs = [(i, i) for i in range(len(source_list))]
    else:
        pairs = [(i, j) for i in range(len(source_list)) for j in range(len(target_list))]
    names = [f"s{i} - t{j}" for i, j in pairs]

    # Transform each target back onto its source and merge both
    merged = list()
    for (i, j), result in zip(pairs, results):
        target_back = transform.transform_point_cloud(result.transform, target_list[j])
        merged.append(utils.merge_point_clouds([source_list[i], target_back], intensities=[0.0, 1.0]))
        if args.draw or options["draw"]:
            utils.draw_geometries([merged[-1]], window_name=f"Merged {names[len(merged) - 1]}")

    # Compare against ground truth poses, one per registration or one for all
    ground_truth = None if isinstance(ground_truth, list) and not ground_truth else ground_truth
    if ground_truth is None:
        errors = [('?', '?')] * len(results)
    else:
        if not isinstance(ground_truth, list) or not all(isinstance(gt, str) for gt in ground_truth):
            ground_truth = [ground_truth]
        poses = [utils.eval_transformation_data(gt) for gt in ground_truth]
        poses = poses * len(results) if len(poses) == 1 else poses
        if len(poses) != len(results):
            raise ValueError(f"Need one ground truth pose per registration ({len(results)}) but got {len(poses)}.")
        errors = [utils.get_transformation_error(result.transformation, pose, in_degrees=options["use_degrees"])
                  for result, pose in zip(results, poses)]
    errors_rot, errors_trans = [error[0] for error in errors], [error[1] for error in errors]

    if options["print_results"] or verbose:
        rows = [(name, result.fitness, result.inlier_rmse, len(result.correspondences), result.iterations, rot, trans)
                for name, result, rot, trans in zip(names, results, errors_rot, errors_trans)]
        unit = "[deg]" if options["use_degrees"] else "[rad]"
        print("\nRESULTS:\n=======")
        print(tabulate.tabulate(rows, headers=["source vs. target", "fitness", "inlier rmse", "# corresp.", "# iter.",
                                               f"error rot. {unit}", "error trans."]))
        print("\nTIMINGS:\n=======")
        print(tabulate.tabulate(list(timings.items()), headers=["step", "time [s]"]))

    everything = {"names": names,
                  "results": results,
                  "transformations": [result.transformation for result in results],
                  "errors_rot": errors_rot,
                  "errors_trans": errors_trans,
                  "timings": timings,
                  "merged": merged}
    selection = options["return"].lower()
    if "everything" in selection:
        return everything
    return {key: value for key, value in everything.items()
            if key in selection or (key.startswith("errors") and "errors" in selection)}


def main() -> None:
    run()


if __name__ == "__main__":
    main()
