"""Integration tests for the package scripts."""
import configparser
import os

import numpy as np
import pytest

from .context import run_registration, utils, config


@pytest.fixture
def registration_ini_path():
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "scripts", "registration.ini")


@pytest.fixture
def small_config():
    small_config = configparser.ConfigParser(inline_comment_prefixes='#')
    processing = {"number_of_points": "none",
                  "remove_outlier": "none",
                  "outlier_std_ratio": "2.0",
                  "outlier_knn": "30",
                  "outlier_radius": "0.5",
                  "smooth": "False",
                  "smooth_radius": "0.3",
                  "draw": "False"}
    small_config.read_dict({"data": {"source_files": "none",
                                     "target_files": "none",
                                     "patch_points": "1500",
                                     "patch_size": "10.0",
                                     "patch_height": "2.0",
                                     "displacement": "[[0.1, -0.2, 0.9], 0.57, [1.0, 2.3, 8.0]]",
                                     "ground_truth": "none",
                                     "init_poses": "none",
                                     "one_vs_one": "True"},
                            "source_processing": processing,
                            "target_processing": processing,
                            "feature_processing": {"search_param": "radius",
                                                   "normal_radius": "1.5",
                                                   "normal_knn": "30",
                                                   "feature_radius": "2.5",
                                                   "feature_knn": "100",
                                                   "orient_normals": "centroid",
                                                   "camera_location_or_direction": "none",
                                                   "strict": "True"},
                            "registration": {"max_correspondence_distance": "0.025",
                                             "distance_mode": "relative",
                                             "max_iteration": "100",
                                             "seed": "0"},
                            "options": {"verbose": "False",
                                        "progress": "False",
                                        "print_results": "True",
                                        "use_degrees": "True",
                                        "draw": "False",
                                        "n_jobs": "2",
                                        "seed": "0",
                                        "return": "everything"}})
    return small_config


def test_paths(registration_ini_path):
    assert os.path.exists(registration_ini_path)


class TestRunRegistration:

    def test_eval_config(self, registration_ini_path):
        ini = configparser.ConfigParser(inline_comment_prefixes='#')
        ini.read(registration_ini_path)
        config_dict = run_registration.eval_config(ini)
        assert config_dict["data"]["source_files"] is None
        assert config_dict["source_processing"]["remove_outlier"] == utils.OutlierTypes.STATISTICAL
        assert config_dict["feature_processing"]["search_param"] == utils.SearchParamTypes.HYBRID
        assert config_dict["registration"]["distance_mode"] == config.DistanceModes.RELATIVE
        assert config_dict["options"]["return"] == "everything"
        config.RegistrationConfig.from_dict(config_dict["registration"])

    def test_eval_config_enum_list(self):
        ini = configparser.ConfigParser(inline_comment_prefixes='#')
        ini.read_dict({"source_processing": {"remove_outlier": "['radius', 'none']"}})
        assert run_registration.eval_config(ini)["source_processing"]["remove_outlier"] == [utils.OutlierTypes.RADIUS,
                                                                                             None]

    def test_eval_config_missing_files(self, tmp_path):
        ini = configparser.ConfigParser(inline_comment_prefixes='#')
        ini.read_dict({"data": {"source_files": str(tmp_path / "*.ply")}})
        with pytest.raises(FileNotFoundError):
            run_registration.eval_config(ini)

    def test_run(self, small_config):
        return_data = run_registration.run(small_config, args=[])
        assert return_data["names"] == ["s0 - t0"]
        assert len(return_data["results"]) == 1
        assert return_data["errors_rot"][0] < 1.0
        assert return_data["errors_trans"][0] < 0.05
        assert set(return_data["timings"]) == {"sampling and outlier removal", "normals", "fpfh", "registration"}
        merged = return_data["merged"][0]
        assert len(merged.points) == 2 * 1500
        # The displaced copy transformed back lies on top of the original
        merged_points = np.asarray(merged.points)
        assert np.linalg.norm(merged_points[:1500] - merged_points[1500:], axis=1).mean() < 0.1

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            run_registration.run(args=["-c", str(tmp_path / "missing.ini")])
