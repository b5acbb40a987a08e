"""Unittests for the solver module."""
import numpy as np
import pytest

from .context import solver, config, errors, transform, utils


@pytest.fixture
def points():
    return np.random.default_rng(0).uniform(-1, 1, size=(200, 3))


@pytest.fixture
def ground_truth():
    return transform.create_rigid_axis_angle_3d([0, 0, 1], np.deg2rad(30), 0.5, -0.2, 0.1)


@pytest.fixture
def moved_points(points, ground_truth):
    return ground_truth.apply(points)


@pytest.fixture
def identity_pairs(points):
    return np.column_stack([np.arange(len(points)), np.arange(len(points))])


def _errors(estimate, ground_truth):
    return utils.get_transformation_error(estimate.matrix, ground_truth.matrix)


class TestOptimizePairwise:

    def test_exact_correspondences(self, points, moved_points, identity_pairs, ground_truth):
        result = solver.optimize_pairwise(points, moved_points, identity_pairs)
        assert result.converged
        assert result.transformation.allclose(ground_truth, atol=1e-6)
        assert result.num_inliers == len(points)

    def test_outliers(self, points, moved_points, identity_pairs, ground_truth):
        pairs = identity_pairs.copy()
        outliers = np.random.default_rng(1).choice(len(points), size=len(points) // 5, replace=False)
        pairs[outliers, 1] = np.random.default_rng(2).permutation(pairs[outliers, 1])
        result = solver.optimize_pairwise(points, moved_points, pairs)
        error_rot, error_trans = _errors(result.transformation, ground_truth)
        assert error_rot < 0.5
        assert error_trans < 0.01

    def test_mu_schedule(self, points, moved_points, identity_pairs):
        registration_config = config.RegistrationConfig(tolerance=0.0)
        result = solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)
        schedule = result.mu_schedule
        assert len(schedule) == result.iterations
        assert schedule[0] == pytest.approx(1.0 / registration_config.graduated_non_convexity_factor)
        assert np.all(np.diff(schedule) <= 0)
        assert schedule[-1] <= registration_config.max_correspondence_distance ** 2
        # Annealing steps happen every `gnc_interval` iterations only
        steps = np.flatnonzero(np.diff(schedule) < 0) + 1
        assert np.all(steps % registration_config.gnc_interval == 0)

    def test_absolute_mode(self, points, moved_points, identity_pairs, ground_truth):
        registration_config = config.RegistrationConfig(max_correspondence_distance=0.05,
                                                        distance_mode=config.DistanceModes.ABSOLUTE)
        result = solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)
        extent = solver.get_extent(points, moved_points)
        assert result.mu_schedule[0] == pytest.approx(extent ** 2 / registration_config.graduated_non_convexity_factor)
        assert result.converged
        assert result.transformation.allclose(ground_truth, atol=1e-6)

    def test_without_annealing(self, points, moved_points, identity_pairs, ground_truth):
        registration_config = config.RegistrationConfig(decrease_mu=False)
        result = solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)
        assert np.all(result.mu_schedule == 1.0)
        assert result.converged
        assert result.iterations < registration_config.max_iteration
        assert result.transformation.allclose(ground_truth, atol=1e-6)

    def test_max_iteration(self, points, moved_points, identity_pairs):
        registration_config = config.RegistrationConfig(max_iteration=8, tolerance=0.0)
        result = solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)
        assert result.iterations == 8
        assert not result.converged

    def test_stops_after_final_interval(self, points, moved_points, identity_pairs, ground_truth):
        registration_config = config.RegistrationConfig(max_iteration=1000, tolerance=0.0)
        result = solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)
        assert result.converged
        assert result.iterations < registration_config.max_iteration
        assert result.iterations % registration_config.gnc_interval == 0
        final_mu = result.mu_schedule[-1]
        assert final_mu <= registration_config.max_correspondence_distance ** 2
        assert np.count_nonzero(result.mu_schedule == final_mu) == registration_config.gnc_interval
        assert result.transformation.allclose(ground_truth, atol=1e-6)

    def test_stops_on_small_update(self, points, moved_points, identity_pairs, ground_truth):
        registration_config = config.RegistrationConfig(max_iteration=1000)
        result = solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)
        assert result.converged
        assert result.mu_schedule[-1] > registration_config.max_correspondence_distance ** 2
        assert result.transformation.allclose(ground_truth, atol=1e-6)

    def test_outlier_factor(self, points, moved_points, identity_pairs):
        registration_config = config.RegistrationConfig(outlier_factor=1e-3)
        with pytest.raises(errors.RegistrationDidNotConverge):
            solver.optimize_pairwise(points, moved_points, identity_pairs, config=registration_config)

    def test_deterministic(self, points, moved_points, identity_pairs):
        first = solver.optimize_pairwise(points, moved_points, identity_pairs)
        second = solver.optimize_pairwise(points, moved_points, identity_pairs)
        assert np.array_equal(first.transformation.matrix, second.transformation.matrix)
        assert np.array_equal(first.mu_schedule, second.mu_schedule)

    def test_too_few_correspondences(self, points, moved_points, identity_pairs):
        with pytest.raises(errors.RegistrationDidNotConverge):
            solver.optimize_pairwise(points, moved_points, identity_pairs[:5])

    def test_indices_out_of_range(self, points, moved_points, identity_pairs):
        pairs = identity_pairs.copy()
        pairs[0, 1] = len(moved_points)
        with pytest.raises(ValueError):
            solver.optimize_pairwise(points, moved_points, pairs)

    def test_all_outliers(self, points, moved_points, identity_pairs):
        # No rigid transformation brings ten of these pairs within the final kernel width
        far = moved_points + 100.0 * np.random.default_rng(3).normal(size=moved_points.shape)
        registration_config = config.RegistrationConfig(distance_mode=config.DistanceModes.ABSOLUTE,
                                                        max_correspondence_distance=1e-3,
                                                        max_iteration=1000,
                                                        tolerance=0.0)
        with pytest.raises(errors.RegistrationDidNotConverge):
            solver.optimize_pairwise(points, far, identity_pairs, config=registration_config)


def test_get_extent():
    points_a = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
    points_b = np.array([[5.0, 5.0, 5.0], [5.0, 5.0, 9.0]])
    assert solver.get_extent(points_a, points_b) == pytest.approx(2.0)
    assert solver.get_extent(np.zeros((3, 3)), np.zeros((3, 3))) == 1.0
