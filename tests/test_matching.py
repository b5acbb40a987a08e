"""Unittests for the matching module."""
import numpy as np
import pytest

from .context import matching, config, features, transform


@pytest.fixture
def points():
    return np.random.default_rng(0).uniform(-1, 1, size=(200, 3))


@pytest.fixture
def moved_points(points):
    return transform.create_rigid_axis_angle_3d([0, 1, 1], 0.4, 0.5).apply(points)


@pytest.fixture
def descriptors():
    return np.random.default_rng(1).random((200, features.FEATURE_DIMENSION))


class TestAdvancedMatching:

    def test_tuple_test(self, points, moved_points, descriptors):
        registration_config = config.RegistrationConfig(max_tuples=100)
        correspondences = matching.advanced_matching(points, descriptors, moved_points, descriptors,
                                                     config=registration_config)
        assert len(correspondences) == 3 * registration_config.max_tuples
        assert np.array_equal(correspondences.indices[:, 0], correspondences.indices[:, 1])
        assert np.allclose(correspondences.distances, 0.0)

    def test_without_tuple_test(self, points, moved_points, descriptors):
        registration_config = config.RegistrationConfig(tuple_test=False)
        correspondences = matching.advanced_matching(points, descriptors, moved_points, descriptors,
                                                     config=registration_config)
        assert correspondences.indices.tolist() == [[i, i] for i in range(len(points))]

    def test_without_cross_check(self, points, moved_points, descriptors):
        registration_config = config.RegistrationConfig(cross_check=False, tuple_test=False)
        noisy = descriptors + np.random.default_rng(2).normal(scale=0.3, size=descriptors.shape)
        mutual = matching.advanced_matching(points, descriptors, moved_points, noisy,
                                            config=config.RegistrationConfig(tuple_test=False))
        union = matching.advanced_matching(points, descriptors, moved_points, noisy, config=registration_config)
        assert len(union) >= len(mutual)
        assert len(np.unique(union.indices, axis=0)) == len(union)
        assert set(map(tuple, mutual.indices)) <= set(map(tuple, union.indices))

    def test_swap(self, points, descriptors):
        small = matching.advanced_matching(points[:100], descriptors[:100], points, descriptors,
                                           config=config.RegistrationConfig(tuple_test=False))
        large = matching.advanced_matching(points, descriptors, points[:100], descriptors[:100],
                                           config=config.RegistrationConfig(tuple_test=False))
        assert small.indices.tolist() == [[i, i] for i in range(100)]
        assert large.indices.tolist() == small.indices.tolist()

    def test_seed(self, points, moved_points, descriptors):
        noisy = descriptors + np.random.default_rng(2).normal(scale=0.1, size=descriptors.shape)
        first = matching.advanced_matching(points, descriptors, moved_points, noisy)
        second = matching.advanced_matching(points, descriptors, moved_points, noisy)
        assert np.array_equal(first.indices, second.indices)

    def test_distances(self, points, moved_points, descriptors):
        noisy = descriptors + np.random.default_rng(2).normal(scale=0.1, size=descriptors.shape)
        correspondences = matching.advanced_matching(points, descriptors, moved_points, noisy,
                                                     config=config.RegistrationConfig(tuple_test=False))
        expected = np.linalg.norm(descriptors[correspondences.indices[:, 0]] -
                                  noisy[correspondences.indices[:, 1]], axis=1)
        assert np.allclose(correspondences.distances, expected)

    def test_feature_set_input(self, points, moved_points, descriptors):
        correspondences = matching.advanced_matching(points,
                                                     features.FeatureSet(descriptors),
                                                     moved_points,
                                                     features.FeatureSet(descriptors).to_open3d(),
                                                     config=config.RegistrationConfig(tuple_test=False))
        assert len(correspondences) == len(points)

    def test_too_few_matches(self, descriptors):
        correspondences = matching.advanced_matching(np.zeros((2, 3)), descriptors[:2],
                                                     np.ones((2, 3)), descriptors[:2])
        assert len(correspondences) == 2

    def test_empty(self, descriptors):
        correspondences = matching.advanced_matching(np.empty((0, 3)), np.empty((0, 33)),
                                                     np.zeros((2, 3)), descriptors[:2])
        assert len(correspondences) == 0
        assert correspondences.indices.shape == (0, 2)

    def test_invalid_input(self, points, descriptors):
        with pytest.raises(ValueError):
            matching.advanced_matching(points, descriptors[:10], points, descriptors)
        with pytest.raises(ValueError):
            matching.advanced_matching(points, descriptors, points, descriptors[:, :10])


def test_correspondence_set():
    correspondences = matching.CorrespondenceSet([[0, 1], [2, 3]], [0.5, 0.25])
    assert len(correspondences) == 2
    assert np.asarray(correspondences.to_open3d()).tolist() == [[0, 1], [2, 3]]
    with pytest.raises(ValueError):
        correspondences.indices[0, 0] = 5
    with pytest.raises(ValueError):
        matching.CorrespondenceSet([[0, 1]], [0.5, 0.25])
