"""Unittests for the features module."""
import numpy as np
import open3d as o3d
import pytest

from .context import features, normals, search, transform, utils, errors


@pytest.fixture
def patch():
    return utils.create_patch(number_of_points=1000, height=2.0)


@pytest.fixture
def patch_normals(patch):
    return normals.estimate_normals(patch,
                                    radius=1.5,
                                    orientation=normals.OrientationTypes.DIRECTION).normals


@pytest.fixture
def patch_feature(patch, patch_normals):
    return features.compute_fpfh_feature(patch, patch_normals, radius=2.5)


def _block_sums(data):
    return data.reshape(-1, 3, features.NUM_BINS).sum(axis=2)


class TestPairFeatures:

    def test_parallel_normals(self):
        pair_features, valid = features.compute_pair_features(np.zeros(3),
                                                              np.array([0.0, 0.0, 1.0]),
                                                              np.array([[1.0, 0.0, 0.0]]),
                                                              np.array([[0.0, 0.0, 1.0]]))
        assert valid.tolist() == [True]
        assert np.allclose(pair_features, [[0.0, 0.0, 0.0, 1.0]])

    def test_tilted_normal(self):
        tilted = np.array([[np.sin(0.3), 0.0, np.cos(0.3)]])
        pair_features, valid = features.compute_pair_features(np.zeros(3),
                                                              np.array([0.0, 0.0, 1.0]),
                                                              np.array([[2.0, 0.0, 0.0]]),
                                                              tilted)
        assert valid.all()
        theta, alpha, phi, distance = pair_features[0]
        assert abs(theta) == pytest.approx(0.3)
        assert alpha == pytest.approx(0.0, abs=1e-12)
        assert distance == pytest.approx(2.0)

    def test_invalid_pairs(self):
        pair_features, valid = features.compute_pair_features(np.zeros(3),
                                                              np.array([0.0, 0.0, 1.0]),
                                                              np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 1.0]]),
                                                              np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0]]))
        assert valid.tolist() == [False, False]
        assert np.all(pair_features == 0.0)


class TestFPFH:

    def test_shape_and_normalization(self, patch, patch_feature):
        assert len(patch_feature) == len(patch)
        assert patch_feature.dimension == features.FEATURE_DIMENSION
        assert np.allclose(_block_sums(patch_feature.data), features.HISTOGRAM_SUM)
        assert np.all(patch_feature.data >= 0)

    def test_rigid_invariance(self, patch, patch_feature):
        rotation = transform.create_rigid_axis_angle_3d([0, 0, 1], np.pi / 6, 5.0)
        moved = rotation.apply(patch)
        moved_normals = normals.estimate_normals(moved,
                                                 radius=1.5,
                                                 orientation=normals.OrientationTypes.DIRECTION).normals
        moved_feature = features.compute_fpfh_feature(moved, moved_normals, radius=2.5)
        # Rounding can move a pair feature across a bin edge, so compare with a tolerance
        l1_distances = np.abs(moved_feature.data - patch_feature.data).sum(axis=1)
        assert l1_distances.mean() < 1.0
        index = search.build_index(patch_feature.data)
        nearest = [index.knn_search(descriptor, 1)[0][0] for descriptor in moved_feature.data]
        assert np.mean(np.asarray(nearest) == np.arange(len(patch))) > 0.8

    def test_n_jobs(self, patch, patch_normals, patch_feature):
        feature = features.compute_fpfh_feature(patch, patch_normals, radius=2.5, n_jobs=3)
        assert np.array_equal(feature.data, patch_feature.data)

    def test_hybrid(self, patch, patch_normals):
        feature = features.compute_fpfh_feature(patch,
                                                patch_normals,
                                                search_param=search.SearchParamTypes.HYBRID,
                                                radius=2.5,
                                                knn=50)
        assert np.allclose(_block_sums(feature.data), features.HISTOGRAM_SUM)

    def test_isolated_point(self):
        points = np.array([[0.0, 0.0, 0.0], [0.1, 0.0, 0.0], [0.0, 0.1, 0.02], [10.0, 10.0, 10.0]])
        point_normals = np.tile([0.0, 0.0, 1.0], (4, 1))
        with pytest.raises(errors.InsufficientNeighbors) as e:
            features.compute_fpfh_feature(points, point_normals, radius=0.5)
        assert e.value.index == 3

        feature = features.compute_fpfh_feature(points, point_normals, radius=0.5, strict=False)
        assert np.all(feature.data[3] == 0.0)
        assert np.allclose(_block_sums(feature.data[:3]), features.HISTOGRAM_SUM)

    def test_mismatched_normals(self, patch, patch_normals):
        with pytest.raises(ValueError):
            features.compute_fpfh_feature(patch, patch_normals[:-1], radius=2.5)


def test_compute_spfh():
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    point_normals = np.tile([0.0, 0.0, 1.0], (3, 1))
    index = search.build_index(points)
    neighborhoods = search.get_neighborhoods(points, index, radius=1.2)
    spfh = features.compute_spfh(points, point_normals, neighborhoods)
    assert spfh.shape == (3, features.FEATURE_DIMENSION)
    assert np.allclose(_block_sums(spfh[:2]), features.HISTOGRAM_SUM)
    # Parallel normals: theta and alpha are zero, phi is zero
    center = features.NUM_BINS // 2
    for block in range(3):
        assert spfh[0, block * features.NUM_BINS + center] == pytest.approx(features.HISTOGRAM_SUM)


def test_feature_set_open3d(patch_feature):
    feature = patch_feature.to_open3d()
    assert isinstance(feature, o3d.pipelines.registration.Feature)
    assert feature.dimension() == features.FEATURE_DIMENSION
    assert feature.num() == len(patch_feature)
    assert np.array_equal(features.eval_feature_data(feature).data, patch_feature.data)
    with pytest.raises(TypeError):
        features.eval_feature_data([1, 2, 3])
