"""Unittests for the normals module."""
import numpy as np
import pytest

from .context import normals, errors, search


@pytest.fixture
def plane():
    x, y = np.meshgrid(np.linspace(0, 2, 21), np.linspace(0, 2, 21), indexing="ij")
    return np.column_stack([x.ravel(), y.ravel(), np.zeros(x.size)])


@pytest.fixture
def sphere():
    n = 500
    i = np.arange(n) + 0.5
    polar = np.arccos(1 - 2 * i / n)
    azimuth = np.pi * (1 + 5 ** 0.5) * i
    return np.column_stack([np.cos(azimuth) * np.sin(polar), np.sin(azimuth) * np.sin(polar), np.cos(polar)])


class TestEstimateNormals:

    def test_plane(self, plane):
        result = normals.estimate_normals(plane,
                                          radius=0.25,
                                          orientation=normals.OrientationTypes.DIRECTION,
                                          reference=[0.0, 0.0, 1.0])
        assert len(result) == len(plane)
        assert np.allclose(result.normals, [0.0, 0.0, 1.0])
        assert np.allclose(result.curvature, 0.0)
        assert not np.any(result.degenerate)

    def test_camera_orientation(self, plane):
        result = normals.estimate_normals(plane,
                                          radius=0.25,
                                          orientation=normals.OrientationTypes.CAMERA,
                                          reference=[1.0, 1.0, -5.0])
        assert np.allclose(result.normals, [0.0, 0.0, -1.0])

    def test_centroid_orientation(self, sphere):
        result = normals.estimate_normals(sphere, search_param=search.SearchParamTypes.K_NEAREST, knn=10)
        assert np.all(np.einsum("ij,ij->i", result.normals, sphere) > 0.9)
        assert np.allclose(np.linalg.norm(result.normals, axis=1), 1.0)
        assert np.all(result.curvature > 0)

    def test_degenerate_strict(self, plane):
        points = np.vstack([plane, [[10.0, 10.0, 10.0]]])
        with pytest.raises(errors.DegenerateNeighborhood) as e:
            normals.estimate_normals(points, radius=0.25)
        assert e.value.index == len(plane)
        assert e.value.num_neighbors == 1

    def test_degenerate_fallback(self, plane):
        points = np.vstack([plane, [[10.0, 10.0, 10.0]]])
        result = normals.estimate_normals(points,
                                          radius=0.25,
                                          orientation=normals.OrientationTypes.DIRECTION,
                                          reference=[0.0, 2.0, 0.0],
                                          strict=False)
        assert result.degenerate.sum() == 1
        assert result.degenerate[-1]
        assert np.allclose(result.normals[-1], [0.0, 1.0, 0.0])
        assert result.curvature[-1] == 0.0

    def test_n_jobs(self, sphere):
        single = normals.estimate_normals(sphere, radius=0.3, n_jobs=1)
        multi = normals.estimate_normals(sphere, radius=0.3, n_jobs=4)
        assert np.array_equal(single.normals, multi.normals)
        assert np.array_equal(single.curvature, multi.curvature)

    def test_empty(self):
        result = normals.estimate_normals(np.empty((0, 3)))
        assert len(result) == 0

    def test_invalid_search_param(self, plane):
        with pytest.raises(errors.InvalidConfiguration):
            normals.estimate_normals(plane, radius=0.0)


def test_project_to_tangent_planes(plane):
    noisy = plane.copy()
    noisy[:, 2] = np.random.default_rng(0).normal(scale=0.01, size=len(plane))
    smoothed = normals.project_to_tangent_planes(noisy, radius=0.5)
    assert smoothed.shape == noisy.shape
    assert np.std(smoothed[:, 2]) < np.std(noisy[:, 2])
    assert np.allclose(smoothed[:, :2], noisy[:, :2], atol=0.01)
