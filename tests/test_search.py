"""Unittests for the search module."""
import numpy as np
import pytest

from .context import search, errors


@pytest.fixture
def grid():
    x, y = np.meshgrid(np.arange(5, dtype=float), np.arange(5, dtype=float), indexing="ij")
    return np.column_stack([x.ravel(), y.ravel(), np.zeros(25)])


@pytest.fixture
def index(grid):
    return search.build_index(grid)


class TestSpatialIndex:

    def test_knn_search(self, index, grid):
        indices, distances = index.knn_search(grid[12], 5)
        assert indices[0] == 12
        assert distances[0] == pytest.approx(0.0)
        # Four equidistant neighbors are ordered by index
        assert indices[1:].tolist() == [7, 11, 13, 17]
        assert np.allclose(distances[1:], 1.0)

    def test_knn_search_more_than_indexed(self, index):
        indices, _ = index.knn_search([0.0, 0.0, 0.0], 100)
        assert len(indices) == 25

    def test_radius_search(self, index, grid):
        indices, distances = index.radius_search(grid[12], 1.5)
        assert len(indices) == 9
        assert np.all(np.diff(distances) >= 0)
        assert np.all(distances <= 1.5 ** 2)

    def test_radius_search_without_neighbors(self, index):
        with pytest.raises(errors.InsufficientNeighbors):
            index.radius_search([100.0, 100.0, 100.0], 1.0)

    def test_hybrid_search(self, index, grid):
        indices, _ = index.hybrid_search(grid[12], 1.5, 3)
        assert indices.tolist() == [12, 7, 11]

    def test_search_dispatch(self, index, grid):
        radius, _ = index.search(grid[0], search.SearchParamTypes.RADIUS_SEARCH, radius=1.1)
        knn, _ = index.search(grid[0], search.SearchParamTypes.K_NEAREST, knn=3)
        hybrid, _ = index.search(grid[0], search.SearchParamTypes.HYBRID, radius=10.0, knn=4)
        assert radius.tolist() == [0, 1, 5]
        assert knn.tolist() == [0, 1, 5]
        assert len(hybrid) == 4

    def test_feature_space(self):
        features = np.random.default_rng(0).random((50, 33))
        index = search.build_index(features)
        assert index.dimension == 33
        indices, distances = index.knn_search(features[7], 1)
        assert indices[0] == 7
        assert distances[0] == pytest.approx(0.0)

    def test_invalid_query(self, index):
        with pytest.raises(ValueError):
            index.knn_search([0.0, 0.0], 1)
        with pytest.raises(errors.InvalidConfiguration):
            index.knn_search([0.0, 0.0, 0.0], 0)
        with pytest.raises(errors.InvalidConfiguration):
            index.radius_search([0.0, 0.0, 0.0], -1.0)

    def test_empty_index(self):
        index = search.build_index(np.empty((0, 3)))
        assert len(index) == 0
        with pytest.raises(errors.InsufficientNeighbors):
            index.knn_search([0.0, 0.0, 0.0], 1)


def test_eval_search_param():
    search.eval_search_param(search.SearchParamTypes.K_NEAREST, radius=-1.0, knn=10)
    with pytest.raises(errors.InvalidConfiguration):
        search.eval_search_param(search.SearchParamTypes.HYBRID, radius=0.0, knn=10)
    with pytest.raises(errors.InvalidConfiguration):
        search.eval_search_param(search.SearchParamTypes.HYBRID, radius=1.0, knn=2.5)
    with pytest.raises(errors.InvalidConfiguration):
        search.eval_search_param("radius", radius=1.0, knn=10)


def test_get_neighborhoods(grid, index):
    points = np.vstack([grid, [[100.0, 100.0, 100.0]]])
    neighborhoods = search.get_neighborhoods(points, index, radius=1.0, start=10)
    assert len(neighborhoods) == 16
    assert neighborhoods[0][0][0] == 10
    assert len(neighborhoods[-1][0]) == 0


@pytest.mark.parametrize("num_points, n_jobs", [(10, 1), (10, 3), (2, 8), (0, 4)])
def test_get_chunks(num_points, n_jobs):
    chunks = search.get_chunks(num_points, n_jobs)
    assert 1 <= len(chunks) <= max(1, n_jobs)
    assert chunks[0][0] == 0
    assert chunks[-1][1] == num_points
    for (_, stop), (start, _) in zip(chunks[:-1], chunks[1:]):
        assert stop == start
