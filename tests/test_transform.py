"""Unittests for the transform module."""
import numpy as np
import open3d as o3d
import pytest

from .context import transform


@pytest.fixture
def points():
    return np.random.default_rng(0).uniform(-1, 1, size=(100, 3))


@pytest.fixture
def rigid_transform():
    return transform.create_rigid_axis_angle_3d([0.1, -0.2, 0.9], 0.57, 1.0, 2.3, 8.0)


class TestRigidTransform:

    def test_identity(self, points):
        identity = transform.RigidTransform.identity()
        assert np.allclose(identity.apply(points), points)
        assert np.allclose(identity.matrix, np.eye(4))
        assert identity.angle == pytest.approx(0.0)

    def test_axis_angle(self):
        rotation = transform.RigidTransform.from_axis_angle([0, 0, 2], np.pi / 2)
        assert np.allclose(rotation.apply([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])
        assert rotation.angle == pytest.approx(np.pi / 2)
        assert np.allclose(rotation.axis, [0.0, 0.0, 1.0])

    def test_axis_at_half_turn(self):
        rotation = transform.RigidTransform.from_axis_angle([1, 1, 0], np.pi)
        assert rotation.angle == pytest.approx(np.pi)
        assert np.isclose(abs(rotation.axis @ np.array([1, 1, 0]) / np.sqrt(2)), 1.0)

    def test_compose(self, rigid_transform, points):
        other = transform.create_rigid_axis_angle_3d([1, 0, 0], -0.3, tz=-1.0)
        composed = rigid_transform @ other
        assert np.allclose(composed.apply(points), rigid_transform.apply(other.apply(points)))
        assert np.allclose(composed.matrix, rigid_transform.matrix @ other.matrix)

    def test_inverse(self, rigid_transform, points):
        assert (rigid_transform @ rigid_transform.inverse()).allclose(transform.RigidTransform.identity())
        assert np.allclose(rigid_transform.inverse().apply(rigid_transform.apply(points)), points)

    def test_from_matrix(self, rigid_transform):
        assert transform.RigidTransform.from_matrix(rigid_transform.matrix).allclose(rigid_transform)
        with pytest.raises(ValueError):
            transform.RigidTransform.from_matrix(np.ones((4, 4)))

    def test_from_rotation_vector(self):
        rotation_vector = np.array([0.2, -0.1, 0.4])
        rotation = transform.RigidTransform.from_rotation_vector(rotation_vector)
        assert rotation.angle == pytest.approx(np.linalg.norm(rotation_vector))
        assert np.allclose(rotation.axis, rotation_vector / np.linalg.norm(rotation_vector))

    def test_invalid_rotation(self):
        with pytest.raises(ValueError):
            transform.RigidTransform(rotation=2 * np.eye(3))
        with pytest.raises(ValueError):
            transform.RigidTransform(rotation=np.diag([1.0, 1.0, -1.0]))
        with pytest.raises(ValueError):
            transform.RigidTransform.from_axis_angle([0, 0, 0], 1.0)

    def test_orthonormalize(self, rigid_transform):
        noisy = rigid_transform.rotation + 1e-4
        projected = transform.RigidTransform(rotation=noisy, orthonormalize=True)
        assert np.allclose(projected.rotation @ projected.rotation.T, np.eye(3))
        assert np.allclose(projected.rotation, rigid_transform.rotation, atol=1e-3)

    def test_immutable(self, rigid_transform):
        with pytest.raises(ValueError):
            rigid_transform.rotation[0, 0] = 0.0
        matrix = rigid_transform.matrix
        matrix[0, 3] = 100.0
        assert rigid_transform.translation[0] == pytest.approx(1.0)


def test_transform_point_cloud(rigid_transform, points):
    point_cloud = o3d.geometry.PointCloud(o3d.utility.Vector3dVector(points))
    point_cloud.normals = o3d.utility.Vector3dVector(np.tile([0.0, 0.0, 1.0], (len(points), 1)))
    transformed = transform.transform_point_cloud(rigid_transform, point_cloud)
    assert np.allclose(np.asarray(transformed.points), rigid_transform.apply(points))
    assert np.allclose(np.asarray(transformed.normals), rigid_transform.rotation @ np.array([0.0, 0.0, 1.0]))
    assert np.allclose(np.asarray(point_cloud.points), points)
