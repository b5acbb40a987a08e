"""Rigid transformations.

Classes:
    RigidTransform: Rotation and translation acting on 3D points and point clouds.

Functions:
    create_rigid_axis_angle_3d: Constructs a rigid transformation from an axis, an angle and a translation.
    transform_point_cloud: Returns a transformed copy of a point cloud.
"""
import copy
import logging
from typing import Union, List

import numpy as np
import open3d as o3d

PointCloud = o3d.geometry.PointCloud
VectorTypes = Union[np.ndarray, List[float], tuple]

logger = logging.getLogger(__name__)


def _skew(vector: np.ndarray) -> np.ndarray:
    x, y, z = vector
    return np.array([[0.0, -z, y],
                     [z, 0.0, -x],
                     [-y, x, 0.0]])


class RigidTransform:
    """Rotation and translation acting on 3D points: `x -> R @ x + t`.

    Instances are immutable. Composition follows function composition, i.e. `(a @ b).apply(x)` equals
    `a.apply(b.apply(x))`.

    Attributes:
        rotation: The 3x3 proper rotation matrix.
        translation: The translation vector.

    Methods:
        identity(): The identity transformation.
        from_matrix(matrix): Constructs from a 4x4 homogeneous matrix.
        from_axis_angle(axis, angle, translation): Constructs from an axis, an angle in radians and a translation.
        from_rotation_vector(rotation_vector, translation): Constructs from a rotation vector (exponential map).
        compose(other): Returns `self` applied after `other`.
        inverse(): Returns the inverse transformation.
        apply(points): Transforms a Nx3 array of points.
        allclose(other, atol): Checks element-wise closeness of two transformations.
    """

    def __init__(self,
                 rotation: Union[np.ndarray, list] = np.eye(3),
                 translation: VectorTypes = np.zeros(3),
                 orthonormalize: bool = False,
                 atol: float = 1e-6) -> None:
        """
        Args:
            rotation: The 3x3 rotation matrix.
            translation: The translation vector.
            orthonormalize: Project `rotation` onto the closest proper rotation before validation.
            atol: Absolute tolerance used to validate orthonormality and determinant of `rotation`.

        Raises:
            ValueError: If `rotation` is not a proper rotation (orthonormal, determinant +1).
        """
        _rotation = np.array(rotation, dtype=np.float64).reshape(3, 3)
        _translation = np.array(translation, dtype=np.float64).ravel()
        if _translation.size != 3:
            raise ValueError(f"Translation needs 3 values but has {_translation.size}.")
        if not np.all(np.isfinite(_rotation)) or not np.all(np.isfinite(_translation)):
            raise ValueError("Rigid transformation contains non-finite values.")

        if orthonormalize:
            u, _, vt = np.linalg.svd(_rotation)
            d = np.sign(np.linalg.det(u @ vt))
            _rotation = u @ np.diag([1.0, 1.0, d]) @ vt

        if not np.allclose(_rotation @ _rotation.T, np.eye(3), atol=atol):
            raise ValueError(f"Rotation matrix is not orthonormal:\n{_rotation}")
        determinant = np.linalg.det(_rotation)
        if abs(determinant - 1.0) > atol:
            raise ValueError(f"Rotation matrix must have determinant +1 but has {determinant}.")

        _rotation.setflags(write=False)
        _translation.setflags(write=False)
        self._rotation = _rotation
        self._translation = _translation

    @property
    def rotation(self) -> np.ndarray:
        return self._rotation

    @property
    def translation(self) -> np.ndarray:
        return self._translation

    @property
    def matrix(self) -> np.ndarray:
        """The 4x4 homogeneous transformation matrix (a new, writable array)."""
        T = np.eye(4)
        T[:3, :3] = self._rotation
        T[:3, 3] = self._translation
        return T

    @property
    def angle(self) -> float:
        """The rotation angle in radians in [0, pi]."""
        cos = 0.5 * (np.trace(self._rotation) - 1.0)
        return float(np.arccos(min(1.0, max(-1.0, cos))))

    @property
    def axis(self) -> np.ndarray:
        """The unit rotation axis. Returns the z-axis for (near) identity rotations."""
        R = self._rotation
        angle = self.angle
        if angle < 1e-12:
            return np.array([0.0, 0.0, 1.0])
        if np.pi - angle < 1e-6:
            # sin(angle) vanishes, use the symmetric part R = 2aa^T - I instead
            B = 0.5 * (R + np.eye(3))
            axis = B[np.argmax(np.diag(B))]
        else:
            axis = np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
        return axis / np.linalg.norm(axis)

    @classmethod
    def identity(cls) -> "RigidTransform":
        return cls()

    @classmethod
    def from_matrix(cls, matrix: Union[np.ndarray, list], orthonormalize: bool = False) -> "RigidTransform":
        """Constructs a rigid transformation from a 4x4 homogeneous matrix.

        Args:
            matrix: The 4x4 homogeneous matrix.
            orthonormalize: Project the rotation block onto the closest proper rotation.

        Returns:
            The rigid transformation.
        """
        T = np.asarray(matrix, dtype=np.float64)
        if T.size != 16:
            raise ValueError(f"Homogeneous transformation needs 16 values but has {T.size}.")
        T = T.reshape(4, 4)
        if not np.allclose(T[3], [0.0, 0.0, 0.0, 1.0]):
            raise ValueError(f"Last row of a rigid transformation must be [0, 0, 0, 1] but is {T[3]}.")
        return cls(rotation=T[:3, :3], translation=T[:3, 3], orthonormalize=orthonormalize)

    @classmethod
    def from_rotation_vector(cls,
                             rotation_vector: VectorTypes,
                             translation: VectorTypes = np.zeros(3)) -> "RigidTransform":
        """Constructs a rigid transformation from a rotation vector using Rodrigues' formula.

        Args:
            rotation_vector: Rotation axis scaled by the rotation angle in radians.
            translation: The translation vector.

        Returns:
            The rigid transformation.
        """
        omega = np.asarray(rotation_vector, dtype=np.float64).ravel()
        theta = np.linalg.norm(omega)
        K = _skew(omega)
        if theta < 1e-12:
            R = np.eye(3) + K
        else:
            K /= theta
            R = np.eye(3) + np.sin(theta) * K + (1.0 - np.cos(theta)) * (K @ K)
        return cls(rotation=R, translation=translation, orthonormalize=True)

    @classmethod
    def from_axis_angle(cls,
                        axis: VectorTypes,
                        angle: float,
                        translation: VectorTypes = np.zeros(3)) -> "RigidTransform":
        """Constructs a rigid transformation from a rotation axis, an angle and a translation.

        Args:
            axis: The rotation axis. Does not need to be normalized.
            angle: The rotation angle in radians.
            translation: The translation vector.

        Returns:
            The rigid transformation.
        """
        _axis = np.asarray(axis, dtype=np.float64).ravel()
        norm = np.linalg.norm(_axis)
        if _axis.size != 3 or norm == 0.0:
            raise ValueError(f"Rotation axis must be a non-zero 3D vector but is {_axis}.")
        return cls.from_rotation_vector(rotation_vector=_axis / norm * angle, translation=translation)

    def compose(self, other: "RigidTransform") -> "RigidTransform":
        """Returns the transformation applying `other` first and `self` second."""
        return RigidTransform(rotation=self._rotation @ other.rotation,
                              translation=self._rotation @ other.translation + self._translation,
                              orthonormalize=True)

    def __matmul__(self, other: "RigidTransform") -> "RigidTransform":
        if not isinstance(other, RigidTransform):
            return NotImplemented
        return self.compose(other)

    def inverse(self) -> "RigidTransform":
        return RigidTransform(rotation=self._rotation.T, translation=-self._rotation.T @ self._translation)

    def apply(self, points: Union[np.ndarray, list]) -> np.ndarray:
        """Transforms points.

        Args:
            points: A single 3D point or a Nx3 array of points.

        Returns:
            The transformed points with the same shape as the input.
        """
        _points = np.asarray(points, dtype=np.float64)
        if _points.shape[-1] != 3:
            raise ValueError(f"Points must have shape (3,) or Nx3 but have shape {_points.shape}.")
        return _points @ self._rotation.T + self._translation

    def allclose(self, other: "RigidTransform", atol: float = 1e-8) -> bool:
        return (np.allclose(self._rotation, other.rotation, atol=atol) and
                np.allclose(self._translation, other.translation, atol=atol))

    def __repr__(self) -> str:
        return f"RigidTransform(\n{np.array2string(self.matrix, precision=6, suppress_small=True)})"


def create_rigid_axis_angle_3d(axis: VectorTypes,
                               angle: float,
                               tx: float = 0.0,
                               ty: float = 0.0,
                               tz: float = 0.0) -> RigidTransform:
    """Constructs a rigid transformation from a rotation axis, an angle in radians and a XYZ translation.

    Args:
        axis: The rotation axis. Does not need to be normalized.
        angle: The rotation angle in radians.
        tx: Translation along x.
        ty: Translation along y.
        tz: Translation along z.

    Returns:
        The rigid transformation.
    """
    return RigidTransform.from_axis_angle(axis=axis, angle=angle, translation=[tx, ty, tz])


def transform_point_cloud(transform: RigidTransform, point_cloud: PointCloud) -> PointCloud:
    """Returns a transformed copy of `point_cloud`. Normals are rotated alongside the points.

    Args:
        transform: The rigid transformation.
        point_cloud: The point cloud. Left untouched.

    Returns:
        The transformed point cloud.
    """
    return copy.deepcopy(point_cloud).transform(transform.matrix)
