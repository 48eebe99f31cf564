"""
Similarity transforms for point cloud registration.

Quaternions are stored as (x, y, z, w). A device transform is the 8-float
record (qx, qy, qz, qw, tx, ty, tz, s) and maps p to s * R(q) p + t.
"""

import numpy as np

from .compute import POINT_DIM, Stage
from .errors import ConfigurationError

IDENTITY_QUATERNION = np.array([0.0, 0.0, 0.0, 1.0])

# Initial content of a device transform buffer
IDENTITY_TRANSFORM = np.array([0, 0, 0, 1, 0, 0, 0, 1], dtype=np.float32)


def quaternion_to_matrix(q):
    x, y, z, w = np.asarray(q, dtype=np.float64)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])


def canonical_quaternion(q):
    """Unit quaternion with a non-negative scalar part."""
    q = np.asarray(q, dtype=np.float64)
    q = q / np.linalg.norm(q)
    return -q if q[3] < 0 else q


def matrix_to_quaternion(R):
    R = np.asarray(R, dtype=np.float64)
    trace = np.trace(R)

    # pick the largest of w, x, y, z as pivot
    if trace > 0:
        s = 2.0 * np.sqrt(trace + 1.0)
        q = [(R[2, 1] - R[1, 2]) / s, (R[0, 2] - R[2, 0]) / s, (R[1, 0] - R[0, 1]) / s, 0.25 * s]
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q = [0.25 * s, (R[0, 1] + R[1, 0]) / s, (R[0, 2] + R[2, 0]) / s, (R[2, 1] - R[1, 2]) / s]
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q = [(R[0, 1] + R[1, 0]) / s, 0.25 * s, (R[1, 2] + R[2, 1]) / s, (R[0, 2] - R[2, 0]) / s]
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q = [(R[0, 2] + R[2, 0]) / s, (R[1, 2] + R[2, 1]) / s, 0.25 * s, (R[1, 0] - R[0, 1]) / s]
    return canonical_quaternion(q)


def quaternion_multiply(a, b):
    """Hamilton product a * b; R(a * b) = R(a) R(b)."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ])


def axis_angle_to_quaternion(axis, angle_deg):
    axis = np.asarray(axis, dtype=np.float64)
    axis = axis / np.linalg.norm(axis)
    half = np.radians(angle_deg) / 2.0
    return np.append(np.sin(half) * axis, np.cos(half))


def rotation_angle_deg(q):
    """Rotation angle of a quaternion in degrees, 2 * atan2(|q_xyz|, q_w)."""
    q = np.asarray(q, dtype=np.float64)
    return np.degrees(2.0 * np.arctan2(np.linalg.norm(q[:3]), q[3]))


def rotation_axis(q):
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q[:3])
    if norm == 0:
        return np.array([0.0, 0.0, 1.0])
    return np.sign(q[3] if q[3] != 0 else 1.0) * q[:3] / norm


def similarity_matrix(q, t, s=1.0):
    """4x4 homogeneous matrix of p -> s R(q) p + t."""
    T = np.eye(4)
    T[:3, :3] = s * quaternion_to_matrix(q)
    T[:3, 3] = t
    return T


def transform_quaternion(points, T, out):
    q = T[0:3]
    w = T[3]
    t = T[4:7]
    s = T[7]
    p = points[:, :3]
    u = np.cross(q, p) + w * p
    out[:, :3] = s * (p + 2.0 * np.cross(q, u)) + t
    out[:, 3:] = points[:, 3:]


def transform_matrix(points, T, out):
    out[:, :4] = points[:, :4] @ T.reshape(4, 4).T
    out[:, 4:] = points[:, 4:]


class QuaternionTransform(Stage):
    """
    Applies the transform record in `d_in_t` to n points.

    Geometry is transformed, the photometric half is copied.
    """

    def __init__(self, queue, d_in_m, d_in_t, n):
        super().__init__(queue)
        if n <= 0:
            raise ConfigurationError("QuaternionTransform: the number of points must be positive")
        self._check_input(d_in_m, n * POINT_DIM, 'd_in_m')
        self._check_input(d_in_t, 8, 'd_in_t')
        self.d_in_m = d_in_m
        self.d_in_t = d_in_t
        self.n = n
        self.d_out = self._alloc((n, POINT_DIM))

    def run(self, wait_for=None):
        return self.queue.enqueue(transform_quaternion, self.d_in_m, self.d_in_t, self.d_out,
                                  wait_for=wait_for, name='transform_quaternion')


class MatrixTransform(Stage):
    """Applies the row-major 4x4 matrix in `d_in_t` to the (x, y, z, 1) part of n points."""

    def __init__(self, queue, d_in_m, d_in_t, n):
        super().__init__(queue)
        if n <= 0:
            raise ConfigurationError("MatrixTransform: the number of points must be positive")
        self._check_input(d_in_m, n * POINT_DIM, 'd_in_m')
        self._check_input(d_in_t, 16, 'd_in_t')
        self.d_in_m = d_in_m
        self.d_in_t = d_in_t
        self.n = n
        self.d_out = self._alloc((n, POINT_DIM))

    def run(self, wait_for=None):
        return self.queue.enqueue(transform_matrix, self.d_in_m, self.d_in_t, self.d_out,
                                  wait_for=wait_for, name='transform_matrix')


class TransformState:
    """
    Cumulative similarity transform of a registration.

    Composed with every incremental estimate as R <- R_k R,
    t <- s_k R_k t + t_k, s <- s_k s. The rotation is kept as a unit
    quaternion and R is derived from it, so R stays orthonormal.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.q = IDENTITY_QUATERNION.copy()
        self.R = np.eye(3)
        self.t = np.zeros(3)
        self.s = 1.0

    def compose(self, q_k, t_k, s_k):
        R_k = quaternion_to_matrix(q_k)
        self.t = s_k * (R_k @ self.t) + np.asarray(t_k, dtype=np.float64)
        self.s = s_k * self.s
        q = quaternion_multiply(q_k, self.q)
        if np.all(np.isfinite(q)):
            self.q = canonical_quaternion(q)
        else:
            self.q = q
        self.R = quaternion_to_matrix(self.q)

    def pack(self):
        """Device record (qx, qy, qz, qw, tx, ty, tz, s)."""
        return np.concatenate([self.q, self.t, [self.s]]).astype(np.float32)

    @property
    def matrix(self):
        return similarity_matrix(self.q, self.t, self.s)

    @property
    def angle(self):
        return rotation_angle_deg(self.q)

    @property
    def axis(self):
        return rotation_axis(self.q)
