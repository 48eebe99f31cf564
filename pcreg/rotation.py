"""
Incremental similarity transform from centroids and the covariance bundle.

Two interchangeable extractors are provided:

- ClosedFormRotation reads the centroids and the bundle back to the host
  and solves the rotation by singular value decomposition.
- PowerMethodRotation stays on the device: it builds Horn's symmetric
  4x4 matrix and finds its dominant eigenvector by power iteration. Only
  the resulting 8-float transform is read back.

Both produce (q_k, t_k, s_k) with t_k = mean_f - s_k R_k mean_m.
"""

import logging

import numpy as np

from .compute import Stage
from .config import ScalePolicy
from .estimation import BUNDLE_SIZE
from .transforms import (IDENTITY_QUATERNION, canonical_quaternion,
                         matrix_to_quaternion, quaternion_to_matrix)

logger = logging.getLogger(__name__)


def scale_from_bundle(bundle, policy=ScalePolicy.CLAMP):
    """
    Scale that maps the moving deviations onto the fixed ones,
    sqrt(sum |dev_f|^2 / sum |dev_m|^2).

    Args:
        bundle: Covariance bundle
        policy: Handling of a zero, negative or non-finite ratio

    Returns:
        Scale factor
    """
    moving_energy = float(bundle[9])
    fixed_energy = float(bundle[10])
    if moving_energy > 0 and fixed_energy >= 0 and np.isfinite(moving_energy) and np.isfinite(fixed_energy):
        return float(np.sqrt(fixed_energy / moving_energy))

    policy = ScalePolicy(policy)
    if policy is ScalePolicy.RAISE:
        raise FloatingPointError(
            f"Degenerate scale estimate: sum |dev_f|^2 = {fixed_energy}, sum |dev_m|^2 = {moving_energy}")
    if policy is ScalePolicy.NAN:
        return float('nan')
    logger.warning("Degenerate scale estimate (sum |dev_m|^2 = %g), clamping scale to 1", moving_energy)
    return 1.0


def closed_form_rotation(S):
    """
    Rotation maximizing trace(R S) for S_jk = sum m_j f_k.

    Returns:
        Proper rotation matrix V diag(1, 1, det) U^T
    """
    U, _, Vt = np.linalg.svd(np.asarray(S, dtype=np.float64))
    V = Vt.T
    d = np.linalg.det(V @ U.T)
    D = np.diag([1.0, 1.0, 1.0 if d >= 0 else -1.0])
    return V @ D @ U.T


def horn_matrix(S):
    """Horn's symmetric 4x4 matrix of a 3x3 cross-covariance, (x, y, z, w) ordering."""
    (Sxx, Sxy, Sxz), (Syx, Syy, Syz), (Szx, Szy, Szz) = np.asarray(S, dtype=np.float64)
    return np.array([
        [Sxx - Syy - Szz, Sxy + Syx, Szx + Sxz, Syz - Szy],
        [Sxy + Syx, -Sxx + Syy - Szz, Syz + Szy, Szx - Sxz],
        [Szx + Sxz, Syz + Szy, -Sxx - Syy + Szz, Sxy - Syx],
        [Syz - Szy, Szx - Sxz, Sxy - Syx, Sxx + Syy + Szz],
    ])


def power_method(N, max_iterations=1000, tol=1e-12):
    """
    Dominant eigenvector of a symmetric matrix by power iteration.

    Starts from (1, 1, 1, 1) and stops when two iterates coincide or their
    distance stops changing. A negative Rayleigh quotient means the
    iteration found the most negative eigenvalue; iterates that keep
    flipping between two directions mean two eigenvalues of opposite sign
    and equal magnitude. In both cases the diagonal is shifted by the
    magnitude of that eigenvalue, which makes the matrix positive
    semi-definite, and the iteration restarts.

    Args:
        N: Symmetric matrix
        max_iterations: Iteration cap per pass
        tol: Convergence tolerance on the iterate distance

    Returns:
        Tuple of (unit eigenvector, eigenvalue of N)
    """
    N = np.asarray(N, dtype=np.float64)
    size = N.shape[0]
    norm = np.abs(N).max()
    if not np.isfinite(norm):
        return np.full(size, np.nan), float('nan')
    if norm == 0:
        x = np.zeros(size)
        x[-1] = 1.0
        return x, 0.0

    # eigenvectors do not depend on the scale of N
    A = N / norm
    for shift_pass in range(2):
        x = np.ones(size) / np.sqrt(size)
        previous = np.inf
        distance = np.inf
        magnitude = 0.0
        for _ in range(max_iterations):
            y = A @ x
            magnitude = np.linalg.norm(y)
            if magnitude == 0:
                break
            y /= magnitude
            distance = np.linalg.norm(y - x)
            x = y
            if distance < tol or abs(previous - distance) < tol:
                break
            previous = distance

        eigenvalue = x @ A @ x
        oscillating = distance > np.sqrt(tol)
        if shift_pass or (eigenvalue >= 0 and not oscillating):
            break
        A = A + magnitude * np.eye(size)

    return x, float(x @ N @ x)


def incremental_transform(R, mean, bundle, policy=ScalePolicy.CLAMP):
    s = scale_from_bundle(bundle, policy)
    t = np.asarray(mean[0:3], dtype=np.float64) - s * (R @ np.asarray(mean[4:7], dtype=np.float64))
    return t, s


def power_method_transform(mean, bundle, out, max_iterations, policy):
    S = bundle[:9].reshape(3, 3)
    x, _ = power_method(horn_matrix(S), max_iterations)
    q = canonical_quaternion(x) if np.all(np.isfinite(x)) else x
    t, s = incremental_transform(quaternion_to_matrix(q), mean, bundle, policy)
    out[0:4] = q
    out[4:7] = t
    out[7] = s


class RotationExtractor(Stage):
    """
    Common base of the rotation strategies.

    After ``run()`` the incremental transform is available on the host as
    ``q_k`` (x, y, z, w), ``R_k``, ``t_k`` and ``s_k``.
    """

    def __init__(self, queue, d_in_mean, d_in_s, policy=ScalePolicy.CLAMP):
        super().__init__(queue)
        self._check_input(d_in_mean, 8, 'd_in_mean')
        self._check_input(d_in_s, BUNDLE_SIZE, 'd_in_s')
        self.d_in_mean = d_in_mean
        self.d_in_s = d_in_s
        self.policy = ScalePolicy(policy)
        self.q_k = IDENTITY_QUATERNION.copy()
        self.R_k = np.eye(3)
        self.t_k = np.zeros(3)
        self.s_k = 1.0

    @property
    def result(self):
        return self.q_k, self.t_k, self.s_k


class ClosedFormRotation(RotationExtractor):
    """
    Host-side SVD of the cross-covariance; two blocking readbacks per run.

    ``run()`` returns None: the queue is drained and the result is set
    when it returns.
    """

    def run(self, wait_for=None):
        for event in wait_for or ():
            event.wait()
        mean = self.queue.read(self.d_in_mean)
        bundle = self.queue.read(self.d_in_s)

        S = bundle[:9].reshape(3, 3)
        if np.all(np.isfinite(S)):
            R = closed_form_rotation(S)
            q = matrix_to_quaternion(R)
        else:
            q = np.full(4, np.nan)
            R = np.full((3, 3), np.nan)
        t, s = incremental_transform(R, mean, bundle, self.policy)

        self.q_k, self.R_k, self.t_k, self.s_k = q, R, t, s
        return None


class PowerMethodRotation(RotationExtractor):
    """Device-side power iteration on Horn's matrix; one readback per run."""

    def __init__(self, queue, d_in_mean, d_in_s, max_iterations=1000, policy=ScalePolicy.CLAMP):
        super().__init__(queue, d_in_mean, d_in_s, policy)
        self.max_iterations = max_iterations
        self.d_out_tk = self._alloc(8, np.float32, 'tk')

    def run(self, wait_for=None):
        event = self.queue.enqueue(power_method_transform, self.d_in_mean, self.d_in_s, self.d_out_tk,
                                   self.max_iterations, self.policy,
                                   wait_for=wait_for, name='power_method')
        tk = self.queue.read(self.d_out_tk).astype(np.float64)

        self.q_k = tk[0:4]
        self.t_k = tk[4:7]
        self.s_k = float(tk[7])
        self.R_k = quaternion_to_matrix(self.q_k)
        return event
