import matplotlib

matplotlib.use('Agg')

import numpy as np
import pytest

from pcreg.compute import CommandQueue, Context, Device
from pcreg.transforms import axis_angle_to_quaternion, quaternion_to_matrix


@pytest.fixture
def context():
    return Context(Device(wg_multiple=64))


@pytest.fixture
def queue(context):
    return CommandQueue(context, 'test')


@pytest.fixture
def upload(queue):
    """Allocate a buffer shaped like `array` and write it with a blocking write."""
    def _upload(array, name='input'):
        array = np.asarray(array)
        buffer = queue.context.alloc(array.shape, array.dtype, name)
        queue.write(buffer, array)
        return buffer
    return _upload


def make_surface(width=128, height=128, spacing=1.5):
    """
    Wavy surface on a width x height grid as 8-D records.

    Red and green encode the grid column and row, so colour identifies
    every point.
    """
    v, u = np.mgrid[0:height, 0:width]
    x = (u - (width - 1) / 2.0) * spacing
    y = (v - (height - 1) / 2.0) * spacing
    z = 60.0 * np.sin(x / 25.0) * np.cos(y / 35.0)

    points = np.ones((width * height, 8), dtype=np.float32)
    points[:, 0] = x.ravel()
    points[:, 1] = y.ravel()
    points[:, 2] = z.ravel()
    points[:, 4] = (u / max(width - 1, 1)).ravel()
    points[:, 5] = (v / max(height - 1, 1)).ravel()
    points[:, 6] = 0.5
    return points


def make_blob(n=4096, seed=0):
    """Anisotropic gaussian blob as 8-D records."""
    rng = np.random.default_rng(seed)
    points = np.ones((n, 8), dtype=np.float32)
    points[:, 0:3] = rng.normal(size=(n, 3)) * [100.0, 60.0, 40.0] + [20.0, -10.0, 500.0]
    points[:, 4:7] = rng.uniform(size=(n, 3))
    return points


def similarity(points, q, t, s=1.0):
    """Apply p -> s R(q) p + t to the geometry of 8-D records."""
    out = points.copy()
    R = quaternion_to_matrix(q)
    out[:, 0:3] = s * (points[:, 0:3].astype(np.float64) @ R.T) + t
    return out


def inverse_similarity(points, q, t, s=1.0):
    """Records p such that s R(q) p + t gives back `points`."""
    out = points.copy()
    R = quaternion_to_matrix(q)
    out[:, 0:3] = ((points[:, 0:3].astype(np.float64) - t) @ R) / s
    return out


@pytest.fixture
def surface():
    return make_surface


@pytest.fixture
def blob():
    return make_blob


@pytest.fixture
def known_transform():
    """10 degrees about (1, 1, 1) / sqrt(3) and a (5, 0, 0) translation."""
    return axis_angle_to_quaternion([1.0, 1.0, 1.0], 10.0), np.array([5.0, 0.0, 0.0])


@pytest.fixture
def warp():
    return similarity


@pytest.fixture
def unwarp():
    return inverse_similarity
