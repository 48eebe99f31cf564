import numpy as np
import pytest

from pcreg.errors import ConfigurationError
from pcreg.sampling import Landmarks, Representatives, representative_layout


def index_grid(width, height):
    """Records whose x and y hold their own column and row."""
    v, u = np.mgrid[0:height, 0:width]
    grid = np.zeros((height * width, 8), dtype=np.float32)
    grid[:, 0] = u.ravel()
    grid[:, 1] = v.ravel()
    grid[:, 3] = 1.0
    grid[:, 4] = np.random.default_rng(0).uniform(size=width * height)
    return grid


def test_landmarks_sample_cell_centres(queue, upload):
    landmarks = Landmarks(queue, upload(index_grid(640, 480)))
    landmarks.run()
    out = landmarks.read().reshape(128, 128, 8)

    assert (landmarks.offset_x, landmarks.offset_y) == (65, 49)
    np.testing.assert_array_equal(out[0, :, 0], 65 + 4 * np.arange(128))
    np.testing.assert_array_equal(out[:, 0, 1], 49 + 3 * np.arange(128))
    np.testing.assert_array_equal(out[127, 127, :2], [65 + 4 * 127, 49 + 3 * 127])


def test_landmarks_are_deterministic(queue, upload):
    d_in = upload(index_grid(640, 480))
    first = Landmarks(queue, d_in)
    second = Landmarks(queue, d_in)
    first.run()
    second.run()
    assert first.read().tobytes() == second.read().tobytes()


def test_landmarks_must_fit_the_grid(queue, upload):
    d_in = upload(index_grid(64, 48))
    with pytest.raises(ConfigurationError):
        Landmarks(queue, d_in, width=64, height=48, lm_width=32, lm_height=16)


def test_landmarks_check_input_size(queue, upload):
    with pytest.raises(ConfigurationError):
        Landmarks(queue, upload(index_grid(64, 48)))


def test_representatives_on_landmark_grid(queue, upload):
    representatives = Representatives(queue, upload(index_grid(128, 128)), nr=256)
    representatives.run()
    out = representatives.read().reshape(16, 16, 8)

    assert (representatives.nrx, representatives.nry) == (16, 16)
    np.testing.assert_array_equal(out[0, :, 0], 3 + 8 * np.arange(16))
    np.testing.assert_array_equal(out[:, 0, 1], 3 + 8 * np.arange(16))


def test_representatives_non_square_layout(queue, upload):
    representatives = Representatives(queue, upload(index_grid(128, 128)), nr=8)
    representatives.run()
    out = representatives.read().reshape(2, 4, 8)

    np.testing.assert_array_equal(out[0, :, 0], [15, 47, 79, 111])
    np.testing.assert_array_equal(out[:, 0, 1], [31, 95])


def test_representatives_are_deterministic(queue, upload):
    d_in = upload(index_grid(128, 128))
    first = Representatives(queue, d_in, nr=64)
    second = Representatives(queue, d_in, nr=64)
    first.run()
    second.run()
    assert first.read().tobytes() == second.read().tobytes()


@pytest.mark.parametrize('nr, message', [
    (0, 'positive'),
    (12, 'power of two'),
    (2, 'multiple of 4'),
    (16384, 'does not evenly sample'),
])
def test_representative_layout_errors(nr, message):
    with pytest.raises(ConfigurationError, match=message):
        representative_layout(nr, 128, 128)
