"""Deterministic subsampling of structured point grids."""

import numpy as np

from .compute import POINT_DIM, Stage
from .errors import ConfigurationError
from .utils import is_power_of_two


def sample_grid(d_in, d_out, height, width, offset_y, offset_x, stride_y, stride_x, out_height, out_width):
    grid = d_in.reshape(height, width, POINT_DIM)
    rows = offset_y + stride_y * np.arange(out_height)
    cols = offset_x + stride_x * np.arange(out_width)
    d_out[...] = grid[np.ix_(rows, cols)].reshape(d_out.shape)


def landmark_offsets(width, height, lm_width, lm_height, stride_x, stride_y):
    """
    First sampled column and row of the landmark grid.

    The strided window is centred on the point grid and every sample
    sits in the middle of its stride cell.
    """
    offset_x = (width - lm_width * stride_x) // 2 + (stride_x - 1) // 2
    offset_y = (height - lm_height * stride_y) // 2 + (stride_y - 1) // 2
    return offset_x, offset_y


def representative_layout(nr, lm_width, lm_height):
    """
    Factor `nr` into an nrx x nry grid of powers of two and place it on the
    landmark grid.

    Returns:
        Tuple of (nrx, nry, step_x, step_y, offset_x, offset_y)
    """
    if nr == 0:
        raise ConfigurationError("Representatives: the number of representatives must be positive")
    if not is_power_of_two(nr):
        raise ConfigurationError("Representatives: the number of representatives must be a power of two")
    if nr % 4:
        raise ConfigurationError("Representatives: the number of representatives must be a multiple of 4")

    p = nr.bit_length() - 1
    nrx = 1 << (p - p // 2)
    nry = 1 << (p // 2)
    if lm_width % nrx or lm_height % nry or lm_width // nrx < 2 or lm_height // nry < 2:
        raise ConfigurationError(
            f"Representatives: a {nrx}x{nry} grid does not evenly sample "
            f"{lm_width}x{lm_height} landmarks")

    step_x = lm_width // nrx
    step_y = lm_height // nry
    return nrx, nry, step_x, step_y, step_x // 2 - 1, step_y // 2 - 1


class Landmarks(Stage):
    """
    Strided sampling of a width x height point grid into a landmark grid.

    With the default 640x480 grid and strides (4, 3) the 128x128 landmarks
    come from rows 49, 52, ... and columns 65, 69, ...
    """

    def __init__(self, queue, d_in, width=640, height=480, lm_width=128, lm_height=128,
                 stride_x=4, stride_y=3):
        super().__init__(queue)
        if lm_width * lm_height == 0:
            raise ConfigurationError("Landmarks: the landmark grid must not be empty")
        if lm_width * stride_x > width or lm_height * stride_y > height:
            raise ConfigurationError(
                f"Landmarks: a {lm_width}x{lm_height} grid with strides ({stride_x}, {stride_y}) "
                f"does not fit a {width}x{height} point grid")
        self._check_input(d_in, width * height * POINT_DIM, 'd_in')

        self.d_in = d_in
        self.width, self.height = width, height
        self.lm_width, self.lm_height = lm_width, lm_height
        self.stride_x, self.stride_y = stride_x, stride_y
        self.offset_x, self.offset_y = landmark_offsets(width, height, lm_width, lm_height,
                                                        stride_x, stride_y)
        self.d_out = self._alloc((lm_width * lm_height, POINT_DIM))

    @property
    def count(self):
        return self.lm_width * self.lm_height

    def run(self, wait_for=None):
        return self.queue.enqueue(sample_grid, self.d_in, self.d_out, self.height, self.width,
                                  self.offset_y, self.offset_x, self.stride_y, self.stride_x,
                                  self.lm_height, self.lm_width,
                                  wait_for=wait_for, name='landmarks')


class Representatives(Stage):
    """Samples `nr` representatives from the landmark grid to seed the spatial index."""

    def __init__(self, queue, d_in, nr=256, lm_width=128, lm_height=128):
        super().__init__(queue)
        (self.nrx, self.nry, self.step_x, self.step_y,
         self.offset_x, self.offset_y) = representative_layout(nr, lm_width, lm_height)
        self._check_input(d_in, lm_width * lm_height * POINT_DIM, 'd_in')

        self.d_in = d_in
        self.nr = nr
        self.lm_width, self.lm_height = lm_width, lm_height
        self.d_out = self._alloc((nr, POINT_DIM))

    def run(self, wait_for=None):
        return self.queue.enqueue(sample_grid, self.d_in, self.d_out, self.lm_height, self.lm_width,
                                  self.offset_y, self.offset_x, self.step_y, self.step_x,
                                  self.nry, self.nrx,
                                  wait_for=wait_for, name='representatives')
