"""
Row-wise reduction and prefix scan.

Both primitives tile a row into work-groups of ``8 * wg_multiple``
elements. A row that fits one group is handled by a single launch;
longer rows take a second pass over the per-group results.
"""

import numpy as np

from .compute import Stage
from .errors import ConfigurationError
from .utils import ceil_div, round_up

REDUCE_OPS = {
    'min': np.minimum,
    'max': np.maximum,
    'sum': np.add,
}


def _identity(op, dtype):
    """Padding value that leaves the reduction unchanged."""
    if op == 'sum':
        return dtype.type(0)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return info.max if op == 'min' else info.min
    return dtype.type(np.inf) if op == 'min' else dtype.type(-np.inf)


def group_count(cols, device, stage):
    """
    Number of work-groups per row.

    Raises:
        ConfigurationError: when `cols` is zero, not a multiple of 4 or
            longer than the device can handle in two passes
    """
    if cols <= 0:
        raise ConfigurationError(f"{stage}: the number of columns in the array must be positive")
    if cols % 4:
        raise ConfigurationError(f"{stage}: the number of columns in the array must be a multiple of 4")
    if cols > device.max_cols:
        raise ConfigurationError(
            f"{stage}: the number of columns in the array must not exceed {device.max_cols}")

    groups = ceil_div(cols, device.group_elements)
    if groups > 1:
        groups = round_up(groups, 4)
    return groups


def reduce_groups(d_in, d_out, op, rows, cols, group_size, groups):
    data = d_in.reshape(rows, cols)
    padded = np.full((rows, groups * group_size), _identity(op, data.dtype), dtype=data.dtype)
    padded[:, :cols] = data
    result = REDUCE_OPS[op].reduce(padded.reshape(rows, groups, group_size), axis=2)
    d_out[...] = result.reshape(d_out.shape)


def scan_groups(d_in, d_out, d_sums, rows, cols, group_size, groups, inclusive):
    data = d_in.reshape(rows, cols)
    padded = np.zeros((rows, groups * group_size), dtype=d_out.dtype)
    padded[:, :cols] = data
    tiles = padded.reshape(rows, groups, group_size)
    running = np.cumsum(tiles, axis=2, dtype=d_out.dtype)
    d_sums[...] = running[:, :, -1]
    if not inclusive:
        running -= tiles
    d_out.reshape(rows, cols)[...] = running.reshape(rows, -1)[:, :cols]


def scan_group_sums(d_sums):
    np.cumsum(d_sums, axis=1, out=d_sums)


def add_group_sums(d_out, d_sums, rows, cols, group_size):
    # group g receives the inclusive sum of groups 0..g-1
    offsets = np.zeros_like(d_sums)
    offsets[:, 1:] = d_sums[:, :-1]
    out = d_out.reshape(rows, cols)
    out += np.repeat(offsets, group_size, axis=1)[:, :cols]


class Reduce(Stage):
    """
    Reduces every row of a (rows, cols) array to one value.

    Args:
        queue: Command queue
        d_in: Input buffer with rows * cols elements, row-major
        cols: Number of columns, a multiple of 4
        rows: Number of rows
        op: 'min', 'max' or 'sum'
    """

    def __init__(self, queue, d_in, cols, rows=1, op='sum'):
        super().__init__(queue)
        if op not in REDUCE_OPS:
            raise ConfigurationError(f"Reduce: unknown operation: {op}")
        if rows <= 0:
            raise ConfigurationError("Reduce: the number of rows in the array must be positive")
        self.groups = group_count(cols, self.device, 'Reduce')
        self._check_input(d_in, rows * cols, 'd_in')

        self.d_in = d_in
        self.cols = cols
        self.rows = rows
        self.op = op
        self.d_out = self._alloc(rows, d_in.dtype)
        self.d_red = self._alloc((rows, self.groups), d_in.dtype, 'red') if self.groups > 1 else None

    def run(self, wait_for=None):
        group_size = self.device.group_elements
        if self.groups == 1:
            return self.queue.enqueue(reduce_groups, self.d_in, self.d_out, self.op,
                                      self.rows, self.cols, group_size, 1,
                                      wait_for=wait_for, name=f"reduce_{self.op}")

        self.queue.enqueue(reduce_groups, self.d_in, self.d_red, self.op,
                           self.rows, self.cols, group_size, self.groups,
                           wait_for=wait_for, name=f"reduce_{self.op}_groups")
        return self.queue.enqueue(reduce_groups, self.d_red, self.d_out, self.op,
                                  self.rows, self.groups, group_size, 1,
                                  name=f"reduce_{self.op}_partials")


class Scan(Stage):
    """
    Inclusive or exclusive running sum over every row of a (rows, cols) array.

    Same layout and constraints as Reduce. The output has the input shape.
    """

    def __init__(self, queue, d_in, cols, rows=1, inclusive=True):
        super().__init__(queue)
        if rows <= 0:
            raise ConfigurationError("Scan: the number of rows in the array must be positive")
        self.groups = group_count(cols, self.device, 'Scan')
        self._check_input(d_in, rows * cols, 'd_in')

        self.d_in = d_in
        self.cols = cols
        self.rows = rows
        self.inclusive = inclusive
        self.d_out = self._alloc(d_in.shape, d_in.dtype)
        self.d_sums = self._alloc((rows, self.groups), d_in.dtype, 'sums')

    def run(self, wait_for=None):
        group_size = self.device.group_elements
        event = self.queue.enqueue(scan_groups, self.d_in, self.d_out, self.d_sums,
                                   self.rows, self.cols, group_size, self.groups, self.inclusive,
                                   wait_for=wait_for, name='scan')
        if self.groups == 1:
            return event

        self.queue.enqueue(scan_group_sums, self.d_sums, name='scan_group_sums')
        return self.queue.enqueue(add_group_sums, self.d_out, self.d_sums,
                                  self.rows, self.cols, group_size, name='add_group_sums')
