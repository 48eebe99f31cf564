"""Robust weighting of correspondences."""

import numpy as np

from .compute import Stage
from .errors import ConfigurationError
from .primitives import Reduce
from .utils import ceil_div, round_up


def inverse_distance_weights(distances, k=100.0):
    """
    Robust weights for a set of correspondences.

    Close pairs get a weight near 1, far pairs fade out smoothly instead of
    being rejected.

    Args:
        distances: Array of correspondence distances
        k: Distance at which the weight drops to 0.5

    Returns:
        Array of weights in (0, 1]
    """
    distances = np.asarray(distances)
    return k / (k + distances)


def weight_and_sum(d_in, d_w, d_sw, k):
    d_w[...] = inverse_distance_weights(d_in['dist'], np.float32(k))
    d_sw[0] = np.sum(d_w, dtype=np.float64)


def weight_groups(d_in, d_w, d_partials, k, group_size):
    w = inverse_distance_weights(d_in['dist'], np.float32(k))
    d_w[...] = w
    padded = np.zeros(d_partials.size * group_size, dtype=np.float64)
    padded[:w.size] = w
    d_partials[...] = padded.reshape(d_partials.size, group_size).sum(axis=1)


class Weights(Stage):
    """
    Computes w_i = k / (k + d_i) for every correspondence and the sum of the
    weights as a double.

    Args:
        queue: Command queue
        d_in: Correspondence records (see compute.CORRESPONDENCE)
        m: Number of correspondences, even
        k: Weight constant
    """

    def __init__(self, queue, d_in, m, k=100.0):
        super().__init__(queue)
        if m <= 0:
            raise ConfigurationError("Weights: the number of correspondences must be positive")
        if m % 2:
            raise ConfigurationError("Weights: the number of correspondences must be even")
        group_size = 2 * self.device.wg_multiple
        if m > group_size * self.device.group_elements:
            raise ConfigurationError(
                f"Weights: at most {group_size * self.device.group_elements} correspondences are supported")
        if k <= 0:
            raise ConfigurationError("Weights: the weight constant must be positive")
        self._check_input(d_in, m, 'd_in')

        self.d_in = d_in
        self.m = m
        self.k = k
        self.group_size = group_size
        self.groups = ceil_div(m, group_size)
        self.d_out_w = self._alloc(m, np.float32, 'w')

        if self.groups == 1:
            self.d_partials = None
            self._reduce = None
            self.d_out_sw = self._alloc(1, np.float64, 'sw')
        else:
            self.groups = round_up(self.groups, 4)
            self.d_partials = self._alloc(self.groups, np.float64, 'partials')
            self._reduce = Reduce(queue, self.d_partials, self.groups, 1, 'sum')
            self.d_out_sw = self._reduce.d_out

    def run(self, wait_for=None):
        if self._reduce is None:
            return self.queue.enqueue(weight_and_sum, self.d_in, self.d_out_w, self.d_out_sw, self.k,
                                      wait_for=wait_for, name='weights')
        self.queue.enqueue(weight_groups, self.d_in, self.d_out_w, self.d_partials, self.k,
                           self.group_size, wait_for=wait_for, name='weights')
        return self._reduce.run()

    def read(self, buffer=None):
        return self.queue.read(buffer if buffer is not None else self.d_out_w)
