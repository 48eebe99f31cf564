"""
Centroids, deviations and the cross-covariance bundle of matched pairs.

Each estimator lays the per-pair terms out as rows of a (rows, m) array
and sums them with the Reduce primitive.
"""

import numpy as np

from .compute import POINT_DIM, Stage
from .errors import ConfigurationError
from .primitives import Reduce

# 9 entries of S (row-major), sum |c * dev_m|^2, sum |c * dev_f|^2
BUNDLE_SIZE = 11


def mean_terms(fixed, moving, out, weights=None):
    w = 1.0 if weights is None else weights
    out[0:3] = (fixed[:, :3] * np.reshape(w, (-1, 1))).T
    out[3] = 0.0
    out[4:7] = (moving[:, :3] * np.reshape(w, (-1, 1))).T
    out[7] = 0.0


def mean_finalize(sums, out, denominator):
    denominator = float(np.asarray(denominator).reshape(-1)[0])
    out[...] = sums / denominator


def deviations(fixed, moving, mean, dev_fixed, dev_moving):
    dev_fixed[:, :3] = fixed[:, :3] - mean[0:3]
    dev_fixed[:, 3] = 0.0
    dev_moving[:, :3] = moving[:, :3] - mean[4:7]
    dev_moving[:, 3] = 0.0


def covariance_terms(dev_moving, dev_fixed, out, c, weights=None):
    mp = np.float32(c) * dev_moving[:, :3]
    fp = np.float32(c) * dev_fixed[:, :3]
    w = None if weights is None else weights

    for j in range(3):
        for k in range(3):
            out[3 * j + k] = mp[:, j] * fp[:, k]
    out[9] = np.einsum('ij,ij->i', mp, mp)
    out[10] = np.einsum('ij,ij->i', fp, fp)
    if w is not None:
        out *= w


class Mean(Stage):
    """
    Centroids of the fixed and moving points of m matched pairs.

    Regular when no weights are given, otherwise weighted by `d_in_w`
    and normalized by the weight sum `d_in_sw`.

    Output ``d_out`` holds 8 floats: fixed mean (0-2), 0, moving mean (4-6), 0.
    """

    def __init__(self, queue, d_in_f, d_in_m, m, d_in_w=None, d_in_sw=None):
        super().__init__(queue)
        if m <= 0:
            raise ConfigurationError("Mean: the number of points must be positive")
        if (d_in_w is None) != (d_in_sw is None):
            raise ConfigurationError("Mean: weights and weight sum must be given together")
        self._check_input(d_in_f, m * POINT_DIM, 'd_in_f')
        self._check_input(d_in_m, m * POINT_DIM, 'd_in_m')
        if d_in_w is not None:
            self._check_input(d_in_w, m, 'd_in_w')
            self._check_input(d_in_sw, 1, 'd_in_sw')

        self.d_in_f = d_in_f
        self.d_in_m = d_in_m
        self.d_in_w = d_in_w
        self.d_in_sw = d_in_sw
        self.m = m
        self.d_terms = self._alloc((8, m), np.float32, 'terms')
        self._reduce = Reduce(queue, self.d_terms, m, 8, 'sum')
        self.d_out = self._alloc(8, np.float32)

    @property
    def weighted(self):
        return self.d_in_w is not None

    def run(self, wait_for=None):
        if self.weighted:
            self.queue.enqueue(mean_terms, self.d_in_f, self.d_in_m, self.d_terms, self.d_in_w,
                               wait_for=wait_for, name='mean_terms_weighted')
        else:
            self.queue.enqueue(mean_terms, self.d_in_f, self.d_in_m, self.d_terms,
                               wait_for=wait_for, name='mean_terms')
        self._reduce.run()
        denominator = self.d_in_sw if self.weighted else self.m
        return self.queue.enqueue(mean_finalize, self._reduce.d_out, self.d_out, denominator,
                                  name='mean_finalize')


class Deviations(Stage):
    """Fixed and moving points of every pair minus their centroid, as 4-vectors."""

    def __init__(self, queue, d_in_f, d_in_m, d_in_mean, m):
        super().__init__(queue)
        if m <= 0:
            raise ConfigurationError("Deviations: the number of points must be positive")
        self._check_input(d_in_f, m * POINT_DIM, 'd_in_f')
        self._check_input(d_in_m, m * POINT_DIM, 'd_in_m')
        self._check_input(d_in_mean, 8, 'd_in_mean')

        self.d_in_f = d_in_f
        self.d_in_m = d_in_m
        self.d_in_mean = d_in_mean
        self.m = m
        self.d_out_dev_f = self._alloc((m, 4), np.float32, 'dev_f')
        self.d_out_dev_m = self._alloc((m, 4), np.float32, 'dev_m')

    def run(self, wait_for=None):
        return self.queue.enqueue(deviations, self.d_in_f, self.d_in_m, self.d_in_mean,
                                  self.d_out_dev_f, self.d_out_dev_m,
                                  wait_for=wait_for, name='deviations')

    def read(self, buffer=None):
        if buffer is not None:
            return self.queue.read(buffer)
        return self.queue.read(self.d_out_dev_f), self.queue.read(self.d_out_dev_m)


class CrossCovariance(Stage):
    """
    Accumulates the cross-covariance bundle of the deviations.

    S_jk = sum_i [w_i] (c * dev_m_i[j]) (c * dev_f_i[k]), followed by the
    summed squared norms of the scaled moving and fixed deviations. The
    factor `c` keeps single precision sums well conditioned for clouds in
    millimetres and can be changed between runs through ``scaling``.
    """

    def __init__(self, queue, d_in_dev_m, d_in_dev_f, m, c=1e-6, d_in_w=None):
        super().__init__(queue)
        if m <= 0:
            raise ConfigurationError("CrossCovariance: the number of points must be positive")
        self._check_input(d_in_dev_m, m * 4, 'd_in_dev_m')
        self._check_input(d_in_dev_f, m * 4, 'd_in_dev_f')
        if d_in_w is not None:
            self._check_input(d_in_w, m, 'd_in_w')

        self.d_in_dev_m = d_in_dev_m
        self.d_in_dev_f = d_in_dev_f
        self.d_in_w = d_in_w
        self.m = m
        self.scaling = c
        self.d_terms = self._alloc((BUNDLE_SIZE, m), np.float32, 'terms')
        self._reduce = Reduce(queue, self.d_terms, m, BUNDLE_SIZE, 'sum')
        self.d_out = self._reduce.d_out

    @property
    def scaling(self):
        return self._c

    @scaling.setter
    def scaling(self, c):
        if c == 0:
            raise ConfigurationError("CrossCovariance: the scaling factor must be non-zero")
        self._c = c

    @property
    def weighted(self):
        return self.d_in_w is not None

    def run(self, wait_for=None):
        args = (self.d_in_dev_m, self.d_in_dev_f, self.d_terms, self._c)
        if self.weighted:
            args += (self.d_in_w,)
        self.queue.enqueue(covariance_terms, *args, wait_for=wait_for,
                           name='covariance_terms_weighted' if self.weighted else 'covariance_terms')
        return self._reduce.run()
