"""
Nearest neighbor indexes over 8-D landmark records.

Distances combine geometry and colour: |dxyz|^2 + alpha * |drgb|^2.

Two indexes share one interface: ``build(wait_for)`` runs on the index
queue and returns its event, ``search(queue, d_in_q)`` returns a stage
producing, for each query, the nearest indexed point (``d_out_nn``) and a
correspondence record (``d_out_d``, see compute.CORRESPONDENCE).

- RBCIndex (random ball cover) assigns every landmark to its nearest
  representative and answers a query from the list of the query's
  nearest representative. It is approximate, but exact for queries that
  coincide with an indexed point.
- KDTreeIndex is exact; queries are split in chunks searched in parallel.
"""

import logging

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from .compute import CORRESPONDENCE, POINT_DIM, Stage
from .config import IndexType
from .errors import ConfigurationError
from .kdtree import KDTree, nearest_neighbors
from .primitives import Scan

logger = logging.getLogger(__name__)


def scaled_features(points, alpha):
    """(N, 6) float64 features whose squared euclidean distance is the index metric."""
    points = np.asarray(points, dtype=np.float64)
    return np.hstack([points[:, 0:3], np.sqrt(alpha) * points[:, 4:7]])


def brute_force_nearest(queries, database, chunk_size=1024):
    """
    Exact nearest neighbor by exhaustive search.

    Database rows with non-finite features (depth holes) are never
    returned unless no finite row exists; their distance is +inf.

    Args:
        queries: (Q, d) query features
        database: (D, d) database features
        chunk_size: Number of queries compared at once

    Returns:
        Tuple of (indices, squared distances)
    """
    indices = np.empty(len(queries), dtype=np.int64)
    distances = np.empty(len(queries), dtype=np.float64)
    for start in range(0, len(queries), chunk_size):
        chunk = queries[start:start + chunk_size]
        diffs = chunk[:, None, :] - database[None, :, :]
        dists = np.einsum('ijk,ijk->ij', diffs, diffs)
        dists[~np.isfinite(dists)] = np.inf
        best = np.argmin(dists, axis=1)
        indices[start:start + chunk_size] = best
        distances[start:start + chunk_size] = dists[np.arange(len(chunk)), best]
    return indices, distances


def rbc_assign(points, reps, assignment, counts, alpha):
    owners, _ = brute_force_nearest(scaled_features(points, alpha), scaled_features(reps, alpha))
    assignment[...] = owners
    counts[...] = np.bincount(owners, minlength=counts.size)


def rbc_permute(points, assignment, database, database_ids):
    # a stable sort keeps landmark order inside each list and matches the scanned offsets
    order = np.argsort(assignment, kind='stable')
    database[...] = points[order]
    database_ids[...] = order


def rbc_search(queries, reps, database, database_ids, counts, offsets, nearest, records, alpha):
    q = scaled_features(queries, alpha)
    db = scaled_features(database, alpha)
    r = scaled_features(reps, alpha)

    # representatives without members cannot answer a query
    r[counts == 0] = np.inf
    owners, _ = brute_force_nearest(q, r)

    for rep in np.unique(owners):
        members = np.nonzero(owners == rep)[0]
        start = offsets[rep]
        stop = start + counts[rep]
        best, dists = brute_force_nearest(q[members], db[start:stop])
        nearest[members] = database[start + best]
        records['dist'][members] = dists
        records['id'][members] = database_ids[start + best]


class RBCIndex:
    """
    Random ball cover over m landmarks seeded with nr representatives.

    Args:
        queue: Index queue
        d_in_x: Landmarks to index, (m, 8)
        d_in_r: Representatives, (nr, 8)
        m: Number of landmarks
        nr: Number of representatives, a multiple of 4
        alpha: Weight of the colour term in the distance
    """

    def __init__(self, queue, d_in_x, d_in_r, m, nr, alpha=200.0):
        self.queue = queue
        self.context = queue.context
        if m <= 0 or nr <= 0:
            raise ConfigurationError("RBCIndex: the landmark and representative sets must not be empty")
        self.d_in_x = d_in_x
        self.d_in_r = d_in_r
        self.m = m
        self.nr = nr
        self.alpha = alpha

        alloc = self.context.alloc
        self.d_assignment = alloc(m, np.int32, 'RBCIndex.assignment')
        self.d_counts = alloc(nr, np.int32, 'RBCIndex.counts')
        self._scan = Scan(queue, self.d_counts, nr, 1, inclusive=False)
        self.d_offsets = self._scan.d_out
        self.d_database = alloc((m, POINT_DIM), np.float32, 'RBCIndex.database')
        self.d_database_ids = alloc(m, np.int32, 'RBCIndex.database_ids')
        self.event = None

    @property
    def alpha(self):
        return self._alpha

    @alpha.setter
    def alpha(self, value):
        if value == 0:
            raise ConfigurationError("RBCIndex: alpha must be non-zero")
        self._alpha = value

    def build(self, wait_for=None):
        self.queue.enqueue(rbc_assign, self.d_in_x, self.d_in_r, self.d_assignment, self.d_counts,
                           self._alpha, wait_for=wait_for, name='rbc_assign')
        self._scan.run()
        self.event = self.queue.enqueue(rbc_permute, self.d_in_x, self.d_assignment, self.d_database,
                                        self.d_database_ids, name='rbc_permute')
        return self.event

    def search(self, queue, d_in_q):
        return RBCSearch(queue, self, d_in_q)


class RBCSearch(Stage):
    """Per-step correspondence search against an RBCIndex."""

    def __init__(self, queue, index, d_in_q):
        super().__init__(queue)
        self._check_input(d_in_q, index.m * POINT_DIM, 'd_in_q')
        self.index = index
        self.d_in_q = d_in_q
        self.d_out_nn = self._alloc((index.m, POINT_DIM), np.float32, 'nn')
        self.d_out_d = self._alloc(index.m, CORRESPONDENCE, 'd')

    def run(self, wait_for=None):
        index = self.index
        if index.event is None:
            raise RuntimeError("RBCSearch: the index has not been built")
        dependencies = list(wait_for or ()) + [index.event]
        return self.queue.enqueue(rbc_search, self.d_in_q, index.d_in_r, index.d_database,
                                  index.d_database_ids, index.d_counts, index.d_offsets,
                                  self.d_out_nn, self.d_out_d, index.alpha,
                                  wait_for=dependencies, name='rbc_search')

    def read(self, buffer=None):
        if buffer is not None:
            return self.queue.read(buffer)
        return self.queue.read(self.d_out_nn), self.queue.read(self.d_out_d)


class KDTreeIndex:
    """
    Exact index: kd-tree over [x, y, z, sqrt(alpha) * rgb].

    Args:
        queue: Index queue
        d_in_x: Landmarks to index, (m, 8)
        m: Number of landmarks
        alpha: Weight of the colour term in the distance
        leaf_size: kd-tree leaf size
        n_jobs: joblib workers used by searches
    """

    def __init__(self, queue, d_in_x, m, alpha=200.0, leaf_size=128, n_jobs=4):
        self.queue = queue
        self.context = queue.context
        if m <= 0:
            raise ConfigurationError("KDTreeIndex: the landmark set must not be empty")
        self.d_in_x = d_in_x
        self.m = m
        self.alpha = alpha
        self.n_jobs = n_jobs
        self.tree = KDTree(leaf_size=leaf_size, dimension=6)
        self.d_database = self.context.alloc((m, POINT_DIM), np.float32, 'KDTreeIndex.database')
        self.event = None
        self._built_alpha = None

    @property
    def alpha(self):
        return self._alpha

    @alpha.setter
    def alpha(self, value):
        if value == 0:
            raise ConfigurationError("KDTreeIndex: alpha must be non-zero")
        self._alpha = value

    def _build_tree(self, points, database):
        database[...] = points
        self.tree.build(scaled_features(points, self._alpha))
        self._built_alpha = self._alpha

    def build(self, wait_for=None):
        self.event = self.queue.enqueue(self._build_tree, self.d_in_x, self.d_database,
                                        wait_for=wait_for, name='kdtree_build')
        return self.event

    def search(self, queue, d_in_q):
        return KDTreeSearch(queue, self, d_in_q)

    def find_correspondences(self, queries):
        """
        Nearest neighbors of (Q, 8) query points using parallel processing.

        Returns:
            Tuple of (indices, squared distances)
        """
        if self._built_alpha != self._alpha:
            # features depend on alpha
            self.tree.build(scaled_features(self.tree_points(), self._alpha))
            self._built_alpha = self._alpha

        features = scaled_features(queries, self._alpha)
        if self.n_jobs == 1:
            return self.tree.query(features)

        n_chunks = max(1, min(len(features), effective_n_jobs(self.n_jobs)))
        chunks = np.array_split(features, n_chunks)
        results = Parallel(n_jobs=self.n_jobs, backend='loky')(
            delayed(nearest_neighbors)(chunk, self.tree.root, self.tree.points)
            for chunk in chunks
        )
        indices, distances = zip(*results)
        return np.concatenate(indices), np.concatenate(distances)

    def tree_points(self):
        return self.context.view(self.d_database)


def kdtree_search(queries, database, nearest, records, index):
    ids, dists = index.find_correspondences(queries)
    nearest[...] = database[ids]
    records['dist'] = dists
    records['id'] = ids


class KDTreeSearch(Stage):
    """Per-step correspondence search against a KDTreeIndex."""

    def __init__(self, queue, index, d_in_q):
        super().__init__(queue)
        self._check_input(d_in_q, index.m * POINT_DIM, 'd_in_q')
        self.index = index
        self.d_in_q = d_in_q
        self.d_out_nn = self._alloc((index.m, POINT_DIM), np.float32, 'nn')
        self.d_out_d = self._alloc(index.m, CORRESPONDENCE, 'd')

    def run(self, wait_for=None):
        if self.index.event is None:
            raise RuntimeError("KDTreeSearch: the index has not been built")
        dependencies = list(wait_for or ()) + [self.index.event]
        return self.queue.enqueue(kdtree_search, self.d_in_q, self.index.d_database,
                                  self.d_out_nn, self.d_out_d, self.index,
                                  wait_for=dependencies, name='kdtree_search')

    def read(self, buffer=None):
        if buffer is not None:
            return self.queue.read(buffer)
        return self.queue.read(self.d_out_nn), self.queue.read(self.d_out_d)


def make_index(kind, queue, d_landmarks, d_representatives, m, nr, alpha=200.0, n_jobs=4):
    """
    Create the spatial index selected in the configuration.

    Args:
        kind: 'rbc' or 'kdtree'
        queue: Index queue
        d_landmarks: Fixed landmarks, (m, 8)
        d_representatives: Representatives seeding the RBC index, (nr, 8)
        m: Number of landmarks
        nr: Number of representatives
        alpha: Weight of the colour term in the distance
        n_jobs: joblib workers of the kd-tree search

    Returns:
        Index object
    """
    kind = IndexType(kind)
    if kind is IndexType.KDTREE:
        return KDTreeIndex(queue, d_landmarks, m, alpha=alpha, n_jobs=n_jobs)
    return RBCIndex(queue, d_landmarks, d_representatives, m, nr, alpha=alpha)
