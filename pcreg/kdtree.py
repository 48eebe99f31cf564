"""KD-Tree implementation for exact nearest neighbor search over point features."""

import numpy as np
from .utils import time_function


class Node:
    def __init__(self):
        self.point = None
        self.index = None
        self.left = None
        self.right = None
        self.axis = None
        self.indices = None

    def set_point(self, point, index):
        self.point = point
        self.index = index

    def set_left(self, left):
        self.left = left

    def set_right(self, right):
        self.right = right

    def set_axis(self, axis):
        self.axis = axis

    def set_indices(self, indices):
        self.indices = indices

    @property
    def is_leaf(self):
        return self.indices is not None


class KDTree:
    """
    Median-split kd-tree whose leaves hold index lists into the point array.

    Args:
        leaf_size: Maximum number of points stored in a leaf
        dimension: Number of coordinates used for splitting
    """

    def __init__(self, leaf_size=128, dimension=3):
        self.root = None
        self.points = None
        self.leaf_size = max(1, int(leaf_size))
        self.dimension = dimension

    @time_function
    def build(self, points):
        """Build the tree over an (N, dimension) array and return its root."""
        self.points = np.ascontiguousarray(points)
        if self.points.shape[0] == 0:
            self.root = None
            return None
        indices = np.arange(self.points.shape[0], dtype=np.int64)
        self.root = self._build(indices, 0)
        return self.root

    def _build(self, indices, depth):
        n_points = indices.shape[0]
        if n_points == 0:
            return None

        # leaves store indices to avoid creating a node per point
        if n_points <= self.leaf_size:
            leaf = Node()
            leaf.set_axis(depth % self.dimension)
            leaf.set_indices(indices.copy())
            return leaf

        axis = depth % self.dimension
        median_index = n_points // 2
        order = np.argpartition(self.points[indices, axis], median_index)
        indices[:] = indices[order]
        median_point_index = indices[median_index]

        node = Node()
        node.set_axis(axis)
        node.set_point(self.points[median_point_index], median_point_index)
        node.set_left(self._build(indices[:median_index], depth + 1))
        node.set_right(self._build(indices[median_index + 1:], depth + 1))
        return node

    def query(self, query_points):
        """
        Nearest neighbor of every query point.

        Returns:
            Tuple of (indices, squared distances)
        """
        return nearest_neighbors(query_points, self.root, self.points)


def nearest_neighbor_search(query_point, root, points_array):
    """
    Iterative nearest neighbor search in KD-tree.

    Args:
        query_point: Point to find the nearest neighbor for
        root: Root node of the KD-tree
        points_array: Numpy array of points the tree was built on

    Returns:
        Tuple of (index, squared distance)
    """
    # entries carry a lower bound of the squared distance to their subtree
    stack = [(root, 0.0)]
    best = (-1, np.inf)

    while stack:
        node, bound = stack.pop()
        if node is None or bound > best[1]:
            continue

        # Leaf node: check all points in the leaf
        if node.is_leaf:
            diffs = points_array[node.indices] - query_point
            dists = np.einsum('ij,ij->i', diffs, diffs)
            idx = np.argmin(dists)
            if dists[idx] < best[1]:
                best = (int(node.indices[idx]), float(dists[idx]))
            continue

        diff = node.point - query_point
        dist = float(diff @ diff)
        if dist < best[1]:
            best = (int(node.index), dist)

        axis = node.axis
        offset = float(query_point[axis] - node.point[axis])
        if offset < 0:
            near_node, far_node = node.left, node.right
        else:
            near_node, far_node = node.right, node.left

        stack.append((far_node, offset * offset))
        stack.append((near_node, bound))

    return best


def nearest_neighbors(query_points, root, points_array):
    """Run nearest_neighbor_search for every row of `query_points`."""
    indices = np.empty(len(query_points), dtype=np.int64)
    distances = np.empty(len(query_points), dtype=np.float64)
    for i, point in enumerate(query_points):
        indices[i], distances[i] = nearest_neighbor_search(point, root, points_array)
    return indices, distances
