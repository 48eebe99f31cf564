"""Point cloud data management and I/O."""

import logging
from pathlib import Path

import numpy as np
import open3d as o3d

from .compute import POINT_DIM
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class PointCloud:
    """
    Structured point cloud: a height x width grid of 8-D records
    (x, y, z, 1, r, g, b, 1), float32, row-major.

    Geometry is in physical units (millimetres for depth cameras),
    colours are normalized to [0, 1].
    """

    def __init__(self, data, width=640, height=480):
        """
        Initialize a point cloud from an array of records.

        Args:
            data: Array with width * height * 8 float values
            width: Grid width
            height: Grid height
        """
        data = np.asarray(data, dtype=np.float32)
        if data.size != width * height * POINT_DIM:
            raise ConfigurationError(
                f"PointCloud: expected {width}x{height} points of {POINT_DIM} values, "
                f"got {data.size} values")
        self.data = np.ascontiguousarray(data.reshape(width * height, POINT_DIM))
        self.width = width
        self.height = height

    @classmethod
    def from_arrays(cls, points, colors=None, width=640, height=480):
        """
        Build a cloud from (N, 3) points and optional (N, 3) colours.

        Missing colours are set to mid grey.
        """
        points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
        data = np.ones((points.shape[0], POINT_DIM), dtype=np.float32)
        data[:, 0:3] = points
        if colors is None:
            data[:, 4:7] = 0.5
        else:
            data[:, 4:7] = np.asarray(colors, dtype=np.float32).reshape(-1, 3)
        return cls(data, width, height)

    @classmethod
    def from_o3d(cls, o3d_pcd, width=640, height=480):
        colors = np.asarray(o3d_pcd.colors) if o3d_pcd.has_colors() else None
        return cls.from_arrays(np.asarray(o3d_pcd.points), colors, width, height)

    @classmethod
    def from_file(cls, filepath, width=640, height=480):
        """
        Load point cloud from file.

        ``.bin`` files are raw dumps of width * height float32 records;
        anything else is read with Open3D and must hold exactly
        width * height points in grid order.
        """
        path = Path(filepath)
        if not path.exists():
            raise FileNotFoundError(f"Point cloud file not found: {filepath}")

        if path.suffix == '.bin':
            data = np.fromfile(path, dtype=np.float32)
            cloud = cls(data, width, height)
        else:
            cloud = cls.from_o3d(o3d.io.read_point_cloud(str(path)), width, height)
        logger.debug("Loaded %d points from %s", len(cloud), filepath)
        return cloud

    def save(self, filepath):
        path = Path(filepath)
        if path.suffix == '.bin':
            self.data.tofile(path)
        else:
            o3d.io.write_point_cloud(str(path), self.to_o3d())
        logger.debug("Saved %d points to %s", len(self), filepath)

    @property
    def points(self):
        return self.data[:, 0:3]

    @property
    def colors(self):
        return self.data[:, 4:7]

    @property
    def grid(self):
        return self.data.reshape(self.height, self.width, POINT_DIM)

    def to_o3d(self, points=None, color=None):
        """
        Convert to Open3D PointCloud object.

        Args:
            points: Optional custom points array (default: self.points)
            color: Optional uniform color [r, g, b] or color array

        Returns:
            Open3D PointCloud object
        """
        pts = np.asarray(points if points is not None else self.points, dtype=np.float64)
        colors = color if color is not None else self.colors

        # depth cameras leave holes as NaN or zero points
        valid = np.all(np.isfinite(pts), axis=1)
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(pts[valid])

        if isinstance(colors, (list, tuple)) and len(colors) == 3:
            pcd.paint_uniform_color(colors)
        else:
            colors = np.clip(np.asarray(colors, dtype=np.float64), 0.0, 1.0)
            pcd.colors = o3d.utility.Vector3dVector(colors[valid])
        return pcd

    def __len__(self):
        return self.data.shape[0]
