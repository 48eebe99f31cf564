"""
pcreg - Similarity registration of coloured point clouds using Iterative Closest Point (ICP)

A data-parallel registration pipeline featuring:
- Two-level reduction and prefix-scan primitives on an in-order command queue
- Deterministic landmark and representative sampling of structured grids
- Random-ball-cover and kd-tree correspondence search over geometry and colour
- Robust inverse-distance weighting of correspondences
- Closed-form (SVD) and power-iteration (Horn) rotation estimation with scale
"""

from .config import RegistrationConfig, RotationStrategy, Weighting, IndexType, ScalePolicy
from .errors import BackendError, ConfigurationError
from .icp import ICP, ICPRegistration, ICPStep, RegistrationResult, StepVariant
from .kdtree import KDTree
from .point_cloud import PointCloud
from .visualization import plot_convergence

__version__ = "1.0.0"
__all__ = ["RegistrationConfig", "RotationStrategy", "Weighting", "IndexType", "ScalePolicy",
           "BackendError", "ConfigurationError", "ICP", "ICPRegistration", "ICPStep",
           "RegistrationResult", "StepVariant", "KDTree", "PointCloud", "plot_convergence"]
