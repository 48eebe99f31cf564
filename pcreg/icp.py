"""Iterative Closest Point (ICP) similarity registration."""

import logging
import os
import pickle
import time
from dataclasses import dataclass, field

import numpy as np
import open3d as o3d

from .compute import CommandQueue, Context, Device
from .config import RegistrationConfig, RotationStrategy, Weighting
from .estimation import CrossCovariance, Deviations, Mean
from .index import make_index
from .point_cloud import PointCloud
from .rotation import ClosedFormRotation, PowerMethodRotation
from .sampling import Landmarks, Representatives
from .transforms import (IDENTITY_TRANSFORM, QuaternionTransform, TransformState,
                         rotation_angle_deg)
from .utils import time_function
from .weights import Weights

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepVariant:
    """One of the four rotation strategy x weighting combinations."""
    rotation: RotationStrategy
    weighting: Weighting

    @classmethod
    def from_config(cls, config):
        return cls(RotationStrategy(config.rotation_strategy), Weighting(config.weighting))

    @property
    def weighted(self):
        return self.weighting is Weighting.ROBUST_INVERSE_DISTANCE

    def __str__(self):
        return f"{self.rotation.value}/{self.weighting.value}"


ROTATION_STAGES = {
    RotationStrategy.CLOSED_FORM: ClosedFormRotation,
    RotationStrategy.POWER_ITERATION: PowerMethodRotation,
}


class ICPStep:
    """
    One ICP iteration over fixed and moving landmark sets.

    Each run transforms the moving landmarks with the current estimate,
    searches correspondences, optionally weights them, estimates the
    incremental similarity transform, composes it into the cumulative
    state and writes that state to ``d_io_t`` for the next run.

    Args:
        queue: ICP command queue
        index_queue: Queue that builds the spatial index
        d_in_f: Fixed landmarks, (m, 8)
        d_in_m: Moving landmarks, (m, 8)
        config: RegistrationConfig
    """

    def __init__(self, queue, index_queue, d_in_f, d_in_m, config):
        self.queue = queue
        self.index_queue = index_queue
        self.context = queue.context
        self.config = config
        self.variant = StepVariant.from_config(config)
        m = config.num_landmarks
        self.m = m

        self.d_io_t = self.context.alloc(8, np.float32, 'ICPStep.transform')
        self.state = TransformState()
        queue.write(self.d_io_t, IDENTITY_TRANSFORM, block=False)

        self.transform = QuaternionTransform(queue, d_in_m, self.d_io_t, m)
        self.representatives = Representatives(queue, d_in_f, config.num_representatives,
                                               config.landmark_width, config.landmark_height)
        self.index = make_index(config.index, index_queue, d_in_f, self.representatives.d_out, m,
                                config.num_representatives, alpha=config.index_scale_alpha,
                                n_jobs=config.n_jobs)
        self.search = self.index.search(queue, self.transform.d_out)

        if self.variant.weighted:
            self.weights = Weights(queue, self.search.d_out_d, m, config.weight_constant)
            d_w, d_sw = self.weights.d_out_w, self.weights.d_out_sw
        else:
            self.weights = None
            d_w = d_sw = None

        self.mean = Mean(queue, self.search.d_out_nn, self.transform.d_out, m, d_w, d_sw)
        self.deviations = Deviations(queue, self.search.d_out_nn, self.transform.d_out,
                                     self.mean.d_out, m)
        self.covariance = CrossCovariance(queue, self.deviations.d_out_dev_m,
                                          self.deviations.d_out_dev_f, m,
                                          config.covariance_scale_c, d_w)

        rotation_stage = ROTATION_STAGES[self.variant.rotation]
        if self.variant.rotation is RotationStrategy.POWER_ITERATION:
            self.rotation = rotation_stage(queue, self.mean.d_out, self.covariance.d_out,
                                           max_iterations=config.power_max_iterations,
                                           policy=config.degenerate_scale)
        else:
            self.rotation = rotation_stage(queue, self.mean.d_out, self.covariance.d_out,
                                           policy=config.degenerate_scale)
        self._index_event = None

    @property
    def alpha(self):
        return self.index.alpha

    @alpha.setter
    def alpha(self, value):
        self.index.alpha = value

    @property
    def scaling(self):
        return self.covariance.scaling

    @scaling.setter
    def scaling(self, c):
        self.covariance.scaling = c

    @property
    def q_k(self):
        return self.rotation.q_k

    @property
    def R_k(self):
        return self.rotation.R_k

    @property
    def t_k(self):
        return self.rotation.t_k

    @property
    def s_k(self):
        return self.rotation.s_k

    def build_index(self):
        """Sample representatives and rebuild the spatial index on the index queue."""
        event = self.representatives.run()
        self._index_event = self.index.build(wait_for=[event])
        return self._index_event

    def reset(self):
        """Reset the cumulative transform to identity."""
        self.state.reset()
        self.queue.write(self.d_io_t, self.state.pack(), block=False)

    def run(self, config=False):
        """
        Perform one iteration.

        Args:
            config: Rebuild the spatial index first
        """
        if config or self._index_event is None:
            self.build_index()

        self.transform.run()
        self.search.run(wait_for=[self._index_event])
        if self.weights is not None:
            self.weights.run()
        self.mean.run()
        self.deviations.run()
        self.covariance.run()
        self.rotation.run()

        q_k, t_k, s_k = self.rotation.result
        self.state.compose(q_k, t_k, s_k)
        self.queue.write(self.d_io_t, self.state.pack(), block=False)


class ICP:
    """
    Convergence controller: repeats ICPStep until the incremental rotation
    and translation fall below their thresholds or the iteration cap is hit.
    """

    def __init__(self, queue, index_queue, d_in_f, d_in_m, config=None):
        self.config = config if config is not None else RegistrationConfig()
        self.queue = queue
        self.step = ICPStep(queue, index_queue, d_in_f, d_in_m, self.config)
        self.k = 0
        self.history = []

    @property
    def d_io_t(self):
        return self.step.d_io_t

    @property
    def state(self):
        return self.step.state

    def build_index(self):
        self.step.build_index()
        self.k = 0
        self.history = []

    def reset(self):
        self.step.reset()

    def check(self):
        """
        Count the finished step and decide whether to continue.

        Returns:
            True when another step is needed
        """
        self.k += 1
        angle = rotation_angle_deg(self.step.q_k)
        translation = float(np.linalg.norm(self.step.t_k))
        self.history.append((angle, translation))
        logger.debug("Iteration %d: angle=%.6f deg, translation=%.6f, scale=%.6f",
                     self.k, angle, translation, self.step.s_k)

        if self.k >= self.config.max_iterations:
            logger.info("Stopped at the iteration cap (%d)", self.config.max_iterations)
            return False
        # a NaN delta never passes the test
        if angle < self.config.angle_threshold and translation < self.config.translation_threshold:
            return False
        return True

    def run(self):
        """Register until convergence; blocks until the queue is drained."""
        self.k = 0
        self.history = []
        self.step.run(config=True)
        while self.check():
            self.step.run()
        self.queue.finish()
        return self.k


@dataclass
class RegistrationResult:
    """Outcome of one registration."""
    iterations: int
    quaternion: np.ndarray
    rotation: np.ndarray
    translation: np.ndarray
    scale: float
    angle: float
    axis: np.ndarray
    latency_ms: float
    history: list = field(default_factory=list)
    variant: str = ''

    @property
    def transformation(self):
        """4x4 homogeneous matrix of the similarity transform."""
        T = np.eye(4)
        T[:3, :3] = self.scale * self.rotation
        T[:3, 3] = self.translation
        return T


class ICPRegistration:
    """
    Registration session: owns the device memory, the queues and the
    transform state of one fixed/moving pair.
    """

    def __init__(self, fixed=None, moving=None, config=None, device=None):
        """
        Initialize an ICP registration session.

        Args:
            fixed: PointCloud object or path to the fixed point cloud file
            moving: PointCloud object or path to the moving point cloud file
            config: RegistrationConfig (defaults are used when omitted)
            device: Optional compute Device
        """
        self.config = config if config is not None else RegistrationConfig()
        if device is None:
            device = Device(wg_multiple=self.config.wg_multiple)
        self.context = Context(device)
        self.queue = CommandQueue(self.context, 'icp')
        self.index_queue = CommandQueue(self.context, 'index')

        cfg = self.config
        n = cfg.num_points
        self.d_fixed = self.context.alloc((n, 8), np.float32, 'fixed')
        self.d_moving = self.context.alloc((n, 8), np.float32, 'moving')

        grid = dict(width=cfg.grid_width, height=cfg.grid_height,
                    lm_width=cfg.landmark_width, lm_height=cfg.landmark_height,
                    stride_x=cfg.stride_x, stride_y=cfg.stride_y)
        self.fixed_landmarks = Landmarks(self.queue, self.d_fixed, **grid)
        self.moving_landmarks = Landmarks(self.queue, self.d_moving, **grid)
        self.icp = ICP(self.queue, self.index_queue, self.fixed_landmarks.d_out,
                       self.moving_landmarks.d_out, cfg)
        self.aligned = QuaternionTransform(self.queue, self.d_moving, self.icp.d_io_t, n)

        self.fixed = None
        self.moving = None
        self._running = False
        if fixed is not None and moving is not None:
            self.load(fixed, moving)

    def _as_cloud(self, cloud):
        if isinstance(cloud, (str, os.PathLike)):
            return PointCloud.from_file(cloud, self.config.grid_width, self.config.grid_height)
        return cloud

    def load(self, fixed, moving):
        """Upload a new fixed/moving pair and sample their landmarks."""
        fixed = self._as_cloud(fixed)
        moving = self._as_cloud(moving)
        for name, cloud in (('fixed', fixed), ('moving', moving)):
            if len(cloud) != self.config.num_points:
                raise ValueError(f"The {name} cloud has {len(cloud)} points, "
                                 f"expected {self.config.num_points}")

        self.queue.write(self.d_fixed, fixed.data, block=True)
        self.queue.write(self.d_moving, moving.data, block=True)
        self.fixed_landmarks.run()
        self.moving_landmarks.run()
        self.fixed = fixed
        self.moving = moving

    @property
    def alpha(self):
        return self.icp.step.alpha

    @alpha.setter
    def alpha(self, value):
        self.icp.step.alpha = value

    @property
    def scaling(self):
        return self.icp.step.scaling

    @scaling.setter
    def scaling(self, c):
        self.icp.step.scaling = c

    @property
    def state(self):
        return self.icp.state

    def reset(self):
        self.icp.reset()

    @time_function
    def register(self, reset=True):
        """
        Run ICP registration.

        Args:
            reset: Start from the identity transform instead of the
                current estimate

        Returns:
            RegistrationResult
        """
        if self.fixed is None or self.moving is None:
            raise RuntimeError("No point clouds loaded")
        if self._running:
            raise RuntimeError("A registration is already running on this session")

        self._running = True
        try:
            start = time.perf_counter()
            if reset:
                self.icp.reset()
            iterations = self.icp.run()
            latency_ms = (time.perf_counter() - start) * 1000.0
        finally:
            self._running = False

        state = self.icp.state
        result = RegistrationResult(
            iterations=iterations,
            quaternion=state.q.copy(),
            rotation=state.R.copy(),
            translation=state.t.copy(),
            scale=float(state.s),
            angle=float(state.angle),
            axis=state.axis,
            latency_ms=latency_ms,
            history=list(self.icp.history),
            variant=str(self.icp.step.variant),
        )
        logger.info("Registration (%s) finished after %d iterations in %.1f ms: "
                    "angle=%.4f deg, translation=%s, scale=%.6f",
                    result.variant, iterations, latency_ms, result.angle,
                    np.array2string(result.translation, precision=4), result.scale)
        return result

    def aligned_cloud(self):
        """
        Transform the whole moving cloud with the current estimate.

        Returns:
            (n, 8) array, geometry and colour interleaved
        """
        self.aligned.run()
        return self.queue.read(self.aligned.d_out)

    def visualize_initial(self):
        """Visualize the clouds before alignment."""
        o3d.visualization.draw_geometries(
            [self.fixed.to_o3d(), self.moving.to_o3d()],
            window_name="Initial State (Before ICP)",
            width=1024,
            height=768
        )

    def visualize_final(self):
        """Visualize the fixed cloud with the aligned moving cloud."""
        aligned = self.aligned_cloud()
        moving_pcd = self.moving.to_o3d(points=aligned[:, 0:3])
        o3d.visualization.draw_geometries(
            [self.fixed.to_o3d(), moving_pcd],
            window_name="Final State (After ICP Alignment)",
            width=1024,
            height=768
        )

    def save_result(self, filepath, result):
        """Save registration results to file."""
        data = {
            'result': result,
            'config': self.config.to_dict(),
        }
        with open(filepath, 'wb') as f:
            pickle.dump(data, f)
        logger.info("Results saved to %s", filepath)

    @staticmethod
    def load_result(filepath):
        """Load previously saved registration results."""
        if not os.path.exists(filepath):
            logger.warning("File %s not found", filepath)
            return None

        with open(filepath, 'rb') as f:
            data = pickle.load(f)
        logger.info("Results loaded from %s", filepath)
        return data
