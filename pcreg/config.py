"""Registration settings.

All tunables of a registration session live in one ``RegistrationConfig``.
Values are validated when the object is created, so a bad setting is reported
before any buffer is allocated or any kernel is enqueued.
"""

from dataclasses import dataclass, asdict, fields, replace
from enum import Enum

import yaml

from .errors import ConfigurationError


class RotationStrategy(str, Enum):
    CLOSED_FORM = 'closed_form'
    POWER_ITERATION = 'power_iteration'


class Weighting(str, Enum):
    NONE = 'none'
    ROBUST_INVERSE_DISTANCE = 'robust_inverse_distance'


class IndexType(str, Enum):
    RBC = 'rbc'
    KDTREE = 'kdtree'


class ScalePolicy(str, Enum):
    """What to do when the scale estimate has a zero or invalid denominator."""
    CLAMP = 'clamp'
    NAN = 'nan'
    RAISE = 'raise'


_ENUM_FIELDS = {
    'rotation_strategy': RotationStrategy,
    'weighting': Weighting,
    'index': IndexType,
    'degenerate_scale': ScalePolicy,
}


@dataclass
class RegistrationConfig:
    max_iterations: int = 40
    angle_threshold: float = 0.001         # degrees
    translation_threshold: float = 0.01    # cloud units (mm)
    rotation_strategy: RotationStrategy = RotationStrategy.CLOSED_FORM
    weighting: Weighting = Weighting.NONE
    index_scale_alpha: float = 200.0
    covariance_scale_c: float = 1e-6
    weight_constant: float = 100.0
    num_representatives: int = 256
    index: IndexType = IndexType.RBC
    power_max_iterations: int = 1000
    degenerate_scale: ScalePolicy = ScalePolicy.CLAMP
    grid_width: int = 640
    grid_height: int = 480
    landmark_width: int = 128
    landmark_height: int = 128
    stride_x: int = 4
    stride_y: int = 3
    wg_multiple: int = 64
    n_jobs: int = 4

    def __post_init__(self):
        for name, enum_type in _ENUM_FIELDS.items():
            value = getattr(self, name)
            try:
                setattr(self, name, enum_type(value))
            except ValueError:
                choices = ', '.join(e.value for e in enum_type)
                raise ConfigurationError(
                    f"Unknown {name}: {value!r} (expected one of: {choices})") from None
        self.validate()

    def validate(self):
        """Raise ConfigurationError on the first invalid setting."""
        positive_ints = ('max_iterations', 'num_representatives', 'power_max_iterations',
                         'grid_width', 'grid_height', 'landmark_width', 'landmark_height',
                         'stride_x', 'stride_y', 'wg_multiple')
        for name in positive_ints:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if self.angle_threshold < 0 or self.translation_threshold < 0:
            raise ConfigurationError("Convergence thresholds must not be negative")
        if self.index_scale_alpha == 0:
            raise ConfigurationError("index_scale_alpha must be non-zero")
        if self.covariance_scale_c == 0:
            raise ConfigurationError("covariance_scale_c must be non-zero")
        if self.weight_constant <= 0:
            raise ConfigurationError("weight_constant must be positive")
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be non-zero")
        if self.landmark_width * self.stride_x > self.grid_width or \
                self.landmark_height * self.stride_y > self.grid_height:
            raise ConfigurationError(
                f"A {self.landmark_width}x{self.landmark_height} landmark grid with strides "
                f"({self.stride_x}, {self.stride_y}) does not fit a "
                f"{self.grid_width}x{self.grid_height} point grid")

    @property
    def num_points(self):
        return self.grid_width * self.grid_height

    @property
    def num_landmarks(self):
        return self.landmark_width * self.landmark_height

    @property
    def weighted(self):
        return self.weighting is Weighting.ROBUST_INVERSE_DISTANCE

    def to_dict(self):
        result = asdict(self)
        for name in _ENUM_FIELDS:
            result[name] = result[name].value
        return result

    def updated(self, **changes):
        """Return a validated copy with some settings changed."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, values):
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**values)

    @classmethod
    def from_yaml(cls, path):
        """
        Load settings from a YAML file.

        The file holds a flat mapping of field names, optionally nested
        under a top-level ``registration`` key. Missing fields keep
        their defaults.
        """
        with open(path, 'r') as f:
            values = yaml.safe_load(f) or {}
        if not isinstance(values, dict):
            raise ConfigurationError(f"{path}: expected a mapping of settings")
        if 'registration' in values and isinstance(values['registration'], dict):
            values = values['registration']
        return cls.from_dict(values)
