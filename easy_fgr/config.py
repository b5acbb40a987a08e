"""Fast Global Registration parameters.

Classes:
    DistanceModes: How `max_correspondence_distance` is interpreted.
    RegistrationConfig: Validated parameter set of the matcher and the solver.
"""
import logging
from enum import Flag, auto
from typing import Any, Dict, Union

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)


class DistanceModes(Flag):
    """How `max_correspondence_distance` is interpreted.

    ABSOLUTE: In the units of the input point clouds.
    RELATIVE: As a fraction of the extent of the point clouds (the largest distance of any point to its cloud's mean).
    """
    ABSOLUTE = auto()
    RELATIVE = auto()


class RegistrationConfig:
    """Validated parameter set of the correspondence matcher and the graduated non-convexity solver.

    All parameters are checked on construction and again by `validate` before a registration runs, so invalid
    settings fail before any computation.

    Attributes:
        max_correspondence_distance: Distance at which graduated non-convexity stops annealing.
        distance_mode: Whether `max_correspondence_distance` is absolute or relative to the point cloud extent.
        max_iteration: Maximum number of solver iterations.
        max_tuples: Maximum number of correspondence triplets accepted by the tuple test.
        similarity_threshold: Minimum ratio between corresponding edge lengths of a triplet in both clouds.
        graduated_non_convexity_factor: Divisor applied to the robust kernel scale `mu` on every annealing step.
        gnc_interval: Number of iterations between two annealing steps.
        decrease_mu: Anneal `mu`. If `False`, the solver optimizes at the initial scale only.
        cross_check: Keep only mutually nearest feature matches.
        tuple_test: Filter matches with the triplet edge length test.
        min_correspondences: Minimum number of inlier correspondences the solver needs.
        outlier_factor: Correspondences farther apart than `outlier_factor * sqrt(mu)` get zero weight.
        tolerance: Update norm below which the solver stops.
        seed: Seed of the random number generator drawing triplets.
    """

    def __init__(self,
                 max_correspondence_distance: float = 0.025,
                 distance_mode: DistanceModes = DistanceModes.RELATIVE,
                 max_iteration: int = 100,
                 max_tuples: int = 1000,
                 similarity_threshold: float = 0.95,
                 graduated_non_convexity_factor: float = 1.4,
                 gnc_interval: int = 4,
                 decrease_mu: bool = True,
                 cross_check: bool = True,
                 tuple_test: bool = True,
                 min_correspondences: int = 10,
                 outlier_factor: float = 3.0,
                 tolerance: float = 1e-10,
                 seed: Union[int, None] = 0) -> None:
        self.max_correspondence_distance = max_correspondence_distance
        self.distance_mode = distance_mode
        self.max_iteration = max_iteration
        self.max_tuples = max_tuples
        self.similarity_threshold = similarity_threshold
        self.graduated_non_convexity_factor = graduated_non_convexity_factor
        self.gnc_interval = gnc_interval
        self.decrease_mu = decrease_mu
        self.cross_check = cross_check
        self.tuple_test = tuple_test
        self.min_correspondences = min_correspondences
        self.outlier_factor = outlier_factor
        self.tolerance = tolerance
        self.seed = seed
        self.validate()

    @staticmethod
    def _is_positive_int(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and value > 0

    def validate(self) -> None:
        """Checks all parameters.

        Raises:
            InvalidConfiguration: If a parameter is out of range or of the wrong type.
        """
        if not isinstance(self.distance_mode, DistanceModes):
            raise InvalidConfiguration(f"`distance_mode` must be one of `DistanceModes` but is {self.distance_mode}.")
        if not self.max_correspondence_distance > 0:
            raise InvalidConfiguration(f"`max_correspondence_distance` must be positive but is "
                                       f"{self.max_correspondence_distance}.")
        for name in ["max_iteration", "max_tuples", "gnc_interval"]:
            if not self._is_positive_int(getattr(self, name)):
                raise InvalidConfiguration(f"`{name}` must be a positive integer but is {getattr(self, name)}.")
        if not 0 <= self.similarity_threshold <= 1:
            raise InvalidConfiguration(f"`similarity_threshold` must be in [0, 1] but is {self.similarity_threshold}.")
        if not self.graduated_non_convexity_factor > 1:
            raise InvalidConfiguration(f"`graduated_non_convexity_factor` must be greater than 1 but is "
                                       f"{self.graduated_non_convexity_factor}.")
        if not (self._is_positive_int(self.min_correspondences) and self.min_correspondences >= 3):
            raise InvalidConfiguration(f"`min_correspondences` must be an integer of at least 3 but is "
                                       f"{self.min_correspondences}.")
        if not self.outlier_factor > 0:
            raise InvalidConfiguration(f"`outlier_factor` must be positive but is {self.outlier_factor}.")
        if not self.tolerance >= 0:
            raise InvalidConfiguration(f"`tolerance` must not be negative but is {self.tolerance}.")
        if self.seed is not None and not (isinstance(self.seed, int) and self.seed >= 0):
            raise InvalidConfiguration(f"`seed` must be a non-negative integer or `None` but is {self.seed}.")

    def to_dict(self) -> Dict[str, Any]:
        return dict(vars(self))

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "RegistrationConfig":
        """Constructs a configuration from a dictionary, ignoring keys that are not registration parameters."""
        params = cls().to_dict()
        unknown = [key for key in config if key not in params]
        if unknown:
            logger.debug(f"Ignoring unknown registration parameters {unknown}.")
        return cls(**{key: value for key, value in config.items() if key in params})

    def __repr__(self) -> str:
        params = ", ".join(f"{key}={value}" for key, value in self.to_dict().items())
        return f"RegistrationConfig({params})"
