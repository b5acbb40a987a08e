"""Exceptions raised by the registration pipeline.

Classes:
    RegistrationError: Base class of all errors raised by this package.
    InvalidConfiguration: A registration or search parameter is out of range.
    InsufficientNeighbors: A query point has no neighbors in the requested neighborhood.
    DegenerateNeighborhood: A neighborhood is too small to estimate a surface normal.
    RegistrationDidNotConverge: The solver could not produce a valid transformation.
"""
from typing import Union


class RegistrationError(Exception):
    """Base class of all errors raised by this package."""


class InvalidConfiguration(RegistrationError, ValueError):
    """A registration or search parameter is out of range."""


class InsufficientNeighbors(RegistrationError):
    """A query point has no neighbors in the requested neighborhood.

    Attributes:
        index: Index of the offending point in its cloud or `None` for free query points.
    """

    def __init__(self, message: str, index: Union[int, None] = None) -> None:
        super().__init__(message)
        self.index = index


class DegenerateNeighborhood(RegistrationError):
    """A neighborhood holds fewer than three points, so its covariance is rank-deficient.

    Attributes:
        index: Index of the offending point.
        num_neighbors: Number of points found in its neighborhood.
    """

    def __init__(self, message: str, index: int, num_neighbors: int) -> None:
        super().__init__(message)
        self.index = index
        self.num_neighbors = num_neighbors


class RegistrationDidNotConverge(RegistrationError):
    """The solver could not produce a valid transformation, e.g. too few correspondences survived."""
