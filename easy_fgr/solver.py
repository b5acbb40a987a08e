"""Graduated non-convexity optimization of the scaled Geman-McClure registration objective.

Classes:
    GNCState: Loop state of the solver.
    SolverResult: Outcome of the solver.

Functions:
    optimize_pairwise: Estimates the rigid transformation aligning two point clouds from correspondences.
    get_extent: Returns the extent used to normalize two point clouds.
"""
import logging
import time
from typing import NamedTuple, Tuple, Union, List

import numpy as np

from .config import DistanceModes, RegistrationConfig
from .errors import RegistrationDidNotConverge
from .matching import CorrespondenceSet
from .transform import RigidTransform

logger = logging.getLogger(__name__)


class GNCState(NamedTuple):
    """Loop state of the solver. Each iteration returns a new state.

    Attributes:
        mu: The current robust kernel scale (a squared distance in working units).
        transformation: The current estimate in working units.
        iteration: Number of finished iterations.
        update_norm: Norm of the last six-dimensional update.
    """
    mu: float
    transformation: RigidTransform
    iteration: int
    update_norm: float


class SolverResult(NamedTuple):
    """Outcome of the solver.

    Attributes:
        transformation: The rigid transformation mapping cloud A onto cloud B in input units.
        converged: Whether annealing reached the final kernel scale or the update vanished before `max_iteration`.
        iterations: Number of iterations run.
        mu_schedule: The kernel scale used in every iteration.
        num_inliers: Number of correspondences with non-zero weight in the last iteration.
    """
    transformation: RigidTransform
    converged: bool
    iterations: int
    mu_schedule: np.ndarray
    num_inliers: int


def _eval_correspondences(correspondences: Union[CorrespondenceSet, np.ndarray, list]) -> np.ndarray:
    if isinstance(correspondences, CorrespondenceSet):
        return correspondences.indices
    return np.asarray(correspondences, dtype=np.int64).reshape(-1, 2)


def get_extent(points_a: np.ndarray, points_b: np.ndarray) -> float:
    """Returns the largest distance of any point to the mean of its cloud over both clouds, or 1 if all coincide."""
    extent = 0.0
    for points in [points_a, points_b]:
        if len(points) > 0:
            extent = max(extent, float(np.linalg.norm(points - points.mean(axis=0), axis=1).max()))
    return extent if extent > 0 else 1.0


def _normalize(points_a: np.ndarray,
               points_b: np.ndarray,
               config: RegistrationConfig) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray,
                                                    float, float, float]:
    """Centers both clouds on their means and, in relative mode, scales them into the unit ball.

    Returns:
        Working points of A and B, their means, the scale applied, the initial and the final kernel scale.
    """
    mean_a = points_a.mean(axis=0)
    mean_b = points_b.mean(axis=0)
    centered_a = points_a - mean_a
    centered_b = points_b - mean_b
    extent = get_extent(points_a, points_b)

    if config.distance_mode == DistanceModes.RELATIVE:
        scale, mu = extent, 1.0
    else:
        scale, mu = 1.0, extent ** 2
    mu_min = config.max_correspondence_distance ** 2
    logger.debug(f"Normalized point clouds with scale {scale}. Annealing from mu={mu} to mu={mu_min}.")
    return centered_a / scale, centered_b / scale, mean_a, mean_b, scale, mu, mu_min


def _jacobians(points: np.ndarray) -> np.ndarray:
    """Kx3x6 Jacobians of `R @ p + t` w.r.t. a left-multiplied rotation vector and a translation update."""
    jacobians = np.zeros((len(points), 3, 6))
    x, y, z = points[:, 0], points[:, 1], points[:, 2]
    jacobians[:, 0, 1], jacobians[:, 0, 2] = z, -y
    jacobians[:, 1, 0], jacobians[:, 1, 2] = -z, x
    jacobians[:, 2, 0], jacobians[:, 2, 1] = y, -x
    jacobians[:, :, 3:] = np.eye(3)
    return jacobians


def _gnc_step(state: GNCState,
              source: np.ndarray,
              target: np.ndarray,
              mu_min: float,
              config: RegistrationConfig) -> Tuple[GNCState, np.ndarray, int]:
    """Runs one iteration: anneals mu, reweights the correspondences and solves the linearized system.

    Returns:
        The new state, the transformed source points and the number of inliers.
    """
    mu = state.mu
    if config.decrease_mu and state.iteration % config.gnc_interval == 0 and mu > mu_min:
        mu /= config.graduated_non_convexity_factor

    residuals = source - target
    squared_norms = np.einsum("ij,ij->i", residuals, residuals)
    weights = (mu / (mu + squared_norms)) ** 2
    weights[squared_norms > config.outlier_factor ** 2 * mu] = 0.0
    num_inliers = int(np.count_nonzero(weights))
    if num_inliers < config.min_correspondences:
        raise RegistrationDidNotConverge(f"Only {num_inliers} correspondences within {config.outlier_factor}*sqrt(mu) "
                                         f"at mu={mu} but at least {config.min_correspondences} are needed.")

    jacobians = _jacobians(source)
    jtj = np.einsum("kij,k,kil->jl", jacobians, weights, jacobians)
    jtr = np.einsum("kij,k,ki->j", jacobians, weights, residuals)
    try:
        delta = -np.linalg.solve(jtj, jtr)
    except np.linalg.LinAlgError as e:
        raise RegistrationDidNotConverge(f"Singular normal equations at iteration {state.iteration}.") from e
    if not np.all(np.isfinite(delta)):
        raise RegistrationDidNotConverge(f"Non-finite update at iteration {state.iteration}.")

    update = RigidTransform.from_rotation_vector(delta[:3], delta[3:])
    new_state = GNCState(mu=mu,
                         transformation=update @ state.transformation,
                         iteration=state.iteration + 1,
                         update_norm=float(np.linalg.norm(delta)))
    return new_state, update.apply(source), num_inliers


def optimize_pairwise(points_a: np.ndarray,
                      points_b: np.ndarray,
                      correspondences: Union[CorrespondenceSet, np.ndarray, List[Tuple[int, int]]],
                      config: Union[RegistrationConfig, None] = None) -> SolverResult:
    """Estimates the rigid transformation aligning two point clouds from putative correspondences.

    Minimizes the scaled Geman-McClure objective sum_k mu * |T(p_k) - q_k|^2 / (mu + |T(p_k) - q_k|^2) by
    iteratively reweighted Gauss-Newton steps. The kernel scale `mu` starts large (the objective is almost convex)
    and is divided by `graduated_non_convexity_factor` every `gnc_interval` iterations until it reaches
    `max_correspondence_distance` squared. Correspondences farther apart than `outlier_factor * sqrt(mu)` get zero
    weight. The loop stops at whichever comes first: the update norm falls below `tolerance`, a full `gnc_interval`
    ran at the final kernel scale, or `max_iteration` iterations ran.

    Args:
        points_a: The Nx3 points of cloud A.
        points_b: The Mx3 points of cloud B.
        correspondences: Index pairs into A (column 0) and B (column 1).
        config: The registration parameters. Defaults are used if not provided.

    Raises:
        RegistrationDidNotConverge: If too few correspondences are inliers or the linear system is singular.

    Returns:
        The transformation mapping A onto B together with convergence information.
    """
    start = time.time()
    config = RegistrationConfig() if config is None else config
    config.validate()

    _points_a = np.asarray(points_a, dtype=np.float64).reshape(-1, 3)
    _points_b = np.asarray(points_b, dtype=np.float64).reshape(-1, 3)
    pairs = _eval_correspondences(correspondences)
    if len(pairs) < config.min_correspondences:
        raise RegistrationDidNotConverge(f"Got {len(pairs)} correspondences but at least "
                                         f"{config.min_correspondences} are needed.")
    if pairs.min() < 0 or pairs[:, 0].max() >= len(_points_a) or pairs[:, 1].max() >= len(_points_b):
        raise ValueError("Correspondence indices out of range.")

    working_a, working_b, mean_a, mean_b, scale, mu, mu_min = _normalize(_points_a, _points_b, config)
    source = working_a[pairs[:, 0]]
    target = working_b[pairs[:, 1]]

    state = GNCState(mu=mu, transformation=RigidTransform.identity(), iteration=0, update_norm=np.inf)
    mu_schedule = list()
    num_inliers = 0
    while state.iteration < config.max_iteration:
        state, source, num_inliers = _gnc_step(state, source, target, mu_min, config)
        mu_schedule.append(state.mu)
        if state.update_norm < config.tolerance:
            break
        # The next step would keep mu at its final value
        if config.decrease_mu and state.mu <= mu_min and state.iteration % config.gnc_interval == 0:
            break

    converged = (config.decrease_mu and state.mu <= mu_min) or state.update_norm < config.tolerance
    if not converged:
        logger.warning(f"Solver stopped after {state.iteration} iterations at mu={state.mu} > {mu_min}.")

    rotation = state.transformation.rotation
    translation = scale * state.transformation.translation + mean_b - rotation @ mean_a
    transformation = RigidTransform(rotation=rotation, translation=translation, orthonormalize=True)

    logger.debug(f"Solver ran {state.iteration} iterations with {num_inliers} inliers and took "
                 f"{time.time() - start} seconds.")
    return SolverResult(transformation=transformation,
                        converged=bool(converged),
                        iterations=state.iteration,
                        mu_schedule=np.array(mu_schedule),
                        num_inliers=num_inliers)
