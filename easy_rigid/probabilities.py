"""Soft correspondences between two point clouds (the Coherent Point Drift E-step).

For N fixed ("before") points `x_n` and M moving ("after") points `y_m` with bandwidth `sigma^2`, the posterior
probability that `x_n` was generated by the Gaussian centered at `y_m` is

    P[m, n] = exp(-||x_n - y_m||^2 / (2 sigma^2)) / (sum_k exp(-||x_n - y_k||^2 / (2 sigma^2)) + c)

where `c` accounts for the uniform outlier distribution. Only the aggregates of `P` needed by the M-step are ever
materialized.

Classes:
    Probabilities: The aggregates of the soft assignment matrix.

Functions:
    initial_sigma_squared: Initial bandwidth from the mean squared distance of all point pairs.
    outlier_constant: The outlier term `c` of the posterior denominator.
    compute_probabilities: Exact (optionally truncated) E-step.
    compute_probabilities_fgt: E-step approximated by the Fast Gauss Transform.
    compute_probabilities_fast: Chooses the E-step according to the approximation policy.
"""
import logging
from typing import Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from . import fgt
from .utils import ApproximationTypes, DIMENSION, InvalidConfigurationError

logger = logging.getLogger(__name__)

FGT_FAR_FIELD_RATIO = 9.0
FGT_ORDER = 6
FGT_BASE_CLUSTERS = 50
FULL_SIGMA_SQUARED_FLOOR = 0.05
HYBRID_SWITCH_RATIO = 0.015
HYBRID_TRUNCATION = 1e-3

_MAX_CHUNK_ELEMENTS = 2 ** 22


class Probabilities:
    """The aggregates of the MxN soft assignment matrix `P` between M moving and N fixed points.

    Attributes:
        p1: `P @ 1`, the responsibility mass explained by each moving point.
        pt1: `P^T @ 1`, the responsibility mass explained by each fixed point.
        px: `P @ X`, the responsibility-weighted sum of fixed points per moving point.
        error: The negative log-likelihood used for convergence testing.
    """

    def __init__(self, p1: np.ndarray, pt1: np.ndarray, px: np.ndarray, error: float) -> None:
        self.p1 = p1
        self.pt1 = pt1
        self.px = px
        self.error = error

    @property
    def total_mass(self) -> float:
        """The total responsibility mass `Np`."""
        return float(np.sum(self.p1))


def initial_sigma_squared(before: np.ndarray, after: np.ndarray) -> float:
    """Mean squared distance of all N*M point pairs divided by the dimension."""
    n, m = len(before), len(after)
    total = m * np.sum(before ** 2) + n * np.sum(after ** 2) - 2 * before.sum(axis=0) @ after.sum(axis=0)
    return float(total / (DIMENSION * n * m))


def outlier_constant(sigma_squared: float, weight: float, n: int, m: int) -> float:
    """The outlier term `(2 pi sigma^2)^(D/2) * w * M / ((1 - w) * N)` of the posterior denominator."""
    return float((2 * np.pi * sigma_squared) ** (DIMENSION / 2) * weight * m / ((1 - weight) * n))


def _probabilities_chunk(before: np.ndarray,
                         transformed: np.ndarray,
                         constant: float,
                         sigma_squared: float,
                         log_truncate: Union[float, None]) -> Tuple[np.ndarray, np.ndarray, np.ndarray, float]:
    distances = (np.sum(before ** 2, axis=1)[:, None] + np.sum(transformed ** 2, axis=1)[None, :]
                 - 2 * before @ transformed.T)
    exponent = -np.maximum(distances, 0.0) / (2 * sigma_squared)
    kernel = np.exp(exponent)
    if log_truncate is not None:
        kernel[exponent < log_truncate] = 0.0

    denominator = kernel.sum(axis=1) + constant
    posterior = kernel / denominator[:, None]
    log_likelihood = -float(np.sum(np.log(denominator)))
    return posterior.sum(axis=0), 1.0 - constant / denominator, posterior.T @ before, log_likelihood


def compute_probabilities(before: np.ndarray,
                          transformed: np.ndarray,
                          constant: float,
                          sigma_squared: float,
                          truncate: Union[float, None] = None,
                          chunk_size: Union[int, None] = None,
                          parallel: Union[Parallel, None] = None) -> Probabilities:
    """Exact E-step.

    The NxM kernel matrix is processed in independent row chunks which are summed afterwards, so memory stays bounded
    for large clouds and chunks can be evaluated in parallel.

    Args:
        before: The Nx3 fixed points.
        transformed: The Mx3 moving points under the current transform.
        constant: The outlier term of the posterior denominator.
        sigma_squared: The current bandwidth.
        truncate: Kernel values below this threshold are set to zero. No truncation if `None`.
        chunk_size: Number of fixed points per chunk. Chosen from the cloud sizes if not provided.
        parallel: A joblib pool evaluating chunks concurrently. Sequential if not provided.

    Returns:
        The soft assignment aggregates.
    """
    log_truncate = np.log(truncate) if truncate is not None else None
    if chunk_size is None:
        chunk_size = max(1, _MAX_CHUNK_ELEMENTS // len(transformed))
    chunks = [before[start:start + chunk_size] for start in range(0, len(before), chunk_size)]

    if parallel is not None and len(chunks) > 1:
        results = parallel(delayed(_probabilities_chunk)(chunk, transformed, constant, sigma_squared, log_truncate)
                           for chunk in chunks)
    else:
        results = [_probabilities_chunk(chunk, transformed, constant, sigma_squared, log_truncate) for chunk in chunks]

    p1 = np.sum([result[0] for result in results], axis=0)
    pt1 = np.concatenate([result[1] for result in results])
    px = np.sum([result[2] for result in results], axis=0)
    error = sum(result[3] for result in results) + DIMENSION * len(before) * np.log(sigma_squared) / 2
    return Probabilities(p1=p1, pt1=pt1, px=px, error=float(error))


def compute_probabilities_fgt(before: np.ndarray,
                              transformed: np.ndarray,
                              weight: float,
                              sigma_squared: float,
                              sigma_squared_init: float) -> Probabilities:
    """E-step with all Gaussian sums approximated by the Fast Gauss Transform.

    Five transforms are evaluated: the kernel mass of every fixed point against the moving cloud, the mass of every
    moving point against the fixed cloud weighted by the inverse posterior denominators and one weighted position sum
    per dimension. More clusters are used as the bandwidth shrinks relative to its initial value.

    Args:
        before: The Nx3 fixed points.
        transformed: The Mx3 moving points under the current transform.
        weight: The outlier weight.
        sigma_squared: The current bandwidth.
        sigma_squared_init: The initial bandwidth.

    Returns:
        The approximated soft assignment aggregates.
    """
    n, m = len(before), len(transformed)
    bandwidth = np.sqrt(2.0 * sigma_squared)
    k = int(round(min(n, m, FGT_BASE_CLUSTERS + sigma_squared_init / sigma_squared)))

    model = fgt.build_model(transformed, np.ones(m), bandwidth, k, FGT_ORDER)
    kt1 = np.maximum(fgt.evaluate(model, before, bandwidth, FGT_FAR_FIELD_RATIO, k, FGT_ORDER), 0.0)

    ndi = outlier_constant(sigma_squared, weight, n, m)
    inv_denominator = 1.0 / (kt1 + ndi)
    pt1 = 1.0 - ndi * inv_denominator

    model = fgt.build_model(before, inv_denominator, bandwidth, k, FGT_ORDER)
    p1 = np.maximum(fgt.evaluate(model, transformed, bandwidth, FGT_FAR_FIELD_RATIO, k, FGT_ORDER), 0.0)

    px = np.zeros((m, DIMENSION))
    for i in range(DIMENSION):
        model = fgt.build_model(before, before[:, i] * inv_denominator, bandwidth, k, FGT_ORDER)
        px[:, i] = fgt.evaluate(model, transformed, bandwidth, FGT_FAR_FIELD_RATIO, k, FGT_ORDER)

    error = -np.sum(np.log(kt1 + ndi)) + DIMENSION * n * np.log(sigma_squared) / 2
    return Probabilities(p1=p1, pt1=pt1, px=px, error=float(error))


def compute_probabilities_fast(before: np.ndarray,
                               transformed: np.ndarray,
                               weight: float,
                               sigma_squared: float,
                               sigma_squared_init: float,
                               approximation: ApproximationTypes = ApproximationTypes.NONE,
                               constant: Union[float, None] = None,
                               chunk_size: Union[int, None] = None,
                               parallel: Union[Parallel, None] = None) -> Probabilities:
    """Chooses the E-step according to the approximation policy.

    The exact kernel uses the outlier term `constant`, which is fixed at the initial bandwidth for a whole
    registration. The Fast Gauss Transform recomputes its outlier term from the current bandwidth.

    * `NONE`: exact kernel.
    * `FULL`: Fast Gauss Transform throughout. The bandwidth passed to the transform is floored at 0.05 as its
      accuracy degrades for small bandwidths.
    * `HYBRID`: Fast Gauss Transform while `sigma^2` is above 1.5% of its initial value, exact kernel truncated at
      1e-3 afterwards.

    Args:
        before: The Nx3 fixed points.
        transformed: The Mx3 moving points under the current transform.
        weight: The outlier weight.
        sigma_squared: The current bandwidth.
        sigma_squared_init: The initial bandwidth.
        approximation: The approximation policy.
        constant: The outlier term of the exact kernel. Computed from `sigma_squared_init` if not provided.
        chunk_size: Number of fixed points per chunk of the exact kernel.
        parallel: A joblib pool evaluating chunks of the exact kernel concurrently.

    Raises:
        InvalidConfigurationError: If `approximation` is not one of `ApproximationTypes`.

    Returns:
        The soft assignment aggregates.
    """
    if constant is None:
        constant = outlier_constant(sigma_squared_init, weight, len(before), len(transformed))
    if approximation == ApproximationTypes.NONE:
        return compute_probabilities(before, transformed,
                                     constant=constant,
                                     sigma_squared=sigma_squared,
                                     chunk_size=chunk_size,
                                     parallel=parallel)
    elif approximation == ApproximationTypes.FULL:
        return compute_probabilities_fgt(before, transformed, weight,
                                         sigma_squared=max(sigma_squared, FULL_SIGMA_SQUARED_FLOOR),
                                         sigma_squared_init=sigma_squared_init)
    elif approximation == ApproximationTypes.HYBRID:
        if sigma_squared > HYBRID_SWITCH_RATIO * sigma_squared_init:
            return compute_probabilities_fgt(before, transformed, weight,
                                             sigma_squared=sigma_squared,
                                             sigma_squared_init=sigma_squared_init)
        return compute_probabilities(before, transformed,
                                     constant=constant,
                                     sigma_squared=sigma_squared,
                                     truncate=HYBRID_TRUNCATION,
                                     chunk_size=chunk_size,
                                     parallel=parallel)
    raise InvalidConfigurationError(f"`approximation` must be one of `ApproximationTypes` but is {approximation}.")
