"""The improved Fast Gauss Transform.

Approximates weighted Gaussian sums `G(q) = sum_i w_i * exp(-||q - s_i||^2 / h^2)` for many query points `q` in
sub-quadratic time. Sources are grouped into `k` clusters by farthest-point clustering and each cluster's
contribution is expanded into a truncated Taylor series of order `p` around its center. Clusters whose sources are
all farther than `sqrt(far_field_ratio)` bandwidths from a query are skipped, with the cluster radius bounding how far
a source can lie from its center.

Classes:
    FGTModel: Cluster centers and Taylor coefficients of a set of weighted sources.

Functions:
    build_model: Clusters the sources and computes the expansion coefficients.
    evaluate: Evaluates a model at query points.
"""
import itertools
import logging
import math
from typing import Tuple, Union

import numpy as np

from .utils import DIMENSION

logger = logging.getLogger(__name__)

_MAX_CHUNK_ELEMENTS = 2 ** 22


class FGTModel:
    """Cluster centers and Taylor coefficients of a set of weighted sources.

    Attributes:
        centers: The Kx3 cluster centers.
        coefficients: The KxP expansion coefficients, one column per multi-index.
        radius: The largest distance of a source to its cluster center.
        order: The truncation order `p` the model was built with.
    """

    def __init__(self, centers: np.ndarray, coefficients: np.ndarray, radius: float, order: int) -> None:
        self.centers = centers
        self.coefficients = coefficients
        self.radius = radius
        self.order = order


def _multi_indices(order: int, dimension: int = DIMENSION) -> np.ndarray:
    """All multi-indices `alpha` with `|alpha| < order`, sorted by total degree."""
    alphas = [alpha for alpha in itertools.product(range(order), repeat=dimension) if sum(alpha) < order]
    alphas.sort(key=lambda alpha: (sum(alpha), tuple(-a for a in alpha)))
    return np.asarray(alphas, dtype=np.int64)


def _expansion_constants(alphas: np.ndarray) -> np.ndarray:
    """The Taylor constants `2^|alpha| / alpha!` of `exp(2 * x . y)`."""
    return np.asarray([2.0 ** alpha.sum() / np.prod([math.factorial(a) for a in alpha]) for alpha in alphas])


def _monomials(points: np.ndarray, alphas: np.ndarray) -> np.ndarray:
    return np.prod(points[:, None, :] ** alphas[None, :, :], axis=2)


def _k_center_clustering(points: np.ndarray,
                         k: int,
                         rng: Union[np.random.Generator, None] = None) -> Tuple[np.ndarray, np.ndarray, float]:
    """Gonzalez' farthest-point clustering.

    Args:
        points: The Nx3 points.
        k: The number of clusters. At most N.
        rng: Draws the first center. The first point is used if not provided.

    Returns:
        The center indices, the cluster label of every point and the largest point-to-center distance.
    """
    first = int(rng.integers(len(points))) if rng is not None else 0
    center_indices = [first]
    labels = np.zeros(len(points), dtype=np.int64)
    distances = np.sum((points - points[first]) ** 2, axis=1)
    for i in range(1, k):
        farthest = int(np.argmax(distances))
        center_indices.append(farthest)
        new_distances = np.sum((points - points[farthest]) ** 2, axis=1)
        closer = new_distances < distances
        labels[closer] = i
        distances = np.minimum(distances, new_distances)
    return np.asarray(center_indices, dtype=np.int64), labels, float(np.sqrt(distances.max()))


def build_model(sources: np.ndarray,
                weights: np.ndarray,
                bandwidth: float,
                k: int,
                p: int,
                rng: Union[np.random.Generator, None] = None) -> FGTModel:
    """Clusters the sources and computes the expansion coefficients.

    Args:
        sources: The Nx3 source points.
        weights: The N source weights.
        bandwidth: The bandwidth `h` of the kernel `exp(-||q - s||^2 / h^2)`.
        k: The number of clusters. Clamped to the number of sources.
        p: The truncation order of the Taylor expansion.
        rng: Draws the first cluster center.

    Returns:
        The model.
    """
    k = max(1, min(int(k), len(sources)))
    center_indices, labels, radius = _k_center_clustering(sources, k, rng)
    centers = sources[center_indices]

    alphas = _multi_indices(p)
    dx = (sources - centers[labels]) / bandwidth
    source_terms = _monomials(dx, alphas) * (weights * np.exp(-np.sum(dx ** 2, axis=1)))[:, None]
    coefficients = np.zeros((k, len(alphas)))
    np.add.at(coefficients, labels, source_terms)
    coefficients *= _expansion_constants(alphas)
    return FGTModel(centers=centers, coefficients=coefficients, radius=radius, order=p)


def evaluate(model: FGTModel,
             queries: np.ndarray,
             bandwidth: float,
             far_field_ratio: float,
             k: int,
             p: int) -> np.ndarray:
    """Evaluates the Gaussian sum at query points.

    Args:
        model: The model built from the sources.
        queries: The Qx3 query points.
        bandwidth: The bandwidth `h` used to build the model.
        far_field_ratio: Clusters with `||q - c|| / h > sqrt(far_field_ratio) + r / h` don't contribute to query
            `q`, where `r` is the model radius.
        k: The number of clusters the model was built with.
        p: The truncation order the model was built with.

    Raises:
        ValueError: If `k` or `p` don't match the model.

    Returns:
        The approximated Gaussian sum for each query point.
    """
    if p != model.order or len(model.centers) > k:
        raise ValueError(f"Model has order {model.order} and {len(model.centers)} clusters but is evaluated with "
                         f"p={p} and K={k}.")
    alphas = _multi_indices(p)
    num_centers = len(model.centers)
    cutoff = (np.sqrt(far_field_ratio) + model.radius / bandwidth) ** 2
    chunk_size = max(1, _MAX_CHUNK_ELEMENTS // (num_centers * len(alphas)))

    result = np.zeros(len(queries))
    for start in range(0, len(queries), chunk_size):
        chunk = queries[start:start + chunk_size]
        dy = (chunk[:, None, :] - model.centers[None, :, :]) / bandwidth
        distances = np.sum(dy ** 2, axis=2)
        query_index, center_index = np.nonzero(distances <= cutoff)
        if len(query_index) == 0:
            continue
        terms = _monomials(dy[query_index, center_index], alphas)
        values = np.exp(-distances[query_index, center_index]) * np.sum(terms * model.coefficients[center_index],
                                                                        axis=1)
        result[start:start + len(chunk)] = np.bincount(query_index, weights=values, minlength=len(chunk))
    return result
