"""Closed-form rigid motion estimation shared by the registration engines.

All estimators return the transform `T` with `T(moving) ≈ fixed`.

Classes:
    RigidTransform: Rotation, translation and uniform scale applied as `scale * R @ p + t`.

Functions:
    weighted_procrustes: Least-squares rigid motion from soft (probabilistic) correspondences.
    procrustes: Least-squares rigid motion from one-to-one correspondences.
    principal_axes_alignment: Correspondence-free rigid motion aligning the principal axes of two clouds.
"""
import logging
from typing import Tuple, Union

import numpy as np

from .utils import DegenerateInputError, DIMENSION

logger = logging.getLogger(__name__)

_TINY = 1e-12
_SKEW_AMBIGUITY = 1e-3


class RigidTransform:
    """Rotation, translation and uniform scale. Points are mapped as `scale * rotation @ point + translation`.

    Attributes:
        rotation: The 3x3 proper orthonormal rotation matrix.
        translation: The translation vector.
        scale: The uniform scale. 1 if held constant.
    """

    def __init__(self,
                 rotation: Union[np.ndarray, None] = None,
                 translation: Union[np.ndarray, None] = None,
                 scale: float = 1.0) -> None:
        self.rotation = np.eye(DIMENSION) if rotation is None else np.asarray(rotation, dtype=np.float64)
        self.translation = np.zeros(DIMENSION) if translation is None else np.asarray(translation, dtype=np.float64)
        self.scale = float(scale)

    @property
    def transformation(self) -> np.ndarray:
        """The 4x4 homogenous transformation matrix with `scale * rotation` as its upper-left block."""
        T = np.eye(4)
        T[:3, :3] = self.scale * self.rotation
        T[:3, 3] = self.translation
        return T

    @classmethod
    def from_transformation(cls, transformation: np.ndarray) -> "RigidTransform":
        """Splits a 4x4 homogenous transformation matrix with uniform scale into rotation, translation and scale."""
        transformation = np.asarray(transformation, dtype=np.float64).reshape(4, 4)
        scale = float(np.cbrt(np.linalg.det(transformation[:3, :3])))
        if not np.isfinite(scale) or scale <= 0:
            raise DegenerateInputError(f"Transformation has no proper rotation (scale={scale}).")
        return cls(rotation=transformation[:3, :3] / scale, translation=transformation[:3, 3], scale=scale)

    def apply(self, points: np.ndarray) -> np.ndarray:
        return self.scale * points @ self.rotation.T + self.translation

    def inverse(self) -> "RigidTransform":
        """Returns the transform mapping the other way, i.e. `inverse().apply(apply(p)) == p`."""
        rotation = self.rotation.T
        scale = 1.0 / self.scale
        return RigidTransform(rotation=rotation, translation=-scale * rotation @ self.translation, scale=scale)

    def __repr__(self) -> str:
        return (f"RigidTransform(rotation={self.rotation.tolist()}, translation={self.translation.tolist()}, "
                f"scale={self.scale})")


def _proper_rotation(u: np.ndarray, vt: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Returns `u @ diag(1, 1, det(u @ vt)) @ vt` and the diagonal, turning a reflection into a rotation."""
    diag = np.ones(DIMENSION)
    diag[-1] = np.sign(np.linalg.det(u @ vt))
    return u @ np.diag(diag) @ vt, diag


def _check_rotation(rotation: np.ndarray, translation: np.ndarray, scale: float) -> None:
    if not (np.all(np.isfinite(rotation)) and np.all(np.isfinite(translation)) and np.isfinite(scale)) or scale <= 0:
        raise DegenerateInputError(f"Rigid motion estimate is degenerate (scale={scale}).")


def weighted_procrustes(fixed: np.ndarray,
                        moving: np.ndarray,
                        p1: np.ndarray,
                        pt1: np.ndarray,
                        px: np.ndarray,
                        hold_scale_constant: bool = True) -> Tuple[RigidTransform, float]:
    """Least-squares rigid motion from soft correspondences (the Coherent Point Drift M-step).

    With `P` the MxN soft assignment between moving and fixed points, the inputs are its row sums `p1`, column sums
    `pt1` and `px = P @ fixed`. The weighted cross-covariance of both clouds is decomposed by SVD and any reflection
    is corrected so the rotation always has determinant +1.

    Args:
        fixed: The Nx3 fixed points.
        moving: The Mx3 moving points.
        p1: Responsibility mass explained by each moving point.
        pt1: Responsibility mass explained by each fixed point.
        px: The Mx3 responsibility-weighted sums of fixed points per moving point.
        hold_scale_constant: Keep the scale at 1 instead of estimating it.

    Raises:
        DegenerateInputError: If the total responsibility mass or the weighted spread of the clouds vanishes.

    Returns:
        The transform moving `moving` onto `fixed` and the updated noise variance.
    """
    Np = float(np.sum(p1))
    if not np.isfinite(Np) or Np <= _TINY:
        raise DegenerateInputError(f"Total responsibility mass is {Np}. No correspondences left to align.")

    center_fixed = fixed.T @ pt1 / Np
    center_moving = moving.T @ p1 / Np

    A = (moving.T @ px).T - Np * np.outer(center_fixed, center_moving)
    u, singular_values, vt = np.linalg.svd(A)
    rotation, diag = _proper_rotation(u, vt)

    scale_numerator = float(np.sum(singular_values * diag))
    sigma_subtrahend = float(pt1 @ np.sum(fixed ** 2, axis=1) - Np * center_fixed @ center_fixed)
    scale_denominator = float(p1 @ np.sum(moving ** 2, axis=1) - Np * center_moving @ center_moving)

    if hold_scale_constant:
        scale = 1.0
        sigma_squared = abs(sigma_subtrahend + scale_denominator - 2 * scale_numerator) / (Np * DIMENSION)
    else:
        if scale_denominator <= _TINY or scale_numerator <= _TINY:
            raise DegenerateInputError(f"Weighted spread of the moving cloud is {scale_denominator}. "
                                       "Can't estimate scale.")
        scale = scale_numerator / scale_denominator
        sigma_squared = abs(sigma_subtrahend - scale * scale_numerator) / (Np * DIMENSION)

    translation = center_fixed - scale * rotation @ center_moving
    _check_rotation(rotation, translation, scale)
    return RigidTransform(rotation=rotation, translation=translation, scale=scale), sigma_squared


def procrustes(fixed: np.ndarray,
               moving: np.ndarray,
               hold_scale_constant: bool = True) -> Tuple[RigidTransform, float]:
    """Least-squares rigid motion from one-to-one correspondences, i.e. `moving[i]` corresponds to `fixed[i]`.

    Same estimator as `weighted_procrustes` with every weight set to 1.

    Args:
        fixed: The Nx3 fixed points.
        moving: The Nx3 moving points paired row by row with `fixed`.
        hold_scale_constant: Keep the scale at 1 instead of estimating it.

    Returns:
        The transform moving `moving` onto `fixed` and the mean squared residual per coordinate.
    """
    if len(fixed) != len(moving):
        raise DegenerateInputError(f"One-to-one correspondence needs equally sized clouds but got {len(fixed)} and "
                                   f"{len(moving)} points.")
    ones = np.ones(len(fixed))
    return weighted_procrustes(fixed, moving, p1=ones, pt1=ones, px=fixed, hold_scale_constant=hold_scale_constant)


def _orient_axes(axes: np.ndarray,
                 centered: np.ndarray,
                 rng: Union[np.random.Generator, None] = None) -> np.ndarray:
    """Flips principal axes so the third moment of the projections onto each axis is positive.

    The sign of an axis along which the cloud is (close to) symmetric is ambiguous and drawn from `rng` if given.
    """
    projections = centered @ axes
    second_moment = np.mean(projections ** 2, axis=0)
    skewness = np.mean(projections ** 3, axis=0) / np.maximum(second_moment, _TINY) ** 1.5
    signs = np.where(skewness < 0, -1.0, 1.0)
    ambiguous = np.abs(skewness) < _SKEW_AMBIGUITY
    if rng is not None and np.any(ambiguous):
        signs[ambiguous] = rng.choice([-1.0, 1.0], size=int(np.sum(ambiguous)))
    return axes * signs


def principal_axes_alignment(fixed: np.ndarray,
                             moving: np.ndarray,
                             hold_scale_constant: bool = True,
                             rng: Union[np.random.Generator, None] = None) -> Tuple[RigidTransform, float]:
    """Correspondence-free rigid motion aligning the principal axes of `moving` with those of `fixed`.

    Each centered cloud is decomposed by SVD. Its left singular vectors are its principal axes, which do not depend
    on the order of the points. Rotation is `U_fixed @ diag(1, 1, d) @ U_moving^T` with `d` chosen so the
    determinant is +1. The fit is scored on the row-paired clouds, so it does depend on their order.

    Args:
        fixed: The Nx3 fixed points.
        moving: The Nx3 moving points paired row by row with `fixed`.
        hold_scale_constant: Keep the scale at 1 instead of estimating it from the RMS radii of both clouds.
        rng: Random generator resolving the sign of axes along which a cloud is symmetric.

    Raises:
        DegenerateInputError: If the clouds differ in size or either cloud has (almost) no spread.

    Returns:
        The transform moving `moving` onto `fixed` and the mean squared distance between the transformed `moving`
        points and the `fixed` points they are paired with.
    """
    if len(fixed) != len(moving):
        raise DegenerateInputError(f"Paired clouds need equal sizes but have {len(fixed)} and {len(moving)} points.")
    if len(fixed) < DIMENSION:
        raise DegenerateInputError(f"Need at least {DIMENSION} points per cloud to determine principal axes.")
    center_fixed = fixed.mean(axis=0)
    center_moving = moving.mean(axis=0)
    centered_fixed = fixed - center_fixed
    centered_moving = moving - center_moving

    u_fixed, s_fixed, _ = np.linalg.svd(centered_fixed.T, full_matrices=False)
    u_moving, s_moving, _ = np.linalg.svd(centered_moving.T, full_matrices=False)
    spread_fixed = s_fixed / np.sqrt(len(fixed))
    spread_moving = s_moving / np.sqrt(len(moving))
    if spread_fixed[0] <= _TINY or spread_moving[0] <= _TINY:
        raise DegenerateInputError("Point cloud has no spread. Can't determine principal axes.")

    u_fixed = _orient_axes(u_fixed, centered_fixed, rng)
    u_moving = _orient_axes(u_moving, centered_moving, rng)
    rotation, _ = _proper_rotation(u_fixed, u_moving.T)

    scale = 1.0
    if not hold_scale_constant:
        scale = float(np.sqrt(np.sum(spread_fixed ** 2) / np.sum(spread_moving ** 2)))
    translation = center_fixed - scale * rotation @ center_moving
    _check_rotation(rotation, translation, scale)

    transform = RigidTransform(rotation=rotation, translation=translation, scale=scale)
    error = float(np.mean(np.sum((transform.apply(moving) - fixed) ** 2, axis=1)))
    return transform, error
