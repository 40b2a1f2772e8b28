"""Rigid point cloud registration with Coherent Point Drift and a non-iterative multi-trial search.

Files:
    __init__.py: This file.
    registration.py: Point cloud registration functionality.
    interfaces.py: Interfaces and base classes.
    rigid.py: Closed-form rigid motion estimation shared by the registration engines.
    probabilities.py: Soft correspondences between two point clouds (the Coherent Point Drift E-step).
    fgt.py: The improved Fast Gauss Transform.
    utils.py: Utility functions used throughout the project.

Classes:
    registration.CoherentPointDrift: The rigid Coherent Point Drift (CPD) algorithm.
    registration.NonIterative: Non-iterative registration from many random closed-form trials.
    registration.NonIterativeResult: A candidate transform of a single non-iterative trial.
    registration.IterativeClosestPoint: The Iterative Closest Point (ICP) algorithm.
    interfaces.RegistrationInterface: Interface for all registration classes.
    interfaces.RegistrationResult: The transform, iteration count, error and runtime of a registration.
    rigid.RigidTransform: Rotation, translation and uniform scale.
    probabilities.Probabilities: The aggregates of the soft assignment matrix.
    fgt.FGTModel: Cluster centers and Taylor coefficients of a set of weighted sources.
    utils.ApproximationTypes: Supported approximation policies of the registration engines.
    utils.ExecutionPolicyTypes: Supported execution policies.
    utils.ComputationMethodTypes: Supported registration methods.
    utils.InvalidConfigurationError: Raised for unsupported or out-of-range registration parameters.
    utils.DegenerateInputError: Raised for input data no rigid transform can be estimated from.

Functions:
    get_logger: Returns the package-wide logger
    set_logger_level: Sets the package-wide logger level.
    rigid.weighted_procrustes: Least-squares rigid motion from soft (probabilistic) correspondences.
    rigid.procrustes: Least-squares rigid motion from one-to-one correspondences.
    rigid.principal_axes_alignment: Correspondence-free rigid motion aligning the principal axes of two clouds.
    probabilities.compute_probabilities_fast: Chooses the E-step according to the approximation policy.
    fgt.build_model: Clusters the sources and computes the expansion coefficients.
    fgt.evaluate: Evaluates a model at query points.
    utils.eval_data: Convenience function that automatically determines the data type and returns a Nx3 point array.
    utils.eval_transformation_data: Evaluates different types of transformation data to obtain a 4x4 matrix.
    utils.get_random_point_cloud: Samples a synthetic point cloud inside an axis-aligned box.
    utils.get_random_transformation: Samples a synthetic rigid transformation.
    utils.get_transformation_error: Computes the rotational and translational error between two transformations.
    utils.draw_geometries: Convenience function to draw 3D geometries.
"""

import logging

logger = logging.getLogger(__name__)


def get_logger() -> logging.Logger:
    """Returns the package-wide logger.

    Returns:
        logging.Logger: The package-wide logger.
    """
    return logger


def set_logger_level(level: int) -> None:
    """Sets the package-wide logger level.

    Args:
        level (int): The logger level.
    """
    logger.setLevel(level=level)
