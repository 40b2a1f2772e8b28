"""Utility functions used throughout the project.

Classes:
    ApproximationTypes: Supported approximation policies of the registration engines.
    ExecutionPolicyTypes: Supported execution policies (parallel or sequential).
    ComputationMethodTypes: Supported registration methods.
    InvalidConfigurationError: Raised for unsupported or out-of-range registration parameters.
    DegenerateInputError: Raised for input data no rigid transform can be estimated from.

Functions:
    check_policy: Validates that a value is exactly one member of a policy type.
    eval_data: Convenience function that automatically determines the data type and returns a Nx3 point array.
    read_point_cloud: Reads point cloud data from file.
    get_point_cloud_from_points: Convenience function to obtain point clouds from points.
    eval_transformation_data: Evaluates different types of transformation data to obtain a 4x4 transformation matrix.
    get_transformation_matrix_from_xyz: Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector
                                        and XYZ Euler angles.
    get_transformation_matrix_from_quaternion: Constructs a 4x4 homogenous transformation matrix from a XYZ translation
                                               vector and WXYZ quaternion values.
    get_ground_truth_pose_from_file: Reads ground truth from JSON file.
    transform_points: Applies a 4x4 transformation matrix to a Nx3 point array.
    get_random_permutation: Draws a random permutation from an explicitly passed random generator.
    apply_permutation: Reorders points by a permutation, truncating to the permutation length.
    get_subcloud: Draws a random subset of points.
    get_corresponding_points: Finds nearest neighbour correspondences within a maximum squared distance.
    get_mean_squared_error: Computes the mean squared distance between paired points.
    get_random_point_cloud: Samples a synthetic point cloud inside an axis-aligned box.
    get_random_transformation: Samples a synthetic rigid transformation.
    draw_geometries: Convenience function to draw 3D geometries.
    get_transformation_error: Computes the rotational and translational error between estimated and ground-truth
                              transformation data.
    get_rotation_error: Computes the error between estimated and ground-truth rotation in degrees or radians.
    get_translation_error: Computes the translational error between estimated and ground-truth translation.
"""
import json
import logging
import math
import os
from enum import Flag, auto
from typing import Any, List, Union, Tuple

import numpy as np
import open3d as o3d

PointCloud = o3d.geometry.PointCloud
TriangleMesh = o3d.geometry.TriangleMesh
KDTreeFlann = o3d.geometry.KDTreeFlann

InputTypes = Union[PointCloud, np.ndarray, str]
TransformationTypes = Union[np.ndarray, List[float], List[List[float]], str]

DIMENSION = 3

logger = logging.getLogger(__name__)


class ApproximationTypes(Flag):
    """Supported approximation policies of the registration engines."""
    NONE = auto()
    FULL = auto()
    HYBRID = auto()


class ExecutionPolicyTypes(Flag):
    """Supported execution policies."""
    PARALLEL = auto()
    SEQUENTIAL = auto()


class ComputationMethodTypes(Flag):
    """Supported registration methods."""
    ICP = auto()
    CPD = auto()
    NON_ITERATIVE = auto()


class InvalidConfigurationError(ValueError):
    """Raised for unsupported or out-of-range registration parameters."""


class DegenerateInputError(ValueError):
    """Raised for input data no rigid transform can be estimated from."""


def check_policy(value: Any, policy_type: type, name: str) -> Flag:
    """Validates that `value` is exactly one member of `policy_type`.

    Flag combinations like `ApproximationTypes.FULL | ApproximationTypes.HYBRID` are rejected.

    Args:
        value: The value to check.
        policy_type: The `Flag` subclass `value` must belong to.
        name: The parameter name used in the error message.

    Raises:
        InvalidConfigurationError: If `value` is not a single member of `policy_type`.

    Returns:
        The validated value.
    """
    if not isinstance(value, policy_type) or value not in list(policy_type):
        raise InvalidConfigurationError(f"`{name}` must be one of `{policy_type.__name__}` but is {value}.")
    return value


def eval_data(data: InputTypes, **kwargs: Any) -> np.ndarray:
    """Convenience function that automatically determines the data type and loads the data accordingly.

    Args:
        data: The data to be evaluated (read, converted).

    Raises:
        TypeError: If `data` has an unsupported type.
        DegenerateInputError: If the evaluated cloud is empty or contains non-finite coordinates.

    Returns:
        The data evaluated as a Nx3 point array.
    """
    if isinstance(data, PointCloud):
        logger.debug("Data is point cloud. Converting to array.")
        points = np.asarray(data.points)
    elif isinstance(data, str):
        logger.debug("Trying to read point cloud data from file.")
        points = np.asarray(read_point_cloud(filename=data, **kwargs).points)
    elif isinstance(data, (np.ndarray, list)):
        points = np.asarray(data)
        if points.ndim != 2 or points.shape[1] not in [3, 6, 9]:
            raise DegenerateInputError(
                f"Point cloud data must be of shape Nx3 (xyz), Nx6 or Nx9 (rgb, normals) but is {points.shape}.")
    else:
        raise TypeError(f"Can't process data of type {type(data)}.")

    points = np.asarray(points[:, :DIMENSION], dtype=np.float64)
    if len(points) == 0:
        raise DegenerateInputError("Point cloud is empty.")
    if not np.all(np.isfinite(points)):
        raise DegenerateInputError("Point cloud contains NaN or infinite coordinates.")
    return points


def read_point_cloud(filename: str, **kwargs: Any) -> PointCloud:
    """Reads point cloud data from file. Falls back to the vertices of a triangle mesh.

    Args:
        filename: The path to the point cloud or triangle mesh file.

    Returns:
        The point cloud data read from file.
    """
    if filename.endswith(".npy"):
        potential_points = np.load(filename)
        if potential_points.ndim == 2 and potential_points.shape[1] in [3, 6, 9]:
            return get_point_cloud_from_points(points=potential_points[:, :3])
        else:
            raise ValueError(f"Numpy array read from file has shape {potential_points.shape} which is not supported.")
    if not os.path.exists(filename):
        raise FileNotFoundError(f"No file found at {filename}.")
    point_cloud = o3d.io.read_point_cloud(filename=filename,
                                          format=kwargs.get("format", 'auto'),
                                          remove_nan_points=kwargs.get("remove_nan_points", True),
                                          remove_infinite_points=kwargs.get("remove_infinite_points", True),
                                          print_progress=kwargs.get("print_progress", False))
    if point_cloud.is_empty():
        logger.debug(f"No points read from {filename}. Trying to read triangle mesh vertices.")
        mesh = o3d.io.read_triangle_mesh(filename=filename,
                                         enable_post_processing=False,
                                         print_progress=kwargs.get("print_progress", False))
        point_cloud = PointCloud(mesh.vertices)
    return point_cloud


def get_point_cloud_from_points(points: np.ndarray) -> PointCloud:
    """Convenience function to obtain point clouds from points.

    Args:
        points: A Nx3 array of vertex coordinates.

    Returns:
        The point cloud created from the points.
    """
    return PointCloud(o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64)))


def eval_transformation_data(transformation_data: TransformationTypes) -> np.ndarray:
    """Evaluates different types of transformation data to obtain a 4x4 transformation matrix.

    Args:
        transformation_data: Array or list(s) containing transformation (rotation, translation) data or the path to
                             a ground truth JSON file.

    Returns:
        A 4x4 transformation matrix.
    """
    if isinstance(transformation_data, str):
        if os.path.exists(transformation_data):
            return get_ground_truth_pose_from_file(path_to_ground_truth_json=transformation_data)
        data = json.loads(transformation_data)
    else:
        data = transformation_data

    if isinstance(data, np.ndarray):
        if data.size == 16:
            return data.reshape(4, 4).astype(np.float64)
        elif data.size in [3, 4]:
            T = np.eye(4)
            T[:3, 3] = data.ravel()[:3]
            return T
        elif data.size == 9:
            T = np.eye(4)
            T[:3, :3] = data.reshape(3, 3)
            return T
        else:
            raise ValueError(f"Transformation data needs 3, 4, 9 or 16 values but has {data.size}.")
    elif isinstance(data, list):
        if len(data) == 2:
            if len(data[0]) == 3 and len(data[1]) >= 3:
                return get_transformation_matrix_from_xyz(rotation_xyz=data[0], translation_xyz=data[1])
            elif len(data[0]) == 4 and len(data[1]) >= 3:
                return get_transformation_matrix_from_quaternion(rotation_wxyz=data[0], translation_xyz=data[1])
            elif len(data[0]) == 9 and len(data[1]) >= 3:
                T = np.eye(4)
                T[:3, :3] = np.asarray(data[0]).reshape(3, 3)
                T[:3, 3] = np.asarray(data[1]).ravel()[:3]
                return T
            else:
                raise ValueError("Transformation needs 3, 4 or 9 rotation values and 3 or 4 translation values.")
        elif len(data) == 3:
            logger.debug("Ambiguous input. Could be XYZ Euler angles or XYZ translation. Interpreting as translation.")
            T = np.eye(4)
            T[:3, 3] = data
            return T
        elif len(data) == 6:
            return get_transformation_matrix_from_xyz(rotation_xyz=data[:3], translation_xyz=data[3:])
        elif len(data) == 7:
            return get_transformation_matrix_from_quaternion(rotation_wxyz=data[:4], translation_xyz=data[4:])
        elif len(data) == 9:
            T = np.eye(4)
            T[:3, :3] = np.asarray(data).reshape(3, 3)
            return T
        elif len(data) in [12, 16]:
            T = np.eye(4)
            T[:3, :3] = np.asarray(data[:9]).reshape(3, 3)
            T[:3, 3] = data[9:12]
            return T
        else:
            raise ValueError(f"Transformation data of length {len(data)} is not supported.")
    else:
        raise TypeError(f"Transformation data of unsupported type {type(data)}.")


def get_transformation_matrix_from_xyz(rotation_xyz: Union[np.ndarray, list] = np.zeros(3),
                                       translation_xyz: Union[np.ndarray, list] = np.zeros(3)) -> np.ndarray:
    """Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector and XYZ Euler angles.

    Args:
        rotation_xyz: The XYZ Euler angles in degrees.
        translation_xyz: The XYZ translation vector.

    Returns:
        The 4x4 homogenous transformation matrix.
    """
    rx, ry, rz = np.asarray(rotation_xyz).ravel()[:3]
    T = np.eye(4)
    T[:3, :3] = PointCloud().get_rotation_matrix_from_xyz(np.array([np.radians(rx), np.radians(ry), np.radians(rz)]))
    T[:3, 3] = np.asarray(translation_xyz).ravel()[:3]
    return T


def get_transformation_matrix_from_quaternion(rotation_wxyz: Union[np.ndarray, list] = np.array([1.0, 0, 0, 0]),
                                              translation_xyz: Union[np.ndarray, list] = np.zeros(3)) -> np.ndarray:
    """Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector and WXYZ quaternion values.

    Args:
        rotation_wxyz: The WXYZ quaternion values.
        translation_xyz: The XYZ translation vector.

    Returns:
        The 4x4 homogenous transformation matrix.
    """
    T = np.eye(4)
    T[:3, :3] = PointCloud().get_rotation_matrix_from_quaternion(np.asarray(rotation_wxyz).ravel()[:4])
    T[:3, 3] = np.asarray(translation_xyz).ravel()[:3]
    return T


def get_ground_truth_pose_from_file(path_to_ground_truth_json: str) -> np.ndarray:
    """Reads ground truth from JSON file. Must contain keys starting with 'rot' (rotation) and 'tra' (translation).

    Args:
        path_to_ground_truth_json: Path to the ground truth JSON file.

    Returns:
        The ground truth pose as 4x4 transformation matrix.
    """
    with open(path_to_ground_truth_json) as f:
        ground_truth = json.load(f)

    if not (any(key.startswith("rot") for key in ground_truth) and any(key.startswith("tra") for key in ground_truth)):
        raise ValueError("No key starting with 'rot' and/or 'tra' found in ground truth data.")
    for key, value in ground_truth.items():
        if key.startswith("rot"):
            R = value
        elif key.startswith("tra"):
            t = value

    return eval_transformation_data(transformation_data=[np.asarray(R).ravel().tolist(),
                                                         np.asarray(t).ravel().tolist()])


def transform_points(points: np.ndarray, transformation: np.ndarray) -> np.ndarray:
    """Applies a 4x4 transformation matrix to a Nx3 point array.

    Args:
        points: The Nx3 points.
        transformation: The 4x4 (possibly scaled) homogenous transformation matrix.

    Returns:
        The transformed Nx3 points.
    """
    return points @ transformation[:3, :3].T + transformation[:3, 3]


def get_random_permutation(size: int, rng: np.random.Generator) -> np.ndarray:
    return rng.permutation(size)


def apply_permutation(points: np.ndarray, permutation: np.ndarray) -> np.ndarray:
    """Reorders `points` so that row `i` of the result is `points[permutation[i]]`.

    The result has `len(permutation)` rows, so a permutation of a smaller cloud's size truncates a larger one.
    """
    return points[permutation]


def get_subcloud(points: np.ndarray, size: int, rng: np.random.Generator) -> np.ndarray:
    """Draws `size` distinct random points. Returns all points in random order if `size` exceeds the cloud size.

    Args:
        points: The Nx3 points.
        size: The number of points to draw. All points if -1.
        rng: The random generator.

    Returns:
        The drawn points.
    """
    if size == -1 or size >= len(points):
        return apply_permutation(points, get_random_permutation(len(points), rng))
    return points[rng.choice(len(points), size=size, replace=False)]


def get_corresponding_points(points: np.ndarray,
                             reference: np.ndarray,
                             max_distance_squared: float = np.inf,
                             tree: Union[KDTreeFlann, None] = None) -> Tuple[np.ndarray, np.ndarray,
                                                                             np.ndarray, np.ndarray]:
    """Finds the nearest neighbour in `reference` for every point in `points`.

    Pairs with a squared distance above `max_distance_squared` are discarded.

    Args:
        points: The Nx3 query points.
        reference: The Mx3 reference points.
        max_distance_squared: Maximum squared correspondence distance.
        tree: A KD-tree built from `reference`. Built on the fly if not provided.

    Returns:
        The corresponding query points, reference points, query indices and reference indices.
    """
    reference_points = np.asarray(reference, dtype=np.float64)
    if tree is None:
        tree = KDTreeFlann(get_point_cloud_from_points(reference_points))

    indices_before = list()
    indices_after = list()
    for i, point in enumerate(points):
        k, index, distance = tree.search_knn_vector_3d(point, 1)
        if k > 0 and distance[0] <= max_distance_squared:
            indices_before.append(i)
            indices_after.append(index[0])
    indices_before = np.asarray(indices_before, dtype=np.int64)
    indices_after = np.asarray(indices_after, dtype=np.int64)
    return points[indices_before], reference_points[indices_after], indices_before, indices_after


def get_mean_squared_error(points: np.ndarray, other_points: np.ndarray) -> float:
    """Computes the mean squared distance between paired points. Infinite if there are no pairs.

    Args:
        points: The Nx3 points.
        other_points: The Nx3 points paired row by row with `points`.

    Returns:
        The mean squared error.
    """
    if len(points) == 0:
        return np.inf
    return float(np.mean(np.sum((points - other_points) ** 2, axis=1)))


def get_random_point_cloud(size: int,
                           rng: np.random.Generator,
                           corner: Union[np.ndarray, list] = (-1.0, -1.0, -1.0),
                           extent: Union[np.ndarray, list] = (2.0, 2.0, 2.0)) -> np.ndarray:
    """Samples a synthetic point cloud uniformly inside an axis-aligned box.

    Args:
        size: The number of points.
        rng: The random generator.
        corner: The minimum corner of the box.
        extent: The edge lengths of the box.

    Returns:
        The Nx3 points.
    """
    corner = np.asarray(corner, dtype=np.float64)
    return corner + rng.random((size, DIMENSION)) * np.asarray(extent, dtype=np.float64)


def get_random_transformation(rng: np.random.Generator,
                              rotation_range: float = np.pi / 4,
                              translation_range: float = 1.0) -> np.ndarray:
    """Samples a rotation of up to `rotation_range` radians about a random axis and a random translation.

    Args:
        rng: The random generator.
        rotation_range: The maximum rotation angle in radians.
        translation_range: The maximum absolute value of each translation component.

    Returns:
        The 4x4 homogenous transformation matrix.
    """
    axis = rng.normal(size=DIMENSION)
    axis /= np.linalg.norm(axis)
    angle = rng.uniform(0.0, rotation_range)
    T = np.eye(4)
    T[:3, :3] = PointCloud().get_rotation_matrix_from_axis_angle(axis * angle)
    T[:3, 3] = rng.uniform(-translation_range, translation_range, size=DIMENSION)
    return T


def draw_geometries(geometries: List[o3d.geometry.Geometry],
                    window_name: str = "Visualizer",
                    size: Tuple[int, int] = (800, 600),
                    **kwargs: Any) -> None:
    """Convenience function to draw 3D geometries.

    Args:
        geometries: A list of Open3D geometry objects.
        window_name: The name of the visualization window.
        size: The width and height of the visualization window.
    """
    o3d.visualization.draw_geometries(geometries,
                                      window_name=window_name,
                                      width=size[0],
                                      height=size[1],
                                      point_show_normal=kwargs.get("point_show_normal", False))


def get_transformation_error(transformation_estimate: TransformationTypes,
                             transformation_ground_truth: TransformationTypes,
                             in_degrees: bool = True) -> Tuple[float, float]:
    """Computes the rotational and translational error between estimated and ground-truth transformation data.

    Scale is removed from both rotation blocks before comparison.

    Args:
        transformation_estimate: The estimated transformation.
        transformation_ground_truth: The ground-truth transformation.
        in_degrees: Return rotational error in degrees instead of radians.

    Returns:
        Rotational and translation error between estimated and ground-truth transformation.
    """
    T_est = eval_transformation_data(transformation_data=transformation_estimate)
    T_gt = eval_transformation_data(transformation_data=transformation_ground_truth)
    R_est = T_est[:3, :3] / np.cbrt(np.linalg.det(T_est[:3, :3]))
    R_gt = T_gt[:3, :3] / np.cbrt(np.linalg.det(T_gt[:3, :3]))
    error_rot = get_rotation_error(rotation_estimate=R_est, rotation_ground_truth=R_gt, in_degrees=in_degrees)
    error_trans = get_translation_error(translation_estimate=T_est[:3, 3], translation_ground_truth=T_gt[:3, 3])
    return error_rot, error_trans


def get_rotation_error(rotation_estimate: np.ndarray,
                       rotation_ground_truth: np.ndarray,
                       in_degrees: bool = True) -> float:
    """Computes the error between estimated and ground-truth rotation in degrees or radians.

    Args:
        rotation_estimate: The estimated rotation.
        rotation_ground_truth: The ground-truth rotation.
        in_degrees: Return rotational error in degrees instead of radians.

    Returns:
        Error between estimated and ground-truth rotation in degrees or radians.
    """
    assert (rotation_estimate.shape == rotation_ground_truth.shape == (3, 3)),\
        f"Rotation estimate and ground truth both need to have shape (3, 3) but are {rotation_estimate.shape} and " \
        f"{rotation_ground_truth.shape}."
    error_cos = 0.5 * (np.trace(rotation_estimate @ rotation_ground_truth.T) - 1.0)

    # Avoid invalid values due to numerical errors.
    error_cos = min(1.0, max(-1.0, error_cos))

    error_rad = math.acos(error_cos)
    if in_degrees:
        return np.rad2deg(error_rad)
    return error_rad


def get_translation_error(translation_estimate: np.ndarray, translation_ground_truth: np.ndarray) -> float:
    """Computes the euclidean distance between estimated and ground-truth translation.

    Args:
        translation_estimate: The estimated translation.
        translation_ground_truth: The ground-truth translation.

    Returns:
        Distance between estimated and ground-truth translation.
    """
    assert (translation_estimate.size == translation_ground_truth.size == 3),\
        f"Translation estimate and ground truth need to have size 3 but have {translation_estimate.size} and " \
        f"{translation_ground_truth.size}."
    return float(np.linalg.norm(translation_ground_truth - translation_estimate))
