"""Unittests for the utils module."""
import json

import numpy as np
import open3d as o3d
import pytest

from .context import utils


@pytest.fixture
def rng():
    return np.random.default_rng(3)


@pytest.fixture
def points(rng):
    return rng.random(size=(1000, 3))


@pytest.fixture
def point_cloud(points):
    point_cloud = o3d.geometry.PointCloud()
    point_cloud.points = o3d.utility.Vector3dVector(points)
    return point_cloud


@pytest.fixture
def transformation_rotation_matrix():
    return [[0.0, -1.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0], [0.1, 0.2, 0.3]]


@pytest.fixture
def ground_truth_path(tmp_path, transformation_rotation_matrix):
    path = tmp_path / "ground_truth_pose.json"
    with open(path, 'w') as f:
        json.dump({"rotation": np.reshape(transformation_rotation_matrix[0], (3, 3)).tolist(),
                   "translation": transformation_rotation_matrix[1]}, f)
    return str(path)


class TestEvalData:

    def test_return_types(self, points, point_cloud, tmp_path):
        path = str(tmp_path / "points.npy")
        np.save(path, points)
        for data in [points, point_cloud, points.tolist(), path, np.hstack([points, points])]:
            _points = utils.eval_data(data)
            assert isinstance(_points, np.ndarray)
            assert _points.shape == (1000, 3)
            assert _points.dtype == np.float64
            assert np.allclose(_points, points)

    def test_point_cloud_file(self, point_cloud, points, tmp_path):
        path = str(tmp_path / "points.ply")
        o3d.io.write_point_cloud(path, point_cloud)
        assert np.allclose(utils.eval_data(path), points, atol=1e-6)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            utils.eval_data(str(tmp_path / "missing.ply"))

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            utils.eval_data(42)

    @pytest.mark.parametrize("data", [np.empty((0, 3)), np.ones((10, 2)), np.ones(3), np.full((5, 3), np.nan)])
    def test_degenerate(self, data):
        with pytest.raises(utils.DegenerateInputError):
            utils.eval_data(data)


class TestEvalTransformationData:

    def test_translation(self):
        T = utils.eval_transformation_data(transformation_data=[1, 2, 3])
        assert T.shape == (4, 4)
        assert np.all(T[:3, :3] == np.eye(3))
        assert np.all(T[:3, 3] == [1, 2, 3])

    def test_identity_transformation(self):
        T = utils.eval_transformation_data(transformation_data=np.eye(4))
        assert np.all(T == np.eye(4))

    def test_rotation_matrix(self, transformation_rotation_matrix):
        T = utils.eval_transformation_data(transformation_data=transformation_rotation_matrix)
        assert np.all(T[3, :] == [0, 0, 0, 1])
        assert np.all(T[:3, :3].ravel() == transformation_rotation_matrix[0])
        assert np.all(T[:3, 3] == transformation_rotation_matrix[1])

        R, t = transformation_rotation_matrix
        assert np.all(utils.eval_transformation_data(transformation_data=R + t) == T)
        assert np.all(utils.eval_transformation_data(transformation_data=json.dumps(R + t)) == T)

    def test_euler_angles(self):
        T = utils.eval_transformation_data(transformation_data=[[0, 0, 90], [1, 0, 0]])
        assert np.allclose(T[:3, :3] @ [1, 0, 0], [0, 1, 0])
        assert np.all(T[:3, 3] == [1, 0, 0])

    def test_quaternion(self):
        T = utils.eval_transformation_data(transformation_data=[1, 0, 0, 0, 1, 2, 3])
        assert np.allclose(T[:3, :3], np.eye(3))
        assert np.all(T[:3, 3] == [1, 2, 3])

    def test_ground_truth_file(self, ground_truth_path, transformation_rotation_matrix):
        T = utils.eval_transformation_data(transformation_data=ground_truth_path)
        assert np.allclose(T[:3, :3].ravel(), transformation_rotation_matrix[0])
        assert np.allclose(T[:3, 3], transformation_rotation_matrix[1])

    def test_unsupported(self):
        with pytest.raises(ValueError):
            utils.eval_transformation_data(transformation_data=[1, 2, 3, 4, 5])
        with pytest.raises(TypeError):
            utils.eval_transformation_data(transformation_data=1.0)


def test_check_policy():
    assert utils.check_policy(utils.ApproximationTypes.HYBRID, utils.ApproximationTypes, "approximation") == \
        utils.ApproximationTypes.HYBRID
    with pytest.raises(utils.InvalidConfigurationError):
        utils.check_policy("hybrid", utils.ApproximationTypes, "approximation")
    with pytest.raises(utils.InvalidConfigurationError):
        utils.check_policy(utils.ExecutionPolicyTypes.PARALLEL | utils.ExecutionPolicyTypes.SEQUENTIAL,
                           utils.ExecutionPolicyTypes, "execution_policy")


def test_transform_points(points):
    T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0, 0, 90], translation_xyz=[1, 0, 0])
    moved = utils.transform_points(points, T)
    assert np.allclose(moved[:, 0], 1 - points[:, 1])
    assert np.allclose(moved[:, 1], points[:, 0])
    assert np.allclose(moved[:, 2], points[:, 2])


class TestPermutationsAndSubclouds:

    def test_permutation(self, rng, points):
        permutation = utils.get_random_permutation(len(points), rng)
        permuted = utils.apply_permutation(points, permutation)
        assert np.allclose(np.sort(permuted, axis=0), np.sort(points, axis=0))
        assert np.allclose(permuted[np.argsort(permutation)], points)

    def test_permutation_truncates(self, rng, points):
        permutation = utils.get_random_permutation(100, rng)
        assert len(utils.apply_permutation(points, permutation)) == 100

    def test_reproducible(self, points):
        first = utils.get_random_permutation(len(points), np.random.default_rng(5))
        second = utils.get_random_permutation(len(points), np.random.default_rng(5))
        assert np.array_equal(first, second)

    @pytest.mark.parametrize("size, expected", [(10, 10), (-1, 1000), (5000, 1000)])
    def test_subcloud(self, rng, points, size, expected):
        subcloud = utils.get_subcloud(points, size, rng)
        assert subcloud.shape == (expected, 3)
        assert len(np.unique(subcloud, axis=0)) == expected


class TestCorrespondences:

    def test_nearest_neighbours(self, rng, points):
        query = points[:50] + 1e-6
        query_points, reference_points, query_indices, reference_indices = utils.get_corresponding_points(query,
                                                                                                          points)
        assert len(query_points) == 50
        assert np.array_equal(reference_indices, np.arange(50))
        assert np.array_equal(query_indices, np.arange(50))
        assert np.allclose(reference_points, points[:50])
        assert utils.get_mean_squared_error(query_points, reference_points) == pytest.approx(3e-12)

    def test_cutoff(self, points):
        query = np.array([[0.5, 0.5, 0.5], [10.0, 10.0, 10.0]])
        tree = o3d.geometry.KDTreeFlann(utils.get_point_cloud_from_points(points))
        query_points, _, query_indices, _ = utils.get_corresponding_points(query, points, max_distance_squared=1.0,
                                                                           tree=tree)
        assert np.array_equal(query_indices, [0])
        assert len(query_points) == 1

    def test_mean_squared_error_without_pairs(self):
        assert utils.get_mean_squared_error(np.empty((0, 3)), np.empty((0, 3))) == np.inf


class TestSyntheticData:

    def test_random_point_cloud(self, rng):
        points = utils.get_random_point_cloud(size=500, rng=rng, corner=(-2, 0, 0), extent=(4, 1, 1))
        assert points.shape == (500, 3)
        assert np.all(points.min(axis=0) >= [-2, 0, 0])
        assert np.all(points.max(axis=0) <= [2, 1, 1])

    def test_random_transformation(self, rng):
        T = utils.get_random_transformation(rng=rng, rotation_range=np.pi / 6, translation_range=0.5)
        R = T[:3, :3]
        assert np.allclose(R.T @ R, np.eye(3))
        assert np.isclose(np.linalg.det(R), 1.0)
        assert utils.get_rotation_error(R, np.eye(3), in_degrees=True) <= 30.0 + 1e-9
        assert np.all(np.abs(T[:3, 3]) <= 0.5)


class TestTransformationError:

    def test_zero_error(self, rng):
        T = utils.get_random_transformation(rng=rng)
        error_rot, error_trans = utils.get_transformation_error(T, T)
        assert error_rot == pytest.approx(0.0, abs=1e-5)
        assert error_trans == pytest.approx(0.0)

    def test_scale_is_ignored(self, rng):
        T = utils.get_random_transformation(rng=rng)
        scaled = T.copy()
        scaled[:3, :3] *= 2.0
        error_rot, _ = utils.get_transformation_error(scaled, T)
        assert error_rot == pytest.approx(0.0, abs=1e-5)

    def test_known_error(self):
        T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0, 0, 10], translation_xyz=[3, 4, 0])
        error_rot, error_trans = utils.get_transformation_error(T, np.eye(4))
        assert error_rot == pytest.approx(10.0)
        assert error_trans == pytest.approx(5.0)
        error_rot, _ = utils.get_transformation_error(T, np.eye(4), in_degrees=False)
        assert error_rot == pytest.approx(np.deg2rad(10.0))
