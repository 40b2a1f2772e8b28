"""Integration tests for the registration algorithms."""
import numpy as np
import pytest

from .context import interfaces, probabilities, registration, rigid, utils


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def before(rng):
    return utils.get_random_point_cloud(size=100, rng=rng)


@pytest.fixture
def ground_truth():
    T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0, 0, 30])
    T[:3, 3] = [1, 1, 0]
    return T


@pytest.fixture
def after(rng, before, ground_truth):
    after = utils.transform_points(before, ground_truth)
    return utils.apply_permutation(after, utils.get_random_permutation(len(after), rng))


@pytest.fixture
def spread_out(rng):
    before = utils.get_random_point_cloud(size=40, rng=rng, corner=(-10, -10, -10), extent=(20, 20, 20))
    T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[10, -5, 15], translation_xyz=[0.5, -0.5, 1.0])
    return before, utils.transform_points(before, T)[::-1], T


def assert_recovered(result, ground_truth, rotation_tolerance=1e-3, translation_tolerance=1e-3):
    error_rot, error_trans = utils.get_transformation_error(result.transformation, ground_truth, in_degrees=False)
    assert error_rot < rotation_tolerance
    assert error_trans < translation_tolerance


class TestRegistrationResult:

    def test_properties(self):
        transform = rigid.RigidTransform(translation=[1, 2, 3], scale=2.0)
        result = interfaces.RegistrationResult(transform=transform, iterations=3, error=0.5, runtime=1.0)
        assert np.allclose(result.transformation, transform.transformation)
        assert np.allclose(result.rotation, np.eye(3))
        assert np.allclose(result.translation, [1, 2, 3])
        assert result.scale == 2.0
        assert "iterations=3" in repr(result)


class TestCoherentPointDrift:

    def test_identity(self, rng):
        points = utils.get_random_point_cloud(size=500, rng=rng)
        result = registration.CoherentPointDrift().run(points, points)
        assert result.error <= 1e-4
        assert result.iterations <= 20
        assert np.allclose(result.rotation, np.eye(3), atol=1e-6)
        assert np.allclose(result.translation, 0, atol=1e-6)
        assert result.scale == 1.0

    def test_recovers_rotation_translation_and_permutation(self, before, after, ground_truth):
        result = registration.CoherentPointDrift(max_iteration=200).run(before, after)
        assert_recovered(result, ground_truth)
        assert np.isclose(np.linalg.det(result.rotation), 1.0)

    def test_recovers_scale(self, before, ground_truth):
        T = ground_truth.copy()
        T[:3, :3] *= 1.5
        cpd = registration.CoherentPointDrift(max_iteration=200, hold_scale_constant=False)
        result = cpd.run(before, utils.transform_points(before, T))
        assert np.isclose(result.scale, 1.5, atol=1e-3)
        assert_recovered(result, T)

    def test_sigma_squared_decays(self, before, after):
        history = list()

        def callback(iteration, error, sigma_squared, transform):
            history.append(sigma_squared)

        result = registration.CoherentPointDrift(max_iteration=200, callback=callback).run(before, after)
        history = np.asarray(history)
        assert len(history) == result.iterations
        assert history[-1] < 1e-2 * history[0]
        increases = np.diff(history) > 1e-9 * history[:-1]
        assert increases.sum() <= max(1, len(history) // 10)

    def test_approximation_consistency(self, spread_out):
        before, after, T = spread_out
        results = dict()
        for approximation in utils.ApproximationTypes:
            cpd = registration.CoherentPointDrift(max_iteration=200, approximation=approximation)
            results[approximation] = cpd.run(before, after)
        assert_recovered(results[utils.ApproximationTypes.NONE], T)
        for approximation in [utils.ApproximationTypes.HYBRID, utils.ApproximationTypes.FULL]:
            assert_recovered(results[approximation], T, rotation_tolerance=1e-2, translation_tolerance=1e-1)

    def test_parallel_matches_sequential(self, before, after):
        sequential = registration.CoherentPointDrift(chunk_size=16).run(before, after)
        parallel = registration.CoherentPointDrift(chunk_size=16,
                                                   execution_policy=utils.ExecutionPolicyTypes.PARALLEL).run(before,
                                                                                                             after)
        assert sequential.iterations == parallel.iterations
        assert np.allclose(sequential.transformation, parallel.transformation)

    def test_iteration_budget(self, before, after):
        result = registration.CoherentPointDrift(max_iteration=2).run(before, after)
        assert result.iterations == 2
        assert result.error > 1e-5

    def test_zero_iterations(self, before, after):
        result = registration.CoherentPointDrift(max_iteration=0).run(before, after)
        assert result.iterations == 0
        assert np.allclose(result.transformation, np.eye(4))

    def test_weight_is_clamped(self):
        assert registration.CoherentPointDrift(weight=0.0).weight == registration.MIN_WEIGHT
        assert registration.CoherentPointDrift(weight=2.0).weight == 1.0 - registration.MIN_WEIGHT
        assert registration.CoherentPointDrift(weight=0.3).weight == 0.3

    def test_outliers(self, rng, before, after, ground_truth):
        noisy_after = np.concatenate([after, utils.get_random_point_cloud(size=10, rng=rng, corner=(-3, -3, -3),
                                                                          extent=(6, 6, 6))])
        result = registration.CoherentPointDrift(max_iteration=200, weight=0.1).run(before, noisy_after)
        assert_recovered(result, ground_truth, rotation_tolerance=1e-2, translation_tolerance=1e-2)

    @pytest.mark.parametrize("approximation", [utils.ApproximationTypes.NONE, utils.ApproximationTypes.HYBRID])
    def test_outlier_term_is_fixed(self, monkeypatch, before, after, approximation):
        constants = list()

        def compute_probabilities_fast(*args, **kwargs):
            constants.append(kwargs["constant"])
            return probabilities.compute_probabilities_fast(*args, **kwargs)

        monkeypatch.setattr(registration, "compute_probabilities_fast", compute_probabilities_fast)
        cpd = registration.CoherentPointDrift(max_iteration=30, weight=0.1, approximation=approximation)
        result = cpd.run(before, after)
        expected = probabilities.outlier_constant(probabilities.initial_sigma_squared(before, after), 0.1,
                                                  len(before), len(after))
        assert len(constants) == result.iterations
        assert np.allclose(constants, expected)

    @pytest.mark.parametrize("kwargs", [{"approximation": "hybrid"},
                                        {"approximation": utils.ApproximationTypes.FULL |
                                         utils.ApproximationTypes.HYBRID},
                                        {"execution_policy": utils.ApproximationTypes.NONE},
                                        {"max_iteration": -1},
                                        {"tolerance": np.nan},
                                        {"weight": np.inf}])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(utils.InvalidConfigurationError):
            registration.CoherentPointDrift(**kwargs)

    def test_empty_cloud(self, before):
        with pytest.raises(utils.DegenerateInputError):
            registration.CoherentPointDrift().run(before, np.empty((0, 3)))

    def test_run_many(self, before, after):
        cpd = registration.CoherentPointDrift()
        results = cpd.run_many(before_list=[before, before], after_list=[after], progress=False)
        assert len(results) == 2
        results = cpd.run_many(before_list=[before, before], after_list=[after, after], one_vs_one=True,
                               progress=False)
        assert len(results) == 2
        assert np.allclose(results[0].transformation, results[1].transformation)


class TestNonIterative:

    def test_recovers_rotation_translation_and_permutation(self, before, after, ground_truth):
        result = registration.NonIterative(max_iteration=50, seed=0).run(before, after)
        expected = utils.transform_points(before, ground_truth)
        assert utils.get_mean_squared_error(utils.transform_points(before, result.transformation), expected) <= 1e-4
        assert 1 <= result.iterations <= 50
        assert result.error <= 1e-5

    @pytest.mark.parametrize("approximation", list(utils.ApproximationTypes))
    @pytest.mark.parametrize("execution_policy", list(utils.ExecutionPolicyTypes))
    def test_policies(self, before, after, ground_truth, approximation, execution_policy):
        nicp = registration.NonIterative(max_iteration=20,
                                         approximation=approximation,
                                         execution_policy=execution_policy,
                                         seed=1)
        result = nicp.run(before, after)
        assert_recovered(result, ground_truth)
        assert result.iterations <= 20

    def test_recovers_scale(self, before, ground_truth):
        T = ground_truth.copy()
        T[:3, :3] *= 2.0
        result = registration.NonIterative(hold_scale_constant=False, seed=0).run(before,
                                                                                  utils.transform_points(before, T))
        assert np.isclose(result.scale, 2.0)
        assert_recovered(result, T)

    @pytest.mark.parametrize("execution_policy", list(utils.ExecutionPolicyTypes))
    def test_reproducible(self, rng, before, after, execution_policy):
        noisy_after = after + rng.normal(scale=0.01, size=after.shape)
        results = [registration.NonIterative(max_iteration=10,
                                             eps=0.0,
                                             subcloud_size=50,
                                             approximation=utils.ApproximationTypes.HYBRID,
                                             execution_policy=execution_policy,
                                             seed=42).run(before, noisy_after) for _ in range(2)]
        assert np.array_equal(results[0].transformation, results[1].transformation)
        assert results[0].error == results[1].error

    def test_explicit_generator(self, before, after):
        first = registration.NonIterative(rng=np.random.default_rng(7), eps=0.0, max_iteration=5).run(before, after)
        second = registration.NonIterative(seed=7, eps=0.0, max_iteration=5).run(before, after)
        assert np.array_equal(first.transformation, second.transformation)

    def test_trial_budget(self, rng, before, after):
        noisy_after = after + rng.normal(scale=0.05, size=after.shape)
        result = registration.NonIterative(max_iteration=7, eps=0.0, seed=0).run(before, noisy_after)
        assert result.iterations == 7
        assert 0 < result.error < np.inf

    def test_correspondence_cutoff(self, rng, before, after):
        noisy_after = after + rng.normal(scale=0.01, size=after.shape)
        result = registration.NonIterative(max_iteration=3, max_correspondence_distance=1e-12, eps=0.0,
                                           seed=0).run(before, noisy_after)
        assert result.error == np.inf
        assert np.allclose(result.transformation, np.eye(4))

    def test_approximated_errors_rank_trials(self, rng, before, after):
        nicp = registration.NonIterative(seed=0)
        candidates = [nicp._trial(before, after, rng) for _ in range(20)]
        errors = [candidate.error for candidate in candidates]
        assert len(np.unique(errors)) == len(errors)
        for candidate in candidates:
            expected = utils.get_mean_squared_error(candidate.transform.apply(candidate.before), candidate.after)
            assert np.isclose(candidate.error, expected)

    def test_top_k_insertion(self):
        candidates = list()
        for error in [5.0, 1.0, 3.0, 0.5, 4.0, 2.0]:
            registration._insert_candidate(candidates,
                                           registration.NonIterativeResult(rigid.RigidTransform(), error, None, None),
                                           keep=3)
        assert [candidate.error for candidate in candidates] == [0.5, 1.0, 2.0]

    def test_too_few_points(self, before):
        with pytest.raises(utils.DegenerateInputError):
            registration.NonIterative().run(before[:2], before[:2])

    @pytest.mark.parametrize("kwargs", [{"approximation": None},
                                        {"execution_policy": "parallel"},
                                        {"max_iteration": 0},
                                        {"subcloud_size": 0},
                                        {"max_correspondence_distance": -1.0},
                                        {"eps": -1.0}])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(utils.InvalidConfigurationError):
            registration.NonIterative(**kwargs)


class TestIterativeClosestPoint:

    def test_refines_small_motion(self, rng):
        points = utils.get_random_point_cloud(size=500, rng=rng)
        T = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0, 0, 5], translation_xyz=[0.05, 0, 0])
        result = registration.IterativeClosestPoint(max_iteration=100).run(points, utils.transform_points(points, T))
        error_rot, error_trans = utils.get_transformation_error(result.transformation, T)
        assert error_rot < 1.0
        assert error_trans < 0.05
        assert result.error < 1e-2
        assert result.scale == pytest.approx(1.0)

    def test_init(self, rng):
        points = utils.get_random_point_cloud(size=200, rng=rng)
        T = utils.get_transformation_matrix_from_xyz(translation_xyz=[0.5, 0, 0])
        result = registration.IterativeClosestPoint(max_correspondence_distance=0.1).run(
            points, utils.transform_points(points, T), init=T)
        assert np.allclose(result.transformation, T, atol=1e-6)

    def test_invalid_configuration(self):
        with pytest.raises(utils.InvalidConfigurationError):
            registration.IterativeClosestPoint(max_correspondence_distance=0.0)
