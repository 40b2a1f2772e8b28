"""Point cloud registration functionality.

Classes:
    CoherentPointDrift: The rigid Coherent Point Drift (CPD) algorithm.
    NonIterativeResult: A candidate transform of a single non-iterative trial.
    NonIterative: Non-iterative registration from many random closed-form trials.
    IterativeClosestPoint: The Iterative Closest Point (ICP) algorithm.
"""
import logging
import time
from multiprocessing import cpu_count
from typing import Any, Callable, List, Tuple, Union

import numpy as np
import open3d as o3d
from joblib import delayed

from .interfaces import RegistrationInterface, RegistrationResult
from .probabilities import compute_probabilities_fast, initial_sigma_squared, outlier_constant, HYBRID_SWITCH_RATIO
from .rigid import RigidTransform, principal_axes_alignment, weighted_procrustes
from .utils import (ApproximationTypes, DegenerateInputError, DIMENSION, ExecutionPolicyTypes, InputTypes,
                    InvalidConfigurationError, KDTreeFlann, TransformationTypes, apply_permutation, check_policy,
                    eval_transformation_data, get_corresponding_points, get_mean_squared_error,
                    get_point_cloud_from_points, get_random_permutation, get_subcloud)

PointToPoint = o3d.pipelines.registration.TransformationEstimationPointToPoint
ICPConvergenceCriteria = o3d.pipelines.registration.ICPConvergenceCriteria

MIN_WEIGHT = 1e-6
HYBRID_TOP_K = 5
FULL_TOP_K = 1

logger = logging.getLogger(__name__)


def _check_positive(value: Union[int, float], name: str, allow_zero: bool = False) -> None:
    if not np.isfinite(value) or value < 0 or (value == 0 and not allow_zero):
        raise InvalidConfigurationError(f"`{name}` must be {'non-negative' if allow_zero else 'positive'} but is "
                                        f"{value}.")


class CoherentPointDrift(RegistrationInterface):
    """The rigid *Coherent Point Drift* (CPD) algorithm.

    The `after` cloud is treated as the centroids of a Gaussian mixture which is fit to the `before` cloud by
    expectation maximization. Each E-step computes soft correspondences at the current bandwidth `sigma^2`, each
    M-step solves for the rigid motion (and optionally uniform scale) in closed form and shrinks `sigma^2`. A uniform
    distribution with weight `weight` absorbs outliers.

    Attributes:
        max_iteration: Maximum number of EM iterations.
        tolerance: Stops once the relative change of the negative log-likelihood drops to this value.
        eps: Stops once `sigma^2` drops to this value.
        weight: The outlier weight in `(0, 1)`.
        hold_scale_constant: Keep the scale at 1 instead of estimating it.
        approximation: How the E-step is evaluated.
        execution_policy: Evaluate the exact E-step on a thread pool or sequentially.
        callback: Called after every M-step with `iteration`, `error`, `sigma_squared` and `transform` keywords.
        chunk_size: Number of `before` points per chunk of the exact E-step.

    Methods:
        run(before, after, ...): Runs CPD between `before` and `after` point cloud.
    """

    def __init__(self,
                 max_iteration: int = 50,
                 tolerance: float = 1e-5,
                 eps: float = 1e-5,
                 weight: float = 0.0,
                 hold_scale_constant: bool = True,
                 approximation: ApproximationTypes = ApproximationTypes.NONE,
                 execution_policy: ExecutionPolicyTypes = ExecutionPolicyTypes.SEQUENTIAL,
                 callback: Union[Callable[..., Any], None] = None,
                 chunk_size: Union[int, None] = None,
                 cache_size: int = 100) -> None:
        """
        Args:
            max_iteration: Maximum number of EM iterations.
            tolerance: Stops once the relative change of the negative log-likelihood drops to this value.
            eps: Stops once `sigma^2` drops to this value.
            weight: The outlier weight. Clamped to `[0, 1]` and kept away from both ends.
            hold_scale_constant: Keep the scale at 1 instead of estimating it.
            approximation: How the E-step is evaluated.
            execution_policy: Evaluate the exact E-step on a thread pool or sequentially.
            callback: Called after every M-step with `iteration`, `error`, `sigma_squared` and `transform` keywords.
            chunk_size: Number of `before` points per chunk of the exact E-step. Chosen from the cloud sizes if not
                        provided.
            cache_size: Maximum number of point clouds read from file kept in cache.
        """
        super().__init__(name="CPD", cache_size=cache_size)

        _check_positive(max_iteration, "max_iteration", allow_zero=True)
        _check_positive(tolerance, "tolerance", allow_zero=True)
        _check_positive(eps, "eps", allow_zero=True)
        if chunk_size is not None:
            _check_positive(chunk_size, "chunk_size")
        if not np.isfinite(weight):
            raise InvalidConfigurationError(f"`weight` must be finite but is {weight}.")

        self.max_iteration = int(max_iteration)
        self.tolerance = tolerance
        self.eps = eps
        self.weight = self._clamp_weight(weight)
        self.hold_scale_constant = hold_scale_constant
        self.approximation = check_policy(approximation, ApproximationTypes, "approximation")
        self.execution_policy = check_policy(execution_policy, ExecutionPolicyTypes, "execution_policy")
        self.callback = callback
        self.chunk_size = chunk_size

        if self.approximation != ApproximationTypes.NONE:
            self.name = f"{self.approximation.name}_{self.name}"

    @staticmethod
    def _clamp_weight(weight: float) -> float:
        """Clamps `weight` to `[0, 1]`, then into `[1e-6, 1 - 1e-6]` so the outlier term stays finite and non-zero."""
        if weight < 0 or weight > 1:
            logger.warning(f"Outlier weight {weight} is outside [0, 1]. Clamping.")
        weight = min(1.0, max(0.0, float(weight)))
        return min(1.0 - MIN_WEIGHT, max(MIN_WEIGHT, weight))

    def run(self,
            before: InputTypes,
            after: InputTypes,
            draw: bool = False,
            **kwargs: Any) -> RegistrationResult:
        """Runs *Coherent Point Drift* between `before` and `after` point cloud.

        Iterates until `max_iteration` is reached, the relative likelihood change drops to `tolerance` or `sigma^2`
        drops to `eps`. Hitting the iteration budget is not an error.

        Args:
            before: The before data.
            after: The after data.
            draw: Visualize the registration result.

        Raises:
            DegenerateInputError: If either cloud is empty or the correspondences collapse.

        Returns:
            The registration result with the transformation mapping `before` onto `after` and the final `sigma^2` as
            error.
        """
        start = time.time()
        _before = self._eval_data(data=before, **kwargs)
        _after = self._eval_data(data=after, **kwargs)

        sigma_squared = initial_sigma_squared(_before, _after)
        sigma_squared_init = sigma_squared
        constant = outlier_constant(sigma_squared_init, self.weight, len(_before), len(_after))
        parallel = self.parallel if self.execution_policy == ExecutionPolicyTypes.PARALLEL else None
        logger.debug(f"{self.name}: registering {len(_after)} onto {len(_before)} points, initial sigma^2 "
                     f"{sigma_squared}.")

        transform = RigidTransform()
        transformed = _after
        previous_error = 0.0
        ntol = self.tolerance + 10
        iteration = 0
        exact_kernel = False
        while iteration < self.max_iteration and ntol > self.tolerance and sigma_squared > self.eps:
            if (self.approximation == ApproximationTypes.HYBRID and not exact_kernel and
                    sigma_squared <= HYBRID_SWITCH_RATIO * sigma_squared_init):
                exact_kernel = True
                logger.debug(f"{self.name}: switching from Fast Gauss Transform to truncated kernel at iteration "
                             f"{iteration} (sigma^2={sigma_squared}).")

            probabilities = compute_probabilities_fast(_before, transformed,
                                                       weight=self.weight,
                                                       sigma_squared=sigma_squared,
                                                       sigma_squared_init=sigma_squared_init,
                                                       approximation=self.approximation,
                                                       constant=constant,
                                                       chunk_size=self.chunk_size,
                                                       parallel=parallel)
            error = probabilities.error
            ntol = abs((error - previous_error) / error) if error != 0 else np.inf
            previous_error = error

            transform, sigma_squared = weighted_procrustes(_before, _after,
                                                           p1=probabilities.p1,
                                                           pt1=probabilities.pt1,
                                                           px=probabilities.px,
                                                           hold_scale_constant=self.hold_scale_constant)
            transformed = transform.apply(_after)
            iteration += 1
            logger.debug(f"{self.name}: iteration {iteration}, error={error}, ntol={ntol}, sigma^2={sigma_squared}.")

            if self.callback is not None:
                self.callback(iteration=iteration, error=error, sigma_squared=sigma_squared, transform=transform)

        if iteration == self.max_iteration and ntol > self.tolerance and sigma_squared > self.eps:
            logger.debug(f"{self.name}: iteration budget of {self.max_iteration} exhausted at sigma^2={sigma_squared}.")

        runtime = time.time() - start
        result = RegistrationResult(transform=transform.inverse(),
                                    iterations=iteration,
                                    error=sigma_squared,
                                    runtime=runtime)
        logger.debug(f"{self.name} took {runtime} seconds.")
        logger.debug(f"{self.name} result: iterations={iteration}, sigma^2={sigma_squared}.")

        if draw:
            self.draw_registration_result(before=_before, after=_after, pose=result.transformation, **kwargs)
        return result


class NonIterativeResult:
    """A candidate transform of a single non-iterative trial.

    Attributes:
        transform: The transform mapping `before` onto `after`.
        error: The approximated error of the closed-form fit.
        before: The permuted (and possibly truncated) before points the candidate was derived from.
        after: The permuted (and possibly truncated) after points the candidate was derived from.
    """

    def __init__(self, transform: RigidTransform, error: float, before: np.ndarray, after: np.ndarray) -> None:
        self.transform = transform
        self.error = error
        self.before = before
        self.after = after


def _insert_candidate(candidates: List[NonIterativeResult], candidate: NonIterativeResult, keep: int) -> None:
    """Inserts `candidate` into the list sorted by approximated error, keeping at most `keep` entries."""
    index = len(candidates)
    while index > 0 and candidates[index - 1].error > candidate.error:
        index -= 1
    if index < keep:
        candidates.insert(index, candidate)
        del candidates[keep:]


class NonIterative(RegistrationInterface):
    """Non-iterative registration from many random closed-form trials.

    Every trial draws a random permutation of `min(N, M)` indices, applies it to both clouds and solves for the rigid
    motion aligning the principal axes of the permuted pair. Candidates are scored by the mean squared nearest
    neighbour distance of a random `before` subcloud to the `after` cloud. The approximation policy decides how many
    candidates are scored that way:

    * `NONE`: every trial. The search stops as soon as the error drops to `eps`.
    * `HYBRID`: the 5 trials with the smallest approximated error, after all trials ran.
    * `FULL`: only the trial with the smallest approximated error.

    With the `PARALLEL` execution policy, trials run on a thread pool. Each trial gets its own random generator
    spawned from `rng` and candidates are reduced after the pool returns.

    Attributes:
        max_iteration: The trial budget.
        eps: The exact error considered good enough to stop.
        approximation: The scoring policy.
        execution_policy: Run trials on a thread pool or sequentially.
        subcloud_size: Number of `before` points used for exact scoring. All points if -1.
        max_correspondence_distance: Pairs with a larger squared distance are ignored by exact scoring.
        hold_scale_constant: Keep the scale at 1 instead of estimating it.
        rng: The random generator drawing permutations and subclouds.

    Methods:
        run(before, after, ...): Runs the non-iterative search between `before` and `after` point cloud.
    """

    def __init__(self,
                 max_iteration: int = 50,
                 eps: float = 1e-5,
                 approximation: ApproximationTypes = ApproximationTypes.NONE,
                 execution_policy: ExecutionPolicyTypes = ExecutionPolicyTypes.SEQUENTIAL,
                 subcloud_size: int = 1000,
                 max_correspondence_distance: float = 1e6,
                 hold_scale_constant: bool = True,
                 seed: Union[int, None] = None,
                 rng: Union[np.random.Generator, None] = None,
                 cache_size: int = 100) -> None:
        """
        Args:
            max_iteration: The trial budget.
            eps: The exact error considered good enough to stop.
            approximation: The scoring policy.
            execution_policy: Run trials on a thread pool or sequentially.
            subcloud_size: Number of `before` points used for exact scoring. All points if -1.
            max_correspondence_distance: Pairs with a larger squared distance are ignored by exact scoring.
            hold_scale_constant: Keep the scale at 1 instead of estimating it.
            seed: Seeds a new random generator if `rng` is not provided.
            rng: The random generator drawing permutations and subclouds.
            cache_size: Maximum number of point clouds read from file kept in cache.
        """
        super().__init__(name="NON_ITERATIVE", cache_size=cache_size)

        _check_positive(max_iteration, "max_iteration")
        _check_positive(eps, "eps", allow_zero=True)
        _check_positive(max_correspondence_distance, "max_correspondence_distance")
        if subcloud_size != -1:
            _check_positive(subcloud_size, "subcloud_size")

        self.max_iteration = int(max_iteration)
        self.eps = eps
        self.approximation = check_policy(approximation, ApproximationTypes, "approximation")
        self.execution_policy = check_policy(execution_policy, ExecutionPolicyTypes, "execution_policy")
        self.subcloud_size = int(subcloud_size)
        self.max_correspondence_distance = max_correspondence_distance
        self.hold_scale_constant = hold_scale_constant
        self.rng = rng if rng is not None else np.random.default_rng(seed)

        if self.approximation != ApproximationTypes.NONE:
            self.name = f"{self.approximation.name}_{self.name}"

    def _trial(self, before: np.ndarray, after: np.ndarray, rng: np.random.Generator) -> NonIterativeResult:
        permutation = get_random_permutation(min(len(before), len(after)), rng)
        before_permuted = apply_permutation(before, permutation)
        after_permuted = apply_permutation(after, permutation)
        transform, error = principal_axes_alignment(after_permuted, before_permuted,
                                                    hold_scale_constant=self.hold_scale_constant,
                                                    rng=rng)
        return NonIterativeResult(transform=transform, error=error, before=before_permuted, after=after_permuted)

    def _score(self, transform: RigidTransform, subcloud: np.ndarray, after: np.ndarray, tree: KDTreeFlann) -> float:
        """Mean squared distance of the transformed subcloud to its nearest neighbours in the unpermuted `after`."""
        points, reference_points, _, _ = get_corresponding_points(points=transform.apply(subcloud),
                                                                  reference=after,
                                                                  max_distance_squared=self.max_correspondence_distance,
                                                                  tree=tree)
        return get_mean_squared_error(points, reference_points)

    def _scored_trial(self,
                      before: np.ndarray,
                      after: np.ndarray,
                      subcloud: np.ndarray,
                      tree: KDTreeFlann,
                      rng: np.random.Generator) -> Tuple[RigidTransform, float]:
        candidate = self._trial(before, after, rng)
        return candidate.transform, self._score(candidate.transform, subcloud, after, tree)

    def _search_exact(self,
                      before: np.ndarray,
                      after: np.ndarray,
                      subcloud: np.ndarray,
                      tree: KDTreeFlann) -> Tuple[RigidTransform, float, int]:
        best_transform, best_error = RigidTransform(), np.inf
        if self.execution_policy == ExecutionPolicyTypes.SEQUENTIAL:
            for trial in range(1, self.max_iteration + 1):
                transform, error = self._scored_trial(before, after, subcloud, tree, self.rng)
                if error < best_error:
                    best_transform, best_error = transform, error
                if best_error <= self.eps:
                    return best_transform, best_error, trial
            return best_transform, best_error, self.max_iteration

        trials = 0
        batch_size = cpu_count()
        while trials < self.max_iteration and best_error > self.eps:
            rngs = self.rng.spawn(min(batch_size, self.max_iteration - trials))
            results = self.parallel(delayed(self._scored_trial)(before, after, subcloud, tree, rng) for rng in rngs)
            for transform, error in results:
                trials += 1
                if error < best_error:
                    best_transform, best_error = transform, error
                if best_error <= self.eps:
                    break
        return best_transform, best_error, trials

    def _search_approximated(self, before: np.ndarray, after: np.ndarray, keep: int) -> List[NonIterativeResult]:
        candidates = list()
        if self.execution_policy == ExecutionPolicyTypes.SEQUENTIAL:
            for _ in range(self.max_iteration):
                _insert_candidate(candidates, self._trial(before, after, self.rng), keep)
        else:
            rngs = self.rng.spawn(self.max_iteration)
            for candidate in self.parallel(delayed(self._trial)(before, after, rng) for rng in rngs):
                _insert_candidate(candidates, candidate, keep)
        return candidates

    def _rescore(self,
                 candidates: List[NonIterativeResult],
                 subcloud: np.ndarray,
                 after: np.ndarray,
                 tree: KDTreeFlann) -> Tuple[RigidTransform, float]:
        best_transform, best_error = RigidTransform(), np.inf
        for candidate in candidates:
            error = self._score(candidate.transform, subcloud, after, tree)
            if error < best_error:
                best_transform, best_error = candidate.transform, error
            if best_error <= self.eps:
                break
        return best_transform, best_error

    def run(self,
            before: InputTypes,
            after: InputTypes,
            draw: bool = False,
            **kwargs: Any) -> RegistrationResult:
        """Runs the non-iterative search between `before` and `after` point cloud.

        Exhausting the trial budget without reaching `eps` is not an error. The best candidate found is returned.

        Args:
            before: The before data.
            after: The after data.
            draw: Visualize the registration result.

        Raises:
            DegenerateInputError: If either cloud has fewer than 3 points or no spread.

        Returns:
            The registration result with the transformation mapping `before` onto `after`, the number of trials and
            the exact mean squared nearest neighbour error.
        """
        start = time.time()
        _before = self._eval_data(data=before, **kwargs)
        _after = self._eval_data(data=after, **kwargs)
        if min(len(_before), len(_after)) < DIMENSION:
            raise DegenerateInputError(f"Need at least {DIMENSION} points per cloud but got {len(_before)} and "
                                       f"{len(_after)}.")

        subcloud = get_subcloud(_before, self.subcloud_size, self.rng)
        tree = KDTreeFlann(get_point_cloud_from_points(_after))

        if self.approximation == ApproximationTypes.NONE:
            transform, error, trials = self._search_exact(_before, _after, subcloud, tree)
        elif self.approximation in [ApproximationTypes.HYBRID, ApproximationTypes.FULL]:
            keep = HYBRID_TOP_K if self.approximation == ApproximationTypes.HYBRID else FULL_TOP_K
            candidates = self._search_approximated(_before, _after, keep)
            transform, error = self._rescore(candidates, subcloud, _after, tree)
            trials = self.max_iteration
        else:
            raise InvalidConfigurationError(f"`approximation` must be one of `ApproximationTypes` but is "
                                            f"{self.approximation}.")

        if error > self.eps:
            logger.debug(f"{self.name}: trial budget of {self.max_iteration} exhausted with error {error}.")
        if not np.isfinite(error):
            logger.warning(f"{self.name}: no candidate has correspondences within the maximum distance.")

        runtime = time.time() - start
        result = RegistrationResult(transform=transform, iterations=trials, error=error, runtime=runtime)
        logger.debug(f"{self.name} took {runtime} seconds.")
        logger.debug(f"{self.name} result: trials={trials}, error={error}.")

        if draw:
            self.draw_registration_result(before=_before, after=_after, pose=result.transformation, **kwargs)
        return result


class IterativeClosestPoint(RegistrationInterface):
    """The *Iterative Closest Point* (ICP) algorithm with Point-to-Point estimation.

    Refines an initial pose by alternating nearest neighbour correspondence search and closed-form alignment.

    Attributes:
        relative_fitness: If relative change (difference) of fitness score is lower than `relative_fitness`, the
                          iteration stops.
        relative_rmse: If relative change (difference) of inlier RMSE is lower than `relative_rmse`, the iteration
                       stops.
        max_iteration: Maximum number of iterations before the algorithm is stopped.
        max_correspondence_distance: Maximum correspondence points-pair distance. Estimated from the extent of the
                                     after cloud if -1.
        with_scaling: Estimate uniform scale in addition to rotation and translation.
        criteria: The Open3D convergence criteria.

    Methods:
        run(before, after, init, ...): Runs ICP between `before` and `after` point cloud with initial pose.
    """

    def __init__(self,
                 relative_fitness: float = 1e-6,
                 relative_rmse: float = 1e-6,
                 max_iteration: int = 30,
                 max_correspondence_distance: float = -1.0,
                 with_scaling: bool = False,
                 cache_size: int = 100) -> None:
        """
        Args:
            relative_fitness: If relative change (difference) of fitness score is lower than `relative_fitness`,
                              the iteration stops.
            relative_rmse: If relative change (difference) of inlier RMSE is lower than `relative_rmse`, the iteration
                           stops.
            max_iteration: Maximum number of iterations before the algorithm is stopped.
            max_correspondence_distance: Maximum correspondence points-pair distance. Estimated from the extent of
                                         the after cloud if -1.
            with_scaling: Estimate uniform scale in addition to rotation and translation.
            cache_size: Maximum number of point clouds read from file kept in cache.
        """
        super().__init__(name="POINT_TO_POINT_ICP", cache_size=cache_size)

        _check_positive(max_iteration, "max_iteration")
        if max_correspondence_distance != -1.0:
            _check_positive(max_correspondence_distance, "max_correspondence_distance")

        self.relative_fitness = relative_fitness
        self.relative_rmse = relative_rmse
        self.max_iteration = int(max_iteration)
        self.max_correspondence_distance = max_correspondence_distance
        self.with_scaling = with_scaling
        self.criteria = ICPConvergenceCriteria(relative_fitness=self.relative_fitness,
                                               relative_rmse=self.relative_rmse,
                                               max_iteration=self.max_iteration)

    @staticmethod
    def _compute_dist(points: np.ndarray) -> float:
        """Returns maximum correspondence distance for registration based on the extent of `points`."""
        distance = float((points.max(axis=0) - points.min(axis=0)).max())
        logger.debug(f"Using {distance} as maximum correspondence distance.")
        return distance

    def run(self,
            before: InputTypes,
            after: InputTypes,
            draw: bool = False,
            init: TransformationTypes = np.eye(4),
            **kwargs: Any) -> RegistrationResult:
        """Runs the *Iterative Closest Point* (ICP) algorithm between `before` and `after` point cloud.

        Args:
            before: The before data.
            after: The after data.
            draw: Visualize the registration result.
            init: The initial pose of `before`. Can be translation, rotation or transformation.

        Returns:
            The registration result with the transformation mapping `before` onto `after`, the iteration budget and
            the squared inlier RMSE as error. Open3D does not report the number of iterations actually used.
        """
        start = time.time()
        _before = self._eval_data(data=before, **kwargs)
        _after = self._eval_data(data=after, **kwargs)
        _init = eval_transformation_data(init)

        max_correspondence_distance = self.max_correspondence_distance
        if max_correspondence_distance == -1.0:
            max_correspondence_distance = self._compute_dist(_after)

        # noinspection PyTypeChecker
        result = o3d.pipelines.registration.registration_icp(
            source=get_point_cloud_from_points(_before),
            target=get_point_cloud_from_points(_after),
            max_correspondence_distance=max_correspondence_distance,
            init=_init,
            estimation_method=PointToPoint(with_scaling=self.with_scaling),
            criteria=self.criteria)

        runtime = time.time() - start
        logger.debug(f"{self.name} took {runtime} seconds.")
        logger.debug(f"{self.name} result: fitness={result.fitness}, inlier_rmse={result.inlier_rmse}.")

        error = result.inlier_rmse ** 2 if len(result.correspondence_set) > 0 else np.inf
        registration_result = RegistrationResult(transform=RigidTransform.from_transformation(result.transformation),
                                                 iterations=self.max_iteration,
                                                 error=error,
                                                 runtime=runtime)
        if draw:
            self.draw_registration_result(before=_before, after=_after, pose=registration_result.transformation,
                                          **kwargs)
        return registration_result
