"""Interfaces and base classes.

Classes:
    RegistrationResult: The transform, iteration count, residual error and runtime of a single registration.
    RegistrationInterface: Interface for all registration classes.
"""
import logging
import sys
import time
from abc import ABC, abstractmethod
from multiprocessing import cpu_count
from typing import Any, List, Union

import numpy as np
import tqdm
from joblib import Parallel

from .rigid import RigidTransform
from .utils import InputTypes, TriangleMesh, draw_geometries, eval_data, get_point_cloud_from_points

logger = logging.getLogger(__name__)


class RegistrationResult:
    """The transform, iteration count, residual error and runtime of a single registration.

    The transform always maps the `before` cloud onto the `after` cloud.

    Attributes:
        transform: The estimated rigid transform.
        iterations: EM iterations (CPD, ICP) or trials (non-iterative) used.
        error: The residual error. Final `sigma^2` for CPD, mean squared nearest neighbour distance otherwise.
        runtime: The runtime in seconds.
    """

    def __init__(self,
                 transform: RigidTransform,
                 iterations: int,
                 error: float,
                 runtime: float = 0.0) -> None:
        self.transform = transform
        self.iterations = iterations
        self.error = error
        self.runtime = runtime

    @property
    def transformation(self) -> np.ndarray:
        return self.transform.transformation

    @property
    def rotation(self) -> np.ndarray:
        return self.transform.rotation

    @property
    def translation(self) -> np.ndarray:
        return self.transform.translation

    @property
    def scale(self) -> float:
        return self.transform.scale

    def __repr__(self) -> str:
        return (f"RegistrationResult(iterations={self.iterations}, error={self.error}, runtime={self.runtime}, "
                f"transformation={self.transformation.tolist()})")


class RegistrationInterface(ABC):
    """Interface for registration subclasses. Handles data evaluation, caching and visualization.

    Attributes:
        name: The name of the registration algorithm.
        cache_size: Maximum number of point clouds read from file kept in cache.
        _parallel: Thread pool.
        _cached_data: Point clouds read from file, keyed by their path.

    Methods:
        parallel: Lazy-loading of multi-thread parallel pool as class property.
        _eval_data(data): Adds caching of files to `utils.eval_data`.
        draw_registration_result(before, after, pose, ...): Visualizes the registration result of `before` being
                                                            aligned with `after` using `pose`.
        run(before, after, ...): Runs the registration algorithm of the derived class.
        run_many(before_list, after_list, ...): Convenience function to register multiple clouds.
    """

    def __init__(self, name: str, cache_size: int = 100) -> None:
        """
        Args:
            name: The name of the registration algorithm.
            cache_size: Maximum number of point clouds read from file kept in cache.
        """
        self.name = name
        self.cache_size = cache_size
        self._parallel = None
        self._cached_data = dict()

    @property
    def parallel(self) -> Parallel:
        if self._parallel is None:
            self._parallel = Parallel(n_jobs=cpu_count(), prefer="threads")
        return self._parallel

    def _eval_data(self, data: InputTypes, **kwargs: Any) -> np.ndarray:
        """Returns cached points if `data` is a path read before. Evaluates `data` to a Nx3 point array otherwise.

        Args:
            data: The data to be evaluated.

        Returns:
            The cached or evaluated points.
        """
        if not isinstance(data, str):
            return eval_data(data=data, **kwargs)
        if data in self._cached_data:
            return self._cached_data[data]

        points = eval_data(data=data, **kwargs)
        if len(self._cached_data) >= self.cache_size:
            first_key = list(self._cached_data.keys())[0]
            logger.debug(f"Cache is full. Removing data with key {first_key}.")
            self._cached_data.pop(first_key)
        self._cached_data[data] = points
        return points

    def draw_registration_result(self,
                                 before: InputTypes,
                                 after: InputTypes,
                                 pose: Union[np.ndarray, list] = np.eye(4),
                                 draw_coordinate_frames: bool = True,
                                 **kwargs: Any) -> None:
        """Visualizes the registration result of `before` being aligned with `after` using `pose`.

        Args:
            before: The before data, drawn in red.
            after: The after data, drawn in gray.
            pose: The 4x4 transformation matrix mapping `before` onto `after`.
            draw_coordinate_frames: Draws coordinate frames for `before` and `after`.
        """
        _before = get_point_cloud_from_points(self._eval_data(data=before))
        _after = get_point_cloud_from_points(self._eval_data(data=after))
        _pose = np.asarray(pose).reshape(4, 4)

        _before.paint_uniform_color([0.8, 0, 0])
        _after.paint_uniform_color([0.8, 0.8, 0.8])
        _before.transform(_pose)

        to_draw = [_before, _after]
        if draw_coordinate_frames:
            size = 0.5 * (np.asarray(_after.get_max_bound()) - np.asarray(_after.get_min_bound())).max()
            to_draw.append(TriangleMesh().create_coordinate_frame(size=2 * size))
            to_draw.append(TriangleMesh().create_coordinate_frame(size=size).transform(_pose))

        draw_geometries(geometries=to_draw, window_name=f"{self.name} Registration Result", **kwargs)

    @abstractmethod
    def run(self,
            before: InputTypes,
            after: InputTypes,
            draw: bool = False,
            **kwargs: Any) -> RegistrationResult:
        """Runs the registration algorithm of the derived class.

        Args:
            before: The before data.
            after: The after data.
            draw: Visualize the registration result.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The registration result with the transformation mapping `before` onto `after`.
        """
        raise NotImplementedError("A derived class should implement this method.")

    def run_many(self,
                 before_list: List[InputTypes],
                 after_list: List[InputTypes],
                 one_vs_one: bool = False,
                 progress: bool = True,
                 **kwargs: Any) -> List[RegistrationResult]:
        """Convenience function to register multiple before and after clouds. Wraps `run`.

        Args:
            before_list: A list of before clouds.
            after_list: A list of after clouds.
            one_vs_one: Register one before to one after cloud. Otherwise, each before cloud is registered to each
                        after cloud.
            progress: Print progress bar.

        Returns:
            A list of registration results between
            before_0 <-> after_0, before_1 <-> after_0, ... before_N <-> after_0, before_0 <-> after_1, ...
            If `one_vs_one`, the order is before_0 <-> after_0, before_1 <-> after_1, ...
        """
        start = time.time()

        results = list()
        if one_vs_one and len(before_list) == len(after_list):
            for before, after in tqdm.tqdm(zip(before_list, after_list),
                                           total=len(before_list),
                                           desc=self.name,
                                           file=sys.stdout,
                                           disable=not progress):
                results.append(self.run(before=before, after=after, **kwargs))
        else:
            if one_vs_one:
                logger.warning(f"Before and after list have unequal length which is required for `one_vs_one`.")
            progress = tqdm.tqdm(range(len(before_list) * len(after_list)),
                                 file=sys.stdout,
                                 desc=self.name,
                                 disable=not progress)
            for after in after_list:
                for before in before_list:
                    results.append(self.run(before=before, after=after, **kwargs))
                    progress.update()
            progress.close()
        logger.debug(f"`run_many` took {time.time() - start} seconds.")
        return results
