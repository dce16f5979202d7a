"""Interfaces and base classes.

Classes:
    RegistrationError: Base class of all registration errors.
    InsufficientCorrespondences: Fewer than three correspondences are available for registration.
    DegenerateGeometry: The solver's normal equations are singular.
    RegistrationResult: Helper class mimicking Open3D's `RegistrationResult` but mutable and with added runtime.
    RegistrationInterface: Interface for all registration classes.
"""
import copy
import logging
from abc import ABC, abstractmethod
from multiprocessing import cpu_count
from typing import Any, List, Union

import numpy as np
import open3d as o3d
from joblib import Parallel, delayed

from .utils import InputTypes, eval_data, draw_geometries

PointCloud = o3d.geometry.PointCloud
TriangleMesh = o3d.geometry.TriangleMesh

logger = logging.getLogger(__name__)


class RegistrationError(RuntimeError):
    """Base class of all registration errors."""


class InsufficientCorrespondences(RegistrationError):
    """Fewer than three correspondences are available, so the rigid transformation is underdetermined."""

    def __init__(self, number_of_correspondences: int, minimum: int = 3) -> None:
        self.number_of_correspondences = number_of_correspondences
        self.minimum = minimum
        super().__init__(f"Need at least {minimum} correspondences for rigid registration but got "
                         f"{number_of_correspondences}.")


class DegenerateGeometry(RegistrationError):
    """The weighted normal equations are singular, e.g. because all correspondences are collinear."""

    def __init__(self, message: str, iteration: Union[int, None] = None) -> None:
        self.iteration = iteration
        super().__init__(message if iteration is None else f"{message} (iteration {iteration})")


class RegistrationResult:
    """Helper class mimicking Open3D's `RegistrationResult` but mutable and with added runtime.

    Attributes:
        correspondence_set: Kx2 array of (source index, target index) pairs used for registration.
        fitness: Share of correspondences whose final residual is below the maximum correspondence distance.
        inlier_rmse: RMS of the final residuals of those inlier correspondences.
        transformation: The 4x4 transformation mapping source onto target.
        runtime: Wall-clock runtime in seconds.
        iterations: Number of solver iterations run.
        transformations: Transformation after every solver iteration, starting with the identity.
    """

    def __init__(self,
                 correspondence_set: np.ndarray,
                 fitness: float,
                 inlier_rmse: float,
                 transformation: np.ndarray,
                 runtime: float,
                 iterations: int = 0,
                 transformations: Union[List[np.ndarray], None] = None):
        self.correspondence_set = correspondence_set
        self.fitness = fitness
        self.inlier_rmse = inlier_rmse
        self.transformation = transformation
        self.runtime = runtime
        self.iterations = iterations
        self.transformations = list() if transformations is None else transformations

    def __repr__(self) -> str:
        return (f"RegistrationResult(correspondences={len(self.correspondence_set)}, fitness={self.fitness:.4f}, "
                f"inlier_rmse={self.inlier_rmse:.6f}, iterations={self.iterations}, runtime={self.runtime:.3f}s)")


class RegistrationInterface(ABC):
    """Interface for registration subclasses. Handles data evaluation and visualization.

    Attributes:
        name: The name of the registration algorithm.
        _parallel: Thread pool.

    Methods:
        parallel: Lazy-loading of multi-thread parallel pool as class property.
        _eval_data(data): Evaluates input data to a point cloud.
        _eval_data_parallel(data_list): Runs _eval_data in parallel threads.
        _compute_dist(point_cloud): Returns the extent of `point_cloud` used to derive correspondence distances.
        draw_registration_result(source, target, pose, ...): Visualizes the registration result of `source` being
                                                             aligned with `target` using `pose`.
        run(source, target, ...): Runs the registration algorithm of the derived class.
    """

    def __init__(self, name: str) -> None:
        """
        Args:
            name: The name of the registration algorithm.
        """
        self.name = name
        self._parallel = None

    @property
    def parallel(self) -> Parallel:
        if self._parallel is None:
            self._parallel = Parallel(n_jobs=min(2, cpu_count()), prefer="threads")
        return self._parallel

    @staticmethod
    def _eval_data(data: InputTypes, **kwargs: Any) -> PointCloud:
        """Processes input to return a point cloud.

        Args:
            data: Point cloud, Nx3/Nx6 array or path to a point cloud file.

        Returns:
            The loaded point cloud data.
        """
        return eval_data(data=data, **kwargs)

    def _eval_data_parallel(self, data_list: List[InputTypes], **kwargs: Any) -> List[PointCloud]:
        """Runs _eval_data in parallel threads.

        Args:
            data_list: List of data to be evaluated.

        Returns:
            List of loaded point cloud data.
        """
        return self.parallel(delayed(self._eval_data)(data=d, **kwargs) for d in data_list)

    @staticmethod
    def _compute_dist(points: np.ndarray) -> float:
        """Returns the extent of `points`, the maximum distance of a point from their centroid.

        Args:
            points: The Nx3 points.

        Returns:
            The extent of the points.
        """
        if len(points) == 0:
            return 0.0
        distance = float(np.linalg.norm(points - points.mean(axis=0), axis=1).max())
        logger.debug(f"Point extent is {distance}.")
        return distance

    def draw_registration_result(self,
                                 source: InputTypes,
                                 target: InputTypes,
                                 pose: Union[np.ndarray, list] = np.eye(4),
                                 draw_coordinate_frames: bool = True,
                                 overwrite_colors: bool = False,
                                 **kwargs: Any) -> None:
        """Visualizes the registration result of `source` being aligned with `target` using `pose`.

        Args:
            source: The source data.
            target: The target data.
            pose: The 4x4 transformation matrix between `source` and `target`.
            draw_coordinate_frames: Draws coordinate frames for `source` and `target`.
            overwrite_colors: Overwrites `source` and `target` colors for clearer visualization.
        """
        _source = copy.deepcopy(self._eval_data(data=source))
        _target = copy.deepcopy(self._eval_data(data=target))
        _pose = np.asarray(pose).reshape(4, 4)

        if not _source.has_colors() or overwrite_colors:
            _source.paint_uniform_color([0.8, 0, 0])
        if not _target.has_colors() or overwrite_colors:
            _target.paint_uniform_color([0.8, 0.8, 0.8])

        _source.transform(_pose)

        to_draw = [_source, _target]
        if draw_coordinate_frames:
            size = 0.5 * (np.asarray(_source.get_max_bound()) - np.asarray(_source.get_min_bound())).max()
            to_draw.append(TriangleMesh().create_coordinate_frame(size=2 * size))
            to_draw.append(TriangleMesh().create_coordinate_frame(size=size).transform(_pose))

        draw_geometries(geometries=to_draw, window_name=f"{self.name} Registration Result", **kwargs)

    @abstractmethod
    def run(self,
            source: InputTypes,
            target: InputTypes,
            **kwargs: Any) -> RegistrationResult:
        """Runs the registration algorithm of the derived class.

        Args:
            source: The source data.
            target: The target data.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The registration result.
        """
        raise NotImplementedError("A derived class should implement this method.")
