"""Point cloud registration functionality.

The *Fast Global Registration* (FGR) algorithm estimates the rigid transformation between two point clouds from a
single, fixed set of feature correspondences. It minimizes the Geman-McClure loss
rho_mu(x) = mu * x^2 / (mu + x^2) of the correspondence residuals by iteratively reweighted Gauss-Newton steps on
SE(3), shrinking mu over the iterations (graduated non-convexity). Outliers are weighted down smoothly, so neither
an explicit inlier classification nor re-matching is needed.

Classes:
    FastGlobalRegistration: The Fast Global Registration (FGR) algorithm.

Functions:
    skew: Returns the cross product matrix of a 3-vector.
    se3_exp: Exponential map from a 6-vector (rotation, translation) to a 4x4 rigid transformation.
    project_to_rotation: Returns the rotation matrix closest to a 3x3 matrix.
    geman_mcclure_weights: Iteratively reweighted least squares weights of the Geman-McClure loss.
    build_normal_equations: Assembles the weighted 6x6 Gauss-Newton system.
    solve_normal_equations: Solves the 6x6 system by Cholesky decomposition.
    mu_schedule: The value of mu used in every iteration.
    normalize_points: Centers two point sets and scales them into the unit sphere.
    denormalize_transformation: Maps a transformation between normalized point sets back to original coordinates.
    fgr_iteration: One reweighted Gauss-Newton step.
    compute_correspondences: Computes FPFH features of two point clouds and matches them.
    register_rigid: Estimates the rigid transformation from a correspondence set.
"""
import logging
import time
from typing import Any, Dict, List, Tuple, Union

import numpy as np
import open3d as o3d

from .correspondence import MIN_CORRESPONDENCES, check_correspondences, estimate_correspondences
from .features import compute_fpfh, compute_fpfh_parallel, eval_feature
from .interfaces import RegistrationInterface, RegistrationResult, DegenerateGeometry, InsufficientCorrespondences
from .utils import InputTypes, process_point_cloud, get_points, transform_points

PointCloud = o3d.geometry.PointCloud
Feature = o3d.pipelines.registration.Feature

logger = logging.getLogger(__name__)


def skew(v: np.ndarray) -> np.ndarray:
    """Returns the cross product matrix [v]x of a 3-vector, such that [v]x @ w == v x w."""
    return np.array([[0.0, -v[2], v[1]],
                     [v[2], 0.0, -v[0]],
                     [-v[1], v[0], 0.0]])


def se3_exp(xi: np.ndarray) -> np.ndarray:
    """Exponential map from a 6-vector (omega, t) to a 4x4 rigid transformation.

    Args:
        xi: Rotation vector omega (axis times angle) followed by the translational part t.

    Returns:
        The 4x4 rigid transformation exp(xi).
    """
    omega = np.asarray(xi[:3], dtype=np.float64)
    t = np.asarray(xi[3:], dtype=np.float64)
    theta_sq = float(omega @ omega)
    theta = np.sqrt(theta_sq)
    W = skew(omega)
    if theta < 1e-8:
        # Taylor expansions of the coefficients below.
        A = 1.0 - theta_sq / 6.0
        B = 0.5 - theta_sq / 24.0
        C = 1.0 / 6.0 - theta_sq / 120.0
    else:
        A = np.sin(theta) / theta
        B = (1.0 - np.cos(theta)) / theta_sq
        C = (theta - np.sin(theta)) / (theta_sq * theta)
    W2 = W @ W
    T = np.eye(4)
    T[:3, :3] = np.eye(3) + A * W + B * W2
    T[:3, 3] = (np.eye(3) + B * W + C * W2) @ t
    return T


def project_to_rotation(R: np.ndarray) -> np.ndarray:
    """Returns the rotation matrix (orthonormal, determinant +1) closest to `R` in Frobenius norm."""
    U, _, Vt = np.linalg.svd(R)
    D = np.eye(3)
    D[2, 2] = np.sign(np.linalg.det(U @ Vt))
    return U @ D @ Vt


def geman_mcclure_weights(squared_residuals: np.ndarray, mu: float) -> np.ndarray:
    """Iteratively reweighted least squares weights mu^2 / (mu + r^2)^2 of the Geman-McClure loss."""
    return (mu / (mu + squared_residuals)) ** 2


def build_normal_equations(points: np.ndarray,
                           residuals: np.ndarray,
                           weights: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Assembles the weighted Gauss-Newton system (sum w J^T J) xi = -sum w J^T r.

    The Jacobian of exp(xi) @ x - q at xi = 0 is J = [-[x]x | I].

    Args:
        points: Kx3 transformed source points x.
        residuals: Kx3 residuals x - q.
        weights: K correspondence weights.

    Returns:
        The 6x6 matrix sum w J^T J and the 6-vector -sum w J^T r.
    """
    J = np.zeros((len(points), 3, 6))
    J[:, 0, 1] = points[:, 2]
    J[:, 0, 2] = -points[:, 1]
    J[:, 1, 0] = -points[:, 2]
    J[:, 1, 2] = points[:, 0]
    J[:, 2, 0] = points[:, 1]
    J[:, 2, 1] = -points[:, 0]
    J[:, :, 3:] = np.eye(3)
    JTJ = np.einsum("k,kia,kib->ab", weights, J, J)
    JTr = np.einsum("k,kia,ki->a", weights, J, residuals)
    return JTJ, -JTr


def solve_normal_equations(JTJ: np.ndarray,
                           b: np.ndarray,
                           rcond: float = 1e-12,
                           iteration: Union[int, None] = None) -> np.ndarray:
    """Solves the symmetric 6x6 system by Cholesky decomposition.

    Args:
        JTJ: The 6x6 symmetric positive semi-definite matrix.
        b: The right-hand side.
        rcond: Smallest accepted ratio between smallest and largest eigenvalue.
        iteration: Current solver iteration, reported on failure.

    Raises:
        DegenerateGeometry: If the system is singular or too ill-conditioned to solve.

    Returns:
        The solution xi.
    """
    eigenvalues = np.linalg.eigvalsh(JTJ)
    if eigenvalues[-1] <= 0.0 or eigenvalues[0] < rcond * eigenvalues[-1]:
        raise DegenerateGeometry(f"Normal equations are singular (eigenvalues {eigenvalues[0]:.3e} to "
                                 f"{eigenvalues[-1]:.3e}). Are the correspondences collinear?", iteration)
    try:
        L = np.linalg.cholesky(JTJ)
    except np.linalg.LinAlgError as e:
        raise DegenerateGeometry(f"Cholesky decomposition failed: {e}", iteration) from e
    return np.linalg.solve(L.T, np.linalg.solve(L, b))


def mu_schedule(mu_start: float,
                mu_min: float,
                max_iteration: int = 64,
                division_factor: float = 1.4,
                decrease_every: int = 4,
                decrease_mu: bool = True) -> np.ndarray:
    """The value of mu used in every iteration.

    mu starts at `max(mu_start, mu_min)` and is divided by `division_factor` every `decrease_every` iterations, but
    never below `mu_min`. When annealing, the schedule is extended beyond `max_iteration` until mu has stayed at
    `mu_min` for `decrease_every` iterations.

    Args:
        mu_start: The initial mu.
        mu_min: The floor of mu.
        max_iteration: The number of iterations without extension.
        division_factor: The factor mu is divided by, greater than 1.
        decrease_every: The number of iterations between two decreases.
        decrease_mu: Whether to decrease mu at all.

    Returns:
        Array of at least `max_iteration` mu values.
    """
    if division_factor <= 1.0:
        raise ValueError(f"`division_factor` must be greater than 1 but is {division_factor}.")
    if decrease_every < 1:
        raise ValueError(f"`decrease_every` must be at least 1 but is {decrease_every}.")
    mu = max(mu_start, mu_min)
    schedule = [mu]
    while len(schedule) < max_iteration or \
            (decrease_mu and schedule[max(len(schedule) - decrease_every, 0)] > mu_min):
        if decrease_mu and len(schedule) % decrease_every == 0:
            mu = max(mu / division_factor, mu_min)
        schedule.append(mu)
    return np.asarray(schedule)


def normalize_points(source_points: np.ndarray,
                     target_points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, float]:
    """Centers both point sets on their centroids and scales them by a common extent.

    The extent is the largest distance of a point from its centroid over both sets, so all normalized points lie
    within the unit sphere.

    Args:
        source_points: Kx3 source points.
        target_points: Kx3 target points.

    Raises:
        DegenerateGeometry: If all source and all target points coincide.

    Returns:
        The normalized source and target points, the source and target centroids and the scale.
    """
    source_centroid = source_points.mean(axis=0)
    target_centroid = target_points.mean(axis=0)
    source_centered = source_points - source_centroid
    target_centered = target_points - target_centroid
    scale = max(np.linalg.norm(source_centered, axis=1).max(), np.linalg.norm(target_centered, axis=1).max())
    if scale <= 0.0:
        raise DegenerateGeometry("All correspondence points coincide.")
    return source_centered / scale, target_centered / scale, source_centroid, target_centroid, float(scale)


def denormalize_transformation(transformation: np.ndarray,
                               source_centroid: np.ndarray,
                               target_centroid: np.ndarray,
                               scale: float) -> np.ndarray:
    """Maps a transformation between normalized point sets back to the original coordinates."""
    R = transformation[:3, :3]
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = scale * transformation[:3, 3] + target_centroid - R @ source_centroid
    return T


def fgr_iteration(transformation: np.ndarray,
                  mu: float,
                  source_points: np.ndarray,
                  target_points: np.ndarray,
                  rcond: float = 1e-12,
                  iteration: Union[int, None] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """One reweighted Gauss-Newton step. Leaves `transformation` untouched.

    Args:
        transformation: The current 4x4 transformation T.
        mu: The current Geman-McClure scale.
        source_points: Kx3 source points p_k.
        target_points: Kx3 corresponding target points q_k.
        rcond: Smallest accepted eigenvalue ratio of the normal equations.
        iteration: Current iteration, reported on failure.

    Raises:
        DegenerateGeometry: If the normal equations are singular.

    Returns:
        The updated transformation exp(xi) @ T with re-orthonormalized rotation, the step xi and the squared residuals
        before the step.
    """
    points = transform_points(source_points, transformation)
    residuals = points - target_points
    squared_residuals = np.einsum("ij,ij->i", residuals, residuals)
    weights = geman_mcclure_weights(squared_residuals, mu)
    xi = solve_normal_equations(*build_normal_equations(points, residuals, weights), rcond=rcond, iteration=iteration)

    updated = se3_exp(xi) @ transformation
    updated[:3, :3] = project_to_rotation(updated[:3, :3])
    updated[3] = [0.0, 0.0, 0.0, 1.0]
    return updated, xi, squared_residuals


class FastGlobalRegistration(RegistrationInterface):
    """The *Fast Global Registration* (FGR) algorithm.

    The goal is to find the rotation and translation, i.e. 6D pose, of a source object found in the target point cloud
    without any initial pose information. Correspondences are proposed once by FPFH feature matching and the
    transformation is estimated by graduated optimization of a robust loss. The returned transformation maps source
    coordinates onto target coordinates.

    Attributes:
        max_iteration: Number of solver iterations. Extended while mu has not yet settled at its floor.
        max_correspondence_distance: Residual scale considered an inlier. Sets the floor of mu to its square. If -1.0,
                                     0.025 times the extent of the corresponding source points is used.
        division_factor: mu is divided by this factor every `decrease_every` iterations.
        decrease_every: Number of iterations between two decreases of mu.
        decrease_mu: Anneal mu. Otherwise mu stays at its initial value.
        start_scale: The initial mu is the square of this factor, relative to the extent of the correspondence points.
        convergence_threshold: Stop once the step norm is below this value and the schedule is finished.
        rcond: Smallest accepted eigenvalue ratio of the normal equations.
        mutual_filter: Keep only mutually nearest feature matches.
        tuple_test: Filter matches with the tuple test.
        tuple_scale: Minimum edge length ratio in the tuple test.
        maximum_tuple_count: Maximum number of consistent triples in the tuple test.
        seed: Random seed of the tuple test.
        feature_radius: FPFH neighborhood radius.
        feature_max_nn: Maximum number of FPFH neighbors.
        normal_radius: Normal estimation radius, used if a point cloud has no normals.
        normal_max_nn: Maximum number of neighbors for normal estimation.

    Methods:
        compute_features(source, target, ...): Computes FPFH features of source and target in parallel threads.
        compute_correspondences(source, target, ...): Proposes correspondences from (computed) FPFH features.
        solve(source_points, target_points, ...): Runs the robust solver on paired points.
        register(correspondences, source, target, ...): Estimates the transformation from a correspondence set.
        run(source, target, source_feature, target_feature, ...): Runs the full FGR pipeline between `source` and
                                                                  `target` point cloud.
    """

    def __init__(self,
                 max_iteration: int = 64,
                 max_correspondence_distance: float = -1.0,
                 division_factor: float = 1.4,
                 decrease_every: int = 4,
                 decrease_mu: bool = True,
                 start_scale: float = 1.0,
                 convergence_threshold: float = 1e-10,
                 rcond: float = 1e-12,
                 mutual_filter: bool = True,
                 tuple_test: bool = False,
                 tuple_scale: float = 0.95,
                 maximum_tuple_count: int = 1000,
                 seed: Union[int, None] = None,
                 feature_radius: float = 0.05,  # 5cm
                 feature_max_nn: Union[int, None] = 100,
                 normal_radius: float = 0.02,  # 2cm
                 normal_max_nn: int = 30) -> None:
        """
        Args:
            max_iteration: Number of solver iterations. Extended while mu has not yet settled at its floor.
            max_correspondence_distance: Residual scale considered an inlier. Automatic if -1.0.
            division_factor: mu is divided by this factor every `decrease_every` iterations.
            decrease_every: Number of iterations between two decreases of mu.
            decrease_mu: Anneal mu. Otherwise mu stays at its initial value.
            start_scale: The initial mu is the square of this factor, relative to the point extent.
            convergence_threshold: Stop once the step norm is below this value and the schedule is finished.
            rcond: Smallest accepted eigenvalue ratio of the normal equations.
            mutual_filter: Keep only mutually nearest feature matches.
            tuple_test: Filter matches with the tuple test.
            tuple_scale: Minimum edge length ratio in the tuple test.
            maximum_tuple_count: Maximum number of consistent triples in the tuple test.
            seed: Random seed of the tuple test.
            feature_radius: FPFH neighborhood radius.
            feature_max_nn: Maximum number of FPFH neighbors.
            normal_radius: Normal estimation radius, used if a point cloud has no normals.
            normal_max_nn: Maximum number of neighbors for normal estimation.
        """
        super().__init__(name="FGR")

        if max_iteration < 1:
            raise ValueError(f"`max_iteration` must be at least 1 but is {max_iteration}.")
        if max_correspondence_distance != -1.0 and max_correspondence_distance <= 0:
            raise ValueError(f"`max_correspondence_distance` must be positive or -1.0 but is "
                             f"{max_correspondence_distance}.")
        self.max_iteration = max_iteration
        self.max_correspondence_distance = max_correspondence_distance
        self.division_factor = division_factor
        self.decrease_every = decrease_every
        self.decrease_mu = decrease_mu
        self.start_scale = start_scale
        self.convergence_threshold = convergence_threshold
        self.rcond = rcond

        self.mutual_filter = mutual_filter
        self.tuple_test = tuple_test
        self.tuple_scale = tuple_scale
        self.maximum_tuple_count = maximum_tuple_count
        self.seed = seed

        self.feature_radius = feature_radius
        self.feature_max_nn = feature_max_nn
        self.normal_radius = normal_radius
        self.normal_max_nn = normal_max_nn

    def _get(self, kwargs: Dict[str, Any], key: str) -> Any:
        return kwargs.get(key, getattr(self, key))

    def _get_normal_radius(self, point_cloud: PointCloud, kwargs: Dict[str, Any]) -> Union[float, None]:
        # Only known if the normals are estimated here.
        return None if point_cloud.has_normals() else self._get(kwargs, "normal_radius")

    def _eval_normals(self, point_cloud: PointCloud, name: str, **kwargs: Any) -> PointCloud:
        if point_cloud.has_normals():
            return point_cloud
        if "normal_radius" not in kwargs:
            logger.warning(f"{name.capitalize()} has no normals which are needed to compute FPFH features.")
            logger.warning(f"Computing with (potentially suboptimal) default parameters: "
                           f"kNN={self._get(kwargs, 'normal_max_nn')}, radius={self._get(kwargs, 'normal_radius')}.")
        return process_point_cloud(point_cloud=point_cloud,
                                   estimate_normals=True,
                                   normalize_normals=True,
                                   search_param_knn=self._get(kwargs, "normal_max_nn"),
                                   search_param_radius=self._get(kwargs, "normal_radius"))

    def compute_features(self,
                         source: InputTypes,
                         target: InputTypes,
                         **kwargs: Any) -> Tuple[np.ndarray, np.ndarray]:
        """Computes FPFH features of `source` and `target` in parallel threads, estimating normals if missing.

        Args:
            source: The source data.
            target: The target data.

        Returns:
            The Nx33 source and Mx33 target features.
        """
        _source, _target = self._eval_data_parallel([source, target])
        normal_radius = [self._get_normal_radius(point_cloud, kwargs) for point_cloud in [_source, _target]]
        _source = self._eval_normals(_source, "source", **kwargs)
        _target = self._eval_normals(_target, "target", **kwargs)
        if "feature_radius" not in kwargs:
            logger.debug(f"Computing FPFH features with default parameters: kNN={self.feature_max_nn}, "
                         f"radius={self.feature_radius}.")
        return tuple(compute_fpfh_parallel([_source, _target],
                                           num_threads=2,
                                           radius=self._get(kwargs, "feature_radius"),
                                           max_nn=self._get(kwargs, "feature_max_nn"),
                                           normal_radius=normal_radius))

    def compute_correspondences(self,
                                source: InputTypes,
                                target: InputTypes,
                                source_feature: Union[np.ndarray, Feature, None] = None,
                                target_feature: Union[np.ndarray, Feature, None] = None,
                                **kwargs: Any) -> np.ndarray:
        """Proposes correspondences between `source` and `target` by FPFH feature matching.

        Args:
            source: The source data.
            target: The target data.
            source_feature: The FPFH feature of `source`. Computed if not provided.
            target_feature: The FPFH feature of `target`. Computed if not provided.

        Raises:
            InsufficientCorrespondences: If fewer than three correspondences survive.

        Returns:
            Kx2 (source index, target index) pairs sorted by source index.
        """
        _source, _target = self._eval_data_parallel([source, target])
        if source_feature is None and target_feature is None:
            _source_feature, _target_feature = self.compute_features(_source, _target, **kwargs)
        else:
            _source_feature = self._eval_feature(source_feature, _source, "source", **kwargs)
            _target_feature = self._eval_feature(target_feature, _target, "target", **kwargs)

        if len(_source_feature) != len(_source.points) or len(_target_feature) != len(_target.points):
            raise ValueError("Features need one row per point.")

        return estimate_correspondences(_source_feature,
                                        _target_feature,
                                        source_points=get_points(_source),
                                        target_points=get_points(_target),
                                        mutual_filter=self._get(kwargs, "mutual_filter"),
                                        use_tuple_test=self._get(kwargs, "tuple_test"),
                                        tuple_scale=self._get(kwargs, "tuple_scale"),
                                        maximum_tuple_count=self._get(kwargs, "maximum_tuple_count"),
                                        seed=self._get(kwargs, "seed"))

    def _eval_feature(self,
                      feature: Union[np.ndarray, Feature, None],
                      point_cloud: PointCloud,
                      name: str,
                      **kwargs: Any) -> np.ndarray:
        if feature is not None:
            return eval_feature(feature)
        logger.warning(f"{name.capitalize()} FPFH feature wasn't provided.")
        normal_radius = self._get_normal_radius(point_cloud, kwargs)
        return compute_fpfh(self._eval_normals(point_cloud, name, **kwargs),
                            radius=self._get(kwargs, "feature_radius"),
                            max_nn=self._get(kwargs, "feature_max_nn"),
                            normal_radius=normal_radius)

    def solve(self,
              source_points: np.ndarray,
              target_points: np.ndarray,
              **kwargs: Any) -> Tuple[np.ndarray, List[np.ndarray], float]:
        """Runs the robust solver on paired points, the k-th source point corresponding to the k-th target point.

        Both point sets are centered on their centroids and scaled into the unit sphere before solving, so the result
        does not depend on where the points lie or on their units.

        Args:
            source_points: Kx3 source points.
            target_points: Kx3 target points.

        Raises:
            InsufficientCorrespondences: If there are fewer than three pairs.
            DegenerateGeometry: If the normal equations are singular in any iteration.

        Returns:
            The 4x4 transformation, the transformation after every iteration starting with the identity, and the
            maximum correspondence distance used.
        """
        source_points = np.asarray(source_points, dtype=np.float64)
        target_points = np.asarray(target_points, dtype=np.float64)
        assert source_points.shape == target_points.shape and source_points.ndim == 2 and \
            source_points.shape[1] == 3, f"Need two Kx3 point sets but got {source_points.shape} and " \
                                         f"{target_points.shape}."
        if len(source_points) < MIN_CORRESPONDENCES:
            raise InsufficientCorrespondences(len(source_points), MIN_CORRESPONDENCES)

        max_correspondence_distance = self._get(kwargs, "max_correspondence_distance")
        if max_correspondence_distance == -1.0:
            max_correspondence_distance = 0.025 * self._compute_dist(source_points)
            if max_correspondence_distance <= 0.0:
                raise DegenerateGeometry("All correspondence source points coincide.")

        # The solver works on centered points within the unit sphere, so mu is relative to the point cloud extent.
        normalized = normalize_points(source_points, target_points)
        source_normalized, target_normalized, source_centroid, target_centroid, scale = normalized
        mu_min = (max_correspondence_distance / scale) ** 2
        mu_start = self._get(kwargs, "start_scale") ** 2
        schedule = mu_schedule(mu_start=mu_start,
                               mu_min=mu_min,
                               max_iteration=self._get(kwargs, "max_iteration"),
                               division_factor=self._get(kwargs, "division_factor"),
                               decrease_every=self._get(kwargs, "decrease_every"),
                               decrease_mu=self._get(kwargs, "decrease_mu"))
        logger.debug(f"mu schedule from {schedule[0]} to {schedule[-1]} (floor {mu_min}) over "
                     f"{len(schedule)} iterations.")

        convergence_threshold = self._get(kwargs, "convergence_threshold")
        rcond = self._get(kwargs, "rcond")
        transformation = np.eye(4)
        transformations = [np.eye(4)]
        for iteration, mu in enumerate(schedule):
            transformation, xi, squared_residuals = fgr_iteration(transformation,
                                                                  mu,
                                                                  source_normalized,
                                                                  target_normalized,
                                                                  rcond=rcond,
                                                                  iteration=iteration)
            transformations.append(denormalize_transformation(transformation, source_centroid, target_centroid, scale))
            if np.linalg.norm(xi) < convergence_threshold and (mu <= mu_min or squared_residuals.max() < mu_min):
                logger.debug(f"Converged after {iteration + 1} iterations.")
                break
        return transformations[-1], transformations, max_correspondence_distance

    def register(self,
                 correspondences: Union[np.ndarray, list],
                 source: InputTypes,
                 target: InputTypes,
                 **kwargs: Any) -> RegistrationResult:
        """Estimates the transformation mapping `source` onto `target` from a correspondence set.

        Args:
            correspondences: Kx2 (source index, target index) pairs.
            source: The source data.
            target: The target data.

        Raises:
            InsufficientCorrespondences: If there are fewer than three correspondences.
            DegenerateGeometry: If the normal equations are singular in any iteration.

        Returns:
            The registration result containing relative fitness (`fitness`) and RMSE (`inlier_rmse`) as well as the
            correspondence set between `source` and `target` (`correspondence_set`) and transformation
            (`transformation`) between `source` and `target` and runtime (`runtime`).
        """
        start = time.time()
        source_points = get_points(self._eval_data(source))
        target_points = get_points(self._eval_data(target))
        _correspondences = check_correspondences(correspondences, len(source_points), len(target_points))
        p = source_points[_correspondences[:, 0]]
        q = target_points[_correspondences[:, 1]]

        transformation, transformations, max_correspondence_distance = self.solve(p, q, **kwargs)

        distances = np.linalg.norm(transform_points(p, transformation) - q, axis=1)
        inliers = distances < max_correspondence_distance
        fitness = float(inliers.mean())
        inlier_rmse = float(np.sqrt(np.mean(distances[inliers] ** 2))) if inliers.any() else 0.0

        runtime = time.time() - start
        logger.debug(f"{self.name} took {runtime} seconds.")
        logger.debug(f"{self.name} result: fitness={fitness}, inlier_rmse={inlier_rmse}.")
        return RegistrationResult(correspondence_set=_correspondences,
                                  fitness=fitness,
                                  inlier_rmse=inlier_rmse,
                                  transformation=transformation,
                                  runtime=runtime,
                                  iterations=len(transformations) - 1,
                                  transformations=transformations)

    def run(self,
            source: InputTypes,
            target: InputTypes,
            source_feature: Union[np.ndarray, Feature, None] = None,
            target_feature: Union[np.ndarray, Feature, None] = None,
            draw: bool = False,
            **kwargs: Any) -> RegistrationResult:
        """Runs the Fast Global Registration algorithm between `source` and `target` point cloud.

        The goal is to find the rotation and translation, i.e. 6D pose, of the `source` object, best resembling its
        actual pose found in the `target` point cloud without any initial pose information.

        Args:
            source: The source data.
            target: The target data.
            source_feature: The FPFH feature of `source`. Computed based on default values if not provided.
            target_feature: The FPFH feature of `target`. Computed based on default values if not provided.
            draw: Visualize the registration result.

        Raises:
            InsufficientCorrespondences: If fewer than three correspondences survive matching.
            DegenerateGeometry: If the normal equations are singular in any iteration.

        Returns:
            The registration result containing relative fitness (`fitness`) and RMSE (`inlier_rmse`) as well as the
            correspondence set between `source` and `target` (`correspondence_set`) and transformation
            (`transformation`) between `source` and `target` and runtime (`runtime`).
        """
        start = time.time()
        _source, _target = self._eval_data_parallel([source, target])
        correspondences = self.compute_correspondences(_source,
                                                       _target,
                                                       source_feature=source_feature,
                                                       target_feature=target_feature,
                                                       **kwargs)
        logger.debug(f"Number of correspondences found: {len(correspondences)}.")
        result = self.register(correspondences, _source, _target, **kwargs)
        result.runtime = time.time() - start

        if draw:
            self.draw_registration_result(source=_source, target=_target, pose=result.transformation)

        return result


def compute_correspondences(source: InputTypes,
                            target: InputTypes,
                            **kwargs: Any) -> np.ndarray:
    """Computes FPFH features of two point clouds and matches them.

    Args:
        source: The source data. Needs normals, estimated with default parameters otherwise.
        target: The target data. Needs normals, estimated with default parameters otherwise.
        **kwargs: Options of `FastGlobalRegistration`, e.g. `feature_radius`, `mutual_filter` or `tuple_test`.

    Raises:
        InsufficientCorrespondences: If fewer than three correspondences survive.

    Returns:
        Kx2 (source index, target index) pairs sorted by source index.
    """
    return FastGlobalRegistration(**kwargs).compute_correspondences(source, target)


def register_rigid(correspondences: Union[np.ndarray, list],
                   source: InputTypes,
                   target: InputTypes,
                   **kwargs: Any) -> np.ndarray:
    """Estimates the rigid transformation mapping `source` onto `target` from a correspondence set.

    Args:
        correspondences: Kx2 (source index, target index) pairs.
        source: The source data.
        target: The target data.
        **kwargs: Solver options of `FastGlobalRegistration`, e.g. `max_iteration`.

    Raises:
        InsufficientCorrespondences: If there are fewer than three correspondences.
        DegenerateGeometry: If the normal equations are singular in any iteration.

    Returns:
        The 4x4 rigid transformation.
    """
    return FastGlobalRegistration(**kwargs).register(correspondences, source, target).transformation
