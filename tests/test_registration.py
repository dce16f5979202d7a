"""Integration tests for Easy FGR."""
import numpy as np
import pytest

from .context import registration, interfaces, utils


def sample_sphere(number_of_points, seed=0):
    """Samples points with exact unit normals from the unit sphere."""
    rng = np.random.default_rng(seed)
    points = rng.normal(size=(number_of_points, 3))
    points /= np.linalg.norm(points, axis=1, keepdims=True)
    return np.hstack([points, points])


@pytest.fixture
def source_points():
    return np.random.default_rng(42).uniform(-1.0, 1.0, size=(200, 3))


@pytest.fixture
def transformation():
    return utils.get_transformation_matrix_from_xyz(rotation_xyz=[15.0, -25.0, 35.0],
                                                    translation_xyz=[0.3, -0.5, 1.2])


@pytest.fixture
def target_points(source_points, transformation):
    return utils.transform_points(source_points, transformation)


@pytest.fixture
def correspondences(source_points):
    return np.stack([np.arange(len(source_points)), np.arange(len(source_points))], axis=1)


def is_rigid(T):
    return np.allclose(T[:3, :3] @ T[:3, :3].T, np.eye(3)) and np.isclose(np.linalg.det(T[:3, :3]), 1.0) and \
        np.array_equal(T[3], [0, 0, 0, 1])


class TestSolverParts:

    def test_se3_exp_identity(self):
        assert np.allclose(registration.se3_exp(np.zeros(6)), np.eye(4))

    def test_se3_exp_rotation(self):
        angle = np.deg2rad(30.0)
        T = registration.se3_exp(np.array([0.0, 0.0, angle, 0.0, 0.0, 0.0]))
        expected = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0.0, 0.0, 30.0])
        assert np.allclose(T, expected)

    def test_se3_exp_small_angle(self):
        xi = np.array([1e-10, -2e-10, 3e-10, 0.1, 0.2, 0.3])
        T = registration.se3_exp(xi)
        assert is_rigid(T)
        assert np.allclose(T[:3, 3], xi[3:])

    def test_project_to_rotation(self):
        R = utils.get_transformation_matrix_from_xyz(rotation_xyz=[10.0, 20.0, 30.0])[:3, :3]
        R_projected = registration.project_to_rotation(R + 1e-3 * np.random.default_rng(0).normal(size=(3, 3)))
        assert np.allclose(R_projected @ R_projected.T, np.eye(3))
        assert np.isclose(np.linalg.det(R_projected), 1.0)
        assert np.allclose(R_projected, R, atol=1e-2)

    def test_geman_mcclure_weights(self):
        weights = registration.geman_mcclure_weights(np.array([0.0, 1.0, 100.0]), mu=1.0)
        assert np.allclose(weights, [1.0, 0.25, 1.0 / 101.0 ** 2])

    def test_mu_schedule(self):
        schedule = registration.mu_schedule(mu_start=10.0, mu_min=1.0, max_iteration=64)
        assert len(schedule) == 64
        assert schedule[0] == schedule[3] == 10.0
        assert np.isclose(schedule[4], 10.0 / 1.4)
        assert np.all(np.diff(schedule) <= 0)
        assert schedule[-1] == 1.0

    def test_mu_schedule_constant(self):
        schedule = registration.mu_schedule(mu_start=10.0, mu_min=1.0, max_iteration=16, decrease_mu=False)
        assert np.all(schedule == 10.0)

    def test_mu_schedule_start_below_floor(self):
        schedule = registration.mu_schedule(mu_start=0.0, mu_min=0.5, max_iteration=8)
        assert np.all(schedule == 0.5)

    def test_mu_schedule_invalid(self):
        with pytest.raises(ValueError):
            registration.mu_schedule(mu_start=1.0, mu_min=0.1, division_factor=1.0)

    def test_mu_schedule_extends_until_floor(self):
        schedule = registration.mu_schedule(mu_start=1.0, mu_min=1e-4, max_iteration=8)
        assert len(schedule) > 8
        assert np.all(schedule[-4:] == 1e-4)
        assert schedule[-5] > 1e-4

    def test_normalize_points(self, source_points, target_points, transformation):
        source_normalized, target_normalized, source_centroid, target_centroid, scale = \
            registration.normalize_points(source_points + 1e4, target_points)
        assert np.allclose(source_normalized.mean(axis=0), 0.0)
        assert np.allclose(target_normalized.mean(axis=0), 0.0)
        assert np.isclose(max(np.linalg.norm(source_normalized, axis=1).max(),
                              np.linalg.norm(target_normalized, axis=1).max()), 1.0)
        assert np.allclose(source_centroid, source_points.mean(axis=0) + 1e4)

        # A transformation between the normalized sets maps the original sets onto each other.
        T_normalized = transformation.copy()
        T_normalized[:3, 3] = 0.0
        T = registration.denormalize_transformation(T_normalized, source_centroid, target_centroid, scale)
        assert is_rigid(T)
        assert np.allclose(utils.transform_points(source_points + 1e4, T), target_points)

    def test_normalize_coinciding_points(self):
        with pytest.raises(interfaces.DegenerateGeometry):
            registration.normalize_points(np.ones((5, 3)), np.ones((5, 3)))

    def test_fgr_iteration_is_pure(self, source_points, target_points):
        T = np.eye(4)
        T_new, xi, squared_residuals = registration.fgr_iteration(T, 1e6, source_points, target_points)
        assert np.array_equal(T, np.eye(4))
        assert is_rigid(T_new)
        assert xi.shape == (6,)
        assert squared_residuals.shape == (len(source_points),)
        # One step from identity reduces the residuals.
        residuals = utils.transform_points(source_points, T_new) - target_points
        assert np.sum(residuals ** 2) < squared_residuals.sum()


class TestRegisterRigid:

    def test_perfect_correspondences(self, correspondences, source_points, target_points, transformation):
        T = registration.register_rigid(correspondences, source_points, target_points)
        assert is_rigid(T)
        error_rot, error_trans = utils.get_transformation_error(T, transformation, in_degrees=False)
        assert error_rot < 1e-6
        assert error_trans < 1e-6

    def test_residuals_after_registration(self, correspondences, source_points, target_points):
        T = registration.register_rigid(correspondences, source_points, target_points)
        moved = utils.transform_points(source_points, T)
        assert utils.get_rmse(moved, target_points) < 1e-6

        # Registering the aligned source again yields the identity.
        T_again = registration.register_rigid(correspondences, moved, target_points)
        assert np.allclose(T_again, np.eye(4), atol=1e-6)

    def test_outliers(self, correspondences, source_points, target_points, transformation):
        rng = np.random.default_rng(7)
        outliers = rng.choice(len(correspondences), size=len(correspondences) // 2, replace=False)
        noisy_correspondences = correspondences.copy()
        noisy_correspondences[outliers, 1] = rng.integers(0, len(target_points), size=len(outliers))
        T = registration.register_rigid(noisy_correspondences, source_points, target_points)
        error_rot, _ = utils.get_transformation_error(T, transformation, in_degrees=True)
        assert error_rot < 5.0

    def test_without_annealing(self, correspondences, source_points, target_points, transformation):
        T = registration.register_rigid(correspondences, source_points, target_points, decrease_mu=False)
        error_rot, error_trans = utils.get_transformation_error(T, transformation, in_degrees=False)
        assert error_rot < 1e-6
        assert error_trans < 1e-6

    @pytest.mark.parametrize("offset", [1e3, 1e5])
    def test_offset_coordinates(self, correspondences, source_points, transformation, offset):
        source_points = source_points + offset
        target_points = utils.transform_points(source_points, transformation)
        T = registration.register_rigid(correspondences, source_points, target_points)
        assert is_rigid(T)
        error_rot, error_trans = utils.get_transformation_error(T, transformation, in_degrees=False)
        assert error_rot < 1e-6
        assert error_trans < 1e-8 * offset
        assert utils.get_rmse(utils.transform_points(source_points, T), target_points) < 1e-8 * offset

    @pytest.mark.parametrize("translation", [[0.3, -0.5, 1.2], [10.0, -20.0, 30.0], [300.0, -500.0, 1200.0]])
    def test_outliers_with_large_translation(self, correspondences, source_points, translation):
        T_true = utils.get_transformation_matrix_from_xyz(rotation_xyz=[15.0, -25.0, 35.0], translation_xyz=translation)
        target_points = utils.transform_points(source_points, T_true)
        rng = np.random.default_rng(7)
        outliers = rng.choice(len(correspondences), size=len(correspondences) // 2, replace=False)
        noisy_correspondences = correspondences.copy()
        noisy_correspondences[outliers, 1] = rng.integers(0, len(target_points), size=len(outliers))

        result = registration.FastGlobalRegistration().register(noisy_correspondences, source_points, target_points)
        error_rot, _ = utils.get_transformation_error(result.transformation, T_true, in_degrees=True)
        assert error_rot < 5.0
        assert result.fitness >= 0.5

    @pytest.mark.parametrize("number", [0, 1, 2])
    def test_insufficient_correspondences(self, correspondences, source_points, target_points, number):
        with pytest.raises(interfaces.InsufficientCorrespondences):
            registration.register_rigid(correspondences[:number], source_points, target_points)

    def test_three_correspondences(self, correspondences, source_points, target_points, transformation):
        T = registration.register_rigid(correspondences[:3], source_points, target_points)
        error_rot, error_trans = utils.get_transformation_error(T, transformation, in_degrees=False)
        assert error_rot < 1e-6
        assert error_trans < 1e-6

    def test_collinear_correspondences(self):
        source_points = np.outer(np.linspace(-1.0, 1.0, 20), [1.0, 1.0, 0.0])
        target_points = source_points + [0.1, 0.0, 0.0]
        correspondences = np.stack([np.arange(20), np.arange(20)], axis=1)
        with pytest.raises(interfaces.DegenerateGeometry) as error:
            registration.register_rigid(correspondences, source_points, target_points)
        assert error.value.iteration == 0
        assert isinstance(error.value, interfaces.RegistrationError)

    def test_index_out_of_bounds(self, correspondences, source_points, target_points):
        with pytest.raises(ValueError):
            registration.register_rigid(correspondences + 1, source_points, target_points)


class TestFastGlobalRegistration:

    def test_register_result(self, correspondences, source_points, target_points):
        result = registration.FastGlobalRegistration().register(correspondences, source_points, target_points)
        assert isinstance(result, interfaces.RegistrationResult)
        assert result.fitness == 1.0
        assert result.inlier_rmse < 1e-6
        assert np.array_equal(result.correspondence_set, correspondences)
        assert 0 < result.iterations <= 64
        assert len(result.transformations) == result.iterations + 1
        assert np.array_equal(result.transformations[0], np.eye(4))
        assert np.array_equal(result.transformations[-1], result.transformation)
        assert all(is_rigid(T) for T in result.transformations)

    def test_max_iteration(self, correspondences, source_points, target_points):
        fgr = registration.FastGlobalRegistration(max_iteration=3, decrease_mu=False)
        result = fgr.register(correspondences, source_points, target_points)
        assert result.iterations == 3

    def test_annealing_outlasts_max_iteration(self, correspondences, source_points, target_points):
        noisy_correspondences = correspondences.copy()
        noisy_correspondences[::2, 1] = noisy_correspondences[::-2, 1]
        result = registration.FastGlobalRegistration(max_iteration=3).register(noisy_correspondences,
                                                                               source_points,
                                                                               target_points)
        assert result.iterations > 3

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            registration.FastGlobalRegistration(max_iteration=0)
        with pytest.raises(ValueError):
            registration.FastGlobalRegistration(max_correspondence_distance=0.0)

    def test_run_spheres(self):
        source = sample_sphere(1000)
        T_true = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0.0, 0.0, 10.0],
                                                          translation_xyz=[1.0, 0.0, 0.0])
        target = np.hstack([utils.transform_points(source[:, :3], T_true), source[:, 3:] @ T_true[:3, :3].T])

        result = registration.FastGlobalRegistration(feature_radius=0.3).run(source, target)
        assert len(result.correspondence_set) >= 3

        aligned = utils.transform_points(target[:, :3], utils.invert_transformation(result.transformation))
        assert utils.get_rmse(aligned, source[:, :3]) < 1e-3

    def test_run_with_features(self):
        source = sample_sphere(500, seed=1)
        T_true = utils.get_transformation_matrix_from_xyz(rotation_xyz=[20.0, 0.0, -10.0],
                                                          translation_xyz=[0.0, 0.5, 0.0])
        target = np.hstack([utils.transform_points(source[:, :3], T_true), source[:, 3:] @ T_true[:3, :3].T])
        fgr = registration.FastGlobalRegistration(feature_radius=0.4)
        source_feature, target_feature = fgr.compute_features(source, target)
        result = fgr.run(source, target, source_feature=source_feature, target_feature=target_feature)
        error_rot, error_trans = utils.get_transformation_error(result.transformation, T_true)
        assert error_rot < 1e-3
        assert error_trans < 1e-3

    def test_compute_correspondences_estimates_normals(self):
        source = sample_sphere(500, seed=2)[:, :3]
        correspondences = registration.compute_correspondences(source, source, feature_radius=0.4,
                                                               normal_radius=0.3)
        assert len(correspondences) >= 3
        assert np.all(np.diff(correspondences[:, 0]) > 0)
        assert np.array_equal(correspondences[:, 0], correspondences[:, 1])

    def test_compute_correspondences_after_registration(self):
        source = sample_sphere(1000, seed=3)
        T_true = utils.get_transformation_matrix_from_xyz(rotation_xyz=[0.0, 0.0, 10.0],
                                                          translation_xyz=[1.0, 0.0, 0.0])
        target = np.hstack([utils.transform_points(source[:, :3], T_true), source[:, 3:] @ T_true[:3, :3].T])
        T = registration.FastGlobalRegistration(feature_radius=0.3).run(source, target).transformation

        moved = np.hstack([utils.transform_points(source[:, :3], T), source[:, 3:] @ T[:3, :3].T])
        correspondences = registration.compute_correspondences(moved, target, feature_radius=0.3)
        residuals = np.linalg.norm(moved[correspondences[:, 0], :3] - target[correspondences[:, 1], :3], axis=1)
        assert len(correspondences) >= 3
        assert residuals.max() < 1e-5

    def test_normal_radius_warning_only_for_estimated_normals(self, caplog):
        source = sample_sphere(300, seed=4)
        fgr = registration.FastGlobalRegistration(feature_radius=0.3, normal_radius=0.5)
        fgr.compute_features(source, source)
        assert "smaller than normal radius" not in caplog.text

        fgr.compute_features(source[:, :3], source[:, :3])
        assert "smaller than normal radius" in caplog.text
