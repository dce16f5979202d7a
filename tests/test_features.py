"""Unittests for the features module."""
import numpy as np
import open3d as o3d
import pytest

from .context import features, utils


def sample_ellipsoid(number_of_points, axes=(1.0, 0.8, 0.6), seed=0):
    """Samples points with exact unit normals from the surface of an axis-aligned ellipsoid."""
    rng = np.random.default_rng(seed)
    directions = rng.normal(size=(number_of_points, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    axes = np.asarray(axes)
    points = directions * axes
    normals = directions / axes
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)
    return np.hstack([points, normals])


@pytest.fixture
def ellipsoid():
    return sample_ellipsoid(800)


@pytest.fixture
def transformation():
    return utils.get_transformation_matrix_from_xyz(rotation_xyz=[25.0, -40.0, 70.0],
                                                    translation_xyz=[0.5, -1.0, 2.0])


class TestPairFeatures:

    def test_known_geometry(self):
        point = np.zeros(3)
        normal = np.array([0.0, 0.0, 1.0])
        neighbor_points = np.array([[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        neighbor_normals = np.array([[0.0, 0.0, 1.0], [np.sqrt(0.5), 0.0, np.sqrt(0.5)]])
        alpha, phi, theta = features.pair_features(point, normal, neighbor_points, neighbor_normals)
        assert np.allclose(alpha, [0.0, 0.0])
        assert np.allclose(phi, [0.0, 0.0])
        assert np.allclose(theta, [0.0, -np.pi / 4])

    def test_degenerate_neighbors_skipped(self):
        point = np.zeros(3)
        normal = np.array([0.0, 0.0, 1.0])
        # Coincident with the point and on the line along its normal.
        neighbor_points = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 2.0], [0.0, 1.0, 0.0]])
        neighbor_normals = np.tile(normal, (3, 1))
        alpha, phi, theta = features.pair_features(point, normal, neighbor_points, neighbor_normals)
        assert len(alpha) == len(phi) == len(theta) == 1


class TestComputeFPFH:

    def test_shape_and_normalization(self, ellipsoid):
        fpfh = features.compute_fpfh(ellipsoid, radius=0.25)
        assert fpfh.shape == (len(ellipsoid), features.FEATURE_DIMENSION)
        assert np.all(fpfh >= 0.0)
        blocks = fpfh.reshape(len(fpfh), 3, features.NUM_BINS).sum(axis=2)
        assert np.allclose(blocks, 1.0)

    def test_rigid_invariance(self, ellipsoid, transformation):
        moved = np.hstack([utils.transform_points(ellipsoid[:, :3], transformation),
                           ellipsoid[:, 3:] @ transformation[:3, :3].T])
        fpfh = features.compute_fpfh(ellipsoid, radius=0.25)
        fpfh_moved = features.compute_fpfh(moved, radius=0.25)
        assert np.allclose(fpfh, fpfh_moved, atol=1e-6)

    def test_point_cloud_input(self, ellipsoid):
        point_cloud = utils.get_point_cloud_from_points(ellipsoid)
        assert np.allclose(features.compute_fpfh(point_cloud, radius=0.25),
                           features.compute_fpfh(ellipsoid, radius=0.25))

    def test_empty_neighborhood(self, ellipsoid):
        isolated = np.vstack([ellipsoid, [10.0, 10.0, 10.0, 0.0, 0.0, 1.0]])
        fpfh = features.compute_fpfh(isolated, radius=0.25)
        assert not fpfh[-1].any()
        assert fpfh[:-1].any(axis=1).all()

    def test_max_nn(self, ellipsoid):
        fpfh_capped = features.compute_fpfh(ellipsoid, radius=0.25, max_nn=5)
        fpfh = features.compute_fpfh(ellipsoid, radius=0.25, max_nn=None)
        assert fpfh_capped.shape == fpfh.shape
        assert not np.allclose(fpfh_capped, fpfh)

    def test_non_unit_normals(self, ellipsoid):
        scaled = ellipsoid.copy()
        scaled[:, 3:] *= 3.0
        assert np.allclose(features.compute_fpfh(scaled, radius=0.25), features.compute_fpfh(ellipsoid, radius=0.25))

    def test_input_untouched(self, ellipsoid):
        point_cloud = utils.get_point_cloud_from_points(ellipsoid)
        features.compute_fpfh(point_cloud, radius=0.25)
        assert np.array_equal(np.asarray(point_cloud.points), ellipsoid[:, :3])
        assert np.array_equal(np.asarray(point_cloud.normals), ellipsoid[:, 3:])

    def test_missing_normals(self, ellipsoid):
        with pytest.raises(ValueError):
            features.compute_fpfh(ellipsoid[:, :3])

    def test_invalid_radius(self, ellipsoid):
        with pytest.raises(ValueError):
            features.compute_fpfh(ellipsoid, radius=0.0)

    def test_radius_smaller_than_normal_radius(self, ellipsoid, caplog):
        features.compute_fpfh(ellipsoid, radius=0.1, normal_radius=0.2)
        assert "smaller than normal radius" in caplog.text


def test_compute_fpfh_parallel(ellipsoid):
    other = sample_ellipsoid(300, seed=1)
    fpfh_list = features.compute_fpfh_parallel([ellipsoid, other], num_threads=2, radius=0.3)
    assert len(fpfh_list) == 2
    assert np.allclose(fpfh_list[0], features.compute_fpfh(ellipsoid, radius=0.3))
    assert np.allclose(fpfh_list[1], features.compute_fpfh(other, radius=0.3))


def test_eval_feature(ellipsoid):
    fpfh = features.compute_fpfh(ellipsoid, radius=0.25)
    feature = features.get_open3d_feature(fpfh)
    assert isinstance(feature, o3d.pipelines.registration.Feature)
    assert feature.dimension() == features.FEATURE_DIMENSION
    assert feature.num() == len(ellipsoid)
    assert np.array_equal(features.eval_feature(feature), fpfh)
    with pytest.raises(ValueError):
        features.eval_feature(np.zeros(33))
