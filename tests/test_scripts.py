"""Integration tests for the package scripts."""
import configparser
import os

import numpy as np
import pytest

from .context import run_registration, utils


@pytest.fixture
def registration_ini_path():
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "scripts", "registration.ini")


@pytest.fixture
def ground_truth():
    return utils.get_transformation_matrix_from_xyz(rotation_xyz=[0.0, 0.0, 10.0], translation_xyz=[1.0, 0.0, 0.0])


@pytest.fixture
def data_path(tmp_path, ground_truth):
    rng = np.random.default_rng(0)
    points = rng.normal(size=(800, 3))
    points /= np.linalg.norm(points, axis=1, keepdims=True)
    utils.write_point_cloud(str(tmp_path / "sphere_0.ply"), np.hstack([points, points]))
    utils.write_point_cloud(str(tmp_path / "sphere_1.ply"),
                            np.hstack([utils.transform_points(points, ground_truth), points @ ground_truth[:3, :3].T]))
    return str(tmp_path)


@pytest.fixture
def config(registration_ini_path, data_path, tmp_path, ground_truth):
    config = configparser.ConfigParser(inline_comment_prefixes='#')
    config.read(registration_ini_path)
    config.set("data", "input_path", data_path)
    config.set("data", "source_file", "sphere_0.ply")
    config.set("data", "target_file", "sphere_1.ply")
    config.set("data", "ground_truth", str(ground_truth.tolist()))
    config.set("feature", "feature_radius", "0.3")
    config.set("output", "output_path", str(tmp_path / "out"))
    config.set("output", "output_name", "sphere")
    return config


@pytest.fixture(autouse=True)
def environment(monkeypatch):
    for variable in run_registration.ENVIRONMENT_VARIABLES:
        monkeypatch.delenv(variable, raising=False)


def test_paths(registration_ini_path):
    assert os.path.exists(registration_ini_path)


class TestRunRegistration:

    def test_eval_config(self, registration_ini_path):
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        config.read(registration_ini_path)
        config_dict = run_registration.eval_config(config)
        assert config_dict["data"]["source_file"] is None
        assert config_dict["processing"]["downsample"] is None
        assert config_dict["solver"]["max_iteration"] == 64
        assert config_dict["solver"]["max_correspondence_distance"] == -1.0
        assert config_dict["correspondence"]["mutual_filter"] is True
        assert config_dict["output"]["output_name"] == "result"

    def test_eval_config_types(self):
        config = configparser.ConfigParser()
        config.read_dict({"processing": {"downsample": "voxel", "orient_normals": "camera"}})
        config_dict = run_registration.eval_config(config)
        assert config_dict["processing"]["downsample"] == utils.DownsampleTypes.VOXEL
        assert config_dict["processing"]["orient_normals"] == utils.OrientationTypes.CAMERA

        config.read_dict({"processing": {"downsample": "random"}})
        with pytest.raises(ValueError):
            run_registration.eval_config(config)

    def test_apply_environment(self, registration_ini_path, monkeypatch):
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        config.read(registration_ini_path)
        monkeypatch.setenv("OUTPUT_NAME", "bunny")
        monkeypatch.setenv("EXPORT_CORRESPONDENCES", "0")
        config_dict = run_registration.apply_environment(run_registration.eval_config(config))
        assert config_dict["output"]["output_name"] == "bunny"
        assert config_dict["output"]["export_correspondences"] is False

    def test_run(self, config, tmp_path, data_path):
        output = run_registration.run(config)
        output_path = tmp_path / "out"
        for name in ["Corr_0.ply", "Corr_1.ply", "CorrT_0.ply", "CorrT_1.ply", "sphere_0.ply", "sphere_1.ply"]:
            assert (output_path / name).exists()
        assert output["output_files"] == [str(output_path / "sphere_0.ply"), str(output_path / "sphere_1.ply")]

        error_rot, error_trans = output["errors"]
        assert error_rot < 1e-3
        assert error_trans < 1e-3

        # Both written point clouds are in the source frame.
        source = np.asarray(utils.read_point_cloud(str(output_path / "sphere_0.ply")).points)
        target = np.asarray(utils.read_point_cloud(str(output_path / "sphere_1.ply")).points)
        assert utils.get_rmse(source, target) < 1e-3

        corr_source = np.asarray(utils.read_point_cloud(str(output_path / "CorrT_0.ply")).points)
        corr_target = np.asarray(utils.read_point_cloud(str(output_path / "CorrT_1.ply")).points)
        assert len(corr_source) == len(output["result"].correspondence_set)
        assert utils.get_rmse(corr_source, corr_target) < 1e-3

    def test_run_with_flat_ground_truth(self, config, ground_truth):
        config.set("data", "ground_truth", str(ground_truth.ravel().tolist()))
        config.set("output", "export_correspondences", "False")
        error_rot, error_trans = run_registration.run(config)["errors"]
        assert error_rot < 1e-3
        assert error_trans < 1e-3

    def test_run_with_environment(self, config, tmp_path, data_path, monkeypatch):
        config.set("data", "input_path", "none")
        monkeypatch.setenv("INPUT_PATH", data_path)
        monkeypatch.setenv("OUTPUT_PATH", str(tmp_path / "env"))
        monkeypatch.setenv("OUTPUT_NAME", "env")
        monkeypatch.setenv("EXPORT_CORRESPONDENCES", "false")
        run_registration.run(config)
        assert (tmp_path / "env" / "env_0.ply").exists()
        assert (tmp_path / "env" / "env_1.ply").exists()
        assert not (tmp_path / "env" / "Corr_0.ply").exists()

    def test_run_missing_files(self, config):
        config.set("data", "source_file", "missing.ply")
        with pytest.raises(FileNotFoundError):
            run_registration.run(config)
        with pytest.raises(ValueError):
            run_registration.run(config, files=["only_one.ply"])
