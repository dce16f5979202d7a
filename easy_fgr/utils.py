"""Utility functions used throughout the project.

This is the geometry I/O layer around the registration core: reading and writing point clouds, normal estimation,
transformation handling and error metrics.

Classes:
    DownsampleTypes: Supported point cloud downsampling types.
    OrientationTypes: Supported normal orientation types.

Functions:
    eval_data: Convenience function that automatically determines the data type and loads the data accordingly.
    eval_data_parallel: Evaluates a list of inputs in parallel using multi-threading.
    get_points: Returns the point coordinates of point cloud data as Nx3 array.
    get_normals: Returns the normals of point cloud data as Nx3 array or `None`.
    estimate_normals: Returns a copy of a point cloud with estimated normals.
    process_point_cloud: Utility function to apply various processing steps on point cloud data.
    read_point_cloud: Reads point cloud data from file.
    write_point_cloud: Writes point cloud data to file.
    get_point_cloud_from_points: Convenience function to obtain point clouds from points.
    get_correspondence_point_clouds: Collects the points taking part in a correspondence set into two point clouds.
    transform_points: Applies a 4x4 transformation to Nx3 points.
    invert_transformation: Inverts a rigid 4x4 transformation.
    eval_transformation_data: Evaluates different types of transformation data to obtain a 4x4 transformation matrix.
    get_transformation_matrix_from_xyz: Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector
                                        and XYZ Euler angles.
    get_ground_truth_pose_from_file: Reads ground truth from JSON file.
    draw_geometries: Convenience function to draw 3D geometries.
    get_transformation_error: Computes the rotational and translational error between estimated and ground-truth
                              transformation data.
    get_rotation_error: Computes the error between estimated and ground-truth rotation in degrees or radians.
    get_translation_error: Computes the translational error between estimated and ground-truth translation.
    get_rmse: Computes the root-mean-squared distance between corresponding points.
"""
import ast
import copy
import json
import logging
import math
import os
import time
from enum import Flag, auto
from multiprocessing import cpu_count
from typing import Any, List, Union, Tuple

import numpy as np
import open3d as o3d
from joblib import Parallel, delayed

PointCloud = o3d.geometry.PointCloud

InputTypes = Union[PointCloud, np.ndarray, str]
TransformationTypes = Union[np.ndarray, List[float], List[List[float]], str]

logger = logging.getLogger(__name__)


class DownsampleTypes(Flag):
    """Supported point cloud downsampling types."""
    VOXEL = auto()
    UNIFORM = auto()


class OrientationTypes(Flag):
    """Supported normal orientation types."""
    TANGENT_PLANE = auto()
    CAMERA = auto()
    DIRECTION = auto()


def eval_data(data: InputTypes, **kwargs: Any) -> PointCloud:
    """Convenience function that automatically determines the data type and loads the data accordingly.

    Args:
        data: The data to be evaluated. A point cloud, a path to a point cloud file or an Nx3 (xyz) or Nx6
              (xyz, normals) array.

    Returns:
        The data evaluated as a point cloud.
    """
    if isinstance(data, PointCloud):
        logger.debug("Data is point cloud. Returning.")
        return data
    elif isinstance(data, str):
        logger.debug(f"Trying to read point cloud data from file.")
        return read_point_cloud(filename=data, **kwargs)
    elif isinstance(data, np.ndarray):
        if data.ndim == 2 and data.shape[1] in [3, 6]:
            logger.debug("Trying to convert data to point cloud.")
            return get_point_cloud_from_points(points=data)
        else:
            raise ValueError(f"Point cloud data must be of shape Nx3 (xyz) or Nx6 (xyz, normals) but is {data.shape}.")
    else:
        raise TypeError(f"Can't process data of type {type(data)}.")


def eval_data_parallel(data_list: List[InputTypes],
                       num_threads: int = cpu_count(),
                       **kwargs: Any) -> List[PointCloud]:
    """Evaluates a list of inputs in parallel using multi-threading.

    Args:
        data_list: The list of inputs.
        num_threads: The number of parallel threads to run.

    Returns:
        List of evaluated inputs.
    """
    if len(data_list) == 1:
        return [eval_data(data=data_list[0], **kwargs)]
    parallel = Parallel(n_jobs=min(num_threads, len(data_list)), prefer="threads")
    return parallel(delayed(eval_data)(data=d, **kwargs) for d in data_list)


def get_points(data: Union[PointCloud, np.ndarray]) -> np.ndarray:
    """Returns the point coordinates of point cloud data as Nx3 array.

    Args:
        data: A point cloud or an Nx3/Nx6 array.

    Returns:
        The Nx3 float64 point coordinates.
    """
    if isinstance(data, PointCloud):
        return np.asarray(data.points, dtype=np.float64)
    points = np.asarray(data, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] not in [3, 6]:
        raise ValueError(f"Point data must be of shape Nx3 or Nx6 but is {points.shape}.")
    return points[:, :3]


def get_normals(data: Union[PointCloud, np.ndarray]) -> Union[np.ndarray, None]:
    """Returns the normals of point cloud data as Nx3 array or `None` if there are none.

    Args:
        data: A point cloud or an Nx6 array (xyz, normals).

    Returns:
        The Nx3 float64 normals or `None`.
    """
    if isinstance(data, PointCloud):
        return np.asarray(data.normals, dtype=np.float64) if data.has_normals() else None
    points = np.asarray(data, dtype=np.float64)
    if points.ndim == 2 and points.shape[1] == 6:
        return points[:, 3:]
    return None


def estimate_normals(point_cloud: InputTypes,
                     radius: float = 0.02,  # 2cm
                     max_nn: int = 30,
                     recalculate_normals: bool = False,
                     orient_normals: Union[OrientationTypes, None] = None,
                     camera_location_or_direction: Union[np.ndarray, list] = np.zeros(3)) -> PointCloud:
    """Returns a copy of a point cloud with estimated unit normals. The input is left untouched.

    Args:
        point_cloud: The point cloud data.
        radius: Normals are estimated from the neighbors within this radius.
        max_nn: Maximum number of neighbors used for estimation.
        recalculate_normals: Recalculate normals if the point cloud already has normals.
        orient_normals: Orient normals towards: plane spanned by their neighbors, an orientation or the camera location.
        camera_location_or_direction: The camera location or an orientation used in normal orientation computation.

    Returns:
        A new point cloud with normals.
    """
    return process_point_cloud(point_cloud=eval_data(point_cloud),
                               estimate_normals=True,
                               recalculate_normals=recalculate_normals,
                               normalize_normals=True,
                               orient_normals=orient_normals,
                               search_param_radius=radius,
                               search_param_knn=max_nn,
                               camera_location_or_direction=camera_location_or_direction)


def process_point_cloud(point_cloud: PointCloud,
                        scale: float = 1.0,
                        downsample: Union[DownsampleTypes, None] = None,
                        downsample_factor: Union[float, int] = 1,
                        transformation: Union[np.ndarray, list, None] = None,
                        estimate_normals: bool = False,
                        recalculate_normals: bool = False,
                        fast_normal_computation: bool = True,
                        normalize_normals: bool = False,
                        orient_normals: Union[OrientationTypes, None] = None,
                        search_param_knn: int = 30,
                        search_param_radius: float = 0.02,  # 2cm
                        camera_location_or_direction: Union[np.ndarray, list] = np.zeros(3),
                        draw: bool = False) -> PointCloud:
    """Utility function to apply various processing steps on point cloud data.

    Processing steps are applied in order implied by the functions argument order:
    1. `scale`
    2. `downsample`
    3. `transformation`
    4. `estimate normals`
    5. `normalize normals`
    6. `orient normals`

    Args:
        point_cloud: The point cloud to be processed. Never modified.
        scale: Scales the point cloud.
        downsample: Reduce point cloud density by dropping points uniformly or in voxel grid fashion.
        downsample_factor: The amount of downsampling. Factor for `DownsampleType.UNIFORM`, voxel size for
                           `DownsampleType.VOXEL`.
        transformation: Homogeneous transformation. Also accepts translation vector or rotation matrix.
        estimate_normals: Estimate vertex normals.
        recalculate_normals: Recalculate normals if the point cloud already has normals.
        fast_normal_computation: Use fast normal computation algorithm.
        normalize_normals: Scale normals to unit length.
        orient_normals: Orient normals towards: plane spanned by their neighbors, an orientation or the camera location.
        search_param_knn: Compute normals based on k neighboring vertices.
        search_param_radius: Compute normals based on vertices inside a specified radius.
        camera_location_or_direction: The camera location or an orientation used in normal orientation computation.
        draw: Visualize the processed point cloud. Mostly for debugging.

    Returns:
        The processed point cloud.
    """
    start = time.time()
    _point_cloud = copy.deepcopy(point_cloud)
    if scale != 1.0:
        logger.debug(f"Scaling point cloud with factor {scale}.")
        _point_cloud.points = o3d.utility.Vector3dVector(np.asarray(_point_cloud.points) * scale)

    if downsample is not None:
        logger.debug(f"{downsample} downsampling point cloud with factor {downsample_factor}.")
        logger.debug(f"Number of points before downsampling: {len(np.asarray(_point_cloud.points))}")
        if downsample == DownsampleTypes.VOXEL:
            _point_cloud = _point_cloud.voxel_down_sample(voxel_size=downsample_factor)
        elif downsample == DownsampleTypes.UNIFORM:
            _point_cloud = _point_cloud.uniform_down_sample(every_k_points=int(downsample_factor))
        else:
            raise ValueError(f"`downsample` needs to by one of `DownsampleTypes` but is {type(downsample)}.")
        logger.debug(f"Number of points after downsampling: {len(np.asarray(_point_cloud.points))}")

    if transformation is not None:
        _transform = np.asarray(transformation)
        if _transform.size in [3, 4]:
            _point_cloud.translate(translation=_transform.ravel()[:3], relative=True)
        elif _transform.size == 9:
            _point_cloud.rotate(R=_transform.reshape(3, 3), center=_point_cloud.get_center())
        elif _transform.size == 16:
            _point_cloud.transform(_transform.reshape(4, 4))
        else:
            raise ValueError("`transformation` needs to be a valid translation, rotation or transformation in natural"
                             "or homogeneous coordinates, i.e. of size 3, 4, 9 or 16.")

    if estimate_normals and (not _point_cloud.has_normals() or recalculate_normals):
        logger.debug(f"Estimating point cloud normals with radius={search_param_radius}, max_nn={search_param_knn}.")
        if recalculate_normals:
            _point_cloud.normals = o3d.utility.Vector3dVector()
        search_param = o3d.geometry.KDTreeSearchParamHybrid(radius=search_param_radius, max_nn=search_param_knn)
        _point_cloud.estimate_normals(search_param=search_param, fast_normal_computation=fast_normal_computation)

    if normalize_normals:
        if _point_cloud.has_normals():
            _point_cloud = _point_cloud.normalize_normals()
        else:
            logger.warning("Point cloud doesn't have normals so can't normalize them.")

    if orient_normals is not None:
        assert _point_cloud.has_normals(), "Point cloud doesn't have normals which could be oriented."
        logger.debug(f"Orienting normals towards {orient_normals}.")
        if orient_normals == OrientationTypes.TANGENT_PLANE:
            _point_cloud.orient_normals_consistent_tangent_plane(k=search_param_knn)
        elif orient_normals == OrientationTypes.CAMERA:
            _point_cloud.orient_normals_towards_camera_location(camera_location=camera_location_or_direction)
        elif orient_normals == OrientationTypes.DIRECTION:
            _point_cloud.orient_normals_to_align_with_direction(
                orientation_reference=np.asarray(camera_location_or_direction))
        else:
            raise ValueError(f"`orient_normals` needs to be one of `OrientationTypes` but is {type(orient_normals)}.")

    logger.debug(f"Processing took {time.time() - start} seconds.")

    if draw:
        if not _point_cloud.has_colors():
            _point_cloud.paint_uniform_color([0.8, 0.0, 0.0])
        draw_geometries(geometries=[_point_cloud], window_name="Processed Point Cloud")

    return _point_cloud


def read_point_cloud(filename: str, **kwargs: Any) -> PointCloud:
    """Reads point cloud data from file.

    Args:
        filename: The path to the point cloud file (PLY, PCD, XYZ, ... or a NumPy `.npy`/`.npz` Nx3/Nx6 array).

    Returns:
        The point cloud data read from file.
    """
    if not os.path.exists(filename):
        raise FileNotFoundError(f"No point cloud file found at {filename}.")
    if filename.endswith(".npy") or filename.endswith(".npz"):
        potential_points = np.load(filename)
        if hasattr(potential_points, "files"):
            potential_points = potential_points[potential_points.files[0]]
        if potential_points.ndim == 2 and potential_points.shape[1] in [3, 6]:
            return get_point_cloud_from_points(points=potential_points)
        else:
            raise ValueError(f"Numpy array read from file has shape {potential_points.shape} which is not supported.")
    point_cloud = o3d.io.read_point_cloud(filename=filename,
                                          format=kwargs.get("format", 'auto'),
                                          remove_nan_points=kwargs.get("remove_nan_points", True),
                                          remove_infinite_points=kwargs.get("remove_infinite_points", True),
                                          print_progress=kwargs.get("print_progress", False))
    if point_cloud.is_empty():
        logger.warning(f"Point cloud read from {filename} is empty.")
    return point_cloud


def write_point_cloud(filename: str, point_cloud: InputTypes, **kwargs: Any) -> None:
    """Writes point cloud data to file.

    Args:
        filename: The output path. The file format is deduced from the extension.
        point_cloud: The point cloud data.
    """
    if not o3d.io.write_point_cloud(filename=filename,
                                    pointcloud=eval_data(point_cloud),
                                    write_ascii=kwargs.get("write_ascii", False),
                                    compressed=kwargs.get("compressed", False),
                                    print_progress=kwargs.get("print_progress", False)):
        raise IOError(f"Couldn't write point cloud to {filename}.")
    logger.debug(f"Wrote point cloud to {filename}.")


def get_point_cloud_from_points(points: np.ndarray) -> PointCloud:
    """Convenience function to obtain point clouds from points.

    Args:
        points: A Nx3 array of vertex coordinates or a Nx6 array of vertex coordinates and normals.

    Returns:
        The point cloud created from the points.
    """
    points = np.asarray(points, dtype=np.float64)
    point_cloud = PointCloud(o3d.utility.Vector3dVector(points[:, :3]))
    if points.shape[1] == 6:
        point_cloud.normals = o3d.utility.Vector3dVector(points[:, 3:])
    return point_cloud


def get_correspondence_point_clouds(correspondence_set: np.ndarray,
                                    source: InputTypes,
                                    target: InputTypes) -> Tuple[PointCloud, PointCloud]:
    """Collects the points taking part in a correspondence set into two point clouds.

    The k-th point of both returned point clouds belongs to the k-th correspondence.

    Args:
        correspondence_set: Kx2 array of (source index, target index) pairs.
        source: The source data.
        target: The target data.

    Returns:
        The corresponding source and target points as point clouds.
    """
    correspondence_set = np.asarray(correspondence_set, dtype=np.int64).reshape(-1, 2)
    source_points = get_points(eval_data(source))[correspondence_set[:, 0]]
    target_points = get_points(eval_data(target))[correspondence_set[:, 1]]
    return get_point_cloud_from_points(source_points), get_point_cloud_from_points(target_points)


def transform_points(points: np.ndarray, transformation: np.ndarray) -> np.ndarray:
    """Applies a 4x4 transformation to Nx3 points.

    Args:
        points: The Nx3 points.
        transformation: The 4x4 transformation matrix.

    Returns:
        The transformed Nx3 points.
    """
    R = transformation[:3, :3]
    t = transformation[:3, 3]
    return np.asarray(points) @ R.T + t


def invert_transformation(transformation: np.ndarray) -> np.ndarray:
    """Inverts a rigid 4x4 transformation using the transposed rotation.

    Args:
        transformation: The rigid 4x4 transformation matrix.

    Returns:
        The inverse 4x4 transformation matrix.
    """
    R = transformation[:3, :3]
    t = transformation[:3, 3]
    T = np.eye(4)
    T[:3, :3] = R.T
    T[:3, 3] = -R.T @ t
    return T


def eval_transformation_data(transformation_data: TransformationTypes) -> np.ndarray:
    """Evaluates different types of transformation data to obtain a 4x4 transformation matrix.

    Accepted are a 4x4 matrix, its 16 values in row-major order, the 12 values of its upper 3x4 block, a 3x3 rotation
    matrix (9 values), a translation vector (3 values) or a pair of 9 rotation and 3 translation values. Strings are
    parsed as Python literals or, if they name an existing file, read as JSON ground truth.

    Args:
        transformation_data: Array or list(s) containing transformation (rotation, translation) data, a string
                             representation of such a list or a path to a JSON ground truth file.

    Returns:
        A 4x4 transformation matrix.
    """
    if isinstance(transformation_data, str):
        if os.path.exists(transformation_data):
            return get_ground_truth_pose_from_file(path_to_ground_truth_json=transformation_data)
        transformation_data = ast.literal_eval(transformation_data)
    if not isinstance(transformation_data, (np.ndarray, list, tuple)):
        raise TypeError(f"Transformation data of unsupported type {type(transformation_data)}.")

    T = np.eye(4)
    if not isinstance(transformation_data, np.ndarray) and len(transformation_data) == 2:
        rotation, translation = transformation_data
        T[:3, :3] = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
        T[:3, 3] = np.asarray(translation, dtype=np.float64).ravel()[:3]
        return T

    data = np.asarray(transformation_data, dtype=np.float64)
    if data.size == 16:
        return data.reshape(4, 4)
    elif data.size == 12:
        T[:3] = data.reshape(3, 4)
    elif data.size == 9:
        T[:3, :3] = data.reshape(3, 3)
    elif data.size == 3:
        T[:3, 3] = data.ravel()
    else:
        raise ValueError(f"Transformation data needs 3, 9, 12 or 16 values but has {data.size}.")
    return T


def get_transformation_matrix_from_xyz(rotation_xyz: Union[np.ndarray, list] = np.zeros(3),
                                       translation_xyz: Union[np.ndarray, list] = np.zeros(3)) -> np.ndarray:
    """Constructs a 4x4 homogenous transformation matrix from a XYZ translation vector and XYZ Euler angles.

    Args:
        rotation_xyz: The XYZ Euler angles in degrees.
        translation_xyz: The XYZ translation vector.

    Returns:
        The 4x4 homogenous transformation matrix.
    """
    T = np.eye(4)
    T[:3, :3] = PointCloud().get_rotation_matrix_from_xyz(np.radians(np.asarray(rotation_xyz, dtype=np.float64)))
    T[:3, 3] = np.asarray(translation_xyz, dtype=np.float64).ravel()[:3]
    return T


def get_ground_truth_pose_from_file(path_to_ground_truth_json: str) -> np.ndarray:
    """Reads ground truth from JSON file.

    The file holds either transformation data accepted by `eval_transformation_data` or an object with keys starting
    with 'rot' (3x3 rotation) and 'tra' (translation).

    Args:
        path_to_ground_truth_json: Path to the ground truth JSON file.

    Returns:
        The ground truth pose as 4x4 transformation matrix.
    """
    with open(path_to_ground_truth_json) as f:
        ground_truth = json.load(f)

    if isinstance(ground_truth, dict):
        rotation = [value for key, value in ground_truth.items() if key.startswith("rot")]
        translation = [value for key, value in ground_truth.items() if key.startswith("tra")]
        if not rotation or not translation:
            raise ValueError(f"No key starting with 'rot' and/or 'tra' found in {path_to_ground_truth_json}.")
        ground_truth = [rotation[0], translation[0]]
    return eval_transformation_data(transformation_data=ground_truth)


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

    Args:
        transformation_estimate: The estimated transformation.
        transformation_ground_truth: The ground-truth transformation.
        in_degrees: Return rotational error in degrees instead of radians.

    Returns:
        Rotational and translation error between estimated and ground-truth transformation.
    """
    T_est = eval_transformation_data(transformation_data=transformation_estimate)
    T_gt = eval_transformation_data(transformation_data=transformation_ground_truth)
    error_rot = get_rotation_error(rotation_estimate=T_est[:3, :3],
                                   rotation_ground_truth=T_gt[:3, :3],
                                   in_degrees=in_degrees)
    error_trans = get_translation_error(translation_estimate=T_est[:3, 3],
                                        translation_ground_truth=T_gt[:3, 3])
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

    # acos is ill-conditioned near 1, use the chordal distance for tiny angles.
    chordal = np.linalg.norm(rotation_estimate - rotation_ground_truth) / math.sqrt(2.0)
    error_rad = 2.0 * math.asin(min(1.0, 0.5 * chordal)) if chordal < 1e-3 else math.acos(error_cos)
    if in_degrees:
        return float(np.rad2deg(error_rad))
    return error_rad


def get_translation_error(translation_estimate: np.ndarray, translation_ground_truth: np.ndarray) -> float:
    """Computes the Euclidean distance between estimated and ground-truth translation.

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


def get_rmse(points: np.ndarray, other_points: np.ndarray) -> float:
    """Computes the root-mean-squared distance between corresponding points.

    Args:
        points: Nx3 points.
        other_points: Nx3 points, the i-th corresponding to the i-th of `points`.

    Returns:
        The RMS point-to-point distance.
    """
    assert np.shape(points) == np.shape(other_points), \
        f"Point sets need equal shape but have {np.shape(points)} and {np.shape(other_points)}."
    if len(points) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.sum((np.asarray(points) - np.asarray(other_points)) ** 2, axis=1))))
