"""Simplified and Fast Point Feature Histograms (SPFH, FPFH).

The FPFH of a point summarizes how the normals in its neighborhood are oriented relative to its own normal. It is
invariant to rigid transformations and is used to propose correspondences between two point clouds.

Functions:
    pair_features: Computes the (alpha, phi, theta) angular features between a point and its neighbors.
    compute_spfh: Computes the SPFH of every point.
    compute_fpfh: Computes the FPFH of every point of a point cloud.
    compute_fpfh_parallel: Computes the FPFH of several point clouds in parallel threads.
    eval_feature: Converts feature data to an Nx33 array.
    get_open3d_feature: Wraps an Nx33 array into an Open3D `Feature`.
"""
import logging
import sys
import time
from multiprocessing import cpu_count
from typing import Any, List, Tuple, Union

import numpy as np
import open3d as o3d
import tqdm
from joblib import Parallel, delayed

from .spatial import SpatialIndex
from .utils import InputTypes, eval_data, get_points, get_normals

Feature = o3d.pipelines.registration.Feature

NUM_BINS = 11
FEATURE_DIMENSION = 3 * NUM_BINS
FEATURE_RANGES = ((-1.0, 1.0), (-1.0, 1.0), (-np.pi, np.pi))

logger = logging.getLogger(__name__)


def pair_features(point: np.ndarray,
                  normal: np.ndarray,
                  neighbor_points: np.ndarray,
                  neighbor_normals: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Computes the (alpha, phi, theta) angular features between a point and its neighbors.

    With u = n_p, d = (q - p) / |q - p|, v = u x d (normalized) and w = u x v:
    alpha = v . n_q, phi = u . d and theta = atan2(w . n_q, u . n_q).
    Neighbors coinciding with `point` or lying on the line through `point` along its normal have no defined frame
    and are skipped.

    Args:
        point: The point p.
        normal: The unit normal of p.
        neighbor_points: Kx3 neighbor positions.
        neighbor_normals: Kx3 unit neighbor normals.

    Returns:
        The alpha, phi and theta features of all neighbors with a defined frame.
    """
    d = neighbor_points - point
    distance = np.linalg.norm(d, axis=1)
    valid = distance > 0.0
    d = d[valid] / distance[valid, None]
    n_q = neighbor_normals[valid]

    v = np.cross(normal, d)
    v_norm = np.linalg.norm(v, axis=1)
    valid = v_norm > 1e-12
    v = v[valid] / v_norm[valid, None]
    d = d[valid]
    n_q = n_q[valid]
    w = np.cross(normal, v)

    alpha = np.einsum("ij,ij->i", v, n_q)
    phi = d @ normal
    theta = np.arctan2(np.einsum("ij,ij->i", w, n_q), n_q @ normal)
    return alpha, phi, theta


def _histogram(alpha: np.ndarray, phi: np.ndarray, theta: np.ndarray) -> np.ndarray:
    histogram = np.zeros(FEATURE_DIMENSION)
    if len(alpha) == 0:
        return histogram
    for block, (values, (low, high)) in enumerate(zip((alpha, phi, theta), FEATURE_RANGES)):
        bins = np.floor((values - low) / (high - low) * NUM_BINS).astype(np.int64)
        bins = np.clip(bins, 0, NUM_BINS - 1)
        histogram[block * NUM_BINS:(block + 1) * NUM_BINS] = np.bincount(bins, minlength=NUM_BINS) / len(values)
    return histogram


def _normalize_blocks(histograms: np.ndarray) -> np.ndarray:
    blocks = histograms.reshape(len(histograms), 3, NUM_BINS)
    sums = blocks.sum(axis=2, keepdims=True)
    blocks = np.divide(blocks, sums, out=np.zeros_like(blocks), where=sums > 0)
    return blocks.reshape(len(histograms), FEATURE_DIMENSION)


def compute_spfh(points: np.ndarray,
                 normals: np.ndarray,
                 index: SpatialIndex,
                 radius: float,
                 max_nn: Union[int, None] = None,
                 progress: bool = False) -> Tuple[np.ndarray, List[Tuple[np.ndarray, np.ndarray]]]:
    """Computes the Simplified Point Feature Histogram (SPFH) of every point.

    Args:
        points: Nx3 point positions.
        normals: Nx3 unit normals. Points with a zero normal are neither described nor used as neighbors.
        index: Spatial index over `points`.
        radius: The neighborhood radius.
        max_nn: Optional cap on the number of nearest neighbors within `radius`.
        progress: Show a progress bar.

    Returns:
        The Nx33 SPFH array (each 11-bin block sums to 1 or is all zero) and, per point, its neighbor indices and
        Euclidean distances.
    """
    has_normal = np.linalg.norm(normals, axis=1) > 0.0
    spfh = np.zeros((len(points), FEATURE_DIMENSION))
    neighborhoods = list()
    for i in tqdm.tqdm(range(len(points)), desc="SPFH", file=sys.stdout, disable=not progress):
        if not has_normal[i]:
            neighborhoods.append((np.empty(0, dtype=np.int64), np.empty(0)))
            continue
        if max_nn is None:
            indices, squared_distances = index.query_radius(points[i], radius)
        else:
            # One extra neighbor as the query point itself is part of the result.
            indices, squared_distances = index.query_hybrid(points[i], radius, max_nn + 1)
        keep = (indices != i) & (squared_distances > 0.0) & has_normal[indices]
        indices = indices[keep][:max_nn]
        distances = np.sqrt(squared_distances[keep][:max_nn])
        neighborhoods.append((indices, distances))
        if len(indices) > 0:
            spfh[i] = _histogram(*pair_features(points[i], normals[i], points[indices], normals[indices]))
    return spfh, neighborhoods


def compute_fpfh(point_cloud: InputTypes,
                 radius: float = 0.05,  # 5cm
                 max_nn: Union[int, None] = 100,
                 normal_radius: Union[float, None] = None,
                 progress: bool = False) -> np.ndarray:
    """Computes the Fast Point Feature Histogram (FPFH) of every point of a point cloud.

    FPFH(p) = SPFH(p) + sum over neighbors q of SPFH(q) / |q - p|, each 11-bin block renormalized to sum to 1.
    Points without neighbors receive an all-zero descriptor and are excluded from matching.

    Args:
        point_cloud: Point cloud with normals, or an Nx6 array (xyz, normals).
        radius: The neighborhood radius. Should be at least the radius used for normal estimation.
        max_nn: Optional cap on the number of nearest neighbors within `radius`.
        normal_radius: The radius used for normal estimation, if known. Used to warn about too small `radius`.
        progress: Show a progress bar.

    Returns:
        The Nx33 FPFH array.
    """
    start = time.time()
    _point_cloud = eval_data(point_cloud)
    points = get_points(_point_cloud)
    normals = get_normals(_point_cloud)
    if normals is None:
        raise ValueError("Point cloud doesn't have normals which are needed to compute FPFH feature.")
    if radius <= 0:
        raise ValueError(f"`radius` must be positive but is {radius}.")
    if normal_radius is not None and radius < normal_radius:
        logger.warning(f"Feature radius {radius} is smaller than normal radius {normal_radius}. "
                       "Normals might be unreliable at the scale of the feature.")

    norms = np.linalg.norm(normals, axis=1, keepdims=True)
    normals = np.divide(normals, norms, out=np.zeros_like(normals), where=norms > 0)

    index = SpatialIndex(points)
    spfh, neighborhoods = compute_spfh(points, normals, index, radius=radius, max_nn=max_nn, progress=progress)

    fpfh = spfh.copy()
    for i, (indices, distances) in enumerate(neighborhoods):
        if len(indices) > 0:
            fpfh[i] += (spfh[indices] / distances[:, None]).sum(axis=0)
    fpfh = _normalize_blocks(fpfh)

    empty = np.count_nonzero(~fpfh.any(axis=1))
    if empty:
        logger.debug(f"{empty} of {len(points)} points have an empty neighborhood and an all-zero descriptor.")
    logger.debug(f"FPFH computation with radius={radius}, max_nn={max_nn} took {time.time() - start} seconds.")
    return fpfh


def compute_fpfh_parallel(point_cloud_list: List[InputTypes],
                          num_threads: int = cpu_count(),
                          **kwargs: Any) -> List[np.ndarray]:
    """Computes the FPFH of several point clouds in parallel threads.

    Args:
        point_cloud_list: A list of point clouds with normals.
        num_threads: The number of parallel threads to run.

    Returns:
        A list of Nx33 FPFH arrays.
    """
    kwargs_list = list()
    for i, point_cloud in enumerate(point_cloud_list):
        kwargs_dict = {"point_cloud": point_cloud}
        for key, value in kwargs.items():
            kwargs_dict[key] = value[i] if isinstance(value, list) else value
        kwargs_list.append(kwargs_dict)
    if len(point_cloud_list) == 1:
        return [compute_fpfh(**kwargs_list[0])]
    parallel = Parallel(n_jobs=min(num_threads, len(point_cloud_list)), prefer="threads")
    return parallel(delayed(compute_fpfh)(**params) for params in kwargs_list)


def eval_feature(feature: Union[np.ndarray, Feature]) -> np.ndarray:
    """Converts feature data to an NxD array.

    Args:
        feature: An NxD array or an Open3D `Feature` (stored as DxN).

    Returns:
        The NxD float64 feature array.
    """
    if isinstance(feature, Feature):
        return np.ascontiguousarray(np.asarray(feature.data, dtype=np.float64).T)
    feature = np.asarray(feature, dtype=np.float64)
    if feature.ndim != 2:
        raise ValueError(f"Feature data must be of shape NxD but is {feature.shape}.")
    return feature


def get_open3d_feature(feature: np.ndarray) -> Feature:
    """Wraps an NxD array into an Open3D `Feature`.

    Args:
        feature: The NxD feature array.

    Returns:
        The Open3D feature.
    """
    _feature = Feature()
    _feature.data = np.asarray(feature, dtype=np.float64).T
    return _feature
