"""Feature matching between two point clouds.

Functions:
    match_features: Proposes correspondences by nearest neighbor search in feature space.
    tuple_test: Keeps correspondences that are part of geometrically consistent triples.
    estimate_correspondences: Feature matching followed by the optional tuple test.
    check_correspondences: Validates a correspondence set and enforces the minimum of three pairs.
"""
import logging
import time
from typing import Union

import numpy as np

from .interfaces import InsufficientCorrespondences
from .spatial import SpatialIndex

MIN_CORRESPONDENCES = 3

logger = logging.getLogger(__name__)


def check_correspondences(correspondences: Union[np.ndarray, list],
                          number_of_source_points: Union[int, None] = None,
                          number_of_target_points: Union[int, None] = None) -> np.ndarray:
    """Validates a correspondence set and enforces the minimum of three pairs.

    Args:
        correspondences: Kx2 (source index, target index) pairs.
        number_of_source_points: Number of source points, used to validate source indices.
        number_of_target_points: Number of target points, used to validate target indices.

    Raises:
        InsufficientCorrespondences: If there are fewer than three correspondences.

    Returns:
        The correspondences as Kx2 int64 array.
    """
    _correspondences = np.asarray(correspondences, dtype=np.int64)
    if _correspondences.size == 0:
        _correspondences = _correspondences.reshape(0, 2)
    if _correspondences.ndim != 2 or _correspondences.shape[1] != 2:
        raise ValueError(f"Correspondences must be of shape Kx2 but are {_correspondences.shape}.")
    for column, bound, name in ((0, number_of_source_points, "source"), (1, number_of_target_points, "target")):
        if bound is not None and len(_correspondences) and (_correspondences[:, column].min() < 0 or
                                                            _correspondences[:, column].max() >= bound):
            raise ValueError(f"Correspondence {name} indices must be in [0, {bound}).")
    if len(_correspondences) < MIN_CORRESPONDENCES:
        raise InsufficientCorrespondences(len(_correspondences), MIN_CORRESPONDENCES)
    return _correspondences


def match_features(source_feature: np.ndarray,
                   target_feature: np.ndarray,
                   mutual_filter: bool = True) -> np.ndarray:
    """Proposes correspondences by nearest neighbor search in feature space.

    Every source point with a nonzero descriptor is matched to the target point with the nearest nonzero descriptor.
    With `mutual_filter`, a pair (i, j) is kept only if i is also the nearest source descriptor of j.

    Args:
        source_feature: Nx33 source descriptors.
        target_feature: Mx33 target descriptors.
        mutual_filter: Keep only mutually nearest pairs.

    Returns:
        Kx2 (source index, target index) pairs sorted by source index, each source index at most once.
    """
    source_feature = np.asarray(source_feature, dtype=np.float64)
    target_feature = np.asarray(target_feature, dtype=np.float64)
    if source_feature.shape[1:] != target_feature.shape[1:]:
        raise ValueError(f"Source and target features need the same dimension but have shapes "
                         f"{source_feature.shape} and {target_feature.shape}.")

    # Points with an empty neighborhood have all-zero descriptors and take no part in matching.
    source_valid = np.flatnonzero(source_feature.any(axis=1))
    target_valid = np.flatnonzero(target_feature.any(axis=1))
    if len(source_valid) == 0 or len(target_valid) == 0:
        return np.empty((0, 2), dtype=np.int64)

    target_index = SpatialIndex(target_feature[target_valid])
    nearest_target, _ = target_index.query_nearest_batch(source_feature[source_valid])
    correspondences = np.stack([source_valid, target_valid[nearest_target]], axis=1)

    if mutual_filter:
        source_index = SpatialIndex(source_feature[source_valid])
        matched_targets = np.unique(nearest_target)
        nearest_source, _ = source_index.query_nearest_batch(target_feature[target_valid[matched_targets]])
        back = dict(zip(matched_targets.tolist(), source_valid[nearest_source].tolist()))
        mutual = np.array([back[j] == i for i, j in zip(source_valid.tolist(), nearest_target.tolist())], dtype=bool)
        logger.debug(f"Reciprocity filter kept {mutual.sum()} of {len(correspondences)} correspondences.")
        correspondences = correspondences[mutual]
    return correspondences


def tuple_test(correspondences: np.ndarray,
               source_points: np.ndarray,
               target_points: np.ndarray,
               tuple_scale: float = 0.95,
               maximum_tuple_count: int = 1000,
               seed: Union[int, None] = None) -> np.ndarray:
    """Keeps correspondences that are part of geometrically consistent triples.

    Random triples of correspondences are drawn. A triple is consistent if each of its three source edge lengths
    matches the corresponding target edge length up to the ratio `tuple_scale`. Sampling stops after
    `maximum_tuple_count` consistent triples or `100 * K` trials.

    Args:
        correspondences: Kx2 (source index, target index) pairs.
        source_points: Nx3 source positions.
        target_points: Mx3 target positions.
        tuple_scale: Minimum ratio of corresponding edge lengths, in (0, 1].
        maximum_tuple_count: Maximum number of consistent triples.
        seed: Random seed.

    Returns:
        The surviving correspondences sorted by source index.
    """
    if not 0.0 < tuple_scale <= 1.0:
        raise ValueError(f"`tuple_scale` must be in (0, 1] but is {tuple_scale}.")
    correspondences = np.asarray(correspondences, dtype=np.int64).reshape(-1, 2)
    number_of_correspondences = len(correspondences)
    if number_of_correspondences < MIN_CORRESPONDENCES:
        return correspondences

    rng = np.random.default_rng(seed)
    trials = 100 * number_of_correspondences
    samples = rng.integers(0, number_of_correspondences, size=(trials, 3))
    samples = samples[(samples[:, 0] != samples[:, 1]) & (samples[:, 1] != samples[:, 2]) &
                      (samples[:, 0] != samples[:, 2])]

    p = source_points[correspondences[samples, 0]]
    q = target_points[correspondences[samples, 1]]
    edges_p = np.stack([np.linalg.norm(p[:, a] - p[:, b], axis=1) for a, b in ((0, 1), (1, 2), (2, 0))], axis=1)
    edges_q = np.stack([np.linalg.norm(q[:, a] - q[:, b], axis=1) for a, b in ((0, 1), (1, 2), (2, 0))], axis=1)
    consistent = np.all((edges_p * tuple_scale < edges_q) & (edges_q < edges_p / tuple_scale), axis=1)

    kept = samples[consistent][:maximum_tuple_count]
    logger.debug(f"Tuple test found {len(kept)} consistent triples in {len(samples)} trials.")
    return correspondences[np.unique(kept.ravel())]


def estimate_correspondences(source_feature: np.ndarray,
                             target_feature: np.ndarray,
                             source_points: Union[np.ndarray, None] = None,
                             target_points: Union[np.ndarray, None] = None,
                             mutual_filter: bool = True,
                             use_tuple_test: bool = False,
                             tuple_scale: float = 0.95,
                             maximum_tuple_count: int = 1000,
                             seed: Union[int, None] = None) -> np.ndarray:
    """Feature matching followed by the optional tuple test.

    Args:
        source_feature: Nx33 source descriptors.
        target_feature: Mx33 target descriptors.
        source_points: Nx3 source positions. Needed for the tuple test.
        target_points: Mx3 target positions. Needed for the tuple test.
        mutual_filter: Keep only mutually nearest pairs.
        use_tuple_test: Apply the tuple test.
        tuple_scale: Minimum ratio of corresponding edge lengths in the tuple test.
        maximum_tuple_count: Maximum number of consistent triples in the tuple test.
        seed: Random seed of the tuple test.

    Raises:
        InsufficientCorrespondences: If fewer than three correspondences survive.

    Returns:
        Kx2 (source index, target index) pairs sorted by source index.
    """
    start = time.time()
    correspondences = match_features(source_feature, target_feature, mutual_filter=mutual_filter)
    if use_tuple_test:
        assert source_points is not None and target_points is not None, \
            "Source and target points are needed for the tuple test."
        correspondences = tuple_test(correspondences,
                                     np.asarray(source_points, dtype=np.float64),
                                     np.asarray(target_points, dtype=np.float64),
                                     tuple_scale=tuple_scale,
                                     maximum_tuple_count=maximum_tuple_count,
                                     seed=seed)
    logger.debug(f"Found {len(correspondences)} correspondences in {time.time() - start} seconds.")
    return check_correspondences(correspondences)
