"""Spatial index for nearest neighbor search in 3D and in feature space.

The index wraps Open3D's `KDTreeFlann`, which accepts data of any dimension, so the same class serves point
positions (3D) and FPFH feature vectors (33D).

Tie policy: every query result is ordered by ascending squared distance and, for equal distances, by ascending
original index. For kNN and hybrid queries, which of several points at exactly the k-th distance makes it into the
result is decided by the tree traversal. It is deterministic for a given index and query.

Classes:
    SpatialIndex: kNN, radius and hybrid search over an NxD array of points or feature vectors.
"""
import logging
from typing import Tuple, Union

import numpy as np
import open3d as o3d

PointCloud = o3d.geometry.PointCloud
KDTreeFlann = o3d.geometry.KDTreeFlann

logger = logging.getLogger(__name__)


def _sorted(indices, squared_distances) -> Tuple[np.ndarray, np.ndarray]:
    indices = np.asarray(indices, dtype=np.int64)
    squared_distances = np.asarray(squared_distances, dtype=np.float64)
    order = np.lexsort((indices, squared_distances))
    return indices[order], squared_distances[order]


def _empty() -> Tuple[np.ndarray, np.ndarray]:
    return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)


class SpatialIndex:
    """kNN, radius and hybrid search over an NxD array of points or feature vectors.

    Built once, read-only afterwards. An index over zero points answers every query with empty results.

    Attributes:
        data: The indexed NxD data.
        dimension: The data dimension D.

    Methods:
        query_knn(point, k): The `k` nearest neighbors of `point`.
        query_radius(point, radius): All neighbors of `point` within `radius`.
        query_hybrid(point, radius, max_nn): At most `max_nn` nearest neighbors of `point` within `radius`.
        query_nearest_batch(points): The nearest neighbor of every row of `points`.
    """

    def __init__(self, data: Union[np.ndarray, PointCloud], dimension: Union[int, None] = None) -> None:
        """
        Args:
            data: NxD array or point cloud to index.
            dimension: Data dimension. Only needed to validate queries against an index over zero points.
        """
        if isinstance(data, PointCloud):
            data = np.asarray(data.points)
        data = np.asarray(data, dtype=np.float64)
        if data.ndim == 1 and data.size == 0:
            data = data.reshape(0, 3 if dimension is None else dimension)
        if data.ndim != 2:
            raise ValueError(f"Data to index must be of shape NxD but is {data.shape}.")
        self.data = np.ascontiguousarray(data)
        self.dimension = data.shape[1] if dimension is None else dimension
        if data.shape[1] != self.dimension:
            raise ValueError(f"Data has dimension {data.shape[1]} but {self.dimension} was requested.")
        self._tree = KDTreeFlann(self.data.T) if len(self.data) > 0 else None
        logger.debug(f"Built spatial index over {len(self.data)} points of dimension {self.dimension}.")

    def __len__(self) -> int:
        return len(self.data)

    def _eval_query(self, point: np.ndarray) -> np.ndarray:
        query = np.asarray(point, dtype=np.float64).ravel()
        if query.size != self.dimension:
            raise ValueError(f"Query has dimension {query.size} but the index has dimension {self.dimension}.")
        return query

    def query_knn(self, point: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """Returns the `k` nearest neighbors of `point`.

        Args:
            point: The D-dimensional query.
            k: The maximum number of neighbors.

        Returns:
            Neighbor indices and squared distances, ascending by distance, of length `min(k, len(self))`.
        """
        query = self._eval_query(point)
        if self._tree is None or k <= 0:
            return _empty()
        _, indices, squared_distances = self._tree.search_knn_vector_xd(query, int(k))
        return _sorted(indices, squared_distances)

    def query_radius(self, point: np.ndarray, radius: float) -> Tuple[np.ndarray, np.ndarray]:
        """Returns all neighbors of `point` within `radius`. The query point itself is included if indexed.

        Args:
            point: The D-dimensional query.
            radius: The search radius.

        Returns:
            Neighbor indices and squared distances.
        """
        query = self._eval_query(point)
        if self._tree is None or radius <= 0:
            return _empty()
        _, indices, squared_distances = self._tree.search_radius_vector_xd(query, float(radius))
        return _sorted(indices, squared_distances)

    def query_hybrid(self, point: np.ndarray, radius: float, max_nn: int) -> Tuple[np.ndarray, np.ndarray]:
        """Returns at most `max_nn` nearest neighbors of `point` within `radius`.

        Args:
            point: The D-dimensional query.
            radius: The search radius.
            max_nn: The maximum number of neighbors.

        Returns:
            Neighbor indices and squared distances, ascending by distance.
        """
        query = self._eval_query(point)
        if self._tree is None or radius <= 0 or max_nn <= 0:
            return _empty()
        _, indices, squared_distances = self._tree.search_hybrid_vector_xd(query, float(radius), int(max_nn))
        return _sorted(indices, squared_distances)

    def query_nearest_batch(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Returns the nearest neighbor of every row of `points`.

        Args:
            points: MxD queries.

        Returns:
            M nearest neighbor indices and M squared distances. Both are empty if the index is empty.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, self.dimension)
        if self._tree is None:
            return _empty()
        indices = np.empty(len(points), dtype=np.int64)
        squared_distances = np.empty(len(points), dtype=np.float64)
        for i, point in enumerate(points):
            _, index, squared_distance = self._tree.search_knn_vector_xd(point, 1)
            indices[i] = index[0]
            squared_distances[i] = squared_distance[0]
        return indices, squared_distances
