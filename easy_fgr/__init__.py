"""Feature-based global rigid registration of point clouds: FPFH features and Fast Global Registration.

Files:
    __init__.py: This file.
    interfaces.py: Shared types, registration result, base class and registration errors.
    spatial.py: Spatial index for kNN, radius and hybrid queries in 3D and feature space.
    features.py: Simplified and Fast Point Feature Histograms (SPFH, FPFH).
    correspondence.py: Feature matching with reciprocity filter and tuple test.
    registration.py: The Fast Global Registration (FGR) robust rigid solver.
    utils.py: Utility functions used throughout the project.

Classes:
    registration.FastGlobalRegistration: The Fast Global Registration (FGR) algorithm.
    spatial.SpatialIndex: kNN, radius and hybrid search over points or feature vectors.
    interfaces.RegistrationResult: Result of a registration run.
    interfaces.RegistrationInterface: Interface for all registration classes.
    interfaces.RegistrationError: Base class of all registration errors.
    interfaces.InsufficientCorrespondences: Fewer than three correspondences are available.
    interfaces.DegenerateGeometry: The solver's normal equations are singular.
    utils.DownsampleTypes: Supported point cloud downsampling types.

Functions:
    get_logger: Returns the package-wide logger
    set_logger_level: Sets the package-wide logger level.
    registration.compute_correspondences: Computes FPFH features of two point clouds and matches them.
    registration.register_rigid: Estimates the rigid transformation from a correspondence set.
    features.compute_fpfh: Computes the FPFH feature of every point of a point cloud.
    utils.estimate_normals: Returns a copy of a point cloud with estimated normals.
    utils.read_point_cloud: Reads point cloud data from file.
    utils.write_point_cloud: Writes point cloud data to file.
"""

import logging

from .interfaces import (RegistrationResult, RegistrationError, InsufficientCorrespondences, DegenerateGeometry)
from .spatial import SpatialIndex
from .features import compute_fpfh
from .registration import FastGlobalRegistration, compute_correspondences, register_rigid
from .utils import estimate_normals, read_point_cloud, write_point_cloud

logger = logging.getLogger(__name__)

__version__ = "1.0"


def get_logger() -> logging.Logger:
    """Returns the package-wide logger.

    Returns:
        logging.Logger: The package-wide logger.
    """
    return logger


def set_logger_level(level: int) -> None:
    """Sets the package-wide logger level.

    Args:
        level (int): The logger level.
    """
    logger.setLevel(level=level)
