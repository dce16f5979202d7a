#!/usr/bin/env python3
"""Performs FPFH feature based Fast Global Registration of two point clouds."""
import argparse
import ast
import configparser
import logging
import os
import time
from typing import Any, Dict, List, Union

import numpy as np
import tabulate

from easy_fgr import utils, registration, set_logger_level

logger = logging.getLogger(__name__)

ENVIRONMENT_VARIABLES = {"INPUT_PATH": ("data", "input_path"),
                         "OUTPUT_PATH": ("output", "output_path"),
                         "OUTPUT_NAME": ("output", "output_name"),
                         "EXPORT_CORRESPONDENCES": ("output", "export_correspondences")}


def eval_config(config: configparser.ConfigParser) -> Dict[str, Dict[str, Any]]:
    """Evaluates data types of a ConfigParser object.

    Args:
        config: A ConfigParser object.

    Returns:
        A dict of dicts with sections and options identical to 'config' but with evaluated values.
    """
    config_dict = dict()
    for section in config.sections():
        config_dict[section] = dict()
        for option, values in config.items(section):
            try:
                values = ast.literal_eval(values)
            except (ValueError, SyntaxError):
                if values.lower() == "none":
                    values = None
                elif values.lower() in ["true", "yes", "on"]:
                    values = True
                elif values.lower() in ["false", "no", "off"]:
                    values = False
                elif section.lower() == "processing":
                    if option.lower() == "downsample":
                        if "uniform" in values.lower():
                            values = utils.DownsampleTypes.UNIFORM
                        elif "voxel" in values.lower():
                            values = utils.DownsampleTypes.VOXEL
                        else:
                            raise ValueError(f"`downsample` must be `voxel`, `uniform` or `none` but is {values}.")
                    elif option.lower() == "orient_normals":
                        if "tangent" in values.lower():
                            values = utils.OrientationTypes.TANGENT_PLANE
                        elif "camera" in values.lower():
                            values = utils.OrientationTypes.CAMERA
                        elif "direction" in values.lower():
                            values = utils.OrientationTypes.DIRECTION
                        else:
                            raise ValueError(f"`orient_normals` must be `tangent`, `camera`, `direction` or `none` "
                                             f"but is {values}.")
            config_dict[section][option] = values
    return config_dict


def apply_environment(config_dict: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Overrides config values with the environment variables INPUT_PATH, OUTPUT_PATH, OUTPUT_NAME and
    EXPORT_CORRESPONDENCES, if set.

    Args:
        config_dict: A config dict created by 'eval_config'. Modified in place.

    Returns:
        The updated config dict.
    """
    for variable, (section, option) in ENVIRONMENT_VARIABLES.items():
        value = os.environ.get(variable)
        if value is None:
            continue
        logger.debug(f"Overriding [{section}] {option} with environment variable {variable}={value}.")
        if option == "export_correspondences":
            value = value.strip().lower() not in ["0", "false", "no", "off"]
        config_dict.setdefault(section, dict())[option] = value
    return config_dict


def print_config_dict(config_dict: Dict[str, Any], pretty: bool = True) -> None:
    """Pretty-prints a config dict created by 'eval_config'.

    Args:
        config_dict: A config dict created by 'eval_config'.
        pretty: Pretty-print dict keys.
    """
    config_list = list()
    for section in config_dict.keys():
        config_list.append(("", ""))
        config_list.append((section.upper().replace('_', ' ') if pretty else section, ""))
        config_list.append(('-' * len(section), ""))
        for key, value in config_dict[section].items():
            value = str(value)
            config_list.append((key.capitalize().replace('_', ' ') if pretty else key,
                                value.capitalize() if value.lower() in ["true", "false", "none"] and pretty else value))
    print(tabulate.tabulate(config_list))


def _get_data_paths(data: Dict[str, Any], files: Union[List[str], None] = None) -> List[str]:
    names = list(files) if files else [data.get("source_file"), data.get("target_file")]
    if len(names) < 2 or any(name is None for name in names):
        raise ValueError("A source and a target point cloud file are needed.")
    input_path = data.get("input_path")
    paths = [os.path.join(input_path, name) if input_path is not None else name for name in names]
    for path in paths:
        if not os.path.exists(path):
            raise FileNotFoundError(f"No point cloud file found at {path}.")
    return paths


def _export_correspondences(filename_prefix: str,
                            correspondence_set: np.ndarray,
                            source: utils.PointCloud,
                            target: utils.PointCloud) -> None:
    correspondence_source, correspondence_target = utils.get_correspondence_point_clouds(correspondence_set,
                                                                                         source,
                                                                                         target)
    utils.write_point_cloud(f"{filename_prefix}_0.ply", correspondence_source)
    utils.write_point_cloud(f"{filename_prefix}_1.ply", correspondence_target)


def run(config: Union[configparser.ConfigParser, str, None] = None,
        files: Union[List[str], None] = None,
        verbose: bool = False,
        draw: bool = False) -> Dict[str, Any]:
    """Runs feature computation, correspondence estimation and registration as configured.

    The first file is the source, the second the target. The estimated transformation maps source onto target. The
    written results show both point clouds in the source frame.

    Args:
        config: A ConfigParser object or path to an `.ini` file. Defaults to `registration.ini` next to this file.
        files: Source and target point cloud files, relative to the configured input path. Overrides the config.
        verbose: Get verbose output during execution.
        draw: Visualize the registration result.

    Returns:
        A dict with the registration `result`, the `transformation`, the written `output_files` and the rotation and
        translation `errors` if a ground truth is configured.
    """
    start = time.time()

    # Read config from argument or file
    if config is None or isinstance(config, str):
        path = config if config is not None else os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                                               "registration.ini")
        if not os.path.exists(path):
            raise FileNotFoundError(f"No config file found at {path}.")
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        config.read(path)

    # Evaluate config
    config_dict = apply_environment(eval_config(config))
    data = config_dict["data"]
    processing = config_dict["processing"]
    feature = config_dict["feature"]
    correspondence = config_dict["correspondence"]
    solver = config_dict["solver"]
    output = config_dict["output"]
    options = config_dict["options"]

    # Enable verbose output
    if verbose or options["verbose"]:
        logger.setLevel(logging.DEBUG)
        set_logger_level(logging.DEBUG)
        print_config_dict(config_dict)

    # Load and process source and target data
    paths = _get_data_paths(data, files)
    logger.debug(f"Reading data from {paths}.")
    source, target = utils.eval_data_parallel(data_list=paths[:2])
    if len(paths) > 2:
        logger.warning(f"Only the first two of {len(paths)} point clouds are registered.")

    source, target = [utils.process_point_cloud(point_cloud=point_cloud,
                                                scale=processing["scale"],
                                                downsample=processing["downsample"],
                                                downsample_factor=processing["downsample_factor"],
                                                estimate_normals=True,
                                                recalculate_normals=processing["recalculate_normals"],
                                                normalize_normals=True,
                                                orient_normals=processing["orient_normals"],
                                                search_param_knn=processing["normal_max_nn"],
                                                search_param_radius=processing["normal_radius"])
                      for point_cloud in (source, target)]

    fgr = registration.FastGlobalRegistration(normal_radius=processing["normal_radius"],
                                              normal_max_nn=processing["normal_max_nn"],
                                              **feature,
                                              **correspondence,
                                              **solver)

    # Estimate correspondences
    correspondence_set = fgr.compute_correspondences(source, target)
    logger.info(f"Number of correspondences found: {len(correspondence_set)}.")

    output_path = output["output_path"] if output["output_path"] is not None else os.getcwd()
    os.makedirs(output_path, exist_ok=True)
    output_files = list()
    if output["export_correspondences"]:
        _export_correspondences(os.path.join(output_path, "Corr"), correspondence_set, source, target)

    # Register
    result = fgr.register(correspondence_set, source, target)
    target_in_source = utils.process_point_cloud(point_cloud=target,
                                                 transformation=utils.invert_transformation(result.transformation))
    logger.debug(f"Execution took {time.time() - start} seconds.")

    if output["export_correspondences"]:
        _export_correspondences(os.path.join(output_path, "CorrT"), correspondence_set, source, target_in_source)

    # Save the results
    for i, (path, point_cloud) in enumerate(zip(paths, (source, target_in_source))):
        filename = os.path.join(output_path, f"{output['output_name']}_{i}.ply")
        logger.info(f"{path} >> {filename}")
        utils.write_point_cloud(filename, point_cloud)
        output_files.append(filename)

    # Evaluate against ground truth
    errors = None
    if data.get("ground_truth") is not None:
        errors = utils.get_transformation_error(result.transformation,
                                                data["ground_truth"],
                                                in_degrees=options["use_degrees"])

    # Print evaluation results
    if options["print_results"] or options["verbose"] or verbose:
        table = tabulate.tabulate([(f"{os.path.basename(paths[0])} - {os.path.basename(paths[1])}",
                                    result.fitness,
                                    result.inlier_rmse,
                                    len(result.correspondence_set),
                                    result.iterations,
                                    errors[0] if errors is not None else '?',
                                    errors[1] if errors is not None else '?')],
                                  headers=["source vs. target",
                                           "fitness",
                                           "inlier rmse",
                                           "# corresp.",
                                           "# iter.",
                                           f"error rot. {'[deg]' if options['use_degrees'] else '[rad]'}",
                                           "error trans."])
        print()
        print("RESULTS:\n=======")
        print(table)
        print()
        print(np.array2string(result.transformation, precision=6, suppress_small=True))

    if draw or options["draw"]:
        fgr.draw_registration_result(source=source, target=target, pose=result.transformation)

    return {"result": result,
            "transformation": result.transformation,
            "output_files": output_files,
            "errors": errors}


def main() -> None:
    parser = argparse.ArgumentParser(description="Performs FPFH and Fast Global Registration of two point clouds.")
    parser.add_argument("files", nargs='*', type=str,
                        help="Source and target point cloud files, relative to INPUT_PATH if set.")
    parser.add_argument("-c", "--config",
                        default=os.path.join(os.path.dirname(os.path.abspath(__file__)), "registration.ini"), type=str,
                        help="Path to registration config.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Get verbose output during execution.")
    parser.add_argument("-d", "--draw", action="store_true", help="Visualize registration results.")
    args = parser.parse_args()

    if len(args.files) == 1:
        parser.error("Need a source and a target point cloud file.")
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s: %(message)s")
    run(config=args.config, files=args.files or None, verbose=args.verbose, draw=args.draw)


if __name__ == "__main__":
    main()
