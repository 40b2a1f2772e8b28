#!/usr/bin/env python3
"""Performs point cloud registration using registration algorithms from this package."""
import argparse
import ast
import configparser
import glob
import logging
import os
import time
from typing import Any, Dict, List, Union

import numpy as np
import tabulate

from easy_rigid import interfaces, registration, set_logger_level, utils

logger = logging.getLogger(__name__)

POLICY_OPTIONS = {"method": utils.ComputationMethodTypes,
                  "approximation": utils.ApproximationTypes,
                  "execution_policy": utils.ExecutionPolicyTypes}


def eval_policy(value: str, policy_type: type) -> Any:
    """Maps the textual form of a policy, e.g. `hybrid` or `non-iterative`, to its `policy_type` member.

    Args:
        value: The policy name, case insensitive.
        policy_type: The `Flag` subclass to look the name up in.

    Raises:
        InvalidConfigurationError: If `value` names no member of `policy_type`.

    Returns:
        The policy type member.
    """
    try:
        return policy_type[value.strip().upper().replace('-', '_')]
    except KeyError:
        raise utils.InvalidConfigurationError(f"`{value}` is not one of "
                                              f"{[member.name.lower() for member in policy_type]}.")


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
                elif section.lower() == "algorithm" and option.lower() in POLICY_OPTIONS:
                    values = eval_policy(values, POLICY_OPTIONS[option.lower()])
                elif section.lower() == "data":
                    if option.lower() in ["before_files", "after_files"]:
                        _values = [values] if os.path.exists(values) else sorted(glob.glob(values))
                        if len(_values) == 0:
                            raise FileNotFoundError(f"No files found at {values}.")
                        values = _values
                    elif option.lower() == "ground_truth":
                        _values = [values] if os.path.exists(values) else sorted(glob.glob(values))
                        if len(_values) == 0:
                            raise FileNotFoundError(f"No ground truth found at {values}.")
                        values = _values
            config_dict[section][option] = values
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


def get_registration(config_dict: Dict[str, Dict[str, Any]]) -> interfaces.RegistrationInterface:
    """Instantiates the registration algorithm selected in the `algorithm` section.

    Args:
        config_dict: A config dict created by 'eval_config'.

    Returns:
        The registration algorithm.
    """
    algorithm = config_dict["algorithm"]
    method = utils.check_policy(algorithm["method"], utils.ComputationMethodTypes, "method")
    approximation = algorithm.get("approximation") or utils.ApproximationTypes.NONE
    execution_policy = algorithm.get("execution_policy") or utils.ExecutionPolicyTypes.SEQUENTIAL

    if method == utils.ComputationMethodTypes.CPD:
        params = config_dict["cpd_params"]
        return registration.CoherentPointDrift(max_iteration=params["max_iteration"],
                                               tolerance=params["tolerance"],
                                               eps=params["eps"],
                                               weight=params["weight"],
                                               hold_scale_constant=params["hold_scale_constant"],
                                               approximation=approximation,
                                               execution_policy=execution_policy)
    elif method == utils.ComputationMethodTypes.NON_ITERATIVE:
        params = config_dict["nicp_params"]
        return registration.NonIterative(max_iteration=params["max_iteration"],
                                         eps=params["eps"],
                                         approximation=approximation,
                                         execution_policy=execution_policy,
                                         subcloud_size=params["subcloud_size"],
                                         max_correspondence_distance=params["max_correspondence_distance"],
                                         hold_scale_constant=params["hold_scale_constant"],
                                         seed=config_dict["data"].get("seed"))
    params = config_dict["icp_params"]
    return registration.IterativeClosestPoint(relative_fitness=params["relative_fitness"],
                                              relative_rmse=params["relative_rmse"],
                                              max_iteration=params["max_iteration"],
                                              max_correspondence_distance=params["max_correspondence_distance"],
                                              with_scaling=params["with_scaling"])


def get_synthetic_data(data: Dict[str, Any], use_degrees: bool = True) -> Dict[str, List[Any]]:
    """Samples a random before cloud and a randomly transformed and permuted after cloud.

    Args:
        data: The `data` section of a config dict created by 'eval_config'.
        use_degrees: `rotation_range` is given in degrees instead of radians.

    Returns:
        The before clouds, after clouds and ground truth transformations, one of each.
    """
    rng = np.random.default_rng(data.get("seed"))
    rotation_range = data.get("rotation_range", 30.0 if use_degrees else np.pi / 6)
    if use_degrees:
        rotation_range = np.deg2rad(rotation_range)

    before = utils.get_random_point_cloud(size=data.get("cloud_size", 100), rng=rng)
    ground_truth = utils.get_random_transformation(rng=rng,
                                                   rotation_range=rotation_range,
                                                   translation_range=data.get("translation_range", 1.0))
    after = utils.transform_points(before, ground_truth)
    after = utils.apply_permutation(after, utils.get_random_permutation(len(after), rng))
    return {"before": [before], "after": [after], "ground_truth": [ground_truth]}


def run(config: Union[configparser.ConfigParser, None] = None,
        args: Union[List[str], None] = None) -> Dict[str, Any]:
    """Runs the registration algorithm selected in the config.

    Args:
        config: A ConfigParser object. Read from the `--config` argument if not provided.
        args: Command line arguments. Read from `sys.argv` if not provided.

    Returns:
        The results selected by the `return` option.
    """
    # Evaluate command line arguments
    start = time.time()
    parser = argparse.ArgumentParser(description="Performs rigid point cloud registration.")
    parser.add_argument("-c", "--config",
                        default=os.path.join(os.path.dirname(os.path.abspath(__file__)), "registration.ini"), type=str,
                        help="Path to registration config.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Get verbose output during execution.")
    parser.add_argument("-d", "--draw", action="store_true", help="Visualize registration results.")
    args = parser.parse_args(args)

    # Read config from argument or file
    if config is None:
        config = configparser.ConfigParser(inline_comment_prefixes='#')
        if not config.read(args.config):
            raise FileNotFoundError(f"Config file {args.config} not found.")

    # Evaluate config
    config_dict = eval_config(config)
    data = config_dict["data"]
    options = config_dict["options"]

    # Enable verbose output
    if args.verbose or options["verbose"]:
        logger.setLevel(logging.DEBUG)
        set_logger_level(logging.DEBUG)
        print_config_dict(config_dict)

    # Instantiate registration algorithm
    algorithm = get_registration(config_dict)
    logger.debug(f"Loaded registration algorithm {algorithm.name}.")

    # Load or sample before and after data
    ground_truth = data["ground_truth"]
    if data["before_files"] is None or data["after_files"] is None:
        logger.debug("No data files given. Sampling synthetic data.")
        synthetic = get_synthetic_data(data, use_degrees=options["use_degrees"])
        before_list, after_list = synthetic["before"], synthetic["after"]
        ground_truth = synthetic["ground_truth"]
        one_vs_one = True
    else:
        before_list, after_list = data["before_files"], data["after_files"]
        one_vs_one = data["one_vs_one"]

    # Run registration algorithm
    logger.debug(f"Running {algorithm.name}.")
    results = algorithm.run_many(before_list=before_list,
                                 after_list=after_list,
                                 one_vs_one=one_vs_one,
                                 draw=args.draw,
                                 progress=options["progress"] and not (args.verbose or options["verbose"]))
    logger.debug(f"Execution took {time.time() - start} seconds.")

    # Load ground truth data
    if ground_truth is not None:
        if not (isinstance(ground_truth, list) and all(isinstance(gt, (str, np.ndarray)) for gt in ground_truth)):
            ground_truth = [ground_truth]
        ground_truth = [utils.eval_transformation_data(gt) for gt in ground_truth]
        if len(ground_truth) == 1:
            ground_truth *= len(results)
        if len(ground_truth) != len(results):
            raise ValueError(f"'ground_truth' and 'results' must have equal length but have {len(ground_truth)} and "
                             f"{len(results)}.")

    # Evaluate registration results
    errors = list()
    if one_vs_one and len(before_list) == len(after_list):
        names = [f"b{i} - a{i}" for i in range(len(results))]
    else:
        names = [f"b{j} - a{i}" for i in range(len(after_list)) for j in range(len(before_list))]
    for i, result in enumerate(results):
        if ground_truth is not None:
            errors.append(utils.get_transformation_error(result.transformation,
                                                         ground_truth[i],
                                                         in_degrees=options["use_degrees"]))
        else:
            errors.append(('?', '?'))
    errors_rot = [error[0] for error in errors]
    errors_trans = [error[1] for error in errors]

    # Print evaluation results
    if options["print_results"] or options["verbose"] or args.verbose:
        table = tabulate.tabulate([(name,
                                    result.iterations,
                                    result.error,
                                    result.scale,
                                    result.runtime,
                                    error_rot,
                                    error_trans) for name, result, error_rot, error_trans in zip(names,
                                                                                                 results,
                                                                                                 errors_rot,
                                                                                                 errors_trans)],
                                  headers=["before vs. after",
                                           "iterations",
                                           "error",
                                           "scale",
                                           "runtime [s]",
                                           f"error rot. {'[deg]' if options['use_degrees'] else '[rad]'}",
                                           "error trans."])
        print()
        print("RESULTS:\n=======")
        print(table)

    # Return results
    _return = options["return"].lower()
    return_data = dict()
    if "names" in _return or "everything" in _return:
        return_data["names"] = names
    if "results" in _return or "everything" in _return:
        return_data["results"] = results
    if "transformations" in _return or "everything" in _return:
        return_data["transformations"] = [result.transformation for result in results]
    if "errors_rot" in _return or "errors" in _return or "everything" in _return:
        return_data["errors_rot"] = errors_rot
    if "errors_trans" in _return or "errors" in _return or "everything" in _return:
        return_data["errors_trans"] = errors_trans
    return return_data


def main() -> None:
    run()


if __name__ == "__main__":
    main()
