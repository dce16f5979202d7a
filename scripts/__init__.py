"""Scripts for Easy FGR.

Files:
    __init__.py: This file.
    registration.ini: Initialization file for `run_registration.py`.
    run_registration.py: Performs FPFH feature based Fast Global Registration of two point clouds.

Functions:
    run_registration.eval_config: Evaluates data types of a ConfigParser object.
    run_registration.apply_environment: Overrides config values with environment variables.
    run_registration.print_config_dict: Pretty-prints a config dict created by 'eval_config'.
    run_registration.run: Runs feature computation, correspondence estimation and registration.
    run_registration.main: Command line entry point.
"""
