"""Scripts for Easy Rigid.

Files:
    __init__.py: This file.
    registration.ini: Initialization file for `run_registration.py`.
    run_registration.py: Performs point cloud registration using registration algorithms from this package.

Functions:
    run_registration.eval_policy: Maps the textual form of a policy to its enum member.
    run_registration.eval_config: Evaluates data types of a ConfigParser object.
    run_registration.print_config_dict: Pretty-prints a config dict created by 'eval_config'.
    run_registration.get_registration: Instantiates the configured registration algorithm.
    run_registration.get_synthetic_data: Samples a random before cloud and a transformed and permuted after cloud.
    run_registration.run: Runs the registration algorithm.
"""
