"""Scripts for Easy FGR.

Files:
    __init__.py: This file.
    registration.ini: Default config of `run_registration.py`.
    run_registration.py: Displaces, processes and registers point clouds using Fast Global Registration.

Functions:
    run_registration.eval_config: Evaluates the string values of a registration config.
    run_registration.print_config_dict: Prints a config dict created by `eval_config` as a table.
    run_registration.run: Runs the registration demo.
    run_registration.main: Command line entry point.
"""
