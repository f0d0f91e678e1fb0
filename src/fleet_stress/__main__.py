"""
Main entry point for running fleet-stress as a module.

This allows the package to be executed with:
    python -m fleet_stress

The recommended way to run it is the installed CLI command:
    fleet-stress
"""

from .cli import cli_main

if __name__ == "__main__":
    cli_main()
