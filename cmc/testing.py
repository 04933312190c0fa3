"""Script entry point shared by the cmc/test_*.py modules.

    python -m cmc.test_context

runs that module's tests through pytest, so fixtures and parametrized
cases behave exactly as under a plain `pytest` run.
"""

import sys

import pytest


def run_module(path: str) -> None:
    """Run the tests in one test module file and exit with pytest's status."""
    sys.exit(pytest.main([path, "-q"]))
