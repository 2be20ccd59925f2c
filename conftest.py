"""
Pytest configuration for the diskdump test suite.

    python -m pytest                 # everything
    python -m pytest -m "not sweep"  # skip the end-to-end site sweeps
"""

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "sweep: end-to-end catalog sweeps over a temporary site tree")
    config.addinivalue_line("markers",
        "cli: tests that drive diskdump.main() with an argv list")

