"""
conftest.py - Shared pytest setup for the Fairdrop client tests

Test modules are plain unittest classes; this file only puts src/ on the
path, registers markers and gates the tests that need a real Bee node.

Live tests:
    FAIRDROP_BEE_URL=http://localhost:1633 pytest --run-live
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

DEFAULT_LIVE_BEE_URL = "http://localhost:1633"


def pytest_addoption(parser):
    parser.addoption("--run-live", action="store_true", default=False,
                     help="Run tests that talk to the Bee node at FAIRDROP_BEE_URL")
    parser.addoption("--run-slow", action="store_true", default=False,
                     help="Run slow tests (high proximity mining)")


def pytest_configure(config):
    config.addinivalue_line("markers", "live: needs a reachable Bee node")
    config.addinivalue_line("markers", "slow: takes more than a few seconds")


def pytest_collection_modifyitems(config, items):
    gates = {
        "live": ("--run-live", "needs a Bee node, use --run-live"),
        "slow": ("--run-slow", "slow, use --run-slow"),
    }
    for marker, (option, reason) in gates.items():
        if config.getoption(option):
            continue
        skip = pytest.mark.skip(reason=reason)
        for item in items:
            if marker in item.keywords:
                item.add_marker(skip)


@pytest.fixture
def bee_url():
    return os.environ.get("FAIRDROP_BEE_URL", DEFAULT_LIVE_BEE_URL)

