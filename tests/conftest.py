"""Shared pytest fixtures"""

import logging

import pytest

from helpers import Scenario


@pytest.fixture
def scenario():
    """Noiseless rover/base scenario"""
    return Scenario()


@pytest.fixture(autouse=True)
def quiet_pyrtk_logging():
    logging.getLogger("pyrtk").setLevel(logging.WARNING)
    yield
