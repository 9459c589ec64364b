# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Pytest fixtures and configuration for sgemm-hammer tests.
"""
import sys
import logging
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

import sgemm_hammer  # noqa: E402


class FakeNVML:
    """In-memory device-management backend with injectable failures."""

    def __init__(self, fail_on=(), power_limit=38500, default_power_limit=38500,
                 clocks=(5001, 1530), auto_boost=True):
        self.fail_on = set(fail_on)
        self.calls = []
        self.power_limit = power_limit
        self.default_power_limit = default_power_limit
        self.default_clocks = clocks
        self.clocks = clocks
        self.auto_boost = auto_boost
        self.initialized = False

    def _check(self, op):
        self.calls.append(op)
        if op in self.fail_on:
            raise sgemm_hammer.DeviceManagementError(op, "Insufficient Permissions", code=4, device_index=0)

    def init(self):
        self._check("init")
        self.initialized = True

    def shutdown(self):
        self.calls.append("shutdown")
        self.initialized = False

    def handle_by_index(self, index):
        self._check("get handle")
        return ("handle", index)

    def get_power_limit(self, handle):
        self._check("get power limit")
        return self.power_limit

    def get_default_power_limit(self, handle):
        self._check("get default power limit")
        return self.default_power_limit

    def set_power_limit(self, handle, milliwatts):
        self._check("set power limit")
        self.power_limit = milliwatts

    def set_applications_clocks(self, handle, mem_mhz, graphics_mhz):
        self._check("set clock")
        self.clocks = (mem_mhz, graphics_mhz)

    def reset_applications_clocks(self, handle):
        self._check("reset clock")
        self.clocks = self.default_clocks

    def get_applications_clocks(self, handle):
        self._check("get clocks")
        return self.clocks

    def set_auto_boost(self, handle, enabled):
        self._check("enable autoboost" if enabled else "disable autoboost")
        self.auto_boost = enabled

    def get_auto_boost(self, handle):
        self._check("get autoboost")
        return self.auto_boost

    def get_power_usage(self, handle):
        self._check("get power usage")
        return 25.0


@pytest.fixture
def th():
    """Provide the sgemm-hammer module for testing."""
    return sgemm_hammer


@pytest.fixture
def parser():
    """Provide a fresh argument parser for testing."""
    return sgemm_hammer.build_parser()


@pytest.fixture
def default_args(parser):
    """Provide default parsed arguments."""
    return parser.parse_args([])


@pytest.fixture
def fake_nvml():
    """Factory for fake device-management backends."""
    return FakeNVML


@pytest.fixture
def test_logger():
    """Logger that propagates to the root logger so caplog sees it."""
    logger = logging.getLogger("sgemm_hammer_tests")
    logger.setLevel(logging.DEBUG)
    logger.propagate = True
    return logger
