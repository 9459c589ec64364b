# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for the power/clock controller and the pynvml backend.
No GPU needed: the controller runs against an in-memory backend and the
backend runs against a mocked pynvml module.
"""
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest


class TestPowerControllerTransitions:
    """Ordered sub-operations, abort on first failure."""

    def test_constrained_step_order(self, th, fake_nvml, test_logger):
        be = fake_nvml()
        ctl = th.PowerController(be, 0, th.PowerProfile(), test_logger)
        result = ctl.to_constrained()

        assert result.ok
        assert result.outcome is th.TransitionOutcome.COMPLETED
        assert be.calls == ["init", "get handle", "get power limit", "set power limit", "set clock", "disable autoboost"]
        assert be.power_limit == 30000
        assert be.clocks == (3510, 1885)
        assert be.auto_boost is False
        assert ctl.state is th.PowerState.CONSTRAINED

    def test_normal_step_order(self, th, fake_nvml, test_logger):
        be = fake_nvml(power_limit=30000, default_power_limit=38500, clocks=(3510, 1885), auto_boost=False)
        be.default_clocks = (5001, 1530)
        ctl = th.PowerController(be, 0, log=test_logger)
        result = ctl.to_normal()

        assert result.ok
        assert be.calls == ["init", "get handle", "get default power limit", "set power limit",
                            "reset clock", "enable autoboost"]
        assert be.power_limit == 38500
        assert be.clocks == (5001, 1530)
        assert be.auto_boost is True
        assert ctl.state is th.PowerState.NORMAL

    def test_explicit_normal_limit(self, th, fake_nvml, test_logger):
        be = fake_nvml(default_power_limit=50000)
        profile = th.PowerProfile(normal_power_limit_mw=38500)
        th.PowerController(be, 0, profile, test_logger).to_normal()

        assert be.power_limit == 38500
        assert "get default power limit" not in be.calls

    def test_custom_constrained_profile(self, th, fake_nvml, test_logger):
        be = fake_nvml()
        profile = th.PowerProfile(constrained_power_limit_mw=20000, mem_clock_mhz=877, graphics_clock_mhz=1380)
        th.PowerController(be, 0, profile, test_logger).transition(th.PowerState.CONSTRAINED)

        assert be.power_limit == 20000
        assert be.clocks == (877, 1380)

    def test_round_trip_restores_power_limit(self, th, fake_nvml, test_logger):
        be = fake_nvml(power_limit=38500, default_power_limit=38500)
        ctl = th.PowerController(be, 0, log=test_logger)
        before = ctl.query().power_limit_mw

        assert ctl.to_constrained().ok
        assert ctl.to_normal().ok

        assert ctl.query().power_limit_mw == before

    def test_round_trip_restores_prior_limit_not_default(self, th, fake_nvml, test_logger):
        be = fake_nvml(power_limit=35000, default_power_limit=38500)
        ctl = th.PowerController(be, 0, log=test_logger)

        assert ctl.to_constrained().ok
        assert be.power_limit == 30000
        assert ctl.to_normal().ok

        assert be.power_limit == 35000
        assert "get default power limit" not in be.calls
        assert ctl.saved_power_limit_mw is None

    def test_repeated_constrained_keeps_first_limit(self, th, fake_nvml, test_logger):
        be = fake_nvml(power_limit=35000)
        ctl = th.PowerController(be, 0, log=test_logger)
        ctl.to_constrained()
        ctl.to_constrained()
        ctl.to_normal()

        assert be.power_limit == 35000

    def test_unreadable_prior_limit_falls_back_to_default(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"get power limit"}, power_limit=35000, default_power_limit=38500)
        ctl = th.PowerController(be, 0, log=test_logger)

        assert ctl.to_constrained().ok
        assert ctl.to_normal().ok
        assert be.power_limit == 38500

    def test_partial_constrained_still_restores_prior_limit(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"set clock"}, power_limit=35000)
        ctl = th.PowerController(be, 0, log=test_logger)
        ctl.to_constrained()
        be.fail_on.clear()
        ctl.to_normal()

        assert be.power_limit == 35000

    def test_history_records_every_attempt(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"set clock"})
        ctl = th.PowerController(be, 0, log=test_logger)
        ctl.to_constrained()
        be.fail_on.clear()
        ctl.to_normal()

        assert [r.target for r in ctl.history] == [th.PowerState.CONSTRAINED, th.PowerState.NORMAL]
        assert [r.ok for r in ctl.history] == [False, True]


class TestPowerControllerFailures:
    """Failures are reported, halt the transition and are never rolled back."""

    def test_partial_transition_no_rollback(self, th, fake_nvml, test_logger, caplog):
        be = fake_nvml(fail_on={"set clock"})
        ctl = th.PowerController(be, 0, log=test_logger)

        with caplog.at_level(logging.INFO, logger=test_logger.name):
            result = ctl.to_constrained()

        assert result.outcome is th.TransitionOutcome.PARTIAL
        assert not result.ok
        assert result.applied_steps == ["set power limit"]
        assert result.failed_step == "set clock"
        assert result.error.code == 4
        # power limit stays lowered, autoboost is never touched
        assert be.power_limit == 30000
        assert "disable autoboost" not in be.calls
        assert be.auto_boost is True
        assert ctl.state is None
        assert "Failed to set clock of device 0: Insufficient Permissions" in caplog.text
        assert "partially applied" in caplog.text

    def test_first_setter_failure_is_failed_not_partial(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"set power limit"})
        result = th.PowerController(be, 0, log=test_logger).to_constrained()

        assert result.outcome is th.TransitionOutcome.FAILED
        assert result.applied_steps == []
        assert result.failed_step == "set power limit"
        assert "set clock" not in be.calls

    def test_last_step_failure(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"enable autoboost"}, power_limit=30000, auto_boost=False)
        result = th.PowerController(be, 0, log=test_logger).to_normal()

        assert result.outcome is th.TransitionOutcome.PARTIAL
        assert result.applied_steps == ["set power limit", "reset clock"]
        assert result.failed_step == "enable autoboost"

    def test_init_failure_aborts_immediately(self, th, fake_nvml, test_logger, caplog):
        be = fake_nvml(fail_on={"init"})
        ctl = th.PowerController(be, 0, log=test_logger)

        with caplog.at_level(logging.ERROR, logger=test_logger.name):
            result = ctl.to_constrained()

        assert result.outcome is th.TransitionOutcome.FAILED
        assert result.failed_step == "initialize device management"
        assert be.calls == ["init"]
        assert "Failed to initialize device management" in caplog.text

    def test_handle_failure(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"get handle"})
        result = th.PowerController(be, 2, log=test_logger).to_normal()

        assert result.outcome is th.TransitionOutcome.FAILED
        assert result.failed_step == "get handle"
        assert be.calls == ["init", "get handle"]

    def test_successful_transition_after_failure_sets_state(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"disable autoboost"})
        ctl = th.PowerController(be, 0, log=test_logger)
        ctl.to_constrained()
        assert ctl.state is None

        assert ctl.to_normal().ok
        assert ctl.state is th.PowerState.NORMAL


class TestPowerQuery:
    """query() reads back whatever the device reports."""

    def test_snapshot_fields(self, th, fake_nvml, test_logger):
        be = fake_nvml(power_limit=38500, clocks=(5001, 1530), auto_boost=True)
        snap = th.PowerController(be, 0, log=test_logger).query()

        assert snap.power_limit_mw == 38500
        assert snap.power_draw_W == 25.0
        assert (snap.mem_clock_mhz, snap.graphics_clock_mhz) == (5001, 1530)
        assert snap.auto_boost is True
        assert "38.5W" in snap.describe()

    def test_unreadable_fields_are_none(self, th, fake_nvml, test_logger):
        be = fake_nvml(fail_on={"get power usage", "get clocks"})
        snap = th.PowerController(be, 0, log=test_logger).query()

        assert snap.power_limit_mw == 38500
        assert snap.power_draw_W is None
        assert snap.mem_clock_mhz is None
        assert "N/A" in snap.describe()

    def test_init_failure_gives_empty_snapshot(self, th, fake_nvml, test_logger):
        snap = th.PowerController(fake_nvml(fail_on={"init"}), 0, log=test_logger).query()
        assert snap == th.PowerSnapshot()

    def test_shutdown_delegates(self, th, fake_nvml, test_logger):
        be = fake_nvml()
        th.PowerController(be, 0, log=test_logger).shutdown()
        assert be.calls == ["shutdown"]


class FakeNVMLError(Exception):
    def __init__(self, value):
        self.value = value
        super().__init__(f"NVML error {value}")


@pytest.fixture
def mock_pynvml():
    mod = MagicMock()
    mod.NVMLError = FakeNVMLError
    with patch.dict(sys.modules, {"pynvml": mod}):
        yield mod


class TestNVMLBackend:
    """pynvml calls and error translation."""

    def test_init_is_idempotent(self, th, mock_pynvml):
        be = th.NVMLBackend()
        be.init()
        be.init()
        assert mock_pynvml.nvmlInit.call_count == 1

    def test_init_failure(self, th, mock_pynvml):
        mock_pynvml.nvmlInit.side_effect = FakeNVMLError(12)
        be = th.NVMLBackend()

        with pytest.raises(th.DeviceManagementError) as exc:
            be.init()
        assert exc.value.operation == "nvmlInit"
        assert exc.value.code == 12

    def test_error_translation(self, th, mock_pynvml):
        mock_pynvml.nvmlDeviceSetPowerManagementLimit.side_effect = FakeNVMLError(4)
        be = th.NVMLBackend()
        be.init()

        with pytest.raises(th.DeviceManagementError) as exc:
            be.set_power_limit("h", 30000)
        assert exc.value.operation == "set power limit"
        assert exc.value.code == 4
        mock_pynvml.nvmlDeviceSetPowerManagementLimit.assert_called_once_with("h", 30000)

    def test_handle_error_names_device(self, th, mock_pynvml):
        mock_pynvml.nvmlDeviceGetHandleByIndex.side_effect = FakeNVMLError(2)
        be = th.NVMLBackend()
        be.init()

        with pytest.raises(th.DeviceManagementError, match="get handle of device 3 failed"):
            be.handle_by_index(3)

    def test_clock_calls(self, th, mock_pynvml):
        be = th.NVMLBackend()
        be.init()
        be.set_applications_clocks("h", 3510, 1885)
        be.reset_applications_clocks("h")

        mock_pynvml.nvmlDeviceSetApplicationsClocks.assert_called_once_with("h", 3510, 1885)
        mock_pynvml.nvmlDeviceResetApplicationsClocks.assert_called_once_with("h")

    def test_auto_boost_calls(self, th, mock_pynvml):
        mock_pynvml.nvmlDeviceGetAutoBoostedClocksEnabled.return_value = [1, 1]
        be = th.NVMLBackend()
        be.init()
        be.set_auto_boost("h", False)

        mock_pynvml.nvmlDeviceSetAutoBoostedClocksEnabled.assert_called_once_with("h", mock_pynvml.NVML_FEATURE_DISABLED)
        assert be.get_auto_boost("h") is True

    def test_power_usage_in_watts(self, th, mock_pynvml):
        mock_pynvml.nvmlDeviceGetPowerUsage.return_value = 45000
        be = th.NVMLBackend()
        be.init()
        assert be.get_power_usage("h") == 45.0

    def test_shutdown_allows_reinit(self, th, mock_pynvml):
        be = th.NVMLBackend()
        be.init()
        be.shutdown()
        be.shutdown()
        be.init()

        assert mock_pynvml.nvmlShutdown.call_count == 1
        assert mock_pynvml.nvmlInit.call_count == 2

    def test_controller_over_backend(self, th, mock_pynvml, test_logger):
        mock_pynvml.nvmlDeviceSetAutoBoostedClocksEnabled.side_effect = FakeNVMLError(3)
        ctl = th.PowerController(th.NVMLBackend(), 0, log=test_logger)
        result = ctl.to_constrained()

        assert result.outcome is th.TransitionOutcome.PARTIAL
        assert result.failed_step == "disable autoboost"
        assert result.error.code == 3
