#!/usr/bin/env python3
"""
ReFrame regression tests for SGEMM Hammer.

This module wraps sgemm_hammer.py so the baseline-vs-trial SGEMM
correctness run can be scheduled as part of HPC system validation,
with and without a constrained power/clock profile.

Usage:
    reframe -c reframe/sgemm_hammer_checks.py -r

Configuration:
    Set valid_systems and valid_prog_environs in your ReFrame config
    to match your HPC system partitions and programming environments.
"""

import os
import reframe as rfm
import reframe.utility.sanity as sn


class SgemmHammerBase(rfm.RunOnlyRegressionTest):
    """Base class for all SGEMM Hammer runs."""

    # Override these in your site config
    valid_systems = ['*']
    valid_prog_environs = ['*']

    num_gpus_per_node = 1
    time_limit = '30m'

    # SGEMM Hammer script location (relative to test file)
    sgemm_hammer_script = variable(str, value='../sgemm_hammer.py')

    matrix_size = variable(int, value=10240)
    trials = variable(int, value=100)
    warmup = variable(int, value=0)
    device_index = variable(int, value=0)

    # Allowed fraction of trials that disagree with the baseline
    max_failure_rate = variable(float, value=0.0)

    @run_before('run')
    def set_executable(self):
        """Set up the sgemm-hammer executable and common options."""
        script_dir = os.path.dirname(os.path.abspath(__file__))
        self.executable = f'python3 {os.path.join(script_dir, self.sgemm_hammer_script)}'

        self.executable_opts = [
            f'--device-index={self.device_index}',
            f'--size={self.matrix_size}',
            f'--trials={self.trials}',
            f'--warmup={self.warmup}',
        ]

    @sanity_function
    def validate_run(self):
        """The run must finish and stay within the allowed failure rate."""
        return sn.all([
            sn.assert_found(r'\[OK\] Benchmark run finished', self.stdout),
            sn.assert_le(self.failure_rate(), self.max_failure_rate),
        ])

    @performance_function('GFLOP/s')
    def sgemm_gflops(self):
        """Extract mean trial performance in GFLOP/s.

        Output format: [GPU{id} SGEMM] Performance: {min} / {mean} / {max} GFLOP/s
        """
        return sn.extractsingle(
            r'\[GPU\d+\s+SGEMM\]\s+Performance:\s+[\d.]+\s*/\s*([\d.]+)\s*/\s*[\d.]+\s+GFLOP/s',
            self.stdout, 1, float
        )

    @performance_function('GFLOP/s')
    def sgemm_gflops_min(self):
        return sn.extractsingle(
            r'\[GPU\d+\s+SGEMM\]\s+Performance:\s+([\d.]+)\s*/\s*[\d.]+\s*/\s*[\d.]+\s+GFLOP/s',
            self.stdout, 1, float
        )

    @performance_function('GFLOP/s')
    def sgemm_gflops_max(self):
        return sn.extractsingle(
            r'\[GPU\d+\s+SGEMM\]\s+Performance:\s+[\d.]+\s*/\s*[\d.]+\s*/\s*([\d.]+)\s+GFLOP/s',
            self.stdout, 1, float
        )

    @performance_function('')
    def failure_rate(self):
        """Fraction of trials whose result disagreed with the baseline."""
        return sn.extractsingle(
            r'failure rate:\s+([\d.]+)',
            self.stdout, 1, float
        )


# ============================================================================
# UNCONSTRAINED RUN
# ============================================================================
@rfm.simple_test
class SgemmHammerDefault(SgemmHammerBase):
    """Baseline and trials at whatever power state the device is in."""

    descr = 'SGEMM Hammer correctness run at current power state'
    tags = {'gpu', 'compute', 'gemm'}

    baseline = parameter(['device', 'cpu'])

    @run_after('init')
    def limit_reference_size(self):
        # The host reference is O(n^3) in double precision
        if self.baseline == 'cpu':
            self.matrix_size = min(self.matrix_size, 2048)

    @run_before('run')
    def set_baseline_options(self):
        self.executable_opts.append(f'--baseline={self.baseline}')


# ============================================================================
# POWER-CONSTRAINED RUN
# ============================================================================
@rfm.simple_test
class SgemmHammerConstrained(SgemmHammerBase):
    """Baseline at normal power, trials under a lowered power limit and fixed clocks.

    Needs permission to change power limits and application clocks
    (root, or nvidia-smi -acp UNRESTRICTED).
    """

    descr = 'SGEMM Hammer correctness run under constrained power'
    tags = {'gpu', 'compute', 'gemm', 'power'}

    power_limit_mw = parameter([30000])
    mem_clock_mhz = variable(int, value=3510)
    graphics_clock_mhz = variable(int, value=1885)

    @run_before('run')
    def set_power_options(self):
        self.executable_opts.extend([
            '--baseline-power=normal',
            '--trial-power=constrained',
            f'--constrained-power-limit-mw={self.power_limit_mw}',
            f'--mem-clock-mhz={self.mem_clock_mhz}',
            f'--graphics-clock-mhz={self.graphics_clock_mhz}',
        ])

    @performance_function('GFLOP/s')
    def baseline_gflops(self):
        """Throughput of the single baseline multiply at normal power."""
        return sn.extractsingle(
            r'\[GPU\d+\s+SGEMM\]\s+Performance=\s*([\d.]+)\s+GFlop/s',
            self.stdout, 1, float
        )
