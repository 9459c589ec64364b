#!/usr/bin/env python3
# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# ───────────────────────────────────────────────────────────────────────
from __future__ import annotations

import argparse
import logging
import math
import socket
import sys
import time
import traceback

try:
    import yaml
    YAML_AVAILABLE = True
except ImportError:
    YAML_AVAILABLE = False
try:
    import setproctitle
    SETPROCTITLE_AVAILABLE = True
except ImportError:
    SETPROCTITLE_AVAILABLE = False

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple
import torch

# ───────────────────────────────────────────────────────────────────────
# BANNER  ───────────────────────────────────────────────────────────────
SGEMM_HAMMER_BANNER = r'''
╔═══════════════════════════════════════════════════════════════════════════╗
║                                                                           ║
║     ███████╗ ██████╗ ███████╗███╗   ███╗███╗   ███╗                       ║
║     ██╔════╝██╔════╝ ██╔════╝████╗ ████║████╗ ████║                       ║
║     ███████╗██║  ███╗█████╗  ██╔████╔██║██╔████╔██║   ⚡ normal            ║
║     ╚════██║██║   ██║██╔══╝  ██║╚██╔╝██║██║╚██╔╝██║   🔋 constrained       ║
║     ███████║╚██████╔╝███████╗██║ ╚═╝ ██║██║ ╚═╝ ██║                       ║
║     ╚══════╝ ╚═════╝ ╚══════╝╚═╝     ╚═╝╚═╝     ╚═╝   H A M M E R  🔨     ║
║                                                                           ║
║           Single-precision GEMM throughput vs. power/clock regime         ║
╚═══════════════════════════════════════════════════════════════════════════╝
'''

def print_banner():
    """Print the SGEMM Hammer ASCII banner."""
    print(SGEMM_HAMMER_BANNER)


# ── Protocol defaults ──────────────────────────────────────────────────
DEFAULT_MATRIX_SIZE = 10240
DEFAULT_TRIALS = 100
DEFAULT_SEED = 2006
DEFAULT_L2_TOLERANCE = 1.0e-10       # device baseline: repeated calls are expected to be bit-identical
DEFAULT_CPU_L2_TOLERANCE = 1.0e-5    # host double-precision reference vs float32 device GEMM
DEFAULT_LIST_LENGTH = 100
DEFAULT_LIST_TOLERANCE = 1.0e-5
L2_CHUNK_ELEMENTS = 1 << 22

# ── Power profile defaults (milliwatts / MHz) ──────────────────────────
DEFAULT_CONSTRAINED_POWER_LIMIT_MW = 30000
DEFAULT_MEM_CLOCK_MHZ = 3510
DEFAULT_GRAPHICS_CLOCK_MHZ = 1885


# ───────────────────────────────────────────────────────────────────────
# 0.  ERRORS  ───────────────────────────────────────────────────────────
class HammerError(Exception):
    """Base class for errors that abort or degrade a benchmark run."""


class DeviceMemoryError(HammerError):
    """Host or device buffer allocation / transfer failed (fatal)."""


class ComputeError(HammerError):
    """The GEMM primitive or its synchronization failed (fatal)."""


class DeviceManagementError(HammerError):
    """A device-management (NVML) sub-operation failed.

    Never fatal to the run; the power controller captures it in a
    TransitionResult.
    """

    def __init__(self, operation: str, message: str, code: Optional[int] = None,
                 device_index: Optional[int] = None):
        self.operation = operation
        self.message = message
        self.code = code
        self.device_index = device_index
        where = f" of device {device_index}" if device_index is not None else ""
        super().__init__(f"{operation}{where} failed: {message}")


# ───────────────────────────────────────────────────────────────────────
# 1.  MATRIX DESCRIPTOR  ────────────────────────────────────────────────
@dataclass(frozen=True)
class MatrixDims:
    """Widths/heights of A, B and C for a row-major ``C = A * B``."""

    wa: int
    ha: int
    wb: int
    hb: int
    wc: int
    hc: int

    def __post_init__(self):
        for name in ("wa", "ha", "wb", "hb", "wc", "hc"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Matrix dimension {name} must be positive, got {getattr(self, name)}")
        if self.wa != self.hb:
            raise ValueError(f"A and B are not multipliable: width(A)={self.wa} != height(B)={self.hb}")
        if self.hc != self.ha or self.wc != self.wb:
            raise ValueError(
                f"C must be {self.ha}x{self.wb} (height x width), got {self.hc}x{self.wc}"
            )

    @classmethod
    def square(cls, n: int) -> "MatrixDims":
        return cls(wa=n, ha=n, wb=n, hb=n, wc=n, hc=n)

    @classmethod
    def for_product(cls, ha: int, wa: int, wb: int) -> "MatrixDims":
        """Descriptor for an (ha x wa) by (wa x wb) product."""
        return cls(wa=wa, ha=ha, wb=wb, hb=wa, wc=wb, hc=ha)

    @property
    def size_a(self) -> int:
        return self.wa * self.ha

    @property
    def size_b(self) -> int:
        return self.wb * self.hb

    @property
    def size_c(self) -> int:
        return self.wc * self.hc

    @property
    def flops(self) -> float:
        return 2.0 * float(self.hc) * float(self.wc) * float(self.hb)

    def __str__(self):
        return f"A({self.ha}x{self.wa}) * B({self.hb}x{self.wb}) = C({self.hc}x{self.wc})"


# ───────────────────────────────────────────────────────────────────────
# 2.  REFERENCE COMPUTE  ────────────────────────────────────────────────
def matrix_mul_reference(a: torch.Tensor, b: torch.Tensor, dims: MatrixDims) -> torch.Tensor:
    """
    Host ground truth for row-major ``C = A * B``.

    Every dot product is accumulated in double precision and the result is
    narrowed to float32 on store. Inputs are flat row-major buffers; the
    returned buffer is flat row-major ``hc * wc`` on the CPU.
    """
    if a.numel() != dims.size_a or b.numel() != dims.size_b:
        raise ValueError(
            f"Buffer sizes ({a.numel()}, {b.numel()}) do not match {dims}"
        )
    a64 = a.detach().to("cpu", torch.float64).reshape(dims.ha, dims.wa)
    b64 = b.detach().to("cpu", torch.float64).reshape(dims.hb, dims.wb)
    return torch.mm(a64, b64).to(torch.float32).reshape(-1)


# ───────────────────────────────────────────────────────────────────────
# 3.  ACCELERATED GEMM INVOKER  ─────────────────────────────────────────
# Column-major BLAS convention: a flat buffer holding an (rows x cols)
# matrix with leading dimension ld stores element (i, j) at i + j*ld.
OP_N = "N"


def _column_major_view(buf: torch.Tensor, rows: int, cols: int, ld: int, name: str) -> torch.Tensor:
    if ld < max(1, rows):
        raise ValueError(f"ld{name}={ld} must be >= max(1, {rows})")
    needed = (cols - 1) * ld + rows
    if buf.dim() != 1 or buf.numel() < needed:
        raise ValueError(f"Buffer {name} must be flat with at least {needed} elements, got shape {tuple(buf.shape)}")
    return buf.as_strided((rows, cols), (1, ld))


def blas_sgemm(transa: str, transb: str, m: int, n: int, k: int,
               alpha: float, a: torch.Tensor, lda: int,
               b: torch.Tensor, ldb: int,
               beta: float, c: torch.Tensor, ldc: int) -> None:
    """
    Column-major SGEMM on flat device buffers: ``C = alpha * A * B + beta * C``.

    A is m x k, B is k x n and C is m x n, all column-major with the given
    leading dimensions. Only non-transposed operands are supported. The
    product itself runs through torch's device GEMM (cuBLAS / hipBLAS on GPU).
    """
    if transa != OP_N or transb != OP_N:
        raise ValueError(f"Only non-transposed operands are supported (got {transa!r}, {transb!r})")
    if min(m, n, k) <= 0:
        raise ValueError(f"GEMM dimensions must be positive, got m={m} n={n} k={k}")
    if a.dtype != torch.float32 or b.dtype != torch.float32 or c.dtype != torch.float32:
        raise ValueError("SGEMM operands must be float32")

    a_view = _column_major_view(a, m, k, lda, "a")
    b_view = _column_major_view(b, k, n, ldb, "b")
    c_view = _column_major_view(c, m, n, ldc, "c")

    prod = torch.mm(a_view, b_view)
    if alpha != 1.0:
        prod.mul_(alpha)
    if beta == 0.0:
        c_view.copy_(prod)
    else:
        c_view.mul_(beta).add_(prod)


def matmul_row_major(d_a: torch.Tensor, d_b: torch.Tensor, d_c: torch.Tensor, dims: MatrixDims) -> None:
    """
    Row-major ``C = A * B`` through the column-major primitive, no transposes.

    A row-major buffer read as column-major is its own transpose. Since
    ``C^T = B^T * A^T``, asking the column-major GEMM for ``B * A`` on the
    untouched row-major buffers writes ``C^T`` in column-major order, which is
    exactly ``C`` in row-major order. So: left operand B (ld = width(B)),
    right operand A (ld = width(A)), output ld = width(B).

    Mutates ``d_c`` only. Runtime failures surface as ComputeError.
    """
    try:
        blas_sgemm(OP_N, OP_N,
                   dims.wb, dims.ha, dims.wa,
                   1.0,
                   d_b, dims.wb,
                   d_a, dims.wa,
                   0.0,
                   d_c, dims.wb)
    except RuntimeError as e:
        raise ComputeError(f"SGEMM {dims} failed: {e}") from e


# ───────────────────────────────────────────────────────────────────────
# 4.  RESULT COMPARATOR  ────────────────────────────────────────────────
@dataclass
class Mismatch:
    row: int
    col: int
    reference: float
    candidate: float
    diff: float


@dataclass
class ComparisonResult:
    passed: bool
    l2_error: float
    error_count: int = 0
    mismatches: List[Mismatch] = field(default_factory=list)


def compare_l2(reference: torch.Tensor, candidate: torch.Tensor, tolerance: float) -> Tuple[bool, float]:
    """
    L2 relative error ``||ref - cand|| / ||ref||`` and its verdict (``<= tolerance``).

    A reference with zero norm passes only against an all-zero candidate.
    """
    if reference.numel() != candidate.numel():
        raise ValueError(f"Cannot compare buffers of {reference.numel()} and {candidate.numel()} elements")
    ref = reference.detach().to("cpu").reshape(-1)
    cand = candidate.detach().to("cpu").reshape(-1)
    diff_sq = ref_sq = 0.0
    # float64 accumulation, one slice at a time to bound host memory
    for start in range(0, ref.numel(), L2_CHUNK_ELEMENTS):
        r = ref[start:start + L2_CHUNK_ELEMENTS].to(torch.float64)
        c = cand[start:start + L2_CHUNK_ELEMENTS].to(torch.float64)
        diff_sq += float(torch.sum((r - c) ** 2))
        ref_sq += float(torch.sum(r ** 2))
    diff_norm = math.sqrt(diff_sq)
    ref_norm = math.sqrt(ref_sq)
    if ref_norm == 0.0:
        if diff_norm == 0.0:
            return True, 0.0
        return False, math.inf
    error = diff_norm / ref_norm
    return error <= tolerance, error


def list_differences(reference: torch.Tensor, candidate: torch.Tensor, width: int, height: int,
                     list_length: int = DEFAULT_LIST_LENGTH,
                     list_tolerance: float = DEFAULT_LIST_TOLERANCE) -> Tuple[List[Mismatch], int]:
    """Return the first ``list_length`` positions with ``|ref - cand| > list_tolerance`` and the total count."""
    ref = reference.detach().to("cpu", torch.float32).reshape(height, width)
    cand = candidate.detach().to("cpu", torch.float32).reshape(height, width)
    diff = (ref - cand).abs()
    offending = torch.nonzero(diff > list_tolerance, as_tuple=False)  # row-major order
    mismatches = []
    for row, col in offending[:list_length].tolist():
        mismatches.append(Mismatch(
            row=row,
            col=col,
            reference=float(ref[row, col]),
            candidate=float(cand[row, col]),
            diff=float(diff[row, col]),
        ))
    return mismatches, int(offending.shape[0])


def compare_results(reference: torch.Tensor, candidate: torch.Tensor, width: int, height: int,
                    tolerance: float = DEFAULT_L2_TOLERANCE,
                    list_length: int = DEFAULT_LIST_LENGTH,
                    list_tolerance: float = DEFAULT_LIST_TOLERANCE) -> ComparisonResult:
    """L2 verdict plus the element-wise listing (the listing never changes the verdict)."""
    passed, error = compare_l2(reference, candidate, tolerance)
    result = ComparisonResult(passed=passed, l2_error=error)
    if not passed:
        result.mismatches, result.error_count = list_differences(
            reference, candidate, width, height, list_length, list_tolerance
        )
    return result


def log_differences(result: ComparisonResult, list_length: int, list_tolerance: float, log) -> None:
    log.info(f"Listing first {list_length} Differences > {list_tolerance:.6f}...")
    current_row = None
    for m in result.mismatches:
        if m.row != current_row:
            log.info(f"  Row {m.row}:")
            current_row = m.row
        log.info(f"    Loc({m.col},{m.row})\tREF={m.reference:.5f}\tGOT={m.candidate:.5f}\tDiff={m.diff:.6f}")
    log.info(f"  Total Errors = {result.error_count}")


# ───────────────────────────────────────────────────────────────────────
# 5.  POWER / CLOCK CONTROL  ────────────────────────────────────────────
class PowerState(Enum):
    NORMAL = "normal"
    CONSTRAINED = "constrained"


class TransitionOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"      # nothing was applied to the device
    PARTIAL = "partial"    # some settings were applied, then a step failed; no rollback


@dataclass
class PowerProfile:
    """Settings for the two regimes. ``normal_power_limit_mw=None`` restores the device default."""

    constrained_power_limit_mw: int = DEFAULT_CONSTRAINED_POWER_LIMIT_MW
    mem_clock_mhz: int = DEFAULT_MEM_CLOCK_MHZ
    graphics_clock_mhz: int = DEFAULT_GRAPHICS_CLOCK_MHZ
    normal_power_limit_mw: Optional[int] = None


@dataclass
class TransitionResult:
    target: PowerState
    outcome: TransitionOutcome
    applied_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[DeviceManagementError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is TransitionOutcome.COMPLETED


@dataclass
class PowerSnapshot:
    power_limit_mw: Optional[int] = None
    power_draw_W: Optional[float] = None
    mem_clock_mhz: Optional[int] = None
    graphics_clock_mhz: Optional[int] = None
    auto_boost: Optional[bool] = None

    def describe(self) -> str:
        def fmt(v, unit=""):
            return "N/A" if v is None else f"{v}{unit}"
        limit = None if self.power_limit_mw is None else f"{self.power_limit_mw / 1000.0:.1f}"
        draw = None if self.power_draw_W is None else f"{self.power_draw_W:.1f}"
        return (f"power limit {fmt(limit, 'W')}, draw {fmt(draw, 'W')}, "
                f"app clocks mem {fmt(self.mem_clock_mhz, 'MHz')} / gfx {fmt(self.graphics_clock_mhz, 'MHz')}, "
                f"auto-boost {fmt(self.auto_boost)}")


class NVMLBackend:
    """
    Device-management calls over pynvml.

    Every pynvml failure is re-raised as DeviceManagementError carrying the
    operation name and NVML status code. ``init`` may be called repeatedly.
    """

    def __init__(self):
        self.nv = None

    def _call(self, operation: str, fn, *fn_args, device_index: Optional[int] = None):
        nv = self.nv
        try:
            return fn(*fn_args)
        except nv.NVMLError as e:
            raise DeviceManagementError(operation, str(e), code=getattr(e, "value", None),
                                        device_index=device_index) from e

    def init(self):
        if self.nv is not None:
            return
        import pynvml as nv
        try:
            nv.nvmlInit()
        except nv.NVMLError as e:
            raise DeviceManagementError("nvmlInit", str(e), code=getattr(e, "value", None)) from e
        self.nv = nv

    def shutdown(self):
        if self.nv is None:
            return
        try:
            self.nv.nvmlShutdown()
        except self.nv.NVMLError as e:
            logging.debug(f"nvmlShutdown failed: {e}")
        self.nv = None

    def handle_by_index(self, index: int):
        return self._call("get handle", self.nv.nvmlDeviceGetHandleByIndex, index, device_index=index)

    def get_power_limit(self, handle) -> int:
        return self._call("get power limit", self.nv.nvmlDeviceGetPowerManagementLimit, handle)

    def get_default_power_limit(self, handle) -> int:
        return self._call("get default power limit", self.nv.nvmlDeviceGetPowerManagementDefaultLimit, handle)

    def set_power_limit(self, handle, milliwatts: int):
        self._call("set power limit", self.nv.nvmlDeviceSetPowerManagementLimit, handle, milliwatts)

    def set_applications_clocks(self, handle, mem_mhz: int, graphics_mhz: int):
        self._call("set clock", self.nv.nvmlDeviceSetApplicationsClocks, handle, mem_mhz, graphics_mhz)

    def reset_applications_clocks(self, handle):
        self._call("reset clock", self.nv.nvmlDeviceResetApplicationsClocks, handle)

    def get_applications_clocks(self, handle) -> Tuple[int, int]:
        nv = self.nv
        mem = self._call("get memory clock", nv.nvmlDeviceGetApplicationsClock, handle, nv.NVML_CLOCK_MEM)
        gfx = self._call("get graphics clock", nv.nvmlDeviceGetApplicationsClock, handle, nv.NVML_CLOCK_GRAPHICS)
        return mem, gfx

    def set_auto_boost(self, handle, enabled: bool):
        nv = self.nv
        state = nv.NVML_FEATURE_ENABLED if enabled else nv.NVML_FEATURE_DISABLED
        self._call("enable autoboost" if enabled else "disable autoboost",
                   nv.nvmlDeviceSetAutoBoostedClocksEnabled, handle, state)

    def get_auto_boost(self, handle) -> bool:
        is_enabled, _default = self._call("get autoboost", self.nv.nvmlDeviceGetAutoBoostedClocksEnabled, handle)
        return bool(is_enabled)

    def get_power_usage(self, handle) -> float:
        return self._call("get power usage", self.nv.nvmlDeviceGetPowerUsage, handle) / 1e3


class PowerController:
    """
    Two-state power/clock regime switcher.

    Each transition is an ordered list of sub-operations. The first failure
    stops the transition and is reported; settings already applied stay
    applied (no rollback), which is surfaced as ``TransitionOutcome.PARTIAL``
    so the caller can ``query()`` what the device actually ended up with.
    """

    def __init__(self, backend, device_index: int = 0, profile: Optional[PowerProfile] = None, log=None):
        self.backend = backend
        self.device_index = device_index
        self.profile = profile or PowerProfile()
        self.log = log or logging.getLogger("sgemmhammer")
        self.state: Optional[PowerState] = None  # None = unknown
        self.history: List[TransitionResult] = []
        self.saved_power_limit_mw: Optional[int] = None  # limit in force before constraining

    def _steps(self, target: PowerState):
        be, p = self.backend, self.profile
        if target is PowerState.CONSTRAINED:
            return [
                ("set power limit", lambda h: be.set_power_limit(h, p.constrained_power_limit_mw)),
                ("set clock", lambda h: be.set_applications_clocks(h, p.mem_clock_mhz, p.graphics_clock_mhz)),
                ("disable autoboost", lambda h: be.set_auto_boost(h, False)),
            ]
        return [
            ("set power limit", lambda h: be.set_power_limit(h, self._normal_power_limit(h))),
            ("reset clock", lambda h: be.reset_applications_clocks(h)),
            ("enable autoboost", lambda h: be.set_auto_boost(h, True)),
        ]

    def _normal_power_limit(self, handle) -> int:
        if self.profile.normal_power_limit_mw is not None:
            return self.profile.normal_power_limit_mw
        if self.saved_power_limit_mw is not None:
            return self.saved_power_limit_mw
        return self.backend.get_default_power_limit(handle)

    def _save_power_limit(self, handle):
        """Remember the limit a later normal transition should restore."""
        if self.profile.normal_power_limit_mw is not None or self.saved_power_limit_mw is not None:
            return
        try:
            self.saved_power_limit_mw = self.backend.get_power_limit(handle)
        except DeviceManagementError as e:
            self.log.debug(f"Device {self.device_index} {e.operation} unavailable: {e.message}; "
                           f"normal profile will use the default limit")

    def _fail(self, result: TransitionResult, step: str, err: DeviceManagementError) -> TransitionResult:
        result.outcome = TransitionOutcome.PARTIAL if result.applied_steps else TransitionOutcome.FAILED
        result.failed_step = step
        result.error = err
        self.state = None
        self.log.error(f"Failed to {step} of device {self.device_index}: {err.message}")
        if result.outcome is TransitionOutcome.PARTIAL:
            self.log.warning(
                f"Power transition to {result.target.value} left device {self.device_index} partially applied "
                f"({', '.join(result.applied_steps)}); actual power state is unknown"
            )
        self.history.append(result)
        return result

    def transition(self, target: PowerState) -> TransitionResult:
        result = TransitionResult(target=target, outcome=TransitionOutcome.COMPLETED)
        try:
            self.backend.init()
        except DeviceManagementError as e:
            return self._fail(result, "initialize device management", e)
        try:
            handle = self.backend.handle_by_index(self.device_index)
        except DeviceManagementError as e:
            return self._fail(result, "get handle", e)

        if target is PowerState.CONSTRAINED:
            self._save_power_limit(handle)

        for step, apply in self._steps(target):
            try:
                apply(handle)
            except DeviceManagementError as e:
                return self._fail(result, step, e)
            result.applied_steps.append(step)
            self.log.debug(f"Device {self.device_index}: {step} ok")

        self.state = target
        if target is PowerState.NORMAL:
            self.saved_power_limit_mw = None
        self.history.append(result)
        self.log.info(f"Device {self.device_index} switched to {target.value} power profile")
        return result

    def to_constrained(self) -> TransitionResult:
        return self.transition(PowerState.CONSTRAINED)

    def to_normal(self) -> TransitionResult:
        return self.transition(PowerState.NORMAL)

    def query(self) -> PowerSnapshot:
        """Read back what the device reports; unreadable fields stay None."""
        snap = PowerSnapshot()
        try:
            self.backend.init()
            handle = self.backend.handle_by_index(self.device_index)
        except DeviceManagementError as e:
            self.log.debug(f"Power query unavailable: {e}")
            return snap
        readers = [
            ("power_limit_mw", lambda: self.backend.get_power_limit(handle)),
            ("power_draw_W", lambda: self.backend.get_power_usage(handle)),
            ("auto_boost", lambda: self.backend.get_auto_boost(handle)),
        ]
        for attr, read in readers:
            try:
                setattr(snap, attr, read())
            except DeviceManagementError as e:
                self.log.debug(f"Device {self.device_index} {e.operation} unavailable: {e.message}")
        try:
            snap.mem_clock_mhz, snap.graphics_clock_mhz = self.backend.get_applications_clocks(handle)
        except DeviceManagementError as e:
            self.log.debug(f"Device {self.device_index} {e.operation} unavailable: {e.message}")
        return snap

    def shutdown(self):
        self.backend.shutdown()


# ───────────────────────────────────────────────────────────────────────
# 6.  TIMER & STATISTICS  ───────────────────────────────────────────────
class Timer:
    """CUDA events for GPU, perf_counter for CPU."""

    def __init__(self, device: torch.device):
        self.cuda = device.type == "cuda"
        self.mps = device.type == "mps"
        if self.cuda:
            self.s = torch.cuda.Event(enable_timing=True)
            self.e = torch.cuda.Event(enable_timing=True)

    def __enter__(self):
        if self.cuda:
            self.s.record()
        else:
            self.t0 = time.perf_counter()
        return self

    def __exit__(self, *_):
        if self.cuda:
            self.e.record()
            self.e.synchronize()
            # Explicit sync for ROCm/HIP - events don't imply host sync like CUDA
            if torch.version.hip:
                torch.cuda.synchronize()
            self.elapsed = self.s.elapsed_time(self.e) / 1e3
        else:
            if self.mps:
                torch.mps.synchronize()
            self.elapsed = time.perf_counter() - self.t0


@dataclass
class TrialStatistics:
    iterations_run: int = 0
    failure_count: int = 0
    sum_throughput: float = 0.0   # FLOP/s
    min_throughput: Optional[float] = None
    max_throughput: Optional[float] = None

    def record(self, throughput: float, passed: bool):
        self.iterations_run += 1
        if not passed:
            self.failure_count += 1
        self.sum_throughput += throughput
        if self.min_throughput is None or throughput < self.min_throughput:
            self.min_throughput = throughput
        if self.max_throughput is None or throughput > self.max_throughput:
            self.max_throughput = throughput

    def reset(self):
        self.iterations_run = 0
        self.failure_count = 0
        self.sum_throughput = 0.0
        self.min_throughput = None
        self.max_throughput = None

    @property
    def failure_rate(self) -> float:
        if self.iterations_run == 0:
            return 0.0
        return self.failure_count / self.iterations_run

    @property
    def average_throughput(self) -> float:
        if self.iterations_run == 0:
            return 0.0
        return self.sum_throughput / self.iterations_run

    @property
    def average_gflops(self) -> float:
        return self.average_throughput / 1e9


# ───────────────────────────────────────────────────────────────────────
# 7.  BUFFERS  ──────────────────────────────────────────────────────────
class MatrixBuffers:
    """
    Host and device buffers for one run: A, B, trial result C and baseline C2.

    Host and device copies are only synchronized through upload()/download().
    Use as a context manager so every exit path releases the device memory.
    """

    NAMES = ("a", "b", "c", "c2")

    def __init__(self, dims: MatrixDims, device: torch.device):
        self.dims = dims
        self.device = device
        sizes = {"a": dims.size_a, "b": dims.size_b, "c": dims.size_c, "c2": dims.size_c}
        pin = device.type == "cuda"
        try:
            for name in self.NAMES:
                setattr(self, f"h_{name}", torch.empty(sizes[name], dtype=torch.float32, pin_memory=pin))
            for name in self.NAMES:
                setattr(self, f"d_{name}", torch.empty(sizes[name], dtype=torch.float32, device=device))
        except RuntimeError as e:
            self.release()
            raise DeviceMemoryError(f"Buffer allocation for {dims} on {device} failed: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.release()

    def upload(self, name: str):
        try:
            getattr(self, f"d_{name}").copy_(getattr(self, f"h_{name}"))
        except RuntimeError as e:
            raise DeviceMemoryError(f"Host-to-device copy of {name.upper()} failed: {e}") from e

    def download(self, name: str):
        try:
            getattr(self, f"h_{name}").copy_(getattr(self, f"d_{name}"))
        except RuntimeError as e:
            raise DeviceMemoryError(f"Device-to-host copy of {name.upper()} failed: {e}") from e

    def release(self):
        for prefix in ("d_", "h_"):
            for name in self.NAMES:
                if hasattr(self, prefix + name):
                    delattr(self, prefix + name)
        if self.device.type == "cuda" and torch.cuda.is_available():
            torch.cuda.empty_cache()


def random_init(buf: torch.Tensor, generator: torch.Generator):
    """Fill with uniform values in [0, 1)."""
    buf.copy_(torch.rand(buf.numel(), generator=generator, dtype=torch.float32))


# ───────────────────────────────────────────────────────────────────────
# 8.  SMALL HELPERS  ────────────────────────────────────────────────────
def device_label(device: torch.device, index: Any = 0) -> str:
    """Short label used to prefix log lines (GPU0, MPS, CPU)."""
    if device.type == "cuda":
        return f"GPU{index}"
    if device.type == "mps":
        return "MPS"
    return "CPU"


def select_device(index: int = 0) -> torch.device:
    if torch.cuda.is_available():
        torch.cuda.set_device(index)
        return torch.device(f"cuda:{index}")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def resolve_tolerance(a) -> float:
    if a.tolerance is not None:
        return a.tolerance
    return DEFAULT_CPU_L2_TOLERANCE if a.baseline == "cpu" else DEFAULT_L2_TOLERANCE


def _perf_line(gf: float, secs: float, flops: float) -> str:
    return f"Performance= {gf:.2f} GFlop/s, Time= {secs * 1e3:.3f} msec, Size= {flops:.0f} Ops"


def flop_rate(flops: float, secs: float, log=None) -> float:
    """FLOP/s for one call; 0.0 when the call finished below timer resolution."""
    if secs <= 0.0:
        if log is not None:
            log.warning(f"SGEMM of {flops:.0f} Ops finished below timer resolution; throughput recorded as 0")
        return 0.0
    return flops / secs


def timed_matmul(buffers: MatrixBuffers, dest: str, dev: torch.device) -> float:
    """Issue one GEMM into ``d_<dest>`` between two timing markers; returns elapsed seconds."""
    dims = buffers.dims
    d_c = getattr(buffers, f"d_{dest}")
    try:
        with Timer(dev) as t:
            matmul_row_major(buffers.d_a, buffers.d_b, d_c, dims)
    except RuntimeError as e:
        raise ComputeError(f"Synchronizing SGEMM {dims} failed: {e}") from e
    return t.elapsed


# ───────────────────────────────────────────────────────────────────────
# 9.  BENCHMARK DRIVER  ─────────────────────────────────────────────────
@dataclass
class BenchmarkReport:
    dims: MatrixDims
    baseline_mode: str
    stats: TrialStatistics
    baseline_gflops: Optional[float] = None
    baseline_secs: Optional[float] = None
    transitions: List[TransitionResult] = field(default_factory=list)
    power_before: Optional[PowerSnapshot] = None
    power_after: Optional[PowerSnapshot] = None


def _power_phase(controller: Optional[PowerController], requested: str, phase: str, report: BenchmarkReport, log):
    if controller is None or requested == "current":
        return
    log.info(f"Switching to {requested} power profile ({phase})...")
    result = controller.transition(PowerState(requested))
    report.transitions.append(result)
    if not result.ok:
        log.warning(f"Power transition for {phase} {result.outcome.value}; continuing in unknown power state")


def run_benchmark(a, dev: torch.device, log, controller: Optional[PowerController] = None) -> BenchmarkReport:
    """
    Baseline + N timed trials of row-major SGEMM on ``dev``.

    Mismatches against the baseline are counted, never raised. Allocation,
    transfer and compute failures propagate after buffers are released (and
    the power profile restored, when one was changed).
    """
    dims = MatrixDims.square(a.size)
    dev_lbl = device_label(dev, a.device_index)
    stats = TrialStatistics()
    report = BenchmarkReport(dims=dims, baseline_mode=a.baseline, stats=stats)
    wants_power = a.baseline_power != "current" or a.trial_power != "current"
    tolerance = resolve_tolerance(a)

    try:
        log.info(f"[{dev_lbl} SGEMM] Allocating buffers for {dims}...")
        with MatrixBuffers(dims, dev) as buf:
            gen = torch.Generator().manual_seed(a.seed)
            random_init(buf.h_a, gen)
            random_init(buf.h_b, gen)
            buf.upload("a")
            buf.upload("b")

            _power_phase(controller, a.baseline_power, "baseline", report, log)
            if controller is not None:
                report.power_before = controller.query()
                log.info(f"[{dev_lbl} SGEMM] Power state: {report.power_before.describe()}")

            log.info(f"[{dev_lbl} SGEMM] Computing result using {dev.type.upper()} GEMM ({a.baseline_power} power)...")
            secs = timed_matmul(buf, "c2", dev)
            report.baseline_secs = secs
            report.baseline_gflops = flop_rate(dims.flops, secs, log) / 1e9
            log.info(f"[{dev_lbl} SGEMM] {_perf_line(report.baseline_gflops, secs, dims.flops)}")
            buf.download("c2")

            if a.baseline == "cpu":
                log.info(f"[{dev_lbl} SGEMM] Computing host reference (double accumulation)...")
                reference = matrix_mul_reference(buf.h_a, buf.h_b, dims)
                check = compare_results(reference, buf.h_c2, dims.wc, dims.hc, tolerance,
                                        a.list_length, a.list_tolerance)
                log.info(f"[{dev_lbl} SGEMM] Baseline vs host reference: "
                         f"{'PASS' if check.passed else 'FAIL'} (L2 error {check.l2_error:.3e})")
                buf.h_c2.copy_(reference)

            _power_phase(controller, a.trial_power, "trials", report, log)

            if a.warmup:
                log.info(f"[{dev_lbl} SGEMM] Warmup ({a.warmup} iterations)...")
                for _ in range(a.warmup):
                    timed_matmul(buf, "c", dev)

            log.info(f"[{dev_lbl} SGEMM] Computing result using {dev.type.upper()} GEMM ({a.trial_power} power)...")
            stats.reset()
            for j in range(a.trials):
                secs = timed_matmul(buf, "c", dev)
                throughput = flop_rate(dims.flops, secs, log)
                log.info(f"[{dev_lbl} SGEMM] [{j}] {_perf_line(throughput / 1e9, secs, dims.flops)}")

                buf.download("c")
                result = compare_results(buf.h_c2, buf.h_c, dims.wc, dims.hc, tolerance,
                                         a.list_length, a.list_tolerance)
                if not result.passed:
                    log_differences(result, a.list_length, a.list_tolerance, log)
                stats.record(throughput, result.passed)
                log.info(f"[{dev_lbl} SGEMM] Comparing GEMM result with {a.baseline} baseline: "
                         f"{'PASS' if result.passed else 'FAIL'}")

            if controller is not None:
                report.power_after = controller.query()
                log.info(f"[{dev_lbl} SGEMM] Power state: {report.power_after.describe()}")
    finally:
        if controller is not None:
            if wants_power and a.restore_power:
                log.info("Restoring normal power profile...")
                report.transitions.append(controller.to_normal())
            controller.shutdown()

    return report


def log_report(report: BenchmarkReport, dev: torch.device, index: int, log):
    stats = report.stats
    dev_lbl = device_label(dev, index)
    if stats.iterations_run:
        log.info(f"[{dev_lbl} SGEMM] Performance: {stats.min_throughput / 1e9:.2f} / "
                 f"{stats.average_gflops:.2f} / {stats.max_throughput / 1e9:.2f} GFLOP/s")
    log.info(f"Total trials: {stats.iterations_run}, failed: {stats.failure_count}, "
             f"failure rate: {stats.failure_rate:.6f}")
    log.info(f"Average performance: {stats.average_gflops:.2f} GFLOP/s")
    for t in report.transitions:
        if not t.ok:
            log.warning(f"Power transition to {t.target.value}: {t.outcome.value} at '{t.failed_step}'")


# ───────────────────────────────────────────────────────────────────────
# 10.  CLI, CONFIG & LOGGING  ───────────────────────────────────────────
def load_config(config_path):
    """Load YAML configuration file."""
    if not YAML_AVAILABLE:
        print("Error: PyYAML is not installed. Install with: pip install pyyaml")
        sys.exit(1)

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        return config
    except FileNotFoundError:
        print(f"Error: Config file not found: {config_path}")
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"Error parsing YAML config: {e}")
        sys.exit(1)


CONFIG_SECTIONS = ("benchmark", "power", "logging")


def apply_config_to_args(args, config, argv: Optional[Sequence[str]] = None):
    """Apply configuration file settings to args namespace. CLI args take precedence."""
    if not config:
        return args

    if argv is None:
        argv = sys.argv[1:]
    cli_args_set = set()
    for arg in argv:
        if arg.startswith('--'):
            name = arg.lstrip('-').split('=', 1)[0].replace('-', '_')
            cli_args_set.add(name)
            if name.startswith('no_'):
                cli_args_set.add(name[3:])

    for section in CONFIG_SECTIONS:
        for key, value in (config.get(section) or {}).items():
            arg_name = key.replace('-', '_')
            if arg_name in cli_args_set:
                continue
            if not hasattr(args, arg_name):
                print(f"WARNING: Unknown config option '{section}.{key}' ignored.")
                continue
            setattr(args, arg_name, value)

    for section in config:
        if section not in CONFIG_SECTIONS:
            print(f"WARNING: Unknown config section '{section}' ignored. Valid sections: {', '.join(CONFIG_SECTIONS)}")
    return args


def build_parser():
    p = argparse.ArgumentParser("SGEMM-HAMMER", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    power_choices = ["current", "normal", "constrained"]
    # global
    p.add_argument("--banner", action="store_true", help="Show ASCII banner at startup")
    p.add_argument("--config", type=str, help="Path to YAML configuration file")
    p.add_argument("--no-log", action="store_true")
    p.add_argument("--log-file", type=str)
    p.add_argument("--verbose", action="store_true")
    p.add_argument("--dry-run", action="store_true", help="Show configuration and exit without running the benchmark")
    p.add_argument("--device-index", type=int, default=0)
    # benchmark
    p.add_argument("--size", type=int, default=DEFAULT_MATRIX_SIZE, help="Square matrix dimension")
    p.add_argument("--trials", type=int, default=DEFAULT_TRIALS, help="Number of timed SGEMM trials")
    p.add_argument("--warmup", type=int, default=0, help="Untimed SGEMM calls before the trial loop")
    p.add_argument("--seed", type=int, default=DEFAULT_SEED)
    p.add_argument("--baseline", default="device", choices=["device", "cpu"],
                   help="Ground truth: first device result or double-precision host reference")
    p.add_argument("--tolerance", type=float, default=None,
                   help=f"L2 relative error threshold (default: {DEFAULT_L2_TOLERANCE} for device, "
                        f"{DEFAULT_CPU_L2_TOLERANCE} for cpu baseline)")
    p.add_argument("--list-length", type=int, default=DEFAULT_LIST_LENGTH, help="Mismatching elements listed on failure")
    p.add_argument("--list-tolerance", type=float, default=DEFAULT_LIST_TOLERANCE,
                   help="Absolute difference above which an element is listed")
    # power
    p.add_argument("--baseline-power", default="current", choices=power_choices,
                   help="Power profile applied before the baseline computation")
    p.add_argument("--trial-power", default="current", choices=power_choices,
                   help="Power profile applied before the trial loop")
    p.add_argument("--restore-power", action="store_true", default=True,
                   help="Return to the normal profile after a run that changed it")
    p.add_argument("--no-restore-power", action="store_false", dest="restore_power")
    p.add_argument("--constrained-power-limit-mw", type=int, default=DEFAULT_CONSTRAINED_POWER_LIMIT_MW)
    p.add_argument("--normal-power-limit-mw", type=int, default=None,
                   help="Power limit for the normal profile (default: device default limit)")
    p.add_argument("--mem-clock-mhz", type=int, default=DEFAULT_MEM_CLOCK_MHZ,
                   help="Locked application memory clock for the constrained profile")
    p.add_argument("--graphics-clock-mhz", type=int, default=DEFAULT_GRAPHICS_CLOCK_MHZ,
                   help="Locked application graphics clock for the constrained profile")
    return p


def validate_choices(args, parser):
    """Check options merged from a config file against the parser's choices (exits 2 like argparse)."""
    for action in parser._actions:
        if not action.choices:
            continue
        value = getattr(args, action.dest, None)
        if value not in action.choices:
            choices = ", ".join(repr(c) for c in action.choices)
            parser.error(f"argument {'/'.join(action.option_strings)}: invalid choice: {value!r} (choose from {choices})")


def power_profile_from_args(a) -> PowerProfile:
    return PowerProfile(
        constrained_power_limit_mw=a.constrained_power_limit_mw,
        mem_clock_mhz=a.mem_clock_mhz,
        graphics_clock_mhz=a.graphics_clock_mhz,
        normal_power_limit_mw=a.normal_power_limit_mw,
    )


def init_logging(a):
    """Set up logging. Returns logger."""
    if a.no_log:
        logging.disable(logging.CRITICAL)
        return logging.getLogger("nul")

    level = logging.DEBUG if a.verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]
    if a.log_file:
        Path(a.log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(a.log_file))

    logger = logging.getLogger("sgemmhammer")
    # Prevent handler accumulation across repeated init calls
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", datefmt="%Y-%m-%dT%H:%M:%S"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


# ───────────────────────────────────────────────────────────────────────
# 11.  MAIN  ────────────────────────────────────────────────────────────
def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.banner:
        print_banner()

    if args.config:
        config = load_config(args.config)
        args = apply_config_to_args(args, config, argv)
        validate_choices(args, parser)

    log = init_logging(args)
    log.info("[SGEMM Hammer] - Starting...")

    if args.dry_run:
        log.info("Dry run configuration:")
        for key, value in sorted(vars(args).items()):
            log.info(f"  {key}: {value}")
        return 0

    dev = select_device(args.device_index)
    dev_lbl = device_label(dev, args.device_index)
    if SETPROCTITLE_AVAILABLE:
        hostname = socket.gethostname().split('.', 1)[0]
        setproctitle.setproctitle(f"sgemm-hammer-{dev_lbl.lower()}@{hostname}")
    log.info(f"Using device {dev}")

    controller = None
    if args.baseline_power != "current" or args.trial_power != "current":
        if dev.type == "cuda" and not torch.version.hip:
            controller = PowerController(NVMLBackend(), args.device_index, power_profile_from_args(args), log)
        else:
            log.warning(f"Power control requires an NVIDIA GPU; running {dev_lbl} in its current power state")

    try:
        report = run_benchmark(args, dev, log, controller)
    except Exception as e:
        log.error(f"[{dev_lbl} SGEMM] Failed: {e}")
        log.error(f"[{dev_lbl} SGEMM] Traceback: {traceback.format_exc()}")
        return 1

    log.info("")
    log.info("=" * 80)
    log_report(report, dev, args.device_index, log)
    log.info("=" * 80)
    log.info("[OK] Benchmark run finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
