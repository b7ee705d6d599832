"""Device-dispatch pipeline for C = A @ B.

Stages run strictly in order, each one a precondition for the next:

1. select a device
2. create the context and command queue
3. allocate buffers A, B, C and write A and B (blocking)
4. compile and build the program, extract the kernel, bind its arguments
5. dispatch the 2-D NDRange
6. read C back (blocking; this is the synchronization point)

Every acquired handle is recorded in a :class:`Resources` record. Whatever
stage raises, :func:`release_all` runs once from the ``finally`` block and
releases exactly the handles that were acquired.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import logging

import numpy as np

from .config import RunConfig
from .dispatch import WorkSize, work_sizes
from .errors import ArgumentBindingFailed, MatmulError
from .matrix import HostMatrix, product_shape
from .opencl_backend import AccessMode, DeviceBuffer, DeviceHandle, OpenCLRuntime
from .program import KERNEL_SIGNATURE, KernelSource, bind_arguments, kernel_arguments, load_kernel_source


logger = logging.getLogger(__name__)

# Kernel first, context last.
RELEASE_ORDER = ("kernel", "program", "queue", "buffer_c", "buffer_b", "buffer_a", "context")

_RELEASERS = {
    "kernel": "release_kernel",
    "program": "release_program",
    "queue": "release_queue",
    "buffer_a": "release_buffer",
    "buffer_b": "release_buffer",
    "buffer_c": "release_buffer",
    "context": "release_context",
}


@dataclass
class Resources:
    """Every device-side handle of one run; ``None`` means not held."""

    device: Optional[DeviceHandle] = None
    context: Any = None
    queue: Any = None
    buffer_a: Optional[DeviceBuffer] = None
    buffer_b: Optional[DeviceBuffer] = None
    buffer_c: Optional[DeviceBuffer] = None
    program: Any = None
    kernel: Any = None

    def acquired(self) -> list[str]:
        return [slot for slot in RELEASE_ORDER if getattr(self, slot) is not None]


def release_all(runtime: Any, resources: Resources) -> list[str]:
    """Release every held handle and clear its slot.

    Safe to call any number of times. A failing release is logged and does
    not stop the remaining releases nor replace an error already in flight.
    Returns the slots that were released.
    """

    released: list[str] = []
    for slot in RELEASE_ORDER:
        handle = getattr(resources, slot)
        if handle is None:
            continue
        setattr(resources, slot, None)
        try:
            getattr(runtime, _RELEASERS[slot])(handle)
        except Exception:
            logger.warning("Failed to release %s", slot, exc_info=True)
            continue
        released.append(slot)

    # The device handle is an identifier, not an allocation.
    resources.device = None
    if released:
        logger.debug("Released %s", ", ".join(released))
    return released


class MatmulPipeline:
    """Runs one matrix multiplication on an accelerator runtime.

    ``runtime`` defaults to :class:`~clmatmul.opencl_backend.OpenCLRuntime`;
    any object with the same methods can stand in for it.
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        *,
        runtime: Any = None,
        source: Optional[KernelSource] = None,
    ) -> None:
        self.config = (config or RunConfig()).validate()
        self.runtime = runtime if runtime is not None else OpenCLRuntime()
        self.source = source if source is not None else load_kernel_source()
        self.resources = Resources()
        self.released: list[str] = []

    def multiply(self, a: HostMatrix, b: HostMatrix) -> HostMatrix:
        height_c, width_c = product_shape(a, b)
        c = HostMatrix.empty(height_c, width_c)

        res = self.resources = Resources()
        try:
            self._acquire_device(res)
            self._upload(res, a, b, c)
            bound = self._prepare_kernel(res)
            self._dispatch(res, work_sizes(c.width, c.height, self.config.local_size), bound)
            self._download(res, c)
        finally:
            self.released = release_all(self.runtime, res)
        return c

    # ------------------------------
    # Stages
    # ------------------------------
    def _acquire_device(self, res: Resources) -> None:
        rt = self.runtime
        res.device = rt.select_device(self.config.device_type)
        logger.debug("Using device %s", res.device.name or res.device.device)
        res.context = rt.create_context(res.device)
        res.queue = rt.create_queue(res.context, res.device)

    def _upload(self, res: Resources, a: HostMatrix, b: HostMatrix, c: HostMatrix) -> None:
        rt = self.runtime
        res.buffer_a = rt.allocate_buffer(res.context, "A", a.shape, AccessMode.READ_ONLY)
        res.buffer_b = rt.allocate_buffer(res.context, "B", b.shape, AccessMode.READ_ONLY)
        res.buffer_c = rt.allocate_buffer(res.context, "C", c.shape, AccessMode.WRITE_ONLY)

        # Blocking: each write has completed before the next call starts.
        rt.write_buffer(res.queue, res.buffer_a, a.data)
        rt.write_buffer(res.queue, res.buffer_b, b.data)
        logger.debug("Uploaded A %s and B %s", a.shape, b.shape)

    def _prepare_kernel(self, res: Resources) -> list[int]:
        rt = self.runtime
        res.program = rt.compile_program(res.context, self.source.text)
        rt.build_program(res.program, res.device, self.config.build_log_limit)
        res.kernel = rt.extract_kernel(res.program, self.source.entry_point)
        values = kernel_arguments(res.buffer_c, res.buffer_a, res.buffer_b)
        return bind_arguments(rt, res.kernel, values)

    def _dispatch(self, res: Resources, work: WorkSize, bound: list[int]) -> None:
        if bound != list(range(len(KERNEL_SIGNATURE))):
            raise ArgumentBindingFailed(f"Kernel slots bound out of order or missing: {bound}")
        self.runtime.dispatch(res.queue, res.kernel, work.global_size, work.local_size)
        logger.debug("Dispatched global=%s local=%s", work.global_size, work.local_size)

    def _download(self, res: Resources, c: HostMatrix) -> None:
        self.runtime.read_buffer(res.queue, res.buffer_c, c.data)


def format_block(c: HostMatrix, n: int) -> str:
    block = c.data[:n, :n]
    return np.array2string(block, precision=3, suppress_small=True, max_line_width=120)


def run(
    config: Optional[RunConfig] = None,
    *,
    runtime: Any = None,
    source: Optional[KernelSource] = None,
    out: Callable[[str], Any] = print,
    show: int = 0,
) -> int:
    """Fill A and B, multiply on the device and return the exit status."""

    try:
        config = (config or RunConfig()).validate()
        a = HostMatrix.linear(config.height_a, config.width_a, config.fill_a)
        b = HostMatrix.linear(config.height_b, config.width_b, config.fill_b)
        pipeline = MatmulPipeline(config, runtime=runtime, source=source)
        c = pipeline.multiply(a, b)
    except MatmulError as e:
        for line in e.diagnostic_lines():
            out(line)
        return e.exit_code

    if show > 0:
        out(f"C[:{show}, :{show}] =")
        out(format_block(c, show))
    return 0
