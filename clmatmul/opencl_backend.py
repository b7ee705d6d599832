from __future__ import annotations

"""OpenCL runtime adapter for clmatmul.

Thin layer over ``pyopencl`` that exposes one method per pipeline operation:
- select_device, create_context, create_queue
- allocate_buffer, write_buffer, read_buffer
- compile_program, build_program, extract_kernel, bind_argument
- dispatch
- release_* for every handle kind

Each method translates ``pyopencl`` failures into the matching
:mod:`clmatmul.errors` class and chains the original exception, so callers
never see raw OpenCL errors.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import logging

import numpy as np
import pyopencl as cl

from .errors import (
    AllocationFailed,
    ArgumentBindingFailed,
    BuildFailed,
    CompileSourceFailed,
    ContextCreationFailed,
    DeviceUnavailable,
    DispatchFailed,
    KernelNotFound,
    PlatformUnavailable,
    QueueCreationFailed,
    TransferFailed,
)


logger = logging.getLogger(__name__)

BUILD_LOG_LIMIT = 16384

DEVICE_TYPES = {
    "gpu": cl.device_type.GPU,
    "cpu": cl.device_type.CPU,
    "accelerator": cl.device_type.ACCELERATOR,
    "all": cl.device_type.ALL,
}


class AccessMode(Enum):
    READ_ONLY = "read_only"
    WRITE_ONLY = "write_only"
    READ_WRITE = "read_write"


_MEM_FLAGS = {
    AccessMode.READ_ONLY: cl.mem_flags.READ_ONLY,
    AccessMode.WRITE_ONLY: cl.mem_flags.WRITE_ONLY,
    AccessMode.READ_WRITE: cl.mem_flags.READ_WRITE,
}


@dataclass(frozen=True)
class DeviceHandle:
    """The chosen platform/device pair. An identifier, never released."""

    platform: Any
    device: Any
    name: str = ""


@dataclass
class DeviceBuffer:
    """A device buffer holding a row-major float32 matrix."""

    # Host-side metadata
    name: str
    shape: tuple[int, int]
    nbytes: int
    access: AccessMode

    # Runtime handle; None once released
    handle: Any = None

    @property
    def height(self) -> int:
        return self.shape[0]

    @property
    def width(self) -> int:
        return self.shape[1]


def _status(err: Exception) -> Optional[int]:
    try:
        return int(err.code)  # type: ignore[attr-defined]
    except (AttributeError, TypeError, ValueError):
        return None


def truncate_log(log: str, limit: int = BUILD_LOG_LIMIT) -> str:
    raw = log.encode("utf-8", errors="replace")
    if len(raw) <= limit:
        return log
    return raw[:limit].decode("utf-8", errors="ignore")


class OpenCLRuntime:
    """Accelerator runtime backed by ``pyopencl``."""

    name = "opencl"

    # ------------------------------
    # Device selection
    # ------------------------------
    def select_device(self, device_type: str = "gpu") -> DeviceHandle:
        if device_type not in DEVICE_TYPES:
            raise DeviceUnavailable(f"Unknown device type: {device_type!r}")

        try:
            platforms = cl.get_platforms()
        except cl.Error as e:
            raise PlatformUnavailable(status=_status(e)) from e
        if not platforms:
            raise PlatformUnavailable()

        last_status: Optional[int] = None
        for platform in platforms:
            try:
                devices = platform.get_devices(device_type=DEVICE_TYPES[device_type])
            except cl.Error as e:
                # DEVICE_NOT_FOUND on this platform; try the next one.
                last_status = _status(e)
                logger.debug("Platform %s has no %s device (status %s)", platform.name, device_type, last_status)
                continue
            if devices:
                device = devices[0]
                logger.debug("Selected %s on %s", device.name, platform.name)
                return DeviceHandle(platform=platform, device=device, name=device.name.strip())

        raise DeviceUnavailable(status=last_status, context={"device_type": device_type})

    # ------------------------------
    # Context / queue
    # ------------------------------
    def create_context(self, device: DeviceHandle) -> cl.Context:
        try:
            return cl.Context(
                devices=[device.device],
                properties=[(cl.context_properties.PLATFORM, device.platform)],
            )
        except cl.Error as e:
            raise ContextCreationFailed(status=_status(e)) from e

    def create_queue(self, context: cl.Context, device: DeviceHandle) -> cl.CommandQueue:
        try:
            # In-order, no profiling.
            return cl.CommandQueue(context, device=device.device)
        except cl.Error as e:
            raise QueueCreationFailed(status=_status(e)) from e

    # ------------------------------
    # Buffers
    # ------------------------------
    def allocate_buffer(
        self,
        context: cl.Context,
        name: str,
        shape: tuple[int, int],
        access: AccessMode,
    ) -> DeviceBuffer:
        nbytes = int(np.prod(shape)) * np.dtype(np.float32).itemsize
        if nbytes <= 0:
            raise AllocationFailed(f"Refusing to allocate empty buffer {name} with shape {shape}")
        try:
            mem = cl.Buffer(context, _MEM_FLAGS[access], size=nbytes)
        except cl.Error as e:
            raise AllocationFailed(
                f"Failed to allocate device buffer {name} ({nbytes} bytes).", status=_status(e)
            ) from e
        return DeviceBuffer(name=name, shape=tuple(shape), nbytes=nbytes, access=access, handle=mem)

    def write_buffer(self, queue: cl.CommandQueue, buffer: DeviceBuffer, host: np.ndarray) -> None:
        arr = np.ascontiguousarray(host, dtype=np.float32)
        if arr.nbytes != buffer.nbytes:
            raise TransferFailed(
                f"Host array has {arr.nbytes} bytes, device buffer has {buffer.nbytes}.",
                buffer=buffer.name,
            )
        try:
            cl.enqueue_copy(queue, buffer.handle, arr, is_blocking=True)
        except cl.Error as e:
            raise TransferFailed(
                "Failed to copy data from host to device.", buffer=buffer.name, status=_status(e)
            ) from e

    def read_buffer(self, queue: cl.CommandQueue, buffer: DeviceBuffer, host: np.ndarray) -> None:
        if not host.flags.c_contiguous or host.dtype != np.float32 or host.nbytes != buffer.nbytes:
            raise TransferFailed(
                "Readback target must be a contiguous float32 array of the buffer's size.",
                buffer=buffer.name,
            )
        try:
            cl.enqueue_copy(queue, host, buffer.handle, is_blocking=True)
        except cl.Error as e:
            raise TransferFailed(
                "Failed to copy data from device to host.", buffer=buffer.name, status=_status(e)
            ) from e

    # ------------------------------
    # Programs / kernels
    # ------------------------------
    def compile_program(self, context: cl.Context, source: str) -> cl.Program:
        if not source or not source.strip():
            raise CompileSourceFailed("Kernel source is empty.")
        try:
            return cl.Program(context, source)
        except cl.Error as e:
            raise CompileSourceFailed(status=_status(e)) from e

    def build_program(
        self,
        program: cl.Program,
        device: DeviceHandle,
        log_limit: int = BUILD_LOG_LIMIT,
    ) -> cl.Program:
        try:
            return program.build(devices=[device.device])
        except cl.Error as e:
            log = ""
            try:
                log = program.get_build_info(device.device, cl.program_build_info.LOG) or ""
            except cl.Error:
                logger.debug("Build log unavailable from the program object", exc_info=True)
            # pyopencl embeds the per-device log in the error text as well.
            log = log.strip() or str(e).strip() or "no build log returned"
            raise BuildFailed(truncate_log(log, log_limit), status=_status(e)) from e

    def extract_kernel(self, program: cl.Program, entry_point: str) -> cl.Kernel:
        try:
            return cl.Kernel(program, entry_point)
        except cl.Error as e:
            raise KernelNotFound(
                f"Failed to create kernel {entry_point!r}.", status=_status(e)
            ) from e

    def bind_argument(self, kernel: cl.Kernel, index: int, value: Any) -> None:
        try:
            kernel.set_arg(index, value)
        except cl.Error as e:
            raise ArgumentBindingFailed(index=index, status=_status(e)) from e

    # ------------------------------
    # Dispatch
    # ------------------------------
    def dispatch(
        self,
        queue: cl.CommandQueue,
        kernel: cl.Kernel,
        global_size: tuple[int, int],
        local_size: Optional[tuple[int, int]],
    ) -> cl.Event:
        try:
            return cl.enqueue_nd_range_kernel(queue, kernel, global_size, local_size)
        except cl.Error as e:
            raise DispatchFailed(status=_status(e)) from e

    # ------------------------------
    # Release
    # ------------------------------
    # pyopencl frees kernels, programs and contexts when the last Python
    # reference goes away; the caller clears its slot after these return.
    def release_kernel(self, kernel: cl.Kernel) -> None:
        logger.debug("Dropping kernel %s", kernel.function_name)

    def release_program(self, program: cl.Program) -> None:
        logger.debug("Dropping program")

    def release_queue(self, queue: cl.CommandQueue) -> None:
        queue.finish()

    def release_buffer(self, buffer: DeviceBuffer) -> None:
        if buffer.handle is None:
            return
        mem, buffer.handle = buffer.handle, None
        mem.release()

    def release_context(self, context: cl.Context) -> None:
        logger.debug("Dropping context for %s", [d.name for d in context.devices])
