from __future__ import annotations

import re
from typing import Any, Iterable, Optional

import numpy as np
import pytest

from clmatmul import errors
from clmatmul.opencl_backend import DeviceBuffer, DeviceHandle, truncate_log


_KERNEL_RE = re.compile(r"__kernel\s+void\s+(\w+)\s*\(")


class FakeHandle:
    def __init__(self, kind: str, **attrs: Any) -> None:
        self.kind = kind
        self.released = False
        self.__dict__.update(attrs)

    def __repr__(self) -> str:
        return f"<FakeHandle {self.kind}>"


class FakeRuntime:
    """In-memory stand-in for ``OpenCLRuntime``.

    - ``fail_at`` names an operation (``"create_queue"``) or an operation on a
      named buffer (``"write_buffer:B"``) that raises its pipeline error.
    - ``fail_release`` names handle kinds whose release raises.
    - ``dispatch`` runs matrix_multiply over the NDRange using the bound
      positional arguments, so a wrong binding order gives a wrong C.
    """

    name = "fake"

    def __init__(self, fail_at: Optional[str] = None, fail_release: Iterable[str] = ()) -> None:
        self.fail_at = fail_at
        self.fail_release = set(fail_release)
        self.calls: list[str] = []
        self.acquired: list[FakeHandle] = []
        self.released: list[str] = []
        self.bind_order: list[int] = []

    def _enter(self, op: str, target: Optional[str] = None) -> None:
        self.calls.append(op if target is None else f"{op}:{target}")
        if self.fail_at not in (op, f"{op}:{target}"):
            return
        if op == "select_device":
            raise errors.DeviceUnavailable(status=-1)
        if op == "create_context":
            raise errors.ContextCreationFailed(status=-6)
        if op == "create_queue":
            raise errors.QueueCreationFailed(status=-6)
        if op == "allocate_buffer":
            raise errors.AllocationFailed(status=-4)
        if op in ("write_buffer", "read_buffer"):
            raise errors.TransferFailed(buffer=target, status=-5)
        if op == "compile_program":
            raise errors.CompileSourceFailed(status=-6)
        if op == "build_program":
            raise errors.BuildFailed("injected build failure", status=-11)
        if op == "extract_kernel":
            raise errors.KernelNotFound(status=-46)
        if op == "bind_argument":
            raise errors.ArgumentBindingFailed(index=int(target) if target else None, status=-51)
        if op == "dispatch":
            raise errors.DispatchFailed(status=-54)
        raise AssertionError(f"unknown fail_at {self.fail_at!r}")

    def _acquire(self, kind: str, **attrs: Any) -> FakeHandle:
        handle = FakeHandle(kind, **attrs)
        self.acquired.append(handle)
        return handle

    def _release(self, handle: FakeHandle, label: str) -> None:
        if handle.released:
            raise AssertionError(f"{label} released twice")
        handle.released = True
        self.released.append(label)
        if handle.kind in self.fail_release:
            raise RuntimeError(f"injected release failure for {label}")

    def live(self) -> list[str]:
        return [h.kind for h in self.acquired if not h.released]

    # Device / context / queue
    def select_device(self, device_type: str = "gpu") -> DeviceHandle:
        self._enter("select_device")
        return DeviceHandle(platform="fake-platform", device="fake-device", name=f"Fake {device_type}")

    def create_context(self, device: DeviceHandle) -> FakeHandle:
        self._enter("create_context")
        return self._acquire("context", device=device)

    def create_queue(self, context: FakeHandle, device: DeviceHandle) -> FakeHandle:
        self._enter("create_queue")
        return self._acquire("queue", context=context)

    # Buffers
    def allocate_buffer(self, context, name, shape, access) -> DeviceBuffer:
        self._enter("allocate_buffer", name)
        n = int(np.prod(shape))
        mem = self._acquire("mem", name=name, data=np.zeros(n, dtype=np.float32))
        return DeviceBuffer(name=name, shape=tuple(shape), nbytes=n * 4, access=access, handle=mem)

    def write_buffer(self, queue, buffer: DeviceBuffer, host: np.ndarray) -> None:
        self._enter("write_buffer", buffer.name)
        buffer.handle.data[:] = np.asarray(host, dtype=np.float32).reshape(-1)

    def read_buffer(self, queue, buffer: DeviceBuffer, host: np.ndarray) -> None:
        self._enter("read_buffer", buffer.name)
        np.copyto(host, buffer.handle.data.reshape(host.shape))

    # Programs / kernels
    def compile_program(self, context, source: str) -> FakeHandle:
        self._enter("compile_program")
        if not source.strip():
            raise errors.CompileSourceFailed("Kernel source is empty.")
        return self._acquire("program", source=source, built=False, entry_points=set())

    def build_program(self, program: FakeHandle, device, log_limit: int = 16384) -> FakeHandle:
        self._enter("build_program")
        src = program.source
        names = _KERNEL_RE.findall(src)
        if not names or src.count("{") != src.count("}") or src.count("(") != src.count(")"):
            log = "<kernel>:1:1: error: expected a balanced __kernel function definition"
            raise errors.BuildFailed(truncate_log(log, log_limit), status=-11)
        program.built = True
        program.entry_points = set(names)
        return program

    def extract_kernel(self, program: FakeHandle, entry_point: str) -> FakeHandle:
        self._enter("extract_kernel")
        if not program.built or entry_point not in program.entry_points:
            raise errors.KernelNotFound(f"Failed to create kernel {entry_point!r}.", status=-46)
        return self._acquire("kernel", args={})

    def bind_argument(self, kernel: FakeHandle, index: int, value: Any) -> None:
        self._enter("bind_argument", str(index))
        if not 0 <= index < 7:
            raise errors.ArgumentBindingFailed(index=index, status=-49)
        kernel.args[index] = value
        self.bind_order.append(index)

    # Dispatch
    def dispatch(self, queue, kernel: FakeHandle, global_size, local_size) -> None:
        self._enter("dispatch")
        if sorted(kernel.args) != list(range(7)):
            raise errors.DispatchFailed("kernel arguments not set", status=-52)
        if local_size is not None and any(g % t for g, t in zip(global_size, local_size)):
            raise errors.DispatchFailed(status=-54)

        out, w_a, _h_a, w_b, _h_b, in_a, in_b = (kernel.args[i] for i in range(7))
        w_a, w_b = int(w_a), int(w_b)

        def load(mem: FakeHandle, idx: int) -> np.float32:
            # Out-of-range reads are undefined on a device; zero here.
            return mem.data[idx] if 0 <= idx < mem.data.size else np.float32(0.0)

        for row in range(global_size[1]):
            for col in range(global_size[0]):
                acc = np.float32(0.0)
                for i in range(w_a):
                    acc = np.float32(acc + load(in_a, row * w_a + i) * load(in_b, i * w_b + col))
                idx = row * w_b + col
                if 0 <= idx < out.data.size:
                    out.data[idx] = acc

    # Release
    def release_kernel(self, kernel: FakeHandle) -> None:
        self._release(kernel, "kernel")

    def release_program(self, program: FakeHandle) -> None:
        self._release(program, "program")

    def release_queue(self, queue: FakeHandle) -> None:
        self._release(queue, "queue")

    def release_buffer(self, buffer: DeviceBuffer) -> None:
        mem, buffer.handle = buffer.handle, None
        self._release(mem, f"buffer_{mem.name}")

    def release_context(self, context: FakeHandle) -> None:
        self._release(context, "context")


def reference_matmul(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """C[row, col] = sum_i A[row, i] * B[i, col], element by element."""

    height, inner = a.shape
    inner_b, width = b.shape
    assert inner == inner_b
    c = np.zeros((height, width), dtype=np.float64)
    for row in range(height):
        for col in range(width):
            acc = 0.0
            for i in range(inner):
                acc += float(a[row, i]) * float(b[i, col])
            c[row, col] = acc
    return c


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def make_runtime():
    return FakeRuntime


@pytest.fixture
def reference():
    return reference_matmul
