"""Kernel source asset and positional argument binding.

The kernel source is shipped as a text asset next to this module
(``kernels/matrix_multiply.cl``). It is loaded once into an immutable
:class:`KernelSource`; compiling it into a program is the runtime's job and
has its own failure modes.

The kernel signature is positional, so binding is driven by
:data:`KERNEL_SIGNATURE` rather than by names.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np

from .errors import ArgumentBindingFailed
from .opencl_backend import DeviceBuffer


_KERNELS_DIR = Path(__file__).parent / "kernels"

ENTRY_POINT = "matrix_multiply"
KERNEL_VERSION = "1"

_INT32 = np.iinfo(np.int32)


@dataclass(frozen=True)
class KernelSource:
    """Immutable kernel program text plus the entry point it defines."""

    text: str
    entry_point: str = ENTRY_POINT
    version: str = KERNEL_VERSION


@dataclass(frozen=True)
class KernelArg:
    name: str
    kind: str  # "buffer" or "int32"


KERNEL_SIGNATURE: tuple[KernelArg, ...] = (
    KernelArg("output_C", "buffer"),
    KernelArg("width_A", "int32"),
    KernelArg("height_A", "int32"),
    KernelArg("width_B", "int32"),
    KernelArg("height_B", "int32"),
    KernelArg("input_A", "buffer"),
    KernelArg("input_B", "buffer"),
)


def load_kernel_source(name: str = ENTRY_POINT, *, entry_point: Optional[str] = None) -> KernelSource:
    """Read ``kernels/<name>.cl`` from the package."""

    path = _KERNELS_DIR / f"{name}.cl"
    if not path.exists():
        raise FileNotFoundError(f"Missing kernel source: {path}")
    return KernelSource(text=path.read_text(encoding="utf-8"), entry_point=entry_point or name)


def kernel_arguments(c: DeviceBuffer, a: DeviceBuffer, b: DeviceBuffer) -> list[Any]:
    """Values for every slot of :data:`KERNEL_SIGNATURE`, in slot order."""

    height_a, width_a = a.shape
    height_b, width_b = b.shape
    return [c, width_a, height_a, width_b, height_b, a, b]


def _coerce(arg: KernelArg, index: int, value: Any) -> Any:
    if arg.kind == "buffer":
        if not isinstance(value, DeviceBuffer) or value.handle is None:
            raise ArgumentBindingFailed(
                f"Kernel argument {arg.name} expects a device buffer, got {type(value).__name__}",
                index=index,
            )
        return value.handle

    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
        raise ArgumentBindingFailed(
            f"Kernel argument {arg.name} expects an int32, got {type(value).__name__}",
            index=index,
        )
    if not (_INT32.min <= int(value) <= _INT32.max):
        raise ArgumentBindingFailed(
            f"Kernel argument {arg.name}={value} does not fit in int32", index=index
        )
    return np.int32(value)


def bind_arguments(runtime: Any, kernel: Any, values: Sequence[Any]) -> list[int]:
    """Bind ``values`` to ``kernel`` slot by slot, in declared order.

    Returns the indices of the slots that were bound. Any slot that cannot be
    bound stops the binding immediately.
    """

    if len(values) != len(KERNEL_SIGNATURE):
        raise ArgumentBindingFailed(
            f"Kernel takes {len(KERNEL_SIGNATURE)} arguments, got {len(values)}"
        )

    bound: list[int] = []
    for index, (arg, value) in enumerate(zip(KERNEL_SIGNATURE, values)):
        runtime.bind_argument(kernel, index, _coerce(arg, index, value))
        bound.append(index)
    return bound
